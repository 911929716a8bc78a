import json
import logging
import re
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple
from urllib.parse import urlparse

import httpx
from bs4 import BeautifulSoup
from openai import OpenAI

PROMPTS_DIR = Path(__file__).resolve().parent / "prompts"
EXA_SEARCH_URL = "https://api.exa.ai/search"
DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36"
)
CRITERIA = ("novelty", "feasibility", "impact", "crossDisciplinary")

logger = logging.getLogger(__name__)


def load_prompt(filename: str) -> str:
    path = PROMPTS_DIR / filename
    if not path.exists():
        raise FileNotFoundError(f"Missing prompt file: {path}")
    return path.read_text(encoding="utf-8").strip()


def is_valid_absolute_http_url(url: str) -> bool:
    candidate = (url or "").strip()
    if not candidate:
        return False
    parsed = urlparse(candidate)
    if parsed.scheme not in {"http", "https"}:
        return False
    if not parsed.netloc:
        return False
    return True


def as_clean_str_list(value: Any) -> List[str]:
    if not isinstance(value, list):
        return []
    out: List[str] = []
    seen = set()
    for item in value:
        if not isinstance(item, str):
            continue
        s = item.strip()
        if not s or s in seen:
            continue
        seen.add(s)
        out.append(s)
    return out


def truncate_text(text: str, max_len: int) -> str:
    if not text:
        return ""
    return text[:max_len] + "..." if len(text) > max_len else text


SYSTEM_QUERY_GEN = load_prompt("query_gen.system.txt")
SYSTEM_BRAINSTORM = load_prompt("brainstorm.system.txt")
SYSTEM_JUDGE = load_prompt("judge.system.txt")


class LLMError(RuntimeError):
    pass


class EmptyResponse(LLMError):
    pass


class InvalidShape(LLMError):
    pass


class SearchError(RuntimeError):
    pass


# ---------------------------------------------------------------------------
# Response parsing
# ---------------------------------------------------------------------------

_QUOTED_RE = re.compile(r'"((?:[^"\\]|\\.)*)"')


def parse_json_payload(text: str) -> Any:
    """
    Strict JSON first, then the outermost {...} or [...] slice.
    Models occasionally wrap JSON in prose or code fences.
    """
    raw = text or ""
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        pass
    for open_ch, close_ch in (("{", "}"), ("[", "]")):
        start = raw.find(open_ch)
        end = raw.rfind(close_ch)
        if start != -1 and end > start:
            try:
                return json.loads(raw[start : end + 1])
            except json.JSONDecodeError:
                continue
    raise ValueError("Failed to parse model response as JSON.")


def _first_array(value: Any) -> Optional[List[Any]]:
    if not isinstance(value, dict):
        return None
    for v in value.values():
        if isinstance(v, list):
            return v
    for v in value.values():
        found = _first_array(v)
        if found is not None:
            return found
    return None


def parse_string_list(text: str, preferred_key: str) -> List[str]:
    """
    Accepted shapes, in order:
    - a root JSON array
    - an object with `preferred_key` holding an array
    - an object with any array-valued field (nested objects searched too)
    If nothing parses as JSON, every double-quoted substring is taken instead.
    """
    try:
        parsed = parse_json_payload(text)
    except ValueError:
        quoted = [
            m.replace('\\"', '"')
            for m in _QUOTED_RE.findall(text or "")
            if m.strip() != preferred_key
        ]
        items = as_clean_str_list(quoted)
        if not items:
            raise InvalidShape(
                f"Could not parse or extract {preferred_key} from response: "
                f"{truncate_text(text or '', 200)}"
            )
        logger.warning("[llm] fallback quoted-string extraction used for %s", preferred_key)
        return items

    if isinstance(parsed, list):
        candidates: Optional[List[Any]] = parsed
    elif isinstance(parsed, dict):
        value = parsed.get(preferred_key)
        candidates = value if isinstance(value, list) else _first_array(parsed)
    else:
        candidates = None
    if candidates is None:
        raise InvalidShape(f"Could not find a JSON array of {preferred_key} in the response.")
    items = as_clean_str_list(candidates)
    if not items:
        raise InvalidShape(f"Response parsed, but no {preferred_key} found in the array.")
    return items


def parse_criteria(text: str) -> Dict[str, Dict[str, Any]]:
    try:
        parsed = parse_json_payload(text)
    except ValueError as exc:
        raise InvalidShape(f"Failed to parse evaluation JSON: {exc}") from exc
    if not isinstance(parsed, dict):
        raise InvalidShape("Evaluation response is not a JSON object.")
    if not any(name in parsed for name in CRITERIA):
        nested = [v for v in parsed.values() if isinstance(v, dict)]
        if len(nested) == 1:
            parsed = nested[0]

    out: Dict[str, Dict[str, Any]] = {}
    for name in CRITERIA:
        raw = parsed.get(name)
        if raw is None and name == "crossDisciplinary":
            raw = parsed.get("cross_disciplinary")
        if not isinstance(raw, dict):
            raise InvalidShape(f"Missing evaluation field: {name}")
        score = raw.get("score")
        if isinstance(score, bool) or not isinstance(score, (int, float)):
            raise InvalidShape(f"Non-numeric score for {name}: {score!r}")
        if not 1 <= score <= 10:
            raise InvalidShape(f"Score for {name} out of range 1-10: {score}")
        out[name] = {
            "score": score,
            "justification": str(raw.get("justification", "") or "").strip(),
        }
    return out


# ---------------------------------------------------------------------------
# Language model
# ---------------------------------------------------------------------------


class LLM:
    """
    One chat completion per call. No automatic retries: completions are
    billed, so retry policy belongs to the calling stage.
    """

    def __init__(
        self,
        api_key: str,
        model: str,
        timeout: float = 90.0,
        temperature: float = 0.7,
        client: Any = None,
    ) -> None:
        self.client = client or OpenAI(api_key=api_key, timeout=timeout, max_retries=0)
        self.model = model
        self.temperature = temperature

    def complete(self, system_prompt: str, user_prompt: str, stage: str = "unknown") -> str:
        rsp = self.client.chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            temperature=self.temperature,
            response_format={"type": "json_object"},
        )
        choices = getattr(rsp, "choices", None) or []
        content = choices[0].message.content if choices else None
        if not content or not content.strip():
            raise EmptyResponse(f"OpenAI response content was empty ({stage}).")
        logger.debug("[llm] stage=%s model=%s chars=%d", stage, self.model, len(content))
        return content


# ---------------------------------------------------------------------------
# Web search
# ---------------------------------------------------------------------------


@dataclass
class SearchHit:
    url: str
    title: str
    score: Optional[float] = None
    published_date: Optional[str] = None
    author: Optional[str] = None


class WebSearch:
    def __init__(
        self,
        api_key: str,
        num_results: int = 5,
        timeout: float = 30.0,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self.api_key = api_key
        self.num_results = max(1, int(num_results))
        self.timeout = timeout
        self._transport = transport

    def search(self, query: str) -> List[SearchHit]:
        payload = {
            "query": query,
            "numResults": self.num_results,
            "type": "neural",
            "useAutoprompt": True,
        }
        headers = {"x-api-key": self.api_key, "Content-Type": "application/json"}
        with httpx.Client(timeout=self.timeout, transport=self._transport) as client:
            rsp = client.post(EXA_SEARCH_URL, json=payload, headers=headers)
        if rsp.status_code != 200:
            raise SearchError(
                f"Exa search failed with status {rsp.status_code}: {truncate_text(rsp.text, 200)}"
            )
        try:
            data = rsp.json()
        except ValueError as exc:
            raise SearchError(f"Exa search returned invalid JSON: {exc}") from exc
        items = data.get("results", []) if isinstance(data, dict) else []
        if not isinstance(items, list):
            return []
        hits: List[SearchHit] = []
        for item in items[: self.num_results]:
            if not isinstance(item, dict):
                continue
            url = str(item.get("url", "") or "").strip()
            if not is_valid_absolute_http_url(url):
                continue
            score = item.get("score")
            hits.append(
                SearchHit(
                    url=url,
                    title=str(item.get("title") or "").strip() or "No title provided",
                    score=float(score)
                    if isinstance(score, (int, float)) and not isinstance(score, bool)
                    else None,
                    published_date=item.get("publishedDate") or None,
                    author=item.get("author") or None,
                )
            )
        return hits


# ---------------------------------------------------------------------------
# Fetch + main-content extraction
# ---------------------------------------------------------------------------

_STRIP_TAGS = ["script", "style", "noscript", "nav", "footer", "header", "aside", "form", "iframe", "svg"]
_MIN_PARAGRAPH_CHARS = 25
_EXCERPT_CHARS = 200


def _meta_content(soup: BeautifulSoup, **attrs: str) -> str:
    tag = soup.find("meta", attrs=attrs)
    if tag and tag.get("content"):
        return " ".join(str(tag.get("content")).split())
    return ""


def _extract_title(soup: BeautifulSoup) -> str:
    og_title = _meta_content(soup, property="og:title")
    if og_title:
        return og_title
    title_tag = soup.find("title")
    if title_tag and title_tag.get_text(strip=True):
        return title_tag.get_text(" ", strip=True)
    h1_tag = soup.find("h1")
    if h1_tag and h1_tag.get_text(strip=True):
        return h1_tag.get_text(" ", strip=True)
    return ""


def _pick_main_container(soup: BeautifulSoup) -> Any:
    for selector in ("article", "main", '[role="main"]'):
        node = soup.select_one(selector)
        if node is not None and node.get_text(strip=True):
            return node
    best = None
    best_score = 0
    for node in soup.find_all(["div", "section"]):
        score = sum(
            len(p.get_text(" ", strip=True)) for p in node.find_all("p", recursive=False)
        )
        if score > best_score:
            best, best_score = node, score
    if best is not None and best_score >= _MIN_PARAGRAPH_CHARS:
        return best
    return soup.body or soup


def _clean_text(text: str) -> str:
    lines = (" ".join(line.split()) for line in text.splitlines())
    return "\n".join(line for line in lines if line)


def extract_main_content(html: str, url: str = "") -> Optional[Dict[str, Any]]:
    """Readability-style extraction. Returns None when the page has no usable text."""
    if not html or not html.strip():
        return None
    soup = BeautifulSoup(html, "html.parser")
    title = _extract_title(soup)
    excerpt = _meta_content(soup, name="description") or _meta_content(
        soup, property="og:description"
    )
    for tag in soup(_STRIP_TAGS):
        tag.decompose()
    container = _pick_main_container(soup)
    text = _clean_text(container.get_text("\n"))
    if not text:
        return None
    if not excerpt:
        for p in container.find_all("p"):
            candidate = p.get_text(" ", strip=True)
            if candidate:
                excerpt = candidate
                break
    return {
        "title": title,
        "text": text,
        "excerpt": truncate_text(excerpt or text, _EXCERPT_CHARS),
        "length": len(text),
    }


@dataclass
class ExtractedPage:
    url: str
    title: str
    text: str = ""
    excerpt: Optional[str] = None
    length: Optional[int] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class _TerminalFetchError(Exception):
    pass


class ContentFetcher:
    """
    Fetches and extracts each URL independently. Transport errors and
    timeouts are retried with a fixed delay; HTTP status, content-type and
    empty-extraction failures are terminal for that URL. Never raises for
    an individual URL.

    `timeout` bounds a whole attempt, body download included, not just
    each socket read.
    """

    def __init__(
        self,
        max_attempts: int = 3,
        timeout: float = 15.0,
        retry_delay: float = 1.0,
        concurrency: int = 1,
        transport: Optional[httpx.BaseTransport] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if int(max_attempts) < 1:
            raise ValueError("max_attempts must be >= 1")
        if float(timeout) <= 0:
            raise ValueError("timeout must be > 0")
        self.max_attempts = int(max_attempts)
        self.timeout = float(timeout)
        self.retry_delay = max(0.0, float(retry_delay))
        self.concurrency = max(1, int(concurrency))
        self._transport = transport
        self._sleep = sleep

    def _client(self) -> httpx.Client:
        return httpx.Client(
            timeout=self.timeout,
            follow_redirects=True,
            headers={
                "User-Agent": DEFAULT_USER_AGENT,
                "Accept": "text/html,application/xhtml+xml;q=0.9,*/*;q=0.8",
            },
            transport=self._transport,
        )

    def fetch_all(
        self, targets: Iterable[Tuple[str, str]], trace_id: str = "-"
    ) -> List[ExtractedPage]:
        items = list(targets)
        with self._client() as client:
            if self.concurrency == 1 or len(items) <= 1:
                return [self._fetch_safe(client, url, title, trace_id) for url, title in items]
            with ThreadPoolExecutor(max_workers=min(self.concurrency, len(items))) as pool:
                return list(
                    pool.map(
                        lambda item: self._fetch_safe(client, item[0], item[1], trace_id),
                        items,
                    )
                )

    def fetch_one(self, url: str, title: str = "", trace_id: str = "-") -> ExtractedPage:
        with self._client() as client:
            return self._fetch_safe(client, url, title, trace_id)

    def _fetch_safe(
        self, client: httpx.Client, url: str, title: str, trace_id: str
    ) -> ExtractedPage:
        try:
            return self._fetch_with_retry(client, url, title, trace_id)
        except Exception as exc:
            logger.warning("[%s] unexpected failure for %s: %s", trace_id, url, exc)
            return ExtractedPage(url=url, title=title, error=f"{type(exc).__name__}: {exc}")

    def _fetch_with_retry(
        self, client: httpx.Client, url: str, title: str, trace_id: str
    ) -> ExtractedPage:
        if not is_valid_absolute_http_url(url):
            return ExtractedPage(url=url, title=title, error=f"Invalid URL: {url!r}")
        last_error = ""
        for attempt in range(1, self.max_attempts + 1):
            logger.debug("[%s] fetching %s (attempt %d/%d)", trace_id, url, attempt, self.max_attempts)
            try:
                article = self._fetch_and_extract(client, url)
            except _TerminalFetchError as exc:
                logger.warning("[%s] %s: %s", trace_id, url, exc)
                return ExtractedPage(url=url, title=title, error=str(exc))
            except httpx.TransportError as exc:
                kind = "timeout" if isinstance(exc, httpx.TimeoutException) else "transport error"
                last_error = f"{kind}: {exc}" if str(exc) else kind
                logger.warning(
                    "[%s] %s on attempt %d/%d for %s",
                    trace_id,
                    kind,
                    attempt,
                    self.max_attempts,
                    url,
                )
                if attempt < self.max_attempts:
                    self._sleep(self.retry_delay)
                continue
            logger.debug("[%s] extracted %s chars from %s", trace_id, article["length"], url)
            return ExtractedPage(
                url=url,
                title=article["title"] or title,
                text=article["text"],
                excerpt=article["excerpt"],
                length=article["length"],
            )
        return ExtractedPage(url=url, title=title, error=last_error or "fetch failed")

    def _fetch_and_extract(self, client: httpx.Client, url: str) -> Dict[str, Any]:
        deadline = time.monotonic() + self.timeout
        try:
            with client.stream("GET", url) as response:
                if not response.is_success:
                    raise _TerminalFetchError(f"HTTP error! status: {response.status_code} for {url}")
                content_type = response.headers.get("content-type", "")
                lowered = content_type.lower()
                if "text/html" not in lowered and "application/xhtml" not in lowered:
                    raise _TerminalFetchError(
                        f"Skipped non-HTML content type: {content_type or 'unknown'}"
                    )
                body = bytearray()
                for chunk in response.iter_bytes():
                    if time.monotonic() > deadline:
                        raise httpx.ReadTimeout(
                            f"attempt exceeded {self.timeout:g}s", request=response.request
                        )
                    body.extend(chunk)
                html = bytes(body).decode(response.encoding or "utf-8", errors="replace")
                final_url = str(response.url)
        except httpx.TransportError:
            raise
        except httpx.HTTPError as exc:
            raise _TerminalFetchError(f"{type(exc).__name__}: {exc}") from exc
        article = extract_main_content(html, final_url)
        if not article:
            raise _TerminalFetchError(f"no content extracted from {url}")
        return article
