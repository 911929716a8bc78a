import json
from typing import Any, Callable, Dict, List

import httpx
import pytest

from app.config import Settings
from app.pipeline import Pipeline
from app.state_store import MemoryStateStore
from discovery_engine import CRITERIA, ContentFetcher, SearchError, SearchHit

TOPIC = "Quantum computing applications in drug discovery"
QUERIES = ["query A", "query B", "query C"]
QUESTIONS = [f"How could research question {i} change the field?" for i in range(1, 7)]
# Four criterion scores per question, in CRITERIA order.
JUDGE_SCORES = {
    QUESTIONS[0]: (6, 6, 6, 6),
    QUESTIONS[1]: (9, 8, 9, 8),
    QUESTIONS[2]: (4, 5, 4, 5),
    QUESTIONS[3]: (8, 8, 8, 9),
    QUESTIONS[4]: (7, 7, 7, 7),
    QUESTIONS[5]: (5, 5, 6, 5),
}
FAILING_URL = "https://pages.test/query-B/1"


def judge_reply(user_prompt: str) -> str:
    for question, scores in JUDGE_SCORES.items():
        if f'"{question}"' in user_prompt:
            return json.dumps(
                {
                    name: {"score": score, "justification": f"{name} looks reasonable"}
                    for name, score in zip(CRITERIA, scores)
                }
            )
    return "I cannot score this."


def default_script() -> Dict[str, Any]:
    return {
        "query-generator": json.dumps({"queries": QUERIES}),
        "question-brainstormer": json.dumps({"questions": QUESTIONS}),
        "question-judger": judge_reply,
    }


class ScriptedLLM:
    def __init__(self, model: str, temperature: float, script: Dict[str, Any], calls: List[Dict[str, Any]]):
        self.model = model
        self.temperature = temperature
        self.script = script
        self.calls = calls

    def complete(self, system_prompt: str, user_prompt: str, stage: str = "unknown") -> str:
        self.calls.append(
            {"stage": stage, "model": self.model, "temperature": self.temperature, "user": user_prompt}
        )
        reply = self.script[stage]
        if isinstance(reply, Exception):
            raise reply
        return reply(user_prompt) if callable(reply) else reply


class FakeSearch:
    def __init__(self, failing: tuple = ()):
        self.failing = set(failing)
        self.queries: List[str] = []

    def search(self, query: str) -> List[SearchHit]:
        self.queries.append(query)
        if query in self.failing:
            raise SearchError("Exa search failed with status 500: boom")
        slug = query.replace(" ", "-")
        return [
            SearchHit(url=f"https://pages.test/{slug}/{i}", title=f"{query} result {i}", score=score)
            for i, score in enumerate((0.9, 0.7))
        ]


def article_html(title: str, body: str) -> str:
    return (
        "<html><head>"
        f"<title>{title}</title>"
        f'<meta name="description" content="Summary of {title}">'
        "<script>var tracking = 1;</script>"
        "</head><body>"
        "<nav>Home | About</nav>"
        f"<article><h1>{title}</h1><p>{body}</p></article>"
        "</body></html>"
    )


def pages_handler(failing_urls: tuple = (FAILING_URL,)) -> Callable[[httpx.Request], httpx.Response]:
    def handler(request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        if url in failing_urls:
            return httpx.Response(404, text="not found")
        return httpx.Response(
            200,
            html=article_html(
                f"Page {request.url.path}",
                "Quantum algorithms speed up molecular simulation for candidate screening.",
            ),
        )

    return handler


@pytest.fixture
def settings() -> Settings:
    return Settings(
        openai_api_key="sk-test",
        exa_api_key="exa-test",
        inter_call_delay_sec=0.0,
        fetch_retry_delay_sec=0.0,
    )


@pytest.fixture
def llm_calls() -> List[Dict[str, Any]]:
    return []


@pytest.fixture
def llm_script() -> Dict[str, Any]:
    return default_script()


@pytest.fixture
def llm_factory(llm_script, llm_calls):
    def factory(model: str, temperature: float) -> ScriptedLLM:
        return ScriptedLLM(model, temperature, llm_script, llm_calls)

    return factory


@pytest.fixture
def fake_search() -> FakeSearch:
    return FakeSearch()


@pytest.fixture
def fetcher_factory():
    def factory() -> ContentFetcher:
        return ContentFetcher(
            max_attempts=2,
            retry_delay=0.0,
            transport=httpx.MockTransport(pages_handler()),
            sleep=lambda _s: None,
        )

    return factory


@pytest.fixture
def make_pipeline(settings, llm_factory, fake_search, fetcher_factory):
    def build(**overrides: Any) -> Pipeline:
        pipeline_settings = overrides.pop("settings", settings)
        kwargs: Dict[str, Any] = {
            "store": MemoryStateStore(),
            "concurrent": False,
            "llm_factory": llm_factory,
            "search_factory": lambda: fake_search,
            "fetcher_factory": fetcher_factory,
            "sleep": lambda _s: None,
        }
        kwargs.update(overrides)
        return Pipeline(pipeline_settings, **kwargs)

    return build
