import os
from dataclasses import dataclass
from typing import Any

from dotenv import load_dotenv


class ConfigurationError(RuntimeError):
    pass


def _env_str(name: str, default: str) -> str:
    return str(os.getenv(name, default) or default).strip()


def _env_int(name: str, default: int, lo: int, hi: int) -> int:
    raw = os.getenv(name)
    try:
        value = int(str(raw).strip()) if raw is not None and str(raw).strip() else default
    except (TypeError, ValueError):
        value = default
    return max(lo, min(value, hi))


def _env_float(name: str, default: float, lo: float, hi: float) -> float:
    raw = os.getenv(name)
    try:
        value = float(str(raw).strip()) if raw is not None and str(raw).strip() else default
    except (TypeError, ValueError):
        value = default
    return max(lo, min(value, hi))


@dataclass(frozen=True)
class Settings:
    """Process-wide configuration, built once at startup and passed to every stage."""

    openai_api_key: str = ""
    exa_api_key: str = ""
    state_file: str = ""
    top_n: int = 5
    fetch_max_attempts: int = 3
    fetch_timeout_sec: float = 15.0
    fetch_retry_delay_sec: float = 1.0
    fetch_concurrency: int = 1
    llm_timeout_sec: float = 90.0
    search_timeout_sec: float = 30.0
    search_results_per_query: int = 5
    inter_call_delay_sec: float = 0.5
    query_model: str = "gpt-4o-mini"
    brainstorm_model: str = "gpt-4o"
    judge_model: str = "gpt-4o"
    log_level: str = "INFO"
    log_format: str = "text"

    @classmethod
    def from_env(cls, dotenv: bool = True) -> "Settings":
        if dotenv:
            load_dotenv()
        log_level = _env_str("LOG_LEVEL", "INFO").upper()
        if log_level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            log_level = "INFO"
        log_format = _env_str("LOG_FORMAT", "text").lower()
        if log_format not in {"text", "json"}:
            log_format = "text"
        return cls(
            openai_api_key=_env_str("OPENAI_API_KEY", ""),
            exa_api_key=_env_str("EXA_API_KEY", ""),
            state_file=_env_str("DISCOVERY_STATE_FILE", ""),
            top_n=_env_int("DISCOVERY_TOP_N", 5, 1, 50),
            fetch_max_attempts=_env_int("FETCH_MAX_ATTEMPTS", 3, 1, 10),
            fetch_timeout_sec=_env_float("FETCH_TIMEOUT_SEC", 15.0, 1.0, 120.0),
            fetch_retry_delay_sec=_env_float("FETCH_RETRY_DELAY_SEC", 1.0, 0.0, 30.0),
            fetch_concurrency=_env_int("FETCH_CONCURRENCY", 1, 1, 16),
            llm_timeout_sec=_env_float("LLM_TIMEOUT_SEC", 90.0, 5.0, 600.0),
            search_timeout_sec=_env_float("SEARCH_TIMEOUT_SEC", 30.0, 1.0, 120.0),
            search_results_per_query=_env_int("SEARCH_RESULTS_PER_QUERY", 5, 1, 25),
            inter_call_delay_sec=_env_float("INTER_CALL_DELAY_SEC", 0.5, 0.0, 10.0),
            query_model=_env_str("QUERY_MODEL", "gpt-4o-mini"),
            brainstorm_model=_env_str("BRAINSTORM_MODEL", "gpt-4o"),
            judge_model=_env_str("JUDGE_MODEL", "gpt-4o"),
            log_level=log_level,
            log_format=log_format,
        )

    def require_openai(self) -> str:
        if not self.openai_api_key:
            raise ConfigurationError("Missing OpenAI API Key")
        return self.openai_api_key

    def require_exa(self) -> str:
        if not self.exa_api_key:
            raise ConfigurationError("Missing Exa API Key")
        return self.exa_api_key

    def redacted(self) -> dict[str, Any]:
        out = dict(self.__dict__)
        for key in ("openai_api_key", "exa_api_key"):
            out[key] = "set" if out.get(key) else ""
        return out
