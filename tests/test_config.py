import json
import logging

import pytest

from app.config import ConfigurationError, Settings
from app.logging_config import JsonFormatter, TraceIdFilter, setup_logging


def test_from_env_reads_and_clamps(monkeypatch):
    monkeypatch.setenv("OPENAI_API_KEY", "sk-live")
    monkeypatch.setenv("DISCOVERY_TOP_N", "500")
    monkeypatch.setenv("FETCH_MAX_ATTEMPTS", "0")
    monkeypatch.setenv("FETCH_TIMEOUT_SEC", "not-a-number")
    monkeypatch.setenv("LOG_LEVEL", "debug")
    monkeypatch.setenv("LOG_FORMAT", "yaml")
    monkeypatch.delenv("EXA_API_KEY", raising=False)

    s = Settings.from_env(dotenv=False)

    assert s.openai_api_key == "sk-live"
    assert s.top_n == 50
    assert s.fetch_max_attempts == 1
    assert s.fetch_timeout_sec == 15.0
    assert s.log_level == "DEBUG"
    assert s.log_format == "text"
    with pytest.raises(ConfigurationError, match="Missing Exa API Key"):
        s.require_exa()


def test_redacted_hides_keys():
    out = Settings(openai_api_key="sk-secret").redacted()

    assert out["openai_api_key"] == "set"
    assert out["exa_api_key"] == ""
    assert "sk-secret" not in json.dumps(out)


def test_json_formatter_includes_trace_id():
    record = logging.LogRecord("app.stages", logging.INFO, __file__, 1, "hello %s", ("world",), None)
    TraceIdFilter().filter(record)
    assert record.trace_id == "-"

    record.trace_id = "t-1"
    payload = json.loads(JsonFormatter().format(record))

    assert payload["message"] == "hello world"
    assert payload["trace_id"] == "t-1"
    assert payload["level"] == "INFO"


def test_setup_logging_does_not_stack_handlers():
    root = logging.getLogger()
    setup_logging(Settings(log_format="json"))
    setup_logging(Settings(log_format="json"))

    ours = [h for h in root.handlers if getattr(h, "_discovery_handler", False)]

    assert len(ours) == 1
    assert isinstance(ours[0].formatter, JsonFormatter)
