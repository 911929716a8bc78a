import pytest
from fastapi.testclient import TestClient

from app import main
from app.state_store import StateStoreError
from tests.conftest import TOPIC


client = TestClient(main.app)


@pytest.fixture
def pipeline(monkeypatch, make_pipeline):
    p = make_pipeline()
    monkeypatch.setattr(main, "pipeline", p)
    return p


def test_health():
    r = client.get("/health")

    assert r.status_code == 200
    assert r.json() == {"status": "ok"}


def test_start_research_then_fetch_report(pipeline):
    started = client.post("/start-research", json={"seed_topic": TOPIC})

    assert started.status_code == 200
    trace_id = started.json()["traceId"]
    assert trace_id

    r = client.get("/api/reports", params={"traceId": trace_id})

    assert r.status_code == 200
    body = r.json()
    assert body["traceId"] == trace_id
    assert body["seedTopic"] == TOPIC
    assert len(body["topQuestions"]) == 5
    assert body["metadata"] == {"totalQuestionsEvaluated": 6, "questionsInReport": 5}


@pytest.mark.parametrize(
    "payload",
    [{"seed_topic": ""}, {"seed_topic": "   "}, {}, {"seed_topic": TOPIC, "extra": 1}, {"seed_topic": 42}],
)
def test_start_research_validates_body(pipeline, payload):
    r = client.post("/start-research", json=payload)

    assert r.status_code == 422


def test_start_research_store_failure_is_500(pipeline, monkeypatch):
    def broken_start(_topic):
        raise StateStoreError("disk full")

    monkeypatch.setattr(pipeline, "start", broken_start)

    r = client.post("/start-research", json={"seed_topic": TOPIC})

    assert r.status_code == 500


@pytest.mark.parametrize("params", [{}, {"traceId": ""}, {"traceId": "   "}])
def test_report_requires_trace_id(pipeline, params):
    r = client.get("/api/reports", params=params)

    assert r.status_code == 400
    assert r.json() == {"error": "Valid traceId is required"}


def test_report_not_found_is_404(pipeline):
    r = client.get("/api/reports", params={"traceId": "unknown-trace"})

    assert r.status_code == 404
    assert r.json() == {"error": main.REPORT_NOT_FOUND}


def test_report_store_failure_is_500(pipeline, monkeypatch):
    def broken_get_report(_trace_id):
        raise StateStoreError("cannot read state")

    monkeypatch.setattr(pipeline, "get_report", broken_get_report)

    r = client.get("/api/reports", params={"traceId": "t1"})

    assert r.status_code == 500
    assert "error" in r.json()


def test_trace_status(pipeline):
    trace_id = client.post("/start-research", json={"seed_topic": TOPIC}).json()["traceId"]

    r = client.get(f"/api/traces/{trace_id}")

    assert r.status_code == 200
    body = r.json()
    assert body["traceId"] == trace_id
    assert body["state"] == "ReportReady"
    assert body["artifacts"][-1] == "final_report"
    assert body["events"][-1]["event_type"] == "report.generated"
    assert client.get("/api/traces/unknown-trace").status_code == 404


def test_trace_events_stream_ends_on_terminal_event(pipeline):
    trace_id = client.post("/start-research", json={"seed_topic": TOPIC}).json()["traceId"]

    r = client.get(f"/api/traces/{trace_id}/events")

    assert r.status_code == 200
    assert r.headers["content-type"].startswith("text/event-stream")
    assert "event: topic.seeded" in r.text
    assert r.text.rstrip().endswith("}")
    assert "event: report.generated" in r.text
    assert client.get("/api/traces/unknown-trace/events").status_code == 404


def test_trace_id_that_cannot_exist_is_not_found(pipeline):
    r = client.get("/api/reports", params={"traceId": "a:b"})

    assert r.status_code == 404
    assert r.json() == {"error": main.REPORT_NOT_FOUND}
    assert client.get("/api/traces/a:b").status_code == 404
    assert client.get("/api/traces/a:b/events").status_code == 404
