import logging
from queue import Empty, Queue
from typing import Iterator, Optional

from fastapi import FastAPI, HTTPException, Query
from fastapi.responses import JSONResponse, StreamingResponse

from app.config import Settings
from app.logging_config import setup_logging
from app.models import StartResearchRequest, StartResearchResponse, TraceStatusResponse
from app.pipeline import Pipeline
from app.sse import KEEP_ALIVE, format_sse, is_terminal
from app.state_store import ArtifactSchemaError, StateStoreError

settings = Settings.from_env()
setup_logging(settings)
logger = logging.getLogger(__name__)
logger.info("[startup] settings: %s", settings.redacted())

pipeline = Pipeline(settings)

app = FastAPI(title="Discovery Engine")

REPORT_NOT_FOUND = "Report not found. It might still be processing or the traceId is invalid."


@app.get("/health")
def health() -> dict:
    return {"status": "ok"}


@app.post("/start-research", response_model=StartResearchResponse)
def start_research(req: StartResearchRequest) -> StartResearchResponse:
    logger.info("Received request to start research for topic: %r", req.seed_topic)
    try:
        trace_id = pipeline.start(req.seed_topic)
    except StateStoreError as exc:
        logger.error("[start] could not persist seed topic: %s", exc)
        raise HTTPException(status_code=500, detail="Failed to persist the research topic.")
    except RuntimeError as exc:
        logger.error("[start] could not emit initial event: %s", exc)
        raise HTTPException(status_code=500, detail="Failed to start the research workflow.")
    return StartResearchResponse(trace_id=trace_id)


@app.get("/api/reports")
def get_report(trace_id: Optional[str] = Query(default=None, alias="traceId")) -> JSONResponse:
    if not trace_id or not trace_id.strip():
        return JSONResponse(status_code=400, content={"error": "Valid traceId is required"})
    trace_id = trace_id.strip()
    if ":" in trace_id:
        # Cannot name a stored trace.
        return JSONResponse(status_code=404, content={"error": REPORT_NOT_FOUND})
    try:
        report = pipeline.get_report(trace_id)
    except (StateStoreError, ArtifactSchemaError) as exc:
        logger.error("[%s] error retrieving report: %s", trace_id, exc, extra={"trace_id": trace_id})
        return JSONResponse(
            status_code=500,
            content={"error": "An internal server error occurred while retrieving the report."},
        )
    if report is None:
        logger.info("[%s] report not ready", trace_id, extra={"trace_id": trace_id})
        return JSONResponse(status_code=404, content={"error": REPORT_NOT_FOUND})
    return JSONResponse(status_code=200, content=report.model_dump(mode="json", by_alias=True))


@app.get("/api/traces/{trace_id}", response_model=TraceStatusResponse)
def get_trace(trace_id: str) -> TraceStatusResponse:
    try:
        status = pipeline.get_status(trace_id)
    except (StateStoreError, ArtifactSchemaError) as exc:
        raise HTTPException(status_code=500, detail=str(exc))
    except ValueError:
        raise HTTPException(status_code=404, detail="Trace not found")
    if status is None:
        raise HTTPException(status_code=404, detail="Trace not found")
    return status


def _event_stream(trace_id: str, q: Queue) -> Iterator[str]:
    seq = 0
    try:
        while True:
            try:
                record = q.get(timeout=15)
            except Empty:
                yield KEEP_ALIVE
                continue
            seq += 1
            yield format_sse(record, event_id=seq)
            if is_terminal(record):
                return
    finally:
        pipeline.unsubscribe(trace_id, q)


@app.get("/api/traces/{trace_id}/events")
def stream_events(trace_id: str) -> StreamingResponse:
    try:
        q = pipeline.subscribe(trace_id)
    except ValueError:
        raise HTTPException(status_code=404, detail="Trace not found")
    if q is None:
        raise HTTPException(status_code=404, detail="Trace not found")
    return StreamingResponse(
        _event_stream(trace_id, q),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
    )
