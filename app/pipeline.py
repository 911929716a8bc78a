import logging
import threading
import time
import uuid
from datetime import datetime, timezone
from queue import Queue
from typing import Any, Callable, Dict, List, Optional

from app.config import Settings
from app.events import TopicSeeded
from app.models import FinalReport, TraceStatusResponse
from app.router import EventRouter
from app.stages import LLMFactory, build_stages
from app.state_store import ARTIFACT_ORDER, StateStore, TraceState, artifact_key, create_state_store

logger = logging.getLogger(__name__)

_STATE_BY_ARTIFACT = {
    "seed_topic": "Started",
    "generated_queries": "QueriesGenerated",
    "search_results": "SearchCompleted",
    "extracted_content": "ContentExtracted",
    "generated_questions": "QuestionsGenerated",
    "evaluated_questions": "QuestionsJudged",
    "final_report": "ReportReady",
}


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class Pipeline:
    """
    Owns the store, the router and the stages. Starts traces, answers
    report/status lookups and fans router events out to live subscribers.
    """

    _MAX_EVENTS_PER_TRACE = 500
    _TERMINAL_EVENTS = ("report.generated", "workflow.error")
    _MAX_ID_ATTEMPTS = 5

    def __init__(
        self,
        settings: Settings,
        store: Optional[StateStore] = None,
        concurrent: bool = True,
        llm_factory: Optional[LLMFactory] = None,
        search_factory: Optional[Callable[[], Any]] = None,
        fetcher_factory: Optional[Callable[[], Any]] = None,
        sleep: Callable[[float], None] = time.sleep,
        event_log_ttl: float = 3600.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.settings = settings
        self.store = store if store is not None else create_state_store(settings.state_file)
        self.router = EventRouter(concurrent=concurrent)
        for stage in build_stages(
            settings,
            self.store,
            llm_factory=llm_factory,
            search_factory=search_factory,
            fetcher_factory=fetcher_factory,
            sleep=sleep,
        ):
            self.router.register(stage)
        self._lock = threading.Lock()
        self._issued: set[str] = set()
        self._events: Dict[str, List[Dict[str, Any]]] = {}
        self._subscribers: Dict[str, List[Queue]] = {}
        # trace id -> clock time its terminal event was recorded
        self._finished: Dict[str, float] = {}
        self.event_log_ttl = event_log_ttl
        self._clock = clock
        self.router.add_listener(self._record_event)

    def _new_trace_id(self) -> str:
        for _ in range(self._MAX_ID_ATTEMPTS):
            trace_id = str(uuid.uuid4())
            with self._lock:
                if trace_id in self._issued:
                    continue
            if self.store.get(artifact_key(trace_id, "seed_topic")) is not None:
                continue
            with self._lock:
                self._issued.add(trace_id)
            return trace_id
        raise RuntimeError("Could not allocate a unique trace id")

    def start(self, topic: str) -> str:
        if not isinstance(topic, str) or not topic.strip():
            raise ValueError("seed topic must be a non-empty string")
        trace_id = self._new_trace_id()
        TraceState(self.store, trace_id).put("seed_topic", topic)
        logger.info("[%s] research started for topic %r", trace_id, topic, extra={"trace_id": trace_id})
        self.router.emit(TopicSeeded(trace_id=trace_id, topic=topic))
        return trace_id

    def get_report(self, trace_id: str) -> Optional[FinalReport]:
        return TraceState(self.store, trace_id).load("final_report")

    def get_status(self, trace_id: str) -> Optional[TraceStatusResponse]:
        state = TraceState(self.store, trace_id)
        seed_topic = state.load("seed_topic")
        if seed_topic is None:
            return None
        present = state.present()
        stage_state = "Started"
        for name in ARTIFACT_ORDER:
            if name in present:
                stage_state = _STATE_BY_ARTIFACT[name]
        error = state.load("workflow_error")
        if error is not None and stage_state != "ReportReady":
            stage_state = "Errored"
        with self._lock:
            events = list(self._events.get(trace_id, []))
        return TraceStatusResponse(
            trace_id=trace_id,
            seed_topic=seed_topic,
            state=stage_state,
            artifacts=[name for name in ARTIFACT_ORDER if name in present]
            + (["workflow_error"] if "workflow_error" in present else []),
            error=error,
            events=events,
        )

    def exists(self, trace_id: str) -> bool:
        return TraceState(self.store, trace_id).has("seed_topic")

    def purge_trace(self, trace_id: str) -> int:
        """
        Drop every artifact of a trace. Nothing calls this automatically;
        only the in-memory event log of a finished trace is evicted on its
        own, `event_log_ttl` seconds after its terminal event.
        """
        removed = self.store.delete_prefix(f"{artifact_key(trace_id, '')}")
        with self._lock:
            self._events.pop(trace_id, None)
            self._finished.pop(trace_id, None)
            self._issued.discard(trace_id)
        logger.info("[%s] purged %d artifacts", trace_id, removed, extra={"trace_id": trace_id})
        return removed

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self.router.wait_idle(timeout)

    def run(self, topic: str, timeout: Optional[float] = None) -> tuple[str, Optional[FinalReport]]:
        trace_id = self.start(topic)
        self.wait(timeout)
        return trace_id, self.get_report(trace_id)

    def subscribe(self, trace_id: str) -> Optional[Queue]:
        if not self.exists(trace_id):
            return None
        q: Queue = Queue()
        with self._lock:
            history = list(self._events.get(trace_id, []))
        if not history:
            history = self._stored_outcome(trace_id)
        with self._lock:
            # Replay history first so a late subscriber still sees the terminal event.
            for record in history:
                q.put(record)
            self._subscribers.setdefault(trace_id, []).append(q)
        return q

    def _stored_outcome(self, trace_id: str) -> List[Dict[str, Any]]:
        """Terminal record rebuilt from the store once the event log is gone."""
        state = TraceState(self.store, trace_id)
        report = state.load("final_report")
        if report is not None:
            event_type = "report.generated"
            payload = {"questionsInReport": report.metadata.questions_in_report}
        else:
            error = state.load("workflow_error")
            if error is None:
                return []
            event_type = "workflow.error"
            payload = {"stage": error.stage, "error": error.error}
        return [
            {
                "trace_id": trace_id,
                "timestamp": _now_iso(),
                "event_type": event_type,
                "payload": payload,
            }
        ]

    def unsubscribe(self, trace_id: str, queue: Queue) -> None:
        with self._lock:
            subs = self._subscribers.get(trace_id, [])
            if queue in subs:
                subs.remove(queue)
            if not subs:
                self._subscribers.pop(trace_id, None)

    def _record_event(self, event: Any) -> None:
        record = {
            "trace_id": event.trace_id,
            "timestamp": _now_iso(),
            "event_type": event.name,
            "payload": event.summary(),
        }
        now = self._clock()
        with self._lock:
            self._evict_finished_locked(now)
            log = self._events.setdefault(event.trace_id, [])
            log.append(record)
            if len(log) > self._MAX_EVENTS_PER_TRACE:
                del log[: -self._MAX_EVENTS_PER_TRACE]
            if event.name in self._TERMINAL_EVENTS:
                self._finished.setdefault(event.trace_id, now)
            subscribers = list(self._subscribers.get(event.trace_id, []))
        for q in subscribers:
            q.put(record)

    def _evict_finished_locked(self, now: float) -> None:
        expired = [
            trace_id
            for trace_id, finished_at in self._finished.items()
            if now - finished_at > self.event_log_ttl and trace_id not in self._subscribers
        ]
        for trace_id in expired:
            self._finished.pop(trace_id, None)
            self._events.pop(trace_id, None)
            self._issued.discard(trace_id)
        if expired:
            logger.debug("[pipeline] evicted event logs of %d finished traces", len(expired))
