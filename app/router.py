import logging
import threading
from typing import Any, Callable, Dict, List, Optional, Tuple

from pydantic import BaseModel

from app.config import Settings
from app.events import EVENT_NAMES, WorkflowError, parse_event
from app.state_store import StateStore, TraceState

logger = logging.getLogger(__name__)

Listener = Callable[[Any], None]


class StageContext:
    def __init__(self, stage: "Stage", trace_id: str, router: "EventRouter") -> None:
        self.stage = stage
        self.trace_id = trace_id
        self.router = router
        self.state = TraceState(stage.store, trace_id)
        self.settings = stage.settings
        self.log = logging.LoggerAdapter(
            logging.getLogger(f"app.stages.{stage.name}"), {"trace_id": trace_id}
        )

    def emit(self, event: Any) -> None:
        if event.trace_id != self.trace_id:
            raise ValueError(
                f"{self.stage.name} tried to emit {event.name} for trace {event.trace_id} "
                f"while handling {self.trace_id}"
            )
        self.router.emit(event, source=self.stage)


class Stage:
    """
    One unit of processing. Subclasses set `name`, `subscribes`, `emits`
    and implement `handle`. Anything `handle` raises is turned into a
    `workflow.error` event for the trace; there is no automatic retry.
    """

    name: str = ""
    subscribes: Tuple[str, ...] = ()
    emits: Tuple[str, ...] = ()

    def __init__(self, settings: Settings, store: StateStore) -> None:
        self.settings = settings
        self.store = store

    def handle(self, event: Any, ctx: StageContext) -> None:
        raise NotImplementedError

    def run(self, event: Any, router: "EventRouter") -> None:
        ctx = StageContext(self, event.trace_id, router)
        try:
            self.handle(event, ctx)
        except Exception as exc:
            message = str(exc) or type(exc).__name__
            ctx.log.error("[%s] stage %s failed: %s", event.trace_id, self.name, message)
            if event.name == "workflow.error" or "workflow.error" not in self.emits:
                return
            ctx.emit(WorkflowError(trace_id=event.trace_id, stage=self.name, error=message))


class EventRouter:
    """
    Delivers every emitted event to each stage subscribed to its name.

    In concurrent mode each delivery runs on its own daemon thread, so two
    subscribers of one event run independently with no ordering between
    them. With concurrent=False deliveries run inline, depth-first, which
    is what the CLI and the tests use.
    """

    def __init__(self, concurrent: bool = True) -> None:
        self.concurrent = concurrent
        self._subscriptions: Dict[str, List[Stage]] = {}
        self._listeners: List[Listener] = []
        self._lock = threading.Lock()
        self._idle = threading.Condition(self._lock)
        self._in_flight = 0

    def register(self, stage: Stage) -> None:
        if not stage.name:
            raise ValueError("Stage must have a name")
        for event_name in tuple(stage.subscribes) + tuple(stage.emits):
            if event_name not in EVENT_NAMES:
                raise ValueError(f"Stage {stage.name} references unknown event {event_name!r}")
        with self._lock:
            for event_name in stage.subscribes:
                subs = self._subscriptions.setdefault(event_name, [])
                if stage not in subs:
                    subs.append(stage)
        logger.debug(
            "[router] registered %s subscribes=%s emits=%s",
            stage.name,
            list(stage.subscribes),
            list(stage.emits),
        )

    def subscribers(self, event_name: str) -> List[Stage]:
        with self._lock:
            return list(self._subscriptions.get(event_name, []))

    def add_listener(self, listener: Listener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def emit(self, event: Any, source: Optional[Stage] = None) -> None:
        # Subscribers receive a validated copy; unknown shapes fail here.
        if isinstance(event, BaseModel):
            event = event.model_dump(by_alias=True)
        event = parse_event(event)
        if source is not None and event.name not in source.emits:
            raise ValueError(f"Stage {source.name} does not declare event {event.name!r}")
        origin = source.name if source is not None else "api"
        logger.info(
            "[router] %s emitted by %s",
            event.name,
            origin,
            extra={"trace_id": event.trace_id},
        )
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(event)
            except Exception:
                # A broken observer must not stop the workflow.
                logger.exception("[router] listener failed for %s", event.name)
        for stage in self.subscribers(event.name):
            self._dispatch(stage, event)

    def _dispatch(self, stage: Stage, event: Any) -> None:
        with self._lock:
            self._in_flight += 1
        if not self.concurrent:
            self._deliver(stage, event)
            return
        t = threading.Thread(
            target=self._deliver,
            args=(stage, event),
            name=f"stage-{stage.name}",
            daemon=True,
        )
        try:
            t.start()
        except RuntimeError:
            self._finish_delivery()
            raise

    def _deliver(self, stage: Stage, event: Any) -> None:
        try:
            stage.run(event, self)
        except Exception:
            logger.exception(
                "[router] delivery of %s to %s failed",
                event.name,
                stage.name,
                extra={"trace_id": event.trace_id},
            )
        finally:
            self._finish_delivery()

    def _finish_delivery(self) -> None:
        with self._lock:
            self._in_flight -= 1
            if self._in_flight <= 0:
                self._in_flight = 0
                self._idle.notify_all()

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        with self._idle:
            return self._idle.wait_for(lambda: self._in_flight == 0, timeout=timeout)
