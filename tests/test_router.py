import threading

import pytest
from pydantic import ValidationError

from app.config import Settings
from app.events import QueriesGenerated, TopicSeeded, WorkflowError, parse_event
from app.router import EventRouter, Stage
from app.state_store import MemoryStateStore


class Recorder(Stage):
    subscribes = ("topic.seeded",)
    emits = ()

    def __init__(self, name, settings, store, fail=False, gate=None):
        super().__init__(settings, store)
        self.name = name
        self.fail = fail
        self.gate = gate
        self.seen = []

    def handle(self, event, ctx):
        if self.gate is not None:
            self.gate.wait(timeout=5)
        self.seen.append(event.topic)
        if self.fail:
            raise RuntimeError(f"{self.name} exploded")


class Failing(Recorder):
    emits = ("workflow.error",)


class Echo(Stage):
    name = "echo"
    subscribes = ("topic.seeded",)
    emits = ("queries.generated",)

    def handle(self, event, ctx):
        ctx.emit(QueriesGenerated(trace_id=ctx.trace_id, queries=[event.topic]))


class Sink(Stage):
    subscribes = ("queries.generated", "workflow.error")

    def __init__(self, settings, store):
        super().__init__(settings, store)
        self.name = "sink"
        self.events = []

    def handle(self, event, ctx):
        self.events.append(event)


@pytest.fixture
def deps():
    return Settings(), MemoryStateStore()


def test_every_subscriber_receives_the_event(deps):
    router = EventRouter(concurrent=False)
    a, b = Recorder("a", *deps), Recorder("b", *deps)
    router.register(a)
    router.register(b)

    router.emit(TopicSeeded(trace_id="t1", topic="x"))

    assert a.seen == ["x"]
    assert b.seen == ["x"]


def test_failing_subscriber_does_not_block_the_others(deps):
    router = EventRouter(concurrent=False)
    broken = Recorder("broken", *deps, fail=True)
    healthy = Recorder("healthy", *deps)
    router.register(broken)
    router.register(healthy)

    router.emit(TopicSeeded(trace_id="t1", topic="x"))

    assert healthy.seen == ["x"]


def test_stage_failure_becomes_workflow_error(deps):
    router = EventRouter(concurrent=False)
    failing = Failing("explosive", *deps, fail=True)
    sink = Sink(*deps)
    router.register(failing)
    router.register(sink)

    router.emit(TopicSeeded(trace_id="t9", topic="x"))

    assert len(sink.events) == 1
    err = sink.events[0]
    assert isinstance(err, WorkflowError)
    assert err.trace_id == "t9"
    assert err.stage == "explosive"
    assert err.error == "explosive exploded"


def test_stage_emits_downstream_event(deps):
    router = EventRouter(concurrent=False)
    sink = Sink(*deps)
    router.register(Echo(*deps))
    router.register(sink)

    router.emit(TopicSeeded(trace_id="t2", topic="seed"))

    assert [e.queries for e in sink.events] == [["seed"]]


def test_undeclared_emit_is_rejected(deps):
    router = EventRouter(concurrent=False)
    echo = Echo(*deps)

    with pytest.raises(ValueError):
        router.emit(WorkflowError(trace_id="t", stage="echo", error="nope"), source=echo)


def test_unknown_event_name_cannot_be_registered(deps):
    router = EventRouter()
    stage = Recorder("typo", *deps)
    stage.subscribes = ("exa.results.received",)

    with pytest.raises(ValueError):
        router.register(stage)


def test_broken_listener_does_not_stop_delivery(deps):
    router = EventRouter(concurrent=False)
    stage = Recorder("a", *deps)
    router.register(stage)

    def listener(_event):
        raise RuntimeError("observer down")

    router.add_listener(listener)
    router.emit(TopicSeeded(trace_id="t1", topic="x"))

    assert stage.seen == ["x"]


def test_concurrent_subscribers_run_independently(deps):
    router = EventRouter(concurrent=True)
    gate = threading.Event()
    # "slow" blocks until released; "fast" must finish without waiting for it.
    slow = Recorder("slow", *deps, gate=gate)
    fast = Recorder("fast", *deps)
    router.register(slow)
    router.register(fast)

    router.emit(TopicSeeded(trace_id="t3", topic="x"))

    assert not router.wait_idle(timeout=0.2)
    assert fast.seen == ["x"]
    assert slow.seen == []
    gate.set()
    assert router.wait_idle(timeout=5)
    assert slow.seen == ["x"]


def test_events_round_trip_through_the_tagged_union():
    event = parse_event({"name": "workflow.error", "traceId": "t4", "stage": "searcher", "error": "boom"})

    assert isinstance(event, WorkflowError)
    assert event.summary() == {"stage": "searcher", "error": "boom"}
    with pytest.raises(ValidationError):
        parse_event({"name": "exa.results.received", "traceId": "t4"})


def test_emit_validates_events_before_delivery(deps):
    router = EventRouter(concurrent=False)
    stage = Recorder("a", *deps)
    router.register(stage)

    router.emit({"name": "topic.seeded", "traceId": "t5", "topic": "from the wire"})

    assert stage.seen == ["from the wire"]
    with pytest.raises(ValidationError):
        router.emit({"name": "topic.seeded", "traceId": "t5"})
    with pytest.raises(ValidationError):
        router.emit({"name": "exa.results.received", "traceId": "t5"})
    assert stage.seen == ["from the wire"]


def test_subscribers_get_a_copy_of_the_emitted_event(deps):
    router = EventRouter(concurrent=False)
    sink = Sink(*deps)
    router.register(sink)
    event = QueriesGenerated(trace_id="t6", queries=["a"])

    router.emit(event)
    sink.events[0].queries.append("b")

    assert event.queries == ["a"]
