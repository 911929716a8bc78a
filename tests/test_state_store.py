import json

import pytest

from app.models import SearchResult
from app.state_store import (
    ArtifactSchemaError,
    FileStateStore,
    MemoryStateStore,
    StateStoreError,
    TraceState,
    artifact_key,
    create_state_store,
)


def test_artifact_key_is_trace_scoped():
    assert artifact_key("abc", "seed_topic") == "abc:seed_topic"
    with pytest.raises(ValueError):
        artifact_key("", "seed_topic")
    with pytest.raises(ValueError):
        artifact_key("a:b", "seed_topic")


def test_memory_store_miss_overwrite_and_isolation():
    store = MemoryStateStore()
    assert store.get("t:x") is None

    store.set("t:x", {"items": [1]})
    store.set("t:x", {"items": [1, 2]})
    value = store.get("t:x")
    value["items"].append(3)

    assert store.get("t:x") == {"items": [1, 2]}


def test_memory_store_rejects_unserializable_values():
    with pytest.raises(StateStoreError):
        MemoryStateStore().set("t:x", {"bad": object()})


def test_delete_prefix_only_touches_one_trace():
    store = MemoryStateStore()
    store.set("t1:a", 1)
    store.set("t1:b", 2)
    store.set("t2:a", 3)

    assert store.delete_prefix("t1:") == 2
    assert store.keys() == ["t2:a"]


def test_file_store_persists_across_instances(tmp_path):
    path = tmp_path / "nested" / "state.json"
    FileStateStore(path).set("t:seed_topic", "hello")

    reopened = FileStateStore(path)

    assert reopened.get("t:seed_topic") == "hello"
    assert reopened.keys("t:") == ["t:seed_topic"]
    assert not (tmp_path / "nested" / "state.json.tmp").exists()
    assert json.loads(path.read_text(encoding="utf-8")) == {"t:seed_topic": "hello"}


def test_file_store_reports_corrupt_file(tmp_path):
    path = tmp_path / "state.json"
    path.write_text("{not json", encoding="utf-8")

    with pytest.raises(StateStoreError):
        FileStateStore(path).get("t:seed_topic")


def test_create_state_store_picks_backend(tmp_path):
    assert isinstance(create_state_store(""), MemoryStateStore)
    assert isinstance(create_state_store(str(tmp_path / "s.json")), FileStateStore)


def test_trace_state_wraps_values_in_schema_envelope():
    store = MemoryStateStore()
    state = TraceState(store, "t1")

    state.put("search_results", [SearchResult(url="https://a.test", title="A", relevance_score=0.9)])

    raw = store.get("t1:search_results")
    assert raw["schema"] == "search_results"
    assert raw["version"] == 1
    assert raw["value"][0]["relevanceScore"] == 0.9
    loaded = state.load("search_results")
    assert loaded[0].url == "https://a.test"
    assert loaded[0].relevance_score == 0.9
    assert state.present() == ["search_results"]


def test_trace_state_rejects_mismatched_envelopes():
    store = MemoryStateStore()
    state = TraceState(store, "t1")

    store.set("t1:seed_topic", "bare string")
    with pytest.raises(ArtifactSchemaError):
        state.load("seed_topic")

    store.set("t1:seed_topic", {"schema": "seed_topic", "version": 99, "value": "x"})
    with pytest.raises(ArtifactSchemaError):
        state.load("seed_topic")

    store.set("t1:seed_topic", {"schema": "final_report", "version": 1, "value": "x"})
    with pytest.raises(ArtifactSchemaError):
        state.load("seed_topic")

    store.set("t1:generated_queries", {"schema": "generated_queries", "version": 1, "value": "nope"})
    with pytest.raises(ArtifactSchemaError):
        state.load("generated_queries")


def test_trace_state_unknown_artifact_and_missing_value():
    state = TraceState(MemoryStateStore(), "t1")

    assert state.load("final_report") is None
    assert not state.has("final_report")
    with pytest.raises(KeyError):
        state.put("not_an_artifact", 1)
