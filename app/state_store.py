import copy
import json
import logging
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from pydantic import TypeAdapter, ValidationError

from app.models import (
    EvaluatedQuestion,
    ExtractedContent,
    FinalReport,
    SearchResult,
    WorkflowErrorRecord,
)

logger = logging.getLogger(__name__)


class StateStoreError(RuntimeError):
    pass


class ArtifactSchemaError(ValueError):
    pass


def artifact_key(trace_id: str, name: str) -> str:
    trace = str(trace_id or "").strip()
    if not trace or ":" in trace:
        raise ValueError(f"Invalid trace id: {trace_id!r}")
    return f"{trace}:{name}"


class StateStore:
    """Artifact-agnostic key/value store. `get` returns None on a miss."""

    def get(self, key: str) -> Any:
        raise NotImplementedError

    def set(self, key: str, value: Any) -> None:
        raise NotImplementedError

    def keys(self, prefix: str = "") -> List[str]:
        raise NotImplementedError

    def delete_prefix(self, prefix: str) -> int:
        raise NotImplementedError


def _encode(key: str, value: Any) -> str:
    try:
        return json.dumps(value, ensure_ascii=False)
    except (TypeError, ValueError) as exc:
        raise StateStoreError(f"Value for {key} is not JSON serializable: {exc}") from exc


class MemoryStateStore(StateStore):
    def __init__(self) -> None:
        self._data: Dict[str, str] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Any:
        with self._lock:
            raw = self._data.get(key)
        return None if raw is None else json.loads(raw)

    def set(self, key: str, value: Any) -> None:
        encoded = _encode(key, value)
        with self._lock:
            self._data[key] = encoded

    def keys(self, prefix: str = "") -> List[str]:
        with self._lock:
            return sorted(k for k in self._data if k.startswith(prefix))

    def delete_prefix(self, prefix: str) -> int:
        with self._lock:
            doomed = [k for k in self._data if k.startswith(prefix)]
            for k in doomed:
                del self._data[k]
        return len(doomed)


class FileStateStore(StateStore):
    """
    Whole store kept as one JSON document. Every write rewrites the file
    through a temp file + replace, so readers never observe a torn write.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._lock = threading.Lock()
        self._data: Optional[Dict[str, Any]] = None

    def _load_locked(self) -> Dict[str, Any]:
        if self._data is not None:
            return self._data
        if not self.path.exists():
            self._data = {}
            return self._data
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise StateStoreError(f"Failed to read state file {self.path}: {exc}") from exc
        if not isinstance(raw, dict):
            raise StateStoreError(f"Invalid state file format: {self.path}")
        self._data = raw
        return self._data

    def _flush_locked(self, data: Dict[str, Any]) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp = self.path.with_suffix(self.path.suffix + ".tmp")
            tmp.write_text(json.dumps(data, ensure_ascii=False, indent=2), encoding="utf-8")
            tmp.replace(self.path)
        except OSError as exc:
            raise StateStoreError(f"Failed to write state file {self.path}: {exc}") from exc

    def get(self, key: str) -> Any:
        with self._lock:
            data = self._load_locked()
            if key not in data:
                return None
            return copy.deepcopy(data[key])

    def set(self, key: str, value: Any) -> None:
        _encode(key, value)
        with self._lock:
            data = self._load_locked()
            updated = dict(data)
            updated[key] = copy.deepcopy(value)
            self._flush_locked(updated)
            self._data = updated

    def keys(self, prefix: str = "") -> List[str]:
        with self._lock:
            return sorted(k for k in self._load_locked() if k.startswith(prefix))

    def delete_prefix(self, prefix: str) -> int:
        with self._lock:
            data = self._load_locked()
            kept = {k: v for k, v in data.items() if not k.startswith(prefix)}
            removed = len(data) - len(kept)
            if removed:
                self._flush_locked(kept)
                self._data = kept
        return removed


def create_state_store(state_file: str = "") -> StateStore:
    if str(state_file or "").strip():
        logger.info("[state] using file store at %s", state_file)
        return FileStateStore(state_file)
    return MemoryStateStore()


# name -> (schema version, adapter)
ARTIFACT_SCHEMAS: Dict[str, Tuple[int, TypeAdapter]] = {
    "seed_topic": (1, TypeAdapter(str)),
    "generated_queries": (1, TypeAdapter(List[str])),
    "search_results": (1, TypeAdapter(List[SearchResult])),
    "extracted_content": (1, TypeAdapter(List[ExtractedContent])),
    "generated_questions": (1, TypeAdapter(List[str])),
    "evaluated_questions": (1, TypeAdapter(List[EvaluatedQuestion])),
    "final_report": (1, TypeAdapter(FinalReport)),
    "workflow_error": (1, TypeAdapter(WorkflowErrorRecord)),
}

# Pipeline order; used to derive how far a trace has progressed.
ARTIFACT_ORDER = (
    "seed_topic",
    "generated_queries",
    "search_results",
    "extracted_content",
    "generated_questions",
    "evaluated_questions",
    "final_report",
)


class TraceState:
    """
    Typed view of one trace's artifacts. Values are stored inside a
    {schema, version, value} envelope and validated on the way out.
    """

    def __init__(self, store: StateStore, trace_id: str) -> None:
        self.store = store
        self.trace_id = trace_id

    def key(self, name: str) -> str:
        return artifact_key(self.trace_id, name)

    def _schema(self, name: str) -> Tuple[int, TypeAdapter]:
        if name not in ARTIFACT_SCHEMAS:
            raise KeyError(f"Unknown artifact: {name}")
        return ARTIFACT_SCHEMAS[name]

    def put(self, name: str, value: Any) -> None:
        version, adapter = self._schema(name)
        data = adapter.dump_python(value, mode="json", by_alias=True)
        self.store.set(self.key(name), {"schema": name, "version": version, "value": data})

    def load(self, name: str) -> Any:
        version, adapter = self._schema(name)
        raw = self.store.get(self.key(name))
        if raw is None:
            return None
        if not isinstance(raw, dict) or "value" not in raw:
            raise ArtifactSchemaError(f"Artifact {self.key(name)} is not wrapped in a schema envelope")
        if raw.get("schema") != name:
            raise ArtifactSchemaError(
                f"Artifact {self.key(name)} has schema {raw.get('schema')!r}, expected {name!r}"
            )
        if raw.get("version") != version:
            raise ArtifactSchemaError(
                f"Artifact {self.key(name)} has version {raw.get('version')!r}, expected {version}"
            )
        try:
            return adapter.validate_python(raw["value"])
        except ValidationError as exc:
            raise ArtifactSchemaError(f"Artifact {self.key(name)} is malformed: {exc}") from exc

    def has(self, name: str) -> bool:
        return self.store.get(self.key(name)) is not None

    def present(self) -> List[str]:
        prefix = f"{self.trace_id}:"
        return [k[len(prefix) :] for k in self.store.keys(prefix)]
