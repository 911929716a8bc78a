import json
from typing import Any, Dict, Optional

KEEP_ALIVE = ": keep-alive\n\n"


def format_sse(record: Dict[str, Any], event_id: Optional[int] = None) -> str:
    event_type = str(record.get("event_type", "message") or "message")
    data = json.dumps(record, ensure_ascii=False, default=str)
    id_line = f"id: {event_id}\n" if event_id is not None else ""
    return f"{id_line}event: {event_type}\ndata: {data}\n\n"


def is_terminal(record: Dict[str, Any]) -> bool:
    return record.get("event_type") in {"report.generated", "workflow.error"}
