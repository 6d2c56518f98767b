from __future__ import annotations

import dataclasses
import json
from datetime import datetime, timezone
from typing import Any


def utc_now_iso() -> str:
    """Current UTC time, ISO-8601 with seconds precision."""
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def _sort_key(value: Any) -> tuple:
    if isinstance(value, bool):
        return (1, str(value))
    if isinstance(value, (int, float)):
        return (0, value)
    return (1, str(value))


def to_jsonable(value: Any) -> Any:
    """
    Convert records into plain JSON types.
    Dataclasses become dicts in field order, sets become sorted lists and tuples become lists.
    """
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return {f.name: to_jsonable(getattr(value, f.name)) for f in dataclasses.fields(value)}
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, bytes):
        return value.decode("utf-8", "replace")
    if isinstance(value, dict):
        return {str(k): to_jsonable(v) for k, v in value.items()}
    if isinstance(value, (set, frozenset)):
        return [to_jsonable(v) for v in sorted(value, key=_sort_key)]
    if isinstance(value, (list, tuple)):
        return [to_jsonable(v) for v in value]
    return value


def stable_json_dumps(obj: Any, *, indent: int | None = None) -> str:
    """
    Dump JSON with sort_keys=True so repeated runs over the same facts produce identical text.
    """
    if indent is None:
        return json.dumps(to_jsonable(obj), sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return json.dumps(to_jsonable(obj), sort_keys=True, indent=indent, ensure_ascii=False)
