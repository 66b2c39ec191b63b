from __future__ import annotations

import json
from typing import Any, Iterable, List, Mapping

from .errors import SerializationError


def _check_records(name: str, records: List[Any]) -> None:
    seen = set()
    for i, rec in enumerate(records):
        if not isinstance(rec, Mapping):
            raise SerializationError(f"{name}[{i}] is not an object")
        rid = rec.get("id")
        # bool is an int subclass; reject it explicitly
        if not isinstance(rid, int) or isinstance(rid, bool):
            raise SerializationError(f"{name}[{i}] has no integer id")
        if rid in seen:
            raise SerializationError(f"{name} contains duplicate id {rid}")
        seen.add(rid)


def serialize_collection(name: str, records: Iterable[Mapping[str, Any]]) -> str:
    """Serialize a collection snapshot to a compact JSON array."""
    items = list(records)
    _check_records(name, items)
    try:
        return json.dumps([dict(r) for r in items], ensure_ascii=False, separators=(",", ":"), allow_nan=False)
    except (TypeError, ValueError) as exc:
        raise SerializationError(f"Cannot serialize {name}: {exc}") from exc


def deserialize_collection(name: str, text: str) -> List[dict]:
    """Parse and validate a serialized collection."""
    try:
        data = json.loads(text)
    except ValueError as exc:
        raise SerializationError(f"Cannot parse {name}: {exc}") from exc
    if not isinstance(data, list):
        raise SerializationError(f"{name} is not a JSON array")
    _check_records(name, data)
    return data
