"""
Canonical record sets for cached reference data.

The backend hands model data over in several shapes: a bare list of records,
an object with `data` plus optional `fields`/`relations`, or something
unusable. `classify_payload` tags the shape once; `normalize` turns any of
them into a RecordSet and never raises, so one broken model degrades to an
empty set instead of failing the whole load.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

log = logging.getLogger(__name__)


@dataclass
class RecordSet:
    model_name: str
    records: List[Dict[str, Any]] = field(default_factory=list)
    field_meta: Dict[str, Any] = field(default_factory=dict)
    relation_meta: Dict[str, Any] = field(default_factory=dict)

    def __len__(self) -> int:
        return len(self.records)

    def ids(self) -> List[int]:
        return [r["id"] for r in self.records]

    def by_id(self, record_id: int) -> Optional[Dict[str, Any]]:
        for rec in self.records:
            if rec["id"] == record_id:
                return rec
        return None

    def to_blob(self) -> Dict[str, Any]:
        return {
            "model": self.model_name,
            "data": self.records,
            "fields": self.field_meta,
            "relations": self.relation_meta,
        }


@dataclass(frozen=True)
class ArrayPayload:
    records: Sequence[Any]


@dataclass(frozen=True)
class WrappedPayload:
    data: Sequence[Any]
    fields: Mapping[str, Any]
    relations: Mapping[str, Any]


@dataclass(frozen=True)
class MalformedPayload:
    raw: Any
    reason: str


RawPayload = Union[ArrayPayload, WrappedPayload, MalformedPayload]


def _is_sequence(value: Any) -> bool:
    return isinstance(value, (list, tuple))


def _as_meta(value: Any) -> Dict[str, Any]:
    return dict(value) if isinstance(value, Mapping) else {}


def classify_payload(raw: Any) -> RawPayload:
    if isinstance(raw, Mapping):
        data = raw.get("data")
        if _is_sequence(data):
            return WrappedPayload(data=data, fields=_as_meta(raw.get("fields")),
                                  relations=_as_meta(raw.get("relations")))
        if "data" in raw:
            return MalformedPayload(raw, f"'data' is {type(data).__name__}, not a list")
        return MalformedPayload(raw, "object without a 'data' list")
    if _is_sequence(raw):
        return ArrayPayload(records=raw)
    return MalformedPayload(raw, f"unexpected payload type {type(raw).__name__}")


def _valid_id(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _clean_records(model_name: str, items: Sequence[Any]) -> List[Dict[str, Any]]:
    """Keep mappings with an integer id, first occurrence wins."""
    out: List[Dict[str, Any]] = []
    seen = set()
    dropped = duplicates = 0
    for item in items:
        if not isinstance(item, Mapping) or not _valid_id(item.get("id")):
            dropped += 1
            continue
        if item["id"] in seen:
            duplicates += 1
            continue
        seen.add(item["id"])
        out.append(dict(item))
    if dropped or duplicates:
        log.warning("%s: dropped %d records without an integer id and %d duplicate ids",
                    model_name, dropped, duplicates)
    return out


def normalize(model_name: str, raw: Any,
              fields: Optional[Mapping[str, Any]] = None,
              relations: Optional[Mapping[str, Any]] = None) -> RecordSet:
    """Build a RecordSet from any payload shape.

    `fields`/`relations` are fallbacks for metadata the backend sends as
    sibling keys (`<model>_fields`) instead of inside the wrapped object.
    """
    try:
        shape = classify_payload(raw)
        if isinstance(shape, WrappedPayload):
            items: Sequence[Any] = shape.data
            field_meta = shape.fields or _as_meta(fields)
            relation_meta = shape.relations or _as_meta(relations)
        elif isinstance(shape, ArrayPayload):
            items = shape.records
            field_meta = _as_meta(fields)
            relation_meta = _as_meta(relations)
        else:
            if raw is not None:
                log.warning("%s: malformed payload (%s); storing no records", model_name, shape.reason)
            return RecordSet(model_name, [], _as_meta(fields), _as_meta(relations))
        return RecordSet(model_name, _clean_records(model_name, items), field_meta, relation_meta)
    except Exception:
        log.exception("%s: failed to normalize payload; storing no records", model_name)
        return RecordSet(model_name)


def from_blob(model_name: str, blob: Any) -> RecordSet:
    """Read back a stored blob, including bare lists written by older versions."""
    return normalize(model_name, blob)
