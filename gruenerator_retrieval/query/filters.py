"""
Filter construction for the vector store.

Filters are plain dicts in the store's DSL:

    {"must": [...], "should": [...], "must_not": [...]}

with conditions ``{"key": k, "match": {"value"|"any"|"text": ...}}`` or
``{"key": k, "range": {"gt"|"gte"|"lt"|"lte": ...}}``. The dict form is what
callers, logs and tests see; ``to_qdrant_filter`` converts it to
qdrant-client models at the adapter boundary.

An empty filter (``{}``) means "no constraint".
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional

from qdrant_client.models import (
    DatetimeRange,
    FieldCondition,
    Filter,
    MatchAny,
    MatchText,
    MatchValue,
    Range,
)

from gruenerator_retrieval.shared.observability import get_logger

logger = get_logger(__name__)

FilterDict = Dict[str, List[Dict[str, Any]]]

BUCKETS = ("must", "should", "must_not")
RANGE_OPS = ("gt", "gte", "lt", "lte")


class MatchType(str, Enum):
    EXACT = "exact"
    ANY = "any"
    TEXT = "text"
    RANGE = "range"


class Bucket(str, Enum):
    MUST = "must"
    SHOULD = "should"
    MUST_NOT = "must_not"


@dataclass(frozen=True)
class FilterSpec:
    """One structured constraint before translation into the store DSL."""

    field: str
    value: Any
    match_type: MatchType = MatchType.EXACT
    range_op: Optional[str] = None
    bucket: Bucket = Bucket.MUST


def _as_list(value: Any) -> List[Any]:
    if isinstance(value, (list, tuple, set, frozenset)):
        return [v for v in value if v is not None]
    return [value]


def build_condition(spec: FilterSpec) -> Optional[Dict[str, Any]]:
    """Translate a single spec; returns None for specs that constrain nothing."""
    if not spec.field or spec.value is None:
        return None

    match_type = MatchType(spec.match_type)

    if match_type is MatchType.EXACT:
        values = _as_list(spec.value)
        if len(values) == 1:
            return {"key": spec.field, "match": {"value": values[0]}}
        if not values:
            return None
        # A list handed to an exact match means "any of these"
        return {"key": spec.field, "match": {"any": values}}

    if match_type is MatchType.ANY:
        values = _as_list(spec.value)
        if not values:
            return None
        return {"key": spec.field, "match": {"any": values}}

    if match_type is MatchType.TEXT:
        text = str(spec.value).strip()
        if not text:
            return None
        return {"key": spec.field, "match": {"text": text}}

    # RANGE
    if isinstance(spec.value, Mapping):
        bounds = {
            op: spec.value[op]
            for op in RANGE_OPS
            if op in spec.value and spec.value[op] is not None
        }
    elif spec.range_op in RANGE_OPS:
        bounds = {spec.range_op: spec.value}
    else:
        bounds = {}
    if not bounds:
        return None
    return {"key": spec.field, "range": bounds}


def build_filter(specs: Iterable[FilterSpec]) -> FilterDict:
    """
    Translate structured filter specs into must/should/must_not buckets.

    Specs that cannot constrain anything (missing field, empty value list,
    unknown match type) are skipped, never raised. Only non-empty buckets
    appear in the result, so no specs yields ``{}``.
    """
    out: FilterDict = {}
    for spec in specs or ():
        try:
            condition = build_condition(spec)
        except ValueError:
            logger.debug("Skipping filter spec with unknown match type", spec=repr(spec))
            continue
        if condition is None:
            continue
        bucket = Bucket(spec.bucket).value
        out.setdefault(bucket, []).append(condition)
    return out


def merge_filters(*filters: Optional[Mapping[str, Any]]) -> FilterDict:
    """Concatenate the buckets of several filters; empty buckets are dropped."""
    out: FilterDict = {}
    for flt in filters:
        if not flt:
            continue
        for bucket in BUCKETS:
            conditions = flt.get(bucket) or []
            if conditions:
                out.setdefault(bucket, []).extend(conditions)
    return out


def is_empty_filter(flt: Optional[Mapping[str, Any]]) -> bool:
    return not flt or not any(flt.get(bucket) for bucket in BUCKETS)


def _to_field_condition(condition: Mapping[str, Any]) -> FieldCondition:
    key = condition["key"]
    if "range" in condition:
        bounds = condition["range"]
        if all(isinstance(v, (int, float)) for v in bounds.values()):
            return FieldCondition(key=key, range=Range(**bounds))
        return FieldCondition(key=key, range=DatetimeRange(**bounds))

    match = condition.get("match") or {}
    if "any" in match:
        return FieldCondition(key=key, match=MatchAny(any=list(match["any"])))
    if "text" in match:
        return FieldCondition(key=key, match=MatchText(text=match["text"]))
    return FieldCondition(key=key, match=MatchValue(value=match.get("value")))


def to_qdrant_filter(flt: Optional[Mapping[str, Any]]) -> Optional[Filter]:
    """Convert the dict DSL into a qdrant-client Filter (None when empty)."""
    if is_empty_filter(flt):
        return None
    kwargs = {
        bucket: [_to_field_condition(c) for c in flt[bucket]]
        for bucket in BUCKETS
        if flt.get(bucket)
    }
    return Filter(**kwargs)
