"""
Shared retrieval records.

Everything here lives for one query only: candidates are created by the
store adapters, rescored by fusion/quality, and discarded after the
response is built. Payloads are validated once, at the store boundary.
"""

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

from pydantic import ConfigDict, field_validator

from gruenerator_retrieval.shared.models import FrozenModel
from gruenerator_retrieval.shared.observability import get_logger

logger = get_logger(__name__)

PointId = Union[str, int]


class Provenance(str, Enum):
    """Which ranked list(s) produced a candidate."""

    VECTOR = "vector"
    TEXT = "text"
    HYBRID = "hybrid"


class TextMatchType(str, Enum):
    """How the lexical search matched. Only TOKEN_FALLBACK is not a genuine hit."""

    EXACT = "exact"
    VARIANT = "variant"
    TOKEN_FALLBACK = "token_fallback"

    @property
    def is_genuine(self) -> bool:
        return self is not TextMatchType.TOKEN_FALLBACK


class ContentType(str, Enum):
    HEADING = "heading"
    PARAGRAPH = "paragraph"
    LIST = "list"
    TABLE = "table"
    CODE = "code"


class ChunkPayload(FrozenModel):
    """Indexed chunk payload with the fields retrieval reads.

    Unknown keys from the store are dropped; malformed optional values
    degrade to None so legacy points never fail a query.
    """

    model_config = ConfigDict(
        protected_namespaces=(),
        frozen=True,
        extra="ignore",
    )

    document_id: Optional[str] = None
    chunk_index: Optional[int] = None
    chunk_text: str = ""
    title: Optional[str] = None
    quality_score: Optional[float] = None
    content_type: Optional[ContentType] = None
    lang: Optional[str] = None
    category: Optional[str] = None

    @field_validator("document_id", mode="before")
    @classmethod
    def _coerce_document_id(cls, value: Any) -> Optional[str]:
        if value is None or value == "":
            return None
        return str(value)

    @field_validator("chunk_index", mode="before")
    @classmethod
    def _coerce_chunk_index(cls, value: Any) -> Optional[int]:
        if value is None or isinstance(value, bool):
            return None
        try:
            index = int(value)
        except (TypeError, ValueError):
            logger.warning("Dropping non-integer chunk_index", value=repr(value))
            return None
        if index < 0:
            logger.warning("Dropping negative chunk_index", value=index)
            return None
        return index

    @field_validator("chunk_text", mode="before")
    @classmethod
    def _coerce_text(cls, value: Any) -> str:
        return "" if value is None else str(value)

    @field_validator("quality_score", mode="before")
    @classmethod
    def _coerce_quality(cls, value: Any) -> Optional[float]:
        if value is None or isinstance(value, bool):
            return None
        try:
            score = float(value)
        except (TypeError, ValueError):
            logger.warning("Dropping non-numeric quality_score", value=repr(value))
            return None
        if not math.isfinite(score) or score < 0.0 or score > 1.0:
            logger.warning("Dropping out-of-range quality_score", value=score)
            return None
        return score

    @field_validator("content_type", mode="before")
    @classmethod
    def _coerce_content_type(cls, value: Any) -> Optional[str]:
        if value is None:
            return None
        normalized = str(value).strip().lower()
        if normalized in ContentType._value2member_map_:
            return normalized
        return None

    @classmethod
    def from_raw(cls, raw: Optional[Mapping[str, Any]]) -> "ChunkPayload":
        """Build a payload from an untyped store mapping."""
        return cls.model_validate(dict(raw or {}))


@dataclass(frozen=True)
class StoredPoint:
    """A point as returned by the vector store (search or scroll)."""

    id: PointId
    payload: ChunkPayload
    score: Optional[float] = None


@dataclass(frozen=True)
class TextHit:
    """A ranked lexical search result."""

    id: PointId
    score: float
    match_type: TextMatchType
    payload: ChunkPayload


@dataclass(frozen=True)
class SearchCandidate:
    """A chunk retrieval result with all scoring metadata."""

    id: PointId
    score: float
    payload: ChunkPayload
    provenance: Provenance
    original_vector_score: Optional[float] = None
    original_text_score: Optional[float] = None
    confidence: float = 1.0
    raw_rrf_score: Optional[float] = None
    match_type: Optional[TextMatchType] = None
    collection: Optional[str] = None
    is_context: bool = False  # added by context expansion, not ranked directly

    def __post_init__(self):
        if not math.isfinite(self.score):
            raise ValueError(f"candidate {self.id!r} has non-finite score {self.score}")

    @property
    def document_id(self) -> Optional[str]:
        return self.payload.document_id

    @property
    def chunk_index(self) -> Optional[int]:
        return self.payload.chunk_index

    @property
    def chunk_key(self) -> Tuple[Any, Any]:
        """Identity of the underlying chunk, used for context de-duplication."""
        if self.payload.document_id is None or self.payload.chunk_index is None:
            return (self.collection, self.id)
        return (self.payload.document_id, self.payload.chunk_index)

    @classmethod
    def from_vector_point(
        cls, point: StoredPoint, collection: Optional[str] = None
    ) -> "SearchCandidate":
        score = point.score if point.score is not None else 0.0
        return cls(
            id=point.id,
            score=score,
            payload=point.payload,
            provenance=Provenance.VECTOR,
            original_vector_score=score,
            collection=collection,
        )

    @classmethod
    def from_text_hit(
        cls, hit: TextHit, collection: Optional[str] = None
    ) -> "SearchCandidate":
        return cls(
            id=hit.id,
            score=hit.score,
            payload=hit.payload,
            provenance=Provenance.TEXT,
            original_text_score=hit.score,
            match_type=hit.match_type,
            collection=collection,
        )


class IntentType(str, Enum):
    DEFINITION = "definition"
    HOWTO = "howto"
    COMPARISON = "comparison"
    LIST = "list"
    EXAMPLE = "example"
    EXPLANATION = "explanation"
    FACTUAL = "factual"
    SUMMARY = "summary"
    POSITION = "position"
    GENERAL = "general"
    UNKNOWN = "unknown"


class Language(str, Enum):
    DE = "de"
    EN = "en"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class QueryIntent:
    type: IntentType
    language: Language
    confidence: float
    keywords: Tuple[str, ...] = ()
    flags: Dict[str, bool] = field(default_factory=dict)
    matched_rule: Optional[str] = None


@dataclass(frozen=True)
class DocumentScope:
    collections: Tuple[str, ...]
    document_title_filter: Optional[str] = None
    detected_phrase: Optional[str] = None
    subcategory_filters: Dict[str, Any] = field(default_factory=dict)

    @property
    def narrowed(self) -> bool:
        return self.detected_phrase is not None


@dataclass
class ChunkContext:
    center: SearchCandidate
    context: List[SearchCandidate] = field(default_factory=list)
