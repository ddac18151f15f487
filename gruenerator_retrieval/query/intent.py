"""
Query intent and document scope detection.

Both detectors are driven by ordered rule tables: a list of
``(pattern, result)`` entries evaluated top to bottom where the first match
wins. More specific phrases sit above generic catch-alls, so reordering a
table changes behavior. Nothing here raises; bad input degrades to neutral
defaults.
"""

import re
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Pattern, Sequence, Tuple, TypeVar

from gruenerator_retrieval.query.collections import get_default_collection_ids
from gruenerator_retrieval.query.filters import Bucket, FilterDict, FilterSpec, MatchType, build_filter
from gruenerator_retrieval.query.types import (
    ContentType,
    DocumentScope,
    IntentType,
    Language,
    QueryIntent,
)
from gruenerator_retrieval.shared.observability import get_logger

logger = get_logger(__name__)

MAX_KEYWORDS = 10
MATCH_CONFIDENCE = 0.8
DEFAULT_CONFIDENCE = 0.5


def _rx(pattern: str) -> Pattern:
    return re.compile(pattern, re.IGNORECASE | re.UNICODE)


# ============================================================================
# Rule tables
# ============================================================================


@dataclass(frozen=True)
class IntentRule:
    name: str
    pattern: Pattern
    intent: IntentType


GERMAN_INTENT_RULES: Tuple[IntentRule, ...] = (
    IntentRule("de_comparison", _rx(r"\b(unterschied\w*|vergleich\w*|versus|vs\.?|gegenüber|im gegensatz)\b"), IntentType.COMPARISON),
    IntentRule("de_howto", _rx(r"\b(wie (kann|können|mache|macht|funktioniert|gehe|beantrage)|anleitung|schritt für schritt|vorgehen)\b"), IntentType.HOWTO),
    IntentRule("de_list", _rx(r"\b(welche|liste\w*|aufzählung|nenne|auflisten)\b"), IntentType.LIST),
    IntentRule("de_example", _rx(r"\b(beispiel\w*|etwa)\b|\bz\.\s?b\."), IntentType.EXAMPLE),
    IntentRule("de_explanation", _rx(r"\b(warum|weshalb|wieso|erklär\w*|begründ\w*)\b"), IntentType.EXPLANATION),
    IntentRule("de_summary", _rx(r"\b(zusammenfass\w*|überblick|kurz gesagt|fasse)\b"), IntentType.SUMMARY),
    IntentRule("de_position", _rx(r"\b(position\w*|haltung|standpunkt|fordern|forderung\w*|was sagen)\b"), IntentType.POSITION),
    IntentRule("de_factual", _rx(r"\b(wann|wo|wer|wie viele|wieviel\w*|wie hoch|seit wann)\b"), IntentType.FACTUAL),
    IntentRule("de_definition", _rx(r"\b(was (ist|sind|bedeutet|heißt|heisst)|definition|bedeutung von|was versteht man)\b"), IntentType.DEFINITION),
)

ENGLISH_INTENT_RULES: Tuple[IntentRule, ...] = (
    IntentRule("en_comparison", _rx(r"\b(difference\w*|compare\w*|comparison|versus|vs\.?)\b"), IntentType.COMPARISON),
    IntentRule("en_howto", _rx(r"\b(how (to|do|can|does)|steps? to|guide|tutorial)\b"), IntentType.HOWTO),
    IntentRule("en_list", _rx(r"\b(which|list\w*|enumerate|name all)\b"), IntentType.LIST),
    IntentRule("en_example", _rx(r"\b(example\w*|for instance|such as)\b|\be\.g\."), IntentType.EXAMPLE),
    IntentRule("en_explanation", _rx(r"\b(why|explain\w*|reason\w*)\b"), IntentType.EXPLANATION),
    IntentRule("en_summary", _rx(r"\b(summar\w*|overview|in short|tl;?dr)\b"), IntentType.SUMMARY),
    IntentRule("en_position", _rx(r"\b(position|stance|opinion|view on|demand\w*)\b"), IntentType.POSITION),
    IntentRule("en_factual", _rx(r"\b(when|where|who|how many|how much)\b"), IntentType.FACTUAL),
    IntentRule("en_definition", _rx(r"\b(what (is|are|does)|define|definition|meaning of)\b"), IntentType.DEFINITION),
)


@dataclass(frozen=True)
class ScopeRule:
    name: str
    pattern: Pattern
    collections: Tuple[str, ...]
    title_filter: Optional[str] = None


# Specific document names first, regional and site triggers next, generic
# programme words last.
SCOPE_RULES: Tuple[ScopeRule, ...] = (
    ScopeRule("grundsatzprogramm", _rx(r"\bgrundsatzprogramm\w*"), ("grundsatz-system",), "Grundsatzprogramm 2020"),
    ScopeRule("eu_wahlprogramm", _rx(r"\b(eu-wahlprogramm\w*|europawahl\w*|europawahlprogramm\w*)"), ("grundsatz-system",), "EU-Wahlprogramm 2024"),
    ScopeRule("bayern", _rx(r"\b(bayern|bayerisch\w*)\b"), ("bayern-system",)),
    ScopeRule("hamburg", _rx(r"\bhamburg\w*"), ("hamburg-system",)),
    ScopeRule("schleswig_holstein", _rx(r"\bschleswig[- ]holstein\w*"), ("schleswig-holstein-system",)),
    ScopeRule("thueringen", _rx(r"\b(thüringen|thueringen|thüringer|thueringer)\b"), ("thueringen-system",)),
    ScopeRule("regierungsprogramm", _rx(r"\b(regierungsprogramm\w*|bundestagswahlprogramm\w*)"), ("grundsatz-system",), "Regierungsprogramm 2025"),
    ScopeRule("gruene_at", _rx(r"\bgruene\.at\b"), ("gruene-at-system",)),
    ScopeRule("oesterreich", _rx(r"\b(österreich\w*|oesterreich\w*)"), ("oesterreich-gruene-system", "gruene-at-system")),
    ScopeRule("gruene_de", _rx(r"\bgruene\.de\b"), ("gruene-de-system",)),
    ScopeRule("bundestagsfraktion", _rx(r"\b(bundestagsfraktion|gruene-bundestag\.de|fraktion im bundestag)"), ("bundestagsfraktion-system",)),
    ScopeRule("kommunalwiki", _rx(r"\b(kommunalwiki|kommunalpoliti\w*)"), ("kommunalwiki-system",)),
    ScopeRule("boell", _rx(r"\b(böll|boell)\w*"), ("boell-stiftung-system",)),
    ScopeRule("satzung", _rx(r"\bsatzung\w*"), ("satzungen-system",)),
    ScopeRule("parteiprogramm", _rx(r"\b(wahlprogramm\w*|parteiprogramm\w*)"), ("grundsatz-system",)),
)


@dataclass(frozen=True)
class SubcategoryRule:
    """Sets ``field`` to ``value``, or to capture group 1 when value is None."""

    name: str
    pattern: Pattern
    field: str
    value: Optional[str] = None


SUBCATEGORY_RULES: Tuple[SubcategoryRule, ...] = (
    SubcategoryRule("dossier", _rx(r"\bdossier\w*"), "content_type", "dossier"),
    SubcategoryRule("atlas", _rx(r"\b\w*atlas\b"), "content_type", "atlas"),
    SubcategoryRule("pressemitteilung", _rx(r"\bpressemitteilung\w*"), "content_type", "pressemitteilung"),
    SubcategoryRule("beschluss", _rx(r"\b(beschluss|beschlüsse\w*)"), "content_type", "beschluss"),
    SubcategoryRule("category_phrase", _rx(r"\bkategorie\s+([\wäöüß-]+)"), "primary_category"),
    SubcategoryRule("section", _rx(r"\b(?:kapitel|abschnitt)\s+([\w.äöüß-]+)"), "subcategories"),
)


_RuleT = TypeVar("_RuleT")


def first_match(rules: Iterable[_RuleT], text: str) -> Optional[Tuple[_RuleT, "re.Match"]]:
    """Return the first rule whose pattern matches ``text`` and the match."""
    for rule in rules:
        match = rule.pattern.search(text)
        if match:
            return rule, match
    return None


# ============================================================================
# Intent
# ============================================================================

GERMAN_STOPWORDS = frozenset(
    "der die das den dem des und oder ist sind war wird werden im zur zum ein eine einen "
    "nicht was wie welche welcher welches mit für auf von bei aus nach über auch sich "
    "es wir sie ich gibt kann können soll sollen".split()
)
ENGLISH_STOPWORDS = frozenset(
    "the is are was were what how which of and or to for with on from by at about does "
    "do can should there this that these those it we they".split()
)

_DIACRITIC_RE = re.compile(r"[äöüß]", re.IGNORECASE)
_KEYWORD_STRIP_RE = re.compile(r"[^a-z0-9äöüß\-\s]")
_YEAR_RE = re.compile(r"\b(19|20)\d{2}\b")
_QUESTION_START_RE = _rx(
    r"^(was|wie|wer|wo|wann|warum|weshalb|wieso|welche\w*|gibt es|what|how|who|where|when|why|which|is|are|does|do|can)\b"
)


def detect_language(query: str) -> Language:
    """German if German stop-word hits (plus a diacritic bonus) outnumber English ones."""
    tokens = re.findall(r"[\wäöüß]+", (query or "").lower())
    german = sum(1 for t in tokens if t in GERMAN_STOPWORDS)
    english = sum(1 for t in tokens if t in ENGLISH_STOPWORDS)
    if _DIACRITIC_RE.search(query or ""):
        german += 1
    if german > english:
        return Language.DE
    if english > german:
        return Language.EN
    return Language.UNKNOWN


def extract_keywords(query: str, max_keywords: int = MAX_KEYWORDS) -> List[str]:
    cleaned = _KEYWORD_STRIP_RE.sub(" ", (query or "").lower())
    return [tok for tok in cleaned.split() if len(tok) > 2][:max_keywords]


def _query_flags(query: str) -> Dict[str, bool]:
    stripped = query.strip()
    return {
        "question": stripped.endswith("?") or bool(_QUESTION_START_RE.match(stripped)),
        "short_query": len(stripped.split()) <= 3,
        "mentions_year": bool(_YEAR_RE.search(stripped)),
    }


def detect_intent(query: Optional[str], german_patterns: bool = True) -> QueryIntent:
    """
    Classify a query's language and intent type.

    German rules are tried before English ones (unless ``german_patterns``
    is off). The first matching rule sets the type with confidence 0.8;
    otherwise the type is GENERAL with confidence 0.5. Blank input returns
    UNKNOWN/UNKNOWN with confidence 0.
    """
    text = query if isinstance(query, str) else ("" if query is None else str(query))
    if not text.strip():
        return QueryIntent(type=IntentType.UNKNOWN, language=Language.UNKNOWN, confidence=0.0)

    rules: Sequence[IntentRule] = ENGLISH_INTENT_RULES
    if german_patterns:
        rules = GERMAN_INTENT_RULES + ENGLISH_INTENT_RULES

    hit = first_match(rules, text)
    if hit:
        rule = hit[0]
        intent_type, confidence, rule_name = rule.intent, MATCH_CONFIDENCE, rule.name
    else:
        intent_type, confidence, rule_name = IntentType.GENERAL, DEFAULT_CONFIDENCE, None

    intent = QueryIntent(
        type=intent_type,
        language=detect_language(text),
        confidence=confidence,
        keywords=tuple(extract_keywords(text)),
        flags=_query_flags(text),
        matched_rule=rule_name,
    )
    logger.debug(
        "Detected query intent",
        intent=intent.type.value,
        language=intent.language.value,
        rule=rule_name,
    )
    return intent


# ============================================================================
# Document scope
# ============================================================================


def detect_subcategory_filters(query: str) -> Dict[str, Any]:
    """Each field is set by the first rule that targets it."""
    filters: Dict[str, Any] = {}
    for rule in SUBCATEGORY_RULES:
        if rule.field in filters:
            continue
        match = rule.pattern.search(query)
        if not match:
            continue
        value = rule.value if rule.value is not None else match.group(1).strip(".-")
        if value:
            filters[rule.field] = value
    return filters


def detect_document_scope(
    query: Optional[str], default_collections: Optional[Sequence[str]] = None
) -> DocumentScope:
    """
    Infer which collection(s) a query targets from corpus trigger phrases.

    The first matching scope rule decides the collections and the optional
    exact title filter. Subcategory filters come from a separate table and
    are attached whichever scope rule matched (or none).
    """
    defaults = tuple(default_collections) if default_collections else tuple(get_default_collection_ids())
    text = query if isinstance(query, str) else ""
    if not text.strip():
        return DocumentScope(collections=defaults)

    subcategory_filters = detect_subcategory_filters(text)
    hit = first_match(SCOPE_RULES, text)
    if hit is None:
        return DocumentScope(collections=defaults, subcategory_filters=subcategory_filters)

    rule, match = hit
    logger.debug(
        "Detected document scope",
        rule=rule.name,
        collections=list(rule.collections),
        title_filter=rule.title_filter,
    )
    return DocumentScope(
        collections=rule.collections,
        document_title_filter=rule.title_filter,
        detected_phrase=match.group(0),
        subcategory_filters=subcategory_filters,
    )


# ============================================================================
# Store hints
# ============================================================================

PREFERRED_CONTENT_TYPES: Dict[IntentType, Tuple[ContentType, ...]] = {
    IntentType.DEFINITION: (ContentType.PARAGRAPH, ContentType.HEADING),
    IntentType.HOWTO: (ContentType.LIST, ContentType.PARAGRAPH),
    IntentType.COMPARISON: (ContentType.TABLE, ContentType.PARAGRAPH),
    IntentType.LIST: (ContentType.LIST, ContentType.TABLE),
    IntentType.EXAMPLE: (ContentType.PARAGRAPH, ContentType.CODE),
    IntentType.EXPLANATION: (ContentType.PARAGRAPH,),
    IntentType.FACTUAL: (ContentType.PARAGRAPH, ContentType.TABLE),
    IntentType.SUMMARY: (ContentType.PARAGRAPH, ContentType.HEADING),
    IntentType.POSITION: (ContentType.PARAGRAPH,),
}


def generate_search_filters(intent: Optional[QueryIntent]) -> FilterDict:
    """Advisory ``should`` clauses for the intent's preferred content types and language."""
    if intent is None:
        return {}
    specs: List[FilterSpec] = []
    content_types = PREFERRED_CONTENT_TYPES.get(intent.type, ())
    if content_types:
        specs.append(
            FilterSpec(
                field="content_type",
                value=[ct.value for ct in content_types],
                match_type=MatchType.ANY,
                bucket=Bucket.SHOULD,
            )
        )
    if intent.language is not Language.UNKNOWN:
        specs.append(FilterSpec(field="lang", value=intent.language.value, bucket=Bucket.SHOULD))
    return build_filter(specs)
