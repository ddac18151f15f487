"""German-aware query normalization used by lexical search and keyword extraction."""

import re
from typing import List

_UMLAUT_FOLDS = (
    ("ä", "ae"),
    ("ö", "oe"),
    ("ü", "ue"),
    ("ß", "ss"),
)

_PUNCT_RE = re.compile(r"[^\w\s-]", re.UNICODE)
_SPACE_RE = re.compile(r"\s+")


def fold_umlauts(text: str) -> str:
    """Replace German umlauts and sharp s with their ASCII digraphs."""
    out = (text or "").lower()
    for src, dst in _UMLAUT_FOLDS:
        out = out.replace(src, dst)
    return out


def normalize_query(text: str) -> str:
    """Lowercase, drop punctuation except hyphens, collapse whitespace."""
    lowered = (text or "").lower()
    stripped = _PUNCT_RE.sub(" ", lowered).replace("_", " ")
    return _SPACE_RE.sub(" ", stripped).strip()


def tokenize_query(text: str) -> List[str]:
    return [tok for tok in normalize_query(text).split(" ") if tok]


def generate_query_variants(term: str) -> List[str]:
    """
    Ordered, de-duplicated spellings of ``term`` to try against the text index.

    The lowercase term always comes first so an exact hit can be told apart
    from a variant hit.
    """
    base = (term or "").strip().lower()
    if not base:
        return []

    candidates = [base]
    normalized = normalize_query(base)
    candidates.append(normalized)
    candidates.append(fold_umlauts(normalized))
    if "-" in normalized:
        candidates.append(normalized.replace("-", " "))
        candidates.append(normalized.replace("-", ""))

    variants: List[str] = []
    for candidate in candidates:
        candidate = _SPACE_RE.sub(" ", candidate).strip()
        if candidate and candidate not in variants:
            variants.append(candidate)
    return variants
