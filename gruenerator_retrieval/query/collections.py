"""
Registry of the system document collections.

Each entry maps a stable collection id (what callers and scope rules use)
to the physical Qdrant collection, plus per-collection search defaults.
Several regional views share one physical collection and are told apart
by a default payload filter on ``landesverband``.
"""

from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

from pydantic import Field

from gruenerator_retrieval.query.filters import (
    Bucket,
    FilterDict,
    FilterSpec,
    MatchType,
    build_filter,
    merge_filters,
)
from gruenerator_retrieval.shared.models import FrozenModel
from gruenerator_retrieval.shared.observability import get_logger

logger = get_logger(__name__)


class FilterableField(FrozenModel):
    field: str
    label: str
    type: str = "keyword"


class DefaultFilter(FrozenModel):
    field: str
    value: Union[str, Tuple[str, ...]]


class SystemCollection(FrozenModel):
    id: str
    store_collection: str
    name: str
    description: str = ""
    min_quality: float = Field(default=0.3, ge=0.0, le=1.0)
    recall_limit: int = Field(default=60, gt=0)
    filterable_fields: Tuple[FilterableField, ...] = ()
    default_filter: Optional[DefaultFilter] = None


def _fields(*pairs: Tuple[str, str]) -> Tuple[FilterableField, ...]:
    return tuple(FilterableField(field=f, label=label) for f, label in pairs)


_PROGRAMM = _fields(("primary_category", "Programm"))
_BEREICH_LAND = _fields(("primary_category", "Bereich"), ("country", "Land"))
_TYP_KATEGORIE = _fields(("content_type", "Typ"), ("primary_category", "Kategorie"))

SYSTEM_COLLECTIONS: Dict[str, SystemCollection] = {
    c.id: c
    for c in (
        SystemCollection(
            id="grundsatz-system",
            store_collection="grundsatz_documents",
            name="Grüne Grundsatzprogramme",
            description="Grundsatzprogramm 2020, EU-Wahlprogramm 2024, Regierungsprogramm 2025",
            filterable_fields=_PROGRAMM,
        ),
        SystemCollection(
            id="bundestagsfraktion-system",
            store_collection="bundestag_content",
            name="Grüne Bundestagsfraktion",
            description="Fachtexte, Ziele und Positionen von gruene-bundestag.de",
            filterable_fields=_BEREICH_LAND,
        ),
        SystemCollection(
            id="oesterreich-gruene-system",
            store_collection="oesterreich_gruene_documents",
            name="Die Grünen Österreich",
            description="Programme der Grünen, Die Grüne Alternative Österreich",
            filterable_fields=_PROGRAMM,
        ),
        SystemCollection(
            id="gruene-de-system",
            store_collection="gruene_de_documents",
            name="Grüne Deutschland (gruene.de)",
            description="Inhalte von gruene.de: Positionen, Themen und Aktuelles",
            filterable_fields=_BEREICH_LAND,
        ),
        SystemCollection(
            id="kommunalwiki-system",
            store_collection="kommunalwiki_documents",
            name="KommunalWiki",
            description="Fachwissen zur Kommunalpolitik (Heinrich-Böll-Stiftung)",
            filterable_fields=_fields(
                ("content_type", "Artikeltyp"),
                ("primary_category", "Kategorie"),
                ("subcategories", "Unterkategorien"),
            ),
        ),
        SystemCollection(
            id="gruene-at-system",
            store_collection="gruene_at_documents",
            name="Grüne Österreich (gruene.at)",
            description="Inhalte von gruene.at: Positionen, Themen und Aktuelles",
            filterable_fields=_BEREICH_LAND,
        ),
        SystemCollection(
            id="boell-stiftung-system",
            store_collection="boell_stiftung_documents",
            name="Heinrich-Böll-Stiftung",
            description="Analysen, Dossiers und Atlanten der Heinrich-Böll-Stiftung",
            filterable_fields=_fields(
                ("content_type", "Inhaltstyp"),
                ("primary_category", "Thema"),
                ("subcategories", "Unterkategorien"),
                ("region", "Region"),
            ),
        ),
        SystemCollection(
            id="satzungen-system",
            store_collection="satzungen_documents",
            name="Satzungen",
            description="Satzungen der Kreisverbände und Ortsverbände",
            filterable_fields=_fields(
                ("landesverband", "Landesverband"), ("gremium", "Gremium")
            ),
        ),
        SystemCollection(
            id="hamburg-system",
            store_collection="landesverbaende_documents",
            name="Grüne Hamburg",
            description="Beschlüsse und Pressemitteilungen der Grünen Hamburg",
            filterable_fields=_TYP_KATEGORIE,
            default_filter=DefaultFilter(field="landesverband", value="HH"),
        ),
        SystemCollection(
            id="schleswig-holstein-system",
            store_collection="landesverbaende_documents",
            name="Grüne Schleswig-Holstein",
            description="Wahlprogramm der Grünen Schleswig-Holstein zur Landtagswahl",
            filterable_fields=_PROGRAMM,
            default_filter=DefaultFilter(field="landesverband", value="SH"),
        ),
        SystemCollection(
            id="thueringen-system",
            store_collection="landesverbaende_documents",
            name="Grüne Thüringen",
            description="Beschlüsse, Wahlprogramme und Pressemitteilungen der Grünen Thüringen",
            filterable_fields=_TYP_KATEGORIE,
            default_filter=DefaultFilter(field="landesverband", value=("TH", "TH-F")),
        ),
        SystemCollection(
            id="bayern-system",
            store_collection="landesverbaende_documents",
            name="Grüne Bayern",
            description="Regierungsprogramm der Grünen Bayern zur Landtagswahl",
            filterable_fields=_PROGRAMM,
            default_filter=DefaultFilter(field="landesverband", value="BY"),
        ),
    )
}

SUBCATEGORY_FIELDS = ("primary_category", "content_type", "subcategories", "country", "region")


def is_system_collection_id(collection_id: str) -> bool:
    return collection_id in SYSTEM_COLLECTIONS


def get_system_collection(collection_id: str) -> Optional[SystemCollection]:
    return SYSTEM_COLLECTIONS.get(collection_id)


def resolve_store_collection(collection_id: str) -> str:
    """Physical collection name for an id; unknown ids are taken as physical names."""
    collection = SYSTEM_COLLECTIONS.get(collection_id)
    if collection is None:
        logger.warning("Unknown collection id, using it as store name", collection=collection_id)
        return collection_id
    return collection.store_collection


def get_default_collection_ids() -> List[str]:
    """All registered ids, in registration order."""
    return list(SYSTEM_COLLECTIONS)


def restrict_to_filterable(
    collection_id: str, subcategory_filters: Optional[Mapping[str, Any]]
) -> Dict[str, Any]:
    """
    Keep only the subcategory keys this collection declares as filterable.

    A payload field the collection does not index would turn into a ``must``
    that no chunk satisfies. Date bounds always pass, and unknown
    collections are not restricted.
    """
    if not subcategory_filters:
        return {}
    collection = SYSTEM_COLLECTIONS.get(collection_id)
    if collection is None:
        return dict(subcategory_filters)

    allowed = {f.field for f in collection.filterable_fields}
    kept = {
        key: value
        for key, value in subcategory_filters.items()
        if key not in SUBCATEGORY_FIELDS or key in allowed
    }
    dropped = sorted(set(subcategory_filters) - set(kept))
    if dropped:
        logger.debug(
            "Dropping subcategory filters not filterable in collection",
            collection=collection_id,
            dropped=dropped,
        )
    return kept


def build_subcategory_filter(
    subcategory_filters: Optional[Mapping[str, Any]],
) -> FilterDict:
    """
    Translate subcategory constraints into ``must`` conditions.

    Single values match exactly, lists of more than one value use match-any,
    and ``date_from``/``date_to`` become a range on ``published_at``.
    Unknown keys are ignored.
    """
    if not subcategory_filters:
        return {}

    specs: List[FilterSpec] = []
    for key in SUBCATEGORY_FIELDS:
        value = subcategory_filters.get(key)
        if not value:
            continue
        if isinstance(value, (list, tuple)):
            match_type = MatchType.EXACT if len(value) == 1 else MatchType.ANY
            specs.append(FilterSpec(field=key, value=list(value), match_type=match_type))
        else:
            specs.append(FilterSpec(field=key, value=str(value)))

    bounds = {}
    if subcategory_filters.get("date_from"):
        bounds["gte"] = subcategory_filters["date_from"]
    if subcategory_filters.get("date_to"):
        bounds["lte"] = subcategory_filters["date_to"]
    if bounds:
        specs.append(FilterSpec(field="published_at", value=bounds, match_type=MatchType.RANGE))

    return build_filter(specs)


def apply_default_filter(
    collection_id: str, existing: Optional[Mapping[str, Any]] = None
) -> FilterDict:
    """Append the collection's default ``must`` condition, if it has one."""
    collection = SYSTEM_COLLECTIONS.get(collection_id)
    if collection is None or collection.default_filter is None:
        return merge_filters(existing)

    default = collection.default_filter
    spec = FilterSpec(
        field=default.field,
        value=list(default.value) if isinstance(default.value, tuple) else default.value,
        match_type=MatchType.ANY if isinstance(default.value, tuple) else MatchType.EXACT,
        bucket=Bucket.MUST,
    )
    return merge_filters(existing, build_filter([spec]))
