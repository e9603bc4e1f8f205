"""
Schema inference: sampling, per-field statistics, and collection summaries.

Each sampled document is walked recursively; every key produces a dotted
path (``address.city``) whose statistics record:

    types: how often each BsonType tag was seen at that path
    total: how many sampled documents had the path at all
    values: up to ENUM_MAX_VALUES distinct String/Number values

Embedded documents are recorded as ``Object`` and then descended into.
Arrays are recorded as a single ``Array`` field; their elements are not
expanded into separate paths.

From those statistics a ``FieldInfo`` is derived per path: frequency
(share of the sample containing the path), sorted type tags, whether the
field is polymorphic, and a list of enum values when the field looks
categorical (few distinct values relative to how often it occurs).
"""

import math
from collections import Counter
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional

from pydantic import BaseModel, ConfigDict

from bson_types import ENUM_CANDIDATE_TYPES, NULLISH_TYPES, BsonType, infer_bson_type
from errors import CollectionNotFoundError
from logger import logger

DEFAULT_SAMPLE_SIZE = 1000
MAX_SAMPLE_SIZE = 5000

ENUM_MAX_VALUES = 20
ENUM_MIN_OCCURRENCES = 10
ENUM_MAX_CARDINALITY_RATIO = 0.1


# ---------------------- MODELS ----------------------


class FieldInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    path: str
    types: List[BsonType]
    frequency: float
    is_polymorphic: bool = False
    enum_values: Optional[List[Any]] = None


class SchemaReport(BaseModel):
    collection: str
    document_count: int
    sample_size: int
    fields: Dict[str, FieldInfo]
    generated_at: str


class CollectionSummary(BaseModel):
    name: str
    document_count: int
    index_count: int
    avg_document_size: Optional[float] = None


class SchemaOverview(BaseModel):
    database: str
    collections: List[CollectionSummary]
    generated_at: str


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------- FIELD STATISTICS ----------------------


class FieldStats:
    """Mutable accumulator for one field path."""

    __slots__ = ("path", "types", "total", "values", "overflowed")

    def __init__(self, path: str):
        self.path = path
        self.types: Counter = Counter()
        self.total = 0
        # insertion-ordered set, never more than ENUM_MAX_VALUES entries
        self.values: Dict[Any, None] = {}
        # a further distinct value arrived after the set was full
        self.overflowed = False

    def record(self, value: Any, bson_type: BsonType) -> None:
        self.types[bson_type] += 1
        self.total += 1
        if bson_type not in ENUM_CANDIDATE_TYPES or value in self.values:
            return
        if len(self.values) < ENUM_MAX_VALUES:
            self.values[value] = None
        else:
            self.overflowed = True

    @property
    def distinct_count(self) -> int:
        return len(self.values) + (1 if self.overflowed else 0)

    def to_field_info(self, sample_size: int) -> FieldInfo:
        distinct = self.distinct_count
        non_null = [t for t in self.types if t not in NULLISH_TYPES]

        enum_values = None
        if (
            distinct > 0
            and distinct <= ENUM_MAX_VALUES
            and self.total >= ENUM_MIN_OCCURRENCES
            and distinct / self.total < ENUM_MAX_CARDINALITY_RATIO
        ):
            enum_values = list(self.values)

        return FieldInfo(
            path=self.path,
            types=sorted(self.types, key=lambda t: t.value),
            frequency=_round2(self.total / sample_size) if sample_size else 0.0,
            is_polymorphic=len(non_null) > 1,
            enum_values=enum_values,
        )


def _round2(x: float) -> float:
    """Round half-up to two decimals (``round`` would bank to even)."""
    return math.floor(x * 100 + 0.5) / 100


def traverse_document(
    doc: Mapping[str, Any],
    stats: Dict[str, FieldStats],
    prefix: str = "",
) -> None:
    """Record every key of *doc* (recursing into embedded documents)."""
    for key, value in doc.items():
        path = f"{prefix}.{key}" if prefix else key
        bson_type = infer_bson_type(value)

        field_stats = stats.get(path)
        if field_stats is None:
            field_stats = stats[path] = FieldStats(path)
        field_stats.record(value, bson_type)

        if bson_type is BsonType.OBJECT:
            traverse_document(value, stats, path)


def build_field_infos(
    docs: List[Mapping[str, Any]],
) -> Dict[str, FieldInfo]:
    """Accumulate statistics over *docs* and derive one FieldInfo per path."""
    stats: Dict[str, FieldStats] = {}
    for doc in docs:
        traverse_document(doc, stats)
    return {path: s.to_field_info(len(docs)) for path, s in stats.items()}


# ---------------------- COLLECTION METADATA ----------------------


def ensure_collection_exists(store, collection_name: str) -> None:
    if collection_name not in store.list_collections():
        raise CollectionNotFoundError(collection_name)


def get_collection_stats(store, collection_name: str) -> Dict[str, Any]:
    return store.collection_stats(collection_name)


def get_index_info(store, collection_name: str) -> List[Dict[str, Any]]:
    return store.list_indexes(collection_name)


def get_collection_summary(store, collection_name: str) -> CollectionSummary:
    stats = store.collection_stats(collection_name)
    indexes = store.list_indexes(collection_name)
    return CollectionSummary(
        name=collection_name,
        document_count=stats["document_count"],
        index_count=len(indexes),
        avg_document_size=stats.get("avg_document_size"),
    )


def generate_schema_overview(store) -> SchemaOverview:
    """One summary line per user collection in the connected database."""
    summaries = [
        get_collection_summary(store, name) for name in store.list_collections()
    ]
    return SchemaOverview(
        database=store.database_name,
        collections=summaries,
        generated_at=_now_iso(),
    )


# ---------------------- SCHEMA INFERENCE ----------------------


def infer_schema(
    store,
    collection_name: str,
    sample_size: int = DEFAULT_SAMPLE_SIZE,
) -> SchemaReport:
    """Sample *collection_name* and return per-field statistics.

    Small collections (``count <= sample_size``) are read in full; larger
    ones are sampled server-side with ``$sample``. Frequencies are relative
    to the number of documents actually returned.

    Raises ``CollectionNotFoundError`` for unknown (or ``system.*``) names.
    """
    ensure_collection_exists(store, collection_name)

    requested = min(max(1, sample_size), MAX_SAMPLE_SIZE)
    document_count = get_collection_stats(store, collection_name)["document_count"]

    if document_count <= requested:
        docs = store.fetch_all(collection_name)
    else:
        docs = store.fetch_random_sample(collection_name, min(requested, document_count))

    fields = build_field_infos(docs)

    logger.info(
        "Schema sampled %d/%d docs from %s: %d fields",
        len(docs), document_count, collection_name, len(fields),
    )
    return SchemaReport(
        collection=collection_name,
        document_count=document_count,
        sample_size=len(docs),
        fields=fields,
        generated_at=_now_iso(),
    )
