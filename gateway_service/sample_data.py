"""
Read operations that return documents or document-derived values.

Each operation checks the collection exists, runs its read against the
store, and masks every document before it leaves the service. A
server-side failure (typically a malformed filter or pipeline) is
reported as ``SampleFetchError``; nothing is retried.
"""

from typing import Any, Dict, List, Mapping, Optional

from pymongo.errors import PyMongoError

from data_masking import mask_document, mask_documents
from errors import InvalidQueryError, SampleFetchError
from logger import logger
from schema_inference import ensure_collection_exists, get_collection_stats

DEFAULT_SAMPLE_LIMIT = 5
MAX_SAMPLE_LIMIT = 20
DEFAULT_AGGREGATE_LIMIT = 100

# Stages that write their output back to the database.
AGGREGATE_WRITE_STAGES = frozenset({"$out", "$merge"})
EXPLAIN_VERBOSITIES = ("queryPlanner", "executionStats", "allPlansExecution")


def execute_sample_data(
    store,
    collection_name: str,
    query: Optional[Mapping[str, Any]] = None,
    limit: int = DEFAULT_SAMPLE_LIMIT,
) -> Dict[str, Any]:
    """Random, masked documents from *collection_name* (optionally filtered)."""
    ensure_collection_exists(store, collection_name)
    stats = get_collection_stats(store, collection_name)

    size = min(max(1, limit), MAX_SAMPLE_LIMIT)
    try:
        docs = store.sample_matching(collection_name, query, size)
    except PyMongoError as e:
        logger.warning("sample_data on %s failed: %s", collection_name, e)
        raise SampleFetchError(e)

    documents = mask_documents(docs)
    result: Dict[str, Any] = {
        "collection": collection_name,
        "document_count": stats["document_count"],
        "sample_size": len(documents),
        "documents": documents,
    }
    if query:
        result["query"] = dict(query)
    return result


def execute_find(
    store,
    collection_name: str,
    mongo_filter: Optional[Mapping[str, Any]] = None,
    limit: int = 10,
    skip: int = 0,
    projection: Optional[Mapping[str, int]] = None,
    sort: Optional[Mapping[str, int]] = None,
) -> Dict[str, Any]:
    """Filtered read with pagination; results are masked."""
    ensure_collection_exists(store, collection_name)
    mongo_filter = dict(mongo_filter or {})

    try:
        docs = store.find(
            collection_name, mongo_filter,
            limit=limit, skip=skip, projection=projection, sort=sort,
        )
        total = store.count_documents(collection_name, mongo_filter)
    except PyMongoError as e:
        logger.warning("find on %s failed: %s", collection_name, e)
        raise SampleFetchError(e)

    return {
        "collection": collection_name,
        "filter": mongo_filter,
        "documents": mask_documents(docs),
        "count": len(docs),
        "has_more": max(0, skip) + len(docs) < total,
    }


def execute_count(
    store,
    collection_name: str,
    mongo_filter: Optional[Mapping[str, Any]] = None,
) -> Dict[str, Any]:
    ensure_collection_exists(store, collection_name)
    mongo_filter = dict(mongo_filter or {})

    try:
        count = store.count_documents(collection_name, mongo_filter)
    except PyMongoError as e:
        logger.warning("count on %s failed: %s", collection_name, e)
        raise SampleFetchError(e)

    return {"collection": collection_name, "filter": mongo_filter, "count": count}


def execute_aggregate(
    store,
    collection_name: str,
    pipeline: List[Mapping[str, Any]],
    limit: Optional[int] = DEFAULT_AGGREGATE_LIMIT,
) -> Dict[str, Any]:
    """Run *pipeline* and mask the results.

    A ``$limit`` stage is appended unless the pipeline already has one.
    ``$out`` and ``$merge`` are refused since they write.
    """
    ensure_collection_exists(store, collection_name)

    stages = [dict(stage) for stage in pipeline]
    for stage in stages:
        writers = AGGREGATE_WRITE_STAGES.intersection(stage)
        if writers:
            raise InvalidQueryError(
                f"Pipeline stage {sorted(writers)[0]} is not allowed in aggregate",
                {"collection": collection_name},
            )

    if limit and not any("$limit" in stage for stage in stages):
        stages.append({"$limit": limit})

    try:
        results = store.aggregate(collection_name, stages)
    except PyMongoError as e:
        logger.warning("aggregate on %s failed: %s", collection_name, e)
        raise SampleFetchError(e)

    masked = mask_documents(results)
    return {
        "collection": collection_name,
        "pipeline": [dict(stage) for stage in pipeline],
        "results": masked,
        "count": len(masked),
    }


def execute_distinct(
    store,
    collection_name: str,
    field: str,
    mongo_filter: Optional[Mapping[str, Any]] = None,
) -> Dict[str, Any]:
    """Distinct values of *field*, masked as if each sat under that key."""
    ensure_collection_exists(store, collection_name)

    try:
        values = store.distinct(collection_name, field, mongo_filter)
    except PyMongoError as e:
        logger.warning("distinct on %s.%s failed: %s", collection_name, field, e)
        raise SampleFetchError(e)

    masked = [mask_document({field: value})[field] for value in values]
    return {
        "collection": collection_name,
        "field": field,
        "values": masked,
        "count": len(masked),
    }


def _index_used(query_planner: Mapping[str, Any]) -> Optional[str]:
    plan = query_planner.get("winningPlan") or {}
    return (plan.get("inputStage") or {}).get("indexName") or plan.get("indexName")


def execute_explain(
    store,
    collection_name: str,
    mongo_filter: Optional[Mapping[str, Any]] = None,
    pipeline: Optional[List[Mapping[str, Any]]] = None,
    verbosity: str = "queryPlanner",
) -> Dict[str, Any]:
    """Query plan for a find (*mongo_filter*) or an aggregate (*pipeline*)."""
    ensure_collection_exists(store, collection_name)
    if verbosity not in EXPLAIN_VERBOSITIES:
        raise InvalidQueryError(f"Unknown explain verbosity: {verbosity}")

    if pipeline is not None:
        if not pipeline:
            raise InvalidQueryError("Pipeline is required for aggregate explain")
        command = {"aggregate": collection_name, "pipeline": [dict(s) for s in pipeline], "cursor": {}}
        kind = "aggregate"
    else:
        command = {"find": collection_name, "filter": dict(mongo_filter or {})}
        kind = "find"

    try:
        raw = store.explain(command, verbosity)
    except PyMongoError as e:
        logger.warning("explain on %s failed: %s", collection_name, e)
        raise SampleFetchError(e)

    planner = raw.get("queryPlanner")
    if planner is None and raw.get("stages"):
        # Pipelines that are not fully pushed down report per stage.
        planner = raw["stages"][0].get("$cursor", {}).get("queryPlanner")
    planner = planner or {}
    stats = raw.get("executionStats")
    result: Dict[str, Any] = {
        "collection": collection_name,
        "type": kind,
        "winning_plan": planner.get("winningPlan"),
        "rejected_plans": len(planner.get("rejectedPlans") or []),
        "index_used": _index_used(planner),
    }
    if stats:
        result["execution_stats"] = {
            "n_returned": stats.get("nReturned", 0),
            "execution_time_ms": stats.get("executionTimeMillis", 0),
            "total_keys_examined": stats.get("totalKeysExamined", 0),
            "total_docs_examined": stats.get("totalDocsExamined", 0),
        }
    return result


def execute_db_stats(store) -> Dict[str, Any]:
    stats = store.database_stats()
    data_size = stats.get("dataSize", 0) or 0
    index_size = stats.get("indexSize", 0) or 0
    return {
        "database": store.database_name,
        "collections": stats.get("collections", 0) or 0,
        "objects": stats.get("objects", 0) or 0,
        "avg_obj_size": stats.get("avgObjSize", 0) or 0,
        "data_size": data_size,
        "storage_size": stats.get("storageSize", 0) or 0,
        "indexes": stats.get("indexes", 0) or 0,
        "index_size": index_size,
        "total_size": stats.get("totalSize") or data_size + index_size,
    }
