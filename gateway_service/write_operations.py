"""
Write tools: inserts, updates, deletes and collection/index administration.

The dispatch layer runs ``check_tool_security`` first, so none of these
are reached in read-only mode. Tools listed in
``CONFIRMATION_REQUIRED_TOOLS`` only report what they would do unless
called with ``confirm=True``.

Input problems and server rejections are raised as
``WriteOperationError``.
"""

from typing import Any, Dict, List, Mapping, Optional

from pymongo.errors import PyMongoError

from errors import CollectionExistsError, WriteOperationError
from logger import logger
from schema_inference import ensure_collection_exists
from security import requires_confirmation

DEFAULT_CAPPED_SIZE = 10 * 1024 * 1024
ID_INDEX_NAME = "_id_"


def _run(tool_name: str, func, *args, **kwargs):
    try:
        return func(*args, **kwargs)
    except PyMongoError as e:
        logger.warning("%s failed: %s", tool_name, e)
        raise WriteOperationError(tool_name, f"{tool_name} failed: {e}")


def _require_update_operators(tool_name: str, update: Mapping[str, Any]) -> None:
    if not any(key.startswith("$") for key in update):
        raise WriteOperationError(
            tool_name,
            "Update must contain MongoDB update operators (e.g., $set, $unset, $inc)",
        )


# ---------------------- DOCUMENTS ----------------------


def execute_insert_one(store, collection_name: str, document: Mapping[str, Any]) -> Dict[str, Any]:
    inserted_id = _run("insert_one", store.insert_one, collection_name, document)
    logger.info("insert_one into %s", collection_name)
    return {"collection": collection_name, "inserted_id": str(inserted_id)}


def execute_insert_many(
    store,
    collection_name: str,
    documents: List[Mapping[str, Any]],
    ordered: bool = True,
) -> Dict[str, Any]:
    if not documents:
        raise WriteOperationError("insert_many", "No documents provided to insert")
    inserted_ids = _run("insert_many", store.insert_many, collection_name, documents, ordered)
    logger.info("insert_many into %s: %d documents", collection_name, len(inserted_ids))
    return {
        "collection": collection_name,
        "inserted_count": len(inserted_ids),
        "inserted_ids": [str(i) for i in inserted_ids],
    }


def execute_update(
    store,
    collection_name: str,
    mongo_filter: Mapping[str, Any],
    update: Mapping[str, Any],
    upsert: bool = False,
    many: bool = False,
) -> Dict[str, Any]:
    tool_name = "update_many" if many else "update_one"
    _require_update_operators(tool_name, update)
    result = _run(tool_name, store.update, collection_name, mongo_filter, update, upsert=upsert, many=many)
    upserted_id = result.get("upserted_id")
    return {
        "collection": collection_name,
        "matched_count": result["matched_count"],
        "modified_count": result["modified_count"],
        "upserted_id": str(upserted_id) if upserted_id is not None else None,
    }


def execute_delete(
    store,
    collection_name: str,
    mongo_filter: Mapping[str, Any],
    many: bool = False,
    confirm: bool = False,
) -> Dict[str, Any]:
    tool_name = "delete_many" if many else "delete_one"
    if requires_confirmation(tool_name) and not confirm:
        limit = None if many else 1
        matched = _run(tool_name, store.count_documents, collection_name, mongo_filter, limit=limit)
        return {
            "collection": collection_name,
            "preview": True,
            "matched_count": matched,
            "deleted_count": 0,
        }

    deleted = _run(tool_name, store.delete, collection_name, mongo_filter, many=many)
    logger.info("%s on %s removed %d documents", tool_name, collection_name, deleted)
    return {"collection": collection_name, "preview": False, "deleted_count": deleted}


# ---------------------- INDEXES ----------------------


def execute_create_index(
    store,
    collection_name: str,
    keys: Mapping[str, Any],
    name: Optional[str] = None,
    unique: bool = False,
    sparse: bool = False,
    expire_after_seconds: Optional[int] = None,
) -> Dict[str, Any]:
    ensure_collection_exists(store, collection_name)
    if not keys:
        raise WriteOperationError("create_index", "Index keys must not be empty")

    options: Dict[str, Any] = {}
    if name:
        options["name"] = name
    if unique:
        options["unique"] = True
    if sparse:
        options["sparse"] = True
    if expire_after_seconds is not None:
        options["expireAfterSeconds"] = expire_after_seconds

    index_name = _run("create_index", store.create_index, collection_name, keys, **options)
    return {"collection": collection_name, "index_name": index_name, "keys": dict(keys)}


def execute_drop_index(store, collection_name: str, index_name: str, confirm: bool = False) -> Dict[str, Any]:
    if index_name == ID_INDEX_NAME:
        raise WriteOperationError("drop_index", "Cannot drop the _id index")

    ensure_collection_exists(store, collection_name)
    exists = any(idx["name"] == index_name for idx in store.list_indexes(collection_name))

    if requires_confirmation("drop_index") and not confirm:
        return {
            "collection": collection_name,
            "index_name": index_name,
            "preview": True,
            "index_exists": exists,
        }
    if not exists:
        raise WriteOperationError(
            "drop_index",
            f"Index '{index_name}' does not exist on collection '{collection_name}'",
        )

    _run("drop_index", store.drop_index, collection_name, index_name)
    return {"collection": collection_name, "index_name": index_name, "preview": False}


# ---------------------- COLLECTIONS ----------------------


def execute_create_collection(
    store,
    collection_name: str,
    capped: bool = False,
    size: Optional[int] = None,
    max_documents: Optional[int] = None,
) -> Dict[str, Any]:
    if collection_name in store.list_collections():
        raise CollectionExistsError(collection_name)

    options: Dict[str, Any] = {}
    if capped:
        options["capped"] = True
        options["size"] = size or DEFAULT_CAPPED_SIZE
        if max_documents:
            options["max"] = max_documents

    _run("create_collection", store.create_collection, collection_name, **options)
    logger.info("Created collection %s", collection_name)
    return {"collection": collection_name, "capped": capped}


def execute_drop_collection(store, collection_name: str, confirm: bool = False) -> Dict[str, Any]:
    ensure_collection_exists(store, collection_name)

    if requires_confirmation("drop_collection") and not confirm:
        return {
            "collection": collection_name,
            "preview": True,
            "document_count": _run("drop_collection", store.count_documents, collection_name),
        }

    _run("drop_collection", store.drop_collection, collection_name)
    logger.info("Dropped collection %s", collection_name)
    return {"collection": collection_name, "preview": False}


def execute_rename_collection(
    store,
    collection_name: str,
    new_name: str,
    drop_target: bool = False,
) -> Dict[str, Any]:
    ensure_collection_exists(store, collection_name)
    if not drop_target and new_name in store.list_collections():
        raise CollectionExistsError(new_name, "Set drop_target=true to overwrite.")

    _run("rename_collection", store.rename_collection, collection_name, new_name, drop_target)
    return {"old_name": collection_name, "new_name": new_name}


def execute_drop_database(store, confirm: bool = False) -> Dict[str, Any]:
    database = store.database_name
    if requires_confirmation("drop_database") and not confirm:
        return {
            "database": database,
            "preview": True,
            "collection_count": len(store.list_collections()),
        }

    _run("drop_database", store.drop_database)
    logger.warning("Dropped database %s", database)
    return {"database": database, "preview": False}
