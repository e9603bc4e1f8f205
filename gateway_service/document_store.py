"""
Document store adapter: every call the gateway makes against a pymongo
``Database``. Reads come first; the write methods back the write tools,
which the security policy blocks in read-only mode.

Schema inference, sampling and the dispatch layer only ever talk to a
``DocumentStore``; tests swap in an in-memory fake with the same methods.
"""

from typing import Any, Dict, List, Mapping, Optional

from pymongo.database import Database
from pymongo.errors import OperationFailure

from logger import logger

SYSTEM_COLLECTION_PREFIX = "system."
MAX_FIND_LIMIT = 100


class DocumentStore:
    def __init__(self, db: Database):
        self._db = db

    @property
    def database_name(self) -> str:
        return self._db.name

    # ---------------------- COUNTS ----------------------

    def count_documents(
        self,
        collection_name: str,
        mongo_filter: Optional[Mapping[str, Any]] = None,
        limit: Optional[int] = None,
    ) -> int:
        kwargs = {"limit": limit} if limit else {}
        return self._db[collection_name].count_documents(dict(mongo_filter or {}), **kwargs)

    def estimated_count(self, collection_name: str) -> int:
        return self._db[collection_name].estimated_document_count()

    def collection_stats(self, collection_name: str) -> Dict[str, Any]:
        """``{"document_count", "avg_document_size"}`` via collStats.

        Falls back to the metadata estimate where collStats is unavailable
        (views, restricted users, servers that dropped the command).
        """
        try:
            stats = self._db.command("collStats", collection_name)
            return {
                "document_count": int(stats.get("count", 0) or 0),
                "avg_document_size": stats.get("avgObjSize"),
            }
        except OperationFailure as e:
            logger.debug("collStats failed for %s (%s), using estimate", collection_name, e)
            return {
                "document_count": self.estimated_count(collection_name),
                "avg_document_size": None,
            }

    # ---------------------- FETCHING ----------------------

    def fetch_all(self, collection_name: str) -> List[Dict[str, Any]]:
        return list(self._db[collection_name].find())

    def fetch_random_sample(self, collection_name: str, size: int) -> List[Dict[str, Any]]:
        """Server-side ``$sample``; may return fewer than *size* documents."""
        return list(self._db[collection_name].aggregate([{"$sample": {"size": size}}]))

    def sample_matching(
        self,
        collection_name: str,
        mongo_filter: Optional[Mapping[str, Any]],
        size: int,
    ) -> List[Dict[str, Any]]:
        pipeline: List[Dict[str, Any]] = []
        if mongo_filter:
            pipeline.append({"$match": dict(mongo_filter)})
        pipeline.append({"$sample": {"size": size}})
        return list(self._db[collection_name].aggregate(pipeline))

    def find(
        self,
        collection_name: str,
        mongo_filter: Optional[Mapping[str, Any]] = None,
        limit: int = 10,
        skip: int = 0,
        projection: Optional[Mapping[str, int]] = None,
        sort: Optional[Mapping[str, int]] = None,
    ) -> List[Dict[str, Any]]:
        limit = min(max(1, limit), MAX_FIND_LIMIT)
        cursor = self._db[collection_name].find(
            dict(mongo_filter or {}),
            dict(projection) if projection else None,
        )
        if sort:
            cursor = cursor.sort(list(sort.items()))
        return list(cursor.skip(max(0, skip)).limit(limit))

    def aggregate(self, collection_name: str, pipeline: List[Mapping[str, Any]]) -> List[Dict[str, Any]]:
        return list(self._db[collection_name].aggregate([dict(stage) for stage in pipeline]))

    def distinct(
        self,
        collection_name: str,
        field: str,
        mongo_filter: Optional[Mapping[str, Any]] = None,
    ) -> List[Any]:
        return self._db[collection_name].distinct(field, dict(mongo_filter or {}))

    def explain(self, command: Mapping[str, Any], verbosity: str) -> Dict[str, Any]:
        """Run the ``explain`` command for a find or aggregate *command* body."""
        return self._db.command("explain", dict(command), verbosity=verbosity)

    # ---------------------- METADATA ----------------------

    def list_collections(self) -> List[str]:
        """User-visible collection names, sorted; ``system.*`` excluded."""
        names = self._db.list_collection_names()
        return sorted(n for n in names if not n.startswith(SYSTEM_COLLECTION_PREFIX))

    def list_indexes(self, collection_name: str) -> List[Dict[str, Any]]:
        """Index descriptions: ``name``, ``keys`` (field → direction), ``unique``, ``sparse``."""
        indexes: List[Dict[str, Any]] = []
        for info in self._db[collection_name].list_indexes():
            indexes.append({
                "name": info.get("name", "_unnamed_"),
                "keys": dict(info.get("key", {})),
                "unique": info.get("unique", False),
                "sparse": info.get("sparse", False),
            })
        return indexes

    def database_stats(self) -> Dict[str, Any]:
        return self._db.command("dbStats")

    # ---------------------- WRITES ----------------------

    def insert_one(self, collection_name: str, document: Mapping[str, Any]) -> Any:
        return self._db[collection_name].insert_one(dict(document)).inserted_id

    def insert_many(self, collection_name: str, documents: List[Mapping[str, Any]], ordered: bool = True) -> List[Any]:
        result = self._db[collection_name].insert_many([dict(d) for d in documents], ordered=ordered)
        return list(result.inserted_ids)

    def update(
        self,
        collection_name: str,
        mongo_filter: Mapping[str, Any],
        update: Mapping[str, Any],
        upsert: bool = False,
        many: bool = False,
    ) -> Dict[str, Any]:
        collection = self._db[collection_name]
        method = collection.update_many if many else collection.update_one
        result = method(dict(mongo_filter), dict(update), upsert=upsert)
        return {
            "matched_count": result.matched_count,
            "modified_count": result.modified_count,
            "upserted_id": result.upserted_id,
        }

    def delete(self, collection_name: str, mongo_filter: Mapping[str, Any], many: bool = False) -> int:
        collection = self._db[collection_name]
        method = collection.delete_many if many else collection.delete_one
        return method(dict(mongo_filter)).deleted_count

    def create_index(self, collection_name: str, keys: Mapping[str, Any], **options) -> str:
        return self._db[collection_name].create_index(list(keys.items()), **options)

    def drop_index(self, collection_name: str, index_name: str) -> None:
        self._db[collection_name].drop_index(index_name)

    def create_collection(self, collection_name: str, **options) -> None:
        self._db.create_collection(collection_name, **options)

    def drop_collection(self, collection_name: str) -> None:
        self._db.drop_collection(collection_name)

    def rename_collection(self, collection_name: str, new_name: str, drop_target: bool = False) -> None:
        self._db[collection_name].rename(new_name, dropTarget=drop_target)

    def drop_database(self) -> None:
        self._db.client.drop_database(self._db.name)
