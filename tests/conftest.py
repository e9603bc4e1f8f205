"""
Test Configuration

In-memory stand-ins for pymongo so the suite runs without a server.
"""

import threading

import pytest
from pymongo.errors import OperationFailure, ServerSelectionTimeoutError

from config import RetryPolicy, ServerConfig
from document_store import SYSTEM_COLLECTION_PREFIX


def _matches(doc, mongo_filter):
    return all(doc.get(k) == v for k, v in (mongo_filter or {}).items())


class FakeStore:
    """Implements the DocumentStore surface over plain lists of dicts."""

    def __init__(self, collections=None, database_name="testdb", sample_cap=None):
        self.collections = collections or {}
        self.database_name = database_name
        self.sample_cap = sample_cap
        self.fail_with = None
        self.calls = []
        self.extra_indexes = {}

    def _docs(self, name):
        return self.collections.get(name, [])

    def count_documents(self, name, mongo_filter=None, limit=None):
        self.calls.append(("count_documents", name))
        if self.fail_with is not None:
            raise self.fail_with
        count = len([d for d in self._docs(name) if _matches(d, mongo_filter)])
        return min(count, limit) if limit else count

    def estimated_count(self, name):
        return len(self._docs(name))

    def collection_stats(self, name):
        return {"document_count": len(self._docs(name)), "avg_document_size": 120.4}

    def fetch_all(self, name):
        self.calls.append(("fetch_all", name))
        return [dict(d) for d in self._docs(name)]

    def fetch_random_sample(self, name, size):
        self.calls.append(("fetch_random_sample", name, size))
        if self.sample_cap is not None:
            size = min(size, self.sample_cap)
        return [dict(d) for d in self._docs(name)[:size]]

    def sample_matching(self, name, mongo_filter, size):
        self.calls.append(("sample_matching", name, size))
        if self.fail_with is not None:
            raise self.fail_with
        return [dict(d) for d in self._docs(name) if _matches(d, mongo_filter)][:size]

    def find(self, name, mongo_filter=None, limit=10, skip=0, projection=None, sort=None):
        self.calls.append(("find", name))
        if self.fail_with is not None:
            raise self.fail_with
        matched = [dict(d) for d in self._docs(name) if _matches(d, mongo_filter)]
        return matched[skip:skip + limit]

    def aggregate(self, name, pipeline):
        self.calls.append(("aggregate", name, pipeline))
        if self.fail_with is not None:
            raise self.fail_with
        docs = [dict(d) for d in self._docs(name)]
        for stage in pipeline:
            if "$match" in stage:
                docs = [d for d in docs if _matches(d, stage["$match"])]
            elif "$limit" in stage:
                docs = docs[:stage["$limit"]]
        return docs

    def distinct(self, name, field, mongo_filter=None):
        if self.fail_with is not None:
            raise self.fail_with
        values = []
        for doc in self._docs(name):
            if _matches(doc, mongo_filter) and field in doc and doc[field] not in values:
                values.append(doc[field])
        return values

    def explain(self, command, verbosity):
        self.calls.append(("explain", command, verbosity))
        if self.fail_with is not None:
            raise self.fail_with
        result = {
            "queryPlanner": {
                "winningPlan": {"stage": "FETCH", "inputStage": {"stage": "IXSCAN", "indexName": "status_1"}},
                "rejectedPlans": [{"stage": "COLLSCAN"}],
            },
        }
        if verbosity != "queryPlanner":
            result["executionStats"] = {"nReturned": 2, "executionTimeMillis": 1, "totalKeysExamined": 2, "totalDocsExamined": 2}
        return result

    def database_stats(self):
        return {"collections": len(self.collections), "objects": 4, "dataSize": 400, "indexSize": 100}

    # writes

    def insert_one(self, name, document):
        if self.fail_with is not None:
            raise self.fail_with
        doc = dict(document)
        doc.setdefault("_id", len(self._docs(name)) + 100)
        self.collections.setdefault(name, []).append(doc)
        return doc["_id"]

    def insert_many(self, name, documents, ordered=True):
        return [self.insert_one(name, d) for d in documents]

    def update(self, name, mongo_filter, update, upsert=False, many=False):
        matched = [d for d in self._docs(name) if _matches(d, mongo_filter)]
        if not many:
            matched = matched[:1]
        for doc in matched:
            doc.update(update.get("$set", {}))
        upserted_id = None
        if not matched and upsert:
            upserted_id = self.insert_one(name, {**mongo_filter, **update.get("$set", {})})
        return {"matched_count": len(matched), "modified_count": len(matched), "upserted_id": upserted_id}

    def delete(self, name, mongo_filter, many=False):
        docs = self._docs(name)
        doomed = [d for d in docs if _matches(d, mongo_filter)]
        if not many:
            doomed = doomed[:1]
        self.collections[name] = [d for d in docs if d not in doomed]
        return len(doomed)

    def create_index(self, name, keys, **options):
        self.calls.append(("create_index", name, dict(keys), options))
        return options.get("name") or "_".join(f"{k}_{v}" for k, v in keys.items())

    def drop_index(self, name, index_name):
        self.calls.append(("drop_index", name, index_name))

    def create_collection(self, name, **options):
        self.calls.append(("create_collection", name, options))
        self.collections[name] = []

    def drop_collection(self, name):
        self.collections.pop(name, None)

    def rename_collection(self, name, new_name, drop_target=False):
        self.collections[new_name] = self.collections.pop(name)

    def drop_database(self):
        self.collections.clear()

    def list_collections(self):
        return sorted(
            n for n in self.collections if not n.startswith(SYSTEM_COLLECTION_PREFIX)
        )

    def list_indexes(self, name):
        return [{"name": "_id_", "keys": {"_id": 1}, "unique": False, "sparse": False}] + [
            {"name": n, "keys": {}, "unique": False, "sparse": False} for n in self.extra_indexes.get(name, [])
        ]


class FakeDatabase:
    def __init__(self, name):
        self.name = name


class FakeAdmin:
    def __init__(self, client):
        self._client = client

    def command(self, name):
        client = self._client
        if client.ping_started is not None:
            client.ping_started.set()
        if client.ping_release is not None:
            client.ping_release.wait(5)
        if client.fail:
            raise ServerSelectionTimeoutError("no servers found")
        return {"ok": 1}


class FakeMongoClient:
    def __init__(self, uri="mongodb://localhost/testdb", fail=False, close_error=False,
                 ping_started=None, ping_release=None, **kwargs):
        self.uri = uri
        self.kwargs = kwargs
        self.fail = fail
        self.close_error = close_error
        self.ping_started = ping_started
        self.ping_release = ping_release
        self.closed = False
        self.admin = FakeAdmin(self)
        self._databases = {}

    def __getitem__(self, name):
        return self._databases.setdefault(name, FakeDatabase(name))

    def close(self):
        self.closed = True
        if self.close_error:
            raise RuntimeError("close blew up")


class ClientFactory:
    """Callable passed to ConnectionManager; records every client it builds.

    ``outcomes`` is a list of booleans (True = attempt fails); once
    exhausted the last outcome repeats.
    """

    def __init__(self, outcomes=(False,), close_error=False, ping_started=None, ping_release=None):
        self.outcomes = list(outcomes)
        self.close_error = close_error
        self.ping_started = ping_started
        self.ping_release = ping_release
        self.clients = []
        self.lock = threading.Lock()

    def __call__(self, uri, **kwargs):
        with self.lock:
            index = min(len(self.clients), len(self.outcomes) - 1)
            client = FakeMongoClient(
                uri,
                fail=self.outcomes[index],
                close_error=self.close_error,
                ping_started=self.ping_started,
                ping_release=self.ping_release,
                **kwargs,
            )
            self.clients.append(client)
        return client


@pytest.fixture
def server_config():
    return ServerConfig(
        mongodb_uri="mongodb://localhost:27017/shop",
        mongodb_timeout=1500,
        retry=RetryPolicy(max_retries=3, initial_delay_ms=1000, max_delay_ms=30000, backoff_multiplier=2),
    )


@pytest.fixture
def store():
    return FakeStore({
        "users": [
            {"_id": 1, "name": "Ada", "email": "ada@example.com", "status": "active"},
            {"_id": 2, "name": "Linus", "email": "linus@example.com", "status": "active"},
            {"_id": 3, "name": "Grace", "status": "disabled"},
        ],
        "empty": [],
        "system.views": [{"_id": 1}],
    })


@pytest.fixture
def operation_failure():
    return OperationFailure("unknown operator: $foo")
