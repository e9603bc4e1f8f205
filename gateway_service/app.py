"""
FastAPI dispatch layer for the MongoDB agent gateway.

Every endpoint maps to one named operation. Each request:
- is checked against the tool security policy (write tools are refused in
  read-only mode; any tool can be disabled)
- gets a ``DocumentStore`` over the shared connection (never auto-connects)
- returns masked, JSON-safe data

Core errors (``GatewayError`` subclasses) are turned into JSON bodies with
their own status codes by a single exception handler.
"""

from contextlib import asynccontextmanager
from typing import Any, Callable, Dict, Optional

from fastapi import Depends, FastAPI, Query, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel, Field

from config import ServerConfig, get_config
from connection_manager import connection_manager
from document_store import MAX_FIND_LIMIT, DocumentStore
from errors import GatewayError, InvalidQueryError
from logger import logger
from query_validator import ALLOWED_OPERATORS, parse_object_list, parse_query, validate_query
from response_formatter import (
    clean_documents,
    format_schema_overview_text,
    format_schema_report,
    sanitise_value,
)
from sample_data import (
    DEFAULT_AGGREGATE_LIMIT,
    DEFAULT_SAMPLE_LIMIT,
    EXPLAIN_VERBOSITIES,
    MAX_SAMPLE_LIMIT,
    execute_aggregate,
    execute_count,
    execute_db_stats,
    execute_distinct,
    execute_explain,
    execute_find,
    execute_sample_data,
)
from schema_inference import MAX_SAMPLE_SIZE, generate_schema_overview, get_index_info, infer_schema
from security import check_tool_security, get_security_summary
from write_operations import (
    execute_create_collection,
    execute_create_index,
    execute_delete,
    execute_drop_collection,
    execute_drop_database,
    execute_drop_index,
    execute_insert_many,
    execute_insert_one,
    execute_rename_collection,
    execute_update,
)

VERSION = "1.0.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    config = get_config()
    connection_manager.set_retry_policy(config.retry)
    await run_in_threadpool(connection_manager.connect, config)
    try:
        yield
    finally:
        await run_in_threadpool(connection_manager.disconnect)


app = FastAPI(title="MongoDB Agent Gateway", version=VERSION, lifespan=lifespan)


@app.exception_handler(GatewayError)
async def gateway_error_handler(request: Request, exc: GatewayError):
    logger.warning("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# ---------------------- DEPENDENCIES ----------------------


def get_server_config() -> ServerConfig:
    return get_config()


def get_store() -> DocumentStore:
    return DocumentStore(connection_manager.get_handle())


def _validated_filter(filter_text: str) -> Dict[str, Any]:
    result = validate_query(filter_text)
    if not result.valid:
        raise InvalidQueryError(result.error)
    return parse_query(filter_text)


def _parsed(text: str, parser: Callable[[str], Any]) -> Any:
    try:
        return parser(text)
    except ValueError as e:
        raise InvalidQueryError(str(e))


# ---------------------- REQUEST MODELS ----------------------


class InferSchemaRequest(BaseModel):
    collection_name: str = Field(min_length=1)
    sample_size: Optional[int] = Field(
        default=None,
        ge=1,
        le=MAX_SAMPLE_SIZE,
        description=f"Documents to sample (max {MAX_SAMPLE_SIZE})",
    )


class SampleDataRequest(BaseModel):
    collection_name: str = Field(min_length=1)
    query: Optional[str] = Field(default=None, description="Extended-JSON filter")
    limit: int = Field(default=DEFAULT_SAMPLE_LIMIT, ge=1, le=MAX_SAMPLE_LIMIT)


class ValidateQueryRequest(BaseModel):
    query: str = Field(min_length=1)
    collection_name: Optional[str] = None


class FindRequest(BaseModel):
    collection: str = Field(min_length=1)
    filter: str = "{}"
    projection: Optional[Dict[str, int]] = None
    sort: Optional[Dict[str, int]] = None
    limit: int = Field(default=10, ge=1, le=MAX_FIND_LIMIT)
    skip: int = Field(default=0, ge=0)


class CountRequest(BaseModel):
    collection: str = Field(min_length=1)
    filter: str = "{}"


class CollectionRequest(BaseModel):
    collection_name: str = Field(min_length=1)


class AggregateRequest(BaseModel):
    collection: str = Field(min_length=1)
    pipeline: str = Field(default="[]", description="Extended-JSON array of stages")
    limit: Optional[int] = Field(default=DEFAULT_AGGREGATE_LIMIT, ge=1)


class DistinctRequest(BaseModel):
    collection: str = Field(min_length=1)
    field: str = Field(min_length=1)
    filter: str = "{}"


class ExplainRequest(BaseModel):
    collection: str = Field(min_length=1)
    type: str = Field(default="find", pattern="^(find|aggregate)$")
    filter: str = "{}"
    pipeline: Optional[str] = None
    verbosity: str = Field(default="queryPlanner", pattern="^(" + "|".join(EXPLAIN_VERBOSITIES) + ")$")


class InsertOneRequest(BaseModel):
    collection: str = Field(min_length=1)
    document: str


class InsertManyRequest(BaseModel):
    collection: str = Field(min_length=1)
    documents: str = Field(description="Extended-JSON array of documents")
    ordered: bool = True


class UpdateRequest(BaseModel):
    collection: str = Field(min_length=1)
    filter: str
    update: str
    upsert: bool = False


class DeleteRequest(BaseModel):
    collection: str = Field(min_length=1)
    filter: str
    confirm: bool = False


class CreateIndexRequest(BaseModel):
    collection: str = Field(min_length=1)
    keys: Dict[str, Any]
    name: Optional[str] = None
    unique: bool = False
    sparse: bool = False
    expire_after_seconds: Optional[int] = Field(default=None, ge=0)


class DropIndexRequest(BaseModel):
    collection: str = Field(min_length=1)
    index_name: str = Field(min_length=1)
    confirm: bool = False


class CreateCollectionRequest(BaseModel):
    collection: str = Field(min_length=1)
    capped: bool = False
    size: Optional[int] = Field(default=None, ge=1)
    max_documents: Optional[int] = Field(default=None, ge=1)


class DropCollectionRequest(BaseModel):
    collection: str = Field(min_length=1)
    confirm: bool = False


class RenameCollectionRequest(BaseModel):
    collection: str = Field(min_length=1)
    new_name: str = Field(min_length=1)
    drop_target: bool = False


class DropDatabaseRequest(BaseModel):
    confirm: bool = False


# ---------------------- ENDPOINTS ----------------------


@app.get("/health")
def health_check():
    return {
        "status": "ok",
        "version": VERSION,
        "connection": connection_manager.current_state(),
    }


@app.get("/connection")
def connection_status(store: DocumentStore = Depends(get_store)):
    return {
        "state": connection_manager.current_state(),
        "database": store.database_name,
    }


@app.post("/infer-schema")
def infer_schema_endpoint(
    request: InferSchemaRequest,
    store: DocumentStore = Depends(get_store),
    config: ServerConfig = Depends(get_server_config),
):
    check_tool_security("infer_schema", config)
    sample_size = request.sample_size or config.schema_sample_size
    schema = infer_schema(store, request.collection_name, sample_size)
    return format_schema_report(schema)


@app.post("/sample-data")
def sample_data_endpoint(
    request: SampleDataRequest,
    store: DocumentStore = Depends(get_store),
    config: ServerConfig = Depends(get_server_config),
):
    check_tool_security("sample_data", config)
    query = _validated_filter(request.query) if request.query else None
    result = execute_sample_data(store, request.collection_name, query, request.limit)
    return sanitise_value(result)


@app.post("/validate-query")
def validate_query_endpoint(
    request: ValidateQueryRequest,
    store: DocumentStore = Depends(get_store),
    config: ServerConfig = Depends(get_server_config),
):
    check_tool_security("validate_query", config)
    collection_exists = None
    if request.collection_name:
        collection_exists = request.collection_name in store.list_collections()

    result = validate_query(request.query, collection_exists, request.collection_name)
    response = result.model_dump(exclude_none=True)
    if result.valid:
        response["parsed_query"] = sanitise_value(parse_query(request.query))
    return response


@app.get("/allowed-operators")
def allowed_operators():
    return {"operators": sorted(ALLOWED_OPERATORS)}


@app.post("/find")
def find_endpoint(
    request: FindRequest,
    store: DocumentStore = Depends(get_store),
    config: ServerConfig = Depends(get_server_config),
):
    check_tool_security("find", config)
    mongo_filter = _validated_filter(request.filter)
    result = execute_find(
        store,
        request.collection,
        mongo_filter,
        limit=request.limit,
        skip=request.skip,
        projection=request.projection,
        sort=request.sort,
    )
    result["documents"] = clean_documents(result["documents"])
    result["filter"] = sanitise_value(result["filter"])
    return result


@app.post("/count")
def count_endpoint(
    request: CountRequest,
    store: DocumentStore = Depends(get_store),
    config: ServerConfig = Depends(get_server_config),
):
    check_tool_security("count", config)
    mongo_filter = _validated_filter(request.filter)
    return sanitise_value(execute_count(store, request.collection, mongo_filter))


@app.get("/collections")
def list_collections_endpoint(
    store: DocumentStore = Depends(get_store),
    config: ServerConfig = Depends(get_server_config),
):
    check_tool_security("list_collections", config)
    collections = store.list_collections()
    return {"database": store.database_name, "collections": collections}


@app.post("/list-indexes")
def list_indexes_endpoint(
    request: CollectionRequest,
    store: DocumentStore = Depends(get_store),
    config: ServerConfig = Depends(get_server_config),
):
    check_tool_security("list_indexes", config)
    indexes = get_index_info(store, request.collection_name)
    return {"collection": request.collection_name, "indexes": indexes}


@app.get("/schema-overview")
def schema_overview(
    format: str = Query(default="json", pattern="^(json|markdown)$"),
    store: DocumentStore = Depends(get_store),
):
    overview = generate_schema_overview(store)
    if format == "markdown":
        return PlainTextResponse(format_schema_overview_text(overview))
    return overview.model_dump()


@app.get("/security")
def security_summary(config: ServerConfig = Depends(get_server_config)):
    return PlainTextResponse(get_security_summary(config))


@app.post("/aggregate")
def aggregate_endpoint(
    request: AggregateRequest,
    store: DocumentStore = Depends(get_store),
    config: ServerConfig = Depends(get_server_config),
):
    check_tool_security("aggregate", config)
    pipeline = _parsed(request.pipeline, parse_object_list)
    result = execute_aggregate(store, request.collection, pipeline, request.limit)
    return sanitise_value(result)


@app.post("/distinct")
def distinct_endpoint(
    request: DistinctRequest,
    store: DocumentStore = Depends(get_store),
    config: ServerConfig = Depends(get_server_config),
):
    check_tool_security("distinct", config)
    mongo_filter = _validated_filter(request.filter)
    result = execute_distinct(store, request.collection, request.field, mongo_filter)
    return sanitise_value(result)


@app.post("/explain")
def explain_endpoint(
    request: ExplainRequest,
    store: DocumentStore = Depends(get_store),
    config: ServerConfig = Depends(get_server_config),
):
    check_tool_security("explain", config)
    if request.type == "aggregate":
        pipeline = _parsed(request.pipeline or "[]", parse_object_list)
        result = execute_explain(store, request.collection, pipeline=pipeline, verbosity=request.verbosity)
    else:
        mongo_filter = _validated_filter(request.filter)
        result = execute_explain(store, request.collection, mongo_filter, verbosity=request.verbosity)
    return sanitise_value(result)


@app.get("/db-stats")
def db_stats_endpoint(
    store: DocumentStore = Depends(get_store),
    config: ServerConfig = Depends(get_server_config),
):
    check_tool_security("db_stats", config)
    return execute_db_stats(store)


# ---------------------- WRITE TOOLS ----------------------


@app.post("/insert-one")
def insert_one_endpoint(
    request: InsertOneRequest,
    store: DocumentStore = Depends(get_store),
    config: ServerConfig = Depends(get_server_config),
):
    check_tool_security("insert_one", config)
    document = _parsed(request.document, parse_query)
    return execute_insert_one(store, request.collection, document)


@app.post("/insert-many")
def insert_many_endpoint(
    request: InsertManyRequest,
    store: DocumentStore = Depends(get_store),
    config: ServerConfig = Depends(get_server_config),
):
    check_tool_security("insert_many", config)
    documents = _parsed(request.documents, parse_object_list)
    return execute_insert_many(store, request.collection, documents, request.ordered)


def _update(tool_name: str, request: UpdateRequest, store: DocumentStore, config: ServerConfig, many: bool):
    check_tool_security(tool_name, config)
    mongo_filter = _validated_filter(request.filter)
    update = _parsed(request.update, parse_query)
    return execute_update(store, request.collection, mongo_filter, update, upsert=request.upsert, many=many)


@app.post("/update-one")
def update_one_endpoint(
    request: UpdateRequest,
    store: DocumentStore = Depends(get_store),
    config: ServerConfig = Depends(get_server_config),
):
    return _update("update_one", request, store, config, many=False)


@app.post("/update-many")
def update_many_endpoint(
    request: UpdateRequest,
    store: DocumentStore = Depends(get_store),
    config: ServerConfig = Depends(get_server_config),
):
    return _update("update_many", request, store, config, many=True)


def _delete(tool_name: str, request: DeleteRequest, store: DocumentStore, config: ServerConfig, many: bool):
    check_tool_security(tool_name, config)
    mongo_filter = _validated_filter(request.filter)
    return execute_delete(store, request.collection, mongo_filter, many=many, confirm=request.confirm)


@app.post("/delete-one")
def delete_one_endpoint(
    request: DeleteRequest,
    store: DocumentStore = Depends(get_store),
    config: ServerConfig = Depends(get_server_config),
):
    return _delete("delete_one", request, store, config, many=False)


@app.post("/delete-many")
def delete_many_endpoint(
    request: DeleteRequest,
    store: DocumentStore = Depends(get_store),
    config: ServerConfig = Depends(get_server_config),
):
    return _delete("delete_many", request, store, config, many=True)


@app.post("/create-index")
def create_index_endpoint(
    request: CreateIndexRequest,
    store: DocumentStore = Depends(get_store),
    config: ServerConfig = Depends(get_server_config),
):
    check_tool_security("create_index", config)
    return execute_create_index(
        store,
        request.collection,
        request.keys,
        name=request.name,
        unique=request.unique,
        sparse=request.sparse,
        expire_after_seconds=request.expire_after_seconds,
    )


@app.post("/drop-index")
def drop_index_endpoint(
    request: DropIndexRequest,
    store: DocumentStore = Depends(get_store),
    config: ServerConfig = Depends(get_server_config),
):
    check_tool_security("drop_index", config)
    return execute_drop_index(store, request.collection, request.index_name, confirm=request.confirm)


@app.post("/create-collection")
def create_collection_endpoint(
    request: CreateCollectionRequest,
    store: DocumentStore = Depends(get_store),
    config: ServerConfig = Depends(get_server_config),
):
    check_tool_security("create_collection", config)
    return execute_create_collection(
        store, request.collection, request.capped, request.size, request.max_documents,
    )


@app.post("/drop-collection")
def drop_collection_endpoint(
    request: DropCollectionRequest,
    store: DocumentStore = Depends(get_store),
    config: ServerConfig = Depends(get_server_config),
):
    check_tool_security("drop_collection", config)
    return execute_drop_collection(store, request.collection, confirm=request.confirm)


@app.post("/rename-collection")
def rename_collection_endpoint(
    request: RenameCollectionRequest,
    store: DocumentStore = Depends(get_store),
    config: ServerConfig = Depends(get_server_config),
):
    check_tool_security("rename_collection", config)
    return execute_rename_collection(store, request.collection, request.new_name, request.drop_target)


@app.post("/drop-database")
def drop_database_endpoint(
    request: DropDatabaseRequest,
    store: DocumentStore = Depends(get_store),
    config: ServerConfig = Depends(get_server_config),
):
    check_tool_security("drop_database", config)
    return execute_drop_database(store, confirm=request.confirm)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
