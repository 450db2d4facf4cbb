import time
import asyncio
import logging
from functools import partial
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, HTTPException, status, Depends, Request

from models import (
    SignupRequest, LoginRequest, ConnectionRequest, ConnectionUpdateRequest,
    PrepareSchemaRequest, QueryRequest, SqlRequest, ExplainRequest, QueryOutcome, QueryStatus,
    ConnectionRecord
)
from auth import get_current_user_id, authenticate_user, create_user, create_access_token
from cache import SchemaCache, build_schema_cache, generate_schema_key
from config import settings, configure_logging
from database import (
    ConnectionRepository, HistoryRepository, get_db_connection, setup_database_tables
)
from discovery import SchemaDiscovery
from exceptions import ConnectionNotFoundError, SchemaUnavailableError
from llm import LLMClient, SQLGenerator
from remote_db import RemoteDatabaseClient
from services import QueryOrchestrator

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the process-wide collaborators once and share them through app.state."""
    configure_logging(settings.LOG_LEVEL)
    db_config = settings.database_config
    await asyncio.to_thread(setup_database_tables, db_config)

    client_factory = partial(RemoteDatabaseClient, timeout=settings.REMOTE_DB_TIMEOUT)
    schema_cache = build_schema_cache(settings)
    history = HistoryRepository(db_config)

    app.state.db_config = db_config
    app.state.client_factory = client_factory
    app.state.schema_cache = schema_cache
    app.state.connections = ConnectionRepository(db_config)
    app.state.history = history
    app.state.orchestrator = QueryOrchestrator(
        cache=schema_cache,
        discovery=SchemaDiscovery(client_factory, settings.schema_probe_tables),
        sql_generator=SQLGenerator(LLMClient.from_settings(settings)),
        history_sink=history,
        client_factory=client_factory,
        cache_ttl=settings.SCHEMA_CACHE_TTL,
    )
    logger.info("Application startup completed successfully")
    yield
    # Redis entries are shared with other workers and expire on their own.
    if isinstance(schema_cache, SchemaCache):
        schema_cache.clear()


# Create the FastAPI app instance
app = FastAPI(
    title="Database Query API",
    description="Natural-language queries over your own databases, with cached schema context and a SELECT-only safety gate",
    version="1.0.0",
    lifespan=lifespan,
)


# --- Dependencies ---
def get_db_config(request: Request) -> dict:
    return request.app.state.db_config


def get_orchestrator(request: Request) -> QueryOrchestrator:
    return request.app.state.orchestrator


def get_connection_repository(request: Request) -> ConnectionRepository:
    return request.app.state.connections


def get_history_repository(request: Request) -> HistoryRepository:
    return request.app.state.history


def get_client_factory(request: Request):
    return request.app.state.client_factory


def get_schema_cache(request: Request):
    return request.app.state.schema_cache


def _load_connection(connections: ConnectionRepository, user_id: str, connection_id: int) -> ConnectionRecord:
    try:
        return connections.get_connection(user_id, connection_id)
    except ConnectionNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Connection not found")


def _outcome_response(outcome: QueryOutcome) -> dict:
    if not outcome.success:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={
                "success": False,
                "message": outcome.message,
                "errorKind": outcome.error_kind.value if outcome.error_kind else None,
                "error": outcome.error,
                "generatedSQL": outcome.generated_sql,
                "historyId": outcome.history_id,
            },
        )
    return {
        "success": True,
        "message": outcome.message,
        "data": {
            "generatedSQL": outcome.generated_sql,
            "results": outcome.rows,
            "rowCount": outcome.row_count,
            "executionTime": outcome.execution_time_ms,
            "historyId": outcome.history_id,
        },
    }


# --- Authentication Endpoints ---
@app.post("/signup", tags=["Authentication"])
def signup(request: SignupRequest, db_config: dict = Depends(get_db_config)):
    """Create a new user account."""
    user_id = create_user(db_config, request.username, request.password)
    if user_id:
        return {"message": "User created successfully", "user_id": user_id}
    raise HTTPException(status_code=400, detail="Username already exists")


@app.post("/login", tags=["Authentication"])
def login(request: LoginRequest, db_config: dict = Depends(get_db_config)):
    """Authenticate a user and return a JWT token."""
    user_id = authenticate_user(db_config, request.username, request.password)
    if not user_id:
        raise HTTPException(status_code=401, detail="Invalid username or password")
    return {
        "message": "Login successful",
        "user_id": user_id,
        "username": request.username,
        "access_token": create_access_token(data={"user_id": user_id}),
        "token_type": "bearer"
    }


# --- Connection Endpoints ---
@app.post("/connections", status_code=status.HTTP_201_CREATED, tags=["Connections"])
def add_connection(
    request: ConnectionRequest,
    user_id: str = Depends(get_current_user_id),
    connections: ConnectionRepository = Depends(get_connection_repository),
    client_factory=Depends(get_client_factory),
):
    """Test and save a connection to an external database."""
    try:
        credentials = request.to_credentials()
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))

    with client_factory(credentials) as client:
        reachable = client.test_connection()
    if not reachable:
        raise HTTPException(status_code=400, detail="Failed to connect to database. Please check your credentials.")

    try:
        record = connections.add_connection(user_id, request)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    return {"success": True, "message": "Connection added successfully", "data": ConnectionRepository.to_public(record)}


@app.get("/connections", tags=["Connections"])
def list_connections(
    user_id: str = Depends(get_current_user_id),
    connections: ConnectionRepository = Depends(get_connection_repository),
):
    """List the current user's connections (keys are never returned)."""
    records = [ConnectionRepository.to_public(record) for record in connections.list_connections(user_id)]
    return {"success": True, "data": {"connections": records, "count": len(records)}}


@app.get("/connections/{connection_id}", tags=["Connections"])
def get_connection(
    connection_id: int,
    user_id: str = Depends(get_current_user_id),
    connections: ConnectionRepository = Depends(get_connection_repository),
):
    record = _load_connection(connections, user_id, connection_id)
    return {"success": True, "data": ConnectionRepository.to_public(record)}


@app.put("/connections/{connection_id}", tags=["Connections"])
def update_connection(
    connection_id: int,
    request: ConnectionUpdateRequest,
    user_id: str = Depends(get_current_user_id),
    connections: ConnectionRepository = Depends(get_connection_repository),
    orchestrator: QueryOrchestrator = Depends(get_orchestrator),
):
    """Rename a connection; its cached schema is dropped."""
    try:
        record = connections.update_nickname(user_id, connection_id, request.nickname)
    except ConnectionNotFoundError:
        raise HTTPException(status_code=404, detail="Connection not found")
    except ValueError as e:
        raise HTTPException(status_code=409, detail=str(e))
    orchestrator.invalidate_schema(user_id, connection_id)
    return {"success": True, "message": "Connection updated successfully", "data": ConnectionRepository.to_public(record)}


@app.delete("/connections/{connection_id}", tags=["Connections"])
def delete_connection(
    connection_id: int,
    user_id: str = Depends(get_current_user_id),
    connections: ConnectionRepository = Depends(get_connection_repository),
    orchestrator: QueryOrchestrator = Depends(get_orchestrator),
):
    try:
        connections.delete_connection(user_id, connection_id)
    except ConnectionNotFoundError:
        raise HTTPException(status_code=404, detail="Connection not found")
    orchestrator.invalidate_schema(user_id, connection_id)
    return {"success": True, "message": "Connection deleted successfully"}


# --- Query Endpoints ---
@app.post("/query/prepare-schema", tags=["Query"])
def prepare_schema(
    request: PrepareSchemaRequest,
    user_id: str = Depends(get_current_user_id),
    connections: ConnectionRepository = Depends(get_connection_repository),
    orchestrator: QueryOrchestrator = Depends(get_orchestrator),
):
    """Fetch and cache the schema context for a connection."""
    connection = _load_connection(connections, user_id, request.connection_id)
    try:
        data = orchestrator.prepare_schema(
            user_id, connection, priority_tables=request.priority_tables, refresh=request.refresh
        )
    except SchemaUnavailableError as e:
        raise HTTPException(status_code=400, detail=e.error_message)
    return {"success": True, "message": "Schema prepared and cached successfully", "data": data}


@app.post("/query/generate-sql", tags=["Query"])
def generate_and_run_query(
    request: QueryRequest,
    user_id: str = Depends(get_current_user_id),
    connections: ConnectionRepository = Depends(get_connection_repository),
    orchestrator: QueryOrchestrator = Depends(get_orchestrator),
):
    """Generate SQL from natural language, check it, run it and record the attempt."""
    connection = _load_connection(connections, user_id, request.connection_id)
    return _outcome_response(orchestrator.process_query(user_id, connection, request.natural_language_query))


@app.post("/query/execute-sql", tags=["Query"])
def execute_raw_sql(
    request: SqlRequest,
    user_id: str = Depends(get_current_user_id),
    connections: ConnectionRepository = Depends(get_connection_repository),
    orchestrator: QueryOrchestrator = Depends(get_orchestrator),
):
    """Execute a hand-written SELECT (for advanced users)."""
    connection = _load_connection(connections, user_id, request.connection_id)
    return _outcome_response(orchestrator.execute_raw_sql(user_id, connection, request.sql))


@app.post("/query/explain", tags=["Query"])
def explain_sql(
    request: ExplainRequest,
    user_id: str = Depends(get_current_user_id),
    orchestrator: QueryOrchestrator = Depends(get_orchestrator),
):
    return {"success": True, "data": {"explanation": orchestrator.explain_sql(request.sql)}}


# --- History Endpoints ---
@app.get("/history", tags=["History"])
def get_query_history(
    page: int = 1,
    limit: int = 50,
    connection_id: Optional[int] = None,
    status: Optional[QueryStatus] = None,
    user_id: str = Depends(get_current_user_id),
    history: HistoryRepository = Depends(get_history_repository),
):
    result = history.get_user_history(user_id, page=page, limit=limit, connection_id=connection_id, status=status)
    return {"success": True, "data": result}


@app.get("/history/{history_id}", tags=["History"])
def get_history_entry(
    history_id: int,
    user_id: str = Depends(get_current_user_id),
    history: HistoryRepository = Depends(get_history_repository),
):
    entry = history.get_entry(user_id, history_id)
    if not entry:
        raise HTTPException(status_code=404, detail="Query not found in history")
    return {"success": True, "data": entry}


@app.delete("/history/{history_id}", tags=["History"])
def delete_history_entry(
    history_id: int,
    user_id: str = Depends(get_current_user_id),
    history: HistoryRepository = Depends(get_history_repository),
):
    if not history.delete_entry(user_id, history_id):
        raise HTTPException(status_code=404, detail="Query not found in history")
    return {"success": True, "message": "Query deleted from history"}


@app.delete("/history", tags=["History"])
def clear_history(
    user_id: str = Depends(get_current_user_id),
    history: HistoryRepository = Depends(get_history_repository),
):
    deleted = history.clear_user_history(user_id)
    return {"success": True, "message": f"Cleared {deleted} queries from history", "data": {"deletedCount": deleted}}


# --- Cache Management Endpoints ---
@app.get("/cache-stats", tags=["Cache Management"])
def get_cache_stats(user_id: str = Depends(get_current_user_id), schema_cache=Depends(get_schema_cache)):
    """Schema cache statistics, limited to the current user's entries."""
    stats = schema_cache.get_stats()
    prefix = generate_schema_key(user_id, "")
    keys = [key for key in stats["keys"] if key.startswith(prefix)]
    return {"backend": stats["backend"], "cached_schemas": len(keys), "keys": keys}


@app.delete("/cache/{connection_id}", tags=["Cache Management"])
def clear_connection_cache(
    connection_id: int,
    user_id: str = Depends(get_current_user_id),
    orchestrator: QueryOrchestrator = Depends(get_orchestrator),
):
    removed = orchestrator.invalidate_schema(user_id, connection_id)
    return {"message": "Cached schema cleared" if removed else "No cached schema for this connection", "cleared": removed}


# --- Health Check ---
@app.get("/health", tags=["System"])
def health_check(db_config: dict = Depends(get_db_config), schema_cache=Depends(get_schema_cache)):
    """System health check including the app database and schema cache."""
    health_status = {
        "status": "healthy",
        "timestamp": time.time(),
        "components": {
            "database": "unknown",
            "schema_cache": "unknown",
        }
    }

    try:
        conn = get_db_connection(db_config)
        conn.close()
        health_status["components"]["database"] = "healthy"
    except Exception as e:
        health_status["components"]["database"] = f"unhealthy: {e}"
        health_status["status"] = "degraded"

    try:
        stats = schema_cache.get_stats()
        health_status["components"]["schema_cache"] = f"healthy ({stats['backend']}, {stats['size']} entries)"
    except Exception as e:
        health_status["components"]["schema_cache"] = f"unhealthy: {e}"
        health_status["status"] = "degraded"

    return health_status
