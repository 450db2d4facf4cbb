import time
import logging
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from cache import generate_schema_key
from discovery import SchemaDiscovery
from exceptions import (
    ExecutionError, GenerationError, QueryPipelineError, RemoteDatabaseError,
    SchemaUnavailableError, UnsafeQueryError,
)
from formatter import format_schema
from llm import SQLGenerator
from models import (
    ConnectionRecord, DatabaseCredentials, QueryAttempt, QueryErrorKind, QueryOutcome, QueryStatus
)
from remote_db import RemoteDatabaseClient
from safety import find_denied_keyword, is_safe

logger = logging.getLogger(__name__)

DIRECT_SQL_MARKER = "[Direct SQL Execution]"


class QueryState(str, Enum):
    SCHEMA_READY = "schema_ready"
    GENERATING = "generating"
    VALIDATING = "validating"
    EXECUTING = "executing"
    RECORDED = "recorded"


# Unexpected exceptions are reported as the failure of the state they happened in.
_STATE_ERRORS = {
    QueryState.SCHEMA_READY: SchemaUnavailableError,
    QueryState.GENERATING: GenerationError,
    QueryState.VALIDATING: UnsafeQueryError,
    QueryState.EXECUTING: ExecutionError,
}


class QueryOrchestrator:
    """
    Drives one request through schema -> generate -> validate -> execute and
    always finishes by handing exactly one QueryAttempt to the history sink.

    The schema cache is injected; this class never creates one.
    """

    def __init__(
        self,
        cache,
        discovery: SchemaDiscovery,
        sql_generator: SQLGenerator,
        history_sink,
        client_factory: Callable[[DatabaseCredentials], RemoteDatabaseClient] = RemoteDatabaseClient,
        cache_ttl: Optional[float] = None,
    ):
        self.cache = cache
        self.discovery = discovery
        self.sql_generator = sql_generator
        self.history_sink = history_sink
        self.client_factory = client_factory
        self.cache_ttl = cache_ttl

    # --- Schema context ---

    def get_schema_context(self, user_id: str, connection: ConnectionRecord,
                           priority_tables: Sequence[str] = (), refresh: bool = False) -> str:
        """Return the formatted schema for a connection, discovering and caching it on a miss."""
        key = generate_schema_key(user_id, connection.id)
        if not refresh:
            cached = self.cache.get(key)
            if cached is not None:
                logger.debug(f"Schema cache hit for {key}")
                return cached

        logger.info(f"Schema cache miss for {key}, discovering schema")
        schema = self.discovery.discover(connection.credentials)
        schema_context = format_schema(schema, priority_tables)
        self.cache.set(key, schema_context, self.cache_ttl)
        return schema_context

    def prepare_schema(self, user_id: str, connection: ConnectionRecord,
                       priority_tables: Sequence[str] = (), refresh: bool = False) -> Dict[str, Any]:
        """Warm the cache for a connection. Raises SchemaUnavailableError when nothing is discoverable."""
        schema_context = self.get_schema_context(
            user_id, connection, priority_tables=priority_tables, refresh=refresh or bool(priority_tables)
        )
        return {
            "connectionId": connection.id,
            "nickname": connection.nickname,
            "cacheKey": generate_schema_key(user_id, connection.id),
            "schemaLength": len(schema_context),
        }

    def invalidate_schema(self, user_id: str, connection_id: Any) -> bool:
        """Drop the cached schema after a connection is edited or deleted."""
        removed = self.cache.delete(generate_schema_key(user_id, connection_id))
        if removed:
            logger.info(f"Invalidated cached schema for connection {connection_id}")
        return removed

    # --- Query pipeline ---

    def _execute(self, connection: ConnectionRecord, sql: str) -> Tuple[List[Dict[str, Any]], int]:
        start = time.perf_counter()
        try:
            with self.client_factory(connection.credentials) as client:
                rows = client.execute_sql(sql)
        except RemoteDatabaseError as e:
            raise ExecutionError(str(e), generated_sql=sql) from e
        elapsed_ms = int(round((time.perf_counter() - start) * 1000))
        return rows, elapsed_ms

    @staticmethod
    def _validate(sql: str):
        if not is_safe(sql):
            keyword = find_denied_keyword(sql or "")
            detail = f"contains {keyword}" if keyword else "not a SELECT statement"
            raise UnsafeQueryError(f"{detail}. Only SELECT queries are allowed.", generated_sql=sql)

    def _run(self, user_id: str, connection: ConnectionRecord, question: str,
             sql: Optional[str] = None) -> QueryOutcome:
        state = QueryState.SCHEMA_READY if sql is None else QueryState.VALIDATING
        generated_sql = sql
        rows: List[Dict[str, Any]] = []
        elapsed_ms = None
        error: Optional[QueryPipelineError] = None

        try:
            if state == QueryState.SCHEMA_READY:
                schema_context = self.get_schema_context(user_id, connection)
                state = QueryState.GENERATING
                generated_sql = self.sql_generator.generate(question, schema_context)
                state = QueryState.VALIDATING
            self._validate(generated_sql)
            state = QueryState.EXECUTING
            rows, elapsed_ms = self._execute(connection, generated_sql)
        except QueryPipelineError as e:
            error = e
        except Exception as e:
            logger.exception(f"Unexpected failure while {state.value}")
            error = _STATE_ERRORS[state](str(e) or e.__class__.__name__, generated_sql=generated_sql)

        if error is not None:
            logger.warning(f"Query on connection {connection.id} failed ({error.kind}): {error.detail}")
            attempt = QueryAttempt(
                user_id=user_id,
                connection_id=connection.id,
                connection_nickname=connection.nickname,
                natural_language_query=question,
                generated_sql=generated_sql,
                status=QueryStatus.ERROR,
                error_message=error.error_message,
            )
            outcome = QueryOutcome(
                success=False,
                message=error.user_message,
                error_kind=QueryErrorKind(error.kind),
                error=error.detail,
                generated_sql=generated_sql,
            )
        else:
            logger.info(f"Query on connection {connection.id} returned {len(rows)} rows in {elapsed_ms}ms")
            attempt = QueryAttempt(
                user_id=user_id,
                connection_id=connection.id,
                connection_nickname=connection.nickname,
                natural_language_query=question,
                generated_sql=generated_sql,
                status=QueryStatus.SUCCESS,
                execution_time_ms=elapsed_ms,
                row_count=len(rows),
            )
            outcome = QueryOutcome(
                success=True,
                message="Query executed successfully",
                generated_sql=generated_sql,
                rows=rows,
                row_count=len(rows),
                execution_time_ms=elapsed_ms,
            )

        outcome.history_id = self._record(attempt)
        return outcome

    def _record(self, attempt: QueryAttempt) -> Optional[int]:
        """Persist the attempt. A failure here is logged and never changes the query outcome."""
        try:
            return self.history_sink.record(attempt)
        except Exception:
            logger.exception("Failed to record query history")
            return None

    def process_query(self, user_id: str, connection: ConnectionRecord, question: str) -> QueryOutcome:
        """Answer a natural-language question against a stored connection."""
        logger.info(f"Processing query on connection {connection.id}: {question}")
        return self._run(user_id, connection, question)

    def execute_raw_sql(self, user_id: str, connection: ConnectionRecord, sql: str) -> QueryOutcome:
        """Run user-supplied SQL through the same safety gate and history recording."""
        return self._run(user_id, connection, DIRECT_SQL_MARKER, sql=sql.strip())

    def explain_sql(self, sql: str) -> str:
        return self.sql_generator.explain(sql)
