from typing import Optional


class QueryPipelineError(Exception):
    """Base class for failures the query orchestrator reports to the user."""

    kind: str = "error"
    user_message: str = "Query failed"

    def __init__(self, detail: str, generated_sql: Optional[str] = None):
        super().__init__(detail)
        self.detail = detail
        self.generated_sql = generated_sql

    @property
    def error_message(self) -> str:
        return f"{self.user_message}: {self.detail}"


class SchemaUnavailableError(QueryPipelineError):
    kind = "schema_unavailable"
    user_message = "Schema unavailable"


class GenerationError(QueryPipelineError):
    kind = "generation_failed"
    user_message = "Could not generate query"


class UnsafeQueryError(QueryPipelineError):
    kind = "unsafe_query"
    user_message = "Unsafe query generated"


class ExecutionError(QueryPipelineError):
    kind = "execution_failed"
    user_message = "Query execution failed"


class RemoteDatabaseError(Exception):
    """Raised by the external database client when a call fails or returns an error payload."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class LLMError(Exception):
    """Raised when the model provider cannot be reached or answers malformed."""


class ConnectionNotFoundError(Exception):
    """Raised when a stored connection does not exist for the requesting user."""
