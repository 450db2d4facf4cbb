from enum import Enum
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class DiscoveryStrategy(str, Enum):
    """Schema discovery strategies, richest first."""
    PRIVILEGED = "privileged"
    RESTRICTED = "restricted"
    ROW_SAMPLING = "row_sampling"


class QueryStatus(str, Enum):
    SUCCESS = "success"
    ERROR = "error"


class QueryErrorKind(str, Enum):
    SCHEMA_UNAVAILABLE = "schema_unavailable"
    GENERATION_FAILED = "generation_failed"
    UNSAFE_QUERY = "unsafe_query"
    EXECUTION_FAILED = "execution_failed"


class CacheEntry(BaseModel):
    """Model for one cached schema context."""
    key: str
    value: Any
    created_at: float
    ttl_seconds: float

    def is_fresh(self, now: float) -> bool:
        return now - self.created_at < self.ttl_seconds


class DatabaseCredentials(BaseModel):
    """Decrypted credentials for an external PostgREST-fronted database."""
    base_url: str
    api_key: str
    service_key: Optional[str] = None

    @field_validator("base_url")
    @classmethod
    def _normalize_base_url(cls, value: str) -> str:
        value = value.strip()
        if not value.startswith(("http://", "https://")):
            raise ValueError("base_url must be an http(s) URL")
        return value.rstrip("/")

    @property
    def access_key(self) -> str:
        """The service key grants catalog access, so prefer it when present."""
        return self.service_key or self.api_key


class ConnectionRecord(BaseModel):
    """A stored connection with its credentials already decrypted."""
    id: int
    user_id: str
    nickname: str
    credentials: DatabaseCredentials
    created_at: Optional[datetime] = None


class ColumnInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    table_name: str
    column_name: str
    data_type: str = "text"
    is_nullable: bool = True
    column_default: Optional[str] = None


class ForeignKeyInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    table_name: str
    column_name: str
    foreign_table_name: str
    foreign_column_name: str


class SchemaDescription(BaseModel):
    """
    Normalized view of a remote database's structure.

    ``complete`` is only true for catalog introspection that also read the
    foreign keys; weaker strategies relax the foreign-key invariant and say so.
    """
    model_config = ConfigDict(frozen=True)

    tables: Tuple[str, ...]
    columns: Tuple[ColumnInfo, ...] = ()
    foreign_keys: Tuple[ForeignKeyInfo, ...] = ()
    strategy: DiscoveryStrategy
    complete: bool = False

    @model_validator(mode="after")
    def _check_invariants(self) -> "SchemaDescription":
        if len(set(self.tables)) != len(self.tables):
            raise ValueError("table names must be unique")
        if self.complete:
            known = {(col.table_name, col.column_name) for col in self.columns}
            for fk in self.foreign_keys:
                if (fk.table_name, fk.column_name) not in known:
                    raise ValueError(
                        f"foreign key {fk.table_name}.{fk.column_name} references an unknown column"
                    )
        return self

    @classmethod
    def build(
        cls,
        tables: Iterable[str],
        columns: Iterable[ColumnInfo] = (),
        foreign_keys: Iterable[ForeignKeyInfo] = (),
        strategy: DiscoveryStrategy = DiscoveryStrategy.PRIVILEGED,
        complete: bool = False,
    ) -> "SchemaDescription":
        """De-duplicate tables and order columns by table, keeping declaration order."""
        unique_tables = tuple(dict.fromkeys(tables))
        ordered_columns = tuple(sorted(columns, key=lambda col: col.table_name))
        return cls(
            tables=unique_tables,
            columns=ordered_columns,
            foreign_keys=tuple(foreign_keys),
            strategy=strategy,
            complete=complete,
        )

    def columns_for(self, table_name: str) -> List[ColumnInfo]:
        return [col for col in self.columns if col.table_name == table_name]


class QueryAttempt(BaseModel):
    """The history record of one natural-language-to-SQL round trip."""
    user_id: str
    connection_id: int
    connection_nickname: str
    natural_language_query: str
    generated_sql: Optional[str] = None
    status: QueryStatus
    error_message: Optional[str] = None
    execution_time_ms: Optional[int] = None
    row_count: Optional[int] = None

    @model_validator(mode="after")
    def _check_status_fields(self) -> "QueryAttempt":
        if self.status == QueryStatus.ERROR:
            if not self.error_message:
                raise ValueError("error attempts need an error_message")
            if self.execution_time_ms is not None or self.row_count is not None:
                raise ValueError("error attempts carry no timing or row count")
        else:
            if self.error_message is not None:
                raise ValueError("successful attempts carry no error_message")
            if self.execution_time_ms is None or self.row_count is None:
                raise ValueError("successful attempts need execution_time_ms and row_count")
        return self


class QueryOutcome(BaseModel):
    """Structured result handed back to the HTTP layer."""
    success: bool
    message: str
    error_kind: Optional[QueryErrorKind] = None
    error: Optional[str] = None
    generated_sql: Optional[str] = None
    rows: List[Dict[str, Any]] = Field(default_factory=list)
    row_count: int = 0
    execution_time_ms: Optional[int] = None
    history_id: Optional[int] = None


class SignupRequest(BaseModel):
    """Model for user signup requests."""
    username: str = Field(min_length=3, max_length=50)
    password: str = Field(min_length=6)


class LoginRequest(BaseModel):
    """Model for user login requests."""
    username: str
    password: str


class ConnectionRequest(BaseModel):
    """Model for adding a database connection."""
    nickname: str = Field(min_length=1, max_length=100)
    base_url: str
    api_key: str = Field(min_length=1)
    service_key: Optional[str] = None

    def to_credentials(self) -> DatabaseCredentials:
        return DatabaseCredentials(
            base_url=self.base_url,
            api_key=self.api_key,
            service_key=self.service_key or None,
        )


class ConnectionUpdateRequest(BaseModel):
    nickname: str = Field(min_length=1, max_length=100)


class PrepareSchemaRequest(BaseModel):
    connection_id: int
    priority_tables: List[str] = Field(default_factory=list)
    refresh: bool = False


class QueryRequest(BaseModel):
    """Model for natural-language query requests."""
    connection_id: int
    natural_language_query: str = Field(min_length=1, max_length=500)

    @field_validator("natural_language_query")
    @classmethod
    def _strip_question(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Query cannot be empty")
        return value


class SqlRequest(BaseModel):
    """Model for direct SQL execution requests."""
    connection_id: int
    sql: str = Field(min_length=1)


class ExplainRequest(BaseModel):
    sql: str = Field(min_length=1)
