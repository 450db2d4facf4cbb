import re
import logging
from decimal import Decimal
from typing import Any, Callable, Dict, Iterable, List, Tuple

from exceptions import RemoteDatabaseError, SchemaUnavailableError
from models import (
    ColumnInfo, DatabaseCredentials, DiscoveryStrategy, ForeignKeyInfo, SchemaDescription
)
from remote_db import RemoteDatabaseClient

logger = logging.getLogger(__name__)

_TIMESTAMP = re.compile(r"^\d{4}-\d{2}-\d{2}[T ]\d{2}:\d{2}(:\d{2}(\.\d+)?)?(Z|[+-]\d{2}:?\d{2})?$")

# Errors that mean "this strategy cannot work here", as opposed to programming errors.
_STRATEGY_ERRORS = (RemoteDatabaseError, KeyError, TypeError, ValueError)


def infer_column_type(value: Any) -> str:
    """Best-effort SQL type for a sampled JSON value. Booleans must be checked before ints."""
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, int):
        return "integer"
    if isinstance(value, (float, Decimal)):
        return "numeric"
    if isinstance(value, str) and _TIMESTAMP.match(value):
        return "timestamp"
    return "text"


def _parse_nullable(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().upper() != "NO"


class SchemaDiscovery:
    """
    Produces a SchemaDescription for a remote database, trying strategies from
    richest to weakest until one finds at least one table:

    1. privileged catalog introspection (tables, columns and foreign keys)
    2. restricted introspection (foreign keys may be unreadable)
    3. row sampling of well-known table names

    A strategy either returns a whole description or raises; nothing partial
    escapes. Only when every strategy comes up empty is the schema unavailable.
    """

    def __init__(self, client_factory: Callable[[DatabaseCredentials], RemoteDatabaseClient] = RemoteDatabaseClient,
                 probe_tables: Iterable[str] = ()):
        self.client_factory = client_factory
        self.probe_tables = list(dict.fromkeys(probe_tables))

    def _strategies(self) -> List[Tuple[DiscoveryStrategy, Callable[[RemoteDatabaseClient], SchemaDescription]]]:
        return [
            (DiscoveryStrategy.PRIVILEGED, self._privileged),
            (DiscoveryStrategy.RESTRICTED, self._restricted),
            (DiscoveryStrategy.ROW_SAMPLING, self._row_sampling),
        ]

    def discover(self, credentials: DatabaseCredentials) -> SchemaDescription:
        failures = []
        with self.client_factory(credentials) as client:
            for strategy, run in self._strategies():
                try:
                    schema = run(client)
                except _STRATEGY_ERRORS as e:
                    logger.warning(f"Schema discovery via {strategy.value} failed: {e}")
                    failures.append(f"{strategy.value}: {e}")
                    continue
                if not schema.tables:
                    logger.warning(f"Schema discovery via {strategy.value} found no tables")
                    failures.append(f"{strategy.value}: no tables found")
                    continue
                logger.info(
                    f"Discovered {len(schema.tables)} tables via {strategy.value} "
                    f"({len(schema.foreign_keys)} foreign keys)"
                )
                return schema
        raise SchemaUnavailableError("; ".join(failures) or "no discovery strategy available")

    def _read_catalog(self, client: RemoteDatabaseClient) -> Tuple[List[str], List[ColumnInfo]]:
        tables = list(dict.fromkeys(client.get_tables()))
        known = set(tables)
        columns = [
            ColumnInfo(
                table_name=row["table_name"],
                column_name=row["column_name"],
                data_type=row.get("data_type") or "text",
                is_nullable=_parse_nullable(row.get("is_nullable", "YES")),
                column_default=row.get("column_default"),
            )
            for row in client.get_columns()
            if row["table_name"] in known
        ]
        return tables, columns

    @staticmethod
    def _foreign_keys(rows: List[Dict[str, Any]]) -> List[ForeignKeyInfo]:
        return [
            ForeignKeyInfo(
                table_name=row["table_name"],
                column_name=row["column_name"],
                foreign_table_name=row["foreign_table_name"],
                foreign_column_name=row["foreign_column_name"],
            )
            for row in rows
        ]

    def _privileged(self, client: RemoteDatabaseClient) -> SchemaDescription:
        tables, columns = self._read_catalog(client)
        foreign_keys = self._foreign_keys(client.get_foreign_keys())
        return SchemaDescription.build(
            tables, columns, foreign_keys, strategy=DiscoveryStrategy.PRIVILEGED, complete=True
        )

    def _restricted(self, client: RemoteDatabaseClient) -> SchemaDescription:
        tables, columns = self._read_catalog(client)
        try:
            foreign_keys = self._foreign_keys(client.get_foreign_keys())
        except _STRATEGY_ERRORS as e:
            logger.warning(f"Foreign keys unavailable, continuing without relationships: {e}")
            foreign_keys = []
        return SchemaDescription.build(
            tables, columns, foreign_keys, strategy=DiscoveryStrategy.RESTRICTED, complete=False
        )

    def _row_sampling(self, client: RemoteDatabaseClient) -> SchemaDescription:
        tables: List[str] = []
        columns: List[ColumnInfo] = []
        for table_name in self.probe_tables:
            try:
                rows = client.fetch_rows(table_name, limit=1)
            except RemoteDatabaseError as e:
                logger.debug(f"Probe of {table_name} failed: {e}")
                continue
            tables.append(table_name)
            if rows:
                columns.extend(
                    ColumnInfo(table_name=table_name, column_name=name, data_type=infer_column_type(value))
                    for name, value in rows[0].items()
                )
        return SchemaDescription.build(
            tables, columns, strategy=DiscoveryStrategy.ROW_SAMPLING, complete=False
        )
