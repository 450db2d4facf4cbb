import math
import logging
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional

import psycopg2
from psycopg2 import errors

from exceptions import ConnectionNotFoundError
from models import ConnectionRecord, ConnectionRequest, DatabaseCredentials, QueryAttempt, QueryStatus

logger = logging.getLogger(__name__)


def get_db_connection(db_config: Dict) -> psycopg2.extensions.connection:
    """Create a database connection."""
    return psycopg2.connect(**db_config)


@contextmanager
def get_cursor(db_config: Dict, commit: bool = False) -> Iterator[psycopg2.extensions.cursor]:
    """Yield a cursor on a fresh connection; commit on success when asked, always close."""
    conn = get_db_connection(db_config)
    try:
        cur = conn.cursor()
        try:
            yield cur
            if commit:
                conn.commit()
        finally:
            cur.close()
    finally:
        conn.close()


def setup_database_tables(db_config: Dict):
    """Create the necessary database tables if they don't exist."""
    try:
        with get_cursor(db_config, commit=True) as cur:
            cur.execute("CREATE EXTENSION IF NOT EXISTS \"uuid-ossp\";")

            # Create users table
            cur.execute("""
                CREATE TABLE IF NOT EXISTS users (
                    id UUID PRIMARY KEY DEFAULT uuid_generate_v4(),
                    username VARCHAR(50) UNIQUE NOT NULL,
                    password_hash VARCHAR(255) NOT NULL,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                );
            """)

            # Stored connections to external databases
            cur.execute("""
                CREATE TABLE IF NOT EXISTS db_connections (
                    id SERIAL PRIMARY KEY,
                    user_id UUID NOT NULL,
                    nickname VARCHAR(100) NOT NULL,
                    base_url VARCHAR(255) NOT NULL,
                    api_key TEXT NOT NULL,
                    service_key TEXT,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    UNIQUE(user_id, nickname),
                    FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE
                );
            """)

            # History outlives the connection it was run against
            cur.execute("""
                CREATE TABLE IF NOT EXISTS query_history (
                    id SERIAL PRIMARY KEY,
                    user_id UUID NOT NULL,
                    connection_id INTEGER NOT NULL,
                    connection_nickname VARCHAR(100) NOT NULL,
                    natural_language_query TEXT NOT NULL,
                    generated_sql TEXT,
                    status VARCHAR(10) NOT NULL CHECK (status IN ('success', 'error')),
                    error_message TEXT,
                    execution_time_ms INTEGER CHECK (execution_time_ms >= 0),
                    row_count INTEGER CHECK (row_count >= 0),
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE
                );
            """)
            cur.execute("""
                CREATE INDEX IF NOT EXISTS idx_query_history_user_created
                ON query_history (user_id, created_at DESC);
            """)
        logger.info("Database tables created successfully")
    except psycopg2.Error as e:
        logger.error(f"Database setup error: {e}")
        raise


class ConnectionRepository:
    """Stored external-database connections, scoped per user."""

    COLUMNS = "id, user_id, nickname, base_url, api_key, service_key, created_at"

    def __init__(self, db_config: Dict):
        self.db_config = db_config

    @staticmethod
    def _to_record(row) -> ConnectionRecord:
        return ConnectionRecord(
            id=row[0],
            user_id=str(row[1]),
            nickname=row[2],
            credentials=DatabaseCredentials(base_url=row[3], api_key=row[4], service_key=row[5]),
            created_at=row[6],
        )

    @staticmethod
    def to_public(record: ConnectionRecord) -> Dict[str, Any]:
        """Connection fields that are safe to return to clients (no keys)."""
        return {
            "id": record.id,
            "nickname": record.nickname,
            "base_url": record.credentials.base_url,
            "has_service_key": record.credentials.service_key is not None,
            "created_at": str(record.created_at) if record.created_at else None,
        }

    def add_connection(self, user_id: str, request: ConnectionRequest) -> ConnectionRecord:
        credentials = request.to_credentials()
        try:
            with get_cursor(self.db_config, commit=True) as cur:
                cur.execute(
                    f"""
                    INSERT INTO db_connections (user_id, nickname, base_url, api_key, service_key)
                    VALUES (%s, %s, %s, %s, %s)
                    RETURNING {self.COLUMNS}
                    """,
                    (user_id, request.nickname, credentials.base_url, credentials.api_key, credentials.service_key),
                )
                return self._to_record(cur.fetchone())
        except errors.UniqueViolation as e:
            raise ValueError(f"A connection named '{request.nickname}' already exists") from e
        except psycopg2.Error as e:
            logger.error(f"Database error saving connection for user {user_id}: {e}")
            raise

    def list_connections(self, user_id: str) -> List[ConnectionRecord]:
        try:
            with get_cursor(self.db_config) as cur:
                cur.execute(
                    f"SELECT {self.COLUMNS} FROM db_connections WHERE user_id = %s ORDER BY created_at DESC",
                    (user_id,),
                )
                return [self._to_record(row) for row in cur.fetchall()]
        except psycopg2.Error as e:
            logger.error(f"Database error listing connections for user {user_id}: {e}")
            return []

    def get_connection(self, user_id: str, connection_id: int) -> ConnectionRecord:
        with get_cursor(self.db_config) as cur:
            cur.execute(
                f"SELECT {self.COLUMNS} FROM db_connections WHERE user_id = %s AND id = %s",
                (user_id, connection_id),
            )
            row = cur.fetchone()
        if not row:
            raise ConnectionNotFoundError(f"Connection {connection_id} not found")
        return self._to_record(row)

    def update_nickname(self, user_id: str, connection_id: int, nickname: str) -> ConnectionRecord:
        try:
            with get_cursor(self.db_config, commit=True) as cur:
                cur.execute(
                    f"""
                    UPDATE db_connections SET nickname = %s
                    WHERE user_id = %s AND id = %s
                    RETURNING {self.COLUMNS}
                    """,
                    (nickname, user_id, connection_id),
                )
                row = cur.fetchone()
        except errors.UniqueViolation as e:
            raise ValueError(f"A connection named '{nickname}' already exists") from e
        if not row:
            raise ConnectionNotFoundError(f"Connection {connection_id} not found")
        return self._to_record(row)

    def delete_connection(self, user_id: str, connection_id: int):
        with get_cursor(self.db_config, commit=True) as cur:
            cur.execute("DELETE FROM db_connections WHERE user_id = %s AND id = %s", (user_id, connection_id))
            deleted = cur.rowcount
        if not deleted:
            raise ConnectionNotFoundError(f"Connection {connection_id} not found")


class HistoryRepository:
    """Query history store; the orchestrator only ever calls ``record``."""

    COLUMNS = (
        "id, connection_id, connection_nickname, natural_language_query, generated_sql, "
        "status, error_message, execution_time_ms, row_count, created_at"
    )

    def __init__(self, db_config: Dict):
        self.db_config = db_config

    @staticmethod
    def _to_dict(row) -> Dict[str, Any]:
        return {
            "id": row[0],
            "connection_id": row[1],
            "connection_nickname": row[2],
            "natural_language_query": row[3],
            "generated_sql": row[4],
            "status": row[5],
            "error_message": row[6],
            "execution_time_ms": row[7],
            "row_count": row[8],
            "created_at": str(row[9]),
        }

    def record(self, attempt: QueryAttempt) -> int:
        """Persist one query attempt and return its id."""
        try:
            with get_cursor(self.db_config, commit=True) as cur:
                cur.execute(
                    """
                    INSERT INTO query_history (
                        user_id, connection_id, connection_nickname, natural_language_query,
                        generated_sql, status, error_message, execution_time_ms, row_count
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING id
                    """,
                    (
                        attempt.user_id,
                        attempt.connection_id,
                        attempt.connection_nickname,
                        attempt.natural_language_query,
                        attempt.generated_sql,
                        attempt.status.value,
                        attempt.error_message,
                        attempt.execution_time_ms,
                        attempt.row_count,
                    ),
                )
                return cur.fetchone()[0]
        except psycopg2.Error as e:
            logger.error(f"Database error logging query for user {attempt.user_id}: {e}")
            raise

    def get_user_history(self, user_id: str, page: int = 1, limit: int = 50,
                         connection_id: Optional[int] = None,
                         status: Optional[QueryStatus] = None) -> Dict[str, Any]:
        """Newest-first page of a user's history with optional connection/status filters."""
        page = max(1, page)
        limit = max(1, min(limit, 100))
        conditions = ["user_id = %s"]
        params: List[Any] = [user_id]
        if connection_id is not None:
            conditions.append("connection_id = %s")
            params.append(connection_id)
        if status is not None:
            conditions.append("status = %s")
            params.append(QueryStatus(status).value)
        where = " AND ".join(conditions)

        try:
            with get_cursor(self.db_config) as cur:
                cur.execute(f"SELECT COUNT(*) FROM query_history WHERE {where}", params)
                total = cur.fetchone()[0]
                cur.execute(
                    f"""
                    SELECT {self.COLUMNS} FROM query_history WHERE {where}
                    ORDER BY created_at DESC, id DESC LIMIT %s OFFSET %s
                    """,
                    params + [limit, (page - 1) * limit],
                )
                history = [self._to_dict(row) for row in cur.fetchall()]
        except psycopg2.Error as e:
            logger.error(f"Database error while retrieving history for user {user_id}: {e}")
            history, total = [], 0

        return {
            "history": history,
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "pages": math.ceil(total / limit) if total else 0,
            },
        }

    def get_entry(self, user_id: str, history_id: int) -> Optional[Dict[str, Any]]:
        with get_cursor(self.db_config) as cur:
            cur.execute(
                f"SELECT {self.COLUMNS} FROM query_history WHERE user_id = %s AND id = %s",
                (user_id, history_id),
            )
            row = cur.fetchone()
        return self._to_dict(row) if row else None

    def delete_entry(self, user_id: str, history_id: int) -> bool:
        with get_cursor(self.db_config, commit=True) as cur:
            cur.execute("DELETE FROM query_history WHERE user_id = %s AND id = %s", (user_id, history_id))
            return cur.rowcount > 0

    def clear_user_history(self, user_id: str) -> int:
        with get_cursor(self.db_config, commit=True) as cur:
            cur.execute("DELETE FROM query_history WHERE user_id = %s", (user_id,))
            return cur.rowcount
