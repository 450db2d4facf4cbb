import logging
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import requests

from exceptions import RemoteDatabaseError
from models import DatabaseCredentials

logger = logging.getLogger(__name__)


class RemoteDatabaseClient:
    """
    Thin client for a user's PostgREST-fronted database (Supabase project).

    Catalog helpers (``get_tables``, ``get_columns``, ``get_foreign_keys``) and
    ``execute_sql`` are server-side functions the user installs; any of them may
    be missing or forbidden, so every call raises RemoteDatabaseError on failure
    and leaves the fallback policy to the caller.
    """

    def __init__(self, credentials: DatabaseCredentials, timeout: float = 30,
                 session: Optional[requests.Session] = None):
        self.credentials = credentials
        self.timeout = timeout
        self.session = session or requests.Session()

    def __enter__(self) -> "RemoteDatabaseClient":
        return self

    def __exit__(self, *exc_info):
        self.close()

    def close(self):
        self.session.close()

    @property
    def rest_url(self) -> str:
        return f"{self.credentials.base_url}/rest/v1"

    def _headers(self) -> Dict[str, str]:
        key = self.credentials.access_key
        return {
            "apikey": key,
            "Authorization": f"Bearer {key}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    @staticmethod
    def _error_message(response: requests.Response) -> str:
        try:
            payload = response.json()
        except ValueError:
            return response.text or f"HTTP {response.status_code}"
        if isinstance(payload, dict):
            return payload.get("message") or payload.get("error") or str(payload)
        return str(payload)

    def _request(self, method: str, path: str, **kwargs) -> Any:
        url = f"{self.rest_url}{path}"
        try:
            response = self.session.request(
                method, url, headers=self._headers(), timeout=self.timeout, **kwargs
            )
        except requests.exceptions.RequestException as e:
            raise RemoteDatabaseError(f"Could not reach database: {e}") from e

        if response.status_code >= 400:
            raise RemoteDatabaseError(self._error_message(response), status_code=response.status_code)
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise RemoteDatabaseError("Database returned a non-JSON response") from e

    def rpc(self, function_name: str, params: Optional[Dict[str, Any]] = None) -> Any:
        return self._request("POST", f"/rpc/{quote(function_name, safe='')}", json=params or {})

    def _rpc_rows(self, function_name: str) -> List[Dict[str, Any]]:
        rows = self.rpc(function_name)
        if rows is None:
            return []
        if not isinstance(rows, list):
            raise RemoteDatabaseError(f"{function_name} returned an unexpected payload")
        return rows

    def get_tables(self) -> List[str]:
        return [row["table_name"] for row in self._rpc_rows("get_tables")]

    def get_columns(self) -> List[Dict[str, Any]]:
        return self._rpc_rows("get_columns")

    def get_foreign_keys(self) -> List[Dict[str, Any]]:
        return self._rpc_rows("get_foreign_keys")

    def fetch_rows(self, table_name: str, limit: int = 1) -> List[Dict[str, Any]]:
        """Read up to ``limit`` rows of a table through the REST interface."""
        rows = self._request(
            "GET", f"/{quote(table_name, safe='')}", params={"select": "*", "limit": limit}
        )
        if rows is None:
            return []
        if not isinstance(rows, list):
            raise RemoteDatabaseError(f"Unexpected payload reading {table_name}")
        return rows

    def execute_sql(self, sql: str) -> List[Dict[str, Any]]:
        """Run a SELECT through the ``execute_sql`` helper and return its rows."""
        # The helper wraps the statement in a subquery, so a trailing semicolon breaks it.
        statement = sql.strip().rstrip(";").strip()
        result = self.rpc("execute_sql", {"query": statement})
        if result is None:
            return []
        # execute_sql reports SQL errors as a JSON object instead of an HTTP error.
        if isinstance(result, dict):
            if "error" in result:
                raise RemoteDatabaseError(str(result["error"]))
            return [result]
        if not isinstance(result, list):
            raise RemoteDatabaseError("execute_sql returned an unexpected payload")
        return result

    def test_connection(self) -> bool:
        """True when the REST endpoint answers and accepts the key."""
        try:
            self._request("GET", "/")
            return True
        except RemoteDatabaseError as e:
            if e.status_code is not None and e.status_code not in (401, 403) and e.status_code < 500:
                # Reachable and authorized; the root document itself may be disabled.
                return True
            logger.warning(f"Connection test failed for {self.credentials.base_url}: {e}")
            return False
