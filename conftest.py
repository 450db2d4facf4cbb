from typing import Any, Dict, List, Optional

import pytest

from cache import SchemaCache
from discovery import SchemaDiscovery
from exceptions import RemoteDatabaseError
from llm import SQLGenerator
from models import ConnectionRecord, DatabaseCredentials
from services import QueryOrchestrator


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class FakeRemoteClient:
    """
    Stand-in for RemoteDatabaseClient. Each catalog attribute is either the
    value to return or an exception instance to raise.
    """

    def __init__(self, tables=None, columns=None, foreign_keys=None,
                 samples: Optional[Dict[str, Any]] = None, execute_result=None):
        self.tables = RemoteDatabaseError("function get_tables() does not exist") if tables is None else tables
        self.columns = RemoteDatabaseError("function get_columns() does not exist") if columns is None else columns
        self.foreign_keys = [] if foreign_keys is None else foreign_keys
        self.samples = samples or {}
        self.execute_result = [] if execute_result is None else execute_result
        self.calls: List[tuple] = []
        self.executed: List[str] = []
        self.closed = 0

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.closed += 1

    @staticmethod
    def _answer(value):
        if isinstance(value, Exception):
            raise value
        return value

    def get_tables(self):
        self.calls.append(("get_tables",))
        return self._answer(self.tables)

    def get_columns(self):
        self.calls.append(("get_columns",))
        return self._answer(self.columns)

    def get_foreign_keys(self):
        self.calls.append(("get_foreign_keys",))
        return self._answer(self.foreign_keys)

    def fetch_rows(self, table_name, limit=1):
        self.calls.append(("fetch_rows", table_name, limit))
        if table_name not in self.samples:
            raise RemoteDatabaseError(f'relation "public.{table_name}" does not exist', status_code=404)
        return self._answer(self.samples[table_name])

    def execute_sql(self, sql):
        self.calls.append(("execute_sql", sql))
        self.executed.append(sql)
        return self._answer(self.execute_result)

    def test_connection(self):
        return True


class FakeClientFactory:
    """Hands out the same fake client for any credentials and remembers who asked."""

    def __init__(self, client: FakeRemoteClient):
        self.client = client
        self.credentials: List[DatabaseCredentials] = []

    def __call__(self, credentials):
        self.credentials.append(credentials)
        return self.client


class StubLLMClient:
    """Returns a canned completion (or raises one) and records the prompts."""

    def __init__(self, response: Any = "SELECT 1"):
        self.response = response
        self.prompts: List[tuple] = []

    def complete(self, system_prompt, user_prompt, **kwargs):
        self.prompts.append((system_prompt, user_prompt))
        if isinstance(self.response, Exception):
            raise self.response
        return self.response


class RecordingHistorySink:
    def __init__(self, fail_with: Optional[Exception] = None):
        self.attempts = []
        self.fail_with = fail_with

    def record(self, attempt):
        if self.fail_with is not None:
            raise self.fail_with
        self.attempts.append(attempt)
        return len(self.attempts)


ORDERS_COLUMNS = [
    {"table_name": "orders", "column_name": "id", "data_type": "integer",
     "is_nullable": "NO", "column_default": "nextval('orders_id_seq'::regclass)"},
    {"table_name": "orders", "column_name": "customer_id", "data_type": "integer",
     "is_nullable": "YES", "column_default": None},
    {"table_name": "orders", "column_name": "total", "data_type": "numeric",
     "is_nullable": "NO", "column_default": "0"},
    {"table_name": "customers", "column_name": "id", "data_type": "integer",
     "is_nullable": "NO", "column_default": None},
    {"table_name": "customers", "column_name": "name", "data_type": "text",
     "is_nullable": "NO", "column_default": None},
]

ORDERS_FOREIGN_KEYS = [
    {"table_name": "orders", "column_name": "customer_id",
     "foreign_table_name": "customers", "foreign_column_name": "id"},
]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def schema_cache(clock):
    return SchemaCache(default_ttl=600, clock=clock)


@pytest.fixture
def credentials():
    return DatabaseCredentials(base_url="https://shop.supabase.co", api_key="anon-key", service_key="service-key")


@pytest.fixture
def connection(credentials):
    return ConnectionRecord(id=7, user_id="user-1", nickname="shop", credentials=credentials)


@pytest.fixture
def remote_client():
    return FakeRemoteClient(
        tables=["orders", "customers"],
        columns=list(ORDERS_COLUMNS),
        foreign_keys=list(ORDERS_FOREIGN_KEYS),
        execute_result=[{"count": 42}],
    )


@pytest.fixture
def client_factory(remote_client):
    return FakeClientFactory(remote_client)


@pytest.fixture
def llm_client():
    return StubLLMClient("SELECT COUNT(*) FROM orders")


@pytest.fixture
def history_sink():
    return RecordingHistorySink()


@pytest.fixture
def orchestrator(schema_cache, client_factory, llm_client, history_sink):
    return QueryOrchestrator(
        cache=schema_cache,
        discovery=SchemaDiscovery(client_factory, probe_tables=["orders", "customers"]),
        sql_generator=SQLGenerator(llm_client),
        history_sink=history_sink,
        client_factory=client_factory,
        cache_ttl=300,
    )
