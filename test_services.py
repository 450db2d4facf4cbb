import pytest

from cache import SchemaCache, generate_schema_key
from conftest import FakeClientFactory, FakeRemoteClient, RecordingHistorySink, StubLLMClient
from discovery import SchemaDiscovery
from exceptions import RemoteDatabaseError, SchemaUnavailableError
from formatter import HEADER
from llm import SQLGenerator
from models import QueryErrorKind, QueryStatus
from services import DIRECT_SQL_MARKER, QueryOrchestrator


def _orchestrator(client, llm_response="SELECT COUNT(*) FROM orders", sink=None, cache=None):
    factory = FakeClientFactory(client)
    return QueryOrchestrator(
        cache=cache or SchemaCache(default_ttl=600),
        discovery=SchemaDiscovery(factory, probe_tables=["orders"]),
        sql_generator=SQLGenerator(StubLLMClient(llm_response)),
        history_sink=sink or RecordingHistorySink(),
        client_factory=factory,
    )


def _catalog_calls(client):
    return sum(1 for call in client.calls if call[0] == "get_tables")


def test_question_runs_end_to_end(orchestrator, connection, remote_client, llm_client, history_sink):
    outcome = orchestrator.process_query("user-1", connection, "How many rows are in table orders?")

    assert outcome.success is True
    assert outcome.message == "Query executed successfully"
    assert outcome.generated_sql == "SELECT COUNT(*) FROM orders"
    assert outcome.rows == [{"count": 42}]
    assert outcome.row_count == 1
    assert outcome.execution_time_ms >= 0
    assert outcome.history_id == 1
    assert remote_client.executed == ["SELECT COUNT(*) FROM orders"]

    system_prompt, user_prompt = llm_client.prompts[0]
    assert HEADER in system_prompt
    assert "CREATE TABLE orders" in system_prompt
    assert user_prompt == "How many rows are in table orders?"

    [attempt] = history_sink.attempts
    assert attempt.status == QueryStatus.SUCCESS
    assert attempt.user_id == "user-1"
    assert attempt.connection_id == 7
    assert attempt.connection_nickname == "shop"
    assert attempt.row_count == 1
    assert attempt.error_message is None


def test_schema_is_discovered_once_and_reused(orchestrator, connection, remote_client, clock):
    orchestrator.process_query("user-1", connection, "How many orders?")
    orchestrator.process_query("user-1", connection, "How many customers?")
    assert _catalog_calls(remote_client) == 1

    # cache_ttl is 300s in the fixture
    clock.advance(301)
    orchestrator.process_query("user-1", connection, "How many orders now?")
    assert _catalog_calls(remote_client) == 2


def test_schema_is_cached_per_user(orchestrator, connection, remote_client, schema_cache):
    orchestrator.get_schema_context("user-1", connection)
    orchestrator.get_schema_context("user-2", connection)
    assert _catalog_calls(remote_client) == 2
    assert schema_cache.has(generate_schema_key("user-1", 7))
    assert schema_cache.has(generate_schema_key("user-2", 7))


def test_refresh_bypasses_cache(orchestrator, connection, remote_client):
    first = orchestrator.get_schema_context("user-1", connection)
    second = orchestrator.get_schema_context("user-1", connection, refresh=True)
    assert first == second
    assert _catalog_calls(remote_client) == 2


def test_prepare_schema_reports_cache_entry(orchestrator, connection, schema_cache):
    data = orchestrator.prepare_schema("user-1", connection)

    assert data["connectionId"] == 7
    assert data["nickname"] == "shop"
    assert data["cacheKey"] == "schema:user-1:7"
    assert data["schemaLength"] == len(schema_cache.get("schema:user-1:7"))


def test_prepare_schema_with_priorities_rebuilds_order(orchestrator, connection, remote_client, schema_cache):
    orchestrator.prepare_schema("user-1", connection)
    orchestrator.prepare_schema("user-1", connection, priority_tables=["orders"])

    assert _catalog_calls(remote_client) == 2
    text = schema_cache.get("schema:user-1:7")
    assert text.index("-- Table: orders") < text.index("-- Table: customers")


def test_prepare_schema_raises_when_nothing_is_discoverable(connection):
    orchestrator = _orchestrator(FakeRemoteClient())
    with pytest.raises(SchemaUnavailableError):
        orchestrator.prepare_schema("user-1", connection)


def test_invalidate_schema(orchestrator, connection, schema_cache):
    orchestrator.get_schema_context("user-1", connection)
    assert orchestrator.invalidate_schema("user-1", 7) is True
    assert orchestrator.invalidate_schema("user-1", 7) is False
    assert schema_cache.get("schema:user-1:7") is None


def test_schema_unavailable_is_recorded(connection):
    sink = RecordingHistorySink()
    client = FakeRemoteClient()
    llm_client = StubLLMClient("SELECT 1")
    cache = SchemaCache(default_ttl=600)
    orchestrator = _orchestrator(client, sink=sink, cache=cache)
    orchestrator.sql_generator = SQLGenerator(llm_client)

    outcome = orchestrator.process_query("user-1", connection, "How many orders?")

    assert outcome.success is False
    assert outcome.error_kind == QueryErrorKind.SCHEMA_UNAVAILABLE
    assert outcome.message == "Schema unavailable"
    assert outcome.generated_sql is None
    assert llm_client.prompts == []
    [attempt] = sink.attempts
    assert attempt.status == QueryStatus.ERROR
    assert attempt.error_message.startswith("Schema unavailable: ")
    assert not cache.has(generate_schema_key("user-1", 7))
    assert attempt.generated_sql is None


def test_generation_failure_is_recorded(remote_client, connection):
    sink = RecordingHistorySink()
    orchestrator = _orchestrator(remote_client, llm_response="ERROR: Unable to generate query - unclear", sink=sink)

    outcome = orchestrator.process_query("user-1", connection, "What is the meaning of life?")

    assert outcome.error_kind == QueryErrorKind.GENERATION_FAILED
    assert outcome.error == "Unable to generate query - unclear"
    assert remote_client.executed == []
    [attempt] = sink.attempts
    assert attempt.error_message == "Could not generate query: Unable to generate query - unclear"


def test_unsafe_sql_is_never_executed(remote_client, connection):
    sink = RecordingHistorySink()
    orchestrator = _orchestrator(remote_client, llm_response="SELECT 1; DROP TABLE orders", sink=sink)

    outcome = orchestrator.process_query("user-1", connection, "Remove the orders")

    assert outcome.error_kind == QueryErrorKind.UNSAFE_QUERY
    assert "DROP" in outcome.error
    assert outcome.generated_sql == "SELECT 1; DROP TABLE orders"
    assert remote_client.executed == []
    [attempt] = sink.attempts
    assert attempt.generated_sql == "SELECT 1; DROP TABLE orders"
    assert attempt.error_message.startswith("Unsafe query generated: ")


def test_execution_failure_keeps_generated_sql(connection):
    client = FakeRemoteClient(
        tables=["orders"], columns=[], execute_result=RemoteDatabaseError('column "totl" does not exist')
    )
    sink = RecordingHistorySink()
    orchestrator = _orchestrator(client, llm_response="SELECT totl FROM orders", sink=sink)

    outcome = orchestrator.process_query("user-1", connection, "Total of orders?")

    assert outcome.error_kind == QueryErrorKind.EXECUTION_FAILED
    assert outcome.error == 'column "totl" does not exist'
    assert outcome.generated_sql == "SELECT totl FROM orders"
    [attempt] = sink.attempts
    assert attempt.generated_sql == "SELECT totl FROM orders"
    assert attempt.execution_time_ms is None
    assert attempt.row_count is None


def test_unexpected_generator_crash_is_a_generation_failure(remote_client, connection):
    sink = RecordingHistorySink()
    orchestrator = _orchestrator(remote_client, llm_response=RuntimeError("boom"), sink=sink)

    outcome = orchestrator.process_query("user-1", connection, "How many orders?")

    assert outcome.error_kind == QueryErrorKind.GENERATION_FAILED
    assert outcome.error == "boom"
    assert len(sink.attempts) == 1


def test_history_failure_does_not_change_outcome(remote_client, connection):
    sink = RecordingHistorySink(fail_with=RuntimeError("history table is locked"))
    orchestrator = _orchestrator(remote_client, sink=sink)

    outcome = orchestrator.process_query("user-1", connection, "How many orders?")

    assert outcome.success is True
    assert outcome.history_id is None


def test_raw_sql_is_stripped_and_marked(orchestrator, connection, remote_client, history_sink, llm_client):
    outcome = orchestrator.execute_raw_sql("user-1", connection, "  SELECT * FROM orders;  ")

    assert outcome.success is True
    assert remote_client.executed == ["SELECT * FROM orders;"]
    assert llm_client.prompts == []
    [attempt] = history_sink.attempts
    assert attempt.natural_language_query == DIRECT_SQL_MARKER
    assert attempt.generated_sql == "SELECT * FROM orders;"


def test_unsafe_raw_sql_is_recorded(orchestrator, connection, remote_client, history_sink):
    outcome = orchestrator.execute_raw_sql("user-1", connection, "UPDATE orders SET total = 0")

    assert outcome.error_kind == QueryErrorKind.UNSAFE_QUERY
    assert outcome.error == "contains UPDATE. Only SELECT queries are allowed."
    assert remote_client.executed == []
    assert history_sink.attempts[0].status == QueryStatus.ERROR


def test_raw_sql_does_not_need_schema(connection):
    client = FakeRemoteClient(execute_result=[{"id": 1}, {"id": 2}])
    orchestrator = _orchestrator(client)

    outcome = orchestrator.execute_raw_sql("user-1", connection, "SELECT id FROM orders")

    assert outcome.row_count == 2
    assert _catalog_calls(client) == 0


def test_select_nested_in_delete_is_reported_unsafe(remote_client, connection):
    sink = RecordingHistorySink()
    orchestrator = _orchestrator(
        remote_client, llm_response="DELETE FROM orders WHERE id IN (SELECT id FROM orders)", sink=sink
    )

    outcome = orchestrator.process_query("user-1", connection, "Remove every order")

    assert outcome.error_kind == QueryErrorKind.UNSAFE_QUERY
    assert "DELETE" in outcome.error
    assert remote_client.executed == []
    assert sink.attempts[0].generated_sql == "DELETE FROM orders WHERE id IN (SELECT id FROM orders)"
