from conftest import ORDERS_COLUMNS, ORDERS_FOREIGN_KEYS
from formatter import HEADER, format_schema, order_tables
from models import ColumnInfo, DiscoveryStrategy, ForeignKeyInfo, SchemaDescription


def _orders_schema(complete=True, strategy=DiscoveryStrategy.PRIVILEGED):
    columns = [
        ColumnInfo(
            table_name=row["table_name"],
            column_name=row["column_name"],
            data_type=row["data_type"],
            is_nullable=row["is_nullable"] == "YES",
            column_default=row["column_default"],
        )
        for row in ORDERS_COLUMNS
    ]
    foreign_keys = [ForeignKeyInfo(**row) for row in ORDERS_FOREIGN_KEYS]
    return SchemaDescription.build(
        ["orders", "customers"], columns, foreign_keys, strategy=strategy, complete=complete
    )


EXPECTED_ORDERS_CONTEXT = """-- PostgreSQL Database Schema

-- Table: customers
CREATE TABLE customers (
  id INTEGER NOT NULL,
  name TEXT NOT NULL
);

-- Table: orders
CREATE TABLE orders (
  id INTEGER NOT NULL DEFAULT nextval('orders_id_seq'::regclass),
  customer_id INTEGER,
  total NUMERIC NOT NULL DEFAULT 0
);
-- Foreign Keys for orders:
--   customer_id -> customers.id

-- Relationships Summary:
-- orders.customer_id -> customers.id
"""


def test_format_schema_full_layout():
    assert format_schema(_orders_schema()) == EXPECTED_ORDERS_CONTEXT


def test_format_schema_is_deterministic():
    assert format_schema(_orders_schema()) == format_schema(_orders_schema())


def test_priority_tables_come_first():
    text = format_schema(_orders_schema(), priority_tables=["orders"])
    assert text.index("-- Table: orders") < text.index("-- Table: customers")


def test_incomplete_schema_is_flagged():
    text = format_schema(_orders_schema(complete=False, strategy=DiscoveryStrategy.ROW_SAMPLING))
    lines = text.splitlines()
    assert lines[0] == HEADER
    assert lines[1] == (
        "-- Note: discovered via row sampling; columns and relationships may be incomplete."
    )


def test_table_without_columns_and_no_relationships():
    schema = SchemaDescription.build(["audit_log"], strategy=DiscoveryStrategy.ROW_SAMPLING)
    text = format_schema(schema)
    assert "CREATE TABLE audit_log (\n  -- columns unknown\n);" in text
    assert "Relationships Summary" not in text
    assert text.endswith(");\n")


def test_order_tables_ignores_unknown_and_duplicate_priorities():
    tables = ["users", "orders", "accounts"]
    assert order_tables(tables, ["orders", "ghost", "orders"]) == ["orders", "accounts", "users"]
    assert order_tables(tables) == ["accounts", "orders", "users"]


def test_reordering_priorities_reorders_matched_tables():
    schema = SchemaDescription.build(["d", "c", "b", "a"], strategy=DiscoveryStrategy.ROW_SAMPLING)

    def table_order(text):
        return [line[len("-- Table: "):] for line in text.splitlines() if line.startswith("-- Table: ")]

    assert table_order(format_schema(schema, ["c", "b"])) == ["c", "b", "a", "d"]
    assert table_order(format_schema(schema, ["b", "c"])) == ["b", "c", "a", "d"]
