from typing import Dict, List, Sequence

from models import ColumnInfo, ForeignKeyInfo, SchemaDescription

HEADER = "-- PostgreSQL Database Schema"


def order_tables(tables: Sequence[str], priority_tables: Sequence[str] = ()) -> List[str]:
    """Priority tables first in the order given, then everything else alphabetically."""
    known = set(tables)
    first = [name for name in dict.fromkeys(priority_tables) if name in known]
    chosen = set(first)
    return first + sorted(name for name in known if name not in chosen)


def _column_line(column: ColumnInfo) -> str:
    line = f"  {column.column_name} {column.data_type.upper()}"
    if not column.is_nullable:
        line += " NOT NULL"
    if column.column_default is not None and column.column_default != "":
        line += f" DEFAULT {column.column_default}"
    return line


def _table_block(table_name: str, columns: List[ColumnInfo], foreign_keys: List[ForeignKeyInfo]) -> List[str]:
    lines = [f"-- Table: {table_name}", f"CREATE TABLE {table_name} ("]
    if columns:
        column_lines = [_column_line(col) for col in columns]
        lines.append(",\n".join(column_lines))
    else:
        lines.append("  -- columns unknown")
    lines.append(");")
    if foreign_keys:
        lines.append(f"-- Foreign Keys for {table_name}:")
        lines.extend(f"--   {fk.column_name} -> {fk.foreign_table_name}.{fk.foreign_column_name}" for fk in foreign_keys)
    return lines


def format_schema(schema: SchemaDescription, priority_tables: Sequence[str] = ()) -> str:
    """
    Render a schema as compact pseudo-DDL for a language-model prompt.

    The output depends only on the arguments, so the same schema always yields
    byte-identical text.
    """
    columns_by_table: Dict[str, List[ColumnInfo]] = {}
    for column in schema.columns:
        columns_by_table.setdefault(column.table_name, []).append(column)

    fks_by_table: Dict[str, List[ForeignKeyInfo]] = {}
    for fk in schema.foreign_keys:
        fks_by_table.setdefault(fk.table_name, []).append(fk)

    lines = [HEADER]
    if not schema.complete:
        lines.append(
            f"-- Note: discovered via {schema.strategy.value.replace('_', ' ')}; "
            "columns and relationships may be incomplete."
        )
    lines.append("")

    for table_name in order_tables(schema.tables, priority_tables):
        lines.extend(_table_block(
            table_name,
            columns_by_table.get(table_name, []),
            fks_by_table.get(table_name, []),
        ))
        lines.append("")

    if schema.foreign_keys:
        lines.append("-- Relationships Summary:")
        lines.extend(
            f"-- {fk.table_name}.{fk.column_name} -> {fk.foreign_table_name}.{fk.foreign_column_name}"
            for fk in schema.foreign_keys
        )

    return "\n".join(lines).rstrip("\n") + "\n"
