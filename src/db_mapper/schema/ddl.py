"""PostgreSQL DDL rendering for snapshot models.

Turns ``TableSchema`` / ``ColumnSchema`` / ``ConstraintSchema`` /
``IndexSchema`` into SQL statements.  Used by ``AsyncPostgresAdapter`` to
execute migration steps and by ``MigrationStep.to_sql()`` so operators can
review a plan before approving it.

Pure functions -- no I/O.

Usage:
    from db_mapper.schema.ddl import create_table_sql

    sql = create_table_sql(table)
    # 'CREATE TABLE team (id SERIAL NOT NULL, name VARCHAR(100) NOT NULL, ...);'
"""

import json
from datetime import date, datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from db_mapper.schema.models import ColumnSchema, ConstraintSchema, IndexSchema, TableSchema

# Normalized data type -> SQL type keyword
_SQL_TYPES = {
    "int": "INTEGER",
    "bigint": "BIGINT",
    "double precision": "DOUBLE PRECISION",
    "numeric": "NUMERIC",
    "varchar": "VARCHAR",
    "text": "TEXT",
    "bool": "BOOLEAN",
    "date": "DATE",
    "timestamptz": "TIMESTAMPTZ",
    "timestamp": "TIMESTAMP",
    "uuid": "UUID",
    "jsonb": "JSONB",
}


def render_literal(value: Any) -> str:
    """Render a Python value as a SQL literal.

    Example:
        >>> render_literal("it's")
        "'it''s'"
        >>> render_literal(True)
        'TRUE'
    """
    if value is None:
        return "NULL"
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    if isinstance(value, (int, float, Decimal)):
        return str(value)
    if isinstance(value, (dict, list)):
        value = json.dumps(value)
    elif isinstance(value, (datetime, date)):
        value = value.isoformat()
    elif isinstance(value, UUID):
        value = str(value)
    text = str(value).replace("'", "''")
    return f"'{text}'"


def column_type_sql(column: ColumnSchema) -> str:
    """SQL type for a column, using SERIAL/BIGSERIAL for autoincrement keys."""
    if column.autoincrement and column.data_type == "int":
        return "SERIAL"
    if column.autoincrement and column.data_type == "bigint":
        return "BIGSERIAL"
    sql_type = _SQL_TYPES.get(column.data_type, column.data_type.upper())
    if column.data_type == "varchar" and column.max_length:
        return f"{sql_type}({column.max_length})"
    return sql_type


def column_definition(column: ColumnSchema) -> str:
    """Column clause used inside CREATE TABLE and ADD COLUMN."""
    parts = [column.name, column_type_sql(column)]
    if not column.is_nullable:
        parts.append("NOT NULL")
    if column.default is not None and not column.autoincrement:
        parts.append(f"DEFAULT {column.default}")
    return " ".join(parts)


def constraint_clause(constraint: ConstraintSchema) -> str:
    """Constraint clause without the ALTER TABLE prefix."""
    cols = ", ".join(constraint.columns)
    if constraint.constraint_type == "PRIMARY KEY":
        return f"CONSTRAINT {constraint.name} PRIMARY KEY ({cols})"
    if constraint.constraint_type == "UNIQUE":
        return f"CONSTRAINT {constraint.name} UNIQUE ({cols})"
    if constraint.constraint_type == "FOREIGN KEY":
        ref_cols = ", ".join(constraint.references_columns or [])
        clause = (
            f"CONSTRAINT {constraint.name} FOREIGN KEY ({cols}) "
            f"REFERENCES {constraint.references_table} ({ref_cols})"
        )
        if constraint.on_delete and constraint.on_delete.upper() != "NO ACTION":
            clause += f" ON DELETE {constraint.on_delete.upper()}"
        return clause
    raise ValueError(f"Unsupported constraint type: {constraint.constraint_type}")


def create_table_sql(table: TableSchema, include_foreign_keys: bool = False) -> str:
    """CREATE TABLE statement with columns, primary key and unique constraints.

    Foreign keys are left out by default: the migration planner adds them
    as separate steps once every referenced table exists.
    """
    clauses = [column_definition(col) for col in table.columns.values()]
    for constraint in table.constraints.values():
        if constraint.constraint_type == "FOREIGN KEY" and not include_foreign_keys:
            continue
        clauses.append(constraint_clause(constraint))
    body = ",\n    ".join(clauses)
    return f"CREATE TABLE {table.name} (\n    {body}\n);"


def drop_table_sql(table_name: str) -> str:
    return f"DROP TABLE {table_name};"


def add_column_sql(table_name: str, column: ColumnSchema, backfill: Any = None) -> str:
    """ALTER TABLE ADD COLUMN.

    When *backfill* is given, existing rows receive it through a temporary
    DEFAULT that is dropped again in the same statement (unless the column
    declares its own default).
    """
    definition = column_definition(column)
    if backfill is None:
        return f"ALTER TABLE {table_name} ADD COLUMN {definition};"

    if column.default is None:
        definition = f"{definition} DEFAULT {render_literal(backfill)}"
        return (
            f"ALTER TABLE {table_name} ADD COLUMN {definition}, "
            f"ALTER COLUMN {column.name} DROP DEFAULT;"
        )
    return f"ALTER TABLE {table_name} ADD COLUMN {definition};"


def drop_column_sql(table_name: str, column_name: str) -> str:
    return f"ALTER TABLE {table_name} DROP COLUMN {column_name};"


def alter_column_sql(table_name: str, old: ColumnSchema, new: ColumnSchema) -> str:
    """ALTER COLUMN statement covering type and nullability changes."""
    actions: list[str] = []
    if (old.data_type, old.max_length) != (new.data_type, new.max_length):
        sql_type = column_type_sql(new.model_copy(update={"autoincrement": False}))
        actions.append(
            f"ALTER COLUMN {new.name} TYPE {sql_type} USING {new.name}::{sql_type}"
        )
    if old.is_nullable != new.is_nullable:
        verb = "DROP NOT NULL" if new.is_nullable else "SET NOT NULL"
        actions.append(f"ALTER COLUMN {new.name} {verb}")
    if not actions:
        return f"-- no change for {table_name}.{new.name}"
    return f"ALTER TABLE {table_name} " + ", ".join(actions) + ";"


def add_constraint_sql(table_name: str, constraint: ConstraintSchema) -> str:
    return f"ALTER TABLE {table_name} ADD {constraint_clause(constraint)};"


def drop_constraint_sql(table_name: str, constraint_name: str) -> str:
    return f"ALTER TABLE {table_name} DROP CONSTRAINT {constraint_name};"


def create_index_sql(table_name: str, index: IndexSchema) -> str:
    unique = "UNIQUE " if index.is_unique else ""
    cols = ", ".join(index.columns)
    return f"CREATE {unique}INDEX {index.name} ON {table_name} ({cols});"


def drop_index_sql(index_name: str) -> str:
    return f"DROP INDEX {index_name};"
