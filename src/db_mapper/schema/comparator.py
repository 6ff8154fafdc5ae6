"""Schema comparison using set operations.

Compares an expected ``DatabaseSchema`` (derived from registered entities)
against an actual one (introspected from storage).  Pure logic -- no I/O,
no database connections.

Constraints and indexes are matched by shape (type, columns, referenced
table), not by name, because backends name them differently.  Primary key
and CHECK constraints are not compared.

Usage:
    from db_mapper.schema.comparator import compare_schema

    diff = compare_schema(registry.database_schema(), await storage.introspect())
    if not diff.is_empty:
        print(diff.format_report())
"""

from db_mapper.schema.models import (
    ColumnChange,
    DatabaseSchema,
    SchemaDiff,
    TableDiff,
    TableSchema,
)

# Constraint types the comparator tracks
COMPARED_CONSTRAINTS = frozenset({"UNIQUE", "FOREIGN KEY"})


def compare_table(expected: TableSchema, actual: TableSchema) -> TableDiff:
    """Compare two versions of the same table.

    Args:
        expected: Table shape the model declares.
        actual: Table shape found in storage.

    Returns:
        ``TableDiff`` listing missing, extra and changed columns,
        constraints and indexes.  Lists keep the expected/actual column
        order so plans are deterministic.
    """
    diff = TableDiff(table=expected.name)

    expected_cols: set[str] = set(expected.columns)
    actual_cols: set[str] = set(actual.columns)

    diff.missing_columns = [
        col for name, col in expected.columns.items() if name not in actual_cols
    ]
    diff.extra_columns = [
        col for name, col in actual.columns.items() if name not in expected_cols
    ]

    for name in expected.columns:
        if name not in actual_cols:
            continue
        want = expected.columns[name]
        have = actual.columns[name]
        if want.signature() != have.signature():
            diff.changed_columns.append(
                ColumnChange(table=expected.name, expected=want, actual=have)
            )

    expected_constraints = {
        c.signature(): c
        for c in expected.constraints.values()
        if c.constraint_type in COMPARED_CONSTRAINTS
    }
    actual_constraints = {
        c.signature(): c
        for c in actual.constraints.values()
        if c.constraint_type in COMPARED_CONSTRAINTS
    }
    diff.missing_constraints = [
        c for sig, c in expected_constraints.items() if sig not in actual_constraints
    ]
    diff.extra_constraints = [
        c for sig, c in actual_constraints.items() if sig not in expected_constraints
    ]

    expected_indexes = {i.signature(): i for i in expected.indexes.values()}
    actual_indexes = {i.signature(): i for i in actual.indexes.values()}
    diff.missing_indexes = [
        i for sig, i in expected_indexes.items() if sig not in actual_indexes
    ]
    diff.extra_indexes = [
        i for sig, i in actual_indexes.items() if sig not in expected_indexes
    ]

    return diff


def compare_schema(expected: DatabaseSchema, actual: DatabaseSchema) -> SchemaDiff:
    """Compare the expected schema against the actual one.

    Performs set operations to find:
    - Missing tables: in *expected* but not in *actual*
    - Extra tables: in *actual* but not in *expected*
    - Per-table differences for tables present on both sides

    Examples:
        >>> from db_mapper.schema.models import ColumnSchema, TableSchema
        >>> users = TableSchema(name="users", columns={
        ...     "id": ColumnSchema(name="id", data_type="int", is_nullable=False),
        ... })
        >>> compare_schema(
        ...     DatabaseSchema(tables={"users": users}),
        ...     DatabaseSchema(tables={"users": users}),
        ... ).is_empty
        True
        >>> diff = compare_schema(DatabaseSchema(tables={"users": users}), DatabaseSchema())
        >>> [t.name for t in diff.missing_tables]
        ['users']
    """
    expected_tables: set[str] = set(expected.tables)
    actual_tables: set[str] = set(actual.tables)

    result = SchemaDiff(
        missing_tables=[
            expected.tables[name] for name in expected.tables if name not in actual_tables
        ],
        extra_tables=[
            actual.tables[name] for name in actual.tables if name not in expected_tables
        ],
    )

    for name in expected.tables:
        if name not in actual_tables:
            continue
        table_diff = compare_table(expected.tables[name], actual.tables[name])
        if not table_diff.is_empty:
            result.tables.append(table_diff)

    return result
