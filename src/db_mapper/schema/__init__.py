"""Schema snapshots, comparison, introspection and DDL rendering.

Usage:
    from db_mapper.schema import compare_schema, SchemaIntrospector
    from db_mapper.schema import DatabaseSchema, TableSchema, SchemaDiff
"""

from db_mapper.schema.comparator import compare_schema, compare_table
from db_mapper.schema.introspector import SchemaIntrospector
from db_mapper.schema.models import (
    ColumnChange,
    ColumnSchema,
    ConstraintSchema,
    DatabaseSchema,
    IndexSchema,
    SchemaDiff,
    TableDiff,
    TableSchema,
)

__all__ = [
    "compare_schema",
    "compare_table",
    "SchemaIntrospector",
    "ColumnChange",
    "ColumnSchema",
    "ConstraintSchema",
    "DatabaseSchema",
    "IndexSchema",
    "SchemaDiff",
    "TableDiff",
    "TableSchema",
]
