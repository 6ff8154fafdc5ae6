"""Pydantic models for schema snapshots and schema differences.

This module contains schema-domain models:
- Snapshot models: ColumnSchema, ConstraintSchema, IndexSchema,
  TableSchema, DatabaseSchema
- Difference models: ColumnChange, TableDiff, SchemaDiff

A ``DatabaseSchema`` describes either side of a migration diff: the shape
expected by the registered entities (``db_mapper.mapping.tables``) or the
shape introspected from live storage (``SchemaIntrospector`` or
``MemoryStorage.introspect()``).
"""

from pydantic import BaseModel, Field


# ============================================================================
# Snapshot Models
# ============================================================================


class ColumnSchema(BaseModel):
    """Schema for a database column.

    Example:
        >>> col = ColumnSchema(name="id", data_type="int")
        >>> col.is_nullable
        True
    """

    name: str
    data_type: str
    is_nullable: bool = True
    default: str | None = None
    max_length: int | None = None
    autoincrement: bool = False

    def signature(self) -> tuple:
        """Structural identity used for drift detection (defaults are ignored)."""
        return (self.data_type, self.is_nullable, self.max_length)


class ConstraintSchema(BaseModel):
    """Schema for a database constraint."""

    name: str
    constraint_type: str  # PRIMARY KEY, FOREIGN KEY, UNIQUE, CHECK
    columns: list[str] = Field(default_factory=list)
    references_table: str | None = None
    references_columns: list[str] | None = None
    on_delete: str | None = None

    def signature(self) -> tuple:
        """Structural identity: names differ between backends, shapes do not."""
        on_delete = (self.on_delete or "NO ACTION").upper()
        if on_delete == "RESTRICT":
            on_delete = "NO ACTION"
        return (
            self.constraint_type,
            tuple(self.columns),
            self.references_table,
            tuple(self.references_columns or ()),
            on_delete if self.constraint_type == "FOREIGN KEY" else None,
        )


class IndexSchema(BaseModel):
    """Schema for a database index."""

    name: str
    columns: list[str] = Field(default_factory=list)
    is_unique: bool = False
    index_type: str = "btree"

    def signature(self) -> tuple:
        return (tuple(self.columns), self.is_unique)


class TableSchema(BaseModel):
    """Schema for a database table."""

    name: str
    columns: dict[str, ColumnSchema] = Field(default_factory=dict)
    constraints: dict[str, ConstraintSchema] = Field(default_factory=dict)
    indexes: dict[str, IndexSchema] = Field(default_factory=dict)

    @property
    def primary_key(self) -> list[str]:
        """Primary key column names (empty if the table has none)."""
        for constraint in self.constraints.values():
            if constraint.constraint_type == "PRIMARY KEY":
                return list(constraint.columns)
        return []

    @property
    def foreign_keys(self) -> list[ConstraintSchema]:
        return [
            c for c in self.constraints.values() if c.constraint_type == "FOREIGN KEY"
        ]

    def referenced_tables(self) -> set[str]:
        """Tables this table depends on through foreign keys (self excluded)."""
        return {
            fk.references_table
            for fk in self.foreign_keys
            if fk.references_table and fk.references_table != self.name
        }


class DatabaseSchema(BaseModel):
    """Complete database schema (a snapshot of tables)."""

    tables: dict[str, TableSchema] = Field(default_factory=dict)

    def get_column_names(self) -> dict[str, set[str]]:
        """Map table name to set of column names."""
        return {name: set(table.columns) for name, table in self.tables.items()}


# ============================================================================
# Difference Models
# ============================================================================


class ColumnChange(BaseModel):
    """A column whose type, nullability or length differs."""

    table: str
    expected: ColumnSchema
    actual: ColumnSchema


class TableDiff(BaseModel):
    """Differences inside one table present on both sides."""

    table: str
    missing_columns: list[ColumnSchema] = Field(default_factory=list)
    extra_columns: list[ColumnSchema] = Field(default_factory=list)
    changed_columns: list[ColumnChange] = Field(default_factory=list)
    missing_constraints: list[ConstraintSchema] = Field(default_factory=list)
    extra_constraints: list[ConstraintSchema] = Field(default_factory=list)
    missing_indexes: list[IndexSchema] = Field(default_factory=list)
    extra_indexes: list[IndexSchema] = Field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (
            self.missing_columns
            or self.extra_columns
            or self.changed_columns
            or self.missing_constraints
            or self.extra_constraints
            or self.missing_indexes
            or self.extra_indexes
        )


class SchemaDiff(BaseModel):
    """Result of comparing an expected schema against an actual one.

    Example:
        >>> diff = SchemaDiff()
        >>> diff.is_empty
        True
        >>> diff.format_report()
        'Schema in sync'
    """

    missing_tables: list[TableSchema] = Field(default_factory=list)
    extra_tables: list[TableSchema] = Field(default_factory=list)
    tables: list[TableDiff] = Field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.missing_tables or self.extra_tables or self.tables)

    def format_report(self) -> str:
        """Format the differences as a human-readable report."""
        if self.is_empty:
            return "Schema in sync"

        lines = ["Schema drift detected:"]

        if self.missing_tables:
            lines.append(f"\n  Missing tables ({len(self.missing_tables)}):")
            for table in self.missing_tables:
                lines.append(f"    - {table.name}")

        if self.extra_tables:
            lines.append(f"\n  Extra tables ({len(self.extra_tables)}):")
            for table in self.extra_tables:
                lines.append(f"    - {table.name}")

        for table_diff in self.tables:
            lines.append(f"\n  Table {table_diff.table}:")
            for col in table_diff.missing_columns:
                lines.append(f"    + {col.name} {col.data_type}")
            for col in table_diff.extra_columns:
                lines.append(f"    - {col.name} {col.data_type}")
            for change in table_diff.changed_columns:
                lines.append(
                    f"    ~ {change.expected.name}: {change.actual.data_type} -> "
                    f"{change.expected.data_type}"
                )
            for constraint in table_diff.missing_constraints:
                lines.append(f"    + constraint {constraint.name}")
            for constraint in table_diff.extra_constraints:
                lines.append(f"    - constraint {constraint.name}")
            for index in table_diff.missing_indexes:
                lines.append(f"    + index {index.name}")
            for index in table_diff.extra_indexes:
                lines.append(f"    - index {index.name}")

        return "\n".join(lines)
