"""Persisted table representation of registered entities.

Builds the ``DatabaseSchema`` the registered model expects storage to
have.  The migration planner diffs it against the live snapshot.

Naming follows PostgreSQL's defaults so a freshly migrated database
introspects back to the same shape:
    primary key  -> ``<table>_pkey``
    unique       -> ``<table>_<column>_key``
    foreign key  -> ``<table>_<column>_fkey``
    index        -> ``ix_<table>_<column>``
"""

from typing import TYPE_CHECKING

from db_mapper.mapping.descriptor import EntityDescriptor, RelationshipKind
from db_mapper.mapping.fields import FieldKind
from db_mapper.schema.models import (
    ColumnSchema,
    ConstraintSchema,
    DatabaseSchema,
    IndexSchema,
    TableSchema,
)

if TYPE_CHECKING:
    from db_mapper.mapping.registry import SchemaRegistry


def _cascading_fields(registry: "SchemaRegistry", descriptor: EntityDescriptor) -> set[str]:
    """Foreign key fields of *descriptor* whose referenced rows cascade deletes."""
    if descriptor.is_link:
        return {f.name for f in descriptor.fields if f.foreign_key is not None}

    fields: set[str] = set()
    index = registry.index
    for other in registry.descriptors():
        for entry in index.entries(other.name):
            if (
                entry.kind is RelationshipKind.ONE_TO_MANY
                and entry.cascade_delete
                and entry.target == descriptor.name
            ):
                fields.add(entry.path.remote_field)
    return fields


def build_table_schema(registry: "SchemaRegistry", descriptor: EntityDescriptor) -> TableSchema:
    """Build the table representation of one entity.

    Requires relationships to be validated (foreign key delete rules come
    from the relationship index).
    """
    table = TableSchema(name=descriptor.table_name)
    cascading = _cascading_fields(registry, descriptor)

    for f in descriptor.fields:
        table.columns[f.name] = ColumnSchema(
            name=f.name,
            data_type=f.kind.sql_type,
            is_nullable=f.nullable,
            max_length=f.max_length if f.kind is FieldKind.STRING else None,
            autoincrement=f.server_generated,
        )

    if descriptor.versioned:
        table.columns[registry.version_column] = ColumnSchema(
            name=registry.version_column,
            data_type="int",
            is_nullable=False,
            default="1",
        )

    pk_name = f"{descriptor.table_name}_pkey"
    table.constraints[pk_name] = ConstraintSchema(
        name=pk_name,
        constraint_type="PRIMARY KEY",
        columns=descriptor.primary_key_names,
    )

    for f in descriptor.fields:
        if f.unique and not f.primary_key:
            name = f"{descriptor.table_name}_{f.name}_key"
            table.constraints[name] = ConstraintSchema(
                name=name, constraint_type="UNIQUE", columns=[f.name]
            )

        if f.foreign_key is not None:
            target_name, target_field = f.foreign_key_target
            target = registry.resolve(target_name)
            name = f"{descriptor.table_name}_{f.name}_fkey"
            table.constraints[name] = ConstraintSchema(
                name=name,
                constraint_type="FOREIGN KEY",
                columns=[f.name],
                references_table=target.table_name,
                references_columns=[target_field],
                on_delete="CASCADE" if f.name in cascading else "NO ACTION",
            )

        if f.index and not f.unique and not f.primary_key:
            name = f"ix_{descriptor.table_name}_{f.name}"
            table.indexes[name] = IndexSchema(name=name, columns=[f.name])

    return table


def build_database_schema(registry: "SchemaRegistry") -> DatabaseSchema:
    """Build the table representation of every registered entity."""
    schema = DatabaseSchema()
    for descriptor in registry.descriptors():
        schema.tables[descriptor.table_name] = build_table_schema(registry, descriptor)
    return schema
