"""Entity mapping: descriptors, registry, relationships and views.

Usage:
    from db_mapper.mapping import EntityDescriptor, SchemaRegistry, field
    from db_mapper.mapping import RelationshipDeclaration, ViewKind, derive_view
"""

from db_mapper.mapping.descriptor import (
    EntityDescriptor,
    RelationshipDeclaration,
    RelationshipKind,
    snake_case,
)
from db_mapper.mapping.fields import FieldDef, FieldKind, field
from db_mapper.mapping.registry import SchemaRegistry
from db_mapper.mapping.relationships import (
    RelationshipEntry,
    RelationshipIndex,
    RelationshipResolver,
    ResolutionPath,
)
from db_mapper.mapping.tables import build_database_schema, build_table_schema
from db_mapper.mapping.views import EntityView, ViewField, ViewKind, derive_view

__all__ = [
    "EntityDescriptor",
    "RelationshipDeclaration",
    "RelationshipKind",
    "snake_case",
    "FieldDef",
    "FieldKind",
    "field",
    "SchemaRegistry",
    "RelationshipEntry",
    "RelationshipIndex",
    "RelationshipResolver",
    "ResolutionPath",
    "build_database_schema",
    "build_table_schema",
    "EntityView",
    "ViewField",
    "ViewKind",
    "derive_view",
]
