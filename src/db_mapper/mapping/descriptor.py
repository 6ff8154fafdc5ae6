"""Entity descriptors and relationship declarations.

An ``EntityDescriptor`` is the canonical definition of one entity type:
its name, table name, ordered fields and relationship declarations.  It is
created once, handed to the ``SchemaRegistry`` and never modified.

Example:
    >>> from db_mapper.mapping import EntityDescriptor, RelationshipDeclaration, field
    >>> Team = EntityDescriptor(
    ...     name="Team",
    ...     fields=[
    ...         field("id", "int", primary_key=True, server_generated=True),
    ...         field("name", "str", max_length=100),
    ...     ],
    ...     relationships=[
    ...         RelationshipDeclaration(
    ...             name="heroes", target="Hero", kind="one_to_many",
    ...             back_populates="team", cascade_delete=True,
    ...         ),
    ...     ],
    ... )
    >>> Team.table_name
    'team'
"""

import re
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, model_validator

from db_mapper.errors import InvalidField
from db_mapper.mapping.fields import FieldDef


def snake_case(name: str) -> str:
    """Convert ``HeroTeamLink`` to ``hero_team_link``."""
    name = re.sub(r"(.)([A-Z][a-z]+)", r"\1_\2", name)
    return re.sub(r"([a-z0-9])([A-Z])", r"\1_\2", name).lower()


class RelationshipKind(Enum):
    """How two entities are wired together."""

    MANY_TO_ONE = "many_to_one"  # this side owns the foreign key
    ONE_TO_MANY = "one_to_many"  # the target side owns the foreign key
    MANY_TO_MANY = "many_to_many"  # routed through a link entity

    @property
    def complement(self) -> "RelationshipKind":
        """Kind the back-reference on the other side must have."""
        if self is RelationshipKind.MANY_TO_ONE:
            return RelationshipKind.ONE_TO_MANY
        if self is RelationshipKind.ONE_TO_MANY:
            return RelationshipKind.MANY_TO_ONE
        return RelationshipKind.MANY_TO_MANY


class RelationshipDeclaration(BaseModel):
    """One named relationship declared on an entity.

    Attributes:
        name: Relationship name, used with ``Session.load()``.
        target: Name of the related entity.
        kind: See ``RelationshipKind``.
        back_populates: Name of the matching declaration on the target.
        foreign_key: For MANY_TO_ONE, the local field holding the key.  For
            ONE_TO_MANY without ``back_populates``, the field on the target
            that references this entity.
        link_entity: For MANY_TO_MANY, an explicitly supplied link entity.
            When omitted one is generated.
        cascade_delete: Deleting an instance of this entity also deletes
            the related instances (ONE_TO_MANY, MANY_TO_MANY).
    """

    model_config = ConfigDict(frozen=True)

    name: str
    target: str
    kind: RelationshipKind
    back_populates: str | None = None
    foreign_key: str | None = None
    link_entity: str | None = None
    cascade_delete: bool = False


class EntityDescriptor(BaseModel):
    """Canonical, immutable definition of one entity type.

    Attributes:
        name: Entity name (``Hero``).
        table_name: Storage table name; defaults to the snake_case name.
        fields: Ordered field definitions.
        relationships: Relationship declarations.
        versioned: Adds the optimistic-concurrency version column.
        is_link: Set on link entities of many-to-many relationships.
    """

    model_config = ConfigDict(frozen=True)

    name: str
    table_name: str = ""
    fields: tuple[FieldDef, ...] = ()
    relationships: tuple[RelationshipDeclaration, ...] = ()
    versioned: bool = True
    is_link: bool = False

    @model_validator(mode="before")
    @classmethod
    def _default_table_name(cls, data: Any) -> Any:
        if isinstance(data, dict) and not data.get("table_name") and data.get("name"):
            data = {**data, "table_name": snake_case(data["name"])}
        return data

    @property
    def field_names(self) -> list[str]:
        return [f.name for f in self.fields]

    @property
    def primary_key(self) -> list[FieldDef]:
        return [f for f in self.fields if f.primary_key]

    @property
    def primary_key_names(self) -> list[str]:
        return [f.name for f in self.fields if f.primary_key]

    def get_field(self, name: str) -> FieldDef | None:
        for f in self.fields:
            if f.name == name:
                return f
        return None

    def get_relationship(self, name: str) -> RelationshipDeclaration | None:
        for rel in self.relationships:
            if rel.name == name:
                return rel
        return None

    def check(self) -> None:
        """Validate the descriptor on its own (no cross-entity checks).

        Raises:
            InvalidField: Duplicate names, missing primary key, or a
                contradictory field.
        """
        seen: set[str] = set()
        for f in self.fields:
            if f.name in seen:
                raise InvalidField(self.name, f.name, "declared more than once")
            seen.add(f.name)
            f.check(self.name)

        if not self.primary_key:
            raise InvalidField(self.name, "<primary key>", "entity declares no primary key")

        rel_names: set[str] = set()
        for rel in self.relationships:
            if rel.name in seen or rel.name in rel_names:
                raise InvalidField(self.name, rel.name, "relationship name clashes with another name")
            rel_names.add(rel.name)
