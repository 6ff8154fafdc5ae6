"""Shared fixtures: the Team / Hero / Power model over in-memory storage."""

import pytest

from db_mapper.adapters.memory import MemoryStorage
from db_mapper.mapper import Mapper
from db_mapper.mapping import EntityDescriptor, RelationshipDeclaration, SchemaRegistry, field


def team_descriptor(**overrides) -> EntityDescriptor:
    data = dict(
        name="Team",
        fields=[
            field("id", "int", primary_key=True, server_generated=True),
            field("name", "str", max_length=100, index=True),
            field("headquarters", "str", max_length=200),
        ],
        relationships=[
            RelationshipDeclaration(
                name="heroes",
                target="Hero",
                kind="one_to_many",
                back_populates="team",
                cascade_delete=True,
            ),
        ],
    )
    data.update(overrides)
    return EntityDescriptor(**data)


def hero_descriptor(**overrides) -> EntityDescriptor:
    data = dict(
        name="Hero",
        fields=[
            field("id", "int", primary_key=True, server_generated=True),
            field("name", "str", max_length=100, index=True),
            field("secret_name", "str", max_length=100, sensitive=True),
            field("age", "int", nullable=True, ge=0, index=True),
            field("team_id", "int", nullable=True, foreign_key="Team.id"),
        ],
        relationships=[
            RelationshipDeclaration(
                name="team",
                target="Team",
                kind="many_to_one",
                foreign_key="team_id",
                back_populates="heroes",
            ),
            RelationshipDeclaration(
                name="powers",
                target="Power",
                kind="many_to_many",
                back_populates="heroes",
            ),
        ],
    )
    data.update(overrides)
    return EntityDescriptor(**data)


def power_descriptor(**overrides) -> EntityDescriptor:
    data = dict(
        name="Power",
        fields=[
            field("id", "int", primary_key=True, server_generated=True),
            field("name", "str", max_length=50, unique=True),
        ],
        relationships=[
            RelationshipDeclaration(
                name="heroes",
                target="Hero",
                kind="many_to_many",
                back_populates="powers",
            ),
        ],
    )
    data.update(overrides)
    return EntityDescriptor(**data)


def build_registry(*descriptors: EntityDescriptor) -> SchemaRegistry:
    registry = SchemaRegistry()
    for descriptor in descriptors or (team_descriptor(), hero_descriptor(), power_descriptor()):
        registry.register(descriptor)
    registry.validate_relationships()
    return registry


@pytest.fixture
def registry() -> SchemaRegistry:
    """Validated registry with Team, Hero, Power and the generated HeroPowerLink."""
    return build_registry()


@pytest.fixture
def storage(registry: SchemaRegistry) -> MemoryStorage:
    """In-memory storage whose tables already match the registry."""
    return MemoryStorage(registry.database_schema())


@pytest.fixture
def mapper(registry: SchemaRegistry, storage: MemoryStorage) -> Mapper:
    return Mapper(registry, storage)
