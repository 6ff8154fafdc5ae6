"""Schema Registry for db-mapper.

The SchemaRegistry holds the canonical entity descriptors for the lifetime
of the process.  It is an explicit handle passed to sessions and planners;
there is no global instance.

Registration is two-phase:
    1. ``register()`` collects descriptors (order does not matter).
    2. ``validate_relationships()`` checks cross-references once every
       descriptor exists and builds the relationship index.

Registering another descriptor after validation drops the index; it is
rebuilt by the next ``validate_relationships()`` call.

Example:
    >>> registry = SchemaRegistry()
    >>> registry.register(Team)
    >>> registry.register(Hero)
    >>> index = registry.validate_relationships()
    >>> registry.resolve("Hero").table_name
    'hero'
"""

import logging
from typing import Iterator

from db_mapper.errors import DuplicateEntity, InvalidField, RegistrationError, UnknownEntity
from db_mapper.mapping.descriptor import EntityDescriptor
from db_mapper.mapping.relationships import RelationshipIndex, RelationshipResolver
from db_mapper.mapping.tables import build_database_schema, build_table_schema
from db_mapper.schema.models import DatabaseSchema, TableSchema

logger = logging.getLogger(__name__)

DEFAULT_VERSION_COLUMN = "version_id"


class SchemaRegistry:
    """Central registry for entity descriptors.

    Attributes:
        version_column: Column used for optimistic concurrency on
            versioned entities.
    """

    def __init__(self, version_column: str = DEFAULT_VERSION_COLUMN) -> None:
        self.version_column = version_column
        self._declared: dict[str, EntityDescriptor] = {}
        self._links: dict[str, EntityDescriptor] = {}
        self._index: RelationshipIndex | None = None

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register(self, descriptor: EntityDescriptor) -> None:
        """Register an entity descriptor.

        Raises:
            DuplicateEntity: The entity or table name is already taken.
            InvalidField: The descriptor's fields are contradictory.
        """
        if descriptor.name in self._declared:
            raise DuplicateEntity(f"Entity '{descriptor.name}' is already registered")
        for existing in self._declared.values():
            if existing.table_name == descriptor.table_name:
                raise DuplicateEntity(
                    f"Table '{descriptor.table_name}' is already mapped by {existing.name}"
                )

        descriptor.check()
        if descriptor.versioned and descriptor.get_field(self.version_column) is not None:
            raise InvalidField(
                descriptor.name,
                self.version_column,
                "name is reserved for the version column",
            )

        self._declared[descriptor.name] = descriptor
        self._links.clear()
        self._index = None
        logger.debug(f"Registered entity {descriptor.name} (table {descriptor.table_name})")

    def validate_relationships(self) -> RelationshipIndex:
        """Validate cross-entity references and build the relationship index.

        Raises:
            DanglingForeignKey, MissingLinkEntity, AsymmetricBackReference
        """
        self._links.clear()
        self._index = None
        index, links = RelationshipResolver().validate(self)
        tables = {d.table_name for d in self._declared.values()}
        for link in links:
            if link.table_name in tables:
                raise DuplicateEntity(
                    f"Generated link table '{link.table_name}' clashes with a registered table"
                )
        self._links = {link.name: link for link in links}
        self._index = index
        logger.info(
            f"Validated {len(self._declared)} entities, {len(self._links)} generated links"
        )
        return index

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    @property
    def index(self) -> RelationshipIndex:
        """The relationship index built by ``validate_relationships()``."""
        if self._index is None:
            raise RegistrationError(
                "Relationships have not been validated; call validate_relationships()"
            )
        return self._index

    @property
    def is_validated(self) -> bool:
        return self._index is not None

    def find(self, name: str) -> EntityDescriptor | None:
        """Return the descriptor named *name* (declared or generated), or None."""
        return self._declared.get(name) or self._links.get(name)

    def resolve(self, name: str) -> EntityDescriptor:
        """Return the descriptor named *name*.

        Raises:
            UnknownEntity: No such entity.
        """
        descriptor = self.find(name)
        if descriptor is None:
            raise UnknownEntity(f"Unknown entity '{name}'")
        return descriptor

    def resolve_table(self, table_name: str) -> EntityDescriptor:
        for descriptor in self.descriptors():
            if descriptor.table_name == table_name:
                return descriptor
        raise UnknownEntity(f"No entity is mapped to table '{table_name}'")

    def declared(self) -> list[EntityDescriptor]:
        """Descriptors registered by the caller, in registration order."""
        return list(self._declared.values())

    def descriptors(self) -> list[EntityDescriptor]:
        """Declared descriptors followed by generated link descriptors."""
        return list(self._declared.values()) + list(self._links.values())

    def __contains__(self, name: str) -> bool:
        return self.find(name) is not None

    def __iter__(self) -> Iterator[EntityDescriptor]:
        return iter(self.descriptors())

    def __len__(self) -> int:
        return len(self._declared) + len(self._links)

    # ------------------------------------------------------------------
    # Table representation
    # ------------------------------------------------------------------

    def table_schema(self, name: str) -> TableSchema:
        """Persisted table representation of one entity."""
        return build_table_schema(self, self.resolve(name))

    def database_schema(self) -> DatabaseSchema:
        """Persisted table representation of the whole model."""
        return build_database_schema(self)
