"""Relationship resolution and the bidirectional relationship index.

The ``RelationshipResolver`` runs once every descriptor is registered.  It
checks every foreign key and relationship declaration, generates link
entities for many-to-many relationships that do not supply one, and builds
a ``RelationshipIndex``: entity name -> ordered ``RelationshipEntry`` list.

Sessions consult the index to know which rows to fetch on ``load()`` and
which dependents to delete on cascade.

Invariants:
    - Every ``back_populates`` is matched by exactly one declaration on the
      target that points back with the complementary kind.
    - Every foreign key points at an existing entity's single-column primary key.
    - Every many-to-many relationship routes through exactly one link entity
      keyed on both principal primary keys.

Example:
    >>> index = RelationshipResolver().validate(registry)
    >>> [e.name for e in index.entries("Team")]
    ['heroes']
"""

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from db_mapper.errors import (
    AsymmetricBackReference,
    DanglingForeignKey,
    DuplicateEntity,
    InvalidField,
    MissingLinkEntity,
    UnknownRelationship,
)
from db_mapper.mapping.descriptor import (
    EntityDescriptor,
    RelationshipDeclaration,
    RelationshipKind,
    snake_case,
)
from db_mapper.mapping.fields import FieldDef, FieldKind

if TYPE_CHECKING:
    from db_mapper.mapping.registry import SchemaRegistry

logger = logging.getLogger(__name__)

# Kinds whose values compare equal across a foreign key
_KEY_FAMILIES = {
    FieldKind.INTEGER: "integer",
    FieldKind.BIGINT: "integer",
}


@dataclass(frozen=True)
class ResolutionPath:
    """How to get from an instance to its related rows.

    MANY_TO_ONE: ``local_field`` is the foreign key on this entity,
    ``remote_field`` the target's primary key.

    ONE_TO_MANY: ``local_field`` is this entity's primary key,
    ``remote_field`` the target's foreign key.

    MANY_TO_MANY: ``local_field`` / ``remote_field`` are both primary keys;
    the link fields reference this entity and the target respectively.
    """

    local_field: str
    remote_field: str
    link_entity: str | None = None
    link_local_field: str | None = None
    link_remote_field: str | None = None


@dataclass(frozen=True)
class RelationshipEntry:
    """One resolved relationship in the index."""

    name: str
    kind: RelationshipKind
    target: str
    path: ResolutionPath
    cascade_delete: bool = False
    back_populates: str | None = None


class RelationshipIndex:
    """Entity name -> ordered relationship entries.

    Read-only once built; lookups are pure in-memory operations.
    """

    def __init__(self, entries: dict[str, list[RelationshipEntry]]) -> None:
        self._entries = entries

    def entries(self, entity: str) -> list[RelationshipEntry]:
        return list(self._entries.get(entity, []))

    def get(self, entity: str, name: str) -> RelationshipEntry:
        for entry in self._entries.get(entity, []):
            if entry.name == name:
                return entry
        raise UnknownRelationship(f"{entity} has no relationship '{name}'")

    def cascade_entries(self, entity: str) -> list[RelationshipEntry]:
        """Entries whose rows must go when an instance of *entity* is deleted.

        Covers ONE_TO_MANY entries flagged ``cascade_delete`` and every
        MANY_TO_MANY entry (link rows never outlive a principal).
        """
        return [
            e
            for e in self._entries.get(entity, [])
            if (e.kind is RelationshipKind.ONE_TO_MANY and e.cascade_delete)
            or e.kind is RelationshipKind.MANY_TO_MANY
        ]

    def __contains__(self, entity: str) -> bool:
        return entity in self._entries


class RelationshipResolver:
    """Validates cross-entity references and builds the relationship index."""

    def __init__(self) -> None:
        self._shared_pairs: dict[tuple[str, str], int] = {}
        self._link_pairs: dict[str, frozenset] = {}

    def validate(
        self, registry: "SchemaRegistry"
    ) -> tuple[RelationshipIndex, list[EntityDescriptor]]:
        """Validate every declaration against the registry.

        Args:
            registry: Registry holding every declared descriptor.

        Returns:
            ``(index, generated_links)`` -- the relationship index and the
            link descriptors generated for many-to-many relationships.

        Raises:
            DanglingForeignKey: A foreign key references a missing entity
                or primary key.
            MissingLinkEntity: A many-to-many relationship has no usable
                link entity.
            AsymmetricBackReference: A back-reference does not pair up.
        """
        declared = registry.declared()

        for descriptor in declared:
            for f in descriptor.fields:
                if f.foreign_key is not None:
                    self._check_field_foreign_key(registry, descriptor, f)

        for descriptor in declared:
            for rel in descriptor.relationships:
                self._check_symmetry(registry, descriptor, rel)

        generated: dict[str, EntityDescriptor] = {}
        entries: dict[str, list[RelationshipEntry]] = {}
        self._shared_pairs = self._count_generated_pairs(registry, declared)
        self._link_pairs = {}

        for descriptor in declared:
            resolved: list[RelationshipEntry] = []
            for rel in descriptor.relationships:
                if rel.kind is RelationshipKind.MANY_TO_ONE:
                    path = self._resolve_many_to_one(registry, descriptor, rel)
                elif rel.kind is RelationshipKind.ONE_TO_MANY:
                    path = self._resolve_one_to_many(registry, descriptor, rel)
                else:
                    path = self._resolve_many_to_many(registry, descriptor, rel, generated)
                resolved.append(
                    RelationshipEntry(
                        name=rel.name,
                        kind=rel.kind,
                        target=rel.target,
                        path=path,
                        cascade_delete=rel.cascade_delete,
                        back_populates=rel.back_populates,
                    )
                )
            entries[descriptor.name] = resolved

        for link in generated.values():
            entries.setdefault(link.name, [])

        logger.debug(
            f"Resolved relationships for {len(entries)} entities "
            f"({len(generated)} generated link entities)"
        )
        return RelationshipIndex(entries), list(generated.values())

    # ------------------------------------------------------------------
    # Foreign keys
    # ------------------------------------------------------------------

    def _check_field_foreign_key(
        self, registry: "SchemaRegistry", descriptor: EntityDescriptor, f: FieldDef
    ) -> None:
        target_name, target_field = f.foreign_key_target
        target = registry.find(target_name)
        if target is None:
            raise DanglingForeignKey(
                f"{descriptor.name}.{f.name} references unknown entity '{target_name}'"
            )
        referenced = target.get_field(target_field)
        if referenced is None or not referenced.primary_key:
            raise DanglingForeignKey(
                f"{descriptor.name}.{f.name} references '{f.foreign_key}', "
                f"which is not a primary key of {target_name}"
            )
        if len(target.primary_key) != 1:
            raise DanglingForeignKey(
                f"{descriptor.name}.{f.name} references '{f.foreign_key}', "
                f"but {target_name} has a composite primary key {target.primary_key_names}"
            )
        if _key_family(f.kind) != _key_family(referenced.kind):
            raise InvalidField(
                descriptor.name,
                f.name,
                f"kind {f.kind.value} does not match referenced key kind {referenced.kind.value}",
            )

    def _single_primary_key(self, descriptor: EntityDescriptor) -> FieldDef | None:
        pk = descriptor.primary_key
        return pk[0] if len(pk) == 1 else None

    def _fk_field_to(
        self, registry: "SchemaRegistry", owner: EntityDescriptor, field_name: str, target: str
    ) -> tuple[str, str]:
        """Resolve ``owner.field_name`` as a foreign key into *target*.

        Returns:
            ``(owner_field, target_primary_key_field)``
        """
        fk_field = owner.get_field(field_name)
        if fk_field is None:
            raise DanglingForeignKey(f"{owner.name} has no foreign key field '{field_name}'")

        if fk_field.foreign_key is not None:
            ref_entity, ref_field = fk_field.foreign_key_target
            if ref_entity != target:
                raise DanglingForeignKey(
                    f"{owner.name}.{field_name} references {ref_entity}, not {target}"
                )
            return field_name, ref_field

        target_descriptor = registry.find(target)
        pk = self._single_primary_key(target_descriptor) if target_descriptor else None
        if pk is None:
            raise DanglingForeignKey(
                f"{owner.name}.{field_name} cannot reference {target}: "
                f"no single-column primary key"
            )
        return field_name, pk.name

    # ------------------------------------------------------------------
    # Back-references
    # ------------------------------------------------------------------

    def _check_symmetry(
        self, registry: "SchemaRegistry", descriptor: EntityDescriptor, rel: RelationshipDeclaration
    ) -> None:
        target = registry.find(rel.target)
        if target is None:
            raise DanglingForeignKey(
                f"{descriptor.name}.{rel.name} targets unknown entity '{rel.target}'"
            )
        if rel.back_populates is None:
            return

        other = target.get_relationship(rel.back_populates)
        if other is None:
            raise AsymmetricBackReference(
                f"{descriptor.name}.{rel.name} expects {target.name}.{rel.back_populates}, "
                f"which is not declared"
            )
        if other.target != descriptor.name or other.kind is not rel.kind.complement:
            raise AsymmetricBackReference(
                f"{target.name}.{other.name} does not pair with {descriptor.name}.{rel.name} "
                f"(expected {rel.kind.complement.value} to {descriptor.name})"
            )
        if other.back_populates != rel.name:
            raise AsymmetricBackReference(
                f"{descriptor.name}.{rel.name} names {target.name}.{other.name} as its "
                f"back-reference, but {target.name}.{other.name} does not name it back"
            )

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------

    def _resolve_many_to_one(
        self, registry: "SchemaRegistry", descriptor: EntityDescriptor, rel: RelationshipDeclaration
    ) -> ResolutionPath:
        if rel.foreign_key is None:
            raise DanglingForeignKey(
                f"{descriptor.name}.{rel.name} is many_to_one but names no foreign_key field"
            )
        local, remote = self._fk_field_to(registry, descriptor, rel.foreign_key, rel.target)
        return ResolutionPath(local_field=local, remote_field=remote)

    def _resolve_one_to_many(
        self, registry: "SchemaRegistry", descriptor: EntityDescriptor, rel: RelationshipDeclaration
    ) -> ResolutionPath:
        target = registry.find(rel.target)
        if rel.back_populates is not None:
            fk_name = target.get_relationship(rel.back_populates).foreign_key
        else:
            fk_name = rel.foreign_key
        if fk_name is None:
            raise DanglingForeignKey(
                f"{descriptor.name}.{rel.name} cannot determine the foreign key on {target.name}"
            )
        remote, local = self._fk_field_to(registry, target, fk_name, descriptor.name)
        return ResolutionPath(local_field=local, remote_field=remote)

    def _resolve_many_to_many(
        self,
        registry: "SchemaRegistry",
        descriptor: EntityDescriptor,
        rel: RelationshipDeclaration,
        generated: dict[str, EntityDescriptor],
    ) -> ResolutionPath:
        target = registry.find(rel.target)
        if target.name == descriptor.name:
            raise MissingLinkEntity(
                f"{descriptor.name}.{rel.name}: self-referential many_to_many is not supported"
            )

        candidates = {rel.link_entity}
        if rel.back_populates is not None:
            candidates.add(target.get_relationship(rel.back_populates).link_entity)
        candidates.discard(None)
        if len(candidates) > 1:
            raise AsymmetricBackReference(
                f"{descriptor.name}.{rel.name} and its back-reference name different "
                f"link entities: {sorted(candidates)}"
            )

        if candidates:
            link_name = candidates.pop()
            link = registry.find(link_name)
            if link is None:
                raise MissingLinkEntity(
                    f"{descriptor.name}.{rel.name} uses unknown link entity '{link_name}'"
                )
        else:
            link = self._generate_link(registry, descriptor, target, rel, generated)

        link_local = self._link_field_for(link, descriptor.name)
        link_remote = self._link_field_for(link, target.name)
        if link_local is None or link_remote is None:
            raise MissingLinkEntity(
                f"Link entity {link.name} must reference both {descriptor.name} and {target.name}"
            )
        if not (link_local.primary_key and link_remote.primary_key):
            raise MissingLinkEntity(
                f"Link entity {link.name} must be keyed on both {link_local.name} "
                f"and {link_remote.name}"
            )

        return ResolutionPath(
            local_field=link_local.foreign_key_target[1],
            remote_field=link_remote.foreign_key_target[1],
            link_entity=link.name,
            link_local_field=link_local.name,
            link_remote_field=link_remote.name,
        )

    def _count_generated_pairs(
        self, registry: "SchemaRegistry", declared: list[EntityDescriptor]
    ) -> dict[tuple[str, str], int]:
        """Count relationship pairs per principal pair that need a generated link."""
        pairs: dict[tuple[str, str], set[frozenset]] = {}
        for descriptor in declared:
            for rel in descriptor.relationships:
                if rel.kind is not RelationshipKind.MANY_TO_MANY or rel.target == descriptor.name:
                    continue
                if rel.link_entity is not None:
                    continue
                if rel.back_populates is not None:
                    other = registry.find(rel.target).get_relationship(rel.back_populates)
                    if other.link_entity is not None:
                        continue
                principals = tuple(sorted([descriptor.name, rel.target]))
                pairs.setdefault(principals, set()).add(_pair_key(descriptor, rel))
        return {principals: len(keys) for principals, keys in pairs.items()}

    def _link_field_for(self, link: EntityDescriptor, entity: str) -> FieldDef | None:
        for f in link.fields:
            if f.foreign_key is not None and f.foreign_key_target[0] == entity:
                return f
        return None

    def _generate_link(
        self,
        registry: "SchemaRegistry",
        left: EntityDescriptor,
        right: EntityDescriptor,
        rel: RelationshipDeclaration,
        generated: dict[str, EntityDescriptor],
    ) -> EntityDescriptor:
        first, second = sorted([left, right], key=lambda d: d.name)
        name = f"{first.name}{second.name}Link"
        if self._shared_pairs.get((first.name, second.name), 0) > 1:
            # Several relationship pairs join the same principals: one link each
            owner = rel.name if left is first else rel.back_populates
            if owner is None:
                owner = rel.name
            name = f"{first.name}{second.name}{_camel_case(owner)}Link"
        pair = _pair_key(left, rel)
        if name in generated:
            if self._link_pairs[name] != pair:
                raise MissingLinkEntity(
                    f"{left.name}.{rel.name} would share generated link entity '{name}' "
                    f"with another relationship; supply link_entity explicitly"
                )
            return generated[name]

        if registry.find(name) is not None:
            raise DuplicateEntity(
                f"Cannot generate link entity '{name}' for {left.name}.{rel.name}: "
                f"an entity with that name is already registered"
            )

        fields: list[FieldDef] = []
        for principal in (first, second):
            pk = self._single_primary_key(principal)
            if pk is None or not pk.kind.is_composable_key:
                raise MissingLinkEntity(
                    f"Cannot generate a link entity for {left.name}.{rel.name}: "
                    f"{principal.name} needs a single integer, string or uuid primary key"
                )
            fields.append(
                FieldDef(
                    name=f"{snake_case(principal.name)}_{pk.name}",
                    kind=pk.kind,
                    primary_key=True,
                    foreign_key=f"{principal.name}.{pk.name}",
                    max_length=pk.max_length,
                )
            )

        link = EntityDescriptor(name=name, fields=tuple(fields), versioned=False, is_link=True)
        generated[name] = link
        self._link_pairs[name] = pair
        logger.info(f"Generated link entity {name} for {left.name}.{rel.name}")
        return link


def _key_family(kind: FieldKind) -> str:
    return _KEY_FAMILIES.get(kind, kind.value)


def _pair_key(descriptor: EntityDescriptor, rel: RelationshipDeclaration) -> frozenset:
    """Identify a relationship together with its back-reference, if any."""
    sides = {(descriptor.name, rel.name)}
    if rel.back_populates is not None:
        sides.add((rel.target, rel.back_populates))
    return frozenset(sides)


def _camel_case(name: str) -> str:
    return "".join(part.capitalize() for part in name.split("_"))
