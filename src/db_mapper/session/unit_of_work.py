"""Unit-of-work session.

A ``Session`` stages creates, updates and deletes of entity instances and
applies them atomically in one storage transaction on ``commit()``.

Instances are tracked in an arena keyed by a session-local ``ref`` and an
identity map keyed by ``(entity, primary key)``, so one row is represented
by exactly one ``Instance`` object per session.  References to instances
that are not persisted yet are kept as refs and resolved at commit time,
after the referenced rows have been inserted.

Commit order:
    1. creates, referenced rows before their referencers
    2. updates, conditioned on the loaded row version
    3. link removals staged by ``unlink()``
    4. cascade-expanded deletes: loaded dependents one by one, unloaded
       dependents with one bulk delete per relationship, then the owner

Usage:
    async with mapper.session() as session:
        team = Instance("Team", name="Preventers", headquarters="Sharp Tower")
        hero = Instance("Hero", name="Rusty-Man", secret_name="Tommy Sharp")
        session.stage_create(team)
        session.stage_create(hero)
        session.relate(hero, "team", team)
        await session.commit()
        [hero_team] = await session.load(hero, "team")
"""

import itertools
import logging
from typing import Any

from pydantic import BaseModel

from db_mapper.adapters.base import StorageConnection, StorageTransaction
from db_mapper.errors import (
    AlreadyStaged,
    ConflictingWrite,
    ConstraintViolation,
    DetachedInstance,
    InstanceDeleted,
    MissingRequiredField,
    SessionClosed,
    SessionError,
)
from db_mapper.mapping.descriptor import EntityDescriptor, RelationshipKind
from db_mapper.mapping.registry import SchemaRegistry
from db_mapper.mapping.relationships import RelationshipEntry
from db_mapper.mapping.views import ViewKind, derive_view
from db_mapper.ordering import topological_sort
from db_mapper.session.instance import Instance, LifecycleState

logger = logging.getLogger(__name__)


class CommitResult(BaseModel):
    """Counts of rows written by one ``commit()``."""

    created: int = 0
    updated: int = 0
    deleted: int = 0
    bulk_deleted: int = 0
    links_removed: int = 0


def _matches(values: dict[str, Any], filters: dict[str, Any]) -> bool:
    for name, expected in filters.items():
        value = values.get(name)
        if isinstance(expected, (list, tuple, set)):
            if value not in expected:
                return False
        elif value != expected:
            return False
    return True


class Session:
    """One unit of work against one storage connection.

    Args:
        registry: Registry with validated relationships.
        connection: Storage connection owned by this session; released by
            ``close()``.
    """

    def __init__(self, registry: SchemaRegistry, connection: StorageConnection) -> None:
        self._registry = registry
        self._index = registry.index
        self._conn = connection
        self._closed = False
        self._refs = itertools.count(1)

        self._arena: dict[int, Instance] = {}
        self._identity: dict[tuple[str, tuple], int] = {}

        self._creates: list[int] = []
        self._updates: list[int] = []
        self._deletes: list[int] = []
        # owner ref -> {fk field: (referenced ref, referenced field)}
        self._pending_refs: dict[int, dict[str, tuple[int, str]]] = {}
        self._pending_links: dict[tuple, int] = {}
        self._unlinks: dict[tuple, tuple[str, dict[str, Any]]] = {}

    # ------------------------------------------------------------------
    # Context manager
    # ------------------------------------------------------------------

    async def __aenter__(self) -> "Session":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def is_closed(self) -> bool:
        return self._closed

    @property
    def new(self) -> list[Instance]:
        """Instances staged for creation."""
        return [self._arena[ref] for ref in self._creates]

    @property
    def dirty(self) -> list[Instance]:
        """Persisted instances with staged updates."""
        return [self._arena[ref] for ref in self._updates]

    @property
    def deleted(self) -> list[Instance]:
        """Instances staged for deletion."""
        return [self._arena[ref] for ref in self._deletes]

    @property
    def has_changes(self) -> bool:
        return bool(self._creates or self._updates or self._deletes or self._unlinks)

    def __contains__(self, instance: Instance) -> bool:
        return instance.ref is not None and self._arena.get(instance.ref) is instance

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _check_open(self) -> None:
        if self._closed:
            raise SessionClosed("Session is closed")

    def _descriptor(self, instance: Instance) -> EntityDescriptor:
        return self._registry.resolve(instance.entity)

    def _attach(self, instance: Instance) -> None:
        if instance.session is self:
            return
        if instance.session is not None:
            raise DetachedInstance(f"{instance.entity} instance belongs to another session")
        instance.ref = next(self._refs)
        instance._session = self
        self._arena[instance.ref] = instance

    def _detach(self, instance: Instance) -> None:
        self._arena.pop(instance.ref, None)
        self._pending_refs.pop(instance.ref, None)
        instance.ref = None
        instance._session = None

    def _require_loaded(self, instance: Instance) -> None:
        """Instance must be persisted and tracked by this (open) session."""
        self._check_open()
        if instance.state is LifecycleState.DELETED:
            raise InstanceDeleted(f"{instance.entity} instance has been deleted")
        if instance.session is not self:
            raise DetachedInstance(f"{instance.entity} instance is not loaded in this session")
        if instance.state is not LifecycleState.PERSISTED:
            raise AlreadyStaged(
                f"{instance.entity} instance is {instance.state.value}, not persisted"
            )

    def _key(self, descriptor: EntityDescriptor, values: dict[str, Any]) -> tuple:
        return tuple(values.get(name) for name in descriptor.primary_key_names)

    def _key_filters(self, descriptor: EntityDescriptor, key: Any) -> dict[str, Any]:
        names = descriptor.primary_key_names
        if isinstance(key, dict):
            missing = [n for n in names if n not in key]
            if missing:
                raise KeyError(f"{descriptor.name} key is missing {missing}")
            return {n: key[n] for n in names}
        if isinstance(key, (tuple, list)):
            if len(key) != len(names):
                raise KeyError(f"{descriptor.name} key needs {len(names)} values, got {len(key)}")
            return dict(zip(names, key))
        if len(names) != 1:
            raise KeyError(f"{descriptor.name} has a composite key {names}")
        return {names[0]: key}

    def _reference_fields(self, descriptor: EntityDescriptor) -> set[str]:
        """Fields holding foreign keys (field-level or via many-to-one declarations)."""
        fields = {f.name for f in descriptor.fields if f.foreign_key is not None}
        for entry in self._index.entries(descriptor.name):
            if entry.kind is RelationshipKind.MANY_TO_ONE:
                fields.add(entry.path.local_field)
        return fields

    def _merge(self, descriptor: EntityDescriptor, row: dict) -> Instance:
        """Bring a storage row into the identity map and return its instance."""
        values = {name: row.get(name) for name in descriptor.field_names}
        version = row.get(self._registry.version_column) if descriptor.versioned else None
        identity = (descriptor.name, self._key(descriptor, values))

        ref = self._identity.get(identity)
        if ref is not None:
            instance = self._arena[ref]
            # Staged changes win over what storage returns
            if not instance.dirty and ref not in self._deletes:
                instance._values.update(values)
                instance.version = version
            return instance

        instance = Instance(descriptor.name, values)
        instance.state = LifecycleState.PERSISTED
        instance.version = version
        self._attach(instance)
        self._identity[identity] = instance.ref
        return instance

    def _link_key(self, link_entity: str, pairs: dict[str, int]) -> tuple:
        return (link_entity, tuple(sorted(pairs.items())))

    # ------------------------------------------------------------------
    # Staging
    # ------------------------------------------------------------------

    def stage_create(self, instance: Instance) -> Instance:
        """Stage *instance* for insertion.

        Literal defaults and default factories are applied to absent
        fields, and values are validated against the entity's Update view.

        Raises:
            InstanceDeleted: The instance was deleted.
            AlreadyStaged: The instance is not transient.
            DetachedInstance: The instance is tracked by another session.
            MissingRequiredField: A required, non-reference field has no value.
            pydantic.ValidationError: A value has the wrong type, breaks a
                bound, or names an unknown field.
        """
        self._check_open()
        if instance.state is LifecycleState.DELETED:
            raise InstanceDeleted(f"{instance.entity} instance has been deleted")
        if instance.state is not LifecycleState.TRANSIENT:
            raise AlreadyStaged(f"{instance.entity} instance is already {instance.state.value}")

        if instance.session is not None and instance.session is not self:
            raise DetachedInstance(f"{instance.entity} instance belongs to another session")

        descriptor = self._descriptor(instance)
        pending = self._pending_refs.get(instance.ref, {}) if instance.ref is not None else {}

        values = dict(instance._values)
        for f in descriptor.fields:
            # An explicit None on a nullable field is a value, not an absence
            if f.name in values and (values[f.name] is not None or f.nullable):
                continue
            if f.default is not None or f.default_factory is not None:
                values[f.name] = f.make_default()
            else:
                values.setdefault(f.name, None)

        validated = derive_view(descriptor, ViewKind.UPDATE).validate(values)

        references = self._reference_fields(descriptor)
        missing = [
            f.name
            for f in descriptor.fields
            if not f.nullable
            and not f.server_generated
            and validated.get(f.name) is None
            and f.name not in references
            and f.name not in pending
        ]
        if missing:
            raise MissingRequiredField(descriptor.name, missing)

        self._attach(instance)
        instance._values = validated
        instance.state = LifecycleState.PENDING
        self._creates.append(instance.ref)
        logger.debug(f"Staged create of {descriptor.name} (ref {instance.ref})")
        return instance

    def stage_update(self, instance: Instance, changes: dict[str, Any]) -> Instance:
        """Stage changes to a persisted instance loaded in this session.

        Only fields whose value actually changes become dirty.  Original
        values are kept so ``abort()`` can restore them.

        Raises:
            InstanceDeleted: The instance was deleted.
            DetachedInstance: The instance is not loaded in this session.
            AlreadyStaged: The instance is pending or staged for deletion.
            MissingRequiredField: A non-nullable field would become ``None``.
            pydantic.ValidationError: A change has the wrong type or breaks a bound.
        """
        self._require_loaded(instance)
        if instance.ref in self._deletes:
            raise AlreadyStaged(f"{instance.entity} instance is staged for deletion")

        descriptor = self._descriptor(instance)
        validated = derive_view(descriptor, ViewKind.UPDATE).validate(changes)

        nulled = [
            name
            for name, value in validated.items()
            if value is None and not descriptor.get_field(name).nullable
        ]
        if nulled:
            raise MissingRequiredField(descriptor.name, nulled)
        for name in descriptor.primary_key_names:
            if name in validated and validated[name] != instance.get(name):
                raise SessionError(f"Primary key {descriptor.name}.{name} cannot be changed")

        for name, value in validated.items():
            self._set_tracked(instance, name, value)
        return instance

    def _set_tracked(self, instance: Instance, name: str, value: Any) -> None:
        if name not in instance._original:
            if instance.get(name) == value:
                return
            instance._original[name] = instance.get(name)
        instance._values[name] = value
        if instance._original[name] == value:
            del instance._original[name]
            instance._dirty.discard(name)
        else:
            instance._dirty.add(name)

        if instance._dirty or instance.ref in self._pending_refs:
            if instance.ref not in self._updates:
                self._updates.append(instance.ref)
        elif instance.ref in self._updates:
            self._updates.remove(instance.ref)

    def stage_delete(self, instance: Instance) -> Instance:
        """Stage deletion of a persisted instance loaded in this session.

        Cascades declared with ``cascade_delete`` are expanded at commit time.

        Raises:
            InstanceDeleted: The instance was already deleted.
            DetachedInstance: The instance is not loaded in this session.
            AlreadyStaged: The instance is pending or already staged for deletion.
        """
        self._require_loaded(instance)
        if instance.ref in self._deletes:
            raise AlreadyStaged(f"{instance.entity} instance is already staged for deletion")
        self._deletes.append(instance.ref)
        logger.debug(f"Staged delete of {instance.entity} (ref {instance.ref})")
        return instance

    # ------------------------------------------------------------------
    # Relationships
    # ------------------------------------------------------------------

    def _entry(self, instance: Instance, relationship: str, target: Instance | None) -> RelationshipEntry:
        entry = self._index.get(instance.entity, relationship)
        if target is not None and target.entity != entry.target:
            raise SessionError(
                f"{instance.entity}.{relationship} expects {entry.target}, got {target.entity}"
            )
        for inst in (instance, target):
            if inst is not None and inst.state is LifecycleState.DELETED:
                raise InstanceDeleted(f"{inst.entity} instance has been deleted")
        return entry

    def relate(self, instance: Instance, relationship: str, target: Instance | None) -> None:
        """Point a many-to-one (or one-to-many) relationship at *target*.

        For MANY_TO_ONE, *instance* references *target* (``None`` clears the
        reference).  For ONE_TO_MANY, *target* is made to reference
        *instance*.  Pending targets are resolved at commit time.

        Raises:
            UnknownRelationship: No such relationship.
            InstanceDeleted: Either instance was deleted.
            DetachedInstance: A persisted instance is not loaded in this session.
        """
        self._check_open()
        entry = self._entry(instance, relationship, target)
        if entry.kind is RelationshipKind.MANY_TO_ONE:
            self._assign(instance, entry.path.local_field, target, entry.path.remote_field)
        elif entry.kind is RelationshipKind.ONE_TO_MANY:
            if target is None:
                raise SessionError(f"{instance.entity}.{relationship} needs a target instance")
            self._assign(target, entry.path.remote_field, instance, entry.path.local_field)
        else:
            raise SessionError(
                f"{instance.entity}.{relationship} is many_to_many; use link()/unlink()"
            )

    def _assign(
        self, owner: Instance, fk_field: str, referenced: Instance | None, ref_field: str
    ) -> None:
        self._attach(owner)
        if referenced is not None:
            self._attach(referenced)
        if owner.state is LifecycleState.PERSISTED and owner.ref in self._deletes:
            raise AlreadyStaged(f"{owner.entity} instance is staged for deletion")

        pending = self._pending_refs.get(owner.ref, {})
        pending.pop(fk_field, None)
        if referenced is None:
            value = None
        elif referenced.state is LifecycleState.PERSISTED:
            value = referenced.get(ref_field)
        else:
            value = referenced.get(ref_field)
            pending[fk_field] = (referenced.ref, ref_field)
        if pending:
            self._pending_refs[owner.ref] = pending
        else:
            self._pending_refs.pop(owner.ref, None)

        if owner.state is LifecycleState.PERSISTED:
            self._set_tracked(owner, fk_field, value)
            if fk_field in pending and owner.ref not in self._updates:
                self._updates.append(owner.ref)
        else:
            owner._values[fk_field] = value

    def link(self, instance: Instance, relationship: str, target: Instance) -> Instance | None:
        """Stage a many-to-many association between *instance* and *target*.

        Returns:
            The staged link instance, or ``None`` when the call only cancels
            an ``unlink()`` staged earlier in this session.
        """
        self._check_open()
        entry = self._entry(instance, relationship, target)
        if entry.kind is not RelationshipKind.MANY_TO_MANY:
            raise SessionError(f"{instance.entity}.{relationship} is not many_to_many; use relate()")
        self._attach(instance)
        self._attach(target)

        path = entry.path
        key = self._link_key(
            path.link_entity, {path.link_local_field: instance.ref, path.link_remote_field: target.ref}
        )
        if key in self._unlinks:
            del self._unlinks[key]
            return None
        if key in self._pending_links:
            return self._arena[self._pending_links[key]]

        link = Instance(path.link_entity)
        self._assign(link, path.link_local_field, instance, path.local_field)
        self._assign(link, path.link_remote_field, target, path.remote_field)
        self.stage_create(link)
        self._pending_links[key] = link.ref
        return link

    def unlink(self, instance: Instance, relationship: str, target: Instance) -> None:
        """Stage removal of a many-to-many association."""
        self._check_open()
        entry = self._entry(instance, relationship, target)
        if entry.kind is not RelationshipKind.MANY_TO_MANY:
            raise SessionError(f"{instance.entity}.{relationship} is not many_to_many")
        self._attach(instance)
        self._attach(target)

        path = entry.path
        key = self._link_key(
            path.link_entity, {path.link_local_field: instance.ref, path.link_remote_field: target.ref}
        )
        if key in self._pending_links:
            link = self._arena[self._pending_links.pop(key)]
            self._creates.remove(link.ref)
            link.state = LifecycleState.TRANSIENT
            self._detach(link)
            return
        if instance.state is not LifecycleState.PERSISTED or target.state is not LifecycleState.PERSISTED:
            return

        link_table = self._registry.resolve(path.link_entity).table_name
        self._unlinks[key] = (
            link_table,
            {
                path.link_local_field: instance.get(path.local_field),
                path.link_remote_field: target.get(path.remote_field),
            },
        )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, entity: str, key: Any) -> Instance | None:
        """Return the instance of *entity* with primary key *key*, or ``None``.

        *key* is a scalar for single-column keys, or a tuple / dict for
        composite keys.  Instances already in the identity map are returned
        without touching storage.
        """
        self._check_open()
        descriptor = self._registry.resolve(entity)
        filters = self._key_filters(descriptor, key)
        ref = self._identity.get((entity, tuple(filters.values())))
        if ref is not None:
            instance = self._arena[ref]
            return None if instance.state is LifecycleState.DELETED else instance

        rows = await self._conn.select(descriptor.table_name, "*", filters)
        if not rows:
            return None
        return self._merge(descriptor, rows[0])

    async def select(
        self,
        entity: str,
        filters: dict[str, Any] | None = None,
        order_by: str | None = None,
    ) -> list[Instance]:
        """Return persisted instances of *entity* matching *filters*."""
        self._check_open()
        descriptor = self._registry.resolve(entity)
        if order_by is None:
            order_by = ", ".join(descriptor.primary_key_names)
        rows = await self._conn.select(descriptor.table_name, "*", filters, order_by)
        return [self._merge(descriptor, row) for row in rows]

    def _references(self, owner: Instance, fk_field: str, target: Instance, ref_field: str) -> bool:
        pending = self._pending_refs.get(owner.ref, {}).get(fk_field)
        if pending is not None:
            return pending[0] == target.ref
        value = owner.get(fk_field)
        return (
            value is not None
            and target.state is LifecycleState.PERSISTED
            and value == target.get(ref_field)
        )

    async def load(self, instance: Instance, relationship: str) -> list[Instance]:
        """Fetch the instances related to *instance* through *relationship*.

        Staged but uncommitted relationship changes in this session are
        reflected in the result.

        Raises:
            DetachedInstance: The session is closed or does not track *instance*.
            InstanceDeleted: The instance was deleted.
            UnknownRelationship: No such relationship.
        """
        if self._closed or instance.session is not self:
            raise DetachedInstance(
                f"Cannot load {instance.entity}.{relationship}: instance is not attached "
                f"to an open session"
            )
        if instance.state is LifecycleState.DELETED:
            raise InstanceDeleted(f"{instance.entity} instance has been deleted")

        entry = self._index.get(instance.entity, relationship)
        target_descriptor = self._registry.resolve(entry.target)
        path = entry.path

        if entry.kind is RelationshipKind.MANY_TO_ONE:
            pending = self._pending_refs.get(instance.ref, {}).get(path.local_field)
            if pending is not None:
                return [self._arena[pending[0]]]
            value = instance.get(path.local_field)
            if value is None:
                return []
            related = await self.get(entry.target, {path.remote_field: value})
            return [related] if related is not None else []

        if entry.kind is RelationshipKind.ONE_TO_MANY:
            candidates: list[Instance] = []
            key = instance.get(path.local_field)
            if instance.state is LifecycleState.PERSISTED and key is not None:
                rows = await self._conn.select(
                    target_descriptor.table_name,
                    "*",
                    {path.remote_field: key},
                    ", ".join(target_descriptor.primary_key_names),
                )
                candidates = [self._merge(target_descriptor, row) for row in rows]
            candidates += [i for i in self._arena.values() if i.entity == entry.target]

            result: list[Instance] = []
            seen: set[int] = set()
            for candidate in candidates:
                if candidate.ref in seen or candidate.state in (
                    LifecycleState.TRANSIENT,
                    LifecycleState.DELETED,
                ):
                    continue
                if self._references(candidate, path.remote_field, instance, path.local_field):
                    seen.add(candidate.ref)
                    result.append(candidate)
            return result

        # MANY_TO_MANY
        link_descriptor = self._registry.resolve(path.link_entity)
        result = []
        key = instance.get(path.local_field)
        if instance.state is LifecycleState.PERSISTED and key is not None:
            link_rows = await self._conn.select(
                link_descriptor.table_name, "*", {path.link_local_field: key}
            )
            target_keys = [row[path.link_remote_field] for row in link_rows]
            if target_keys:
                rows = await self._conn.select(
                    target_descriptor.table_name,
                    "*",
                    {path.remote_field: target_keys},
                    ", ".join(target_descriptor.primary_key_names),
                )
                result = [self._merge(target_descriptor, row) for row in rows]

        removed = set()
        for link_entity, pairs in self._unlinks:
            pairs = dict(pairs)
            if link_entity == path.link_entity and pairs.get(path.link_local_field) == instance.ref:
                removed.add(pairs.get(path.link_remote_field))
        result = [r for r in result if r.ref not in removed and r.state is not LifecycleState.DELETED]

        for (link_entity, pairs), _ in self._pending_links.items():
            pairs = dict(pairs)
            if link_entity == path.link_entity and pairs.get(path.link_local_field) == instance.ref:
                target = self._arena[pairs[path.link_remote_field]]
                if target not in result:
                    result.append(target)
        return result

    async def refresh(self, instance: Instance) -> Instance:
        """Re-read a persisted instance from storage, discarding staged updates.

        Raises:
            InstanceDeleted: The row no longer exists.
        """
        self._require_loaded(instance)
        descriptor = self._descriptor(instance)
        filters = dict(zip(descriptor.primary_key_names, self._key(descriptor, instance._values)))
        rows = await self._conn.select(descriptor.table_name, "*", filters)
        if not rows:
            instance.state = LifecycleState.DELETED
            self._forget(descriptor, instance)
            raise InstanceDeleted(f"{descriptor.name} row {tuple(filters.values())} no longer exists")

        self._discard_update(instance)
        instance._values.update({name: rows[0].get(name) for name in descriptor.field_names})
        if descriptor.versioned:
            instance.version = rows[0].get(self._registry.version_column)
        return instance

    def _discard_update(self, instance: Instance) -> None:
        instance._values.update(instance._original)
        instance._original.clear()
        instance._dirty.clear()
        self._pending_refs.pop(instance.ref, None)
        if instance.ref in self._updates:
            self._updates.remove(instance.ref)

    def _forget(self, descriptor: EntityDescriptor, instance: Instance) -> None:
        self._identity.pop((descriptor.name, self._key(descriptor, instance._values)), None)
        for staged in (self._updates, self._deletes):
            if instance.ref in staged:
                staged.remove(instance.ref)
        self._pending_refs.pop(instance.ref, None)

    # ------------------------------------------------------------------
    # Commit
    # ------------------------------------------------------------------

    def _resolve_ref(self, owner: Instance, ref: int, field_name: str, inserted: dict[int, dict]) -> Any:
        if ref in inserted:
            return inserted[ref][field_name]
        target = self._arena[ref]
        if target.state is LifecycleState.PERSISTED:
            return target.get(field_name)
        raise SessionError(
            f"{owner.entity} references a {target.entity} instance that is not staged for creation"
        )

    def _ordered_creates(self) -> list[int]:
        dependencies = {
            ref: {target_ref for target_ref, _ in self._pending_refs.get(ref, {}).values()}
            for ref in self._creates
        }
        return topological_sort(dependencies, list(self._creates), strict=True)

    async def _insert(
        self, txn: StorageTransaction, instance: Instance, inserted: dict[int, dict]
    ) -> dict:
        descriptor = self._descriptor(instance)
        data: dict[str, Any] = {}
        for f in descriptor.fields:
            value = instance.get(f.name)
            if f.server_generated and value is None:
                continue
            data[f.name] = value
        for fk_field, (ref, field_name) in self._pending_refs.get(instance.ref, {}).items():
            data[fk_field] = self._resolve_ref(instance, ref, field_name, inserted)
        if descriptor.versioned:
            data[self._registry.version_column] = 1

        try:
            return await txn.insert(descriptor.table_name, data)
        except ConstraintViolation as e:
            if e.kind == "primary_key":
                key = self._key(descriptor, data)
                raise ConflictingWrite(
                    f"{descriptor.name} with key {key} already exists",
                    entity=descriptor.name,
                    key=key,
                ) from e
            raise

    async def _update(
        self, txn: StorageTransaction, instance: Instance, inserted: dict[int, dict]
    ) -> dict:
        descriptor = self._descriptor(instance)
        data = {name: instance.get(name) for name in instance.dirty}
        for fk_field, (ref, field_name) in self._pending_refs.get(instance.ref, {}).items():
            data[fk_field] = self._resolve_ref(instance, ref, field_name, inserted)

        key = self._key(descriptor, instance._values)
        filters = dict(zip(descriptor.primary_key_names, key))
        if descriptor.versioned:
            filters[self._registry.version_column] = instance.version
            data[self._registry.version_column] = (instance.version or 0) + 1
        elif not data:
            return {}
        else:
            # Unversioned rows: changed columns must still hold their loaded values
            filters.update(
                {
                    name: value
                    for name, value in instance._original.items()
                    if name in data and not isinstance(value, (dict, list, tuple, set))
                }
            )

        row = await txn.update(descriptor.table_name, data, filters)
        if row is None:
            raise ConflictingWrite(
                f"{descriptor.name} {key} was changed or deleted by another unit of work",
                entity=descriptor.name,
                key=key,
            )
        return row

    async def _collect_cascaded(
        self,
        txn: StorageTransaction,
        descriptor: EntityDescriptor,
        filters: dict[str, Any],
        bulk: list[tuple[str, dict[str, Any]]],
        seen: set[tuple[str, str, Any]],
    ) -> None:
        """Record rows storage removes by ON DELETE CASCADE when a bulk delete runs.

        Walks the cascade entries below *descriptor* so loaded instances of
        deeper dependents are marked deleted once the commit succeeds.
        """
        for entry in self._index.cascade_entries(descriptor.name):
            path = entry.path
            rows = await txn.select(descriptor.table_name, path.local_field, filters)
            keys = [
                row[path.local_field]
                for row in rows
                if row[path.local_field] is not None
                and (descriptor.name, entry.name, row[path.local_field]) not in seen
            ]
            if not keys:
                continue
            seen.update((descriptor.name, entry.name, k) for k in keys)

            if entry.kind is RelationshipKind.ONE_TO_MANY:
                nested = {path.remote_field: keys}
                target = self._registry.resolve(entry.target)
                await self._collect_cascaded(txn, target, nested, bulk, seen)
                bulk.append((entry.target, nested))
            else:
                bulk.append((path.link_entity, {path.link_local_field: keys}))

    async def _delete(
        self,
        txn: StorageTransaction,
        instance: Instance,
        explicit: bool,
        versions: dict[int, int],
        done: set[int],
        removed: list[Instance],
        bulk: list[tuple[str, dict[str, Any]]],
        result: CommitResult,
    ) -> None:
        if instance.ref in done:
            return
        done.add(instance.ref)
        descriptor = self._descriptor(instance)

        for entry in self._index.cascade_entries(descriptor.name):
            path = entry.path
            key = instance.get(path.local_field)
            target = self._registry.resolve(entry.target)

            if entry.kind is RelationshipKind.ONE_TO_MANY:
                loaded = [
                    i
                    for i in list(self._arena.values())
                    if i.entity == entry.target
                    and i.state is LifecycleState.PERSISTED
                    and self._references(i, path.remote_field, instance, path.local_field)
                ]
                for dependent in loaded:
                    await self._delete(txn, dependent, False, versions, done, removed, bulk, result)
                filters = {path.remote_field: key}
                await self._collect_cascaded(txn, target, filters, bulk, set())
                result.bulk_deleted += await txn.delete(target.table_name, filters)
                bulk.append((entry.target, filters))
                continue

            link = self._registry.resolve(path.link_entity)
            target_keys: list[Any] = []
            if entry.cascade_delete:
                rows = await txn.select(link.table_name, "*", {path.link_local_field: key})
                target_keys = [row[path.link_remote_field] for row in rows]
            link_filters = {path.link_local_field: key}
            result.links_removed += await txn.delete(link.table_name, link_filters)
            bulk.append((link.name, link_filters))

            if target_keys:
                loaded = [
                    i
                    for i in list(self._arena.values())
                    if i.entity == entry.target
                    and i.state is LifecycleState.PERSISTED
                    and i.get(path.remote_field) in target_keys
                ]
                for dependent in loaded:
                    await self._delete(txn, dependent, False, versions, done, removed, bulk, result)
                filters = {path.remote_field: target_keys}
                await self._collect_cascaded(txn, target, filters, bulk, set())
                result.bulk_deleted += await txn.delete(target.table_name, filters)
                bulk.append((entry.target, filters))

        key = self._key(descriptor, instance._values)
        filters = dict(zip(descriptor.primary_key_names, key))
        if descriptor.versioned:
            filters[self._registry.version_column] = versions.get(instance.ref, instance.version)
        count = await txn.delete(descriptor.table_name, filters)
        if count == 0 and explicit:
            raise ConflictingWrite(
                f"{descriptor.name} {key} was changed or deleted by another unit of work",
                entity=descriptor.name,
                key=key,
            )
        removed.append(instance)
        result.deleted += count

    async def commit(self) -> CommitResult:
        """Apply every staged change in one storage transaction.

        On success pending instances become persisted (with generated
        fields populated), dirty flags clear and deleted instances become
        deleted.  On failure storage is rolled back and every staged change
        stays in place; no instance is modified.

        Raises:
            ConflictingWrite: A row being updated changed underneath us, or a
                created primary key already exists.
            CyclicDependency: Pending creates reference each other in a cycle.
            ConstraintViolation: Storage rejected a write.
            StorageUnavailable: Storage could not be reached.
        """
        self._check_open()
        result = CommitResult()
        if not self.has_changes:
            return result

        order = self._ordered_creates()
        inserted: dict[int, dict] = {}
        updated: dict[int, dict] = {}
        versions: dict[int, int] = {}
        removed: list[Instance] = []
        bulk: list[tuple[str, dict[str, Any]]] = []

        async with self._conn.transaction() as txn:
            for ref in order:
                inserted[ref] = await self._insert(txn, self._arena[ref], inserted)
                result.created += 1

            for ref in self._updates:
                row = await self._update(txn, self._arena[ref], inserted)
                updated[ref] = row
                if self._registry.version_column in row:
                    versions[ref] = row[self._registry.version_column]
                result.updated += 1

            for link_table, filters in self._unlinks.values():
                result.links_removed += await txn.delete(link_table, filters)
                bulk.append((self._registry.resolve_table(link_table).name, filters))

            done: set[int] = set()
            for ref in self._deletes:
                await self._delete(
                    txn, self._arena[ref], True, versions, done, removed, bulk, result
                )

        self._apply_commit(inserted, updated, removed, bulk)
        logger.info(
            f"Committed session: {result.created} created, {result.updated} updated, "
            f"{result.deleted} deleted, {result.bulk_deleted} bulk deleted"
        )
        return result

    def _apply_commit(
        self,
        inserted: dict[int, dict],
        updated: dict[int, dict],
        removed: list[Instance],
        bulk: list[tuple[str, dict[str, Any]]],
    ) -> None:
        version_column = self._registry.version_column

        for ref, row in inserted.items():
            instance = self._arena[ref]
            descriptor = self._descriptor(instance)
            instance._values.update({name: row.get(name) for name in descriptor.field_names})
            instance.version = row.get(version_column) if descriptor.versioned else None
            instance.state = LifecycleState.PERSISTED
            self._identity[(descriptor.name, self._key(descriptor, instance._values))] = ref
            self._pending_refs.pop(ref, None)

        for ref, row in updated.items():
            instance = self._arena[ref]
            descriptor = self._descriptor(instance)
            instance._values.update({name: row[name] for name in descriptor.field_names if name in row})
            if descriptor.versioned:
                instance.version = row.get(version_column)
            instance._original.clear()
            instance._dirty.clear()
            self._pending_refs.pop(ref, None)

        for instance in removed:
            instance.state = LifecycleState.DELETED
            self._forget(self._descriptor(instance), instance)

        for entity, filters in bulk:
            for instance in list(self._arena.values()):
                if (
                    instance.entity == entity
                    and instance.state is LifecycleState.PERSISTED
                    and _matches(instance._values, filters)
                ):
                    instance.state = LifecycleState.DELETED
                    self._forget(self._descriptor(instance), instance)

        self._creates.clear()
        self._updates.clear()
        self._deletes.clear()
        self._pending_links.clear()
        self._unlinks.clear()

    # ------------------------------------------------------------------
    # Abort / close
    # ------------------------------------------------------------------

    async def abort(self) -> None:
        """Discard every staged change.

        Pending instances return to transient, updated instances get their
        original values back, and staged deletes are dropped.
        """
        self._check_open()
        self._abort()

    def _abort(self) -> None:
        discarded = len(self._creates) + len(self._updates) + len(self._deletes)
        for ref in self._creates:
            instance = self._arena[ref]
            instance.state = LifecycleState.TRANSIENT
            self._detach(instance)
        for ref in list(self._updates):
            self._discard_update(self._arena[ref])

        for instance in list(self._arena.values()):
            if instance.state is LifecycleState.TRANSIENT:
                self._detach(instance)
        self._pending_refs.clear()
        self._creates.clear()
        self._updates.clear()
        self._deletes.clear()
        self._pending_links.clear()
        self._unlinks.clear()
        if discarded:
            logger.info(f"Aborted session: discarded {discarded} staged change(s)")

    async def close(self) -> None:
        """Abort outstanding changes and release the storage connection.

        Safe to call more than once.
        """
        if self._closed:
            return
        self._closed = True
        try:
            if self.has_changes:
                self._abort()
        finally:
            await self._conn.close()
            logger.debug("Session closed")
