"""Tests for the unit-of-work Session.

Covers staging rules, commit ordering of interdependent creates,
relationship loading, optimistic concurrency, cascade deletes, abort and
scoped close (including cancellation).  Runs against MemoryStorage.
"""

import asyncio

import pytest
from pydantic import ValidationError

from db_mapper.adapters.memory import MemoryStorage
from db_mapper.errors import (
    AlreadyStaged,
    ConflictingWrite,
    ConstraintViolation,
    CyclicDependency,
    DetachedInstance,
    InstanceDeleted,
    MissingRequiredField,
    SessionClosed,
    SessionError,
    StorageError,
    UnknownRelationship,
)
from db_mapper.mapper import Mapper
from db_mapper.mapping import EntityDescriptor, RelationshipDeclaration, SchemaRegistry, field
from db_mapper.session import Instance, LifecycleState, Session

from conftest import build_registry, hero_descriptor, power_descriptor, team_descriptor


def _team(name: str = "Preventers", headquarters: str = "Sharp Tower") -> Instance:
    return Instance("Team", name=name, headquarters=headquarters)


def _hero(name: str = "Rusty-Man", secret_name: str = "Tommy Sharp", **kwargs) -> Instance:
    return Instance("Hero", name=name, secret_name=secret_name, **kwargs)


async def _seed_team_with_heroes(mapper: Mapper, count: int) -> tuple[int, list[int]]:
    """Commit one team with *count* heroes; return (team id, hero ids)."""
    async with mapper.session() as session:
        team = session.stage_create(_team())
        heroes = []
        for i in range(count):
            hero = session.stage_create(_hero(name=f"Hero {i}", secret_name=f"Secret {i}"))
            session.relate(hero, "team", team)
            heroes.append(hero)
        await session.commit()
        return team.id, [h.id for h in heroes]


# ============================================================================
# Test: Instances
# ============================================================================


class TestInstance:
    """Verify Instance value access."""

    def test_attribute_and_item_access(self) -> None:
        hero = _hero(age=48)
        assert hero.name == "Rusty-Man"
        assert hero["age"] == 48
        assert "secret_name" in hero
        assert hero.get("team_id") is None

    def test_unknown_attribute(self) -> None:
        with pytest.raises(AttributeError, match="Hero has no field 'power'"):
            _hero().power

    def test_to_dict_restricted(self) -> None:
        hero = _hero()
        assert hero.to_dict(["name"]) == {"name": "Rusty-Man"}

    def test_new_instance_is_transient(self) -> None:
        hero = _hero()
        assert hero.state is LifecycleState.TRANSIENT
        assert hero.session is None
        assert hero.ref is None


# ============================================================================
# Test: Team / Hero Scenario
# ============================================================================


class TestTeamHeroScenario:
    """End-to-end create, relate, commit and load."""

    async def test_create_relate_load(self, mapper: Mapper, storage: MemoryStorage) -> None:
        async with mapper.session() as session:
            team = _team()
            hero = _hero(age=48)
            session.stage_create(team)
            session.stage_create(hero)
            session.relate(hero, "team", team)

            result = await session.commit()

            assert result.created == 2
            assert team.state is LifecycleState.PERSISTED
            assert hero.state is LifecycleState.PERSISTED
            assert team.id == 1
            assert hero.team_id == team.id
            assert hero.version == 1
            assert await session.load(hero, "team") == [team]
            assert await session.load(team, "heroes") == [hero]

        [row] = storage.rows("hero")
        assert row["team_id"] == 1
        assert row["version_id"] == 1

    async def test_public_view_shapes_output(self, mapper: Mapper) -> None:
        async with mapper.session() as session:
            hero = session.stage_create(_hero())
            await session.commit()
            public = hero.to_dict(mapper.derive_view("Hero", "public").field_names)
        assert "secret_name" not in public
        assert public["id"] == hero.id

    async def test_one_to_many_relate(self, mapper: Mapper, storage: MemoryStorage) -> None:
        async with mapper.session() as session:
            team = session.stage_create(_team())
            hero = session.stage_create(_hero())
            session.relate(team, "heroes", hero)
            assert await session.load(team, "heroes") == [hero]
            await session.commit()
        assert storage.rows("hero")[0]["team_id"] == storage.rows("team")[0]["id"]

    async def test_load_reflects_staged_reference(self, mapper: Mapper) -> None:
        async with mapper.session() as session:
            team = session.stage_create(_team())
            hero = session.stage_create(_hero())
            session.relate(hero, "team", team)
            assert await session.load(hero, "team") == [team]

    async def test_identity_map(self, mapper: Mapper) -> None:
        team_id, [hero_id] = await _seed_team_with_heroes(mapper, 1)
        async with mapper.session() as session:
            first = await session.get("Hero", hero_id)
            second = await session.get("Hero", {"id": hero_id})
            [via_select] = await session.select("Hero", {"team_id": team_id})
            assert first is second is via_select
            assert await session.get("Hero", 999) is None

    async def test_unknown_relationship(self, mapper: Mapper) -> None:
        async with mapper.session() as session:
            hero = session.stage_create(_hero())
            with pytest.raises(UnknownRelationship):
                await session.load(hero, "villains")


# ============================================================================
# Test: Staging Rules
# ============================================================================


class TestStageCreate:
    """Verify stage_create() validation and state checks."""

    async def test_missing_required_field(self, mapper: Mapper) -> None:
        async with mapper.session() as session:
            hero = Instance("Hero", name="Deadpond")
            with pytest.raises(MissingRequiredField) as exc_info:
                session.stage_create(hero)
            assert exc_info.value.fields == ["secret_name"]
            assert hero.state is LifecycleState.TRANSIENT
            assert hero not in session

    async def test_unknown_field_rejected(self, mapper: Mapper) -> None:
        async with mapper.session() as session:
            with pytest.raises(ValidationError):
                session.stage_create(_hero(cape=True))

    async def test_bounds_enforced(self, mapper: Mapper) -> None:
        async with mapper.session() as session:
            with pytest.raises(ValidationError):
                session.stage_create(_hero(age=-1))

    async def test_already_staged(self, mapper: Mapper) -> None:
        async with mapper.session() as session:
            hero = session.stage_create(_hero())
            with pytest.raises(AlreadyStaged):
                session.stage_create(hero)

    async def test_instance_of_other_session(self, mapper: Mapper) -> None:
        async with mapper.session() as first, mapper.session() as second:
            team = _team()
            first.relate(_hero(), "team", team)
            with pytest.raises(DetachedInstance):
                second.stage_create(team)

    async def test_defaults_applied(self) -> None:
        registry = SchemaRegistry()
        registry.register(
            EntityDescriptor(
                name="Mission",
                fields=[
                    field("id", "int", primary_key=True, server_generated=True),
                    field("title", "str"),
                    field("priority", "int", default=3),
                    field("tags", "json", default_factory=list),
                ],
            )
        )
        mapper = Mapper(registry, MemoryStorage())
        await mapper.apply(await mapper.diff())
        async with mapper.session() as session:
            mission = session.stage_create(Instance("Mission", title="Rescue"))
            assert mission.priority == 3
            assert mission.tags == []
            await session.commit()
            assert mission.id == 1

    async def test_explicit_none_keeps_nullable_field_empty(self) -> None:
        registry = SchemaRegistry()
        registry.register(
            EntityDescriptor(
                name="Mission",
                fields=[
                    field("id", "int", primary_key=True, server_generated=True),
                    field("title", "str"),
                    field("rating", "int", nullable=True, default=5),
                ],
            )
        )
        mapper = Mapper(registry, MemoryStorage())
        await mapper.apply(await mapper.diff())
        async with mapper.session() as session:
            rated = session.stage_create(Instance("Mission", title="Rescue"))
            unrated = session.stage_create(Instance("Mission", title="Patrol", rating=None))
            assert rated.rating == 5
            assert unrated.rating is None
            await session.commit()
            assert unrated.rating is None


class TestStageUpdate:
    """Verify stage_update() dirty tracking and validation."""

    async def test_update_commits_and_bumps_version(self, mapper: Mapper, storage: MemoryStorage) -> None:
        _, [hero_id] = await _seed_team_with_heroes(mapper, 1)
        async with mapper.session() as session:
            hero = await session.get("Hero", hero_id)
            session.stage_update(hero, {"age": 49})
            assert hero.dirty == {"age"}
            assert session.dirty == [hero]

            result = await session.commit()

            assert result.updated == 1
            assert hero.dirty == frozenset()
            assert hero.version == 2
        [row] = storage.rows("hero")
        assert row["age"] == 49
        assert row["version_id"] == 2

    async def test_unchanged_value_not_dirty(self, mapper: Mapper) -> None:
        _, [hero_id] = await _seed_team_with_heroes(mapper, 1)
        async with mapper.session() as session:
            hero = await session.get("Hero", hero_id)
            session.stage_update(hero, {"name": hero.name})
            assert hero.dirty == frozenset()
            assert not session.has_changes

    async def test_reverting_value_clears_dirty(self, mapper: Mapper) -> None:
        _, [hero_id] = await _seed_team_with_heroes(mapper, 1)
        async with mapper.session() as session:
            hero = await session.get("Hero", hero_id)
            original = hero.name
            session.stage_update(hero, {"name": "Renamed"})
            session.stage_update(hero, {"name": original})
            assert hero.dirty == frozenset()
            assert session.dirty == []

    async def test_null_on_required_field(self, mapper: Mapper) -> None:
        _, [hero_id] = await _seed_team_with_heroes(mapper, 1)
        async with mapper.session() as session:
            hero = await session.get("Hero", hero_id)
            with pytest.raises(MissingRequiredField):
                session.stage_update(hero, {"name": None})

    async def test_primary_key_change_rejected(self, mapper: Mapper) -> None:
        _, [hero_id] = await _seed_team_with_heroes(mapper, 1)
        async with mapper.session() as session:
            hero = await session.get("Hero", hero_id)
            with pytest.raises(SessionError, match="cannot be changed"):
                session.stage_update(hero, {"id": hero_id + 1})

    async def test_pending_instance_rejected(self, mapper: Mapper) -> None:
        async with mapper.session() as session:
            hero = session.stage_create(_hero())
            with pytest.raises(AlreadyStaged):
                session.stage_update(hero, {"age": 1})

    async def test_transient_instance_detached(self, mapper: Mapper) -> None:
        async with mapper.session() as session:
            with pytest.raises(DetachedInstance):
                session.stage_update(_hero(), {"age": 1})

    async def test_relate_persisted_to_pending(self, mapper: Mapper, storage: MemoryStorage) -> None:
        _, [hero_id] = await _seed_team_with_heroes(mapper, 1)
        async with mapper.session() as session:
            hero = await session.get("Hero", hero_id)
            new_team = session.stage_create(_team(name="Z-Force"))
            session.relate(hero, "team", new_team)
            result = await session.commit()
            assert result.created == 1
            assert result.updated == 1
            assert hero.team_id == new_team.id
        assert storage.rows("hero")[0]["team_id"] == 2


# ============================================================================
# Test: Interdependent Creates
# ============================================================================


def _person_mapper() -> Mapper:
    registry = SchemaRegistry()
    registry.register(
        EntityDescriptor(
            name="Person",
            fields=[
                field("id", "int", primary_key=True, server_generated=True),
                field("name", "str"),
                field("mentor_id", "int", nullable=True, foreign_key="Person.id"),
            ],
            relationships=[
                RelationshipDeclaration(
                    name="mentor", target="Person", kind="many_to_one", foreign_key="mentor_id",
                ),
            ],
        )
    )
    registry.validate_relationships()
    return Mapper(registry, MemoryStorage(registry.database_schema()))


class TestCommitOrdering:
    """Creates are inserted referenced-first regardless of staging order."""

    async def test_referenced_row_inserted_first(self, mapper: Mapper, storage: MemoryStorage) -> None:
        async with mapper.session() as session:
            hero = session.stage_create(_hero())
            team = session.stage_create(_team())
            session.relate(hero, "team", team)
            await session.commit()
            assert hero.team_id == team.id
        assert storage.rows("hero")[0]["team_id"] == storage.rows("team")[0]["id"]

    async def test_self_reference_chain(self) -> None:
        mapper = _person_mapper()
        async with mapper.session() as session:
            apprentice = session.stage_create(Instance("Person", name="Kid"))
            master = session.stage_create(Instance("Person", name="Master"))
            session.relate(apprentice, "mentor", master)
            await session.commit()
            assert apprentice.mentor_id == master.id

    async def test_cycle_raises_and_keeps_staged_changes(self) -> None:
        mapper = _person_mapper()
        async with mapper.session() as session:
            a = session.stage_create(Instance("Person", name="A"))
            b = session.stage_create(Instance("Person", name="B"))
            session.relate(a, "mentor", b)
            session.relate(b, "mentor", a)
            with pytest.raises(CyclicDependency):
                await session.commit()
            assert session.new == [a, b]
            assert a.state is LifecycleState.PENDING


# ============================================================================
# Test: Commit Failures
# ============================================================================


class TestCommitFailure:
    """A failed commit leaves storage and every instance untouched."""

    async def test_unique_violation(self, mapper: Mapper, storage: MemoryStorage) -> None:
        async with mapper.session() as session:
            session.stage_create(Instance("Power", name="Flight"))
            await session.commit()

        async with mapper.session() as session:
            team = session.stage_create(_team())
            power = session.stage_create(Instance("Power", name="Flight"))
            with pytest.raises(ConstraintViolation) as exc_info:
                await session.commit()
            assert exc_info.value.kind == "unique"
            assert team.state is LifecycleState.PENDING
            assert team.id is None
            assert session.new == [team, power]
        assert storage.rows("team") == []

    async def test_duplicate_primary_key_is_conflicting_write(self, mapper: Mapper) -> None:
        async with mapper.session() as session:
            session.stage_create(Instance("Power", id=1, name="Flight"))
            await session.commit()
        async with mapper.session() as session:
            session.stage_create(Instance("Power", id=1, name="Strength"))
            with pytest.raises(ConflictingWrite):
                await session.commit()

    async def test_retry_after_correction(self, mapper: Mapper, storage: MemoryStorage) -> None:
        async with mapper.session() as session:
            hero = session.stage_create(_hero(team_id=42))
            with pytest.raises(ConstraintViolation) as exc_info:
                await session.commit()
            assert exc_info.value.kind == "foreign_key"
            session.relate(hero, "team", None)
            result = await session.commit()
            assert result.created == 1
        assert len(storage.rows("hero")) == 1


# ============================================================================
# Test: Optimistic Concurrency
# ============================================================================


class TestConcurrency:
    """Conflicting units of work: first commit wins, second gets ConflictingWrite."""

    async def test_conflicting_updates(self, mapper: Mapper, storage: MemoryStorage) -> None:
        _, [hero_id] = await _seed_team_with_heroes(mapper, 1)
        async with mapper.session() as first, mapper.session() as second:
            hero_a = await first.get("Hero", hero_id)
            hero_b = await second.get("Hero", hero_id)
            first.stage_update(hero_a, {"age": 30})
            second.stage_update(hero_b, {"age": 40})

            await first.commit()
            with pytest.raises(ConflictingWrite) as exc_info:
                await second.commit()

            assert exc_info.value.entity == "Hero"
            assert hero_b.dirty == {"age"}
        assert storage.rows("hero")[0]["age"] == 30

    async def test_conflicting_updates_concurrently(self, mapper: Mapper) -> None:
        _, [hero_id] = await _seed_team_with_heroes(mapper, 1)
        sessions = [await mapper.open(), await mapper.open()]
        try:
            for age, session in zip((30, 40), sessions):
                hero = await session.get("Hero", hero_id)
                session.stage_update(hero, {"age": age})
            results = await asyncio.gather(
                *(s.commit() for s in sessions), return_exceptions=True
            )
        finally:
            for session in sessions:
                await session.close()
        assert sum(isinstance(r, ConflictingWrite) for r in results) == 1

    async def test_conflicting_deletes(self, mapper: Mapper) -> None:
        _, [hero_id] = await _seed_team_with_heroes(mapper, 1)
        async with mapper.session() as first, mapper.session() as second:
            first.stage_delete(await first.get("Hero", hero_id))
            second.stage_delete(await second.get("Hero", hero_id))
            await first.commit()
            with pytest.raises(ConflictingWrite):
                await second.commit()

    async def test_refresh_picks_up_new_version(self, mapper: Mapper) -> None:
        _, [hero_id] = await _seed_team_with_heroes(mapper, 1)
        async with mapper.session() as first, mapper.session() as second:
            stale = await first.get("Hero", hero_id)
            fresh = await second.get("Hero", hero_id)
            second.stage_update(fresh, {"age": 50})
            await second.commit()

            await first.refresh(stale)
            assert stale.age == 50
            assert stale.version == 2
            first.stage_update(stale, {"age": 51})
            await first.commit()

    async def test_refresh_deleted_row(self, mapper: Mapper) -> None:
        _, [hero_id] = await _seed_team_with_heroes(mapper, 1)
        async with mapper.session() as first, mapper.session() as second:
            stale = await first.get("Hero", hero_id)
            second.stage_delete(await second.get("Hero", hero_id))
            await second.commit()
            with pytest.raises(InstanceDeleted):
                await first.refresh(stale)
            assert stale.state is LifecycleState.DELETED

    async def test_conflicting_updates_unversioned(self) -> None:
        registry = build_registry(team_descriptor(versioned=False), hero_descriptor(), power_descriptor())
        storage = MemoryStorage(registry.database_schema())
        mapper = Mapper(registry, storage)
        team_id, _ = await _seed_team_with_heroes(mapper, 0)

        async with mapper.session() as first, mapper.session() as second:
            team_a = await first.get("Team", team_id)
            team_b = await second.get("Team", team_id)
            first.stage_update(team_a, {"name": "A"})
            second.stage_update(team_b, {"name": "B"})

            await first.commit()
            with pytest.raises(ConflictingWrite):
                await second.commit()

            assert team_b.dirty == {"name"}
        assert storage.rows("team")[0]["name"] == "A"


# ============================================================================
# Test: Deletes and Cascades
# ============================================================================


def _pet_mapper() -> tuple[Mapper, MemoryStorage]:
    """Team -> Hero -> Pet, each level deleting its dependents."""
    base = hero_descriptor()
    hero = hero_descriptor(
        relationships=[
            *base.relationships,
            RelationshipDeclaration(
                name="pets", target="Pet", kind="one_to_many",
                back_populates="owner", cascade_delete=True,
            ),
        ]
    )
    pet = EntityDescriptor(
        name="Pet",
        fields=[
            field("id", "int", primary_key=True, server_generated=True),
            field("name", "str", max_length=50),
            field("hero_id", "int", foreign_key="Hero.id"),
        ],
        relationships=[
            RelationshipDeclaration(
                name="owner", target="Hero", kind="many_to_one",
                foreign_key="hero_id", back_populates="pets",
            ),
        ],
    )
    registry = build_registry(team_descriptor(), hero, power_descriptor(), pet)
    storage = MemoryStorage(registry.database_schema())
    return Mapper(registry, storage), storage


class TestDelete:
    """Verify stage_delete() and cascade expansion."""

    async def test_delete_marks_instance_deleted(self, mapper: Mapper, storage: MemoryStorage) -> None:
        _, [hero_id] = await _seed_team_with_heroes(mapper, 1)
        async with mapper.session() as session:
            hero = await session.get("Hero", hero_id)
            session.stage_delete(hero)
            result = await session.commit()
            assert result.deleted == 1
            assert hero.state is LifecycleState.DELETED
            assert await session.get("Hero", hero_id) is None
            with pytest.raises(InstanceDeleted):
                session.stage_update(hero, {"age": 1})
            with pytest.raises(InstanceDeleted):
                await session.load(hero, "team")
        assert storage.rows("hero") == []

    async def test_delete_twice_rejected(self, mapper: Mapper) -> None:
        _, [hero_id] = await _seed_team_with_heroes(mapper, 1)
        async with mapper.session() as session:
            hero = await session.get("Hero", hero_id)
            session.stage_delete(hero)
            with pytest.raises(AlreadyStaged):
                session.stage_delete(hero)
            with pytest.raises(AlreadyStaged):
                session.stage_update(hero, {"age": 1})

    async def test_cascade_loaded_and_unloaded(self, mapper: Mapper, storage: MemoryStorage) -> None:
        """3 loaded heroes go one by one, the other 2 in one bulk delete."""
        team_id, hero_ids = await _seed_team_with_heroes(mapper, 5)
        before = storage.operation_counts[("delete", "hero")]

        async with mapper.session() as session:
            team = await session.get("Team", team_id)
            loaded = [await session.get("Hero", hero_id) for hero_id in hero_ids[:3]]
            session.stage_delete(team)
            result = await session.commit()

            assert result.deleted == 4
            assert result.bulk_deleted == 2
            assert team.state is LifecycleState.DELETED
            assert all(h.state is LifecycleState.DELETED for h in loaded)

        assert storage.operation_counts[("delete", "hero")] - before == 4
        assert storage.rows("hero") == []
        assert storage.rows("team") == []

    async def test_cascade_removes_link_rows(self, mapper: Mapper, storage: MemoryStorage) -> None:
        async with mapper.session() as session:
            team = session.stage_create(_team())
            hero = session.stage_create(_hero())
            power = session.stage_create(Instance("Power", name="Flight"))
            session.relate(hero, "team", team)
            session.link(hero, "powers", power)
            await session.commit()
            session.stage_delete(team)
            await session.commit()
        assert storage.rows("hero_power_link") == []
        assert len(storage.rows("power")) == 1

    async def test_cascade_reaches_loaded_grandchildren(self) -> None:
        """A loaded pet of an unloaded hero goes with the team."""
        mapper, storage = _pet_mapper()
        team_id, [hero_id] = await _seed_team_with_heroes(mapper, 1)
        async with mapper.session() as session:
            hero = await session.get("Hero", hero_id)
            pet = session.stage_create(Instance("Pet", name="Rex"))
            session.relate(pet, "owner", hero)
            await session.commit()
            pet_id = pet.id

        async with mapper.session() as session:
            team = await session.get("Team", team_id)
            pet = await session.get("Pet", pet_id)
            session.stage_delete(team)
            result = await session.commit()

            assert result.bulk_deleted == 1
            assert pet.state is LifecycleState.DELETED
            with pytest.raises(InstanceDeleted):
                session.stage_update(pet, {"name": "Max"})
        assert storage.rows("pet") == []
        assert storage.rows("hero") == []

    async def test_delete_pending_rejected(self, mapper: Mapper) -> None:
        async with mapper.session() as session:
            hero = session.stage_create(_hero())
            with pytest.raises(AlreadyStaged):
                session.stage_delete(hero)


# ============================================================================
# Test: Many-to-Many
# ============================================================================


class TestManyToMany:
    """Verify link() / unlink() and symmetric loading."""

    async def test_link_and_load_both_sides(self, mapper: Mapper, storage: MemoryStorage) -> None:
        async with mapper.session() as session:
            hero = session.stage_create(_hero())
            flight = session.stage_create(Instance("Power", name="Flight"))
            strength = session.stage_create(Instance("Power", name="Strength"))
            session.link(hero, "powers", flight)
            session.link(strength, "heroes", hero)
            assert await session.load(hero, "powers") == [flight, strength]
            await session.commit()

            assert await session.load(hero, "powers") == [flight, strength]
            assert await session.load(flight, "heroes") == [hero]
        assert len(storage.rows("hero_power_link")) == 2

    async def test_parallel_relationships_kept_apart(self) -> None:
        registry = build_registry(
            team_descriptor(),
            hero_descriptor(
                relationships=[
                    *hero_descriptor().relationships,
                    RelationshipDeclaration(name="weaknesses", target="Power", kind="many_to_many"),
                ]
            ),
            power_descriptor(),
        )
        storage = MemoryStorage(registry.database_schema())
        mapper = Mapper(registry, storage)

        async with mapper.session() as session:
            hero = session.stage_create(_hero())
            flight = session.stage_create(Instance("Power", name="Flight"))
            kryptonite = session.stage_create(Instance("Power", name="Kryptonite"))
            session.link(hero, "powers", flight)
            session.link(hero, "weaknesses", kryptonite)
            await session.commit()

        async with mapper.session() as session:
            hero = await session.get("Hero", 1)
            assert [p.name for p in await session.load(hero, "powers")] == ["Flight"]
            assert [p.name for p in await session.load(hero, "weaknesses")] == ["Kryptonite"]
        assert len(storage.rows("hero_power_powers_link")) == 1
        assert len(storage.rows("hero_power_weaknesses_link")) == 1

    async def test_link_twice_returns_same_link(self, mapper: Mapper) -> None:
        async with mapper.session() as session:
            hero = session.stage_create(_hero())
            power = session.stage_create(Instance("Power", name="Flight"))
            assert session.link(hero, "powers", power) is session.link(hero, "powers", power)

    async def test_unlink(self, mapper: Mapper, storage: MemoryStorage) -> None:
        async with mapper.session() as session:
            hero = session.stage_create(_hero())
            power = session.stage_create(Instance("Power", name="Flight"))
            session.link(hero, "powers", power)
            await session.commit()

            session.unlink(hero, "powers", power)
            assert await session.load(hero, "powers") == []
            result = await session.commit()
            assert result.links_removed == 1
        assert storage.rows("hero_power_link") == []
        assert len(storage.rows("power")) == 1

    async def test_unlink_pending_link_cancels_it(self, mapper: Mapper, storage: MemoryStorage) -> None:
        async with mapper.session() as session:
            hero = session.stage_create(_hero())
            power = session.stage_create(Instance("Power", name="Flight"))
            session.link(hero, "powers", power)
            session.unlink(hero, "powers", power)
            result = await session.commit()
            assert result.created == 2
        assert storage.rows("hero_power_link") == []

    async def test_relate_on_many_to_many_rejected(self, mapper: Mapper) -> None:
        async with mapper.session() as session:
            hero = session.stage_create(_hero())
            with pytest.raises(SessionError, match="use link"):
                session.relate(hero, "powers", Instance("Power", name="Flight"))

    async def test_wrong_target_entity(self, mapper: Mapper) -> None:
        async with mapper.session() as session:
            with pytest.raises(SessionError, match="expects Power"):
                session.link(_hero(), "powers", _team())


# ============================================================================
# Test: Abort and Close
# ============================================================================


class TestAbort:
    """abort() discards every staged change."""

    async def test_abort_pending(self, mapper: Mapper, storage: MemoryStorage) -> None:
        async with mapper.session() as session:
            hero = session.stage_create(_hero())
            await session.abort()
            assert hero.state is LifecycleState.TRANSIENT
            assert hero.session is None
            assert not session.has_changes
            assert (await session.commit()).created == 0
        assert storage.rows("hero") == []

        # A transient instance can be staged again elsewhere
        async with mapper.session() as session:
            session.stage_create(hero)
            await session.commit()
        assert len(storage.rows("hero")) == 1

    async def test_abort_restores_updated_values(self, mapper: Mapper) -> None:
        _, [hero_id] = await _seed_team_with_heroes(mapper, 1)
        async with mapper.session() as session:
            hero = await session.get("Hero", hero_id)
            original = hero.name
            session.stage_update(hero, {"name": "Renamed"})
            await session.abort()
            assert hero.name == original
            assert hero.dirty == frozenset()
            assert hero.state is LifecycleState.PERSISTED

    async def test_abort_drops_staged_delete(self, mapper: Mapper, storage: MemoryStorage) -> None:
        _, [hero_id] = await _seed_team_with_heroes(mapper, 1)
        async with mapper.session() as session:
            hero = await session.get("Hero", hero_id)
            session.stage_delete(hero)
            await session.abort()
            assert session.deleted == []
            assert hero.state is LifecycleState.PERSISTED
        assert len(storage.rows("hero")) == 1


class TestClose:
    """close() is idempotent, aborts, and always releases the connection."""

    async def test_close_aborts_and_releases(self, registry: SchemaRegistry, storage: MemoryStorage) -> None:
        connection = await storage.connect()
        session = Session(registry, connection)
        hero = session.stage_create(_hero())

        await session.close()
        await session.close()

        assert session.is_closed
        assert hero.state is LifecycleState.TRANSIENT
        with pytest.raises(StorageError):
            await connection.select("hero")

    async def test_operations_after_close(self, mapper: Mapper) -> None:
        async with mapper.session() as session:
            hero = session.stage_create(_hero())
            await session.commit()

        with pytest.raises(SessionClosed):
            session.stage_create(_hero())
        with pytest.raises(SessionClosed):
            await session.commit()
        with pytest.raises(SessionClosed):
            await session.abort()
        with pytest.raises(DetachedInstance):
            await session.load(hero, "team")

    async def test_load_from_other_session(self, mapper: Mapper) -> None:
        async with mapper.session() as first:
            hero = first.stage_create(_hero())
            await first.commit()
            async with mapper.session() as second:
                with pytest.raises(DetachedInstance):
                    await second.load(hero, "team")

    async def test_closed_on_exception(self, mapper: Mapper) -> None:
        with pytest.raises(RuntimeError):
            async with mapper.session() as session:
                session.stage_create(_hero())
                raise RuntimeError("boom")
        assert session.is_closed

    async def test_closed_on_cancellation(self, mapper: Mapper, storage: MemoryStorage) -> None:
        started = asyncio.Event()
        opened: list[Session] = []

        async def worker() -> None:
            async with mapper.session() as session:
                opened.append(session)
                session.stage_create(_team())
                started.set()
                await asyncio.sleep(10)
                await session.commit()

        task = asyncio.create_task(worker())
        await started.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert opened[0].is_closed
        assert storage.rows("team") == []
