"""Entity instances and their lifecycle states.

An ``Instance`` is one record of one entity: a plain values mapping plus
the bookkeeping a ``Session`` needs (lifecycle state, dirty fields, row
version, session-local ref).  Instances never hold pointers to related
instances; relationships are resolved through ``Session.load()``.

Lifecycle:
    TRANSIENT --stage_create--> PENDING --commit--> PERSISTED
    PERSISTED --stage_delete + commit--> DELETED
    PENDING --abort--> TRANSIENT

Example:
    >>> hero = Instance("Hero", name="Deadpond", secret_name="Dive Wilson")
    >>> hero.state
    <LifecycleState.TRANSIENT: 'transient'>
    >>> hero.name
    'Deadpond'
"""

from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from db_mapper.session.unit_of_work import Session


class LifecycleState(Enum):
    TRANSIENT = "transient"
    PENDING = "pending"
    PERSISTED = "persisted"
    DELETED = "deleted"


class Instance:
    """One record of an entity.

    Values are read with attribute or item access.  Changes to a persisted
    instance go through ``Session.stage_update()``; attribute assignment is
    not tracked.

    Attributes:
        entity: Entity name.
        state: Current ``LifecycleState``.
        version: Row version loaded from storage (versioned entities only).
        ref: Session-local token; ``None`` until a session tracks the instance.
    """

    def __init__(self, entity: str, values: dict[str, Any] | None = None, **kwargs: Any) -> None:
        self.entity = entity
        self.state = LifecycleState.TRANSIENT
        self.version: int | None = None
        self.ref: int | None = None
        self._values: dict[str, Any] = {**(values or {}), **kwargs}
        self._dirty: set[str] = set()
        self._original: dict[str, Any] = {}
        self._session: "Session | None" = None

    # ------------------------------------------------------------------
    # Value access
    # ------------------------------------------------------------------

    def __getattr__(self, name: str) -> Any:
        values = self.__dict__.get("_values")
        if values is not None and name in values:
            return values[name]
        raise AttributeError(f"{self.__dict__.get('entity', 'Instance')} has no field '{name}'")

    def __getitem__(self, name: str) -> Any:
        return self._values[name]

    def __contains__(self, name: str) -> bool:
        return name in self._values

    def get(self, name: str, default: Any = None) -> Any:
        return self._values.get(name, default)

    @property
    def values(self) -> dict[str, Any]:
        """Copy of the current values."""
        return dict(self._values)

    @property
    def dirty(self) -> frozenset[str]:
        """Fields changed by ``stage_update()`` and not yet committed."""
        return frozenset(self._dirty)

    @property
    def session(self) -> "Session | None":
        return self._session

    def to_dict(self, fields: list[str] | None = None) -> dict[str, Any]:
        """Values restricted to *fields* (all values when omitted).

        Typically used with a view's ``field_names`` to shape output.
        """
        if fields is None:
            return dict(self._values)
        return {name: self._values.get(name) for name in fields}

    def __repr__(self) -> str:
        return f"<Instance {self.entity} {self.state.value} {self._values!r}>"
