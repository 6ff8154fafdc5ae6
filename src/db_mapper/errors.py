"""Exception taxonomy for db-mapper.

Errors fall into four families so callers can decide what to do:

- ``RegistrationError`` -- the declared model is wrong.  Raised at startup,
  never recovered automatically.
- ``SessionError`` -- local to one unit of work.  The session stays usable
  for ``abort()`` / ``close()``; retrying is a caller decision.
- ``StorageError`` -- raised by storage adapters.  ``StorageUnavailable``
  means "retry later", ``ConstraintViolation`` means "fix the data".
- ``MigrationError`` -- the planner refuses to guess or to continue.

Usage:
    from db_mapper.errors import ConflictingWrite, RegistrationError

    try:
        await session.commit()
    except ConflictingWrite:
        await session.abort()
"""

from typing import Any


class MapperError(Exception):
    """Base class for all db-mapper errors."""


# ============================================================================
# Registration Errors
# ============================================================================


class RegistrationError(MapperError):
    """The declared entity model is invalid."""


class DuplicateEntity(RegistrationError):
    """An entity (or table) with the same name is already registered."""


class InvalidField(RegistrationError):
    """A field's constraints contradict each other."""

    def __init__(self, entity: str, field: str, reason: str) -> None:
        self.entity = entity
        self.field = field
        self.reason = reason
        super().__init__(f"Invalid field {entity}.{field}: {reason}")


class UnknownEntity(RegistrationError, LookupError):
    """No entity is registered under the requested name."""


class UnknownRelationship(RegistrationError, LookupError):
    """The entity declares no relationship under the requested name."""


class DanglingForeignKey(RegistrationError):
    """A foreign key references a missing entity or primary key."""


class MissingLinkEntity(RegistrationError):
    """A many-to-many relationship has no usable link entity."""


class AsymmetricBackReference(RegistrationError):
    """A back-reference is declared on one side only, or does not pair up."""


# ============================================================================
# Session Errors
# ============================================================================


class SessionError(MapperError):
    """Error local to one unit of work."""


class AlreadyStaged(SessionError):
    """The instance is not in a state that allows this staging operation."""


class MissingRequiredField(SessionError, ValueError):
    """A required field has no value when the instance is staged."""

    def __init__(self, entity: str, fields: list[str]) -> None:
        self.entity = entity
        self.fields = fields
        super().__init__(f"{entity} is missing required field(s): {', '.join(fields)}")


class InstanceDeleted(SessionError):
    """The instance was deleted; no further operations are allowed."""


class DetachedInstance(SessionError):
    """The instance is not attached to an open session."""


class SessionClosed(SessionError):
    """The session has been closed."""


class ConflictingWrite(SessionError):
    """Another unit of work changed the same row first."""

    def __init__(self, message: str, entity: str | None = None, key: Any = None) -> None:
        self.entity = entity
        self.key = key
        super().__init__(message)


class CyclicDependency(SessionError):
    """Pending creates reference each other in a cycle."""


# ============================================================================
# Storage Errors
# ============================================================================


class StorageError(MapperError):
    """Error reported by the storage collaborator."""


class ConstraintViolation(StorageError):
    """A storage constraint rejected the write.

    Attributes:
        kind: One of ``primary_key``, ``unique``, ``foreign_key``,
            ``not_null``, ``check`` or ``unknown``.
        constraint: Constraint name, when the backend reports one.
    """

    def __init__(self, message: str, kind: str = "unknown", constraint: str | None = None) -> None:
        self.kind = kind
        self.constraint = constraint
        super().__init__(message)


class StorageUnavailable(StorageError):
    """Storage could not be reached (connectivity, timeout)."""


# ============================================================================
# Migration Errors
# ============================================================================


class MigrationError(MapperError):
    """Error raised while planning or applying a migration."""


class UnsafeNonNullableAddition(MigrationError):
    """A non-nullable column would be added without a known default."""

    def __init__(self, table: str, column: str) -> None:
        self.table = table
        self.column = column
        super().__init__(
            f"Cannot add non-nullable column {table}.{column} without a default. "
            f"Supply one via defaults={{'{table}.{column}': ...}}."
        )


class DestructiveChangeRefused(MigrationError):
    """The plan drops data and was not confirmed."""


class FailedAtStep(MigrationError):
    """A migration step failed; earlier step groups stay applied.

    Attributes:
        position: Zero-based index of the failing step in the plan.
        step: The failing step.
        applied: Number of steps committed before the failure.
    """

    def __init__(self, position: int, step: Any, applied: int, cause: BaseException) -> None:
        self.position = position
        self.step = step
        self.applied = applied
        self.cause = cause
        super().__init__(f"Migration failed at step {position} ({step.describe()}): {cause}")
