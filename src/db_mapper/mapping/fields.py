"""Field definitions for entity descriptors.

This module defines the closed set of field kinds and the ``FieldDef``
model that carries a field's constraints:

- presence (nullable or required)
- default semantics (literal ``default`` or lazily computed ``default_factory``)
- primary key / server-generated / sensitive flags
- indexing and uniqueness
- numeric bounds (``ge``/``le``) and length bounds (``min_length``/``max_length``)
- an optional foreign key reference (``"Entity.field"``)

Field kinds are resolved once, when the descriptor is built; nothing is
inferred from runtime annotations afterwards.

Example:
    >>> from db_mapper.mapping.fields import FieldKind, field
    >>> name = field("name", "str", max_length=100, index=True)
    >>> name.kind is FieldKind.STRING
    True
"""

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Callable
from uuid import UUID

from pydantic import BaseModel, ConfigDict

from db_mapper.errors import InvalidField


class FieldKind(Enum):
    """Supported field kinds.

    Each kind maps to one Python type (used by derived views) and one
    normalized SQL type name (used by the table representation).
    """

    INTEGER = "int"
    BIGINT = "bigint"
    FLOAT = "float"
    DECIMAL = "decimal"
    STRING = "str"
    TEXT = "text"
    BOOLEAN = "bool"
    DATE = "date"
    DATETIME = "datetime"
    UUID = "uuid"
    JSON = "json"

    @classmethod
    def from_str(cls, value: str) -> "FieldKind":
        """Convert string representation to FieldKind.

        Raises:
            ValueError: If value is not a valid field kind
        """
        for kind in cls:
            if kind.value == value:
                return kind
        valid = [k.value for k in cls]
        raise ValueError(f"Invalid field kind '{value}'. Valid kinds: {valid}")

    @property
    def python_type(self) -> Any:
        return _PYTHON_TYPES[self]

    @property
    def sql_type(self) -> str:
        return _SQL_TYPES[self]

    @property
    def is_numeric(self) -> bool:
        return self in (FieldKind.INTEGER, FieldKind.BIGINT, FieldKind.FLOAT, FieldKind.DECIMAL)

    @property
    def is_text(self) -> bool:
        return self in (FieldKind.STRING, FieldKind.TEXT)

    @property
    def is_composable_key(self) -> bool:
        """Whether values of this kind can form part of a composite key."""
        return self in (FieldKind.INTEGER, FieldKind.BIGINT, FieldKind.STRING, FieldKind.UUID)


_PYTHON_TYPES: dict[FieldKind, Any] = {
    FieldKind.INTEGER: int,
    FieldKind.BIGINT: int,
    FieldKind.FLOAT: float,
    FieldKind.DECIMAL: Decimal,
    FieldKind.STRING: str,
    FieldKind.TEXT: str,
    FieldKind.BOOLEAN: bool,
    FieldKind.DATE: date,
    FieldKind.DATETIME: datetime,
    FieldKind.UUID: UUID,
    FieldKind.JSON: Any,
}

_SQL_TYPES: dict[FieldKind, str] = {
    FieldKind.INTEGER: "int",
    FieldKind.BIGINT: "bigint",
    FieldKind.FLOAT: "double precision",
    FieldKind.DECIMAL: "numeric",
    FieldKind.STRING: "varchar",
    FieldKind.TEXT: "text",
    FieldKind.BOOLEAN: "bool",
    FieldKind.DATE: "date",
    FieldKind.DATETIME: "timestamptz",
    FieldKind.UUID: "uuid",
    FieldKind.JSON: "jsonb",
}


class FieldDef(BaseModel):
    """Definition of a single field of an entity.

    Attributes:
        name: Field (and column) name.
        kind: The field kind.
        nullable: Whether ``None`` is an acceptable value.  Nullable fields
            default to ``None`` unless another default is given.
        default: Literal default.  For non-nullable fields ``None`` means
            "no default, the caller must supply a value".
        default_factory: Zero-argument callable computing a default lazily.
        primary_key: Part of the entity's primary key.
        server_generated: Value assigned by storage on insert (autoincrement
            integer keys).  Excluded from the Create view.
        sensitive: Never exposed through the Public view.
        unique: Backed by a UNIQUE constraint.
        index: Backed by a (non-unique) index.
        foreign_key: ``"Entity.field"`` reference to another entity's key.
        ge / le: Inclusive numeric bounds.
        min_length / max_length: Length bounds for string kinds.
            ``max_length`` also sizes ``VARCHAR`` columns.
    """

    model_config = ConfigDict(frozen=True)

    name: str
    kind: FieldKind
    nullable: bool = False
    default: Any = None
    default_factory: Callable[[], Any] | None = None
    primary_key: bool = False
    server_generated: bool = False
    sensitive: bool = False
    unique: bool = False
    index: bool = False
    foreign_key: str | None = None
    ge: int | float | None = None
    le: int | float | None = None
    min_length: int | None = None
    max_length: int | None = None
    description: str = ""

    @property
    def has_default(self) -> bool:
        """True if a value can be produced without the caller supplying one."""
        return self.default is not None or self.default_factory is not None or self.nullable

    @property
    def required_on_create(self) -> bool:
        return not self.server_generated and not self.has_default

    @property
    def foreign_key_target(self) -> tuple[str, str] | None:
        """``(entity, field)`` of the foreign key reference, if any."""
        if self.foreign_key is None:
            return None
        entity, _, field_name = self.foreign_key.partition(".")
        return entity, field_name

    def make_default(self) -> Any:
        """Produce the default value (calls ``default_factory`` each time)."""
        if self.default_factory is not None:
            return self.default_factory()
        return self.default

    def check(self, entity: str) -> None:
        """Validate that the field's constraints do not contradict each other.

        Raises:
            InvalidField: On the first contradiction found.
        """
        if not self.name.isidentifier():
            raise InvalidField(entity, self.name, "name must be a valid identifier")
        if self.default is not None and self.default_factory is not None:
            raise InvalidField(entity, self.name, "both default and default_factory are set")
        if self.primary_key and self.nullable:
            raise InvalidField(entity, self.name, "primary key cannot be nullable")
        if self.server_generated:
            if not (self.primary_key and self.kind in (FieldKind.INTEGER, FieldKind.BIGINT)):
                raise InvalidField(
                    entity, self.name, "server_generated requires an integer primary key"
                )
            if self.default is not None or self.default_factory is not None:
                raise InvalidField(entity, self.name, "server_generated field cannot have a default")
        if (self.ge is not None or self.le is not None) and not self.kind.is_numeric:
            raise InvalidField(entity, self.name, f"numeric bounds on {self.kind.value} field")
        if (self.min_length is not None or self.max_length is not None) and not self.kind.is_text:
            raise InvalidField(entity, self.name, f"length bounds on {self.kind.value} field")
        if self.ge is not None and self.le is not None and self.ge > self.le:
            raise InvalidField(entity, self.name, f"ge={self.ge} is greater than le={self.le}")
        if self.min_length is not None and self.min_length < 0:
            raise InvalidField(entity, self.name, "min_length cannot be negative")
        if self.max_length is not None and self.max_length < 1:
            raise InvalidField(entity, self.name, "max_length must be positive")
        if (
            self.min_length is not None
            and self.max_length is not None
            and self.min_length > self.max_length
        ):
            raise InvalidField(
                entity,
                self.name,
                f"min_length={self.min_length} is greater than max_length={self.max_length}",
            )
        if self.foreign_key is not None:
            target = self.foreign_key_target
            if not target[0] or not target[1]:
                raise InvalidField(
                    entity, self.name, f"foreign_key '{self.foreign_key}' is not 'Entity.field'"
                )
        if self.default is not None:
            problem = self.bounds_violation(self.default)
            if problem:
                raise InvalidField(entity, self.name, f"default violates bounds: {problem}")

    def bounds_violation(self, value: Any) -> str | None:
        """Describe how *value* breaks this field's bounds, or return None."""
        if value is None:
            return None
        if self.kind.is_numeric and isinstance(value, (int, float, Decimal)):
            if self.ge is not None and value < self.ge:
                return f"{value} < {self.ge}"
            if self.le is not None and value > self.le:
                return f"{value} > {self.le}"
        if self.kind.is_text and isinstance(value, str):
            if self.min_length is not None and len(value) < self.min_length:
                return f"length {len(value)} < {self.min_length}"
            if self.max_length is not None and len(value) > self.max_length:
                return f"length {len(value)} > {self.max_length}"
        return None


def field(name: str, kind: FieldKind | str, **kwargs: Any) -> FieldDef:
    """Convenience constructor for ``FieldDef``.

    Example:
        >>> pk = field("id", "int", primary_key=True, server_generated=True)
        >>> pk.required_on_create
        False
    """
    if isinstance(kind, str):
        kind = FieldKind.from_str(kind)
    return FieldDef(name=name, kind=kind, **kwargs)
