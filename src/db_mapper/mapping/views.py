"""Entity view derivation.

A view is a named projection of an entity's fields used at a boundary:

- ``CREATE`` -- input for creating an instance; server-generated fields
  (autoincrement keys) are left out.
- ``PUBLIC`` -- output; everything except ``sensitive`` fields.
- ``UPDATE`` -- partial input; every field optional and without default,
  so an absent field means "leave unchanged".

Views are derived on every call and never cached, so they always reflect
the registry's current descriptors.

Usage:
    from db_mapper.mapping.views import ViewKind, derive_view

    HeroCreate = derive_view(hero_descriptor, ViewKind.CREATE).model()
    payload = HeroCreate.model_validate({"name": "Deadpond", "secret_name": "Dive Wilson"})
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional

from pydantic import BaseModel, ConfigDict, Field, create_model

from db_mapper.mapping.descriptor import EntityDescriptor
from db_mapper.mapping.fields import FieldKind


class ViewKind(Enum):
    CREATE = "create"
    PUBLIC = "public"
    UPDATE = "update"


@dataclass(frozen=True)
class ViewField:
    """One field as exposed by a view."""

    name: str
    kind: FieldKind
    nullable: bool
    required: bool
    default: Any = None
    default_factory: Callable[[], Any] | None = None
    bounds: dict[str, Any] = field(default_factory=dict)

    @property
    def annotation(self) -> Any:
        python_type = self.kind.python_type
        if self.nullable and python_type is not Any:
            return Optional[python_type]
        return python_type


@dataclass(frozen=True)
class EntityView:
    """Field set of one entity for one boundary use."""

    entity: str
    kind: ViewKind
    fields: tuple[ViewField, ...]

    @property
    def field_names(self) -> list[str]:
        return [f.name for f in self.fields]

    @property
    def model_name(self) -> str:
        return f"{self.entity}{self.kind.value.capitalize()}"

    def get(self, name: str) -> ViewField | None:
        for f in self.fields:
            if f.name == name:
                return f
        return None

    def model(self) -> type[BaseModel]:
        """Build a pydantic model class for this view (``HeroCreate`` etc.)."""
        definitions: dict[str, Any] = {}
        for f in self.fields:
            if f.required:
                info = Field(..., **f.bounds)
            elif f.default_factory is not None:
                info = Field(default_factory=f.default_factory, **f.bounds)
            else:
                info = Field(default=f.default, **f.bounds)
            definitions[f.name] = (f.annotation, info)

        extra = "ignore" if self.kind is ViewKind.PUBLIC else "forbid"
        return create_model(
            self.model_name,
            __config__=ConfigDict(extra=extra),
            **definitions,
        )

    def validate(self, data: dict[str, Any]) -> dict[str, Any]:
        """Validate *data* through the view model.

        Returns:
            The validated values.  For ``UPDATE`` views only the fields
            present in *data* are returned.

        Raises:
            pydantic.ValidationError: If *data* does not fit the view.
        """
        instance = self.model().model_validate(data)
        return instance.model_dump(exclude_unset=self.kind is ViewKind.UPDATE)


def _bounds(f) -> dict[str, Any]:
    bounds: dict[str, Any] = {}
    for key in ("ge", "le", "min_length", "max_length"):
        value = getattr(f, key)
        if value is None:
            continue
        # Integer schemas only accept integer bounds
        if f.kind in (FieldKind.INTEGER, FieldKind.BIGINT) and float(value).is_integer():
            value = int(value)
        bounds[key] = value
    return bounds


def derive_view(descriptor: EntityDescriptor, kind: ViewKind) -> EntityView:
    """Derive the *kind* view of *descriptor*.

    Pure and deterministic: the same descriptor always yields the same
    field set, in declaration order.
    """
    fields: list[ViewField] = []

    for f in descriptor.fields:
        if kind is ViewKind.CREATE:
            if f.server_generated:
                continue
            fields.append(
                ViewField(
                    name=f.name,
                    kind=f.kind,
                    nullable=f.nullable,
                    required=f.required_on_create,
                    default=f.default,
                    default_factory=f.default_factory,
                    bounds=_bounds(f),
                )
            )
        elif kind is ViewKind.PUBLIC:
            if f.sensitive:
                continue
            fields.append(
                ViewField(
                    name=f.name,
                    kind=f.kind,
                    nullable=f.nullable,
                    required=not f.nullable,
                    bounds=_bounds(f),
                )
            )
        else:
            fields.append(
                ViewField(
                    name=f.name,
                    kind=f.kind,
                    nullable=True,
                    required=False,
                    bounds=_bounds(f),
                )
            )

    return EntityView(entity=descriptor.name, kind=kind, fields=tuple(fields))
