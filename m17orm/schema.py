"""
Entity types for m17orm.

This module provides the data model shared by every transport:
- EntityType: Immutable descriptor of one kind of multilingual entity
- Entity: A live instance carrying attribute values
- base_data / language_data: Field projection used to build write payloads

An entity's base attributes live in the relation named by
``EntityType.resource_name``; its translatable attributes live in the sibling
relation ``resource_name + "_language"``, keyed by (id, language).

Invariants:
    - EntityType is frozen; fields and language_fields never change
    - fields and language_fields are disjoint identifiers
    - Projection never emits names the type does not declare
    - Entity.id is None until a transport assigns it on first save

Example:
    >>> Article = EntityType(
    ...     resource_name="articles",
    ...     fields=("title", "authorId"),
    ...     language_fields=("body",),
    ... )
    >>> article = Article.new(title="X", authorId=7, language="en", body="hello")
    >>> base_data(article)
    {'title': 'X', 'authorId': 7}
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any

from .errors import InvalidIdentifierError, SchemaError

IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

# Column names every relation carries in addition to the declared fields
RESERVED_NAMES = frozenset({"id", "language"})

# Attributes of Entity itself; a field with one of these names would shadow it
ENTITY_ATTRIBUTES = frozenset({"entity_type", "to_dict"})

LANGUAGE_SUFFIX = "_language"


def is_identifier(name: Any) -> bool:
    """Whether name is safe to interpolate into a query as a column name."""
    return isinstance(name, str) and IDENTIFIER_RE.match(name) is not None


def check_identifier(name: Any, role: str = "field") -> str:
    """Return name unchanged, or raise InvalidIdentifierError."""
    if not is_identifier(name):
        raise InvalidIdentifierError(name, role)
    return name


@dataclass(frozen=True)
class EntityType:
    """Definition of a multilingual entity type.

    Attributes:
        resource_name: Base relation name and URL path segment
        fields: Ordered base attribute names
        language_fields: Ordered translatable attribute names (may be empty)
    """

    resource_name: str
    fields: tuple[str, ...]
    language_fields: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        """Validate the definition."""
        # Accept lists but store tuples so the descriptor stays hashable
        object.__setattr__(self, "fields", tuple(self.fields))
        object.__setattr__(self, "language_fields", tuple(self.language_fields))

        if not is_identifier(self.resource_name):
            raise SchemaError(
                f"Invalid resource name: {self.resource_name!r}",
                resource_name=str(self.resource_name),
            )

        seen: set[str] = set()
        for name in self.fields + self.language_fields:
            if not is_identifier(name):
                raise SchemaError(
                    f"Invalid field name {name!r} in '{self.resource_name}'",
                    resource_name=self.resource_name,
                )
            if name in RESERVED_NAMES or name in ENTITY_ATTRIBUTES or name.startswith("__"):
                raise SchemaError(
                    f"Field name '{name}' is reserved in '{self.resource_name}'",
                    resource_name=self.resource_name,
                )
            if name in seen:
                raise SchemaError(
                    f"Field '{name}' declared twice in '{self.resource_name}'",
                    resource_name=self.resource_name,
                )
            seen.add(name)

    @property
    def language_resource_name(self) -> str:
        """Name of the per-locale relation."""
        return self.resource_name + LANGUAGE_SUFFIX

    @property
    def is_multilingual(self) -> bool:
        """Whether the type declares translatable attributes."""
        return bool(self.language_fields)

    @property
    def all_fields(self) -> tuple[str, ...]:
        return self.fields + self.language_fields

    def new(self, **values: Any) -> Entity:
        """Create an instance from keyword arguments."""
        return self.create(values)

    def create(self, data: Mapping[str, Any] | None = None) -> Entity:
        """Create an instance from a raw field map.

        Keys other than ``id``, ``language`` and the declared field names
        are dropped.

        Args:
            data: Raw field values, typically a database row or JSON object

        Returns:
            Entity of this type
        """
        data = data or {}
        entity = Entity(self, id=data.get("id"), language=data.get("language"))
        for name in self.all_fields:
            if name in data:
                setattr(entity, name, data[name])
        return entity

    def create_list(self, rows: Iterable[Mapping[str, Any]]) -> list[Entity]:
        """Create one instance per raw field map."""
        return [self.create(row) for row in rows]

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "resource_name": self.resource_name,
            "fields": list(self.fields),
            "language_fields": list(self.language_fields),
        }


class Entity:
    """A live instance of an EntityType.

    Declared attributes are plain instance attributes. Undeclared attributes
    may be set freely; transports never persist them.

    Attributes:
        entity_type: Descriptor for this instance
        id: Backend-assigned identifier, None before the first save
        language: Locale tag of the loaded or saved variant
    """

    def __init__(
        self,
        entity_type: EntityType,
        id: Any = None,
        language: str | None = None,
        **values: Any,
    ) -> None:
        self.entity_type = entity_type
        self.id = id
        self.language = language
        for name, value in values.items():
            setattr(self, name, value)

    def to_dict(self) -> dict[str, Any]:
        """Declared attribute values plus id and language."""
        result: dict[str, Any] = {"id": self.id, "language": self.language}
        result.update(base_data(self))
        result.update(language_data(self))
        return result

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Entity):
            return NotImplemented
        return self.entity_type == other.entity_type and self.to_dict() == other.to_dict()

    __hash__ = None  # type: ignore[assignment]

    def __repr__(self) -> str:
        return (
            f"Entity({self.entity_type.resource_name}, id={self.id!r}, "
            f"language={self.language!r})"
        )


def base_data(entity: Entity) -> dict[str, Any]:
    """Project the base attributes of an entity.

    Missing attributes project as None.
    """
    return {name: getattr(entity, name, None) for name in entity.entity_type.fields}


def language_data(entity: Entity) -> dict[str, Any]:
    """Project the translatable attributes of an entity.

    Returns an empty dict when the type declares none.
    """
    return {name: getattr(entity, name, None) for name in entity.entity_type.language_fields}
