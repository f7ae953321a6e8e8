from __future__ import annotations

from collections.abc import Iterable
from typing import TYPE_CHECKING


if TYPE_CHECKING:
    from .relation import RelationKind


class RelationError(Exception):
    """Base class for every error raised by sqla_relations itself.

    Database failures are not wrapped: ``sqlalchemy.exc`` errors raised by the
    executor reach the caller unchanged.
    """


class ConfigurationError(RelationError, TypeError):
    """The relationship metadata does not fit the entities it describes."""


class FieldAccessError(ConfigurationError, AttributeError):
    """A key or relation field could not be found on an entity."""

    def __init__(self, entity_type: type, field_name: str) -> None:
        self.entity_type = entity_type
        self.field_name = field_name
        super().__init__(
            f"{entity_type.__name__} has no field {field_name!r} "
            "(tried snake_case and camelCase variants)"
        )


class InvalidRelationKindError(RelationError, ValueError):
    """A mutation was called with a relation of the wrong kind."""

    def __init__(self, actual: RelationKind, expected: Iterable[RelationKind]) -> None:
        self.actual = actual
        self.expected = tuple(expected)
        super().__init__(
            f"Invalid relation kind: {actual.name}, "
            f"expected one of: {', '.join(kind.name for kind in self.expected)}"
        )


class UnsupportedRelationError(RelationError, NotImplementedError):
    """The relation kind is known but cannot be resolved (polymorphic kinds)."""

    def __init__(self, kind: RelationKind) -> None:
        self.kind = kind
        super().__init__(f"Polymorphic relationships are not supported: {kind.name}")
