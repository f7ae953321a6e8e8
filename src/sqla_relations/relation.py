from __future__ import annotations

import enum
from collections.abc import Mapping
from dataclasses import dataclass, field, fields
from typing import Any, Final, Literal

from .datastructures import frozendict
from .exceptions import ConfigurationError
from .tools import DEFAULT_PRIMARY_KEY, get_table_name


AggregateFunction = Literal["max", "min"]


class RelationKind(enum.Enum):
    """Relationship topology between an owner entity type and a related one."""

    HAS_ONE = "has_one"
    HAS_MANY = "has_many"
    LATEST_OF_MANY = "latest_of_many"
    OLDEST_OF_MANY = "oldest_of_many"
    OF_MANY = "of_many"
    BELONGS_TO = "belongs_to"
    BELONGS_TO_MANY = "belongs_to_many"
    HAS_ONE_THROUGH = "has_one_through"
    HAS_MANY_THROUGH = "has_many_through"
    MORPH_ONE = "morph_one"
    MORPH_MANY = "morph_many"
    MORPH_TO = "morph_to"
    MORPH_TO_MANY = "morph_to_many"
    MORPHED_BY_MANY = "morphed_by_many"

    @property
    def is_to_many(self) -> bool:
        return self in _TO_MANY

    @property
    def is_of_many(self) -> bool:
        return self in _OF_MANY

    @property
    def is_through(self) -> bool:
        return self in (RelationKind.HAS_ONE_THROUGH, RelationKind.HAS_MANY_THROUGH)

    @property
    def is_morph(self) -> bool:
        return self in _MORPH

    @property
    def is_direct(self) -> bool:
        """Resolved with one query keyed on a single shared column."""
        return self in _HAS or self is RelationKind.BELONGS_TO

    @property
    def is_bridged(self) -> bool:
        """Resolved with two queries through a pivot or intermediate table."""
        return self is RelationKind.BELONGS_TO_MANY or self.is_through


_OF_MANY: Final = frozenset({
    RelationKind.LATEST_OF_MANY,
    RelationKind.OLDEST_OF_MANY,
    RelationKind.OF_MANY,
})
_HAS: Final = frozenset({RelationKind.HAS_ONE, RelationKind.HAS_MANY, *_OF_MANY})
_MORPH: Final = frozenset({
    RelationKind.MORPH_ONE,
    RelationKind.MORPH_MANY,
    RelationKind.MORPH_TO,
    RelationKind.MORPH_TO_MANY,
    RelationKind.MORPHED_BY_MANY,
})
_TO_MANY: Final = frozenset({
    RelationKind.HAS_MANY,
    RelationKind.BELONGS_TO_MANY,
    RelationKind.HAS_MANY_THROUGH,
    RelationKind.MORPH_MANY,
    RelationKind.MORPH_TO_MANY,
    RelationKind.MORPHED_BY_MANY,
})

# Kind-specific key groups. ``required`` must be set; everything in
# ``_OPTIONAL_KEYS`` that is not ``allowed`` for the kind must stay unset.
_PIVOT_KEYS: Final = ("pivot_table", "foreign_pivot_key", "related_pivot_key")
_THROUGH_KEYS: Final = ("through_table", "first_key", "second_local_key", "second_key")
_MORPH_KEYS: Final = ("morph_name", "morph_type_column", "morph_id_column")
_OPTIONAL_KEYS: Final = (
    "foreign_key",
    "local_key",
    "related_key",
    *_PIVOT_KEYS,
    *_THROUGH_KEYS,
    "order_column",
    "aggregate_column",
    "aggregate_function",
    *_MORPH_KEYS,
)


def _key_groups(kind: RelationKind) -> tuple[tuple[str, ...], tuple[str, ...]]:
    """Return ``(required, allowed)`` key names for *kind*."""
    match kind:
        case RelationKind.HAS_ONE | RelationKind.HAS_MANY:
            required = ("foreign_key", "local_key")
            return required, required
        case RelationKind.LATEST_OF_MANY | RelationKind.OLDEST_OF_MANY:
            required = ("foreign_key", "local_key", "order_column")
            return required, required
        case RelationKind.OF_MANY:
            required = ("foreign_key", "local_key", "aggregate_column", "aggregate_function")
            return required, required
        case RelationKind.BELONGS_TO:
            required = ("foreign_key", "related_key")
            return required, required
        case RelationKind.BELONGS_TO_MANY:
            required = (*_PIVOT_KEYS, "local_key", "related_key")
            return required, required
        case RelationKind.HAS_ONE_THROUGH | RelationKind.HAS_MANY_THROUGH:
            required = (*_THROUGH_KEYS, "local_key")
            return required, required
        case (
            RelationKind.MORPH_ONE
            | RelationKind.MORPH_MANY
            | RelationKind.MORPH_TO
            | RelationKind.MORPH_TO_MANY
            | RelationKind.MORPHED_BY_MANY
        ):
            return (), _OPTIONAL_KEYS


@dataclass(slots=True, frozen=True)
class RelationDescriptor:
    """Immutable metadata describing one relationship.

    Descriptors are built once, at model definition time, and shared by the
    eager loader (reads) and the relationship manager (writes).  Key names are
    column names; they are also used to read values from entities through the
    field accessor, which tolerates snake_case/camelCase differences.

    Use the factory classmethods rather than the constructor::

        User.posts = RelationDescriptor.has_many(User, Post, "posts", foreign_key="user_id")
        Post.author = RelationDescriptor.belongs_to(Post, User, "author", foreign_key="user_id")
        User.roles = RelationDescriptor.belongs_to_many(
            User, Role, "roles",
            pivot_table="role_user", foreign_pivot_key="user_id", related_pivot_key="role_id",
        )

    Raises:
        ConfigurationError: if the populated key group does not match ``kind``.
    """

    kind: RelationKind
    owner: type[Any]
    related: type[Any]
    field_name: str
    owner_table: str = ""
    related_table: str = ""

    # direct kinds
    foreign_key: str | None = None
    local_key: str | None = None
    related_key: str | None = None

    # many-to-many
    pivot_table: str | None = None
    foreign_pivot_key: str | None = None
    related_pivot_key: str | None = None
    pivot_columns: tuple[str, ...] = ()
    pivot_timestamps: bool = False

    # through kinds
    through_table: str | None = None
    first_key: str | None = None
    second_local_key: str | None = None
    second_key: str | None = None

    # of-many ordering
    order_column: str | None = None
    aggregate_column: str | None = None
    aggregate_function: AggregateFunction | None = None

    # polymorphic (metadata only)
    morph_name: str | None = None
    morph_type_column: str | None = None
    morph_id_column: str | None = None

    with_default: bool = False
    default_attributes: frozendict[str, Any] = field(default_factory=frozendict)
    touch_columns: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if not self.field_name:
            raise ConfigurationError(f"{self.kind.name} relation needs a field_name")

        if not self.owner_table:
            object.__setattr__(self, "owner_table", get_table_name(self.owner))
        if not self.related_table:
            object.__setattr__(self, "related_table", get_table_name(self.related))
        if not isinstance(self.default_attributes, frozendict):
            object.__setattr__(self, "default_attributes", frozendict(self.default_attributes))

        required, allowed = _key_groups(self.kind)
        if missing := [name for name in required if not getattr(self, name)]:
            raise ConfigurationError(
                f"{self.kind.name} relation {self.owner.__name__}.{self.field_name} "
                f"requires {', '.join(missing)}"
            )
        if stray := [
            name for name in _OPTIONAL_KEYS if name not in allowed and getattr(self, name)
        ]:
            raise ConfigurationError(
                f"{self.kind.name} relation {self.owner.__name__}.{self.field_name} "
                f"does not use {', '.join(stray)}"
            )

        if self.aggregate_function is not None and self.aggregate_function not in ("max", "min"):
            raise ConfigurationError(
                f"aggregate_function must be 'max' or 'min', got {self.aggregate_function!r}"
            )
        if self.with_default and self.kind.is_to_many:
            raise ConfigurationError("with_default only applies to singular relations")
        if self.touch_columns and self.kind is not RelationKind.BELONGS_TO:
            raise ConfigurationError("touch_columns only applies to BELONGS_TO relations")
        has_pivot_columns = bool(self.pivot_columns or self.pivot_timestamps)
        if has_pivot_columns and self.kind is not RelationKind.BELONGS_TO_MANY:
            raise ConfigurationError("pivot columns only apply to BELONGS_TO_MANY relations")

    @classmethod
    def has_one(
        cls,
        owner: type[Any],
        related: type[Any],
        field_name: str,
        *,
        foreign_key: str,
        local_key: str = DEFAULT_PRIMARY_KEY,
        with_default: bool = False,
        default_attributes: Mapping[str, Any] | None = None,
    ) -> RelationDescriptor:
        return cls(
            RelationKind.HAS_ONE,
            owner,
            related,
            field_name,
            foreign_key=foreign_key,
            local_key=local_key,
            with_default=with_default,
            default_attributes=frozendict(default_attributes or {}),
        )

    @classmethod
    def has_many(
        cls,
        owner: type[Any],
        related: type[Any],
        field_name: str,
        *,
        foreign_key: str,
        local_key: str = DEFAULT_PRIMARY_KEY,
    ) -> RelationDescriptor:
        return cls(
            RelationKind.HAS_MANY,
            owner,
            related,
            field_name,
            foreign_key=foreign_key,
            local_key=local_key,
        )

    @classmethod
    def latest_of_many(
        cls,
        owner: type[Any],
        related: type[Any],
        field_name: str,
        *,
        foreign_key: str,
        order_column: str = "created_at",
        local_key: str = DEFAULT_PRIMARY_KEY,
    ) -> RelationDescriptor:
        """The single related row with the greatest *order_column* per owner."""
        return cls(
            RelationKind.LATEST_OF_MANY,
            owner,
            related,
            field_name,
            foreign_key=foreign_key,
            local_key=local_key,
            order_column=order_column,
        )

    @classmethod
    def oldest_of_many(
        cls,
        owner: type[Any],
        related: type[Any],
        field_name: str,
        *,
        foreign_key: str,
        order_column: str = "created_at",
        local_key: str = DEFAULT_PRIMARY_KEY,
    ) -> RelationDescriptor:
        """The single related row with the smallest *order_column* per owner."""
        return cls(
            RelationKind.OLDEST_OF_MANY,
            owner,
            related,
            field_name,
            foreign_key=foreign_key,
            local_key=local_key,
            order_column=order_column,
        )

    @classmethod
    def of_many(
        cls,
        owner: type[Any],
        related: type[Any],
        field_name: str,
        *,
        foreign_key: str,
        aggregate_column: str,
        aggregate_function: AggregateFunction = "max",
        local_key: str = DEFAULT_PRIMARY_KEY,
    ) -> RelationDescriptor:
        """The related row holding the max/min of *aggregate_column* per owner."""
        return cls(
            RelationKind.OF_MANY,
            owner,
            related,
            field_name,
            foreign_key=foreign_key,
            local_key=local_key,
            aggregate_column=aggregate_column,
            aggregate_function=aggregate_function,
        )

    @classmethod
    def belongs_to(
        cls,
        owner: type[Any],
        related: type[Any],
        field_name: str,
        *,
        foreign_key: str,
        related_key: str = DEFAULT_PRIMARY_KEY,
        touch_columns: tuple[str, ...] = (),
        with_default: bool = False,
        default_attributes: Mapping[str, Any] | None = None,
    ) -> RelationDescriptor:
        return cls(
            RelationKind.BELONGS_TO,
            owner,
            related,
            field_name,
            foreign_key=foreign_key,
            related_key=related_key,
            touch_columns=tuple(touch_columns),
            with_default=with_default,
            default_attributes=frozendict(default_attributes or {}),
        )

    @classmethod
    def belongs_to_many(
        cls,
        owner: type[Any],
        related: type[Any],
        field_name: str,
        *,
        pivot_table: str,
        foreign_pivot_key: str,
        related_pivot_key: str,
        local_key: str = DEFAULT_PRIMARY_KEY,
        related_key: str = DEFAULT_PRIMARY_KEY,
        pivot_columns: tuple[str, ...] = (),
        pivot_timestamps: bool = False,
    ) -> RelationDescriptor:
        return cls(
            RelationKind.BELONGS_TO_MANY,
            owner,
            related,
            field_name,
            pivot_table=pivot_table,
            foreign_pivot_key=foreign_pivot_key,
            related_pivot_key=related_pivot_key,
            local_key=local_key,
            related_key=related_key,
            pivot_columns=tuple(pivot_columns),
            pivot_timestamps=pivot_timestamps,
        )

    @classmethod
    def has_one_through(
        cls,
        owner: type[Any],
        related: type[Any],
        field_name: str,
        *,
        through_table: str,
        first_key: str,
        second_key: str,
        local_key: str = DEFAULT_PRIMARY_KEY,
        second_local_key: str = DEFAULT_PRIMARY_KEY,
    ) -> RelationDescriptor:
        return cls(
            RelationKind.HAS_ONE_THROUGH,
            owner,
            related,
            field_name,
            through_table=through_table,
            first_key=first_key,
            second_key=second_key,
            local_key=local_key,
            second_local_key=second_local_key,
        )

    @classmethod
    def has_many_through(
        cls,
        owner: type[Any],
        related: type[Any],
        field_name: str,
        *,
        through_table: str,
        first_key: str,
        second_key: str,
        local_key: str = DEFAULT_PRIMARY_KEY,
        second_local_key: str = DEFAULT_PRIMARY_KEY,
    ) -> RelationDescriptor:
        """Owner -> intermediate rows (``first_key``) -> related rows (``second_key``).

        ``first_key`` is the intermediate table's column pointing at the owner,
        ``second_local_key`` the intermediate table's own key and ``second_key``
        the related table's column pointing at the intermediate row.
        """
        return cls(
            RelationKind.HAS_MANY_THROUGH,
            owner,
            related,
            field_name,
            through_table=through_table,
            first_key=first_key,
            second_key=second_key,
            local_key=local_key,
            second_local_key=second_local_key,
        )

    @classmethod
    def morph(
        cls,
        kind: RelationKind,
        owner: type[Any],
        related: type[Any],
        field_name: str,
        *,
        morph_name: str,
        **keys: Any,
    ) -> RelationDescriptor:
        """Describe a polymorphic relation; it can be declared but never resolved."""
        if not kind.is_morph:
            raise ConfigurationError(f"{kind.name} is not a polymorphic relation kind")

        return cls(
            kind,
            owner,
            related,
            field_name,
            morph_name=morph_name,
            morph_type_column=keys.pop("morph_type_column", f"{morph_name}_type"),
            morph_id_column=keys.pop("morph_id_column", f"{morph_name}_id"),
            **keys,
        )

    @property
    def owner_match_key(self) -> str:
        """Owner-side field whose values drive the batch query."""
        key = self.foreign_key if self.kind is RelationKind.BELONGS_TO else self.local_key
        assert key is not None
        return key

    @property
    def related_match_key(self) -> str:
        """Related-side field compared against the owner-side values."""
        match self.kind:
            case RelationKind.BELONGS_TO | RelationKind.BELONGS_TO_MANY:
                key = self.related_key
            case RelationKind.HAS_ONE_THROUGH | RelationKind.HAS_MANY_THROUGH:
                key = self.second_key
            case _:
                key = self.foreign_key
        assert key is not None
        return key

    def __repr__(self) -> str:
        keys = ", ".join(
            f"{f.name}={value!r}"
            for f in fields(self)
            if f.name in _OPTIONAL_KEYS and (value := getattr(self, f.name))
        )
        return (
            f"<{type(self).__name__} {self.kind.name} "
            f"{self.owner.__name__}.{self.field_name} -> {self.related.__name__} ({keys})>"
        )
