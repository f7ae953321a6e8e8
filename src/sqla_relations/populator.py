from __future__ import annotations

from collections.abc import Hashable, Iterable, Sequence
from typing import Any

from .accessor import FieldShape, field_shape, get_field, instantiate, set_field
from .datastructures import multidict
from .exceptions import ConfigurationError
from .relation import RelationDescriptor


def _checked_shape(owner: Any, descriptor: RelationDescriptor) -> FieldShape:
    default: FieldShape = "list" if descriptor.kind.is_to_many else "one"
    shape = field_shape(owner, descriptor.field_name, default=default)
    if (shape == "one") == descriptor.kind.is_to_many:
        raise ConfigurationError(
            f"{type(owner).__name__}.{descriptor.field_name} is declared as {shape!r} "
            f"but {descriptor.kind.name} "
            f"{'returns a collection' if descriptor.kind.is_to_many else 'returns one entity'}"
        )

    return shape


def _default_for(descriptor: RelationDescriptor) -> Any:
    if not descriptor.with_default:
        return None

    return instantiate(descriptor.related, descriptor.default_attributes)


def assign(owner: Any, descriptor: RelationDescriptor, matches: Sequence[Any]) -> None:
    """Write *matches* into the relation field of *owner* in the field's shape.

    Set-shaped fields receive a ``set``, list-shaped fields a ``list`` in
    query order, singular fields the first match, ``None``, or the default
    instance of a ``with_default`` relation.

    Raises:
        ConfigurationError: If the field's declared shape contradicts the kind,
            or a set-shaped field receives unhashable entities.
        FieldAccessError: If *owner* has no such field.
    """
    match _checked_shape(owner, descriptor):
        case "set":
            try:
                value: Any = set(matches)
            except TypeError as exc:
                raise ConfigurationError(
                    f"{type(owner).__name__}.{descriptor.field_name} is set-shaped but "
                    f"{descriptor.related.__name__} instances are not hashable"
                ) from exc
        case "list":
            value = list(matches)
        case "one":
            value = matches[0] if matches else _default_for(descriptor)

    set_field(owner, descriptor.field_name, value)


def group_by_key(entities: Iterable[Any], field_name: str) -> multidict[Hashable, Any]:
    """Group *entities* by the value of *field_name*, keeping their order."""
    return multidict((get_field(entity, field_name), entity) for entity in entities)


def populate(
    owners: Iterable[Any], related: Iterable[Any], descriptor: RelationDescriptor
) -> None:
    """Distribute *related* across *owners* for a direct (single-key) relation.

    Related entities are matched on ``descriptor.related_match_key`` against
    each owner's ``descriptor.owner_match_key``.
    """
    groups = group_by_key(related, descriptor.related_match_key)
    for owner in owners:
        key = get_field(owner, descriptor.owner_match_key)
        assign(owner, descriptor, groups.get(key) if key is not None else [])


def populate_bridged(
    owners: Iterable[Any],
    descriptor: RelationDescriptor,
    links: multidict[Hashable, Hashable],
    related: multidict[Hashable, Any],
) -> None:
    """Distribute related entities reached through a pivot or intermediate table.

    Args:
        owners: Owner batch.
        descriptor: A ``BELONGS_TO_MANY`` or through descriptor.
        links: Owner key -> bridge keys pointing at related entities.
        related: Related match key -> related entities.
    """
    assert descriptor.local_key is not None
    for owner in owners:
        key = get_field(owner, descriptor.local_key)
        bridge_keys = links.get(key) if key is not None else []
        assign(owner, descriptor, [entity for bk in bridge_keys for entity in related.get(bk)])
