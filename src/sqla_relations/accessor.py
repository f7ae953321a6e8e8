"""Field access by name for entities of any shape.

Relation metadata names keys by their *column* names (``user_id``) while the
entities that carry them may spell their attributes differently
(``userId``).  Every read and write the loader and the manager perform goes
through :func:`get_field` / :func:`set_field`, which try the name as given,
then its snake_case and camelCase variants, and raise
:class:`~sqla_relations.exceptions.FieldAccessError` when none exists.

Supported entities: SQLAlchemy-mapped instances, dataclasses and plain
objects.  Assignments on mapped instances go through
``set_committed_value`` so populated relations and keys already written to
the database are not reported as pending changes by the session.
"""

from __future__ import annotations

import collections.abc as cabc
import dataclasses
import re
import types
import typing
from collections.abc import Mapping
from functools import lru_cache
from typing import Any, Literal, TypeVar, Union, get_args, get_origin

import sqlalchemy as sa
from sqlalchemy import orm
from sqlalchemy.orm.attributes import set_committed_value

from .exceptions import ConfigurationError, FieldAccessError


T = TypeVar("T")
FieldShape = Literal["one", "list", "set"]

_CAMEL_BOUNDARY = re.compile(r"(?<=[a-z0-9])(?=[A-Z])")
_SET_PREFIXES = ("set[", "frozenset[", "Set[", "AbstractSet[", "MutableSet[", "FrozenSet[")
_LIST_PREFIXES = ("list[", "List[", "Sequence[", "MutableSequence[", "tuple[", "Tuple[")


@lru_cache(maxsize=4096)
def to_snake_case(name: str) -> str:
    """``authorId`` -> ``author_id``."""
    return _CAMEL_BOUNDARY.sub("_", name).lower()


@lru_cache(maxsize=4096)
def to_camel_case(name: str) -> str:
    """``author_id`` -> ``authorId``."""
    head, *rest = name.split("_")
    return head + "".join(part[:1].upper() + part[1:] for part in rest)


def _candidates(name: str) -> tuple[str, ...]:
    return tuple(dict.fromkeys((name, to_snake_case(name), to_camel_case(name))))


def _mapper(entity_type: type[Any]) -> orm.Mapper[Any] | None:
    mapper = sa.inspect(entity_type, raiseerr=False)
    return mapper if isinstance(mapper, orm.Mapper) else None


def is_mapped_instance(entity: Any) -> bool:
    """Return True when *entity* is an instance of a SQLAlchemy-mapped class."""
    return isinstance(sa.inspect(entity, raiseerr=False), orm.InstanceState)


@lru_cache(maxsize=1024)
def _declared_names(entity_type: type[Any]) -> Mapping[str, str]:
    """Map every name an entity type declares (and mapped column names) to its attribute."""
    names: dict[str, str] = {}
    for klass in reversed(entity_type.__mro__):
        for name in getattr(klass, "__annotations__", {}):
            names[name] = name
    if dataclasses.is_dataclass(entity_type):
        names.update((f.name, f.name) for f in dataclasses.fields(entity_type))
    if (mapper := _mapper(entity_type)) is not None:
        for prop in mapper.attrs:
            names[prop.key] = prop.key
        for prop in mapper.column_attrs:
            names.setdefault(prop.columns[0].name, prop.key)

    return names


@lru_cache(maxsize=4096)
def _resolve_declared(entity_type: type[Any], field_name: str) -> str | None:
    declared = _declared_names(entity_type)
    for candidate in _candidates(field_name):
        if candidate in declared:
            return declared[candidate]
    for candidate in _candidates(field_name):
        if isinstance(getattr(entity_type, candidate, None), property):
            return candidate

    return None


def resolve_field(entity: Any, field_name: str) -> str:
    """Return the attribute name under which *entity* stores *field_name*.

    Raises:
        FieldAccessError: If no naming variant exists on the entity.
    """
    entity_type = type(entity)
    if (name := _resolve_declared(entity_type, field_name)) is not None:
        return name

    attributes = getattr(entity, "__dict__", {})
    for candidate in _candidates(field_name):
        if candidate in attributes:
            return candidate

    raise FieldAccessError(entity_type, field_name)


def get_field(entity: Any, field_name: str) -> Any:
    """Read *field_name* from *entity*."""
    return getattr(entity, resolve_field(entity, field_name))


def set_field(entity: Any, field_name: str, value: Any) -> None:
    """Write *value* to *field_name* on *entity*.

    On mapped instances the value is recorded as already persisted.
    """
    name = resolve_field(entity, field_name)
    mapper = _mapper(type(entity))
    if mapper is not None and name in mapper.attrs:
        set_committed_value(entity, name, value)
        return

    setattr(entity, name, value)


def _shape_of_hint(hint: Any) -> FieldShape | None:
    if isinstance(hint, str):
        text = hint.replace(" ", "")
        for wrapper in ("Mapped[", "Optional["):
            if text.startswith(wrapper):
                text = text[len(wrapper) : -1]
        if text.startswith(_SET_PREFIXES):
            return "set"
        if text.startswith(_LIST_PREFIXES):
            return "list"
        return "one"

    origin = get_origin(hint)
    if origin is orm.Mapped:
        return _shape_of_hint(get_args(hint)[0])
    if origin is Union or origin is types.UnionType:
        args = [arg for arg in get_args(hint) if arg is not type(None)]
        return _shape_of_hint(args[0]) if len(args) == 1 else "one"

    container = origin or hint
    if isinstance(container, type):
        if issubclass(container, (set, frozenset, cabc.Set)):
            return "set"
        if issubclass(container, (list, tuple, cabc.Sequence)) and not issubclass(
            container, (str, bytes)
        ):
            return "list"

    return "one"


def _type_hints(entity_type: type[Any]) -> Mapping[str, Any]:
    try:
        return typing.get_type_hints(entity_type)
    except (NameError, TypeError):
        hints: dict[str, Any] = {}
        for klass in reversed(entity_type.__mro__):
            hints.update(getattr(klass, "__annotations__", {}))
        return hints


@lru_cache(maxsize=1024)
def _declared_shape(entity_type: type[Any], name: str) -> FieldShape | None:
    mapper = _mapper(entity_type)
    if mapper is not None and name in mapper.relationships:
        relationship = mapper.relationships[name]
        if not relationship.uselist:
            return "one"
        collection = relationship.collection_class
        if isinstance(collection, type) and issubclass(collection, (set, frozenset)):
            return "set"
        return "list"

    hint = _type_hints(entity_type).get(name)
    return None if hint is None else _shape_of_hint(hint)


def field_shape(entity: Any, field_name: str, *, default: FieldShape) -> FieldShape:
    """Return the container shape of *field_name* on *entity*.

    The shape comes from the relationship configuration of mapped classes or
    from the field's type annotation; *default* is used for undeclared fields.

    Raises:
        FieldAccessError: If the entity has no such field.
    """
    name = resolve_field(entity, field_name)
    return _declared_shape(type(entity), name) or default


def _is_scalar(value: Any) -> bool:
    if isinstance(value, (list, set, frozenset, tuple, dict)):
        return False
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return False
    return not is_mapped_instance(value)


def _refers_to_entity(hint: Any) -> bool:
    if isinstance(hint, type):
        return dataclasses.is_dataclass(hint) or _mapper(hint) is not None
    return any(_refers_to_entity(arg) for arg in get_args(hint))


@lru_cache(maxsize=1024)
def _relation_fields(entity_type: type[Any]) -> frozenset[str]:
    """Names whose annotation mentions another entity type (relation fields)."""
    return frozenset(
        name for name, hint in _type_hints(entity_type).items() if _refers_to_entity(hint)
    )


def to_column_map(entity: Any) -> dict[str, Any]:
    """Return ``{column_name: value}`` for the scalar columns of *entity*.

    Relation fields are left out, whether they hold entities or ``None``.
    Mapped instances only report the attributes that were set or loaded, so
    column defaults still apply to the rest.
    """
    if (mapper := _mapper(type(entity))) is not None:
        state = sa.inspect(entity).dict
        return {
            prop.columns[0].name: state[prop.key]
            for prop in mapper.column_attrs
            if prop.key in state
        }

    if dataclasses.is_dataclass(entity):
        items = ((f.name, getattr(entity, f.name)) for f in dataclasses.fields(entity))
    else:
        items = ((k, v) for k, v in vars(entity).items() if not k.startswith("_"))

    relations = _relation_fields(type(entity))
    return {
        to_snake_case(name): value
        for name, value in items
        if name not in relations and _is_scalar(value)
    }


def instantiate(entity_type: type[T], attributes: Mapping[str, Any]) -> T:
    """Build an *entity_type* instance from column-keyed *attributes*.

    Keys are matched to attributes with the same naming tolerance as
    :func:`get_field`; keys with no matching attribute are ignored.

    Raises:
        ConfigurationError: If the type cannot be constructed from the values.
    """
    names = {key: _resolve_declared(entity_type, key) for key in attributes}
    resolved = {name: attributes[key] for key, name in names.items() if name is not None}

    try:
        if dataclasses.is_dataclass(entity_type):
            init = {f.name for f in dataclasses.fields(entity_type) if f.init}
            instance = entity_type(**{k: v for k, v in resolved.items() if k in init})
            for name in resolved.keys() - init:
                setattr(instance, name, resolved[name])
            return instance
        if _mapper(entity_type) is not None:
            return entity_type(**resolved)

        instance = entity_type()
    except TypeError as exc:
        raise ConfigurationError(f"Cannot instantiate {entity_type.__name__}: {exc}") from exc

    for key, value in attributes.items():
        setattr(instance, names[key] or to_snake_case(key), value)

    return instance
