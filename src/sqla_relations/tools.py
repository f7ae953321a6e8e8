from __future__ import annotations

import datetime as dt
import decimal
from collections.abc import Callable, Hashable, Iterable
from functools import lru_cache
from typing import Any, Final, TypeVar

import sqlalchemy as sa

from .accessor import get_field
from .exceptions import ConfigurationError


_Q = TypeVar("_Q", bound=sa.Select[Any])

DEFAULT_PRIMARY_KEY: Final[str] = "id"
PIVOT_CREATED_AT: Final[str] = "created_at"
PIVOT_UPDATED_AT: Final[str] = "updated_at"
ROW_NUMBER_LABEL: Final[str] = "_sqla_rn"


def is_mapped(model: type[Any]) -> bool:
    """Return True when *model* is a SQLAlchemy-mapped class."""
    return sa.inspect(model, raiseerr=False) is not None and hasattr(model, "__table__")


@lru_cache
def _get_table_name(model: type[Any]) -> str:
    """Return the table name for *model*, preferring ``__tablename__`` (cached)."""
    result = getattr(model, "__tablename__", None)
    if not result and is_mapped(model):
        result = model.__table__.description
    if not result:
        raise ConfigurationError(
            f"Cannot determine tablename for {model.__name__}: "
            "set __tablename__ or pass the table name explicitly"
        )

    return str(result)


@lru_cache
def _get_primary_key_name(model: type[Any]) -> str:
    if is_mapped(model):
        return next(iter(model.__table__.primary_key)).name

    return getattr(model, "__primary_key__", DEFAULT_PRIMARY_KEY)


def get_table_name(model: type[Any]) -> str:
    """Get the table name for an entity class.

    Args:
        model: Mapped class, or any class defining ``__tablename__``.

    Returns:
        The table name as a string.

    Raises:
        ConfigurationError: If the table name cannot be determined.
    """
    return _get_table_name(model)


def get_primary_key_name(model: type[Any]) -> str:
    """Get the primary key column name of an entity class.

    Mapped classes report their first primary-key column; plain classes may
    declare ``__primary_key__`` and default to ``"id"``.
    """
    return _get_primary_key_name(model)


def get_table(name: str, *columns: str, model: type[Any] | None = None) -> sa.FromClause:
    """Return a selectable for table *name*.

    When *model* is a mapped class, its own ``Table`` or any table of the
    same ``MetaData`` named *name* (such as a pivot table) is returned, so
    that ``SELECT`` lists every column and values go through the column
    types.  Otherwise a lightweight ``sa.table()`` carrying only *columns*
    is built.
    """
    if model is not None and is_mapped(model):
        table = sa.inspect(model).local_table
        if table.name == name:
            return table
        if (known := table.metadata.tables.get(name)) is not None:
            return known

    return sa.table(name, *(sa.column(column) for column in dict.fromkeys(columns)))


def column_of(table: sa.FromClause, name: str) -> sa.ColumnElement[Any]:
    """Resolve column *name* on *table*.

    Raises:
        ConfigurationError: If the table has no such column.
    """
    try:
        return table.c[name]
    except KeyError:
        raise ConfigurationError(
            f"Column {name!r} not found in table {getattr(table, 'name', table)!r}. "
            f"Available: {[c.key for c in table.c]}"
        ) from None


def select_all(table: sa.FromClause) -> sa.Select[Any]:
    """``SELECT * FROM table`` that also works for lightweight tables."""
    if isinstance(table, sa.Table):
        return sa.select(table)

    return sa.select(sa.literal_column("*")).select_from(table)


def add_conditions(
    *conditions: sa.ColumnExpressionArgument[bool],
) -> Callable[[_Q], _Q]:
    """Create a load constraint that adds WHERE conditions to the related query.

    Example:
        >>> request = LoadRequest.of(User.roles, constraint=add_conditions(Role.level > 3))
    """

    def _add(query: _Q) -> _Q:
        return query.where(*conditions)

    return _add


def order_by(*clauses: sa.ColumnExpressionArgument[Any] | str) -> Callable[[_Q], _Q]:
    """Create a load constraint that orders the related query."""

    def _order(query: _Q) -> _Q:
        return query.order_by(*(sa.text(c) if isinstance(c, str) else c for c in clauses))

    return _order


def extract_keys(entities: Iterable[Any], field_name: str) -> list[Hashable]:
    """Collect the distinct non-null values of *field_name* across *entities*.

    Keys keep the order in which they were first seen, so no ordering
    between key values is required.

    Raises:
        FieldAccessError: If an entity has no such field.
    """
    keys: dict[Hashable, None] = {}
    for entity in entities:
        value = get_field(entity, field_name)
        if value is not None:
            keys.setdefault(value)

    return list(keys)


def format_value(value: Any) -> str:
    """Render *value* as a SQL literal.

    Numbers are left bare, booleans become ``TRUE``/``FALSE``, ``None`` becomes
    ``NULL`` and everything else is single-quoted with embedded quotes doubled.
    Only used for log output: statements built by this package always bind
    their values as parameters.
    """
    if value is None:
        return "NULL"
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    if isinstance(value, (int, float, decimal.Decimal)):
        return str(value)
    if isinstance(value, (dt.date, dt.datetime, dt.time)):
        value = value.isoformat()

    return "'" + str(value).replace("'", "''") + "'"

