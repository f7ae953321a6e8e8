from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Mapping
from typing import Any, Generic, Protocol, TypeVar, runtime_checkable

import sqlalchemy as sa
from sqlalchemy import orm

from .accessor import instantiate
from .tools import format_value


logger = logging.getLogger(__name__)

E = TypeVar("E")

RowMapper = Callable[[Any], E]


@runtime_checkable
class QueryExecutor(Protocol):
    """Runs the statements built by the loader and the relationship manager.

    Implementations own connection handling and transactions; every call is
    blocking and errors propagate to the caller unchanged.
    """

    def execute(self, statement: sa.Executable) -> int:
        """Run an INSERT/UPDATE/DELETE and return the number of affected rows."""
        ...

    def query(self, statement: sa.Executable, row_mapper: RowMapper[E]) -> list[E]:
        """Run a SELECT and map every result row with *row_mapper*."""
        ...


class EntityRowMapper(Generic[E]):
    """Map a result row (or any column-keyed mapping) to an *entity_type* instance.

    Columns named in *exclude* are dropped before instantiation, which keeps
    helper columns such as the row-number label of of-many queries off the
    entity.
    """

    __slots__ = ("entity_type", "exclude")

    def __init__(self, entity_type: type[E], *, exclude: Iterable[str] = ()) -> None:
        self.entity_type = entity_type
        self.exclude = frozenset(exclude)

    def __call__(self, row: sa.Row[Any] | Mapping[str, Any]) -> E:
        mapping = row._mapping if isinstance(row, sa.Row) else row
        if self.exclude:
            mapping = {k: v for k, v in mapping.items() if k not in self.exclude}
        return instantiate(self.entity_type, mapping)

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.entity_type.__name__})"


def scalar(row: sa.Row[Any]) -> Any:
    return row[0]


class SqlExecutor:
    """:class:`QueryExecutor` over a SQLAlchemy ``Connection`` or ``Session``.

    The executor never begins, commits or rolls back: it runs inside whatever
    transaction the caller holds on *bind*.

    Example::

        with engine.begin() as conn:
            loader = EagerLoader(SqlExecutor(conn))
            loader.load_relations(users, requests)
    """

    __slots__ = ("bind",)

    def __init__(self, bind: sa.Connection | orm.Session) -> None:
        self.bind = bind

    def execute(self, statement: sa.Executable) -> int:
        self._log(statement)
        result = self.bind.execute(statement)
        return max(result.rowcount, 0)  # type: ignore[attr-defined]

    def query(self, statement: sa.Executable, row_mapper: RowMapper[E]) -> list[E]:
        self._log(statement)
        return [row_mapper(row) for row in self.bind.execute(statement)]

    def _log(self, statement: sa.Executable) -> None:
        if not logger.isEnabledFor(logging.DEBUG):
            return

        compiled = statement.compile(bind=self._engine())  # type: ignore[attr-defined]
        params = ", ".join(
            f"{name}={_format_param(value)}" for name, value in compiled.params.items()
        )
        logger.debug("%s [%s]", compiled, params)

    def _engine(self) -> sa.Engine | sa.Connection | None:
        if isinstance(self.bind, orm.Session):
            return self.bind.get_bind()  # type: ignore[return-value]
        return self.bind

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.bind!r})"


def _format_param(value: Any) -> str:
    if isinstance(value, (list, tuple, set, frozenset)):
        return "(" + ", ".join(format_value(item) for item in value) + ")"
    return format_value(value)
