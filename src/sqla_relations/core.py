from __future__ import annotations

import logging
import sys
from collections.abc import Hashable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar


if sys.version_info >= (3, 11):
    from typing import TypedDict, Unpack
else:
    from typing_extensions import TypedDict, Unpack

import sqlalchemy as sa
from sqlalchemy import orm
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncSession

from .datastructures import frozendict, multidict
from .exceptions import UnsupportedRelationError
from .executor import EntityRowMapper, QueryExecutor, SqlExecutor
from .node import Node
from .populator import group_by_key, populate, populate_bridged
from .relation import RelationDescriptor, RelationKind
from .request import (
    Constraint,
    LoadRequest,
    _bfs_search,
    _build_requests,
    _resolve_dotted_path,
)
from .tools import ROW_NUMBER_LABEL, column_of, extract_keys, get_table, select_all


logger = logging.getLogger(__name__)

T = TypeVar("T")


def _pair(row: sa.Row[Any]) -> tuple[Hashable, Hashable]:
    return row[0], row[1]


class EagerLoader:
    """Batched eager loader for relation request trees.

    Every request node costs one query for direct kinds and two for pivot and
    through kinds, whatever the number of owners.  Requests are processed
    depth-first: a node's results are assigned to its owners before its
    nested requests run against those results.

    Example::

        with engine.connect() as conn:
            users = ...
            EagerLoader(SqlExecutor(conn)).load_relations(
                users,
                [LoadRequest.of(User.posts, Post.comments), LoadRequest.of(User.roles)],
            )
    """

    __slots__ = ("executor",)

    def __init__(self, executor: QueryExecutor) -> None:
        self.executor = executor

    def load_relations(self, owners: Iterable[Any], requests: Iterable[LoadRequest]) -> None:
        """Resolve *requests* for every entity in *owners*, in place.

        Raises:
            UnsupportedRelationError: For polymorphic relation kinds.
            ConfigurationError: If an owner lacks a key or relation field, or
                a field's declared shape contradicts the relation kind.
        """
        owners = list(owners)
        if not owners:
            logger.debug("Empty owner batch, skipping %d request(s)", len(tuple(requests)))
            return

        for request in requests:
            self._load(owners, request)

    def _load(self, owners: list[Any], request: LoadRequest) -> None:
        descriptor = request.descriptor
        match descriptor.kind:
            case RelationKind.HAS_ONE | RelationKind.HAS_MANY | RelationKind.BELONGS_TO:
                related = self._load_direct(owners, request)
            case RelationKind.LATEST_OF_MANY | RelationKind.OLDEST_OF_MANY | RelationKind.OF_MANY:
                related = self._load_of_many(owners, request)
            case RelationKind.BELONGS_TO_MANY:
                assert descriptor.pivot_table and descriptor.foreign_pivot_key
                assert descriptor.related_pivot_key
                related = self._load_bridged(
                    owners,
                    request,
                    bridge_table=descriptor.pivot_table,
                    owner_bridge_key=descriptor.foreign_pivot_key,
                    related_bridge_key=descriptor.related_pivot_key,
                )
            case RelationKind.HAS_ONE_THROUGH | RelationKind.HAS_MANY_THROUGH:
                assert descriptor.through_table and descriptor.first_key
                assert descriptor.second_local_key
                related = self._load_bridged(
                    owners,
                    request,
                    bridge_table=descriptor.through_table,
                    owner_bridge_key=descriptor.first_key,
                    related_bridge_key=descriptor.second_local_key,
                )
            case (
                RelationKind.MORPH_ONE
                | RelationKind.MORPH_MANY
                | RelationKind.MORPH_TO
                | RelationKind.MORPH_TO_MANY
                | RelationKind.MORPHED_BY_MANY
            ):
                raise UnsupportedRelationError(descriptor.kind)

        if request.nested and related:
            self.load_relations(related, request.nested)
        elif request.nested:
            logger.debug("No %s loaded, skipping nested requests", descriptor.field_name)

    @staticmethod
    def _constrain(statement: sa.Select[Any], request: LoadRequest) -> sa.Select[Any]:
        return request.constraint(statement) if request.constraint is not None else statement

    def _related_table(self, descriptor: RelationDescriptor, *columns: str) -> sa.FromClause:
        return get_table(
            descriptor.related_table,
            descriptor.related_match_key,
            *columns,
            model=descriptor.related,
        )

    def _load_direct(self, owners: list[Any], request: LoadRequest) -> list[Any]:
        descriptor = request.descriptor
        keys = extract_keys(owners, descriptor.owner_match_key)
        if not keys:
            logger.debug("%r: no owner keys, skipping query", descriptor)
            populate(owners, (), descriptor)
            return []

        table = self._related_table(descriptor)
        statement = select_all(table).where(
            column_of(table, descriptor.related_match_key).in_(keys)
        )
        logger.debug(
            "Loading %s %s from %s for %d key(s)",
            descriptor.kind.name,
            descriptor.field_name,
            descriptor.related_table,
            len(keys),
        )
        related = self.executor.query(
            self._constrain(statement, request), EntityRowMapper(descriptor.related)
        )
        populate(owners, related, descriptor)
        return related

    def _load_of_many(self, owners: list[Any], request: LoadRequest) -> list[Any]:
        descriptor = request.descriptor
        keys = extract_keys(owners, descriptor.owner_match_key)
        if not keys:
            logger.debug("%r: no owner keys, skipping query", descriptor)
            populate(owners, (), descriptor)
            return []

        match descriptor.kind:
            case RelationKind.LATEST_OF_MANY:
                rank_column, descending = descriptor.order_column, True
            case RelationKind.OLDEST_OF_MANY:
                rank_column, descending = descriptor.order_column, False
            case _:
                rank_column = descriptor.aggregate_column
                descending = descriptor.aggregate_function == "max"
        assert rank_column is not None

        table = self._related_table(descriptor, rank_column)
        partition = column_of(table, descriptor.related_match_key)
        rank = column_of(table, rank_column)
        row_number = (
            sa.func.row_number()
            .over(partition_by=partition, order_by=rank.desc() if descending else rank.asc())
            .label(ROW_NUMBER_LABEL)
        )
        ranked = (
            self._constrain(select_all(table).where(partition.in_(keys)), request)
            .add_columns(row_number)
            .subquery("ranked")
        )
        columns = (
            [column for column in ranked.c if column.key != ROW_NUMBER_LABEL]
            if isinstance(table, sa.Table)
            else [sa.literal_column("*")]
        )
        statement = (
            sa.select(*columns).select_from(ranked).where(ranked.c[ROW_NUMBER_LABEL] == 1)
        )
        logger.debug(
            "Loading %s %s from %s for %d key(s)",
            descriptor.kind.name,
            descriptor.field_name,
            descriptor.related_table,
            len(keys),
        )
        related = self.executor.query(
            statement, EntityRowMapper(descriptor.related, exclude=(ROW_NUMBER_LABEL,))
        )
        populate(owners, related, descriptor)
        return related

    def _load_bridged(
        self,
        owners: list[Any],
        request: LoadRequest,
        *,
        bridge_table: str,
        owner_bridge_key: str,
        related_bridge_key: str,
    ) -> list[Any]:
        """Two-phase load through a pivot (many-to-many) or intermediate (through) table.

        Phase one reads ``(owner_bridge_key, related_bridge_key)`` pairs for
        the owner keys; phase two reads the related entities whose
        ``related_match_key`` is among the collected bridge keys.
        """
        descriptor = request.descriptor
        assert descriptor.local_key is not None
        keys = extract_keys(owners, descriptor.local_key)
        if not keys:
            logger.debug("%r: no owner keys, skipping query", descriptor)
            populate_bridged(owners, descriptor, multidict(), multidict())
            return []

        bridge = get_table(
            bridge_table, owner_bridge_key, related_bridge_key, model=descriptor.owner
        )
        owner_column = column_of(bridge, owner_bridge_key)
        statement = sa.select(owner_column, column_of(bridge, related_bridge_key)).where(
            owner_column.in_(keys)
        )
        logger.debug(
            "Loading %s links for %s from %s for %d key(s)",
            descriptor.kind.name,
            descriptor.field_name,
            bridge_table,
            len(keys),
        )
        pairs = self.executor.query(statement, _pair)
        links: multidict[Hashable, Hashable] = multidict(pairs)
        related_keys = list(
            dict.fromkeys(related_key for _, related_key in pairs if related_key is not None)
        )
        if not related_keys:
            logger.debug("%r: no links, skipping related query", descriptor)
            populate_bridged(owners, descriptor, links, multidict())
            return []

        table = self._related_table(descriptor)
        statement = select_all(table).where(
            column_of(table, descriptor.related_match_key).in_(related_keys)
        )
        related = self.executor.query(
            self._constrain(statement, request), EntityRowMapper(descriptor.related)
        )
        populate_bridged(
            owners, descriptor, links, group_by_key(related, descriptor.related_match_key)
        )
        return related


@dataclass(slots=True, frozen=True)
class _LoadParams(Generic[T]):
    __class_getitem__ = classmethod(lambda cls, *args: cls)

    model: type[T]
    loads: tuple[str, ...] = ()
    node: Node | None = None
    conditions: frozendict[str, Constraint] = field(default_factory=frozendict)
    requests: tuple[LoadRequest, ...] = ()

    def build(self) -> tuple[LoadRequest, ...]:
        if not self.loads:
            return self.requests

        return (
            *_build_requests(self.model, self.loads, self.node or Node(), self.conditions),
            *self.requests,
        )


class _LoadParamsType(TypedDict, Generic[T], total=False):
    model: type[T]
    loads: tuple[str, ...]
    node: Node
    conditions: Mapping[str, Constraint]
    requests: tuple[LoadRequest, ...]


def sqla_load(
    owners: Sequence[T],
    connection: sa.Connection | orm.Session,
    **params: Unpack[_LoadParamsType[T]],
) -> Sequence[T]:
    """Eager-load relations of *owners* by name, in batches.

    Args:
        owners: Entities whose relation fields are populated in place.
        connection: SQLAlchemy ``Connection`` or ``Session`` to query through.
        model: type[T]
            Entity type of *owners*. Defaults to the type of the first owner.
        loads: tuple[str, ...]
            Relation names and dotted paths to load. Defaults to ().
        node: Node
            Node instance containing the descriptors. Defaults to the singleton.
        conditions: Mapping[str, Callable[[sa.Select], sa.Select]]
            Per-path (or per-relation-name) constraints on the related query.
        requests: tuple[LoadRequest, ...]
            Hand-built requests resolved after the ones derived from *loads*.

    Returns:
        *owners*, for chaining.

    Examples:
        Basic usage with conditions::

            users = session.scalars(sa.select(User)).all()
            sqla_load(
                users,
                session,
                loads=("roles", "posts.comments"),
                conditions={"roles": add_conditions(Role.level > 3)},
            )
    """
    if not owners:
        return owners

    params.setdefault("model", type(owners[0]))
    params["conditions"] = frozendict(params.get("conditions", {}))
    load_params = _LoadParams[T](**params)  # type: ignore[arg-type]

    EagerLoader(SqlExecutor(connection)).load_relations(owners, load_params.build())
    return owners


async def sqla_aload(
    owners: Sequence[T],
    connection: AsyncConnection | AsyncSession,
    **params: Unpack[_LoadParamsType[T]],
) -> Sequence[T]:
    """Async variant of :func:`sqla_load` for ``AsyncConnection`` / ``AsyncSession``.

    The loader runs inside SQLAlchemy's greenlet bridge via ``run_sync``.
    """
    return await connection.run_sync(lambda sync: sqla_load(owners, sync, **params))


def sqla_cache_info() -> dict[str, Any]:
    """Return LRU cache statistics for all internal caches."""
    from .tools import _get_primary_key_name, _get_table_name

    return {
        fn.__name__: fn.cache_info()
        for fn in (
            _bfs_search,
            _resolve_dotted_path,
            _build_requests,
            _get_primary_key_name,
            _get_table_name,
        )
    }


def sqla_cache_clear() -> None:
    """Clear all internal LRU caches."""
    from .tools import _get_primary_key_name, _get_table_name

    for fn in (
        _bfs_search,
        _resolve_dotted_path,
        _build_requests,
        _get_primary_key_name,
        _get_table_name,
    ):
        fn.cache_clear()
