from __future__ import annotations

import datetime as dt
import logging
from collections.abc import Hashable, Iterable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any

import sqlalchemy as sa

from .accessor import get_field, instantiate, set_field, to_column_map
from .exceptions import ConfigurationError, InvalidRelationKindError
from .executor import EntityRowMapper, QueryExecutor, scalar
from .relation import RelationDescriptor, RelationKind
from .request import Constraint
from .tools import (
    PIVOT_CREATED_AT,
    PIVOT_UPDATED_AT,
    column_of,
    get_primary_key_name,
    get_table,
    select_all,
)


logger = logging.getLogger(__name__)

_HAS_KINDS = (RelationKind.HAS_ONE, RelationKind.HAS_MANY)


@dataclass(slots=True, frozen=True)
class SyncResult:
    """Row counts of a :meth:`RelationshipManager.sync` call."""

    attached: int = 0
    detached: int = 0

    @property
    def total_changes(self) -> int:
        return self.attached + self.detached

    @property
    def has_changes(self) -> bool:
        return self.attached > 0 or self.detached > 0


@dataclass(slots=True, frozen=True)
class ToggleResult:
    """Ids attached and detached by a :meth:`RelationshipManager.toggle` call."""

    attached: tuple[Hashable, ...] = ()
    detached: tuple[Hashable, ...] = ()

    @property
    def total_changes(self) -> int:
        return len(self.attached) + len(self.detached)

    @property
    def has_changes(self) -> bool:
        return bool(self.attached or self.detached)


def _ensure_kind(relation: RelationDescriptor, *expected: RelationKind) -> None:
    if relation.kind not in expected:
        raise InvalidRelationKindError(relation.kind, expected)


def _now() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def _values(table: sa.FromClause, values: Mapping[str, Any]) -> dict[sa.ColumnElement[Any], Any]:
    return {column_of(table, name): value for name, value in values.items()}


class RelationshipManager:
    """Write-side operations on relations, run through a :class:`QueryExecutor`.

    Every method checks the relation kind before issuing any SQL and raises
    :class:`~sqla_relations.exceptions.InvalidRelationKindError` on mismatch.
    Nothing here begins, commits or rolls back: all statements share the
    transaction the executor is bound to.

    Example::

        with engine.begin() as conn:
            manager = RelationshipManager(SqlExecutor(conn))
            manager.attach(user, User.roles, 5, {"granted_by": "admin"})
            result = manager.sync(user, User.roles, [5, 6])
    """

    __slots__ = ("executor",)

    def __init__(self, executor: QueryExecutor) -> None:
        self.executor = executor

    def associate(self, child: Any, relation: RelationDescriptor, parent: Any) -> int:
        """Point *child*'s foreign key at *parent* and touch the parent's timestamps.

        The in-memory foreign key of *child* is updated too.

        Returns:
            Number of child rows updated.
        """
        _ensure_kind(relation, RelationKind.BELONGS_TO)
        assert relation.foreign_key is not None and relation.related_key is not None

        parent_key = get_field(parent, relation.related_key)
        changed = self._set_foreign_key(child, relation, parent_key)
        set_field(child, relation.foreign_key, parent_key)

        if relation.touch_columns:
            self.touch_timestamps(
                relation.related_table,
                relation.related_key,
                parent_key,
                relation.touch_columns,
                model=relation.related,
            )

        return changed

    def dissociate(self, child: Any, relation: RelationDescriptor) -> int:
        """Clear *child*'s foreign key (in the database and in memory)."""
        _ensure_kind(relation, RelationKind.BELONGS_TO)
        assert relation.foreign_key is not None

        changed = self._set_foreign_key(child, relation, None)
        set_field(child, relation.foreign_key, None)
        return changed

    def _set_foreign_key(self, child: Any, relation: RelationDescriptor, value: Any) -> int:
        assert relation.foreign_key is not None
        primary_key = get_primary_key_name(relation.owner)
        table = get_table(
            relation.owner_table, primary_key, relation.foreign_key, model=relation.owner
        )
        statement = (
            sa.update(table)
            .where(column_of(table, primary_key) == get_field(child, primary_key))
            .values(_values(table, {relation.foreign_key: value}))
        )
        logger.debug("Setting %s.%s = %r", relation.owner_table, relation.foreign_key, value)
        return self.executor.execute(statement)

    def _parent_key(self, parent: Any, relation: RelationDescriptor) -> Any:
        assert relation.local_key is not None
        return get_field(parent, relation.local_key)

    def _insert(self, relation: RelationDescriptor, values: Mapping[str, Any]) -> int:
        table = get_table(relation.related_table, *values, model=relation.related)
        logger.debug("Inserting into %s: %s", relation.related_table, sorted(values))
        return self.executor.execute(sa.insert(table).values(_values(table, values)))

    def save(self, parent: Any, relation: RelationDescriptor, child: Any) -> Any:
        """Insert *child* with its foreign key set to *parent*'s local key.

        An unset (``None``) primary key is left out of the INSERT so the
        database can generate it.

        Returns:
            *child*, with its foreign key field updated.
        """
        _ensure_kind(relation, *_HAS_KINDS)
        assert relation.foreign_key is not None

        set_field(child, relation.foreign_key, self._parent_key(parent, relation))
        primary_key = get_primary_key_name(relation.related)
        values = {
            name: value
            for name, value in to_column_map(child).items()
            if not (name == primary_key and value is None)
        }
        self._insert(relation, values)
        return child

    def save_many(
        self, parent: Any, relation: RelationDescriptor, children: Iterable[Any]
    ) -> list[Any]:
        _ensure_kind(relation, *_HAS_KINDS)
        return [self.save(parent, relation, child) for child in children]

    def create(
        self, parent: Any, relation: RelationDescriptor, attributes: Mapping[str, Any]
    ) -> int:
        """Insert a related row from column-keyed *attributes* plus the foreign key."""
        _ensure_kind(relation, *_HAS_KINDS)
        assert relation.foreign_key is not None

        return self._insert(
            relation, {**attributes, relation.foreign_key: self._parent_key(parent, relation)}
        )

    def create_many(
        self,
        parent: Any,
        relation: RelationDescriptor,
        attributes_list: Iterable[Mapping[str, Any]],
    ) -> int:
        _ensure_kind(relation, *_HAS_KINDS)
        return sum(self.create(parent, relation, attributes) for attributes in attributes_list)

    def find_by_criteria(
        self, parent: Any, relation: RelationDescriptor, criteria: Mapping[str, Any]
    ) -> Any | None:
        """Return the first related entity of *parent* matching *criteria*, or ``None``."""
        _ensure_kind(relation, *_HAS_KINDS)
        assert relation.foreign_key is not None

        table = get_table(
            relation.related_table, relation.foreign_key, *criteria, model=relation.related
        )
        statement = (
            select_all(table)
            .where(column_of(table, relation.foreign_key) == self._parent_key(parent, relation))
            .where(*(column_of(table, name) == value for name, value in criteria.items()))
            .limit(1)
        )
        results = self.executor.query(statement, EntityRowMapper(relation.related))
        return results[0] if results else None

    def first_or_create(
        self,
        parent: Any,
        relation: RelationDescriptor,
        criteria: Mapping[str, Any],
        defaults: Mapping[str, Any] | None = None,
    ) -> Any:
        """Find a related entity by *criteria*, or insert one from *defaults* + *criteria*."""
        _ensure_kind(relation, *_HAS_KINDS)

        if (existing := self.find_by_criteria(parent, relation, criteria)) is not None:
            return existing

        self.create(parent, relation, {**(defaults or {}), **criteria})
        return self.find_by_criteria(parent, relation, criteria)

    def first_or_new(
        self,
        parent: Any,
        relation: RelationDescriptor,
        criteria: Mapping[str, Any],
        defaults: Mapping[str, Any] | None = None,
    ) -> Any:
        """Find a related entity by *criteria*, or build an unsaved one."""
        _ensure_kind(relation, *_HAS_KINDS)
        assert relation.foreign_key is not None

        if (existing := self.find_by_criteria(parent, relation, criteria)) is not None:
            return existing

        return instantiate(
            relation.related,
            {
                **(defaults or {}),
                **criteria,
                relation.foreign_key: self._parent_key(parent, relation),
            },
        )

    def update_or_create(
        self,
        parent: Any,
        relation: RelationDescriptor,
        criteria: Mapping[str, Any],
        values: Mapping[str, Any] | None = None,
    ) -> Any:
        """Update the related entity matching *criteria* with *values*, or insert it.

        Returns:
            The entity as re-read after the write.
        """
        _ensure_kind(relation, *_HAS_KINDS)
        values = values or {}

        existing = self.find_by_criteria(parent, relation, criteria)
        if existing is None:
            self.create(parent, relation, {**criteria, **values})
            return self.find_by_criteria(parent, relation, criteria)

        if values:
            primary_key = get_primary_key_name(relation.related)
            table = get_table(
                relation.related_table, primary_key, *values, model=relation.related
            )
            statement = (
                sa.update(table)
                .where(column_of(table, primary_key) == get_field(existing, primary_key))
                .values(_values(table, values))
            )
            logger.debug("Updating %s: %s", relation.related_table, sorted(values))
            self.executor.execute(statement)

        return self.find_by_criteria(parent, relation, criteria)

    def delete(
        self,
        parent: Any,
        relation: RelationDescriptor,
        constraint: Constraint | None = None,
    ) -> int:
        """Delete the related rows of *parent*.

        With a *constraint*, the ids of the matching related rows are selected
        first (the constraint narrows that SELECT) and only those are deleted.

        Returns:
            Number of rows deleted.
        """
        _ensure_kind(relation, *_HAS_KINDS)
        assert relation.foreign_key is not None

        primary_key = get_primary_key_name(relation.related)
        table = get_table(
            relation.related_table, primary_key, relation.foreign_key, model=relation.related
        )
        owned = column_of(table, relation.foreign_key) == self._parent_key(parent, relation)
        if constraint is None:
            logger.debug("Deleting %s owned by %r", relation.related_table, parent)
            return self.executor.execute(sa.delete(table).where(owned))

        id_column = column_of(table, primary_key)
        ids = self.executor.query(constraint(sa.select(id_column).where(owned)), scalar)
        if not ids:
            return 0

        logger.debug("Deleting %d row(s) from %s", len(ids), relation.related_table)
        return self.executor.execute(sa.delete(table).where(id_column.in_(ids)))

    def force_delete(
        self,
        parent: Any,
        relation: RelationDescriptor,
        constraint: Constraint | None = None,
    ) -> int:
        """Hard-delete entry point for the related rows of *parent*; see :meth:`delete`."""
        return self.delete(parent, relation, constraint)

    def _pivot(self, relation: RelationDescriptor, *columns: str) -> sa.FromClause:
        assert relation.pivot_table and relation.foreign_pivot_key and relation.related_pivot_key
        return get_table(
            relation.pivot_table,
            relation.foreign_pivot_key,
            relation.related_pivot_key,
            *columns,
            model=relation.owner,
        )

    def _check_pivot_columns(
        self, relation: RelationDescriptor, attributes: Mapping[str, Any]
    ) -> None:
        if not relation.pivot_columns:
            return
        if unknown := sorted(set(attributes) - set(relation.pivot_columns)):
            raise ConfigurationError(
                f"{relation.pivot_table} has no pivot column(s) {', '.join(unknown)}; "
                f"declared: {', '.join(relation.pivot_columns)}"
            )

    def attach(
        self,
        parent: Any,
        relation: RelationDescriptor,
        related_id: Hashable,
        pivot_attributes: Mapping[str, Any] | None = None,
    ) -> int:
        """Insert one pivot row linking *parent* to *related_id*.

        ``created_at``/``updated_at`` are set when the relation keeps pivot
        timestamps.
        """
        _ensure_kind(relation, RelationKind.BELONGS_TO_MANY)
        assert relation.foreign_pivot_key and relation.related_pivot_key

        attributes = dict(pivot_attributes or {})
        self._check_pivot_columns(relation, attributes)
        if relation.pivot_timestamps:
            now = _now()
            attributes.setdefault(PIVOT_CREATED_AT, now)
            attributes.setdefault(PIVOT_UPDATED_AT, now)

        values = {
            relation.foreign_pivot_key: self._parent_key(parent, relation),
            relation.related_pivot_key: related_id,
            **attributes,
        }
        pivot = self._pivot(relation, *attributes)
        logger.debug("Attaching %s %r", relation.pivot_table, related_id)
        return self.executor.execute(sa.insert(pivot).values(_values(pivot, values)))

    def detach(
        self,
        parent: Any,
        relation: RelationDescriptor,
        related_id: Hashable | None = None,
    ) -> int:
        """Delete the pivot row for *related_id*, or every pivot row of *parent* when ``None``."""
        _ensure_kind(relation, RelationKind.BELONGS_TO_MANY)
        assert relation.foreign_pivot_key and relation.related_pivot_key

        pivot = self._pivot(relation)
        statement = sa.delete(pivot).where(
            column_of(pivot, relation.foreign_pivot_key) == self._parent_key(parent, relation)
        )
        if related_id is not None:
            statement = statement.where(column_of(pivot, relation.related_pivot_key) == related_id)

        logger.debug(
            "Detaching %s %r", relation.pivot_table, "all" if related_id is None else related_id
        )
        return self.executor.execute(statement)

    def _current_attachments(self, parent: Any, relation: RelationDescriptor) -> list[Hashable]:
        assert relation.foreign_pivot_key and relation.related_pivot_key
        pivot = self._pivot(relation)
        statement = sa.select(column_of(pivot, relation.related_pivot_key)).where(
            column_of(pivot, relation.foreign_pivot_key) == self._parent_key(parent, relation)
        )
        return list(dict.fromkeys(self.executor.query(statement, scalar)))

    def sync(
        self, parent: Any, relation: RelationDescriptor, related_ids: Iterable[Hashable]
    ) -> SyncResult:
        """Make the attached ids of *parent* exactly *related_ids*.

        The current attachments are read fresh; ids absent from
        *related_ids* are detached first, then new ids attached.  Running it
        twice with the same ids changes nothing the second time.
        """
        _ensure_kind(relation, RelationKind.BELONGS_TO_MANY)

        current = self._current_attachments(parent, relation)
        desired = list(dict.fromkeys(related_ids))
        to_detach = [related_id for related_id in current if related_id not in desired]
        to_attach = [related_id for related_id in desired if related_id not in current]

        detached = sum(self.detach(parent, relation, related_id) for related_id in to_detach)
        attached = sum(self.attach(parent, relation, related_id) for related_id in to_attach)
        return SyncResult(attached=attached, detached=detached)

    def sync_without_detaching(
        self, parent: Any, relation: RelationDescriptor, related_ids: Iterable[Hashable]
    ) -> int:
        """Attach the ids of *related_ids* not yet attached; never detach."""
        _ensure_kind(relation, RelationKind.BELONGS_TO_MANY)

        current = self._current_attachments(parent, relation)
        return sum(
            self.attach(parent, relation, related_id)
            for related_id in dict.fromkeys(related_ids)
            if related_id not in current
        )

    def toggle(
        self, parent: Any, relation: RelationDescriptor, related_ids: Iterable[Hashable]
    ) -> ToggleResult:
        """Detach each of *related_ids* that is attached and attach the others."""
        _ensure_kind(relation, RelationKind.BELONGS_TO_MANY)

        current = self._current_attachments(parent, relation)
        attached: list[Hashable] = []
        detached: list[Hashable] = []
        for related_id in dict.fromkeys(related_ids):
            if related_id in current:
                self.detach(parent, relation, related_id)
                detached.append(related_id)
            else:
                self.attach(parent, relation, related_id)
                attached.append(related_id)

        return ToggleResult(attached=tuple(attached), detached=tuple(detached))

    def update_existing_pivot(
        self,
        parent: Any,
        relation: RelationDescriptor,
        related_id: Hashable,
        attributes: Mapping[str, Any],
    ) -> int:
        """Update the pivot row linking *parent* and *related_id*."""
        _ensure_kind(relation, RelationKind.BELONGS_TO_MANY)
        assert relation.foreign_pivot_key and relation.related_pivot_key

        attributes = dict(attributes)
        self._check_pivot_columns(relation, attributes)
        if relation.pivot_timestamps:
            attributes[PIVOT_UPDATED_AT] = _now()
        if not attributes:
            return 0

        pivot = self._pivot(relation, *attributes)
        statement = (
            sa.update(pivot)
            .where(
                column_of(pivot, relation.foreign_pivot_key) == self._parent_key(parent, relation),
                column_of(pivot, relation.related_pivot_key) == related_id,
            )
            .values(_values(pivot, attributes))
        )
        logger.debug("Updating %s %r: %s", relation.pivot_table, related_id, sorted(attributes))
        return self.executor.execute(statement)

    def touch_timestamps(
        self,
        table_name: str,
        key_column: str,
        key_value: Any,
        columns: Sequence[str],
        *,
        model: type[Any] | None = None,
    ) -> int:
        """Set every column of *columns* to now on the row where *key_column* = *key_value*."""
        if not columns:
            return 0

        table = get_table(table_name, key_column, *columns, model=model)
        now = _now()
        statement = (
            sa.update(table)
            .where(column_of(table, key_column) == key_value)
            .values(_values(table, dict.fromkeys(columns, now)))
        )
        logger.debug("Touching %s %s", table_name, ", ".join(columns))
        return self.executor.execute(statement)
