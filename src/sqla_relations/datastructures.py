from __future__ import annotations

import sys
from collections import defaultdict
from collections.abc import Hashable, Iterable, Iterator, Mapping
from typing import Any, Generic, TypeVar


if sys.version_info >= (3, 11):
    from typing import Self
else:
    from typing_extensions import Self


K = TypeVar("K")
V = TypeVar("V")
H = TypeVar("H", bound=Hashable)


class frozendict(Mapping[K, V]):  # noqa: N801
    """Immutable, hashable mapping.

    Relation descriptors are frozen dataclasses that are shared across every
    query and used as ``lru_cache`` keys, so their mapping-valued fields
    (``default_attributes``) and the per-path ``conditions`` handed to
    :func:`~sqla_relations.request.build_requests` are stored as
    ``frozendict`` instances.

    Example:
        >>> fd = frozendict({"status": "draft"})
        >>> fd["status"]
        'draft'
        >>> fd.copy(title="untitled")
        <frozendict {'status': 'draft', 'title': 'untitled'}>
    """

    __slots__ = ("_dict", "_hash")

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        self._dict: dict[K, V] = dict(*args, **kwargs)
        self._hash: int | None = None

    def __getitem__(self, key: K) -> V:
        return self._dict[key]

    def __contains__(self, key: Any) -> bool:
        return key in self._dict

    def copy(self, **add_or_replace: Any) -> Self:
        """Return a new frozendict with *add_or_replace* merged over this one."""
        return type(self)(self, **add_or_replace)

    def __iter__(self) -> Iterator[K]:
        return iter(self._dict)

    def __len__(self) -> int:
        return len(self._dict)

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self._dict!r}>"

    def __eq__(self, other: object) -> bool:
        if isinstance(other, frozendict):
            return self._dict == other._dict

        if isinstance(other, dict):
            return self._dict == other

        return NotImplemented

    def __hash__(self) -> int:
        # Computed lazily: values may be unhashable until the mapping is used as a key.
        if self._hash is None:
            self._hash = hash(frozenset(self._dict.items()))

        return self._hash


class multidict(Generic[H, V]):  # noqa: N801
    """Insertion-ordered key -> list-of-values grouping.

    Used to group batch query results by their association key so each owner
    can look up its matches in O(1).  Values keep the order in which they were
    added, which is the order the database returned them.
    """

    __slots__ = ("_groups",)

    def __init__(self, pairs: Iterable[tuple[H, V]] = ()) -> None:
        self._groups: defaultdict[H, list[V]] = defaultdict(list)
        for key, value in pairs:
            self.add(key, value)

    def add(self, key: H, value: V) -> None:
        self._groups[key].append(value)

    def get(self, key: H) -> list[V]:
        """Return the values stored under *key*, or an empty list."""
        return self._groups.get(key, [])

    def keys(self) -> set[H]:
        return set(self._groups)

    def values(self) -> Iterator[V]:
        for group in self._groups.values():
            yield from group

    def __contains__(self, key: object) -> bool:
        return key in self._groups

    def __len__(self) -> int:
        return len(self._groups)

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {dict(self._groups)!r}>"
