from __future__ import annotations

import logging
from collections import deque
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, replace
from functools import lru_cache
from typing import Any, TypeAlias

import sqlalchemy as sa

from .datastructures import frozendict
from .node import Node
from .relation import RelationDescriptor


logger = logging.getLogger(__name__)

Constraint: TypeAlias = Callable[[sa.Select[Any]], sa.Select[Any]]


@dataclass(slots=True, frozen=True)
class LoadRequest:
    """One node of an eager-load request tree.

    ``constraint`` narrows the related-entity query of this node only;
    ``nested`` requests are resolved against the entities this node loads.

    Example::

        request = LoadRequest.of(
            User.posts,
            LoadRequest.of(Post.comments),
            constraint=add_conditions(sa.column("published").is_(True)),
        )
    """

    descriptor: RelationDescriptor
    constraint: Constraint | None = None
    nested: tuple[LoadRequest, ...] = ()

    @classmethod
    def of(
        cls,
        descriptor: RelationDescriptor,
        *nested: LoadRequest | RelationDescriptor,
        constraint: Constraint | None = None,
    ) -> LoadRequest:
        return cls(descriptor, constraint, tuple(_as_request(item) for item in nested))

    def with_(self, *nested: LoadRequest | RelationDescriptor) -> LoadRequest:
        """Return a copy with *nested* appended to the nested requests."""
        return replace(self, nested=(*self.nested, *(_as_request(item) for item in nested)))

    def where(self, constraint: Constraint) -> LoadRequest:
        """Return a copy carrying *constraint*."""
        return replace(self, constraint=constraint)

    def __repr__(self) -> str:
        parts = [f"{self.descriptor.owner.__name__}.{self.descriptor.field_name}"]
        if self.constraint is not None:
            parts.append("constrained")
        if self.nested:
            parts.append(f"nested={list(self.nested)!r}")
        return f"<{type(self).__name__} {' '.join(parts)}>"


def _as_request(item: LoadRequest | RelationDescriptor) -> LoadRequest:
    return item if isinstance(item, LoadRequest) else LoadRequest(item)


@lru_cache(maxsize=2048)
def _bfs_search(start: type[Any], end: str, node: Node) -> Sequence[RelationDescriptor]:
    """Perform breadth-first search to find a relation path.

    Searches for a path of descriptors from a starting entity type to a
    target field name using breadth-first traversal of the relation graph.

    Args:
        start: Starting entity type.
        end: Target relation field name to find.
        node: Node instance containing the descriptors.

    Returns:
        Sequence of descriptors forming the path to the target, or ``()``.
    """
    queue: deque[tuple[type[Any], list[RelationDescriptor]]] = deque([(start, [])])
    seen: set[type[Any]] = set()

    while queue:
        current, path = queue.popleft()
        if current in seen:
            continue
        seen.add(current)

        for descriptor in node.get(current):
            new_path = [*path, descriptor]
            if descriptor.field_name == end:
                return tuple(new_path)

            queue.append((descriptor.related, new_path))

    return ()


@lru_cache(maxsize=1028)
def _resolve_dotted_path(
    model: type[Any], dotted: str, node: Node
) -> Sequence[RelationDescriptor]:
    """Resolve a dot-notation path like 'posts.comments.reactions' into descriptors.

    Each segment must be a relation field of the current entity type.
    Falls back to _bfs_search if the path has no dots.
    """
    parts = dotted.split(".")
    if len(parts) == 1:
        return _bfs_search(model, dotted, node)

    result: list[RelationDescriptor] = []
    current: type[Any] = model
    for segment in parts:
        descriptor = node.find(current, segment)
        if descriptor is None:
            raise ValueError(
                f"No relation '{segment}' on {current.__name__} "
                f"(resolving '{dotted}' from {model.__name__})"
            )
        result.append(descriptor)
        current = descriptor.related

    return tuple(result)


@dataclass(slots=True)
class _Branch:
    path: str
    children: dict[RelationDescriptor, _Branch]


def _to_requests(
    children: Mapping[RelationDescriptor, _Branch],
    conditions: Mapping[str, Constraint],
) -> tuple[LoadRequest, ...]:
    return tuple(
        LoadRequest(
            descriptor,
            conditions.get(branch.path) or conditions.get(descriptor.field_name),
            _to_requests(branch.children, conditions),
        )
        for descriptor, branch in children.items()
    )


@lru_cache(maxsize=1028)
def _build_requests(
    model: type[Any],
    loads: tuple[str, ...],
    node: Node,
    conditions: frozendict[str, Constraint],
) -> tuple[LoadRequest, ...]:
    root: dict[RelationDescriptor, _Branch] = {}
    for load in loads:
        path = _resolve_dotted_path(model, load, node)
        if not path:
            logger.debug("No relation %r reachable from %s, skipping", load, model.__name__)
            continue

        level = root
        segments: list[str] = []
        for descriptor in path:
            segments.append(descriptor.field_name)
            branch = level.setdefault(descriptor, _Branch(".".join(segments), {}))
            level = branch.children

    return _to_requests(root, conditions)


def build_requests(
    model: type[Any],
    loads: Sequence[str],
    *,
    node: Node | None = None,
    conditions: Mapping[str, Constraint] | None = None,
) -> tuple[LoadRequest, ...]:
    """Turn relation names and dotted paths into a merged request tree.

    Paths sharing a prefix share the request nodes of that prefix, so
    ``("posts", "posts.comments", "posts.author")`` loads ``posts`` once with
    two nested requests.  A plain name that is not a relation of *model* is
    searched breadth-first through the relation graph; one that cannot be
    found anywhere is skipped.

    *conditions* maps a full dotted path (``"posts.comments"``) or a bare
    relation name (``"comments"``) to a constraint for that node; the full
    path wins when both are present.

    Raises:
        ValueError: If a segment of a dotted path is not a relation.
        RuntimeError: If no *node* is given and the global Node is not initialized.
    """
    return _build_requests(
        model,
        tuple(loads),
        node if node is not None else Node(),
        frozendict(conditions or {}),
    )
