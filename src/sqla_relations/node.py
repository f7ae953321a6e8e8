from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Mapping, Sequence
from typing import Any, ClassVar, TypeAlias, final

from sqlalchemy import orm
from sqlalchemy.sql import operators
from sqlalchemy.sql.elements import BinaryExpression

from .datastructures import frozendict
from .relation import RelationDescriptor


logger = logging.getLogger(__name__)

NodeMapping: TypeAlias = Mapping[type[Any], Sequence[RelationDescriptor]]


@final
class Node:
    """Singleton registry of relation descriptors per owner entity type.

    The registry is the single source of truth the loader uses to turn
    relation names and dotted paths (``"posts.comments"``) into descriptors.
    Initialize it once at startup with :func:`init_node`.
    """

    __instance: ClassVar[Node | None] = None
    _node: NodeMapping

    def __new__(cls, node: NodeMapping | None = None) -> Node:
        if cls.__instance is None:
            instance = super().__new__(cls)
            if node is not None:
                instance.set_node(node)

            cls.__instance = instance

        if not getattr(cls.__instance, "_node", None):
            raise RuntimeError("Node is not initialized or empty")

        return cls.__instance

    def get(self, model: type[Any]) -> Sequence[RelationDescriptor]:
        """Get descriptors owned by *model*, returning empty sequence if not found."""
        return self.node.get(model, ())

    def find(self, model: type[Any], field_name: str) -> RelationDescriptor | None:
        """Return the descriptor of *model* populating *field_name*, if any."""
        return next((d for d in self.get(model) if d.field_name == field_name), None)

    def __getitem__(self, model: type[Any]) -> Sequence[RelationDescriptor]:
        """Look up descriptors for *model*, raising ``KeyError`` if not found."""
        return self.node[model]

    @property
    def node(self) -> NodeMapping:
        """The underlying model-to-descriptors mapping (read-only)."""
        return self._node

    def set_node(self, node: NodeMapping) -> None:
        self._node = node

    @classmethod
    def reset(cls) -> None:
        """Destroy the singleton, allowing re-initialization (primarily for tests)."""
        cls.__instance = None


def _is_simple_join(clause: Any) -> bool:
    return isinstance(clause, BinaryExpression) and clause.operator is operators.eq


def _descriptor_from(
    relationship: orm.RelationshipProperty[Any],
) -> RelationDescriptor | None:
    if not _is_simple_join(relationship.primaryjoin):
        return None
    if relationship.secondary is not None and not _is_simple_join(relationship.secondaryjoin):
        return None

    owner = relationship.parent.class_
    related = relationship.mapper.class_
    name = relationship.key

    if relationship.secondary is not None:
        owner_pairs = relationship.synchronize_pairs
        related_pairs = relationship.secondary_synchronize_pairs or ()
        if len(owner_pairs) != 1 or len(related_pairs) != 1:
            return None

        (local, foreign_pivot), (related_col, related_pivot) = owner_pairs[0], related_pairs[0]
        return RelationDescriptor.belongs_to_many(
            owner,
            related,
            name,
            pivot_table=relationship.secondary.name,  # type: ignore[attr-defined]
            foreign_pivot_key=foreign_pivot.name,
            related_pivot_key=related_pivot.name,
            local_key=local.name,
            related_key=related_col.name,
        )

    pairs = relationship.local_remote_pairs or ()
    if len(pairs) != 1:
        return None

    local, remote = pairs[0]
    match relationship.direction:
        case orm.RelationshipDirection.MANYTOONE:
            return RelationDescriptor.belongs_to(
                owner, related, name, foreign_key=local.name, related_key=remote.name
            )
        case orm.RelationshipDirection.ONETOMANY if relationship.uselist:
            return RelationDescriptor.has_many(
                owner, related, name, foreign_key=remote.name, local_key=local.name
            )
        case orm.RelationshipDirection.ONETOMANY:
            return RelationDescriptor.has_one(
                owner, related, name, foreign_key=remote.name, local_key=local.name
            )
        case _:
            return None


def get_node(base: type[orm.DeclarativeBase]) -> NodeMapping:
    """Derive relation descriptors from a SQLAlchemy declarative base.

    Every mapper in the registry of *base* contributes one descriptor per
    relationship: many-to-one becomes ``BELONGS_TO``, one-to-many becomes
    ``HAS_MANY`` (or ``HAS_ONE`` with ``uselist=False``) and a relationship
    with a ``secondary`` table becomes ``BELONGS_TO_MANY``.  Relationships
    joined on more than one column pair, or with extra join criteria, are
    skipped.

    Args:
        base: SQLAlchemy declarative base class.

    Returns:
        Frozen dictionary mapping model classes to their descriptors.

    Raises:
        AssertionError: If base is not a subclass of orm.DeclarativeBase.
    """
    assert orm.DeclarativeBase in getattr(base, "__bases__", ()), (
        "base must be a subclass of orm.DeclarativeBase"
    )

    base.registry.configure()

    result: dict[type[Any], tuple[RelationDescriptor, ...]] = {}
    for mapper in base.registry.mappers:
        descriptors: list[RelationDescriptor] = []
        for relationship in mapper.relationships.values():
            descriptor = _descriptor_from(relationship)
            if descriptor is None:
                logger.debug(
                    "Skipping relationship %s.%s: composite or unsupported join",
                    mapper.class_.__name__,
                    relationship.key,
                )
                continue
            descriptors.append(descriptor)
        result[mapper.class_] = tuple(descriptors)

    return frozendict(result)


def build_node(*descriptors: RelationDescriptor) -> NodeMapping:
    """Group hand-written *descriptors* by owner type.

    Example:
        >>> init_node(build_node(User.posts, Post.author, User.roles))
    """
    grouped: defaultdict[type[Any], list[RelationDescriptor]] = defaultdict(list)
    for descriptor in descriptors:
        grouped[descriptor.owner].append(descriptor)

    return frozendict({owner: tuple(items) for owner, items in grouped.items()})


def init_node(node: NodeMapping) -> None:
    """Initialize the global Node singleton with descriptor mappings.

    It should be called once during application startup to set up the
    relation graph.

    Args:
        node: Mapping from entity types to their descriptors.

    Example:
        >>> from myapp.models import Base
        >>> init_node(get_node(Base))
    """
    Node(node)
