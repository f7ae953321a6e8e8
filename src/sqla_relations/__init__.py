"""Batched relation loading and relation mutations for SQLAlchemy.

sqla_relations resolves the relations of already-fetched entities in
batches: one query per relation (two for pivot and through relations),
whatever the number of owners.  Describe relations with
``RelationDescriptor`` (or derive them from a declarative base with
``get_node``), initialize the ``Node`` singleton at startup, then call
``sqla_load(owners, connection, loads=(...))``.  ``RelationshipManager``
performs the write side (associate, attach, sync, toggle, ...) inside the
caller's transaction.
"""

from ._version import __version__, __version_tuple__
from .accessor import field_shape, get_field, set_field, to_column_map
from .core import EagerLoader, sqla_aload, sqla_cache_clear, sqla_cache_info, sqla_load
from .datastructures import frozendict, multidict
from .exceptions import (
    ConfigurationError,
    FieldAccessError,
    InvalidRelationKindError,
    RelationError,
    UnsupportedRelationError,
)
from .executor import EntityRowMapper, QueryExecutor, SqlExecutor
from .manager import RelationshipManager, SyncResult, ToggleResult
from .node import Node, build_node, get_node, init_node
from .relation import RelationDescriptor, RelationKind
from .request import LoadRequest, build_requests
from .tools import add_conditions, extract_keys, format_value, get_table_name, order_by


__all__ = (
    "ConfigurationError",
    "EagerLoader",
    "EntityRowMapper",
    "FieldAccessError",
    "InvalidRelationKindError",
    "LoadRequest",
    "Node",
    "QueryExecutor",
    "RelationDescriptor",
    "RelationError",
    "RelationKind",
    "RelationshipManager",
    "SqlExecutor",
    "SyncResult",
    "ToggleResult",
    "UnsupportedRelationError",
    "__version__",
    "__version_tuple__",
    "add_conditions",
    "build_node",
    "build_requests",
    "extract_keys",
    "field_shape",
    "format_value",
    "frozendict",
    "get_field",
    "get_node",
    "get_table_name",
    "init_node",
    "multidict",
    "order_by",
    "set_field",
    "sqla_aload",
    "sqla_cache_clear",
    "sqla_cache_info",
    "sqla_load",
    "to_column_map",
)
