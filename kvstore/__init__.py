"""
kvstore - Asynchronous keyspace-partitioned key-value persistence.

This package implements a key-value persistence abstraction built on:
- Keyspaces: named partitions holding all entries of one entity type
- Storage adapters: pluggable backends with keyspace-scoped CRUD
- Query engines: pluggable filter/sort/paginate over an adapter snapshot
- KeyValueTemplate: the operations facade with lifecycle events

Architecture:
    ┌──────────────────┐     ┌──────────────────┐     ┌──────────────┐
    │ KeyValueTemplate │────▶│  KeyValueAdapter │────▶│  Keyspaces   │
    │  (events, ids)   │     │  (map, ...)      │     │ (id -> value)│
    └────────┬─────────┘     └────────┬─────────┘     └──────────────┘
             │                        │
             ▼                        ▼
    ┌──────────────────┐     ┌──────────────────┐
    │    EventBus      │     │   QueryEngine    │
    │   (listeners)    │     │  (expression)    │
    └──────────────────┘     └──────────────────┘

Invariants:
    - Every operation is scoped to exactly one keyspace
    - Within a keyspace an id maps to at most one value
    - Absent values are None, never errors
    - Event publishing never fails a data operation

How to change safely:
    - New backends must implement the KeyValueAdapter protocol
    - New query languages subclass QueryEngine with their own accessors
"""

from ._version import __version__
from .adapter import AbstractKeyValueAdapter, KeyValueAdapter, MapKeyValueAdapter, create_adapter
from .config import KeyValueConfig
from .errors import (
    DuplicateKeyError,
    InvalidUsageError,
    KeyValueError,
    ResultCardinalityError,
    TypeMismatchError,
)
from .events import EventBus, EventKind, KeyValueEvent, get_event_bus, reset_event_bus
from .query import ExpressionCriteria, ExpressionQueryEngine, KeyValueQuery, QueryEngine, Sort
from .template import KeyValueTemplate, single, single_or_empty

__all__ = [
    "__version__",
    # Template
    "KeyValueTemplate",
    "single",
    "single_or_empty",
    # Adapters
    "KeyValueAdapter",
    "AbstractKeyValueAdapter",
    "MapKeyValueAdapter",
    "create_adapter",
    # Queries
    "KeyValueQuery",
    "Sort",
    "QueryEngine",
    "ExpressionQueryEngine",
    "ExpressionCriteria",
    # Events
    "EventBus",
    "EventKind",
    "KeyValueEvent",
    "get_event_bus",
    "reset_event_bus",
    # Config
    "KeyValueConfig",
    # Errors
    "KeyValueError",
    "DuplicateKeyError",
    "InvalidUsageError",
    "ResultCardinalityError",
    "TypeMismatchError",
]
