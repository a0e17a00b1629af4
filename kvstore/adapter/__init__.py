"""
Storage adapter abstraction for kvstore.

This module provides a pluggable storage backend interface supporting:
- In-memory maps (reference implementation, tests, local development)

Invariants:
    - All operations are scoped to a keyspace
    - Keyspace creation is atomic; concurrent first writers share one container
    - Enumeration is read committed at enumeration time

How to change safely:
    - New backends must implement the KeyValueAdapter protocol
    - Register new backends in create_adapter()
"""

from .base import (
    AbstractKeyValueAdapter,
    KeyValueAdapter,
    create_adapter,
)
from .memory import KeyspaceContainer, MapKeyValueAdapter

__all__ = [
    # Protocol and base
    "KeyValueAdapter",
    "AbstractKeyValueAdapter",
    # Implementations
    "MapKeyValueAdapter",
    "KeyspaceContainer",
    # Factory
    "create_adapter",
]
