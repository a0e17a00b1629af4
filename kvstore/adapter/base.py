"""
Base protocol and helpers for key-value storage adapters.

This module defines the KeyValueAdapter protocol that all storage backends
must implement, the AbstractKeyValueAdapter base class that wires a backend
to a query engine, and the create_adapter factory.

Invariants:
    - All operations are scoped to a keyspace
    - Within a keyspace an id maps to at most one value
    - Keyspaces are created lazily and never declared
    - Absent values are returned as None, never raised

How to change safely:
    - Protocol changes require updating all implementations
    - Add new methods as optional with default implementations
    - Keep typed narrowing in get()/delete() a filter, never an error
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import (
    TYPE_CHECKING,
    Any,
    AsyncIterator,
    Hashable,
    Optional,
    Protocol,
    Tuple,
    Type,
    TypeVar,
    runtime_checkable,
)
import logging

from ..errors import InvalidUsageError
from ..query.base import KeyValueQuery, QueryEngine

if TYPE_CHECKING:
    from ..config import AdapterConfig

logger = logging.getLogger(__name__)

T = TypeVar("T")


@runtime_checkable
class KeyValueAdapter(Protocol):
    """Protocol for keyspace-partitioned storage backends.

    Scalar operations are coroutines; multi-value operations are async
    iterators consumed lazily. Closing the iterator (or cancelling the task
    consuming it) stops enumeration; it never undoes committed writes.

    Consistency contract:
        - Mutations of the same id are serialized by the backend
        - No ordering is guaranteed between distinct ids or keyspaces
        - Enumeration is "read committed at enumeration time"

    Example:
        >>> adapter = MapKeyValueAdapter()
        >>> await adapter.put("1", person, "people")
        >>> await adapter.get("1", "people")
    """

    async def put(self, id: Hashable, value: Any, keyspace: str) -> Any:
        """Store value under id, returning the previous value or None."""
        ...

    async def get(self, id: Hashable, keyspace: str, type: Optional[Type[T]] = None) -> Any:
        """Return the value under id, or None.

        When type is given, a stored value that is not an instance of type
        is reported as None.
        """
        ...

    async def contains(self, id: Hashable, keyspace: str) -> bool:
        """Whether get(id, keyspace) yields a value."""
        ...

    async def delete(self, id: Hashable, keyspace: str, type: Optional[Type[T]] = None) -> Any:
        """Remove the value under id and return it, or None."""
        ...

    async def count(self, keyspace: str) -> int:
        """Number of entries in keyspace (0 if it was never created)."""
        ...

    def get_all_of(self, keyspace: str) -> AsyncIterator[Any]:
        """Enumerate every value of keyspace."""
        ...

    def entries(self, keyspace: str) -> AsyncIterator[Tuple[Hashable, Any]]:
        """Enumerate every (id, value) pair of keyspace."""
        ...

    async def delete_all_of(self, keyspace: str) -> None:
        """Remove every entry of keyspace, leaving other keyspaces intact."""
        ...

    async def clear(self) -> None:
        """Remove every keyspace and every entry."""
        ...

    def find(
        self,
        query: KeyValueQuery[Any],
        keyspace: str,
        type: Optional[Type[T]] = None,
    ) -> AsyncIterator[Any]:
        """Enumerate values of keyspace matching query."""
        ...

    async def count_query(self, query: KeyValueQuery[Any], keyspace: str) -> int:
        """Count values of keyspace matching query."""
        ...

    async def dispose(self) -> None:
        """Release resources. Called once at shutdown."""
        ...


def require_id(id: Any, action: str) -> None:
    if id is None:
        raise InvalidUsageError(f"Cannot {action} item with None id")


def require_keyspace(keyspace: Any) -> None:
    if keyspace is None:
        raise InvalidUsageError("Keyspace must not be None")


class AbstractKeyValueAdapter(ABC):
    """Base class for adapters backed by a query engine.

    Subclasses implement the storage primitives; this class derives the
    typed get/delete, contains, find and count_query from them.

    The adapter registers itself with its query engine on construction. An
    engine already registered with another adapter cannot be reused.
    """

    def __init__(self, engine: Optional[QueryEngine[Any, Any]] = None) -> None:
        """Initialize the adapter.

        Args:
            engine: Query engine, defaults to a new ExpressionQueryEngine
        """
        if engine is None:
            from ..query.expression import ExpressionQueryEngine

            engine = ExpressionQueryEngine()

        self._engine = engine
        self._engine.register_adapter(self)
        self._disposed = False

    @property
    def query_engine(self) -> QueryEngine[Any, Any]:
        """The query engine used by find/count_query."""
        return self._engine

    # Storage primitives

    @abstractmethod
    async def put(self, id: Hashable, value: Any, keyspace: str) -> Any: ...

    @abstractmethod
    async def _get(self, id: Hashable, keyspace: str) -> Any: ...

    @abstractmethod
    async def _delete(self, id: Hashable, keyspace: str) -> Any: ...

    @abstractmethod
    async def count(self, keyspace: str) -> int: ...

    @abstractmethod
    def get_all_of(self, keyspace: str) -> AsyncIterator[Any]: ...

    @abstractmethod
    def entries(self, keyspace: str) -> AsyncIterator[Tuple[Hashable, Any]]: ...

    @abstractmethod
    async def delete_all_of(self, keyspace: str) -> None: ...

    @abstractmethod
    async def clear(self) -> None: ...

    # Derived operations

    async def get(self, id: Hashable, keyspace: str, type: Optional[Type[T]] = None) -> Any:
        require_id(id, "get")
        require_keyspace(keyspace)
        value = await self._get(id, keyspace)
        if type is not None and value is not None and not isinstance(value, type):
            return None
        return value

    async def delete(self, id: Hashable, keyspace: str, type: Optional[Type[T]] = None) -> Any:
        require_id(id, "delete")
        require_keyspace(keyspace)
        value = await self._delete(id, keyspace)
        if type is not None and value is not None and not isinstance(value, type):
            return None
        return value

    async def contains(self, id: Hashable, keyspace: str) -> bool:
        return await self.get(id, keyspace) is not None

    def find(
        self,
        query: KeyValueQuery[Any],
        keyspace: str,
        type: Optional[Type[T]] = None,
    ) -> AsyncIterator[Any]:
        require_keyspace(keyspace)
        return self._engine.execute_query(query, keyspace, type)

    async def count_query(self, query: KeyValueQuery[Any], keyspace: str) -> int:
        require_keyspace(keyspace)
        return await self._engine.count_query(query, keyspace)

    async def dispose(self) -> None:
        if self._disposed:
            return
        self._disposed = True
        await self.clear()
        logger.debug("Adapter disposed", extra={"adapter": type(self).__name__})


def create_adapter(
    config: "AdapterConfig",
    engine: Optional[QueryEngine[Any, Any]] = None,
) -> AbstractKeyValueAdapter:
    """Factory function to create an adapter from configuration.

    Args:
        config: Adapter configuration
        engine: Optional query engine (defaults per adapter)

    Returns:
        Appropriate KeyValueAdapter implementation

    Raises:
        ValueError: If the backend is not supported
    """
    from ..config import AdapterBackend
    from .memory import MapKeyValueAdapter

    if config.backend == AdapterBackend.MAP:
        return MapKeyValueAdapter(engine, container=config.keyspace_container)
    else:
        raise ValueError(f"Unsupported adapter backend: {config.backend}")
