"""
In-memory key-value adapter.

This module provides the reference KeyValueAdapter backed by a two-level
mapping: keyspace name -> (id -> value). It is used for:
- Unit tests
- Integration tests
- Local development without external dependencies

Invariants:
    - All data is lost on process exit (or dispose())
    - Keyspace creation is compare-and-create: concurrent first writers to
      the same keyspace share exactly one container
    - Each keyspace container serializes its own mutations
    - Enumeration copies the container under its lock, then yields lazily;
      writes after the copy are not reflected

How to change safely:
    - Keep interface compatible with the KeyValueAdapter protocol
    - Never hold the store lock while touching a keyspace container
"""

from __future__ import annotations

import threading
from collections import OrderedDict
from enum import Enum
from typing import (
    Any,
    AsyncIterator,
    Callable,
    Dict,
    Hashable,
    List,
    Mapping,
    MutableMapping,
    Optional,
    Tuple,
    Union,
)
import logging

from ..query.base import QueryEngine
from .base import AbstractKeyValueAdapter, require_id, require_keyspace

logger = logging.getLogger(__name__)

ContainerFactory = Callable[[], MutableMapping[Hashable, Any]]


class KeyspaceContainer(Enum):
    """Supported keyspace container types.

    HASH and ORDERED enumerate in insertion order; SORTED enumerates in id
    order (ids within a keyspace must then be mutually comparable).
    """

    HASH = "hash"
    ORDERED = "ordered"
    SORTED = "sorted"


class _Keyspace:
    """A single keyspace container guarded by its own lock."""

    __slots__ = ("entries", "lock", "sorted")

    def __init__(self, entries: MutableMapping[Hashable, Any], sorted: bool) -> None:
        self.entries = entries
        self.lock = threading.Lock()
        self.sorted = sorted

    def snapshot(self) -> List[Tuple[Hashable, Any]]:
        with self.lock:
            items = list(self.entries.items())
        if self.sorted:
            items.sort(key=lambda item: item[0])
        return items


class MapKeyValueAdapter(AbstractKeyValueAdapter):
    """In-memory implementation of KeyValueAdapter.

    Attributes:
        container: Container type used for new keyspaces

    Thread safety:
        Uses threading locks (never held across an await), so it is safe to
        share between coroutines and between event loops on other threads.

    Example:
        >>> adapter = MapKeyValueAdapter()
        >>> await adapter.put("1", Person("bob", 30), "people")
        >>> await adapter.count("people")
        1
    """

    def __init__(
        self,
        engine: Optional[QueryEngine[Any, Any]] = None,
        container: Union[KeyspaceContainer, ContainerFactory] = KeyspaceContainer.HASH,
        store: Optional[Mapping[str, Mapping[Hashable, Any]]] = None,
    ) -> None:
        """Initialize the in-memory adapter.

        Args:
            engine: Query engine, defaults to ExpressionQueryEngine
            container: Keyspace container type, or a zero-argument factory
                returning an empty MutableMapping
            store: Optional initial contents, keyspace -> {id: value}
        """
        super().__init__(engine)

        if isinstance(container, KeyspaceContainer):
            self._factory: ContainerFactory = (
                OrderedDict if container is KeyspaceContainer.ORDERED else dict
            )
            self._sorted = container is KeyspaceContainer.SORTED
        else:
            self._factory = container
            self._sorted = False
        self.container = container

        self._lock = threading.Lock()
        self._keyspaces: Dict[str, _Keyspace] = {}

        for name, entries in (store or {}).items():
            self._keyspace(name).entries.update(entries)

    def _keyspace(self, keyspace: str) -> _Keyspace:
        """Get or atomically create the container for keyspace."""
        existing = self._keyspaces.get(keyspace)
        if existing is not None:
            return existing

        with self._lock:
            existing = self._keyspaces.get(keyspace)
            if existing is None:
                existing = _Keyspace(self._factory(), self._sorted)
                self._keyspaces[keyspace] = existing
                logger.debug("Keyspace created", extra={"keyspace": keyspace})
            return existing

    def _existing_keyspace(self, keyspace: str) -> Optional[_Keyspace]:
        require_keyspace(keyspace)
        return self._keyspaces.get(keyspace)

    async def put(self, id: Hashable, value: Any, keyspace: str) -> Any:
        require_id(id, "add")
        require_keyspace(keyspace)

        space = self._keyspace(keyspace)
        with space.lock:
            previous = space.entries.get(id)
            space.entries[id] = value

        logger.debug(
            "Value stored",
            extra={"keyspace": keyspace, "id": id, "replaced": previous is not None},
        )
        return previous

    async def _get(self, id: Hashable, keyspace: str) -> Any:
        space = self._existing_keyspace(keyspace)
        if space is None:
            return None
        with space.lock:
            return space.entries.get(id)

    async def _delete(self, id: Hashable, keyspace: str) -> Any:
        space = self._existing_keyspace(keyspace)
        if space is None:
            return None
        with space.lock:
            removed = space.entries.pop(id, None)

        if removed is not None:
            logger.debug("Value removed", extra={"keyspace": keyspace, "id": id})
        return removed

    async def count(self, keyspace: str) -> int:
        space = self._existing_keyspace(keyspace)
        if space is None:
            return 0
        with space.lock:
            return len(space.entries)

    async def get_all_of(self, keyspace: str) -> AsyncIterator[Any]:
        space = self._existing_keyspace(keyspace)
        if space is None:
            return
        for _, value in space.snapshot():
            yield value

    async def entries(self, keyspace: str) -> AsyncIterator[Tuple[Hashable, Any]]:
        space = self._existing_keyspace(keyspace)
        if space is None:
            return
        for item in space.snapshot():
            yield item

    async def delete_all_of(self, keyspace: str) -> None:
        space = self._existing_keyspace(keyspace)
        if space is None:
            return
        with space.lock:
            space.entries.clear()
        logger.debug("Keyspace cleared", extra={"keyspace": keyspace})

    async def clear(self) -> None:
        with self._lock:
            self._keyspaces.clear()
        logger.debug("All keyspaces cleared")

    # Testing helpers

    def keyspaces(self) -> List[str]:
        """Names of all keyspaces created so far (testing helper)."""
        with self._lock:
            return list(self._keyspaces)

    def keyspace_count(self) -> int:
        """Number of keyspace containers (testing helper)."""
        with self._lock:
            return len(self._keyspaces)
