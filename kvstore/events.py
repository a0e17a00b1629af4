"""
Lifecycle events for KeyValueTemplate operations.

Every template operation emits a "before" event and an "after" event.
Events are best-effort notifications: they are not part of the
consistency contract and a failing listener never fails the operation
that triggered it.

This module provides:
- EventKind / EventPhase / EventOperation: event classification
- KeyValueEvent: immutable event record
- EventPublisher: sink protocol consumed by the template
- EventBus: default sink dispatching to subscribed listeners
- get_event_bus() / reset_event_bus(): process-wide bus registration

Invariants:
    - Events are immutable once created
    - publish() never raises into the caller
    - The process-wide bus is created at wiring time and torn down at
      shutdown; publishing itself holds no shared mutable state

Example:
    >>> bus = get_event_bus()
    >>> bus.subscribe(print, kinds={EventKind.AFTER_INSERT})
    >>> template = KeyValueTemplate(MapKeyValueAdapter(), event_publisher=bus)
"""

from __future__ import annotations

import asyncio
import inspect
import threading
from dataclasses import dataclass
from enum import Enum
from typing import (
    Any,
    Callable,
    Collection,
    FrozenSet,
    Hashable,
    List,
    Optional,
    Protocol,
    Set,
    Tuple,
    Type,
    runtime_checkable,
)
import logging

logger = logging.getLogger(__name__)


class EventPhase(Enum):
    BEFORE = "before"
    AFTER = "after"


class EventOperation(Enum):
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"
    GET = "get"
    DROP_KEYSPACE = "drop_keyspace"


class EventKind(Enum):
    """Combined phase and operation of an event."""

    BEFORE_INSERT = "before_insert"
    AFTER_INSERT = "after_insert"
    BEFORE_UPDATE = "before_update"
    AFTER_UPDATE = "after_update"
    BEFORE_DELETE = "before_delete"
    AFTER_DELETE = "after_delete"
    BEFORE_GET = "before_get"
    AFTER_GET = "after_get"
    BEFORE_DROP_KEYSPACE = "before_drop_keyspace"
    AFTER_DROP_KEYSPACE = "after_drop_keyspace"

    @property
    def phase(self) -> EventPhase:
        return EventPhase(self.value.split("_", 1)[0])

    @property
    def operation(self) -> EventOperation:
        return EventOperation(self.value.split("_", 1)[1])

    @classmethod
    def parse(cls, names: str) -> FrozenSet[EventKind]:
        """Parse a comma-separated list of kind values ("after_insert,...")."""
        kinds = set()
        for name in names.split(","):
            name = name.strip().lower()
            if not name:
                continue
            try:
                kinds.add(cls(name))
            except ValueError:
                valid = ", ".join(k.value for k in cls)
                raise ValueError(f"Invalid event kind '{name}'. Must be one of: {valid}")
        return frozenset(kinds)


@dataclass(frozen=True)
class KeyValueEvent:
    """A lifecycle notification around a template operation.

    Attributes:
        kind: What happened and whether before or after
        keyspace: Keyspace the operation targeted
        type: Entity type the operation was issued for
        id: Identifier, None for keyspace-wide operations
        value: Entity written, found or removed (None when absent)
        previous: Value replaced by an update, None otherwise
    """

    kind: EventKind
    keyspace: str
    type: Type[Any]
    id: Optional[Hashable] = None
    value: Any = None
    previous: Any = None

    @property
    def phase(self) -> EventPhase:
        return self.kind.phase

    @property
    def operation(self) -> EventOperation:
        return self.kind.operation

    def __str__(self) -> str:
        return f"KeyValueEvent({self.kind.value}, keyspace={self.keyspace}, id={self.id})"


@runtime_checkable
class EventPublisher(Protocol):
    """Sink for lifecycle events."""

    def publish(self, event: KeyValueEvent) -> None: ...


Listener = Callable[[KeyValueEvent], Any]


class EventBus:
    """In-process event sink dispatching to subscribed listeners.

    Listeners may be plain callables or coroutine functions. Coroutine
    listeners are scheduled as tasks on the running loop and are not
    awaited by the publisher. Listener failures are logged.

    Thread-safety:
        - subscribe/unsubscribe are guarded by a lock
        - publish iterates over a copy of the subscriptions
    """

    def __init__(self) -> None:
        self._subscriptions: List[Tuple[Listener, Optional[FrozenSet[EventKind]]]] = []
        self._tasks: Set[asyncio.Task[Any]] = set()
        self._lock = threading.Lock()

    def subscribe(
        self,
        listener: Listener,
        kinds: Optional[Collection[EventKind]] = None,
    ) -> None:
        """Subscribe listener to events of the given kinds (all when None)."""
        with self._lock:
            self._subscriptions.append((listener, frozenset(kinds) if kinds else None))

    def unsubscribe(self, listener: Listener) -> None:
        with self._lock:
            self._subscriptions = [s for s in self._subscriptions if s[0] != listener]

    @property
    def listener_count(self) -> int:
        return len(self._subscriptions)

    def publish(self, event: KeyValueEvent) -> None:
        with self._lock:
            subscriptions = list(self._subscriptions)

        for listener, kinds in subscriptions:
            if kinds is not None and event.kind not in kinds:
                continue
            try:
                result = listener(event)
                if inspect.isawaitable(result):
                    self._schedule(result, event)
            except Exception:
                logger.warning(
                    "Event listener failed",
                    exc_info=True,
                    extra={"event_kind": event.kind.value, "keyspace": event.keyspace},
                )

    def _schedule(self, awaitable: Any, event: KeyValueEvent) -> None:
        task = asyncio.ensure_future(awaitable)
        self._tasks.add(task)

        def _done(t: asyncio.Task[Any]) -> None:
            self._tasks.discard(t)
            if not t.cancelled() and t.exception() is not None:
                logger.warning(
                    "Async event listener failed",
                    exc_info=t.exception(),
                    extra={"event_kind": event.kind.value, "keyspace": event.keyspace},
                )

        task.add_done_callback(_done)

    async def drain(self) -> None:
        """Wait for scheduled coroutine listeners to finish (testing helper)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def clear(self) -> None:
        with self._lock:
            self._subscriptions.clear()
        for task in list(self._tasks):
            task.cancel()


# Global bus instance
_global_bus: Optional[EventBus] = None
_bus_lock = threading.Lock()


def get_event_bus() -> EventBus:
    """Get the process-wide event bus, creating it if needed."""
    global _global_bus
    with _bus_lock:
        if _global_bus is None:
            _global_bus = EventBus()
        return _global_bus


def reset_event_bus() -> None:
    """Tear down the process-wide event bus (shutdown and tests)."""
    global _global_bus
    with _bus_lock:
        if _global_bus is not None:
            _global_bus.clear()
        _global_bus = None
