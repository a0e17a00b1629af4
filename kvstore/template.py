"""
KeyValueTemplate - the top-level key-value operations facade.

The template composes one KeyValueAdapter (which carries its query engine)
with the mapping collaborators, an event sink and an exception translator:
- insert/update/delete/find/count per entity type
- id generation for entities inserted without one
- duplicate-key enforcement on insert
- before/after lifecycle events around every operation
- type narrowing of results (subclasses pass, foreign types are dropped)
- execute(callback) escape hatch with exception translation

Invariants:
    - insert never overwrites: an existing id aborts before any write
    - update is an unconditional put; the after-update event carries the
      replaced value (best effort under concurrent writers to the same id)
    - Event publishing never fails the data operation
    - Nothing is rolled back: a failure after put() leaves the write in place

Example:
    >>> async with KeyValueTemplate(MapKeyValueAdapter()) as template:
    ...     await template.insert(Person(id="1", firstname="bob", age=30))
    ...     bob = await template.find_by_id("1", Person)
    ...     adults = [p async for p in template.find(KeyValueQuery("age > 20"), Person)]
"""

from __future__ import annotations

import inspect
from typing import (
    TYPE_CHECKING,
    Any,
    AsyncIterator,
    Awaitable,
    Callable,
    Collection,
    Dict,
    FrozenSet,
    Hashable,
    Optional,
    Type,
    TypeVar,
    Union,
)
import logging

from .adapter.base import KeyValueAdapter
from .errors import (
    DuplicateKeyError,
    ExceptionTranslator,
    InvalidUsageError,
    KeyValueExceptionTranslator,
    ResultCardinalityError,
)
from .events import EventKind, EventPublisher, KeyValueEvent, get_event_bus
from .mapping import (
    AttributeIdentifierAccessor,
    DefaultKeyspaceResolver,
    IdentifierAccessor,
    IdentifierGenerator,
    KeyspaceResolver,
    UuidIdentifierGenerator,
)
from .query.base import KeyValueQuery

if TYPE_CHECKING:
    from .config import KeyValueConfig

logger = logging.getLogger(__name__)

T = TypeVar("T")

Callback = Callable[[KeyValueAdapter], Union[Awaitable[Any], AsyncIterator[Any], Any]]


async def _close(iterator: AsyncIterator[Any]) -> None:
    aclose = getattr(iterator, "aclose", None)
    if aclose is not None:
        await aclose()


async def single_or_empty(iterator: AsyncIterator[T], description: str = "operation") -> Optional[T]:
    """Return the only value of iterator, or None when it is empty.

    Raises:
        ResultCardinalityError: If iterator produces more than one value
    """
    try:
        values = []
        async for value in iterator:
            values.append(value)
            if len(values) > 1:
                raise ResultCardinalityError(
                    f"{description} returned multiple values",
                    expected="at most one",
                    actual=len(values),
                )
        return values[0] if values else None
    finally:
        await _close(iterator)


async def single(iterator: AsyncIterator[T], description: str = "operation") -> T:
    """Return the only value of iterator.

    Raises:
        ResultCardinalityError: If iterator is empty or produces more than
            one value
    """
    try:
        values = []
        async for value in iterator:
            values.append(value)
            if len(values) > 1:
                raise ResultCardinalityError(
                    f"{description} returned multiple values",
                    expected="exactly one",
                    actual=len(values),
                )
        if not values:
            raise ResultCardinalityError(
                f"{description} returned no value", expected="exactly one", actual=0
            )
        return values[0]
    finally:
        await _close(iterator)


def _type_check(required: Type[Any], candidate: Any) -> bool:
    return candidate is None or isinstance(candidate, required)


class KeyValueTemplate:
    """Key-value operations over a pluggable adapter.

    Attributes:
        adapter: The storage adapter all operations run against
        keyspace_resolver: Entity type -> keyspace
        identifier_accessor: Reads and assigns entity ids
        identifier_generator: Creates ids for entities without one

    Event publishing:
        Events go to event_publisher (the process-wide EventBus by default).
        event_kinds limits which kinds are published; an empty or missing
        allow-list publishes every kind. publish_events=False disables
        publishing entirely.
    """

    def __init__(
        self,
        adapter: KeyValueAdapter,
        keyspace_resolver: Optional[KeyspaceResolver] = None,
        identifier_accessor: Optional[IdentifierAccessor] = None,
        identifier_generator: Optional[IdentifierGenerator] = None,
        event_publisher: Optional[EventPublisher] = None,
        exception_translator: Optional[ExceptionTranslator] = None,
        event_kinds: Optional[Collection[EventKind]] = None,
        publish_events: bool = True,
    ) -> None:
        if adapter is None:
            raise InvalidUsageError("Adapter must not be None")

        self.adapter = adapter
        self.keyspace_resolver = keyspace_resolver or DefaultKeyspaceResolver()
        self.identifier_accessor = identifier_accessor or AttributeIdentifierAccessor()
        self.identifier_generator = identifier_generator or UuidIdentifierGenerator()
        self.exception_translator = exception_translator or KeyValueExceptionTranslator()
        self.event_publisher = event_publisher if event_publisher is not None else get_event_bus()
        self.publish_events = publish_events
        self.event_kinds: FrozenSet[EventKind] = frozenset(event_kinds or ())

    @classmethod
    def from_config(cls, config: "KeyValueConfig", **collaborators: Any) -> KeyValueTemplate:
        """Wire an adapter and template from configuration.

        Args:
            config: kvstore configuration
            **collaborators: Passed through to the constructor; explicit
                publish_events or event_kinds override the configured values
        """
        from .adapter.base import create_adapter

        options: Dict[str, Any] = {
            "publish_events": config.events.publish_events,
            "event_kinds": config.events.event_kinds,
        }
        options.update(collaborators)
        return cls(create_adapter(config.adapter), **options)

    async def __aenter__(self) -> KeyValueTemplate:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.dispose()

    async def dispose(self) -> None:
        """Dispose the adapter (clears the in-memory adapter)."""
        await self.adapter.dispose()

    # Insert

    async def insert(self, entity: T) -> T:
        """Insert entity, generating and assigning an id if it has none.

        Raises:
            InvalidUsageError: If the entity type has no identifier attribute
            DuplicateKeyError: If the id already exists in the keyspace
        """
        if entity is None:
            raise InvalidUsageError("Object to be inserted must not be None")

        entity_type = entity.__class__
        if not self.identifier_accessor.has_identifier(entity_type):
            raise InvalidUsageError(f"Cannot determine id for type {entity_type.__qualname__}")

        id = self.identifier_accessor.get_identifier(entity)
        if id is None:
            id = self.identifier_generator.generate_id(entity)
            self.identifier_accessor.set_identifier(entity, id)

        return await self.insert_with_id(id, entity)

    async def insert_with_id(self, id: Hashable, entity: T) -> T:
        """Insert entity under id.

        Returns:
            The entity, unchanged

        Raises:
            DuplicateKeyError: If id already exists; nothing is written
        """
        if id is None:
            raise InvalidUsageError("Id for object to be inserted must not be None")
        if entity is None:
            raise InvalidUsageError("Object to be inserted must not be None")

        entity_type = entity.__class__
        keyspace = self.resolve_keyspace(entity_type)

        self._publish(KeyValueEvent(EventKind.BEFORE_INSERT, keyspace, entity_type, id, entity))

        async def _insert(adapter: KeyValueAdapter) -> None:
            if await adapter.contains(id, keyspace):
                raise DuplicateKeyError(
                    f"Cannot insert existing object with id {id}. Please use update.",
                    id=id,
                    keyspace=keyspace,
                )
            await adapter.put(id, entity, keyspace)

        await self.execute_single_or_empty(_insert)

        self._publish(KeyValueEvent(EventKind.AFTER_INSERT, keyspace, entity_type, id, entity))
        return entity

    # Update

    async def update(self, entity: T) -> T:
        """Update entity under its own id.

        Raises:
            InvalidUsageError: If the entity type exposes no identifier
        """
        if entity is None:
            raise InvalidUsageError("Object to be updated must not be None")

        entity_type = entity.__class__
        if not self.identifier_accessor.has_identifier(entity_type):
            raise InvalidUsageError(f"Cannot determine id for type {entity_type.__qualname__}")

        id = self.identifier_accessor.get_identifier(entity)
        if id is None:
            raise InvalidUsageError(
                f"Required identifier not set on {entity_type.__qualname__}"
            )
        return await self.update_with_id(id, entity)

    async def update_with_id(self, id: Hashable, entity: T) -> T:
        """Store entity under id, creating or replacing it."""
        if id is None:
            raise InvalidUsageError("Id for object to be updated must not be None")
        if entity is None:
            raise InvalidUsageError("Object to be updated must not be None")

        entity_type = entity.__class__
        keyspace = self.resolve_keyspace(entity_type)

        self._publish(KeyValueEvent(EventKind.BEFORE_UPDATE, keyspace, entity_type, id, entity))

        previous = await self.execute_single_or_empty(
            lambda adapter: adapter.put(id, entity, keyspace)
        )

        self._publish(
            KeyValueEvent(EventKind.AFTER_UPDATE, keyspace, entity_type, id, entity, previous)
        )
        return entity

    # Find

    async def find_all(self, entity_type: Type[T], sort: Any = None) -> AsyncIterator[T]:
        """Enumerate every entity of entity_type (subclasses included).

        Without a sort, values of the keyspace that are not entity_type
        instances are skipped. With a sort, the keyspace is read through the
        query engine, whose typed execution is strict: a foreign value in the
        keyspace raises TypeMismatchError instead of being skipped.

        Args:
            entity_type: Type to fetch
            sort: Optional Sort (or comparator) to order the results
        """
        if entity_type is None:
            raise InvalidUsageError("Type to fetch must not be None")

        if sort is not None:
            sorted_values = self.find(KeyValueQuery(sort=sort), entity_type)
            try:
                async for value in sorted_values:
                    yield value
            finally:
                await _close(sorted_values)
            return

        keyspace = self.resolve_keyspace(entity_type)
        values = self.execute(lambda adapter: adapter.get_all_of(keyspace))
        try:
            async for value in values:
                if value is not None and _type_check(entity_type, value):
                    yield value
        finally:
            await _close(values)

    async def find_by_id(self, id: Hashable, entity_type: Type[T]) -> Optional[T]:
        """Return the entity stored under id if it is an entity_type, else None."""
        if id is None:
            raise InvalidUsageError("Id for object to be found must not be None")
        if entity_type is None:
            raise InvalidUsageError("Type to fetch must not be None")

        keyspace = self.resolve_keyspace(entity_type)

        self._publish(KeyValueEvent(EventKind.BEFORE_GET, keyspace, entity_type, id))

        result = await self.execute_single_or_empty(
            lambda adapter: adapter.get(id, keyspace, entity_type)
        )
        if not _type_check(entity_type, result):
            result = None

        self._publish(KeyValueEvent(EventKind.AFTER_GET, keyspace, entity_type, id, result))
        return result

    async def find(self, query: KeyValueQuery[Any], entity_type: Type[T]) -> AsyncIterator[T]:
        """Enumerate entities of entity_type matching query."""
        if query is None:
            raise InvalidUsageError("Query must not be None")

        keyspace = self.resolve_keyspace(entity_type)
        values = self.execute(lambda adapter: adapter.find(query, keyspace, entity_type))
        try:
            async for value in values:
                if value is not None and _type_check(entity_type, value):
                    yield value
        finally:
            await _close(values)

    def find_in_range(
        self,
        offset: int,
        rows: int,
        entity_type: Type[T],
        sort: Any = None,
    ) -> AsyncIterator[T]:
        """Enumerate at most rows entities of entity_type after skipping offset."""
        return self.find(KeyValueQuery(sort=sort, offset=offset, rows=rows), entity_type)

    # Delete

    async def delete_all(self, entity_type: Type[Any]) -> None:
        """Drop every entry of the keyspace of entity_type."""
        if entity_type is None:
            raise InvalidUsageError("Type to delete must not be None")

        keyspace = self.resolve_keyspace(entity_type)

        self._publish(KeyValueEvent(EventKind.BEFORE_DROP_KEYSPACE, keyspace, entity_type))
        await self.execute_single_or_empty(lambda adapter: adapter.delete_all_of(keyspace))
        self._publish(KeyValueEvent(EventKind.AFTER_DROP_KEYSPACE, keyspace, entity_type))

    async def delete(self, entity: T) -> Optional[T]:
        """Delete entity by its own type and id.

        Raises:
            InvalidUsageError: If no identifier can be extracted
        """
        if entity is None:
            raise InvalidUsageError("Object to be deleted must not be None")

        entity_type = entity.__class__
        id = None
        if self.identifier_accessor.has_identifier(entity_type):
            id = self.identifier_accessor.get_identifier(entity)
        if id is None:
            raise InvalidUsageError(
                f"Cannot determine id of {entity_type.__qualname__} to delete"
            )
        return await self.delete_by_id(id, entity_type)

    async def delete_by_id(self, id: Hashable, entity_type: Type[T]) -> Optional[T]:
        """Delete the entry under id, returning the removed entity or None."""
        if id is None:
            raise InvalidUsageError("Id for object to be deleted must not be None")
        if entity_type is None:
            raise InvalidUsageError("Type to delete must not be None")

        keyspace = self.resolve_keyspace(entity_type)

        self._publish(KeyValueEvent(EventKind.BEFORE_DELETE, keyspace, entity_type, id))

        removed = await self.execute_single_or_empty(
            lambda adapter: adapter.delete(id, keyspace, entity_type)
        )

        self._publish(KeyValueEvent(EventKind.AFTER_DELETE, keyspace, entity_type, id, removed))
        return removed

    # Count

    async def count(self, entity_type: Type[Any]) -> int:
        """Number of entries in the keyspace of entity_type."""
        if entity_type is None:
            raise InvalidUsageError("Type for count must not be None")
        return await self.adapter.count(self.resolve_keyspace(entity_type))

    async def count_query(self, query: KeyValueQuery[Any], entity_type: Type[Any]) -> int:
        """Number of entries in the keyspace of entity_type matching query.

        Raises:
            ResultCardinalityError: If the adapter does not produce exactly
                one count
        """
        keyspace = self.resolve_keyspace(entity_type)
        return await self.execute_required(lambda adapter: adapter.count_query(query, keyspace))

    # Execute

    async def execute(self, callback: Callback) -> AsyncIterator[Any]:
        """Run callback with direct adapter access.

        The callback may return an awaitable, an async iterable or a plain
        value; results are produced as an async iterator (None produces
        nothing). Closing the iterator closes the callback's iterator too. Failures pass through the exception translator once; an
        untranslated error propagates unchanged.
        """
        if callback is None:
            raise InvalidUsageError("Callback must not be None")

        try:
            result = callback(self.adapter)
            if inspect.isawaitable(result):
                result = await result

            if hasattr(result, "__aiter__"):
                iterator = result.__aiter__()
                try:
                    async for value in iterator:
                        yield value
                finally:
                    await _close(iterator)
            elif result is not None:
                yield result
        except Exception as e:
            translated = self.exception_translator.translate(e)
            if translated is None:
                raise
            logger.debug(
                "Translated adapter failure",
                extra={"error": type(e).__name__, "translated": type(translated).__name__},
            )
            raise translated from e

    async def execute_single_or_empty(self, callback: Callback) -> Any:
        """execute(callback), requiring at most one result."""
        return await single_or_empty(self.execute(callback), f"Callback {callback!r}")

    async def execute_required(self, callback: Callback) -> Any:
        """execute(callback), requiring exactly one result."""
        return await single(self.execute(callback), f"Callback {callback!r}")

    # Helpers

    def resolve_keyspace(self, entity_type: Type[Any]) -> str:
        return self.keyspace_resolver.resolve_keyspace(entity_type)

    def _publish(self, event: KeyValueEvent) -> None:
        if not self.publish_events or self.event_publisher is None:
            return
        if self.event_kinds and event.kind not in self.event_kinds:
            return

        try:
            self.event_publisher.publish(event)
        except Exception:
            logger.warning(
                "Event publishing failed",
                exc_info=True,
                extra={"event_kind": event.kind.value, "keyspace": event.keyspace},
            )
