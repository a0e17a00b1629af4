"""
Integration tests for KeyValueTemplate over the map adapter.

Tests cover:
- Insert, duplicate-key detection and id generation
- Update with previous-value events
- Find (by id, all, query, range) with type-assignability filtering
- Delete and counts
- Lifecycle events: ordering, allow-list, sink failure isolation
- execute() and the cardinality combinators
- Closing and cancelling result streams
- Wiring from configuration and disposal
"""

import asyncio
from dataclasses import dataclass
from typing import Optional

import pytest

from kvstore import KeyValueTemplate, MapKeyValueAdapter, single, single_or_empty
from kvstore.config import EventConfig, KeyValueConfig
from kvstore.errors import (
    DataRetrievalError,
    DuplicateKeyError,
    InvalidUsageError,
    ResultCardinalityError,
    TypeMismatchError,
    UncategorizedKeyValueError,
)
from kvstore.events import EventBus, EventKind, reset_event_bus
from kvstore.query import ExpressionQueryEngine, KeyValueQuery, Sort


@dataclass
class Person:
    __keyspace__ = "people"

    firstname: Optional[str]
    age: int
    id: Optional[str] = None


@dataclass
class Employee(Person):
    company: str = ""


@dataclass
class Note:
    text: str
    id: Optional[str] = None


class NoIdentifier:
    pass


class RecordingPublisher:
    """Collects published events."""

    def __init__(self):
        self.events = []

    def publish(self, event):
        self.events.append(event)

    @property
    def kinds(self):
        return [e.kind for e in self.events]


class BrokenPublisher:
    def publish(self, event):
        raise RuntimeError("sink down")


class BackendError(Exception):
    pass


async def collect(iterator):
    return [value async for value in iterator]


async def values(*items):
    for item in items:
        yield item


@pytest.fixture(autouse=True)
def reset_bus():
    reset_event_bus()
    yield
    reset_event_bus()


@pytest.fixture
def adapter():
    return MapKeyValueAdapter()


@pytest.fixture
def publisher():
    return RecordingPublisher()


@pytest.fixture
def template(adapter, publisher):
    return KeyValueTemplate(adapter, event_publisher=publisher)


class TestInsert:
    """Tests for insert operations."""

    @pytest.mark.asyncio
    async def test_insert_and_get(self, template, adapter):
        """An inserted entity is retrievable from its keyspace."""
        bob = Person("bob", 30, id="1")

        assert await template.insert(bob) is bob
        assert await adapter.get("1", "people") is bob
        assert await template.find_by_id("1", Person) is bob

    @pytest.mark.asyncio
    async def test_duplicate_insert_fails(self, template):
        """A second insert with the same id fails and keeps the original."""
        bob = Person("bob", 30, id="1")
        await template.insert(bob)

        with pytest.raises(DuplicateKeyError) as exc_info:
            await template.insert(Person("mike", 25, id="1"))

        assert exc_info.value.id == "1"
        assert exc_info.value.keyspace == "people"
        assert await template.find_by_id("1", Person) is bob

    @pytest.mark.asyncio
    async def test_duplicate_insert_emits_no_after_event(self, template, publisher):
        await template.insert_with_id("1", Note("a"))
        publisher.events.clear()

        with pytest.raises(DuplicateKeyError):
            await template.insert_with_id("1", Note("b"))

        assert publisher.kinds == [EventKind.BEFORE_INSERT]

    @pytest.mark.asyncio
    async def test_insert_generates_id(self, template):
        """Entities without an id receive a generated one."""
        note = Note("hello")

        await template.insert(note)

        assert note.id is not None
        assert await template.find_by_id(note.id, Note) is note

    @pytest.mark.asyncio
    async def test_insert_with_custom_generator(self, adapter):
        class Sequence:
            def __init__(self):
                self.next = 0

            def generate_id(self, entity):
                self.next += 1
                return f"note-{self.next}"

        template = KeyValueTemplate(adapter, identifier_generator=Sequence())

        first = await template.insert(Note("a"))
        second = await template.insert(Note("b"))

        assert (first.id, second.id) == ("note-1", "note-2")

    @pytest.mark.asyncio
    async def test_insert_without_identifier_attribute(self, template):
        """Types without an identifier cannot be inserted without an id."""
        with pytest.raises(InvalidUsageError):
            await template.insert(NoIdentifier())

        assert await template.insert_with_id("x", NoIdentifier()) is not None

    @pytest.mark.asyncio
    async def test_insert_none_rejected(self, template):
        with pytest.raises(InvalidUsageError):
            await template.insert(None)
        with pytest.raises(InvalidUsageError):
            await template.insert_with_id(None, Note("a"))

    @pytest.mark.asyncio
    async def test_concurrent_inserts_into_new_keyspace(self, template, adapter):
        """Concurrent inserts with distinct ids all land in one keyspace."""
        await asyncio.gather(
            *(template.insert(Person(f"p{i}", i, id=str(i))) for i in range(50))
        )

        assert adapter.keyspace_count() == 1
        assert await template.count(Person) == 50


class TestUpdate:
    """Tests for update operations."""

    @pytest.mark.asyncio
    async def test_update_replaces_value(self, template, publisher):
        """Update stores the new value and reports the previous one."""
        v1 = Person("bob", 30, id="1")
        v2 = Person("bob", 31, id="1")
        await template.insert(v1)

        assert await template.update(v2) is v2
        assert await template.find_by_id("1", Person) is v2

        after = [e for e in publisher.events if e.kind is EventKind.AFTER_UPDATE]
        assert len(after) == 1
        assert after[0].previous is v1
        assert after[0].value is v2

    @pytest.mark.asyncio
    async def test_update_creates_missing(self, template, publisher):
        """Update of a new id behaves as an upsert without a previous value."""
        await template.update_with_id("1", Note("a"))

        assert await template.count(Note) == 1
        assert publisher.events[-1].previous is None

    @pytest.mark.asyncio
    async def test_update_requires_identifier(self, template):
        with pytest.raises(InvalidUsageError):
            await template.update(NoIdentifier())
        with pytest.raises(InvalidUsageError):
            await template.update(Note("no id yet"))


class TestFind:
    """Tests for find operations."""

    @pytest.mark.asyncio
    async def test_find_by_id_missing(self, template):
        """A missing id is absent, not an error."""
        assert await template.find_by_id("nope", Person) is None

    @pytest.mark.asyncio
    async def test_find_by_id_foreign_type(self, template, adapter):
        """A value of an unrelated type is reported as absent."""
        await adapter.put("1", Note("stray"), "people")

        assert await template.find_by_id("1", Person) is None

    @pytest.mark.asyncio
    async def test_find_all_includes_subclasses(self, template):
        """find_all keeps instances of subclasses."""
        await template.insert(Person("bob", 30, id="1"))
        await template.insert(Employee("anna", 40, id="2", company="acme"))

        result = await collect(template.find_all(Person))

        assert [p.firstname for p in result] == ["bob", "anna"]

    @pytest.mark.asyncio
    async def test_find_all_filters_foreign_types(self, template, adapter):
        await template.insert(Person("bob", 30, id="1"))
        await adapter.put("2", Note("stray"), "people")

        result = await collect(template.find_all(Person))

        assert [p.firstname for p in result] == ["bob"]

    @pytest.mark.asyncio
    async def test_find_all_sorted(self, template):
        await template.insert(Person("bob", 30, id="1"))
        await template.insert(Person("mike", 25, id="2"))

        result = await collect(template.find_all(Person, Sort.by("age")))

        assert [p.firstname for p in result] == ["mike", "bob"]

    @pytest.mark.asyncio
    async def test_find_by_query(self, template):
        await template.insert(Person("bob", 30, id="1"))
        await template.insert(Person("mike", 25, id="2"))

        adults = await collect(template.find(KeyValueQuery("age > 20"), Person))
        bobs = await collect(template.find(KeyValueQuery("firstname == 'bob'"), Person))

        assert len(adults) == 2
        assert [p.id for p in bobs] == ["1"]
        assert await template.count_query(KeyValueQuery("firstname == 'bob'"), Person) == 1

    @pytest.mark.asyncio
    async def test_find_in_range(self, template):
        for i in range(3):
            await template.insert(Person(f"p{i}", i, id=str(i)))

        page = await collect(template.find_in_range(1, 1, Person, Sort.by("age").descending()))
        beyond = await collect(template.find_in_range(5, 5, Person))

        assert [p.firstname for p in page] == ["p1"]
        assert beyond == []

    @pytest.mark.asyncio
    async def test_find_none_type_rejected(self, template):
        with pytest.raises(InvalidUsageError):
            await template.find_by_id(None, Person)
        with pytest.raises(InvalidUsageError):
            await collect(template.find_all(None))


class TestDelete:
    """Tests for delete and count operations."""

    @pytest.mark.asyncio
    async def test_delete_missing(self, template):
        """Deleting a missing id returns None."""
        assert await template.delete_by_id("nope", Person) is None

    @pytest.mark.asyncio
    async def test_delete_existing(self, template):
        bob = Person("bob", 30, id="1")
        await template.insert(bob)

        assert await template.delete(bob) is bob
        assert await template.find_by_id("1", Person) is None

    @pytest.mark.asyncio
    async def test_delete_without_id(self, template):
        with pytest.raises(InvalidUsageError):
            await template.delete(Note("unsaved"))

    @pytest.mark.asyncio
    async def test_counts(self, template):
        """count tracks N inserts and M deletes."""
        for i in range(5):
            await template.insert(Person(f"p{i}", i, id=str(i)))
        assert await template.count(Person) == 5

        await template.delete_by_id("0", Person)
        await template.delete_by_id("1", Person)

        assert await template.count(Person) == 3

    @pytest.mark.asyncio
    async def test_delete_all(self, template, publisher):
        """delete_all drops only the keyspace of the type."""
        await template.insert(Person("bob", 30, id="1"))
        await template.insert(Note("keep", id="1"))

        await template.delete_all(Person)

        assert await template.count(Person) == 0
        assert await template.count(Note) == 1
        assert publisher.kinds[-2:] == [
            EventKind.BEFORE_DROP_KEYSPACE,
            EventKind.AFTER_DROP_KEYSPACE,
        ]


class TestEvents:
    """Tests for lifecycle event publishing."""

    @pytest.mark.asyncio
    async def test_before_and_after_order(self, template, publisher):
        """Each operation emits its before event, then its after event."""
        note = Note("a", id="1")

        await template.insert(note)
        await template.find_by_id("1", Note)
        await template.update(note)
        await template.delete(note)

        assert publisher.kinds == [
            EventKind.BEFORE_INSERT,
            EventKind.AFTER_INSERT,
            EventKind.BEFORE_GET,
            EventKind.AFTER_GET,
            EventKind.BEFORE_UPDATE,
            EventKind.AFTER_UPDATE,
            EventKind.BEFORE_DELETE,
            EventKind.AFTER_DELETE,
        ]
        assert all(e.keyspace == f"{__name__}.Note" for e in publisher.events)

    @pytest.mark.asyncio
    async def test_after_get_carries_result(self, template, publisher):
        await template.find_by_id("missing", Note)

        assert publisher.events[-1].kind is EventKind.AFTER_GET
        assert publisher.events[-1].value is None

    @pytest.mark.asyncio
    async def test_allow_list(self, adapter, publisher):
        """Only allow-listed kinds are published."""
        template = KeyValueTemplate(
            adapter,
            event_publisher=publisher,
            event_kinds={EventKind.AFTER_INSERT},
        )

        await template.insert(Note("a", id="1"))
        await template.delete_by_id("1", Note)

        assert publisher.kinds == [EventKind.AFTER_INSERT]

    @pytest.mark.asyncio
    async def test_publishing_disabled(self, adapter, publisher):
        template = KeyValueTemplate(adapter, event_publisher=publisher, publish_events=False)

        await template.insert(Note("a", id="1"))

        assert publisher.events == []

    @pytest.mark.asyncio
    async def test_failing_sink_does_not_fail_insert(self, adapter):
        """Event sink failures never fail the data operation."""
        template = KeyValueTemplate(adapter, event_publisher=BrokenPublisher())

        await template.insert(Note("a", id="1"))

        assert await template.count(Note) == 1

    @pytest.mark.asyncio
    async def test_default_publisher_is_global_bus(self, adapter):
        """Without a publisher, events go to the process-wide bus."""
        from kvstore.events import get_event_bus

        received = []
        get_event_bus().subscribe(received.append, kinds={EventKind.AFTER_INSERT})
        template = KeyValueTemplate(adapter)

        await template.insert(Note("a", id="1"))

        assert [e.id for e in received] == ["1"]

    @pytest.mark.asyncio
    async def test_event_bus_listener(self, adapter):
        bus = EventBus()
        received = []
        bus.subscribe(received.append)
        template = KeyValueTemplate(adapter, event_publisher=bus)

        await template.insert(Note("a", id="1"))

        assert len(received) == 2


class TestExecute:
    """Tests for execute() and the cardinality combinators."""

    @pytest.mark.asyncio
    async def test_execute_coroutine(self, template, adapter):
        """An awaitable result produces a single value."""
        await adapter.put("1", "value", "things")

        result = await collect(template.execute(lambda a: a.get("1", "things")))

        assert result == ["value"]

    @pytest.mark.asyncio
    async def test_execute_async_iterable(self, template, adapter):
        await adapter.put("1", "a", "things")
        await adapter.put("2", "b", "things")

        result = await collect(template.execute(lambda a: a.get_all_of("things")))

        assert result == ["a", "b"]

    @pytest.mark.asyncio
    async def test_execute_none_is_empty(self, template):
        assert await collect(template.execute(lambda a: None)) == []

    @pytest.mark.asyncio
    async def test_execute_translates_builtin_errors(self, template):
        """Built-in failures are translated into kvstore errors."""

        def failing(adapter):
            raise RuntimeError("boom")

        def missing(adapter):
            return {}["key"]

        with pytest.raises(UncategorizedKeyValueError) as exc_info:
            await collect(template.execute(failing))
        assert isinstance(exc_info.value.__cause__, RuntimeError)

        with pytest.raises(DataRetrievalError):
            await collect(template.execute(missing))

    @pytest.mark.asyncio
    async def test_execute_passes_foreign_errors(self, template):
        """Untranslated errors propagate unchanged."""

        async def failing(adapter):
            raise BackendError("driver")

        with pytest.raises(BackendError):
            await collect(template.execute(failing))

    @pytest.mark.asyncio
    async def test_custom_translator(self, adapter):
        class Translator:
            def translate(self, error):
                return DuplicateKeyError(str(error))

        template = KeyValueTemplate(adapter, exception_translator=Translator())

        def failing(adapter):
            raise BackendError("conflict")

        with pytest.raises(DuplicateKeyError):
            await template.execute_single_or_empty(failing)

    @pytest.mark.asyncio
    async def test_execute_single_or_empty(self, template):
        assert await template.execute_single_or_empty(lambda a: None) is None
        assert await template.execute_single_or_empty(lambda a: values(1)) == 1

        with pytest.raises(ResultCardinalityError):
            await template.execute_single_or_empty(lambda a: values(1, 2))

    @pytest.mark.asyncio
    async def test_execute_required(self, template):
        assert await template.execute_required(lambda a: a.count("things")) == 0

        with pytest.raises(ResultCardinalityError):
            await template.execute_required(lambda a: None)

    @pytest.mark.asyncio
    async def test_single_helpers(self):
        assert await single(values("x")) == "x"
        assert await single_or_empty(values()) is None

        with pytest.raises(ResultCardinalityError) as exc_info:
            await single(values(), "lookup")
        assert exc_info.value.actual == 0


class TestLifecycle:
    """Tests for wiring and disposal."""

    @pytest.mark.asyncio
    async def test_from_config(self):
        config = KeyValueConfig(
            events=EventConfig(publish_events=True, event_kinds=frozenset({EventKind.AFTER_GET}))
        )
        publisher = RecordingPublisher()

        template = KeyValueTemplate.from_config(config, event_publisher=publisher)
        await template.insert(Note("a", id="1"))
        await template.find_by_id("1", Note)

        assert isinstance(template.adapter, MapKeyValueAdapter)
        assert publisher.kinds == [EventKind.AFTER_GET]

    @pytest.mark.asyncio
    async def test_context_manager_disposes(self, adapter):
        """Leaving the context clears the map adapter."""
        async with KeyValueTemplate(adapter) as template:
            await template.insert(Note("a", id="1"))

        assert adapter.keyspace_count() == 0

    def test_adapter_required(self):
        with pytest.raises(InvalidUsageError):
            KeyValueTemplate(None)


class TrackingAdapter(MapKeyValueAdapter):
    """Map adapter recording how far enumerations were consumed."""

    def __init__(self, engine=None):
        super().__init__(engine)
        self.yielded = 0
        self.closed = 0

    async def get_all_of(self, keyspace):
        try:
            async for value in super().get_all_of(keyspace):
                self.yielded += 1
                yield value
        finally:
            self.closed += 1


class TrackingEngine(ExpressionQueryEngine):
    """Expression engine recording whether its result stream was closed."""

    def __init__(self):
        super().__init__()
        self.produced = 0
        self.closed = False

    async def execute(self, criteria, sort, offset, rows, keyspace):
        try:
            async for value in super().execute(criteria, sort, offset, rows, keyspace):
                self.produced += 1
                yield value
        finally:
            self.closed = True


class TestStreamControl:
    """Tests for closing and cancelling multi-value operations."""

    @pytest.mark.asyncio
    async def test_close_find_stops_engine(self):
        """Closing find() after one element closes the engine's stream."""
        engine = TrackingEngine()
        template = KeyValueTemplate(MapKeyValueAdapter(engine), publish_events=False)
        for i in range(3):
            await template.insert(Note(f"n{i}", id=str(i)))

        results = template.find(KeyValueQuery(), Note)
        first = await results.__anext__()
        await results.aclose()

        assert first.text == "n0"
        assert engine.closed
        assert engine.produced == 1

    @pytest.mark.asyncio
    async def test_close_find_all_stops_adapter(self):
        """Closing find_all() after one element stops the adapter enumeration."""
        adapter = TrackingAdapter()
        template = KeyValueTemplate(adapter, publish_events=False)
        for i in range(3):
            await template.insert(Note(f"n{i}", id=str(i)))

        results = template.find_all(Note)
        await results.__anext__()
        await results.aclose()

        assert adapter.closed == 1
        assert adapter.yielded == 1

    @pytest.mark.asyncio
    async def test_cancel_find_all_keeps_committed_writes(self):
        """Cancelling a consumer never undoes writes that already happened."""
        adapter = TrackingAdapter()
        template = KeyValueTemplate(adapter, publish_events=False)
        for i in range(3):
            await template.insert(Note(f"n{i}", id=str(i)))
        reading = asyncio.Event()

        async def consume():
            results = template.find_all(Note)
            try:
                async for _ in results:
                    reading.set()
                    await asyncio.sleep(3600)
            finally:
                await results.aclose()

        task = asyncio.create_task(consume())
        await reading.wait()
        await template.insert(Note("late", id="3"))
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task

        assert adapter.closed == 1
        assert adapter.yielded == 1
        assert await template.count(Note) == 4
        assert (await template.find_by_id("3", Note)).text == "late"

    @pytest.mark.asyncio
    async def test_sorted_find_all_is_strict(self, template, adapter):
        """With a sort, find_all reads through the strict typed engine path."""
        await template.insert(Person("bob", 30, id="1"))
        await adapter.put("2", Note("stray"), "people")

        unsorted = await collect(template.find_all(Person))

        assert [p.firstname for p in unsorted] == ["bob"]
        with pytest.raises(TypeMismatchError):
            await collect(template.find_all(Person, Sort.by("age")))


class TestFromConfigOverrides:
    """Tests for explicit arguments to from_config()."""

    @pytest.mark.asyncio
    async def test_explicit_event_settings_override_config(self):
        """publish_events/event_kinds given explicitly win over the config."""
        config = KeyValueConfig(events=EventConfig(publish_events=False))
        publisher = RecordingPublisher()

        template = KeyValueTemplate.from_config(
            config,
            event_publisher=publisher,
            publish_events=True,
            event_kinds={EventKind.AFTER_INSERT},
        )
        await template.insert(Note("a", id="1"))

        assert template.publish_events is True
        assert publisher.kinds == [EventKind.AFTER_INSERT]
