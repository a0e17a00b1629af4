"""
Query types and the QueryEngine base class.

This module defines the engine-independent pieces of querying:
- KeyValueQuery: criteria + sort + offset/rows, immutable
- Sort / Order: declarative ordering by property paths
- CriteriaAccessor / SortAccessor: resolve a query into engine-specific forms
- QueryEngine: resolve + execute contract against a registered adapter

Invariants:
    - A KeyValueQuery is never mutated once built; helpers return copies
    - A QueryEngine holds at most one adapter, assigned exactly once
    - offset/rows of None (or <= 0) mean "unbounded"

How to change safely:
    - New engines subclass QueryEngine and implement execute()/count()
    - Keep resolve and execute separate so accessors stay pure
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from enum import Enum
from typing import (
    TYPE_CHECKING,
    Any,
    AsyncIterator,
    Generic,
    Optional,
    Protocol,
    Tuple,
    Type,
    TypeVar,
    runtime_checkable,
)
import logging

from ..errors import (
    AdapterAlreadyRegisteredError,
    AdapterRequiredError,
    InvalidUsageError,
    TypeMismatchError,
)

if TYPE_CHECKING:
    from ..adapter.base import KeyValueAdapter

logger = logging.getLogger(__name__)

T = TypeVar("T")
CriteriaT = TypeVar("CriteriaT")
SortT = TypeVar("SortT")


class Direction(Enum):
    """Sort direction."""

    ASC = "asc"
    DESC = "desc"


class NullHandling(Enum):
    """Where None property values are placed when sorting."""

    NATIVE = "native"
    NULLS_FIRST = "nulls_first"
    NULLS_LAST = "nulls_last"


@dataclass(frozen=True)
class Order:
    """Ordering by a single (possibly dotted) property path.

    Attributes:
        property: Attribute or key path, e.g. "age" or "address.city"
        direction: Ascending or descending
        ignore_case: Compare string values case-insensitively
        null_handling: Placement of None values
    """

    property: str
    direction: Direction = Direction.ASC
    ignore_case: bool = False
    null_handling: NullHandling = NullHandling.NATIVE

    @property
    def is_ascending(self) -> bool:
        return self.direction is Direction.ASC

    def with_direction(self, direction: Direction) -> Order:
        return replace(self, direction=direction)

    def ignoring_case(self) -> Order:
        return replace(self, ignore_case=True)

    def nulls_first(self) -> Order:
        return replace(self, null_handling=NullHandling.NULLS_FIRST)

    def nulls_last(self) -> Order:
        return replace(self, null_handling=NullHandling.NULLS_LAST)


@dataclass(frozen=True)
class Sort:
    """An ordered collection of Order clauses.

    Example:
        >>> Sort.by("lastname", "firstname").descending()
        >>> Sort.by("age").and_(Sort.by("name").descending())
    """

    orders: Tuple[Order, ...] = ()

    @classmethod
    def by(cls, *properties: str) -> Sort:
        return cls(tuple(Order(p) for p in properties))

    @classmethod
    def unsorted(cls) -> Sort:
        return cls()

    @property
    def is_sorted(self) -> bool:
        return bool(self.orders)

    def ascending(self) -> Sort:
        return Sort(tuple(o.with_direction(Direction.ASC) for o in self.orders))

    def descending(self) -> Sort:
        return Sort(tuple(o.with_direction(Direction.DESC) for o in self.orders))

    def and_(self, other: Sort) -> Sort:
        return Sort(self.orders + other.orders)

    def __iter__(self):
        return iter(self.orders)

    def __bool__(self) -> bool:
        return self.is_sorted


@dataclass(frozen=True)
class KeyValueQuery(Generic[CriteriaT]):
    """A query against a single keyspace.

    Attributes:
        criteria: Engine-interpreted predicate source (e.g. an expression string)
        sort: Ordering source (a Sort, or an engine-specific comparator)
        offset: Number of leading results to skip, None for no skip
        rows: Maximum number of results, None for unbounded

    Example:
        >>> query = KeyValueQuery("age > 20").order_by(Sort.by("age")).skip(10).limit(5)
    """

    criteria: Optional[CriteriaT] = None
    sort: Any = None
    offset: Optional[int] = None
    rows: Optional[int] = None

    def __post_init__(self) -> None:
        if self.offset is not None and self.offset < 0:
            raise InvalidUsageError(f"Query offset must not be negative, got {self.offset}")
        if self.rows is not None and self.rows <= 0:
            raise InvalidUsageError(f"Query rows must be positive, got {self.rows}")

    def skip(self, offset: int) -> KeyValueQuery[CriteriaT]:
        return replace(self, offset=offset)

    def limit(self, rows: int) -> KeyValueQuery[CriteriaT]:
        return replace(self, rows=rows)

    def order_by(self, sort: Any) -> KeyValueQuery[CriteriaT]:
        return replace(self, sort=sort)


@runtime_checkable
class CriteriaAccessor(Protocol[CriteriaT]):
    """Resolves the criteria of a query into an engine-specific form."""

    def resolve(self, query: KeyValueQuery[Any]) -> Optional[CriteriaT]: ...


@runtime_checkable
class SortAccessor(Protocol[SortT]):
    """Resolves the sort of a query into an engine-specific ordering."""

    def resolve(self, query: KeyValueQuery[Any]) -> Optional[SortT]: ...


class QueryEngine(ABC, Generic[CriteriaT, SortT]):
    """Base class for query engines.

    A query engine resolves a KeyValueQuery through its (optional) criteria
    and sort accessors, then executes the resolved forms against the adapter
    it is registered with.

    Adapter registration:
        The adapter back-reference is write-once. Adapters register
        themselves on construction; registering a second adapter raises
        AdapterAlreadyRegisteredError.
    """

    def __init__(
        self,
        criteria_accessor: Optional[CriteriaAccessor[CriteriaT]] = None,
        sort_accessor: Optional[SortAccessor[SortT]] = None,
    ) -> None:
        self._criteria_accessor = criteria_accessor
        self._sort_accessor = sort_accessor
        self._adapter: Optional[KeyValueAdapter] = None

    # Adapter wiring

    @property
    def adapter(self) -> Optional[KeyValueAdapter]:
        """The registered adapter, or None."""
        return self._adapter

    @property
    def required_adapter(self) -> KeyValueAdapter:
        """The registered adapter.

        Raises:
            AdapterRequiredError: If no adapter has been registered
        """
        if self._adapter is None:
            raise AdapterRequiredError()
        return self._adapter

    def register_adapter(self, adapter: KeyValueAdapter) -> None:
        """Register the adapter this engine executes against.

        Raises:
            AdapterAlreadyRegisteredError: If an adapter is already registered
        """
        if self._adapter is not None:
            raise AdapterAlreadyRegisteredError()
        self._adapter = adapter
        logger.debug(
            "Adapter registered with query engine",
            extra={"engine": type(self).__name__, "adapter": type(adapter).__name__},
        )

    # Resolve stage

    def resolve_criteria(self, query: KeyValueQuery[Any]) -> Optional[CriteriaT]:
        if self._criteria_accessor is None:
            return None
        return self._criteria_accessor.resolve(query)

    def resolve_sort(self, query: KeyValueQuery[Any]) -> Optional[SortT]:
        if self._sort_accessor is None:
            return None
        return self._sort_accessor.resolve(query)

    def execute_query(
        self,
        query: KeyValueQuery[Any],
        keyspace: str,
        type: Optional[Type[T]] = None,
    ) -> AsyncIterator[Any]:
        """Resolve the query and execute it against keyspace.

        When type is given, every produced element must be an instance of
        it (see execute_typed).
        """
        criteria = self.resolve_criteria(query)
        sort = self.resolve_sort(query)

        if type is None:
            return self.execute(criteria, sort, query.offset, query.rows, keyspace)
        return self.execute_typed(criteria, sort, query.offset, query.rows, keyspace, type)

    async def count_query(self, query: KeyValueQuery[Any], keyspace: str) -> int:
        """Resolve the query criteria and count matches in keyspace."""
        return await self.count(self.resolve_criteria(query), keyspace)

    # Execute stage

    @abstractmethod
    def execute(
        self,
        criteria: Optional[CriteriaT],
        sort: Optional[SortT],
        offset: Optional[int],
        rows: Optional[int],
        keyspace: str,
    ) -> AsyncIterator[Any]:
        """Produce the matching values of keyspace.

        Args:
            criteria: Resolved criteria, None for no filtering
            sort: Resolved ordering, None for no ordering
            offset: Leading results to skip, None/<=0 for none
            rows: Maximum results, None/<=0 for unbounded
            keyspace: Keyspace to query

        Returns:
            Async iterator of matching values
        """
        ...

    @abstractmethod
    async def count(self, criteria: Optional[CriteriaT], keyspace: str) -> int:
        """Count values of keyspace matching criteria (offset/rows ignored)."""
        ...

    async def execute_typed(
        self,
        criteria: Optional[CriteriaT],
        sort: Optional[SortT],
        offset: Optional[int],
        rows: Optional[int],
        keyspace: str,
        type: Type[T],
    ) -> AsyncIterator[T]:
        """Execute and cast each element to type.

        Raises:
            TypeMismatchError: On the first element that is not an instance
                of type. Unlike KeyValueAdapter.get, this never filters.
        """
        values = self.execute(criteria, sort, offset, rows, keyspace)
        try:
            async for value in values:
                if not isinstance(value, type):
                    raise TypeMismatchError(
                        f"Cannot cast {value.__class__.__qualname__} to {type.__qualname__}",
                        expected_type=type,
                        actual_type=value.__class__,
                    )
                yield value
        finally:
            aclose = getattr(values, "aclose", None)
            if aclose is not None:
                await aclose()
