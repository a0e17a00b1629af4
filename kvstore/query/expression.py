"""
Expression based query engine.

Criteria are boolean expressions evaluated per candidate with simpleeval;
ordering is a comparator over candidates, either caller supplied or built
from a declarative Sort.

Expression semantics:
    - Bare names resolve against the candidate (attribute, or key when the
      candidate is a mapping); extra variables given on the criteria shadow
      candidate attributes
    - If a name or attribute cannot be resolved, the expression is retried
      with the candidate bound to the variable `it` ("it.age > 20")
    - A None result counts as "no match"
    - Ordering operators (<, <=, >, >=) place None below every other value,
      so "age > 20" skips candidates whose age is None
    - Each expression is parsed once; the tree is reused for every candidate

Invariants:
    - Sorting is stable: ties keep the adapter's snapshot order
    - count() never applies offset/rows
    - The snapshot is "read committed at enumeration time": concurrent
      writes that happen after the adapter copied the keyspace are not seen,
      and no transactional isolation is provided

Example:
    >>> engine = ExpressionQueryEngine()
    >>> adapter = MapKeyValueAdapter(engine)
    >>> query = KeyValueQuery("age > 20").order_by(Sort.by("age"))
    >>> [p async for p in adapter.find(query, "people")]
"""

from __future__ import annotations

import ast
import functools
import itertools
import logging
import operator
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, Dict, Iterable, Iterator, List, Optional

from simpleeval import (
    DEFAULT_OPERATORS,
    AttributeDoesNotExist,
    InvalidExpression,
    NameNotDefined,
    SimpleEval,
)

from ..errors import InvalidUsageError, QueryEvaluationError
from .base import KeyValueQuery, NullHandling, Order, QueryEngine, Sort

logger = logging.getLogger(__name__)

Comparator = Callable[[Any, Any], int]

# Variable the candidate is bound to when implicit resolution fails
CANDIDATE_VARIABLE = "it"

SAFE_FUNCTIONS: Dict[str, Callable[..., Any]] = {
    "abs": abs,
    "min": min,
    "max": max,
    "len": len,
    "str": str,
    "int": int,
    "float": float,
    "bool": bool,
}


def _nulls_low(compare: Callable[[Any, Any], bool]) -> Callable[[Any, Any], bool]:
    """Wrap an ordering operator so None orders below every other value."""

    def wrapped(left: Any, right: Any) -> bool:
        if left is None or right is None:
            return compare(left is not None, right is not None)
        return compare(left, right)

    return wrapped


OPERATORS: Dict[Any, Callable[..., Any]] = {
    **DEFAULT_OPERATORS,
    ast.Gt: _nulls_low(operator.gt),
    ast.GtE: _nulls_low(operator.ge),
    ast.Lt: _nulls_low(operator.lt),
    ast.LtE: _nulls_low(operator.le),
}


@dataclass(frozen=True)
class ExpressionCriteria:
    """A boolean expression plus the variables visible while evaluating it.

    Attributes:
        expression: Expression source, e.g. "firstname == 'bob' and age > 20"
        variables: Extra names available to the expression (query parameters)
    """

    expression: str
    variables: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.expression or not isinstance(self.expression, str):
            raise InvalidUsageError("Criteria expression must be a non-empty string")

    @functools.cached_property
    def parsed(self) -> ast.AST:
        """Expression tree, parsed once and shared by every evaluation.

        Raises:
            QueryEvaluationError: If the expression is not valid syntax
        """
        try:
            return SimpleEval.parse(self.expression)
        except SyntaxError as e:
            raise QueryEvaluationError(
                f"Invalid expression '{self.expression}': {e.msg}",
                expression=self.expression,
            ) from e


class _CandidateNames(Mapping):
    """Name lookup with the candidate as implicit subject."""

    def __init__(self, candidate: Any, variables: Dict[str, Any]) -> None:
        self._candidate = candidate
        self._variables = variables

    def __getitem__(self, name: str) -> Any:
        if name in self._variables:
            return self._variables[name]
        if name.startswith("_"):
            raise KeyError(name)

        if isinstance(self._candidate, Mapping):
            return self._candidate[name]
        try:
            return getattr(self._candidate, name)
        except AttributeError:
            raise KeyError(name) from None

    def __iter__(self) -> Iterator[str]:
        return iter(self._variables)

    def __len__(self) -> int:
        return len(self._variables)


def evaluate_criteria(criteria: ExpressionCriteria, candidate: Any) -> bool:
    """Evaluate criteria against a single candidate.

    Raises:
        QueryEvaluationError: If the expression is invalid or cannot be
            evaluated even with the candidate bound to `it`
    """
    try:
        result = _evaluate(criteria, _CandidateNames(candidate, criteria.variables))
    except (NameNotDefined, AttributeDoesNotExist):
        names = {**criteria.variables, CANDIDATE_VARIABLE: candidate}
        try:
            result = _evaluate(criteria, names)
        except InvalidExpression as e:
            raise QueryEvaluationError(
                f"Cannot evaluate '{criteria.expression}' against "
                f"{type(candidate).__qualname__}: {e}",
                expression=criteria.expression,
            ) from e
    except InvalidExpression as e:
        raise QueryEvaluationError(
            f"Invalid expression '{criteria.expression}': {e}",
            expression=criteria.expression,
        ) from e

    return False if result is None else bool(result)


def _evaluate(criteria: ExpressionCriteria, names: Mapping) -> Any:
    expression = criteria.expression
    evaluator = SimpleEval(operators=OPERATORS, functions=SAFE_FUNCTIONS, names=names)
    try:
        return evaluator.eval(expression, previously_parsed=criteria.parsed)
    except InvalidExpression:
        raise
    except (TypeError, ValueError, ZeroDivisionError, OverflowError) as e:
        raise QueryEvaluationError(
            f"Failed to evaluate expression '{expression}': {e}",
            expression=expression,
        ) from e


def read_property(candidate: Any, path: str) -> Any:
    """Read a dotted property path from candidate, None when missing."""
    value = candidate
    for part in path.split("."):
        if value is None:
            return None
        if isinstance(value, Mapping):
            value = value.get(part)
        else:
            value = getattr(value, part, None)
    return value


def _compare_order(order: Order, left: Any, right: Any) -> int:
    a = read_property(left, order.property)
    b = read_property(right, order.property)

    if a is None or b is None:
        if a is None and b is None:
            return 0
        if order.null_handling is NullHandling.NULLS_FIRST:
            return -1 if a is None else 1
        if order.null_handling is NullHandling.NULLS_LAST:
            return 1 if a is None else -1
        # native: None sorts low, then direction applies
        result = -1 if a is None else 1
    else:
        if order.ignore_case and isinstance(a, str) and isinstance(b, str):
            a, b = a.casefold(), b.casefold()
        result = (a > b) - (a < b)

    return result if order.is_ascending else -result


def sort_comparator(sort: Sort) -> Comparator:
    """Build a comparator applying each Order of sort in turn."""
    orders = tuple(sort)

    def compare(left: Any, right: Any) -> int:
        for order in orders:
            result = _compare_order(order, left, right)
            if result:
                return result
        return 0

    return compare


class ExpressionCriteriaAccessor:
    """Resolves query criteria into ExpressionCriteria.

    Accepts an expression string, an ExpressionCriteria or None.
    """

    def resolve(self, query: KeyValueQuery[Any]) -> Optional[ExpressionCriteria]:
        criteria = query.criteria
        if criteria is None:
            return None
        if isinstance(criteria, ExpressionCriteria):
            return criteria
        if isinstance(criteria, str):
            return ExpressionCriteria(criteria)
        raise InvalidUsageError(
            f"Unsupported criteria type {type(criteria).__qualname__}; "
            "expected str or ExpressionCriteria"
        )


class ExpressionSortAccessor:
    """Resolves query sort into a comparator.

    Accepts a Sort, a two-argument comparator, or None.
    """

    def resolve(self, query: KeyValueQuery[Any]) -> Optional[Comparator]:
        sort = query.sort
        if sort is None:
            return None
        if isinstance(sort, Sort):
            return sort_comparator(sort) if sort.is_sorted else None
        if callable(sort):
            return sort
        raise InvalidUsageError(
            f"Unsupported sort type {type(sort).__qualname__}; expected Sort or comparator"
        )


class ExpressionQueryEngine(QueryEngine[ExpressionCriteria, Comparator]):
    """QueryEngine evaluating expressions over the full keyspace snapshot.

    Execution:
        1. Fetch every value of the keyspace from the adapter
        2. Stable sort with the comparator, if any
        3. Keep candidates matching the criteria, if any
        4. Skip offset, truncate to rows (both only when positive)
    """

    def __init__(self) -> None:
        super().__init__(ExpressionCriteriaAccessor(), ExpressionSortAccessor())

    async def execute(
        self,
        criteria: Optional[ExpressionCriteria],
        sort: Optional[Comparator],
        offset: Optional[int],
        rows: Optional[int],
        keyspace: str,
    ) -> AsyncIterator[Any]:
        snapshot = await self._snapshot(keyspace)

        if sort is not None:
            snapshot.sort(key=functools.cmp_to_key(sort))

        matches = self._filter_matching_range(snapshot, criteria, offset, rows)
        logger.debug(
            "Executing expression query",
            extra={
                "keyspace": keyspace,
                "candidates": len(snapshot),
                "criteria": criteria.expression if criteria else None,
                "offset": offset,
                "rows": rows,
            },
        )
        for value in matches:
            yield value

    async def count(self, criteria: Optional[ExpressionCriteria], keyspace: str) -> int:
        snapshot = await self._snapshot(keyspace)
        return sum(1 for _ in self._filter_matching_range(snapshot, criteria, None, None))

    async def _snapshot(self, keyspace: str) -> List[Any]:
        adapter = self.required_adapter
        return [value async for value in adapter.get_all_of(keyspace)]

    @staticmethod
    def _filter_matching_range(
        source: Iterable[Any],
        criteria: Optional[ExpressionCriteria],
        offset: Optional[int],
        rows: Optional[int],
    ) -> Iterator[Any]:
        matches: Iterator[Any] = iter(source)

        if criteria is not None:
            matches = (candidate for candidate in matches if evaluate_criteria(criteria, candidate))

        start = offset if offset and offset > 0 else 0
        stop = start + rows if rows and rows > 0 else None
        return itertools.islice(matches, start, stop)
