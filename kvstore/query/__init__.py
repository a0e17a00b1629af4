"""
Query model and engines for kvstore.

A KeyValueQuery carries engine-specific criteria and sort plus offset/rows.
A QueryEngine resolves them through its accessors and executes them against
the snapshot of a keyspace provided by its adapter.
"""

from .base import (
    CriteriaAccessor,
    Direction,
    KeyValueQuery,
    NullHandling,
    Order,
    QueryEngine,
    Sort,
    SortAccessor,
)
from .expression import (
    ExpressionCriteria,
    ExpressionCriteriaAccessor,
    ExpressionQueryEngine,
    ExpressionSortAccessor,
)

__all__ = [
    # Query model
    "KeyValueQuery",
    "Sort",
    "Order",
    "Direction",
    "NullHandling",
    # Engine contract
    "QueryEngine",
    "CriteriaAccessor",
    "SortAccessor",
    # Expression engine
    "ExpressionQueryEngine",
    "ExpressionCriteria",
    "ExpressionCriteriaAccessor",
    "ExpressionSortAccessor",
]
