"""
Error types for kvstore.

This module defines all exception types raised by the key-value layer:
- KeyValueError: Base exception
- DuplicateKeyError: Insert targeted an identifier that already exists
- InvalidUsageError: Caller violated a precondition
- ResultCardinalityError: A cardinality combinator saw too few/many results
- TypeMismatchError: Strict typed query execution met a foreign element
- AdapterRequiredError / AdapterAlreadyRegisteredError: Engine wiring errors
- QueryEvaluationError: Criteria expression could not be evaluated
- DataRetrievalError / UncategorizedKeyValueError: Translator outputs

It also provides the default exception translator applied at the outer
boundary of KeyValueTemplate.execute().

Invariants:
    - All errors inherit from KeyValueError
    - Errors include context for debugging in `details`
    - Translation never wraps an error that is already a KeyValueError
"""

from __future__ import annotations

from typing import Any, Dict, Optional, Protocol, runtime_checkable


class KeyValueError(Exception):
    """Base exception for all kvstore errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "KEYVALUE_ERROR"
        self.details = details or {}


class DuplicateKeyError(KeyValueError):
    """An object with the given id already exists in the keyspace.

    Raised by insert; nothing is written when this is raised.
    """

    def __init__(self, message: str, id: Any = None, keyspace: Optional[str] = None) -> None:
        super().__init__(
            message,
            code="DUPLICATE_KEY",
            details={"id": id, "keyspace": keyspace},
        )
        self.id = id
        self.keyspace = keyspace


class InvalidUsageError(KeyValueError, ValueError):
    """Caller violated a precondition.

    Raised when:
    - A required id or keyspace argument is missing
    - An entity type does not expose an identifier
    """

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message, code="INVALID_USAGE", details=details)


class ResultCardinalityError(KeyValueError):
    """A result stream produced an unexpected number of values.

    Attributes:
        expected: Human readable expectation ("exactly one", "at most one")
        actual: Number of values observed (may be a lower bound)
    """

    def __init__(self, message: str, expected: str, actual: int) -> None:
        super().__init__(
            message,
            code="RESULT_CARDINALITY",
            details={"expected": expected, "actual": actual},
        )
        self.expected = expected
        self.actual = actual


class TypeMismatchError(KeyValueError, TypeError):
    """An element could not be cast to the requested type."""

    def __init__(self, message: str, expected_type: type, actual_type: type) -> None:
        super().__init__(
            message,
            code="TYPE_MISMATCH",
            details={
                "expected_type": expected_type.__qualname__,
                "actual_type": actual_type.__qualname__,
            },
        )
        self.expected_type = expected_type
        self.actual_type = actual_type


class AdapterRequiredError(KeyValueError):
    """A query engine was used before an adapter was registered."""

    def __init__(self, message: str = "Required KeyValueAdapter is not set") -> None:
        super().__init__(message, code="ADAPTER_REQUIRED")


class AdapterAlreadyRegisteredError(KeyValueError):
    """A second adapter was registered with a query engine."""

    def __init__(
        self,
        message: str = "Cannot register more than one adapter for this QueryEngine",
    ) -> None:
        super().__init__(message, code="ADAPTER_ALREADY_REGISTERED")


class QueryEvaluationError(KeyValueError):
    """A criteria expression failed to evaluate against a candidate."""

    def __init__(self, message: str, expression: Optional[str] = None) -> None:
        super().__init__(
            message,
            code="QUERY_EVALUATION",
            details={"expression": expression},
        )
        self.expression = expression


class DataRetrievalError(KeyValueError):
    """Data could not be retrieved (translated lookup/state failures)."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="DATA_RETRIEVAL")


class UncategorizedKeyValueError(KeyValueError):
    """A low-level failure that has no more specific translation."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="UNCATEGORIZED")


@runtime_checkable
class ExceptionTranslator(Protocol):
    """Converts low-level failures into KeyValueError instances.

    Returning None declines the translation and the original error
    propagates unchanged.
    """

    def translate(self, error: Exception) -> Optional[KeyValueError]: ...


class KeyValueExceptionTranslator:
    """Default translator used by KeyValueTemplate.

    - KeyValueError: already translated, returns None
    - LookupError (KeyError, IndexError): DataRetrievalError
    - Other built-in exceptions: UncategorizedKeyValueError
    - Anything else (third-party backend errors): None
    """

    def translate(self, error: Exception) -> Optional[KeyValueError]:
        if isinstance(error, KeyValueError):
            return None

        if isinstance(error, LookupError):
            return DataRetrievalError(str(error) or type(error).__name__)

        if type(error).__module__ == "builtins":
            return UncategorizedKeyValueError(str(error) or type(error).__name__)

        return None
