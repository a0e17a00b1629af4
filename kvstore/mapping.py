"""
Entity mapping collaborators for KeyValueTemplate.

The template never introspects entities itself. It asks three injected
collaborators:
- KeyspaceResolver: entity type -> keyspace name
- IdentifierAccessor: read/write the identifier of an entity
- IdentifierGenerator: create an identifier for an entity that has none

Default implementations are provided and follow simple class-level
conventions:

    @dataclass
    class Person:
        __keyspace__ = "people"      # optional, inherited by subclasses
        __id_attribute__ = "key"     # optional, defaults to "id"
        key: str | None = None
        name: str = ""

Invariants:
    - The same type always resolves to the same keyspace for the lifetime
      of a resolver (results are cached)
    - Generated identifiers are hashable
"""

from __future__ import annotations

import dataclasses
import threading
import uuid
from collections.abc import Mapping, MutableMapping
from typing import Any, Dict, Hashable, Optional, Protocol, Type, runtime_checkable
import logging

from .errors import InvalidUsageError

logger = logging.getLogger(__name__)

DEFAULT_ID_ATTRIBUTE = "id"


@runtime_checkable
class KeyspaceResolver(Protocol):
    """Maps an entity type to its keyspace name."""

    def resolve_keyspace(self, type: Type[Any]) -> str: ...


@runtime_checkable
class IdentifierAccessor(Protocol):
    """Reads and assigns entity identifiers."""

    def has_identifier(self, type: Type[Any]) -> bool: ...

    def get_identifier(self, entity: Any) -> Optional[Hashable]: ...

    def set_identifier(self, entity: Any, id: Hashable) -> None: ...


@runtime_checkable
class IdentifierGenerator(Protocol):
    """Creates identifiers for entities that do not carry one."""

    def generate_id(self, entity: Any) -> Hashable: ...


class DefaultKeyspaceResolver:
    """Resolves keyspaces from `__keyspace__` or the qualified class name.

    Because `__keyspace__` is an ordinary class attribute, subclasses share
    the keyspace of the base class that declares it.
    """

    def __init__(self) -> None:
        self._cache: Dict[Type[Any], str] = {}
        self._lock = threading.Lock()

    def resolve_keyspace(self, type: Type[Any]) -> str:
        if type is None:
            raise InvalidUsageError("Type to resolve keyspace for must not be None")

        cached = self._cache.get(type)
        if cached is not None:
            return cached

        keyspace = getattr(type, "__keyspace__", None)
        if keyspace is None:
            keyspace = f"{type.__module__}.{type.__qualname__}"
        elif not isinstance(keyspace, str) or not keyspace:
            raise InvalidUsageError(
                f"__keyspace__ of {type.__qualname__} must be a non-empty string"
            )

        with self._lock:
            return self._cache.setdefault(type, keyspace)


class AttributeIdentifierAccessor:
    """Reads identifiers from an attribute (default "id").

    A type exposes an identifier when it names one via `__id_attribute__`,
    declares a dataclass field, annotation or class attribute with the
    default name, or is a mapping type (the id is then the "id" key).
    """

    def __init__(self, default_attribute: str = DEFAULT_ID_ATTRIBUTE) -> None:
        self.default_attribute = default_attribute

    def _attribute(self, type: Type[Any]) -> Optional[str]:
        explicit = getattr(type, "__id_attribute__", None)
        if explicit:
            return explicit

        name = self.default_attribute
        if issubclass(type, Mapping):
            return name
        if dataclasses.is_dataclass(type) and any(
            f.name == name for f in dataclasses.fields(type)
        ):
            return name
        for klass in type.__mro__:
            if name in getattr(klass, "__annotations__", {}) or name in vars(klass):
                return name
        return None

    def has_identifier(self, type: Type[Any]) -> bool:
        return self._attribute(type) is not None

    def get_identifier(self, entity: Any) -> Optional[Hashable]:
        attribute = self._attribute(entity.__class__)
        if attribute is None:
            return None
        if isinstance(entity, Mapping):
            return entity.get(attribute)
        return getattr(entity, attribute, None)

    def set_identifier(self, entity: Any, id: Hashable) -> None:
        attribute = self._attribute(entity.__class__)
        if attribute is None:
            raise InvalidUsageError(
                f"Cannot assign id to {entity.__class__.__qualname__}: no identifier attribute"
            )
        if isinstance(entity, MutableMapping):
            entity[attribute] = id
            return
        try:
            setattr(entity, attribute, id)
        except (AttributeError, dataclasses.FrozenInstanceError) as e:
            raise InvalidUsageError(
                f"Cannot assign generated id to {entity.__class__.__qualname__}: {e}"
            ) from e


class UuidIdentifierGenerator:
    """Generates random UUID4 strings."""

    def generate_id(self, entity: Any) -> Hashable:
        return str(uuid.uuid4())
