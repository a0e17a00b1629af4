"""
Configuration management for kvstore.

All configuration is done via environment variables. This module provides
typed configuration classes with validation.

Invariants:
    - All settings have sensible defaults for local development
    - Invalid enumerated values fail fast with the variable name

How to change safely:
    - Add new settings with defaults that maintain backward compatibility
    - Deprecate settings by logging warnings but continuing to support them
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from typing import FrozenSet

from .adapter.memory import KeyspaceContainer
from .events import EventKind

logger = logging.getLogger(__name__)


class AdapterBackend(Enum):
    """Supported storage adapter backends."""

    MAP = "map"


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


@dataclass(frozen=True)
class AdapterConfig:
    """Storage adapter configuration.

    Attributes:
        backend: Which adapter implementation to use
        keyspace_container: Container type for new keyspaces (map backend)
    """

    backend: AdapterBackend = AdapterBackend.MAP
    keyspace_container: KeyspaceContainer = KeyspaceContainer.HASH

    @classmethod
    def from_env(cls) -> AdapterConfig:
        """Load configuration from environment variables."""
        backend_str = os.getenv("KV_ADAPTER", "map").lower()
        try:
            backend = AdapterBackend(backend_str)
        except ValueError:
            raise ValueError(f"Invalid KV_ADAPTER '{backend_str}'. Must be one of: map")

        container_str = os.getenv("KV_KEYSPACE_CONTAINER", "hash").lower()
        try:
            container = KeyspaceContainer(container_str)
        except ValueError:
            raise ValueError(
                f"Invalid KV_KEYSPACE_CONTAINER '{container_str}'. Must be one of: hash, ordered, sorted"
            )

        return cls(backend=backend, keyspace_container=container)


@dataclass(frozen=True)
class EventConfig:
    """Lifecycle event publishing configuration.

    Attributes:
        publish_events: Whether the template publishes events at all
        event_kinds: Allow-list of kinds to publish (empty = all kinds)
    """

    publish_events: bool = True
    event_kinds: FrozenSet[EventKind] = frozenset()

    @classmethod
    def from_env(cls) -> EventConfig:
        """Load configuration from environment variables."""
        return cls(
            publish_events=_env_bool("KV_PUBLISH_EVENTS", "true"),
            event_kinds=EventKind.parse(os.getenv("KV_EVENT_KINDS", "")),
        )


@dataclass(frozen=True)
class ObservabilityConfig:
    """Logging configuration.

    Attributes:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: Log format (json, text)
    """

    log_level: str = "INFO"
    log_format: str = "json"

    @classmethod
    def from_env(cls) -> ObservabilityConfig:
        """Load configuration from environment variables."""
        return cls(
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "json"),
        )


@dataclass
class KeyValueConfig:
    """Complete kvstore configuration.

    Attributes:
        adapter: Storage adapter configuration
        events: Event publishing configuration
        observability: Logging configuration
    """

    adapter: AdapterConfig = field(default_factory=AdapterConfig)
    events: EventConfig = field(default_factory=EventConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> KeyValueConfig:
        """Load complete configuration from environment variables.

        Raises:
            ValueError: If configuration is invalid.
        """
        config = cls(
            adapter=AdapterConfig.from_env(),
            events=EventConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
        )
        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ValueError: If configuration is invalid.
        """
        if self.observability.log_format not in ("json", "text"):
            raise ValueError(
                f"Invalid LOG_FORMAT '{self.observability.log_format}'. Must be one of: json, text"
            )
        if not self.events.publish_events and self.events.event_kinds:
            logger.warning(
                "KV_EVENT_KINDS is set but KV_PUBLISH_EVENTS=false; no events will be published"
            )

    def log_config(self) -> None:
        """Log configuration."""
        logger.info(
            "kvstore configuration loaded",
            extra={
                "adapter": self.adapter.backend.value,
                "keyspace_container": self.adapter.keyspace_container.value,
                "publish_events": self.events.publish_events,
                "event_kinds": sorted(k.value for k in self.events.event_kinds) or "all",
                "log_level": self.observability.log_level,
            },
        )
