"""
Configuration management for the SchoolSync engine.

All configuration is done via environment variables with SCHOOLSYNC_ prefix.
This module provides typed configuration classes with validation.

Invariants:
    - All settings have sensible defaults for local development
    - Timings are expressed in seconds (floats)
    - Secrets (the API token) are never logged or exposed in error messages

How to change safely:
    - Add new settings with defaults that maintain backward compatibility
    - Keep defaults aligned with the portal's query client behaviour
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

ENV_PREFIX = "SCHOOLSYNC_"


def _env(name: str, default: str) -> str:
    return os.getenv(ENV_PREFIX + name, default)


def _env_optional(name: str) -> str | None:
    return os.getenv(ENV_PREFIX + name)


def _env_bool(name: str, default: bool) -> bool:
    return _env(name, "true" if default else "false").lower() == "true"


@dataclass(frozen=True)
class CacheConfig:
    """Cache store configuration.

    Attributes:
        stale_time: Seconds after which an entry is considered stale
        gc_time: Seconds an unobserved entry is kept before garbage collection
    """

    stale_time: float = 5 * 60
    gc_time: float = 10 * 60

    @classmethod
    def from_env(cls) -> CacheConfig:
        """Load configuration from environment variables."""
        return cls(
            stale_time=float(_env("STALE_TIME_SECONDS", str(5 * 60))),
            gc_time=float(_env("GC_TIME_SECONDS", str(10 * 60))),
        )


@dataclass(frozen=True)
class TransportConfig:
    """API transport configuration.

    Attributes:
        base_url: Base URL of the portal API
        token: Bearer token sent with every request
        timeout: Per-request timeout in seconds
        circuit_failure_threshold: Failures before the circuit opens
        circuit_cooldown: Seconds the circuit stays open before a trial request
        circuit_enabled: Whether requests go through the circuit breaker
    """

    base_url: str = "http://localhost:5000"
    token: str | None = None
    timeout: float = 30.0
    circuit_failure_threshold: int = 5
    circuit_cooldown: float = 60.0
    circuit_enabled: bool = True

    @classmethod
    def from_env(cls) -> TransportConfig:
        """Load configuration from environment variables."""
        return cls(
            base_url=_env("API_URL", "http://localhost:5000"),
            token=_env_optional("API_TOKEN"),
            timeout=float(_env("REQUEST_TIMEOUT_SECONDS", "30")),
            circuit_failure_threshold=int(_env("CIRCUIT_FAILURE_THRESHOLD", "5")),
            circuit_cooldown=float(_env("CIRCUIT_COOLDOWN_SECONDS", "60")),
            circuit_enabled=_env_bool("CIRCUIT_ENABLED", True),
        )


@dataclass(frozen=True)
class RetryConfig:
    """Query refetch retry configuration.

    Mutations are never retried by the engine; these settings only apply
    to query functions run on fetch and invalidation.

    Attributes:
        max_retries: Maximum retries after the first attempt
        base_delay: Delay before the first retry, doubled for each attempt
        max_jitter: Upper bound of the random jitter added to each delay
        max_delay: Cap for any single delay
    """

    max_retries: int = 3
    base_delay: float = 0.5
    max_jitter: float = 0.2
    max_delay: float = 10.0

    @classmethod
    def from_env(cls) -> RetryConfig:
        """Load configuration from environment variables."""
        return cls(
            max_retries=int(_env("QUERY_MAX_RETRIES", "3")),
            base_delay=float(_env("QUERY_RETRY_BASE_SECONDS", "0.5")),
            max_jitter=float(_env("QUERY_RETRY_JITTER_SECONDS", "0.2")),
            max_delay=float(_env("QUERY_RETRY_MAX_SECONDS", "10")),
        )


@dataclass(frozen=True)
class RealtimeConfig:
    """Realtime subscriber configuration.

    Attributes:
        max_reconnect_attempts: Consecutive connection errors before the
            subscriber falls back to polling
        fallback_poll_interval: Seconds between polling invalidations
    """

    max_reconnect_attempts: int = 5
    fallback_poll_interval: float = 30.0

    @classmethod
    def from_env(cls) -> RealtimeConfig:
        """Load configuration from environment variables."""
        return cls(
            max_reconnect_attempts=int(_env("REALTIME_MAX_RECONNECT_ATTEMPTS", "5")),
            fallback_poll_interval=float(_env("REALTIME_POLL_INTERVAL_SECONDS", "30")),
        )


@dataclass(frozen=True)
class BulkConfig:
    """Bulk executor configuration.

    Attributes:
        max_concurrency: Maximum in-flight item requests (0 = unbounded)
    """

    max_concurrency: int = 0

    @classmethod
    def from_env(cls) -> BulkConfig:
        """Load configuration from environment variables."""
        return cls(max_concurrency=int(_env("BULK_MAX_CONCURRENCY", "0")))


@dataclass(frozen=True)
class ObservabilityConfig:
    """Logging configuration.

    Attributes:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: Log format (json, text)
    """

    log_level: str = "INFO"
    log_format: str = "text"

    @classmethod
    def from_env(cls) -> ObservabilityConfig:
        """Load configuration from environment variables."""
        return cls(
            log_level=_env("LOG_LEVEL", "INFO"),
            log_format=_env("LOG_FORMAT", "text"),
        )


@dataclass
class EngineConfig:
    """Complete engine configuration.

    Attributes:
        cache: Cache store configuration
        transport: API transport configuration
        retry: Query retry configuration
        realtime: Realtime subscriber configuration
        bulk: Bulk executor configuration
        observability: Logging configuration
    """

    cache: CacheConfig = field(default_factory=CacheConfig)
    transport: TransportConfig = field(default_factory=TransportConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    realtime: RealtimeConfig = field(default_factory=RealtimeConfig)
    bulk: BulkConfig = field(default_factory=BulkConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> EngineConfig:
        """Load complete configuration from environment variables.

        Returns:
            EngineConfig with all sections populated from environment.

        Raises:
            ValueError: If configuration is invalid.
        """
        config = cls(
            cache=CacheConfig.from_env(),
            transport=TransportConfig.from_env(),
            retry=RetryConfig.from_env(),
            realtime=RealtimeConfig.from_env(),
            bulk=BulkConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
        )
        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ValueError: If configuration is invalid.
        """
        if self.cache.stale_time < 0 or self.cache.gc_time < 0:
            raise ValueError("Cache stale_time and gc_time must be non-negative")
        if not self.transport.base_url:
            raise ValueError("SCHOOLSYNC_API_URL must not be empty")
        if self.transport.timeout <= 0:
            raise ValueError("SCHOOLSYNC_REQUEST_TIMEOUT_SECONDS must be positive")
        if self.transport.circuit_failure_threshold < 1:
            raise ValueError("SCHOOLSYNC_CIRCUIT_FAILURE_THRESHOLD must be at least 1")
        if self.retry.max_retries < 0:
            raise ValueError("SCHOOLSYNC_QUERY_MAX_RETRIES must be non-negative")
        if self.realtime.fallback_poll_interval <= 0:
            raise ValueError("SCHOOLSYNC_REALTIME_POLL_INTERVAL_SECONDS must be positive")
        if self.bulk.max_concurrency < 0:
            raise ValueError("SCHOOLSYNC_BULK_MAX_CONCURRENCY must be non-negative")
        if self.observability.log_format not in ("json", "text"):
            raise ValueError(
                f"Invalid SCHOOLSYNC_LOG_FORMAT '{self.observability.log_format}'. "
                "Must be one of: json, text"
            )

        if self.cache.gc_time < self.cache.stale_time:
            logger.warning(
                "gc_time is shorter than stale_time; unobserved entries will be "
                "collected before they go stale"
            )

    def log_config(self) -> None:
        """Log configuration (redacting secrets)."""
        logger.info(
            "Engine configuration loaded",
            extra={
                "api_url": self.transport.base_url,
                "api_token": "***" if self.transport.token else None,
                "request_timeout": self.transport.timeout,
                "circuit_enabled": self.transport.circuit_enabled,
                "stale_time": self.cache.stale_time,
                "gc_time": self.cache.gc_time,
                "query_max_retries": self.retry.max_retries,
                "realtime_poll_interval": self.realtime.fallback_poll_interval,
                "bulk_max_concurrency": self.bulk.max_concurrency,
                "log_level": self.observability.log_level,
            },
        )
