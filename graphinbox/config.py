"""
Configuration management for graphinbox.

All configuration is done via environment variables - no config files.
This module provides typed configuration classes with validation.

Invariants:
    - All settings have sensible defaults for local development
    - Limits are validated once at startup, not on every call

How to change safely:
    - Add new settings with defaults that maintain backward compatibility
    - Keep environment variable names stable; deployments depend on them
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StorageConfig:
    """Local storage configuration.

    Attributes:
        data_dir: Directory for SQLite databases
        wal_mode: SQLite WAL mode enabled
        busy_timeout_ms: SQLite busy timeout in milliseconds
        cache_size_pages: SQLite cache size in pages (negative = KB)
    """

    data_dir: str = "/var/lib/graphinbox"
    wal_mode: bool = True
    busy_timeout_ms: int = 5000
    cache_size_pages: int = -64000  # 64MB

    @classmethod
    def from_env(cls) -> StorageConfig:
        """Load configuration from environment variables."""
        return cls(
            data_dir=os.getenv("DATA_DIR", "/var/lib/graphinbox"),
            wal_mode=os.getenv("SQLITE_WAL_MODE", "true").lower() == "true",
            busy_timeout_ms=int(os.getenv("SQLITE_BUSY_TIMEOUT_MS", "5000")),
            cache_size_pages=int(os.getenv("SQLITE_CACHE_SIZE", "-64000")),
        )


@dataclass(frozen=True)
class FanoutConfig:
    """Inbox fan-out configuration.

    Attributes:
        max_concurrency: Maximum recipients delivered concurrently
        max_retries: Maximum retries for transient store errors per recipient
        retry_delay_ms: Base delay between retries (multiplied by attempt)
        edge_scan_limit: Maximum edges read per relationship query
    """

    max_concurrency: int = 16
    max_retries: int = 3
    retry_delay_ms: int = 50
    edge_scan_limit: int = 200

    @classmethod
    def from_env(cls) -> FanoutConfig:
        """Load configuration from environment variables."""
        return cls(
            max_concurrency=int(os.getenv("FANOUT_MAX_CONCURRENCY", "16")),
            max_retries=int(os.getenv("FANOUT_MAX_RETRIES", "3")),
            retry_delay_ms=int(os.getenv("FANOUT_RETRY_DELAY_MS", "50")),
            edge_scan_limit=int(os.getenv("FANOUT_EDGE_SCAN_LIMIT", "200")),
        )


@dataclass(frozen=True)
class InboxConfig:
    """Inbox query configuration.

    Attributes:
        default_limit: Page size when a query gives none
        max_limit: Largest page size a query may request
    """

    default_limit: int = 50
    max_limit: int = 200

    @classmethod
    def from_env(cls) -> InboxConfig:
        """Load configuration from environment variables."""
        return cls(
            default_limit=int(os.getenv("INBOX_DEFAULT_LIMIT", "50")),
            max_limit=int(os.getenv("INBOX_MAX_LIMIT", "200")),
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
class ServiceConfig:
    """Complete service configuration.

    Attributes:
        storage: Local storage configuration
        fanout: Fan-out configuration
        inbox: Inbox query configuration
        observability: Logging configuration
    """

    storage: StorageConfig = field(default_factory=StorageConfig)
    fanout: FanoutConfig = field(default_factory=FanoutConfig)
    inbox: InboxConfig = field(default_factory=InboxConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> ServiceConfig:
        """Load complete configuration from environment variables.

        Returns:
            ServiceConfig with all sections populated from environment.

        Raises:
            ValueError: If configuration is invalid.
        """
        config = cls(
            storage=StorageConfig.from_env(),
            fanout=FanoutConfig.from_env(),
            inbox=InboxConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
        )

        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ValueError: If configuration is invalid.
        """
        if self.fanout.max_concurrency < 1:
            raise ValueError("FANOUT_MAX_CONCURRENCY must be at least 1")
        if self.fanout.max_retries < 0:
            raise ValueError("FANOUT_MAX_RETRIES must not be negative")
        if self.fanout.retry_delay_ms < 0:
            raise ValueError("FANOUT_RETRY_DELAY_MS must not be negative")
        if self.fanout.edge_scan_limit < 1:
            raise ValueError("FANOUT_EDGE_SCAN_LIMIT must be at least 1")

        if self.inbox.max_limit < 1:
            raise ValueError("INBOX_MAX_LIMIT must be at least 1")
        if not 1 <= self.inbox.default_limit <= self.inbox.max_limit:
            raise ValueError("INBOX_DEFAULT_LIMIT must be between 1 and INBOX_MAX_LIMIT")

        if self.observability.log_format not in ("json", "text"):
            raise ValueError(
                f"Invalid LOG_FORMAT '{self.observability.log_format}'. Must be one of: json, text"
            )

        if not os.path.exists(self.storage.data_dir):
            logger.warning(
                f"Data directory does not exist: {self.storage.data_dir}. "
                "It will be created on first write."
            )

    def log_config(self) -> None:
        """Log configuration."""
        logger.info(
            "Service configuration loaded",
            extra={
                "data_dir": self.storage.data_dir,
                "sqlite_wal_mode": self.storage.wal_mode,
                "fanout_max_concurrency": self.fanout.max_concurrency,
                "fanout_max_retries": self.fanout.max_retries,
                "inbox_default_limit": self.inbox.default_limit,
                "inbox_max_limit": self.inbox.max_limit,
                "log_level": self.observability.log_level,
            },
        )
