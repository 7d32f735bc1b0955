"""
Configuration management for m17orm.

Configuration is read from environment variables. This module provides typed
configuration classes with validation; nothing here opens connections.

Invariants:
    - All settings have sensible defaults for local development
    - Secrets (the remote auth header) are never logged

How to change safely:
    - Add new settings with defaults that keep existing deployments working
    - Keep variable names under the M17ORM_ prefix
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from enum import Enum

logger = logging.getLogger(__name__)


class TransportBackend(Enum):
    """Supported transport backends."""

    SQL = "sql"
    REMOTE = "remote"


@dataclass(frozen=True)
class SqlConfig:
    """Relational (SQLite) transport configuration.

    Attributes:
        write_path: Database file used by the write connection
        read_path: Database file used by the read connection (defaults to write_path)
        busy_timeout_ms: SQLite busy timeout
        wal_mode: Enable SQLite WAL journal mode
    """

    write_path: str = "m17orm.db"
    read_path: str | None = None
    busy_timeout_ms: int = 5000
    wal_mode: bool = True

    @property
    def effective_read_path(self) -> str:
        return self.read_path or self.write_path

    @classmethod
    def from_env(cls) -> SqlConfig:
        """Load configuration from environment variables."""
        return cls(
            write_path=os.getenv("M17ORM_SQL_WRITE_PATH", "m17orm.db"),
            read_path=os.getenv("M17ORM_SQL_READ_PATH"),
            busy_timeout_ms=int(os.getenv("M17ORM_SQL_BUSY_TIMEOUT_MS", "5000")),
            wal_mode=os.getenv("M17ORM_SQL_WAL_MODE", "true").lower() == "true",
        )


@dataclass(frozen=True)
class RemoteConfig:
    """REST transport configuration.

    Attributes:
        base_url: Root URL of the remote service
        auth: Authorization header value sent with every request
        timeout_seconds: Per-request timeout
    """

    base_url: str = "http://localhost:8080"
    auth: str | None = None
    timeout_seconds: float = 30.0

    @classmethod
    def from_env(cls) -> RemoteConfig:
        """Load configuration from environment variables."""
        return cls(
            base_url=os.getenv("M17ORM_REMOTE_BASE_URL", "http://localhost:8080"),
            auth=os.getenv("M17ORM_REMOTE_AUTH"),
            timeout_seconds=float(os.getenv("M17ORM_REMOTE_TIMEOUT", "30")),
        )


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
            log_level=os.getenv("M17ORM_LOG_LEVEL", "INFO"),
            log_format=os.getenv("M17ORM_LOG_FORMAT", "text"),
        )


@dataclass
class OrmConfig:
    """Complete configuration.

    Attributes:
        backend: Which transport to build
        sql: SQL transport configuration (if backend is SQL)
        remote: Remote transport configuration (if backend is REMOTE)
        observability: Logging configuration
    """

    backend: TransportBackend = TransportBackend.SQL
    sql: SqlConfig = field(default_factory=SqlConfig)
    remote: RemoteConfig = field(default_factory=RemoteConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> OrmConfig:
        """Load complete configuration from environment variables.

        Raises:
            ValueError: If configuration is missing or invalid.
        """
        backend_str = os.getenv("M17ORM_BACKEND", "sql").lower()
        try:
            backend = TransportBackend(backend_str)
        except ValueError:
            raise ValueError(
                f"Invalid M17ORM_BACKEND '{backend_str}'. Must be one of: sql, remote"
            ) from None

        config = cls(
            backend=backend,
            sql=SqlConfig.from_env(),
            remote=RemoteConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
        )

        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ValueError: If configuration is invalid.
        """
        if self.backend == TransportBackend.SQL:
            if not self.sql.write_path:
                raise ValueError("M17ORM_SQL_WRITE_PATH is required when M17ORM_BACKEND=sql")
            if self.sql.busy_timeout_ms < 0:
                raise ValueError("M17ORM_SQL_BUSY_TIMEOUT_MS must not be negative")
        elif self.backend == TransportBackend.REMOTE:
            if not self.remote.base_url:
                raise ValueError("M17ORM_REMOTE_BASE_URL is required when M17ORM_BACKEND=remote")
            if self.remote.timeout_seconds <= 0:
                raise ValueError("M17ORM_REMOTE_TIMEOUT must be positive")

    def log_config(self) -> None:
        """Log configuration (redacting secrets)."""
        logger.info(
            "ORM configuration loaded",
            extra={
                "backend": self.backend.value,
                "sql_write_path": self.sql.write_path
                if self.backend == TransportBackend.SQL
                else None,
                "sql_read_path": self.sql.effective_read_path
                if self.backend == TransportBackend.SQL
                else None,
                "remote_base_url": self.remote.base_url
                if self.backend == TransportBackend.REMOTE
                else None,
                "remote_auth_set": self.remote.auth is not None,
                "log_level": self.observability.log_level,
            },
        )
