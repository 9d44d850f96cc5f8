"""
Valkey connection and component configuration.

This module provides configuration classes for Valkey connections with
environment variable support, plus the explicit settings objects that the
lock manager and the stampede guard are constructed with.
"""

import os
import logging
from typing import Optional, Dict, Any, Union
from dataclasses import dataclass
from dotenv import load_dotenv

from ..models.enums import ContentionPolicy

# Load environment variables from .env file
load_dotenv()

logger = logging.getLogger(__name__)


@dataclass
class ValkeyConfig:
    """
    Configuration class for Valkey connections with environment variable support.

    Supports connection pooling, health checks and a key prefix shared by
    every key the library writes.
    """

    host: str = "localhost"
    port: int = 6379
    password: Optional[str] = None
    database: int = 0
    max_connections: int = 10
    socket_timeout: float = 5.0
    socket_connect_timeout: float = 5.0
    health_check_interval: int = 30
    key_prefix: str = ""

    @classmethod
    def from_env(cls) -> "ValkeyConfig":
        """
        Create ValkeyConfig from environment variables.

        Returns:
            ValkeyConfig: Configuration instance with values from environment
        """
        return cls(
            host=os.getenv("VALKEY_HOST", "localhost"),
            port=int(os.getenv("VALKEY_PORT", "6379")),
            password=os.getenv("VALKEY_PASSWORD") or None,
            database=int(os.getenv("VALKEY_DATABASE", "0")),
            max_connections=int(os.getenv("VALKEY_MAX_CONNECTIONS", "10")),
            socket_timeout=float(os.getenv("VALKEY_SOCKET_TIMEOUT", "5.0")),
            socket_connect_timeout=float(os.getenv("VALKEY_SOCKET_CONNECT_TIMEOUT", "5.0")),
            health_check_interval=int(os.getenv("VALKEY_HEALTH_CHECK_INTERVAL", "30")),
            key_prefix=os.getenv("VALKEY_KEY_PREFIX", ""),
        )

    def to_connection_pool_kwargs(self) -> Dict[str, Any]:
        """
        Convert configuration to Valkey connection pool parameters.

        Responses are always decoded; lock tokens and JSON payloads are text.

        Returns:
            Dict[str, Any]: Connection pool parameters for Valkey client
        """
        kwargs = {
            "host": self.host,
            "port": self.port,
            "db": self.database,
            "socket_timeout": self.socket_timeout,
            "socket_connect_timeout": self.socket_connect_timeout,
            "decode_responses": True,
            "max_connections": self.max_connections,
        }

        if self.password:
            kwargs["password"] = self.password

        return kwargs

    def __str__(self) -> str:
        """String representation hiding sensitive information."""
        password_display = "***" if self.password else "None"
        return (
            f"ValkeyConfig(host={self.host}, port={self.port}, "
            f"db={self.database}, password={password_display}, "
            f"max_connections={self.max_connections})"
        )


@dataclass
class LockSettings:
    """Lease and retry parameters for DistributedLockManager."""

    lease_seconds: float = 10.0
    retry_interval_seconds: float = 0.05
    max_attempts: int = 10

    def __post_init__(self):
        if self.lease_seconds <= 0:
            raise ValueError("lease_seconds must be positive")
        if self.retry_interval_seconds < 0:
            raise ValueError("retry_interval_seconds must not be negative")
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")


@dataclass
class StampedeSettings:
    """
    Parameters for StampedeGuardedCache.

    The lock lease only needs to cover one recompute, so it stays in the
    seconds range while cache_ttl_seconds is minutes to hours.
    """

    cache_ttl_seconds: int = 300
    jitter_ratio: float = 0.1
    min_ttl_seconds: int = 1
    lock_lease_seconds: float = 5.0
    retry_interval_seconds: float = 0.05
    max_attempts: int = 20
    contention_policy: Union[ContentionPolicy, str] = ContentionPolicy.FAIL
    wait_timeout_seconds: float = 10.0
    coalesce_local: bool = True
    null_ttl_seconds: Optional[int] = None

    def __post_init__(self):
        if self.null_ttl_seconds is not None and self.null_ttl_seconds <= 0:
            raise ValueError("null_ttl_seconds must be positive when set")
        if self.cache_ttl_seconds <= 0:
            raise ValueError("cache_ttl_seconds must be positive")
        if not 0.0 <= self.jitter_ratio < 1.0:
            raise ValueError("jitter_ratio must be in [0.0, 1.0)")
        if self.lock_lease_seconds <= 0:
            raise ValueError("lock_lease_seconds must be positive")
        if self.retry_interval_seconds < 0:
            raise ValueError("retry_interval_seconds must not be negative")
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.wait_timeout_seconds <= 0:
            raise ValueError("wait_timeout_seconds must be positive")
        # raises ValueError for unknown policies
        self.contention_policy = ContentionPolicy(self.contention_policy)
