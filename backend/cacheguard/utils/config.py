"""
Environment configuration loader with validation for cacheguard.
"""

import os
from typing import Optional, Dict, Any
from pydantic import BaseModel, Field, field_validator, model_validator
from dotenv import load_dotenv

from ..cache.config import LockSettings, StampedeSettings, ValkeyConfig
from ..cache.store import KeyValueStore
from ..models.enums import ContentionPolicy
from ..services.bloom_filter import BloomFilter
from ..services.circuit_breaker import CircuitBreaker


class GuardSettings(BaseModel):
    """Validated settings for the lock manager, the stampede guard and the demo."""

    # Store selection
    backend: str = Field(default="memory", description="Store backend: 'valkey' or 'memory'")

    # Lock defaults
    lock_lease_seconds: float = Field(default=10.0, gt=0, description="Default lock lease")
    lock_retry_interval_seconds: float = Field(default=0.05, ge=0, description="Sleep between lock attempts")
    lock_max_attempts: int = Field(default=10, ge=1, description="Lock attempts before giving up")

    # Stampede guard
    cache_ttl_seconds: int = Field(default=300, ge=1, description="Base TTL of cached values")
    cache_jitter_ratio: float = Field(default=0.1, ge=0.0, lt=1.0, description="TTL jitter as a fraction of the base")
    cache_min_ttl_seconds: int = Field(default=1, ge=1, description="Lower bound for jittered TTLs")
    population_lock_lease_seconds: float = Field(default=5.0, gt=0, description="Lease of the population lock")
    population_max_attempts: int = Field(default=20, ge=1, description="Population lock attempts")
    contention_policy: ContentionPolicy = Field(default=ContentionPolicy.FAIL, description="'fail' or 'wait'")
    wait_timeout_seconds: float = Field(default=10.0, gt=0, description="Upper bound for the 'wait' policy")
    coalesce_local: bool = Field(default=True, description="Share in-process loads per key")
    null_ttl_seconds: Optional[int] = Field(default=None, ge=1, description="TTL for cached not-found results, None disables")

    # Penetration protection
    bloom_enabled: bool = Field(default=False, description="Reject misses for keys never loaded")
    bloom_size_bits: int = Field(default=9_585_059, ge=1, description="Bloom filter bitmap size")
    bloom_hash_functions: int = Field(default=7, ge=1, description="Bit positions per key")
    circuit_breaker_enabled: bool = Field(default=False, description="Stop loader calls after repeated failures")
    circuit_failure_threshold: int = Field(default=5, ge=1, description="Consecutive failures that open the circuit")
    circuit_recovery_seconds: float = Field(default=30.0, gt=0, description="Time open before a trial call")

    # Logging
    log_level: str = Field(default="INFO", description="Logging level")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level is one of the standard levels."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Log level must be one of: {valid_levels}")
        return v.upper()

    @field_validator("backend")
    @classmethod
    def validate_backend(cls, v: str) -> str:
        if v.lower() not in ("valkey", "memory"):
            raise ValueError("backend must be 'valkey' or 'memory'")
        return v.lower()

    @model_validator(mode="after")
    def validate_lease_covers_retries(self) -> "GuardSettings":
        """The population lock must not expire while callers are still retrying for it."""
        if self.population_lock_lease_seconds <= self.lock_retry_interval_seconds:
            raise ValueError(
                "population_lock_lease_seconds must be longer than lock_retry_interval_seconds"
            )
        return self

    def lock_settings(self) -> LockSettings:
        return LockSettings(
            lease_seconds=self.lock_lease_seconds,
            retry_interval_seconds=self.lock_retry_interval_seconds,
            max_attempts=self.lock_max_attempts,
        )

    def stampede_settings(self) -> StampedeSettings:
        return StampedeSettings(
            cache_ttl_seconds=self.cache_ttl_seconds,
            jitter_ratio=self.cache_jitter_ratio,
            min_ttl_seconds=self.cache_min_ttl_seconds,
            lock_lease_seconds=self.population_lock_lease_seconds,
            retry_interval_seconds=self.lock_retry_interval_seconds,
            max_attempts=self.population_max_attempts,
            contention_policy=self.contention_policy,
            wait_timeout_seconds=self.wait_timeout_seconds,
            coalesce_local=self.coalesce_local,
            null_ttl_seconds=self.null_ttl_seconds,
        )

    def bloom_filter(self, store: KeyValueStore) -> Optional[BloomFilter]:
        if not self.bloom_enabled:
            return None
        return BloomFilter(store, size_bits=self.bloom_size_bits, hash_functions=self.bloom_hash_functions)

    def circuit_breaker(self) -> Optional[CircuitBreaker]:
        if not self.circuit_breaker_enabled:
            return None
        return CircuitBreaker(self.circuit_failure_threshold, self.circuit_recovery_seconds)

    def valkey_config(self) -> ValkeyConfig:
        return ValkeyConfig.from_env()


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes", "on")


def _env_optional_int(name: str) -> Optional[int]:
    value = os.getenv(name, "").strip()
    return int(value) if value else None


def load_settings(env_file: Optional[str] = None) -> GuardSettings:
    """
    Load settings from environment variables and a .env file.

    Args:
        env_file: Optional path to .env file. If None, looks for .env in current directory.

    Returns:
        GuardSettings: Validated settings object

    Raises:
        ValueError: If a setting is invalid
    """
    if env_file is None:
        env_file = ".env"

    if os.path.exists(env_file):
        load_dotenv(env_file)

    settings_data: Dict[str, Any] = {
        "backend": os.getenv("CACHEGUARD_BACKEND", "memory"),
        "lock_lease_seconds": float(os.getenv("CACHEGUARD_LOCK_LEASE_SECONDS", "10")),
        "lock_retry_interval_seconds": float(os.getenv("CACHEGUARD_LOCK_RETRY_INTERVAL_SECONDS", "0.05")),
        "lock_max_attempts": int(os.getenv("CACHEGUARD_LOCK_MAX_ATTEMPTS", "10")),
        "cache_ttl_seconds": int(os.getenv("CACHEGUARD_CACHE_TTL_SECONDS", "300")),
        "cache_jitter_ratio": float(os.getenv("CACHEGUARD_CACHE_JITTER_RATIO", "0.1")),
        "cache_min_ttl_seconds": int(os.getenv("CACHEGUARD_CACHE_MIN_TTL_SECONDS", "1")),
        "population_lock_lease_seconds": float(
            os.getenv("CACHEGUARD_POPULATION_LOCK_LEASE_SECONDS", "5")
        ),
        "population_max_attempts": int(os.getenv("CACHEGUARD_POPULATION_MAX_ATTEMPTS", "20")),
        "contention_policy": os.getenv("CACHEGUARD_CONTENTION_POLICY", "fail").lower(),
        "wait_timeout_seconds": float(os.getenv("CACHEGUARD_WAIT_TIMEOUT_SECONDS", "10")),
        "coalesce_local": _env_bool("CACHEGUARD_COALESCE_LOCAL", "true"),
        "null_ttl_seconds": _env_optional_int("CACHEGUARD_NULL_TTL_SECONDS"),
        "bloom_enabled": _env_bool("CACHEGUARD_BLOOM_ENABLED", "false"),
        "bloom_size_bits": int(os.getenv("CACHEGUARD_BLOOM_SIZE_BITS", "9585059")),
        "bloom_hash_functions": int(os.getenv("CACHEGUARD_BLOOM_HASH_FUNCTIONS", "7")),
        "circuit_breaker_enabled": _env_bool("CACHEGUARD_CIRCUIT_BREAKER_ENABLED", "false"),
        "circuit_failure_threshold": int(os.getenv("CACHEGUARD_CIRCUIT_FAILURE_THRESHOLD", "5")),
        "circuit_recovery_seconds": float(os.getenv("CACHEGUARD_CIRCUIT_RECOVERY_SECONDS", "30")),
        "log_level": os.getenv("CACHEGUARD_LOG_LEVEL", "INFO"),
    }

    try:
        return GuardSettings(**settings_data)
    except Exception as e:
        raise ValueError(f"Configuration validation failed: {e}") from e
