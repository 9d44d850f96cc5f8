"""
Metrics and status models for locks and the stampede guard.

These models are snapshots returned by get_metrics() / get_lock_status();
the live counters are plain attributes on the services.
"""

from datetime import datetime
from typing import Optional
from pydantic import BaseModel, Field, ConfigDict


class LockMetricsModel(BaseModel):
    """
    Lock manager counters.

    ``failed_releases`` and ``failed_renewals`` count operations attempted by
    a caller whose token was no longer current, which usually means the
    lease was shorter than the protected work.
    """
    model_config = ConfigDict(from_attributes=True)

    acquisitions: int = Field(default=0, ge=0, description="Successful acquisitions")
    contended_attempts: int = Field(default=0, ge=0, description="Acquire attempts that found the lock held")
    exhausted_retries: int = Field(default=0, ge=0, description="try_acquire calls that gave up")
    releases: int = Field(default=0, ge=0, description="Successful releases")
    failed_releases: int = Field(default=0, ge=0, description="Releases refused because the token was not current")
    renewals: int = Field(default=0, ge=0, description="Successful renewals")
    failed_renewals: int = Field(default=0, ge=0, description="Renewals refused because the token was not current")
    leases_lost: int = Field(default=0, ge=0, description="Auto-renewed leases that lost ownership")
    store_errors: int = Field(default=0, ge=0, description="Store failures seen by lock operations")
    avg_acquire_wait_ms: float = Field(default=0.0, ge=0.0, description="Mean wait of successful try_acquire calls")
    last_updated: datetime = Field(default_factory=datetime.now, description="Snapshot time")


class GuardMetricsModel(BaseModel):
    """Stampede guard counters."""
    model_config = ConfigDict(from_attributes=True)

    requests: int = Field(default=0, ge=0, description="Calls to get()")
    hits: int = Field(default=0, ge=0, description="Fast path cache hits")
    misses: int = Field(default=0, ge=0, description="Fast path cache misses")
    double_check_hits: int = Field(default=0, ge=0, description="Values found after acquiring the lock")
    loads: int = Field(default=0, ge=0, description="Loader invocations")
    load_failures: int = Field(default=0, ge=0, description="Loader invocations that raised")
    joined: int = Field(default=0, ge=0, description="Callers that shared an in-process load")
    contended_hits: int = Field(default=0, ge=0, description="Lock busy, value found on re-read")
    contended: int = Field(default=0, ge=0, description="Lock busy and no value: CacheContendedError")
    filtered: int = Field(default=0, ge=0, description="Misses rejected by the bloom filter")
    null_values: int = Field(default=0, ge=0, description="Not-found results cached with the null TTL")
    circuit_rejections: int = Field(default=0, ge=0, description="Loads refused by an open circuit")
    avg_load_ms: float = Field(default=0.0, ge=0.0, description="Mean loader duration")
    last_updated: datetime = Field(default_factory=datetime.now, description="Snapshot time")


class LockStatusModel(BaseModel):
    """Current state of a lock key as seen in the store."""
    model_config = ConfigDict(from_attributes=True)

    resource_key: str = Field(..., description="Resource identifier")
    lock_key: str = Field(..., description="Store key of the lock")
    held: bool = Field(..., description="Whether any token currently holds the lock")
    token: Optional[str] = Field(default=None, description="Current holder token")
    owned_by_caller: bool = Field(default=False, description="Whether the given token is the holder")
    ttl_seconds: Optional[float] = Field(default=None, ge=0.0, description="Remaining lease")
