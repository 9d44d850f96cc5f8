"""
Lock lease model.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict


@dataclass
class LockInfo:
    """A lease held on a resource, identified by its ownership token."""
    resource_key: str
    lock_key: str
    token: str
    lease_seconds: float
    acquired_at: datetime
    expires_at: datetime

    @classmethod
    def granted(cls, resource_key: str, lock_key: str, token: str, lease_seconds: float) -> "LockInfo":
        acquired_at = datetime.now()
        return cls(
            resource_key=resource_key,
            lock_key=lock_key,
            token=token,
            lease_seconds=lease_seconds,
            acquired_at=acquired_at,
            expires_at=acquired_at + timedelta(seconds=lease_seconds),
        )

    def extended(self, lease_seconds: float) -> None:
        """Record a successful renewal."""
        self.lease_seconds = lease_seconds
        self.expires_at = datetime.now() + timedelta(seconds=lease_seconds)

    @property
    def is_expired(self) -> bool:
        """Local estimate; the store's TTL is authoritative."""
        return datetime.now() >= self.expires_at

    @property
    def remaining_seconds(self) -> float:
        return max(0.0, (self.expires_at - datetime.now()).total_seconds())

    def to_dict(self) -> Dict[str, Any]:
        """Convert lock info to dictionary."""
        return {
            "resource_key": self.resource_key,
            "lock_key": self.lock_key,
            "token": self.token,
            "lease_seconds": self.lease_seconds,
            "acquired_at": self.acquired_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
            "is_expired": self.is_expired,
            "remaining_seconds": self.remaining_seconds,
        }
