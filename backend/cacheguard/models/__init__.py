"""
cacheguard models package.

Dataclass and Pydantic v2 models describing leases, lock status and
component metrics.
"""

from .enums import CircuitState, ContentionPolicy, GetOutcome
from .lock import LockInfo
from .metrics import LockMetricsModel, GuardMetricsModel, LockStatusModel

__all__ = [
    "CircuitState",
    "ContentionPolicy",
    "GetOutcome",
    "LockInfo",
    "LockMetricsModel",
    "GuardMetricsModel",
    "LockStatusModel",
]
