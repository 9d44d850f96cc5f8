"""
Circuit breaker around a cache loader.

Consecutive loader failures open the circuit; while it is open the guard
answers cache hits as usual but refuses to call the loader. After
recovery_timeout_seconds trial calls are let through (half-open). A
success closes the circuit, a failure opens it again.
"""

import logging
import time
from typing import Callable

from ..models.enums import CircuitState

logger = logging.getLogger(__name__)


class CircuitBreaker:
    """In-process breaker with closed, open and half-open states."""

    def __init__(
        self,
        failure_threshold: int = 5,
        recovery_timeout_seconds: float = 30.0,
        clock: Callable[[], float] = time.monotonic
    ):
        """
        Args:
            failure_threshold: Consecutive failures that open the circuit
            recovery_timeout_seconds: Time spent open before a trial call
            clock: Monotonic seconds source
        """
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be at least 1")
        if recovery_timeout_seconds <= 0:
            raise ValueError("recovery_timeout_seconds must be positive")

        self.failure_threshold = failure_threshold
        self.recovery_timeout_seconds = recovery_timeout_seconds
        self._clock = clock
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._opened_at = 0.0

    @property
    def state(self) -> CircuitState:
        if self._state == CircuitState.OPEN and self.retry_after() <= 0:
            return CircuitState.HALF_OPEN
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failures

    def retry_after(self) -> float:
        """Seconds until an open circuit lets a trial call through."""
        if self._state != CircuitState.OPEN:
            return 0.0
        return max(0.0, self._opened_at + self.recovery_timeout_seconds - self._clock())

    def allow_request(self) -> bool:
        """
        Check whether the loader may be called now.

        An open circuit whose recovery timeout passed moves to half-open and
        admits calls until the first one reports back.
        """
        if self._state == CircuitState.CLOSED:
            return True

        if self._state == CircuitState.OPEN:
            if self.retry_after() > 0:
                return False
            self._state = CircuitState.HALF_OPEN
            logger.info("Loader circuit half-open, allowing trial calls")
        return True

    def record_success(self) -> None:
        if self._state != CircuitState.CLOSED:
            logger.info("Loader circuit closed after a successful call")
        self._state = CircuitState.CLOSED
        self._failures = 0

    def record_failure(self) -> None:
        self._failures += 1

        if self._state == CircuitState.HALF_OPEN or self._failures >= self.failure_threshold:
            if self._state != CircuitState.OPEN:
                logger.warning(
                    f"Loader circuit opened after {self._failures} failures, "
                    f"retrying in {self.recovery_timeout_seconds}s"
                )
            self._state = CircuitState.OPEN
            self._opened_at = self._clock()

    def reset(self) -> None:
        """Force the circuit closed."""
        self._state = CircuitState.CLOSED
        self._failures = 0
