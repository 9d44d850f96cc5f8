"""cacheguard exception classes."""


class CacheGuardError(Exception):
    """Base exception for all cacheguard errors."""
    pass


class StoreUnavailableError(CacheGuardError):
    """Raised when the key-value store cannot be reached or fails a command."""
    pass


class StoreTimeoutError(StoreUnavailableError):
    """Raised when a store command times out."""
    pass


class LockError(CacheGuardError):
    """Base class for lock ownership errors."""

    def __init__(self, message: str, resource_key: str = None):
        super().__init__(message)
        self.resource_key = resource_key


class LockNotAcquiredError(LockError):
    """Raised when a lock handle is required but another token holds the lease."""
    pass


class LockNotHeldError(LockError):
    """Raised when the caller no longer owns a lease it believes it holds."""
    pass


class CacheContendedError(CacheGuardError):
    """Raised when the population lock stayed busy and the cache is still empty."""

    def __init__(self, key: str, attempts: int = 0):
        super().__init__(
            f"Cache key '{key}' is being populated by another caller "
            f"(gave up after {attempts} lock attempts)"
        )
        self.key = key
        self.attempts = attempts


class UnknownKeyError(CacheGuardError):
    """Raised when the bloom filter rules out a key, so no load is attempted."""

    def __init__(self, key: str):
        super().__init__(f"Cache key '{key}' is not registered in the bloom filter")
        self.key = key


class CircuitOpenError(CacheGuardError):
    """Raised when the loader circuit breaker is open and the cache missed."""

    def __init__(self, key: str, retry_after: float = 0.0):
        super().__init__(
            f"Loader circuit is open, not loading '{key}' (retry in {retry_after:.1f}s)"
        )
        self.key = key
        self.retry_after = retry_after
