"""
Key-value store backends used by the lock manager, cache and rate limiters.

The lock and cache layers only rely on a handful of atomic primitives:
SET-if-absent with expiry, token-checked delete and expire, plain reads and
writes, and two counter scripts for rate limiting. ``ValkeyStore`` runs
them against a Valkey server with Lua scripts; ``InMemoryStore`` runs them
inside one event loop for tests, demos and single-process use.
"""

import abc
import asyncio
import logging
import time
from typing import Any, Awaitable, Dict, List, Optional, Sequence, Set, Tuple

from valkey.exceptions import ConnectionError, TimeoutError, ResponseError

from ..exceptions import StoreUnavailableError, StoreTimeoutError
from .client import ValkeyClient

logger = logging.getLogger(__name__)


COMPARE_AND_DELETE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
else
    return 0
end
"""

COMPARE_AND_EXPIRE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("pexpire", KEYS[1], ARGV[2])
else
    return 0
end
"""

INCREMENT_WINDOW_SCRIPT = """
local count = redis.call("incr", KEYS[1])
if count == 1 then
    redis.call("pexpire", KEYS[1], ARGV[1])
end
return count
"""

SLIDING_WINDOW_SCRIPT = """
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local limit = tonumber(ARGV[3])
redis.call("zremrangebyscore", KEYS[1], "-inf", now - window)
local count = redis.call("zcard", KEYS[1])
if count < limit then
    redis.call("zadd", KEYS[1], now, ARGV[4])
    redis.call("pexpire", KEYS[1], window)
    return {1, count + 1}
end
return {0, count}
"""


def _to_millis(seconds: float) -> int:
    """Convert a TTL in seconds to whole milliseconds, never below 1ms."""
    return max(1, int(round(seconds * 1000)))


class KeyValueStore(abc.ABC):
    """Async key-value store contract shared by every backend."""

    @abc.abstractmethod
    async def set_if_absent(self, key: str, value: str, ttl_seconds: float) -> bool:
        """Set ``key`` only if absent, with expiry. True if it was set."""

    @abc.abstractmethod
    async def compare_and_delete(self, key: str, expected: str) -> bool:
        """Delete ``key`` only if it currently holds ``expected``."""

    @abc.abstractmethod
    async def compare_and_expire(self, key: str, expected: str, ttl_seconds: float) -> bool:
        """Reset the expiry of ``key`` only if it currently holds ``expected``."""

    @abc.abstractmethod
    async def get(self, key: str) -> Optional[str]:
        """Return the value, or None when missing or expired."""

    @abc.abstractmethod
    async def set(self, key: str, value: str, ttl_seconds: Optional[float] = None) -> None:
        """Unconditionally write ``key``, optionally with expiry."""

    @abc.abstractmethod
    async def delete(self, key: str) -> bool:
        """Delete ``key``. True if something was removed."""

    @abc.abstractmethod
    async def ttl(self, key: str) -> Optional[float]:
        """Remaining lifetime in seconds; None if missing or persistent."""

    @abc.abstractmethod
    async def increment_window(self, key: str, window_seconds: float) -> int:
        """Increment a counter, starting its expiry window on the first hit."""

    @abc.abstractmethod
    async def sliding_window_hit(
        self,
        key: str,
        now_ms: int,
        window_seconds: float,
        limit: int,
        member: str,
    ) -> Tuple[bool, int]:
        """
        Record ``member`` in a sorted-set log if fewer than ``limit`` entries
        fall inside the trailing window. Returns (recorded, count).
        """

    @abc.abstractmethod
    async def set_bits(self, key: str, offsets: Sequence[int]) -> None:
        """Set every bit in ``offsets`` of the bitmap at ``key`` to 1."""

    @abc.abstractmethod
    async def get_bits(self, key: str, offsets: Sequence[int]) -> List[int]:
        """Read the bits at ``offsets``; missing bitmaps read as all zeros."""

    @abc.abstractmethod
    async def ping(self) -> bool:
        """Check the store is reachable."""

    async def close(self) -> None:
        """Release backend resources."""


class ValkeyStore(KeyValueStore):
    """
    KeyValueStore backed by a Valkey server.

    Conditional operations run as Lua scripts so the compare and the
    mutation happen in one atomic step on the server.
    """

    def __init__(self, client: ValkeyClient, key_prefix: Optional[str] = None):
        """
        Args:
            client: Connected or connectable ValkeyClient
            key_prefix: Namespace prepended to every key (defaults to client config)
        """
        self.client = client
        self.key_prefix = key_prefix if key_prefix is not None else client.config.key_prefix
        self._scripts: Dict[str, Any] = {}
        self._scripts_owner = None

    def _key(self, key: str) -> str:
        return f"{self.key_prefix}{key}"

    async def _valkey(self):
        await self.client.ensure_connection()
        return self.client.client

    async def _script(self, name: str, source: str):
        conn = await self._valkey()
        # Scripts are bound to the connection object; re-register after a reconnect
        if conn is not self._scripts_owner:
            self._scripts.clear()
            self._scripts_owner = conn
        if name not in self._scripts:
            self._scripts[name] = conn.register_script(source)
        return self._scripts[name]

    async def _execute(self, operation: str, key: str, awaitable: Awaitable[Any]) -> Any:
        """Await a store command, translating transport failures."""
        try:
            return await awaitable
        except TimeoutError as e:
            logger.error(f"Valkey {operation} timed out for key {key}: {e}")
            raise StoreTimeoutError(f"{operation} timed out for key '{key}': {e}") from e
        except (ConnectionError, ResponseError, OSError) as e:
            logger.error(f"Valkey {operation} failed for key {key}: {e}")
            raise StoreUnavailableError(f"{operation} failed for key '{key}': {e}") from e

    async def _run_script(self, name: str, source: str, keys, args) -> Any:
        try:
            script = await self._script(name, source)
        except (ConnectionError, TimeoutError, OSError) as e:
            raise StoreUnavailableError(f"Could not load script {name}: {e}") from e
        return await self._execute(name, keys[0], script(keys=keys, args=args))

    async def set_if_absent(self, key: str, value: str, ttl_seconds: float) -> bool:
        conn = await self._valkey()
        result = await self._execute(
            "set_if_absent",
            key,
            conn.set(self._key(key), value, nx=True, px=_to_millis(ttl_seconds)),
        )
        return bool(result)

    async def compare_and_delete(self, key: str, expected: str) -> bool:
        result = await self._run_script(
            "compare_and_delete", COMPARE_AND_DELETE_SCRIPT, [self._key(key)], [expected]
        )
        return bool(result)

    async def compare_and_expire(self, key: str, expected: str, ttl_seconds: float) -> bool:
        result = await self._run_script(
            "compare_and_expire",
            COMPARE_AND_EXPIRE_SCRIPT,
            [self._key(key)],
            [expected, _to_millis(ttl_seconds)],
        )
        return bool(result)

    async def get(self, key: str) -> Optional[str]:
        conn = await self._valkey()
        return await self._execute("get", key, conn.get(self._key(key)))

    async def set(self, key: str, value: str, ttl_seconds: Optional[float] = None) -> None:
        conn = await self._valkey()
        if ttl_seconds:
            await self._execute("set", key, conn.set(self._key(key), value, px=_to_millis(ttl_seconds)))
        else:
            await self._execute("set", key, conn.set(self._key(key), value))

    async def delete(self, key: str) -> bool:
        conn = await self._valkey()
        return bool(await self._execute("delete", key, conn.delete(self._key(key))))

    async def ttl(self, key: str) -> Optional[float]:
        conn = await self._valkey()
        remaining_ms = await self._execute("ttl", key, conn.pttl(self._key(key)))
        # -2: missing, -1: no expiry
        if remaining_ms is None or remaining_ms < 0:
            return None
        return remaining_ms / 1000.0

    async def increment_window(self, key: str, window_seconds: float) -> int:
        result = await self._run_script(
            "increment_window",
            INCREMENT_WINDOW_SCRIPT,
            [self._key(key)],
            [_to_millis(window_seconds)],
        )
        return int(result)

    async def sliding_window_hit(
        self,
        key: str,
        now_ms: int,
        window_seconds: float,
        limit: int,
        member: str,
    ) -> Tuple[bool, int]:
        recorded, count = await self._run_script(
            "sliding_window",
            SLIDING_WINDOW_SCRIPT,
            [self._key(key)],
            [now_ms, _to_millis(window_seconds), limit, member],
        )
        return bool(recorded), int(count)

    async def set_bits(self, key: str, offsets: Sequence[int]) -> None:
        conn = await self._valkey()
        # one round trip for all offsets
        pipe = conn.pipeline(transaction=False)
        for offset in offsets:
            pipe.setbit(self._key(key), offset, 1)
        await self._execute("set_bits", key, pipe.execute())

    async def get_bits(self, key: str, offsets: Sequence[int]) -> List[int]:
        conn = await self._valkey()
        pipe = conn.pipeline(transaction=False)
        for offset in offsets:
            pipe.getbit(self._key(key), offset)
        results = await self._execute("get_bits", key, pipe.execute())
        return [int(bit) for bit in results]

    async def ping(self) -> bool:
        return await self.client.health_check(force=True)

    async def close(self) -> None:
        self._scripts.clear()
        self._scripts_owner = None
        await self.client.disconnect()


class InMemoryStore(KeyValueStore):
    """
    Single event loop KeyValueStore with TTL support.

    Every operation finishes without awaiting once it starts, so within one
    event loop each call is atomic just like a Lua script on the server.
    ``latency_seconds`` adds an await before each call to mimic a network
    round trip, and ``available`` can be switched off to simulate an outage.
    """

    def __init__(self, latency_seconds: float = 0.0, clock=time.monotonic):
        self.latency_seconds = latency_seconds
        self.available = True
        self._clock = clock
        # key -> (value, expires_at or None); sorted sets store a dict of member -> score,
        # bitmaps a set of offsets that are 1
        self._data: Dict[str, Tuple[Any, Optional[float]]] = {}

    async def _enter(self, operation: str, key: str) -> None:
        await asyncio.sleep(self.latency_seconds)
        if not self.available:
            raise StoreUnavailableError(f"{operation} failed for key '{key}': store unavailable")

    def _expires_at(self, ttl_seconds: Optional[float]) -> Optional[float]:
        if not ttl_seconds:
            return None
        return self._clock() + ttl_seconds

    def _live(self, key: str) -> Optional[Tuple[Any, Optional[float]]]:
        entry = self._data.get(key)
        if entry is None:
            return None
        expires_at = entry[1]
        if expires_at is not None and self._clock() >= expires_at:
            del self._data[key]
            return None
        return entry

    async def set_if_absent(self, key: str, value: str, ttl_seconds: float) -> bool:
        await self._enter("set_if_absent", key)
        if self._live(key) is not None:
            return False
        self._data[key] = (value, self._expires_at(ttl_seconds))
        return True

    async def compare_and_delete(self, key: str, expected: str) -> bool:
        await self._enter("compare_and_delete", key)
        entry = self._live(key)
        if entry is None or entry[0] != expected:
            return False
        del self._data[key]
        return True

    async def compare_and_expire(self, key: str, expected: str, ttl_seconds: float) -> bool:
        await self._enter("compare_and_expire", key)
        entry = self._live(key)
        if entry is None or entry[0] != expected:
            return False
        self._data[key] = (entry[0], self._expires_at(ttl_seconds))
        return True

    async def get(self, key: str) -> Optional[str]:
        await self._enter("get", key)
        entry = self._live(key)
        if entry is None or not isinstance(entry[0], str):
            return None
        return entry[0]

    async def set(self, key: str, value: str, ttl_seconds: Optional[float] = None) -> None:
        await self._enter("set", key)
        self._data[key] = (value, self._expires_at(ttl_seconds))

    async def delete(self, key: str) -> bool:
        await self._enter("delete", key)
        if self._live(key) is None:
            return False
        del self._data[key]
        return True

    async def ttl(self, key: str) -> Optional[float]:
        await self._enter("ttl", key)
        entry = self._live(key)
        if entry is None or entry[1] is None:
            return None
        return max(0.0, entry[1] - self._clock())

    async def increment_window(self, key: str, window_seconds: float) -> int:
        await self._enter("increment_window", key)
        entry = self._live(key)
        if entry is None:
            self._data[key] = ("1", self._expires_at(window_seconds))
            return 1
        count = int(entry[0]) + 1
        self._data[key] = (str(count), entry[1])
        return count

    async def sliding_window_hit(
        self,
        key: str,
        now_ms: int,
        window_seconds: float,
        limit: int,
        member: str,
    ) -> Tuple[bool, int]:
        await self._enter("sliding_window_hit", key)
        window_ms = _to_millis(window_seconds)
        entry = self._live(key)
        members: Dict[str, int] = dict(entry[0]) if entry else {}
        members = {m: score for m, score in members.items() if score > now_ms - window_ms}
        if len(members) < limit:
            members[member] = now_ms
            self._data[key] = (members, self._expires_at(window_seconds))
            return True, len(members)
        self._data[key] = (members, entry[1] if entry else None)
        return False, len(members)

    async def set_bits(self, key: str, offsets: Sequence[int]) -> None:
        await self._enter("set_bits", key)
        entry = self._live(key)
        bits: Set[int] = set(entry[0]) if entry and isinstance(entry[0], set) else set()
        bits.update(offsets)
        self._data[key] = (bits, entry[1] if entry else None)

    async def get_bits(self, key: str, offsets: Sequence[int]) -> List[int]:
        await self._enter("get_bits", key)
        entry = self._live(key)
        bits = entry[0] if entry and isinstance(entry[0], set) else set()
        return [1 if offset in bits else 0 for offset in offsets]

    async def ping(self) -> bool:
        return self.available

    async def close(self) -> None:
        self._data.clear()

    def __len__(self) -> int:
        return sum(1 for key in list(self._data) if self._live(key) is not None)
