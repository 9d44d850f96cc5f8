"""
Asyncio Valkey connection holder used by ValkeyStore.

Owns the connection pool, connects with bounded exponential backoff and
re-checks the connection at most once per health_check_interval.
"""

import asyncio
import logging
import time
from typing import Optional

import valkey.asyncio as valkey
from valkey.exceptions import ConnectionError, TimeoutError

from ..exceptions import StoreUnavailableError
from .config import ValkeyConfig

logger = logging.getLogger(__name__)


class ValkeyClient:
    """Connection pool plus reconnect logic for one Valkey server."""

    max_connection_attempts = 5
    reconnect_delay = 0.5
    max_reconnect_delay = 10.0

    def __init__(self, config: Optional[ValkeyConfig] = None):
        """
        Args:
            config: ValkeyConfig instance, defaults to environment-based config
        """
        self.config = config or ValkeyConfig.from_env()
        self._client: Optional[valkey.Valkey] = None
        self._connection_pool: Optional[valkey.ConnectionPool] = None
        self._is_connected = False
        self._last_health_check = 0.0

        logger.info(f"Initializing Valkey client: {self.config}")

    async def connect(self) -> None:
        """
        Open the pool and ping the server, retrying with backoff.

        Raises:
            StoreUnavailableError: If every attempt failed
        """
        if self._is_connected and self._client:
            return

        for attempt in range(1, self.max_connection_attempts + 1):
            try:
                self._connection_pool = valkey.ConnectionPool(**self.config.to_connection_pool_kwargs())
                self._client = valkey.Valkey(connection_pool=self._connection_pool)
                await self._ping()
            except (ConnectionError, TimeoutError, OSError, StoreUnavailableError) as e:
                logger.warning(f"Valkey connection attempt {attempt} failed: {e}")
                if attempt == self.max_connection_attempts:
                    raise StoreUnavailableError(
                        f"Failed to connect to Valkey after {attempt} attempts. Last error: {e}"
                    ) from e
                delay = min(self.reconnect_delay * (2 ** (attempt - 1)), self.max_reconnect_delay)
                await asyncio.sleep(delay)
            else:
                self._is_connected = True
                self._last_health_check = time.monotonic()
                logger.info(f"Connected to Valkey at {self.config.host}:{self.config.port}")
                return

    async def disconnect(self) -> None:
        """Close the pool."""
        if self._connection_pool is None:
            return
        try:
            await self._connection_pool.disconnect()
            logger.info("Disconnected from Valkey server")
        except (ConnectionError, OSError) as e:
            logger.warning(f"Error during Valkey disconnect: {e}")
        finally:
            self._connection_pool = None
            self._client = None
            self._is_connected = False

    async def _ping(self) -> None:
        if not self._client:
            raise StoreUnavailableError("Client not initialized")
        try:
            result = await self._client.ping()
        except (ConnectionError, TimeoutError, OSError) as e:
            raise StoreUnavailableError(f"Connection test failed: {e}") from e
        if not result:
            raise StoreUnavailableError("Ping returned False")

    async def health_check(self, force: bool = False) -> bool:
        """
        Ping the server unless a check ran within health_check_interval.

        Returns:
            bool: True if connection is healthy
        """
        now = time.monotonic()
        if not force and (now - self._last_health_check) < self.config.health_check_interval:
            return self._is_connected
        self._last_health_check = now

        if not self._client or not self._is_connected:
            return False
        try:
            await self._ping()
            return True
        except StoreUnavailableError as e:
            logger.warning(f"Health check failed: {e}")
            self._is_connected = False
            return False

    async def ensure_connection(self) -> None:
        """
        Reconnect if the last health check failed.

        Raises:
            StoreUnavailableError: If connection cannot be established
        """
        if not await self.health_check():
            logger.info("Connection unhealthy, attempting reconnection...")
            self._is_connected = False
            await self.connect()

    @property
    def client(self) -> valkey.Valkey:
        """
        The underlying valkey.asyncio client.

        Raises:
            StoreUnavailableError: If not connected
        """
        if not self._client or not self._is_connected:
            raise StoreUnavailableError("Client not connected. Call connect() first.")
        return self._client
