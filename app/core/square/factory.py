"""
Square Client Factory

Caches one SquareClient per (access token, environment). The cache is
bounded: idle entries are evicted first, then least-recently-used ones.
"""

import asyncio
import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional

from app.core.square.client import SquareClient
from app.core.tenant import TenantContext, mask_token, normalize_environment

logger = logging.getLogger(__name__)

MAX_CACHE_SIZE = 50
MAX_IDLE_SECONDS = 10 * 60


@dataclass
class ClientCacheEntry:
    """A configured client and when it was last handed out."""

    client: SquareClient
    last_used: float


class ClientFactory:
    """LRU-bounded cache of Square clients keyed by `token:environment`."""

    def __init__(
        self,
        max_size: int = MAX_CACHE_SIZE,
        max_idle: float = MAX_IDLE_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        builder: Callable[[Optional[str], str], SquareClient] = SquareClient,
    ):
        self.max_size = max_size
        self.max_idle = max_idle
        self._clock = clock
        self._builder = builder
        self._cache: dict[str, ClientCacheEntry] = {}
        self._lock = threading.Lock()

    @staticmethod
    def cache_key(token: Optional[str], environment: Optional[str]) -> str:
        return f"{token or 'anonymous'}:{normalize_environment(environment)}"

    def get_client(self, token: Optional[str], environment: Optional[str] = None) -> SquareClient:
        """Return the cached client for the pair, building one on a miss."""
        env = normalize_environment(environment)
        key = self.cache_key(token, env)

        with self._lock:
            now = self._clock()
            entry = self._cache.get(key)
            if entry is not None:
                entry.last_used = now
                return entry.client

            client = self._builder(token, env)
            self._cache[key] = ClientCacheEntry(client=client, last_used=now)
            logger.info(
                f"Square client created | env: {env} | token: {mask_token(token)} | "
                f"cache_size: {len(self._cache)}"
            )
            evicted = self._prune(now)

        for stale in evicted:
            self._schedule_close(stale)
        return client

    def get_tenant_client(self, tenant: TenantContext) -> SquareClient:
        return self.get_client(tenant.access_token, tenant.environment)

    def _prune(self, now: float) -> list[SquareClient]:
        """Drop idle entries, then oldest entries while over capacity. Caller holds the lock."""
        evicted = []
        for key in [k for k, e in self._cache.items() if now - e.last_used > self.max_idle]:
            evicted.append(self._cache.pop(key).client)

        if len(self._cache) > self.max_size:
            by_age = sorted(self._cache.items(), key=lambda item: item[1].last_used)
            for key, _ in by_age[: len(self._cache) - self.max_size]:
                evicted.append(self._cache.pop(key).client)

        if evicted:
            logger.debug(f"Square clients evicted | count: {len(evicted)}")
        return evicted

    @staticmethod
    def _schedule_close(client: SquareClient) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        loop.create_task(client.close())

    def size(self) -> int:
        return len(self._cache)

    def clear(self) -> None:
        """Forget all clients without closing them."""
        with self._lock:
            self._cache.clear()

    async def close_all(self) -> None:
        """Close every cached client and empty the cache."""
        with self._lock:
            clients = [entry.client for entry in self._cache.values()]
            self._cache.clear()
        for client in clients:
            try:
                await client.close()
            except Exception as e:
                logger.warning(f"Error closing Square client: {e}")
        if clients:
            logger.info(f"Square clients closed | count: {len(clients)}")


# Singleton instance
_factory: Optional[ClientFactory] = None


def get_client_factory() -> ClientFactory:
    """Get singleton client factory."""
    global _factory
    if _factory is None:
        _factory = ClientFactory()
    return _factory
