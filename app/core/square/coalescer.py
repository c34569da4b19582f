"""
Query Coalescer

Merges concurrent identical reads into one upstream call. The first
caller for a key starts the fetch; later callers await the same task.
A successful result stays shared for `ttl` seconds, a failure is
forgotten immediately so the next caller retries.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_TTL = 5.0


class QueryCoalescer:
    """In-process request de-duplication keyed by a canonical string."""

    def __init__(self):
        self._pending: dict[str, asyncio.Task] = {}
        self._expiry: dict[str, asyncio.TimerHandle] = {}
        self._total_requests = 0
        self._coalesced_requests = 0
        self._unique_keys: set[str] = set()

    async def coalesce(
        self,
        key: str,
        fetch: Callable[[], Awaitable[T]],
        ttl: float = DEFAULT_TTL,
    ) -> T:
        """Return the shared result for `key`, fetching at most once per window."""
        self._total_requests += 1
        self._unique_keys.add(key)

        task = self._pending.get(key)
        if task is not None:
            self._coalesced_requests += 1
            logger.debug(
                f"Query coalesced | key: {key} | coalesced: {self._coalesced_requests}"
            )
        else:
            task = asyncio.ensure_future(self._run(key, fetch, ttl))
            self._pending[key] = task
            logger.debug(f"Query coalescing - new request | key: {key}")

        # A cancelled caller must not cancel the fetch other callers share
        return await asyncio.shield(task)

    async def _run(self, key: str, fetch: Callable[[], Awaitable[T]], ttl: float) -> T:
        try:
            result = await fetch()
        except BaseException:
            self._forget(key)
            raise

        if ttl and ttl > 0:
            loop = asyncio.get_running_loop()
            self._expiry[key] = loop.call_later(ttl, self._forget, key)
        else:
            self._forget(key)
        return result

    def _forget(self, key: str) -> None:
        self._pending.pop(key, None)
        handle = self._expiry.pop(key, None)
        if handle is not None:
            handle.cancel()

    def get_stats(self) -> dict[str, Any]:
        """Coalescing effectiveness counters."""
        rate = (
            f"{self._coalesced_requests / self._total_requests * 100:.2f}%"
            if self._total_requests
            else "0%"
        )
        return {
            "totalRequests": self._total_requests,
            "coalescedRequests": self._coalesced_requests,
            "uniqueKeys": len(self._unique_keys),
            "coalescingRate": rate,
            "pendingRequests": len(self._pending),
        }

    def reset_stats(self) -> None:
        self._total_requests = 0
        self._coalesced_requests = 0
        self._unique_keys = set()

    def clear(self) -> None:
        """Drop all shared results (shutdown / tests)."""
        cleared = len(self._pending)
        for handle in self._expiry.values():
            handle.cancel()
        self._expiry.clear()
        self._pending.clear()
        logger.info(f"Query coalescer cleared | cleared_requests: {cleared}")


# Singleton instance
_coalescer: Optional[QueryCoalescer] = None


def get_query_coalescer() -> QueryCoalescer:
    """Get singleton query coalescer."""
    global _coalescer
    if _coalescer is None:
        _coalescer = QueryCoalescer()
    return _coalescer
