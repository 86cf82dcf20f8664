"""
Request coalescing to prevent duplicate fetches on concurrent misses.

When multiple coroutines miss on the same cache key at once, only one fetch
runs and every waiter shares its result or its error.
"""

import asyncio
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional

from shared.errors import FetchTimeoutError
from shared.logging import get_logger


@dataclass
class InFlightRequest:
    """Tracks an in-progress fetch."""
    future: "asyncio.Future[Any]"
    started_at: float = field(default_factory=time.monotonic)
    waiter_count: int = 0


class RequestCoalescer:
    """
    Ensures concurrent fetches for the same key share one call.

    Pattern:
    - First caller for a key starts the fetch as a task
    - Later callers for the same key await the same future
    - The fetch is bounded by a timeout; a timeout is an error for everyone

    Usage:
        coalescer = RequestCoalescer(timeout=10.0)
        value = await coalescer.run("catalog:item-1", fetch_product)
    """

    def __init__(self, timeout: Optional[float] = 30.0):
        """
        Args:
            timeout: Default max seconds a fetch may take (None for unbounded)
        """
        self._in_flight: Dict[str, InFlightRequest] = {}
        self._lock = threading.Lock()
        self._timeout = timeout
        self.logger = get_logger("cache.coalescer")

    async def run(
        self,
        key: str,
        fetch_fn: Callable[[], Awaitable[Any]],
        timeout: Optional[float] = None,
    ) -> Any:
        """
        Join an in-flight fetch for ``key`` or start a new one.

        Raises:
            FetchTimeoutError: If the fetch exceeds its timeout
            Exception: Any error from fetch_fn is propagated
        """
        with self._lock:
            in_flight = self._in_flight.get(key)
            if in_flight is not None:
                in_flight.waiter_count += 1
                self.logger.debug(
                    "Coalescing fetch",
                    key=key,
                    waiters=in_flight.waiter_count,
                )
            else:
                task = asyncio.ensure_future(
                    self._fetch(key, fetch_fn, self._timeout if timeout is None else timeout)
                )
                in_flight = InFlightRequest(future=task)
                self._in_flight[key] = in_flight
                task.add_done_callback(lambda _done, key=key, entry=in_flight: self._forget(key, entry))
                self.logger.debug("Initiating fetch", key=key)

        # Shield so one cancelled waiter does not cancel the shared fetch
        return await asyncio.shield(in_flight.future)

    async def _fetch(
        self,
        key: str,
        fetch_fn: Callable[[], Awaitable[Any]],
        timeout: Optional[float],
    ) -> Any:
        try:
            if timeout is None:
                return await fetch_fn()
            return await asyncio.wait_for(fetch_fn(), timeout=timeout)
        except asyncio.TimeoutError as e:
            self.logger.error("Fetch timed out", key=key, timeout=timeout)
            raise FetchTimeoutError(key, timeout) from e
        except Exception as e:
            self.logger.warning("Fetch failed", key=key, error=str(e))
            raise

    def _forget(self, key: str, entry: InFlightRequest) -> None:
        with self._lock:
            if self._in_flight.get(key) is entry:
                del self._in_flight[key]
        # Mark the outcome retrieved even if every waiter went away
        if not entry.future.cancelled():
            entry.future.exception()

    def detach(self, predicate: Callable[[str], bool]) -> int:
        """
        Stop sharing in-flight fetches whose key matches ``predicate``.

        Current waiters still get their result; the next caller for a detached
        key starts a fresh fetch.
        """
        with self._lock:
            doomed = [key for key in self._in_flight if predicate(key)]
            for key in doomed:
                del self._in_flight[key]
        return len(doomed)

    @property
    def active_requests(self) -> int:
        """Number of currently in-flight fetches."""
        with self._lock:
            return len(self._in_flight)

    def get_stats(self) -> Dict[str, Any]:
        """Get coalescer statistics."""
        with self._lock:
            return {
                "active_requests": len(self._in_flight),
                "active_keys": list(self._in_flight.keys()),
            }
