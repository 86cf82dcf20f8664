"""
Batched loader that collapses many single-key loads into one multi-key fetch.
"""

import asyncio
import fnmatch
import threading
import time
from collections import OrderedDict
from collections.abc import Mapping
from typing import Any, Awaitable, Callable, Dict, Hashable, Iterable, List, Optional, Sequence, TYPE_CHECKING

from shared.errors import BatchLoadError, FetchTimeoutError
from shared.logging import get_logger

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shared.metrics import MetricsCollector
    from ..manager import TieredCacheManager


BatchFn = Callable[[List[Any]], Awaitable[Any]]

DEFAULT_MAX_BATCH_SIZE = 100


class BatchLoader:
    """
    Per-key load requests issued within one tick become one ``batch_fn`` call.

    Lifecycle of a key:
    - Queued: the first ``load(key)`` queues it and returns a pending future
    - Dispatched: at the tick boundary (or once the queue holds
      ``max_batch_size`` keys) the queue is drained and sent as one batch
    - Resolved: each future gets its key's value, or None if the batch did not
      return it

    Later loads for a queued or in-flight key attach to the existing future.
    When a manager is supplied, keys it already holds are answered from the
    cache and never reach ``batch_fn``; fetched values are written back unless
    the namespace was invalidated while the batch ran. Keys must then be
    strings, since they double as cache keys.

    The per-loader result cache is short lived: entries expire after
    ``memo_ttl`` (the namespace TTL when a manager is supplied) and are dropped
    when the manager deletes or invalidates their key.
    A failing batch rejects every future in it with the same error.

    Usage:
        loader = BatchLoader(fetch_products, manager=manager, namespace="products")
        products = await asyncio.gather(*(loader.load(pid) for pid in product_ids))
    """

    def __init__(
        self,
        batch_fn: BatchFn,
        *,
        manager: Optional["TieredCacheManager"] = None,
        namespace: Optional[str] = None,
        max_batch_size: int = DEFAULT_MAX_BATCH_SIZE,
        batch_interval: float = 0.0,
        cache_results: bool = True,
        timeout: Optional[float] = None,
        name: str = "loader",
        metrics: Optional["MetricsCollector"] = None,
        memo_ttl: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Args:
            batch_fn: ``await batch_fn(keys)`` returning a mapping of key to
                value, or a sequence aligned with ``keys``
            manager: Tiered cache consulted before and updated after a batch
            namespace: Cache namespace (defaults to ``name``)
            max_batch_size: Keys per outbound batch
            batch_interval: Tick length in seconds; 0 means end of the current
                event loop iteration
            cache_results: Memoise results per key (see ``memo_ttl``)
            timeout: Max seconds a batch may take (None for unbounded)
            name: Loader name used in logs and metrics
            metrics: Optional metrics collector
            memo_ttl: Seconds a memoised result stays valid; defaults to the
                namespace base TTL with a manager, unbounded without one
            clock: Monotonic clock used for memo expiry
        """
        if max_batch_size < 1:
            raise ValueError("max_batch_size must be at least 1")

        self.batch_fn = batch_fn
        self.manager = manager
        self.name = name
        self.namespace = namespace or name
        self.max_batch_size = max_batch_size
        self.batch_interval = batch_interval
        self.cache_results = cache_results
        self.timeout = timeout
        self.metrics = metrics
        self.clock = clock
        self.logger = get_logger("cache.loader")

        if memo_ttl is None and manager is not None:
            memo_ttl = manager.registry.resolve(self.namespace).base_ttl
        self.memo_ttl = memo_ttl

        self._lock = threading.Lock()
        self._queue: "OrderedDict[Hashable, asyncio.Future[Any]]" = OrderedDict()
        self._in_flight: Dict[Hashable, "asyncio.Future[Any]"] = {}
        self._result_cache: Dict[Hashable, "asyncio.Future[Any]"] = {}
        self._memo_expires: Dict[Hashable, float] = {}
        self._dispatch_handle: Optional[asyncio.Handle] = None
        self._tasks: set = set()

        self._stats = {
            "loads": 0,
            "batches": 0,
            "keys_fetched": 0,
            "cache_hits": 0,
            "coalesced": 0,
            "memoized": 0,
            "errors": 0,
        }

        if manager is not None:
            manager.add_invalidation_listener(self._on_invalidate)

    async def load(self, key: Hashable) -> Optional[Any]:
        """
        Load one key through the next batch.

        Raises:
            TypeError: If a manager is attached and key is not a string
            Exception: The batch's error when the batch containing key failed
        """
        if self.manager is not None and not isinstance(key, str):
            raise TypeError(f"Loader {self.name!r} keys must be strings, got {type(key).__name__}")

        loop = asyncio.get_running_loop()
        dispatch_now = False

        with self._lock:
            self._stats["loads"] += 1
            future = self._memoised(key) if self.cache_results else None
            if future is not None:
                self._stats["memoized"] += 1
            else:
                future = self._in_flight.get(key) or self._queue.get(key)
                if future is not None:
                    self._stats["coalesced"] += 1
                    if self.metrics:
                        self.metrics.increment_counter("loader_coalesced_total", loader=self.name)
                else:
                    future = loop.create_future()
                    self._queue[key] = future
                    if self.cache_results:
                        self._remember(key, future)

                    if len(self._queue) >= self.max_batch_size:
                        dispatch_now = True
                    elif self._dispatch_handle is None:
                        if self.batch_interval > 0:
                            self._dispatch_handle = loop.call_later(self.batch_interval, self._dispatch)
                        else:
                            self._dispatch_handle = loop.call_soon(self._dispatch)

        if dispatch_now:
            self._dispatch()

        # Shield so a cancelled caller does not cancel the future other callers share
        return await asyncio.shield(future)

    async def load_many(self, keys: Iterable[Hashable]) -> List[Optional[Any]]:
        """Load several keys; results are aligned with ``keys``."""
        return list(await asyncio.gather(*(self.load(key) for key in keys)))

    def prime(self, key: Hashable, value: Any) -> bool:
        """
        Seed the result cache for a key. Must run inside the event loop.

        Returns:
            False if the key is already memoised (the existing result wins)
        """
        if not self.cache_results:
            return False

        with self._lock:
            if self._memoised(key) is not None:
                return False
            future = asyncio.get_running_loop().create_future()
            future.set_result(value)
            self._remember(key, future)
        return True

    def clear(self, key: Hashable) -> bool:
        """Forget the memoised result of one key."""
        with self._lock:
            self._memo_expires.pop(key, None)
            return self._result_cache.pop(key, None) is not None

    def clear_all(self) -> None:
        """Forget every memoised result."""
        with self._lock:
            self._result_cache.clear()
            self._memo_expires.clear()

    def get_stats(self) -> Dict[str, Any]:
        """Loader statistics."""
        with self._lock:
            return {
                "name": self.name,
                "namespace": self.namespace,
                **self._stats,
                "queued": len(self._queue),
                "in_flight": len(self._in_flight),
                "memoised_keys": len(self._result_cache),
            }

    def _memoised(self, key: Hashable) -> Optional["asyncio.Future[Any]"]:
        # Caller holds self._lock
        future = self._result_cache.get(key)
        if future is None:
            return None
        expires_at = self._memo_expires.get(key)
        if expires_at is not None and self.clock() >= expires_at:
            del self._result_cache[key]
            del self._memo_expires[key]
            return None
        return future

    def _remember(self, key: Hashable, future: "asyncio.Future[Any]") -> None:
        # Caller holds self._lock
        self._result_cache[key] = future
        if self.memo_ttl is not None:
            self._memo_expires[key] = self.clock() + self.memo_ttl

    def _on_invalidate(self, namespace: Optional[str], key: Optional[str], pattern: Optional[str]) -> None:
        """
        Drop results the manager just deleted or invalidated.

        Memoised results are forgotten and in-flight batches are detached, so
        the next load of an affected key starts a fresh fetch.
        """
        if namespace is not None and namespace != self.namespace:
            return

        def affected(loader_key: Hashable) -> bool:
            if key is not None:
                return str(loader_key) == key
            if pattern is not None:
                return fnmatch.fnmatchcase(str(loader_key), pattern)
            return True

        with self._lock:
            doomed = [memo_key for memo_key in self._result_cache if affected(memo_key)]
            for memo_key in doomed:
                del self._result_cache[memo_key]
                self._memo_expires.pop(memo_key, None)
            for flight_key in [flight_key for flight_key in self._in_flight if affected(flight_key)]:
                del self._in_flight[flight_key]

        if doomed:
            self.logger.debug("Dropped memoised results", loader=self.name, keys=len(doomed))

    def _dispatch(self) -> None:
        """Drain the queue and start one task per outbound batch."""
        with self._lock:
            if self._dispatch_handle is not None:
                self._dispatch_handle.cancel()
                self._dispatch_handle = None
            if not self._queue:
                return

            batch = dict(self._queue)
            self._queue.clear()
            self._in_flight.update(batch)

        keys = sorted(batch, key=str)
        for start in range(0, len(keys), self.max_batch_size):
            chunk = keys[start:start + self.max_batch_size]
            task = asyncio.ensure_future(self._run_batch(chunk, {key: batch[key] for key in chunk}))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    async def _run_batch(self, keys: List[Hashable], futures: Dict[Hashable, "asyncio.Future[Any]"]) -> None:
        results: Dict[Hashable, Any] = {}
        fetched: Dict[Hashable, Any] = {}
        generation = self.manager.generation(self.namespace) if self.manager is not None else None

        try:
            missing = list(keys)
            if self.manager is not None:
                cached = await self.manager.get_many(self.namespace, [str(key) for key in keys])
                for key in keys:
                    if str(key) in cached:
                        results[key] = cached[str(key)]
                missing = [key for key in keys if key not in results]
                with self._lock:
                    self._stats["cache_hits"] += len(results)

            if missing:
                fetched = await self._call_batch_fn(missing)
                results.update(fetched)
        except Exception as e:
            self._reject(keys, futures, e)
            return
        finally:
            with self._lock:
                for key in keys:
                    if self._in_flight.get(key) is futures[key]:
                        del self._in_flight[key]

        for key in keys:
            future = futures[key]
            if not future.done():
                future.set_result(results.get(key))

        if self.metrics:
            self.metrics.increment_counter("loader_batches_total", loader=self.name, result="success")

        to_cache = {str(key): value for key, value in fetched.items() if value is not None}
        if self.manager is not None and to_cache:
            try:
                await self.manager.set_many(self.namespace, to_cache, generation=generation)
            except Exception as e:
                self.logger.warning(
                    "Failed to write batch results to cache",
                    loader=self.name,
                    keys=len(to_cache),
                    error=str(e),
                )

    async def _call_batch_fn(self, keys: List[Hashable]) -> Dict[Hashable, Any]:
        with self._lock:
            self._stats["batches"] += 1
            self._stats["keys_fetched"] += len(keys)
        if self.metrics:
            self.metrics.observe_histogram("loader_batch_size", len(keys), loader=self.name)

        self.logger.debug("Dispatching batch", loader=self.name, keys=len(keys))
        try:
            if self.timeout is None:
                raw = await self.batch_fn(keys)
            else:
                raw = await asyncio.wait_for(self.batch_fn(keys), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            raise FetchTimeoutError(f"{self.name}[{len(keys)} keys]", self.timeout) from e

        return self._normalize(keys, raw)

    def _normalize(self, keys: Sequence[Hashable], raw: Any) -> Dict[Hashable, Any]:
        """Map a batch result back onto its keys."""
        if isinstance(raw, Mapping):
            return {key: raw.get(key) for key in keys}

        if isinstance(raw, Sequence) and not isinstance(raw, (str, bytes)):
            if len(raw) != len(keys):
                raise BatchLoadError(
                    "Batch function returned the wrong number of results",
                    {"loader": self.name, "expected": len(keys), "received": len(raw)},
                )
            return dict(zip(keys, raw))

        raise BatchLoadError(
            "Batch function must return a mapping or a sequence",
            {"loader": self.name, "type": type(raw).__name__},
        )

    def _reject(
        self,
        keys: List[Hashable],
        futures: Dict[Hashable, "asyncio.Future[Any]"],
        error: Exception,
    ) -> None:
        with self._lock:
            self._stats["errors"] += 1
            for key in keys:
                if self._result_cache.get(key) is futures[key]:
                    del self._result_cache[key]
                    self._memo_expires.pop(key, None)

        for key in keys:
            future = futures[key]
            if not future.done():
                future.set_exception(error)

        self.logger.error("Batch load failed", loader=self.name, keys=len(keys), error=str(error))
        if self.metrics:
            self.metrics.increment_counter("loader_batches_total", loader=self.name, result="error")
