"""
Tiered cache manager: local tier in front of a shared tier in front of the
caller's fetch function.
"""

import asyncio
import contextlib
import fnmatch
import threading
import weakref
from dataclasses import dataclass
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    Iterable,
    List,
    Mapping,
    Optional,
    Sequence,
    Set,
    Tuple,
    TYPE_CHECKING,
)

from shared.errors import SerializationError
from shared.logging import get_logger
from ..codec import EntryCodec
from ..local import LocalTierStore
from ..stats import CacheStatsReporter, CacheTier
from ..strategies import NamespaceStrategy, StrategyRegistry
from .coalescer import RequestCoalescer

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shared.metrics import MetricsCollector
    from ..remote import SharedTierClient


FetchFn = Callable[[], Awaitable[Any]]
KeyFetchFn = Callable[[str], Awaitable[Any]]
# listener(namespace, key, pattern); namespace None means every namespace
InvalidationListener = Callable[[Optional[str], Optional[str], Optional[str]], None]
Generation = Tuple[int, int]

DEFAULT_FETCH_TIMEOUT = 10.0
DEFAULT_SWEEP_INTERVAL = 60.0
DEFAULT_STATS_REPORT_INTERVAL = 300.0


@dataclass
class WarmUpEntry:
    """One key to pre-load during warm-up."""
    namespace: str
    key: str
    fetch_fn: FetchFn
    tags: Optional[Sequence[str]] = None


class TieredCacheManager:
    """
    Read-through cache over a local tier and an optional shared tier.

    Lookups go local -> shared -> fetch function. Shared hits are promoted
    into the local tier with the namespace TTL. Writes go to both tiers and a
    failing shared tier never blocks the local write. Fetch errors and fetch
    timeouts propagate to the caller and are never cached.

    Hits whose remaining TTL drops below the namespace ``refresh_threshold``
    are served immediately while one background refresh per key re-runs the
    caller's fetch function (or a refresher registered for the key).
    """

    def __init__(
        self,
        shared_tier: Optional["SharedTierClient"] = None,
        *,
        registry: Optional[StrategyRegistry] = None,
        local_store: Optional[LocalTierStore] = None,
        codec: Optional[EntryCodec] = None,
        stats: Optional[CacheStatsReporter] = None,
        metrics: Optional["MetricsCollector"] = None,
        fetch_timeout: Optional[float] = DEFAULT_FETCH_TIMEOUT,
        sweep_interval: float = DEFAULT_SWEEP_INTERVAL,
        stats_report_interval: float = DEFAULT_STATS_REPORT_INTERVAL,
        warm_concurrency: int = 5,
    ):
        self.shared = shared_tier
        self.codec = codec if codec is not None else EntryCodec()
        self.registry = registry if registry is not None else StrategyRegistry()
        self.local = local_store if local_store is not None else LocalTierStore(codec=self.codec)
        self.metrics = metrics
        self.stats_reporter = stats if stats is not None else CacheStatsReporter(metrics)
        self.fetch_timeout = fetch_timeout
        self.sweep_interval = sweep_interval
        self.stats_report_interval = stats_report_interval
        self.logger = get_logger("cache.manager")

        self._coalescer = RequestCoalescer(timeout=fetch_timeout)
        self._warm_semaphore = asyncio.Semaphore(max(1, warm_concurrency))
        self._lock = threading.Lock()
        self._refreshers: List[Tuple[str, str, KeyFetchFn]] = []
        self._refreshing: Set[str] = set()
        self._background: Set["asyncio.Task[Any]"] = set()
        self._loops: List["asyncio.Task[Any]"] = []
        self._reported_evictions = 0
        self._global_generation = 0
        self._generations: Dict[str, int] = {}
        self._listeners: List[Callable[[], Optional[InvalidationListener]]] = []

    # Lookups

    async def get(
        self,
        namespace: str,
        key: str,
        fetch_fn: Optional[FetchFn] = None,
        *,
        tags: Optional[Sequence[str]] = None,
        timeout: Optional[float] = None,
    ) -> Optional[Any]:
        """
        Read a value, fetching and caching it on a miss when fetch_fn is given.

        Returns:
            The cached or fetched value, or None on a miss without fetch_fn

        Raises:
            FetchTimeoutError: If fetch_fn exceeds its timeout
            Exception: Any error raised by fetch_fn
        """
        strategy = self.registry.resolve(namespace)
        local_key = self._local_key(namespace, key)

        entry = self.local.get_entry(local_key)
        if entry is not None:
            self.stats_reporter.record_hit(namespace, CacheTier.LOCAL)
            self._maybe_refresh(
                namespace, key, entry.remaining(self.local.clock()), strategy, fetch_fn, tags, timeout
            )
            return entry.value

        if self.shared is not None:
            data, remaining = await self.shared.get_with_ttl(namespace, key)
            if data is not None:
                try:
                    value = self.codec.decode(data)
                except SerializationError as e:
                    self.logger.warning(
                        "Discarding undecodable shared entry",
                        namespace=namespace,
                        key=key,
                        error=e.message,
                    )
                else:
                    self._promote(namespace, key, value, strategy)
                    self.stats_reporter.record_hit(namespace, CacheTier.SHARED)
                    self._maybe_refresh(namespace, key, remaining, strategy, fetch_fn, tags, timeout)
                    return value

        self.stats_reporter.record_miss(namespace, self._last_tier)
        if fetch_fn is None:
            return None

        return await self._coalescer.run(
            local_key,
            lambda: self._fetch_and_store(namespace, key, fetch_fn, tags),
            timeout,
        )

    async def get_or_set(
        self,
        namespace: str,
        key: str,
        fetch_fn: FetchFn,
        *,
        tags: Optional[Sequence[str]] = None,
        timeout: Optional[float] = None,
    ) -> Optional[Any]:
        """Return the cached value, computing and caching it if absent."""
        return await self.get(namespace, key, fetch_fn, tags=tags, timeout=timeout)

    async def get_many(self, namespace: str, keys: Sequence[str]) -> Dict[str, Any]:
        """
        Read several keys of one namespace.

        The local tier is consulted first; the remaining keys are read from the
        shared tier in one round trip and promoted. Keys found in neither tier
        are absent from the result.
        """
        strategy = self.registry.resolve(namespace)
        found: Dict[str, Any] = {}
        missing: List[str] = []

        for key in keys:
            entry = self.local.get_entry(self._local_key(namespace, key))
            if entry is not None:
                found[key] = entry.value
                self.stats_reporter.record_hit(namespace, CacheTier.LOCAL)
            else:
                missing.append(key)

        if missing and self.shared is not None:
            payloads = await self.shared.mget(namespace, missing)
            still_missing = []
            for key, data in zip(missing, payloads):
                if data is None:
                    still_missing.append(key)
                    continue
                try:
                    value = self.codec.decode(data)
                except SerializationError as e:
                    self.logger.warning(
                        "Discarding undecodable shared entry",
                        namespace=namespace,
                        key=key,
                        error=e.message,
                    )
                    still_missing.append(key)
                    continue
                self._promote(namespace, key, value, strategy)
                found[key] = value
                self.stats_reporter.record_hit(namespace, CacheTier.SHARED)
            missing = still_missing

        for _ in missing:
            self.stats_reporter.record_miss(namespace, self._last_tier)
        return found

    # Writes

    async def set(
        self,
        namespace: str,
        key: str,
        value: Any,
        *,
        tags: Optional[Sequence[str]] = None,
        ttl: Optional[int] = None,
    ) -> bool:
        """
        Write a value to both tiers.

        Returns:
            True if at least one tier stored the value. False when the value
            cannot be serialized, in which case nothing is cached.
        """
        strategy = self.registry.resolve(namespace)
        ttl = ttl or strategy.base_ttl
        tags = list(tags or ())

        try:
            data = self.codec.encode(value, compress=strategy.compress)
        except SerializationError as e:
            self.logger.warning(
                "Skipping cache write for unserializable value",
                namespace=namespace,
                key=key,
                error=e.message,
            )
            return False

        stored_local = self.local.set(
            self._local_key(namespace, key),
            value,
            ttl,
            tags=tags,
            namespace=namespace,
            size=None if strategy.compress else len(data),
        )
        if stored_local:
            self.stats_reporter.record_set(namespace, CacheTier.LOCAL)
        self._publish_local_usage()

        stored_shared = False
        if self.shared is not None:
            stored_shared = await self.shared.set(namespace, key, data, ttl)
            if stored_shared:
                self.stats_reporter.record_set(namespace, CacheTier.SHARED)
                if tags:
                    await self.shared.tag_keys(tags, namespace, key, ttl)

        return stored_local or stored_shared

    async def set_many(
        self,
        namespace: str,
        values: Mapping[str, Any],
        *,
        tags: Optional[Sequence[str]] = None,
        ttl: Optional[int] = None,
        generation: Optional[Generation] = None,
    ) -> int:
        """
        Write several keys of one namespace; the shared tier gets one pipeline.

        When ``generation`` is given (see ``generation()``) and the namespace
        was invalidated since, nothing is written: the values predate the
        invalidation.
        """
        if generation is not None and generation != self.generation(namespace):
            self.logger.debug("Skipping stale bulk write", namespace=namespace, keys=len(values))
            return 0

        strategy = self.registry.resolve(namespace)
        ttl = ttl or strategy.base_ttl
        tags = list(tags or ())
        items: List[Tuple[str, bytes, int]] = []
        stored = 0

        for key, value in values.items():
            try:
                data = self.codec.encode(value, compress=strategy.compress)
            except SerializationError as e:
                self.logger.warning(
                    "Skipping cache write for unserializable value",
                    namespace=namespace,
                    key=key,
                    error=e.message,
                )
                continue

            if self.local.set(
                self._local_key(namespace, key),
                value,
                ttl,
                tags=tags,
                namespace=namespace,
                size=None if strategy.compress else len(data),
            ):
                self.stats_reporter.record_set(namespace, CacheTier.LOCAL)
            items.append((key, data, ttl))
            stored += 1
        self._publish_local_usage()

        if items and self.shared is not None and await self.shared.mset(namespace, items):
            for key, _, _ in items:
                self.stats_reporter.record_set(namespace, CacheTier.SHARED)
                if tags:
                    await self.shared.tag_keys(tags, namespace, key, ttl)

        return stored

    async def delete(self, namespace: str, key: str) -> bool:
        """Remove a key from both tiers. Returns True if either tier held it."""
        self._invalidated(namespace, key=key)
        removed_local = self.local.delete(self._local_key(namespace, key))
        if removed_local:
            self.stats_reporter.record_delete(namespace, CacheTier.LOCAL)
        self._publish_local_usage()

        removed_shared = False
        if self.shared is not None:
            removed_shared = await self.shared.delete(namespace, key)
            if removed_shared:
                self.stats_reporter.record_delete(namespace, CacheTier.SHARED)

        return removed_local or removed_shared

    # Invalidation

    async def invalidate_by_tag(self, tag: str) -> int:
        """
        Remove every entry carrying ``tag``.

        Local entries are matched on their own tags. Keys listed in the shared
        tag index are removed from both tiers, which also covers local entries
        that were promoted without their tags.

        Returns:
            Number of entries removed across both tiers
        """
        self._invalidated(None)
        removed = self.local.delete_where(lambda entry: tag in entry.tags)

        if self.shared is not None:
            members = await self.shared.tag_members(tag)
            for namespace, key in members:
                if self.local.delete(self._local_key(namespace, key)):
                    removed += 1
            removed += await self.shared.delete_many(members)
            await self.shared.tag_clear(tag)

        self._publish_local_usage()
        self.logger.info("Invalidated cache tag", tag=tag, removed=removed)
        return removed

    async def invalidate_pattern(self, namespace: str, pattern: str) -> int:
        """
        Remove every key of a namespace matching a glob pattern.

        Returns:
            Number of entries removed across both tiers
        """
        self._invalidated(namespace, pattern=pattern)
        prefix_len = len(namespace) + 1
        removed = self.local.delete_where(
            lambda entry: entry.namespace == namespace
            and fnmatch.fnmatchcase(entry.key[prefix_len:], pattern)
        )
        if self.shared is not None:
            removed += await self.shared.scan_delete(namespace, pattern)

        self._publish_local_usage()
        self.logger.info("Invalidated cache pattern", namespace=namespace, pattern=pattern, removed=removed)
        return removed

    # Warm-up and refresh-ahead

    async def warm_up(self, entries: Iterable[WarmUpEntry]) -> Dict[str, Any]:
        """
        Fetch and cache many keys concurrently.

        Each entry is isolated: one failing fetch is logged and counted while
        its siblings carry on.

        Returns:
            {"planned": int, "warmed": int, "errors": [str, ...]}
        """
        entries = list(entries)
        summary: Dict[str, Any] = {"planned": len(entries), "warmed": 0, "errors": []}
        if not entries:
            return summary

        results = await asyncio.gather(
            *(self._warm_entry(entry) for entry in entries),
            return_exceptions=True,
        )
        for entry, outcome in zip(entries, results):
            if isinstance(outcome, Exception):
                self.logger.error(
                    "Cache warm task failed",
                    namespace=entry.namespace,
                    key=entry.key,
                    error=str(outcome),
                )
                summary["errors"].append(f"{entry.namespace}:{entry.key}: {outcome}")
            elif outcome:
                summary["warmed"] += 1

        self.logger.info(
            "Cache warm completed",
            planned=summary["planned"],
            warmed=summary["warmed"],
            errors=len(summary["errors"]),
        )
        return summary

    async def _warm_entry(self, entry: WarmUpEntry) -> bool:
        async with self._warm_semaphore:
            value = await self._coalescer.run(
                self._local_key(entry.namespace, entry.key),
                lambda: self._fetch_and_store(entry.namespace, entry.key, entry.fetch_fn, entry.tags),
            )
            return value is not None

    def register_refresher(self, namespace: str, pattern: str, fetch_fn: KeyFetchFn) -> None:
        """
        Register ``fetch_fn(key)`` for refresh-ahead of keys matching a glob.

        Used when a hit carries no fetch function of its own.
        """
        with self._lock:
            self._refreshers.append((namespace, pattern, fetch_fn))
        self.logger.info("Registered cache refresher", namespace=namespace, pattern=pattern)

    def _find_refresher(self, namespace: str, key: str) -> Optional[FetchFn]:
        with self._lock:
            refreshers = list(self._refreshers)
        for refresher_ns, pattern, fetch_fn in reversed(refreshers):
            if refresher_ns == namespace and fnmatch.fnmatchcase(key, pattern):
                return lambda fetch_fn=fetch_fn: fetch_fn(key)
        return None

    def _maybe_refresh(
        self,
        namespace: str,
        key: str,
        remaining: Optional[float],
        strategy: NamespaceStrategy,
        fetch_fn: Optional[FetchFn],
        tags: Optional[Sequence[str]],
        timeout: Optional[float],
    ) -> None:
        if not strategy.refresh_ahead or remaining is None or remaining >= strategy.refresh_threshold:
            return

        fetcher = fetch_fn or self._find_refresher(namespace, key)
        if fetcher is None:
            return

        local_key = self._local_key(namespace, key)
        with self._lock:
            if local_key in self._refreshing:
                return
            self._refreshing.add(local_key)

        self.logger.debug("Scheduling refresh-ahead", namespace=namespace, key=key, remaining=remaining)
        task = asyncio.ensure_future(self._refresh(namespace, key, fetcher, tags, timeout))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _refresh(
        self,
        namespace: str,
        key: str,
        fetch_fn: FetchFn,
        tags: Optional[Sequence[str]],
        timeout: Optional[float],
    ) -> None:
        local_key = self._local_key(namespace, key)
        try:
            await self._coalescer.run(
                local_key,
                lambda: self._fetch_and_store(namespace, key, fetch_fn, tags),
                timeout,
            )
            result = "success"
        except Exception as e:
            result = "error"
            self.logger.warning("Refresh-ahead failed", namespace=namespace, key=key, error=str(e))
        finally:
            with self._lock:
                self._refreshing.discard(local_key)

        if self.metrics:
            self.metrics.increment_counter("cache_refreshes_total", namespace=namespace, result=result)

    async def _fetch_and_store(
        self,
        namespace: str,
        key: str,
        fetch_fn: FetchFn,
        tags: Optional[Sequence[str]],
    ) -> Optional[Any]:
        generation = self.generation(namespace)
        with self._fetch_timer(namespace):
            value = await fetch_fn()

        if value is None:
            return value
        if generation != self.generation(namespace):
            # Invalidated while the fetch was running; the value may be stale
            self.logger.debug("Skipping write-back of stale fetch", namespace=namespace, key=key)
            return value

        await self.set(namespace, key, value, tags=tags)
        return value

    # Invalidation bookkeeping

    def generation(self, namespace: str) -> Generation:
        """
        Invalidation generation of a namespace.

        Changes whenever a delete or invalidation may have touched the
        namespace. Writers capture it before a fetch and compare afterwards to
        avoid restoring invalidated data.
        """
        with self._lock:
            return self._global_generation, self._generations.get(namespace, 0)

    def add_invalidation_listener(self, listener: InvalidationListener) -> None:
        """
        Call ``listener(namespace, key, pattern)`` on every delete or invalidation.

        Bound methods are held weakly so short-lived owners (loaders) can be
        garbage collected without unregistering.
        """
        if hasattr(listener, "__self__"):
            ref: Callable[[], Optional[InvalidationListener]] = weakref.WeakMethod(listener)
        else:
            ref = lambda listener=listener: listener
        with self._lock:
            self._listeners.append(ref)

    def _invalidated(
        self,
        namespace: Optional[str],
        key: Optional[str] = None,
        pattern: Optional[str] = None,
    ) -> None:
        with self._lock:
            if namespace is None:
                self._global_generation += 1
            else:
                self._generations[namespace] = self._generations.get(namespace, 0) + 1
            self._listeners = [ref for ref in self._listeners if ref() is not None]
            listeners = [ref() for ref in self._listeners]

        if namespace is None:
            self._coalescer.detach(lambda local_key: True)
        elif key is not None:
            target = self._local_key(namespace, key)
            self._coalescer.detach(lambda local_key: local_key == target)
        else:
            prefix = f"{namespace}:"
            self._coalescer.detach(
                lambda local_key: local_key.startswith(prefix)
                and (pattern is None or fnmatch.fnmatchcase(local_key[len(prefix):], pattern))
            )

        for listener in listeners:
            if listener is None:
                continue
            try:
                listener(namespace, key, pattern)
            except Exception as e:
                self.logger.error("Invalidation listener failed", namespace=namespace, error=str(e))

    # Lifecycle

    async def start(self) -> None:
        """Start the periodic expiry sweep and stats reporting."""
        if self._loops:
            return
        if self.sweep_interval > 0:
            self._loops.append(asyncio.ensure_future(self._sweep_loop()))
        if self.stats_report_interval > 0:
            self._loops.append(asyncio.ensure_future(self._stats_loop()))
        self.logger.info(
            "Tiered cache started",
            shared_tier=self.shared is not None,
            sweep_interval=self.sweep_interval,
            stats_report_interval=self.stats_report_interval,
        )

    async def stop(self) -> None:
        """Cancel background loops and pending refreshes."""
        tasks = self._loops + list(self._background)
        self._loops = []
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        with self._lock:
            self._refreshing.clear()
        self.logger.info("Tiered cache stopped")

    async def wait_for_background(self) -> None:
        """Wait until every scheduled refresh has finished."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval)
            try:
                removed = self.local.sweep_expired()
                self._publish_local_usage()
                if removed:
                    self.logger.debug("Swept expired local entries", removed=removed)
            except Exception as e:
                self.logger.error("Local tier sweep failed", error=str(e))

    async def _stats_loop(self) -> None:
        while True:
            await asyncio.sleep(self.stats_report_interval)
            try:
                totals = self.stats_reporter.totals()
                self.logger.info(
                    "Cache stats",
                    hits=totals["hits"],
                    misses=totals["misses"],
                    hit_rate=totals["hit_rate"],
                    local_hit_rate=totals["local_hit_rate"],
                    local_entries=len(self.local),
                    local_bytes=self.local.current_bytes,
                )
            except Exception as e:
                self.logger.error("Cache stats report failed", error=str(e))

    # Introspection

    def stats(self) -> Dict[str, Any]:
        """Counters, tier usage and in-flight work."""
        return {
            "namespaces": self.stats_reporter.snapshot(),
            "totals": self.stats_reporter.totals(),
            "local": self.local.usage(),
            "shared": self.shared.health() if self.shared is not None else None,
            "in_flight": self._coalescer.get_stats(),
            "refreshing": len(self._refreshing),
        }

    def health(self) -> Dict[str, Any]:
        """
        Health status and recommendations.

        Only shared tier errors since its last successful operation count, so
        a recovered backend stops reporting critical on its own.
        """
        shared_errors = self.shared.consecutive_errors if self.shared is not None else 0
        return self.stats_reporter.health(local_usage=self.local.usage(), shared_errors=shared_errors)

    def reset_stats(self, namespace: Optional[str] = None) -> None:
        """Zero hit/miss counters; a full reset also forgets shared tier errors."""
        self.stats_reporter.reset(namespace)
        if namespace is None and self.shared is not None:
            self.shared.reset_errors()

    # Helpers

    @property
    def _last_tier(self) -> CacheTier:
        return CacheTier.SHARED if self.shared is not None else CacheTier.LOCAL

    @staticmethod
    def _local_key(namespace: str, key: str) -> str:
        return f"{namespace}:{key}"

    def _promote(self, namespace: str, key: str, value: Any, strategy: NamespaceStrategy) -> None:
        self.local.set(self._local_key(namespace, key), value, strategy.base_ttl, namespace=namespace)
        self._publish_local_usage()

    def _fetch_timer(self, namespace: str):
        if self.metrics:
            return self.metrics.time_operation("cache_fetch_duration_seconds", namespace=namespace)
        return contextlib.nullcontext()

    def _publish_local_usage(self) -> None:
        if not self.metrics:
            return

        usage = self.local.usage()
        self.metrics.set_gauge("cache_local_bytes", usage["current_bytes"])
        evicted = usage["evictions"] - self._reported_evictions
        if evicted > 0:
            self._reported_evictions = usage["evictions"]
            self.metrics.get_metric("cache_evictions_total").inc(evicted)
