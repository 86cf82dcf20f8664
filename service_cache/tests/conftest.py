"""
Shared fixtures for cache layer tests.
"""

import fnmatch
from collections import Counter
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple

import pytest
from prometheus_client import CollectorRegistry

from shared.metrics import MetricsCollector
from service_cache.app.codec import EntryCodec
from service_cache.app.local import LocalTierStore
from service_cache.app.manager import TieredCacheManager
from service_cache.app.stats import CacheStatsReporter
from service_cache.app.strategies import StrategyRegistry


class ManualClock:
    """Monotonic clock advanced by hand."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class InMemorySharedTier:
    """
    In-memory stand-in for SharedTierClient.

    Honours TTLs against the given clock and counts calls per operation. Set
    ``fail = True`` to make every operation behave like an unreachable backend.
    """

    def __init__(self, clock: ManualClock, base_prefix: str = "cache"):
        self.clock = clock
        self.base_prefix = base_prefix
        self.data: Dict[str, Tuple[bytes, float]] = {}
        self.tags: Dict[str, Set[Tuple[str, str]]] = {}
        self.calls: Counter = Counter()
        self.fail = False
        self.error_count = 0
        self.consecutive_errors = 0

    def make_key(self, namespace: str, key: str) -> str:
        return f"{self.base_prefix}:{namespace}:{key}"

    def _failed(self, operation: str) -> bool:
        self.calls[operation] += 1
        if self.fail:
            self.error_count += 1
            self.consecutive_errors += 1
        else:
            self.consecutive_errors = 0
        return self.fail

    def _live(self, full_key: str) -> Optional[Tuple[bytes, float]]:
        item = self.data.get(full_key)
        if item is None:
            return None
        if self.clock() >= item[1]:
            del self.data[full_key]
            return None
        return item

    async def start(self) -> None:
        self.calls["start"] += 1

    async def close(self) -> None:
        self.calls["close"] += 1

    async def get(self, namespace: str, key: str) -> Optional[bytes]:
        if self._failed("get"):
            return None
        item = self._live(self.make_key(namespace, key))
        return item[0] if item else None

    async def get_with_ttl(self, namespace: str, key: str):
        if self._failed("get_with_ttl"):
            return None, None
        item = self._live(self.make_key(namespace, key))
        if item is None:
            return None, None
        return item[0], item[1] - self.clock()

    async def set(self, namespace: str, key: str, data: bytes, ttl: int) -> bool:
        if self._failed("set"):
            return False
        self.data[self.make_key(namespace, key)] = (data, self.clock() + ttl)
        return True

    async def delete(self, namespace: str, key: str) -> bool:
        if self._failed("delete"):
            return False
        return self.data.pop(self.make_key(namespace, key), None) is not None

    async def delete_many(self, pairs: Iterable[Tuple[str, str]]) -> int:
        if self._failed("delete_many"):
            return 0
        return sum(
            1 for namespace, key in pairs
            if self.data.pop(self.make_key(namespace, key), None) is not None
        )

    async def mget(self, namespace: str, keys: Sequence[str]) -> List[Optional[bytes]]:
        if self._failed("mget"):
            return [None] * len(keys)
        result = []
        for key in keys:
            item = self._live(self.make_key(namespace, key))
            result.append(item[0] if item else None)
        return result

    async def mset(self, namespace: str, items: Sequence[Tuple[str, bytes, int]]) -> bool:
        if self._failed("mset"):
            return False
        for key, data, ttl in items:
            self.data[self.make_key(namespace, key)] = (data, self.clock() + ttl)
        return True

    async def scan_delete(self, namespace: str, pattern: str) -> int:
        if self._failed("scan_delete"):
            return 0
        match = self.make_key(namespace, pattern)
        doomed = [full_key for full_key in self.data if fnmatch.fnmatchcase(full_key, match)]
        for full_key in doomed:
            del self.data[full_key]
        return len(doomed)

    async def tag_keys(self, tags: Iterable[str], namespace: str, key: str, ttl: int) -> bool:
        if self._failed("tag_keys"):
            return False
        for tag in tags:
            self.tags.setdefault(tag, set()).add((namespace, key))
        return True

    async def tag_members(self, tag: str) -> List[Tuple[str, str]]:
        if self._failed("tag_members"):
            return []
        return sorted(self.tags.get(tag, set()))

    async def tag_clear(self, tag: str) -> bool:
        if self._failed("tag_clear"):
            return False
        self.tags.pop(tag, None)
        return True

    def health(self):
        return {
            "errors": self.error_count,
            "consecutive_errors": self.consecutive_errors,
            "last_error": None,
            "last_error_at": None,
        }

    def reset_errors(self) -> None:
        self.error_count = 0
        self.consecutive_errors = 0


@pytest.fixture
def clock():
    """Manual clock starting at t=1000."""
    return ManualClock()


@pytest.fixture
def shared_tier(clock):
    """In-memory shared tier."""
    return InMemorySharedTier(clock)


@pytest.fixture
def metrics():
    """Metrics collector on an isolated registry."""
    return MetricsCollector("cache-test", registry=CollectorRegistry())


@pytest.fixture
def codec():
    """Entry codec."""
    return EntryCodec()


@pytest.fixture
def local_store(clock, codec):
    """Local tier driven by the manual clock."""
    return LocalTierStore(max_bytes=1024 * 1024, max_entries=1000, codec=codec, clock=clock)


@pytest.fixture
def registry():
    """Strategy registry with only the global default."""
    return StrategyRegistry()


@pytest.fixture
def manager(shared_tier, registry, local_store, codec, metrics):
    """Tiered cache manager over the in-memory shared tier."""
    return TieredCacheManager(
        shared_tier,
        registry=registry,
        local_store=local_store,
        codec=codec,
        stats=CacheStatsReporter(metrics),
        metrics=metrics,
        fetch_timeout=1.0,
    )
