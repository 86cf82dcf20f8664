"""
Bounded in-process cache tier with lazy expiry and LRU eviction.
"""

import threading
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Optional

from shared.logging import get_logger
from ..codec import EntryCodec


DEFAULT_MAX_BYTES = 100 * 1024 * 1024
DEFAULT_MAX_ENTRIES = 10000
DEFAULT_MAX_ITEM_BYTES = 1024 * 1024
SWEEP_CHUNK_SIZE = 500


@dataclass
class CacheEntry:
    """
    A value resident in the local tier.

    ``value`` is the deserialized application object; ``approx_size`` is the
    codec's estimate used for memory accounting.
    """
    key: str
    value: Any
    expires_at: float
    namespace: str = ""
    tags: FrozenSet[str] = field(default_factory=frozenset)
    approx_size: int = 0

    def is_expired(self, now: float) -> bool:
        """Expired once now >= expires_at."""
        return now >= self.expires_at

    def remaining(self, now: float) -> float:
        """Seconds of life left (never negative)."""
        return max(0.0, self.expires_at - now)


class LocalTierStore:
    """
    Per-process key -> entry map.

    - Reads drop expired entries on the spot (lazy expiry)
    - Hits move the entry to the most-recently-used end; expiry is unchanged
    - Writes evict least-recently-used entries until both the byte and entry
      ceilings hold, never evicting the entry being written
    - Values above the per-item ceiling are not stored here at all

    All mutations happen under one re-entrant lock so the store stays correct
    when driven from worker threads as well as the event loop.
    """

    def __init__(
        self,
        max_bytes: int = DEFAULT_MAX_BYTES,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        max_item_bytes: int = DEFAULT_MAX_ITEM_BYTES,
        codec: Optional[EntryCodec] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_bytes = max_bytes
        self.max_entries = max_entries
        self.max_item_bytes = max_item_bytes
        self.codec = codec if codec is not None else EntryCodec()
        self.clock = clock
        self.logger = get_logger("cache.local")

        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._lock = threading.RLock()
        self._current_bytes = 0

        self._stats = {
            "evictions": 0,
            "rejections": 0,
            "expirations": 0,
        }

    def get(self, key: str) -> Optional[Any]:
        """Return the live value for key, or None."""
        entry = self.get_entry(key)
        return entry.value if entry is not None else None

    def get_entry(self, key: str) -> Optional[CacheEntry]:
        """Return the live entry for key, or None."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None

            if entry.is_expired(self.clock()):
                self._remove(key)
                self._stats["expirations"] += 1
                return None

            self._entries.move_to_end(key)
            return entry

    def set(
        self,
        key: str,
        value: Any,
        ttl_seconds: float,
        tags: Optional[Iterable[str]] = None,
        namespace: str = "",
        size: Optional[int] = None,
    ) -> bool:
        """
        Store a value.

        Returns:
            False when the value exceeds the per-item ceiling and was skipped
        """
        approx_size = size if size is not None else self.codec.estimate_size(value)
        if approx_size > self.max_item_bytes:
            with self._lock:
                self._stats["rejections"] += 1
            self.logger.debug(
                "Value too large for local tier",
                key=key,
                size=approx_size,
                limit=self.max_item_bytes,
            )
            return False

        entry = CacheEntry(
            key=key,
            value=value,
            expires_at=self.clock() + ttl_seconds,
            namespace=namespace,
            tags=frozenset(tags or ()),
            approx_size=approx_size,
        )

        with self._lock:
            if key in self._entries:
                self._remove(key)
            self._entries[key] = entry
            self._current_bytes += approx_size
            evicted = self._evict_over_budget(protect=key)

        if evicted:
            self.logger.debug("Evicted local entries", count=evicted, protected=key)
        return True

    def delete(self, key: str) -> bool:
        """Remove a key. Returns True if it was present."""
        with self._lock:
            return self._remove(key) is not None

    def delete_where(self, predicate: Callable[[CacheEntry], bool]) -> int:
        """Remove every entry the predicate accepts."""
        with self._lock:
            doomed = [key for key, entry in self._entries.items() if predicate(entry)]
            for key in doomed:
                self._remove(key)
        return len(doomed)

    def sweep_expired(self, chunk_size: int = SWEEP_CHUNK_SIZE) -> int:
        """
        Drop expired entries.

        Keys are snapshotted first and checked in bounded chunks so the lock is
        never held across the whole table.
        """
        with self._lock:
            keys = list(self._entries.keys())

        cleaned = 0
        for start in range(0, len(keys), chunk_size):
            with self._lock:
                now = self.clock()
                for key in keys[start:start + chunk_size]:
                    entry = self._entries.get(key)
                    if entry is not None and entry.is_expired(now):
                        self._remove(key)
                        cleaned += 1

        if cleaned:
            with self._lock:
                self._stats["expirations"] += cleaned
            self.logger.debug("Cleaned up expired local entries", count=cleaned)
        return cleaned

    def clear(self) -> int:
        """Remove everything. Returns the number of entries dropped."""
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
            self._current_bytes = 0
        return count

    def keys(self) -> List[str]:
        """Snapshot of resident keys, least recently used first."""
        with self._lock:
            return list(self._entries.keys())

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return self.get_entry(key) is not None

    @property
    def current_bytes(self) -> int:
        """Estimated bytes resident."""
        return self._current_bytes

    def usage(self) -> Dict[str, Any]:
        """Memory usage statistics."""
        with self._lock:
            entries = len(self._entries)
            current = self._current_bytes
            stats = dict(self._stats)

        return {
            "entries": entries,
            "max_entries": self.max_entries,
            "current_bytes": current,
            "max_bytes": self.max_bytes,
            "bytes_usage_percent": round(current / self.max_bytes * 100, 2) if self.max_bytes else 0.0,
            "entries_usage_percent": round(entries / self.max_entries * 100, 2) if self.max_entries else 0.0,
            **stats,
        }

    def _remove(self, key: str) -> Optional[CacheEntry]:
        entry = self._entries.pop(key, None)
        if entry is not None:
            self._current_bytes -= entry.approx_size
        return entry

    def _evict_over_budget(self, protect: str) -> int:
        """Evict LRU entries (other than ``protect``) until under both ceilings."""
        evicted = 0
        while (
            self._current_bytes > self.max_bytes or len(self._entries) > self.max_entries
        ) and len(self._entries) > 1:
            oldest = next(iter(self._entries))
            if oldest == protect:
                break
            self._remove(oldest)
            evicted += 1

        self._stats["evictions"] += evicted
        return evicted
