"""
Shared (cross-process) cache tier backed by Redis.
"""

import json
import time
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, TYPE_CHECKING

import redis.asyncio as redis

from shared.errors import SharedTierUnavailableError
from shared.logging import get_logger

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shared.metrics import MetricsCollector


TAG_INDEX_SEGMENT = "__tags__"


def encode_tag_member(namespace: str, key: str) -> str:
    """Encode a tag index member; namespaces and keys may both contain ':'."""
    return json.dumps([namespace, key], separators=(",", ":"))


def decode_tag_member(member: Any) -> Optional[Tuple[str, str]]:
    """Decode a tag index member, None if it is malformed."""
    text = member.decode("utf-8") if isinstance(member, bytes) else str(member)
    try:
        pair = json.loads(text)
    except ValueError:
        return None
    if not isinstance(pair, list) or len(pair) != 2 or not all(isinstance(part, str) for part in pair):
        return None
    return pair[0], pair[1]


class SharedTierClient:
    """
    Thin, namespaced wrapper over a Redis connection.

    Keys are laid out as ``{base_prefix}:{namespace}:{key}``. Backend errors
    never escape this class: reads degrade to "absent", writes report False.
    One instance may be shared by any number of cache managers.
    """

    def __init__(
        self,
        redis_url: str,
        base_prefix: str = "cache",
        *,
        client: Optional[redis.Redis] = None,
        socket_timeout: float = 5.0,
        connect_timeout: float = 5.0,
        scan_count: int = 500,
        metrics: Optional["MetricsCollector"] = None,
    ):
        self.redis_url = redis_url
        self.base_prefix = base_prefix
        self.socket_timeout = socket_timeout
        self.connect_timeout = connect_timeout
        self.scan_count = scan_count
        self.metrics = metrics
        self.logger = get_logger("cache.shared")

        self._redis: Optional[redis.Redis] = client
        self.error_count = 0
        self.consecutive_errors = 0
        self.last_error: Optional[str] = None
        self.last_error_at: Optional[float] = None

    async def _get_redis(self) -> redis.Redis:
        """Get Redis connection."""
        if self._redis is None:
            self._redis = redis.from_url(
                self.redis_url,
                decode_responses=False,
                socket_connect_timeout=self.connect_timeout,
                socket_timeout=self.socket_timeout,
                retry_on_timeout=True,
                health_check_interval=30,
            )
        return self._redis

    async def start(self) -> None:
        """Connect and verify the backend answers."""
        try:
            redis_client = await self._get_redis()
            await redis_client.ping()
            self.logger.info("Shared tier connected", prefix=self.base_prefix)
        except Exception as e:
            self.logger.error("Failed to connect shared tier", error=str(e))
            raise SharedTierUnavailableError(str(e), {"redis_url": self.redis_url}) from e

    async def close(self) -> None:
        """Close the Redis connection."""
        if self._redis is not None:
            try:
                await self._redis.aclose()
                self.logger.info("Shared tier connection closed")
            except Exception as e:
                self.logger.warning("Error closing shared tier connection", error=str(e))
            finally:
                self._redis = None

    async def ping(self) -> bool:
        """Check Redis health."""
        try:
            redis_client = await self._get_redis()
            healthy = bool(await redis_client.ping())
            self._record_success()
            return healthy
        except Exception as e:
            self._record_error("ping", e)
            return False

    def make_key(self, namespace: str, key: str) -> str:
        """Build the physical key for a namespaced key."""
        return f"{self.base_prefix}:{namespace}:{key}"

    def tag_index_key(self, tag: str) -> str:
        """Build the physical key of a tag's member set."""
        return f"{self.base_prefix}:{TAG_INDEX_SEGMENT}:{tag}"

    async def get(self, namespace: str, key: str) -> Optional[bytes]:
        """Get raw bytes for a key, None when absent or on error."""
        try:
            redis_client = await self._get_redis()
            value = await redis_client.get(self.make_key(namespace, key))
            self._record_success()
            return value
        except Exception as e:
            self._record_error("get", e, namespace=namespace, key=key)
            return None

    async def get_with_ttl(self, namespace: str, key: str) -> Tuple[Optional[bytes], Optional[float]]:
        """
        Get raw bytes together with the remaining TTL in seconds.

        The TTL is None when the key is absent or has no expiry.
        """
        try:
            redis_client = await self._get_redis()
            full_key = self.make_key(namespace, key)
            async with redis_client.pipeline(transaction=False) as pipe:
                pipe.get(full_key)
                pipe.pttl(full_key)
                value, pttl = await pipe.execute()
            self._record_success()
        except Exception as e:
            self._record_error("get_with_ttl", e, namespace=namespace, key=key)
            return None, None

        if value is None:
            return None, None
        remaining = pttl / 1000.0 if pttl is not None and pttl >= 0 else None
        return value, remaining

    async def set(self, namespace: str, key: str, data: bytes, ttl: int) -> bool:
        """Store bytes with a TTL in seconds."""
        try:
            redis_client = await self._get_redis()
            await redis_client.setex(self.make_key(namespace, key), max(1, int(ttl)), data)
            self._record_success()
            return True
        except Exception as e:
            self._record_error("set", e, namespace=namespace, key=key)
            return False

    async def delete(self, namespace: str, key: str) -> bool:
        """Delete a key. Returns True if a key was removed."""
        try:
            redis_client = await self._get_redis()
            removed = await redis_client.delete(self.make_key(namespace, key)) > 0
            self._record_success()
            return removed
        except Exception as e:
            self._record_error("delete", e, namespace=namespace, key=key)
            return False

    async def delete_many(self, pairs: Iterable[Tuple[str, str]]) -> int:
        """Delete several (namespace, key) pairs in one round trip."""
        full_keys = [self.make_key(namespace, key) for namespace, key in pairs]
        if not full_keys:
            return 0

        try:
            redis_client = await self._get_redis()
            removed = int(await redis_client.delete(*full_keys))
            self._record_success()
            return removed
        except Exception as e:
            self._record_error("delete_many", e, keys=len(full_keys))
            return 0

    async def exists(self, namespace: str, key: str) -> bool:
        """Check whether a key is present."""
        try:
            redis_client = await self._get_redis()
            present = await redis_client.exists(self.make_key(namespace, key)) == 1
            self._record_success()
            return present
        except Exception as e:
            self._record_error("exists", e, namespace=namespace, key=key)
            return False

    async def mget(self, namespace: str, keys: Sequence[str]) -> List[Optional[bytes]]:
        """Get several keys; output is positionally aligned with ``keys``."""
        if not keys:
            return []

        try:
            redis_client = await self._get_redis()
            values = await redis_client.mget([self.make_key(namespace, key) for key in keys])
            self._record_success()
        except Exception as e:
            self._record_error("mget", e, namespace=namespace, keys=len(keys))
            return [None] * len(keys)

        if len(values) != len(keys):
            self.logger.error(
                "Shared tier mget returned misaligned results",
                namespace=namespace,
                expected=len(keys),
                received=len(values),
            )
            return [None] * len(keys)
        return list(values)

    async def mset(self, namespace: str, items: Sequence[Tuple[str, bytes, int]]) -> bool:
        """Store several (key, bytes, ttl) items in one pipeline."""
        if not items:
            return True

        try:
            redis_client = await self._get_redis()
            async with redis_client.pipeline(transaction=False) as pipe:
                for key, data, ttl in items:
                    pipe.setex(self.make_key(namespace, key), max(1, int(ttl)), data)
                await pipe.execute()
            self._record_success()
            return True
        except Exception as e:
            self._record_error("mset", e, namespace=namespace, keys=len(items))
            return False

    async def scan_delete(self, namespace: str, pattern: str) -> int:
        """
        Delete every key of the namespace matching a glob pattern.

        Uses SCAN so large keyspaces are walked incrementally.
        """
        match = self.make_key(namespace, pattern)
        deleted = 0
        batch: List[bytes] = []

        try:
            redis_client = await self._get_redis()
            async for full_key in redis_client.scan_iter(match=match, count=self.scan_count):
                batch.append(full_key)
                if len(batch) >= self.scan_count:
                    deleted += await redis_client.delete(*batch)
                    batch = []
            if batch:
                deleted += await redis_client.delete(*batch)
            self._record_success()
        except Exception as e:
            self._record_error("scan_delete", e, namespace=namespace, pattern=pattern)
            return deleted

        if deleted:
            self.logger.info("Cleared shared tier pattern", pattern=match, keys_count=deleted)
        return deleted

    async def tag_keys(self, tags: Iterable[str], namespace: str, key: str, ttl: int) -> bool:
        """
        Record the (namespace, key) pair under each tag's member set.

        A tag set lives at least as long as the longest-lived key it indexes.
        """
        tags = list(tags)
        if not tags:
            return True

        member = encode_tag_member(namespace, key)
        try:
            redis_client = await self._get_redis()
            async with redis_client.pipeline(transaction=False) as pipe:
                for tag in tags:
                    pipe.sadd(self.tag_index_key(tag), member)
                    pipe.ttl(self.tag_index_key(tag))
                results = await pipe.execute()

            remaining = results[1::2]
            stale = [tag for tag, left in zip(tags, remaining) if left is None or left < ttl]
            if stale:
                async with redis_client.pipeline(transaction=False) as pipe:
                    for tag in stale:
                        pipe.expire(self.tag_index_key(tag), max(1, int(ttl)))
                    await pipe.execute()
            self._record_success()
            return True
        except Exception as e:
            self._record_error("tag_keys", e, namespace=namespace, key=key)
            return False

    async def tag_members(self, tag: str) -> List[Tuple[str, str]]:
        """Return the (namespace, key) pairs indexed under a tag."""
        try:
            redis_client = await self._get_redis()
            members = await redis_client.smembers(self.tag_index_key(tag))
            self._record_success()
        except Exception as e:
            self._record_error("tag_members", e, tag=tag)
            return []

        pairs = []
        for member in members:
            pair = decode_tag_member(member)
            if pair is None:
                self.logger.warning("Skipping malformed tag member", tag=tag, member=str(member))
                continue
            pairs.append(pair)
        return sorted(pairs)

    async def tag_clear(self, tag: str) -> bool:
        """Drop a tag's member set."""
        try:
            redis_client = await self._get_redis()
            await redis_client.delete(self.tag_index_key(tag))
            self._record_success()
            return True
        except Exception as e:
            self._record_error("tag_clear", e, tag=tag)
            return False

    def health(self) -> Dict[str, Any]:
        """Error counters used by the health reporter."""
        return {
            "errors": self.error_count,
            "consecutive_errors": self.consecutive_errors,
            "last_error": self.last_error,
            "last_error_at": self.last_error_at,
        }

    def reset_errors(self) -> None:
        """Forget recorded backend errors."""
        self.error_count = 0
        self.consecutive_errors = 0
        self.last_error = None
        self.last_error_at = None

    def _record_success(self) -> None:
        self.consecutive_errors = 0

    def _record_error(self, operation: str, error: Exception, **context: Any) -> None:
        self.error_count += 1
        self.consecutive_errors += 1
        self.last_error = f"{operation}: {error}"
        self.last_error_at = time.time()
        self.logger.error("Shared tier error", operation=operation, error=str(error), **context)
        if self.metrics:
            self.metrics.increment_counter("shared_tier_errors_total", operation=operation)
