"""
Per-namespace cache counters and derived health.
"""

import threading
from enum import Enum
from typing import Any, Dict, List, Optional, TYPE_CHECKING

from shared.logging import get_logger

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shared.metrics import MetricsCollector


HEALTHY_HIT_RATE = 60.0
CRITICAL_HIT_RATE = 30.0
LOCAL_PRESSURE_PERCENT = 90.0
LOW_LOCAL_SHARE_PERCENT = 20.0


class CacheTier(str, Enum):
    """Where an operation was served or applied."""
    LOCAL = "local"
    SHARED = "shared"


class HealthStatus(str, Enum):
    """Overall cache health."""
    HEALTHY = "healthy"
    WARNING = "warning"
    CRITICAL = "critical"


def _empty_counters() -> Dict[str, int]:
    return {"hits": 0, "misses": 0, "sets": 0, "deletes": 0}


class CacheStatsReporter:
    """
    Tracks hit/miss/set/delete counters per namespace and tier.

    Namespace totals are sums over tiers. A full miss is recorded against the
    last tier consulted, so ``hits + misses`` equals the number of lookups.
    Purely observational: nothing here reads or mutates cached data.
    """

    def __init__(self, metrics: Optional["MetricsCollector"] = None):
        self.metrics = metrics
        self.logger = get_logger("cache.stats")
        self._counters: Dict[str, Dict[str, Dict[str, int]]] = {}
        self._lock = threading.Lock()

    def record_hit(self, namespace: str, tier: CacheTier) -> None:
        """Record a lookup served by ``tier``."""
        self._record(namespace, tier, "hits", "cache_hits_total")

    def record_miss(self, namespace: str, tier: CacheTier) -> None:
        """Record a lookup that found nothing down to ``tier``."""
        self._record(namespace, tier, "misses", "cache_misses_total")

    def record_set(self, namespace: str, tier: CacheTier) -> None:
        """Record a write applied to ``tier``."""
        self._record(namespace, tier, "sets", "cache_sets_total")

    def record_delete(self, namespace: str, tier: CacheTier) -> None:
        """Record a delete applied to ``tier``."""
        self._record(namespace, tier, "deletes", "cache_deletes_total")

    def _record(self, namespace: str, tier: CacheTier, field: str, metric_name: str) -> None:
        tier_name = CacheTier(tier).value
        with self._lock:
            tiers = self._counters.setdefault(namespace, {})
            counters = tiers.setdefault(tier_name, _empty_counters())
            counters[field] += 1

        if self.metrics:
            self.metrics.increment_counter(metric_name, namespace=namespace, tier=tier_name)

    def snapshot(self) -> Dict[str, Dict[str, Any]]:
        """Per-namespace counters with hit rate (percent) and per-tier breakdown."""
        with self._lock:
            counters = {
                namespace: {tier: dict(values) for tier, values in tiers.items()}
                for namespace, tiers in self._counters.items()
            }

        result: Dict[str, Dict[str, Any]] = {}
        for namespace, tiers in counters.items():
            totals = _empty_counters()
            for values in tiers.values():
                for field, count in values.items():
                    totals[field] += count

            result[namespace] = {
                **totals,
                "hit_rate": self._rate(totals["hits"], totals["hits"] + totals["misses"]),
                "tiers": tiers,
            }
        return result

    def totals(self) -> Dict[str, Any]:
        """Counters summed over every namespace."""
        totals = _empty_counters()
        local_hits = 0
        for stats in self.snapshot().values():
            for field in totals:
                totals[field] += stats[field]
            local_hits += stats["tiers"].get(CacheTier.LOCAL.value, {}).get("hits", 0)

        lookups = totals["hits"] + totals["misses"]
        return {
            **totals,
            "lookups": lookups,
            "hit_rate": self._rate(totals["hits"], lookups),
            "local_hit_rate": self._rate(local_hits, lookups),
        }

    def health(
        self,
        local_usage: Optional[Dict[str, Any]] = None,
        shared_errors: int = 0,
    ) -> Dict[str, Any]:
        """
        Derive a health status and recommendations.

        Args:
            local_usage: Local tier usage as reported by LocalTierStore.usage()
            shared_errors: Shared tier errors since its last successful operation

        Returns:
            {"status", "hit_rate", "recommendations", ...}
        """
        totals = self.totals()
        local_usage = local_usage or {}
        hit_rate = totals["hit_rate"]
        has_traffic = totals["lookups"] > 0
        local_pressure = max(
            local_usage.get("bytes_usage_percent", 0.0),
            local_usage.get("entries_usage_percent", 0.0),
        )

        if shared_errors > 0 or (has_traffic and hit_rate < CRITICAL_HIT_RATE):
            status = HealthStatus.CRITICAL
        elif (has_traffic and hit_rate < HEALTHY_HIT_RATE) or local_pressure >= LOCAL_PRESSURE_PERCENT:
            status = HealthStatus.WARNING
        else:
            status = HealthStatus.HEALTHY

        return {
            "status": status.value,
            "hit_rate": hit_rate,
            "lookups": totals["lookups"],
            "local": local_usage,
            "shared_errors": shared_errors,
            "recommendations": self._recommendations(totals, local_usage, shared_errors),
        }

    def reset(self, namespace: Optional[str] = None) -> None:
        """Zero counters for one namespace, or for all of them."""
        with self._lock:
            if namespace is None:
                self._counters.clear()
            else:
                self._counters.pop(namespace, None)
        self.logger.info("Cache stats reset", namespace=namespace or "*")

    def _recommendations(
        self,
        totals: Dict[str, Any],
        local_usage: Dict[str, Any],
        shared_errors: int,
    ) -> List[str]:
        recommendations: List[str] = []

        if totals["lookups"] > 0:
            if totals["hit_rate"] < HEALTHY_HIT_RATE:
                recommendations.append("Consider increasing cache TTL values")
                recommendations.append("Review cache key patterns for better locality")
            if totals["local_hit_rate"] < LOW_LOCAL_SHARE_PERCENT:
                recommendations.append("Local tier hit rate is low - review access patterns")

        if local_usage.get("bytes_usage_percent", 0.0) >= LOCAL_PRESSURE_PERCENT:
            recommendations.append("Consider increasing the local tier byte ceiling")
        if local_usage.get("entries_usage_percent", 0.0) >= LOCAL_PRESSURE_PERCENT:
            recommendations.append("Consider increasing the local tier entry ceiling")

        if shared_errors > 0:
            recommendations.append("Shared tier is failing - check backend connectivity")

        return recommendations

    @staticmethod
    def _rate(part: int, whole: int) -> float:
        return round(part / whole * 100, 2) if whole > 0 else 0.0
