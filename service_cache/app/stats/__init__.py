"""
Cache statistics and health reporting.
"""

from .reporter import CacheStatsReporter, CacheTier, HealthStatus

__all__ = ["CacheStatsReporter", "CacheTier", "HealthStatus"]
