"""
Tiered cache manager, fetch coalescing and the cached-call wrapper.
"""

from .coalescer import RequestCoalescer
from .tiered_cache import TieredCacheManager, WarmUpEntry
from .wrappers import cached

__all__ = ["RequestCoalescer", "TieredCacheManager", "WarmUpEntry", "cached"]
