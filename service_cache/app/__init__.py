"""
Tiered cache and batched data access layer.

Most callers only need ``build_cache_layer``; the components are importable
from their subpackages for explicit wiring and tests.
"""

from .factory import CacheLayer, build_cache_layer

__all__ = ["CacheLayer", "build_cache_layer"]
