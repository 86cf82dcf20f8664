"""
Local (in-process) cache tier.
"""

from .store import CacheEntry, LocalTierStore

__all__ = ["CacheEntry", "LocalTierStore"]
