"""
Shared cache tier. Every backend failure is absorbed here; caching stays a
best-effort accelerator and never becomes a correctness dependency.
"""

from .redis_tier import SharedTierClient

__all__ = ["SharedTierClient"]
