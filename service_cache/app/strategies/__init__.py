"""
Per-namespace TTL, refresh-ahead and compression policies.
"""

from .registry import (
    DEFAULT_STRATEGIES,
    DEFAULT_STRATEGY,
    NamespaceStrategy,
    StrategyRegistry,
    TTL_LONG,
    TTL_MEDIUM,
    TTL_SHORT,
    TTL_VERY_LONG,
    build_strategy,
)

__all__ = [
    "DEFAULT_STRATEGIES",
    "DEFAULT_STRATEGY",
    "NamespaceStrategy",
    "StrategyRegistry",
    "TTL_LONG",
    "TTL_MEDIUM",
    "TTL_SHORT",
    "TTL_VERY_LONG",
    "build_strategy",
]
