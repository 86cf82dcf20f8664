"""
Namespace -> caching policy registry.
"""

import threading
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from shared.errors import InvalidStrategyError
from shared.logging import get_logger


# Cache TTL constants (in seconds)
TTL_SHORT = 300
TTL_MEDIUM = 1800
TTL_LONG = 3600
TTL_VERY_LONG = 86400


class NamespaceStrategy(BaseModel):
    """Immutable caching policy for one data category."""

    model_config = ConfigDict(frozen=True)

    base_ttl: int = Field(gt=0, description="Seconds an entry lives in either tier")
    refresh_threshold: int = Field(
        default=0,
        ge=0,
        description="Remaining seconds at which a hit triggers refresh-ahead; 0 disables it",
    )
    compress: bool = Field(default=False, description="Compress shared tier payloads")

    @model_validator(mode="after")
    def _threshold_below_ttl(self) -> "NamespaceStrategy":
        if self.refresh_threshold >= self.base_ttl:
            raise ValueError("refresh_threshold must be lower than base_ttl")
        return self

    @property
    def refresh_ahead(self) -> bool:
        """Whether hits may trigger a background refresh."""
        return self.refresh_threshold > 0


DEFAULT_STRATEGY = NamespaceStrategy(base_ttl=TTL_MEDIUM)

# Per-category policies used by the storefront data sources
DEFAULT_STRATEGIES: Dict[str, NamespaceStrategy] = {
    "products": NamespaceStrategy(base_ttl=TTL_MEDIUM, refresh_threshold=300, compress=True),
    "categories": NamespaceStrategy(base_ttl=TTL_VERY_LONG, refresh_threshold=3600),
    "brands": NamespaceStrategy(base_ttl=TTL_VERY_LONG, refresh_threshold=3600),
    "users": NamespaceStrategy(base_ttl=TTL_SHORT, refresh_threshold=60),
    "carts": NamespaceStrategy(base_ttl=TTL_SHORT, refresh_threshold=60),
    "search": NamespaceStrategy(base_ttl=TTL_SHORT, refresh_threshold=60, compress=True),
    "sessions": NamespaceStrategy(base_ttl=TTL_MEDIUM, refresh_threshold=300),
}


def build_strategy(
    base_ttl: int,
    refresh_threshold: int = 0,
    compress: bool = False,
) -> NamespaceStrategy:
    """Validate and build a strategy, raising InvalidStrategyError on bad input."""
    try:
        return NamespaceStrategy(
            base_ttl=base_ttl,
            refresh_threshold=refresh_threshold,
            compress=compress,
        )
    except ValidationError as exc:
        raise InvalidStrategyError(
            "Invalid namespace strategy",
            {"errors": [error["msg"] for error in exc.errors()]},
        ) from exc


class StrategyRegistry:
    """Looks up the policy of a namespace, falling back to a global default."""

    def __init__(self, default: Optional[NamespaceStrategy] = None):
        self.default = default or DEFAULT_STRATEGY
        self.logger = get_logger("cache.strategies")
        self._strategies: Dict[str, NamespaceStrategy] = {}
        self._lock = threading.Lock()

    def register(self, namespace: str, strategy: NamespaceStrategy) -> None:
        """Register (or replace) the strategy for a namespace."""
        if not namespace or ":" in namespace:
            raise InvalidStrategyError(
                "Namespace must be non-empty and must not contain ':'",
                {"namespace": namespace},
            )

        with self._lock:
            self._strategies[namespace] = strategy
        self.logger.info(
            "Registered cache strategy",
            namespace=namespace,
            base_ttl=strategy.base_ttl,
            refresh_threshold=strategy.refresh_threshold,
            compress=strategy.compress,
        )

    def register_defaults(self) -> None:
        """Install the built-in per-category strategies."""
        for namespace, strategy in DEFAULT_STRATEGIES.items():
            self.register(namespace, strategy)

    def unregister(self, namespace: str) -> bool:
        """Remove a namespace's strategy."""
        with self._lock:
            return self._strategies.pop(namespace, None) is not None

    def resolve(self, namespace: str) -> NamespaceStrategy:
        """Strategy for a namespace, or the default when unregistered."""
        return self._strategies.get(namespace, self.default)

    def namespaces(self) -> List[str]:
        """Registered namespaces."""
        with self._lock:
            return sorted(self._strategies)

    def __contains__(self, namespace: str) -> bool:
        return namespace in self._strategies
