"""
Composition root: builds one cache layer per process from settings.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from shared.config import CacheSettings, get_settings
from shared.logging import configure_logging, get_logger
from shared.metrics import MetricsCollector, get_metrics_collector
from .codec import EntryCodec
from .loader import BatchLoader
from .local import LocalTierStore
from .manager import TieredCacheManager
from .remote import SharedTierClient
from .stats import CacheStatsReporter
from .strategies import NamespaceStrategy, StrategyRegistry


logger = get_logger("cache.factory")


@dataclass
class CacheLayer:
    """Everything a process needs to use the cache, wired together."""
    settings: CacheSettings
    manager: TieredCacheManager
    metrics: MetricsCollector
    shared: Optional[SharedTierClient] = None
    loaders: Dict[str, BatchLoader] = field(default_factory=dict)

    def loader(self, name: str, batch_fn, **overrides: Any) -> BatchLoader:
        """
        Create (or return) a named batched loader bound to this layer's manager.

        Named loaders live as long as the layer, so they do not memoise results
        unless ``cache_results=True`` is passed; the manager is the cache.
        """
        if name not in self.loaders:
            options = {
                "manager": self.manager,
                "namespace": name,
                "max_batch_size": self.settings.max_batch_size,
                "batch_interval": self.settings.batch_tick_interval,
                "timeout": self.settings.fetch_timeout,
                "cache_results": False,
                "metrics": self.metrics,
            }
            options.update(overrides)
            self.loaders[name] = BatchLoader(batch_fn, name=name, **options)
        return self.loaders[name]

    async def start(self) -> None:
        """Connect the shared tier (if any) and start background work."""
        if self.shared is not None:
            await self.shared.start()
        await self.manager.start()

    async def stop(self) -> None:
        """Stop background work and close the shared tier."""
        await self.manager.stop()
        if self.shared is not None:
            await self.shared.close()


def build_cache_layer(
    settings: Optional[CacheSettings] = None,
    *,
    metrics: Optional[MetricsCollector] = None,
    shared_client: Optional[SharedTierClient] = None,
    strategies: Optional[Dict[str, NamespaceStrategy]] = None,
    register_defaults: bool = True,
    configure_logs: bool = False,
) -> CacheLayer:
    """
    Build a cache layer.

    Args:
        settings: Settings to use (read from the environment when omitted)
        metrics: Metrics collector (a fresh registry when omitted)
        shared_client: Pre-built shared tier client, e.g. a fake in tests
        strategies: Extra namespace strategies to register
        register_defaults: Install the built-in per-category strategies
        configure_logs: Configure structlog for the embedding process
    """
    settings = settings or get_settings()
    if configure_logs:
        configure_logging(settings.service_name, settings.log_level)

    metrics = metrics or get_metrics_collector(settings.service_name)
    codec = EntryCodec(compress_threshold=settings.compress_threshold)

    registry = StrategyRegistry(default=NamespaceStrategy(base_ttl=settings.default_ttl))
    if register_defaults:
        registry.register_defaults()
    for namespace, strategy in (strategies or {}).items():
        registry.register(namespace, strategy)

    shared = shared_client
    if shared is None and settings.enable_shared_tier:
        shared = SharedTierClient(
            settings.redis_url,
            settings.key_prefix,
            socket_timeout=settings.redis_socket_timeout,
            connect_timeout=settings.redis_connect_timeout,
            scan_count=settings.scan_count,
            metrics=metrics,
        )

    local_store = LocalTierStore(
        max_bytes=settings.local_max_bytes,
        max_entries=settings.local_max_entries,
        max_item_bytes=settings.local_max_item_bytes,
        codec=codec,
    )

    manager = TieredCacheManager(
        shared,
        registry=registry,
        local_store=local_store,
        codec=codec,
        stats=CacheStatsReporter(metrics),
        metrics=metrics,
        fetch_timeout=settings.fetch_timeout,
        sweep_interval=settings.sweep_interval,
        stats_report_interval=settings.stats_report_interval,
        warm_concurrency=settings.warm_concurrency,
    )

    logger.info(
        "Cache layer built",
        env=settings.env,
        shared_tier=shared is not None,
        namespaces=registry.namespaces(),
    )
    return CacheLayer(settings=settings, manager=manager, metrics=metrics, shared=shared)
