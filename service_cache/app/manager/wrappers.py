"""
Explicit cached-call wrapper.
"""

import functools
from typing import Any, Awaitable, Callable, Optional, Sequence, TYPE_CHECKING

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from .tiered_cache import TieredCacheManager


def cached(
    manager: "TieredCacheManager",
    namespace: str,
    key_fn: Callable[..., str],
    *,
    tags: Optional[Sequence[str]] = None,
    timeout: Optional[float] = None,
) -> Callable[[Callable[..., Awaitable[Any]]], Callable[..., Awaitable[Any]]]:
    """
    Wrap an async function so its result is served through ``get_or_set``.

    ``key_fn`` receives the same arguments as the wrapped function and returns
    the cache key.

    Usage:
        get_product = cached(manager, "products", lambda product_id: product_id)(fetch_product)
        product = await get_product("sku-1")
    """

    def wrap(func: Callable[..., Awaitable[Any]]) -> Callable[..., Awaitable[Any]]:
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            key = key_fn(*args, **kwargs)
            return await manager.get_or_set(
                namespace,
                key,
                lambda: func(*args, **kwargs),
                tags=tags,
                timeout=timeout,
            )

        wrapper.cache_namespace = namespace  # type: ignore[attr-defined]
        return wrapper

    return wrap
