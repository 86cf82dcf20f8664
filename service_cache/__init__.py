"""
Tiered cache and batched data access layer.

Sits between request handlers and a slow backing document store, serving
reads from an in-process tier, a shared Redis tier, or the caller's fetch
function, in that order.

Structure:
- app.manager: Tiered cache manager, fetch coalescing, cached-call wrapper.
- app.loader: Batched loader collapsing per-key loads into multi-key fetches.
- app.local: Bounded in-process tier.
- app.remote: Shared Redis tier client.
- app.strategies: Per-namespace TTL and refresh policies.
- app.stats: Counters and health reporting.
- app.codec: Value encoding and size estimation.
- app.factory: Composition root.
"""
