"""
Cache gateway service package.

The gateway fronts the meter CRUD API with a read-through response cache:
- Caching: policy-driven GET caching with per-user partitions
- Invalidation: mutations evict every resource they cascade to
- Admin: stats, health, clearing, warmup and key inspection

Structure:
- app.main: FastAPI app, proxy route and middleware wiring.
- app.adapters: HTTP client for the upstream API.
- app.caching: Store backends, policy, middleware and admin plane.
"""
