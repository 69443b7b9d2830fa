"""
Inventory cache service package.

Caches large, frequently refetched inventories in a size- and
key-count-constrained key-value store by splitting them into chunks,
with TTL expiry, least-recently-written eviction and a local fallback
store.

Structure:
- app.caching: chunking, metadata, eviction and the CacheService facade.
- app.storage: primary, in-memory and fallback key-value stores.
- app.main: FastAPI admin surface over a CacheService.
"""
