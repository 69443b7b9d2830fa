"""
Admin service for the inventory cache.
"""

from dataclasses import asdict
from typing import Any, Dict, List, Optional

from fastapi import Body, HTTPException, Query

from shared.base_service import BaseService
from shared.config import ServiceConfig, get_config
from shared.logging import set_owner_context

from .caching import CacheService, CacheWriteReport
from .storage import FileFallbackStore, RedisBackingStore


class InventoryCacheService(BaseService):
    """Inventory cache service implementation."""

    def __init__(self, config: Optional[ServiceConfig] = None, cache: Optional[CacheService] = None):
        super().__init__("inventory_cache", 8020, config or get_config("inventory_cache", 8020))

        if cache is None:
            primary = RedisBackingStore(
                self.config.redis_url,
                max_value_bytes=self.config.max_value_bytes,
                key_pattern=f"{self.config.namespace}_*",
                connect_timeout=self.config.redis_connect_timeout,
            )
            fallback = FileFallbackStore(self.config.fallback_path)
            cache = CacheService(self.config, primary, fallback, metrics=self.metrics)
        self.cache = cache

        self._setup_cache_routes()

    def _setup_cache_routes(self):
        """Set up cache-specific routes."""

        @self.app.get("/")
        async def root():
            """Root endpoint."""
            return {
                "service": "inventory_cache",
                "version": "1.0.0",
                "capabilities": ["chunking", "expiry", "eviction", "fallback"]
            }

        @self.app.get("/cache/stats")
        async def cache_stats():
            """Describe the active cache namespace."""
            return asdict(await self.cache.stats())

        @self.app.post("/cache/reconcile")
        async def reconcile():
            """Run an eviction pass now."""
            return asdict(await self.cache.reconcile())

        @self.app.get("/cache/{owner_key}")
        async def get_cached(owner_key: str):
            """Return the cached inventory for an owner."""
            set_owner_context(owner_key)
            result = await self.cache.get_cached(owner_key)
            if result is None:
                raise HTTPException(status_code=404, detail="No cached inventory")
            return {
                "owner_key": owner_key,
                "status": result.status.value,
                "storage_mode": result.storage_mode.value,
                "item_count": result.item_count,
                "missing_chunks": result.missing_chunks,
                "timestamp": result.timestamp,
                "items": result.items,
            }

        @self.app.put("/cache/{owner_key}")
        async def put_cached(
            owner_key: str,
            items: List[Any] = Body(...),
            replace: bool = Query(False, description="Clear large inventories before writing"),
        ):
            """Cache an inventory for an owner."""
            set_owner_context(owner_key)
            if replace:
                report = await self.cache.replace(owner_key, items)
            else:
                report = await self.cache.cache(owner_key, items)
            return self._report_to_dict(report)

        @self.app.delete("/cache/{owner_key}")
        async def clear_cached(owner_key: str):
            """Remove an owner's cached inventory."""
            set_owner_context(owner_key)
            await self.cache.clear(owner_key)
            return {"owner_key": owner_key, "cleared": True}

    async def on_startup(self) -> None:
        await self.cache.start()
        self.logger.info("Inventory cache started", backend=self.cache.backend)

    async def on_shutdown(self) -> None:
        await self.cache.stop()

    async def _check_dependencies(self) -> Dict[str, str]:
        primary_ok = await self.cache.primary.is_available()
        return {
            "primary_store": "ok" if primary_ok else "unavailable",
            "backend": "primary" if primary_ok else "fallback",
        }

    @staticmethod
    def _report_to_dict(report: CacheWriteReport) -> Dict[str, Any]:
        payload = asdict(report)
        payload["mode"] = report.mode.value
        payload["outcome"] = report.outcome
        return payload


def create_app():
    """Create inventory cache service application."""
    service = InventoryCacheService()
    return service.app


if __name__ == "__main__":
    service = InventoryCacheService()
    service.run()
