"""
Capacity manager: keeps the cache under MAX_CACHE_SIZE_MB.

One eviction pass sums the store, and when over the ceiling deletes the
least-recently-accessed ceil(fraction * count) assets. A single pass may
leave the cache above the ceiling; the next trigger continues from there.
"""
import logging
import math

from vibestream.services.cache import CacheStore
from vibestream.services.models import StorageStats

logger = logging.getLogger(__name__)


class CapacityManager:
    def __init__(self, store: CacheStore, max_size_mb: int, fraction: float = 0.2):
        self._store = store
        self._max_size_mb = max_size_mb
        self._max_bytes = max_size_mb * 1024 * 1024
        self._fraction = fraction

    async def stats(self) -> StorageStats:
        assets = await self._store.list_all()
        return StorageStats(
            total_files=len(assets),
            total_size_bytes=sum(a.size for a in assets),
            max_size_mb=self._max_size_mb,
        )

    async def cleanup(self) -> list[str]:
        """Run one eviction pass. Returns the evicted identifiers, oldest first."""
        assets = await self._store.list_all()
        total = sum(a.size for a in assets)
        if total <= self._max_bytes:
            return []

        logger.info(
            "Storage full, cleaning up",
            extra={"total_mb": round(total / (1024 * 1024), 2), "files": len(assets)},
        )

        # sorted() is stable: equal access times keep enumeration order
        oldest_first = sorted(assets, key=lambda a: a.last_accessed)
        count = math.ceil(len(oldest_first) * self._fraction)

        evicted = []
        for asset in oldest_first[:count]:
            if await self._store.delete(asset.identifier):
                evicted.append(asset.identifier)

        logger.info("Cleaned up files", extra={"evicted": len(evicted)})
        return evicted
