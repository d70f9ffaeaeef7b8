import math
import os
from pathlib import Path

import pytest
from conftest import FakeS3Client

from vibestream.services.blob_store import BlobCacheStore
from vibestream.services.cache import LocalCacheStore
from vibestream.services.capacity import CapacityManager

MB = 1024 * 1024


def _ids(n: int) -> list[str]:
    return [f"track{i:06d}" for i in range(n)]


async def _fill(store: LocalCacheStore, access_times: dict[str, int], size: int = 100) -> None:
    for identifier, atime in access_times.items():
        await store.put(identifier, b"x" * size)
        os.utime(store.path_for(identifier), (atime, atime))


@pytest.fixture
def store(tmp_path: Path) -> LocalCacheStore:
    return LocalCacheStore(tmp_path / "audio")


class TestCapacityManager:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("count", [1, 5, 7, 10, 11])
    async def test_evicts_ceil_fifth_oldest(self, store, count):
        ids = _ids(count)
        # Access times deliberately out of name order
        times = {identifier: 1_000_000 + ((i * 7) % count) * 60 for i, identifier in enumerate(ids)}
        await _fill(store, times)
        manager = CapacityManager(store, max_size_mb=0)

        evicted = await manager.cleanup()

        expected = sorted(ids, key=lambda i: times[i])[: math.ceil(count * 0.2)]
        assert evicted == expected
        remaining = {a.identifier for a in await store.list_all()}
        assert remaining == set(ids) - set(expected)

    @pytest.mark.asyncio
    async def test_ties_keep_enumeration_order(self, store):
        ids = _ids(10)
        await _fill(store, {identifier: 1_000_000 for identifier in ids})
        manager = CapacityManager(store, max_size_mb=0)

        evicted = await manager.cleanup()

        assert evicted == ids[:2]

    @pytest.mark.asyncio
    async def test_under_ceiling_is_a_no_op(self, store):
        await _fill(store, {identifier: 1_000_000 for identifier in _ids(5)})
        manager = CapacityManager(store, max_size_mb=1)

        before = await manager.stats()
        assert await manager.cleanup() == []
        after = await manager.stats()

        assert before == after
        assert after.total_files == 5

    @pytest.mark.asyncio
    async def test_single_pass_may_stay_over_ceiling(self, store):
        await _fill(store, {identifier: 1_000_000 + i for i, identifier in enumerate(_ids(10))})
        manager = CapacityManager(store, max_size_mb=0)

        assert len(await manager.cleanup()) == 2
        assert len(await manager.cleanup()) == 2
        assert (await manager.stats()).total_files == 6

    @pytest.mark.asyncio
    async def test_stats(self, store):
        await store.put("aaaaaaaaaaa", b"x" * MB)
        await store.put("bbbbbbbbbbb", b"x" * (MB // 2))
        stats = await CapacityManager(store, max_size_mb=10).stats()

        assert stats.as_dict() == {
            "totalFiles": 2,
            "totalSizeMB": 1.5,
            "maxSizeMB": 10,
            "usagePercent": 15.0,
        }

    @pytest.mark.asyncio
    async def test_works_against_blob_store(self):
        s3 = FakeS3Client()
        blob = BlobCacheStore(s3, bucket="vibestream")
        for identifier in _ids(5):
            await blob.put(identifier, b"x" * 10)

        evicted = await CapacityManager(blob, max_size_mb=0).cleanup()

        # Oldest upload first
        assert evicted == ["track000000"]
        assert len(s3.objects) == 4
