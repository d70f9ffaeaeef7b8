"""
Orchestrator: cache-or-fetch pipeline.
  identifier → cache hit? → download → (transcode) → publish → metadata → evict

Concurrent requests for the same uncached identifier share one fetch:
the first caller starts a task and registers it in the in-flight map,
followers await that same task, and the entry is dropped when it settles.
"""
import asyncio
import logging
import shutil
import tempfile
from pathlib import Path
from typing import Optional

from vibestream.services.audio_processor import Transcoder
from vibestream.services.cache import CacheStore, NotFound
from vibestream.services.capacity import CapacityManager
from vibestream.services.downloader import SourceFetcher
from vibestream.services.metadata import MetadataRepository
from vibestream.services.models import (
    AudioAsset,
    EnsureResult,
    ReadHandle,
    StorageStats,
    TrackMetadata,
)

logger = logging.getLogger(__name__)


class PlayRecorder:
    """Best-effort play logging; never blocks or fails a response."""

    def __init__(self, repository: MetadataRepository):
        self._repository = repository
        self._tasks: set[asyncio.Task] = set()

    def notify(self, identifier: str, user_id: Optional[str]) -> None:
        if not user_id or user_id == "anonymous":
            return
        task = asyncio.create_task(self._record(identifier, user_id))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _record(self, identifier: str, user_id: str) -> None:
        try:
            await self._repository.record_play(identifier, user_id)
        except Exception as exc:
            logger.error(
                "Play log error",
                extra={"identifier": identifier, "user_id": user_id, "error": str(exc)},
            )

    async def drain(self) -> None:
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)


class AudioService:
    def __init__(
        self,
        store: CacheStore,
        fetcher: SourceFetcher,
        capacity: CapacityManager,
        repository: MetadataRepository,
        temp_dir: Path,
        transcoder: Optional[Transcoder] = None,
    ):
        self._store = store
        self._fetcher = fetcher
        self._capacity = capacity
        self._repository = repository
        self._temp_dir = Path(temp_dir)
        self._transcoder = transcoder
        self._inflight: dict[str, asyncio.Task] = {}
        self.plays = PlayRecorder(repository)

    @property
    def backend(self) -> str:
        return self._store.backend

    def in_flight(self, identifier: str) -> bool:
        return identifier in self._inflight

    async def startup(self) -> None:
        self._temp_dir.mkdir(parents=True, exist_ok=True)
        await self._repository.init()

    async def shutdown(self) -> None:
        await self.plays.drain()
        if self._inflight:
            await asyncio.gather(*self._inflight.values(), return_exceptions=True)
        await self._repository.close()

    async def ensure_cached(self, identifier: str) -> EnsureResult:
        """
        Make sure an asset exists for identifier, fetching it at most once
        no matter how many callers ask concurrently.
        """
        # Looked up before any await: a follower always joins a running fetch.
        task = self._inflight.get(identifier)
        if task is None:
            task = asyncio.create_task(self._run(identifier))
            self._inflight[identifier] = task
            task.add_done_callback(lambda t, key=identifier: _log_failure(key, t))
        else:
            logger.info("Joining in-flight request", extra={"identifier": identifier})

        # shield: a disconnecting requester must not cancel the shared fetch
        return await asyncio.shield(task)

    async def resolve(self, identifier: str) -> ReadHandle:
        handle = await self._store.resolve_for_read(identifier)
        if handle is None:
            raise NotFound(f"Audio not found: {identifier}")
        return handle

    async def info(self, identifier: str) -> tuple[Optional[TrackMetadata], Optional[AudioAsset]]:
        asset = await self._store.stat(identifier)
        metadata = await self._repository.get(identifier)
        return metadata, asset

    async def delete(self, identifier: str) -> None:
        if not await self._store.delete(identifier):
            raise NotFound(f"Audio not found: {identifier}")

    async def stats(self) -> StorageStats:
        return await self._capacity.stats()

    async def cleanup(self) -> list[str]:
        return await self._capacity.cleanup()

    async def _run(self, identifier: str) -> EnsureResult:
        try:
            if await self._store.exists(identifier):
                logger.info("Audio already cached", extra={"identifier": identifier})
                return EnsureResult(identifier=identifier, cached=True)
            metadata = await self._fetch_and_publish(identifier)
            return EnsureResult(identifier=identifier, cached=False, metadata=metadata)
        finally:
            # Cleared before followers resume so a retry starts a fresh fetch
            if self._inflight.get(identifier) is asyncio.current_task():
                del self._inflight[identifier]

    async def _fetch_and_publish(self, identifier: str) -> TrackMetadata:
        logger.info("Downloading audio", extra={"identifier": identifier})
        self._temp_dir.mkdir(parents=True, exist_ok=True)
        scratch = Path(tempfile.mkdtemp(prefix=f"{identifier}_", dir=self._temp_dir))

        try:
            fetched = await self._fetcher.fetch_audio(identifier, scratch)
            source = fetched.path
            if self._transcoder is not None:
                source = await self._transcoder.transcode(
                    fetched.path, scratch / f"{identifier}.mp3", fetched.metadata
                )
            await self._store.put(identifier, source)
        finally:
            _remove_scratch(scratch)

        # The asset is published from here on; the rest is best-effort.
        try:
            await self._repository.upsert(fetched.metadata)
        except Exception as exc:
            logger.error(
                "Metadata upsert failed",
                extra={"identifier": identifier, "error": str(exc)},
            )

        try:
            await self._capacity.cleanup()
        except Exception as exc:
            logger.error("Cleanup error", extra={"error": str(exc)})

        logger.info("Audio ready", extra={"identifier": identifier})
        return fetched.metadata


def _log_failure(identifier: str, task: asyncio.Task) -> None:
    if not task.cancelled() and task.exception() is not None:
        logger.warning(
            "Cache fill failed",
            extra={"identifier": identifier, "error": str(task.exception())},
        )


def _remove_scratch(scratch: Path) -> None:
    try:
        shutil.rmtree(scratch)
    except FileNotFoundError:
        pass
    except OSError as exc:
        logger.warning(
            "Failed to remove temp files",
            extra={"path": str(scratch), "error": str(exc)},
        )
