"""
Cache store for processed audio, one object per identifier.
- CacheStore is the interface the stream handler and capacity manager use.
- LocalCacheStore keeps `<identifier>.mp3` files in a directory.
- Writes go to a hidden temp file and are published with an atomic rename,
  so readers never see a partially written asset.
"""
import asyncio
import logging
import os
import shutil
import time
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Union

from vibestream.services.models import AUDIO_MPEG, AudioAsset, LocalAudio, ReadHandle

logger = logging.getLogger(__name__)

_SUFFIX = ".mp3"


class StorageError(Exception):
    pass


class NotFound(Exception):
    pass


class CacheStore(ABC):
    """Durable keyed storage for one audio blob per identifier."""

    backend: str = ""

    @abstractmethod
    async def exists(self, identifier: str) -> bool:
        ...

    @abstractmethod
    async def put(
        self,
        identifier: str,
        source: Union[bytes, Path],
        content_type: str = AUDIO_MPEG,
    ) -> AudioAsset:
        """Store source under identifier, replacing any previous object."""

    @abstractmethod
    async def resolve_for_read(self, identifier: str) -> Optional[ReadHandle]:
        """Something a client can stream from, or None when absent."""

    @abstractmethod
    async def stat(self, identifier: str) -> Optional[AudioAsset]:
        ...

    @abstractmethod
    async def delete(self, identifier: str) -> bool:
        """Remove the object. False if there was nothing to remove."""

    @abstractmethod
    async def list_all(self) -> list[AudioAsset]:
        ...


class LocalCacheStore(CacheStore):
    backend = "filesystem"

    def __init__(self, audio_dir: Path):
        self._dir = Path(audio_dir)
        self._dir.mkdir(parents=True, exist_ok=True)

    @property
    def directory(self) -> Path:
        return self._dir

    def path_for(self, identifier: str) -> Path:
        return self._dir / f"{identifier}{_SUFFIX}"

    async def exists(self, identifier: str) -> bool:
        try:
            return await asyncio.to_thread(_non_empty, self.path_for(identifier))
        except OSError as exc:
            raise StorageError(f"Failed to check {identifier}: {exc}") from exc

    async def put(
        self,
        identifier: str,
        source: Union[bytes, Path],
        content_type: str = AUDIO_MPEG,
    ) -> AudioAsset:
        dest = self.path_for(identifier)
        tmp = self._dir / f".{identifier}.{uuid.uuid4().hex}.tmp"
        try:
            await asyncio.to_thread(_write_then_publish, source, tmp, dest)
            asset = await asyncio.to_thread(_asset_from_path, identifier, dest)
        except OSError as exc:
            tmp.unlink(missing_ok=True)
            raise StorageError(f"Failed to store {identifier}: {exc}") from exc

        logger.info(
            "Stored in cache",
            extra={"identifier": identifier, "size_kb": asset.size // 1024},
        )
        return asset

    async def resolve_for_read(self, identifier: str) -> Optional[LocalAudio]:
        path = self.path_for(identifier)
        try:
            size = await asyncio.to_thread(_touch, path)
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise StorageError(f"Failed to open {identifier}: {exc}") from exc
        return LocalAudio(path=path, size=size)

    async def stat(self, identifier: str) -> Optional[AudioAsset]:
        path = self.path_for(identifier)
        try:
            return await asyncio.to_thread(_asset_from_path, identifier, path)
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise StorageError(f"Failed to stat {identifier}: {exc}") from exc

    async def delete(self, identifier: str) -> bool:
        try:
            await asyncio.to_thread(self.path_for(identifier).unlink)
        except FileNotFoundError:
            return False
        except OSError as exc:
            raise StorageError(f"Failed to delete {identifier}: {exc}") from exc
        logger.info("Deleted audio", extra={"identifier": identifier})
        return True

    async def list_all(self) -> list[AudioAsset]:
        try:
            return await asyncio.to_thread(_scan, self._dir)
        except OSError as exc:
            raise StorageError(f"Failed to list {self._dir}: {exc}") from exc


def _non_empty(path: Path) -> bool:
    try:
        return path.stat().st_size > 0
    except FileNotFoundError:
        return False


def _touch(path: Path) -> int:
    """Stamp the access time and return the size."""
    st = path.stat()
    # Many mounts use noatime/relatime; record the access explicitly.
    os.utime(path, (time.time(), st.st_mtime))
    return st.st_size


def _scan(directory: Path) -> list[AudioAsset]:
    assets = []
    for path in sorted(directory.glob(f"*{_SUFFIX}")):
        if path.name.startswith("."):
            continue
        try:
            assets.append(_asset_from_path(path.stem, path))
        except FileNotFoundError:
            # Deleted between listing and stat
            continue
    return assets


def _write_then_publish(source: Union[bytes, Path], tmp: Path, dest: Path) -> None:
    if isinstance(source, (bytes, bytearray)):
        tmp.write_bytes(source)
    else:
        shutil.move(str(source), str(tmp))
    os.utime(tmp, None)
    os.replace(tmp, dest)


def _asset_from_path(identifier: str, path: Path) -> AudioAsset:
    st = path.stat()
    return AudioAsset(
        identifier=identifier,
        size=st.st_size,
        location=str(path),
        last_accessed=datetime.fromtimestamp(st.st_atime, tz=timezone.utc),
        created_at=datetime.fromtimestamp(st.st_mtime, tz=timezone.utc),
    )
