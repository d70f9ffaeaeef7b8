"""
Shared fixtures: settings rooted in tmp_path, fake yt-dlp/ffmpeg collaborators,
and an AudioService wired to a real local store and SQLite repository.
"""
import asyncio
import shutil
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional

import pytest
import pytest_asyncio
from aiohttp.test_utils import TestClient, TestServer
from botocore.exceptions import ClientError

from vibestream.config.settings import Settings
from vibestream.services.audio_processor import TranscodeFailed
from vibestream.services.cache import LocalCacheStore
from vibestream.services.capacity import CapacityManager
from vibestream.services.metadata import MetadataRepository
from vibestream.services.models import FetchResult, TrackMetadata
from vibestream.services.orchestrator import AudioService
from vibestream.web import create_app

VIDEO_ID = "dQw4w9WgXcQ"
AUDIO_BYTES = bytes(range(256)) * 4


class FakeFetcher:
    """Stands in for SourceFetcher; writes AUDIO_BYTES into the scratch dir."""

    def __init__(self, payload: bytes = AUDIO_BYTES):
        self.payload = payload
        self.calls: list[str] = []
        self.gate: Optional[asyncio.Event] = None
        self.fail: Optional[Exception] = None

    async def fetch_audio(self, identifier: str, scratch_dir: Path) -> FetchResult:
        self.calls.append(identifier)
        if self.gate is not None:
            await self.gate.wait()
        if self.fail is not None:
            raise self.fail
        path = scratch_dir / f"{identifier}_temp.webm"
        path.write_bytes(self.payload)
        return FetchResult(
            path=path,
            metadata=TrackMetadata(
                identifier=identifier,
                title="Never Gonna Give You Up",
                artist="Rick Astley",
                duration=213,
            ),
        )


class FakeTranscoder:
    def __init__(self):
        self.calls: list[Path] = []
        self.fail = False

    async def transcode(self, input_path: Path, output_path: Path, metadata=None) -> Path:
        self.calls.append(input_path)
        if self.fail:
            raise TranscodeFailed("ffmpeg failed: invalid data")
        shutil.copyfile(input_path, output_path)
        return output_path


class CountingStore(LocalCacheStore):
    def __init__(self, audio_dir: Path):
        super().__init__(audio_dir)
        self.exists_calls = 0

    async def exists(self, identifier: str) -> bool:
        self.exists_calls += 1
        return await super().exists(identifier)


class FakeS3Client:
    """In-memory subset of the boto3 S3 client used by BlobCacheStore."""

    def __init__(self):
        self.objects: dict[str, dict] = {}
        self._clock = 0

    def _stamp(self) -> datetime:
        self._clock += 1
        return datetime(2024, 1, 1, tzinfo=timezone.utc) + timedelta(seconds=self._clock)

    def put_object(self, Bucket, Key, Body, ContentType):
        self.objects[Key] = {"Body": Body, "ContentType": ContentType, "LastModified": self._stamp()}

    def upload_file(self, Filename, Bucket, Key, ExtraArgs=None):
        body = Path(Filename).read_bytes()
        self.put_object(Bucket, Key, body, (ExtraArgs or {}).get("ContentType"))

    def head_object(self, Bucket, Key):
        obj = self.objects.get(Key)
        if obj is None:
            raise ClientError({"Error": {"Code": "404", "Message": "Not Found"}}, "HeadObject")
        return {
            "ContentLength": len(obj["Body"]),
            "ContentType": obj["ContentType"],
            "LastModified": obj["LastModified"],
        }

    def delete_object(self, Bucket, Key):
        self.objects.pop(Key, None)

    def generate_presigned_url(self, operation, Params, ExpiresIn):
        return f"https://signed.example.com/{Params['Bucket']}/{Params['Key']}?expires={ExpiresIn}"

    def get_paginator(self, name):
        client = self

        class _Paginator:
            def paginate(self, Bucket, Prefix=""):
                yield {
                    "Contents": [
                        {"Key": k, "Size": len(v["Body"]), "LastModified": v["LastModified"]}
                        for k, v in client.objects.items()
                        if k.startswith(Prefix)
                    ]
                }

        return _Paginator()


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        _env_file=None,
        ENV="development",
        AUDIO_STORAGE_DIR=tmp_path / "audio",
        TEMP_STORAGE_DIR=tmp_path / "tmp",
        DATABASE_PATH=tmp_path / "vibestream.db",
        MAX_CACHE_SIZE_MB=100,
        DOWNLOAD_POLL_INTERVAL_SECONDS=0,
        STREAM_CHUNK_SIZE=128,
    )


@pytest.fixture
def fetcher() -> FakeFetcher:
    return FakeFetcher()


@pytest.fixture
def transcoder() -> FakeTranscoder:
    return FakeTranscoder()


@pytest.fixture
def store(settings: Settings) -> CountingStore:
    return CountingStore(settings.AUDIO_STORAGE_DIR)


@pytest.fixture
def service(settings, store, fetcher, transcoder) -> AudioService:
    return AudioService(
        store=store,
        fetcher=fetcher,
        capacity=CapacityManager(store, max_size_mb=settings.MAX_CACHE_SIZE_MB),
        repository=MetadataRepository(settings.DATABASE_PATH),
        temp_dir=settings.TEMP_STORAGE_DIR,
        transcoder=transcoder,
    )


@pytest_asyncio.fixture
async def started_service(service: AudioService):
    await service.startup()
    yield service
    await service.shutdown()


@pytest_asyncio.fixture
async def client(settings: Settings, service: AudioService):
    app = create_app(settings, service)
    async with TestClient(TestServer(app)) as test_client:
        yield test_client
