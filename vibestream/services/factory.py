"""
Builds the AudioService for the configured cache backend.
"""
import logging

from vibestream.config.settings import Settings
from vibestream.services.audio_processor import Transcoder
from vibestream.services.blob_store import BlobCacheStore, build_s3_client
from vibestream.services.cache import CacheStore, LocalCacheStore
from vibestream.services.capacity import CapacityManager
from vibestream.services.downloader import SourceFetcher
from vibestream.services.metadata import MetadataRepository
from vibestream.services.orchestrator import AudioService

logger = logging.getLogger(__name__)


def build_cache_store(settings: Settings) -> CacheStore:
    if settings.CACHE_BACKEND == "filesystem":
        return LocalCacheStore(settings.AUDIO_STORAGE_DIR)
    if settings.CACHE_BACKEND == "blob":
        return BlobCacheStore(
            build_s3_client(settings),
            bucket=settings.S3_BUCKET or "",
            prefix=settings.S3_PREFIX,
            url_ttl=settings.SIGNED_URL_TTL_SECONDS,
        )
    raise ValueError(f"Unknown cache backend: {settings.CACHE_BACKEND}")


def build_audio_service(settings: Settings) -> AudioService:
    store = build_cache_store(settings)
    transcoder = Transcoder(settings) if settings.transcode_enabled else None

    logger.info(
        "Audio service configured",
        extra={"backend": store.backend, "transcode": transcoder is not None},
    )
    return AudioService(
        store=store,
        fetcher=SourceFetcher(settings, extract_mp3=transcoder is None),
        capacity=CapacityManager(
            store,
            max_size_mb=settings.MAX_CACHE_SIZE_MB,
            fraction=settings.CLEANUP_FRACTION,
        ),
        repository=MetadataRepository(settings.DATABASE_PATH),
        temp_dir=settings.TEMP_STORAGE_DIR,
        transcoder=transcoder,
    )
