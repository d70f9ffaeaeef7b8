"""
Stream endpoints.
- GET    /stream/{identifier}        → audio body (200/206) or redirect to a signed URL
- GET    /stream/info/{identifier}   → cached-metadata snapshot, never fetches
- DELETE /stream/{identifier}        → remove the cached asset
- GET    /stream/stats/storage       → aggregate cache usage
- POST   /stream/cleanup             → one eviction pass, then updated stats
"""
import logging
from datetime import datetime
from typing import Callable, Optional

from aiohttp import hdrs, web

from vibestream.services.audio_processor import TranscodeFailed
from vibestream.services.cache import NotFound, StorageError
from vibestream.services.downloader import UpstreamFetchError
from vibestream.services.models import LocalAudio, SignedAudioUrl
from vibestream.services.orchestrator import AudioService
from vibestream.utils.identifier import InvalidIdentifier, validate_identifier

logger = logging.getLogger(__name__)

AUDIO_SERVICE = web.AppKey("audio_service", AudioService)
STREAM_CHUNK_SIZE = web.AppKey("stream_chunk_size", int)

USER_HEADER = "X-User-Id"

routes = web.RouteTableDef()


@routes.get("/stream/info/{identifier}")
async def stream_info(request: web.Request) -> web.Response:
    service = request.app[AUDIO_SERVICE]
    try:
        identifier = validate_identifier(request.match_info["identifier"])
    except InvalidIdentifier as exc:
        return _invalid_identifier(exc)

    try:
        metadata, asset = await service.info(identifier)
    except StorageError as exc:
        logger.error("Info lookup failed", extra={"identifier": identifier, "error": str(exc)})
        return web.json_response(
            {"error": "Failed to get info", "message": str(exc)}, status=500
        )

    body: dict = {
        "identifier": identifier,
        "cached": asset is not None,
        "title": metadata.title if metadata else "Unknown",
        "artist": metadata.artist if metadata else "Unknown",
    }
    if metadata:
        body.update(
            album=metadata.album,
            duration=metadata.duration,
            coverUrl=metadata.cover_url,
        )
    if asset:
        body.update(
            fileSize=asset.size,
            createdAt=_iso(asset.created_at),
            lastAccessed=_iso(asset.last_accessed),
        )
    return web.json_response(body)


@routes.get("/stream/stats/storage")
async def storage_stats(request: web.Request) -> web.Response:
    service = request.app[AUDIO_SERVICE]
    try:
        stats = await service.stats()
    except StorageError as exc:
        logger.error("Storage stats failed", extra={"error": str(exc)})
        return web.json_response(
            {"error": "Failed to get storage stats", "message": str(exc)}, status=500
        )
    return web.json_response({**stats.as_dict(), "backend": service.backend})


@routes.post("/stream/cleanup")
async def trigger_cleanup(request: web.Request) -> web.Response:
    service = request.app[AUDIO_SERVICE]
    try:
        evicted = await service.cleanup()
        stats = await service.stats()
    except StorageError as exc:
        logger.error("Manual cleanup failed", extra={"error": str(exc)})
        return web.json_response(
            {"error": "Cleanup failed", "message": str(exc)}, status=500
        )
    logger.info("Manual cleanup", extra={"evicted": len(evicted)})
    return web.json_response({"evicted": evicted, **stats.as_dict()})


@routes.get("/stream/{identifier}")
async def stream_audio(request: web.Request) -> web.StreamResponse:
    service = request.app[AUDIO_SERVICE]
    user_id = _caller(request)
    try:
        identifier = validate_identifier(request.match_info["identifier"])
    except InvalidIdentifier as exc:
        return _invalid_identifier(exc)

    logger.info(
        "Stream request",
        extra={"identifier": identifier, "user_id": user_id or "anonymous"},
    )

    try:
        await service.ensure_cached(identifier)
        handle = await service.resolve(identifier)
    except NotFound:
        return web.json_response({"error": "Audio not found"}, status=404)
    except (UpstreamFetchError, TranscodeFailed, StorageError) as exc:
        logger.error(
            "Stream error",
            extra={"identifier": identifier, "error": str(exc), "kind": type(exc).__name__},
        )
        return web.json_response(
            {"error": "Streaming failed", "message": str(exc)}, status=500
        )

    if isinstance(handle, SignedAudioUrl):
        service.plays.notify(identifier, user_id)
        raise web.HTTPFound(handle.url)

    chunk_size = request.app.get(STREAM_CHUNK_SIZE, 64 * 1024)
    return AudioFileResponse(
        handle,
        identifier,
        on_sent=lambda: service.plays.notify(identifier, user_id),
        chunk_size=chunk_size,
    )


@routes.delete("/stream/{identifier}")
async def delete_audio(request: web.Request) -> web.Response:
    service = request.app[AUDIO_SERVICE]
    try:
        identifier = validate_identifier(request.match_info["identifier"])
    except InvalidIdentifier as exc:
        return _invalid_identifier(exc)

    try:
        await service.delete(identifier)
    except NotFound:
        return web.json_response({"error": "Audio not found"}, status=404)
    except StorageError as exc:
        logger.error("Delete failed", extra={"identifier": identifier, "error": str(exc)})
        return web.json_response(
            {"error": "Delete failed", "message": str(exc)}, status=500
        )
    return web.json_response({"message": "Audio deleted", "identifier": identifier})


class AudioFileResponse(web.FileResponse):
    """
    FileResponse that records the play once the body has gone out, and
    treats a client hanging up mid-body as the end of the request.
    Range parsing, 206 and 416 are handled by aiohttp.
    """

    def __init__(
        self,
        handle: LocalAudio,
        identifier: str,
        on_sent: Callable[[], None],
        chunk_size: int = 64 * 1024,
    ):
        super().__init__(
            handle.path,
            chunk_size=chunk_size,
            headers={
                hdrs.CONTENT_TYPE: handle.content_type,
                hdrs.ACCEPT_RANGES: "bytes",
            },
        )
        self._identifier = identifier
        self._on_sent = on_sent

    async def prepare(self, request: web.BaseRequest):
        try:
            writer = await super().prepare(request)
        except ConnectionError as exc:
            logger.info(
                "Client disconnected mid-stream",
                extra={"identifier": self._identifier, "error": type(exc).__name__},
            )
            return None
        if self.status in (200, 206):
            self._on_sent()
        return writer


def _caller(request: web.Request) -> Optional[str]:
    user_id = request.headers.get(USER_HEADER, "").strip()
    if not user_id or user_id == "anonymous":
        return None
    return user_id


def _invalid_identifier(exc: InvalidIdentifier) -> web.Response:
    return web.json_response(
        {"error": "Invalid video ID", "message": str(exc)}, status=400
    )


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None
