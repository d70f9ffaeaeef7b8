"""
aiohttp application assembly: routes, middlewares and service lifecycle.
"""
import logging
import time
from typing import Awaitable, Callable, Optional

from aiohttp import web

from vibestream.config.settings import Settings
from vibestream.handlers.stream import AUDIO_SERVICE, STREAM_CHUNK_SIZE, routes
from vibestream.services.factory import build_audio_service
from vibestream.services.orchestrator import AudioService

logger = logging.getLogger(__name__)

Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]


@web.middleware
async def error_middleware(request: web.Request, handler: Handler) -> web.StreamResponse:
    started = time.monotonic()
    try:
        response = await handler(request)
    except web.HTTPException:
        raise
    except Exception:
        logger.exception(
            "Unexpected error",
            extra={"method": request.method, "path": request.path},
        )
        return web.json_response({"error": "Internal server error"}, status=500)

    logger.info(
        "Request handled",
        extra={
            "method": request.method,
            "path": request.path,
            "status": response.status,
            "elapsed_ms": round((time.monotonic() - started) * 1000, 1),
        },
    )
    return response


async def health(request: web.Request) -> web.Response:
    service = request.app[AUDIO_SERVICE]
    return web.json_response({"status": "ok", "backend": service.backend})


def create_app(settings: Settings, service: Optional[AudioService] = None) -> web.Application:
    app = web.Application(middlewares=[error_middleware])
    app[AUDIO_SERVICE] = service or build_audio_service(settings)
    app[STREAM_CHUNK_SIZE] = settings.STREAM_CHUNK_SIZE

    app.router.add_get("/health", health)
    app.add_routes(routes)

    async def on_startup(app: web.Application) -> None:
        await app[AUDIO_SERVICE].startup()
        logger.info("Audio service started", extra={"backend": app[AUDIO_SERVICE].backend})

    async def on_cleanup(app: web.Application) -> None:
        await app[AUDIO_SERVICE].shutdown()
        logger.info("Audio service stopped")

    app.on_startup.append(on_startup)
    app.on_cleanup.append(on_cleanup)
    return app
