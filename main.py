"""
VibeStream audio service - Main Entrypoint
Serves cached YouTube audio over HTTP, fetching and transcoding on first request.
"""
import logging
import sys

from aiohttp import web

from vibestream.config.settings import get_settings
from vibestream.utils.logging import setup_logging
from vibestream.web import create_app


def main() -> None:
    settings = get_settings()
    setup_logging(settings.ENV, settings.LOG_LEVEL)
    logger = logging.getLogger(__name__)

    app = create_app(settings)

    logger.info(
        "Starting server",
        extra={"env": settings.ENV, "host": settings.HOST, "port": settings.PORT},
    )
    web.run_app(app, host=settings.HOST, port=settings.PORT, print=None)
    logger.info("Server stopped")


if __name__ == "__main__":
    try:
        main()
    except KeyboardInterrupt:
        sys.exit(0)
