"""
Source fetcher: wraps yt-dlp to pull audio and track metadata for one identifier.
The downloaded file lands in a caller-owned scratch directory; the caller cleans up.
"""
import asyncio
import json
import logging
import shutil
from pathlib import Path
from typing import Optional

from vibestream.config.settings import Settings
from vibestream.services.models import (
    UNKNOWN_ARTIST,
    UNKNOWN_TITLE,
    FetchResult,
    TrackMetadata,
)
from vibestream.utils.identifier import source_url

logger = logging.getLogger(__name__)

# yt-dlp leaves these behind while a download is still being written
_PARTIAL_SUFFIXES = {".part", ".ytdl", ".temp"}


class UpstreamFetchError(Exception):
    pass


class PrivateVideoError(UpstreamFetchError):
    pass


class GeoBlockedError(UpstreamFetchError):
    pass


class ContentUnavailableError(UpstreamFetchError):
    pass


class DownloadIncomplete(UpstreamFetchError):
    pass


class SourceFetcher:
    def __init__(self, settings: Settings, *, extract_mp3: bool = False):
        self._ytdlp = settings.YTDLP_PATH
        self._timeout = settings.FETCH_TIMEOUT_SECONDS
        self._poll_attempts = settings.DOWNLOAD_POLL_ATTEMPTS
        self._poll_interval = settings.DOWNLOAD_POLL_INTERVAL_SECONDS
        self._bitrate = settings.AUDIO_BITRATE
        # Without a transcoder downstream, ask yt-dlp for mp3 directly.
        self._extract_mp3 = extract_mp3

    async def fetch_audio(self, identifier: str, scratch_dir: Path) -> FetchResult:
        """
        Download best-quality audio for identifier into scratch_dir.
        Returns the downloaded file plus best-effort metadata.
        """
        _check_ytdlp(self._ytdlp)

        stem = f"{identifier}_temp"
        cmd = self._build_command(identifier, scratch_dir / f"{stem}.%(ext)s")

        logger.info("Starting yt-dlp download", extra={"identifier": identifier})

        proc = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await asyncio.wait_for(
                proc.communicate(),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError as exc:
            proc.kill()
            await proc.wait()
            raise UpstreamFetchError(
                f"Download timed out after {self._timeout}s"
            ) from exc

        if proc.returncode != 0:
            _raise_from_ytdlp_error(stderr.decode(errors="replace"))

        pattern = f"{stem}.mp3" if self._extract_mp3 else f"{stem}.*"
        path = await wait_for_file(
            scratch_dir, pattern, self._poll_attempts, self._poll_interval
        )
        metadata = parse_info(_last_json_line(stdout.decode(errors="replace")), identifier)

        logger.info(
            "Download finished",
            extra={
                "identifier": identifier,
                "size_kb": path.stat().st_size // 1024,
                "track": metadata.display_name,
            },
        )
        return FetchResult(path=path, metadata=metadata)

    def _build_command(self, identifier: str, output_template: Path) -> list[str]:
        return [
            self._ytdlp,
            "--no-playlist",
            "--format", "bestaudio/best",
            "--no-check-certificates",
            "--no-warnings",
            "--socket-timeout", "30",
            "--retries", "3",
            "--add-header", "referer:youtube.com",
            "--output", str(output_template),
            "--no-progress",
            "--quiet",
            # Print the info dict while still downloading
            "--dump-json",
            "--no-simulate",
            *(["--extract-audio", "--audio-format", "mp3",
               "--audio-quality", self._bitrate.upper()] if self._extract_mp3 else []),
            source_url(identifier),
        ]


async def wait_for_file(
    directory: Path,
    pattern: str,
    attempts: int,
    interval: float,
) -> Path:
    """
    Poll for the finished download; yt-dlp fills in the extension and may
    still be renaming the part file when it exits.
    """
    for attempt in range(1, attempts + 1):
        candidates = [
            p for p in sorted(directory.glob(pattern)) if _is_finished(p)
        ]
        if candidates:
            return candidates[0]
        if attempt < attempts:
            await asyncio.sleep(interval)

    raise DownloadIncomplete(
        f"Downloaded file not found after {attempts} attempts"
    )


def _is_finished(path: Path) -> bool:
    if path.suffix in _PARTIAL_SUFFIXES:
        return False
    try:
        return path.stat().st_size > 0
    except FileNotFoundError:
        return False


def parse_info(info: Optional[dict], identifier: str) -> TrackMetadata:
    """Map a yt-dlp info dict onto TrackMetadata; missing fields get placeholders."""
    info = info or {}
    thumbnails = info.get("thumbnails") or []
    cover_url = info.get("thumbnail") or (thumbnails[-1].get("url") if thumbnails else None)

    return TrackMetadata(
        identifier=identifier,
        title=info.get("track") or info.get("title") or UNKNOWN_TITLE,
        artist=(
            info.get("artist")
            or info.get("uploader")
            or info.get("channel")
            or UNKNOWN_ARTIST
        ),
        duration=_non_negative_int(info.get("duration")),
        album=info.get("album"),
        cover_url=cover_url,
        channel=info.get("channel") or info.get("uploader"),
        view_count=_non_negative_int(info.get("view_count")),
    )


def _non_negative_int(value) -> int:
    try:
        return max(0, int(value))
    except (TypeError, ValueError):
        return 0


def _last_json_line(stdout: str) -> Optional[dict]:
    for line in reversed(stdout.strip().splitlines()):
        line = line.strip()
        if not line.startswith("{"):
            continue
        try:
            return json.loads(line)
        except json.JSONDecodeError:
            logger.warning("Unparseable yt-dlp info line")
            return None
    return None


def _raise_from_ytdlp_error(stderr: str) -> None:
    lower = stderr.lower()
    if "private video" in lower:
        raise PrivateVideoError("This video is private and cannot be downloaded")
    if "not available in your country" in lower or "geo restrict" in lower:
        raise GeoBlockedError("This content is geo-blocked in the server's region")
    if "video unavailable" in lower or "has been removed" in lower:
        raise ContentUnavailableError("This video is unavailable or has been removed")
    raise UpstreamFetchError(f"yt-dlp error: {stderr.strip()[:300]}")


def _check_ytdlp(binary: str) -> None:
    if not shutil.which(binary):
        raise UpstreamFetchError(f"{binary} is not installed or not in PATH")
