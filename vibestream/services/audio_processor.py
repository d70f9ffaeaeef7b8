"""
Audio processor (filesystem cache only).
- Converts any downloaded format to MP3 at a fixed bitrate via ffmpeg.
- 2 channels, 44.1 kHz, EBU R128 loudness normalization.
- Embeds ID3 title/artist/album when known.
- Removes any partial output on failure.
"""
import asyncio
import logging
import shutil
from pathlib import Path
from typing import Optional

from vibestream.config.settings import Settings
from vibestream.services.models import TrackMetadata

logger = logging.getLogger(__name__)


class TranscodeFailed(Exception):
    pass


class Transcoder:
    def __init__(self, settings: Settings):
        self._ffmpeg = settings.FFMPEG_PATH
        self._bitrate = settings.AUDIO_BITRATE
        self._channels = settings.AUDIO_CHANNELS
        self._sample_rate = settings.AUDIO_SAMPLE_RATE
        self._timeout = settings.TRANSCODE_TIMEOUT_SECONDS

    async def transcode(
        self,
        input_path: Path,
        output_path: Path,
        metadata: Optional[TrackMetadata] = None,
    ) -> Path:
        """Encode input_path into the canonical MP3 format. Returns output_path."""
        _check_ffmpeg(self._ffmpeg)

        try:
            await self._ffmpeg_encode(input_path, output_path, metadata)
            if not output_path.exists() or output_path.stat().st_size == 0:
                raise TranscodeFailed("ffmpeg produced no output")
        except BaseException:
            output_path.unlink(missing_ok=True)
            raise

        return output_path

    async def _ffmpeg_encode(
        self,
        input_path: Path,
        output_path: Path,
        metadata: Optional[TrackMetadata],
    ) -> None:
        cmd = [
            self._ffmpeg,
            "-y",                          # overwrite
            "-i", str(input_path),
            "-vn",
            # Loudness normalisation (EBU R128 defaults)
            "-af", "loudnorm",
            "-c:a", "libmp3lame",
            "-b:a", self._bitrate,
            "-ac", str(self._channels),
            "-ar", str(self._sample_rate),
            "-id3v2_version", "3",
            *_metadata_args(metadata),
            "-f", "mp3",
            "-loglevel", "error",
            str(output_path),
        ]

        logger.info("Running ffmpeg", extra={"output": str(output_path)})
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )

        try:
            _, stderr = await asyncio.wait_for(proc.communicate(), timeout=self._timeout)
        except asyncio.TimeoutError as exc:
            proc.kill()
            await proc.wait()
            raise TranscodeFailed(f"ffmpeg timed out after {self._timeout}s") from exc

        if proc.returncode != 0:
            err = stderr.decode(errors="replace")
            raise TranscodeFailed(f"ffmpeg failed: {err[:400]}")


def _metadata_args(metadata: Optional[TrackMetadata]) -> list[str]:
    if metadata is None:
        return []
    args = [
        "-metadata", f"title={_safe_meta(metadata.title)}",
        "-metadata", f"artist={_safe_meta(metadata.artist)}",
    ]
    if metadata.album:
        args += ["-metadata", f"album={_safe_meta(metadata.album)}"]
    return args


def _safe_meta(value: str) -> str:
    """Escape ffmpeg metadata value."""
    return value.replace("=", "\\=").replace(";", "\\;").replace("#", "\\#")


def _check_ffmpeg(binary: str) -> None:
    if not shutil.which(binary):
        raise TranscodeFailed(
            f"ffmpeg not found at '{binary}'. "
            "Ensure ffmpeg is installed and in PATH."
        )
