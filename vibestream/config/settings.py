"""
Environment-based configuration using pydantic-settings.
Credentials come from environment variables, never hardcoded.
The settings object is built once at startup and passed down explicitly.
"""
from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
    )

    # ── Core ────────────────────────────────────────────────────────────────
    ENV: str = "production"
    LOG_LEVEL: str = "INFO"
    HOST: str = "0.0.0.0"
    PORT: int = 3001

    # ── Storage ─────────────────────────────────────────────────────────────
    CACHE_BACKEND: Literal["filesystem", "blob"] = "filesystem"
    AUDIO_STORAGE_DIR: Path = Path("/var/www/vibestream/audio")
    TEMP_STORAGE_DIR: Path = Path("/tmp/vibestream")
    MAX_CACHE_SIZE_MB: int = 5000
    CLEANUP_FRACTION: float = 0.2

    # ── Metadata database ───────────────────────────────────────────────────
    DATABASE_PATH: Path = Path("/var/www/vibestream/vibestream.db")

    # ── Blob store (S3-compatible, e.g. Backblaze B2) ───────────────────────
    S3_ENDPOINT: Optional[str] = None
    S3_REGION: str = "us-east-005"
    S3_BUCKET: Optional[str] = None
    S3_PREFIX: str = ""
    AWS_ACCESS_KEY_ID: Optional[str] = None
    AWS_SECRET_ACCESS_KEY: Optional[str] = None
    SIGNED_URL_TTL_SECONDS: int = 3600

    # ── Source fetcher ──────────────────────────────────────────────────────
    YTDLP_PATH: str = "yt-dlp"
    FETCH_TIMEOUT_SECONDS: int = 60
    DOWNLOAD_POLL_ATTEMPTS: int = 10
    DOWNLOAD_POLL_INTERVAL_SECONDS: float = 0.5

    # ── Audio processing ─────────────────────────────────────────────────────
    FFMPEG_PATH: str = "ffmpeg"
    AUDIO_BITRATE: str = "192k"
    AUDIO_CHANNELS: int = 2
    AUDIO_SAMPLE_RATE: int = 44100
    TRANSCODE_TIMEOUT_SECONDS: int = 300

    # ── Streaming ────────────────────────────────────────────────────────────
    STREAM_CHUNK_SIZE: int = 64 * 1024

    @field_validator("AUDIO_STORAGE_DIR", "TEMP_STORAGE_DIR", mode="before")
    @classmethod
    def ensure_dir(cls, v: Path) -> Path:
        path = Path(v)
        path.mkdir(parents=True, exist_ok=True)
        return path

    @field_validator("CLEANUP_FRACTION")
    @classmethod
    def check_fraction(cls, v: float) -> float:
        if not 0 < v <= 1:
            raise ValueError("CLEANUP_FRACTION must be in (0, 1]")
        return v

    @model_validator(mode="after")
    def check_blob_config(self) -> "Settings":
        if self.CACHE_BACKEND == "blob" and not self.S3_BUCKET:
            raise ValueError("CACHE_BACKEND=blob requires S3_BUCKET")
        return self

    @property
    def max_cache_size_bytes(self) -> int:
        return self.MAX_CACHE_SIZE_MB * 1024 * 1024

    @property
    def transcode_enabled(self) -> bool:
        # The blob variant stores the extractor's mp3 output as-is.
        return self.CACHE_BACKEND == "filesystem"


@lru_cache
def get_settings() -> Settings:
    return Settings()
