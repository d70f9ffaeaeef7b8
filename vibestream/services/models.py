from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Optional, Union

AUDIO_MPEG = "audio/mpeg"

UNKNOWN_TITLE = "Unknown Title"
UNKNOWN_ARTIST = "Unknown Artist"


@dataclass
class TrackMetadata:
    identifier: str
    title: str = UNKNOWN_TITLE
    artist: str = UNKNOWN_ARTIST
    duration: int = 0
    album: Optional[str] = None
    cover_url: Optional[str] = None
    channel: Optional[str] = None
    view_count: int = 0

    @property
    def display_name(self) -> str:
        return f"{self.artist} - {self.title}"


@dataclass
class AudioAsset:
    """One cached playable object; `location` is a path or a blob key."""
    identifier: str
    size: int
    location: str
    last_accessed: datetime
    created_at: Optional[datetime] = None
    content_type: str = AUDIO_MPEG


@dataclass
class LocalAudio:
    """Readable file on local disk, served with byte-range support."""
    path: Path
    size: int
    content_type: str = AUDIO_MPEG


@dataclass
class SignedAudioUrl:
    """Time-limited URL the client is redirected to."""
    url: str
    expires_in: int


ReadHandle = Union[LocalAudio, SignedAudioUrl]


@dataclass
class FetchResult:
    path: Path
    metadata: TrackMetadata


@dataclass
class EnsureResult:
    identifier: str
    cached: bool
    metadata: Optional[TrackMetadata] = None


@dataclass
class StorageStats:
    total_files: int
    total_size_bytes: int
    max_size_mb: int

    @property
    def total_size_mb(self) -> float:
        return round(self.total_size_bytes / (1024 * 1024), 2)

    @property
    def usage_percent(self) -> float:
        if self.max_size_mb <= 0:
            return 0.0
        return round(self.total_size_bytes / (self.max_size_mb * 1024 * 1024) * 100, 2)

    def as_dict(self) -> dict:
        return {
            "totalFiles": self.total_files,
            "totalSizeMB": self.total_size_mb,
            "maxSizeMB": self.max_size_mb,
            "usagePercent": self.usage_percent,
        }
