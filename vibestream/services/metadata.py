"""
Metadata repository: identifier -> title/artist/album/duration and play counts.
Backed by SQLite; calls run in a worker thread so the event loop never blocks.
"""
import asyncio
import logging
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from vibestream.services.models import TrackMetadata

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS tracks (
    video_id TEXT PRIMARY KEY,
    title TEXT NOT NULL,
    artist TEXT NOT NULL,
    album TEXT,
    duration INTEGER NOT NULL DEFAULT 0,
    thumbnail_url TEXT,
    channel TEXT,
    view_count INTEGER NOT NULL DEFAULT 0,
    play_count INTEGER NOT NULL DEFAULT 0,
    created_at TIMESTAMP NOT NULL,
    updated_at TIMESTAMP NOT NULL
);
CREATE TABLE IF NOT EXISTS play_history (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    video_id TEXT NOT NULL,
    user_id TEXT NOT NULL,
    played_at TIMESTAMP NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_play_history_user ON play_history (user_id, played_at);
"""


class MetadataRepository:
    def __init__(self, db_path: Path):
        self._db_path = Path(db_path)
        self._lock = threading.Lock()
        self._conn: Optional[sqlite3.Connection] = None

    async def init(self) -> None:
        await asyncio.to_thread(self._init_db)

    async def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    async def upsert(self, metadata: TrackMetadata) -> None:
        await asyncio.to_thread(self._upsert, metadata)

    async def get(self, identifier: str) -> Optional[TrackMetadata]:
        return await asyncio.to_thread(self._get, identifier)

    async def record_play(self, identifier: str, user_id: str) -> None:
        await asyncio.to_thread(self._record_play, identifier, user_id)

    async def play_count(self, identifier: str) -> int:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT play_count FROM tracks WHERE video_id = ?",
            (identifier,),
        )
        return row[0] if row else 0

    def _init_db(self) -> None:
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        with self._lock:
            if self._conn is not None:
                return
            self._conn = sqlite3.connect(
                self._db_path,
                check_same_thread=False,
                timeout=20,
            )
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.executescript(_SCHEMA)
            self._conn.commit()
        logger.info("Metadata database ready", extra={"path": str(self._db_path)})

    def _connection(self) -> sqlite3.Connection:
        if self._conn is None:
            raise RuntimeError("MetadataRepository.init() has not been called")
        return self._conn

    def _upsert(self, m: TrackMetadata) -> None:
        now = _now()
        with self._lock:
            conn = self._connection()
            conn.execute(
                """
                INSERT INTO tracks
                    (video_id, title, artist, album, duration, thumbnail_url,
                     channel, view_count, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(video_id) DO UPDATE SET
                    title = excluded.title,
                    artist = excluded.artist,
                    album = excluded.album,
                    duration = excluded.duration,
                    thumbnail_url = excluded.thumbnail_url,
                    channel = excluded.channel,
                    view_count = excluded.view_count,
                    updated_at = excluded.updated_at
                """,
                (m.identifier, m.title, m.artist, m.album, m.duration,
                 m.cover_url, m.channel, m.view_count, now, now),
            )
            conn.commit()

    def _get(self, identifier: str) -> Optional[TrackMetadata]:
        row = self._fetchone(
            """
            SELECT video_id, title, artist, album, duration, thumbnail_url,
                   channel, view_count
            FROM tracks WHERE video_id = ?
            """,
            (identifier,),
        )
        if row is None:
            return None
        return TrackMetadata(
            identifier=row[0],
            title=row[1],
            artist=row[2],
            album=row[3],
            duration=row[4],
            cover_url=row[5],
            channel=row[6],
            view_count=row[7],
        )

    def _record_play(self, identifier: str, user_id: str) -> None:
        with self._lock:
            conn = self._connection()
            conn.execute(
                "INSERT INTO play_history (video_id, user_id, played_at) VALUES (?, ?, ?)",
                (identifier, user_id, _now()),
            )
            conn.execute(
                "UPDATE tracks SET play_count = play_count + 1 WHERE video_id = ?",
                (identifier,),
            )
            conn.commit()

    def _fetchone(self, sql: str, params: tuple) -> Optional[tuple]:
        with self._lock:
            return self._connection().execute(sql, params).fetchone()


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()
