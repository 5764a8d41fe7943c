"""
Persistence Layer for Queuearr Watcher
SQLite-backed registry of monitored downloads and the users watching them.
"""

import asyncio
import aiosqlite
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Optional, List, Dict

from .exceptions import DatabaseConnectionError, InvalidSourceError

logger = logging.getLogger(__name__)


class DownloadSource(str, Enum):
    """Media manager that owns a monitored download."""
    RADARR = "radarr"
    SONARR = "sonarr"


def parse_source(value) -> DownloadSource:
    """Coerce a raw source string, rejecting anything but radarr/sonarr."""
    if isinstance(value, DownloadSource):
        return value
    try:
        return DownloadSource(str(value).lower())
    except ValueError:
        raise InvalidSourceError(str(value)) from None


@dataclass
class MonitoredDownload:
    """One tracked media item."""
    id: int
    source: DownloadSource
    media_id: int
    title: str
    last_status: Optional[str] = None
    created_at: float = 0.0
    last_activity_at: Optional[float] = None
    last_bytes_at: Optional[float] = None
    completed_at: Optional[float] = None

    @property
    def is_active(self) -> bool:
        return self.completed_at is None


@dataclass
class ActiveMonitoredDownload(MonitoredDownload):
    """Active download joined with the ids of its watchers."""
    user_ids: List[str] = field(default_factory=list)


# SQL Schema
SCHEMA = """
CREATE TABLE IF NOT EXISTS monitored_downloads (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    source TEXT NOT NULL,
    media_id INTEGER NOT NULL,
    title TEXT NOT NULL,
    last_status TEXT,
    created_at REAL NOT NULL,
    last_activity_at REAL,
    last_bytes_at REAL,
    completed_at REAL
);

CREATE TABLE IF NOT EXISTS monitored_download_users (
    download_id INTEGER NOT NULL REFERENCES monitored_downloads(id) ON DELETE CASCADE,
    user_id TEXT NOT NULL,
    PRIMARY KEY (download_id, user_id)
);

CREATE UNIQUE INDEX IF NOT EXISTS idx_monitored_active_media
    ON monitored_downloads(source, media_id) WHERE completed_at IS NULL;
CREATE INDEX IF NOT EXISTS idx_monitored_completed ON monitored_downloads(completed_at);
CREATE INDEX IF NOT EXISTS idx_download_users_user ON monitored_download_users(user_id);
"""

_COLUMNS = (
    "id, source, media_id, title, last_status, created_at, "
    "last_activity_at, last_bytes_at, completed_at"
)


def _row_to_download(row) -> MonitoredDownload:
    return MonitoredDownload(
        id=row["id"],
        source=DownloadSource(row["source"]),
        media_id=row["media_id"],
        title=row["title"],
        last_status=row["last_status"],
        created_at=row["created_at"],
        last_activity_at=row["last_activity_at"],
        last_bytes_at=row["last_bytes_at"],
        completed_at=row["completed_at"],
    )


class MonitoredDownloadStore:
    """
    Async CRUD over the monitored-download tables.

    Every write is either an insert that ignores conflicts on the unique keys or
    an update by primary key, so a grab request racing a reconciliation cycle
    can at worst be superseded by the next cycle.
    """

    def __init__(self, db_path: str = "queuearr.db"):
        self.db_path = db_path
        self._lock = asyncio.Lock()
        self._initialized = False

    def _connect(self):
        return aiosqlite.connect(self.db_path)

    async def initialize(self) -> None:
        """Create database and tables if they don't exist."""
        async with self._lock:
            if self._initialized:
                return

            db_dir = Path(self.db_path).parent
            if db_dir and str(db_dir) != ".":
                db_dir.mkdir(parents=True, exist_ok=True)

            try:
                async with self._connect() as db:
                    await db.executescript(SCHEMA)
                    await db.commit()
            except aiosqlite.Error as e:
                raise DatabaseConnectionError(
                    f"Could not initialize {self.db_path}", details=str(e)
                ) from e

            self._initialized = True
            logger.info(f"Store initialized: {self.db_path}")

    async def close(self) -> None:
        """Close the store."""
        self._initialized = False

    # -------------------------------------------------------------------------
    # Monitored Downloads
    # -------------------------------------------------------------------------

    async def upsert_monitored_download(
        self,
        source,
        media_id: int,
        title: str,
        now: Optional[float] = None,
    ) -> MonitoredDownload:
        """
        Return the active download for (source, media_id), creating it if needed.
        An existing active row keeps its original title and timestamps.
        """
        source = parse_source(source)
        created_at = now if now is not None else datetime.now().timestamp()

        async with self._connect() as db:
            db.row_factory = aiosqlite.Row
            await db.execute("""
                INSERT INTO monitored_downloads (source, media_id, title, created_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT DO NOTHING
            """, (source.value, media_id, title, created_at))
            await db.commit()

            async with db.execute(f"""
                SELECT {_COLUMNS} FROM monitored_downloads
                WHERE source = ? AND media_id = ? AND completed_at IS NULL
            """, (source.value, media_id)) as cursor:
                row = await cursor.fetchone()

        return _row_to_download(row)

    async def get_download(self, download_id: int) -> Optional[MonitoredDownload]:
        """Get a download by id, active or not."""
        async with self._connect() as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                f"SELECT {_COLUMNS} FROM monitored_downloads WHERE id = ?",
                (download_id,),
            ) as cursor:
                row = await cursor.fetchone()
                return _row_to_download(row) if row else None

    async def get_by_source_media(
        self, source, media_id: int
    ) -> Optional[MonitoredDownload]:
        """Get the active download for (source, media_id)."""
        source = parse_source(source)
        async with self._connect() as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(f"""
                SELECT {_COLUMNS} FROM monitored_downloads
                WHERE source = ? AND media_id = ? AND completed_at IS NULL
            """, (source.value, media_id)) as cursor:
                row = await cursor.fetchone()
                return _row_to_download(row) if row else None

    async def get_active_monitored_downloads(self) -> List[ActiveMonitoredDownload]:
        """Active downloads joined with their watcher ids, oldest first."""
        async with self._connect() as db:
            db.row_factory = aiosqlite.Row
            async with db.execute("""
                SELECT d.id, d.source, d.media_id, d.title, d.last_status,
                       d.created_at, d.last_activity_at, d.last_bytes_at,
                       d.completed_at, u.user_id
                FROM monitored_downloads d
                LEFT JOIN monitored_download_users u ON u.download_id = d.id
                WHERE d.completed_at IS NULL
                ORDER BY d.id, u.user_id
            """) as cursor:
                rows = await cursor.fetchall()

        downloads: Dict[int, ActiveMonitoredDownload] = {}
        for row in rows:
            download = downloads.get(row["id"])
            if download is None:
                base = _row_to_download(row)
                download = ActiveMonitoredDownload(**base.__dict__)
                downloads[row["id"]] = download
            if row["user_id"]:
                download.user_ids.append(row["user_id"])

        return list(downloads.values())

    async def update_download_status(self, download_id: int, status: str) -> None:
        """Persist the last observed status."""
        async with self._connect() as db:
            await db.execute(
                "UPDATE monitored_downloads SET last_status = ? WHERE id = ?",
                (status, download_id),
            )
            await db.commit()

    async def update_download_activity(
        self,
        download_id: int,
        last_activity_at: float,
        last_bytes_at: Optional[float],
    ) -> None:
        """Persist activity timestamps computed for this cycle."""
        async with self._connect() as db:
            await db.execute("""
                UPDATE monitored_downloads
                SET last_activity_at = ?, last_bytes_at = ?
                WHERE id = ?
            """, (last_activity_at, last_bytes_at, download_id))
            await db.commit()

    async def mark_download_completed(
        self, download_id: int, now: Optional[float] = None
    ) -> None:
        """Mark a download completed; the row is kept as history."""
        completed_at = now if now is not None else datetime.now().timestamp()
        async with self._connect() as db:
            await db.execute("""
                UPDATE monitored_downloads SET completed_at = ?
                WHERE id = ? AND completed_at IS NULL
            """, (completed_at, download_id))
            await db.commit()

    async def reset_download_progress(
        self, download_id: int, now: Optional[float] = None
    ) -> None:
        """
        Start a re-grabbed download over as if it were new.

        The status goes back to never-observed, so the gap between removing the
        old queue item and the new release showing up is not read as completion,
        and the stall clocks restart from now.
        """
        restarted_at = now if now is not None else datetime.now().timestamp()
        async with self._connect() as db:
            await db.execute("""
                UPDATE monitored_downloads
                SET last_status = NULL, last_activity_at = NULL,
                    last_bytes_at = NULL, created_at = ?
                WHERE id = ? AND completed_at IS NULL
            """, (restarted_at, download_id))
            await db.commit()

    # -------------------------------------------------------------------------
    # Watchers
    # -------------------------------------------------------------------------

    async def add_user_to_download(self, download_id: int, user_id: str) -> None:
        """Subscribe a user; subscribing twice is a no-op."""
        async with self._connect() as db:
            await db.execute("""
                INSERT INTO monitored_download_users (download_id, user_id)
                VALUES (?, ?)
                ON CONFLICT DO NOTHING
            """, (download_id, user_id))
            await db.commit()

    async def remove_user_from_download(self, download_id: int, user_id: str) -> None:
        """Unsubscribe a user."""
        async with self._connect() as db:
            await db.execute("""
                DELETE FROM monitored_download_users
                WHERE download_id = ? AND user_id = ?
            """, (download_id, user_id))
            await db.commit()

    async def is_user_watching(self, download_id: int, user_id: str) -> bool:
        async with self._connect() as db:
            async with db.execute("""
                SELECT 1 FROM monitored_download_users
                WHERE download_id = ? AND user_id = ?
            """, (download_id, user_id)) as cursor:
                return await cursor.fetchone() is not None

    async def get_watchers(self, download_id: int) -> List[str]:
        async with self._connect() as db:
            async with db.execute("""
                SELECT user_id FROM monitored_download_users
                WHERE download_id = ? ORDER BY user_id
            """, (download_id,)) as cursor:
                rows = await cursor.fetchall()
                return [row[0] for row in rows]

    # -------------------------------------------------------------------------
    # Utility Operations
    # -------------------------------------------------------------------------

    async def get_stats(self) -> Dict:
        """Get database statistics."""
        async with self._connect() as db:
            stats = {}
            queries = {
                "active_downloads": (
                    "SELECT COUNT(*) FROM monitored_downloads WHERE completed_at IS NULL"
                ),
                "completed_downloads": (
                    "SELECT COUNT(*) FROM monitored_downloads WHERE completed_at IS NOT NULL"
                ),
                "watchers": "SELECT COUNT(*) FROM monitored_download_users",
            }
            for name, query in queries.items():
                async with db.execute(query) as cursor:
                    row = await cursor.fetchone()
                    stats[name] = row[0] if row else 0

            return stats
