"""
Pytest configuration and shared fixtures.
"""

import pytest
from typing import List, Optional
from unittest.mock import AsyncMock

from queuearr_watcher.arr_client import MediaInfo, MovieQueueEntry, SeriesQueueEntry
from queuearr_watcher.notifications import NotificationResult
from queuearr_watcher.transmission_client import TorrentEntry, TorrentStatus

# Fixed "now" for stall timing (2024-01-01 00:00:00 UTC)
NOW = 1_704_067_200.0


# ============================================================================
# Factories
# ============================================================================

def movie_entry(media_id: int = 42, **kwargs) -> MovieQueueEntry:
    defaults = {
        "id": (media_id or 0) * 10,
        "media_id": media_id,
        "title": f"Movie.{media_id}.1080p",
        "status": "downloading",
        "tracked_download_state": "downloading",
        "tracked_download_status": "ok",
    }
    defaults.update(kwargs)
    return MovieQueueEntry(**defaults)


def series_entry(media_id: int = 7, episode_id: int = 701, **kwargs) -> SeriesQueueEntry:
    defaults = {
        "id": episode_id,
        "media_id": media_id,
        "title": f"Series.{media_id}.S01E01",
        "status": "downloading",
        "tracked_download_state": "downloading",
        "tracked_download_status": "ok",
        "episode_id": episode_id,
        "season_number": 1,
        "episode_number": 1,
    }
    defaults.update(kwargs)
    return SeriesQueueEntry(**defaults)


def torrent(hash_string: str = "ABCDEF0123", **kwargs) -> TorrentEntry:
    defaults = {
        "id": 1,
        "hash_string": hash_string,
        "name": "Movie.42.1080p",
        "status": TorrentStatus.DOWNLOAD,
        "rate_download": 1024,
        "left_until_done": 1000,
        "activity_date": int(NOW),
        "peers_sending_to_us": 3,
        "percent_done": 0.5,
    }
    defaults.update(kwargs)
    return TorrentEntry(**defaults)


# ============================================================================
# Fake backends
# ============================================================================

class FakeQueueBackend:
    """In-memory movie/series manager."""

    def __init__(self, name: str, entries: Optional[list] = None, titles: Optional[dict] = None):
        self.name = name
        self.entries = list(entries or [])
        self.titles = dict(titles or {})
        self.fail_with: Optional[Exception] = None
        self.calls = 0

    async def list_queue(self) -> list:
        self.calls += 1
        if self.fail_with:
            raise self.fail_with
        return list(self.entries)

    async def get_media(self, media_id: int) -> MediaInfo:
        if media_id not in self.titles:
            raise KeyError(media_id)
        return MediaInfo(id=media_id, title=self.titles[media_id])


class FakeTorrentBackend:
    name = "transmission"

    def __init__(self, torrents: Optional[List[TorrentEntry]] = None):
        self.torrents = list(torrents or [])
        self.fail_with: Optional[Exception] = None

    async def list_torrents(self) -> List[TorrentEntry]:
        if self.fail_with:
            raise self.fail_with
        return list(self.torrents)


class RecordingNotifier:
    """Notifier that records every send; selected users can be made to fail."""

    def __init__(self, failing_users: Optional[set] = None):
        self.sent = []
        self.failing_users = set(failing_users or ())

    async def send_to_user(self, user_id, payload):
        if user_id in self.failing_users:
            raise ConnectionError(f"push endpoint gone for {user_id}")
        self.sent.append((user_id, payload))
        return NotificationResult(sent=1)

    def titles(self):
        return [payload.title for _, payload in self.sent]


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def temp_db_path(tmp_path):
    """Create a temporary database path."""
    return str(tmp_path / "test.db")


@pytest.fixture
async def store(temp_db_path):
    """Create an initialized monitored-download store."""
    from queuearr_watcher.persistence import MonitoredDownloadStore

    store = MonitoredDownloadStore(temp_db_path)
    await store.initialize()
    yield store
    await store.close()


@pytest.fixture
def radarr():
    return FakeQueueBackend("radarr")


@pytest.fixture
def sonarr():
    return FakeQueueBackend("sonarr")


@pytest.fixture
def transmission():
    return FakeTorrentBackend()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def clock():
    """Mutable clock: set clock.now to move time."""
    class Clock:
        now = NOW

        def __call__(self):
            return self.now

    return Clock()


@pytest.fixture
def watcher(store, radarr, sonarr, transmission, notifier, clock):
    from queuearr_watcher.watcher import DownloadWatcher

    return DownloadWatcher(
        store,
        radarr=radarr,
        sonarr=sonarr,
        transmission=transmission,
        notifier=notifier,
        clock=clock,
    )


@pytest.fixture
def mock_response():
    """Create a factory for mock aiohttp responses."""
    def _create_response(json_data, status=200, reason="OK", headers=None):
        response = AsyncMock()
        response.status = status
        response.reason = reason
        response.headers = headers or {}
        response.json = AsyncMock(return_value=json_data)
        response.text = AsyncMock(return_value=str(json_data))
        return response
    return _create_response
