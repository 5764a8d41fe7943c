"""
Tests for the Queuearr Watcher HTTP API
"""

import asyncio

import pytest
from unittest.mock import AsyncMock, MagicMock, patch
from fastapi.testclient import TestClient

from queuearr_watcher import server
from queuearr_watcher.arr_client import MediaInfo, Release
from queuearr_watcher.exceptions import BackendConnectionError
from queuearr_watcher.logging_config import ActivityLogHandler
from queuearr_watcher.persistence import MonitoredDownloadStore
from queuearr_watcher.retry import RetryConfig, RetryHandler
from queuearr_watcher.watcher import CycleReport

from conftest import NOW


@pytest.fixture
def server_store(tmp_path):
    """A real store, initialized outside the app's event loop."""
    store = MonitoredDownloadStore(str(tmp_path / "server.db"))
    asyncio.run(store.initialize())
    with patch("queuearr_watcher.server.store", store):
        yield store


@pytest.fixture
def mock_radarr(client):
    radarr = MagicMock()
    radarr.get_media = AsyncMock(return_value=MediaInfo(id=42, title="Heat"))
    radarr.search_releases = AsyncMock(return_value=[])
    radarr.grab_release = AsyncMock()
    radarr.trigger_search = AsyncMock()
    radarr.remove_queue_items = AsyncMock()
    radarr.test_connection = AsyncMock(return_value=(True, "Connected to radarr v5.2.6"))
    with patch("queuearr_watcher.server.radarr_client", radarr):
        yield radarr


@pytest.fixture
def mock_sonarr(client):
    sonarr = MagicMock()
    sonarr.get_media = AsyncMock(return_value=MediaInfo(id=7, title="The Wire"))
    sonarr.search_releases = AsyncMock(return_value=[])
    sonarr.grab_release = AsyncMock()
    sonarr.trigger_season_search = AsyncMock()
    sonarr.trigger_search = AsyncMock()
    sonarr.trigger_episode_search = AsyncMock()
    sonarr.remove_queue_items = AsyncMock()
    sonarr.test_connection = AsyncMock(return_value=(True, "Connected to sonarr v4.0.0"))
    with patch("queuearr_watcher.server.sonarr_client", sonarr):
        yield sonarr


@pytest.fixture
def mock_watcher(client):
    watcher = MagicMock()
    watcher.is_running = True
    watcher.check_downloads = AsyncMock(return_value=CycleReport(started_at=NOW, checked=2))
    watcher.get_stats = MagicMock(return_value={"running": True, "cycles": 3})
    with patch("queuearr_watcher.server.watcher", watcher):
        yield watcher


@pytest.fixture
def client(server_store):
    """Create test client; the lifespan is not run, module globals are patched instead."""
    fast_retry = RetryHandler(RetryConfig(max_attempts=2, initial_delay=0.01, jitter=False))
    with patch.object(server.settings, "api_key", None), \
            patch("queuearr_watcher.server.radarr_client", None), \
            patch("queuearr_watcher.server.sonarr_client", None), \
            patch("queuearr_watcher.server.transmission_client", None), \
            patch("queuearr_watcher.server.retry_handler", fast_retry):
        yield TestClient(server.app)


def monitored(store, source="radarr", media_id=42, title="Heat"):
    return asyncio.run(store.upsert_monitored_download(source, media_id, title, now=NOW))


class TestHealth:
    def test_healthy_without_backends(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["backends"]["radarr"]["configured"] is False
        assert data["watcher_running"] is False

    def test_reports_backend_failure(self, client, mock_radarr, mock_watcher):
        mock_radarr.test_connection.return_value = (False, "radarr rejected the API key")

        response = client.get("/api/health")

        assert response.status_code == 503
        data = response.json()
        assert data["status"] == "unhealthy"
        assert data["backends"]["radarr"] == {
            "configured": True,
            "connected": False,
            "message": "radarr rejected the API key",
        }
        assert data["watcher_running"] is True

    def test_unhealthy_without_store(self, client):
        with patch("queuearr_watcher.server.store", None):
            assert client.get("/health").status_code == 503


class TestApiKey:
    def test_required_when_configured(self, client):
        with patch.object(server.settings, "api_key", "secret"):
            assert client.get("/api/downloads").status_code == 403
            assert client.get(
                "/api/downloads", headers={"X-Api-Key": "wrong"}
            ).status_code == 403
            assert client.get(
                "/api/downloads", headers={"X-Api-Key": "secret"}
            ).status_code == 200

    def test_health_is_open(self, client):
        with patch.object(server.settings, "api_key", "secret"):
            assert client.get("/health").status_code == 200


class TestDownloads:
    def test_list(self, client, server_store):
        d = monitored(server_store)
        asyncio.run(server_store.add_user_to_download(d.id, "alice"))

        data = client.get("/api/downloads").json()

        assert data["count"] == 1
        assert data["downloads"][0] == {
            "id": d.id,
            "source": "radarr",
            "mediaId": 42,
            "title": "Heat",
            "lastStatus": None,
            "createdAt": NOW,
            "lastActivityAt": None,
            "lastBytesAt": None,
            "userIds": ["alice"],
        }

    def test_watch_and_unwatch(self, client, server_store):
        d = monitored(server_store, "sonarr", 7, "The Wire")
        body = {"source": "sonarr", "mediaId": 7, "userId": "bob"}

        response = client.post("/api/downloads/watch", json=body)
        assert response.status_code == 200
        assert response.json() == {"success": True, "downloadId": d.id}
        assert asyncio.run(server_store.is_user_watching(d.id, "bob"))

        response = client.request("DELETE", "/api/downloads/watch", json=body)
        assert response.status_code == 200
        assert not asyncio.run(server_store.is_user_watching(d.id, "bob"))

    def test_unwatch_when_not_watching(self, client, server_store):
        d = monitored(server_store)
        asyncio.run(server_store.add_user_to_download(d.id, "alice"))

        response = client.request(
            "DELETE", "/api/downloads/watch", json={"source": "radarr", "mediaId": 42, "userId": "bob"}
        )

        assert response.status_code == 404
        assert asyncio.run(server_store.get_watchers(d.id)) == ["alice"]

    def test_watch_unknown_download(self, client):
        response = client.post(
            "/api/downloads/watch", json={"source": "radarr", "mediaId": 99, "userId": "bob"}
        )
        assert response.status_code == 404

    @pytest.mark.parametrize("body", [
        {"source": "lidarr", "mediaId": 1, "userId": "bob"},
        {"source": "radarr", "mediaId": "abc", "userId": "bob"},
        {"source": "radarr", "mediaId": 0, "userId": "bob"},
        {"source": "radarr", "mediaId": 1},
        ["not", "an", "object"],
    ])
    def test_watch_validation(self, client, body):
        response = client.post("/api/downloads/watch", json=body)
        assert response.status_code == 400
        assert "error" in response.json()

    def test_watch_invalid_json(self, client):
        response = client.post(
            "/api/downloads/watch",
            content=b"{not json",
            headers={"Content-Type": "application/json"},
        )
        assert response.status_code == 400


class TestRetry:
    def test_retry_grabs_best_release(self, client, mock_radarr):
        mock_radarr.search_releases.return_value = [
            Release(guid="a", indexer_id=1, title="Heat.1080p", seeders=2, quality_weight=100),
            Release(guid="b", indexer_id=2, title="Heat.720p", seeders=50, quality_weight=90),
        ]

        response = client.post("/api/downloads/retry", json={"source": "radarr", "mediaId": 42})

        assert response.status_code == 200
        data = response.json()
        assert data["action"] == "grabbed"
        assert data["release"]["guid"] == "b"
        mock_radarr.grab_release.assert_awaited_once_with("b", 2)

    def test_retry_backend_not_configured(self, client):
        response = client.post("/api/downloads/retry", json={"source": "sonarr", "mediaId": 7})
        assert response.status_code == 503

    def test_retry_backend_failure(self, client, mock_radarr):
        mock_radarr.search_releases.side_effect = BackendConnectionError(
            "radarr request failed", backend="radarr", details="timeout"
        )
        response = client.post("/api/downloads/retry", json={"source": "radarr", "mediaId": 42})
        assert response.status_code == 502
        assert mock_radarr.search_releases.await_count == 2

    def test_retry_validation(self, client, mock_radarr):
        response = client.post(
            "/api/downloads/retry", json={"source": "radarr", "mediaId": 42, "episodeId": -1}
        )
        assert response.status_code == 400


class TestQueueRemoval:
    def test_retry_removes_then_grabs_replacement(self, client, server_store, mock_radarr):
        d = monitored(server_store)
        asyncio.run(server_store.update_download_status(d.id, "failed"))
        calls = []
        mock_radarr.remove_queue_items.side_effect = lambda *a, **kw: calls.append("remove")
        mock_radarr.search_releases.side_effect = lambda *a: calls.append("search") or [
            Release(guid="fresh", indexer_id=3, title="Heat.1080p", seeders=40, quality_weight=100),
        ]

        response = client.request(
            "DELETE", "/api/radarr/queue", json={"ids": [11, 12], "retry": True, "mediaId": 42}
        )

        assert response.status_code == 200
        data = response.json()
        assert data["removed"] == [11, 12]
        assert data["grab"]["action"] == "grabbed"
        assert data["completedDownloadId"] is None
        assert calls == ["remove", "search"]
        mock_radarr.remove_queue_items.assert_awaited_once_with(
            [11, 12], blocklist=True, skip_redownload=True
        )
        mock_radarr.grab_release.assert_awaited_once_with("fresh", 3)

        restarted = asyncio.run(server_store.get_download(d.id))
        assert restarted.is_active
        assert restarted.last_status is None

    def test_remove_without_retry_completes_download(self, client, server_store, mock_radarr):
        d = monitored(server_store)

        response = client.request(
            "DELETE", "/api/radarr/queue", json={"ids": [11], "mediaId": 42}
        )

        assert response.status_code == 200
        assert response.json()["completedDownloadId"] == d.id
        mock_radarr.remove_queue_items.assert_awaited_once_with(
            [11], blocklist=False, skip_redownload=False
        )
        mock_radarr.search_releases.assert_not_awaited()
        assert not asyncio.run(server_store.get_download(d.id)).is_active

    def test_remove_without_media_only_removes(self, client, server_store, mock_radarr):
        d = monitored(server_store)

        response = client.request("DELETE", "/api/radarr/queue", json={"ids": [11]})

        assert response.status_code == 200
        assert response.json()["completedDownloadId"] is None
        assert asyncio.run(server_store.get_download(d.id)).is_active

    def test_series_retry_without_episode_searches_series(self, client, mock_sonarr):
        response = client.request(
            "DELETE", "/api/sonarr/queue", json={"ids": [701], "retry": True, "mediaId": 7}
        )

        assert response.status_code == 200
        assert response.json()["grab"]["action"] == "search_triggered"
        mock_sonarr.trigger_search.assert_awaited_once_with(7)

    def test_not_configured(self, client):
        response = client.request("DELETE", "/api/sonarr/queue", json={"ids": [1]})
        assert response.status_code == 503

    @pytest.mark.parametrize("body", [
        {"ids": []},
        {"ids": "11"},
        {"ids": [0]},
        {"ids": [11], "retry": "yes"},
        {"ids": [11], "mediaId": -4},
    ])
    def test_validation(self, client, mock_radarr, body):
        response = client.request("DELETE", "/api/radarr/queue", json=body)
        assert response.status_code == 400
        mock_radarr.remove_queue_items.assert_not_awaited()


class TestGrab:
    def test_grab_movie(self, client, server_store, mock_radarr):
        response = client.post("/api/radarr/movie/42/grab", json={"userId": "alice"})

        assert response.status_code == 200
        download_id = response.json()["downloadId"]
        assert asyncio.run(server_store.get_watchers(download_id)) == ["alice"]
        assert asyncio.run(server_store.get_download(download_id)).title == "Heat"
        # Background task runs before TestClient returns
        mock_radarr.search_releases.assert_awaited_once_with(42)
        mock_radarr.trigger_search.assert_awaited_once_with([42])

    def test_grab_movie_requires_user(self, client, mock_radarr):
        assert client.post("/api/radarr/movie/42/grab", json={}).status_code == 400

    def test_grab_movie_not_configured(self, client):
        response = client.post("/api/radarr/movie/42/grab", json={"userId": "alice"})
        assert response.status_code == 503

    def test_grab_season(self, client, server_store, mock_sonarr):
        response = client.post(
            "/api/sonarr/series/7/grab",
            json={"type": "season", "seasonNumber": 2, "userId": "alice"},
        )

        assert response.status_code == 200
        mock_sonarr.trigger_season_search.assert_awaited_once_with(7, 2)
        d = asyncio.run(server_store.get_by_source_media("sonarr", 7))
        assert d.title == "The Wire"

    def test_grab_episode(self, client, mock_sonarr):
        response = client.post(
            "/api/sonarr/series/7/grab",
            json={"type": "episode", "episodeId": 701, "userId": "alice"},
        )
        assert response.status_code == 200
        mock_sonarr.trigger_episode_search.assert_awaited_once_with([701])

    @pytest.mark.parametrize("body", [
        {"type": "movie", "userId": "alice"},
        {"type": "season", "seasonNumber": "two", "userId": "alice"},
        {"type": "episode", "userId": "alice"},
    ])
    def test_grab_series_validation(self, client, mock_sonarr, body):
        assert client.post("/api/sonarr/series/7/grab", json=body).status_code == 400
        mock_sonarr.get_media.assert_not_awaited()


class TestWatcherEndpoints:
    def test_check(self, client, mock_watcher):
        response = client.post("/api/watcher/check")
        assert response.status_code == 200
        assert response.json()["checked"] == 2
        mock_watcher.check_downloads.assert_awaited_once()

    def test_check_without_watcher(self, client):
        with patch("queuearr_watcher.server.watcher", None):
            assert client.post("/api/watcher/check").status_code == 500

    def test_state(self, client, mock_watcher):
        data = client.get("/api/watcher/state").json()
        assert data["watcher"]["cycles"] == 3
        assert data["store"]["active_downloads"] == 0
        assert data["retry"] == {}

    def test_logs_without_handler(self, client):
        with patch("queuearr_watcher.server.activity_log_handler", None):
            assert client.get("/api/watcher/logs").json() == {"count": 0, "logs": []}

    def test_logs_filtered(self, client):
        handler = MagicMock()
        handler.get_logs.return_value = [{"message": "Heat completed"}]
        with patch("queuearr_watcher.server.activity_log_handler", handler):
            data = client.get("/api/watcher/logs?limit=5&download_id=3&level=INFO").json()

        assert data["count"] == 1
        handler.get_logs.assert_called_once_with(
            limit=5, level="INFO", download_id=3, source=None, since=None
        )

    def test_logs_bad_since(self, client):
        with patch("queuearr_watcher.server.activity_log_handler", ActivityLogHandler()):
            response = client.get("/api/watcher/logs?since=yesterday")

        assert response.status_code == 400
        assert "since" in response.json()["error"]


class TestSanitizeErrorMessage:
    def test_hides_secrets(self):
        assert "api_key" not in server.sanitize_error_message(Exception("bad api_key=abc"))

    def test_truncates(self):
        assert len(server.sanitize_error_message(Exception("x" * 500))) == 203

    def test_passes_plain_errors(self):
        assert server.sanitize_error_message(Exception("timeout")) == "timeout"
