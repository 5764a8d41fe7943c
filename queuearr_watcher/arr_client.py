"""
Radarr / Sonarr API Clients
Typed wrappers around the v3 queue, release and command endpoints that the
watcher and smart grab read. No business logic lives here.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Optional, List, Protocol, Any

import aiohttp

from .exceptions import (
    BackendAuthenticationError,
    BackendConnectionError,
    BackendResponseError,
    BackendTimeoutError,
)

logger = logging.getLogger(__name__)

QUEUE_PAGE_SIZE = 1000


@dataclass
class QueueEntry:
    """Fields shared by every media-manager queue record."""
    id: int
    media_id: Optional[int]
    title: str
    status: str = ""
    tracked_download_state: str = ""
    tracked_download_status: str = ""
    error_message: Optional[str] = None
    download_id: Optional[str] = None  # torrent info-hash, when the client reported one
    size: int = 0
    size_left: int = 0
    media_title: Optional[str] = None

    @property
    def info_hash(self) -> Optional[str]:
        return self.download_id.lower() if self.download_id else None


@dataclass
class MovieQueueEntry(QueueEntry):
    """Radarr queue record; media_id is the movieId."""
    pass


@dataclass
class SeriesQueueEntry(QueueEntry):
    """Sonarr queue record; media_id is the seriesId."""
    episode_id: Optional[int] = None
    season_number: Optional[int] = None
    episode_number: Optional[int] = None


@dataclass
class Release:
    """Indexer search result offered by Radarr/Sonarr."""
    guid: str
    indexer_id: int
    title: str = ""
    seeders: int = 0
    quality_weight: int = 0
    custom_format_score: int = 0
    rejections: List[str] = field(default_factory=list)
    download_allowed: Optional[bool] = None

    @property
    def score(self) -> int:
        return self.quality_weight + self.custom_format_score

    @classmethod
    def from_api(cls, data: dict) -> "Release":
        return cls(
            guid=data.get("guid", ""),
            indexer_id=data.get("indexerId", 0),
            title=data.get("title", ""),
            seeders=data.get("seeders") or 0,
            quality_weight=data.get("qualityWeight") or 0,
            custom_format_score=data.get("customFormatScore") or 0,
            rejections=list(data.get("rejections") or []),
            download_allowed=data.get("downloadAllowed"),
        )


@dataclass
class MediaInfo:
    """The subset of a movie/series record the watcher needs."""
    id: int
    title: str


class QueueBackend(Protocol):
    name: str

    async def list_queue(self) -> List[QueueEntry]: ...

    async def get_media(self, media_id: int) -> MediaInfo: ...


def _common_entry_fields(item: dict) -> dict:
    return {
        "id": item.get("id", 0),
        "title": item.get("title", ""),
        "status": item.get("status") or "",
        "tracked_download_state": item.get("trackedDownloadState") or "",
        "tracked_download_status": item.get("trackedDownloadStatus") or "",
        "error_message": item.get("errorMessage") or None,
        "download_id": item.get("downloadId") or None,
        "size": int(item.get("size") or 0),
        "size_left": int(item.get("sizeleft") or 0),
    }


class ArrClient:
    """
    Base client for the *arr v3 API.

    Authenticates with the X-Api-Key header; every request is bounded by
    a total timeout so one slow backend cannot hold up a cycle.
    """

    name = "arr"

    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout: float = 10.0,
        verify_ssl: bool = True,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.verify_ssl = verify_ssl
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create aiohttp session."""
        if self._session is None or self._session.closed:
            connector = aiohttp.TCPConnector(ssl=self.verify_ssl)
            self._session = aiohttp.ClientSession(
                connector=connector,
                timeout=aiohttp.ClientTimeout(total=self.timeout),
                headers={
                    "X-Api-Key": self.api_key,
                    "Content-Type": "application/json",
                },
            )
        return self._session

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[dict] = None,
        json: Optional[Any] = None,
    ) -> Any:
        """Make a request against /api/v3 and decode the JSON body."""
        session = await self._get_session()
        url = f"{self.base_url}/api/v3/{path.lstrip('/')}"

        try:
            async with session.request(method, url, params=params, json=json) as response:
                if response.status in (401, 403):
                    raise BackendAuthenticationError(
                        f"{self.name} rejected the API key",
                        backend=self.name,
                        details=f"HTTP {response.status}",
                    )
                if response.status >= 400:
                    raise BackendResponseError(
                        f"{self.name} {method} {path} failed",
                        backend=self.name,
                        status=response.status,
                        details=f"HTTP {response.status}: {response.reason}",
                    )
                if response.status == 204:
                    return None
                return await response.json(content_type=None)

        except asyncio.TimeoutError as e:
            raise BackendTimeoutError(
                f"{self.name} {method} {path} timed out",
                backend=self.name,
                details=f"no response within {self.timeout}s",
            ) from e
        except aiohttp.ClientError as e:
            raise BackendConnectionError(
                f"{self.name} request failed", backend=self.name, details=str(e) or type(e).__name__
            ) from e

    async def close(self):
        """Close the client connection."""
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None

    async def test_connection(self) -> tuple[bool, str]:
        """Test connection to the backend."""
        try:
            status = await self._request("GET", "system/status")
            version = (status or {}).get("version", "unknown")
            return True, f"Connected to {self.name} v{version}"
        except Exception as e:
            return False, str(e)

    async def _queue_records(self, params: dict) -> List[dict]:
        """Walk every page of /queue."""
        records: List[dict] = []
        page = 1
        while True:
            data = await self._request(
                "GET", "queue", params={**params, "page": page, "pageSize": QUEUE_PAGE_SIZE}
            )
            batch = (data or {}).get("records") or []
            records.extend(batch)
            total = (data or {}).get("totalRecords", len(records))
            if not batch or len(records) >= total:
                return records
            page += 1

    async def search_releases(self, media_id: int) -> List[Release]:
        raise NotImplementedError

    async def grab_release(self, guid: str, indexer_id: int) -> None:
        """Ask the backend to download one specific release."""
        await self._request("POST", "release", json={"guid": guid, "indexerId": indexer_id})

    async def remove_queue_items(
        self,
        ids: List[int],
        blocklist: bool = False,
        skip_redownload: bool = False,
    ) -> None:
        """
        Remove queue records and their torrents from the download client.

        With blocklist set the backend will not pick the same release again;
        skip_redownload stops it from searching on its own.
        """
        await self._request(
            "DELETE",
            "queue/bulk",
            params={
                "removeFromClient": "true",
                "blocklist": "true" if blocklist else "false",
                "skipRedownload": "true" if skip_redownload else "false",
                "changeCategory": "false",
            },
            json={"ids": list(ids)},
        )

    async def _command(self, name: str, **body) -> None:
        await self._request("POST", "command", json={"name": name, **body})


class RadarrClient(ArrClient):
    """Radarr (movie manager) client."""

    name = "radarr"

    async def list_queue(self) -> List[MovieQueueEntry]:
        records = await self._queue_records({"includeMovie": "true"})
        entries = []
        for item in records:
            movie = item.get("movie") or {}
            entries.append(MovieQueueEntry(
                media_id=item.get("movieId"),
                media_title=movie.get("title"),
                **_common_entry_fields(item),
            ))
        return entries

    async def get_media(self, media_id: int) -> MediaInfo:
        data = await self._request("GET", f"movie/{media_id}")
        return MediaInfo(id=media_id, title=data.get("title") or str(media_id))

    async def search_releases(self, media_id: int) -> List[Release]:
        data = await self._request("GET", "release", params={"movieId": media_id})
        return [Release.from_api(r) for r in data or []]

    async def trigger_search(self, movie_ids: List[int]) -> None:
        await self._command("MoviesSearch", movieIds=list(movie_ids))


class SonarrClient(ArrClient):
    """Sonarr (series manager) client."""

    name = "sonarr"

    async def list_queue(self) -> List[SeriesQueueEntry]:
        records = await self._queue_records(
            {"includeSeries": "true", "includeEpisode": "true"}
        )
        entries = []
        for item in records:
            series = item.get("series") or {}
            episode = item.get("episode") or {}
            entries.append(SeriesQueueEntry(
                media_id=item.get("seriesId"),
                media_title=series.get("title"),
                episode_id=item.get("episodeId"),
                season_number=episode.get("seasonNumber", item.get("seasonNumber")),
                episode_number=episode.get("episodeNumber"),
                **_common_entry_fields(item),
            ))
        return entries

    async def get_media(self, media_id: int) -> MediaInfo:
        data = await self._request("GET", f"series/{media_id}")
        return MediaInfo(id=media_id, title=data.get("title") or str(media_id))

    async def search_releases(self, episode_id: int) -> List[Release]:
        data = await self._request("GET", "release", params={"episodeId": episode_id})
        return [Release.from_api(r) for r in data or []]

    async def trigger_search(self, series_id: int) -> None:
        await self._command("SeriesSearch", seriesId=series_id)

    async def trigger_season_search(self, series_id: int, season_number: int) -> None:
        await self._command("SeasonSearch", seriesId=series_id, seasonNumber=season_number)

    async def trigger_episode_search(self, episode_ids: List[int]) -> None:
        await self._command("EpisodeSearch", episodeIds=list(episode_ids))
