"""
Transmission RPC Client
Lists torrents over Transmission's JSON-RPC endpoint and carries the client's
own rule for deciding whether a torrent has a problem.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import IntEnum
from typing import Optional, List, Protocol, Tuple

import aiohttp

from .exceptions import (
    BackendAuthenticationError,
    BackendConnectionError,
    BackendResponseError,
)

logger = logging.getLogger(__name__)

SESSION_HEADER = "X-Transmission-Session-Id"

# Seconds since last activity before an idle torrent counts as stalled
DEFAULT_IDLE_SECONDS = 30.0

TORRENT_FIELDS = [
    "id",
    "hashString",
    "name",
    "status",
    "percentDone",
    "rateDownload",
    "leftUntilDone",
    "sizeWhenDone",
    "isStalled",
    "isFinished",
    "error",
    "errorString",
    "peersConnected",
    "peersSendingToUs",
    "activityDate",
    "addedDate",
]


class TorrentStatus(IntEnum):
    """Transmission torrent status codes."""
    STOPPED = 0
    CHECK_WAIT = 1
    CHECK = 2
    DOWNLOAD_WAIT = 3
    DOWNLOAD = 4
    SEED_WAIT = 5
    SEED = 6


class TorrentErrorType(IntEnum):
    """Transmission error codes."""
    OK = 0
    TRACKER_WARNING = 1
    TRACKER_ERROR = 2
    LOCAL_ERROR = 3


WAITING_STATUSES = (
    TorrentStatus.DOWNLOAD_WAIT,
    TorrentStatus.SEED_WAIT,
    TorrentStatus.CHECK_WAIT,
)


@dataclass
class TorrentEntry:
    """A torrent as reported by Transmission."""
    id: int
    hash_string: str
    name: str
    status: TorrentStatus
    rate_download: int = 0
    is_stalled: bool = False
    is_finished: bool = False
    error: int = TorrentErrorType.OK
    error_string: str = ""
    left_until_done: int = 0
    activity_date: int = 0  # epoch seconds
    peers_sending_to_us: int = 0
    percent_done: float = 0.0

    @classmethod
    def from_rpc(cls, data: dict) -> "TorrentEntry":
        try:
            status = TorrentStatus(data.get("status", 0))
        except ValueError:
            status = TorrentStatus.STOPPED
        return cls(
            id=data.get("id", 0),
            hash_string=data.get("hashString", ""),
            name=data.get("name", ""),
            status=status,
            rate_download=data.get("rateDownload") or 0,
            is_stalled=bool(data.get("isStalled")),
            is_finished=bool(data.get("isFinished")),
            error=data.get("error") or 0,
            error_string=data.get("errorString") or "",
            left_until_done=data.get("leftUntilDone") or 0,
            activity_date=data.get("activityDate") or 0,
            peers_sending_to_us=data.get("peersSendingToUs") or 0,
            percent_done=data.get("percentDone") or 0.0,
        )


def is_problematic(
    torrent: TorrentEntry,
    now: Optional[float] = None,
    idle_seconds: float = DEFAULT_IDLE_SECONDS,
) -> Tuple[bool, Optional[str]]:
    """
    Decide whether Transmission itself would consider a torrent broken.

    Returns (problematic, reason). Queued/waiting torrents are never
    problematic; an active download only counts once it has been idle for
    more than ``idle_seconds``.
    """
    if torrent.error > 0:
        return True, torrent.error_string or "Unknown error"

    if torrent.status in WAITING_STATUSES:
        return False, None

    if torrent.status != TorrentStatus.DOWNLOAD:
        return False, None

    now = time.time() if now is None else now
    idle_for = now - torrent.activity_date

    if torrent.is_stalled and idle_for > idle_seconds:
        return True, "Torrent is stalled"

    if (
        torrent.rate_download == 0
        and torrent.peers_sending_to_us == 0
        and torrent.left_until_done > 0
        and idle_for > idle_seconds
    ):
        return True, "No active peers sending data"

    return False, None


class TorrentBackend(Protocol):
    name: str

    async def list_torrents(self) -> List[TorrentEntry]: ...


class TransmissionClient:
    """
    Client for the Transmission JSON-RPC API.

    Transmission answers the first request of a session with HTTP 409 and a
    session id header; the request is replayed once with that header.
    """

    name = "transmission"

    def __init__(
        self,
        url: str,
        username: Optional[str] = None,
        password: Optional[str] = None,
        timeout: float = 10.0,
        idle_seconds: float = DEFAULT_IDLE_SECONDS,
    ):
        url = url.rstrip("/")
        if not url.endswith("/rpc"):
            url = f"{url}/transmission/rpc"
        self.url = url
        self.username = username
        self.password = password
        self.timeout = timeout
        self.idle_seconds = idle_seconds

        self._session: Optional[aiohttp.ClientSession] = None
        self._session_id: Optional[str] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create aiohttp session."""
        if self._session is None or self._session.closed:
            auth = None
            if self.username or self.password:
                auth = aiohttp.BasicAuth(self.username or "", self.password or "")
            self._session = aiohttp.ClientSession(
                auth=auth,
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            )
        return self._session

    async def _call(self, method: str, arguments: Optional[dict] = None) -> dict:
        """Invoke one RPC method and return its ``arguments`` object."""
        session = await self._get_session()
        payload = {"method": method, "arguments": arguments or {}}

        try:
            for _ in range(2):
                headers = {SESSION_HEADER: self._session_id} if self._session_id else {}
                async with session.post(self.url, json=payload, headers=headers) as response:
                    if response.status == 409:
                        self._session_id = response.headers.get(SESSION_HEADER)
                        continue
                    if response.status in (401, 403):
                        raise BackendAuthenticationError(
                            "transmission rejected the credentials",
                            backend=self.name,
                            details=f"HTTP {response.status}",
                        )
                    if response.status != 200:
                        raise BackendResponseError(
                            f"transmission {method} failed",
                            backend=self.name,
                            status=response.status,
                            details=f"HTTP {response.status}: {response.reason}",
                        )
                    body = await response.json(content_type=None)
                    if body.get("result") != "success":
                        raise BackendResponseError(
                            f"transmission {method} failed",
                            backend=self.name,
                            details=str(body.get("result")),
                        )
                    return body.get("arguments") or {}

        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise BackendConnectionError(
                "transmission request failed", backend=self.name, details=str(e) or type(e).__name__
            ) from e

        raise BackendResponseError(
            "transmission kept rejecting the session id", backend=self.name, status=409
        )

    async def close(self):
        """Close the client connection."""
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None
        self._session_id = None

    async def list_torrents(self) -> List[TorrentEntry]:
        """Get all torrents with the fields the watcher needs."""
        arguments = await self._call("torrent-get", {"fields": TORRENT_FIELDS})
        return [TorrentEntry.from_rpc(t) for t in arguments.get("torrents", [])]

    async def test_connection(self) -> tuple[bool, str]:
        """Test connection to Transmission."""
        try:
            session = await self._call("session-get", {"fields": ["version"]})
            return True, f"Connected to Transmission {session.get('version', 'unknown')}"
        except Exception as e:
            return False, str(e)

    def is_problematic(
        self, torrent: TorrentEntry, now: Optional[float] = None
    ) -> Tuple[bool, Optional[str]]:
        return is_problematic(torrent, now=now, idle_seconds=self.idle_seconds)
