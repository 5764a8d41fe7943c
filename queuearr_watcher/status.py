"""
Status Resolver and Stall Detector
Turns the queue entries of one monitored download into a single effective
status, then applies the timestamp-based stall override.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional, List, Dict, Tuple, Iterable

from .arr_client import QueueEntry
from .persistence import MonitoredDownload
from .transmission_client import TorrentEntry, is_problematic, DEFAULT_IDLE_SECONDS

logger = logging.getLogger(__name__)


class DownloadStatus(str, Enum):
    """Effective status of an active download."""
    ERROR = "error"
    FAILED = "failed"
    STALLED = "stalled"
    WARNING = "warning"
    IMPORTING = "importing"
    DOWNLOADING = "downloading"
    QUEUED = "queued"


# Highest priority first
STATUS_PRIORITY = [
    DownloadStatus.ERROR,
    DownloadStatus.FAILED,
    DownloadStatus.STALLED,
    DownloadStatus.WARNING,
    DownloadStatus.IMPORTING,
    DownloadStatus.DOWNLOADING,
    DownloadStatus.QUEUED,
]

IMPORT_STATES = ("importpending", "importing")


@dataclass(frozen=True)
class StallThresholds:
    """Seconds of inactivity after which a download is forced to stalled."""
    bytes_stall_seconds: float = 15 * 60
    never_started_seconds: float = 30 * 60
    torrent_idle_seconds: float = DEFAULT_IDLE_SECONDS


def classify_entry(
    entry: QueueEntry,
    torrent_index: Dict[str, TorrentEntry],
    now: float,
    idle_seconds: float = DEFAULT_IDLE_SECONDS,
) -> DownloadStatus:
    """Classify one queue entry; the first matching rule wins."""
    status = (entry.status or "").lower()
    state = (entry.tracked_download_state or "").lower()
    tracked_status = (entry.tracked_download_status or "").lower()

    if entry.error_message or tracked_status == "error":
        return DownloadStatus.ERROR
    if status == "failed" or state == "downloadfailed":
        return DownloadStatus.FAILED
    if state == "stalled" or (tracked_status == "warning" and "stall" in state):
        return DownloadStatus.STALLED
    if tracked_status == "warning":
        return DownloadStatus.WARNING
    if status == "importing" or state in IMPORT_STATES:
        return DownloadStatus.IMPORTING

    torrent = torrent_index.get(entry.info_hash) if entry.info_hash else None
    if torrent is not None:
        problematic, reason = is_problematic(torrent, now=now, idle_seconds=idle_seconds)
        if problematic:
            logger.debug(f"Torrent {torrent.hash_string} problematic: {reason}")
            return DownloadStatus.ERROR if torrent.error > 0 else DownloadStatus.STALLED

    if status == "downloading" or state == "downloading":
        return DownloadStatus.DOWNLOADING
    return DownloadStatus.QUEUED


def highest_priority(statuses: Iterable[DownloadStatus]) -> Optional[DownloadStatus]:
    seen = set(statuses)
    for status in STATUS_PRIORITY:
        if status in seen:
            return status
    return None


def resolve_status(
    entries: List[QueueEntry],
    torrent_index: Dict[str, TorrentEntry],
    now: float,
    idle_seconds: float = DEFAULT_IDLE_SECONDS,
) -> Optional[DownloadStatus]:
    """
    Effective status across all entries of one download.

    Returns None when there are no entries, which the watcher reads as
    "left the queue".
    """
    if not entries:
        return None
    return highest_priority(
        classify_entry(entry, torrent_index, now, idle_seconds) for entry in entries
    )


def next_activity(
    download: MonitoredDownload,
    matched_torrent: Optional[TorrentEntry],
    now: float,
) -> Tuple[float, Optional[float]]:
    """
    Activity timestamps after a cycle in which the download had queue entries.

    last_activity_at always moves to now; last_bytes_at only moves when the
    matched torrent is actually receiving data.
    """
    receiving = matched_torrent is not None and matched_torrent.rate_download > 0
    last_bytes_at = now if receiving else download.last_bytes_at
    return now, last_bytes_at


def apply_stall_override(
    status: Optional[DownloadStatus],
    download: MonitoredDownload,
    matched_torrent: Optional[TorrentEntry],
    now: float,
    thresholds: StallThresholds = StallThresholds(),
) -> Optional[DownloadStatus]:
    """
    Force downloading/queued to stalled when no bytes have arrived for too long.

    Without a matched torrent the remaining work is unknown and treated as
    nonzero. Both comparisons are strict.
    """
    if status not in (DownloadStatus.DOWNLOADING, DownloadStatus.QUEUED):
        return status

    has_remaining_work = (
        matched_torrent.left_until_done > 0 if matched_torrent is not None else True
    )
    if not has_remaining_work:
        return status

    if download.last_bytes_at is not None:
        if now - download.last_bytes_at > thresholds.bytes_stall_seconds:
            return DownloadStatus.STALLED
    elif now - download.created_at > thresholds.never_started_seconds:
        return DownloadStatus.STALLED

    return status
