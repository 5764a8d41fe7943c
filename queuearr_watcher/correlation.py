"""
Correlation Engine
Joins media-manager queue entries with torrents by info-hash. The torrent
index is rebuilt from scratch every cycle.
"""

from dataclasses import dataclass, field
from typing import Optional, List, Dict, Iterable, Collection

from .arr_client import QueueEntry
from .persistence import MonitoredDownload, DownloadSource
from .transmission_client import TorrentEntry


@dataclass
class UnifiedDownload:
    """One monitored download joined with its queue entries and torrent."""
    download: MonitoredDownload
    entries: List[QueueEntry] = field(default_factory=list)
    matched_torrent: Optional[TorrentEntry] = None
    episode_count: int = 0  # queue entries before season-pack collapsing

    @property
    def has_entries(self) -> bool:
        return bool(self.entries)


def build_torrent_index(torrents: Iterable[TorrentEntry]) -> Dict[str, TorrentEntry]:
    """Map lowercase info-hash to torrent."""
    return {t.hash_string.lower(): t for t in torrents if t.hash_string}


def collapse_shared_torrents(entries: List[QueueEntry]) -> List[QueueEntry]:
    """
    Keep one representative entry per info-hash.

    A season pack shows up as one queue entry per episode, all pointing at
    the same torrent. Entries without a hash are kept unchanged.
    """
    seen = set()
    collapsed = []
    for entry in entries:
        info_hash = entry.info_hash
        if info_hash:
            if info_hash in seen:
                continue
            seen.add(info_hash)
        collapsed.append(entry)
    return collapsed


def find_untracked(
    queue: Iterable[QueueEntry], tracked_media_ids: Collection[int]
) -> List[QueueEntry]:
    """First queue entry for every media id that has no active download, in queue order."""
    untracked = []
    seen = set(tracked_media_ids)
    for entry in queue:
        if not entry.media_id or entry.media_id in seen:
            continue
        seen.add(entry.media_id)
        untracked.append(entry)
    return untracked


def match_torrent(
    entries: Iterable[QueueEntry], torrent_index: Dict[str, TorrentEntry]
) -> Optional[TorrentEntry]:
    """First torrent found for any of the entries, in entry order."""
    for entry in entries:
        if entry.info_hash:
            torrent = torrent_index.get(entry.info_hash)
            if torrent is not None:
                return torrent
    return None


def correlate(
    download: MonitoredDownload,
    movie_queue: List[QueueEntry],
    series_queue: List[QueueEntry],
    torrent_index: Dict[str, TorrentEntry],
) -> UnifiedDownload:
    """Select the download's own-source entries and find its torrent."""
    queue = movie_queue if download.source == DownloadSource.RADARR else series_queue
    own = [entry for entry in queue if entry.media_id == download.media_id]
    return UnifiedDownload(
        download=download,
        entries=collapse_shared_torrents(own),
        matched_torrent=match_torrent(own, torrent_index),
        episode_count=len(own),
    )
