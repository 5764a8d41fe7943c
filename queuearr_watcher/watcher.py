"""
Download Watcher
The reconciliation loop: every interval, snapshot the monitored downloads,
fetch the three backends, correlate, resolve status and notify watchers of
transitions.
"""

import asyncio
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Optional, List, Dict, Callable, Awaitable, Any

from .arr_client import QueueEntry, QueueBackend
from .correlation import build_torrent_index, correlate, find_untracked
from .logging_config import LogContext
from .notifications import Notifier, LogNotifier, notify_users, status_payload, ready_payload
from .persistence import MonitoredDownloadStore, ActiveMonitoredDownload, DownloadSource
from .retry import CircuitBreakerConfig, breakers_for
from .status import StallThresholds, resolve_status, apply_stall_override, next_activity
from .transmission_client import TorrentBackend, TorrentEntry

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL = 30.0


@dataclass
class CycleReport:
    """Summary of one reconciliation cycle."""
    started_at: float
    skipped: bool = False
    duration_ms: float = 0.0
    checked: int = 0
    discovered: int = 0
    transitions: List[Dict[str, Any]] = field(default_factory=list)
    completed: List[int] = field(default_factory=list)
    notifications_sent: int = 0
    notifications_failed: int = 0
    backend_errors: Dict[str, str] = field(default_factory=dict)
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "startedAt": self.started_at,
            "skipped": self.skipped,
            "durationMs": round(self.duration_ms, 1),
            "checked": self.checked,
            "discovered": self.discovered,
            "transitions": self.transitions,
            "completed": self.completed,
            "notificationsSent": self.notifications_sent,
            "notificationsFailed": self.notifications_failed,
            "backendErrors": self.backend_errors,
            "error": self.error,
        }


class DownloadWatcher:
    """
    Scheduler object for the reconciliation loop.

    Cycles never overlap: a tick that fires while a cycle is in flight is
    dropped, not queued. The clock is injectable so stall timing can be
    tested with fixed timestamps.
    """

    def __init__(
        self,
        store: MonitoredDownloadStore,
        radarr: Optional[QueueBackend] = None,
        sonarr: Optional[QueueBackend] = None,
        transmission: Optional[TorrentBackend] = None,
        notifier: Optional[Notifier] = None,
        interval: float = DEFAULT_INTERVAL,
        thresholds: Optional[StallThresholds] = None,
        clock: Optional[Callable[[], float]] = None,
        circuit_config: Optional[CircuitBreakerConfig] = None,
    ):
        self.store = store
        self.radarr = radarr
        self.sonarr = sonarr
        self.transmission = transmission
        self.notifier = notifier or LogNotifier()
        self.interval = interval
        self.thresholds = thresholds or StallThresholds()
        self._clock = clock or (lambda: datetime.now().timestamp())
        self._breakers = breakers_for(
            ["radarr", "sonarr", "transmission"], circuit_config, clock=self._clock
        )

        self._busy = False
        self._task: Optional[asyncio.Task] = None
        self._cycle_tasks: set = set()

        self._cycles = 0
        self._skipped_ticks = 0
        self._last_report: Optional[CycleReport] = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def is_busy(self) -> bool:
        return self._busy

    @property
    def breakers(self):
        return self._breakers

    async def start(self) -> None:
        """Start ticking; calling start twice is a no-op."""
        if self.is_running:
            return
        self._task = asyncio.create_task(self._tick_loop())
        logger.info(f"Download watcher started (interval {self.interval}s)")

    async def stop(self) -> None:
        """Stop ticking and wait for an in-flight cycle to finish."""
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        if self._cycle_tasks:
            await asyncio.gather(*self._cycle_tasks, return_exceptions=True)
        logger.info("Download watcher stopped")

    async def _tick_loop(self):
        while True:
            try:
                await asyncio.sleep(self.interval)
                task = asyncio.create_task(self.check_downloads())
                self._cycle_tasks.add(task)
                task.add_done_callback(self._cycle_tasks.discard)
            except asyncio.CancelledError:
                break

    # -------------------------------------------------------------------------
    # Cycle
    # -------------------------------------------------------------------------

    async def check_downloads(self) -> CycleReport:
        """
        Run one reconciliation cycle.

        Never raises: any error is logged and recorded on the report, and the
        busy flag is always released.
        """
        now = self._clock()

        if self._busy:
            self._skipped_ticks += 1
            logger.debug("Previous cycle still running, skipping tick")
            return CycleReport(started_at=now, skipped=True)

        self._busy = True
        report = CycleReport(started_at=now)
        start = datetime.now()

        try:
            await self._run_cycle(report, now)
        except Exception as e:
            report.error = str(e)
            logger.error(f"Error during download check: {e}", exc_info=True)
        finally:
            self._busy = False
            report.duration_ms = (datetime.now() - start).total_seconds() * 1000
            self._cycles += 1
            self._last_report = report

        if report.transitions or report.completed or report.discovered:
            logger.info(
                f"Cycle done: {report.checked} checked, {report.discovered} discovered, "
                f"{len(report.transitions)} transitions, {len(report.completed)} completed",
                extra={"duration_ms": round(report.duration_ms, 1)},
            )
        return report

    async def _run_cycle(self, report: CycleReport, now: float) -> None:
        monitored = await self.store.get_active_monitored_downloads()
        logger.debug(f"Checking {len(monitored)} downloads")

        movie_queue, series_queue, torrents = await asyncio.gather(
            self._fetch("radarr", self.radarr.list_queue if self.radarr else None, report),
            self._fetch("sonarr", self.sonarr.list_queue if self.sonarr else None, report),
            self._fetch(
                "transmission",
                self.transmission.list_torrents if self.transmission else None,
                report,
            ),
        )
        torrent_index = build_torrent_index(torrents)

        report.discovered = await self._discover(monitored, movie_queue, series_queue, now)
        if report.discovered:
            monitored = await self.store.get_active_monitored_downloads()

        # An empty queue from a failed or missing backend must not look like completion
        unavailable = {
            name for name, backend in (("radarr", self.radarr), ("sonarr", self.sonarr))
            if backend is None or name in report.backend_errors
        }

        report.checked = len(monitored)
        for download in monitored:
            if download.source.value in unavailable:
                logger.debug(f"Skipping {download.title}: {download.source.value} unavailable")
                continue
            with LogContext(
                download_id=download.id,
                source=download.source.value,
                media_id=download.media_id,
            ):
                await self._process_download(
                    download, movie_queue, series_queue, torrent_index, now, report
                )

    async def _fetch(
        self,
        name: str,
        operation: Optional[Callable[[], Awaitable[list]]],
        report: CycleReport,
    ) -> list:
        """Fetch one backend; any failure degrades to an empty list."""
        if operation is None:
            return []

        async def fallback():
            report.backend_errors[name] = "circuit open"
            return []

        try:
            return await self._breakers[name].execute(operation, fallback=fallback)
        except Exception as e:
            report.backend_errors[name] = str(e)
            logger.warning(f"{name} fetch failed, treating as empty: {e}", extra={"backend": name})
            return []

    async def _discover(
        self,
        monitored: List[ActiveMonitoredDownload],
        movie_queue: List[QueueEntry],
        series_queue: List[QueueEntry],
        now: float,
    ) -> int:
        """Start tracking queue items that were added directly in a backend."""
        discovered = 0
        sources = (
            (DownloadSource.RADARR, movie_queue, self.radarr),
            (DownloadSource.SONARR, series_queue, self.sonarr),
        )
        for source, queue, backend in sources:
            tracked = {d.media_id for d in monitored if d.source == source}
            for entry in find_untracked(queue, tracked):
                title = await self._discovery_title(backend, entry)
                await self.store.upsert_monitored_download(source, entry.media_id, title, now=now)
                discovered += 1
                logger.info(
                    f"Discovered untracked download: {title}",
                    extra={"source": source.value, "media_id": entry.media_id},
                )
        return discovered

    async def _discovery_title(self, backend: Optional[QueueBackend], entry: QueueEntry) -> str:
        if entry.media_title:
            return entry.media_title
        if backend is not None:
            try:
                media = await backend.get_media(entry.media_id)
                if media.title:
                    return media.title
            except Exception as e:
                logger.debug(f"Title lookup for {entry.media_id} failed: {e}")
        return str(entry.media_id)

    async def _process_download(
        self,
        download: ActiveMonitoredDownload,
        movie_queue: List[QueueEntry],
        series_queue: List[QueueEntry],
        torrent_index: Dict[str, TorrentEntry],
        now: float,
        report: CycleReport,
    ) -> None:
        unified = correlate(download, movie_queue, series_queue, torrent_index)

        if not unified.has_entries:
            if download.last_status is not None:
                await self._complete(download, now, report)
            return

        last_activity_at, last_bytes_at = next_activity(download, unified.matched_torrent, now)
        await self.store.update_download_activity(download.id, last_activity_at, last_bytes_at)
        download = replace(download, last_activity_at=last_activity_at, last_bytes_at=last_bytes_at)

        status = resolve_status(
            unified.entries, torrent_index, now, self.thresholds.torrent_idle_seconds
        )
        status = apply_stall_override(
            status, download, unified.matched_torrent, now, self.thresholds
        )
        if status is None or status.value == download.last_status:
            return

        payload = status_payload(status, download.title, download.id)
        if payload is not None:
            result = await notify_users(self.notifier, download.user_ids, payload)
            report.notifications_sent += result.sent
            report.notifications_failed += result.failed

        await self.store.update_download_status(download.id, status.value)
        report.transitions.append({
            "id": download.id,
            "source": download.source.value,
            "mediaId": download.media_id,
            "title": download.title,
            "from": download.last_status,
            "to": status.value,
        })
        pack = f" ({unified.episode_count} episodes)" if unified.episode_count > 1 else ""
        logger.info(
            f"{download.title}: {download.last_status} -> {status.value}{pack}",
            extra={"status": status.value},
        )

    async def _complete(
        self, download: ActiveMonitoredDownload, now: float, report: CycleReport
    ) -> None:
        """The download left every queue: tell its watchers and close the row."""
        result = await notify_users(
            self.notifier, download.user_ids, ready_payload(download.title, download.id)
        )
        report.notifications_sent += result.sent
        report.notifications_failed += result.failed

        await self.store.mark_download_completed(download.id, now=now)
        report.completed.append(download.id)
        logger.info(f"{download.title} completed", extra={"status": "completed"})

    def get_stats(self) -> dict:
        """Get watcher statistics."""
        return {
            "running": self.is_running,
            "busy": self._busy,
            "interval": self.interval,
            "cycles": self._cycles,
            "skipped_ticks": self._skipped_ticks,
            "backends": {
                "radarr": self.radarr is not None,
                "sonarr": self.sonarr is not None,
                "transmission": self.transmission is not None,
            },
            "circuit_breakers": {
                name: breaker.get_stats() for name, breaker in self._breakers.items()
            },
            "last_cycle": self._last_report.to_dict() if self._last_report else None,
        }
