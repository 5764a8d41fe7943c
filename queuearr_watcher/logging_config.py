"""
Logging for Queuearr Watcher
Every record can carry the download it concerns (source, media id, monitored
download id) so console lines, JSON files and the activity endpoint can all be
read per download.
"""

import json
import logging
import logging.handlers
import sys
from collections import Counter, deque
from contextvars import ContextVar
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, List, Dict, Any

from .exceptions import ValidationError

# Fields a record may carry about the download or backend it concerns
DOWNLOAD_FIELDS = ("download_id", "source", "media_id", "status", "backend", "user_id", "operation")

# Third-party loggers that are too chatty at INFO
QUIET_LOGGERS = {
    "aiohttp": logging.WARNING,
    "aiosqlite": logging.WARNING,
    "uvicorn.access": logging.WARNING,
}

_download_context: ContextVar[Dict[str, Any]] = ContextVar("download_context", default={})


class LogContext:
    """
    Attach download fields to every record logged inside the block.

    Nested blocks add to the outer fields; each task sees only its own.

        with LogContext(download_id=12, source="radarr", media_id=42):
            logger.info("Status changed")
    """

    def __init__(self, **fields):
        self.fields = fields
        self._token = None

    def __enter__(self):
        self._token = _download_context.set({**_download_context.get(), **self.fields})
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        _download_context.reset(self._token)
        return False


class ContextFilter(logging.Filter):
    """Copy the current download context onto records; explicit `extra` wins."""

    def filter(self, record: logging.LogRecord) -> bool:
        for key, value in _download_context.get().items():
            if not hasattr(record, key):
                setattr(record, key, value)
        return True


def download_fields(record: logging.LogRecord) -> Dict[str, Any]:
    fields = {}
    for name in DOWNLOAD_FIELDS:
        value = getattr(record, name, None)
        if value is not None:
            fields[name] = value
    return fields


def record_time(record: logging.LogRecord) -> str:
    return datetime.fromtimestamp(record.created, timezone.utc).isoformat()


class JSONFormatter(logging.Formatter):
    """One JSON object per line with the download fields at top level."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "time": record_time(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        entry.update(download_fields(record))
        if record.exc_info:
            entry["error"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class ConsoleFormatter(logging.Formatter):
    """
    Human-readable lines ending with a short download tag, e.g.
    ``... Heat: downloading -> stalled [radarr:42 #12]``.
    """

    def __init__(self):
        super().__init__(
            fmt="%(asctime)s %(levelname)-7s %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    @staticmethod
    def tag(record: logging.LogRecord) -> str:
        parts = []
        source = getattr(record, "source", None)
        media_id = getattr(record, "media_id", None)
        if source and media_id is not None:
            parts.append(f"{source}:{media_id}")
        elif source:
            parts.append(source)
        download_id = getattr(record, "download_id", None)
        if download_id is not None:
            parts.append(f"#{download_id}")
        backend = getattr(record, "backend", None)
        if backend and backend != source:
            parts.append(f"backend={backend}")
        return f" [{' '.join(parts)}]" if parts else ""

    def format(self, record: logging.LogRecord) -> str:
        return super().format(record) + self.tag(record)


def parse_since(since: str) -> float:
    try:
        moment = datetime.fromisoformat(since.replace("Z", "+00:00"))
    except ValueError:
        raise ValidationError(f"since must be an ISO 8601 timestamp, got: {since!r}") from None
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.timestamp()


def parse_level(level: str) -> int:
    value = logging.getLevelName(level.upper())
    if not isinstance(value, int):
        raise ValidationError(f"Unknown log level: {level!r}")
    return value


class ActivityLogHandler(logging.Handler):
    """
    Ring buffer of recent watcher activity served by /api/watcher/logs.

    Entries are kept as (created, levelno, logger, message, fields) so filters
    compare numbers rather than formatted strings.
    """

    def __init__(self, max_entries: int = 1000, min_level: int = logging.INFO):
        super().__init__(level=min_level)
        self._entries: deque = deque(maxlen=max_entries)
        self.evicted = 0

    def emit(self, record: logging.LogRecord) -> None:
        try:
            message = record.getMessage()
        except Exception:
            self.handleError(record)
            return
        if len(self._entries) == self._entries.maxlen:
            self.evicted += 1
        self._entries.append((record.created, record.levelno, record.name, message, download_fields(record)))

    def get_logs(
        self,
        limit: int = 100,
        level: Optional[str] = None,
        download_id: Optional[int] = None,
        source: Optional[str] = None,
        since: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """
        Most recent entries, oldest first.

        `level` is a minimum; `since` is an ISO timestamp (naive means UTC).
        Raises ValidationError on an unknown level or unparseable timestamp.
        """
        min_level = parse_level(level) if level else logging.NOTSET
        after = parse_since(since) if since else None

        with self.lock:
            entries = list(self._entries)

        selected = [
            entry for entry in entries
            if entry[1] >= min_level
            and (download_id is None or entry[4].get("download_id") == download_id)
            and (not source or entry[4].get("source") == source)
            and (after is None or entry[0] > after)
        ]
        if limit >= 0:
            selected = selected[-limit:] if limit else []

        return [
            {
                "time": datetime.fromtimestamp(created, timezone.utc).isoformat(),
                "level": logging.getLevelName(levelno),
                "logger": name,
                "message": message,
                **fields,
            }
            for created, levelno, name, message, fields in selected
        ]

    def get_stats(self) -> Dict[str, Any]:
        with self.lock:
            entries = list(self._entries)
        return {
            "buffer_size": len(entries),
            "max_size": self._entries.maxlen,
            "evicted": self.evicted,
            "by_level": dict(Counter(logging.getLevelName(entry[1]) for entry in entries)),
        }


def setup_logging(
    log_level: str = "INFO",
    log_file: Optional[str] = None,
    log_format: str = "text",
    max_file_size_mb: int = 10,
    backup_count: int = 5,
    activity_log_size: int = 1000,
) -> ActivityLogHandler:
    """
    Install console, optional rotating file, and activity handlers on the root logger.

    Args:
        log_level: Root log level name
        log_file: Rotating log file path; parent directories are created
        log_format: "text" for console lines, "json" for one object per line
        max_file_size_mb: Size at which the log file rotates
        backup_count: Rotated files to keep
        activity_log_size: Entries kept for /api/watcher/logs

    Returns:
        The activity handler backing /api/watcher/logs
    """
    root = logging.getLogger()
    root.setLevel(parse_level(log_level))
    for handler in root.handlers[:]:
        root.removeHandler(handler)

    formatter = JSONFormatter() if log_format == "json" else ConsoleFormatter()
    context_filter = ContextFilter()

    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.handlers.RotatingFileHandler(
            log_file,
            maxBytes=max_file_size_mb * 1024 * 1024,
            backupCount=backup_count,
            encoding="utf-8",
        ))
    for handler in handlers:
        handler.setFormatter(formatter)

    activity = ActivityLogHandler(max_entries=activity_log_size)
    handlers.append(activity)

    for handler in handlers:
        handler.addFilter(context_filter)
        root.addHandler(handler)

    for name, level in QUIET_LOGGERS.items():
        logging.getLogger(name).setLevel(level)

    logging.getLogger(__name__).info(
        f"Logging configured: level={log_level}, format={log_format}, file={log_file or 'none'}"
    )
    return activity
