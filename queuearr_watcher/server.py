"""
Queuearr Watcher HTTP API
Host surface around the reconciliation loop: subscribe users to downloads,
grab/retry releases, and inspect watcher state.
"""

import asyncio
import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, BackgroundTasks, HTTPException, Request
from fastapi.responses import JSONResponse

from .arr_client import RadarrClient, SonarrClient
from .config import (
    Settings,
    create_radarr_client,
    create_sonarr_client,
    create_transmission_client,
    create_notifier,
)
from .exceptions import (
    BackendError,
    BackendNotConfiguredError,
    QueuearrError,
    ValidationError,
)
from .logging_config import setup_logging, ActivityLogHandler, LogContext
from .persistence import MonitoredDownloadStore, DownloadSource, parse_source
from .retry import RetryHandler
from .smart_grab import smart_grab, validate_grab_request
from .transmission_client import TransmissionClient
from .watcher import DownloadWatcher

logger = logging.getLogger(__name__)


# Global instances
settings = Settings()
store: Optional[MonitoredDownloadStore] = None
watcher: Optional[DownloadWatcher] = None
radarr_client: Optional[RadarrClient] = None
sonarr_client: Optional[SonarrClient] = None
transmission_client: Optional[TransmissionClient] = None
notifier = None
retry_handler: Optional[RetryHandler] = None
activity_log_handler: Optional[ActivityLogHandler] = None


def _writable_config_path(config_path: str) -> str:
    """Ensure config path exists and is writable, falling back to /tmp."""
    try:
        os.makedirs(config_path, exist_ok=True)
        test_file = os.path.join(config_path, ".write_test")
        with open(test_file, "w") as f:
            f.write("test")
        os.remove(test_file)
        return config_path
    except OSError as e:
        logger.warning(f"Config path {config_path} not writable: {e}, falling back to /tmp")
        return "/tmp"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    global store, watcher, radarr_client, sonarr_client, transmission_client
    global notifier, retry_handler, activity_log_handler

    # Setup logging first
    activity_log_handler = setup_logging(
        log_level=settings.log_level,
        log_file=settings.log_file,
        log_format=settings.log_format,
        max_file_size_mb=settings.log_max_size_mb,
        backup_count=settings.log_backup_count,
        activity_log_size=settings.activity_log_size,
    )

    logger.info("Starting Queuearr watcher...")

    db_path = settings.db_path
    if not os.path.isabs(settings.state_file):
        db_path = os.path.join(_writable_config_path(settings.config_path), settings.state_file)

    store = MonitoredDownloadStore(db_path)
    await store.initialize()

    radarr_client = create_radarr_client(settings)
    sonarr_client = create_sonarr_client(settings)
    transmission_client = create_transmission_client(settings)
    notifier = create_notifier(settings)
    retry_handler = RetryHandler(settings.retry_config())

    for name, client in (
        ("radarr", radarr_client),
        ("sonarr", sonarr_client),
        ("transmission", transmission_client),
    ):
        if client is None:
            logger.info(f"{name} not configured")
            continue
        success, message = await client.test_connection()
        if success:
            logger.info(message, extra={"backend": name})
        else:
            # Not fatal: the watcher treats the backend as empty until it recovers
            logger.error(f"{name} connection failed: {message}", extra={"backend": name})

    watcher = DownloadWatcher(
        store,
        radarr=radarr_client,
        sonarr=sonarr_client,
        transmission=transmission_client,
        notifier=notifier,
        interval=settings.watch_interval,
        thresholds=settings.stall_thresholds(),
        circuit_config=settings.circuit_config(),
    )
    if settings.watch_enabled:
        await watcher.start()

    yield

    # Shutdown
    if watcher:
        await watcher.stop()
    for client in (radarr_client, sonarr_client, transmission_client, notifier):
        if client is not None:
            await client.close()
    if store:
        await store.close()
    logger.info("Queuearr watcher stopped")


app = FastAPI(
    title="Queuearr Watcher",
    description="Download state reconciliation and notifications for Radarr, Sonarr and Transmission",
    version="1.0.0",
    lifespan=lifespan,
)


# =============================================================================
# Helper Functions
# =============================================================================


def check_api_key(request: Request) -> None:
    """Require X-Api-Key when an API key is configured."""
    if settings.api_key and request.headers.get("X-Api-Key") != settings.api_key:
        raise HTTPException(status_code=403, detail="Forbidden")


def require_store() -> MonitoredDownloadStore:
    if not store:
        raise HTTPException(status_code=500, detail="Store not initialized")
    return store


def sanitize_error_message(error: Exception) -> str:
    """Sanitize error messages to avoid leaking sensitive information."""
    error_str = str(error)
    sensitive_patterns = [
        "token",
        "password",
        "secret",
        "apikey",
        "api_key",
        "credential",
        "bearer",
    ]
    error_lower = error_str.lower()
    for pattern in sensitive_patterns:
        if pattern in error_lower:
            return "An internal error occurred. Check server logs for details."
    if len(error_str) > 200:
        return error_str[:200] + "..."
    return error_str


async def read_json(request: Request) -> dict:
    try:
        body = await request.json()
    except ValueError:
        raise ValidationError("Request body must be JSON") from None
    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object")
    return body


def positive_int(value, name: str) -> int:
    if isinstance(value, bool):
        raise ValidationError(f"{name} must be a positive integer")
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{name} must be a positive integer") from None
    if number <= 0 or (isinstance(value, float) and value != number):
        raise ValidationError(f"{name} must be a positive integer")
    return number


def required_user(body: dict) -> str:
    user_id = body.get("userId")
    if not user_id or not isinstance(user_id, (str, int)):
        raise ValidationError("userId is required")
    return str(user_id)


@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError):
    return JSONResponse({"error": exc.message}, status_code=400)


@app.exception_handler(BackendNotConfiguredError)
async def not_configured_handler(request: Request, exc: BackendNotConfiguredError):
    return JSONResponse({"error": exc.message}, status_code=503)


@app.exception_handler(BackendError)
async def backend_error_handler(request: Request, exc: BackendError):
    logger.error(f"Backend error: {exc}", extra={"backend": exc.backend})
    return JSONResponse({"error": sanitize_error_message(exc)}, status_code=502)


async def grab_in_background(source: DownloadSource, media_id: int, episode_id=None) -> None:
    """Run smart grab after the response has been sent; failures are only logged."""
    with LogContext(source=source.value, media_id=media_id, operation="smart_grab"):
        try:
            await smart_grab(
                source,
                media_id,
                episode_id=episode_id,
                radarr=radarr_client,
                sonarr=sonarr_client,
                retry_handler=retry_handler,
            )
        except QueuearrError as e:
            logger.error(f"Smart grab failed: {e}")


# =============================================================================
# Health Check Endpoint
# =============================================================================


@app.get("/health")
@app.get("/api/health")
async def health_check():
    """Health check endpoint with backend connectivity."""
    clients = {
        "radarr": radarr_client,
        "sonarr": sonarr_client,
        "transmission": transmission_client,
    }
    names = [name for name, client in clients.items() if client is not None]
    results = await asyncio.gather(
        *(clients[name].test_connection() for name in names)
    )

    backends = {
        name: {"configured": False, "connected": False, "message": "not configured"}
        for name in clients
    }
    for name, (success, message) in zip(names, results):
        backends[name] = {"configured": True, "connected": success, "message": message}

    healthy = store is not None and all(b["connected"] for b in backends.values() if b["configured"])
    return JSONResponse({
        "status": "healthy" if healthy else "unhealthy",
        "backends": backends,
        "watcher_running": watcher.is_running if watcher else False,
    }, status_code=200 if healthy else 503)


# =============================================================================
# Monitored Download Endpoints
# =============================================================================


@app.get("/api/downloads")
async def list_downloads(request: Request):
    """Active monitored downloads with their watchers."""
    check_api_key(request)
    downloads = await require_store().get_active_monitored_downloads()
    return JSONResponse({
        "count": len(downloads),
        "downloads": [
            {
                "id": d.id,
                "source": d.source.value,
                "mediaId": d.media_id,
                "title": d.title,
                "lastStatus": d.last_status,
                "createdAt": d.created_at,
                "lastActivityAt": d.last_activity_at,
                "lastBytesAt": d.last_bytes_at,
                "userIds": d.user_ids,
            }
            for d in downloads
        ],
    })


async def _watch_target(request: Request):
    body = await read_json(request)
    source = parse_source(body.get("source"))
    media_id = positive_int(body.get("mediaId"), "mediaId")
    user_id = required_user(body)

    download = await require_store().get_by_source_media(source, media_id)
    if download is None:
        raise HTTPException(status_code=404, detail="Download not monitored")
    return download, user_id


@app.post("/api/downloads/watch")
async def watch_download(request: Request):
    """Subscribe a user to an active download."""
    check_api_key(request)
    download, user_id = await _watch_target(request)
    await store.add_user_to_download(download.id, user_id)
    logger.info(
        f"{user_id} now watching {download.title}",
        extra={"download_id": download.id, "user_id": user_id},
    )
    return JSONResponse({"success": True, "downloadId": download.id})


@app.delete("/api/downloads/watch")
async def unwatch_download(request: Request):
    """Unsubscribe a user from an active download."""
    check_api_key(request)
    download, user_id = await _watch_target(request)
    if not await store.is_user_watching(download.id, user_id):
        raise HTTPException(status_code=404, detail="User is not watching this download")
    await store.remove_user_from_download(download.id, user_id)
    return JSONResponse({"success": True, "downloadId": download.id})


@app.post("/api/downloads/retry")
async def retry_download(request: Request):
    """Pick the best release again and grab it."""
    check_api_key(request)
    body = await read_json(request)
    media_id = positive_int(body.get("mediaId"), "mediaId")
    episode_id = body.get("episodeId")
    if episode_id is not None:
        episode_id = positive_int(episode_id, "episodeId")
    source = validate_grab_request(body.get("source"), media_id, episode_id)

    result = await smart_grab(
        source,
        media_id,
        episode_id=episode_id,
        radarr=radarr_client,
        sonarr=sonarr_client,
        retry_handler=retry_handler,
    )
    return JSONResponse(result.to_dict())


# =============================================================================
# Queue Endpoints
# =============================================================================


async def remove_from_queue(source: DownloadSource, request: Request) -> JSONResponse:
    """
    Remove queue items from a backend.

    With retry, the removed release is blocklisted, the monitored download starts
    over and smart grab picks a replacement. Without retry, removing the items
    ends monitoring of the download.
    """
    check_api_key(request)
    client = radarr_client if source == DownloadSource.RADARR else sonarr_client
    if not client:
        raise BackendNotConfiguredError(source.value)

    body = await read_json(request)
    ids = body.get("ids")
    if not isinstance(ids, list) or not ids:
        raise ValidationError("ids must be a non-empty list of queue ids")
    ids = [positive_int(queue_id, "ids") for queue_id in ids]
    retry = body.get("retry", False)
    if not isinstance(retry, bool):
        raise ValidationError("retry must be true or false")
    media_id = body.get("mediaId")
    if media_id is not None:
        media_id = positive_int(media_id, "mediaId")
    episode_id = body.get("episodeId")
    if episode_id is not None:
        episode_id = positive_int(episode_id, "episodeId")

    await client.remove_queue_items(ids, blocklist=retry, skip_redownload=retry)
    logger.info(
        f"Removed {len(ids)} {source.value} queue item(s)" + (" for retry" if retry else ""),
        extra={"source": source.value, "media_id": media_id},
    )

    response = {"success": True, "removed": ids, "grab": None, "completedDownloadId": None}
    if media_id is None:
        return JSONResponse(response)

    download = await require_store().get_by_source_media(source, media_id)
    if retry:
        if download is not None:
            await store.reset_download_progress(download.id)
        result = await smart_grab(
            source,
            media_id,
            episode_id=episode_id,
            radarr=radarr_client,
            sonarr=sonarr_client,
            retry_handler=retry_handler,
        )
        response["grab"] = result.to_dict()
    elif download is not None:
        await store.mark_download_completed(download.id)
        response["completedDownloadId"] = download.id
    return JSONResponse(response)


@app.delete("/api/radarr/queue")
async def remove_radarr_queue(request: Request):
    return await remove_from_queue(DownloadSource.RADARR, request)


@app.delete("/api/sonarr/queue")
async def remove_sonarr_queue(request: Request):
    return await remove_from_queue(DownloadSource.SONARR, request)


# =============================================================================
# Grab Endpoints
# =============================================================================


@app.post("/api/radarr/movie/{movie_id}/grab")
async def grab_movie(movie_id: int, request: Request, background_tasks: BackgroundTasks):
    """Track a movie for the user, then grab the best release in the background."""
    check_api_key(request)
    if not radarr_client:
        raise BackendNotConfiguredError("radarr")
    body = await read_json(request)
    user_id = required_user(body)
    movie_id = positive_int(movie_id, "movieId")

    media = await radarr_client.get_media(movie_id)
    download = await require_store().upsert_monitored_download(
        DownloadSource.RADARR, movie_id, media.title
    )
    await store.add_user_to_download(download.id, user_id)

    background_tasks.add_task(grab_in_background, DownloadSource.RADARR, movie_id)
    logger.info(
        f"Grab requested for {media.title}",
        extra={"source": "radarr", "media_id": movie_id, "user_id": user_id},
    )
    return JSONResponse({"success": True, "downloadId": download.id})


@app.post("/api/sonarr/series/{series_id}/grab")
async def grab_series(series_id: int, request: Request):
    """Search a season or a single episode, then track the series for the user."""
    check_api_key(request)
    if not sonarr_client:
        raise BackendNotConfiguredError("sonarr")
    body = await read_json(request)
    user_id = required_user(body)
    series_id = positive_int(series_id, "seriesId")

    grab_type = body.get("type")
    target = f"sonarr:{series_id}"
    if grab_type == "season":
        season = body.get("seasonNumber")
        if isinstance(season, bool) or not isinstance(season, int) or season < 0:
            raise ValidationError("seasonNumber must be a non-negative integer")
        await (retry_handler or RetryHandler()).with_retry(
            lambda: sonarr_client.trigger_season_search(series_id, season),
            "season-search",
            target,
        )
    elif grab_type == "episode":
        episode_id = positive_int(body.get("episodeId"), "episodeId")
        await (retry_handler or RetryHandler()).with_retry(
            lambda: sonarr_client.trigger_episode_search([episode_id]),
            "episode-search",
            target,
        )
    else:
        raise ValidationError("type must be season or episode")

    media = await sonarr_client.get_media(series_id)
    download = await require_store().upsert_monitored_download(
        DownloadSource.SONARR, series_id, media.title
    )
    await store.add_user_to_download(download.id, user_id)
    return JSONResponse({"success": True, "downloadId": download.id})


# =============================================================================
# Watcher Endpoints
# =============================================================================


@app.post("/api/watcher/check")
async def run_check(request: Request):
    """Run one reconciliation cycle now."""
    check_api_key(request)
    if not watcher:
        raise HTTPException(status_code=500, detail="Watcher not initialized")
    report = await watcher.check_downloads()
    return JSONResponse(report.to_dict())


@app.get("/api/watcher/logs")
async def get_activity_logs(
    request: Request,
    limit: int = 100,
    level: Optional[str] = None,
    download_id: Optional[int] = None,
    source: Optional[str] = None,
    since: Optional[str] = None,
):
    """Get activity logs for debugging and monitoring."""
    check_api_key(request)

    if not activity_log_handler:
        return JSONResponse({"count": 0, "logs": []})

    logs = activity_log_handler.get_logs(
        limit=limit,
        level=level,
        download_id=download_id,
        source=source,
        since=since,
    )

    return JSONResponse({
        "count": len(logs),
        "logs": logs,
    })


@app.get("/api/watcher/state")
async def get_state(request: Request):
    """Get current state summary and statistics."""
    check_api_key(request)
    if not watcher:
        raise HTTPException(status_code=500, detail="Watcher not initialized")

    return JSONResponse({
        "watcher": watcher.get_stats(),
        "store": await require_store().get_stats(),
        "retry": retry_handler.get_stats() if retry_handler else None,
        "activity_log": activity_log_handler.get_stats() if activity_log_handler else None,
    })


# =============================================================================
# Main entry point
# =============================================================================


def main():
    """Run the server directly."""
    import uvicorn

    uvicorn.run(
        "queuearr_watcher.server:app",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
