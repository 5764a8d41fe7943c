"""
Command Line Interface for Queuearr Watcher
Run the service, or inspect and drive the watcher from a shell.
"""

import argparse
import asyncio
import json
import logging
import os
import sys
from datetime import datetime

logger = logging.getLogger(__name__)


def setup_logging(level: str = "INFO"):
    """Configure logging."""
    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )


def main(argv=None):
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Queuearr Watcher - download reconciliation and notifications for Radarr/Sonarr/Transmission",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Start the server
  queuearr-watcher serve --port 8080

  # Run one reconciliation cycle and print the report
  queuearr-watcher check

  # Test connection to every configured backend
  queuearr-watcher test

  # View monitored downloads
  queuearr-watcher state --db /config/queuearr.db

  # Subscribe a user to a monitored movie
  queuearr-watcher watch radarr 42 alice

Environment Variables:
  RADARR_URL / RADARR_API_KEY   - Radarr connection
  SONARR_URL / SONARR_API_KEY   - Sonarr connection
  TRANSMISSION_URL              - Transmission RPC URL
  TRANSMISSION_USERNAME         - Transmission username (optional)
  TRANSMISSION_PASSWORD         - Transmission password (optional)
  NOTIFY_URL / NOTIFY_TOKEN     - Notification delivery endpoint (optional)
  WATCH_INTERVAL                - Seconds between cycles (default: 30)
  CONFIG_PATH / STATE_FILE      - SQLite database location
  API_KEY                       - Required X-Api-Key for /api routes (optional)
  LOG_LEVEL                     - Logging level (default: INFO)
  LOG_FILE                      - Log file path (enables rotation)
  LOG_FORMAT                    - Log format: text or json (default: text)
        """,
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # Serve command
    serve_parser = subparsers.add_parser("serve", help="Start the watcher service")
    serve_parser.add_argument(
        "--host", "-H", default="0.0.0.0", help="Host to bind to"
    )
    serve_parser.add_argument(
        "--port", "-p", type=int, default=8080, help="Port to listen on"
    )
    serve_parser.add_argument(
        "--interval", type=float, help="Seconds between reconciliation cycles"
    )
    serve_parser.add_argument(
        "--no-watch", action="store_true", help="Serve the API without the background loop"
    )
    serve_parser.add_argument(
        "--log-level", "-l", default="INFO", help="Log level"
    )
    serve_parser.add_argument(
        "--log-file", help="Log file path (enables rotation)"
    )
    serve_parser.add_argument(
        "--log-format", choices=["text", "json"], default="text",
        help="Log format: text or json"
    )
    serve_parser.add_argument(
        "--state-file", help="SQLite database for monitored downloads"
    )
    serve_parser.add_argument(
        "--reload", action="store_true", help="Enable auto-reload (dev mode)"
    )

    # Check command
    check_parser = subparsers.add_parser("check", help="Run one reconciliation cycle")
    check_parser.add_argument("--db", help="SQLite database path")

    # Test command
    subparsers.add_parser("test", help="Test backend connections")

    # State command
    state_parser = subparsers.add_parser("state", help="View monitored downloads")
    state_parser.add_argument("--db", help="SQLite database path")
    state_parser.add_argument(
        "--stats", action="store_true", help="Show statistics only"
    )

    # Watch / unwatch commands
    for name, help_text in (("watch", "Subscribe a user"), ("unwatch", "Unsubscribe a user")):
        p = subparsers.add_parser(name, help=f"{help_text} to a monitored download")
        p.add_argument("source", choices=["radarr", "sonarr"], help="Owning backend")
        p.add_argument("media_id", type=int, help="Movie or series id")
        p.add_argument("user_id", help="User id")
        p.add_argument("--db", help="SQLite database path")

    args = parser.parse_args(argv)

    if args.command == "serve":
        run_server(args)
    elif args.command == "check":
        asyncio.run(run_check(args))
    elif args.command == "test":
        asyncio.run(run_test(args))
    elif args.command == "state":
        asyncio.run(run_state(args))
    elif args.command in ("watch", "unwatch"):
        asyncio.run(run_watch(args))
    else:
        parser.print_help()
        sys.exit(1)


def _db_path(args) -> str:
    if getattr(args, "db", None):
        return args.db
    from .config import Settings
    return Settings().db_path


def run_server(args):
    """Run the watcher service."""
    import uvicorn

    setup_logging(args.log_level)

    # Set environment variables for the server
    os.environ["HOST"] = args.host
    os.environ["PORT"] = str(args.port)
    os.environ["LOG_LEVEL"] = args.log_level
    os.environ["LOG_FORMAT"] = args.log_format
    os.environ["WATCH_ENABLED"] = "false" if args.no_watch else "true"

    if args.interval:
        os.environ["WATCH_INTERVAL"] = str(args.interval)
    if args.log_file:
        os.environ["LOG_FILE"] = args.log_file
    if args.state_file:
        os.environ["STATE_FILE"] = args.state_file

    logger.info(f"Starting Queuearr watcher on {args.host}:{args.port}")

    uvicorn.run(
        "queuearr_watcher.server:app",
        host=args.host,
        port=args.port,
        reload=args.reload,
        log_level=args.log_level.lower(),
    )


def _clients(settings):
    from .config import create_radarr_client, create_sonarr_client, create_transmission_client

    return {
        "radarr": create_radarr_client(settings),
        "sonarr": create_sonarr_client(settings),
        "transmission": create_transmission_client(settings),
    }


async def run_check(args):
    """Run one reconciliation cycle against the configured backends."""
    setup_logging("INFO")

    from .config import Settings, create_notifier
    from .persistence import MonitoredDownloadStore
    from .watcher import DownloadWatcher

    settings = Settings()
    clients = _clients(settings)
    notifier = create_notifier(settings)
    store = MonitoredDownloadStore(_db_path(args))
    await store.initialize()

    watcher = DownloadWatcher(
        store,
        radarr=clients["radarr"],
        sonarr=clients["sonarr"],
        transmission=clients["transmission"],
        notifier=notifier,
        thresholds=settings.stall_thresholds(),
        circuit_config=settings.circuit_config(),
    )

    try:
        report = await watcher.check_downloads()
        print(json.dumps(report.to_dict(), indent=2))
        if report.error:
            sys.exit(1)
    finally:
        for client in list(clients.values()) + [notifier]:
            if client is not None:
                await client.close()
        await store.close()


async def run_test(args):
    """Test backend connections."""
    setup_logging("WARNING")

    from .config import Settings

    clients = _clients(Settings())
    failed = False

    try:
        for name, client in clients.items():
            if client is None:
                print(f"  {name}: not configured")
                continue
            success, message = await client.test_connection()
            print(f"  {name}: {message if success else 'FAILED - ' + message}")
            failed = failed or not success
    finally:
        for client in clients.values():
            if client is not None:
                await client.close()

    if failed:
        sys.exit(1)


async def run_state(args):
    """View monitored downloads."""
    db_path = _db_path(args)
    if not os.path.exists(db_path):
        print(f"Database not found: {db_path}")
        sys.exit(1)

    from .persistence import MonitoredDownloadStore

    store = MonitoredDownloadStore(db_path)
    await store.initialize()

    try:
        stats = await store.get_stats()
        print("\n=== Database Statistics ===")
        for table, count in stats.items():
            print(f"  {table}: {count}")

        if args.stats:
            return

        downloads = await store.get_active_monitored_downloads()
        print(f"\n=== Active Downloads ({len(downloads)}) ===")
        if downloads:
            print(f"{'ID':<6} {'Source':<8} {'Media':<8} {'Title':<30} {'Status':<12} {'Last Bytes':<20} {'Watchers'}")
            print("-" * 100)
            for d in downloads:
                title = d.title[:27] + "..." if len(d.title) > 30 else d.title
                last_bytes = (
                    datetime.fromtimestamp(d.last_bytes_at).strftime("%Y-%m-%d %H:%M:%S")
                    if d.last_bytes_at else "never"
                )
                print(
                    f"{d.id:<6} {d.source.value:<8} {d.media_id:<8} {title:<30} "
                    f"{d.last_status or '-':<12} {last_bytes:<20} {', '.join(d.user_ids)}"
                )

    finally:
        await store.close()


async def run_watch(args):
    """Add or remove a watcher on an active download."""
    from .persistence import MonitoredDownloadStore

    store = MonitoredDownloadStore(_db_path(args))
    await store.initialize()

    try:
        download = await store.get_by_source_media(args.source, args.media_id)
        if download is None:
            print(f"No active download for {args.source} {args.media_id}")
            sys.exit(1)

        if args.command == "watch":
            await store.add_user_to_download(download.id, args.user_id)
            print(f"{args.user_id} is now watching {download.title}")
        else:
            await store.remove_user_from_download(download.id, args.user_id)
            print(f"{args.user_id} stopped watching {download.title}")

        watchers = await store.get_watchers(download.id)
        print(f"Watchers: {', '.join(watchers) if watchers else 'none'}")
    finally:
        await store.close()


if __name__ == "__main__":
    main()
