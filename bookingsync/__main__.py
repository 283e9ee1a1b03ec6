"""CLI entry point for bookingsync."""

import argparse
import asyncio
import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path

from .config import load_config
from .errors import SyncError
from .store.records import format_timestamp


LOG_LEVELS = {
    "warning": logging.WARNING,
    "info": logging.INFO,
    "debug": logging.DEBUG,
}

# Attributes every LogRecord carries; anything else came in through ``extra``
_RECORD_ATTRS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime"}


class JSONFormatter(logging.Formatter):
    """One JSON object per line, timestamped in the same UTC form as records.

    Values passed through ``extra`` (a connection id, a record id) become
    top-level fields.
    """

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": format_timestamp(datetime.fromtimestamp(record.created, tz=timezone.utc)),
            "level": record.levelname,
            "component": record.name,
            "message": record.getMessage(),
        }
        entry.update(
            (key, value) for key, value in vars(record).items() if key not in _RECORD_ATTRS
        )
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def setup_logging(verbose: bool = False, log_level: str | None = None, json_output: bool = False) -> None:
    """Send every logger to stderr.

    ``log_level`` wins over ``verbose``. The websockets library stays at
    INFO or above even in debug mode, since it logs every frame.
    """
    level = LOG_LEVELS.get(log_level or "", logging.DEBUG if verbose else logging.INFO)

    handler = logging.StreamHandler()
    handler.setFormatter(
        JSONFormatter()
        if json_output
        else logging.Formatter("%(asctime)s %(levelname)-7s %(name)s: %(message)s")
    )
    logging.basicConfig(level=level, handlers=[handler])
    logging.getLogger("websockets").setLevel(max(level, logging.INFO))


async def cmd_serve(args: argparse.Namespace) -> int:
    """Run the record API and broadcast hub."""
    import uvicorn

    from .api import create_app

    config = load_config(args.config)
    host = args.host or config.server.host
    port = args.port or config.server.port

    print("Starting bookingsync server")
    print(f"URL: http://{host}:{port}")
    print(f"Events: ws://{host}:{port}{config.client.ws_path}")

    app = create_app(config)
    server = uvicorn.Server(
        uvicorn.Config(
            app,
            host=host,
            port=port,
            log_level="info" if args.verbose else "warning",
        )
    )
    await server.serve()
    return 0


async def cmd_watch(args: argparse.Namespace) -> int:
    """Follow the server and log every change until interrupted."""
    from .client import SyncSession

    config = load_config(args.config)
    if args.server:
        config.client.server_url = args.server
    logger = logging.getLogger("bookingsync.watch")

    def on_state(info) -> None:
        logger.info(
            f"State: {info.state.value} (attempts: {info.reconnect_attempts}, "
            f"connection: {info.connection_id or '-'})"
        )

    def on_new_record(record) -> None:
        logger.info(f"New record {record.id}: {json.dumps(record.payload, default=str)}")

    def on_sync_error(error: SyncError) -> None:
        logger.warning(f"Sync error ({'retrying' if error.retryable else 'fatal'}): {error}")

    def on_changed(result) -> None:
        logger.info(
            f"Local state: {len(session.records)} records "
            f"(+{len(result.inserted)} ~{len(result.replaced)} -{len(result.removed)})"
        )

    session = SyncSession(
        config.client,
        on_new_record=on_new_record,
        on_sync_error=on_sync_error,
        on_state_change=on_state,
        on_records_changed=on_changed,
    )

    print(f"Watching {config.client.server_url} (Ctrl+C to stop)")
    await session.start()
    try:
        await asyncio.Event().wait()
    finally:
        await session.stop()
    return 0


async def cmd_status(args: argparse.Namespace) -> int:
    """Check server health and print statistics."""
    from .client import RecordsClient

    config = load_config(args.config)
    server_url = args.server or config.client.server_url
    api = RecordsClient(server_url, timeout=5.0)

    status_data = {
        "timestamp": format_timestamp(datetime.now().astimezone()),
        "server_url": server_url,
        "reachable": False,
    }

    try:
        status_data["health"] = await api.health()
        status_data["stats"] = await api.stats()
        status_data["reachable"] = True
    except SyncError as e:
        status_data["error"] = str(e)
    except ValueError as e:
        status_data["error"] = f"Malformed response: {e}"

    if args.json:
        print(json.dumps(status_data, indent=2))
    else:
        print("bookingsync Status Check")
        print("========================")
        print(f"Server: {server_url}")
        if status_data["reachable"]:
            stats = status_data["stats"]
            print(f"  Status: {status_data['health'].get('status', 'unknown')}")
            print(f"  Records: {stats.get('totalRecords')}")
            print(f"  Connections: {stats.get('connections')}")
            print(f"  Server time: {stats.get('serverTime')}")
        else:
            print("  Status: Not reachable")
            print(f"  Error: {status_data['error']}")

    return 0 if status_data["reachable"] else 1


def main() -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        prog="bookingsync",
        description="Real-time record synchronization server and client",
    )
    parser.add_argument(
        "-c", "--config",
        type=Path,
        default=None,
        help="Path to config file (default: built-in defaults)",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        choices=list(LOG_LEVELS),
        default=None,
        help="Set log level explicitly (overrides -v/--verbose)",
    )
    parser.add_argument(
        "--log-json",
        action="store_true",
        help="Output logs as JSON for machine parsing",
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    serve_parser = subparsers.add_parser("serve", help="Run the record server")
    serve_parser.add_argument("-p", "--port", type=int, default=None, help="Port to listen on")
    serve_parser.add_argument("--host", type=str, default=None, help="Host to bind to")
    serve_parser.set_defaults(func=cmd_serve)

    watch_parser = subparsers.add_parser("watch", help="Follow a server and log changes")
    watch_parser.add_argument("--server", type=str, default=None, help="Server base URL")
    watch_parser.set_defaults(func=cmd_watch)

    status_parser = subparsers.add_parser("status", help="Check server status")
    status_parser.add_argument("--server", type=str, default=None, help="Server base URL")
    status_parser.add_argument(
        "--json",
        action="store_true",
        help="Output status as JSON",
    )
    status_parser.set_defaults(func=cmd_status)

    args = parser.parse_args()

    setup_logging(args.verbose, args.log_level, args.log_json)

    if not args.command:
        parser.print_help()
        return 1

    try:
        return asyncio.run(args.func(args))
    except KeyboardInterrupt:
        print("\nShutting down...")
        return 0


if __name__ == "__main__":
    sys.exit(main())
