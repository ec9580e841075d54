"""CLI entry point for logsync."""

import argparse
import asyncio
import inspect
import json
import logging
import sys
import traceback
from datetime import datetime
from pathlib import Path

import httpx

from .config import Config, load_config
from .errors import LogSyncError
from .replication import FileRepository, RepositoryReplicationTask
from .store import SQLiteLogStore
from .sync import LogEndpointClient, LogSyncTask, Mode


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging.

    Records logged with ``extra={"channel": ...}`` (sync passes) carry the
    log channel as its own field.
    """

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_data = {
            "timestamp": datetime.fromtimestamp(record.created).isoformat(),
            "level": record.levelname,
            "component": record.name.removeprefix("logsync."),
            "message": record.getMessage(),
        }

        channel = getattr(record, "channel", None)
        if channel is not None:
            log_data["channel"] = channel

        # Add exception info if present
        if record.exc_info:
            log_data["exception"] = "".join(traceback.format_exception(*record.exc_info))

        try:
            return json.dumps(log_data)
        except (TypeError, ValueError):
            # Fallback for non-serializable objects
            log_data["message"] = str(log_data["message"])
            if "channel" in log_data:
                log_data["channel"] = str(log_data["channel"])
            return json.dumps(log_data)


def setup_logging(verbose: bool = False, log_level: str | None = None, json_output: bool = False) -> None:
    """Configure logging.

    Args:
        verbose: Enable debug logging (ignored if log_level is set).
        log_level: Explicit log level (warning, info, debug).
        json_output: Output logs as JSON lines for machine parsing.
    """
    if log_level:
        level_map = {
            "warning": logging.WARNING,
            "info": logging.INFO,
            "debug": logging.DEBUG,
        }
        level = level_map.get(log_level, logging.INFO)
    else:
        level = logging.DEBUG if verbose else logging.INFO

    handler = logging.StreamHandler()
    if json_output:
        handler.setFormatter(JSONFormatter())
    else:
        formatter = logging.Formatter(
            fmt="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
        handler.setFormatter(formatter)

    logging.basicConfig(
        level=level,
        handlers=[handler],
        force=True,
    )


def _open_stores(config: Config, names: list[str] | None = None) -> dict[str, SQLiteLogStore]:
    """Open the stores of the given channels (all channels by default)."""
    stores = {}
    for channel in config.channels:
        if names is not None and channel.name not in names:
            continue
        store = SQLiteLogStore(channel.db_path, max_events=channel.max_events)
        store.connect()
        stores[channel.name] = store
    return stores


def _close_stores(stores: dict[str, SQLiteLogStore]) -> None:
    for store in stores.values():
        store.close()


def _open_repositories(config: Config) -> list[FileRepository]:
    return [
        FileRepository(repo.path, repo.customer, repo.name, limit=repo.limit)
        for repo in config.replication.repositories
    ]


def build_sync_tasks(config: Config, stores: dict[str, SQLiteLogStore]) -> list[LogSyncTask]:
    """Create one LogSyncTask per configured task whose channel is open."""
    tasks = []
    for task_config in config.sync.tasks:
        store = stores.get(task_config.channel)
        if store is None:
            raise KeyError(f"Sync task refers to unknown channel: {task_config.channel}")
        client = LogEndpointClient(
            config.sync.server_url,
            task_config.channel,
            timeout=config.sync.timeout_seconds,
        )
        tasks.append(
            LogSyncTask(
                store,
                client,
                name=task_config.channel,
                mode=Mode.parse(task_config.mode),
                lowest_id_mode=Mode.parse(task_config.lowest_id_mode),
                owner_id=task_config.owner_id,
            )
        )
    return tasks


async def cmd_serve(args: argparse.Namespace) -> int:
    """Serve the log and replication endpoints."""
    config = load_config(args.config)

    try:
        import uvicorn

        from .server import create_app
    except ImportError as e:
        print(f"Server dependencies not installed: {e}", file=sys.stderr)
        print("Install with: pip install logsync[server]", file=sys.stderr)
        return 1

    host = args.host or config.server.host
    port = args.port or config.server.port

    stores = _open_stores(config)
    repositories = _open_repositories(config)

    print(f"Starting logsync server: {config.node.name}")
    print(f"Channels: {', '.join(stores) or '(none)'}")
    print(f"URL: http://{host}:{port}")

    app = create_app(config, stores=stores, repositories=repositories)

    try:
        verbose = getattr(args, "verbose", False)
        config_uvicorn = uvicorn.Config(
            app,
            host=host,
            port=port,
            log_level="info" if verbose else "warning",
        )
        server = uvicorn.Server(config_uvicorn)
        await server.serve()
    finally:
        _close_stores(stores)

    return 0


async def cmd_sync(args: argparse.Namespace) -> int:
    """Synchronize log channels with the configured server."""
    config = load_config(args.config)

    if not config.sync.server_url:
        print("No sync server_url configured", file=sys.stderr)
        return 1

    channels = None
    if args.channel:
        channels = [args.channel]
        config.sync.tasks = [t for t in config.sync.tasks if t.channel == args.channel]

    stores = _open_stores(config, channels)
    try:
        try:
            tasks = build_sync_tasks(config, stores)
        except (KeyError, ValueError) as e:
            print(f"Error: {e}", file=sys.stderr)
            return 1
        if not tasks:
            print("No sync tasks configured", file=sys.stderr)
            return 1

        if args.once:
            failed = False
            for task in tasks:
                result = await task.execute()
                print(f"{task.name}: {json.dumps(result.to_dict())}")
                failed = failed or not result.ok
            return 1 if failed else 0

        await asyncio.gather(
            *(task.run_loop(config.sync.interval_seconds) for task in tasks)
        )
    except KeyboardInterrupt:
        print("\nShutting down...")
    finally:
        _close_stores(stores)

    return 0


async def cmd_replicate(args: argparse.Namespace) -> int:
    """Pull repository versions from the configured server."""
    config = load_config(args.config)

    if not config.replication.server_url:
        print("No replication server_url configured", file=sys.stderr)
        return 1

    task = RepositoryReplicationTask(
        config.replication.server_url,
        _open_repositories(config),
        timeout=config.replication.timeout_seconds,
    )

    if args.once:
        results = await task.run()
        for result in results:
            status = "ok" if result.ok else f"failed ({result.error})"
            print(f"{result.customer}/{result.name}: fetched {result.fetched} {status}")
        return 0 if all(r.ok for r in results) else 1

    try:
        await task.run_loop(config.replication.interval_seconds)
    except KeyboardInterrupt:
        print("\nShutting down...")
    return 0


def cmd_append(args: argparse.Namespace) -> int:
    """Append an event to a local log."""
    config = load_config(args.config)

    properties = {}
    for item in args.properties:
        key, sep, value = item.partition("=")
        if not sep:
            print(f"Property must be key=value: {item}", file=sys.stderr)
            return 1
        properties[key] = value

    try:
        config.get_channel(args.channel)
    except KeyError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    stores = _open_stores(config, [args.channel])
    try:
        event = stores[args.channel].append(
            args.owner, args.type, properties, log_id=args.log_id
        )
    except LogSyncError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        _close_stores(stores)

    print(event.to_representation())
    return 0


def cmd_query(args: argparse.Namespace) -> int:
    """Print the descriptors of a local log channel."""
    config = load_config(args.config)

    try:
        config.get_channel(args.channel)
    except KeyError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    stores = _open_stores(config, [args.channel])
    try:
        for descriptor in stores[args.channel].get_descriptors(args.owner):
            print(descriptor.to_representation())
    finally:
        _close_stores(stores)
    return 0


async def cmd_status(args: argparse.Namespace) -> int:
    """Show local store statistics and server reachability."""
    config = load_config(args.config)

    status_data = {
        "timestamp": datetime.now().isoformat(),
        "node": {"name": config.node.name},
    }

    stores = _open_stores(config)
    try:
        status_data["channels"] = {
            name: store.get_stats() for name, store in stores.items()
        }
    finally:
        _close_stores(stores)

    server_status = {"url": config.sync.server_url, "reachable": False}
    if config.sync.server_url:
        try:
            async with httpx.AsyncClient(timeout=config.sync.timeout_seconds) as client:
                response = await client.get(
                    f"{config.sync.server_url.rstrip('/')}/api/health"
                )
                server_status["reachable"] = response.status_code == 200
        except httpx.HTTPError as e:
            server_status["error"] = str(e)
    status_data["server"] = server_status

    status_data["sync_tasks"] = [
        {
            "channel": t.channel,
            "mode": t.mode,
            "lowest_id_mode": t.lowest_id_mode,
            "owner_id": t.owner_id,
        }
        for t in config.sync.tasks
    ]

    if getattr(args, "status_json", False):
        print(json.dumps(status_data, indent=2))
        return 0

    print(f"Node: {config.node.name}")
    for name, stats in status_data["channels"].items():
        print(f"  {name}: {stats['total_events']} events in {stats['logs']} logs")
    reachable = "reachable" if server_status["reachable"] else "not reachable"
    print(f"Server: {server_status['url'] or '(not configured)'} {reachable}")
    return 0


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        prog="logsync",
        description="Delta-based log synchronization between targets and servers",
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
        choices=["warning", "info", "debug"],
        default=None,
        help="Set log level explicitly (overrides -v/--verbose)",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Output logs as JSON for machine parsing",
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # Serve command
    serve_parser = subparsers.add_parser("serve", help="Serve log and replication endpoints")
    serve_parser.add_argument(
        "-p", "--port",
        type=int,
        default=None,
        help="Port to listen on (default: from config, 8080)",
    )
    serve_parser.add_argument(
        "--host",
        type=str,
        default=None,
        help="Host to bind to (default: from config, 0.0.0.0)",
    )
    serve_parser.set_defaults(func=cmd_serve)

    # Sync command
    sync_parser = subparsers.add_parser("sync", help="Synchronize logs with the server")
    sync_parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single pass instead of looping",
    )
    sync_parser.add_argument(
        "--channel",
        type=str,
        default=None,
        help="Only sync this channel",
    )
    sync_parser.set_defaults(func=cmd_sync)

    # Replicate command
    replicate_parser = subparsers.add_parser("replicate", help="Replicate repositories from the server")
    replicate_parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single pass instead of looping",
    )
    replicate_parser.set_defaults(func=cmd_replicate)

    # Append command
    append_parser = subparsers.add_parser("append", help="Append an event to a local log")
    append_parser.add_argument("channel", help="Log channel (e.g. auditlog)")
    append_parser.add_argument("owner", help="Owner (target) id")
    append_parser.add_argument("type", type=int, help="Event type")
    append_parser.add_argument(
        "properties",
        nargs="*",
        help="Event properties as key=value",
    )
    append_parser.add_argument(
        "--log-id",
        type=int,
        default=None,
        help="Log to append to (default: newest log of the owner)",
    )
    append_parser.set_defaults(func=cmd_append)

    # Query command
    query_parser = subparsers.add_parser("query", help="Show local log descriptors")
    query_parser.add_argument("channel", help="Log channel (e.g. auditlog)")
    query_parser.add_argument(
        "--owner",
        type=str,
        default=None,
        help="Only show logs of this owner",
    )
    query_parser.set_defaults(func=cmd_query)

    # Status command
    status_parser = subparsers.add_parser("status", help="Show store and server status")
    status_parser.add_argument(
        "--json",
        dest="status_json",
        action="store_true",
        help="Output status as JSON",
    )
    status_parser.set_defaults(func=cmd_status)

    args = parser.parse_args(argv)

    setup_logging(args.verbose, args.log_level, args.json)

    if not args.command:
        parser.print_help()
        return 1

    func = args.func
    if inspect.iscoroutinefunction(func):
        return asyncio.run(func(args))
    return func(args)


if __name__ == "__main__":
    sys.exit(main())
