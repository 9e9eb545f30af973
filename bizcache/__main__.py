"""CLI entry point for bizcache."""

import argparse
import asyncio
import inspect
import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path

from .config import Config, load_config
from .errors import BizCacheError, CacheLoadError
from .feed import MQTTChangeFeed, ReplayFeed
from .service import CacheService


# Third-party loggers that are chatty at INFO (httpx logs every request)
_NOISY_LOGGERS = ("httpx", "httpcore")

_LEVELS = {
    "warning": logging.WARNING,
    "info": logging.INFO,
    "debug": logging.DEBUG,
}


class JSONFormatter(logging.Formatter):
    """One JSON object per log line, for log shippers."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "component": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        # default=str keeps a log call with odd args from raising
        return json.dumps(entry, default=str)


def setup_logging(verbose: bool = False, log_level: str | None = None, json_output: bool = False) -> None:
    """Configure root logging for the CLI.

    Args:
        verbose: Enable debug logging (ignored if log_level is set).
        log_level: Explicit log level (warning, info, debug).
        json_output: Output logs as JSON lines for machine parsing.
    """
    if log_level:
        level = _LEVELS.get(log_level, logging.INFO)
    else:
        level = logging.DEBUG if verbose else logging.INFO

    handler = logging.StreamHandler()
    handler.setFormatter(
        JSONFormatter()
        if json_output
        else logging.Formatter(
            fmt="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    )
    logging.basicConfig(level=level, handlers=[handler])

    if level > logging.DEBUG:
        for name in _NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)


def _print_sync_result(result, as_json: bool) -> None:
    summary = result.summary()
    if as_json:
        print(json.dumps(summary, indent=2))
        return

    source = "cache" if result.from_cache else "server"
    print(f"Action: {summary['action']}")
    print(f"Source: {source}")
    print(f"Version: {summary['version_token'] or 'unknown'}")
    print(f"Categories: {len(result.categories)}")
    print(f"Businesses: {len(result.businesses)}")
    if result.stale:
        print(f"Warning: data may be stale ({result.error})")


async def _initial_sync(service: CacheService, args: argparse.Namespace):
    return await service.smart_sync(prefer_cache=getattr(args, "prefer_cache", None) or None)


async def cmd_sync(args: argparse.Namespace) -> int:
    """Run one smart sync."""
    config = load_config(args.config)
    service = CacheService.from_config(config)

    try:
        result = await _initial_sync(service, args)
        if result.refresh_task is not None:
            result = await result.refresh_task
        _print_sync_result(result, args.json_output)
    except CacheLoadError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except ValueError as e:
        print(f"Error: {e} (set remote.base_url or BIZCACHE_REMOTE_URL)", file=sys.stderr)
        return 1
    finally:
        service.close()

    return 0


async def cmd_status(args: argparse.Namespace) -> int:
    """Show local cache and connectivity status."""
    config = load_config(args.config)
    service = CacheService.from_config(config)

    try:
        status_data = {
            "timestamp": datetime.now().isoformat(),
            "client": {"name": config.client.name},
            "cache": {"db_path": config.cache.db_path, **service.store.get_stats()},
        }

        remote_status = {"base_url": config.remote.base_url or None, "reachable": False}
        if service.remote:
            remote_status["reachable"] = await service.remote.check_connection()
        status_data["remote"] = remote_status

        feed_status = {
            "enabled": config.feed.enabled,
            "broker": config.feed.broker,
            "port": config.feed.port,
            "topic": config.feed.topic,
            "reachable": False,
        }
        if config.feed.enabled:
            feed_status["reachable"] = await MQTTChangeFeed(config.feed).check_connection()
        status_data["feed"] = feed_status
    finally:
        service.close()

    if args.json_output:
        print(json.dumps(status_data, indent=2))
        return 0

    cache = status_data["cache"]
    print("bizcache Status")
    print("===============")
    print(f"Client: {config.client.name}")
    print()
    print(f"Cache ({config.cache.db_path}):")
    print(f"  Categories: {cache['categories']}")
    print(f"  Businesses: {cache['businesses']}")
    print(f"  Version: {cache['version_token'] or 'none (next start does a full sync)'}")
    print(f"  Last sync: {cache['last_sync'] or 'never'}")
    print()
    print(f"Remote ({remote_status['base_url'] or 'not configured'}):")
    print(f"  Status: {'Reachable' if remote_status['reachable'] else 'Not reachable'}")
    print()
    print(f"Change feed ({feed_status['broker']}:{feed_status['port']}):")
    if not feed_status["enabled"]:
        print("  Status: Disabled")
    else:
        print(f"  Status: {'Reachable' if feed_status['reachable'] else 'Not reachable'}")
        print(f"  Topic: {feed_status['topic']}")

    return 0


async def cmd_watch(args: argparse.Namespace) -> int:
    """Sync, then apply the live change feed until interrupted."""
    config = load_config(args.config)
    if not config.feed.enabled:
        print("Change feed is disabled in config", file=sys.stderr)
        return 1

    service = CacheService.from_config(config)
    subscription = None

    try:
        result = await _initial_sync(service, args)
        _print_sync_result(result, args.json_output)

        subscription = await service.start_change_feed(MQTTChangeFeed(config.feed))
        print(f"Watching {config.feed.topic} (Ctrl+C to stop)")
        await subscription.wait()
    except (CacheLoadError, ConnectionError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except asyncio.CancelledError:
        print("\nShutting down...")
    finally:
        service.close()

    return 0


async def cmd_replay(args: argparse.Namespace) -> int:
    """Apply a recorded sequence of change events to the local cache."""
    config = load_config(args.config)

    try:
        feed = ReplayFeed.from_file(args.file)
    except (OSError, ValueError, BizCacheError) as e:
        print(f"Error: cannot load {args.file}: {e}", file=sys.stderr)
        return 1

    service = CacheService.from_config(config)
    try:
        service.view.load(service.orchestrator.read_cache())
        subscription = await service.start_change_feed(feed)
        await subscription.wait()
        subscription.unsubscribe()
        counts = service.view.counts()
    finally:
        service.close()

    print(f"Applied {feed.delivered} events")
    print(f"Categories: {counts['categories']}, Businesses: {counts['businesses']}")
    return 0


def cmd_clear(args: argparse.Namespace) -> int:
    """Drop the local cache."""
    config: Config = load_config(args.config)
    service = CacheService.from_config(config)
    try:
        ok = service.store.clear()
    finally:
        service.close()

    print("Cache cleared" if ok else "Failed to clear cache")
    return 0 if ok else 1


def main() -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        prog="bizcache",
        description="Cache-first smart sync for a business directory",
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
        "--json-logs",
        action="store_true",
        help="Output logs as JSON for machine parsing",
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # Sync command
    sync_parser = subparsers.add_parser("sync", help="Run one smart sync")
    sync_parser.add_argument(
        "--prefer-cache",
        action="store_true",
        help="Serve a stale cache first and refresh in the background",
    )
    sync_parser.add_argument(
        "--json", dest="json_output", action="store_true", help="Output as JSON"
    )
    sync_parser.set_defaults(func=cmd_sync)

    # Status command
    status_parser = subparsers.add_parser("status", help="Show cache and connectivity status")
    status_parser.add_argument(
        "--json", dest="json_output", action="store_true", help="Output as JSON"
    )
    status_parser.set_defaults(func=cmd_status)

    # Watch command
    watch_parser = subparsers.add_parser("watch", help="Sync, then follow the change feed")
    watch_parser.add_argument(
        "--prefer-cache",
        action="store_true",
        help="Serve a stale cache first and refresh in the background",
    )
    watch_parser.add_argument(
        "--json", dest="json_output", action="store_true", help="Output sync result as JSON"
    )
    watch_parser.set_defaults(func=cmd_watch)

    # Replay command
    replay_parser = subparsers.add_parser("replay", help="Apply change events from a JSON file")
    replay_parser.add_argument("file", type=Path, help="JSON array of change events")
    replay_parser.set_defaults(func=cmd_replay)

    # Clear command
    clear_parser = subparsers.add_parser("clear", help="Drop the local cache")
    clear_parser.set_defaults(func=cmd_clear)

    args = parser.parse_args()

    setup_logging(args.verbose, args.log_level, args.json_logs)

    if not args.command:
        parser.print_help()
        return 1

    func = args.func
    if inspect.iscoroutinefunction(func):
        try:
            return asyncio.run(func(args))
        except KeyboardInterrupt:
            print("\nShutting down...")
            return 0
    return func(args)


if __name__ == "__main__":
    sys.exit(main())
