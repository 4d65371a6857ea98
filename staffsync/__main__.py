"""CLI entry point for staffsync."""

import argparse
import asyncio
import json
import logging
import sys
import traceback
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator

from .config import Config, load_config
from .errors import SyncError
from .models import Record
from .remote import HttpRemoteService
from .store import LocalStore
from .sync import RefreshStatus, SyncRepository


LOG_LEVELS = {
    "error": logging.ERROR,
    "warning": logging.WARNING,
    "info": logging.INFO,
    "debug": logging.DEBUG,
}


class JSONFormatter(logging.Formatter):
    """One JSON object per line, carrying the record id when one is attached."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.fromtimestamp(record.created).isoformat(),
            "level": record.levelname,
            "component": record.name,
            "message": record.getMessage(),
        }

        record_id = getattr(record, "record_id", None)
        if record_id is not None:
            log_data["record_id"] = record_id

        if record.exc_info:
            log_data["error_type"] = record.exc_info[0].__name__
            log_data["exception"] = "".join(traceback.format_exception(*record.exc_info))

        return json.dumps(log_data, default=str)


def setup_logging(verbose: bool = False, log_level: str | None = None, json_output: bool = False) -> None:
    """Configure logging for the CLI.

    An explicit ``log_level`` wins over ``verbose``. Warnings are shown by
    default so failed refreshes and rollbacks are visible.
    """
    if log_level:
        level = LOG_LEVELS[log_level]
    else:
        level = logging.DEBUG if verbose else logging.WARNING

    handler = logging.StreamHandler()
    if json_output:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(
            logging.Formatter(
                fmt="%(asctime)s %(levelname)-7s %(name)s: %(message)s",
                datefmt="%H:%M:%S",
            )
        )

    logging.basicConfig(level=level, handlers=[handler])
    # Requests are already logged by HttpRemoteService
    for name in ("httpx", "httpcore"):
        logging.getLogger(name).setLevel(logging.WARNING)


@asynccontextmanager
async def open_repository(config: Config) -> AsyncIterator[SyncRepository]:
    """Wire a SyncRepository from config and close it afterwards."""
    store = LocalStore(config.store.db_path)
    store.connect()
    remote = HttpRemoteService.from_config(config.remote)
    repository = SyncRepository(
        store, remote, refresh_on_watch=config.sync.refresh_on_watch
    )
    try:
        yield repository
    finally:
        await repository.close()
        store.close()


def _format_record(record: Record) -> str:
    marker = "" if record.is_synced else " (pending)"
    return (
        f"{str(record.id):>6}  {record.name:<24} age={record.age:<4} "
        f"salary={record.salary}{marker}"
    )


def _print_records(records: list[Record], as_json: bool) -> None:
    if as_json:
        print(json.dumps([r.to_dict() for r in records], indent=2))
        return
    if not records:
        print("No records.")
        return
    for record in records:
        print(_format_record(record))


async def cmd_list(args: argparse.Namespace) -> int:
    """List local records, optionally refreshing first."""
    async with open_repository(load_config(args.config)) as repository:
        if args.refresh:
            result = await repository.refresh()
            if result.status != RefreshStatus.SUCCESS:
                print(f"Refresh {result.status.value}: {result.error}", file=sys.stderr)
        _print_records(repository.snapshot(), args.json)
    return 0


async def cmd_show(args: argparse.Namespace) -> int:
    """Show one record from the local mirror, or from the server with --remote."""
    async with open_repository(load_config(args.config)) as repository:
        if args.remote:
            record = await repository.fetch_remote(args.id)
        else:
            record = repository.get(args.id)
        if record is None:
            print(f"Record {args.id} not found.", file=sys.stderr)
            return 1
        if args.json:
            print(json.dumps(record.to_dict(), indent=2))
        else:
            print(_format_record(record))
    return 0


async def cmd_create(args: argparse.Namespace) -> int:
    """Create a record."""
    draft = Record(name=args.name, age=args.age, salary=args.salary)
    async with open_repository(load_config(args.config)) as repository:
        created = await repository.create(draft)
    print(f"Created: {_format_record(created)}")
    return 0


async def cmd_update(args: argparse.Namespace) -> int:
    """Update fields of an existing record."""
    async with open_repository(load_config(args.config)) as repository:
        current = repository.get(args.id)
        if current is None:
            print(f"Record {args.id} not found.", file=sys.stderr)
            return 1
        changed = Record(
            id=current.id,
            name=args.name if args.name is not None else current.name,
            age=args.age if args.age is not None else current.age,
            salary=args.salary if args.salary is not None else current.salary,
        )
        updated = await repository.update(changed)
    print(f"Updated: {_format_record(updated)}")
    return 0


async def cmd_delete(args: argparse.Namespace) -> int:
    """Delete a record."""
    async with open_repository(load_config(args.config)) as repository:
        await repository.delete(args.id)
    print(f"Deleted record {args.id}")
    return 0


async def cmd_refresh(args: argparse.Namespace) -> int:
    """Replace the local mirror with the remote collection."""
    async with open_repository(load_config(args.config)) as repository:
        result = await repository.refresh()
    if result.status == RefreshStatus.SUCCESS:
        print(f"Refreshed {result.records_fetched} records")
        return 0
    print(f"Refresh {result.status.value}: {result.error}", file=sys.stderr)
    return 1


async def cmd_watch(args: argparse.Namespace) -> int:
    """Print snapshots as the local mirror changes."""
    config = load_config(args.config)
    async with open_repository(config) as repository:
        stop_event = asyncio.Event()
        loop_task = asyncio.create_task(
            repository.refresh_loop(
                interval_seconds=config.sync.refresh_interval_seconds,
                stop_event=stop_event,
                max_backoff_seconds=config.sync.max_backoff_seconds,
            )
        )
        feed = repository.watch()
        try:
            async for snapshot in feed:
                print(f"--- {datetime.now().strftime('%H:%M:%S')} ({len(snapshot)} records)")
                _print_records(snapshot, as_json=False)
        finally:
            await feed.aclose()
            stop_event.set()
            await loop_task
    return 0


async def cmd_status(args: argparse.Namespace) -> int:
    """Show sync status of the local mirror."""
    config = load_config(args.config)
    async with open_repository(config) as repository:
        status = repository.get_sync_status()
    status["db_path"] = config.store.db_path
    status["remote_url"] = config.remote.base_url

    if args.json:
        print(json.dumps(status, indent=2))
    else:
        print("staffsync Status")
        print("================")
        print(f"Database: {status['db_path']}")
        print(f"Remote: {status['remote_url']}")
        print(f"Records: {status['total_records']} ({status['pending_records']} pending)")
    return 0


def main() -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        prog="staffsync",
        description="Offline-first employee records synced with a remote service",
    )
    parser.add_argument(
        "-c", "--config",
        help="Path to config file",
        default=None,
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )
    parser.add_argument(
        "--log-level",
        choices=list(LOG_LEVELS),
        help="Set log level explicitly",
    )
    parser.add_argument(
        "--json-logs",
        action="store_true",
        help="Output logs as JSON lines",
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    list_parser = subparsers.add_parser("list", help="List local records")
    list_parser.add_argument("--json", action="store_true", help="Output as JSON")
    list_parser.add_argument("--refresh", action="store_true", help="Refresh from remote first")

    show_parser = subparsers.add_parser("show", help="Show one record")
    show_parser.add_argument("id", type=int)
    show_parser.add_argument("--json", action="store_true", help="Output as JSON")
    show_parser.add_argument(
        "--remote", action="store_true", help="Fetch the server copy instead of the local one"
    )

    create_parser = subparsers.add_parser("create", help="Create a record")
    create_parser.add_argument("--name", required=True)
    create_parser.add_argument("--age", type=int, required=True)
    create_parser.add_argument("--salary", type=int, required=True)

    update_parser = subparsers.add_parser("update", help="Update a record")
    update_parser.add_argument("id", type=int)
    update_parser.add_argument("--name")
    update_parser.add_argument("--age", type=int)
    update_parser.add_argument("--salary", type=int)

    delete_parser = subparsers.add_parser("delete", help="Delete a record")
    delete_parser.add_argument("id", type=int)

    subparsers.add_parser("refresh", help="Replace local records with remote ones")
    subparsers.add_parser("watch", help="Print records as they change")

    status_parser = subparsers.add_parser("status", help="Show sync status")
    status_parser.add_argument("--json", action="store_true", help="Output as JSON")

    args = parser.parse_args()

    setup_logging(
        verbose=args.verbose,
        log_level=args.log_level,
        json_output=args.json_logs,
    )

    commands = {
        "list": cmd_list,
        "show": cmd_show,
        "create": cmd_create,
        "update": cmd_update,
        "delete": cmd_delete,
        "refresh": cmd_refresh,
        "watch": cmd_watch,
        "status": cmd_status,
    }

    if args.command not in commands:
        parser.print_help()
        return 1

    try:
        return asyncio.run(commands[args.command](args))
    except SyncError as e:
        print(f"Error: {e.user_message}", file=sys.stderr)
        logging.getLogger(__name__).debug(f"{type(e).__name__}: {e}")
        return 1
    except KeyboardInterrupt:
        return 0


if __name__ == "__main__":
    sys.exit(main())
