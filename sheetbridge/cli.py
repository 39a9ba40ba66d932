"""Command line entry point for sheetbridge."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path

from sheetbridge import logging_config
from sheetbridge.callback import CallbackHandler
from sheetbridge.errors import SheetBridgeError
from sheetbridge.settings import AppSettings, load_settings
from sheetbridge.sheets_client import Spreadsheet
from sheetbridge.sync import load_last_run, run_full_sync
from sheetbridge.wp_import import JobActionResult, JobCoordinator


def _load(args: argparse.Namespace) -> AppSettings:
    return load_settings(Path(args.settings) if args.settings else None)


def _print_action(result: JobActionResult) -> int:
    print(f"Status : {result.status}")
    print(f"Message: {result.message}")
    if result.log:
        print("\n".join(result.log))
    return 0 if result.success else 1


def command_sync(args: argparse.Namespace) -> int:
    summary = run_full_sync(_load(args))
    for line in summary.logs:
        print(line)
    for entity, counters in summary.type_counters.items():
        print(f"{entity}: " + ", ".join(f"{key}={value}" for key, value in counters.items()))
    print(f"Status: {summary.status}")
    return 0 if summary.total_errors == 0 else 1


def command_last_run(args: argparse.Namespace) -> int:
    summary = load_last_run(Path(_load(args).last_run_path))
    print(json.dumps(summary.to_json(), indent=2))
    return 0


def command_trigger(args: argparse.Namespace) -> int:
    coordinator = JobCoordinator.from_settings(_load(args))
    return _print_action(coordinator.trigger(args.import_id))


def command_status(args: argparse.Namespace) -> int:
    coordinator = JobCoordinator.from_settings(_load(args))
    print(json.dumps(coordinator.read(args.import_id).to_json(), indent=2))
    return 0


def command_cancel(args: argparse.Namespace) -> int:
    coordinator = JobCoordinator.from_settings(_load(args))
    return _print_action(coordinator.cancel(args.import_id))


def command_clear(args: argparse.Namespace) -> int:
    coordinator = JobCoordinator.from_settings(_load(args))
    return _print_action(coordinator.clear(args.import_id))


def command_clear_site_cache(args: argparse.Namespace) -> int:
    coordinator = JobCoordinator.from_settings(_load(args))
    return _print_action(coordinator.clear_site_cache())


def command_serve(args: argparse.Namespace) -> int:
    import uvicorn

    from sheetbridge.server import create_app

    settings = _load(args)
    settings.require("webhook_secret")
    spreadsheet = None
    if settings.spreadsheet_id:
        spreadsheet = Spreadsheet.open(settings.spreadsheet_id, Path(settings.credential_path))
    else:
        logging.getLogger(__name__).warning("No spreadsheet configured; callback sheet logging disabled")
    handler = CallbackHandler(settings, JobCoordinator.from_settings(settings), spreadsheet)
    uvicorn.run(create_app(handler), host=args.host, port=args.port, log_config=None)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Airtable to Google Sheets sync and WP All Import coordinator")
    parser.add_argument("--settings", help="Path to a settings JSON file")
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    sync_parser = subparsers.add_parser("sync", help="Sync every configured Airtable table")
    sync_parser.set_defaults(func=command_sync)

    last_run_parser = subparsers.add_parser("last-run", help="Show the summary of the previous sync")
    last_run_parser.set_defaults(func=command_last_run)

    for name, func, help_text in (
        ("trigger", command_trigger, "Trigger a WP All Import run"),
        ("status", command_status, "Show the cached status of an import"),
        ("cancel", command_cancel, "Ask WordPress to cancel an import"),
        ("clear", command_clear, "Drop the cached status of an import"),
    ):
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument("import_id", help="WP All Import id")
        sub.set_defaults(func=func)

    cache_parser = subparsers.add_parser("clear-site-cache", help="Purge the WordPress page cache")
    cache_parser.set_defaults(func=command_clear_site_cache)

    serve_parser = subparsers.add_parser("serve", help="Serve the completion callback endpoint")
    serve_parser.add_argument("--host", default="127.0.0.1")
    serve_parser.add_argument("--port", type=int, default=8080)
    serve_parser.set_defaults(func=command_serve)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logging_config.configure_logging(logging.DEBUG if args.verbose else logging.INFO)
    try:
        return args.func(args)
    except SheetBridgeError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
