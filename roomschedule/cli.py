"""
CLI (Command Line Interface).

    roomschedule run                      # read the newest sheet in downloads/
    roomschedule run --file hoy.xlsx      # read one exported sheet
    roomschedule run --url https://...    # walk the paginated HTML listing
    roomschedule show --date 2026-03-10   # print the stored snapshot of a day
    roomschedule show --cumulative        # print the cumulative log

`run` prints the run result as JSON on stdout and exits 0 on success (also
when no events were published), 1 when the run failed.
"""

from __future__ import annotations

import argparse
from datetime import date
from typing import Any

from rich import box
from rich.console import Console
from rich.table import Table

from roomschedule.config import Settings
from roomschedule.errors import StoreError
from roomschedule.logging import setup_logging
from roomschedule.pipeline import run_once, today_in
from roomschedule.scrape import ListingFetcher, PageFetcher, WorkbookFetcher, locate_download
from roomschedule.store import open_store

console = Console()


def _parse_date(text: str) -> date:
    try:
        return date.fromisoformat(text.strip())
    except ValueError:
        raise argparse.ArgumentTypeError(f"Invalid date {text!r}, expected YYYY-MM-DD")


def _build_fetcher(args: argparse.Namespace, settings: Settings) -> PageFetcher:
    """
    Pick the source: explicit file, explicit listing URL, or the newest
    download in the download directory.
    """
    if args.file:
        return WorkbookFetcher(args.file)
    if args.url:
        return ListingFetcher(
            args.url,
            page_param=settings.page_param,
            delay_seconds=settings.page_delay_seconds,
            timeout=settings.request_timeout,
            max_attempts=settings.fetch_attempts,
        )
    download_dir = args.download_dir or settings.download_dir
    return WorkbookFetcher(locate_download(download_dir))


def _cmd_run(args: argparse.Namespace, settings: Settings) -> int:
    fetcher = _build_fetcher(args, settings)
    try:
        result = run_once(settings, fetcher, run_date=args.date)
    except ValueError as e:
        # unsupported store URI
        console.print(f"[red]{e}[/red]")
        return 2

    console.print_json(data=result.to_dict())
    return 0 if result.success else 1


def _cmd_show(args: argparse.Namespace, settings: Settings) -> int:
    if not settings.store_uri:
        console.print("No store configured (set STORE_URI / MONGODB_URI or pass --store-uri).")
        return 1

    day = args.date or today_in(settings.timezone)
    try:
        with open_store(settings.store_uri, settings) as store:
            if args.cumulative:
                rows = store.cumulative()
                title = "Cumulative log"
                columns = ["snapshot_date", "weekday", "kind", "title", "start_time", "end_time", "room", "campus"]
            else:
                rows = store.snapshot(day)
                title = f"Snapshot {day.isoformat()}"
                columns = ["kind", "kind_label", "title", "start_time", "end_time", "room", "building", "campus"]
    except StoreError as e:
        console.print(f"[red]{e}[/red]")
        return 1

    if not rows:
        console.print(f"{title}: no rows.")
        return 0

    table = Table(title=f"{title} ({len(rows)} rows)", box=box.SIMPLE_HEAVY)
    for col in columns:
        table.add_column(col)
    for row in rows:
        table.add_row(*[_cell(row.get(col)) for col in columns])
    console.print(table)
    return 0


def _cell(value: Any) -> str:
    return "" if value is None else str(value)


def build_parser() -> argparse.ArgumentParser:
    """
    Build the argparse CLI parser with sub-commands.
    """
    parser = argparse.ArgumentParser(prog="roomschedule", description="Room/event schedule harvester")
    parser.add_argument("--store-uri", type=str, default=None, help="Override STORE_URI / MONGODB_URI")
    sub = parser.add_subparsers(dest="command", required=True)

    p_run = sub.add_parser("run", help="Fetch, normalize and persist today's schedule")
    source = p_run.add_mutually_exclusive_group()
    source.add_argument("--file", type=str, help="Exported spreadsheet (.xlsx or .csv)")
    source.add_argument("--url", type=str, help="Paginated HTML listing URL")
    source.add_argument("--download-dir", type=str, help="Directory holding the downloaded sheet")
    p_run.add_argument("--date", type=_parse_date, default=None, help="Run date override (YYYY-MM-DD)")
    p_run.add_argument("--delay", type=float, default=None, help="Seconds between page requests")

    p_show = sub.add_parser("show", help="Show stored rows")
    p_show.add_argument("--date", type=_parse_date, default=None, help="Snapshot date (YYYY-MM-DD)")
    p_show.add_argument("--cumulative", action="store_true", help="Show the cumulative log instead")

    return parser


def main(argv: list[str] | None = None) -> None:
    """
    CLI entry point. Parses args, dispatches to command handlers,
    and exits via SystemExit with a return code.
    """
    parser = build_parser()
    args = parser.parse_args(argv)

    settings = Settings()
    overrides: dict[str, Any] = {}
    if args.store_uri:
        overrides["store_uri"] = args.store_uri
    if getattr(args, "delay", None) is not None:
        overrides["page_delay_seconds"] = args.delay
    if overrides:
        settings = settings.model_copy(update=overrides)

    setup_logging(json_output=settings.log_json, log_level=settings.log_level)

    if args.command == "run":
        raise SystemExit(_cmd_run(args, settings))
    if args.command == "show":
        raise SystemExit(_cmd_show(args, settings))

    raise SystemExit(2)
