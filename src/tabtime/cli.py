"""CLI entry point for tabtime."""

from __future__ import annotations

import json
import logging
import sys
import threading
from datetime import datetime, timezone
from pathlib import Path

import click
from pydantic import ValidationError

from tabtime.constants import DEFAULT_DB_PATH
from tabtime.db import SQLiteStore
from tabtime.models import Event
from tabtime.pruner import DataPruner
from tabtime.service import AggregationService
from tabtime.timer import ManualTimer, ThreadTimer


def format_duration(ms: int) -> str:
    """Format milliseconds as 'Xh Ym', 'Ym', or '<1m'.

    Args:
        ms: Duration in milliseconds.

    Returns:
        Formatted duration string.
    """
    if ms < 60_000:  # Less than 1 minute
        return "<1m" if ms > 0 else "0m"
    total_minutes = ms // 60_000
    hours = total_minutes // 60
    minutes = total_minutes % 60
    if hours > 0:
        return f"{hours}h {minutes:2d}m"
    return f"{minutes}m"


def make_progress_bar(value: int, max_value: int, width: int = 16) -> str:
    """Create ASCII progress bar like '████████░░░░░░░░'."""
    if max_value == 0 or value == 0:
        return "░" * width
    filled = max(1, min(width, round((value / max_value) * width)))
    return "█" * filled + "░" * (width - filled)


def parse_setting_value(raw: str) -> object:
    """Interpret a setting given on the command line.

    JSON literals (numbers, booleans, null, objects) are decoded, anything
    else is kept as a string.
    """
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return raw


def _require_db(db: Path) -> None:
    if not db.exists():
        click.echo("No database found", err=True)
        sys.exit(1)


db_option = click.option(
    "--db",
    type=click.Path(path_type=Path),
    default=DEFAULT_DB_PATH,
    help="Path to SQLite database",
)


@click.group()
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging")
def main(verbose: bool) -> None:
    """Tab time tracker CLI."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@main.command("import")
@db_option
def import_events(db: Path) -> None:
    """Import tab events from stdin (JSONL format).

    Each line is one event with timestamp (ms), eventType, tabId, url,
    visitId and optional activityId/resolution. IDs are assigned on insert.

    Example usage:
        cat events.jsonl | tabtime import
    """
    db.parent.mkdir(parents=True, exist_ok=True)

    imported_count = 0
    has_input = False

    with SQLiteStore.open(db) as store:
        for line_number, line in enumerate(sys.stdin, 1):
            stripped = line.strip()
            if not stripped:
                continue

            has_input = True

            try:
                data = json.loads(stripped)
                event = Event.model_validate(data)
                store.insert_event(event)
                imported_count += 1
            except json.JSONDecodeError as e:
                click.echo(f"Warning: line {line_number}: invalid JSON: {e}", err=True)
            except ValidationError as e:
                click.echo(f"Warning: line {line_number}: validation error: {e}", err=True)

    click.echo(f"Imported {imported_count} events")

    # Exit code 1 if we had input but no valid events (all lines were errors)
    if has_input and imported_count == 0:
        sys.exit(1)


@main.command("aggregate")
@db_option
def aggregate_command(db: Path) -> None:
    """Run one aggregation pass now, then prune old events.

    Skips the run if another aggregation holds the lock.
    """
    _require_db(db)

    with SQLiteStore.open(db) as store:
        scheduler = AggregationService.create(store, ManualTimer()).scheduler
        ran = scheduler.run_now()
        result = scheduler.last_result

    if not ran:
        click.echo("Aggregation already running, skipped")
        return
    if result is None or not result.success:
        error = result.error if result is not None else "unknown error"
        click.echo(f"Aggregation failed: {error}", err=True)
        sys.exit(1)
    click.echo(f"Processed {result.processed_count} events")


@main.command("prune")
@db_option
def prune_command(db: Path) -> None:
    """Delete processed events older than the retention period."""
    _require_db(db)

    with SQLiteStore.open(db) as store:
        deleted = DataPruner(store, store).run()

    click.echo(f"Pruned {deleted} events")


@main.command("report")
@db_option
@click.option(
    "--day",
    "day_date",
    type=str,
    default=None,
    help="UTC day to report (YYYY-MM-DD, default: today)",
)
@click.option("--all", "all_days", is_flag=True, help="Report across all days")
@click.option(
    "--json",
    "output_json",
    is_flag=True,
    help="Output as JSON",
)
def report_command(db: Path, day_date: str | None, all_days: bool, output_json: bool) -> None:
    """Show open and active time per domain."""
    _require_db(db)

    if all_days:
        date = None
    elif day_date is None:
        date = datetime.now(timezone.utc).strftime("%Y-%m-%d")
    else:
        try:
            datetime.strptime(day_date, "%Y-%m-%d")
        except ValueError:
            click.echo(f"Invalid date format: {day_date}. Use YYYY-MM-DD.", err=True)
            sys.exit(1)
        date = day_date

    with SQLiteStore.open(db) as store:
        domains = store.get_domain_totals(date=date)

    if output_json:
        output = {
            "date": date,
            "open_ms": sum(d["open_ms"] for d in domains),
            "active_ms": sum(d["active_ms"] for d in domains),
            "by_domain": domains,
        }
        click.echo(json.dumps(output, indent=2))
        return

    click.echo(f"Time Report: {date or 'all days'}")
    click.echo()
    if not domains:
        click.echo("No time tracked for this period.")
        click.echo()
        click.echo("Run 'tabtime aggregate' to process pending events.")
        return

    total_open = sum(d["open_ms"] for d in domains)
    total_active = sum(d["active_ms"] for d in domains)
    click.echo(f"Open:   {format_duration(total_open)}")
    click.echo(f"Active: {format_duration(total_active)}")
    click.echo()
    click.echo("By Domain:")
    click.echo("                              Open    Active")

    max_open = max(d["open_ms"] for d in domains)
    for d in domains:
        domain = d["parent_domain"]
        if len(domain) > 28:
            domain = domain[:25] + "..."
        bar = make_progress_bar(d["open_ms"], max_open)
        click.echo(
            f"  {domain:<28} {format_duration(d['open_ms']):>7} "
            f"{format_duration(d['active_ms']):>9}   {bar}"
        )


@main.group("config")
def config_group() -> None:
    """Read and change stored settings."""


@config_group.command("get")
@db_option
@click.argument("key")
def config_get(db: Path, key: str) -> None:
    """Print the stored value of KEY."""
    _require_db(db)
    with SQLiteStore.open(db) as store:
        value = store.get(key)
    click.echo(json.dumps(value))


@config_group.command("set")
@db_option
@click.argument("key")
@click.argument("value")
def config_set(db: Path, key: str, value: str) -> None:
    """Store VALUE under KEY (JSON literals are decoded).

    Example:
        tabtime config set sync:scheduler_period 15
    """
    db.parent.mkdir(parents=True, exist_ok=True)
    with SQLiteStore.open(db) as store:
        store.set(key, parse_setting_value(value))
    click.echo(f"Set {key}")


@main.command("serve")
@db_option
def serve_command(db: Path) -> None:
    """Run periodic aggregation until interrupted."""
    db.parent.mkdir(parents=True, exist_ok=True)

    timer = ThreadTimer()
    with SQLiteStore.open(db) as store:
        service = AggregationService.create(store, timer)
        service.start()
        period = service.scheduler.period_minutes()
        click.echo(f"Aggregating every {period} minutes. Press Ctrl-C to stop.")
        try:
            threading.Event().wait()
        except KeyboardInterrupt:
            pass
        finally:
            service.stop()
            timer.cancel_all()
    click.echo("Stopped")


if __name__ == "__main__":
    main()
