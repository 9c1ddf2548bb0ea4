#!/usr/bin/env python3
"""
TDD Cycle Metrics CLI

Inspect the local cycle log and state, classify messages, and run the
post-commit pipeline by hand.

Usage:
    tdd-metrics hook                  # Process HEAD like the post-commit hook
    tdd-metrics classify "test: ..."  # Show the phase of a message
    tdd-metrics log --limit 20        # Recent log records
    tdd-metrics stats                 # Cycle statistics
    tdd-metrics state                 # Open RED cycles per branch
    tdd-metrics config                # Effective configuration
"""

import json
import statistics
import sys
from collections import Counter
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.markup import escape

from config.settings import export_config, get_settings
from shared.models import LogRecord, Phase, format_duration, utc_now
from shared.state_store import CycleStateStore
from services.commit_tracker.classifier import classify
from services.commit_tracker.local_logger import LocalDurableLogger
from services.commit_tracker.main import run_hook

console = Console()

PHASE_STYLES = {
    Phase.RED: "red",
    Phase.GREEN: "green",
    Phase.REFACTOR: "cyan",
    Phase.TIDY: "magenta",
    Phase.OTHER: "white",
}


def compute_cycle_statistics(records: Iterable[LogRecord]) -> Dict[str, Any]:
    """Phase counts and cycle duration figures for a set of log records."""
    records = [r for r in records if not r.duplicate]
    durations = [r.cycle_duration for r in records if r.cycle_duration is not None]
    seconds = [d.total_seconds() for d in durations]
    phase_counts = Counter(r.phase for r in records)

    return {
        "total_commits": len(records),
        "phase_counts": {phase.value: phase_counts.get(phase, 0) for phase in Phase},
        "closed_cycles": len(durations),
        "average_cycle": timedelta(seconds=statistics.mean(seconds)) if seconds else None,
        "median_cycle": timedelta(seconds=statistics.median(seconds)) if seconds else None,
        "fastest_cycle": min(durations) if durations else None,
        "slowest_cycle": max(durations) if durations else None,
        "abandoned_cycles": sum(1 for r in records if r.abandoned_cycle),
        "orphan_greens": sum(1 for r in records if r.orphan_green),
        "skipped_updates": sum(1 for r in records if r.cycle_state == "skipped"),
    }


def _filter(records: List[LogRecord], branch: Optional[str], phase: Optional[str]) -> List[LogRecord]:
    if branch:
        records = [r for r in records if r.branch == branch]
    if phase:
        records = [r for r in records if r.phase.value == phase]
    return records


def _logger() -> LocalDurableLogger:
    return LocalDurableLogger.from_settings(get_settings())


@click.group()
def cli():
    """Track RED/GREEN/REFACTOR cycles from commit messages."""


@cli.command()
def hook():
    """Run the post-commit pipeline for HEAD (always exits 0)."""
    sys.exit(run_hook())


@cli.command(name="classify")
@click.argument("message")
@click.option("--path", "paths", multiple=True, help="Changed path (repeatable)")
def classify_command(message: str, paths: tuple):
    """Show the phase a commit message maps to."""
    phase = classify(message, list(paths) if paths else None)
    console.print(f"[{PHASE_STYLES[phase]}]{phase.value}[/{PHASE_STYLES[phase]}]")


@cli.command()
@click.option("--limit", default=20, type=click.IntRange(1, 10000), help="Number of records")
@click.option("--branch", help="Only this branch")
@click.option("--phase", type=click.Choice([p.value for p in Phase]), help="Only this phase")
@click.option("--json", "as_json", is_flag=True, help="Print raw JSON lines")
def log(limit: int, branch: Optional[str], phase: Optional[str], as_json: bool):
    """Show recent cycle log records."""
    local_log = _logger()
    records = _filter(local_log.read_records(), branch, phase)[-limit:]

    if as_json:
        for record in records:
            click.echo(record.to_line())
        return

    if not records:
        console.print(f"[yellow]No records in {local_log.path}[/yellow]")
        return

    table = Table(title="TDD Cycle Log", show_header=True, header_style="bold magenta")
    table.add_column("When", style="yellow", no_wrap=True)
    table.add_column("Hash", style="cyan", no_wrap=True)
    table.add_column("Branch", style="green")
    table.add_column("Phase", no_wrap=True)
    table.add_column("Changes", justify="right")
    table.add_column("Cycle", justify="right")
    table.add_column("Message")

    for record in records:
        style = PHASE_STYLES[record.phase]
        flags = []
        if record.abandoned_cycle:
            flags.append("abandoned")
        if record.orphan_green:
            flags.append("orphan")
        if record.duplicate:
            flags.append("dup")
        message = record.message if len(record.message) <= 50 else record.message[:50] + "..."
        table.add_row(
            record.occurred_at.strftime("%Y-%m-%d %H:%M"),
            record.commit_hash[:8],
            escape(record.branch),
            f"[{style}]{record.phase.value}[/{style}]" + (f" ({', '.join(flags)})" if flags else ""),
            f"[green]+{record.lines_added}[/green] [red]-{record.lines_removed}[/red]",
            format_duration(record.cycle_duration),
            escape(message),
        )
    console.print(table)


@cli.command()
@click.option("--branch", help="Only this branch")
def stats(branch: Optional[str]):
    """Show cycle statistics from the local log."""
    records = _filter(_logger().read_records(), branch, None)
    summary = compute_cycle_statistics(records)

    table = Table(title="TDD Cycle Statistics", show_header=True, header_style="bold magenta")
    table.add_column("Metric", style="cyan", no_wrap=True)
    table.add_column("Value", style="green")

    table.add_row("Total Commits", str(summary["total_commits"]))
    for phase in Phase:
        table.add_row(f"{phase.value} Commits", str(summary["phase_counts"][phase.value]))
    table.add_row("Closed Cycles", str(summary["closed_cycles"]))
    table.add_row("Average Cycle", format_duration(summary["average_cycle"]))
    table.add_row("Median Cycle", format_duration(summary["median_cycle"]))
    table.add_row("Fastest Cycle", format_duration(summary["fastest_cycle"]))
    table.add_row("Slowest Cycle", format_duration(summary["slowest_cycle"]))
    table.add_row("Abandoned Cycles", str(summary["abandoned_cycles"]))
    table.add_row("Orphan GREEN Commits", str(summary["orphan_greens"]))
    table.add_row("Skipped State Updates", str(summary["skipped_updates"]))
    console.print(table)


@cli.command()
def state():
    """Show open RED cycles per branch."""
    store = CycleStateStore.from_settings(get_settings())
    pending = store.pending()
    if not pending:
        console.print("[green]No open cycles[/green]")
        return

    now = utc_now()
    table = Table(title="Open Cycles", show_header=True, header_style="bold magenta")
    table.add_column("Branch", style="green")
    table.add_column("RED Commit", style="cyan")
    table.add_column("Opened", style="yellow")
    table.add_column("Open For", justify="right")
    for cycle_state in pending:
        table.add_row(
            escape(cycle_state.branch),
            (cycle_state.pending_red_hash or "-")[:8],
            cycle_state.pending_red_at.strftime("%Y-%m-%d %H:%M"),
            format_duration(now - cycle_state.pending_red_at),
        )
    console.print(table)


@cli.command(name="config")
def show_config():
    """Show the effective configuration (credentials masked)."""
    exported = export_config(get_settings())
    status = "enabled" if exported["publisher"]["remote_enabled"] else "disabled"
    console.print(Panel(escape(json.dumps(exported, indent=2)), title=f"Configuration (remote publishing {status})",
                        border_style="blue"))
    log_path = Path(exported["storage"]["log_file"])
    if not log_path.exists():
        console.print(f"[yellow]Log file {log_path} does not exist yet[/yellow]")


if __name__ == "__main__":
    cli()
