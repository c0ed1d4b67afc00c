"""
Command-line interface for the calendar sync engine.
"""

import dataclasses
import datetime
import json
import logging
import uuid
from configparser import ConfigParser
from dataclasses import dataclass
from dataclasses import field
from pathlib import Path
from typing import Annotated

import typer
from dateutil import parser as date_parser
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from calendar_sync_engine.db import StateDatabase
from calendar_sync_engine.db import query_status_all_integrations
from calendar_sync_engine.models import DEFAULT_CONFIG
from calendar_sync_engine.models import DEFAULT_STATE_DB
from calendar_sync_engine.models import MERGE_FIELD_GROUPS
from calendar_sync_engine.models import AutoResolutionRule
from calendar_sync_engine.models import CalendarIntegration
from calendar_sync_engine.models import CalendarSyncError
from calendar_sync_engine.models import FieldSource
from calendar_sync_engine.models import LocalEvent
from calendar_sync_engine.models import MonthlyBy
from calendar_sync_engine.models import Provider
from calendar_sync_engine.models import RecurrencePattern
from calendar_sync_engine.models import RecurrenceType
from calendar_sync_engine.models import Resolution
from calendar_sync_engine.models import ResolutionStrategy
from calendar_sync_engine.models import SyncConfig
from calendar_sync_engine.models import SyncDirection
from calendar_sync_engine.models import SyncResult
from calendar_sync_engine.models import WeekDay
from calendar_sync_engine.providers import ProviderRegistry
from calendar_sync_engine.recurrence import describe_pattern
from calendar_sync_engine.recurrence import get_series_preview
from calendar_sync_engine.recurrence import is_recurrence_valid
from calendar_sync_engine.sync import SyncEngine
from calendar_sync_engine.sync.conflicts import ConflictResolutionService

# ---------------------------------------------------------------------------
# Typer app
# ---------------------------------------------------------------------------

app = typer.Typer(
    no_args_is_help=True,
    rich_markup_mode="rich",
    help="Synchronise a local schedule with external calendar providers.",
)

console = Console()


# ---------------------------------------------------------------------------
# Global state shared across subcommands
# ---------------------------------------------------------------------------


@dataclass
class _State:
    config_path: Path = field(default_factory=lambda: DEFAULT_CONFIG)
    state_db: Path | None = None
    verbose: bool = False


state = _State()


@app.callback()
def _global(
    config: Annotated[
        Path,
        typer.Option("--config", "-c", help=f"Config file path (default: {DEFAULT_CONFIG})"),
    ] = DEFAULT_CONFIG,
    state_db: Annotated[
        Path | None,
        typer.Option("--state-db", help=f"State DB path (default: {DEFAULT_STATE_DB})"),
    ] = None,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Enable verbose debug output"),
    ] = False,
) -> None:
    state.config_path = config
    state.state_db = state_db
    state.verbose = verbose
    _setup_logging(verbose)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False, console=console)],
    )


def _load_config_file(config_path: Path) -> dict[str, str]:
    if not config_path.exists():
        return {}
    parser = ConfigParser()
    parser.read(config_path)
    if "calendar-sync" not in parser:
        return {}
    return dict(parser["calendar-sync"])


def _build_config(dry_run: bool = False) -> SyncConfig:
    """Defaults, overlaid by the config file, overlaid by command-line options."""
    config_file = _load_config_file(state.config_path)
    values: dict = {}
    for f in dataclasses.fields(SyncConfig):
        raw = config_file.get(f.name)
        if raw is None:
            continue
        try:
            if f.type in (bool, "bool"):
                values[f.name] = raw.strip().lower() in ("1", "true", "yes", "on")
            elif f.type in (int, "int"):
                values[f.name] = int(raw)
            elif f.type in (float, "float"):
                values[f.name] = float(raw)
            elif f.name == "state_db_path":
                values[f.name] = Path(raw).expanduser()
        except ValueError:
            console.print(f"[bold red]Error:[/] Invalid value for {f.name} in config: {raw!r}")
            raise typer.Exit(1) from None

    cfg = SyncConfig(**values)
    if state.state_db is not None:
        cfg.state_db_path = state.state_db
    cfg.verbose = state.verbose
    cfg.dry_run = dry_run or cfg.dry_run
    return cfg


def _open_db(cfg: SyncConfig) -> StateDatabase:
    return StateDatabase(cfg.state_db_path)


def _fmt_ts(value: str | datetime.datetime | None) -> str:
    if not value:
        return "—"
    if isinstance(value, str):
        value = datetime.datetime.fromisoformat(value)
    return value.astimezone().strftime("%Y-%m-%d %H:%M:%S")


def _print_result(result: SyncResult) -> None:
    results = Table.grid(padding=(0, 2))
    results.add_column(style="bold")
    results.add_column(justify="right")
    results.add_row("Created", str(result.events_created))
    results.add_row("Updated", str(result.events_updated))
    results.add_row("Deleted", str(result.events_deleted))
    results.add_row("Conflicts", str(result.conflicts_detected))
    error_val = Text(str(len(result.errors)))
    if not result.errors:
        error_val.append(" ✓", style="green")
    else:
        error_val.stylize("bold red")
    results.add_row("Errors", error_val)
    console.print(
        Panel(results, title=f"[bold]Results[/bold] [dim]{result.integration_id}[/dim]", expand=False)
    )
    for error in result.errors:
        console.print(f"  [red]•[/] {error}")


_DRY_RUN = Annotated[bool, typer.Option("--dry-run", "-n", help="Preview changes without applying")]
_DIRECTION = Annotated[
    SyncDirection | None,
    typer.Option("--direction", "-d", help="import_only, export_only or bidirectional"),
]


# ---------------------------------------------------------------------------
# Subcommands: integrations
# ---------------------------------------------------------------------------


@app.command()
def connect(
    user_id: Annotated[str, typer.Argument(help="Owning user")],
    provider: Annotated[Provider, typer.Argument(help="Calendar provider")],
    calendar_id: Annotated[
        str, typer.Option("--calendar-id", help="External calendar to sync")
    ] = "primary",
    direction: _DIRECTION = None,
    integration_id: Annotated[
        str | None, typer.Option("--id", help="Integration id (generated if omitted)")
    ] = None,
) -> None:
    """Register a connection to an external calendar."""
    cfg = _build_config()
    integration = CalendarIntegration(
        id=integration_id or str(uuid.uuid4()),
        user_id=user_id,
        provider=provider,
        calendar_id=calendar_id,
        sync_direction=direction or SyncDirection.BIDIRECTIONAL,
    )
    with _open_db(cfg) as db:
        db.create_integration(integration)
        db.commit()
    console.print(
        f"[green]Connected[/] {provider.value}:{calendar_id} for {user_id} "
        f"[dim]({integration.id})[/dim]"
    )


@app.command()
def disconnect(
    integration_id: Annotated[str, typer.Argument(help="Integration to remove")],
    yes: Annotated[bool, typer.Option("--yes", "-y", help="Skip confirmation prompt")] = False,
) -> None:
    """Remove an integration and its event links (conflicts are kept)."""
    cfg = _build_config()
    with _open_db(cfg) as db:
        if db.get_integration(integration_id) is None:
            console.print(f"[bold red]Error:[/] Integration {integration_id} not found")
            raise typer.Exit(1)
        if not yes:
            typer.confirm(f"Disconnect {integration_id}?", abort=True)
        db.delete_integration(integration_id)
        db.commit()
    console.print(f"[green]Disconnected[/] {integration_id}")


@app.command()
def configure(
    integration_id: Annotated[str, typer.Argument(help="Integration to change")],
    enable: Annotated[
        bool | None, typer.Option("--enable/--disable", help="Turn syncing on or off")
    ] = None,
    direction: _DIRECTION = None,
    calendar_id: Annotated[str | None, typer.Option("--calendar-id")] = None,
    past_days: Annotated[int | None, typer.Option("--past-days", min=0)] = None,
    future_days: Annotated[int | None, typer.Option("--future-days", min=0)] = None,
) -> None:
    """Change an integration's sync preferences."""
    cfg = _build_config()
    with _open_db(cfg) as db:
        try:
            integration = db.update_integration_preferences(
                integration_id,
                sync_enabled=enable,
                sync_direction=direction,
                calendar_id=calendar_id,
                sync_past_days=past_days,
                sync_future_days=future_days,
            )
        except CalendarSyncError as e:
            console.print(f"[bold red]Error:[/] {e}")
            raise typer.Exit(1) from None
        db.commit()
    console.print(
        f"[green]Updated[/] {integration.id}: "
        f"{'enabled' if integration.sync_enabled else 'disabled'}, "
        f"{integration.sync_direction.value}, calendar {integration.calendar_id}, "
        f"-{integration.sync_past_days}/+{integration.sync_future_days} days"
    )


@app.command()
def status() -> None:
    """Show configuration and the state of every integration."""
    cfg = _build_config()
    config_exists = state.config_path.exists()
    db_exists = cfg.state_db_path.exists()

    cfg_info = Text()
    cfg_info.append("  Config:   ", style="bold")
    cfg_info.append(str(state.config_path) + " ")
    cfg_info.append(
        "✓" if config_exists else "(not found)", style="green" if config_exists else "red"
    )
    cfg_info.append("\n  State DB: ", style="bold")
    cfg_info.append(str(cfg.state_db_path) + " ")
    cfg_info.append("✓" if db_exists else "(not found)", style="green" if db_exists else "yellow")
    console.print(Panel(cfg_info, title="[bold]Calendar Sync — Status[/bold]"))

    rows = query_status_all_integrations(cfg.state_db_path)
    if not rows:
        console.print(
            "[yellow]No integrations yet — run[/] [cyan]calendar-sync connect[/] "
            "[yellow]to add one.[/]"
        )
        return

    table = Table(show_header=True, header_style="bold cyan", box=None, padding=(0, 2))
    table.add_column("Integration")
    table.add_column("User")
    table.add_column("Calendar")
    table.add_column("Direction")
    table.add_column("Status")
    table.add_column("Linked", justify="right")
    table.add_column("Conflicts", justify="right")
    table.add_column("Last success")
    status_style = {"success": "green", "error": "red", "syncing": "yellow", "idle": "dim"}
    for row in rows:
        label = row["sync_status"] if row["sync_enabled"] else f"{row['sync_status']} (disabled)"
        table.add_row(
            row["id"],
            row["user_id"],
            f"{row['provider']}:{row['calendar_id']}",
            row["sync_direction"],
            Text(label, style=status_style.get(row["sync_status"], "")),
            str(row["mapped_events"]),
            str(row["pending_conflicts"]),
            _fmt_ts(row["last_successful_sync_at"]),
        )
    console.print(table)
    for row in rows:
        if row["sync_error_message"]:
            console.print(f"  [red]{row['id']}:[/] {row['sync_error_message']}")


# ---------------------------------------------------------------------------
# Subcommands: sync / sync-all
# ---------------------------------------------------------------------------


def _engine(db: StateDatabase, cfg: SyncConfig) -> SyncEngine:
    return SyncEngine(db, ProviderRegistry.from_entry_points(), cfg)


@app.command()
def sync(
    user_id: Annotated[str, typer.Argument(help="Owning user")],
    integration_id: Annotated[str, typer.Argument(help="Integration to sync")],
    dry_run: _DRY_RUN = False,
) -> None:
    """Run one sync pass for an integration."""
    cfg = _build_config(dry_run)
    try:
        with _open_db(cfg) as db:
            result = _engine(db, cfg).perform_full_sync(user_id, integration_id)
    except CalendarSyncError as e:
        console.print(f"[bold red]Sync failed:[/] {e}")
        raise typer.Exit(1) from None
    except KeyboardInterrupt:
        console.print("[yellow]Interrupted by user[/]")
        raise typer.Exit(130) from None

    _print_result(result)
    if not result.success or result.errors:
        raise typer.Exit(1)


@app.command("sync-all")
def sync_all(
    user_id: Annotated[
        str | None, typer.Option("--user", "-u", help="Only this user's integrations")
    ] = None,
    dry_run: _DRY_RUN = False,
) -> None:
    """Sync every enabled integration in parallel."""
    cfg = _build_config(dry_run)
    try:
        with _open_db(cfg) as db:
            results = _engine(db, cfg).sync_all(user_id)
    except KeyboardInterrupt:
        console.print("[yellow]Interrupted by user[/]")
        raise typer.Exit(130) from None

    if not results:
        console.print("[yellow]No enabled integrations.[/]")
        return
    for result in results:
        _print_result(result)
    if any(not r.success for r in results):
        raise typer.Exit(1)


# ---------------------------------------------------------------------------
# Subcommands: conflicts
# ---------------------------------------------------------------------------


def _conflict_service(db: StateDatabase, cfg: SyncConfig) -> ConflictResolutionService:
    return ConflictResolutionService(db, ProviderRegistry.from_entry_points(), cfg)


@app.command()
def conflicts(user_id: Annotated[str, typer.Argument(help="Owning user")]) -> None:
    """List pending conflicts, oldest first."""
    cfg = _build_config()
    with _open_db(cfg) as db:
        service = _conflict_service(db, cfg)
        pending = service.get_pending_conflicts(user_id)
        analyses = [service.analyze_conflict(c) for c in pending]

    if not pending:
        console.print("[green]No pending conflicts.[/]")
        return
    table = Table(show_header=True, header_style="bold cyan", box=None, padding=(0, 2))
    table.add_column("Conflict")
    table.add_column("Type")
    table.add_column("Integration")
    table.add_column("Detected")
    table.add_column("Severity")
    table.add_column("Suggested")
    table.add_column("Description")
    severity_style = {"low": "green", "medium": "yellow", "high": "red"}
    for conflict, analysis in zip(pending, analyses):
        suggested = analysis.suggested_resolution
        table.add_row(
            conflict.id,
            conflict.conflict_type.value,
            conflict.integration_id,
            _fmt_ts(conflict.created_at),
            Text(analysis.severity.value, style=severity_style[analysis.severity.value]),
            suggested.value if suggested else "—",
            conflict.description,
        )
    console.print(table)


@app.command("conflict-stats")
def conflict_stats(user_id: Annotated[str, typer.Argument(help="Owning user")]) -> None:
    """Summarise conflicts by status, type and resolution."""
    cfg = _build_config()
    with _open_db(cfg) as db:
        stats = _conflict_service(db, cfg).get_conflict_statistics(user_id)

    grid = Table.grid(padding=(0, 2))
    grid.add_column(style="bold")
    grid.add_column(justify="right")
    grid.add_row("Total", str(stats["total"]))
    grid.add_row("Pending", str(stats["pending"]))
    grid.add_row("Resolving", str(stats["resolving"]))
    grid.add_row("Resolved", str(stats["resolved"]))
    for name, count in stats["by_type"].items():
        grid.add_row(f"  {name}", str(count))
    for name, count in stats["by_resolution"].items():
        if count:
            grid.add_row(f"  resolved by {name}", str(count))
    console.print(Panel(grid, title="[bold]Conflicts[/bold]", expand=False))


@app.command()
def resolve(
    conflict_id: Annotated[str, typer.Argument(help="Conflict to resolve")],
    user_id: Annotated[str, typer.Argument(help="Owning user")],
    resolution: Annotated[Resolution, typer.Argument(help="Resolution strategy")],
    merged: Annotated[
        str | None,
        typer.Option("--merged", help='JSON object for merge, e.g. \'{"start": "..."}\''),
    ] = None,
) -> None:
    """Resolve a conflict: keep_local, keep_external, merge or ignore."""
    merged_data = None
    if merged:
        try:
            merged_data = json.loads(merged)
        except json.JSONDecodeError as e:
            console.print(f"[bold red]Error:[/] --merged is not valid JSON: {e}")
            raise typer.Exit(1) from None

    cfg = _build_config()
    with _open_db(cfg) as db:
        outcome = _conflict_service(db, cfg).resolve_conflict_manually(
            conflict_id, user_id, resolution, merged_data
        )

    if not outcome.success:
        console.print(f"[bold red]Resolution failed:[/] {outcome.error}")
        raise typer.Exit(1)
    if outcome.already_resolved:
        console.print("[yellow]Conflict was already resolved; nothing changed.[/]")
        return
    console.print(f"[green]Resolved[/] {conflict_id} with {resolution.value}")
    for change in outcome.applied_changes:
        console.print(f"  • {change}")


def _parse_priorities(value: str) -> dict[str, FieldSource]:
    priorities = {}
    for part in value.split(","):
        group, sep, source = part.partition("=")
        group = group.strip()
        if not sep or group not in MERGE_FIELD_GROUPS:
            raise typer.BadParameter(
                f"Expected GROUP=SOURCE with GROUP in {', '.join(MERGE_FIELD_GROUPS)}: {part!r}"
            )
        try:
            priorities[group] = FieldSource(source.strip())
        except ValueError:
            raise typer.BadParameter(f"Unknown source {source!r}") from None
    return priorities


@app.command("resolve-batch")
def resolve_batch(
    user_id: Annotated[str, typer.Argument(help="Owning user")],
    rule: Annotated[
        AutoResolutionRule | None,
        typer.Option("--rule", help="Keep a whole side per conflict"),
    ] = None,
    prefer: Annotated[
        str | None,
        typer.Option("--prefer", help="Smart merge sources, e.g. title=external,time=newest"),
    ] = None,
    conflict_ids: Annotated[
        list[str] | None,
        typer.Option("--id", help="Conflict to resolve (repeatable; default: all pending)"),
    ] = None,
) -> None:
    """Resolve many conflicts with one rule or one set of field priorities."""
    if (rule is None) == (prefer is None):
        console.print("[bold red]Error:[/] Give exactly one of --rule or --prefer")
        raise typer.Exit(1)
    strategy = ResolutionStrategy(
        auto_rule=rule, field_priorities=_parse_priorities(prefer) if prefer else None
    )

    cfg = _build_config()
    with _open_db(cfg) as db:
        service = _conflict_service(db, cfg)
        ids = conflict_ids or [c.id for c in service.get_pending_conflicts(user_id)]
        batch = service.batch_resolve_conflicts(ids, user_id, strategy)

    console.print(f"[green]Resolved {batch.resolved}[/], failed {batch.failed}")
    for error in batch.errors:
        console.print(f"  [red]•[/] {error}")
    if batch.failed:
        raise typer.Exit(1)


# ---------------------------------------------------------------------------
# Subcommand: history
# ---------------------------------------------------------------------------


@app.command()
def history(
    integration_id: Annotated[
        str | None, typer.Argument(help="Only this integration's passes")
    ] = None,
    user_id: Annotated[str | None, typer.Option("--user", "-u")] = None,
    limit: Annotated[int, typer.Option("--limit", "-l", min=1)] = 20,
) -> None:
    """List recent sync passes, newest first."""
    cfg = _build_config()
    with _open_db(cfg) as db:
        entries = db.list_sync_history(integration_id, user_id, limit)

    if not entries:
        console.print("[yellow]No sync history.[/]")
        return
    table = Table(show_header=True, header_style="bold cyan", box=None, padding=(0, 2))
    table.add_column("Started")
    table.add_column("Integration")
    table.add_column("Direction")
    table.add_column("Status")
    table.add_column("Created", justify="right")
    table.add_column("Updated", justify="right")
    table.add_column("Deleted", justify="right")
    table.add_column("Conflicts", justify="right")
    table.add_column("Duration", justify="right")
    status_style = {"completed": "green", "failed": "red", "cancelled": "yellow", "started": "dim"}
    for entry in entries:
        duration = "—" if entry.duration_seconds is None else f"{entry.duration_seconds:.1f}s"
        table.add_row(
            _fmt_ts(entry.started_at),
            entry.integration_id,
            entry.sync_direction.value,
            Text(entry.status.value, style=status_style[entry.status.value]),
            str(entry.events_created),
            str(entry.events_updated),
            str(entry.events_deleted),
            str(entry.conflicts_detected),
            duration,
        )
    console.print(table)
    for entry in entries:
        if entry.error_message:
            console.print(f"  [red]{entry.integration_id}:[/] {entry.error_message}")


# ---------------------------------------------------------------------------
# Subcommand: preview
# ---------------------------------------------------------------------------


def _parse_weekdays(value: str | None) -> list[WeekDay] | None:
    if not value:
        return None
    days = []
    for part in value.split(","):
        name = part.strip().upper()
        matches = [d for d in WeekDay if d.name.startswith(name)] if len(name) >= 2 else []
        if len(matches) != 1:
            raise typer.BadParameter(f"Unknown weekday: {part!r}")
        days.append(matches[0])
    return days


@app.command()
def preview(
    type_: Annotated[RecurrenceType, typer.Argument(metavar="TYPE", help="Recurrence type")],
    start: Annotated[str, typer.Option("--start", help="First occurrence (ISO datetime)")],
    duration: Annotated[int, typer.Option("--duration", help="Minutes per occurrence")] = 60,
    interval: Annotated[int, typer.Option("--interval", "-i")] = 1,
    days: Annotated[
        str | None, typer.Option("--days", help="Weekly days, e.g. mon,wed,fri")
    ] = None,
    monthly_by: Annotated[MonthlyBy | None, typer.Option("--monthly-by")] = None,
    day_of_month: Annotated[int | None, typer.Option("--day-of-month")] = None,
    week_of_month: Annotated[
        int | None, typer.Option("--week-of-month", help="1-4, or -1 for last")
    ] = None,
    week_day: Annotated[str | None, typer.Option("--week-day")] = None,
    month: Annotated[int | None, typer.Option("--month")] = None,
    end_date: Annotated[str | None, typer.Option("--end-date")] = None,
    occurrences: Annotated[int | None, typer.Option("--occurrences")] = None,
    workdays_only: Annotated[bool, typer.Option("--workdays-only")] = False,
    count: Annotated[int, typer.Option("--count", help="Occurrences to show")] = 5,
) -> None:
    """Describe a recurrence pattern and list its next occurrences."""
    try:
        first = date_parser.isoparse(start)
        until = datetime.date.fromisoformat(end_date) if end_date else None
    except ValueError as e:
        console.print(f"[bold red]Error:[/] {e}")
        raise typer.Exit(1) from None
    if first.tzinfo is None:
        first = first.replace(tzinfo=datetime.timezone.utc)

    single_day = _parse_weekdays(week_day)
    pattern = RecurrencePattern(
        type=type_,
        interval=interval,
        days_of_week=_parse_weekdays(days),
        monthly_by=monthly_by,
        day_of_month=day_of_month,
        week_of_month=week_of_month,
        week_day=single_day[0] if single_day else None,
        month=month,
        end_date=until,
        occurrences=occurrences,
        workdays_only=workdays_only,
    )
    report = is_recurrence_valid(pattern)
    if not report.valid:
        for error in report.errors:
            console.print(f"[bold red]Invalid:[/] {error}")
        raise typer.Exit(1)

    base = LocalEvent(
        id="preview",
        user_id="preview",
        title="preview",
        start=first,
        end=first + datetime.timedelta(minutes=duration),
    )
    summary = get_series_preview(pattern, base, count)

    console.print(f"[bold]{describe_pattern(pattern)}[/bold]")
    table = Table(show_header=True, header_style="bold cyan", box=None, padding=(0, 2))
    table.add_column("#", justify="right")
    table.add_column("Date")
    table.add_column("Start")
    table.add_column("End")
    for n, inst in enumerate(summary.next_occurrences, start=1):
        table.add_row(
            str(n),
            f"{inst.date:%a %Y-%m-%d}",
            f"{inst.start_time:%H:%M}",
            f"{inst.end_time:%H:%M}",
        )
    console.print(table)
    total = "unbounded" if summary.total_count is None else str(summary.total_count)
    ends = summary.end_date.isoformat() if summary.end_date else "never"
    console.print(f"[dim]Total occurrences: {total}; ends: {ends}[/dim]")


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main() -> None:
    app()
