#!/usr/bin/env python3
"""
Administration CLI for maintenance passes and provider sync.

Every batch command takes --mode preview|apply|verify. Preview reports what
would change, apply writes, verify re-scans and fails when work remains.
Long passes can be interrupted with CTRL+C: the current chunk finishes, the
checkpoint is printed and the pass can be resumed with --start-after-id.

Usage:
    roomcal-admin migrate list
    roomcal-admin migrate run backfill-version --mode apply
    roomcal-admin dedupe --mode preview --calendar cal-main
    roomcal-admin series --mode verify
    roomcal-admin backfill-ical-uid --mode apply
    roomcal-admin sync --calendar cal-main --start 2025-03-01 --end 2025-04-01
    roomcal-admin import-csv events.csv --actor staff@example.org
    roomcal-admin serve --port 8000

Exit codes:
    0  pass completed cleanly
    1  items or chunks failed, verify found remaining work, or the pass
       was interrupted before completion
"""

import csv
import signal
import sys
import uuid
from pathlib import Path
from typing import Any, Callable, Optional, Sequence

import click

from backend.src.config.settings import ReconcileConfig, get_reconcile_config, get_settings
from backend.src.services.exceptions import ValidationError
from backend.src.utils.batch_runner import BatchMode, PassReport, RunnerOptions
from backend.src.utils.formatting import to_utc_naive
from backend.src.utils.logging_config import get_logger


logger = get_logger("cli")

MODE_CHOICE = click.Choice([mode.value for mode in BatchMode], case_sensitive=False)

# Flag for graceful shutdown between chunks
_shutdown_requested = False


def signal_handler(signum, frame):
    """Finish the current chunk, then stop."""
    global _shutdown_requested
    _shutdown_requested = True
    click.echo("\nInterrupt received; stopping after the current chunk.", err=True)


def shutdown_requested() -> bool:
    return _shutdown_requested


def _default_session_factory():
    from backend.src.db.database import SessionLocal
    return SessionLocal()


def _default_provider_factory():
    from backend.src.services.calendar_provider import GraphCalendarProvider
    settings = get_settings()
    if not settings.provider_configured:
        raise click.ClickException(
            "Calendar provider is not configured (set ROOMCAL_PROVIDER_ACCESS_TOKEN)"
        )
    return GraphCalendarProvider.from_settings(settings)


def _echo_progress(items: Sequence[Any]) -> None:
    click.echo(f"  processed chunk of {len(items)}")


class AdminContext:
    """
    Dependencies shared by all commands.

    Tests pass their own session/provider factories and a config without
    pacing through click's ``obj``.
    """

    def __init__(
        self,
        session_factory: Optional[Callable] = None,
        provider_factory: Optional[Callable] = None,
        config: Optional[ReconcileConfig] = None,
        options: Optional[RunnerOptions] = None,
    ):
        self.session_factory = session_factory or _default_session_factory
        self.provider_factory = provider_factory or _default_provider_factory
        self.config = config or get_reconcile_config()
        self.verbose = False
        self.options = options or RunnerOptions(
            should_stop=shutdown_requested,
            on_chunk_done=_echo_progress,
        )


def _print_report(report: PassReport, verbose: bool = False) -> None:
    click.echo(f"{report.name} [{report.mode.value}]")
    click.echo(f"  scanned:   {report.scanned}")
    click.echo(f"  changed:   {report.changed}")
    click.echo(f"  unchanged: {report.unchanged}")
    click.echo(f"  failed:    {report.failed} items, {report.failed_chunks} chunks")
    if report.last_id is not None:
        click.echo(f"  checkpoint (--start-after-id): {report.last_id}")
    if verbose:
        for entry in report.details:
            click.echo(f"  - {entry}")
    for error in report.errors:
        click.echo(click.style("  error: ", fg="red") + error)


def _finish(report: PassReport) -> None:
    """Exit non-zero when the pass did not complete cleanly."""
    logger.info("Admin pass finished", extra=report.log_extra())
    if report.stopped:
        click.echo(click.style("Pass interrupted before completion.", fg="yellow"))
        sys.exit(1)
    if report.has_failures:
        click.echo(click.style("Pass finished with failures.", fg="red", bold=True))
        sys.exit(1)
    if not report.is_clean:
        click.echo(click.style(
            f"Verification failed: {report.changed} record(s) still need changes.",
            fg="red", bold=True,
        ))
        sys.exit(1)
    click.echo(click.style("Done.", fg="green"))


@click.group()
@click.option("--verbose", "-v", is_flag=True, default=False, help="Print per-record details.")
@click.pass_context
def cli(ctx: click.Context, verbose: bool) -> None:
    """
    Room calendar administration.

    Use 'roomcal-admin COMMAND --help' for more information on a command.
    """
    global _shutdown_requested
    _shutdown_requested = False
    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    if not isinstance(ctx.obj, AdminContext):
        ctx.obj = AdminContext()
    ctx.obj.verbose = verbose


# ============================================================================
# Field migrations
# ============================================================================


@cli.group()
def migrate() -> None:
    """Field migration and normalization passes."""


@migrate.command("list")
def migrate_list() -> None:
    """List registered migration passes in recommended order."""
    from backend.src.services.field_migrations import list_passes

    for pass_cls in list_passes():
        click.echo(f"{pass_cls.name:<34} {pass_cls.description}")


@migrate.command("run")
@click.argument("name")
@click.option("--mode", type=MODE_CHOICE, default=BatchMode.PREVIEW.value, show_default=True)
@click.option("--start-after-id", type=int, default=None, help="Resume after this record id.")
@click.pass_obj
def migrate_run(obj: AdminContext, name: str, mode: str, start_after_id: Optional[int]) -> None:
    """Run the migration pass NAME."""
    from backend.src.services.field_migrations import get_pass

    db = obj.session_factory()
    try:
        try:
            batch_pass = get_pass(name, db, obj.config, obj.options)
        except ValidationError as e:
            raise click.BadParameter(e.message, param_hint="NAME")
        report = batch_pass.run(BatchMode(mode), start_after_id=start_after_id)
    finally:
        db.close()

    _print_report(report, obj.verbose)
    _finish(report)


# ============================================================================
# Reconciliation passes
# ============================================================================


@cli.command()
@click.option("--mode", type=MODE_CHOICE, default=BatchMode.PREVIEW.value, show_default=True)
@click.option("--calendar", "calendar_id", default=None, help="Restrict to one calendar.")
@click.pass_obj
def dedupe(obj: AdminContext, mode: str, calendar_id: Optional[str]) -> None:
    """Find (and remove) cross-source duplicates."""
    from backend.src.services.source_deduplicator import SourceDeduplicator

    db = obj.session_factory()
    try:
        report = SourceDeduplicator(db, obj.config, obj.options).run(BatchMode(mode), calendar_id)
    finally:
        db.close()

    ambiguous = [entry for entry in report.details if entry.get("action") == "ambiguous"]
    _print_report(report, obj.verbose)
    if ambiguous:
        click.echo(click.style(f"  {len(ambiguous)} ambiguous group(s) need manual review", fg="yellow"))
        for entry in ambiguous:
            click.echo(f"  ? {', '.join(entry['event_guids'])}: {entry['reason']}")
    _finish(report)


@cli.command()
@click.option("--mode", type=MODE_CHOICE, default=BatchMode.PREVIEW.value, show_default=True)
@click.option("--start-after-id", type=int, default=None, help="Resume after this record id.")
@click.pass_obj
def series(obj: AdminContext, mode: str, start_after_id: Optional[int]) -> None:
    """Sweep series masters, exceptions and materialized occurrences."""
    from backend.src.services.recurrence_reconciler import RecurrenceReconciler

    db = obj.session_factory()
    try:
        report = RecurrenceReconciler(db, obj.config, obj.options).sweep(
            BatchMode(mode), start_after_id=start_after_id
        )
    finally:
        db.close()

    _print_report(report, obj.verbose)
    _finish(report)


# ============================================================================
# Provider-backed commands
# ============================================================================


@cli.command("backfill-ical-uid")
@click.option("--mode", type=MODE_CHOICE, default=BatchMode.PREVIEW.value, show_default=True)
@click.option("--start-after-id", type=int, default=None, help="Resume after this record id.")
@click.pass_obj
def backfill_ical_uid(obj: AdminContext, mode: str, start_after_id: Optional[int]) -> None:
    """Fetch missing iCal uids from the calendar provider."""
    from backend.src.services.provider_sync_service import BackfillIcalUidPass

    provider = obj.provider_factory()
    db = obj.session_factory()
    try:
        batch_pass = BackfillIcalUidPass(db, provider, obj.config, obj.options)
        report = batch_pass.run(BatchMode(mode), start_after_id=start_after_id)
    finally:
        db.close()

    _print_report(report, obj.verbose)
    _finish(report)


@cli.command()
@click.option("--calendar", "calendar_id", required=True, help="Provider calendar id.")
@click.option("--start", type=click.DateTime(), required=True, help="Window start (UTC).")
@click.option("--end", type=click.DateTime(), required=True, help="Window end (UTC, exclusive).")
@click.pass_obj
def sync(obj: AdminContext, calendar_id: str, start, end) -> None:
    """Mirror one calendar window from the provider."""
    from backend.src.services.provider_sync_service import ProviderSyncService

    start_utc, end_utc = to_utc_naive(start), to_utc_naive(end)
    if end_utc <= start_utc:
        raise click.BadParameter("must be after --start", param_hint="--end")

    provider = obj.provider_factory()
    db = obj.session_factory()
    try:
        stats = ProviderSyncService(db, provider, obj.config).sync_window(calendar_id, start_utc, end_utc)
    finally:
        db.close()

    for key, value in stats.to_dict().items():
        if key in ("errors", "possible_duplicates"):
            continue
        click.echo(f"  {key}: {value}")
    if stats.possible_duplicates:
        click.echo(f"  possible duplicates: {len(stats.possible_duplicates)} (run 'roomcal-admin dedupe')")
    for error in stats.errors:
        click.echo(click.style("  error: ", fg="red") + error)

    if stats.has_failures:
        sys.exit(1)
    click.echo(click.style("Done.", fg="green"))


# ============================================================================
# CSV import
# ============================================================================


@cli.command("import-csv")
@click.argument("path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--actor", required=True, help="Email recorded as importer.")
@click.option("--calendar", "calendar_id", default=None, help="Calendar for rows without one.")
@click.pass_obj
def import_csv(obj: AdminContext, path: Path, actor: str, calendar_id: Optional[str]) -> None:
    """Import events from the CSV file PATH."""
    from backend.src.services.event_service import EventService

    with path.open(newline="", encoding="utf-8-sig") as handle:
        rows = []
        for row in csv.DictReader(handle):
            data = {key: value for key, value in row.items() if key and value not in (None, "")}
            if calendar_id and not data.get("calendar_id"):
                data["calendar_id"] = calendar_id
            rows.append(data)

    import_batch = f"csv-{uuid.uuid4().hex[:12]}"
    db = obj.session_factory()
    try:
        stats = EventService(db, obj.config).import_csv_rows(
            rows, actor=actor, import_batch=import_batch, source_file=path.name
        )
    finally:
        db.close()

    click.echo(f"Import {import_batch}: {stats.total} row(s)")
    click.echo(f"  created:   {stats.created}")
    click.echo(f"  updated:   {stats.updated}")
    click.echo(f"  unchanged: {stats.unchanged}")
    click.echo(f"  skipped:   {stats.skipped}")
    click.echo(f"  failed:    {stats.failed}")
    if stats.possible_duplicates:
        click.echo(f"  possible duplicates: {len(stats.possible_duplicates)} (run 'roomcal-admin dedupe')")
    for error in stats.errors:
        click.echo(click.style("  error: ", fg="red") + error)

    if stats.failed:
        sys.exit(1)


# ============================================================================
# API server
# ============================================================================


@cli.command()
@click.option("--host", default="127.0.0.1", show_default=True, help="Use 0.0.0.0 to listen on all interfaces.")
@click.option("--port", type=int, default=8000, show_default=True)
@click.option("--reload", is_flag=True, default=False, help="Auto-reload on code changes (development only).")
def serve(host: str, port: int, reload: bool) -> None:
    """Start the events API server."""
    import uvicorn

    click.echo(f"Starting room calendar API on http://{host}:{port}")
    click.echo(f"API documentation: http://{host}:{port}/docs")
    uvicorn.run(
        "backend.src.main:app",
        host=host,
        port=port,
        reload=reload,
        log_level="info",
    )


if __name__ == "__main__":
    cli()
