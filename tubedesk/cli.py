"""Terminal entry point for tubedesk."""

import asyncio

import click
import httpx
from rich.console import Console
from rich.table import Table

from tubedesk.dependencies import build_quota_tracker, build_sync_controller, get_settings
from tubedesk.logging_config import configure_application_logging
from tubedesk.models.sync_contracts import ProgressSnapshot, SyncStartRequest
from tubedesk.services.progress_reporter import ProgressReporter
from tubedesk.services.quota_tracker import fit_to_quota
from tubedesk.services.sync_types import SyncConfigurationError

console = Console()

_PHASE_STYLES = {
    "running": "cyan",
    "paused": "yellow",
    "stopping": "yellow",
    "completed": "green",
    "error": "red",
}


@click.group()
@click.version_option(version="0.1.0")
def main():
    """tubedesk - keep a YouTube channel catalog in sync."""
    configure_application_logging(get_settings())


@main.command()
@click.option("--user", "user_id", default="local", show_default=True, help="Catalog owner.")
@click.option(
    "--mode",
    type=click.Choice(["incremental", "full", "deep"]),
    default="incremental",
    show_default=True,
)
@click.option("--max-items", type=click.IntRange(min=1), default=50, show_default=True)
@click.option(
    "--max-empty-pages",
    type=click.IntRange(min=1),
    default=None,
    help="Empty-page streak that ends a full or deep run.",
)
@click.option("--regular/--no-regular", default=True, show_default=True)
@click.option("--shorts/--no-shorts", default=True, show_default=True)
@click.option("--metadata/--no-metadata", default=True, show_default=True)
def sync(user_id, mode, max_items, max_empty_pages, regular, shorts, metadata):
    """Run a catalog sync and print progress as pages are processed."""
    settings = get_settings()
    request = SyncStartRequest(
        mode=mode,
        include_regular=regular,
        include_shorts=shorts,
        sync_metadata=metadata,
        max_items=max_items,
        max_empty_pages=max_empty_pages,
    )
    config = request.to_configuration(
        default_full_empty_pages=settings.sync_full_max_empty_pages,
        default_deep_empty_pages=settings.sync_deep_max_empty_pages,
    )
    try:
        config.validate()
    except SyncConfigurationError as exc:
        raise click.BadParameter(str(exc)) from exc
    config = fit_to_quota(
        config,
        build_quota_tracker(user_id).status().remaining,
        page_size=settings.sync_page_size,
        page_cost=settings.sync_page_cost,
    )

    final = asyncio.run(_run_sync(user_id, config, settings.youtube_http_timeout_seconds))
    _print_summary(final)
    if final.phase == "error":
        raise SystemExit(1)


@main.command()
@click.option("--user", "user_id", default="local", show_default=True, help="Catalog owner.")
def quota(user_id):
    """Show today's YouTube API quota usage."""
    status = build_quota_tracker(user_id).status()

    style = "red" if status.exceeded else "yellow" if status.warning else "green"
    table = Table(title=f"YouTube quota ({status.date_utc} UTC)")
    table.add_column("Used", justify="right")
    table.add_column("Limit", justify="right")
    table.add_column("Remaining", justify="right")
    table.add_column("Resets at")
    table.add_row(
        f"[{style}]{status.requests_used} ({status.percentage_used}%)[/{style}]",
        str(status.daily_limit),
        str(status.remaining),
        status.reset_at.isoformat(),
    )
    console.print(table)


async def _run_sync(user_id, config, timeout_seconds):
    reporter = ProgressReporter()
    reporter.subscribe(_print_snapshot)
    async with httpx.AsyncClient(timeout=timeout_seconds) as client:
        controller = build_sync_controller(user_id, reporter, http_client=client)
        return await controller.run(config)


def _print_snapshot(snapshot: ProgressSnapshot):
    style = _PHASE_STYLES.get(snapshot.phase, "white")
    line = f"[{style}]{snapshot.phase:<9}[/{style}] {snapshot.message}"
    if snapshot.page_stats is not None:
        stats = snapshot.page_stats
        line += f" [dim](+{stats.new_in_page} new, {stats.updated_in_page} updated)[/dim]"
    console.print(line)


def _print_summary(snapshot: ProgressSnapshot):
    table = Table(title="Sync summary")
    table.add_column("Pages", justify="right")
    table.add_column("Processed", justify="right")
    table.add_column("New", justify="right")
    table.add_column("Updated", justify="right")
    table.add_column("Errors", justify="right")
    table.add_row(
        str(snapshot.pages_processed),
        str(snapshot.totals.processed),
        str(snapshot.totals.new),
        str(snapshot.totals.updated),
        str(snapshot.totals.errors),
    )
    console.print(table)

    if snapshot.failure is not None:
        console.print(f"[red]Sync failed ({snapshot.failure.kind}):[/red] {snapshot.failure.message}")
        if snapshot.failure.reset_at:
            console.print(f"Quota resets at {snapshot.failure.reset_at}")
    for error in snapshot.errors:
        console.print(f"[yellow]warning[/yellow] {error}")


if __name__ == "__main__":
    main()
