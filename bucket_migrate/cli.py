"""Command-line interface for the bucket migration tool."""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Annotated, Any

import structlog
import typer
from rich.console import Console
from rich.progress import (
    BarColumn,
    Progress,
    SpinnerColumn,
    TaskProgressColumn,
    TextColumn,
)
from rich.table import Table

from bucket_migrate.checkpoint import CheckpointStore
from bucket_migrate.config import Config
from bucket_migrate.errors import ConfigurationError
from bucket_migrate.orchestration import MigrationOrchestrator
from bucket_migrate.shutdown import ShutdownCoordinator

# Constants
MAX_ERRORS_TO_DISPLAY = 10
PENDING_PREVIEW_LIMIT = 20

EXIT_FAILURE = 1
EXIT_CONFIG_ERROR = 2
EXIT_INTERRUPTED = 130

# Create Typer app
app = typer.Typer(
    name="bucket-migrate",
    help="Resumable bulk migration of objects between storage buckets",
    add_completion=False,
)

console = Console()


def setup_logging(log_level: str = "INFO", log_format: str = "json") -> None:
    """Setup structured logging.

    Args:
        log_level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        log_format: Log format (json or text).
    """
    logging.basicConfig(format="%(message)s", level=log_level.upper())
    logging.getLogger().setLevel(log_level.upper())

    processors = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if log_format.lower() == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def _load_config(config_file: Path | None, state_dir: Path | None) -> Config:
    """Load configuration from a file if given, else from the environment."""
    config = Config.from_file(config_file) if config_file else Config.from_env()
    if state_dir is not None:
        config.state_dir = state_dir
    return config


ConfigOption = Annotated[
    Path | None,
    typer.Option(
        "--config",
        "-c",
        help="Path to configuration file (optional, uses environment variables by default)",
    ),
]
StateDirOption = Annotated[
    Path | None,
    typer.Option(
        "--state-dir",
        "-s",
        help="Directory for storing the migration checkpoint and report",
        envvar="MIGRATION_STATE_DIR",
    ),
]


@app.command()
def migrate(
    config_file: ConfigOption = None,
    state_dir: StateDirOption = None,
    max_concurrent: Annotated[
        int | None,
        typer.Option("--max-concurrent", help="Maximum number of concurrent transfers"),
    ] = None,
    page_size: Annotated[
        int | None,
        typer.Option("--page-size", help="Number of objects requested per listing page"),
    ] = None,
    batch_size: Annotated[
        int | None,
        typer.Option("--batch-size", help="Items per checkpointed batch"),
    ] = None,
    batch_delay: Annotated[
        float | None,
        typer.Option("--batch-delay", help="Pause between batches in seconds"),
    ] = None,
    max_pages: Annotated[
        int | None,
        typer.Option("--max-pages", help="Safety ceiling on listing pages per run"),
    ] = None,
    extensions: Annotated[
        str | None,
        typer.Option(
            "--extensions",
            "-e",
            help="Comma-separated extensions to migrate (e.g. .epub,.pdf); empty for all",
        ),
    ] = None,
    no_check_destination: Annotated[
        bool,
        typer.Option(
            "--no-check-destination",
            help="Do not probe the destination before transferring",
        ),
    ] = False,
    run_retries: Annotated[
        int | None,
        typer.Option("--run-retries", help="Extra whole-run attempts while items keep failing"),
    ] = None,
    log_level: Annotated[
        str,
        typer.Option(
            "--log-level",
            "-l",
            help="Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
            envvar="LOG_LEVEL",
        ),
    ] = "INFO",
    log_format: Annotated[
        str,
        typer.Option(
            "--log-format",
            "-f",
            help="Log format (json or text)",
            envvar="LOG_FORMAT",
        ),
    ] = "text",
    dry_run: Annotated[
        bool,
        typer.Option(
            "--dry-run",
            "-n",
            help="List what would be transferred without fetching or writing",
        ),
    ] = False,
) -> None:
    """Migrate objects from the source bucket to the destination bucket.

    Progress is checkpointed after every batch; re-running the command resumes
    where the previous run stopped.

    Examples:
        bucket-migrate migrate
        bucket-migrate migrate --max-concurrent 20 --batch-delay 0
        bucket-migrate migrate --extensions .epub --dry-run
    """
    setup_logging(log_level, log_format)
    logger = structlog.get_logger(__name__)

    try:
        config = _load_config(config_file, state_dir)
        config.logging.level = log_level
        config.logging.format = log_format

        config.override_migration(
            max_concurrent=max_concurrent,
            page_size=page_size,
            batch_size=batch_size,
            batch_delay=batch_delay,
            max_pages=max_pages,
            run_retries=run_retries,
            extensions=extensions,
            check_destination=False if no_check_destination else None,
        )
        config.validate_for_run()

        logger.info(
            "Starting migration",
            source=config.source.kind,
            source_bucket=config.source.bucket,
            destination=config.destination.kind,
            destination_bucket=config.destination.bucket,
            state_dir=str(config.state_dir),
            max_concurrent=config.migration.max_concurrent,
            extensions=config.migration.extensions,
            dry_run=dry_run,
        )

        if dry_run:
            console.print("[yellow]DRY RUN MODE - No changes will be made[/yellow]")
            plan = asyncio.run(MigrationOrchestrator(config).plan())
            _display_plan(plan)
            return

        results = asyncio.run(_run_migration(config))

    except ConfigurationError as e:
        console.print(f"[red]Configuration error: {e}[/red]")
        logger.error("Configuration error", error=str(e))
        sys.exit(EXIT_CONFIG_ERROR)
    except KeyboardInterrupt:
        console.print("\n[red]Migration interrupted by user[/red]")
        logger.info("Migration interrupted by user")
        sys.exit(EXIT_INTERRUPTED)
    except Exception as e:
        console.print(f"[red]Migration failed: {e}[/red]")
        logger.error("Migration failed", error=str(e), exc_info=True)
        sys.exit(EXIT_FAILURE)

    _display_results(results)
    if results["interrupted"]:
        console.print(
            "[yellow]Migration interrupted; run the command again to resume.[/yellow]"
        )
        sys.exit(EXIT_INTERRUPTED)


async def _run_migration(config: Config) -> dict[str, Any]:
    """Run the orchestrator with a progress bar and signal handling."""
    orchestrator = MigrationOrchestrator(config)

    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        TaskProgressColumn(),
        console=console,
        transient=False,
    ) as progress:
        task = progress.add_task("Listing source objects...", total=None)

        def on_batch(update: dict[str, Any]) -> None:
            total = max(update["total_items"], update["completed_total"])
            progress.update(
                task,
                total=total or None,
                completed=update["completed_total"],
                description=(
                    f"Page {update['page_num']}: {update['uploaded']} uploaded, "
                    f"{update['skipped']} skipped, {update['errors']} failed"
                ),
            )

        async with ShutdownCoordinator(
            drain_timeout=config.migration.drain_timeout
        ) as shutdown:
            return await orchestrator.run(shutdown=shutdown, progress_hook=on_batch)


def _summary_table(summary: dict[str, Any], title: str) -> Table:
    table = Table(title=title)
    table.add_column("Metric", style="cyan")
    table.add_column("Value", style="magenta", justify="right")

    table.add_row("Total Items", str(summary["total_items"]))
    table.add_row("Processed", str(summary["processed"]))
    table.add_row("Uploaded", str(summary["uploaded"]))
    table.add_row("Skipped", str(summary["skipped"]))
    table.add_row("Failed", str(summary["errors"]))
    table.add_row("Uploaded Bytes", f"{summary['uploaded_bytes']:,}")
    table.add_row("Duplicates", str(summary["duplicates"]))
    table.add_row("Filtered", str(summary["filtered"]))
    table.add_row("Completed (all runs)", str(summary["completed_total"]))
    table.add_row("Started At", str(summary["started_at"] or "-"))
    table.add_row("Last Run At", str(summary["last_run_at"] or "-"))
    table.add_row("Last Item", str(summary["last_item"] or "-"))
    return table


def _display_results(results: dict[str, Any]) -> None:
    """Display migration results in a formatted table.

    Args:
        results: Migration results dictionary.
    """
    console.print("\n")
    console.print(_summary_table(results["summary"], "Migration Summary"))
    console.print(
        f"\n[bold]Attempts:[/bold] {results['attempts']}  "
        f"[bold]Elapsed:[/bold] {results['elapsed_seconds']}s  "
        f"[bold]Report:[/bold] {results.get('report_path', '-')}"
    )

    failed = results["failed_items"]
    if failed:
        console.print("\n[red]Failed items:[/red]")
        for i, item in enumerate(failed[:MAX_ERRORS_TO_DISPLAY], 1):
            console.print(f"  {i}. {item['identifier']}: {item['error']}")
        if len(failed) > MAX_ERRORS_TO_DISPLAY:
            console.print(f"  ... and {len(failed) - MAX_ERRORS_TO_DISPLAY} more")


def _display_plan(plan: dict[str, Any]) -> None:
    table = Table(title="Dry Run")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", style="magenta", justify="right")
    table.add_row("Items Listed", str(plan["total_items"]))
    table.add_row("Already Completed", str(plan["already_completed"]))
    table.add_row("Already At Destination", str(plan["already_present"]))
    table.add_row("Would Transfer", str(plan["pending"]))
    table.add_row("Bytes To Transfer", f"{plan['pending_bytes']:,}")
    console.print(table)

    sample = plan["pending_sample"][:PENDING_PREVIEW_LIMIT]
    if sample:
        pending_table = Table(title="Pending Items (sample)")
        pending_table.add_column("Source Identifier", style="cyan")
        pending_table.add_column("Destination Key", style="green")
        for entry in sample:
            pending_table.add_row(entry["identifier"], entry["destination_key"])
        console.print(pending_table)


@app.command()
def status(
    config_file: ConfigOption = None,
    state_dir: StateDirOption = None,
    as_json: Annotated[
        bool, typer.Option("--json", help="Print the summary as JSON")
    ] = False,
) -> None:
    """Show the persisted checkpoint summary without contacting any store."""
    setup_logging("WARNING", "text")
    try:
        config = _load_config(config_file, state_dir)
    except ConfigurationError as e:
        console.print(f"[red]Configuration error: {e}[/red]")
        sys.exit(EXIT_CONFIG_ERROR)

    store = CheckpointStore(config.checkpoint_path)
    if not store.exists():
        console.print(f"No checkpoint found at {config.checkpoint_path}")
        return

    summary = store.load().summary()
    if as_json:
        console.print_json(json.dumps(summary))
        return
    console.print(_summary_table(summary, "Checkpoint Status"))
    if summary["last_error"]:
        console.print(f"[red]Last error:[/red] {summary['last_error']}")


@app.command()
def reset(
    config_file: ConfigOption = None,
    state_dir: StateDirOption = None,
    yes: Annotated[
        bool, typer.Option("--yes", "-y", help="Do not ask for confirmation")
    ] = False,
) -> None:
    """Delete the checkpoint so the next run starts from scratch."""
    setup_logging("WARNING", "text")
    try:
        config = _load_config(config_file, state_dir)
    except ConfigurationError as e:
        console.print(f"[red]Configuration error: {e}[/red]")
        sys.exit(EXIT_CONFIG_ERROR)

    store = CheckpointStore(config.checkpoint_path)
    if not store.exists():
        console.print(f"No checkpoint found at {config.checkpoint_path}")
        return

    if not yes and not typer.confirm(
        f"Delete checkpoint {config.checkpoint_path}? Completed items will be re-checked."
    ):
        console.print("Aborted.")
        return

    if not store.reset():
        console.print(f"[red]Failed to delete {config.checkpoint_path}[/red]")
        sys.exit(EXIT_FAILURE)
    console.print(f"[green]✓[/green] Checkpoint deleted: {config.checkpoint_path}")


@app.command()
def validate(
    config_file: ConfigOption = None,
    log_level: Annotated[
        str,
        typer.Option(
            "--log-level",
            "-l",
            help="Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
        ),
    ] = "INFO",
) -> None:
    """Validate configuration and test connectivity to both stores.

    Lists one page from the source and probes one key at the destination; no
    objects are transferred.
    """
    setup_logging(log_level, "text")  # Use text format for validation
    logger = structlog.get_logger(__name__)

    try:
        console.print("[blue]Validating configuration...[/blue]")
        config = _load_config(config_file, None)
        config.validate_for_run()
        console.print("[green]✓[/green] Configuration loaded successfully")

        console.print("[blue]Testing connectivity...[/blue]")
        result = asyncio.run(MigrationOrchestrator(config).validate())
        console.print(
            f"[green]✓[/green] Source {result['source']}: "
            f"listed {result['first_page_items']} objects"
        )
        console.print(
            f"[green]✓[/green] Destination {result['destination']}: "
            f"probed {result['probe_key']} (exists={result['probe_key_exists']})"
        )
        console.print("[green]✓[/green] All validation checks passed!")

    except ConfigurationError as e:
        console.print(f"[red]✗ Configuration error: {e}[/red]")
        logger.error("Validation failed", error=str(e))
        sys.exit(EXIT_CONFIG_ERROR)
    except Exception as e:
        console.print(f"[red]✗ Validation failed: {e}[/red]")
        logger.error("Validation failed", error=str(e))
        sys.exit(EXIT_FAILURE)


@app.command()
def version() -> None:
    """Show version information."""
    from bucket_migrate import __version__

    console.print(f"bucket-migrate version {__version__}")


if __name__ == "__main__":
    app()
