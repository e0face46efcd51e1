"""
DB Feed CLI - Command Line Interface.

Feeds rows of a database query to an indexing consumer as add/delete
records, remembering what was sent so later passes only send changes.

Commands:
    traverse  Run one traversal pass and append records to the feed file
    resume    Continue a traversal from a checkpoint token
    status    Show the saved traversal state
    clear     Discard the saved traversal state
    tables    List the tables of a SQLite source
    config    Manage configuration
"""

from __future__ import annotations

import sqlite3
from pathlib import Path
from typing import Any, Optional

import typer
from rich.console import Console
from rich.table import Table

from db_feed import __version__
from db_feed.config import Settings, SourceType, load_settings
from db_feed.connectors.sqlite import SQLiteSource
from db_feed.core.checkpoint import CheckpointError, CheckpointManager
from db_feed.core.docid import DocIdError
from db_feed.core.engine import TraversalEngine, TraversalStats
from db_feed.core.scanner import SourceUnavailableError
from db_feed.feed import JsonlFeedWriter
from db_feed.utils.display import (
    ProgressDisplay,
    print_error,
    print_info,
    print_state,
    print_success,
    print_summary,
    print_warning,
)
from db_feed.utils.logger import setup_logging


# Create the Typer app
app = typer.Typer(
    name="db-feed",
    help="Incremental database to indexing feed with change detection and resume.",
    add_completion=True,
    rich_markup_mode="rich",
)

console = Console()


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"[bold cyan]db-feed[/bold cyan] version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        False,
        "--version",
        "-v",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit.",
    ),
) -> None:
    """DB Feed - incremental database feed for content indexing."""


ConfigOption = typer.Option(
    None,
    "--config",
    "-c",
    help="Path to config file.",
    exists=True,
    dir_okay=False,
)
DatabaseOption = typer.Option(
    None,
    "--database",
    "-d",
    help="Path to the SQLite database (overrides config).",
)
QueryOption = typer.Option(
    None,
    "--query",
    help="Traversal query (overrides config).",
)
KeysOption = typer.Option(
    None,
    "--primary-keys",
    "-k",
    help="Comma-separated primary key columns (overrides config).",
)
FeedOption = typer.Option(
    None,
    "--feed",
    "-o",
    help="Feed output file (overrides config).",
)
StateOption = typer.Option(
    None,
    "--state-file",
    help="Path to state file (overrides config).",
)
QuietOption = typer.Option(
    False,
    "--quiet",
    "-q",
    help="Minimal output.",
)


# =============================================================================
# TRAVERSE Command
# =============================================================================
@app.command()
def traverse(
    config_file: Optional[Path] = ConfigOption,
    database: Optional[Path] = DatabaseOption,
    query: Optional[str] = QueryOption,
    primary_keys: Optional[str] = KeysOption,
    feed: Optional[Path] = FeedOption,
    state_file: Optional[Path] = StateOption,
    fresh: bool = typer.Option(
        False,
        "--fresh",
        help="Discard saved state and send every row again.",
    ),
    quiet: bool = QuietOption,
) -> None:
    """
    Run one traversal pass.

    New and changed rows are appended to the feed file as add records, and
    rows gone since the last pass as delete records.

    Example:
        db-feed traverse --database ./inventory.db \\
            --query "SELECT * FROM items ORDER BY id" --primary-keys id
    """
    settings = _load_or_exit(
        config_file,
        database=database,
        query=query,
        primary_keys=primary_keys,
        feed=feed,
        state_file=state_file,
    )
    _run(settings, token=None, fresh=fresh, quiet=quiet)


# =============================================================================
# RESUME Command
# =============================================================================
@app.command()
def resume(
    checkpoint: str = typer.Option(
        ...,
        "--checkpoint",
        help="Checkpoint token returned by the consumer.",
    ),
    config_file: Optional[Path] = ConfigOption,
    database: Optional[Path] = DatabaseOption,
    query: Optional[str] = QueryOption,
    primary_keys: Optional[str] = KeysOption,
    feed: Optional[Path] = FeedOption,
    state_file: Optional[Path] = StateOption,
    quiet: bool = QuietOption,
) -> None:
    """
    Continue a traversal from a checkpoint token.

    Records sent after the checkpoint was taken are sent again.
    """
    settings = _load_or_exit(
        config_file,
        database=database,
        query=query,
        primary_keys=primary_keys,
        feed=feed,
        state_file=state_file,
    )
    _run(settings, token=checkpoint, fresh=False, quiet=quiet)


def _run(settings: Settings, token: str | None, fresh: bool, quiet: bool) -> None:
    errors = settings.validate_source()
    if errors:
        for err in errors:
            print_error(err)
        print_info("Use --help for configuration options.")
        raise typer.Exit(1)

    setup_logging(
        level="WARNING" if quiet else settings.logging.level,
        log_file=settings.logging.file,
        format_style=settings.logging.format,
        max_file_size_mb=settings.logging.max_file_size_mb,
        backup_count=settings.logging.backup_count,
    )

    display = ProgressDisplay() if not quiet else None

    def on_progress(stats: TraversalStats) -> None:
        if display:
            display.update(
                rows_scanned=stats.rows_scanned,
                queued=stats.added + stats.changed,
                deleted=stats.deleted,
                skipped=stats.skipped,
                rate=stats.rows_per_second,
            )

    writer = JsonlFeedWriter(settings.traversal.feed_file)
    try:
        with TraversalEngine(settings) as engine, writer:
            if display:
                display.start(db_name=settings.db_name, source=_describe_source(settings))
            try:
                stats = engine.run_pass(
                    on_record=writer.write,
                    on_progress=on_progress,
                    token=token,
                    fresh=fresh,
                )
            finally:
                if display:
                    display.stop()
            checkpoint = engine.state.current_token()
    except SourceUnavailableError as e:
        print_error(f"Data source unavailable: {e}")
        print_info("The last saved checkpoint is unchanged; run again to resume.")
        raise typer.Exit(1)
    except (DocIdError, CheckpointError, ValueError) as e:
        print_error(str(e))
        raise typer.Exit(1)

    if not quiet:
        console.print()
        print_summary({
            "duration": stats.duration_seconds,
            "rows_scanned": stats.rows_scanned,
            "added": stats.added,
            "changed": stats.changed,
            "unchanged": stats.unchanged,
            "deleted": stats.deleted,
            "skipped": stats.skipped,
            "records_sent": stats.records_sent,
            "transient_failures": stats.transient_failures,
            "bytes_written": writer.bytes_written,
            "rows_per_second": stats.rows_per_second,
        })

    if stats.errors:
        console.print()
        print_warning(f"{len(stats.errors)} rows skipped:")
        for err in stats.errors[:10]:
            print_error(f"  • {err}")
        if len(stats.errors) > 10:
            print_info(f"  ... and {len(stats.errors) - 10} more")

    if stats.transient_failures:
        print_warning("The pass ended early on a query failure; unseen rows were kept.")

    print_success(f"{writer.count:,} records written to {settings.traversal.feed_file}")
    console.print(f"Checkpoint: [bold]{checkpoint}[/bold]")


def _describe_source(settings: Settings) -> str:
    if settings.source.type == SourceType.D1:
        return f"d1:{settings.source.d1.database_id}"
    return str(settings.source.sqlite_path)


# =============================================================================
# STATUS Command
# =============================================================================
@app.command()
def status(
    config_file: Optional[Path] = ConfigOption,
    state_file: Optional[Path] = StateOption,
) -> None:
    """Show the saved traversal state."""
    settings = _load_or_exit(config_file, state_file=state_file)
    path = settings.traversal.state_file
    if not path.exists():
        print_info("No traversal state found. Run a traversal first.")
        raise typer.Exit(0)

    state = CheckpointManager(path).load()
    print_state({
        "state_file": str(path),
        "updated_at": state.updated_at,
        "passes_completed": state.pass_count,
        "cursor": state.cursor,
        "key_value": state.key_value,
        "documents_known": len(state.previous),
        "seen_this_pass": len(state.current),
        "pending": len(state.pending),
        "in_flight": len(state.in_flight),
        "checkpoint": state.current_token(),
    })


# =============================================================================
# CLEAR Command
# =============================================================================
@app.command()
def clear(
    config_file: Optional[Path] = ConfigOption,
    state_file: Optional[Path] = StateOption,
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation."),
) -> None:
    """Discard the saved traversal state. The next pass sends every row."""
    settings = _load_or_exit(config_file, state_file=state_file)
    path = settings.traversal.state_file
    if not path.exists():
        print_info("No traversal state to clear.")
        return
    if not yes and not typer.confirm(f"Delete {path}?"):
        raise typer.Exit(0)
    CheckpointManager(path).clear()
    print_success(f"Cleared traversal state: {path}")


# =============================================================================
# TABLES Command
# =============================================================================
@app.command()
def tables(
    config_file: Optional[Path] = ConfigOption,
    database: Optional[Path] = DatabaseOption,
) -> None:
    """List the tables of a SQLite source with their keys and row counts."""
    settings = _load_or_exit(config_file, database=database)
    if settings.source.sqlite_path is None:
        print_error("source.sqlite_path is required")
        raise typer.Exit(1)

    try:
        with SQLiteSource(settings.source.sqlite_path) as source:
            infos = source.get_tables()
    except sqlite3.Error as e:
        print_error(f"Cannot read {settings.source.sqlite_path}: {e}")
        raise typer.Exit(1)

    table = Table(title="Tables", border_style="cyan")
    table.add_column("Table", style="cyan")
    table.add_column("Primary Key")
    table.add_column("Columns", justify="right")
    table.add_column("Rows", justify="right")
    for info in infos:
        table.add_row(
            info.name,
            ", ".join(info.primary_keys) or "[dim]none[/dim]",
            str(len(info.columns)),
            f"{info.row_count:,}",
        )
    console.print(table)


# =============================================================================
# CONFIG Command
# =============================================================================
@app.command()
def config(
    show: bool = typer.Option(
        False,
        "--show",
        help="Show current configuration.",
    ),
    init: bool = typer.Option(
        False,
        "--init",
        help="Write a config file with the default settings.",
    ),
    config_file: Optional[Path] = ConfigOption,
    output: Path = typer.Option(
        Path("config.toml"),
        "--output",
        "-o",
        help="Output path for config file.",
    ),
) -> None:
    """Manage configuration."""
    if init:
        if output.exists():
            print_error(f"{output} already exists")
            raise typer.Exit(1)
        Settings().to_file(output)
        print_success(f"Generated config file: {output}")
        return

    if show:
        settings = _load_or_exit(config_file)
        table = Table(title="Current Configuration", border_style="cyan")
        table.add_column("Setting", style="cyan")
        table.add_column("Value")

        not_set = "[dim]not set[/dim]"
        record = settings.record
        table.add_row("Database Name", settings.db_name)
        table.add_row("Source", settings.source.type.value)
        table.add_row("Source Path", str(settings.source.sqlite_path or not_set))
        table.add_row("Query", settings.source.query or not_set)
        table.add_row("Incremental Query", settings.source.incremental_query or not_set)
        table.add_row("Primary Keys", ", ".join(record.primary_keys) or not_set)
        table.add_row("Record Mode", record.mode.value)
        table.add_row("Batch Hint", str(settings.traversal.batch_hint))
        table.add_row("Checksum", settings.traversal.checksum_algorithm)
        table.add_row("State File", str(settings.traversal.state_file))
        table.add_row("Feed File", str(settings.traversal.feed_file))

        console.print(table)
        return

    # Default: show help
    console.print("Use --show to view config or --init to create config file.")


# =============================================================================
# Helper Functions
# =============================================================================
def _load_or_exit(config_file: Path | None = None, **overrides: Any) -> Settings:
    try:
        return _build_settings(config_file, **overrides)
    except (ValueError, FileNotFoundError) as e:
        print_error(str(e))
        raise typer.Exit(1)


def _build_settings(
    config_file: Path | None = None,
    **overrides: Any,
) -> Settings:
    """Build settings from config file and overrides."""
    settings = load_settings(config_file)

    # Apply CLI overrides
    if overrides.get("database"):
        settings.source.type = SourceType.SQLITE
        settings.source.sqlite_path = Path(overrides["database"])
    if overrides.get("query"):
        settings.source.query = overrides["query"]
    if overrides.get("primary_keys"):
        settings.record.primary_keys = [
            key.strip() for key in overrides["primary_keys"].split(",") if key.strip()
        ]
    if overrides.get("feed"):
        settings.traversal.feed_file = Path(overrides["feed"])
    if overrides.get("state_file"):
        settings.traversal.state_file = Path(overrides["state_file"])

    return settings


if __name__ == "__main__":
    app()
