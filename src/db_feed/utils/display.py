"""
Rich Terminal Display Components.

Provides console UI for:
- Live traversal progress
- Statistics tables
- Status updates
- Summary reports
"""

from __future__ import annotations

from typing import Any

from rich.console import Console, Group
from rich.live import Live
from rich.panel import Panel
from rich.progress import Progress, SpinnerColumn, TextColumn, TimeElapsedColumn
from rich.table import Table


console = Console()


class ProgressDisplay:
    """
    Rich terminal UI for traversal progress.

    The size of the result set is not known up front, so progress is a
    spinner with running counters rather than a bar.

    Example:
        display = ProgressDisplay()
        display.start(db_name="inventory", source="inventory.db")

        display.update(rows_scanned=500, queued=12, rate=100.0)

        display.stop()
    """

    def __init__(self) -> None:
        self.progress = Progress(
            SpinnerColumn(),
            TextColumn("[bold blue]{task.description}"),
            TextColumn("{task.completed:,} rows"),
            TimeElapsedColumn(),
            console=console,
        )
        self._live: Live | None = None
        self._task_id: Any = None
        self._stats: dict[str, Any] = {}

    def start(self, db_name: str, source: str) -> None:
        """Start the progress display."""
        self._stats = {
            "db_name": db_name,
            "source": source,
            "rows_scanned": 0,
            "queued": 0,
            "deleted": 0,
            "skipped": 0,
            "rate": 0.0,
        }
        self._task_id = self.progress.add_task("[cyan]TRAVERSE", total=None)
        self._live = Live(
            self._build_display(),
            console=console,
            refresh_per_second=4,
        )
        self._live.start()

    def stop(self) -> None:
        """Stop the progress display."""
        if self._live:
            self._live.stop()
            self._live = None

    def update(self, **values: Any) -> None:
        """Update counters (rows_scanned, queued, deleted, skipped, rate)."""
        self._stats.update({k: v for k, v in values.items() if v is not None})
        if self._task_id is not None and "rows_scanned" in values:
            self.progress.update(self._task_id, completed=values["rows_scanned"])
        if self._live:
            self._live.update(self._build_display())

    def _build_display(self) -> Panel:
        """Build the display panel."""
        info_table = Table.grid(padding=(0, 2))
        info_table.add_column(style="dim")
        info_table.add_column()
        info_table.add_row("Database:", self._stats.get("db_name", ""))
        info_table.add_row("Source:", self._stats.get("source", ""))

        stats_table = Table.grid(padding=(0, 3))
        for _ in range(4):
            stats_table.add_column(justify="center")
        stats_table.add_row(
            f"[green]Queued:[/green] {self._stats.get('queued', 0):,}",
            f"[red]Deleted:[/red] {self._stats.get('deleted', 0):,}",
            f"[yellow]Skipped:[/yellow] {self._stats.get('skipped', 0):,}",
            f"[cyan]Speed:[/cyan] {self._stats.get('rate', 0):,.0f}/s",
        )

        return Panel(
            Group(info_table, self.progress, stats_table),
            title="[bold white]DB Feed - Traversal[/bold white]",
            border_style="blue",
            padding=(1, 2),
        )

    def __enter__(self) -> "ProgressDisplay":
        return self

    def __exit__(self, *args: Any) -> None:
        self.stop()


def print_summary(stats: dict[str, Any]) -> None:
    """Print a summary table after a traversal."""
    table = Table(title="Traversal Summary", border_style="green")

    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right")

    table.add_row("Duration", f"{stats.get('duration', 0):.1f}s")
    table.add_row("Rows Scanned", f"{stats.get('rows_scanned', 0):,}")
    table.add_row("New", f"{stats.get('added', 0):,}")
    table.add_row("Changed", f"{stats.get('changed', 0):,}")
    table.add_row("Unchanged", f"{stats.get('unchanged', 0):,}")
    table.add_row("Deleted", f"{stats.get('deleted', 0):,}")
    table.add_row("Skipped", f"{stats.get('skipped', 0):,}")
    table.add_row("Records Sent", f"{stats.get('records_sent', 0):,}")
    if stats.get("transient_failures"):
        table.add_row("Query Failures", f"[yellow]{stats['transient_failures']:,}[/yellow]")
    table.add_row("Feed Written", format_bytes(stats.get("bytes_written", 0)))
    table.add_row("Average Speed", f"{stats.get('rows_per_second', 0):,.0f} rows/s")

    console.print(table)


def print_state(summary: dict[str, Any]) -> None:
    """Print the saved traversal state."""
    table = Table(title="Traversal State", border_style="blue")
    table.add_column("Property", style="cyan")
    table.add_column("Value")

    for key, value in summary.items():
        label = key.replace("_", " ").title()
        if value is None:
            text = "[dim]-[/dim]"
        elif isinstance(value, int):
            text = f"{value:,}"
        else:
            text = str(value)
        table.add_row(label, text)

    console.print(table)


def format_bytes(size: float) -> str:
    """Format bytes as human-readable string."""
    for unit in ["B", "KB", "MB", "GB"]:
        if abs(size) < 1024:
            return f"{size:.1f} {unit}"
        size /= 1024
    return f"{size:.1f} TB"


def print_error(message: str) -> None:
    """Print an error message."""
    console.print(f"[red bold]Error:[/red bold] {message}")


def print_success(message: str) -> None:
    """Print a success message."""
    console.print(f"[green bold]✓[/green bold] {message}")


def print_warning(message: str) -> None:
    """Print a warning message."""
    console.print(f"[yellow bold]⚠[/yellow bold] {message}")


def print_info(message: str) -> None:
    """Print an info message."""
    console.print(f"[blue]ℹ[/blue] {message}")
