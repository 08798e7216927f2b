"""Human-readable progress reports rendered with rich.

The generator only ever reads the progress file, so it can run in another
process while a batch is active; atomic replace on the writer side means it
always sees a whole snapshot.
"""

import io
import logging
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Mapping, Optional

from rich.console import Console, Group, RenderableType
from rich.live import Live
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from hlspipe.orchestrator.progress import ProgressStore
from hlspipe.orchestrator.state import current_step, last_completed_step
from hlspipe.schemas.progress import BatchRecord, ItemRecord

logger = logging.getLogger(__name__)

STEP_ICONS = {
    "completed": "✓",
    "processing": "►",
    "failed": "✗",
    "pending": "○",
}

NO_PROGRESS_MESSAGE = "No progress file found. Run the processing script first."


def _get_status_color(status: str) -> str:
    """Get Rich color for an item or step status.

    Color coding:
    - completed: green
    - failed: red
    - processing: yellow
    - pending: dim
    """
    if status == "completed":
        return "green"
    elif status == "failed":
        return "red"
    elif status == "processing":
        return "yellow"
    elif status == "pending":
        return "dim"
    else:
        return "white"


def format_time(value: Optional[datetime]) -> str:
    if value is None:
        return "N/A"
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC")


def format_duration(start: Optional[datetime], end: Optional[datetime]) -> str:
    if start is None or end is None:
        return "N/A"
    seconds = max(0, int((end - start).total_seconds()))
    return f"{seconds // 60}m {seconds % 60}s"


def step_progress(steps: Mapping[str, str]) -> tuple[int, int, int]:
    """Return (completed, total, percentage) for a step mapping."""
    total = len(steps)
    completed = sum(1 for s in steps.values() if s == "completed")
    percentage = round(completed * 100 / total) if total else 0
    return completed, total, percentage


class ReportGenerator:
    """Render ProgressStore snapshots as text, once or on a timed refresh.

    Args:
        console: Console to print to; a default stdout console if None
        now: Clock used for the elapsed time of running items
    """

    def __init__(
        self,
        console: Optional[Console] = None,
        now: Optional[Callable[[], datetime]] = None,
    ):
        self.console = console or Console()
        self._now = now or (lambda: datetime.now(timezone.utc))

    def _duration(self, item: ItemRecord) -> str:
        if item.status == "processing" and item.start_time is not None:
            return f"{format_duration(item.start_time, self._now())} (running)"
        if item.status in ("completed", "failed"):
            return format_duration(item.start_time, item.end_time)
        return "N/A"

    def _summary(self, batch: BatchRecord) -> Table:
        items = list(batch.items.values())
        counts = {
            status: sum(1 for i in items if i.status == status)
            for status in ("completed", "failed", "processing", "pending")
        }
        total = len(items)
        percentage = round(counts["completed"] * 100 / total) if total else 0

        grid = Table.grid(padding=(0, 2))
        grid.add_column(style="bold")
        grid.add_column()
        grid.add_row("Total Videos:", str(total))
        grid.add_row("Completed:", f"[green]{counts['completed']}[/green] ({percentage}%)")
        grid.add_row("Failed:", f"[red]{counts['failed']}[/red]")
        grid.add_row("Processing:", f"[yellow]{counts['processing']}[/yellow]")
        grid.add_row("Pending:", str(counts["pending"]))
        grid.add_row("Last Run:", format_time(batch.last_run))
        return grid

    def _details(self, names: list[str], batch: BatchRecord) -> Table:
        table = Table(show_header=True, header_style="bold blue")
        table.add_column("Video")
        table.add_column("Status")
        table.add_column("Steps", justify="right")
        table.add_column("Started")
        table.add_column("Duration")
        table.add_column("Retries", justify="right")

        for name in names:
            item = batch.items[name]
            done, total, percentage = step_progress(item.steps)
            color = _get_status_color(item.status)
            table.add_row(
                escape(name),
                f"[{color}]{item.status.upper()}[/{color}]",
                f"{done}/{total} ({percentage}%)",
                format_time(item.start_time),
                self._duration(item),
                str(item.retry_count),
            )
        return table

    def _step_breakdown(self, name: str, item: ItemRecord) -> Text:
        text = Text(f"{name}\n", style="bold")
        for step, status in item.steps.items():
            text.append(f"  {STEP_ICONS.get(status, '?')} {step}: ", style=_get_status_color(status))
            text.append(f"{status}\n")
        if item.error:
            text.append(f"  Error: {item.error}\n", style="red")
        return text

    def build(self, batch: BatchRecord, progress_file: Optional[Path] = None) -> RenderableType:
        """Compose the full report for one snapshot.

        Sections: header, overall summary, per-video table (sorted by name),
        step breakdown of processing and failed videos, failed videos with
        their last completed step, currently processing videos, file path.
        """
        names = sorted(batch.items)
        parts: list[RenderableType] = [
            Panel(Text("VIDEO PROCESSING PROGRESS TRACKER", justify="center"), border_style="blue"),
            Text("OVERALL SUMMARY", style="bold"),
            self._summary(batch),
            Text(""),
        ]

        if names:
            parts.extend([Text("VIDEO DETAILS", style="bold"), self._details(names, batch)])

        active = [n for n in names if batch.items[n].status in ("processing", "failed")]
        if active:
            parts.append(Text("\nSTEP BREAKDOWN", style="bold"))
            parts.extend(self._step_breakdown(n, batch.items[n]) for n in active)

        failed = [n for n in names if batch.items[n].status == "failed"]
        if failed:
            lines = Text("FAILED VIDEOS NEED ATTENTION\n", style="bold red")
            for name in failed:
                item = batch.items[name]
                lines.append(f"• {name}\n")
                lines.append(f"  Last completed step: {last_completed_step(item.steps) or 'none'}\n")
                lines.append(f"  Error: {item.error or 'unknown'}\n")
                lines.append(f"  Retries: {item.retry_count}\n")
            parts.append(lines)

        processing = [n for n in names if batch.items[n].status == "processing"]
        if processing:
            lines = Text("CURRENTLY PROCESSING\n", style="bold yellow")
            for name in processing:
                lines.append(f"• {name}\n")
                step = current_step(batch.items[name].steps)
                if step:
                    lines.append(f"  Current step: {step}\n")
            parts.append(lines)

        if progress_file is not None:
            parts.append(Text(f"Progress file: {progress_file}", style="dim"))
        return Group(*parts)

    def render_text(
        self,
        batch: BatchRecord,
        width: int = 100,
        progress_file: Optional[Path] = None,
    ) -> str:
        """Plain-text rendering, identical for identical input and clock."""
        buffer = io.StringIO()
        console = Console(file=buffer, width=width, color_system=None, force_terminal=False)
        console.print(self.build(batch, progress_file))
        return buffer.getvalue()

    def show(self, path: str | Path) -> bool:
        """Print the report for a progress file.

        Returns:
            False (after printing a notice) if the file does not exist

        Raises:
            CorruptStateError: If the file exists but does not parse
        """
        batch = ProgressStore.read_snapshot(path)
        if batch is None:
            self.console.print(f"[red]✗[/red] {NO_PROGRESS_MESSAGE}")
            return False
        self.console.print(self.build(batch, Path(path)))
        return True

    def _renderable_for(self, path: Path) -> RenderableType:
        batch = ProgressStore.read_snapshot(path)
        if batch is None:
            return Text(f"{NO_PROGRESS_MESSAGE} Waiting...", style="yellow")
        return self.build(batch, path)

    def watch(
        self,
        path: str | Path,
        interval: float = 3.0,
        max_refreshes: Optional[int] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> int:
        """Re-read and re-render the report every interval seconds.

        Runs until interrupted, or until max_refreshes renders have been made.

        Returns:
            Number of renders performed
        """
        path = Path(path)
        renders = 1
        with Live(self._renderable_for(path), console=self.console, auto_refresh=False) as live:
            while max_refreshes is None or renders < max_refreshes:
                sleep(interval)
                live.update(self._renderable_for(path), refresh=True)
                renders += 1
        logger.debug(f"Watch mode stopped after {renders} renders")
        return renders
