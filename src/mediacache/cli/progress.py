"""Rich progress display for preload batches."""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any

from rich.console import Console, Group
from rich.live import Live
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from mediacache.types import LoadingProgress, PreloadResult, PreloadStage


def format_bytes(size: int) -> str:
    """Human-readable byte count."""
    value = float(size)
    for unit in ("B", "KB", "MB", "GB"):
        if value < 1024 or unit == "GB":
            return f"{value:.0f} {unit}" if unit == "B" else f"{value:.1f} {unit}"
        value /= 1024
    return f"{value:.1f} GB"


@dataclass
class AssetRow:
    """Display state of one asset in the batch."""

    asset_id: str
    stage: PreloadStage = PreloadStage.PENDING
    loaded: int = 0
    total: int = 0
    detail: str = ""
    started_at: float | None = None
    completed_at: float | None = None

    @property
    def duration_str(self) -> str:
        if self.started_at is None:
            return ""
        end = self.completed_at or time.time()
        return f"{end - self.started_at:.1f}s"

    @property
    def amount(self) -> str:
        if self.total > 0:
            return f"{format_bytes(self.loaded)} / {format_bytes(self.total)}"
        if self.loaded:
            return format_bytes(self.loaded)
        return ""


class PreloadProgress:
    """Live table of per-asset preload progress."""

    STATUS_ICONS = {
        PreloadStage.PENDING: "[dim]...[/dim]",
        PreloadStage.FETCHING: "[yellow]GET[/yellow]",
        PreloadStage.PROCESSING: "[yellow]...[/yellow]",
        PreloadStage.CACHING: "[yellow]SAV[/yellow]",
        PreloadStage.COMPLETE: "[green]OK[/green]",
        PreloadStage.ERROR: "[red]ERR[/red]",
    }

    def __init__(self, console: Console, asset_ids: list[str]) -> None:
        """Initialize progress display.

        Args:
            console: Rich console to write to.
            asset_ids: Assets in the order they will be processed.
        """
        self.console = console
        self.started_at = time.time()
        self.rows: dict[str, AssetRow] = {a: AssetRow(asset_id=a) for a in asset_ids}
        self.is_complete = False
        self.cancelled = False
        self._live: Live | None = None

    def _build_display(self) -> Panel:
        table = Table(show_header=False, box=None, padding=(0, 1))
        table.add_column("Status", width=4)
        table.add_column("Asset", width=24)
        table.add_column("Progress", width=22)
        table.add_column("Detail", style="dim")
        table.add_column("Time", width=7, justify="right", style="dim")

        for row in self.rows.values():
            if row.stage is PreloadStage.COMPLETE:
                name_style = "green"
            elif row.stage is PreloadStage.ERROR:
                name_style = "red"
            elif row.stage is PreloadStage.PENDING:
                name_style = "dim"
            else:
                name_style = "bold yellow"

            table.add_row(
                self.STATUS_ICONS.get(row.stage, ""),
                Text(row.asset_id, style=name_style),
                row.amount,
                row.detail[:45] + "..." if len(row.detail) > 45 else row.detail,
                row.duration_str,
            )

        done = sum(1 for r in self.rows.values() if r.stage.is_terminal)
        footer = Text()
        footer.append("Done: ", style="dim")
        footer.append(f"{done}/{len(self.rows)}", style="cyan")
        footer.append("  |  ", style="dim")
        footer.append("Elapsed: ", style="dim")
        footer.append(f"{time.time() - self.started_at:.0f}s", style="cyan")

        if self.cancelled:
            title, border_style = "[bold yellow]Preload Cancelled[/bold yellow]", "yellow"
        elif self.is_complete:
            title, border_style = "[bold green]Preload Complete[/bold green]", "green"
        else:
            title, border_style = "[bold cyan]Preloading...[/bold cyan]", "cyan"

        return Panel(Group(table, Text(""), footer), title=title, border_style=border_style)

    def update(self, progress: LoadingProgress) -> None:
        """Progress callback for Preloader.preload_many()."""
        row = self.rows.setdefault(progress.asset_id, AssetRow(asset_id=progress.asset_id))
        if row.started_at is None:
            row.started_at = time.time()
        row.stage = progress.stage
        row.loaded = progress.loaded
        row.total = progress.total
        if progress.error:
            row.detail = progress.error
        elif progress.total > 0 and progress.stage is PreloadStage.FETCHING:
            row.detail = f"{progress.percentage}%"
        if progress.stage.is_terminal:
            row.completed_at = time.time()
        self._refresh()

    def record(self, result: PreloadResult) -> None:
        """Annotate a row with its final result."""
        row = self.rows.setdefault(result.asset_id, AssetRow(asset_id=result.asset_id))
        if result.success:
            row.detail = "from cache" if result.from_cache else (
                "downloaded" if result.persisted else "downloaded, not cached"
            )
        elif result.cancelled:
            row.detail = "cancelled"
        self._refresh()

    def mark_complete(self, cancelled: bool = False) -> None:
        self.is_complete = True
        self.cancelled = cancelled
        self._refresh()

    def _refresh(self) -> None:
        if self._live:
            self._live.update(self._build_display())

    def __enter__(self) -> PreloadProgress:
        """Start the live display."""
        self._live = Live(
            self._build_display(),
            console=self.console,
            refresh_per_second=4,
            transient=False,
            auto_refresh=True,
            get_renderable=self._build_display,
        )
        self._live.__enter__()
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Stop the live display."""
        if self._live:
            self._live.update(self._build_display())
            self._live.__exit__(exc_type, exc_val, exc_tb)
            self._live = None
