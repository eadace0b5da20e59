"""Rich rendering for batch plans, run summaries and cache listings."""

from __future__ import annotations

import logging
from types import TracebackType
from typing import Sequence

from rich.console import Console
from rich.progress import (
    BarColumn,
    DownloadColumn,
    Progress,
    TaskID,
    TextColumn,
    TimeRemainingColumn,
    TransferSpeedColumn,
)
from rich.table import Table

from hubrunner.cache.store import CachedFile, CachedRepository, CacheUsage
from hubrunner.cli._task_executor import BatchReport, TaskExecutionResult

from .shared import format_size

logger = logging.getLogger(__name__)

_STATUS_STYLES = {
    "succeeded": "green",
    "failed": "bold red",
    "skipped": "yellow",
    "planned": "cyan",
}


def _status_cell(status: str) -> str:
    style = _STATUS_STYLES.get(status, "white")
    return f"[{style}]{status}[/{style}]"


def print_batch_report(report: BatchReport, *, console: Console | None = None) -> None:
    """Render one row per task followed by the run totals."""
    console = console or Console()
    title = "Planned Tasks" if report.dry_run else "Batch Results"
    if report.name:
        title = f"{title}: {report.name}"
    caption_parts = [
        f"{report.succeeded} succeeded",
        f"{report.failed} failed",
        f"{report.skipped} skipped",
    ]
    if report.planned:
        caption_parts.append(f"{report.planned} planned")
    if report.aborted:
        caption_parts.append("aborted")
    table = Table(title=title, caption=" | ".join(caption_parts), expand=True)
    table.add_column("#", justify="right", style="dim")
    table.add_column("Kind", style="magenta")
    table.add_column("Task", style="bold cyan", overflow="fold")
    table.add_column("Status")
    table.add_column("Detail", overflow="fold")
    table.add_column("Time", justify="right")

    for position, result in enumerate(report.results, start=1):
        table.add_row(
            str(position),
            result.kind,
            result.name,
            _status_cell(result.status),
            _result_detail(result),
            f"{result.duration_seconds:.2f}s" if result.duration_seconds is not None else "-",
        )
    console.print(table)


def _result_detail(result: TaskExecutionResult) -> str:
    if result.status == "failed":
        return f"[red]{result.error_kind}[/red]: {result.error}"
    return result.detail or "-"


def log_batch_summary(report: BatchReport) -> None:
    total = len(report.results)
    if report.dry_run:
        logger.info("Dry run complete: %d task(s) planned, %d skipped (total %d).", report.planned, report.skipped, total)
        return
    logger.info(
        "Run complete: %d succeeded, %d skipped, %d failed (total %d)%s.",
        report.succeeded,
        report.skipped,
        report.failed,
        total,
        ", aborted early" if report.aborted else "",
    )


def print_generated_text(result: TaskExecutionResult, *, console: Console | None = None) -> None:
    if result.text is None:
        return
    console = console or Console()
    console.rule(f"[bold]{result.name}")
    console.print(result.text, markup=False, highlight=False)


def print_cached_models(
    entries: Sequence[CachedRepository],
    *,
    verbose: bool = False,
    console: Console | None = None,
) -> None:
    console = console or Console()
    if not entries:
        console.print("[yellow]No models in the cache.[/yellow]")
        return
    table = Table(title="Cached Models", show_header=True, header_style="bold cyan")
    table.add_column("Model", style="magenta", overflow="fold")
    table.add_column("Files", justify="right")
    table.add_column("Size", style="green", justify="right")
    for entry in entries:
        table.add_row(entry.display_name, str(len(entry.files)), format_size(entry.total_size_bytes))
        if verbose:
            for item in entry.files:
                table.add_row(f"  [dim]{item.name}[/dim]", "", f"[dim]{format_size(item.size_bytes)}[/dim]")
    console.print(table)


def print_cache_usage(usage: CacheUsage, *, console: Console | None = None) -> None:
    console = console or Console()
    table = Table(
        title="Cache Usage",
        caption=f"Total: {format_size(usage.total_bytes)}",
        show_header=True,
        header_style="bold cyan",
    )
    table.add_column("Model", style="magenta", overflow="fold")
    table.add_column("Size", style="green", justify="right")
    table.add_column("Share", justify="right")
    for entry in usage.entries:
        share = entry.total_size_bytes / usage.total_bytes * 100 if usage.total_bytes else 0.0
        table.add_row(entry.display_name, format_size(entry.total_size_bytes), f"{share:.1f}%")
    console.print(table)


def print_file_listing(
    repository_id: str,
    remote_files: Sequence[tuple[str, int | None]],
    local_files: Sequence[CachedFile] = (),
    *,
    console: Console | None = None,
) -> None:
    """Show the GGUF files of a hub repository, flagging those already cached."""
    console = console or Console()
    cached = {item.name for item in local_files}
    table = Table(title=f"GGUF files in {repository_id}", show_header=True, header_style="bold cyan")
    table.add_column("File", style="magenta", overflow="fold")
    table.add_column("Size", style="green", justify="right")
    table.add_column("Cached", justify="center")
    for name, size in remote_files:
        table.add_row(name, format_size(size), "[green]yes[/green]" if name in cached else "-")
    console.print(table)


class RichDownloadProgress:
    """Progress callback rendering each download as a rich progress bar.

    A call with ``downloaded == 0`` starts a new bar, so one instance can serve
    every download of a batch.
    """

    def __init__(self, *, console: Console | None = None, description: str = "Downloading") -> None:
        self.description = description
        self._progress = Progress(
            TextColumn("[bold blue]{task.description}"),
            BarColumn(),
            DownloadColumn(),
            TransferSpeedColumn(),
            TimeRemainingColumn(),
            console=console,
            transient=True,
        )
        self._task: TaskID | None = None

    def __enter__(self) -> "RichDownloadProgress":
        self._progress.start()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self._progress.stop()

    def __call__(self, downloaded: int, total: int | None) -> None:
        if downloaded == 0 or self._task is None:
            if self._task is not None:
                self._progress.remove_task(self._task)
            self._task = self._progress.add_task(self.description, total=total)
        self._progress.update(self._task, completed=downloaded, total=total)


__all__ = [
    "RichDownloadProgress",
    "log_batch_summary",
    "print_batch_report",
    "print_cache_usage",
    "print_cached_models",
    "print_file_listing",
    "print_generated_text",
]
