import threading
from typing import Dict, Optional
from rich.console import Console
from rich.progress import Progress, SpinnerColumn, TextColumn, BarColumn, TaskProgressColumn, TimeElapsedColumn, TaskID
from rich.table import Table
from vidsqueeze.infrastructure.event_bus import EventBus
from vidsqueeze.domain.models import CompressionStatus, VideoFile, format_size
from vidsqueeze.domain.events import (
    JobQueued, JobStarted, JobProgressUpdated, JobCompleted,
    JobFailed, JobCancelled, JobRetrying, ProcessingFinished,
)


class ConsoleReporter:
    """Subscribes to EventBus and renders queue activity with rich.

    One progress bar per running file, a line per finished file and a
    summary table once processing finishes. Cancellation is reported in a
    muted style, never as an error.
    """

    def __init__(self, bus: EventBus, console: Optional[Console] = None):
        self.bus = bus
        self.console = console or Console()
        self.progress = Progress(
            SpinnerColumn(),
            TextColumn("[bold]{task.description}"),
            BarColumn(),
            TaskProgressColumn(),
            TimeElapsedColumn(),
            console=self.console,
            transient=True,
        )
        self._tasks: Dict[str, TaskID] = {}
        self._files: Dict[str, VideoFile] = {}
        self._lock = threading.Lock()
        self._setup_subscriptions()

    def _setup_subscriptions(self):
        self.bus.subscribe(JobQueued, self.on_job_queued)
        self.bus.subscribe(JobStarted, self.on_job_started)
        self.bus.subscribe(JobProgressUpdated, self.on_job_progress)
        self.bus.subscribe(JobCompleted, self.on_job_completed)
        self.bus.subscribe(JobFailed, self.on_job_failed)
        self.bus.subscribe(JobCancelled, self.on_job_cancelled)
        self.bus.subscribe(JobRetrying, self.on_job_retrying)
        self.bus.subscribe(ProcessingFinished, self.on_processing_finished)

    def __enter__(self) -> "ConsoleReporter":
        self.progress.start()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.progress.stop()

    def _remember(self, file: VideoFile):
        with self._lock:
            self._files[file.id] = file

    def _finish_task(self, file: VideoFile):
        with self._lock:
            task_id = self._tasks.pop(file.id, None)
        if task_id is not None:
            self.progress.remove_task(task_id)

    def on_job_queued(self, event: JobQueued):
        self._remember(event.file)

    def on_job_started(self, event: JobStarted):
        self._remember(event.file)
        task_id = self.progress.add_task(event.file.name, total=1.0)
        with self._lock:
            self._tasks[event.file.id] = task_id

    def on_job_progress(self, event: JobProgressUpdated):
        with self._lock:
            task_id = self._tasks.get(event.file.id)
        if task_id is not None:
            self.progress.update(task_id, completed=event.progress)

    def on_job_completed(self, event: JobCompleted):
        file = event.file
        self._remember(file)
        self._finish_task(file)
        self.progress.console.print(
            f"[green]✓[/green] {file.name}: {file.formatted_original_size} → "
            f"{file.formatted_compressed_size} ({file.formatted_compression_ratio} saved)"
        )
        if file.is_compressed_larger:
            self.progress.console.print(
                "  [yellow]! Compressed file is larger than the original; consider a higher CRF[/yellow]"
            )

    def on_job_failed(self, event: JobFailed):
        file = event.file
        self._remember(file)
        self._finish_task(file)
        self.progress.console.print(f"[red]✗[/red] {file.name}: {event.error_message} [dim](E{event.error_code})[/dim]")
        if event.recovery_hint:
            self.progress.console.print(f"  [dim]{event.recovery_hint}[/dim]")

    def on_job_cancelled(self, event: JobCancelled):
        self._remember(event.file)
        self._finish_task(event.file)
        self.progress.console.print(f"[dim]– {event.file.name}: cancelled[/dim]")

    def on_job_retrying(self, event: JobRetrying):
        self._remember(event.file)
        self.progress.console.print(f"[yellow]↻[/yellow] {event.file.name}: retrying (attempt {event.attempt})")

    def on_processing_finished(self, event: ProcessingFinished):
        self.console.print(self.build_summary_table())
        self.console.print(self.summary_line(event))

    def build_summary_table(self) -> Table:
        with self._lock:
            files = list(self._files.values())

        table = Table(title="Compression summary", show_lines=False)
        table.add_column("File", overflow="fold")
        table.add_column("Status")
        table.add_column("Original", justify="right")
        table.add_column("Compressed", justify="right")
        table.add_column("Saved", justify="right")

        styles = {
            CompressionStatus.COMPLETED: "green",
            CompressionStatus.FAILED: "red",
            CompressionStatus.CANCELLED: "dim",
        }
        for file in files:
            style = styles.get(file.status, "")
            table.add_row(
                file.name,
                f"[{style}]{file.status.display_text}[/{style}]" if style else file.status.display_text,
                file.formatted_original_size,
                file.formatted_compressed_size,
                file.formatted_compression_ratio,
            )
        return table

    def summary_line(self, event: ProcessingFinished) -> str:
        with self._lock:
            completed = [f for f in self._files.values() if f.status is CompressionStatus.COMPLETED]
        original = sum(f.original_size for f in completed)
        compressed = sum(f.compressed_size or 0 for f in completed)
        saved = f"{(1.0 - compressed / original) * 100.0:.1f}%" if original else "-"
        caption = f"{event.completed} completed, {event.failed} failed, {event.cancelled} cancelled"
        if event.stopped:
            caption += " (stopped)"
        return f"{caption} | {format_size(original)} → {format_size(compressed)} ({saved} saved)"
