import io
import pytest
from pathlib import Path
from rich.console import Console
from vidsqueeze.domain.errors import CompressionError, ErrorKind
from vidsqueeze.domain.models import VideoFile
from vidsqueeze.domain.events import (
    JobQueued, JobStarted, JobProgressUpdated, JobCompleted,
    JobFailed, JobCancelled, JobRetrying, ProcessingFinished,
)
from vidsqueeze.ui.reporter import ConsoleReporter


@pytest.fixture
def output():
    return io.StringIO()


@pytest.fixture
def reporter(event_bus, output):
    console = Console(file=output, width=160, force_terminal=False, color_system=None)
    return ConsoleReporter(event_bus, console=console)


def make_file(name="clip.mp4", size=1000) -> VideoFile:
    return VideoFile(path=Path(f"/videos/{name}"), original_size=size, duration=10.0)


def test_completed_line(reporter, event_bus, output):
    vf = make_file()
    vf.mark_compressing()
    vf.mark_completed(250)
    event_bus.publish(JobCompleted(file=vf))

    text = output.getvalue()
    assert "clip.mp4" in text
    assert "75.0% saved" in text
    assert "larger than the original" not in text


def test_larger_output_warning(reporter, event_bus, output):
    vf = make_file()
    vf.mark_compressing()
    vf.mark_completed(5000)
    event_bus.publish(JobCompleted(file=vf))
    assert "larger than the original" in output.getvalue()


def test_failure_shows_hint(reporter, event_bus, output):
    vf = make_file()
    err = CompressionError(ErrorKind.OUTPUT_PATH_ERROR, "/videos")
    vf.mark_failed(err)
    event_bus.publish(JobFailed(
        file=vf, error_code=err.code, error_message=err.message,
        recovery_hint=err.recovery_hint, retryable=err.retryable,
    ))
    text = output.getvalue()
    assert "Cannot create output file: /videos" in text
    assert "E1008" in text
    assert "Check write permissions" in text


def test_cancellation_is_not_an_error(reporter, event_bus, output):
    vf = make_file()
    vf.mark_cancelled()
    event_bus.publish(JobCancelled(file=vf))
    text = output.getvalue()
    assert "cancelled" in text
    assert "✗" not in text


def test_progress_task_lifecycle(reporter, event_bus):
    vf = make_file()
    event_bus.publish(JobQueued(file=vf))
    vf.mark_compressing()
    event_bus.publish(JobStarted(file=vf))
    assert vf.id in reporter._tasks
    event_bus.publish(JobProgressUpdated(file=vf, progress=0.5))
    task = reporter.progress.tasks[0]
    assert task.completed == 0.5
    vf.mark_cancelled()
    event_bus.publish(JobCancelled(file=vf))
    assert reporter._tasks == {}


def test_retry_line(reporter, event_bus, output):
    event_bus.publish(JobRetrying(file=make_file(), attempt=2))
    assert "attempt 2" in output.getvalue()


def test_summary_table(reporter, event_bus, output):
    done = make_file("done.mp4")
    done.mark_compressing()
    done.mark_completed(500)
    stopped = make_file("stopped.mp4")
    stopped.mark_cancelled()
    event_bus.publish(JobCompleted(file=done))
    event_bus.publish(JobCancelled(file=stopped))
    event_bus.publish(ProcessingFinished(completed=1, cancelled=1, stopped=True))

    text = output.getvalue()
    assert "Compression summary" in text
    assert "done.mp4" in text and "stopped.mp4" in text
    assert "1 completed, 0 failed, 1 cancelled (stopped)" in text
    assert "50.0% saved" in text


def test_summary_line_without_completed_files(reporter, event_bus):
    cancelled = make_file("gone.mp4")
    cancelled.mark_cancelled()
    event_bus.publish(JobCancelled(file=cancelled))

    line = reporter.summary_line(ProcessingFinished(cancelled=1))
    assert line == "0 completed, 0 failed, 1 cancelled | 0.0 B → 0.0 B (- saved)"
