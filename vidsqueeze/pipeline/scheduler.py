"""Job queue for video compression.

Owns the ordered set of VideoFile items and drives them through the
ProcessSupervisor, at most `queue.concurrency` runs at a time. Every status
mutation happens under `self._lock` (a Condition); events are published as
each transition happens so presentation code sees them exactly once.

Key responsibilities:
- FIFO launching with de-duplication by id and source path
- Cancellation of pending, launching and active items
- Graceful stop: no new launches, active runs resolve as cancelled
- Optional automatic retry of retryable failures
- Output path reservation so concurrent runs never share a destination
"""

import threading
import concurrent.futures
import logging
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Deque, Dict, List, Optional, Set
from vidsqueeze.config.models import AppConfig
from vidsqueeze.domain.errors import CompressionError, ErrorKind
from vidsqueeze.domain.models import CompressionStatus, VideoFile
from vidsqueeze.domain.events import (
    JobQueued,
    JobStarted,
    JobProgressUpdated,
    JobCompleted,
    JobFailed,
    JobCancelled,
    JobRetrying,
    ProcessingFinished,
)
from vidsqueeze.infrastructure.event_bus import EventBus
from vidsqueeze.infrastructure.output_paths import generate_output_path
from vidsqueeze.pipeline.supervisor import Outcome, ProcessSupervisor, RunHandle

WAIT_INTERVAL_S = 0.5


@dataclass
class QueueSummary:
    total: int = 0
    completed: int = 0
    failed: int = 0
    cancelled: int = 0
    pending: int = 0
    total_original_size: int = 0
    total_compressed_size: int = 0
    compression_ratio: Optional[float] = None  # % saved over completed items
    stopped: bool = False


class Scheduler:
    """Queue of compression jobs.

    Args:
        config: AppConfig; compression settings and queue limits are read from it.
        event_bus: EventBus receiving job lifecycle events.
        supervisor: ProcessSupervisor executing individual runs.
    """

    def __init__(self, config: AppConfig, event_bus: EventBus, supervisor: ProcessSupervisor):
        self.config = config
        self.event_bus = event_bus
        self.supervisor = supervisor
        self.logger = logging.getLogger(__name__)

        self._lock = threading.Condition()
        self._files: Dict[str, VideoFile] = {}
        self._pending: Deque[str] = deque()
        self._active: Dict[str, Optional[RunHandle]] = {}  # None while launching
        self._cancel_requested: Set[str] = set()  # cancelled before a handle existed
        self._requeue: Set[str] = set()
        self._attempts: Dict[str, int] = {}
        self._reserved_outputs: Dict[str, Path] = {}
        self._stop_requested = False
        self._running = False

    # -- queue management --------------------------------------------------

    def _is_scheduled(self, file: VideoFile) -> bool:
        for file_id in list(self._pending) + list(self._active):
            if file_id == file.id or self._files[file_id].path == file.path:
                return True
        return False

    def enqueue(self, file: VideoFile) -> bool:
        """Adds a file to the end of the queue; re-enqueuing a finished item retries it."""
        with self._lock:
            if self._is_scheduled(file):
                self.logger.debug(f"QUEUE_SKIP: {file.name} already queued")
                return False
            item = self._files.get(file.id, file)
            if item.status.is_finished:
                item.reset_for_retry()
            self._files[item.id] = item
            self._pending.append(item.id)
            self._attempts[item.id] = 0
            self.logger.info(f"QUEUE_ADD: {item.name} ({item.formatted_original_size})")
            self.event_bus.publish(JobQueued(file=item.snapshot()))
            self._lock.notify_all()
            return True

    def retry(self, file_id: str) -> bool:
        with self._lock:
            item = self._files.get(file_id)
            if item is None or not item.status.is_finished:
                return False
            if item.error is not None and not item.error.retryable:
                self.logger.warning(f"Retrying {item.name} although its error is not retryable: {item.error.message}")
            return self.enqueue(item)

    def retry_failed(self) -> int:
        with self._lock:
            failed = [fid for fid, f in self._files.items() if f.status is CompressionStatus.FAILED]
            return sum(1 for fid in failed if self.retry(fid))

    def remove(self, file_id: str) -> bool:
        """Drops an item from the queue; refused while it is being compressed."""
        with self._lock:
            if file_id not in self._files or file_id in self._active:
                return False
            if file_id in self._pending:
                self._pending.remove(file_id)
            item = self._files.pop(file_id)
            self._attempts.pop(file_id, None)
            self.logger.info(f"QUEUE_REMOVE: {item.name}")
            self._lock.notify_all()
            return True

    # -- cancellation ------------------------------------------------------

    def cancel(self, file_id: str) -> bool:
        """Cancels one item, whether pending, launching or compressing."""
        with self._lock:
            item = self._files.get(file_id)
            if item is None:
                return False
            if file_id in self._pending:
                self._pending.remove(file_id)
                item.mark_cancelled()
                self.logger.info(f"QUEUE_CANCEL: {item.name} (not started)")
                self.event_bus.publish(JobCancelled(file=item.snapshot()))
                self._lock.notify_all()
                return True
            if file_id not in self._active:
                return False
            handle = self._active[file_id]
            if handle is None:
                # Launch in progress; _process cancels right after start()
                self._cancel_requested.add(file_id)
                return True
            return self.supervisor.cancel(handle)

    def cancel_current(self) -> int:
        """Cancels the active run(s); the queue keeps going."""
        with self._lock:
            return sum(1 for fid in list(self._active) if self.cancel(fid))

    def cancel_all(self) -> int:
        with self._lock:
            count = 0
            for file_id in list(self._pending):
                if self.cancel(file_id):
                    count += 1
            return count + self.cancel_current()

    def stop(self):
        """Stops launching new runs and cancels the active ones. Pending items stay pending."""
        with self._lock:
            if not self._stop_requested:
                self.logger.info("QUEUE_STOP: stop requested")
            self._stop_requested = True
            self.cancel_current()
            self._lock.notify_all()

    # -- inspection --------------------------------------------------------

    @property
    def files(self) -> List[VideoFile]:
        with self._lock:
            return [f.snapshot() for f in self._files.values()]

    @property
    def is_running(self) -> bool:
        with self._lock:
            return self._running

    def get(self, file_id: str) -> Optional[VideoFile]:
        with self._lock:
            item = self._files.get(file_id)
            return item.snapshot() if item is not None else None

    def summary(self) -> QueueSummary:
        with self._lock:
            items = list(self._files.values())
            stopped = self._stop_requested
        completed = [f for f in items if f.status is CompressionStatus.COMPLETED]
        original = sum(f.original_size for f in completed)
        compressed = sum(f.compressed_size or 0 for f in completed)
        return QueueSummary(
            total=len(items),
            completed=len(completed),
            failed=sum(1 for f in items if f.status is CompressionStatus.FAILED),
            cancelled=sum(1 for f in items if f.status is CompressionStatus.CANCELLED),
            pending=sum(1 for f in items if f.status is CompressionStatus.PENDING),
            total_original_size=original,
            total_compressed_size=compressed,
            compression_ratio=(1.0 - compressed / original) * 100.0 if original > 0 else None,
            stopped=stopped,
        )

    # -- processing --------------------------------------------------------

    def run(self) -> QueueSummary:
        """Processes the queue until it drains or a stop takes effect."""
        concurrency = self.config.queue.concurrency
        with self._lock:
            if self._running:
                raise RuntimeError("Scheduler is already running")
            self._running = True
            self.logger.info(f"QUEUE_START: {len(self._pending)} pending, concurrency={concurrency}")

        in_flight: Set[concurrent.futures.Future] = set()
        try:
            with concurrent.futures.ThreadPoolExecutor(
                max_workers=concurrency, thread_name_prefix="vidsqueeze-worker"
            ) as executor:
                while True:
                    with self._lock:
                        while not self._stop_requested and self._pending and len(self._active) < concurrency:
                            file_id = self._pending.popleft()
                            output_path = self._reserve_output(file_id)
                            self._active[file_id] = None
                            in_flight.add(executor.submit(self._process, file_id, output_path))
                        if not self._active and (self._stop_requested or not self._pending):
                            break
                        self._lock.wait(timeout=WAIT_INTERVAL_S)

                    done = {f for f in in_flight if f.done()}
                    for future in done:
                        if future.exception() is not None:
                            self.logger.error(f"Worker failed with exception: {future.exception()}")
                    in_flight -= done
        finally:
            with self._lock:
                summary = self.summary()
                self._running = False
                self._stop_requested = False

        self.logger.info(
            f"QUEUE_DONE: completed={summary.completed} failed={summary.failed} "
            f"cancelled={summary.cancelled} pending={summary.pending} stopped={summary.stopped}"
        )
        self.event_bus.publish(ProcessingFinished(
            completed=summary.completed,
            failed=summary.failed,
            cancelled=summary.cancelled,
            stopped=summary.stopped,
        ))
        return summary

    def _reserve_output(self, file_id: str) -> Path:
        item = self._files[file_id]
        output_path = generate_output_path(
            item.path, self.config.general.output_suffix, reserved=set(self._reserved_outputs.values())
        )
        self._reserved_outputs[file_id] = output_path
        return output_path

    def _process(self, file_id: str, output_path: Path):
        item = self._files[file_id]
        handle: Optional[RunHandle] = None
        try:
            try:
                handle = self.supervisor.start(item, self.config.compression, output_path)
            except CompressionError as exc:
                self.logger.error(f"PREFLIGHT_FAILED: {item.name}: {exc.message}")
                self._resolve(file_id, Outcome.failed(exc))
                return

            with self._lock:
                item.mark_compressing()
                if item.duration <= 0 and handle.total_duration > 0:
                    item.duration = handle.total_duration
                self._active[file_id] = handle
                cancel_now = file_id in self._cancel_requested or self._stop_requested
                self.event_bus.publish(JobStarted(file=item.snapshot()))
            if cancel_now:
                self.supervisor.cancel(handle)

            for value in self.supervisor.progress(handle):
                self._record_progress(file_id, value)
            self._resolve(file_id, self.supervisor.await_termination(handle))
        except Exception as exc:
            self.logger.exception(f"WORKER_ERROR: {item.name}")
            if handle is not None:
                self.supervisor.cancel(handle)
            self._resolve(file_id, Outcome.failed(CompressionError(ErrorKind.UNKNOWN, str(exc))))
        finally:
            with self._lock:
                self._active.pop(file_id, None)
                self._reserved_outputs.pop(file_id, None)
                self._cancel_requested.discard(file_id)
                if file_id in self._requeue:
                    self._requeue.discard(file_id)
                    self._requeue_failed(item)
                self._lock.notify_all()

    def _record_progress(self, file_id: str, value: float):
        with self._lock:
            item = self._files.get(file_id)
            if item is None or file_id not in self._active or not item.update_progress(value):
                return
            snapshot = item.snapshot()
        self.event_bus.publish(JobProgressUpdated(file=snapshot, progress=value))

    def _resolve(self, file_id: str, outcome: Outcome):
        """Applies the single outcome of a run to its item."""
        delete_source = False
        with self._lock:
            item = self._files.get(file_id)
            if item is None or file_id not in self._active or item.status.is_finished:
                self.logger.debug(f"Ignoring {outcome.kind.value} outcome for inactive item {file_id}")
                return

            if outcome.is_failed and (file_id in self._cancel_requested or outcome.error.kind is ErrorKind.CANCELLED):
                outcome = Outcome.cancelled(exit_code=outcome.exit_code)

            if outcome.is_completed:
                item.mark_completed(outcome.compressed_size or 0)
                self.logger.info(
                    f"COMPRESSION_DONE: {item.name} {item.formatted_original_size} -> "
                    f"{item.formatted_compressed_size} ({item.formatted_compression_ratio} saved)"
                )
                if item.is_compressed_larger:
                    self.logger.warning(f"Compressed output of {item.name} is larger than the original")
                delete_source = self.config.compression.delete_originals
                self.event_bus.publish(JobCompleted(file=item.snapshot()))
            elif outcome.is_failed:
                error = outcome.error
                item.mark_failed(error)
                self.event_bus.publish(JobFailed(
                    file=item.snapshot(),
                    error_code=error.code,
                    error_message=error.message,
                    recovery_hint=error.recovery_hint,
                    retryable=error.retryable,
                ))
                attempts = self._attempts.get(file_id, 0)
                if error.retryable and attempts < self.config.queue.max_retries and not self._stop_requested:
                    self._requeue.add(file_id)
            else:
                item.mark_cancelled()
                self.logger.info(f"COMPRESSION_CANCELLED: {item.name}")
                self.event_bus.publish(JobCancelled(file=item.snapshot()))
            self._lock.notify_all()

        if delete_source:
            self._delete_original(item)

    def _requeue_failed(self, item: VideoFile):
        attempt = self._attempts.get(item.id, 0) + 1
        self._attempts[item.id] = attempt
        item.reset_for_retry()
        self._pending.append(item.id)
        self.logger.info(f"QUEUE_RETRY: {item.name} attempt {attempt}/{self.config.queue.max_retries}")
        self.event_bus.publish(JobRetrying(file=item.snapshot(), attempt=attempt))

    def _delete_original(self, item: VideoFile):
        try:
            item.path.unlink()
            self.logger.info(f"DELETE_ORIGINAL: {item.path}")
        except OSError as exc:
            self.logger.warning(f"Could not delete original {item.path}: {exc}")
