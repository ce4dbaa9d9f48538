"""Domain events for the compression queue.

Events flow through the EventBus from the Scheduler to presentation code.
Job events carry a detached `VideoFile` snapshot, never the live item.

See `infrastructure/event_bus.py` for the pub/sub mechanism.
"""

from typing import Optional
from pydantic import BaseModel
from .models import VideoFile


class Event(BaseModel):
    """Base class for all domain events."""

    pass


class JobEvent(Event):
    """Base class for events related to a specific queue item."""

    file: VideoFile


class JobQueued(JobEvent):
    """Emitted when an item enters the pending set."""

    pass


class JobStarted(JobEvent):
    """Emitted once the engine process has been launched for a run."""

    pass


class JobProgressUpdated(JobEvent):
    """Emitted as the engine reports progress (fraction in [0, 1])."""

    progress: float


class JobCompleted(JobEvent):
    pass


class JobFailed(JobEvent):
    """Emitted when a run resolves to failed; carries the error facts."""

    error_code: int
    error_message: str
    recovery_hint: Optional[str] = None
    retryable: bool = True


class JobCancelled(JobEvent):
    """Emitted when a run (or a never-started item) is cancelled.

    Not an error: presentation code must not treat it as a failure.
    """

    pass


class JobRetrying(JobEvent):
    """Emitted when a failed item is automatically re-queued."""

    attempt: int


class ProcessingFinished(Event):
    """Emitted when Scheduler.run() returns."""

    completed: int = 0
    failed: int = 0
    cancelled: int = 0
    stopped: bool = False
