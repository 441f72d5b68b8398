"""Domain events for the transcoding pipeline.

Events flow through the EventBus so a front end can follow a job without the
orchestrator holding references to UI objects.

See `infrastructure/event_bus.py` for the pub/sub mechanism.
"""

from pathlib import Path
from typing import List
from pydantic import BaseModel
from .models import EditRequest, JobResult, ProgressSample


class Event(BaseModel):
    """Base class for all domain events."""

    pass


class JobEvent(Event):
    """Base class for events related to a specific job."""

    request: EditRequest


class JobStarted(JobEvent):
    """Emitted once the encoder process is running."""

    output_path: Path
    command: List[str]


class JobProgressUpdated(JobEvent):
    """Emitted for every progress sample re-emitted by the orchestrator."""

    sample: ProgressSample


class JobCompleted(JobEvent):
    result: JobResult


class JobFailed(JobEvent):
    """Emitted for every failure, including ones before the encoder starts."""

    result: JobResult
    error_message: str


class JobCancelled(JobEvent):
    result: JobResult
