"""Exceptions raised inside the job pipeline.

The orchestrator converts every one of these into an error JobResult, so
callers of `run_job` never see them directly.
"""

from enum import Enum
from typing import Optional


class SmolVideoError(Exception):
    """Base exception for all smolvideo errors."""

    def __init__(self, message: str, details: str = ""):
        self.message = message
        self.details = details
        super().__init__(message)


class ValidationReason(str, Enum):
    TRIM_OUT_OF_RANGE = "TrimOutOfRange"
    CROP_EXCEEDS_FRAME = "CropExceedsFrame"
    RESIZE_OUT_OF_BOUNDS = "ResizeOutOfBounds"
    NO_OPERATION_REQUESTED = "NoOperationRequested"


class ValidationError(SmolVideoError):
    """Edit parameters violate an invariant; the job never starts."""

    def __init__(self, reason: ValidationReason, message: Optional[str] = None):
        self.reason = reason
        super().__init__(message or reason.value)

    def __str__(self) -> str:
        if self.message == self.reason.value:
            return self.message
        return f"{self.reason.value}: {self.message}"


class EncoderNotFound(SmolVideoError):
    """Neither the bundled nor the system encoder could be resolved."""


class ExecutableNotFound(SmolVideoError):
    """The resolved executable disappeared before the process was started."""


class ProbeFailure(SmolVideoError):
    """ffprobe failed or returned output that could not be parsed."""


class ProcessLaunchFailure(SmolVideoError):
    """The OS refused to spawn the encoder process."""
