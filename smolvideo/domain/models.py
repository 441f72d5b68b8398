from enum import Enum
from pathlib import Path
from typing import Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator
from .errors import ValidationError, ValidationReason

MAX_RESIZE_WIDTH = 7680
MAX_RESIZE_HEIGHT = 4320

SUCCESS_MESSAGE = "Video processing completed successfully"
OUTPUT_NOT_CREATED_MESSAGE = "Output file was not created"
CANCELLED_MESSAGE = "Operation was cancelled by user"


class JobKind(str, Enum):
    EDIT = "EDIT"
    OPTIMIZE = "OPTIMIZE"  # plain re-encode, no edit required


class JobState(str, Enum):
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class ErrorKind(str, Enum):
    VALIDATION = "VALIDATION"
    INPUT_NOT_FOUND = "INPUT_NOT_FOUND"
    ENCODER_NOT_FOUND = "ENCODER_NOT_FOUND"
    LAUNCH_FAILURE = "LAUNCH_FAILURE"
    ENCODER_EXIT = "ENCODER_EXIT"
    OUTPUT_NOT_CREATED = "OUTPUT_NOT_CREATED"
    CANCELLED = "CANCELLED"
    UNEXPECTED = "UNEXPECTED"


def format_size(size: float) -> str:
    for unit in ["B", "KB", "MB", "GB"]:
        if abs(size) < 1024.0:
            return f"{size:.1f}{unit}"
        size /= 1024.0
    return f"{size:.1f}TB"


def format_duration(seconds: float) -> str:
    """HH:MM:SS.fff"""
    millis = int(round(max(0.0, seconds) * 1000))
    hours, rem = divmod(millis, 3_600_000)
    minutes, rem = divmod(rem, 60_000)
    secs, ms = divmod(rem, 1000)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}.{ms:03d}"


class CropSettings(BaseModel):
    """Pixels removed from each edge of the frame, before any resize."""

    model_config = ConfigDict(validate_assignment=True)

    top: int = Field(default=0, ge=0)
    right: int = Field(default=0, ge=0)
    bottom: int = Field(default=0, ge=0)
    left: int = Field(default=0, ge=0)

    @property
    def has_cropping(self) -> bool:
        return self.top > 0 or self.right > 0 or self.bottom > 0 or self.left > 0

    def output_width(self, source_width: int) -> int:
        return source_width - self.left - self.right

    def output_height(self, source_height: int) -> int:
        return source_height - self.top - self.bottom

    def fits(self, source_width: int, source_height: int) -> bool:
        return self.left + self.right < source_width and self.top + self.bottom < source_height

    def reset(self):
        self.top = self.right = self.bottom = self.left = 0


class ResizeSettings(BaseModel):
    """Target frame size. Odd heights are bumped to the next even value."""

    model_config = ConfigDict(validate_assignment=True)

    width: int = 0
    height: int = 0
    maintain_aspect_ratio: bool = True

    @field_validator("height")
    @classmethod
    def coerce_even_height(cls, v: int) -> int:
        # yuv420 chroma planes need even dimensions
        if v > 0 and v % 2 != 0:
            return v + 1
        return v

    @property
    def has_resizing(self) -> bool:
        return self.width > 0 and self.height > 0

    @staticmethod
    def derive_height(new_width: int, source_width: int, source_height: int) -> int:
        height = int(round(new_width * source_height / source_width))
        if height % 2 != 0:
            height += 1
        return height

    def apply_width(self, new_width: int, source_width: int, source_height: int):
        """Sets the width and, with the aspect lock on, derives the height."""
        self.width = new_width
        if self.maintain_aspect_ratio and source_width > 0 and source_height > 0:
            self.height = self.derive_height(new_width, source_width, source_height)

    def is_within_bounds(self) -> bool:
        return 0 < self.width <= MAX_RESIZE_WIDTH and 0 < self.height <= MAX_RESIZE_HEIGHT

    def reset(self):
        self.width = self.height = 0


class SourceMetadata(BaseModel):
    """Snapshot of what ffprobe reported for the input. Never mutated."""

    model_config = ConfigDict(frozen=True)

    file_path: Optional[Path] = None
    duration: float = 0.0
    width: int = 0
    height: int = 0
    format_name: str = ""
    video_codec: str = ""
    audio_codec: str = ""
    frame_rate: float = 0.0
    file_size: int = 0
    bitrate: str = ""

    @property
    def aspect_ratio(self) -> float:
        return self.width / self.height if self.height > 0 else 0.0

    @property
    def resolution_text(self) -> str:
        return f"{self.width} x {self.height}"

    @property
    def duration_formatted(self) -> str:
        return format_duration(self.duration)

    @property
    def file_size_formatted(self) -> str:
        return format_size(self.file_size)


class EditRequest(BaseModel):
    """Everything needed to run one job.

    The caller owns and may mutate the request until it is handed to the
    orchestrator, which works on its own copy from then on.
    """

    model_config = ConfigDict(validate_assignment=True)

    input_path: Path
    output_path: Optional[Path] = None
    kind: JobKind = JobKind.EDIT
    trim_start: float = 0.0
    trim_end: Optional[float] = None  # None = until the end of the source
    source_duration: float = 0.0
    crop: CropSettings = Field(default_factory=CropSettings)
    resize: ResizeSettings = Field(default_factory=ResizeSettings)
    quality_factor: int = Field(default=18, ge=0, le=51)
    video_codec: str = "libx264"
    audio_codec: str = "aac"
    audio_bitrate: str = "128k"
    preset: str = "medium"
    fast_start: bool = True
    overwrite: bool = False

    @property
    def effective_trim_end(self) -> float:
        return self.trim_end if self.trim_end is not None else self.source_duration

    @property
    def has_trimming(self) -> bool:
        if self.trim_start > 0:
            return True
        if self.trim_end is None:
            return False
        return self.source_duration <= 0 or self.trim_end < self.source_duration

    @property
    def has_cropping(self) -> bool:
        return self.crop.has_cropping

    @property
    def has_resizing(self) -> bool:
        return self.resize.has_resizing

    def has_any_edit(self) -> bool:
        return self.has_trimming or self.has_cropping or self.has_resizing

    def has_work(self) -> bool:
        """An optimization job is a re-encode even without edits."""
        return self.kind == JobKind.OPTIMIZE or self.has_any_edit()

    def output_duration(self) -> float:
        """Length of the encoded output in seconds; 0 when unknown."""
        if self.has_trimming:
            end = self.effective_trim_end
            return max(0.0, end - self.trim_start) if end > 0 else 0.0
        return self.source_duration

    def validate_against(self, source: SourceMetadata):
        """Raises ValidationError for the first violated invariant."""
        duration = self.source_duration if self.source_duration > 0 else source.duration

        if self.trim_start < 0:
            raise ValidationError(
                ValidationReason.TRIM_OUT_OF_RANGE,
                f"Trim start {self.trim_start:g}s is negative",
            )

        # Open-ended trim of a source with unknown length: only the start is checkable
        open_ended = self.trim_end is None and duration <= 0
        if (self.trim_start != 0 or self.trim_end is not None) and not open_ended:
            end = self.trim_end if self.trim_end is not None else duration
            if end <= self.trim_start:
                raise ValidationError(
                    ValidationReason.TRIM_OUT_OF_RANGE,
                    f"Trim window {self.trim_start:g}s-{end:g}s is empty or negative",
                )
            if duration > 0 and end > duration:
                raise ValidationError(
                    ValidationReason.TRIM_OUT_OF_RANGE,
                    f"Trim end {end:g}s is past the source duration {duration:g}s",
                )

        if self.has_cropping and not self.crop.fits(source.width, source.height):
            raise ValidationError(
                ValidationReason.CROP_EXCEEDS_FRAME,
                f"Crop {self.crop.top}/{self.crop.right}/{self.crop.bottom}/{self.crop.left} "
                f"does not fit a {source.resolution_text} frame",
            )

        if (self.resize.width or self.resize.height) and not self.resize.is_within_bounds():
            raise ValidationError(
                ValidationReason.RESIZE_OUT_OF_BOUNDS,
                f"Resize target {self.resize.width}x{self.resize.height} is outside "
                f"1x1..{MAX_RESIZE_WIDTH}x{MAX_RESIZE_HEIGHT}",
            )

        if self.kind == JobKind.EDIT and not self.has_any_edit():
            raise ValidationError(
                ValidationReason.NO_OPERATION_REQUESTED,
                "No trimming, cropping or resizing requested",
            )


class ProgressSample(BaseModel):
    model_config = ConfigDict(frozen=True)

    percentage: Optional[int] = None  # None while the duration is unknown
    elapsed: Optional[float] = None
    remaining: Optional[float] = None
    speed: Optional[str] = None
    status: str = ""


class JobResult(BaseModel):
    """Terminal outcome of a job. Build through the classmethods."""

    model_config = ConfigDict(frozen=True)

    success: bool
    state: JobState
    message: str
    error_kind: Optional[ErrorKind] = None
    error_details: str = ""
    output_path: Optional[Path] = None
    processing_time: float = 0.0
    input_size: int = 0
    output_size: int = 0
    exit_code: Optional[int] = None

    @classmethod
    def success_result(
        cls,
        output_path: Path,
        processing_time: float,
        input_size: int,
        output_size: int,
        message: str = SUCCESS_MESSAGE,
    ) -> "JobResult":
        return cls(
            success=True,
            state=JobState.COMPLETED,
            message=message,
            output_path=output_path,
            processing_time=processing_time,
            input_size=input_size,
            output_size=output_size,
            exit_code=0,
        )

    @classmethod
    def error_result(
        cls,
        message: str,
        error_details: str = "",
        exit_code: Optional[int] = None,
        error_kind: ErrorKind = ErrorKind.UNEXPECTED,
        output_path: Optional[Path] = None,
        processing_time: float = 0.0,
        input_size: int = 0,
    ) -> "JobResult":
        state = JobState.CANCELLED if error_kind == ErrorKind.CANCELLED else JobState.FAILED
        return cls(
            success=False,
            state=state,
            message=message,
            error_kind=error_kind,
            error_details=error_details,
            output_path=output_path,
            processing_time=processing_time,
            input_size=input_size,
            exit_code=exit_code,
        )

    @property
    def cancelled(self) -> bool:
        return self.state == JobState.CANCELLED

    def compression_ratio(self) -> float:
        if self.input_size == 0:
            return 0.0
        return self.output_size / self.input_size

    def compression_percentage(self) -> str:
        return f"{(1 - self.compression_ratio()) * 100:.1f}%"

    def size_change(self) -> str:
        if self.input_size == 0:
            return "N/A"
        change = (self.output_size - self.input_size) / self.input_size * 100
        sign = "+" if change >= 0 else ""
        return f"{sign}{change:.1f}%"
