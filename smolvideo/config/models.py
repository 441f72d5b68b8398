from typing import Optional
from pydantic import BaseModel, Field, field_validator

class GeneralConfig(BaseModel):
    debug: bool = False
    log_path: Optional[str] = None

class EncoderConfig(BaseModel):
    """Where to find ffmpeg/ffprobe and how to treat the running process."""
    bundled_dir: Optional[str] = None  # None -> <package>/resources/ffmpeg
    ffmpeg_name: str = "ffmpeg"
    ffprobe_name: str = "ffprobe"
    hwaccel: Optional[str] = None  # e.g. "auto"; ffmpeg falls back to software
    version_check_timeout_s: float = Field(default=10.0, gt=0)
    probe_timeout_s: float = Field(default=60.0, gt=0)
    kill_grace_s: float = Field(default=3.0, ge=0)

class OutputConfig(BaseModel):
    container: str = ".mp4"
    edit_suffix: str = "_edited"
    optimize_suffix: str = "_optimized"

    @field_validator("container")
    @classmethod
    def normalize_container(cls, v: str) -> str:
        v = v.strip().lower()
        if not v or v == ".":
            raise ValueError("container extension must not be empty")
        return v if v.startswith(".") else f".{v}"

class QualityConfig(BaseModel):
    """Defaults copied into every new EditRequest."""
    crf: int = Field(default=18, ge=0, le=51)
    video_codec: str = "libx264"
    audio_codec: str = "aac"
    audio_bitrate: str = "128k"
    preset: str = "medium"
    pixel_format: str = "yuv420p"
    profile: Optional[str] = "high"  # None skips -profile:v
    fast_start: bool = True
    overwrite: bool = False

class ProgressConfig(BaseModel):
    queue_size: int = Field(default=64, ge=1)
    poll_interval_s: float = Field(default=0.1, gt=0)
    diagnostic_max_lines: int = Field(default=5000, ge=1)
    reader_join_timeout_s: float = Field(default=5.0, ge=0)  # after exit, wait this long for pipe EOF

class AppConfig(BaseModel):
    general: GeneralConfig = Field(default_factory=GeneralConfig)
    encoder: EncoderConfig = Field(default_factory=EncoderConfig)
    output: OutputConfig = Field(default_factory=OutputConfig)
    quality: QualityConfig = Field(default_factory=QualityConfig)
    progress: ProgressConfig = Field(default_factory=ProgressConfig)
