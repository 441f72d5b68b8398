"""Maps an EditRequest to ffmpeg arguments.

Pure functions only; nothing here touches the filesystem or spawns processes.
Argument order matters to ffmpeg: input options go before `-i`, output
options after it, and the output path is always last.
"""

from typing import List, Optional
from smolvideo.domain.models import EditRequest, SourceMetadata


def format_seconds(value: float) -> str:
    """Millisecond precision without trailing zeros: 90.0 -> '90', 10.25 -> '10.25'."""
    text = f"{value:.3f}".rstrip("0").rstrip(".")
    return text if text and text != "-0" else "0"


def build_filter_chain(request: EditRequest, metadata: Optional[SourceMetadata]) -> Optional[str]:
    """Crop then scale, so crop offsets stay in source pixels."""
    filters = []
    if request.has_cropping:
        if metadata is None or metadata.width <= 0 or metadata.height <= 0:
            raise ValueError("Cropping requires the source width and height")
        crop = request.crop
        filters.append(
            f"crop={crop.output_width(metadata.width)}:{crop.output_height(metadata.height)}"
            f":{crop.left}:{crop.top}"
        )
    if request.has_resizing:
        filters.append(f"scale={request.resize.width}:{request.resize.height}")
    return ",".join(filters) if filters else None


def build_command(
    request: EditRequest,
    metadata: Optional[SourceMetadata] = None,
    pixel_format: Optional[str] = "yuv420p",
    profile: Optional[str] = "high",
    hwaccel: Optional[str] = None,
) -> List[str]:
    """Constructs the ffmpeg argument list (without the executable)."""
    if not request.has_work():
        raise ValueError("Request has no trimming, cropping or resizing to perform")
    if request.output_path is None:
        raise ValueError("Output path must be resolved before building the command")

    cmd: List[str] = []

    # Capability hint only; ffmpeg decodes in software when it is unavailable
    if hwaccel:
        cmd.extend(["-hwaccel", hwaccel])

    cmd.extend(["-i", str(request.input_path)])

    if request.has_trimming:
        end = request.effective_trim_end
        cmd.extend(["-ss", format_seconds(request.trim_start)])
        if end > request.trim_start:
            # Duration rather than an end timestamp
            cmd.extend(["-t", format_seconds(end - request.trim_start)])

    filter_chain = build_filter_chain(request, metadata)
    if filter_chain:
        cmd.extend(["-vf", filter_chain])

    cmd.extend([
        "-c:v", request.video_codec,
        "-crf", str(request.quality_factor),
        "-preset", request.preset,
    ])
    if pixel_format:
        cmd.extend(["-pix_fmt", pixel_format])
    if profile:
        cmd.extend(["-profile:v", profile])
    cmd.extend([
        "-c:a", request.audio_codec,
        "-b:a", request.audio_bitrate,
    ])

    if request.fast_start:
        cmd.extend(["-movflags", "+faststart"])

    if request.overwrite:
        cmd.append("-y")

    cmd.append(str(request.output_path))
    return cmd
