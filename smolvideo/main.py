import re
import threading
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.progress import BarColumn, Progress, SpinnerColumn, TaskProgressColumn, TextColumn, TimeElapsedColumn
from rich.table import Table

from smolvideo.config.loader import load_config
from smolvideo.config.models import AppConfig
from smolvideo.domain.errors import ProbeFailure
from smolvideo.domain.models import (
    CropSettings,
    EditRequest,
    JobKind,
    JobResult,
    SourceMetadata,
    format_duration,
    format_size,
)
from smolvideo.infrastructure.binaries import BinaryLocator
from smolvideo.infrastructure.event_bus import EventBus
from smolvideo.infrastructure.ffprobe import FFprobeAdapter
from smolvideo.infrastructure.logging import setup_logging
from smolvideo.infrastructure.progress import format_clock
from smolvideo.pipeline.orchestrator import JobOrchestrator

DEFAULT_CONFIG_PATH = Path("conf/smolvideo.yaml")
VIDEO_EXTENSIONS = {
    ".mp4", ".avi", ".mkv", ".mov", ".wmv", ".flv", ".webm", ".m4v",
    ".mpg", ".mpeg", ".3gp", ".asf", ".rm", ".rmvb", ".ts", ".mts",
}

app = typer.Typer(help="smolvideo - trim, crop, resize and optimize videos with ffmpeg")
console = Console()


def _load_app_config(config_path: Optional[Path]) -> AppConfig:
    if config_path is None:
        return load_config(DEFAULT_CONFIG_PATH) if DEFAULT_CONFIG_PATH.exists() else AppConfig()
    try:
        return load_config(config_path)
    except FileNotFoundError as exc:
        typer.secho(f"Error: {exc}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)


def _check_input(input_path: Path):
    if not input_path.is_file():
        typer.secho(f"Error: Input file does not exist: {input_path}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)
    if input_path.suffix.lower() not in VIDEO_EXTENSIONS:
        typer.secho(
            f"Error: {input_path.name} does not look like a video file "
            f"(supported: {', '.join(sorted(VIDEO_EXTENSIONS))})",
            fg=typer.colors.RED,
            err=True,
        )
        raise typer.Exit(code=1)


def parse_time(value: Optional[str]) -> Optional[float]:
    """'90', '90.5', '01:30' or '00:01:30.500' -> seconds."""
    if value is None:
        return None
    text = value.strip()
    if re.fullmatch(r"\d+(\.\d+)?", text):
        return float(text)
    match = re.fullmatch(r"(?:(\d+):)?(\d{1,2}):(\d{1,2}(?:\.\d+)?)", text)
    if not match:
        raise typer.BadParameter(f"Invalid time '{value}' (use seconds or HH:MM:SS.fff)")
    hours, minutes, seconds = match.groups()
    return int(hours or 0) * 3600 + int(minutes) * 60 + float(seconds)


def parse_crop(value: Optional[str]) -> CropSettings:
    """'T,R,B,L' margins, or a single value for all four edges."""
    if not value:
        return CropSettings()
    parts = [p.strip() for p in value.split(",")]
    if len(parts) == 1:
        parts = parts * 4
    if len(parts) != 4 or not all(p.isdigit() for p in parts):
        raise typer.BadParameter(f"Invalid crop '{value}' (use TOP,RIGHT,BOTTOM,LEFT)")
    top, right, bottom, left = (int(p) for p in parts)
    return CropSettings(top=top, right=right, bottom=bottom, left=left)


def _build_orchestrator(config: AppConfig):
    bus = EventBus()
    locator = BinaryLocator(config.encoder)
    ffprobe = FFprobeAdapter(locator=locator, timeout_s=config.encoder.probe_timeout_s)
    return JobOrchestrator(config=config, event_bus=bus, ffprobe_adapter=ffprobe, locator=locator)


def _describe(request: EditRequest) -> str:
    operations = []
    if request.has_trimming:
        operations.append(
            f"Trimming: {format_duration(request.trim_start)} - {format_duration(request.effective_trim_end)}"
        )
    if request.has_cropping:
        crop = request.crop
        operations.append(f"Cropping: Top:{crop.top}, Right:{crop.right}, Bottom:{crop.bottom}, Left:{crop.left}")
    if request.has_resizing:
        operations.append(f"Resizing: {request.resize.width} x {request.resize.height}")
    if not operations:
        operations.append(f"Re-encode: {request.video_codec} CRF {request.quality_factor} ({request.preset})")
    return "\n".join(f"• {op}" for op in operations)


def _run_with_progress(orchestrator: JobOrchestrator, request: EditRequest,
                       metadata: Optional[SourceMetadata]) -> JobResult:
    console.print(f"Input: {request.input_path.name}")
    console.print(_describe(request))

    cancel_event = threading.Event()
    with Progress(
        SpinnerColumn(),
        TextColumn("[bold]{task.description}"),
        BarColumn(),
        TaskProgressColumn(),
        TextColumn("{task.fields[status]}"),
        TimeElapsedColumn(),
        console=console,
        transient=False,
    ) as progress:
        task = progress.add_task(request.input_path.name, total=100, status="Starting...")

        def on_progress(sample):
            if sample.percentage is not None:
                progress.update(task, completed=sample.percentage, status=sample.status)
            else:
                progress.update(task, status=sample.status)

        result = orchestrator.run_job(request, metadata=metadata, on_progress=on_progress, cancel_event=cancel_event)
        if result.success:
            progress.update(task, completed=100, status="Done")
    return result


def _report(result: JobResult, debug: bool) -> None:
    if result.success:
        typer.secho("✓ Processing completed successfully", fg=typer.colors.GREEN)
        console.print(f"Output file: {result.output_path}")
        console.print(f"Processing time: {format_clock(result.processing_time)}")
        console.print(f"Original size: {format_size(result.input_size)}")
        console.print(f"New size: {format_size(result.output_size)}")
        console.print(f"Size change: {result.size_change()}")
        return

    if result.cancelled:
        typer.secho("✗ Processing cancelled", fg=typer.colors.YELLOW)
        raise typer.Exit(code=130)

    typer.secho(f"✗ Processing failed: {result.message}", fg=typer.colors.RED, err=True)
    if result.exit_code is not None:
        typer.secho(f"Exit code: {result.exit_code}", fg=typer.colors.RED, err=True)
    if debug and result.error_details:
        tail = "\n".join(result.error_details.splitlines()[-20:])
        typer.echo(tail, err=True)
    raise typer.Exit(code=1)


def _execute(config: AppConfig, request: EditRequest, metadata: Optional[SourceMetadata]) -> None:
    logger = setup_logging(
        request.input_path.parent,
        debug=config.general.debug,
        log_path=Path(config.general.log_path) if config.general.log_path else None,
    )
    logger.info(
        f"Config: codec={request.video_codec}, crf={request.quality_factor}, preset={request.preset}, "
        f"hwaccel={config.encoder.hwaccel}, debug={config.general.debug}"
    )
    orchestrator = _build_orchestrator(config)
    try:
        result = _run_with_progress(orchestrator, request, metadata)
    except KeyboardInterrupt:
        # The orchestrator already took the encoder down
        typer.secho("\n✓ Processing stopped by user (Ctrl+C)", fg=typer.colors.YELLOW)
        raise typer.Exit(code=130)
    _report(result, config.general.debug)


@app.command()
def optimize(
    input_path: Path = typer.Argument(..., help="Video file to re-encode"),
    config_path: Optional[Path] = typer.Option(None, "--config", "-c", help="Path to YAML config"),
    crf: Optional[int] = typer.Option(None, "--crf", min=0, max=51, help="Quality factor (lower is better)"),
    preset: Optional[str] = typer.Option(None, "--preset", help="Encoder preset (e.g. medium, slow)"),
    overwrite: bool = typer.Option(False, "--overwrite", help="Overwrite an existing output file"),
    faststart: Optional[bool] = typer.Option(None, "--faststart/--no-faststart", help="Move the index to the front"),
    debug: bool = typer.Option(False, "--debug/--no-debug", help="Enable verbose debug logging"),
):
    """Re-encode a video into a smaller web-friendly MP4."""
    _check_input(input_path)
    config = _load_app_config(config_path)
    if debug: config.general.debug = True

    request = _build_orchestrator(config).new_request(input_path, kind=JobKind.OPTIMIZE)
    if crf is not None: request.quality_factor = crf
    if preset: request.preset = preset
    if overwrite: request.overwrite = True
    if faststart is not None: request.fast_start = faststart

    _execute(config, request, metadata=None)


@app.command()
def edit(
    input_path: Path = typer.Argument(..., help="Video file to edit"),
    start: Optional[str] = typer.Option(None, "--start", "-s", help="Trim start (seconds or HH:MM:SS.fff)"),
    end: Optional[str] = typer.Option(None, "--end", "-e", help="Trim end (seconds or HH:MM:SS.fff)"),
    crop: Optional[str] = typer.Option(None, "--crop", help="Crop margins TOP,RIGHT,BOTTOM,LEFT in pixels"),
    width: Optional[int] = typer.Option(None, "--width", min=1, help="Resize width"),
    height: Optional[int] = typer.Option(None, "--height", min=1, help="Resize height"),
    keep_aspect: bool = typer.Option(True, "--keep-aspect/--no-keep-aspect", help="Derive height from width"),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Explicit output path"),
    config_path: Optional[Path] = typer.Option(None, "--config", "-c", help="Path to YAML config"),
    crf: Optional[int] = typer.Option(None, "--crf", min=0, max=51, help="Quality factor (lower is better)"),
    preset: Optional[str] = typer.Option(None, "--preset", help="Encoder preset (e.g. medium, slow)"),
    overwrite: bool = typer.Option(False, "--overwrite", help="Overwrite an existing output file"),
    debug: bool = typer.Option(False, "--debug/--no-debug", help="Enable verbose debug logging"),
):
    """Trim, crop and/or resize a video."""
    _check_input(input_path)
    config = _load_app_config(config_path)
    if debug: config.general.debug = True

    orchestrator = _build_orchestrator(config)
    try:
        metadata = orchestrator.ffprobe_adapter.get_metadata(input_path)
    except ProbeFailure as exc:
        typer.secho(f"Error: could not read video metadata: {exc.message}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)

    request = orchestrator.new_request(input_path, kind=JobKind.EDIT)
    request.source_duration = metadata.duration
    request.trim_start = parse_time(start) or 0.0
    request.trim_end = parse_time(end)
    request.crop = parse_crop(crop)
    request.resize.maintain_aspect_ratio = keep_aspect and height is None
    if width is not None:
        request.resize.apply_width(width, metadata.width, metadata.height)
    if height is not None:
        request.resize.height = height
    if output is not None: request.output_path = output
    if crf is not None: request.quality_factor = crf
    if preset: request.preset = preset
    if overwrite: request.overwrite = True

    _execute(config, request, metadata=metadata)


@app.command()
def probe(
    input_path: Path = typer.Argument(..., help="Video file to inspect"),
    config_path: Optional[Path] = typer.Option(None, "--config", "-c", help="Path to YAML config"),
):
    """Show the metadata ffprobe reports for a video."""
    _check_input(input_path)
    config = _load_app_config(config_path)
    adapter = FFprobeAdapter(locator=BinaryLocator(config.encoder), timeout_s=config.encoder.probe_timeout_s)
    try:
        metadata = adapter.get_metadata(input_path)
    except ProbeFailure as exc:
        typer.secho(f"Error: {exc.message}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)

    table = Table(title=input_path.name, show_header=False)
    table.add_column("Field", style="bold")
    table.add_column("Value")
    table.add_row("Duration", metadata.duration_formatted)
    table.add_row("Resolution", metadata.resolution_text)
    table.add_row("Format", metadata.format_name)
    table.add_row("Video codec", metadata.video_codec)
    table.add_row("Audio codec", metadata.audio_codec or "-")
    table.add_row("Frame rate", f"{metadata.frame_rate:.2f}")
    table.add_row("Bitrate", metadata.bitrate or "-")
    table.add_row("File size", metadata.file_size_formatted)
    console.print(table)


if __name__ == "__main__":
    app()
