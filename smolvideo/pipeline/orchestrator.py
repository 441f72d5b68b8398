"""Job orchestrator for a single edit/optimization run.

Composes the path resolver, command builder and process supervisor into one
operation and turns every outcome into a JobResult.

Key responsibilities:
- Check the input, probe metadata when the caller did not supply it
- Validate the request, resolve ffmpeg (bundled first, then system PATH)
- Pick a non-colliding output path and build the ffmpeg command
- Supervise the encoder, re-emitting progress samples as they arrive
- Publish events for front ends (JobStarted, JobProgressUpdated, JobCompleted, ...)

Nothing is retried automatically and partial outputs are left on disk.
"""

import logging
import queue
import threading
import time
import traceback
from pathlib import Path
from typing import Callable, Iterator, Optional, Union
from smolvideo.config.models import AppConfig
from smolvideo.domain.errors import (
    EncoderNotFound,
    ExecutableNotFound,
    ProbeFailure,
    ProcessLaunchFailure,
    ValidationError,
)
from smolvideo.domain.events import JobCancelled, JobCompleted, JobFailed, JobProgressUpdated, JobStarted
from smolvideo.domain.models import (
    CANCELLED_MESSAGE,
    EditRequest,
    ErrorKind,
    JobKind,
    JobResult,
    ProgressSample,
    SourceMetadata,
)
from smolvideo.infrastructure.binaries import BinaryLocator
from smolvideo.infrastructure.commands import build_command
from smolvideo.infrastructure.event_bus import EventBus
from smolvideo.infrastructure.ffprobe import FFprobeAdapter
from smolvideo.infrastructure.paths import PathResolver
from smolvideo.infrastructure.supervisor import ProcessSupervisor, SupervisorState

JobItem = Union[ProgressSample, JobResult]


class JobOrchestrator:
    """Runs one job at a time; not re-entrant.

    Each job gets its own ProcessSupervisor and cancel event, so no process
    handle is shared between jobs.

    Args:
        config: AppConfig with encoder, output, quality and progress settings.
        event_bus: EventBus for publishing job lifecycle events.
        ffprobe_adapter: Metadata probe used when run_job gets no metadata.
        locator: BinaryLocator for ffmpeg.
        path_resolver: PathResolver for output naming.
        supervisor_factory: Callable building a ProcessSupervisor (tests swap it).
    """

    def __init__(
        self,
        config: AppConfig,
        event_bus: EventBus,
        ffprobe_adapter: Optional[FFprobeAdapter] = None,
        locator: Optional[BinaryLocator] = None,
        path_resolver: Optional[PathResolver] = None,
        supervisor_factory: Callable[..., ProcessSupervisor] = ProcessSupervisor,
    ):
        self.config = config
        self.event_bus = event_bus
        self.locator = locator or BinaryLocator(config.encoder)
        self.ffprobe_adapter = ffprobe_adapter or FFprobeAdapter(
            locator=self.locator, timeout_s=config.encoder.probe_timeout_s
        )
        self.path_resolver = path_resolver or PathResolver(config.output)
        self.supervisor_factory = supervisor_factory
        self.logger = logging.getLogger(__name__)

        self._active_cancel: Optional[threading.Event] = None
        self._active_lock = threading.Lock()

    def new_request(self, input_path: Path, kind: JobKind = JobKind.EDIT) -> EditRequest:
        """EditRequest pre-filled with the configured quality defaults."""
        quality = self.config.quality
        return EditRequest(
            input_path=Path(input_path),
            kind=kind,
            quality_factor=quality.crf,
            video_codec=quality.video_codec,
            audio_codec=quality.audio_codec,
            audio_bitrate=quality.audio_bitrate,
            preset=quality.preset,
            fast_start=quality.fast_start,
            overwrite=quality.overwrite,
        )

    def cancel(self) -> bool:
        """Requests cancellation of the running job, if any."""
        with self._active_lock:
            cancel_event = self._active_cancel
        if cancel_event is None:
            return False
        cancel_event.set()
        return True

    def run_job(
        self,
        request: EditRequest,
        metadata: Optional[SourceMetadata] = None,
        on_progress: Optional[Callable[[ProgressSample], None]] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> JobResult:
        """Runs the job to completion and returns its terminal result."""
        result: Optional[JobResult] = None
        for item in self.stream_job(request, metadata=metadata, cancel_event=cancel_event):
            if isinstance(item, JobResult):
                result = item
            elif on_progress is not None:
                on_progress(item)
        if result is None:
            raise RuntimeError("Job ended without a result")
        return result

    def stream_job(
        self,
        request: EditRequest,
        metadata: Optional[SourceMetadata] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> Iterator[JobItem]:
        """Yields ProgressSamples, then exactly one JobResult.

        Closing the generator early cancels the encoder.
        """
        # The caller's object stays theirs; we work on a snapshot
        job_request = request.model_copy(deep=True)
        cancel_event = cancel_event or threading.Event()
        with self._active_lock:
            self._active_cancel = cancel_event
        try:
            yield from self._execute(job_request, metadata, cancel_event)
        except Exception as e:
            self.logger.exception(f"JOB_ERROR: {job_request.input_path.name}")
            yield self._fail(
                job_request,
                JobResult.error_result(
                    f"Unexpected error: {e}",
                    traceback.format_exc(),
                    error_kind=ErrorKind.UNEXPECTED,
                ),
            )
        finally:
            with self._active_lock:
                if self._active_cancel is cancel_event:
                    self._active_cancel = None

    def _fail(self, request: EditRequest, result: JobResult) -> JobResult:
        if result.cancelled:
            self.logger.info(f"JOB_CANCELLED: {request.input_path.name}")
            self.event_bus.publish(JobCancelled(request=request, result=result))
        else:
            self.logger.error(
                f"JOB_FAILED: {request.input_path.name} kind={result.error_kind.value} "
                f"code={result.exit_code} message={result.message}"
            )
            self.event_bus.publish(JobFailed(request=request, result=result, error_message=result.message))
        return result

    def _probe(self, input_path: Path) -> SourceMetadata:
        try:
            return self.ffprobe_adapter.get_metadata(input_path)
        except ProbeFailure as e:
            # Keep going with whatever duration we can get; 0 disables percentages
            self.logger.warning(f"PROBE_FAILED: {input_path.name} ({e.message}), falling back to duration only")
            duration = self.ffprobe_adapter.get_duration(input_path)
            return SourceMetadata(file_path=input_path, duration=duration, file_size=input_path.stat().st_size)

    def _execute(
        self,
        request: EditRequest,
        metadata: Optional[SourceMetadata],
        cancel_event: threading.Event,
    ) -> Iterator[JobItem]:
        input_path = Path(request.input_path)
        filename = input_path.name
        self.logger.info(f"JOB_START: {filename} kind={request.kind.value}")

        if not input_path.is_file():
            yield self._fail(request, JobResult.error_result(
                f"Input file not found: {input_path}", error_kind=ErrorKind.INPUT_NOT_FOUND,
            ))
            return

        if metadata is None:
            metadata = self._probe(input_path)
        if request.source_duration <= 0 and metadata.duration > 0:
            request.source_duration = metadata.duration

        try:
            request.validate_against(metadata)
        except ValidationError as e:
            yield self._fail(request, JobResult.error_result(str(e), error_kind=ErrorKind.VALIDATION))
            return

        try:
            encoder = self.locator.resolve_ffmpeg()
        except EncoderNotFound as e:
            yield self._fail(request, JobResult.error_result(e.message, error_kind=ErrorKind.ENCODER_NOT_FOUND))
            return

        if request.output_path is not None:
            request.output_path = self.path_resolver.unique_path(request.output_path, request.overwrite)
        else:
            request.output_path = self.path_resolver.output_path_for(input_path, request.kind, request.overwrite)
        output_path = request.output_path

        command = build_command(
            request,
            metadata,
            pixel_format=self.config.quality.pixel_format,
            profile=self.config.quality.profile,
            hwaccel=self.config.encoder.hwaccel,
        )

        input_size = input_path.stat().st_size
        start_time = time.monotonic()

        if cancel_event.is_set():
            yield self._fail(request, JobResult.error_result(
                CANCELLED_MESSAGE, error_kind=ErrorKind.CANCELLED, input_size=input_size,
            ))
            return

        progress_config = self.config.progress
        supervisor = self.supervisor_factory(
            output_path=output_path,
            total_seconds=request.output_duration(),
            queue_size=progress_config.queue_size,
            kill_grace_s=self.config.encoder.kill_grace_s,
            diagnostic_max_lines=progress_config.diagnostic_max_lines,
            reader_join_timeout_s=progress_config.reader_join_timeout_s,
        )

        try:
            supervisor.start(encoder.path, command, encoder.working_dir)
        except ExecutableNotFound as e:
            yield self._fail(request, JobResult.error_result(
                e.message, error_kind=ErrorKind.ENCODER_NOT_FOUND, input_size=input_size,
            ))
            return
        except ProcessLaunchFailure as e:
            yield self._fail(request, JobResult.error_result(
                e.message, e.details, error_kind=ErrorKind.LAUNCH_FAILURE, input_size=input_size,
            ))
            return

        self.logger.info(f"ENCODER_START: {filename} -> {output_path.name} (duration={request.output_duration():.2f}s)")
        self.event_bus.publish(JobStarted(request=request, output_path=output_path, command=command))

        finished = False
        last_percent = 0

        def emit(sample: ProgressSample) -> ProgressSample:
            nonlocal last_percent
            if sample.percentage is not None:
                if sample.percentage < last_percent:
                    sample = sample.model_copy(update={"percentage": last_percent})
                last_percent = sample.percentage
            self.event_bus.publish(JobProgressUpdated(request=request, sample=sample))
            return sample

        try:
            while True:
                if cancel_event.is_set():
                    supervisor.cancel()
                    break

                try:
                    sample = supervisor.progress.get(timeout=progress_config.poll_interval_s)
                except queue.Empty:
                    # Exit of the encoder is enough; a surviving descendant may keep the pipes open
                    if supervisor.is_drained() or supervisor.has_exited():
                        break
                    continue

                if cancel_event.is_set():
                    continue
                yield emit(sample)

            outcome = supervisor.wait()
            finished = True

            # Lines the readers parsed between our last poll and EOF
            while not cancel_event.is_set() and outcome.state != SupervisorState.CANCELLED:
                try:
                    sample = supervisor.progress.get_nowait()
                except queue.Empty:
                    break
                yield emit(sample)
        except KeyboardInterrupt:
            self.logger.info(f"ENCODER_INTERRUPTED: {filename} (KeyboardInterrupt)")
            raise
        finally:
            if not finished:
                # Consumer went away or we were interrupted: take the encoder down with us
                supervisor.cancel()
                supervisor.wait()

        processing_time = time.monotonic() - start_time

        if outcome.state == SupervisorState.COMPLETED:
            result = JobResult.success_result(
                output_path=output_path,
                processing_time=processing_time,
                input_size=input_size,
                output_size=output_path.stat().st_size,
            )
            self.logger.info(
                f"JOB_COMPLETED: {filename} -> {output_path.name} "
                f"elapsed={processing_time:.2f}s size_change={result.size_change()}"
            )
            self.event_bus.publish(JobCompleted(request=request, result=result))
            yield result
            return

        if outcome.state == SupervisorState.CANCELLED:
            kind = ErrorKind.CANCELLED
        elif outcome.output_missing:
            kind = ErrorKind.OUTPUT_NOT_CREATED
        else:
            kind = ErrorKind.ENCODER_EXIT

        yield self._fail(request, JobResult.error_result(
            outcome.message,
            outcome.stderr,
            exit_code=outcome.exit_code,
            error_kind=kind,
            output_path=output_path,
            processing_time=processing_time,
            input_size=input_size,
        ))
