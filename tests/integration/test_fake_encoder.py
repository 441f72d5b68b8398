"""End-to-end runs against a fake `ffmpeg` that is a real child process.

The fake encoder (see conftest.py) prints ffmpeg-style status lines, can spawn
a grandchild and hang, and writes (or skips) the output file depending on
FAKE_ENCODER_MODE.
"""

import threading
import time
import pytest
import psutil
from smolvideo.config.models import AppConfig
from smolvideo.domain.events import JobCancelled, JobCompleted, JobFailed, JobStarted
from smolvideo.domain.models import CANCELLED_MESSAGE, ErrorKind, JobKind, JobState
from smolvideo.infrastructure.binaries import BinaryLocator
from smolvideo.infrastructure.supervisor import ProcessSupervisor, SupervisorState
from smolvideo.pipeline.orchestrator import JobOrchestrator

pytestmark = pytest.mark.integration


@pytest.fixture
def config(fake_encoder):
    return AppConfig(
        encoder={"bundled_dir": str(fake_encoder), "kill_grace_s": 2.0},
        progress={"poll_interval_s": 0.02},
    )


@pytest.fixture
def orchestrator(config, event_bus):
    return JobOrchestrator(config=config, event_bus=event_bus, ffprobe_adapter=None)


def _is_gone(pid):
    """Dead or a zombie waiting to be reaped by its (dead) parent."""
    try:
        return psutil.Process(pid).status() == psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return True


def _wait_gone(pid, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if _is_gone(pid):
            return True
        time.sleep(0.05)
    return _is_gone(pid)


def _edit_request(orchestrator, input_video):
    request = orchestrator.new_request(input_video, kind=JobKind.EDIT)
    request.trim_start = 0.0
    request.trim_end = 90.0
    return request


def test_locator_finds_bundled_fake(config, fake_encoder):
    resolved = BinaryLocator(config.encoder).resolve_ffmpeg()
    assert resolved.bundled is True
    assert resolved.working_dir == fake_encoder


def test_successful_job(orchestrator, input_video, source_1080p, event_bus, monkeypatch):
    monkeypatch.setenv("FAKE_ENCODER_MODE", "success")
    completed = []
    event_bus.subscribe(JobCompleted, completed.append)
    samples = []

    result = orchestrator.run_job(
        _edit_request(orchestrator, input_video), metadata=source_1080p, on_progress=samples.append,
    )

    assert result.success is True, result.error_details
    assert result.output_path == input_video.with_name("clip_edited.mp4")
    assert result.output_path.read_bytes() == b"encoded" * 100
    assert result.output_size == 700
    # Carriage-return separated status lines are split into separate samples
    percentages = [s.percentage for s in samples]
    assert percentages == sorted(percentages)
    assert percentages[-1] == 100
    assert len(samples) >= 2
    assert completed and completed[0].result == result


def test_failing_encoder(orchestrator, input_video, source_1080p, event_bus, monkeypatch):
    monkeypatch.setenv("FAKE_ENCODER_MODE", "fail")
    failed = []
    event_bus.subscribe(JobFailed, failed.append)

    result = orchestrator.run_job(_edit_request(orchestrator, input_video), metadata=source_1080p)

    assert result.state == JobState.FAILED
    assert result.error_kind == ErrorKind.ENCODER_EXIT
    assert result.exit_code == 1
    assert "Invalid data found when processing input" in result.error_details
    assert failed and failed[0].error_message == "Encoder process failed with exit code 1"


def test_encoder_exits_cleanly_without_output(orchestrator, input_video, source_1080p, monkeypatch):
    monkeypatch.setenv("FAKE_ENCODER_MODE", "nooutput")

    result = orchestrator.run_job(_edit_request(orchestrator, input_video), metadata=source_1080p)

    assert result.error_kind == ErrorKind.OUTPUT_NOT_CREATED
    assert result.exit_code == 0
    assert not input_video.with_name("clip_edited.mp4").exists()


def test_helper_holding_pipes_does_not_block_job(fake_encoder, input_video, source_1080p, event_bus, tmp_path,
                                                monkeypatch):
    pidfile = tmp_path / "helper.pid"
    monkeypatch.setenv("FAKE_ENCODER_MODE", "helper")
    monkeypatch.setenv("FAKE_ENCODER_PIDFILE", str(pidfile))
    config = AppConfig(
        encoder={"bundled_dir": str(fake_encoder)},
        progress={"poll_interval_s": 0.02, "reader_join_timeout_s": 0.5},
    )
    orchestrator = JobOrchestrator(config=config, event_bus=event_bus)

    started = time.monotonic()
    try:
        result = orchestrator.run_job(_edit_request(orchestrator, input_video), metadata=source_1080p)
        elapsed = time.monotonic() - started
    finally:
        if pidfile.exists():
            try:
                psutil.Process(int(pidfile.read_text())).kill()
            except psutil.NoSuchProcess:
                pass

    assert result.success is True, result.error_details
    assert result.output_path.exists()
    # The helper sleeps for a minute; the job must finish right after the encoder exits
    assert elapsed < 10


def test_cancel_kills_process_tree(orchestrator, input_video, source_1080p, event_bus, tmp_path, monkeypatch):
    pidfile = tmp_path / "grandchild.pid"
    monkeypatch.setenv("FAKE_ENCODER_MODE", "hang")
    monkeypatch.setenv("FAKE_ENCODER_PIDFILE", str(pidfile))
    started = []
    cancelled = []
    event_bus.subscribe(JobStarted, started.append)
    event_bus.subscribe(JobCancelled, cancelled.append)

    cancel_event = threading.Event()
    samples = []
    state = {}

    def on_progress(sample):
        samples.append(sample)
        if not cancel_event.is_set() and pidfile.exists() and pidfile.read_text().strip():
            state["samples_at_cancel"] = len(samples)
            cancel_event.set()

    result = orchestrator.run_job(
        _edit_request(orchestrator, input_video),
        metadata=source_1080p,
        on_progress=on_progress,
        cancel_event=cancel_event,
    )

    assert result.state == JobState.CANCELLED
    assert result.error_kind == ErrorKind.CANCELLED
    assert result.message == CANCELLED_MESSAGE
    assert cancelled and cancelled[0].result == result
    # Nothing is delivered after the cancel request
    assert len(samples) == state["samples_at_cancel"]

    grandchild_pid = int(pidfile.read_text())
    assert _wait_gone(grandchild_pid)


def test_supervisor_cancel_from_another_thread(fake_encoder, tmp_path, monkeypatch):
    pidfile = tmp_path / "grandchild.pid"
    monkeypatch.setenv("FAKE_ENCODER_MODE", "hang")
    monkeypatch.setenv("FAKE_ENCODER_PIDFILE", str(pidfile))
    output = tmp_path / "out.mp4"
    supervisor = ProcessSupervisor(output, total_seconds=60.0, kill_grace_s=2.0)

    supervisor.start(str(fake_encoder / "ffmpeg"), ["-i", "in.mp4", str(output)], working_dir=fake_encoder)
    assert supervisor.state == SupervisorState.RUNNING
    encoder_pid = supervisor.pid

    first_sample = supervisor.progress.get(timeout=10)
    assert first_sample.elapsed is not None

    results = []
    canceller = threading.Thread(target=lambda: results.append(supervisor.cancel()))
    canceller.start()
    canceller.join(timeout=15)
    outcome = supervisor.wait(timeout=15)

    assert results == [True]
    assert supervisor.cancel() is False
    assert outcome.state == SupervisorState.CANCELLED
    assert outcome.exit_code != 0
    assert _wait_gone(encoder_pid)
    assert _wait_gone(int(pidfile.read_text()))
