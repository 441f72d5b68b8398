import logging
import os
import queue
import shutil
import subprocess
import threading
from collections import deque
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Deque, List, Optional, Sequence, Union

import psutil

from smolvideo.domain.errors import ExecutableNotFound, ProcessLaunchFailure
from smolvideo.domain.models import (
    CANCELLED_MESSAGE,
    OUTPUT_NOT_CREATED_MESSAGE,
    SUCCESS_MESSAGE,
    ProgressSample,
)
from smolvideo.infrastructure.progress import parse_line


class SupervisorState(str, Enum):
    IDLE = "IDLE"
    STARTING = "STARTING"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


TERMINAL_STATES = {SupervisorState.COMPLETED, SupervisorState.FAILED, SupervisorState.CANCELLED}


@dataclass(frozen=True)
class SupervisorOutcome:
    state: SupervisorState
    exit_code: Optional[int]
    message: str
    stderr: str = ""
    stdout: str = ""
    output_missing: bool = False


class ProcessSupervisor:
    """Owns exactly one encoder process from start to exit.

    stdout and stderr are drained by two reader threads so neither pipe can
    fill up and stall the encoder. stderr lines are parsed into
    ProgressSamples and pushed to `progress`, a bounded queue that drops its
    oldest sample when the consumer falls behind.
    """

    def __init__(
        self,
        output_path: Union[str, Path],
        total_seconds: float = 0.0,
        queue_size: int = 64,
        kill_grace_s: float = 3.0,
        diagnostic_max_lines: int = 5000,
        reader_join_timeout_s: float = 5.0,
    ):
        self.output_path = Path(output_path)
        self.total_seconds = total_seconds
        self.kill_grace_s = kill_grace_s
        self.reader_join_timeout_s = reader_join_timeout_s
        self.progress: "queue.Queue[ProgressSample]" = queue.Queue(maxsize=queue_size)
        self.dropped_samples = 0
        self.logger = logging.getLogger(__name__)

        self._state = SupervisorState.IDLE
        self._lock = threading.Lock()
        self._cancel_requested = threading.Event()
        self._process: Optional[subprocess.Popen] = None
        self._readers: List[threading.Thread] = []
        self._stdout_lines: Deque[str] = deque(maxlen=diagnostic_max_lines)
        self._stderr_lines: Deque[str] = deque(maxlen=diagnostic_max_lines)
        self._outcome: Optional[SupervisorOutcome] = None

    @property
    def state(self) -> SupervisorState:
        with self._lock:
            return self._state

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid if self._process is not None else None

    @property
    def cancel_requested(self) -> bool:
        return self._cancel_requested.is_set()

    @property
    def stderr_text(self) -> str:
        return "\n".join(self._stderr_lines)

    @property
    def stdout_text(self) -> str:
        return "\n".join(self._stdout_lines)

    @staticmethod
    def _resolve_executable(executable: str) -> str:
        has_dir = os.sep in executable or (os.altsep is not None and os.altsep in executable)
        if has_dir:
            if Path(executable).is_file():
                return executable
            raise ExecutableNotFound(f"Encoder executable not found: {executable}")
        resolved = shutil.which(executable)
        if resolved is None:
            raise ExecutableNotFound(f"Encoder executable not found on PATH: {executable}")
        return resolved

    def _set_state(self, state: SupervisorState):
        with self._lock:
            self._state = state

    def start(self, executable: str, args: Sequence[str], working_dir: Optional[Path] = None):
        """Launches the process and the two reader threads."""
        with self._lock:
            if self._state != SupervisorState.IDLE:
                raise RuntimeError(f"Supervisor cannot start from state {self._state.value}")
            self._state = SupervisorState.STARTING

        try:
            resolved = self._resolve_executable(executable)
        except ExecutableNotFound:
            self._set_state(SupervisorState.FAILED)
            raise

        cmd = [resolved, *args]
        self.logger.debug(f"ENCODER_CMD: {subprocess.list2cmdline(cmd)}")
        try:
            process = subprocess.Popen(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
                bufsize=1,
                cwd=str(working_dir) if working_dir else None,
            )
        except OSError as e:
            self._set_state(SupervisorState.FAILED)
            raise ProcessLaunchFailure(f"Failed to start encoder: {e}", details=repr(e)) from e

        try:
            self._readers = [
                threading.Thread(
                    target=self._drain, args=(process.stdout, self._stdout_lines, False),
                    name="encoder-stdout", daemon=True,
                ),
                threading.Thread(
                    target=self._drain, args=(process.stderr, self._stderr_lines, True),
                    name="encoder-stderr", daemon=True,
                ),
            ]
            for reader in self._readers:
                reader.start()
        except BaseException:
            self._kill_tree(process)
            self._close_pipes(process)
            self._set_state(SupervisorState.FAILED)
            raise

        with self._lock:
            self._process = process
            self._state = SupervisorState.RUNNING
            cancel_pending = self._cancel_requested.is_set()

        self.logger.info(f"ENCODER_RUNNING: pid={process.pid} output={self.output_path.name}")
        if cancel_pending:
            # cancel() arrived while we were still starting
            self._kill_tree(process)

    def _drain(self, stream, sink: Deque[str], parse_progress: bool):
        if stream is None:
            return
        try:
            for raw in stream:
                line = raw.rstrip("\r\n")
                if not line:
                    continue
                sink.append(line)
                if parse_progress:
                    self._publish_progress(line)
        except (OSError, ValueError) as e:
            # Pipe closed underneath us during teardown
            self.logger.debug(f"ENCODER_STREAM_CLOSED: {e}")
        finally:
            self._close_stream(stream)

    def _publish_progress(self, line: str):
        sample = parse_line(line, self.total_seconds)
        if sample is None or self._cancel_requested.is_set():
            return
        while True:
            try:
                self.progress.put_nowait(sample)
                return
            except queue.Full:
                try:
                    self.progress.get_nowait()
                    self.dropped_samples += 1
                except queue.Empty:
                    pass

    def is_drained(self) -> bool:
        """True once both readers have hit EOF."""
        return bool(self._readers) and not any(r.is_alive() for r in self._readers)

    def has_exited(self) -> bool:
        """True once the encoder process itself is gone, even if a descendant still holds its pipes."""
        with self._lock:
            process = self._process
        return process is not None and process.poll() is not None

    def cancel(self) -> bool:
        """Kills the process tree. Safe from any thread; repeat calls are no-ops.

        Returns True only for the call that actually requested cancellation.
        """
        with self._lock:
            if self._state in TERMINAL_STATES or self._cancel_requested.is_set():
                return False
            if self._state == SupervisorState.IDLE:
                self._cancel_requested.set()
                self._state = SupervisorState.CANCELLED
                return True
            process = self._process
            if process is not None and process.poll() is not None:
                return False
            self._cancel_requested.set()

        if process is not None:
            self.logger.info(f"ENCODER_CANCEL: pid={process.pid}")
            self._kill_tree(process)
        return True

    def _kill_tree(self, process: subprocess.Popen):
        """terminate() the process and all descendants, kill() what survives the grace period."""
        try:
            children = psutil.Process(process.pid).children(recursive=True)
        except psutil.Error:
            children = []

        for child in children:
            try:
                child.terminate()
            except psutil.NoSuchProcess:
                pass
        try:
            process.terminate()
        except OSError:
            pass

        try:
            process.wait(timeout=self.kill_grace_s)
        except subprocess.TimeoutExpired:
            self.logger.warning(f"ENCODER_KILL: pid={process.pid} ignored terminate, killing")
            process.kill()
            process.wait()

        _, alive = psutil.wait_procs(children, timeout=self.kill_grace_s)
        for child in alive:
            try:
                child.kill()
            except psutil.NoSuchProcess:
                pass
        if alive:
            psutil.wait_procs(alive, timeout=self.kill_grace_s)

    @staticmethod
    def _close_stream(stream):
        close = getattr(stream, "close", None)
        if close is None:
            return
        try:
            close()
        except OSError:
            pass

    @classmethod
    def _close_pipes(cls, process: subprocess.Popen):
        for stream in (process.stdout, process.stderr):
            cls._close_stream(stream)

    def wait(self, timeout: Optional[float] = None) -> SupervisorOutcome:
        """Blocks until exit and classifies the terminal state.

        Raises subprocess.TimeoutExpired if `timeout` elapses first; the
        process stays owned by the supervisor in that case.
        """
        if self._outcome is not None:
            return self._outcome

        with self._lock:
            process = self._process
            state = self._state
        if process is None:
            if state == SupervisorState.CANCELLED:
                self._outcome = SupervisorOutcome(state=state, exit_code=None, message=CANCELLED_MESSAGE)
                return self._outcome
            raise RuntimeError("Supervisor was never started")

        exit_code = process.wait(timeout=timeout)
        streams = (process.stdout, process.stderr)
        try:
            for reader in self._readers:
                reader.join(timeout=self.reader_join_timeout_s)
        finally:
            for reader, stream in zip(self._readers, streams):
                if reader.is_alive():
                    # A descendant still holds the write end; the daemon reader closes
                    # the stream itself at EOF. Closing here would block on its read.
                    self.logger.warning(f"ENCODER_STREAM_OPEN: {reader.name} still open after exit")
                else:
                    self._close_stream(stream)

        output_missing = False
        with self._lock:
            if self._cancel_requested.is_set():
                state = SupervisorState.CANCELLED
                message = CANCELLED_MESSAGE
            elif exit_code == 0 and self.output_path.exists():
                state = SupervisorState.COMPLETED
                message = SUCCESS_MESSAGE
            elif exit_code == 0:
                state = SupervisorState.FAILED
                message = OUTPUT_NOT_CREATED_MESSAGE
                output_missing = True
            else:
                state = SupervisorState.FAILED
                message = f"Encoder process failed with exit code {exit_code}"
            self._state = state

        self._outcome = SupervisorOutcome(
            state=state,
            exit_code=exit_code,
            message=message,
            stderr=self.stderr_text,
            stdout=self.stdout_text,
            output_missing=output_missing,
        )
        self.logger.info(f"ENCODER_EXIT: pid={process.pid} code={exit_code} state={state.value}")
        return self._outcome
