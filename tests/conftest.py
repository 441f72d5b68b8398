import os
import stat
import sys
import textwrap
import pytest
import yaml
from pathlib import Path
from unittest.mock import MagicMock
from smolvideo.config.models import AppConfig
from smolvideo.domain.models import SourceMetadata
from smolvideo.infrastructure.event_bus import EventBus

# ============================================================================
# Configuration Fixtures
# ============================================================================

@pytest.fixture
def sample_config():
    """Returns an AppConfig with a fast poll interval for tests."""
    return AppConfig(
        general={"debug": False},
        encoder={"kill_grace_s": 2.0},
        progress={"queue_size": 64, "poll_interval_s": 0.01},
    )

@pytest.fixture
def config_yaml_path(tmp_path):
    """Creates a temporary YAML config file."""
    conf_dir = tmp_path / "conf"
    conf_dir.mkdir()
    conf_file = conf_dir / "smolvideo.yaml"

    content = {
        'general': {'debug': True},
        'encoder': {'hwaccel': 'auto', 'kill_grace_s': 1},
        'output': {'container': 'mp4', 'edit_suffix': '_cut'},
        'quality': {'crf': 23, 'preset': 'slow', 'fast_start': False},
    }

    with open(conf_file, 'w') as f:
        yaml.dump(content, f)

    return conf_file

# ============================================================================
# EventBus Fixtures
# ============================================================================

@pytest.fixture
def event_bus():
    """Returns a fresh EventBus instance."""
    return EventBus()

# ============================================================================
# Media Fixtures
# ============================================================================

@pytest.fixture
def source_1080p():
    """Metadata for a 2 minute 1920x1080 H.264 clip."""
    return SourceMetadata(
        duration=120.0,
        width=1920,
        height=1080,
        format_name="mov,mp4,m4a,3gp,3g2,mj2",
        video_codec="h264",
        audio_codec="aac",
        frame_rate=29.97,
        file_size=2000,
        bitrate="5000000",
    )

@pytest.fixture
def input_video(tmp_path):
    """A dummy input file; the encoder is always faked."""
    video = tmp_path / "clip.mp4"
    video.write_bytes(b"dummy video content " * 100)  # 2000 bytes
    return video

@pytest.fixture
def make_popen():
    """Factory for subprocess.Popen side effects that behave like a finished ffmpeg."""
    def _factory(returncode=0, stderr_lines=(), stdout_lines=("ffmpeg version fake",), write_output=True):
        calls = []

        def popen(cmd, **kwargs):
            calls.append((cmd, kwargs))
            if write_output:
                Path(cmd[-1]).write_bytes(b"x" * 500)
            process = MagicMock()
            process.pid = 4242
            process.stdout = [f"{line}\n" for line in stdout_lines]
            process.stderr = [f"{line}\n" for line in stderr_lines]
            process.wait.return_value = returncode
            process.poll.return_value = returncode
            process.returncode = returncode
            return process

        popen.calls = calls
        return popen
    return _factory

# ============================================================================
# Fake encoder (integration tests spawn it as a real child process)
# ============================================================================

FAKE_ENCODER_SOURCE = textwrap.dedent('''
    import os
    import subprocess
    import sys
    import time

    mode = os.environ.get("FAKE_ENCODER_MODE", "success")
    output = sys.argv[-1]
    sys.stdout.write("fake encoder " + " ".join(sys.argv[1:]) + "\\n")
    sys.stdout.flush()

    if mode == "hang":
        child = subprocess.Popen([sys.executable, "-c", "import time; time.sleep(120)"])
        with open(os.environ["FAKE_ENCODER_PIDFILE"], "w") as f:
            f.write(str(child.pid))
        i = 0
        while True:
            sys.stderr.write("frame=%d time=00:00:%02d.00 bitrate=1k speed=1.0x\\n" % (i, i % 60))
            sys.stderr.flush()
            time.sleep(0.05)
            i += 1

    if mode == "helper":
        # Outlives us and keeps our stdout/stderr open
        helper = subprocess.Popen([sys.executable, "-c", "import time; time.sleep(60)"])
        with open(os.environ["FAKE_ENCODER_PIDFILE"], "w") as f:
            f.write(str(helper.pid))

    for sec in (10, 30, 60, 90):
        sys.stderr.write(
            "frame=%5d fps=50 q=28.0 size=    1024kB time=00:%02d:%02d.00 bitrate= 838.0kbits/s speed=2.00x\\r"
            % (sec * 25, sec // 60, sec % 60)
        )
        sys.stderr.flush()

    if mode == "fail":
        sys.stderr.write("\\nInvalid data found when processing input\\n")
        sys.exit(1)
    if mode == "nooutput":
        sys.exit(0)

    with open(output, "wb") as f:
        f.write(b"encoded" * 100)
    sys.exit(0)
''')


@pytest.fixture
def fake_encoder(tmp_path):
    """Installs a fake `ffmpeg` in a bundled dir and returns that dir."""
    if os.name == "nt":
        pytest.skip("fake encoder wrapper is a POSIX shell script")
    bundled = tmp_path / "bin"
    bundled.mkdir()
    script = bundled / "fake_encoder.py"
    script.write_text(FAKE_ENCODER_SOURCE)
    wrapper = bundled / "ffmpeg"
    wrapper.write_text(f'#!/bin/sh\nexec "{sys.executable}" "{script}" "$@"\n')
    wrapper.chmod(wrapper.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return bundled

# ============================================================================
# Markers
# ============================================================================

def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "integration: marks tests that spawn real child processes"
    )
    config.addinivalue_line(
        "markers", "unit: marks tests as unit tests"
    )
