import os
import subprocess
import pytest
from pathlib import Path
from unittest.mock import patch
from smolvideo.config.models import EncoderConfig
from smolvideo.domain.errors import EncoderNotFound
from smolvideo.infrastructure.binaries import DEFAULT_BUNDLED_DIR, BinaryLocator


@pytest.fixture
def bundled_dir(tmp_path):
    path = tmp_path / "bundle"
    path.mkdir()
    return path


def _exe(name):
    return f"{name}.exe" if os.name == "nt" else name


def test_bundled_binary_wins(bundled_dir):
    (bundled_dir / _exe("ffmpeg")).write_text("")
    locator = BinaryLocator(EncoderConfig(bundled_dir=str(bundled_dir)))

    with patch("subprocess.run") as mock_run:
        resolved = locator.resolve_ffmpeg()
        mock_run.assert_not_called()

    assert resolved.bundled is True
    assert resolved.path == str(bundled_dir / _exe("ffmpeg"))
    assert resolved.working_dir == bundled_dir


def test_system_binary_fallback(bundled_dir):
    locator = BinaryLocator(EncoderConfig(bundled_dir=str(bundled_dir)))

    with patch("subprocess.run") as mock_run, patch("shutil.which", return_value="/usr/bin/ffmpeg"):
        mock_run.return_value.returncode = 0
        resolved = locator.resolve_ffmpeg()

    assert resolved.bundled is False
    assert resolved.path == "/usr/bin/ffmpeg"
    assert mock_run.call_args[0][0] == ["ffmpeg", "-version"]


def test_version_check_failure_means_unavailable(bundled_dir):
    locator = BinaryLocator(EncoderConfig(bundled_dir=str(bundled_dir)))

    with patch("subprocess.run") as mock_run:
        mock_run.return_value.returncode = 1
        with pytest.raises(EncoderNotFound) as exc_info:
            locator.resolve_ffprobe()

    assert "ffprobe" in exc_info.value.message


@pytest.mark.parametrize(
    "error",
    [FileNotFoundError("ffmpeg"), PermissionError("denied"), subprocess.TimeoutExpired("ffmpeg", 10)],
)
def test_system_available_handles_errors(bundled_dir, error):
    locator = BinaryLocator(EncoderConfig(bundled_dir=str(bundled_dir)))
    with patch("subprocess.run", side_effect=error):
        assert locator.system_available("ffmpeg") is False


def test_custom_binary_names(bundled_dir):
    (bundled_dir / _exe("ffmpeg7")).write_text("")
    locator = BinaryLocator(EncoderConfig(bundled_dir=str(bundled_dir), ffmpeg_name="ffmpeg7"))
    assert locator.resolve_ffmpeg().path.endswith(_exe("ffmpeg7"))


def test_default_bundled_dir_is_inside_package():
    locator = BinaryLocator()
    assert locator.bundled_dir == DEFAULT_BUNDLED_DIR
    assert DEFAULT_BUNDLED_DIR.parent.name == "resources"
    assert DEFAULT_BUNDLED_DIR.parents[1].name == "smolvideo"


def test_exe_suffix_on_windows():
    with patch("os.name", "nt"):
        assert BinaryLocator._exe_name("ffmpeg") == "ffmpeg.exe"
        assert BinaryLocator._exe_name("ffmpeg.EXE") == "ffmpeg.EXE"
