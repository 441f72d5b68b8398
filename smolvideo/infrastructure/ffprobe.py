import json
import logging
import subprocess
from pathlib import Path
from typing import Any, Dict, List, Optional
from smolvideo.domain.errors import EncoderNotFound, ProbeFailure
from smolvideo.domain.models import SourceMetadata
from smolvideo.infrastructure.binaries import BinaryLocator

class FFprobeAdapter:
    """Wrapper around ffprobe to extract source metadata."""

    def __init__(self, locator: Optional[BinaryLocator] = None, ffprobe_path: Optional[str] = None,
                 timeout_s: float = 60.0):
        self.locator = locator or BinaryLocator()
        self._ffprobe_path = ffprobe_path
        self.timeout_s = timeout_s
        self.logger = logging.getLogger(__name__)

    @staticmethod
    def _to_float(value: Any) -> float:
        try:
            return float(value)
        except (TypeError, ValueError):
            return 0.0

    @classmethod
    def _parse_duration_tag(cls, value: Any) -> float:
        if value is None:
            return 0.0
        text = str(value).strip()
        if not text:
            return 0.0
        try:
            return float(text)
        except ValueError:
            pass
        if ":" in text:
            parts = text.split(":")
            if len(parts) in (2, 3):
                try:
                    parts_f = [float(p) for p in parts]
                except ValueError:
                    return 0.0
                if len(parts_f) == 2:
                    minutes, seconds = parts_f
                    return minutes * 60 + seconds
                hours, minutes, seconds = parts_f
                return hours * 3600 + minutes * 60 + seconds
        return 0.0

    @classmethod
    def _parse_rate(cls, value: Any) -> float:
        """'30000/1001' -> 29.97; '0/0' and junk -> 0.0."""
        text = str(value or "").strip()
        if "/" in text:
            num_text, den_text = text.split("/", 1)
            den = cls._to_float(den_text)
            if den == 0:
                return 0.0
            return cls._to_float(num_text) / den
        return cls._to_float(text)

    def _binary(self) -> str:
        if self._ffprobe_path is None:
            try:
                self._ffprobe_path = self.locator.resolve_ffprobe().path
            except EncoderNotFound as e:
                raise ProbeFailure(e.message) from e
        return self._ffprobe_path

    def _run(self, args: List[str]) -> subprocess.CompletedProcess:
        cmd = [self._binary(), *args]
        try:
            return subprocess.run(cmd, capture_output=True, text=True, timeout=self.timeout_s)
        except (OSError, subprocess.TimeoutExpired) as e:
            raise ProbeFailure(f"ffprobe could not be run: {e}") from e

    def get_duration(self, file_path: Path) -> float:
        """Quick duration query. Returns 0.0 when it cannot be determined."""
        try:
            result = self._run([
                "-v", "quiet",
                "-show_entries", "format=duration",
                "-of", "csv=p=0",
                str(file_path),
            ])
        except ProbeFailure as e:
            self.logger.warning(f"PROBE_DURATION_FAILED: {Path(file_path).name} ({e.message})")
            return 0.0

        if result.returncode != 0:
            self.logger.warning(f"PROBE_DURATION_FAILED: {Path(file_path).name} (exit {result.returncode})")
            return 0.0
        duration = self._to_float((result.stdout or "").strip())
        return duration if duration > 0 else 0.0

    def get_stream_info(self, file_path: Path) -> Dict[str, Any]:
        """Executes ffprobe and parses JSON output."""
        result = self._run([
            "-v", "quiet",
            "-print_format", "json",
            "-show_streams",
            "-show_format",
            str(file_path),
        ])
        if result.returncode != 0:
            raise ProbeFailure(f"ffprobe failed for {file_path}", details=result.stderr or "")
        if not (result.stdout or "").strip():
            raise ProbeFailure(f"ffprobe returned empty output for {file_path}")
        try:
            data = json.loads(result.stdout)
        except json.JSONDecodeError as e:
            raise ProbeFailure(f"ffprobe returned unparseable output for {file_path}", details=str(e)) from e
        if not isinstance(data, dict):
            raise ProbeFailure(f"ffprobe returned unexpected output for {file_path}")
        return data

    def get_metadata(self, file_path: Path) -> SourceMetadata:
        """Full metadata snapshot; raises ProbeFailure."""
        file_path = Path(file_path)
        data = self.get_stream_info(file_path)
        streams = data.get("streams", []) or []

        video_stream = next((s for s in streams if s.get("codec_type") == "video"), None)
        if not video_stream:
            raise ProbeFailure(f"No video stream found in {file_path}")
        audio_stream = next((s for s in streams if s.get("codec_type") == "audio"), None)

        # Prefer avg_frame_rate; r_frame_rate is often the timebase
        frame_rate = self._parse_rate(video_stream.get("avg_frame_rate"))
        if frame_rate <= 0 or frame_rate > 240:
            frame_rate = self._parse_rate(video_stream.get("r_frame_rate"))
            if frame_rate > 240:
                frame_rate = 0.0

        # Duration fallback order: format.duration, format tags, stream.duration, stream tags, bitrate/size
        fmt = data.get("format", {}) or {}
        duration = self._to_float(fmt.get("duration"))
        if duration <= 0:
            tags = fmt.get("tags", {}) or {}
            duration = self._parse_duration_tag(tags.get("DURATION") or tags.get("duration"))
        if duration <= 0:
            duration = self._to_float(video_stream.get("duration"))
        if duration <= 0:
            tags = video_stream.get("tags", {}) or {}
            duration = self._parse_duration_tag(tags.get("DURATION") or tags.get("duration"))
        if duration <= 0:
            bit_rate = self._to_float(fmt.get("bit_rate") or video_stream.get("bit_rate"))
            size = self._to_float(fmt.get("size"))
            if bit_rate > 0 and size > 0:
                duration = (size * 8) / bit_rate

        try:
            file_size = file_path.stat().st_size
        except OSError:
            file_size = int(self._to_float(fmt.get("size")))

        return SourceMetadata(
            file_path=file_path,
            duration=max(0.0, duration),
            width=int(video_stream.get("width") or 0),
            height=int(video_stream.get("height") or 0),
            format_name=str(fmt.get("format_name") or ""),
            video_codec=str(video_stream.get("codec_name") or ""),
            audio_codec=str(audio_stream.get("codec_name") or "") if audio_stream else "",
            frame_rate=frame_rate,
            file_size=file_size,
            bitrate=str(fmt.get("bit_rate") or ""),
        )
