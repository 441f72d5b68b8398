import logging
import os
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Optional
from smolvideo.config.models import EncoderConfig
from smolvideo.domain.errors import EncoderNotFound

DEFAULT_BUNDLED_DIR = Path(__file__).resolve().parents[1] / "resources" / "ffmpeg"


@dataclass(frozen=True)
class ResolvedBinary:
    path: str
    working_dir: Path
    bundled: bool


class BinaryLocator:
    """Finds ffmpeg/ffprobe: bundled copy first, system PATH second."""

    def __init__(self, config: Optional[EncoderConfig] = None):
        self.config = config or EncoderConfig()
        self.logger = logging.getLogger(__name__)

    @property
    def bundled_dir(self) -> Path:
        if self.config.bundled_dir:
            return Path(self.config.bundled_dir).expanduser()
        return DEFAULT_BUNDLED_DIR

    @staticmethod
    def _exe_name(name: str) -> str:
        if os.name == "nt" and not name.lower().endswith(".exe"):
            return f"{name}.exe"
        return name

    def bundled_path(self, name: str) -> Path:
        return self.bundled_dir / self._exe_name(name)

    def system_available(self, name: str) -> bool:
        """Runs `<name> -version`; any failure means not available."""
        try:
            result = subprocess.run(
                [name, "-version"],
                capture_output=True,
                timeout=self.config.version_check_timeout_s,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            self.logger.debug(f"VERSION_CHECK_FAILED: {name} ({e})")
            return False
        return result.returncode == 0

    def resolve(self, name: str) -> ResolvedBinary:
        bundled = self.bundled_path(name)
        if bundled.is_file():
            return ResolvedBinary(path=str(bundled), working_dir=bundled.parent, bundled=True)

        if self.system_available(name):
            path = shutil.which(name) or name
            return ResolvedBinary(path=path, working_dir=Path.cwd(), bundled=False)

        raise EncoderNotFound(
            f"{name} not found. Bundle it in {self.bundled_dir} or install it on the system PATH."
        )

    def resolve_ffmpeg(self) -> ResolvedBinary:
        return self.resolve(self.config.ffmpeg_name)

    def resolve_ffprobe(self) -> ResolvedBinary:
        return self.resolve(self.config.ffprobe_name)
