from enum import Enum
from pathlib import Path
from typing import Optional
from smolvideo.config.models import OutputConfig
from smolvideo.domain.models import JobKind


class NamingPolicy(str, Enum):
    EDIT = "EDIT"          # always "<stem>_edited<container>"
    OPTIMIZE = "OPTIMIZE"  # "<stem>_optimized<container>" only if already in the container

    @classmethod
    def for_kind(cls, kind: JobKind) -> "NamingPolicy":
        return cls.OPTIMIZE if kind == JobKind.OPTIMIZE else cls.EDIT


class PathResolver:
    """Derives output names beside the input and avoids clobbering files."""

    def __init__(self, config: Optional[OutputConfig] = None):
        self.config = config or OutputConfig()

    def resolve_output_name(self, input_path: Path, policy: NamingPolicy) -> Path:
        input_path = Path(input_path)
        container = self.config.container
        if policy == NamingPolicy.EDIT:
            suffix = self.config.edit_suffix
        elif input_path.suffix.lower() == container:
            suffix = self.config.optimize_suffix
        else:
            suffix = ""
        return input_path.with_name(f"{input_path.stem}{suffix}{container}")

    def unique_path(self, base_path: Path, overwrite: bool = False) -> Path:
        """First free path among base, base_1, base_2, ... (no upper bound).

        Not atomic: a concurrent writer can still claim the returned path.
        """
        base_path = Path(base_path)
        if overwrite or not base_path.exists():
            return base_path
        counter = 1
        while True:
            candidate = base_path.with_name(f"{base_path.stem}_{counter}{base_path.suffix}")
            if not candidate.exists():
                return candidate
            counter += 1

    def output_path_for(self, input_path: Path, kind: JobKind, overwrite: bool = False) -> Path:
        base = self.resolve_output_name(input_path, NamingPolicy.for_kind(kind))
        return self.unique_path(base, overwrite)
