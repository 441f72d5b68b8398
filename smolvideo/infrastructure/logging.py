import logging
from pathlib import Path
from typing import Optional

def setup_logging(log_dir: Path, debug: bool = False, log_path: Optional[Path] = None) -> logging.Logger:
    """
    Setup logging configuration for smolvideo.

    Writes to smolvideo.log inside log_dir unless log_path is given.
    Returns configured logger instance.

    Args:
        log_dir: Directory for the default log file (created if missing)
        debug: If True, enable DEBUG level logging (encoder command lines, raw stderr)
        log_path: Optional path to log file (overrides log_dir)
    """
    log_file = Path(log_path) if log_path else (Path(log_dir) / "smolvideo.log")
    log_file.parent.mkdir(parents=True, exist_ok=True)

    level = logging.DEBUG if debug else logging.INFO

    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(levelname)s - %(name)s - %(message)s',
        handlers=[logging.FileHandler(log_file, encoding="utf-8")],
        force=True  # Override any existing configuration
    )

    logger = logging.getLogger(__name__)
    logger.info(f"Logging initialized: {log_file} (debug={'ON' if debug else 'OFF'})")

    return logger
