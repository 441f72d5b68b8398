import re
from typing import Optional
from smolvideo.domain.models import ProgressSample

# ffmpeg stderr status line, e.g.
# frame=  240 fps= 48 q=28.0 size=    1024kB time=00:00:10.01 bitrate= 838.0kbits/s speed=2.01x
TIME_REGEX = re.compile(r"time=(\d+):(\d+):(\d+(?:\.\d+)?)")
SPEED_REGEX = re.compile(r"speed=\s*(\d+\.?\d*)x")


def format_clock(seconds: float) -> str:
    """MM:SS, or HH:MM:SS once past an hour."""
    total = int(max(0.0, seconds))
    hours, rem = divmod(total, 3600)
    minutes, secs = divmod(rem, 60)
    if hours:
        return f"{hours:02d}:{minutes:02d}:{secs:02d}"
    return f"{minutes:02d}:{secs:02d}"


def parse_line(line: str, total_seconds: float) -> Optional[ProgressSample]:
    """Turns one encoder diagnostic line into a sample, or None if uninteresting."""
    time_match = TIME_REGEX.search(line)
    speed_match = SPEED_REGEX.search(line)
    if not time_match and not speed_match:
        return None

    percentage = None
    elapsed = None
    remaining = None
    speed = None
    parts = []

    if time_match:
        h, m, s = time_match.groups()
        elapsed = int(h) * 3600 + int(m) * 60 + float(s)
        if total_seconds > 0:
            percentage = min(100, int(round(elapsed / total_seconds * 100)))
            remaining = max(0.0, total_seconds - elapsed)
            parts.append(f"Processing... {percentage}% - ETA: {format_clock(remaining)}")
        else:
            parts.append(f"Processing... {format_clock(elapsed)} encoded")

    if speed_match:
        speed = f"{float(speed_match.group(1)):.1f}x"
        parts.append(f"Processing speed: {speed}")

    return ProgressSample(
        percentage=percentage,
        elapsed=elapsed,
        remaining=remaining,
        speed=speed,
        status=" | ".join(parts),
    )
