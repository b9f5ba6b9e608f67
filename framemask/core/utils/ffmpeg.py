"""
FFmpeg utility functions with error handling and logging.

Frames are decoded by an external ffmpeg process and streamed back as raw
bytes; metadata comes from ffprobe JSON output.
"""

import json
import logging
import re
import subprocess
from typing import Any

logger = logging.getLogger(__name__)

# Patterns for known benign warnings that should be filtered
BENIGN_WARNING_PATTERNS = [
    r"\[av1 @ .*\] Your platform doesn't suppport hardware accelerated AV1 decoding",
    r"\[av1 @ .*\] Failed to get pixel format",
    r"\[.*\] .* does not support hardware acceleration",
    r"deprecated pixel format used",
]


def filter_benign_warnings(stderr: str) -> tuple[str, list[str]]:
    """
    Filter out known benign warnings from FFmpeg stderr.

    Args:
        stderr: Raw stderr output from FFmpeg.

    Returns:
        Tuple of (filtered_stderr, filtered_warnings_list).
    """
    filtered_lines = []
    filtered_warnings = []

    for line in stderr.split("\n"):
        if any(re.search(p, line, re.IGNORECASE) for p in BENIGN_WARNING_PATTERNS):
            filtered_warnings.append(line)
        else:
            filtered_lines.append(line)

    return "\n".join(filtered_lines), filtered_warnings


def _decode_stderr(stderr: Any) -> str:
    if isinstance(stderr, bytes):
        return stderr.decode("utf-8", errors="replace")
    return stderr or ""


def run_ffmpeg(
    cmd: list[str],
    log_level: str = "error",
    binary_output: bool = False,
) -> subprocess.CompletedProcess:
    """
    Run an FFmpeg command.

    Args:
        cmd: FFmpeg command as list of arguments.
        log_level: FFmpeg log level inserted after the executable.
        binary_output: Keep stdout as bytes (raw frame streams).

    Returns:
        CompletedProcess instance. stderr is always decoded text.

    Raises:
        RuntimeError: If FFmpeg exits non-zero or cannot be started.
    """
    if "-loglevel" not in cmd:
        cmd = cmd[:1] + ["-loglevel", log_level] + cmd[1:]

    try:
        result = subprocess.run(
            cmd,
            check=True,
            capture_output=True,
            text=not binary_output,
        )
    except FileNotFoundError as e:
        raise RuntimeError(f"FFmpeg executable not found: {cmd[0]}") from e
    except subprocess.CalledProcessError as e:
        filtered_stderr, warnings = filter_benign_warnings(_decode_stderr(e.stderr))
        if warnings:
            logger.debug(f"Filtered {len(warnings)} benign FFmpeg warnings")
        logger.error(f"FFmpeg failed: {filtered_stderr.strip()}")
        raise RuntimeError(f"FFmpeg command failed: {filtered_stderr.strip()}") from e

    filtered_stderr, warnings = filter_benign_warnings(_decode_stderr(result.stderr))
    if warnings:
        logger.debug(f"Filtered {len(warnings)} benign FFmpeg warnings")
    result.stderr = filtered_stderr
    return result


def run_ffprobe(path: str) -> dict:
    """
    Probe a media file and return the parsed JSON description.

    Raises:
        RuntimeError: If ffprobe fails or returns invalid JSON.
    """
    cmd = [
        "ffprobe",
        "-v", "quiet",
        "-print_format", "json",
        "-show_format",
        "-show_streams",
        path,
    ]
    try:
        result = subprocess.run(cmd, check=True, capture_output=True, text=True)
    except FileNotFoundError as e:
        raise RuntimeError("ffprobe executable not found") from e
    except subprocess.CalledProcessError as e:
        raise RuntimeError(f"ffprobe failed for {path}: {e.stderr}") from e

    try:
        return json.loads(result.stdout)
    except json.JSONDecodeError as e:
        raise RuntimeError(f"ffprobe returned invalid JSON for {path}") from e


def parse_frame_rate(value: str, default: float = 30.0) -> float:
    """Parse an ffprobe rate such as '30000/1001'."""
    if not value:
        return default
    try:
        if "/" in value:
            num, den = value.split("/", 1)
            num_f, den_f = float(num), float(den)
            if den_f == 0:
                return default
            rate = num_f / den_f
        else:
            rate = float(value)
    except ValueError:
        return default
    return rate if rate > 0 else default
