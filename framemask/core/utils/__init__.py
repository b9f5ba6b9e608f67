"""
Core utility modules for FFmpeg operations.
"""

from framemask.core.utils.ffmpeg import (
    filter_benign_warnings,
    parse_frame_rate,
    run_ffmpeg,
    run_ffprobe,
)

__all__ = ["run_ffmpeg", "run_ffprobe", "parse_frame_rate", "filter_benign_warnings"]
