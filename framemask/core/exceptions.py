"""
Pipeline exceptions.

Per-frame errors are converted to failed FrameResults at the masking
boundary; job-level errors move the job to ``failed``.
"""


class FrameMaskError(Exception):
    """Base exception for all masking pipeline errors."""
    pass


class DecodeError(FrameMaskError):
    """Source media is unreadable or corrupt."""
    pass


class GeometryError(FrameMaskError):
    """Mask coordinates cannot be mapped onto a frame."""
    pass


class DimensionMismatchError(FrameMaskError):
    """Frames within one job differ in native size."""

    def __init__(self, reference: tuple[int, int], actual: tuple[int, int], frame_number: int):
        self.reference = reference
        self.actual = actual
        self.frame_number = frame_number
        super().__init__(
            f"Frame dimension mismatch! Reference: {reference[0]}x{reference[1]}, "
            f"Frame {frame_number}: {actual[0]}x{actual[1]}"
        )


class UnsupportedPixelFormatError(FrameMaskError):
    """Pixel data has an unexpected sample layout."""
    pass


class ResourceExhaustionError(FrameMaskError):
    """A frame or batch would exceed the configured memory bounds."""
    pass


class JobCancelledError(FrameMaskError):
    """The job was cancelled between sub-batches."""
    pass


class JobNotFoundError(FrameMaskError):
    """Raised when a requested job does not exist."""
    pass


class InvalidTransitionError(FrameMaskError):
    """Raised when a job status change is not allowed."""
    pass
