"""
Coordinate transform from UI canvas space to frame pixel space.

The mask is drawn on a canvas that shows the reference image letterboxed
("contain" fit). Frames are masked with a direct fill mapping: the
letterbox bars are removed and the displayed image area is stretched onto
the full frame.
"""

import logging
from threading import Lock
from typing import Optional

from framemask.core.exceptions import GeometryError
from framemask.core.models import Mask, TransformationMatrix

logger = logging.getLogger(__name__)


def displayed_size(mask: Mask) -> tuple[float, float]:
    """
    Size of the natural image as displayed on the canvas.

    Raises:
        GeometryError: If the mask has no usable display placement.
    """
    if not mask.has_display_placement:
        raise GeometryError("Mask has no display placement")
    natural = mask.image_dimensions
    scale = mask.image_display_info.scale
    width = natural.width * scale
    height = natural.height * scale
    if width <= 0 or height <= 0:
        raise GeometryError(
            f"Degenerate display placement: {natural.width}x{natural.height} at scale {scale}"
        )
    return width, height


def canvas_dimensions(mask: Mask, frame_width: int, frame_height: int) -> tuple[float, float]:
    """Canvas size the mask was drawn on, defaulting to the frame size."""
    size = mask.canvas_size
    if size is None:
        return float(frame_width), float(frame_height)
    return size


def compute_matrix(mask: Mask, frame_width: int, frame_height: int) -> TransformationMatrix:
    """
    Compute the canvas-to-frame mapping for one frame size.

    With a display placement the displayed image rectangle maps onto the
    whole frame. Without one, the canvas is scaled directly to the frame.

    Args:
        mask: Mask carrying canvas and display metadata.
        frame_width: Target frame width in pixels.
        frame_height: Target frame height in pixels.

    Returns:
        TransformationMatrix for the frame size.
    """
    if mask.has_display_placement:
        try:
            displayed_w, displayed_h = displayed_size(mask)
        except GeometryError as e:
            logger.warning(f"{e}; falling back to direct canvas scaling")
        else:
            placement = mask.image_display_info
            scale_x = frame_width / displayed_w
            scale_y = frame_height / displayed_h
            matrix = TransformationMatrix(
                scale_x=scale_x,
                scale_y=scale_y,
                offset_x=-placement.offset_x * scale_x,
                offset_y=-placement.offset_y * scale_y,
            )
            logger.debug(f"Display-aware transform for {frame_width}x{frame_height}: {matrix}")
            return matrix

    canvas_w, canvas_h = canvas_dimensions(mask, frame_width, frame_height)
    matrix = TransformationMatrix(
        scale_x=frame_width / canvas_w if canvas_w > 0 else 1.0,
        scale_y=frame_height / canvas_h if canvas_h > 0 else 1.0,
    )
    logger.debug(
        f"Direct transform {canvas_w}x{canvas_h} -> {frame_width}x{frame_height}: {matrix}"
    )
    return matrix


class TransformCache:
    """Per-job cache of transformation matrices keyed by frame size."""

    def __init__(self, mask: Mask):
        self.mask = mask
        self._matrices: dict[tuple[int, int], TransformationMatrix] = {}
        self._lock = Lock()

    def get(self, frame_width: int, frame_height: int) -> TransformationMatrix:
        key = (frame_width, frame_height)
        with self._lock:
            matrix: Optional[TransformationMatrix] = self._matrices.get(key)
            if matrix is None:
                matrix = compute_matrix(self.mask, frame_width, frame_height)
                self._matrices[key] = matrix
            else:
                logger.debug(f"Transform cache hit for {frame_width}x{frame_height}")
            return matrix

    def __len__(self) -> int:
        return len(self._matrices)
