"""
Frame masking operator: occlusion, output fitting and encoding.

Occlusion is a destructive overwrite: every pixel with non-zero opacity is
set to black. Frames are then fitted to the output size and encoded.
"""

import logging
from dataclasses import dataclass

import cv2
import numpy as np

from framemask.config import DEFAULT_JPEG_QUALITY
from framemask.core.exceptions import FrameMaskError, GeometryError
from framemask.core.models import (
    AspectRatioMode,
    ExecutionTier,
    FrameResult,
    OutputFormat,
    OutputSettings,
)

logger = logging.getLogger(__name__)


def apply_occlusion(frame: np.ndarray, opacity: np.ndarray) -> np.ndarray:
    """
    Black out every pixel whose opacity is non-zero.

    Colour channels are overwritten with 0; an alpha channel, if present,
    is kept. The input frame is not modified.

    Raises:
        GeometryError: If the opacity buffer does not match the frame size.
    """
    if frame.shape[:2] != opacity.shape[:2]:
        raise GeometryError(
            f"Opacity buffer {opacity.shape[1]}x{opacity.shape[0]} does not match "
            f"frame {frame.shape[1]}x{frame.shape[0]}"
        )
    out = frame.copy()
    occluded = opacity > 0
    if out.ndim == 2:
        out[occluded] = 0
    else:
        out[occluded, :3] = 0
    return out


def _interpolation(scale: float) -> int:
    return cv2.INTER_AREA if scale < 1.0 else cv2.INTER_LINEAR


def fit_to_output(
    frame: np.ndarray,
    size: tuple[int, int],
    mode: AspectRatioMode = AspectRatioMode.LETTERBOX,
) -> np.ndarray:
    """
    Fit a frame to the output size.

    Args:
        frame: Source frame.
        size: Target (width, height).
        mode: ``stretch`` ignores aspect ratio, ``letterbox`` pads with black,
            ``crop`` cuts the centered overflow.

    Returns:
        Frame of exactly the target size.
    """
    target_w, target_h = size
    height, width = frame.shape[:2]
    if (width, height) == (target_w, target_h):
        return frame

    if mode == AspectRatioMode.STRETCH:
        scale = min(target_w / width, target_h / height)
        return cv2.resize(frame, (target_w, target_h), interpolation=_interpolation(scale))

    if mode == AspectRatioMode.CROP:
        scale = max(target_w / width, target_h / height)
        new_w = max(target_w, round(width * scale))
        new_h = max(target_h, round(height * scale))
        resized = cv2.resize(frame, (new_w, new_h), interpolation=_interpolation(scale))
        x = (new_w - target_w) // 2
        y = (new_h - target_h) // 2
        return resized[y:y + target_h, x:x + target_w].copy()

    # Letterbox
    scale = min(target_w / width, target_h / height)
    new_w = min(target_w, max(1, round(width * scale)))
    new_h = min(target_h, max(1, round(height * scale)))
    resized = cv2.resize(frame, (new_w, new_h), interpolation=_interpolation(scale))
    canvas = np.zeros((target_h, target_w) + frame.shape[2:], dtype=frame.dtype)
    x = (target_w - new_w) // 2
    y = (target_h - new_h) // 2
    canvas[y:y + new_h, x:x + new_w] = resized
    return canvas


def encode_frame(
    frame: np.ndarray,
    fmt: OutputFormat = OutputFormat.PNG,
    quality: int = DEFAULT_JPEG_QUALITY,
) -> bytes:
    """
    Encode a frame as PNG (lossless) or JPEG (lossy).

    Raises:
        FrameMaskError: If OpenCV cannot encode the frame.
    """
    if fmt == OutputFormat.JPG:
        ok, encoded = cv2.imencode(".jpg", frame, [cv2.IMWRITE_JPEG_QUALITY, int(quality)])
    else:
        ok, encoded = cv2.imencode(".png", frame)
    if not ok:
        raise FrameMaskError(f"Failed to encode frame as {fmt.value}")
    return encoded.tobytes()


@dataclass
class MaskTask:
    """A single frame masking task; picklable for worker processes."""

    frame_number: int
    frame: np.ndarray
    opacity: np.ndarray
    output_size: tuple[int, int]
    aspect_ratio_mode: AspectRatioMode = AspectRatioMode.LETTERBOX
    output_format: OutputFormat = OutputFormat.PNG
    jpeg_quality: int = DEFAULT_JPEG_QUALITY
    tier: ExecutionTier = ExecutionTier.PARALLEL


def run_mask_task(task: MaskTask) -> FrameResult:
    """Mask, fit and encode one frame. Raises on failure."""
    height, width = task.frame.shape[:2]
    masked = apply_occlusion(task.frame, task.opacity)
    fitted = fit_to_output(masked, task.output_size, task.aspect_ratio_mode)
    buffer = encode_frame(fitted, task.output_format, task.jpeg_quality)
    return FrameResult(
        frame_number=task.frame_number,
        buffer=buffer,
        success=True,
        tier=task.tier,
        original_width=width,
        original_height=height,
        output_width=task.output_size[0],
        output_height=task.output_size[1],
    )


def mask_frame_task(task: MaskTask) -> FrameResult:
    """
    Worker entry point. Never raises: failures become failed results that
    keep the frame number.
    """
    try:
        return run_mask_task(task)
    except Exception as e:
        logger.error(f"Error processing frame {task.frame_number}: {e}", exc_info=True)
        return FrameResult.failed(task.frame_number, str(e), task.tier)


class FrameMaskingOperator:
    """Builds masking tasks from output settings and runs them."""

    def build_task(
        self,
        frame_number: int,
        frame: np.ndarray,
        opacity: np.ndarray,
        settings: OutputSettings,
        tier: ExecutionTier = ExecutionTier.PARALLEL,
    ) -> MaskTask:
        height, width = frame.shape[:2]
        return MaskTask(
            frame_number=frame_number,
            frame=frame,
            opacity=opacity,
            output_size=settings.resolve_size(width, height),
            aspect_ratio_mode=settings.aspect_ratio_mode,
            output_format=settings.format,
            jpeg_quality=settings.jpeg_quality,
            tier=tier,
        )

    def apply_mask(
        self,
        frame_number: int,
        frame: np.ndarray,
        opacity: np.ndarray,
        settings: OutputSettings,
        tier: ExecutionTier = ExecutionTier.PARALLEL,
    ) -> FrameResult:
        """Apply the mask to one frame; never raises."""
        try:
            task = self.build_task(frame_number, frame, opacity, settings, tier)
        except Exception as e:
            logger.error(f"Error preparing frame {frame_number}: {e}", exc_info=True)
            return FrameResult.failed(frame_number, str(e), tier)
        return mask_frame_task(task)
