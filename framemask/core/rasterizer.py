"""
Mask rasterization into per-pixel opacity buffers.

Two paths are supported:

- Raster payload: a pre-rendered canvas image (data URL) in which mask
  strokes are painted in a reserved red marker colour. The canvas is
  projected onto the frame and red-dominant opaque pixels are classified
  as masked.
- Vector shape: rectangle, circle, polygon or freeform path rasterized by
  direct membership tests at the mask's opacity level.

Any non-zero value in the resulting buffer marks an occluded pixel.
"""

import base64
import binascii
import logging
import math
from threading import Lock
from typing import Optional

import cv2
import numpy as np

from framemask.core.exceptions import DecodeError, GeometryError
from framemask.core.models import (
    CircleShape,
    Mask,
    PixelBox,
    PolygonShape,
    RectangleShape,
    ShapeSpace,
    TransformationMatrix,
)
from framemask.core.pipeline_config import DEFAULT_CONFIG, PipelineConfig
from framemask.core.transform import TransformCache, compute_matrix, displayed_size

logger = logging.getLogger(__name__)

MASKED = 255


# -----------------------------------------------------------------------------
# Raster payload helpers
# -----------------------------------------------------------------------------


def decode_data_url(data_url: str) -> np.ndarray:
    """
    Decode an image data URL into a BGRA array.

    Raises:
        DecodeError: If the URL or the embedded image is invalid.
    """
    if not data_url or not data_url.startswith("data:image/"):
        raise DecodeError("Invalid data URL format")
    header, sep, payload = data_url.partition(",")
    if not sep or "base64" not in header:
        raise DecodeError("Could not extract base64 data")

    try:
        raw = base64.b64decode(payload, validate=False)
    except (binascii.Error, ValueError) as e:
        raise DecodeError(f"Invalid base64 payload: {e}") from e

    image = cv2.imdecode(np.frombuffer(raw, dtype=np.uint8), cv2.IMREAD_UNCHANGED)
    if image is None:
        raise DecodeError("Canvas payload is not a decodable image")

    if image.ndim == 2:
        return cv2.cvtColor(image, cv2.COLOR_GRAY2BGRA)
    if image.shape[2] == 3:
        return cv2.cvtColor(image, cv2.COLOR_BGR2BGRA)
    return image


def project_canvas(canvas: np.ndarray, mask: Mask, frame_width: int, frame_height: int) -> np.ndarray:
    """
    Resize a canvas image onto the frame.

    With a display placement, the displayed image region is cut out of the
    canvas (dropping the letterbox bars), resampled to the displayed size and
    then resized to the frame. Without one, the whole canvas is resized.
    """
    image_h, image_w = canvas.shape[:2]

    if mask.has_display_placement:
        try:
            displayed_w, displayed_h = displayed_size(mask)
        except GeometryError as e:
            logger.warning(f"{e}; resizing whole canvas")
        else:
            logical = mask.canvas_size or (float(image_w), float(image_h))
            ratio_x = image_w / logical[0] if logical[0] > 0 else 1.0
            ratio_y = image_h / logical[1] if logical[1] > 0 else 1.0
            placement = mask.image_display_info

            x0 = max(0, int(round(placement.offset_x * ratio_x)))
            y0 = max(0, int(round(placement.offset_y * ratio_y)))
            x1 = min(image_w, int(round((placement.offset_x + displayed_w) * ratio_x)))
            y1 = min(image_h, int(round((placement.offset_y + displayed_h) * ratio_y)))

            if x1 > x0 and y1 > y0:
                region = canvas[y0:y1, x0:x1]
                intermediate = cv2.resize(
                    region,
                    (max(1, round(displayed_w)), max(1, round(displayed_h))),
                    interpolation=cv2.INTER_LANCZOS4,
                )
                return cv2.resize(
                    intermediate, (frame_width, frame_height), interpolation=cv2.INTER_LANCZOS4
                )
            logger.warning("Displayed region lies outside the canvas; resizing whole canvas")

    return cv2.resize(canvas, (frame_width, frame_height), interpolation=cv2.INTER_LANCZOS4)


def classify_marker_pixels(
    bgra: np.ndarray,
    alpha_threshold: int = 128,
    red_minimum: int = 150,
    red_dominance_ratio: float = 1.5,
) -> np.ndarray:
    """
    Classify painted marker pixels.

    A pixel is masked when its alpha exceeds ``alpha_threshold`` and it is red
    dominant: red above ``red_minimum`` and above ``red_dominance_ratio``
    times both green and blue.
    """
    blue = bgra[..., 0].astype(np.float32)
    green = bgra[..., 1].astype(np.float32)
    red = bgra[..., 2].astype(np.float32)
    alpha = bgra[..., 3].astype(np.float32)

    masked = (
        (alpha > alpha_threshold)
        & (red > red_minimum)
        & (red > red_dominance_ratio * green)
        & (red > red_dominance_ratio * blue)
    )
    return np.where(masked, MASKED, 0).astype(np.uint8)


# -----------------------------------------------------------------------------
# Vector shape helpers
# -----------------------------------------------------------------------------


def centered_default_box(frame_width: int, frame_height: int) -> PixelBox:
    """Rectangle covering the middle half of the frame."""
    return PixelBox(
        x=frame_width // 4,
        y=frame_height // 4,
        width=max(1, frame_width // 2),
        height=max(1, frame_height // 2),
    )


def rectangle_box(
    shape: RectangleShape,
    frame_width: int,
    frame_height: int,
    matrix: TransformationMatrix,
) -> PixelBox:
    """
    Frame-space box for a rectangle, clamped inside the frame.

    Raises:
        GeometryError: If normalized values are out of range or the size is
            not positive.
    """
    if shape.width <= 0 or shape.height <= 0:
        raise GeometryError(f"Rectangle has non-positive size: {shape.width}x{shape.height}")

    if shape.space == ShapeSpace.NORMALIZED:
        if not (0 <= shape.x <= 1 and 0 <= shape.y <= 1):
            raise GeometryError(f"Normalized rectangle origin out of range: {shape.x}, {shape.y}")
        box = PixelBox(
            x=math.floor(shape.x * frame_width),
            y=math.floor(shape.y * frame_height),
            width=math.floor(shape.width * frame_width),
            height=math.floor(shape.height * frame_height),
        )
    else:
        x0, y0 = matrix.apply(shape.x, shape.y)
        x1, y1 = matrix.apply(shape.x + shape.width, shape.y + shape.height)
        left, top = round(x0), round(y0)
        box = PixelBox(x=left, y=top, width=round(x1) - left, height=round(y1) - top)

    clamped = box.clamp(frame_width, frame_height)
    if clamped != box:
        logger.debug(f"Clamped mask box {box} to {clamped}")
    return clamped


def fill_box(buffer: np.ndarray, box: PixelBox, level: int) -> None:
    buffer[box.y:box.y + box.height, box.x:box.x + box.width] = level


def fill_circle(
    buffer: np.ndarray,
    shape: CircleShape,
    matrix: TransformationMatrix,
    level: int,
) -> None:
    """
    Fill a circle by point membership; becomes an ellipse under non-uniform
    canvas scaling.

    Raises:
        GeometryError: If the radius is not positive.
    """
    if shape.radius <= 0:
        raise GeometryError(f"Circle radius must be positive: {shape.radius}")

    height, width = buffer.shape
    if shape.space == ShapeSpace.NORMALIZED:
        cx, cy = shape.cx * width, shape.cy * height
        rx = ry = shape.radius * min(width, height)
    else:
        cx, cy = matrix.apply(shape.cx, shape.cy)
        rx, ry = matrix.apply_length(shape.radius)
    if rx <= 0 or ry <= 0:
        raise GeometryError("Circle collapses to zero size in frame space")

    yy, xx = np.ogrid[:height, :width]
    inside = ((xx - cx) / rx) ** 2 + ((yy - cy) / ry) ** 2 <= 1.0
    buffer[inside] = level


def fill_polygon(
    buffer: np.ndarray,
    shape: PolygonShape,
    matrix: TransformationMatrix,
    level: int,
    brush_size: Optional[float] = None,
) -> None:
    """
    Fill a polygon; open freeform paths are additionally stroked.

    Raises:
        GeometryError: If fewer than three points are given.
    """
    if len(shape.points) < 3:
        raise GeometryError(f"Polygon needs at least 3 points, got {len(shape.points)}")

    height, width = buffer.shape
    points = np.asarray(shape.points, dtype=np.float64)
    if shape.space == ShapeSpace.NORMALIZED:
        points = points * np.array([width, height], dtype=np.float64)
    else:
        points = points * np.array([matrix.scale_x, matrix.scale_y]) + np.array(
            [matrix.offset_x, matrix.offset_y]
        )
    pts = np.round(points).astype(np.int32).reshape(-1, 1, 2)

    cv2.fillPoly(buffer, [pts], int(level), lineType=cv2.LINE_8)
    if not shape.closed and brush_size:
        if shape.space == ShapeSpace.NORMALIZED:
            stroke = brush_size
        else:
            stroke = sum(matrix.apply_length(brush_size)) / 2
        thickness = max(1, int(round(stroke)))
        cv2.polylines(buffer, [pts], False, int(level), thickness=thickness, lineType=cv2.LINE_8)


def feather_buffer(buffer: np.ndarray, radius: float) -> np.ndarray:
    """Gaussian blur the buffer edges with the given radius."""
    kernel = 2 * int(math.ceil(radius)) + 1
    return cv2.GaussianBlur(buffer, (kernel, kernel), 0)


# -----------------------------------------------------------------------------
# Rasterizer
# -----------------------------------------------------------------------------


class MaskRasterizer:
    """
    Produces (H, W) uint8 opacity buffers for a mask.

    The raster payload is authoritative when present; otherwise the vector
    shape is used. Rasterization never raises for bad geometry: undecodable
    payloads give an empty buffer and unusable shapes give the centered
    default rectangle.
    """

    def __init__(self, config: PipelineConfig = DEFAULT_CONFIG):
        self.config = config

    def rasterize(
        self,
        mask: Mask,
        frame_width: int,
        frame_height: int,
        matrix: Optional[TransformationMatrix] = None,
    ) -> np.ndarray:
        if frame_width <= 0 or frame_height <= 0:
            raise GeometryError(f"Invalid mask dimensions: {frame_width}x{frame_height}")

        if mask.has_raster_payload:
            return self.rasterize_payload(mask, frame_width, frame_height)

        if matrix is None:
            matrix = compute_matrix(mask, frame_width, frame_height)
        return self.rasterize_vector(mask, frame_width, frame_height, matrix)

    def rasterize_payload(self, mask: Mask, frame_width: int, frame_height: int) -> np.ndarray:
        try:
            canvas = decode_data_url(mask.canvas_data_url)
        except DecodeError as e:
            logger.error(f"Error creating mask from canvas payload: {e}")
            return np.zeros((frame_height, frame_width), dtype=np.uint8)

        projected = project_canvas(canvas, mask, frame_width, frame_height)
        buffer = classify_marker_pixels(
            projected,
            alpha_threshold=self.config.alpha_threshold,
            red_minimum=self.config.red_minimum,
            red_dominance_ratio=self.config.red_dominance_ratio,
        )
        logger.debug(
            f"Raster mask {frame_width}x{frame_height}: "
            f"{int(np.count_nonzero(buffer))} masked pixels"
        )
        return buffer

    def rasterize_vector(
        self,
        mask: Mask,
        frame_width: int,
        frame_height: int,
        matrix: TransformationMatrix,
    ) -> np.ndarray:
        level = mask.opacity_level
        buffer = np.zeros((frame_height, frame_width), dtype=np.uint8)
        shape = mask.shape

        try:
            if shape is None:
                raise GeometryError("Mask shape unresolved")
            if isinstance(shape, RectangleShape):
                fill_box(buffer, rectangle_box(shape, frame_width, frame_height, matrix), level)
            elif isinstance(shape, CircleShape):
                fill_circle(buffer, shape, matrix, level)
            else:
                fill_polygon(buffer, shape, matrix, level, mask.brush_size)
        except GeometryError as e:
            logger.warning(f"Invalid mask geometry ({e}); using centered default")
            buffer[:] = 0
            fill_box(buffer, centered_default_box(frame_width, frame_height), level)

        if mask.feather > 0:
            buffer = feather_buffer(buffer, mask.feather)
        return buffer


class OpacityCache:
    """
    Per-job cache of opacity buffers keyed by frame size.

    Buffers are rasterized once and returned read-only.
    """

    def __init__(self, mask: Mask, rasterizer: MaskRasterizer, transforms: Optional[TransformCache] = None):
        self.mask = mask
        self.rasterizer = rasterizer
        self.transforms = transforms or TransformCache(mask)
        self._buffers: dict[tuple[int, int], np.ndarray] = {}
        self._lock = Lock()

    def get(self, frame_width: int, frame_height: int) -> np.ndarray:
        key = (frame_width, frame_height)
        with self._lock:
            buffer = self._buffers.get(key)
            if buffer is not None:
                logger.debug(f"Opacity cache hit for {frame_width}x{frame_height}")
                return buffer
            matrix = self.transforms.get(frame_width, frame_height)
            buffer = self.rasterizer.rasterize(self.mask, frame_width, frame_height, matrix)
            buffer.flags.writeable = False
            self._buffers[key] = buffer
            return buffer

    def __len__(self) -> int:
        return len(self._buffers)
