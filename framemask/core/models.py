"""
Data models for the frame masking pipeline.

All models use Pydantic for serialization and validation. Mask and output
settings accept the camelCase JSON produced by the masking UI as well as
snake_case field names.
"""

import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from framemask.config import (
    DEFAULT_JPEG_QUALITY,
    DEFAULT_OUTPUT_HEIGHT,
    DEFAULT_OUTPUT_WIDTH,
)
from framemask.core.exceptions import GeometryError

logger = logging.getLogger(__name__)


class CamelModel(BaseModel):
    """Base model accepting both camelCase and snake_case keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# -----------------------------------------------------------------------------
# Enumerations
# -----------------------------------------------------------------------------


class JobStatus(str, Enum):
    """Job lifecycle state."""

    UPLOADED = "uploaded"
    EXTRACTING = "extracting"
    READY = "ready"
    PROCESSING = "processing"
    EXPORTING = "exporting"
    COMPLETED = "completed"
    FAILED = "failed"


ALLOWED_TRANSITIONS: dict[JobStatus, set[JobStatus]] = {
    JobStatus.UPLOADED: {JobStatus.EXTRACTING, JobStatus.READY, JobStatus.FAILED},
    JobStatus.EXTRACTING: {JobStatus.READY, JobStatus.FAILED},
    JobStatus.READY: {JobStatus.PROCESSING, JobStatus.FAILED},
    JobStatus.PROCESSING: {JobStatus.EXPORTING, JobStatus.FAILED},
    JobStatus.EXPORTING: {JobStatus.COMPLETED, JobStatus.FAILED},
    JobStatus.COMPLETED: set(),
    JobStatus.FAILED: set(),
}


class SourceKind(str, Enum):
    """Kind of media a job was created from."""

    VIDEO = "video"
    IMAGES = "images"


class MaskType(str, Enum):
    RECTANGLE = "rectangle"
    CIRCLE = "circle"
    POLYGON = "polygon"
    FREEFORM = "freeform"


class ShapeSpace(str, Enum):
    """Coordinate space a shape was authored in."""

    NORMALIZED = "normalized"  # fractions of the frame size (legacy)
    CANVAS = "canvas"  # absolute pixels in display-canvas space


class AspectRatioMode(str, Enum):
    """How frames are fitted to the output size."""

    STRETCH = "stretch"
    LETTERBOX = "letterbox"
    CROP = "crop"


class OutputFormat(str, Enum):
    PNG = "png"
    JPG = "jpg"


class BatchStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class ExecutionTier(str, Enum):
    """Which execution tier produced a frame result."""

    PARALLEL = "parallel"
    SEQUENTIAL = "sequential"


# -----------------------------------------------------------------------------
# Geometry
# -----------------------------------------------------------------------------


class Dimensions(CamelModel):
    """Width/height pair in pixels."""

    width: float = Field(..., ge=0, description="Width in pixels")
    height: float = Field(..., ge=0, description="Height in pixels")


class DisplayPlacement(CamelModel):
    """How the natural image was laid out inside the canvas (contain fit)."""

    scale: float = Field(..., description="Natural-to-display scale factor")
    offset_x: float = Field(default=0.0, description="Left letterbox offset in canvas pixels")
    offset_y: float = Field(default=0.0, description="Top letterbox offset in canvas pixels")


class PixelBox(BaseModel):
    """Integer box in frame pixel coordinates."""

    x: int
    y: int
    width: int
    height: int

    def clamp(self, frame_width: int, frame_height: int) -> "PixelBox":
        """
        Clamp the box inside the frame.

        The result always satisfies 0 <= x, 0 <= y, x + width <= frame_width,
        y + height <= frame_height and a minimum size of 1x1.
        """
        x = max(0, min(self.x, frame_width - 1))
        y = max(0, min(self.y, frame_height - 1))
        width = max(1, min(self.width, frame_width - x))
        height = max(1, min(self.height, frame_height - y))
        return PixelBox(x=x, y=y, width=width, height=height)

    def is_within(self, frame_width: int, frame_height: int) -> bool:
        return (
            self.x >= 0
            and self.y >= 0
            and self.x + self.width <= frame_width
            and self.y + self.height <= frame_height
        )


class TransformationMatrix(BaseModel):
    """Affine mapping from canvas-display space to frame pixel space."""

    scale_x: float
    scale_y: float
    offset_x: float = 0.0
    offset_y: float = 0.0

    def apply(self, x: float, y: float) -> tuple[float, float]:
        """Map a canvas point into frame space."""
        return x * self.scale_x + self.offset_x, y * self.scale_y + self.offset_y

    def apply_length(self, length: float) -> tuple[float, float]:
        """Horizontal and vertical frame-space extent of a canvas length."""
        return length * abs(self.scale_x), length * abs(self.scale_y)

    def __str__(self) -> str:
        return (
            f"scale=({self.scale_x:.4f}, {self.scale_y:.4f}) "
            f"offset=({self.offset_x:.2f}, {self.offset_y:.2f})"
        )


# -----------------------------------------------------------------------------
# Mask shapes (canonical form, resolved once at ingestion)
# -----------------------------------------------------------------------------


class RectangleShape(BaseModel):
    kind: Literal["rectangle"] = "rectangle"
    space: ShapeSpace
    x: float
    y: float
    width: float
    height: float


class CircleShape(BaseModel):
    kind: Literal["circle"] = "circle"
    space: ShapeSpace
    cx: float
    cy: float
    radius: float


class PolygonShape(BaseModel):
    kind: Literal["polygon"] = "polygon"
    space: ShapeSpace
    points: list[tuple[float, float]] = Field(default_factory=list)
    closed: bool = True


MaskShape = Union[RectangleShape, CircleShape, PolygonShape]


def _coerce_points(coordinates: Any) -> list[tuple[float, float]]:
    """Accept [{x, y}], [[x, y]] or a flat [x1, y1, x2, y2, ...] list."""
    if not isinstance(coordinates, (list, tuple)) or not coordinates:
        raise GeometryError("Point list is empty or not a list")

    first = coordinates[0]
    try:
        if isinstance(first, dict):
            return [(float(p["x"]), float(p["y"])) for p in coordinates]
        if isinstance(first, (list, tuple)):
            return [(float(p[0]), float(p[1])) for p in coordinates]
        if len(coordinates) % 2 != 0:
            raise GeometryError("Flat point list must have an even length")
        flat = [float(v) for v in coordinates]
    except (KeyError, IndexError, TypeError, ValueError) as e:
        raise GeometryError(f"Invalid point list: {e}") from e
    return list(zip(flat[0::2], flat[1::2]))


def _object_values(coordinates: dict, *keys: str) -> list[float]:
    try:
        return [float(coordinates[k]) for k in keys]
    except (KeyError, TypeError, ValueError) as e:
        raise GeometryError(f"Invalid coordinate object: {e}") from e


def resolve_shape(mask_type: MaskType, coordinates: Any) -> MaskShape:
    """
    Resolve the dual coordinate encoding into one canonical shape.

    Arrays are legacy normalized fractions; keyed objects are absolute
    canvas pixels. Polygon and freeform point lists are normalized when
    every value lies within [0, 1].

    Raises:
        GeometryError: If the coordinates cannot be interpreted.
    """
    if coordinates is None:
        raise GeometryError("Mask has no coordinates")

    if mask_type == MaskType.RECTANGLE:
        if isinstance(coordinates, dict):
            x, y, w, h = _object_values(coordinates, "x", "y", "width", "height")
            return RectangleShape(space=ShapeSpace.CANVAS, x=x, y=y, width=w, height=h)
        if isinstance(coordinates, (list, tuple)) and len(coordinates) == 4:
            try:
                x, y, w, h = (float(v) for v in coordinates)
            except (TypeError, ValueError) as e:
                raise GeometryError(f"Invalid rectangle coordinates: {e}") from e
            return RectangleShape(space=ShapeSpace.NORMALIZED, x=x, y=y, width=w, height=h)
        raise GeometryError(f"Unsupported rectangle coordinates: {coordinates!r}")

    if mask_type == MaskType.CIRCLE:
        if isinstance(coordinates, dict):
            if "radius" in coordinates:
                cx, cy, r = _object_values(coordinates, "x", "y", "radius")
            else:
                x, y, w, h = _object_values(coordinates, "x", "y", "width", "height")
                cx, cy, r = x + w / 2, y + h / 2, min(w, h) / 2
            return CircleShape(space=ShapeSpace.CANVAS, cx=cx, cy=cy, radius=r)
        if isinstance(coordinates, (list, tuple)) and len(coordinates) == 3:
            try:
                cx, cy, r = (float(v) for v in coordinates)
            except (TypeError, ValueError) as e:
                raise GeometryError(f"Invalid circle coordinates: {e}") from e
            return CircleShape(space=ShapeSpace.NORMALIZED, cx=cx, cy=cy, radius=r)
        raise GeometryError(f"Unsupported circle coordinates: {coordinates!r}")

    points = _coerce_points(coordinates)
    normalized = all(0.0 <= v <= 1.0 for p in points for v in p)
    return PolygonShape(
        space=ShapeSpace.NORMALIZED if normalized else ShapeSpace.CANVAS,
        points=points,
        closed=mask_type == MaskType.POLYGON,
    )


class Mask(CamelModel):
    """
    One spatial mask authored on a reference frame.

    When ``canvas_data_url`` is present it is authoritative over the vector
    shape parameters for pixel classification.
    """

    type: MaskType = Field(..., description="Shape variant")
    coordinates: Any = Field(default=None, description="Raw coordinates as received")
    opacity: float = Field(default=100.0, ge=0, le=100, description="Opacity percentage")
    feather: float = Field(default=0.0, ge=0, description="Edge blur radius in pixels")
    brush_size: Optional[float] = Field(default=None, ge=0, description="Freeform stroke width")
    aspect_ratio_mode: Optional[AspectRatioMode] = Field(
        default=None, description="Aspect hint; output settings take precedence"
    )

    canvas_width: Optional[float] = Field(default=None, ge=0)
    canvas_height: Optional[float] = Field(default=None, ge=0)
    canvas_data_url: Optional[str] = Field(default=None, description="Raster payload data URL")
    original_canvas_dimensions: Optional[Dimensions] = None
    display_dimensions: Optional[Dimensions] = None
    device_pixel_ratio: Optional[float] = None
    image_dimensions: Optional[Dimensions] = Field(
        default=None, description="Natural size of the reference image"
    )
    image_display_info: Optional[DisplayPlacement] = None

    shape: Optional[MaskShape] = Field(default=None, exclude=True)

    @model_validator(mode="after")
    def _resolve_shape(self) -> "Mask":
        if self.shape is not None:
            return self
        try:
            self.shape = resolve_shape(self.type, self.coordinates)
        except GeometryError as e:
            if self.canvas_data_url:
                logger.debug(f"No vector shape alongside raster payload: {e}")
            else:
                logger.warning(f"Mask coordinates unresolved, centered default will be used: {e}")
        return self

    @property
    def has_raster_payload(self) -> bool:
        return bool(self.canvas_data_url)

    @property
    def has_display_placement(self) -> bool:
        return self.image_display_info is not None and self.image_dimensions is not None

    @property
    def canvas_size(self) -> Optional[tuple[float, float]]:
        """Canvas pixel size the mask was drawn on, if known."""
        dims = self.original_canvas_dimensions
        if dims is not None and dims.width > 0 and dims.height > 0:
            return dims.width, dims.height
        if self.canvas_width and self.canvas_height:
            return self.canvas_width, self.canvas_height
        return None

    @property
    def opacity_level(self) -> int:
        """Opacity as an 8-bit alpha value."""
        return int((self.opacity / 100) * 255)


# -----------------------------------------------------------------------------
# Output settings
# -----------------------------------------------------------------------------

OUTPUT_SIZE_PRESETS = ("224x224", "256x256", "416x416", "512x512", "1024x1024")


def parse_size(value: str) -> Optional[tuple[int, int]]:
    """Parse a 'WxH' string; returns None when it is not one."""
    parts = value.lower().split("x")
    if len(parts) != 2:
        return None
    try:
        width, height = int(parts[0]), int(parts[1])
    except ValueError:
        return None
    if width <= 0 or height <= 0:
        return None
    return width, height


class OutputSettings(CamelModel):
    """Output size policy, format and packaging options."""

    size: str = Field(default="original", description="original, custom, or WxH")
    custom_width: Optional[int] = Field(default=None, ge=1)
    custom_height: Optional[int] = Field(default=None, ge=1)
    width: Optional[int] = Field(default=None, ge=1, description="Direct width, wins over size")
    height: Optional[int] = Field(default=None, ge=1, description="Direct height, wins over size")
    format: OutputFormat = Field(default=OutputFormat.PNG)
    include_metadata: bool = Field(default=True, description="Emit metadata.csv")
    parallel_threads: int = Field(default=4, ge=1, le=32)
    batch_size: Optional[int] = Field(default=None, ge=1, description="Frames per batch")
    aspect_ratio_mode: AspectRatioMode = Field(default=AspectRatioMode.LETTERBOX)
    jpeg_quality: int = Field(default=DEFAULT_JPEG_QUALITY, ge=1, le=100)

    @field_validator("format", mode="before")
    @classmethod
    def _normalize_format(cls, v: Any) -> Any:
        if isinstance(v, str):
            v = v.strip().lower()
            if v == "jpeg":
                return "jpg"
        return v

    def resolve_size(self, native_width: int, native_height: int) -> tuple[int, int]:
        """Target output size for a frame of the given native size."""
        if self.width and self.height:
            return self.width, self.height
        if self.size == "custom":
            return (
                self.custom_width or DEFAULT_OUTPUT_WIDTH,
                self.custom_height or DEFAULT_OUTPUT_HEIGHT,
            )
        if self.size == "original":
            return native_width, native_height
        parsed = parse_size(self.size)
        if parsed:
            return parsed
        logger.warning(f"Unknown output size '{self.size}', using default")
        return DEFAULT_OUTPUT_WIDTH, DEFAULT_OUTPUT_HEIGHT


# -----------------------------------------------------------------------------
# Processing records
# -----------------------------------------------------------------------------


class FrameResult(BaseModel):
    """Outcome of masking one frame."""

    frame_number: int = Field(..., ge=0)
    buffer: bytes = Field(default=b"", description="Encoded frame, empty on failure")
    success: bool = False
    error: Optional[str] = None
    tier: ExecutionTier = ExecutionTier.PARALLEL
    original_width: Optional[int] = None
    original_height: Optional[int] = None
    output_width: Optional[int] = None
    output_height: Optional[int] = None

    @classmethod
    def failed(
        cls,
        frame_number: int,
        error: str,
        tier: ExecutionTier = ExecutionTier.PARALLEL,
    ) -> "FrameResult":
        return cls(frame_number=frame_number, success=False, error=error, tier=tier)


class ProcessingProgress(CamelModel):
    """Ephemeral progress snapshot for one job."""

    job_id: str
    stage: JobStatus
    percent: float = Field(default=0.0, ge=0, le=100)
    current_frame: int = 0
    total_frames: int = 0
    frames_per_second: float = 0.0
    eta_seconds: float = 0.0
    status: Optional[str] = None
    error_message: Optional[str] = None


class SourceMetadata(BaseModel):
    """Metadata about a frame source."""

    width: int = Field(..., ge=1, description="Frame width in pixels")
    height: int = Field(..., ge=1, description="Frame height in pixels")
    frame_rate: float = Field(default=0.0, ge=0, description="Frames per second")
    total_frames: int = Field(..., ge=0, description="Number of frames")
    duration: float = Field(default=0.0, ge=0, description="Duration in seconds")
    is_multi_frame_medical: bool = False
    per_frame_meta: dict[str, Any] = Field(default_factory=dict)


class Job(BaseModel):
    """One processing run."""

    id: str
    source_kind: SourceKind
    source_paths: list[str] = Field(default_factory=list)
    original_names: list[str] = Field(default_factory=list)
    width: int = 0
    height: int = 0
    frame_rate: float = 0.0
    total_frames: int = 0
    duration: float = 0.0
    is_multi_frame_medical: bool = False
    status: JobStatus = JobStatus.UPLOADED
    progress: float = 0.0
    mask: Optional[Mask] = None
    output_settings: Optional[OutputSettings] = None
    error_message: Optional[str] = None
    output_path: Optional[str] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    completed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in (JobStatus.COMPLETED, JobStatus.FAILED)

    def can_transition_to(self, status: JobStatus) -> bool:
        return status in ALLOWED_TRANSITIONS[self.status]


class FrameBatchRecord(BaseModel):
    """Persisted status of one frame batch."""

    id: str
    job_id: str
    batch_number: int = Field(..., ge=1)
    start_frame: int = Field(..., ge=0)
    end_frame: int = Field(..., ge=0, description="Inclusive")
    status: BatchStatus = BatchStatus.PENDING
    worker_id: Optional[str] = None
    processed_at: Optional[datetime] = None

    @property
    def frame_count(self) -> int:
        return self.end_frame - self.start_frame + 1
