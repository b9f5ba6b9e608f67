"""
Core frame masking pipeline.
"""

from framemask.core.assembler import OutputAssembler
from framemask.core.compositor import (
    FrameMaskingOperator,
    MaskTask,
    apply_occlusion,
    encode_frame,
    fit_to_output,
    mask_frame_task,
)
from framemask.core.context import DimensionGuard, JobContext
from framemask.core.exceptions import (
    DecodeError,
    DimensionMismatchError,
    FrameMaskError,
    GeometryError,
    InvalidTransitionError,
    JobCancelledError,
    JobNotFoundError,
    ResourceExhaustionError,
    UnsupportedPixelFormatError,
)
from framemask.core.frame_source import (
    DicomFrameSource,
    FrameSource,
    ImageSetFrameSource,
    VideoFrameSource,
    open_frame_source,
)
from framemask.core.job_store import InMemoryJobStore, JobStore
from framemask.core.models import (
    AspectRatioMode,
    FrameBatchRecord,
    FrameResult,
    Job,
    JobStatus,
    Mask,
    MaskType,
    OutputFormat,
    OutputSettings,
    PixelBox,
    ProcessingProgress,
    SourceKind,
    SourceMetadata,
    TransformationMatrix,
)
from framemask.core.pipeline_config import (
    LOW_MEMORY_CONFIG,
    THROUGHPUT_CONFIG,
    PipelineConfig,
    get_config_from_env,
)
from framemask.core.progress import (
    LoggingProgressChannel,
    ProgressChannel,
    ProgressTracker,
    WebSocketProgressChannel,
)
from framemask.core.rasterizer import MaskRasterizer, OpacityCache
from framemask.core.scheduler import (
    BatchScheduler,
    create_frame_batches,
    order_results,
    split_volumes,
)
from framemask.core.transform import TransformCache, compute_matrix
from framemask.core.worker_pool import MaskWorkerPool

__all__ = [
    # Pipeline
    "BatchScheduler",
    "create_frame_batches",
    "split_volumes",
    "order_results",
    "JobContext",
    "DimensionGuard",
    # Frame sources
    "FrameSource",
    "VideoFrameSource",
    "DicomFrameSource",
    "ImageSetFrameSource",
    "open_frame_source",
    # Masking
    "compute_matrix",
    "TransformCache",
    "MaskRasterizer",
    "OpacityCache",
    "FrameMaskingOperator",
    "MaskTask",
    "mask_frame_task",
    "apply_occlusion",
    "fit_to_output",
    "encode_frame",
    "MaskWorkerPool",
    # Collaborators
    "JobStore",
    "InMemoryJobStore",
    "ProgressChannel",
    "ProgressTracker",
    "LoggingProgressChannel",
    "WebSocketProgressChannel",
    "OutputAssembler",
    # Configuration
    "PipelineConfig",
    "LOW_MEMORY_CONFIG",
    "THROUGHPUT_CONFIG",
    "get_config_from_env",
    # Models
    "AspectRatioMode",
    "FrameBatchRecord",
    "FrameResult",
    "Job",
    "JobStatus",
    "Mask",
    "MaskType",
    "OutputFormat",
    "OutputSettings",
    "PixelBox",
    "ProcessingProgress",
    "SourceKind",
    "SourceMetadata",
    "TransformationMatrix",
    # Errors
    "FrameMaskError",
    "DecodeError",
    "GeometryError",
    "DimensionMismatchError",
    "UnsupportedPixelFormatError",
    "ResourceExhaustionError",
    "JobCancelledError",
    "JobNotFoundError",
    "InvalidTransitionError",
]
