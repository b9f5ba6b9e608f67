"""
Configuration for the masking pipeline.

``PipelineConfig`` bundles batch sizing, worker limits, memory bounds and the
raster classification thresholds. Presets cover constrained hosts and
throughput-oriented hosts; ``get_config_from_env`` layers environment
overrides on top of the selected preset.
"""

import logging
import os

from pydantic import BaseModel, Field

from framemask.config import (
    FRAME_BATCH_SIZE,
    MAX_FRAME_PIXELS,
    MAX_IN_FLIGHT_FRAMES,
    MAX_MASK_WORKERS,
    MAX_MASK_WORKERS_LIMIT,
    MIN_MASK_WORKERS,
    VOLUME_BATCH_SIZE,
)

logger = logging.getLogger(__name__)


class PipelineConfig(BaseModel):
    """Configuration for batch scheduling and mask rasterization."""

    # Batching
    batch_size: int = Field(
        default=FRAME_BATCH_SIZE,
        ge=1,
        le=1000,
        description="Frames per persisted batch",
    )
    volume_batch_size: int = Field(
        default=VOLUME_BATCH_SIZE,
        ge=1,
        le=256,
        description="Frames per volumetric sub-batch processed concurrently",
    )

    # Workers and memory bounds
    num_workers: int = Field(
        default=MAX_MASK_WORKERS,
        ge=MIN_MASK_WORKERS,
        le=MAX_MASK_WORKERS_LIMIT,
        description="Mask worker units",
    )
    use_processes: bool = Field(
        default=False,
        description="Run mask tasks in worker processes instead of threads",
    )
    max_in_flight_frames: int = Field(
        default=MAX_IN_FLIGHT_FRAMES,
        ge=1,
        description="Upper bound on decoded frames held concurrently",
    )
    max_frame_pixels: int = Field(
        default=MAX_FRAME_PIXELS,
        ge=1,
        description="Frames with more pixels than this are refused",
    )
    gc_between_batches: bool = Field(
        default=True, description="Hint the garbage collector between sub-batches"
    )

    # Raster mask classification
    alpha_threshold: int = Field(
        default=128, ge=0, le=255, description="Minimum alpha for a painted pixel"
    )
    red_minimum: int = Field(
        default=150, ge=0, le=255, description="Minimum red channel for a painted pixel"
    )
    red_dominance_ratio: float = Field(
        default=1.5,
        ge=1.0,
        description="Red must exceed green and blue by this factor",
    )

    # DICOM placeholder
    placeholder_size: int = Field(
        default=512, ge=1, description="Placeholder edge when native size is unknown"
    )
    placeholder_gray: int = Field(
        default=128, ge=0, le=255, description="Placeholder gray level"
    )

    # Validation
    require_uniform_dimensions: bool = Field(
        default=True,
        description="Fail the job when a frame differs from the reference size",
    )


DEFAULT_CONFIG = PipelineConfig()

LOW_MEMORY_CONFIG = PipelineConfig(
    batch_size=6,
    volume_batch_size=4,
    num_workers=1,
    max_in_flight_frames=4,
)

THROUGHPUT_CONFIG = PipelineConfig(
    batch_size=24,
    volume_batch_size=16,
    num_workers=MAX_MASK_WORKERS_LIMIT,
    use_processes=True,
    max_in_flight_frames=32,
    gc_between_batches=False,
)

PRESETS = {
    "default": DEFAULT_CONFIG,
    "low_memory": LOW_MEMORY_CONFIG,
    "throughput": THROUGHPUT_CONFIG,
}


def get_preset(name: str) -> PipelineConfig:
    """
    Get a copy of a named preset.

    Unknown names fall back to the default preset with a warning.
    """
    preset = PRESETS.get(name.lower())
    if preset is None:
        logger.warning(f"Unknown pipeline preset '{name}', using default")
        preset = DEFAULT_CONFIG
    return preset.model_copy(deep=True)


def get_config_from_env() -> PipelineConfig:
    """
    Get configuration from environment variables.

    Environment variables:
        FRAMEMASK_CONFIG_MODE: "default", "low_memory" or "throughput"
        FRAMEMASK_BATCH_SIZE: Override batch_size (int)
        FRAMEMASK_VOLUME_BATCH_SIZE: Override volume_batch_size (int)
        FRAMEMASK_NUM_WORKERS: Override num_workers (int)
        FRAMEMASK_USE_PROCESSES: Override use_processes ("1", "true", "yes")

    Returns:
        Configured PipelineConfig instance.
    """
    mode = os.getenv("FRAMEMASK_CONFIG_MODE", "default").lower()
    config = get_preset(mode)

    if batch_size := os.getenv("FRAMEMASK_BATCH_SIZE"):
        try:
            config.batch_size = max(1, int(batch_size))
        except ValueError:
            logger.warning(f"Invalid FRAMEMASK_BATCH_SIZE: {batch_size}")

    if volume_size := os.getenv("FRAMEMASK_VOLUME_BATCH_SIZE"):
        try:
            config.volume_batch_size = max(1, int(volume_size))
        except ValueError:
            logger.warning(f"Invalid FRAMEMASK_VOLUME_BATCH_SIZE: {volume_size}")

    if num_workers := os.getenv("FRAMEMASK_NUM_WORKERS"):
        try:
            config.num_workers = min(
                MAX_MASK_WORKERS_LIMIT, max(MIN_MASK_WORKERS, int(num_workers))
            )
        except ValueError:
            logger.warning(f"Invalid FRAMEMASK_NUM_WORKERS: {num_workers}")

    if use_processes := os.getenv("FRAMEMASK_USE_PROCESSES"):
        config.use_processes = use_processes.lower() in ("1", "true", "yes")

    return config
