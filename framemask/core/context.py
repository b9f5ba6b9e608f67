"""
Per-job run context.

Everything that used to be process-wide (reference dimensions, mask caches,
collected results) lives here and is owned by the batch scheduler for the
lifetime of one run.
"""

import asyncio
import logging
import threading
from dataclasses import dataclass, field
from typing import Iterable, Optional

from framemask.core.exceptions import DimensionMismatchError, JobCancelledError
from framemask.core.models import FrameResult, Mask, OutputSettings
from framemask.core.pipeline_config import PipelineConfig
from framemask.core.rasterizer import MaskRasterizer, OpacityCache
from framemask.core.transform import TransformCache

logger = logging.getLogger(__name__)


class DimensionGuard:
    """
    Enforces identical native dimensions across the frames of one job.

    The first frame checked fixes the reference size.
    """

    def __init__(self, enabled: bool = True):
        self.enabled = enabled
        self.reference: Optional[tuple[int, int]] = None
        self._lock = threading.Lock()

    def check(self, frame_number: int, width: int, height: int) -> None:
        """
        Raises:
            DimensionMismatchError: If the frame differs from the reference.
        """
        with self._lock:
            if self.reference is None:
                self.reference = (width, height)
                logger.info(f"Reference frame dimensions set: {width}x{height}")
                return
            if self.enabled and (width, height) != self.reference:
                raise DimensionMismatchError(self.reference, (width, height), frame_number)


@dataclass
class JobContext:
    """State for one job run. Mask and settings are private copies."""

    job_id: str
    mask: Mask
    settings: OutputSettings
    config: PipelineConfig
    total_frames: int
    transforms: TransformCache
    opacity: OpacityCache
    dimensions: DimensionGuard
    semaphore: asyncio.Semaphore
    results: dict[int, FrameResult] = field(default_factory=dict)
    _cancelled: threading.Event = field(default_factory=threading.Event)

    @classmethod
    def create(
        cls,
        job_id: str,
        mask: Mask,
        settings: OutputSettings,
        config: PipelineConfig,
        total_frames: int,
        rasterizer: Optional[MaskRasterizer] = None,
    ) -> "JobContext":
        mask = mask.model_copy(deep=True)
        settings = settings.model_copy(deep=True)
        transforms = TransformCache(mask)
        return cls(
            job_id=job_id,
            mask=mask,
            settings=settings,
            config=config,
            total_frames=total_frames,
            transforms=transforms,
            opacity=OpacityCache(mask, rasterizer or MaskRasterizer(config), transforms),
            dimensions=DimensionGuard(config.require_uniform_dimensions),
            semaphore=asyncio.Semaphore(config.max_in_flight_frames),
        )

    @property
    def batch_size(self) -> int:
        return self.settings.batch_size or self.config.batch_size

    @property
    def volume_size(self) -> int:
        return max(1, min(self.config.volume_batch_size, self.config.max_in_flight_frames))

    @property
    def completed(self) -> int:
        return len(self.results)

    def add_results(self, results: Iterable[FrameResult]) -> None:
        for result in results:
            existing = self.results.get(result.frame_number)
            if existing is None or (result.success and not existing.success):
                self.results[result.frame_number] = result

    def cancel(self) -> None:
        self._cancelled.set()

    @property
    def is_cancelled(self) -> bool:
        return self._cancelled.is_set()

    def raise_if_cancelled(self) -> None:
        if self.is_cancelled:
            raise JobCancelledError("Job cancelled")
