"""
Batch scheduler: drives a job from decode through masking to export.

Frames are split into batches (persisted status records, decode grouping)
and each batch into small volumetric sub-batches that are masked
concurrently. Peak memory is bounded by the sub-batch size and by a
semaphore on in-flight frames. Results are re-ordered by frame number
before export.
"""

import asyncio
import gc
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, Optional

import numpy as np

from framemask.config import (
    OUTPUT_DIR,
    PROGRESS_COMPLETE,
    PROGRESS_EXPORTING,
    PROGRESS_INITIAL,
    PROGRESS_PROCESSING_START,
)
from framemask.core.assembler import OutputAssembler
from framemask.core.compositor import FrameMaskingOperator, mask_frame_task
from framemask.core.context import JobContext
from framemask.core.exceptions import (
    FrameMaskError,
    InvalidTransitionError,
    ResourceExhaustionError,
)
from framemask.core.frame_source import FrameSource
from framemask.core.job_store import JobStore, new_batch_record
from framemask.core.models import (
    BatchStatus,
    ExecutionTier,
    FrameResult,
    Job,
    JobStatus,
    Mask,
    OutputSettings,
    ProcessingProgress,
    SourceKind,
)
from framemask.core.pipeline_config import DEFAULT_CONFIG, PipelineConfig
from framemask.core.progress import ProgressChannel, ProgressTracker, stage_progress
from framemask.core.worker_pool import MaskWorkerPool

logger = logging.getLogger(__name__)

WORKER_ID = "scheduler"


def create_frame_batches(total_frames: int, batch_size: int) -> list[tuple[int, int]]:
    """Partition [0, total_frames) into inclusive (start, end) batches."""
    if batch_size < 1:
        raise ValueError("batch_size must be at least 1")
    return [
        (start, min(start + batch_size - 1, total_frames - 1))
        for start in range(0, total_frames, batch_size)
    ]


def split_volumes(start: int, end: int, volume_size: int) -> list[tuple[int, int]]:
    """Split an inclusive frame range into inclusive sub-batches."""
    if volume_size < 1:
        raise ValueError("volume_size must be at least 1")
    return [
        (s, min(s + volume_size - 1, end))
        for s in range(start, end + 1, volume_size)
    ]


def order_results(results: Iterable[FrameResult], total_frames: int) -> list[FrameResult]:
    """
    Sort results by frame number, drop duplicates and fill gaps.

    A successful result wins over a failed one for the same frame. Missing
    frames in [0, total_frames) become failed placeholders.
    """
    by_number: dict[int, FrameResult] = {}
    for result in results:
        existing = by_number.get(result.frame_number)
        if existing is None or (result.success and not existing.success):
            by_number[result.frame_number] = result

    for number in range(total_frames):
        if number not in by_number:
            by_number[number] = FrameResult.failed(number, "No result produced for frame")

    return [by_number[n] for n in sorted(by_number)]


class BatchScheduler:
    """
    Runs masking jobs.

    Usage::

        scheduler = BatchScheduler(store, LoggingProgressChannel())
        await scheduler.prepare(job_id, source)
        path = await scheduler.run(job_id, source, mask, settings)
    """

    def __init__(
        self,
        job_store: JobStore,
        progress_channel: ProgressChannel,
        config: PipelineConfig = DEFAULT_CONFIG,
        worker_pool: Optional[MaskWorkerPool] = None,
        assembler: Optional[OutputAssembler] = None,
    ):
        self.job_store = job_store
        self.progress_channel = progress_channel
        self.config = config
        self.worker_pool = worker_pool
        self.assembler = assembler or OutputAssembler(OUTPUT_DIR)
        self.operator = FrameMaskingOperator()
        self._contexts: dict[str, JobContext] = {}

    # ------------------------------------------------------------------
    # Progress and state helpers
    # ------------------------------------------------------------------

    async def _publish(self, progress: ProcessingProgress) -> None:
        self.job_store.update_progress(progress)
        await self.progress_channel.emit(progress.job_id, progress)

    async def _transition(
        self,
        job_id: str,
        status: JobStatus,
        percent: float,
        message: Optional[str] = None,
        **fields,
    ) -> Job:
        job = self.job_store.transition(job_id, status, progress=percent, **fields)
        await self._publish(
            stage_progress(
                job_id,
                status,
                percent,
                total_frames=job.total_frames,
                status=message,
                error_message=job.error_message if status == JobStatus.FAILED else None,
            )
        )
        return job

    async def _fail(self, job_id: str, message: str) -> None:
        try:
            job = self.job_store.get_job(job_id)
            if job.is_terminal:
                return
            await self._transition(job_id, JobStatus.FAILED, job.progress, error_message=message)
        except FrameMaskError as e:
            logger.error(f"Could not record failure for job {job_id}: {e}")
        await self.progress_channel.emit_error(job_id, message)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def prepare(self, job_id: str, frame_source: FrameSource) -> Job:
        """
        Read source metadata and bring the job to ``ready``.

        Video and DICOM jobs pass through ``extracting`` and decode the
        reference frame; image jobs go straight to ``ready``.

        Raises:
            DecodeError: If metadata or the reference frame cannot be read.
        """
        job = self.job_store.get_job(job_id)
        try:
            if job.source_kind == SourceKind.IMAGES:
                meta = await asyncio.to_thread(frame_source.metadata)
                names = job.original_names or [
                    frame_source.frame_name(i) or "" for i in range(meta.total_frames)
                ]
                return await self._transition(
                    job_id,
                    JobStatus.READY,
                    0,
                    message=f"{meta.total_frames} images ready",
                    width=meta.width,
                    height=meta.height,
                    total_frames=meta.total_frames,
                    original_names=names,
                )

            await self._transition(
                job_id, JobStatus.EXTRACTING, PROGRESS_INITIAL, message="Extracting frames"
            )
            meta = await asyncio.to_thread(frame_source.metadata)
            reference = await asyncio.to_thread(frame_source.extract_frame, 0)
            height, width = reference.shape[:2]
            if (width, height) != (meta.width, meta.height):
                logger.warning(
                    f"Reference frame is {width}x{height}, metadata reports "
                    f"{meta.width}x{meta.height}; using the decoded size"
                )
            return await self._transition(
                job_id,
                JobStatus.READY,
                PROGRESS_INITIAL,
                message=f"{meta.total_frames} frames ready",
                width=width,
                height=height,
                frame_rate=meta.frame_rate,
                total_frames=meta.total_frames,
                duration=meta.duration,
                is_multi_frame_medical=meta.is_multi_frame_medical,
            )
        except Exception as e:
            logger.error(f"Preparing job {job_id} failed: {e}", exc_info=True)
            await self._fail(job_id, str(e))
            raise

    def cancel(self, job_id: str) -> bool:
        """
        Request cancellation; takes effect before the next sub-batch.

        Returns:
            True if the job was running.
        """
        context = self._contexts.get(job_id)
        if context is None:
            return False
        logger.info(f"Cancellation requested for job {job_id}")
        context.cancel()
        return True

    async def run(
        self,
        job_id: str,
        frame_source: FrameSource,
        mask: Mask,
        output_settings: OutputSettings,
    ) -> Path:
        """
        Mask every frame of a job and write the output archive.

        Returns:
            Path to the output archive.

        Raises:
            FrameMaskError: On any job-level failure; the job is left in
                ``failed`` with an error message.
        """
        job = self.job_store.get_job(job_id)
        if job.status == JobStatus.UPLOADED:
            job = await self.prepare(job_id, frame_source)
        if job.status != JobStatus.READY:
            raise InvalidTransitionError(
                f"Job {job_id} must be ready to run, not {job.status.value}"
            )

        context = JobContext.create(
            job_id, mask, output_settings, self.config, job.total_frames
        )
        if job.source_kind == SourceKind.VIDEO and job.width and job.height:
            # Reference dimensions come from the frame decoded in prepare
            context.dimensions.check(0, job.width, job.height)
        self._contexts[job_id] = context

        pool = self.worker_pool
        owns_pool = False
        if pool is None and self.config.use_processes:
            pool = MaskWorkerPool(self.config.num_workers, use_processes=True)
            await pool.start()
            owns_pool = True

        try:
            return await self._execute(context, frame_source, pool)
        except Exception as e:
            message = str(e) or e.__class__.__name__
            logger.error(f"Job {job_id} failed: {message}", exc_info=True)
            await self._fail(job_id, message)
            raise
        finally:
            self._contexts.pop(job_id, None)
            if owns_pool:
                await pool.shutdown()

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def _execute(
        self,
        context: JobContext,
        frame_source: FrameSource,
        pool: Optional[MaskWorkerPool],
    ) -> Path:
        job_id = context.job_id
        total = context.total_frames

        await self._transition(
            job_id,
            JobStatus.PROCESSING,
            PROGRESS_PROCESSING_START,
            message="Processing frames",
            mask=context.mask,
            output_settings=context.settings,
        )

        batches = create_frame_batches(total, context.batch_size)
        records = [
            self.job_store.create_frame_batch_record(new_batch_record(job_id, i + 1, start, end))
            for i, (start, end) in enumerate(batches)
        ]
        logger.info(
            f"Job {job_id}: {total} frames in {len(records)} batches "
            f"(sub-batch size {context.volume_size})"
        )

        tracker = ProgressTracker(job_id, total)
        for record in records:
            self.job_store.update_frame_batch_record(
                record.id, status=BatchStatus.PROCESSING, worker_id=WORKER_ID
            )
            try:
                for start, end in split_volumes(record.start_frame, record.end_frame, context.volume_size):
                    context.raise_if_cancelled()
                    results = await self._process_volume(context, frame_source, pool, start, end)
                    context.add_results(results)
                    del results
                    if context.config.gc_between_batches:
                        gc.collect()

                    progress = tracker.snapshot(context.completed)
                    self.job_store.update_job(job_id, progress=progress.percent)
                    await self._publish(progress)
            except Exception:
                self.job_store.update_frame_batch_record(record.id, status=BatchStatus.FAILED)
                raise
            self.job_store.update_frame_batch_record(
                record.id,
                status=BatchStatus.COMPLETED,
                processed_at=datetime.now(timezone.utc),
            )

        context.raise_if_cancelled()
        ordered = order_results(context.results.values(), total)
        failed = sum(1 for r in ordered if not r.success)
        if failed:
            logger.warning(f"Job {job_id}: {failed}/{len(ordered)} frames failed")

        job = await self._transition(
            job_id, JobStatus.EXPORTING, PROGRESS_EXPORTING, message="Creating archive"
        )
        path = await asyncio.to_thread(self.assembler.assemble, job, ordered, context.settings)

        await self._transition(
            job_id,
            JobStatus.COMPLETED,
            PROGRESS_COMPLETE,
            message="Processing complete",
            output_path=str(path),
        )
        await self.progress_channel.emit_done(job_id, str(path))
        return path

    async def _process_volume(
        self,
        context: JobContext,
        frame_source: FrameSource,
        pool: Optional[MaskWorkerPool],
        start: int,
        end: int,
    ) -> list[FrameResult]:
        """Decode, validate and mask one inclusive sub-batch."""
        decoded = await asyncio.to_thread(frame_source.extract_range, start, end + 1)

        results: list[FrameResult] = []
        ready: list[tuple[int, np.ndarray]] = []
        for offset, frame in enumerate(decoded):
            frame_number = start + offset
            if frame is None:
                results.append(FrameResult.failed(frame_number, "Frame could not be decoded"))
                continue
            height, width = frame.shape[:2]
            if width * height > context.config.max_frame_pixels:
                raise ResourceExhaustionError(
                    f"Frame {frame_number} is {width}x{height}, above the "
                    f"{context.config.max_frame_pixels} pixel limit"
                )
            context.dimensions.check(frame_number, width, height)
            ready.append((frame_number, frame))
        del decoded

        try:
            results.extend(await self._dispatch_parallel(context, pool, ready))
        except Exception as e:
            logger.warning(
                f"Parallel processing failed for frames {start}-{end}, "
                f"retrying sequentially: {e}"
            )
            results.extend(await asyncio.to_thread(self._dispatch_sequential, context, ready))
        return results

    async def _dispatch_parallel(
        self,
        context: JobContext,
        pool: Optional[MaskWorkerPool],
        frames: list[tuple[int, np.ndarray]],
    ) -> list[FrameResult]:
        async def mask_one(frame_number: int, frame: np.ndarray) -> FrameResult:
            async with context.semaphore:
                height, width = frame.shape[:2]
                opacity = await asyncio.to_thread(context.opacity.get, width, height)
                task = self.operator.build_task(
                    frame_number, frame, opacity, context.settings, ExecutionTier.PARALLEL
                )
                if pool is not None:
                    return await pool.submit(task)
                return await asyncio.to_thread(mask_frame_task, task)

        outcomes = await asyncio.gather(
            *(mask_one(n, f) for n, f in frames),
            return_exceptions=True,
        )
        for outcome in outcomes:
            if isinstance(outcome, BaseException):
                raise outcome
        return list(outcomes)

    def _dispatch_sequential(
        self,
        context: JobContext,
        frames: list[tuple[int, np.ndarray]],
    ) -> list[FrameResult]:
        results = []
        for frame_number, frame in frames:
            height, width = frame.shape[:2]
            try:
                opacity = context.opacity.get(width, height)
            except Exception as e:
                logger.error(f"Mask rasterization failed for frame {frame_number}: {e}")
                results.append(FrameResult.failed(frame_number, str(e), ExecutionTier.SEQUENTIAL))
                continue
            results.append(
                self.operator.apply_mask(
                    frame_number, frame, opacity, context.settings, ExecutionTier.SEQUENTIAL
                )
            )
        return results
