"""
Progress reporting: throughput/ETA tracking and publish channels.
"""

import logging
import math
import time
from abc import ABC, abstractmethod
from typing import Callable, Optional

from fastapi import WebSocket

from framemask.config import PROGRESS_PROCESSING_END, PROGRESS_PROCESSING_START
from framemask.core.models import JobStatus, ProcessingProgress
from framemask.core.websocket_messages import send_done, send_error, send_progress

logger = logging.getLogger(__name__)


class ProgressTracker:
    """
    Tracks frame throughput for one job run.

    Processing progress is mapped linearly onto the 10-90% band; frames per
    second is completed frames over elapsed time and the ETA is the remaining
    frames at that rate, rounded up.
    """

    def __init__(
        self,
        job_id: str,
        total_frames: int,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.job_id = job_id
        self.total_frames = total_frames
        self._clock = clock
        self._started_at = clock()

    def snapshot(self, completed: int, status: Optional[str] = None) -> ProcessingProgress:
        elapsed = self._clock() - self._started_at
        fps = completed / elapsed if elapsed > 0 else 0.0
        remaining = max(0, self.total_frames - completed)
        eta = math.ceil(remaining / fps) if fps > 0 else 0

        band = PROGRESS_PROCESSING_END - PROGRESS_PROCESSING_START
        fraction = completed / self.total_frames if self.total_frames else 1.0
        percent = PROGRESS_PROCESSING_START + min(1.0, fraction) * band

        return ProcessingProgress(
            job_id=self.job_id,
            stage=JobStatus.PROCESSING,
            percent=round(percent, 2),
            current_frame=completed,
            total_frames=self.total_frames,
            frames_per_second=round(fps, 2),
            eta_seconds=eta,
            status=status or f"Processed {completed}/{self.total_frames} frames",
        )


def stage_progress(
    job_id: str,
    stage: JobStatus,
    percent: float,
    total_frames: int = 0,
    current_frame: int = 0,
    status: Optional[str] = None,
    error_message: Optional[str] = None,
) -> ProcessingProgress:
    """Progress snapshot for a state transition."""
    return ProcessingProgress(
        job_id=job_id,
        stage=stage,
        percent=percent,
        current_frame=current_frame,
        total_frames=total_frames,
        status=status,
        error_message=error_message,
    )


class ProgressChannel(ABC):
    """Publish interface for real-time progress observers."""

    @abstractmethod
    async def emit(self, job_id: str, progress: ProcessingProgress) -> None:
        ...

    @abstractmethod
    async def emit_error(self, job_id: str, message: str) -> None:
        ...

    async def emit_done(self, job_id: str, output_path: str) -> None:
        pass


class LoggingProgressChannel(ProgressChannel):
    """Writes progress to the log; used by the CLI."""

    async def emit(self, job_id: str, progress: ProcessingProgress) -> None:
        logger.info(
            f"[{job_id}] {progress.stage.value} {progress.percent:.0f}% "
            f"({progress.current_frame}/{progress.total_frames}, "
            f"{progress.frames_per_second:.1f} fps, ETA {progress.eta_seconds:.0f}s)"
        )

    async def emit_error(self, job_id: str, message: str) -> None:
        logger.error(f"[{job_id}] {message}")

    async def emit_done(self, job_id: str, output_path: str) -> None:
        logger.info(f"[{job_id}] Output written to {output_path}")


class WebSocketProgressChannel(ProgressChannel):
    """Fans progress out to WebSocket subscribers of each job."""

    def __init__(self):
        self._subscribers: dict[str, list[WebSocket]] = {}

    def subscribe(self, job_id: str, websocket: WebSocket) -> None:
        self._subscribers.setdefault(job_id, []).append(websocket)

    def unsubscribe(self, job_id: str, websocket: WebSocket) -> None:
        sockets = self._subscribers.get(job_id, [])
        if websocket in sockets:
            sockets.remove(websocket)
        if not sockets:
            self._subscribers.pop(job_id, None)

    def subscribers(self, job_id: str) -> list[WebSocket]:
        return list(self._subscribers.get(job_id, []))

    async def emit(self, job_id: str, progress: ProcessingProgress) -> None:
        for websocket in self.subscribers(job_id):
            if not await send_progress(websocket, progress):
                self.unsubscribe(job_id, websocket)

    async def emit_error(self, job_id: str, message: str) -> None:
        for websocket in self.subscribers(job_id):
            await send_error(websocket, job_id, message)

    async def emit_done(self, job_id: str, output_path: str) -> None:
        for websocket in self.subscribers(job_id):
            await send_done(websocket, job_id, output_path)
