"""
Job store: persistence interface for jobs, batch records and progress.

The pipeline depends only on the ``JobStore`` interface. ``InMemoryJobStore``
is a thread-safe implementation used by the CLI and tests.
"""

import logging
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Optional

from framemask.core.exceptions import InvalidTransitionError, JobNotFoundError
from framemask.core.models import (
    BatchStatus,
    FrameBatchRecord,
    Job,
    JobStatus,
    ProcessingProgress,
)

logger = logging.getLogger(__name__)


class JobStore(ABC):
    """Narrow persistence interface used by the batch scheduler."""

    @abstractmethod
    def create_job(self, job: Job) -> Job:
        ...

    @abstractmethod
    def get_job(self, job_id: str) -> Job:
        """
        Raises:
            JobNotFoundError: If no job has this id.
        """

    @abstractmethod
    def update_job(self, job_id: str, **fields: Any) -> Job:
        """Apply a partial update and return the updated job."""

    @abstractmethod
    def create_frame_batch_record(self, record: FrameBatchRecord) -> FrameBatchRecord:
        ...

    @abstractmethod
    def update_frame_batch_record(self, record_id: str, **fields: Any) -> FrameBatchRecord:
        ...

    @abstractmethod
    def list_frame_batch_records(self, job_id: str) -> list[FrameBatchRecord]:
        ...

    @abstractmethod
    def get_progress(self, job_id: str) -> Optional[ProcessingProgress]:
        ...

    @abstractmethod
    def update_progress(self, progress: ProcessingProgress) -> None:
        ...

    def transition(self, job_id: str, status: JobStatus, **fields: Any) -> Job:
        """
        Move a job to a new status, applying any extra fields.

        Raises:
            InvalidTransitionError: If the lifecycle does not allow the move.
        """
        job = self.get_job(job_id)
        if not job.can_transition_to(status):
            raise InvalidTransitionError(
                f"Job {job_id} cannot move from {job.status.value} to {status.value}"
            )
        if status in (JobStatus.COMPLETED, JobStatus.FAILED):
            fields.setdefault("completed_at", datetime.now(timezone.utc))
        logger.info(f"Job {job_id}: {job.status.value} -> {status.value}")
        return self.update_job(job_id, status=status, **fields)


class InMemoryJobStore(JobStore):
    """Thread-safe in-memory job store."""

    def __init__(self):
        self._jobs: dict[str, Job] = {}
        self._batches: dict[str, FrameBatchRecord] = {}
        self._progress: dict[str, ProcessingProgress] = {}
        self._lock = Lock()

    def create_job(self, job: Job) -> Job:
        with self._lock:
            self._jobs[job.id] = job.model_copy(deep=True)
            logger.debug(f"Created job {job.id}")
            return job

    def get_job(self, job_id: str) -> Job:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise JobNotFoundError(f"Job {job_id} not found")
            return job.model_copy(deep=True)

    def update_job(self, job_id: str, **fields: Any) -> Job:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise JobNotFoundError(f"Job {job_id} not found")
            updated = job.model_copy(update=fields)
            self._jobs[job_id] = updated
            return updated.model_copy(deep=True)

    def create_frame_batch_record(self, record: FrameBatchRecord) -> FrameBatchRecord:
        with self._lock:
            self._batches[record.id] = record.model_copy()
            return record

    def update_frame_batch_record(self, record_id: str, **fields: Any) -> FrameBatchRecord:
        with self._lock:
            record = self._batches.get(record_id)
            if record is None:
                raise JobNotFoundError(f"Batch record {record_id} not found")
            updated = record.model_copy(update=fields)
            self._batches[record_id] = updated
            return updated

    def list_frame_batch_records(self, job_id: str) -> list[FrameBatchRecord]:
        with self._lock:
            records = [r for r in self._batches.values() if r.job_id == job_id]
        return sorted(records, key=lambda r: r.batch_number)

    def get_progress(self, job_id: str) -> Optional[ProcessingProgress]:
        with self._lock:
            return self._progress.get(job_id)

    def update_progress(self, progress: ProcessingProgress) -> None:
        with self._lock:
            self._progress[progress.job_id] = progress


def new_batch_record(job_id: str, batch_number: int, start_frame: int, end_frame: int) -> FrameBatchRecord:
    """Pending batch record with a fresh id."""
    return FrameBatchRecord(
        id=uuid.uuid4().hex,
        job_id=job_id,
        batch_number=batch_number,
        start_frame=start_frame,
        end_frame=end_frame,
        status=BatchStatus.PENDING,
    )
