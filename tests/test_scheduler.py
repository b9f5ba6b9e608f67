"""
Tests for the batch scheduler.

Run with: pytest tests/test_scheduler.py -v
"""

import csv
import io
import zipfile

import cv2
import numpy as np
import pytest

from framemask.core.assembler import OutputAssembler
from framemask.core.exceptions import (
    DecodeError,
    DimensionMismatchError,
    InvalidTransitionError,
    JobCancelledError,
    ResourceExhaustionError,
)
from framemask.core.frame_source import (
    DicomFrameSource,
    FrameSource,
    ImageSetFrameSource,
    open_frame_source,
)
from framemask.core.job_store import InMemoryJobStore
from framemask.core.models import (
    BatchStatus,
    ExecutionTier,
    FrameResult,
    Job,
    JobStatus,
    Mask,
    OutputSettings,
    SourceKind,
    SourceMetadata,
)
from framemask.core.pipeline_config import PipelineConfig
from framemask.core.progress import ProgressChannel
from framemask.core.scheduler import (
    BatchScheduler,
    create_frame_batches,
    order_results,
    split_volumes,
)
from framemask.core.worker_pool import MaskWorkerPool


class FakeFrameSource(FrameSource):
    """In-memory source of solid frames."""

    def __init__(self, total, width=40, height=30, sizes=None, broken=()):
        self.total = total
        self.width = width
        self.height = height
        self.sizes = sizes or {}
        self.broken = set(broken)
        self.closed = False

    def metadata(self) -> SourceMetadata:
        return SourceMetadata(
            width=self.width,
            height=self.height,
            frame_rate=25.0,
            total_frames=self.total,
            duration=self.total / 25.0,
        )

    def extract_frame(self, index: int) -> np.ndarray:
        if index in self.broken:
            raise DecodeError(f"frame {index} is corrupt")
        width, height = self.sizes.get(index, (self.width, self.height))
        return np.full((height, width, 3), 200, dtype=np.uint8)

    def close(self) -> None:
        self.closed = True


class RecordingChannel(ProgressChannel):
    def __init__(self):
        self.progress = []
        self.errors = []
        self.done = []

    async def emit(self, job_id, progress):
        self.progress.append(progress)

    async def emit_error(self, job_id, message):
        self.errors.append(message)

    async def emit_done(self, job_id, output_path):
        self.done.append(output_path)


class CapturingAssembler(OutputAssembler):
    def assemble(self, job, results, settings):
        self.results = list(results)
        return super().assemble(job, results, settings)


RECT_MASK = Mask.model_validate(
    {"type": "rectangle", "coordinates": {"x": 0, "y": 0, "width": 10, "height": 10}}
)


@pytest.fixture
def store():
    return InMemoryJobStore()


@pytest.fixture
def channel():
    return RecordingChannel()


def make_scheduler(store, channel, tmp_path, **config) -> BatchScheduler:
    config.setdefault("batch_size", 10)
    config.setdefault("volume_batch_size", 4)
    return BatchScheduler(
        store,
        channel,
        config=PipelineConfig(**config),
        assembler=CapturingAssembler(tmp_path / "out"),
    )


def create_job(store, job_id="job1", kind=SourceKind.VIDEO, names=()) -> Job:
    return store.create_job(Job(id=job_id, source_kind=kind, original_names=list(names)))


def read_manifest(path) -> list[dict]:
    with zipfile.ZipFile(path) as archive:
        text = archive.read("metadata.csv").decode("utf-8")
    return list(csv.DictReader(io.StringIO(text)))


class TestBatching:
    """Tests for batch and sub-batch partitioning."""

    def test_frame_batches_cover_every_frame(self):
        assert create_frame_batches(25, 10) == [(0, 9), (10, 19), (20, 24)]
        assert create_frame_batches(0, 10) == []

    def test_split_volumes(self):
        assert split_volumes(10, 19, 4) == [(10, 13), (14, 17), (18, 19)]
        assert split_volumes(5, 5, 8) == [(5, 5)]

    @pytest.mark.parametrize("size", [0, -1])
    def test_invalid_sizes(self, size):
        with pytest.raises(ValueError):
            create_frame_batches(10, size)
        with pytest.raises(ValueError):
            split_volumes(0, 9, size)

    def test_order_results(self):
        results = [
            FrameResult.failed(2, "boom"),
            FrameResult(frame_number=0, success=True, buffer=b"a"),
            FrameResult(frame_number=2, success=True, buffer=b"c"),
            FrameResult(frame_number=0, success=True, buffer=b"dup"),
        ]
        ordered = order_results(results, 4)

        assert [r.frame_number for r in ordered] == [0, 1, 2, 3]
        assert ordered[0].buffer == b"a"
        assert not ordered[1].success
        assert ordered[2].success
        assert not ordered[3].success


class TestSchedulerRun:
    """End-to-end runs over in-memory sources."""

    @pytest.mark.asyncio
    async def test_video_job_completes(self, store, channel, tmp_path):
        create_job(store)
        scheduler = make_scheduler(store, channel, tmp_path)
        source = FakeFrameSource(25)

        await scheduler.prepare("job1", source)
        path = await scheduler.run("job1", source, RECT_MASK, OutputSettings())

        job = store.get_job("job1")
        assert job.status == JobStatus.COMPLETED
        assert job.progress == 100
        assert job.output_path == str(path)
        assert job.completed_at is not None
        assert channel.done == [str(path)]

        with zipfile.ZipFile(path) as archive:
            names = archive.namelist()
            frame = cv2.imdecode(
                np.frombuffer(archive.read("frames/frame_000007.png"), dtype=np.uint8),
                cv2.IMREAD_COLOR,
            )
        assert sorted(n for n in names if n.startswith("frames/")) == [
            f"frames/frame_{i:06d}.png" for i in range(25)
        ]
        assert (frame[:10, :10] == 0).all()
        assert (frame[10:, 10:] == 200).all()

        rows = read_manifest(path)
        assert len(rows) == 25
        assert rows[0]["filename"] == "frame_000000.png"
        assert {row["status"] for row in rows} == {"success"}

        records = store.list_frame_batch_records("job1")
        assert [(r.start_frame, r.end_frame) for r in records] == [(0, 9), (10, 19), (20, 24)]
        assert all(r.status == BatchStatus.COMPLETED for r in records)
        assert all(r.processed_at is not None for r in records)

    @pytest.mark.asyncio
    async def test_progress_milestones(self, store, channel, tmp_path):
        create_job(store)
        scheduler = make_scheduler(store, channel, tmp_path)
        source = FakeFrameSource(12)

        await scheduler.run("job1", source, RECT_MASK, OutputSettings())

        percents = [p.percent for p in channel.progress]
        stages = [p.stage for p in channel.progress]
        assert percents == sorted(percents)
        assert percents[0] == 5
        assert percents[-1] == 100
        assert 10 in percents and 90 in percents
        assert stages[0] == JobStatus.EXTRACTING
        assert JobStatus.EXPORTING in stages
        assert stages[-1] == JobStatus.COMPLETED

        processing = [p for p in channel.progress if p.stage == JobStatus.PROCESSING and p.current_frame]
        assert processing[-1].current_frame == 12
        assert processing[-1].eta_seconds == 0
        assert store.get_progress("job1").stage == JobStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_dimension_mismatch_fails_job(self, store, channel, tmp_path):
        create_job(store)
        scheduler = make_scheduler(store, channel, tmp_path)
        source = FakeFrameSource(6, width=100, height=100, sizes={3: (200, 200)})

        with pytest.raises(DimensionMismatchError):
            await scheduler.run("job1", source, RECT_MASK, OutputSettings())

        job = store.get_job("job1")
        assert job.status == JobStatus.FAILED
        assert "Reference: 100x100" in job.error_message
        assert "200x200" in job.error_message
        assert channel.errors
        assert not scheduler.assembler.archive_path("job1").exists()

    @pytest.mark.asyncio
    async def test_undecodable_frame_becomes_failed_entry(self, store, channel, tmp_path):
        create_job(store)
        scheduler = make_scheduler(store, channel, tmp_path)
        source = FakeFrameSource(5, broken={2})

        path = await scheduler.run("job1", source, RECT_MASK, OutputSettings())

        with zipfile.ZipFile(path) as archive:
            names = archive.namelist()
        assert "frames/frame_000002.png" not in names
        assert "frames/frame_000003.png" in names

        rows = read_manifest(path)
        assert [row["frame_number"] for row in rows] == ["0", "1", "2", "3", "4"]
        assert rows[2]["status"] == "failed"
        assert rows[2]["file_size"] == "0"
        assert store.get_job("job1").status == JobStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_parallel_failure_falls_back_to_sequential(self, store, channel, tmp_path, monkeypatch):
        create_job(store)
        scheduler = make_scheduler(store, channel, tmp_path)

        async def broken_dispatch(context, pool, frames):
            raise RuntimeError("pool unavailable")

        monkeypatch.setattr(scheduler, "_dispatch_parallel", broken_dispatch)
        await scheduler.run("job1", FakeFrameSource(6), RECT_MASK, OutputSettings())

        results = scheduler.assembler.results
        assert len(results) == 6
        assert all(r.success for r in results)
        assert {r.tier for r in results} == {ExecutionTier.SEQUENTIAL}

    @pytest.mark.asyncio
    async def test_cancellation_between_sub_batches(self, store, tmp_path):
        create_job(store)

        class CancellingChannel(RecordingChannel):
            async def emit(self, job_id, progress):
                await super().emit(job_id, progress)
                if progress.stage == JobStatus.PROCESSING and progress.current_frame:
                    scheduler.cancel(job_id)

        channel = CancellingChannel()
        scheduler = make_scheduler(store, channel, tmp_path)

        with pytest.raises(JobCancelledError):
            await scheduler.run("job1", FakeFrameSource(20), RECT_MASK, OutputSettings())

        job = store.get_job("job1")
        assert job.status == JobStatus.FAILED
        assert job.error_message == "Job cancelled"
        assert not scheduler.cancel("job1")
        records = store.list_frame_batch_records("job1")
        assert records[0].status == BatchStatus.FAILED
        assert records[1].status == BatchStatus.PENDING

    @pytest.mark.asyncio
    async def test_oversized_frames_are_refused(self, store, channel, tmp_path):
        create_job(store)
        scheduler = make_scheduler(store, channel, tmp_path, max_frame_pixels=100)

        with pytest.raises(ResourceExhaustionError):
            await scheduler.run("job1", FakeFrameSource(3), RECT_MASK, OutputSettings())
        assert store.get_job("job1").status == JobStatus.FAILED

    @pytest.mark.asyncio
    async def test_run_requires_ready_job(self, store, channel, tmp_path):
        create_job(store)
        scheduler = make_scheduler(store, channel, tmp_path)
        source = FakeFrameSource(2)
        await scheduler.run("job1", source, RECT_MASK, OutputSettings())

        with pytest.raises(InvalidTransitionError):
            await scheduler.run("job1", source, RECT_MASK, OutputSettings())

    @pytest.mark.asyncio
    async def test_unreadable_reference_frame_fails_prepare(self, store, channel, tmp_path):
        create_job(store)
        scheduler = make_scheduler(store, channel, tmp_path)

        with pytest.raises(DecodeError):
            await scheduler.prepare("job1", FakeFrameSource(3, broken={0}))
        assert store.get_job("job1").status == JobStatus.FAILED

    @pytest.mark.asyncio
    async def test_resize_and_jpeg_output(self, store, channel, tmp_path):
        create_job(store)
        scheduler = make_scheduler(store, channel, tmp_path)
        settings = OutputSettings(size="64x64", format="jpg", include_metadata=False)

        path = await scheduler.run("job1", FakeFrameSource(3), RECT_MASK, settings)

        with zipfile.ZipFile(path) as archive:
            names = archive.namelist()
            data = archive.read("frames/frame_000001.jpg")
        assert "metadata.csv" not in names
        decoded = cv2.imdecode(np.frombuffer(data, dtype=np.uint8), cv2.IMREAD_COLOR)
        assert decoded.shape == (64, 64, 3)

    @pytest.mark.asyncio
    async def test_shared_worker_pool(self, store, channel, tmp_path):
        create_job(store)
        async with MaskWorkerPool(size=2, use_processes=False) as pool:
            scheduler = BatchScheduler(
                store,
                channel,
                config=PipelineConfig(batch_size=4, volume_batch_size=2),
                worker_pool=pool,
                assembler=OutputAssembler(tmp_path),
            )
            path = await scheduler.run("job1", FakeFrameSource(7), RECT_MASK, OutputSettings())
            assert pool.is_running

        assert len(read_manifest(path)) == 7


class TestImageJobs:
    """Tests for image batch jobs."""

    @pytest.fixture
    def image_paths(self, tmp_path):
        paths = []
        for name in ("scan_a.png", "scan_b.png", "scan_c.png"):
            path = tmp_path / name
            cv2.imwrite(str(path), np.full((30, 40, 3), 90, dtype=np.uint8))
            paths.append(path)
        return paths

    @pytest.mark.asyncio
    async def test_images_are_named_after_originals(self, store, channel, tmp_path, image_paths):
        create_job(store, kind=SourceKind.IMAGES, names=[p.name for p in image_paths])
        scheduler = make_scheduler(store, channel, tmp_path)
        source = ImageSetFrameSource(image_paths)

        job = await scheduler.prepare("job1", source)
        assert job.status == JobStatus.READY
        assert job.total_frames == 3

        path = await scheduler.run("job1", source, RECT_MASK, OutputSettings())

        with zipfile.ZipFile(path) as archive:
            names = sorted(n for n in archive.namelist() if n.startswith("images/"))
        assert names == [
            "images/image_001_scan_a.png",
            "images/image_002_scan_b.png",
            "images/image_003_scan_c.png",
        ]
        rows = read_manifest(path)
        assert "image_number" in rows[0]
        assert [row["image_number"] for row in rows] == ["1", "2", "3"]

    @pytest.mark.asyncio
    async def test_mixed_image_sizes_fail(self, store, channel, tmp_path, image_paths):
        cv2.imwrite(str(image_paths[1]), np.zeros((60, 80, 3), dtype=np.uint8))
        create_job(store, kind=SourceKind.IMAGES)
        scheduler = make_scheduler(store, channel, tmp_path)

        with pytest.raises(DimensionMismatchError):
            await scheduler.run("job1", ImageSetFrameSource(image_paths), RECT_MASK, OutputSettings())
        assert store.get_job("job1").status == JobStatus.FAILED


class TestReferenceDimensions:
    """Tests for reference dimensions recorded on the job."""

    @pytest.mark.asyncio
    async def test_prepare_records_reference_on_job(self, store, channel, tmp_path):
        create_job(store)
        scheduler = make_scheduler(store, channel, tmp_path)

        job = await scheduler.prepare("job1", FakeFrameSource(4, width=100, height=100))

        assert (job.width, job.height) == (100, 100)
        assert not hasattr(scheduler, "_references")

    @pytest.mark.asyncio
    async def test_reference_survives_a_new_scheduler(self, store, channel, tmp_path):
        create_job(store)
        await make_scheduler(store, channel, tmp_path).prepare(
            "job1", FakeFrameSource(4, width=100, height=100)
        )

        runner = make_scheduler(store, channel, tmp_path)
        with pytest.raises(DimensionMismatchError) as exc_info:
            await runner.run("job1", FakeFrameSource(4, width=50, height=50), RECT_MASK, OutputSettings())

        assert exc_info.value.reference == (100, 100)
        assert exc_info.value.frame_number == 0
        assert store.get_job("job1").status == JobStatus.FAILED


class TestDicomAndProcessPoolRuns:
    """End-to-end runs over a corrupt DICOM file and with worker processes."""

    @pytest.mark.asyncio
    async def test_corrupt_dicom_job_completes_with_gray_frames(self, store, channel, tmp_path):
        path = tmp_path / "corrupt.dcm"
        path.write_bytes(b"\x00" * 128 + b"DICM" + b"\xff" * 64)
        source = open_frame_source([path], placeholder_size=64)
        assert isinstance(source, DicomFrameSource)

        create_job(store)
        scheduler = make_scheduler(store, channel, tmp_path)
        archive_path = await scheduler.run("job1", source, RECT_MASK, OutputSettings())

        job = store.get_job("job1")
        assert job.status == JobStatus.COMPLETED
        assert job.total_frames >= 1

        with zipfile.ZipFile(archive_path) as archive:
            frame = cv2.imdecode(
                np.frombuffer(archive.read("frames/frame_000000.png"), dtype=np.uint8),
                cv2.IMREAD_COLOR,
            )
        assert frame.shape == (job.height, job.width, 3)
        assert (frame[:10, :10] == 0).all()
        assert (frame[10:, 10:] == 128).all()
        assert {row["status"] for row in read_manifest(archive_path)} == {"success"}

    @pytest.mark.asyncio
    async def test_process_pool_run(self, store, channel, tmp_path):
        create_job(store)
        scheduler = make_scheduler(store, channel, tmp_path, use_processes=True, num_workers=2)
        mask = Mask.model_validate(
            {
                "type": "rectangle",
                "coordinates": {"x": 10, "y": 10, "width": 20, "height": 20},
                "opacity": 75,
            }
        )

        path = await scheduler.run("job1", FakeFrameSource(5, width=100, height=100), mask, OutputSettings())

        assert store.get_job("job1").status == JobStatus.COMPLETED
        results = scheduler.assembler.results
        assert [r.frame_number for r in results] == list(range(5))
        assert all(r.success and r.tier == ExecutionTier.PARALLEL for r in results)

        with zipfile.ZipFile(path) as archive:
            frame = cv2.imdecode(
                np.frombuffer(archive.read("frames/frame_000004.png"), dtype=np.uint8),
                cv2.IMREAD_COLOR,
            )
        outside = np.ones((100, 100), dtype=bool)
        outside[10:30, 10:30] = False
        assert (frame[10:30, 10:30] == 0).all()
        assert (frame[outside] == 200).all()


class TestImageNames:
    """Tests for image names taken from the frame source."""

    @pytest.mark.asyncio
    async def test_prepare_fills_names_from_source(self, store, channel, tmp_path):
        paths = []
        for name in ("left.png", "right.png"):
            path = tmp_path / name
            cv2.imwrite(str(path), np.full((8, 8, 3), 10, dtype=np.uint8))
            paths.append(path)
        create_job(store, kind=SourceKind.IMAGES)
        scheduler = make_scheduler(store, channel, tmp_path)
        source = ImageSetFrameSource(paths)

        job = await scheduler.prepare("job1", source)
        assert job.original_names == ["left.png", "right.png"]

        archive_path = await scheduler.run("job1", source, RECT_MASK, OutputSettings())
        with zipfile.ZipFile(archive_path) as archive:
            assert "images/image_002_right.png" in archive.namelist()
