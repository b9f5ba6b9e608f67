"""
Output assembly: package masked frames into a ZIP archive.

Layout::

    frames/frame_000000.png          (video and DICOM jobs)
    images/image_001_<name>.png      (image jobs)
    metadata.csv                     (optional manifest)

Failed frames are left out of the archive but listed in the manifest with
status ``failed``.
"""

import csv
import io
import logging
import zipfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Sequence

from framemask.core.models import FrameResult, Job, OutputSettings, SourceKind

logger = logging.getLogger(__name__)

VIDEO_CSV_HEADERS = [
    "filename",
    "frame_number",
    "original_width",
    "original_height",
    "output_width",
    "output_height",
    "timestamp",
    "file_size",
    "status",
]
IMAGE_CSV_HEADERS = ["image_number" if h == "frame_number" else h for h in VIDEO_CSV_HEADERS]


def frame_filename(frame_number: int, fmt: str) -> str:
    return f"frame_{frame_number:06d}.{fmt}"


def image_filename(index: int, original_name: Optional[str], fmt: str) -> str:
    """Name for the image at ``index`` (0-based); numbering in the name is 1-based."""
    stem = Path(original_name).stem if original_name else f"image_{index + 1}"
    return f"image_{index + 1:03d}_{stem}.{fmt}"


class OutputAssembler:
    """Writes the output archive for a finished job."""

    def __init__(self, output_dir: Path):
        self.output_dir = Path(output_dir)

    def archive_path(self, job_id: str) -> Path:
        return self.output_dir / f"{job_id}_masked.zip"

    def entry_names(self, job: Job, results: Sequence[FrameResult], fmt: str) -> list[str]:
        """Archive-relative names for each result, in result order."""
        names = []
        for result in results:
            if job.source_kind == SourceKind.IMAGES:
                original = (
                    job.original_names[result.frame_number]
                    if result.frame_number < len(job.original_names)
                    else None
                )
                names.append(f"images/{image_filename(result.frame_number, original, fmt)}")
            else:
                names.append(f"frames/{frame_filename(result.frame_number, fmt)}")
        return names

    def build_manifest(
        self,
        job: Job,
        results: Sequence[FrameResult],
        names: Sequence[str],
        settings: OutputSettings,
    ) -> str:
        """CSV manifest with one row per result, failed frames included."""
        is_images = job.source_kind == SourceKind.IMAGES
        default_w, default_h = settings.resolve_size(job.width, job.height)

        buffer = io.StringIO()
        writer = csv.writer(buffer, lineterminator="\n")
        writer.writerow(IMAGE_CSV_HEADERS if is_images else VIDEO_CSV_HEADERS)
        for result, name in zip(results, names):
            writer.writerow([
                Path(name).name,
                result.frame_number + 1 if is_images else result.frame_number,
                result.original_width or job.width,
                result.original_height or job.height,
                result.output_width or default_w,
                result.output_height or default_h,
                datetime.now(timezone.utc).isoformat(),
                len(result.buffer),
                "success" if result.success and result.buffer else "failed",
            ])
        return buffer.getvalue()

    def assemble(
        self,
        job: Job,
        results: Sequence[FrameResult],
        settings: OutputSettings,
    ) -> Path:
        """
        Write the archive and return its path.

        Args:
            job: The job being exported.
            results: Ordered frame results.
            settings: Output settings captured for the run.

        Returns:
            Path to the written ZIP file.
        """
        self.output_dir.mkdir(parents=True, exist_ok=True)
        path = self.archive_path(job.id)
        fmt = settings.format.value
        names = self.entry_names(job, results, fmt)

        written = 0
        with zipfile.ZipFile(path, "w", compression=zipfile.ZIP_DEFLATED) as archive:
            for result, name in zip(results, names):
                if not result.success or not result.buffer:
                    continue
                archive.writestr(name, result.buffer)
                written += 1
            if settings.include_metadata:
                archive.writestr("metadata.csv", self.build_manifest(job, results, names, settings))

        if written == 0:
            logger.warning(f"No successful frames to add to archive for job {job.id}")
        logger.info(f"Wrote {written}/{len(results)} frames to {path}")
        return path
