#!/usr/bin/env python3
"""
CLI interface for the frame masking pipeline.

Usage:
    framemask --input video.mp4 --mask mask.json --output-dir out

    # Or using Python module:
    python -m framemask.cli --input scan.dcm --mask mask.json --preset low_memory
"""

import argparse
import asyncio
import json
import logging
import sys
import uuid
from pathlib import Path
from typing import Optional

from pydantic import ValidationError

from framemask.config import OUTPUT_DIR
from framemask.core.assembler import OutputAssembler
from framemask.core.exceptions import FrameMaskError
from framemask.core.frame_source import ImageSetFrameSource, open_frame_source
from framemask.core.job_store import InMemoryJobStore
from framemask.core.models import Job, Mask, OutputSettings, SourceKind
from framemask.core.pipeline_config import PRESETS, PipelineConfig, get_preset
from framemask.core.progress import LoggingProgressChannel
from framemask.core.scheduler import BatchScheduler


def setup_logging(verbose: bool = False, json_logs: bool = False):
    """Configure logging for CLI usage."""
    level = logging.DEBUG if verbose else logging.INFO

    if json_logs:
        # JSON format for integration with other tools
        format_str = json.dumps({
            "time": "%(asctime)s",
            "level": "%(levelname)s",
            "module": "%(name)s",
            "message": "%(message)s",
        })
    else:
        format_str = "%(asctime)s [%(levelname)s] %(message)s"

    logging.basicConfig(
        level=level,
        format=format_str,
        datefmt="%Y-%m-%d %H:%M:%S",
        force=True,
    )

    # The package logger has its own handlers; align level and format
    package_logger = logging.getLogger("framemask")
    package_logger.setLevel(level)
    formatter = logging.Formatter(format_str, datefmt="%Y-%m-%d %H:%M:%S")
    for handler in package_logger.handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)


def load_json(path: str) -> dict:
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


async def run_job(
    inputs: list[Path],
    mask: Mask,
    settings: OutputSettings,
    output_dir: Path,
    scheduler_config: PipelineConfig,
) -> Path:
    """Create, prepare and run one job; returns the archive path."""
    source = open_frame_source(
        inputs,
        placeholder_size=scheduler_config.placeholder_size,
        placeholder_gray=scheduler_config.placeholder_gray,
    )
    kind = SourceKind.IMAGES if isinstance(source, ImageSetFrameSource) else SourceKind.VIDEO

    store = InMemoryJobStore()
    job = store.create_job(
        Job(
            id=uuid.uuid4().hex[:12],
            source_kind=kind,
            source_paths=[str(p) for p in inputs],
        )
    )
    scheduler = BatchScheduler(
        store,
        LoggingProgressChannel(),
        config=scheduler_config,
        assembler=OutputAssembler(output_dir),
    )
    try:
        await scheduler.prepare(job.id, source)
        return await scheduler.run(job.id, source, mask, settings)
    finally:
        source.close()


def main(args: Optional[list[str]] = None) -> int:
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Apply a spatial mask to every frame of a video, DICOM file or image batch",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Mask a video with a rectangle drawn in the UI
  %(prog)s --input clip.mp4 --mask mask.json

  # Batch of images, JPEG output at 512x512
  %(prog)s --input a.png b.png c.png --mask mask.json --output-settings out.json

  # Multi-frame DICOM on a small host
  %(prog)s --input cine.dcm --mask mask.json --preset low_memory
        """,
    )

    parser.add_argument(
        "--input", "-i",
        nargs="+",
        required=True,
        help="Input video, DICOM file, or one or more images",
    )
    parser.add_argument(
        "--mask", "-m",
        required=True,
        help="Path to mask JSON",
    )
    parser.add_argument(
        "--output-settings", "-s",
        help="Path to output settings JSON (default: original size, PNG)",
    )
    parser.add_argument(
        "--output-dir", "-o",
        default=str(OUTPUT_DIR),
        help=f"Directory for the output archive (default: {OUTPUT_DIR})",
    )

    # Presets and configuration
    parser.add_argument(
        "--preset",
        choices=sorted(PRESETS),
        default="default",
        help="Pipeline preset (default: default)",
    )
    parser.add_argument(
        "--batch-size",
        type=int,
        help="Frames per batch",
    )
    parser.add_argument(
        "--workers",
        type=int,
        help="Number of mask workers",
    )
    parser.add_argument(
        "--use-processes",
        action="store_true",
        help="Mask frames in worker processes",
    )

    # Logging
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable verbose logging",
    )
    parser.add_argument(
        "--json-logs",
        action="store_true",
        help="Output logs in JSON format",
    )

    parsed = parser.parse_args(args)
    setup_logging(parsed.verbose, parsed.json_logs)
    logger = logging.getLogger("framemask.cli")

    try:
        inputs = [Path(p) for p in parsed.input]
        for path in inputs:
            if not path.exists():
                logger.error(f"Input file not found: {path}")
                return 1

        mask = Mask.model_validate(load_json(parsed.mask))
        settings = (
            OutputSettings.model_validate(load_json(parsed.output_settings))
            if parsed.output_settings
            else OutputSettings()
        )

        config = get_preset(parsed.preset)
        if parsed.batch_size is not None:
            config.batch_size = parsed.batch_size
        if parsed.workers is not None:
            config.num_workers = parsed.workers
        if parsed.use_processes:
            config.use_processes = True
        config = PipelineConfig.model_validate(config.model_dump())

        path = asyncio.run(run_job(inputs, mask, settings, Path(parsed.output_dir), config))
        print(f"\nOutput archive: {path}")
        return 0

    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 130
    except (ValidationError, json.JSONDecodeError, OSError) as e:
        logger.error(f"Invalid input: {e}")
        return 1
    except FrameMaskError as e:
        logger.error(f"Job failed: {e}")
        if parsed.verbose:
            import traceback
            traceback.print_exc()
        return 1


if __name__ == "__main__":
    sys.exit(main())
