"""
framemask - apply a spatial mask to every frame of a video, DICOM file or
image batch.

Usage:
    from framemask.core import BatchScheduler, InMemoryJobStore, Mask, OutputSettings

    store = InMemoryJobStore()
    scheduler = BatchScheduler(store, LoggingProgressChannel())
    path = await scheduler.run(job_id, open_frame_source([path]), mask, settings)
"""

__version__ = "0.1.0"
