import os
import logging
import logging.config
from pathlib import Path

# Base Paths
PACKAGE_DIR = Path(__file__).resolve().parent
PROJECT_ROOT = PACKAGE_DIR.parent

# Working directories
OUTPUT_DIR = Path(os.getenv("OUTPUT_DIR", str(PROJECT_ROOT / "output")))

# Logging Setup
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s - %(message)s"
LOG_FILE_PATH = os.getenv(
    "LOG_FILE_PATH",
    str((PROJECT_ROOT / "logs" / "framemask.log").resolve()),
)

LOG_DIR = Path(LOG_FILE_PATH).parent
LOG_DIR.mkdir(parents=True, exist_ok=True)

LOGGING_CONFIG = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "standard": {
            "format": LOG_FORMAT,
        }
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "level": LOG_LEVEL,
            "formatter": "standard",
            "stream": "ext://sys.stdout",
        },
        "file": {
            "class": "logging.handlers.RotatingFileHandler",
            "level": LOG_LEVEL,
            "formatter": "standard",
            "filename": LOG_FILE_PATH,
            "maxBytes": 10 * 1024 * 1024,  # 10 MB
            "backupCount": 5,
            "encoding": "utf8",
        },
    },
    "loggers": {
        "framemask": {
            "handlers": ["console", "file"],
            "level": LOG_LEVEL,
            "propagate": False,
        },
    },
    "root": {
        "handlers": ["console"],
        "level": LOG_LEVEL,
    },
}


logging.config.dictConfig(LOGGING_CONFIG)
logger = logging.getLogger("framemask")

# -----------------------------------------------------------------------------
# Batch processing
# -----------------------------------------------------------------------------

# Frames per persisted batch (decode grouping and batch-status records)
FRAME_BATCH_SIZE = int(os.getenv("FRAME_BATCH_SIZE", "12"))
# Frames per volumetric sub-batch (memory-bounded parallel masking)
VOLUME_BATCH_SIZE = int(os.getenv("VOLUME_BATCH_SIZE", "8"))

# Mask worker limits
MAX_MASK_WORKERS = int(os.getenv("MAX_MASK_WORKERS", "4"))
MIN_MASK_WORKERS = 1
MAX_MASK_WORKERS_LIMIT = 8

# Upper bound on decoded frame buffers held at once
MAX_IN_FLIGHT_FRAMES = int(os.getenv("MAX_IN_FLIGHT_FRAMES", "16"))
# Frames larger than this are refused (8K UHD)
MAX_FRAME_PIXELS = int(os.getenv("MAX_FRAME_PIXELS", str(7680 * 4320)))

# -----------------------------------------------------------------------------
# Output defaults
# -----------------------------------------------------------------------------

DEFAULT_OUTPUT_WIDTH = 512
DEFAULT_OUTPUT_HEIGHT = 512
DEFAULT_JPEG_QUALITY = int(os.getenv("DEFAULT_JPEG_QUALITY", "90"))

# -----------------------------------------------------------------------------
# Progress milestones (percent)
# -----------------------------------------------------------------------------

PROGRESS_INITIAL = 5
PROGRESS_PROCESSING_START = 10
PROGRESS_PROCESSING_END = 90
PROGRESS_EXPORTING = 90
PROGRESS_COMPLETE = 100
