"""
DICOM pixel extraction with modality-aware windowing.

Multi-frame files are read once with pydicom and individual frames are cut
from the raw PixelData by byte offset. 16-bit samples are windowed to 8-bit;
8-bit samples pass through unchanged.
"""

import logging
from pathlib import Path
from typing import Optional, Union

import cv2
import numpy as np
import pydicom
from pydicom.dataset import Dataset
from pydicom.multival import MultiValue

from framemask.core.exceptions import DecodeError, UnsupportedPixelFormatError
from framemask.core.models import SourceMetadata

logger = logging.getLogger(__name__)

DICOM_MAGIC = b"DICM"
DICOM_MAGIC_OFFSET = 128

DEFAULT_ROWS = 512
DEFAULT_COLUMNS = 512
DEFAULT_BITS_ALLOCATED = 16

# Modality -> (window center, window width)
MODALITY_WINDOWS: dict[str, tuple[float, float]] = {
    "CT": (40.0, 400.0),  # soft tissue
    "CR": (1000.0, 2000.0),  # bone
    "DX": (1000.0, 2000.0),  # bone
}

FLAT_GRAY = 128


def is_dicom_file(path: Union[str, Path]) -> bool:
    """Detect DICOM by the 'DICM' signature at byte offset 128."""
    try:
        with open(path, "rb") as f:
            header = f.read(DICOM_MAGIC_OFFSET + len(DICOM_MAGIC))
    except OSError:
        return False
    return header[DICOM_MAGIC_OFFSET:DICOM_MAGIC_OFFSET + len(DICOM_MAGIC)] == DICOM_MAGIC


def read_dataset(path: Union[str, Path]) -> Dataset:
    """
    Parse a DICOM file.

    Raises:
        DecodeError: If the file cannot be parsed.
    """
    try:
        return pydicom.dcmread(str(path), force=True)
    except Exception as e:
        raise DecodeError(f"Cannot parse DICOM file {path}: {e}") from e


def _first_value(value) -> Optional[float]:
    """Window attributes may be multi-valued; use the first value."""
    if value is None:
        return None
    if isinstance(value, (list, tuple, MultiValue)):
        if len(value) == 0:
            return None
        value = value[0]
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _int_attr(dataset: Dataset, name: str, default: int) -> int:
    value = getattr(dataset, name, None)
    try:
        value = int(value)
    except (TypeError, ValueError):
        return default
    return value if value > 0 else default


def bytes_per_sample(bits_allocated: int) -> int:
    return 1 if bits_allocated <= 8 else 2


def bytes_per_frame(dataset: Dataset) -> int:
    rows = _int_attr(dataset, "Rows", DEFAULT_ROWS)
    cols = _int_attr(dataset, "Columns", DEFAULT_COLUMNS)
    bits = _int_attr(dataset, "BitsAllocated", DEFAULT_BITS_ALLOCATED)
    return rows * cols * bytes_per_sample(bits)


def _pixel_bytes(dataset: Dataset) -> bytes:
    if "PixelData" not in dataset:
        raise DecodeError("No pixel data found in DICOM file")
    try:
        data = dataset.PixelData
    except Exception as e:
        raise DecodeError(f"Unreadable pixel data: {e}") from e
    if not isinstance(data, (bytes, bytearray)):
        raise UnsupportedPixelFormatError(f"Unsupported pixel data type: {type(data).__name__}")
    return bytes(data)


def detect_frame_count(dataset: Dataset) -> int:
    """
    Frame count from NumberOfFrames, else estimated from the pixel data length.

    Returns 1 when neither source gives a usable answer.
    """
    frames = getattr(dataset, "NumberOfFrames", None)
    try:
        if frames is not None and int(frames) > 1:
            return int(frames)
    except (TypeError, ValueError):
        logger.warning(f"Invalid NumberOfFrames value: {frames!r}")

    if "PixelData" in dataset:
        try:
            pixel_length = len(dataset.PixelData)
        except Exception:
            return 1
        expected = bytes_per_frame(dataset)
        if expected > 0 and pixel_length > expected:
            estimated = pixel_length // expected
            logger.info(f"Estimated {estimated} DICOM frames from pixel data size")
            return estimated
    return 1


def window_parameters(dataset: Dataset) -> Optional[tuple[float, float]]:
    """
    Window (center, width) in priority order: explicit attributes, then the
    modality preset. None means auto min/max normalization.
    """
    center = _first_value(getattr(dataset, "WindowCenter", None))
    width = _first_value(getattr(dataset, "WindowWidth", None))
    if center is not None and width is not None:
        return center, width

    modality = str(getattr(dataset, "Modality", "") or "").upper()
    return MODALITY_WINDOWS.get(modality)


def window_samples(
    samples: np.ndarray,
    window: Optional[tuple[float, float]] = None,
) -> np.ndarray:
    """
    Window samples into 8-bit.

    Values at or below ``center - width/2`` become 0, values at or above
    ``center + width/2`` become 255, values in between are interpolated
    linearly. Without a window the sample min/max is used. A zero-width
    range yields flat mid-gray.
    """
    values = samples.astype(np.float64)
    if window is not None:
        center, width = window
        low, high = center - width / 2, center + width / 2
    elif values.size:
        low, high = float(values.min()), float(values.max())
    else:
        return np.zeros(0, dtype=np.uint8)

    span = high - low
    if span <= 0:
        return np.full(values.shape, FLAT_GRAY, dtype=np.uint8)

    scaled = np.round((values - low) / span * 255.0)
    out = np.where(values <= low, 0.0, np.where(values >= high, 255.0, scaled))
    return np.clip(out, 0, 255).astype(np.uint8)


def frame_samples(dataset: Dataset, index: int) -> np.ndarray:
    """
    Raw samples for one frame, cut at ``index * bytes_per_frame``.

    Out-of-range indices and short reads fall back to frame 0. Signed
    16-bit data (PixelRepresentation 1) is read as int16.
    """
    raw = _pixel_bytes(dataset)
    frame_size = bytes_per_frame(dataset)
    total = detect_frame_count(dataset)

    if index < 0 or index >= total:
        logger.warning(f"DICOM frame {index} outside 0..{total - 1}, using frame 0")
        index = 0

    offset = index * frame_size
    chunk = raw[offset:offset + frame_size]
    if len(chunk) < frame_size and index != 0:
        logger.warning(
            f"DICOM frame {index} has {len(chunk)} of {frame_size} bytes, using frame 0"
        )
        chunk = raw[:frame_size]

    bits = _int_attr(dataset, "BitsAllocated", DEFAULT_BITS_ALLOCATED)
    if bytes_per_sample(bits) == 1:
        return np.frombuffer(chunk, dtype=np.uint8)

    if len(chunk) % 2:
        chunk = chunk[:-1]
    signed = int(getattr(dataset, "PixelRepresentation", 0) or 0) == 1
    return np.frombuffer(chunk, dtype="<i2" if signed else "<u2")


def normalize_samples(dataset: Dataset, samples: np.ndarray) -> np.ndarray:
    """8-bit samples pass through; wider samples are windowed."""
    if samples.dtype == np.uint8:
        return samples.copy()
    return window_samples(samples, window_parameters(dataset))


def fit_sample_count(samples: np.ndarray, rows: int, cols: int) -> np.ndarray:
    """Truncate or zero-pad to exactly rows * cols samples."""
    expected = rows * cols
    if samples.size > expected:
        return samples[:expected]
    if samples.size < expected:
        padded = np.zeros(expected, dtype=samples.dtype)
        padded[:samples.size] = samples
        return padded
    return samples


def decode_frame(dataset: Dataset, index: int) -> np.ndarray:
    """
    Decode one DICOM frame into a 3-channel BGR array.

    Raises:
        DecodeError: If the dataset has no usable pixel data.
        UnsupportedPixelFormatError: If the pixel data layout is not raw.
    """
    transfer_syntax = getattr(getattr(dataset, "file_meta", None), "TransferSyntaxUID", None)
    if transfer_syntax is not None and getattr(transfer_syntax, "is_compressed", False):
        raise UnsupportedPixelFormatError(f"Compressed transfer syntax {transfer_syntax} not supported")

    rows = _int_attr(dataset, "Rows", DEFAULT_ROWS)
    cols = _int_attr(dataset, "Columns", DEFAULT_COLUMNS)

    samples = frame_samples(dataset, index)
    if samples.size == 0:
        raise DecodeError("DICOM pixel data is empty")
    gray = fit_sample_count(normalize_samples(dataset, samples), rows, cols)
    return cv2.cvtColor(gray.reshape(rows, cols), cv2.COLOR_GRAY2BGR)


def placeholder_frame(width: int, height: int, gray: int = FLAT_GRAY) -> np.ndarray:
    """Flat mid-gray frame used when a DICOM frame cannot be decoded."""
    return np.full((height, width, 3), gray, dtype=np.uint8)


def read_metadata(dataset: Dataset) -> SourceMetadata:
    """Build source metadata from a parsed dataset."""
    total_frames = detect_frame_count(dataset)
    per_frame_meta = {
        "modality": str(getattr(dataset, "Modality", "") or ""),
        "patient_id": str(getattr(dataset, "PatientID", "") or ""),
        "study_date": str(getattr(dataset, "StudyDate", "") or ""),
        "study_description": str(getattr(dataset, "StudyDescription", "") or ""),
        "series_description": str(getattr(dataset, "SeriesDescription", "") or ""),
    }
    return SourceMetadata(
        width=_int_attr(dataset, "Columns", DEFAULT_COLUMNS),
        height=_int_attr(dataset, "Rows", DEFAULT_ROWS),
        frame_rate=1.0,
        total_frames=total_frames,
        duration=float(total_frames),
        is_multi_frame_medical=total_frames > 1,
        per_frame_meta=per_frame_meta,
    )


def fallback_metadata(size: int = DEFAULT_COLUMNS) -> SourceMetadata:
    """Metadata used when the DICOM header cannot be parsed; frames are size x size."""
    return SourceMetadata(
        width=size,
        height=size,
        frame_rate=1.0,
        total_frames=1,
        duration=1.0,
        is_multi_frame_medical=False,
    )
