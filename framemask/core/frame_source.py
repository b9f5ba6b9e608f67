"""
Frame sources: decode video, DICOM or image sets into per-frame BGR arrays.

Every source is bound to its input path(s) at construction and lives for
one job. Use ``open_frame_source`` to pick the right implementation.
"""

import logging
import math
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional, Sequence, Union

import cv2
import numpy as np

from framemask.core import dicom
from framemask.core.exceptions import DecodeError, FrameMaskError
from framemask.core.models import SourceKind, SourceMetadata
from framemask.core.utils.ffmpeg import parse_frame_rate, run_ffmpeg, run_ffprobe

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]

IMAGE_EXTENSIONS = {".png", ".jpg", ".jpeg", ".bmp", ".tif", ".tiff", ".webp"}


def to_bgr(image: np.ndarray) -> np.ndarray:
    """Promote grayscale and drop alpha so every frame is 3-channel BGR."""
    if image.ndim == 2:
        return cv2.cvtColor(image, cv2.COLOR_GRAY2BGR)
    if image.shape[2] == 4:
        return cv2.cvtColor(image, cv2.COLOR_BGRA2BGR)
    return image


class FrameSource(ABC):
    """Abstract source of decoded frames."""

    kind: SourceKind = SourceKind.VIDEO

    @abstractmethod
    def metadata(self) -> SourceMetadata:
        """Dimensions, frame rate and frame count of the source."""

    @abstractmethod
    def extract_frame(self, index: int) -> np.ndarray:
        """
        Decode a single frame.

        Raises:
            DecodeError: If the frame cannot be produced.
        """

    def extract_range(self, start: int, end: int) -> list[Optional[np.ndarray]]:
        """
        Decode frames ``start`` (inclusive) to ``end`` (exclusive).

        Frames that fail to decode are returned as None and logged; the
        caller substitutes a failed placeholder result.
        """
        frames: list[Optional[np.ndarray]] = []
        for index in range(start, end):
            try:
                frames.append(self.extract_frame(index))
            except FrameMaskError as e:
                logger.error(f"Failed to decode frame {index}: {e}")
                frames.append(None)
        return frames

    def frame_name(self, index: int) -> Optional[str]:
        """Original file name for a frame, when the source has one."""
        return None

    def close(self) -> None:
        pass


class VideoFrameSource(FrameSource):
    """Video decoded by an external ffmpeg process."""

    kind = SourceKind.VIDEO

    def __init__(self, path: PathLike, ffmpeg_bin: str = "ffmpeg"):
        self.path = str(path)
        self.ffmpeg_bin = ffmpeg_bin
        self._metadata: Optional[SourceMetadata] = None

    def metadata(self) -> SourceMetadata:
        if self._metadata is not None:
            return self._metadata

        try:
            probe = run_ffprobe(self.path)
        except RuntimeError as e:
            raise DecodeError(f"Cannot probe video {self.path}: {e}") from e

        stream = next(
            (s for s in probe.get("streams", []) if s.get("codec_type") == "video"),
            None,
        )
        if stream is None:
            raise DecodeError(f"No video stream found in {self.path}")

        width = int(stream.get("width") or 0)
        height = int(stream.get("height") or 0)
        if width <= 0 or height <= 0:
            raise DecodeError(f"Video stream has no dimensions: {self.path}")

        fps = parse_frame_rate(stream.get("r_frame_rate", ""))
        duration_raw = probe.get("format", {}).get("duration") or stream.get("duration")
        try:
            duration = float(duration_raw) if duration_raw else 0.0
        except ValueError:
            duration = 0.0

        total_frames = math.floor(duration * fps)
        if total_frames <= 0 and stream.get("nb_frames"):
            try:
                total_frames = int(stream["nb_frames"])
            except ValueError:
                total_frames = 0

        self._metadata = SourceMetadata(
            width=width,
            height=height,
            frame_rate=fps,
            total_frames=max(0, total_frames),
            duration=duration,
        )
        logger.info(
            f"Video metadata: {width}x{height} @ {fps:.2f}fps, "
            f"{total_frames} frames ({duration:.2f}s)"
        )
        return self._metadata

    def _decode(self, start: int, end: int) -> list[np.ndarray]:
        """Decode frames [start, end) as raw bgr24 from ffmpeg stdout."""
        meta = self.metadata()
        cmd = [
            self.ffmpeg_bin,
            "-i", self.path,
            "-vf", f"select=between(n\\,{start}\\,{end - 1})",
            "-fps_mode", "vfr",
            "-f", "rawvideo",
            "-pix_fmt", "bgr24",
            "pipe:1",
        ]
        try:
            result = run_ffmpeg(cmd, binary_output=True)
        except RuntimeError as e:
            raise DecodeError(f"Frame extraction failed for {start}-{end - 1}: {e}") from e

        frame_size = meta.width * meta.height * 3
        data = result.stdout or b""
        count = min(len(data) // frame_size, end - start)
        return [
            np.frombuffer(data, dtype=np.uint8, count=frame_size, offset=i * frame_size)
            .reshape(meta.height, meta.width, 3)
            .copy()
            for i in range(count)
        ]

    def extract_frame(self, index: int) -> np.ndarray:
        frames = self._decode(index, index + 1)
        if not frames:
            raise DecodeError(f"Decoder produced no data for frame {index}")
        return frames[0]

    def extract_range(self, start: int, end: int) -> list[Optional[np.ndarray]]:
        try:
            frames: list[Optional[np.ndarray]] = list(self._decode(start, end))
        except DecodeError as e:
            logger.error(f"Failed to decode frames {start}-{end - 1}: {e}")
            frames = []
        missing = (end - start) - len(frames)
        if missing > 0:
            logger.warning(f"{missing} frames missing from decoded range {start}-{end - 1}")
            frames.extend([None] * missing)
        return frames


class DicomFrameSource(FrameSource):
    """
    Single or multi-frame DICOM file.

    Decode failures never propagate: any frame that cannot be decoded is
    replaced by a flat gray placeholder at the native size, or a
    ``placeholder_size`` square when the header cannot be read.
    """

    kind = SourceKind.VIDEO

    def __init__(
        self,
        path: PathLike,
        placeholder_size: int = 512,
        placeholder_gray: int = dicom.FLAT_GRAY,
    ):
        self.path = str(path)
        self.placeholder_size = placeholder_size
        self.placeholder_gray = placeholder_gray
        self._dataset = None
        self._load_failed = False
        self._metadata: Optional[SourceMetadata] = None

    def _get_dataset(self):
        if self._dataset is None and not self._load_failed:
            try:
                self._dataset = dicom.read_dataset(self.path)
            except DecodeError as e:
                logger.error(f"DICOM parse failed: {e}")
                self._load_failed = True
        return self._dataset

    def metadata(self) -> SourceMetadata:
        if self._metadata is not None:
            return self._metadata
        dataset = self._get_dataset()
        if dataset is None:
            self._metadata = dicom.fallback_metadata(self.placeholder_size)
        else:
            try:
                self._metadata = dicom.read_metadata(dataset)
            except Exception as e:
                logger.error(f"Error extracting DICOM metadata: {e}")
                self._metadata = dicom.fallback_metadata(self.placeholder_size)
        logger.info(
            f"DICOM metadata: {self._metadata.width}x{self._metadata.height}, "
            f"{self._metadata.total_frames} frames"
        )
        return self._metadata

    def placeholder(self) -> np.ndarray:
        meta = self.metadata()
        return dicom.placeholder_frame(meta.width, meta.height, self.placeholder_gray)

    def extract_frame(self, index: int) -> np.ndarray:
        dataset = self._get_dataset()
        if dataset is None:
            return self.placeholder()
        try:
            return dicom.decode_frame(dataset, index)
        except Exception as e:
            logger.error(f"Error extracting DICOM frame {index}, using placeholder: {e}")
            return self.placeholder()

    def close(self) -> None:
        self._dataset = None


class ImageSetFrameSource(FrameSource):
    """A batch of still images; each file is one frame."""

    kind = SourceKind.IMAGES

    def __init__(self, paths: Sequence[PathLike], names: Optional[Sequence[str]] = None):
        if not paths:
            raise DecodeError("Image set is empty")
        self.paths = [str(p) for p in paths]
        self.names = list(names) if names else [Path(p).name for p in self.paths]
        self._metadata: Optional[SourceMetadata] = None

    def metadata(self) -> SourceMetadata:
        if self._metadata is not None:
            return self._metadata
        for index in range(len(self.paths)):
            try:
                first = self.extract_frame(index)
            except DecodeError:
                continue
            height, width = first.shape[:2]
            self._metadata = SourceMetadata(
                width=width,
                height=height,
                frame_rate=0.0,
                total_frames=len(self.paths),
            )
            return self._metadata
        raise DecodeError("No readable image in image set")

    def extract_frame(self, index: int) -> np.ndarray:
        if index < 0 or index >= len(self.paths):
            raise DecodeError(f"Image index {index} out of range")
        image = cv2.imread(self.paths[index], cv2.IMREAD_UNCHANGED)
        if image is None:
            raise DecodeError(f"Cannot read image {self.paths[index]}")
        if image.dtype != np.uint8:
            image = cv2.normalize(image, None, 0, 255, cv2.NORM_MINMAX).astype(np.uint8)
        return to_bgr(image)

    def frame_name(self, index: int) -> Optional[str]:
        if 0 <= index < len(self.names):
            return self.names[index]
        return None


def open_frame_source(
    paths: Sequence[PathLike],
    names: Optional[Sequence[str]] = None,
    placeholder_size: int = 512,
    placeholder_gray: int = dicom.FLAT_GRAY,
) -> FrameSource:
    """
    Pick a frame source for the given input paths.

    Several paths, or a single still image, make an image set; a file with
    the DICOM signature is read as DICOM; anything else is decoded as video.
    """
    if not paths:
        raise DecodeError("No input paths given")
    if len(paths) > 1:
        return ImageSetFrameSource(paths, names)

    path = paths[0]
    if dicom.is_dicom_file(path):
        logger.info(f"Detected DICOM input: {path}")
        return DicomFrameSource(path, placeholder_size, placeholder_gray)
    if Path(path).suffix.lower() in IMAGE_EXTENSIONS:
        return ImageSetFrameSource([path], names)
    return VideoFrameSource(path)
