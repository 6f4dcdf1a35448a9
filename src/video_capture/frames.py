"""Raster frame helpers: encode numpy images for the capture pipe and replay sources."""

from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path
from typing import Any, cast

import cv2
import numpy as np

__all__ = [
    "IMAGE_EXTENSIONS",
    "FrameArray",
    "FrameEncodingError",
    "encode_frame",
    "read_frames",
]

FrameArray = np.ndarray[Any, np.dtype[np.uint8]]

IMAGE_EXTENSIONS = frozenset({".png", ".jpg", ".jpeg", ".bmp"})
GRAYSCALE_DIMENSION = 2
COLOR_DIMENSION = 3


class FrameEncodingError(RuntimeError):
    """Raised when a frame cannot be encoded or a frame source cannot be read."""


def encode_frame(frame: FrameArray, *, extension: str = ".png") -> bytes:
    """Encode a BGR or grayscale raster into image bytes for the ``image2pipe`` demuxer.

    Args:
        frame: ``uint8`` array shaped ``(H, W)`` or ``(H, W, 3)``.
        extension: Image format understood by OpenCV, such as ``.png`` or ``.jpg``.

    Returns:
        The encoded image.

    Raises:
        FrameEncodingError: If the array is not an image or encoding fails.
    """
    if frame.ndim not in (GRAYSCALE_DIMENSION, COLOR_DIMENSION) or frame.size == 0:
        raise FrameEncodingError(f"Unsupported frame shape: {frame.shape}")
    if frame.dtype != np.uint8:
        raise FrameEncodingError(f"Unsupported frame dtype: {frame.dtype}")
    if extension.lower() not in IMAGE_EXTENSIONS:
        raise FrameEncodingError(f"Unsupported image format: {extension}")
    try:
        success, buffer = cv2.imencode(extension, frame)
    except cv2.error as exc:
        raise FrameEncodingError(f"Failed to encode frame: {exc}") from exc
    if not success:
        raise FrameEncodingError("Failed to encode frame")
    return cast(bytes, buffer.tobytes())


def read_frames(source: Path) -> Iterator[FrameArray]:
    """Yield frames from a video file or a directory of images sorted by name.

    Raises:
        FrameEncodingError: If ``source`` does not exist or cannot be opened.
    """
    if source.is_dir():
        yield from _read_image_directory(source)
        return
    if not source.is_file():
        raise FrameEncodingError("Frame source does not exist")

    capture = cv2.VideoCapture(str(source))
    if not capture.isOpened():
        raise FrameEncodingError("Failed to open video")
    try:
        while True:
            success, frame = capture.read()
            if not success or frame is None:
                break
            yield cast(FrameArray, frame)
    finally:
        capture.release()


def _read_image_directory(directory: Path) -> Iterator[FrameArray]:
    images = sorted(
        path
        for path in directory.iterdir()
        if path.is_file() and path.suffix.lower() in IMAGE_EXTENSIONS
    )
    for image_path in images:
        frame = cv2.imread(str(image_path), cv2.IMREAD_COLOR)
        if frame is None:
            raise FrameEncodingError(f"Failed to read image {image_path.name}")
        yield cast(FrameArray, frame)
