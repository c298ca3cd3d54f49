"""
Image processing utilities for face authentication.

This module provides functions for:
- Validating captured camera frames
- Converting OpenCV BGR frames to RGB for the feature extractor
- Encoding small JPEG thumbnails of captured frames
"""

import logging
from typing import Tuple

import cv2
import numpy as np

from faceauth.errors import CameraNotReadyError

logger = logging.getLogger(__name__)


class ImageProcessingError(Exception):
    """Raised when image processing operations fail."""
    pass


def frame_dimensions(frame: np.ndarray) -> Tuple[int, int]:
    """
    Get the (width, height) of a frame.

    Returns (0, 0) for frames without pixel data.
    """
    if frame is None or not hasattr(frame, "shape") or len(frame.shape) < 2:
        return 0, 0
    height, width = frame.shape[:2]
    return int(width), int(height)


def validate_frame(frame: np.ndarray) -> np.ndarray:
    """
    Ensure a frame holds image data.

    A stream that was just opened can report a zero-sized picture until the
    device delivers its first real frame.

    Args:
        frame: Frame returned by the camera

    Returns:
        The same frame

    Raises:
        CameraNotReadyError: If the frame is missing or empty
    """
    width, height = frame_dimensions(frame)
    if not width or not height:
        raise CameraNotReadyError(f"Camera is not ready yet (frame size {width}x{height})")
    if frame.ndim != 3 or frame.shape[2] not in (3, 4):
        raise CameraNotReadyError(f"Unexpected frame shape: {frame.shape}")
    return frame


def to_rgb(frame: np.ndarray) -> np.ndarray:
    """
    Convert an OpenCV BGR or BGRA frame to a contiguous RGB array.

    Raises:
        ImageProcessingError: If the conversion fails
    """
    try:
        code = cv2.COLOR_BGRA2RGB if frame.shape[2] == 4 else cv2.COLOR_BGR2RGB
        return np.ascontiguousarray(cv2.cvtColor(frame, code))
    except cv2.error as e:
        logger.error(f"Colour conversion failed: {e}")
        raise ImageProcessingError(f"Failed to convert frame to RGB: {e}") from e


def make_thumbnail(frame: np.ndarray, max_size: int = 160, quality: int = 80) -> bytes:
    """
    Encode a downscaled JPEG of a frame.

    Args:
        frame: BGR frame
        max_size: Length of the longer edge after scaling
        quality: JPEG quality (0-100)

    Returns:
        JPEG bytes

    Raises:
        ImageProcessingError: If the frame cannot be encoded
    """
    if max_size < 1:
        raise ImageProcessingError(f"Thumbnail size must be positive, got {max_size}")

    width, height = frame_dimensions(frame)
    if not width or not height:
        raise ImageProcessingError("Cannot create thumbnail from an empty frame")

    scale = min(1.0, max_size / float(max(width, height)))
    try:
        if scale < 1.0:
            size = (max(1, int(round(width * scale))), max(1, int(round(height * scale))))
            frame = cv2.resize(frame, size, interpolation=cv2.INTER_AREA)

        ok, buffer = cv2.imencode(".jpg", frame, [int(cv2.IMWRITE_JPEG_QUALITY), quality])
    except cv2.error as e:
        logger.error(f"Thumbnail encoding failed: {e}")
        raise ImageProcessingError(f"Failed to encode thumbnail: {e}") from e

    if not ok:
        raise ImageProcessingError("JPEG encoder returned no data")

    logger.debug(f"Encoded thumbnail: {len(buffer)} bytes at scale {scale:.2f}")
    return buffer.tobytes()
