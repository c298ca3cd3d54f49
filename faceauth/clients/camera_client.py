"""
OpenCV camera client for live frame capture.

Blocking OpenCV calls are moved off the event loop with asyncio.to_thread so
the auth session stays responsive while the device opens or a frame is read.
"""

import asyncio
import logging
import os
from typing import Optional

import cv2
import numpy as np

from faceauth.errors import (
    CameraNotFoundError,
    CameraNotReadyError,
    CameraPermissionDeniedError,
    CameraUnavailableError,
)
from faceauth.utils.image_utils import validate_frame

logger = logging.getLogger(__name__)


class OpenCVStream:
    """Camera stream backed by a cv2.VideoCapture."""

    def __init__(self, capture: cv2.VideoCapture, device_index: int):
        self.capture = capture
        self.device_index = device_index
        self.is_open = True

    async def read_frame(self) -> np.ndarray:
        """
        Read the most recent frame.

        Returns:
            BGR frame

        Raises:
            CameraUnavailableError: If the stream has been released
            CameraNotReadyError: If the device returned no usable frame
        """
        if not self.is_open:
            raise CameraUnavailableError(f"Camera {self.device_index} stream has been released")

        grabbed, frame = await asyncio.to_thread(self.capture.read)
        if not grabbed:
            raise CameraNotReadyError(f"Camera {self.device_index} returned no frame")

        return validate_frame(frame)

    def close(self) -> None:
        if self.is_open:
            self.capture.release()
            self.is_open = False


class OpenCVCamera:
    """
    Camera provider for local capture devices.

    Handles opening the device, applying the capture size and releasing
    the device when the session is done with it.
    """

    def __init__(self, device_index: int = 0, width: int = 640, height: int = 480):
        """
        Initialize the camera provider.

        Args:
            device_index: OpenCV device index (default: 0)
            width: Requested frame width in pixels (default: 640)
            height: Requested frame height in pixels (default: 480)
        """
        self.device_index = device_index
        self.width = width
        self.height = height

        logger.info(f"Initialized camera provider for device {device_index} ({width}x{height})")

    def _device_path(self) -> Optional[str]:
        path = f"/dev/video{self.device_index}"
        return path if os.path.exists(path) else None

    def _open(self) -> cv2.VideoCapture:
        capture = cv2.VideoCapture(self.device_index)
        if not capture.isOpened():
            capture.release()
            device_path = self._device_path()
            if device_path and not os.access(device_path, os.R_OK):
                raise CameraPermissionDeniedError(f"Permission denied for camera device {device_path}")
            raise CameraNotFoundError(f"No camera available at index {self.device_index}")

        capture.set(cv2.CAP_PROP_FRAME_WIDTH, self.width)
        capture.set(cv2.CAP_PROP_FRAME_HEIGHT, self.height)
        return capture

    async def acquire(self) -> OpenCVStream:
        """
        Open the capture device.

        Raises:
            CameraPermissionDeniedError: If the device exists but cannot be read
            CameraNotFoundError: If no device answers at the configured index
            CameraUnavailableError: For any other failure while opening
        """
        try:
            logger.info(f"Opening camera device {self.device_index}")
            capture = await asyncio.to_thread(self._open)
        except CameraUnavailableError:
            raise
        except Exception as e:
            logger.error(f"Unexpected error opening camera {self.device_index}: {e}")
            raise CameraUnavailableError(f"Failed to open camera: {e}") from e

        logger.info(f"Camera device {self.device_index} opened")
        return OpenCVStream(capture, self.device_index)

    async def release(self, stream: OpenCVStream) -> None:
        """Release the capture device. Errors are logged, not raised."""
        try:
            await asyncio.to_thread(stream.close)
            logger.info(f"Camera device {self.device_index} released")
        except Exception as e:
            logger.warning(f"Error releasing camera {self.device_index}: {e}")
