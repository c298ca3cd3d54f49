"""
Interfaces of the collaborators driven by the auth session.

The session only depends on these protocols, so the OpenCV camera and the
face_recognition extractor can be swapped for test doubles or other
backends.

Usage:
    from faceauth.services.interfaces import CameraProvider, FaceFeatureExtractor
"""

from typing import Optional, Protocol

import numpy as np

from faceauth.models.internal_models import Detection, FaceBox


class CameraStream(Protocol):
    """An open video source."""

    async def read_frame(self) -> np.ndarray:
        """
        Return the most recent BGR frame.

        Raises:
            CameraNotReadyError: If no usable frame is available yet
            CameraUnavailableError: If the stream is gone
        """
        ...


class CameraProvider(Protocol):
    """Supplies and releases camera streams."""

    async def acquire(self) -> CameraStream:
        """
        Open a stream.

        Raises:
            CameraPermissionDeniedError: If access to the device is refused
            CameraNotFoundError: If there is no device
        """
        ...

    async def release(self, stream: CameraStream) -> None: ...


class FaceFeatureExtractor(Protocol):
    """Detects faces and produces descriptors for captured frames."""

    @property
    def models_loaded(self) -> bool: ...

    async def load(self) -> None:
        """
        Load the detection and recognition models.

        Raises:
            ModelsUnavailableError: If the models cannot be initialised
        """
        ...

    async def detect(self, frame: np.ndarray) -> Optional[FaceBox]:
        """Fast detection without a descriptor; may raise ModelsNotLoadedError."""
        ...

    async def detect_with_descriptor(self, frame: np.ndarray) -> Optional[Detection]:
        """Full pipeline returning the face and its descriptor; may raise ModelsNotLoadedError."""
        ...
