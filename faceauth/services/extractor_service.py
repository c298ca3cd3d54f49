"""
Facial feature extraction using the face_recognition (dlib) models.
"""

import asyncio
import logging
import os
from typing import List, Optional

import face_recognition
import face_recognition_models
import numpy as np

from faceauth.errors import FaceExtractionError, ModelsNotLoadedError, ModelsUnavailableError
from faceauth.models.internal_models import Detection, FaceBox, as_descriptor
from faceauth.services.distance_service import validate_descriptor
from faceauth.utils.image_utils import ImageProcessingError, to_rgb

logger = logging.getLogger(__name__)

DESCRIPTOR_DIMENSION = 128


def _largest(locations: List[tuple]) -> Optional[FaceBox]:
    boxes = [FaceBox(top=t, right=r, bottom=b, left=l) for (t, r, b, l) in locations]
    if not boxes:
        return None
    return max(boxes, key=lambda box: box.area)


class FaceRecognitionExtractor:
    """Feature extractor producing 128-dimensional dlib face descriptors."""

    def __init__(self, detection_model: str = "hog", num_jitters: int = 1, upsample: int = 1):
        """
        Initialize the extractor.

        Args:
            detection_model: "hog" (CPU) or "cnn" (dlib CNN detector)
            num_jitters: Times to re-sample the face when computing a descriptor
            upsample: Times to upsample the frame when looking for faces
        """
        self.detection_model = detection_model
        self.num_jitters = num_jitters
        self.upsample = upsample
        self._models_loaded = False

    @property
    def models_loaded(self) -> bool:
        return self._models_loaded

    def _load_models(self) -> None:
        """Check model files and run one warm-up detection."""
        if self._models_loaded:
            return

        try:
            logger.info("Loading face_recognition models...")

            for location in (
                face_recognition_models.pose_predictor_model_location(),
                face_recognition_models.face_recognition_model_location(),
            ):
                if not os.path.exists(location):
                    raise FileNotFoundError(f"Model file not found: {location}")

            # First call initialises the dlib detector
            face_recognition.face_locations(np.zeros((32, 32, 3), dtype=np.uint8), model=self.detection_model)

            self._models_loaded = True
            logger.info("face_recognition models loaded successfully")

        except Exception as e:
            logger.error(f"Failed to load face_recognition models: {e}")
            raise ModelsUnavailableError(f"Model loading failed: {e}") from e

    async def load(self) -> None:
        await asyncio.to_thread(self._load_models)

    def _ensure_loaded(self) -> None:
        if not self._models_loaded:
            raise ModelsNotLoadedError("Face models are not loaded")

    def _locate(self, rgb: np.ndarray) -> List[tuple]:
        return face_recognition.face_locations(
            rgb,
            number_of_times_to_upsample=self.upsample,
            model=self.detection_model,
        )

    def _detect(self, frame: np.ndarray) -> Optional[FaceBox]:
        self._ensure_loaded()
        try:
            return _largest(self._locate(to_rgb(frame)))
        except ImageProcessingError as e:
            raise FaceExtractionError(f"Failed to prepare frame: {e}") from e
        except Exception as e:
            logger.error(f"Face detection failed: {e}")
            raise FaceExtractionError(f"Face detection failed: {e}") from e

    def _detect_with_descriptor(self, frame: np.ndarray) -> Optional[Detection]:
        self._ensure_loaded()
        try:
            rgb = to_rgb(frame)
            box = _largest(self._locate(rgb))
            if box is None:
                return None

            location = (box.top, box.right, box.bottom, box.left)
            encodings = face_recognition.face_encodings(rgb, [location], num_jitters=self.num_jitters)
            if not encodings:
                return None

            descriptor = as_descriptor(encodings[0])

        except ImageProcessingError as e:
            raise FaceExtractionError(f"Failed to prepare frame: {e}") from e
        except Exception as e:
            logger.error(f"Descriptor extraction failed: {e}")
            raise FaceExtractionError(f"Descriptor extraction failed: {e}") from e

        if descriptor.shape[0] != DESCRIPTOR_DIMENSION:
            raise FaceExtractionError(
                f"Unexpected descriptor dimension: {descriptor.shape[0]}, expected {DESCRIPTOR_DIMENSION}"
            )
        if not validate_descriptor(descriptor):
            raise FaceExtractionError("Descriptor contains non-finite values")

        logger.debug(f"Extracted descriptor for face at {box}")
        return Detection(box=box, descriptor=descriptor)

    async def detect(self, frame: np.ndarray) -> Optional[FaceBox]:
        """
        Find the largest face in a frame without computing a descriptor.

        Raises:
            ModelsNotLoadedError: If load() has not completed
            FaceExtractionError: If detection fails
        """
        return await asyncio.to_thread(self._detect, frame)

    async def detect_with_descriptor(self, frame: np.ndarray) -> Optional[Detection]:
        """
        Find the largest face in a frame and compute its descriptor.

        Returns:
            Detection, or None when no face is present

        Raises:
            ModelsNotLoadedError: If load() has not completed
            FaceExtractionError: If detection or encoding fails
        """
        return await asyncio.to_thread(self._detect_with_descriptor, frame)

    def get_model_info(self) -> dict:
        return {
            "models_loaded": self._models_loaded,
            "descriptor_dimension": DESCRIPTOR_DIMENSION,
            "detection_model": self.detection_model,
            "num_jitters": self.num_jitters,
        }


# Global instance for reuse across sessions
_face_extractor: Optional[FaceRecognitionExtractor] = None


def get_face_extractor(detection_model: str = "hog", num_jitters: int = 1) -> FaceRecognitionExtractor:
    """
    Get the global face extractor instance.

    Returns:
        FaceRecognitionExtractor: The global extractor instance
    """
    global _face_extractor
    if _face_extractor is None:
        _face_extractor = FaceRecognitionExtractor(detection_model=detection_model, num_jitters=num_jitters)
    return _face_extractor
