"""
Tests for the face_recognition feature extractor.
"""

from unittest.mock import patch

import numpy as np
import pytest

pytest.importorskip("face_recognition")

from faceauth.errors import FaceExtractionError, ModelsNotLoadedError, ModelsUnavailableError
from faceauth.models.internal_models import FaceBox
from faceauth.services import extractor_service
from faceauth.services.extractor_service import (
    DESCRIPTOR_DIMENSION,
    FaceRecognitionExtractor,
    get_face_extractor,
)


@pytest.fixture
def mock_face_recognition():
    with patch("faceauth.services.extractor_service.face_recognition") as mock:
        mock.face_locations.return_value = []
        mock.face_encodings.return_value = []
        yield mock


@pytest.fixture
def loaded_extractor(mock_face_recognition):
    extractor = FaceRecognitionExtractor()
    with patch("faceauth.services.extractor_service.os.path.exists", return_value=True):
        extractor._load_models()
    return extractor


@pytest.fixture
def frame():
    return np.zeros((120, 160, 3), dtype=np.uint8)


class TestFaceRecognitionExtractor:
    """Test cases for FaceRecognitionExtractor."""

    def test_init(self):
        extractor = FaceRecognitionExtractor()

        assert extractor.detection_model == "hog"
        assert extractor.num_jitters == 1
        assert not extractor.models_loaded

    @pytest.mark.asyncio
    async def test_load(self, mock_face_recognition):
        extractor = FaceRecognitionExtractor(detection_model="cnn")

        with patch("faceauth.services.extractor_service.os.path.exists", return_value=True):
            await extractor.load()

        assert extractor.models_loaded
        assert mock_face_recognition.face_locations.call_args.kwargs["model"] == "cnn"

    @pytest.mark.asyncio
    async def test_load_missing_model_files(self, mock_face_recognition):
        extractor = FaceRecognitionExtractor()

        with patch("faceauth.services.extractor_service.os.path.exists", return_value=False):
            with pytest.raises(ModelsUnavailableError, match="Model file not found"):
                await extractor.load()

        assert not extractor.models_loaded

    @pytest.mark.asyncio
    async def test_detect_requires_models(self, frame):
        with pytest.raises(ModelsNotLoadedError):
            await FaceRecognitionExtractor().detect_with_descriptor(frame)

    @pytest.mark.asyncio
    async def test_detect_returns_largest_face(self, loaded_extractor, mock_face_recognition, frame):
        mock_face_recognition.face_locations.return_value = [(0, 10, 10, 0), (5, 80, 85, 5)]

        box = await loaded_extractor.detect(frame)

        assert box == FaceBox(top=5, right=80, bottom=85, left=5)
        mock_face_recognition.face_encodings.assert_not_called()

    @pytest.mark.asyncio
    async def test_detect_no_face(self, loaded_extractor, frame):
        assert await loaded_extractor.detect(frame) is None
        assert await loaded_extractor.detect_with_descriptor(frame) is None

    @pytest.mark.asyncio
    async def test_detect_with_descriptor(self, loaded_extractor, mock_face_recognition, frame):
        encoding = np.random.randn(DESCRIPTOR_DIMENSION)
        mock_face_recognition.face_locations.return_value = [(5, 80, 85, 5)]
        mock_face_recognition.face_encodings.return_value = [encoding]

        detection = await loaded_extractor.detect_with_descriptor(frame)

        assert detection.box.area == 80 * 75
        np.testing.assert_array_almost_equal(detection.descriptor, encoding)
        args, kwargs = mock_face_recognition.face_encodings.call_args
        assert args[1] == [(5, 80, 85, 5)]
        assert kwargs["num_jitters"] == 1

    @pytest.mark.asyncio
    async def test_unexpected_dimension(self, loaded_extractor, mock_face_recognition, frame):
        mock_face_recognition.face_locations.return_value = [(5, 80, 85, 5)]
        mock_face_recognition.face_encodings.return_value = [np.zeros(64)]

        with pytest.raises(FaceExtractionError, match="Unexpected descriptor dimension"):
            await loaded_extractor.detect_with_descriptor(frame)

    @pytest.mark.asyncio
    async def test_library_error_wrapped(self, loaded_extractor, mock_face_recognition, frame):
        mock_face_recognition.face_locations.side_effect = RuntimeError("dlib failure")

        with pytest.raises(FaceExtractionError, match="dlib failure"):
            await loaded_extractor.detect(frame)

    def test_get_model_info(self, loaded_extractor):
        info = loaded_extractor.get_model_info()

        assert info["models_loaded"]
        assert info["descriptor_dimension"] == 128


class TestGlobalExtractor:

    def test_singleton(self):
        with patch.object(extractor_service, "_face_extractor", None):
            first = get_face_extractor()
            second = get_face_extractor()

        assert first is second

    def test_create_session_uses_settings(self, tmp_path):
        from faceauth.config import Settings
        from faceauth.services.auth_session import create_session

        settings = Settings(store_path=tmp_path / "store.json", match_threshold=0.4, history_limit=3, camera_index=1)

        with patch.object(extractor_service, "_face_extractor", None), \
             patch("faceauth.services.auth_session.init_observability") as mock_init:
            session = create_session(settings)

        mock_init.assert_called_once_with(settings)

        assert session.threshold == 0.4
        assert session.store.history_limit == 3
        assert session.camera.device_index == 1
        assert isinstance(session.extractor, FaceRecognitionExtractor)
