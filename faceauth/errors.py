"""Exception hierarchy shared by the store, adapters and the auth session."""


class FaceAuthError(Exception):
    """Base exception for face authentication errors."""
    pass


class CameraUnavailableError(FaceAuthError):
    """Raised when no camera stream can be acquired."""
    pass


class CameraPermissionDeniedError(CameraUnavailableError):
    """Raised when the operating system refuses access to the camera."""
    pass


class CameraNotFoundError(CameraUnavailableError):
    """Raised when no capture device is present."""
    pass


class CameraNotReadyError(FaceAuthError):
    """Raised when the stream is open but has not produced a usable frame yet."""
    pass


class ModelsUnavailableError(FaceAuthError):
    """Raised when the feature extractor fails to initialize."""
    pass


class ModelsNotLoadedError(ModelsUnavailableError):
    """Raised when detection is requested before the models are loaded."""
    pass


class NoFaceDetectedError(FaceAuthError):
    """Raised when a captured frame contains no face."""
    pass


class NotEnrolledError(FaceAuthError):
    """Raised when verification is attempted without an enrolled profile."""
    pass


class IdentityMismatchError(FaceAuthError):
    """Raised when a captured face does not match the enrolled profile."""
    pass


class DimensionMismatchError(FaceAuthError, ValueError):
    """Raised when two descriptors have different lengths."""
    pass


class StoreCorruptError(FaceAuthError):
    """Raised when a persisted record cannot be decoded."""

    def __init__(self, key: str, reason: str):
        super().__init__(f"Stored record '{key}' is corrupt: {reason}")
        self.key = key
        self.reason = reason


class FaceExtractionError(FaceAuthError):
    """Raised when the feature extractor fails while processing a frame."""
    pass
