"""Internal data models for the face authentication session."""

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Sequence

import numpy as np

from faceauth.errors import (
    CameraUnavailableError,
    DimensionMismatchError,
    FaceAuthError,
    FaceExtractionError,
    IdentityMismatchError,
    ModelsUnavailableError,
    NoFaceDetectedError,
    NotEnrolledError,
)

Descriptor = np.ndarray


def as_descriptor(values: Sequence[float]) -> Descriptor:
    """
    Build an immutable descriptor from a sequence of numbers.

    Args:
        values: Embedding values produced by the feature extractor

    Returns:
        Read-only 1-D float64 array

    Raises:
        ValueError: If the values do not form a non-empty 1-D vector
    """
    descriptor = np.array(values, dtype=np.float64)
    if descriptor.ndim != 1 or descriptor.shape[0] == 0:
        raise ValueError(f"Descriptor must be a non-empty 1-D vector, got shape {descriptor.shape}")
    descriptor.setflags(write=False)
    return descriptor


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SessionStatus(str, Enum):
    """Closed set of states of the auth session."""

    IDLE = "idle"
    LOADING = "loading"
    READY = "ready"
    DETECTED = "detected"
    DETECTING = "detecting"
    VERIFIED = "verified"
    ERROR = "error"


class AttemptKind(str, Enum):
    VERIFICATION = "verification"
    ENROLLMENT = "enrollment"


class AuthOutcome(str, Enum):
    """Why an auth action finished the way it did."""

    VERIFIED = "verified"
    ENROLLED = "enrolled"
    READY = "ready"
    NO_FACE = "no_face"
    NOT_ENROLLED = "not_enrolled"
    MISMATCH = "mismatch"
    CAMERA_UNAVAILABLE = "camera_unavailable"
    MODELS_UNAVAILABLE = "models_unavailable"
    DETECTION_ERROR = "detection_error"
    DIMENSION_MISMATCH = "dimension_mismatch"
    BUSY = "busy"
    LOCKED_OUT = "locked_out"


_OUTCOME_ERRORS = {
    AuthOutcome.NO_FACE: NoFaceDetectedError,
    AuthOutcome.NOT_ENROLLED: NotEnrolledError,
    AuthOutcome.MISMATCH: IdentityMismatchError,
    AuthOutcome.CAMERA_UNAVAILABLE: CameraUnavailableError,
    AuthOutcome.MODELS_UNAVAILABLE: ModelsUnavailableError,
    AuthOutcome.DETECTION_ERROR: FaceExtractionError,
    AuthOutcome.DIMENSION_MISMATCH: DimensionMismatchError,
}


@dataclass
class EnrolledProfile:
    """The single enrolled identity."""

    descriptor: Descriptor
    thumbnail: Optional[bytes] = None
    enrolled_at: datetime = field(default_factory=utcnow)

    def __post_init__(self):
        """Freeze the descriptor after initialization."""
        self.descriptor = as_descriptor(self.descriptor)


@dataclass(frozen=True)
class Attempt:
    """Recorded outcome of one verification or enrollment."""

    success: bool
    distance: float
    confidence: float
    kind: AttemptKind = AttemptKind.VERIFICATION
    thumbnail: Optional[bytes] = None
    timestamp: datetime = field(default_factory=utcnow)
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def __post_init__(self):
        """Validate confidence range after initialization."""
        if not 0.0 <= self.confidence <= 100.0:
            raise ValueError(f"Confidence must be between 0 and 100, got {self.confidence}")
        if self.distance < 0.0:
            raise ValueError(f"Distance must not be negative, got {self.distance}")


@dataclass
class SessionState:
    """Mutable state owned by the auth session."""

    status: SessionStatus = SessionStatus.IDLE
    camera_active: bool = False
    models_loaded: bool = False
    confidence: float = 0.0
    last_message: Optional[str] = None

    def snapshot(self) -> "SessionState":
        return replace(self)


@dataclass(frozen=True)
class AuthResult:
    """Result of a start, verify or enroll call."""

    success: bool
    message: str
    outcome: AuthOutcome
    distance: Optional[float] = None
    confidence: Optional[float] = None

    def raise_for_outcome(self) -> "AuthResult":
        """
        Raise the matching FaceAuthError for a failed result.

        Returns:
            The result itself when it succeeded
        """
        if self.success:
            return self
        raise _OUTCOME_ERRORS.get(self.outcome, FaceAuthError)(self.message)


@dataclass(frozen=True)
class FaceBox:
    """Face bounding box in pixel coordinates."""

    top: int
    right: int
    bottom: int
    left: int

    @property
    def area(self) -> int:
        return max(0, self.bottom - self.top) * max(0, self.right - self.left)


@dataclass(frozen=True)
class Detection:
    """A detected face together with its descriptor."""

    box: FaceBox
    descriptor: Descriptor
