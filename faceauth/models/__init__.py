"""Data models for the face authentication package."""

from .internal_models import (
    Attempt,
    AttemptKind,
    AuthOutcome,
    AuthResult,
    Descriptor,
    Detection,
    EnrolledProfile,
    FaceBox,
    SessionState,
    SessionStatus,
    as_descriptor,
)
from .record_models import (
    AttemptLog,
    StoredAttempt,
    StoredDescriptor,
    StoredThumbnail,
)

__all__ = [
    "Attempt",
    "AttemptKind",
    "AuthOutcome",
    "AuthResult",
    "Descriptor",
    "Detection",
    "EnrolledProfile",
    "FaceBox",
    "SessionState",
    "SessionStatus",
    "as_descriptor",
    "AttemptLog",
    "StoredAttempt",
    "StoredDescriptor",
    "StoredThumbnail",
]
