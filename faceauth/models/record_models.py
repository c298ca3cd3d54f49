"""Pydantic models for records persisted in the key-value store."""

import base64
import binascii
import math
from datetime import datetime, timezone
from typing import List, Optional

from pydantic import BaseModel, Field, TypeAdapter, field_validator, model_validator

from faceauth.models.internal_models import Attempt, AttemptKind, as_descriptor, EnrolledProfile


def _encode(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def _check_base64(value: str) -> str:
    try:
        base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ValueError(f'Invalid base64 image data: {e}') from e
    return value


class StoredDescriptor(BaseModel):
    """Persisted form of the enrolled descriptor."""

    values: List[float] = Field(..., min_length=1, description="Descriptor components")
    dimension: int = Field(..., ge=1, description="Descriptor length at enrollment time")
    enrolled_at: datetime = Field(..., description="Enrollment timestamp")

    @field_validator('values')
    @classmethod
    def validate_finite(cls, v):
        """Reject NaN and infinite components."""
        if not all(math.isfinite(x) for x in v):
            raise ValueError('Descriptor contains non-finite values')
        return v

    @model_validator(mode='after')
    def validate_dimension(self):
        if len(self.values) != self.dimension:
            raise ValueError(f'Descriptor has {len(self.values)} values but declares dimension {self.dimension}')
        return self

    @classmethod
    def from_profile(cls, profile: EnrolledProfile) -> "StoredDescriptor":
        values = profile.descriptor.tolist()
        return cls(values=values, dimension=len(values), enrolled_at=profile.enrolled_at)


class StoredThumbnail(BaseModel):
    """Persisted thumbnail image."""

    image: str = Field(..., min_length=1, description="Base64-encoded image data")
    media_type: str = "image/jpeg"

    @field_validator('image')
    @classmethod
    def validate_base64(cls, v):
        return _check_base64(v)

    @classmethod
    def from_bytes(cls, data: bytes) -> "StoredThumbnail":
        return cls(image=_encode(data))

    def to_bytes(self) -> bytes:
        return base64.b64decode(self.image)


class StoredAttempt(BaseModel):
    """Persisted form of an Attempt."""

    id: str = Field(..., min_length=1)
    timestamp: datetime
    success: bool
    distance: float = Field(..., ge=0.0)
    confidence: float = Field(..., ge=0.0, le=100.0)
    kind: AttemptKind = AttemptKind.VERIFICATION
    thumbnail: Optional[str] = Field(None, description="Base64-encoded JPEG of the captured frame")

    @field_validator('timestamp')
    @classmethod
    def assume_utc(cls, v):
        """Naive timestamps are stored as UTC."""
        if v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v

    @field_validator('thumbnail')
    @classmethod
    def validate_thumbnail(cls, v):
        return v if v is None else _check_base64(v)

    @classmethod
    def from_attempt(cls, attempt: Attempt) -> "StoredAttempt":
        return cls(
            id=attempt.id,
            timestamp=attempt.timestamp,
            success=attempt.success,
            distance=attempt.distance,
            confidence=attempt.confidence,
            kind=attempt.kind,
            thumbnail=_encode(attempt.thumbnail) if attempt.thumbnail else None,
        )

    def to_attempt(self) -> Attempt:
        return Attempt(
            id=self.id,
            timestamp=self.timestamp,
            success=self.success,
            distance=self.distance,
            confidence=self.confidence,
            kind=self.kind,
            thumbnail=base64.b64decode(self.thumbnail) if self.thumbnail else None,
        )


AttemptLog = TypeAdapter(List[StoredAttempt])


def profile_from_records(descriptor: StoredDescriptor, thumbnail: Optional[StoredThumbnail]) -> EnrolledProfile:
    return EnrolledProfile(
        descriptor=as_descriptor(descriptor.values),
        thumbnail=thumbnail.to_bytes() if thumbnail else None,
        enrolled_at=descriptor.enrolled_at,
    )
