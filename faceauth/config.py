"""Configuration management for the face authentication package."""

from pathlib import Path
from typing import Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="FACEAUTH_",
        case_sensitive=False,
        extra="ignore"  # Ignore extra environment variables
    )

    # Matching
    match_threshold: float = 0.55
    confidence_scale: float = 0.8

    # Descriptor store
    store_path: Path = Path.home() / ".faceauth" / "store.json"
    store_key_prefix: str = ""
    history_limit: int = 5

    # Camera
    camera_index: int = 0
    frame_width: int = 640
    frame_height: int = 480

    # Session pacing (seconds)
    warmup_delay: float = 1.0
    scan_delay: float = 1.5
    mismatch_recovery_delay: float = 2.0
    probe_interval: float = 0.5

    # Feature extractor
    detection_model: str = "hog"
    num_jitters: int = 1
    thumbnail_size: int = 160

    # Repeated mismatch lockout (0 disables)
    lockout_after_failures: int = 0
    lockout_window: float = 300.0

    # Logging / telemetry
    log_level: str = "INFO"
    otlp_endpoint: Optional[str] = None

    @field_validator('match_threshold', 'confidence_scale')
    @classmethod
    def validate_positive(cls, v):
        if v <= 0.0:
            raise ValueError('must be greater than 0.0')
        return v

    @field_validator('history_limit')
    @classmethod
    def validate_history_limit(cls, v):
        if v < 1:
            raise ValueError('FACEAUTH_HISTORY_LIMIT must be at least 1')
        return v

    @field_validator('warmup_delay', 'scan_delay', 'mismatch_recovery_delay', 'probe_interval', 'lockout_window')
    @classmethod
    def validate_non_negative(cls, v):
        if v < 0.0:
            raise ValueError('delays must not be negative')
        return v

    @field_validator('detection_model')
    @classmethod
    def validate_detection_model(cls, v):
        if v not in ("hog", "cnn"):
            raise ValueError('FACEAUTH_DETECTION_MODEL must be "hog" or "cnn"')
        return v

    @field_validator('lockout_after_failures')
    @classmethod
    def validate_lockout(cls, v):
        if v < 0:
            raise ValueError('FACEAUTH_LOCKOUT_AFTER_FAILURES must not be negative')
        return v


# Global settings instance
settings = Settings()
