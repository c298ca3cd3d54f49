"""
Face authentication against a single enrolled facial signature.

Main components:
    - clients.storage_client: durable descriptor store and attempt log
    - clients.camera_client: OpenCV camera provider
    - services.distance_service: descriptor distance and match decision
    - services.extractor_service: face_recognition descriptor extraction
    - services.auth_session: enrollment/verification state machine

Usage:
    from faceauth import create_session

    async with create_session(on_status_change=print) as session:
        await session.enroll()
        result = await session.verify()
"""

from faceauth.models import AuthOutcome, AuthResult, SessionStatus
from faceauth.services.auth_session import AuthSession, SessionTiming, create_session

__version__ = "1.0.0"

__all__ = [
    "AuthOutcome",
    "AuthResult",
    "AuthSession",
    "SessionStatus",
    "SessionTiming",
    "create_session",
]
