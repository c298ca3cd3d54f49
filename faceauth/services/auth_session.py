"""
Auth session state machine for face enrollment and verification.

This module provides the core logic for:
- Acquiring the camera and loading the face models
- Verifying a live capture against the enrolled descriptor
- Enrolling a live capture as the reference identity
- A passive detection probe toggling Ready/Detected for UI feedback
- Recording attempts and pushing status/result events to the presentation layer

All work runs on one asyncio event loop. Only one enrollment, verification or
camera reset runs at a time; a second request while one is in flight is
rejected with AuthOutcome.BUSY. The probe shares the camera lock with the
pipelines and skips its turn whenever the camera is in use.
"""

import asyncio
import contextlib
import time
from dataclasses import dataclass
from datetime import timedelta
from typing import Awaitable, Callable, List, Optional, Tuple

import numpy as np
import structlog

from faceauth.clients.camera_client import OpenCVCamera
from faceauth.clients.storage_client import DescriptorStore, create_descriptor_store
from faceauth.config import Settings, settings as default_settings
from faceauth.errors import (
    CameraNotFoundError,
    CameraNotReadyError,
    CameraPermissionDeniedError,
    CameraUnavailableError,
    DimensionMismatchError,
    ModelsUnavailableError,
)
from faceauth.models.internal_models import (
    Attempt,
    AttemptKind,
    AuthOutcome,
    AuthResult,
    Detection,
    SessionState,
    SessionStatus,
)
from faceauth.observability import (
    init_observability,
    record_enrollment_metrics,
    record_verification_metrics,
    trace_function,
)
from faceauth.services import distance_service
from faceauth.services.interfaces import CameraProvider, CameraStream, FaceFeatureExtractor
from faceauth.utils.image_utils import ImageProcessingError, make_thumbnail

logger = structlog.get_logger()

StatusCallback = Callable[[SessionStatus], None]
ResultCallback = Callable[[bool, str, Optional[float]], None]
SleepFunction = Callable[[float], Awaitable[None]]

PASSIVE_STATES = (SessionStatus.READY, SessionStatus.DETECTED)


@dataclass(frozen=True)
class SessionTiming:
    """Fixed delays used for pacing; all zero in tests."""

    warmup_delay: float = 1.0
    scan_delay: float = 1.5
    mismatch_recovery_delay: float = 2.0
    probe_interval: float = 0.5
    progress_steps: int = 10

    @classmethod
    def from_settings(cls, settings: Settings) -> "SessionTiming":
        return cls(
            warmup_delay=settings.warmup_delay,
            scan_delay=settings.scan_delay,
            mismatch_recovery_delay=settings.mismatch_recovery_delay,
            probe_interval=settings.probe_interval,
        )

    @classmethod
    def immediate(cls) -> "SessionTiming":
        return cls(warmup_delay=0.0, scan_delay=0.0, mismatch_recovery_delay=0.0, probe_interval=0.0)


class AuthSession:
    """
    Enrollment/verification state machine.

    Owns the camera stream for its lifetime and is the only writer of the
    descriptor store. Every public action returns an AuthResult and never
    raises for camera, model, extraction or storage failures; those become an
    Error status plus a result event.
    """

    def __init__(
        self,
        camera: CameraProvider,
        extractor: FaceFeatureExtractor,
        store: DescriptorStore,
        *,
        threshold: float = distance_service.DEFAULT_THRESHOLD,
        confidence_scale: float = distance_service.DEFAULT_CONFIDENCE_SCALE,
        timing: Optional[SessionTiming] = None,
        on_status_change: Optional[StatusCallback] = None,
        on_result: Optional[ResultCallback] = None,
        thumbnail_size: int = 160,
        lockout_after_failures: int = 0,
        lockout_window: float = 300.0,
        enable_probe: bool = True,
        sleep: SleepFunction = asyncio.sleep,
    ):
        """
        Initialize the auth session.

        Args:
            camera: Camera provider
            extractor: Facial feature extractor
            store: Descriptor store for the profile and attempt log
            threshold: Distance below which two descriptors match
            confidence_scale: Distance at which displayed confidence reaches 0
            timing: Pacing delays (defaults to SessionTiming())
            on_status_change: Called with the new status on every transition
            on_result: Called as (success, message, distance) once per completed action
            thumbnail_size: Longer edge of stored thumbnails in pixels
            lockout_after_failures: Consecutive failed verifications that block
                further attempts within lockout_window; 0 disables the lockout
            lockout_window: Lockout window in seconds
            enable_probe: Whether to run the passive detection probe
            sleep: Awaitable sleep used for every delay
        """
        if lockout_after_failures > store.history_limit:
            raise ValueError(
                f"lockout_after_failures ({lockout_after_failures}) cannot exceed "
                f"the attempt history limit ({store.history_limit})"
            )

        self.camera = camera
        self.extractor = extractor
        self.store = store
        self.threshold = threshold
        self.confidence_scale = confidence_scale
        self.timing = timing or SessionTiming()
        self.on_status_change = on_status_change
        self.on_result = on_result
        self.thumbnail_size = thumbnail_size
        self.lockout_after_failures = lockout_after_failures
        self.lockout_window = lockout_window
        self.enable_probe = enable_probe
        self._sleep = sleep

        self._state = SessionState(models_loaded=extractor.models_loaded)
        self._stream: Optional[CameraStream] = None
        self._needs_warmup = False
        self._face_present = False
        self._fatal: Optional[AuthResult] = None

        self._pipeline_lock = asyncio.Lock()
        self._camera_lock = asyncio.Lock()
        self._probe_task: Optional[asyncio.Task] = None
        self._recovery_task: Optional[asyncio.Task] = None

        logger.info("Auth session created", threshold=threshold, confidence_scale=confidence_scale)

    @property
    def state(self) -> SessionState:
        """Read-only copy of the current session state."""
        return self._state.snapshot()

    @property
    def status(self) -> SessionStatus:
        return self._state.status

    @property
    def is_busy(self) -> bool:
        return self._pipeline_lock.locked()

    def _is_ready(self) -> bool:
        return self._stream is not None and self._state.models_loaded

    def _passive_status(self) -> SessionStatus:
        return SessionStatus.DETECTED if self._face_present else SessionStatus.READY

    def _set_status(self, status: SessionStatus) -> None:
        if self._state.status is status:
            return
        logger.debug("Status transition", previous=self._state.status.value, status=status.value)
        self._state.status = status
        if self.on_status_change is None:
            return
        try:
            self.on_status_change(status)
        except Exception as e:
            logger.warning("Status listener failed", status=status.value, error=str(e))

    def _emit(self, result: AuthResult) -> AuthResult:
        self._state.last_message = result.message
        if self.on_result is not None:
            try:
                self.on_result(result.success, result.message, result.distance)
            except Exception as e:
                logger.warning("Result listener failed", outcome=result.outcome.value, error=str(e))
        return result

    def _fail(self, outcome: AuthOutcome, message: str, distance: Optional[float] = None) -> AuthResult:
        self._set_status(SessionStatus.ERROR)
        return self._emit(AuthResult(success=False, message=message, outcome=outcome, distance=distance))

    def _busy(self) -> AuthResult:
        logger.info("Rejected action while another capture is in progress", status=self._state.status.value)
        return AuthResult(
            success=False,
            message="Another capture is already in progress",
            outcome=AuthOutcome.BUSY,
        )

    async def _acquire_camera(self) -> None:
        if self._stream is not None:
            return
        self._stream = await self.camera.acquire()
        self._state.camera_active = True
        self._needs_warmup = True

    async def _load_models(self) -> None:
        if not self.extractor.models_loaded:
            await self.extractor.load()
        self._state.models_loaded = True

    async def _release_camera(self) -> None:
        stream, self._stream = self._stream, None
        self._state.camera_active = False
        self._face_present = False
        if stream is not None:
            await self.camera.release(stream)

    @staticmethod
    def _camera_message(error: BaseException) -> str:
        if isinstance(error, CameraPermissionDeniedError):
            return "Camera permission denied"
        if isinstance(error, CameraNotFoundError):
            return "No camera found"
        return "Camera unavailable"

    async def _load_stage(self) -> AuthResult:
        """Loading -> Ready, or Loading -> Error on camera/model failure."""
        self._set_status(SessionStatus.LOADING)

        camera_error, model_error = await asyncio.gather(
            self._acquire_camera(), self._load_models(), return_exceptions=True
        )
        for error in (camera_error, model_error):
            if isinstance(error, asyncio.CancelledError):
                raise error

        if camera_error is not None:
            logger.error("Camera acquisition failed", error=str(camera_error), error_type=type(camera_error).__name__)
            result = self._fail(AuthOutcome.CAMERA_UNAVAILABLE, self._camera_message(camera_error))
            self._fatal = result
            return result

        if model_error is not None:
            logger.error("Face model loading failed", error=str(model_error), error_type=type(model_error).__name__)
            result = self._fail(AuthOutcome.MODELS_UNAVAILABLE, "Failed to load face models")
            self._fatal = result
            return result

        self._fatal = None
        self._set_status(self._passive_status())
        self._start_probe()
        logger.info("Camera and face models ready")
        return AuthResult(success=True, message="Camera and face models ready", outcome=AuthOutcome.READY)

    async def _prepare_capture(self) -> Optional[AuthResult]:
        """Make the camera and models usable; returns a failure result if they are not."""
        if self._fatal is not None:
            return self._emit(AuthResult(
                success=False,
                message=f"{self._fatal.message}. Reset the camera to try again.",
                outcome=self._fatal.outcome,
            ))

        if not self._is_ready():
            result = await self._load_stage()
            if not result.success:
                return result

        if self._needs_warmup:
            await self._sleep(self.timing.warmup_delay)
            self._needs_warmup = False
        return None

    @trace_function("face_session_start")
    async def start(self) -> AuthResult:
        """
        Acquire the camera and load the face models concurrently.

        Also retries after a camera or model failure.
        """
        if self._pipeline_lock.locked():
            return self._busy()
        async with self._pipeline_lock:
            self._cancel_recovery()
            return await self._load_stage()

    @trace_function("face_camera_reset")
    async def reset_camera(self) -> AuthResult:
        """Release and re-acquire the camera (Loading -> Ready)."""
        if self._pipeline_lock.locked():
            return self._busy()
        async with self._pipeline_lock:
            self._cancel_recovery()
            await self._stop_probe()
            async with self._camera_lock:
                await self._release_camera()
            return await self._load_stage()

    async def _scan(self) -> None:
        """Cosmetic progress ramp from 0 to 100 over the scan delay."""
        self._state.confidence = 0.0
        steps = max(1, self.timing.progress_steps)
        if self.timing.scan_delay <= 0:
            self._state.confidence = 100.0
            return
        for step in range(1, steps + 1):
            await self._sleep(self.timing.scan_delay / steps)
            self._state.confidence = 100.0 * step / steps

    async def _capture(self) -> Tuple[np.ndarray, Optional[Detection]]:
        frame = await self._stream.read_frame()
        detection = await self.extractor.detect_with_descriptor(frame)
        return frame, detection

    async def _capture_or_fail(self, failure_message: str):
        """
        Capture a frame and extract a descriptor.

        Returns:
            (frame, detection, None) on success, or (None, None, result) when
            the capture failed and the session moved to Error
        """
        try:
            frame, detection = await self._capture()
        except CameraNotReadyError as e:
            logger.warning("Camera not ready for capture", error=str(e))
            return None, None, self._fail(AuthOutcome.DETECTION_ERROR, "Camera is not ready yet. Try again.")
        except CameraUnavailableError as e:
            logger.error("Camera lost during capture", error=str(e))
            await self._release_camera()
            return None, None, self._fail(AuthOutcome.CAMERA_UNAVAILABLE, self._camera_message(e))
        except ModelsUnavailableError as e:
            logger.error("Face models unavailable during capture", error=str(e))
            self._state.models_loaded = False
            return None, None, self._fail(AuthOutcome.MODELS_UNAVAILABLE, "Face models are not loaded")
        except Exception as e:
            logger.error("Face detection failed", error=str(e), error_type=type(e).__name__)
            return None, None, self._fail(AuthOutcome.DETECTION_ERROR, failure_message)
        return frame, detection, None

    def _thumbnail(self, frame: np.ndarray) -> Optional[bytes]:
        try:
            return make_thumbnail(frame, max_size=self.thumbnail_size)
        except ImageProcessingError as e:
            logger.warning("Could not create thumbnail", error=str(e))
            return None

    def _record_attempt(self, attempt: Attempt) -> None:
        try:
            self.store.append_attempt(attempt)
        except Exception as e:
            # The decision stands even if the history could not be written
            logger.error("Failed to record attempt", attempt_id=attempt.id, error=str(e))

    def _no_face(self, message: str) -> AuthResult:
        self._face_present = False
        self._set_status(self._passive_status())
        return self._emit(AuthResult(success=False, message=message, outcome=AuthOutcome.NO_FACE))

    def _schedule_recovery(self) -> None:
        self._cancel_recovery()
        self._recovery_task = asyncio.create_task(self._recover_after(self.timing.mismatch_recovery_delay))

    async def _recover_after(self, delay: float) -> None:
        await self._sleep(delay)
        if self._state.status is SessionStatus.ERROR and self._is_ready():
            self._face_present = False
            self._set_status(SessionStatus.READY)

    def _cancel_recovery(self) -> None:
        if self._recovery_task is not None and not self._recovery_task.done():
            self._recovery_task.cancel()
        self._recovery_task = None

    async def wait_for_recovery(self) -> None:
        """Wait until a pending Error -> Ready recovery has run."""
        if self._recovery_task is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await self._recovery_task

    def _locked_out(self) -> bool:
        if self.lockout_after_failures <= 0:
            return False
        failures = self.store.count_recent_failures(timedelta(seconds=self.lockout_window), consecutive=True)
        return failures >= self.lockout_after_failures

    @trace_function("face_verification")
    async def verify(self) -> AuthResult:
        """
        Capture a face and compare it against the enrolled profile.

        Returns:
            AuthResult; VERIFIED on a match, otherwise the reason it failed
        """
        if self._pipeline_lock.locked():
            return self._busy()

        start_time = time.monotonic()
        async with self._pipeline_lock:
            async with self._camera_lock:
                result = await self._run_verification()

        record_verification_metrics(
            success=result.success,
            processing_time=time.monotonic() - start_time,
            distance=result.distance,
            outcome=result.outcome.value,
        )
        return result

    async def _run_verification(self) -> AuthResult:
        self._cancel_recovery()
        logger.info("Starting verification", status=self._state.status.value)

        if self._locked_out():
            logger.warning("Verification blocked after repeated mismatches", limit=self.lockout_after_failures)
            return self._emit(AuthResult(
                success=False,
                message="Too many failed attempts. Try again later.",
                outcome=AuthOutcome.LOCKED_OUT,
            ))

        failure = await self._prepare_capture()
        if failure is not None:
            return failure

        self._set_status(SessionStatus.DETECTING)
        await self._scan()

        frame, detection, failure = await self._capture_or_fail("Detection error")
        if failure is not None:
            return failure

        if detection is None:
            logger.info("No face found in verification frame")
            return self._no_face("No face detected. Look at the camera.")

        profile = self.store.load_enrollment()
        if profile is None:
            logger.warning("Verification attempted without an enrolled profile")
            return self._fail(AuthOutcome.NOT_ENROLLED, "No registered face found. Please register first.")

        try:
            comparison = distance_service.compare(
                profile.descriptor,
                detection.descriptor,
                threshold=self.threshold,
                scale=self.confidence_scale,
            )
        except DimensionMismatchError as e:
            logger.error("Descriptor dimension mismatch", error=str(e))
            return self._fail(
                AuthOutcome.DIMENSION_MISMATCH,
                "Registered face is incompatible with the current face model. Please register again.",
            )

        self._record_attempt(Attempt(
            success=comparison.is_match,
            distance=comparison.distance,
            confidence=comparison.confidence,
            kind=AttemptKind.VERIFICATION,
            thumbnail=self._thumbnail(frame),
        ))
        self._state.confidence = comparison.confidence

        logger.info(
            "Face comparison completed",
            distance=round(comparison.distance, 4),
            threshold=self.threshold,
            decision=comparison.decision.value,
            confidence=round(comparison.confidence, 1),
        )

        if comparison.is_match:
            self._set_status(SessionStatus.VERIFIED)
            return self._emit(AuthResult(
                success=True,
                message="Identity verified",
                outcome=AuthOutcome.VERIFIED,
                distance=comparison.distance,
                confidence=comparison.confidence,
            ))

        self._set_status(SessionStatus.ERROR)
        self._schedule_recovery()
        return self._emit(AuthResult(
            success=False,
            message="Identity mismatch: face does not match the registered profile",
            outcome=AuthOutcome.MISMATCH,
            distance=comparison.distance,
            confidence=comparison.confidence,
        ))

    @trace_function("face_enrollment")
    async def enroll(self) -> AuthResult:
        """
        Capture a face and store it as the enrolled identity.

        Any previous enrollment is replaced.
        """
        if self._pipeline_lock.locked():
            return self._busy()

        start_time = time.monotonic()
        async with self._pipeline_lock:
            async with self._camera_lock:
                result = await self._run_enrollment()

        record_enrollment_metrics(
            success=result.success,
            processing_time=time.monotonic() - start_time,
            outcome=result.outcome.value,
        )
        return result

    async def _run_enrollment(self) -> AuthResult:
        self._cancel_recovery()
        logger.info("Starting enrollment", status=self._state.status.value)

        failure = await self._prepare_capture()
        if failure is not None:
            return failure

        self._set_status(SessionStatus.DETECTING)

        frame, detection, failure = await self._capture_or_fail("Registration failed")
        if failure is not None:
            return failure

        if detection is None:
            logger.info("No face found in enrollment frame")
            return self._no_face("No face detected for registration.")

        thumbnail = self._thumbnail(frame)
        try:
            self.store.save_enrollment(detection.descriptor, thumbnail)
        except Exception as e:
            logger.error("Failed to store enrolled profile", error=str(e))
            return self._fail(AuthOutcome.DETECTION_ERROR, "Registration failed: could not store the face")

        self._record_attempt(Attempt(
            success=True,
            distance=0.0,
            confidence=100.0,
            kind=AttemptKind.ENROLLMENT,
            thumbnail=thumbnail,
        ))
        self._state.confidence = 100.0

        logger.info("Face enrolled", dimension=int(detection.descriptor.shape[0]))
        self._set_status(SessionStatus.READY)
        return self._emit(AuthResult(
            success=True,
            message="Face registered successfully",
            outcome=AuthOutcome.ENROLLED,
            distance=0.0,
            confidence=100.0,
        ))

    async def probe_once(self) -> Optional[bool]:
        """
        Run one detection-only probe.

        Returns:
            True/False for face present/absent, or None when the probe was
            skipped (camera busy, not ready, or detection failed)
        """
        if self._pipeline_lock.locked() or self._camera_lock.locked():
            return None
        if self._state.status not in PASSIVE_STATES or not self._is_ready():
            return None

        async with self._camera_lock:
            try:
                frame = await self._stream.read_frame()
                box = await self.extractor.detect(frame)
            except Exception as e:
                logger.debug("Passive probe skipped", error=str(e))
                return None

        # A pipeline may have started while the probe was waiting on the camera
        if self._pipeline_lock.locked() or self._state.status not in PASSIVE_STATES:
            return None

        self._face_present = box is not None
        self._set_status(self._passive_status())
        return self._face_present

    async def _probe_loop(self) -> None:
        while True:
            await self._sleep(self.timing.probe_interval)
            await self.probe_once()

    def _start_probe(self) -> None:
        if not self.enable_probe:
            return
        if self.timing.probe_interval <= 0:
            logger.warning("Passive probe disabled: probe interval must be positive")
            return
        if self._probe_task is None or self._probe_task.done():
            self._probe_task = asyncio.create_task(self._probe_loop())

    async def _stop_probe(self) -> None:
        task, self._probe_task = self._probe_task, None
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    def attempt_history(self) -> List[Attempt]:
        return self.store.load_attempts()

    def recent_failures(self, window: float = 300.0) -> int:
        """Number of failed verifications in the retained log within the last `window` seconds."""
        return self.store.count_recent_failures(timedelta(seconds=window))

    def clear_enrollment(self) -> None:
        """Remove the enrolled profile; attempt history is kept."""
        self.store.clear_enrollment()

    def clear_all(self) -> None:
        """Remove the enrolled profile and the attempt history."""
        self.store.clear_all()
        self._state.confidence = 0.0

    async def close(self) -> None:
        """
        Stop background tasks and release the camera.

        Runs regardless of the current status and leaves the status unchanged.
        """
        self._cancel_recovery()
        await self._stop_probe()
        await self._release_camera()
        logger.info("Auth session closed", status=self._state.status.value)

    async def __aenter__(self) -> "AuthSession":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()


def create_session(
    settings: Optional[Settings] = None,
    on_status_change: Optional[StatusCallback] = None,
    on_result: Optional[ResultCallback] = None,
) -> AuthSession:
    """
    Build an AuthSession wired to the OpenCV camera, the face_recognition
    extractor and the JSON file store described by the settings.
    """
    from faceauth.services.extractor_service import get_face_extractor

    settings = settings or default_settings
    init_observability(settings)

    store = create_descriptor_store(
        settings.store_path,
        history_limit=settings.history_limit,
        key_prefix=settings.store_key_prefix,
    )
    return AuthSession(
        camera=OpenCVCamera(settings.camera_index, settings.frame_width, settings.frame_height),
        extractor=get_face_extractor(settings.detection_model, settings.num_jitters),
        store=store,
        threshold=settings.match_threshold,
        confidence_scale=settings.confidence_scale,
        timing=SessionTiming.from_settings(settings),
        on_status_change=on_status_change,
        on_result=on_result,
        thumbnail_size=settings.thumbnail_size,
        lockout_after_failures=settings.lockout_after_failures,
        lockout_window=settings.lockout_window,
    )
