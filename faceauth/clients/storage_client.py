"""Key-value backends and the descriptor store built on top of them."""

import json
import logging
import os
import tempfile
import threading
from datetime import datetime, timedelta
from pathlib import Path
from typing import Dict, List, Optional, Protocol, Union

from pydantic import ValidationError

from faceauth.errors import StoreCorruptError
from faceauth.models.internal_models import Attempt, AttemptKind, Descriptor, EnrolledProfile, utcnow
from faceauth.models.record_models import (
    AttemptLog,
    StoredAttempt,
    StoredDescriptor,
    StoredThumbnail,
    profile_from_records,
)

logger = logging.getLogger(__name__)

DESCRIPTOR_KEY = "face_descriptor"
THUMBNAIL_KEY = "face_thumbnail"
ATTEMPTS_KEY = "face_attempts"


class KeyValueStore(Protocol):
    """Flat durable string storage."""

    def get(self, key: str) -> Optional[str]: ...

    def set(self, key: str, value: str) -> None: ...

    def delete(self, key: str) -> None: ...


class InMemoryKeyValueStore:
    """Process-local key-value store, mainly for tests."""

    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self._data: Dict[str, str] = dict(initial or {})

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value

    def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self) -> List[str]:
        return list(self._data)


class JsonFileKeyValueStore:
    """
    Key-value store persisted as a single JSON object on disk.

    Writes go to a temporary file in the same directory which then replaces
    the store file, so a crash mid-write leaves the previous contents intact.
    """

    def __init__(self, path: Union[str, Path]):
        """
        Initialize the file store.

        Args:
            path: Location of the JSON document. Parent directories are created.
        """
        self.path = Path(path).expanduser()
        self.path.parent.mkdir(parents=True, exist_ok=True)
        logger.info(f"JSON key-value store initialized at {self.path}")

    def _read(self) -> Dict[str, str]:
        """
        Load the whole document.

        Raises:
            StoreCorruptError: If the file is not a JSON object of strings
        """
        if not self.path.exists():
            return {}
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
            raise StoreCorruptError(str(self.path), f"unreadable store file: {e}") from e

        if not isinstance(data, dict) or not all(isinstance(v, str) for v in data.values()):
            raise StoreCorruptError(str(self.path), "store file is not a mapping of strings")
        return data

    def _write(self, data: Dict[str, str]) -> None:
        fd, temp_path = tempfile.mkstemp(prefix=".store-", suffix=".json", dir=self.path.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f)
            os.replace(temp_path, self.path)
        except Exception:
            try:
                os.unlink(temp_path)
            except OSError as cleanup_error:
                logger.warning(f"Failed to cleanup temporary store file: {cleanup_error}")
            raise

    def _read_for_update(self) -> Dict[str, str]:
        try:
            return self._read()
        except StoreCorruptError as e:
            logger.error(f"Discarding corrupt store contents before write: {e}")
            return {}

    def get(self, key: str) -> Optional[str]:
        return self._read().get(key)

    def set(self, key: str, value: str) -> None:
        data = self._read_for_update()
        data[key] = value
        self._write(data)

    def delete(self, key: str) -> None:
        data = self._read_for_update()
        if key in data:
            del data[key]
            self._write(data)


class ProfileRepository:
    """Repository for the enrolled descriptor and its thumbnail."""

    def __init__(self, backend: KeyValueStore, key_prefix: str = ""):
        """Initialize repository with a key-value backend."""
        self.backend = backend
        self.descriptor_key = f"{key_prefix}{DESCRIPTOR_KEY}"
        self.thumbnail_key = f"{key_prefix}{THUMBNAIL_KEY}"

    def save(self, profile: EnrolledProfile) -> None:
        record = StoredDescriptor.from_profile(profile)
        self.backend.set(self.descriptor_key, record.model_dump_json())

        if profile.thumbnail:
            thumbnail = StoredThumbnail.from_bytes(profile.thumbnail)
            self.backend.set(self.thumbnail_key, thumbnail.model_dump_json())
        else:
            self.backend.delete(self.thumbnail_key)

        logger.info(f"Saved enrolled descriptor ({record.dimension} values)")

    def read(self) -> Optional[EnrolledProfile]:
        """
        Read the enrolled profile.

        A corrupt thumbnail is dropped with a warning; the descriptor is what
        authentication depends on.

        Raises:
            StoreCorruptError: If the descriptor record cannot be decoded
        """
        raw = self.backend.get(self.descriptor_key)
        if raw is None:
            return None

        try:
            record = StoredDescriptor.model_validate_json(raw)
        except ValidationError as e:
            raise StoreCorruptError(self.descriptor_key, str(e)) from e

        thumbnail = None
        raw_thumbnail = self.backend.get(self.thumbnail_key)
        if raw_thumbnail is not None:
            try:
                thumbnail = StoredThumbnail.model_validate_json(raw_thumbnail)
            except ValidationError as e:
                logger.warning(f"Ignoring corrupt thumbnail record '{self.thumbnail_key}': {e}")

        return profile_from_records(record, thumbnail)

    def delete(self) -> None:
        self.backend.delete(self.descriptor_key)
        self.backend.delete(self.thumbnail_key)


class AttemptRepository:
    """Repository for the bounded, most-recent-first attempt log."""

    def __init__(self, backend: KeyValueStore, limit: int = 5, key_prefix: str = ""):
        """Initialize repository with a key-value backend and log capacity."""
        if limit < 1:
            raise ValueError(f"Attempt log limit must be at least 1, got {limit}")
        self.backend = backend
        self.limit = limit
        self.key = f"{key_prefix}{ATTEMPTS_KEY}"

    def read(self) -> List[Attempt]:
        """
        Read the attempt log.

        Raises:
            StoreCorruptError: If the log cannot be decoded
        """
        raw = self.backend.get(self.key)
        if raw is None:
            return []

        try:
            records = AttemptLog.validate_json(raw)
        except ValidationError as e:
            raise StoreCorruptError(self.key, str(e)) from e

        return [record.to_attempt() for record in records[:self.limit]]

    def write(self, attempts: List[Attempt]) -> None:
        records = [StoredAttempt.from_attempt(a) for a in attempts[:self.limit]]
        self.backend.set(self.key, AttemptLog.dump_json(records).decode("utf-8"))

    def delete(self) -> None:
        self.backend.delete(self.key)


class DescriptorStore:
    """
    Durable storage for the single enrolled profile and the attempt log.

    Coordinates the profile and attempt repositories over one key-value
    backend. Read operations never raise on corrupt records: the corruption
    is logged and the record is treated as absent.
    """

    def __init__(self, backend: KeyValueStore, history_limit: int = 5, key_prefix: str = ""):
        """
        Initialize the descriptor store.

        Args:
            backend: Key-value backend holding the records
            history_limit: Maximum number of attempts kept
            key_prefix: Namespace prepended to every key
        """
        self.backend = backend
        self.profiles = ProfileRepository(backend, key_prefix)
        self.attempts = AttemptRepository(backend, history_limit, key_prefix)
        self._lock = threading.Lock()

    @property
    def history_limit(self) -> int:
        return self.attempts.limit

    def save_enrollment(self, descriptor: Descriptor, thumbnail: Optional[bytes] = None) -> EnrolledProfile:
        """
        Store a descriptor as the enrolled identity, replacing any previous one.

        Args:
            descriptor: Reference descriptor
            thumbnail: Optional encoded image shown alongside the profile

        Returns:
            The stored profile
        """
        profile = EnrolledProfile(descriptor=descriptor, thumbnail=thumbnail)
        with self._lock:
            self.profiles.save(profile)
        return profile

    def read_enrollment(self) -> Optional[EnrolledProfile]:
        """Load the enrolled profile, raising StoreCorruptError on a malformed record."""
        return self.profiles.read()

    def load_enrollment(self) -> Optional[EnrolledProfile]:
        try:
            return self.profiles.read()
        except StoreCorruptError as e:
            logger.error(f"Treating enrolled profile as absent: {e}")
            return None

    def clear_enrollment(self) -> None:
        with self._lock:
            self.profiles.delete()
        logger.info("Enrolled profile cleared")

    def append_attempt(self, attempt: Attempt) -> None:
        """Insert an attempt at the head of the log, evicting the oldest beyond the limit."""
        with self._lock:
            try:
                attempts = self.attempts.read()
            except StoreCorruptError as e:
                logger.error(f"Replacing corrupt attempt log: {e}")
                attempts = []
            attempts.insert(0, attempt)
            self.attempts.write(attempts)
        logger.debug(f"Recorded attempt {attempt.id}: success={attempt.success}, distance={attempt.distance:.4f}")

    def read_attempts(self) -> List[Attempt]:
        """Load the attempt log, raising StoreCorruptError on a malformed record."""
        return self.attempts.read()

    def load_attempts(self) -> List[Attempt]:
        try:
            return self.attempts.read()
        except StoreCorruptError as e:
            logger.error(f"Treating attempt log as empty: {e}")
            return []

    def count_recent_failures(
        self,
        window: timedelta,
        consecutive: bool = False,
        now: Optional[datetime] = None,
    ) -> int:
        """
        Count failed verification attempts in the log within a time window.

        Only the retained log is consulted, so the count never exceeds the
        history limit.

        Args:
            window: How far back to look
            consecutive: Only count the unbroken run of failures at the head
                of the log; any successful attempt ends the run
            now: Reference time (defaults to the current UTC time)
        """
        cutoff = (now or utcnow()) - window
        count = 0
        for attempt in self.load_attempts():
            if attempt.timestamp < cutoff:
                break
            if attempt.success:
                if consecutive:
                    break
                continue
            if attempt.kind == AttemptKind.VERIFICATION:
                count += 1
        return count

    def clear_all(self) -> None:
        with self._lock:
            self.profiles.delete()
            self.attempts.delete()
        logger.info("Descriptor store reset: enrollment and attempt history removed")


def create_descriptor_store(path: Union[str, Path], history_limit: int = 5, key_prefix: str = "") -> DescriptorStore:
    """Create a descriptor store backed by a JSON file."""
    return DescriptorStore(JsonFileKeyValueStore(path), history_limit=history_limit, key_prefix=key_prefix)
