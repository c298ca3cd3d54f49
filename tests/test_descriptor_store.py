"""
Tests for the key-value backends and the descriptor store.
"""

import json
from datetime import timedelta

import numpy as np
import pytest

from faceauth.clients.storage_client import (
    ATTEMPTS_KEY,
    DESCRIPTOR_KEY,
    THUMBNAIL_KEY,
    AttemptRepository,
    DescriptorStore,
    InMemoryKeyValueStore,
    JsonFileKeyValueStore,
    create_descriptor_store,
)
from faceauth.errors import StoreCorruptError
from faceauth.models.internal_models import Attempt, AttemptKind, utcnow


def make_attempt(success=False, distance=0.9, kind=AttemptKind.VERIFICATION, age_seconds=0.0, thumbnail=None):
    return Attempt(
        success=success,
        distance=distance,
        confidence=0.0 if not success else 90.0,
        kind=kind,
        thumbnail=thumbnail,
        timestamp=utcnow() - timedelta(seconds=age_seconds),
    )


class TestInMemoryKeyValueStore:

    def test_get_set_delete(self):
        backend = InMemoryKeyValueStore()

        assert backend.get("a") is None
        backend.set("a", "1")
        assert backend.get("a") == "1"
        backend.delete("a")
        assert backend.get("a") is None

    def test_delete_missing_key(self):
        backend = InMemoryKeyValueStore({"a": "1"})
        backend.delete("b")
        assert backend.keys() == ["a"]


class TestJsonFileKeyValueStore:

    def test_persists_across_instances(self, tmp_path):
        path = tmp_path / "nested" / "store.json"
        JsonFileKeyValueStore(path).set("key", "value")

        assert JsonFileKeyValueStore(path).get("key") == "value"
        assert json.loads(path.read_text()) == {"key": "value"}

    def test_missing_file_reads_empty(self, tmp_path):
        assert JsonFileKeyValueStore(tmp_path / "store.json").get("key") is None

    def test_corrupt_file_raises(self, tmp_path):
        path = tmp_path / "store.json"
        path.write_text("{not json")

        with pytest.raises(StoreCorruptError):
            JsonFileKeyValueStore(path).get("key")

    def test_non_string_values_are_corrupt(self, tmp_path):
        path = tmp_path / "store.json"
        path.write_text(json.dumps({"key": 1}))

        with pytest.raises(StoreCorruptError, match="mapping of strings"):
            JsonFileKeyValueStore(path).get("key")

    def test_write_replaces_corrupt_file(self, tmp_path):
        path = tmp_path / "store.json"
        path.write_text("garbage")
        backend = JsonFileKeyValueStore(path)

        backend.set("key", "value")

        assert backend.get("key") == "value"

    def test_no_temporary_files_left_behind(self, tmp_path):
        backend = JsonFileKeyValueStore(tmp_path / "store.json")
        backend.set("a", "1")
        backend.delete("a")

        assert [p.name for p in tmp_path.iterdir()] == ["store.json"]


class TestDescriptorStore:
    """Test cases for DescriptorStore."""

    @pytest.fixture
    def backend(self):
        return InMemoryKeyValueStore()

    @pytest.fixture
    def store(self, backend):
        return DescriptorStore(backend, history_limit=5)

    def test_empty_store(self, store):
        assert store.load_enrollment() is None
        assert store.load_attempts() == []

    def test_save_and_load_enrollment(self, store):
        store.save_enrollment(np.array([0.1, 0.2, 0.3]), thumbnail=b"\xff\xd8jpeg")

        profile = store.load_enrollment()

        assert profile is not None
        np.testing.assert_array_equal(profile.descriptor, [0.1, 0.2, 0.3])
        assert profile.thumbnail == b"\xff\xd8jpeg"
        assert profile.enrolled_at.tzinfo is not None

    def test_descriptor_is_read_only(self, store):
        store.save_enrollment([1.0, 2.0])
        profile = store.load_enrollment()

        with pytest.raises(ValueError):
            profile.descriptor[0] = 5.0

    def test_second_enrollment_replaces_first(self, store):
        store.save_enrollment([0.0, 0.0, 0.0], thumbnail=b"first")
        store.save_enrollment([1.0, 1.0, 1.0])

        profile = store.load_enrollment()

        np.testing.assert_array_equal(profile.descriptor, [1.0, 1.0, 1.0])
        assert profile.thumbnail is None

    def test_thumbnail_stored_as_base64(self, store, backend):
        store.save_enrollment([0.5], thumbnail=b"\x00\x01binary")

        record = json.loads(backend.get(THUMBNAIL_KEY))

        assert record["image"] == "AAFiaW5hcnk="
        assert record["media_type"] == "image/jpeg"

    def test_key_prefix(self, backend):
        store = DescriptorStore(backend, key_prefix="alice:")
        store.save_enrollment([0.5])
        store.append_attempt(make_attempt())

        assert sorted(backend.keys()) == [f"alice:{ATTEMPTS_KEY}", f"alice:{DESCRIPTOR_KEY}"]

    def test_clear_enrollment_keeps_history(self, store):
        store.save_enrollment([0.5])
        store.append_attempt(make_attempt())

        store.clear_enrollment()

        assert store.load_enrollment() is None
        assert len(store.load_attempts()) == 1

    def test_attempts_most_recent_first(self, store):
        first = make_attempt(distance=0.1)
        second = make_attempt(distance=0.2)
        store.append_attempt(first)
        store.append_attempt(second)

        assert [a.id for a in store.load_attempts()] == [second.id, first.id]

    def test_history_capped(self, store):
        attempts = [make_attempt(distance=0.1 * i) for i in range(7)]
        for attempt in attempts:
            store.append_attempt(attempt)

        history = store.load_attempts()

        assert len(history) == 5
        assert [a.id for a in history] == [a.id for a in reversed(attempts[2:])]

    def test_attempt_fields_round_trip(self, store):
        attempt = make_attempt(success=True, distance=0.25, kind=AttemptKind.ENROLLMENT, thumbnail=b"thumb")
        store.append_attempt(attempt)

        assert store.load_attempts() == [attempt]

    def test_corrupt_descriptor_treated_as_absent(self, store, backend):
        backend.set(DESCRIPTOR_KEY, '{"values": "nope"}')

        assert store.load_enrollment() is None
        with pytest.raises(StoreCorruptError) as exc_info:
            store.read_enrollment()
        assert exc_info.value.key == DESCRIPTOR_KEY

    def test_descriptor_with_wrong_dimension_is_corrupt(self, store, backend):
        backend.set(DESCRIPTOR_KEY, json.dumps({
            "values": [1.0, 2.0],
            "dimension": 3,
            "enrolled_at": "2024-01-01T00:00:00Z",
        }))

        assert store.load_enrollment() is None

    def test_corrupt_thumbnail_is_ignored(self, store, backend):
        store.save_enrollment([0.5], thumbnail=b"thumb")
        backend.set(THUMBNAIL_KEY, "not json")

        profile = store.load_enrollment()

        assert profile is not None
        assert profile.thumbnail is None

    def test_corrupt_attempt_log_treated_as_empty(self, store, backend):
        backend.set(ATTEMPTS_KEY, "[{]")

        assert store.load_attempts() == []
        with pytest.raises(StoreCorruptError):
            store.read_attempts()

    def test_append_replaces_corrupt_log(self, store, backend):
        backend.set(ATTEMPTS_KEY, json.dumps([{"id": "x"}]))
        attempt = make_attempt()

        store.append_attempt(attempt)

        assert [a.id for a in store.load_attempts()] == [attempt.id]

    def test_clear_all(self, store, backend):
        store.save_enrollment([0.5], thumbnail=b"thumb")
        store.append_attempt(make_attempt())

        store.clear_all()

        assert backend.keys() == []
        assert store.load_enrollment() is None
        assert store.load_attempts() == []


class TestRecentFailures:
    """Test cases for counting failed verifications."""

    @pytest.fixture
    def store(self):
        return DescriptorStore(InMemoryKeyValueStore(), history_limit=5)

    def test_counts_failed_verifications(self, store):
        store.append_attempt(make_attempt(success=False))
        store.append_attempt(make_attempt(success=True, distance=0.1))
        store.append_attempt(make_attempt(success=False))

        assert store.count_recent_failures(timedelta(minutes=5)) == 2

    def test_consecutive_stops_at_success(self, store):
        store.append_attempt(make_attempt(success=False))
        store.append_attempt(make_attempt(success=True, distance=0.1))
        store.append_attempt(make_attempt(success=False))

        assert store.count_recent_failures(timedelta(minutes=5), consecutive=True) == 1

    def test_enrollment_resets_consecutive_run(self, store):
        store.append_attempt(make_attempt(success=False))
        store.append_attempt(make_attempt(success=True, distance=0.0, kind=AttemptKind.ENROLLMENT))

        assert store.count_recent_failures(timedelta(minutes=5), consecutive=True) == 0

    def test_old_failures_outside_window(self, store):
        store.append_attempt(make_attempt(success=False, age_seconds=600))
        store.append_attempt(make_attempt(success=False, age_seconds=10))

        assert store.count_recent_failures(timedelta(minutes=5)) == 1

    def test_bounded_by_history_limit(self, store):
        for _ in range(8):
            store.append_attempt(make_attempt(success=False))

        assert store.count_recent_failures(timedelta(minutes=5)) == 5


class TestAttemptRepository:

    def test_rejects_zero_limit(self):
        with pytest.raises(ValueError, match="at least 1"):
            AttemptRepository(InMemoryKeyValueStore(), limit=0)


class TestCreateDescriptorStore:

    def test_file_backed_store(self, tmp_path):
        path = tmp_path / "faceauth.json"
        store = create_descriptor_store(path, history_limit=3)
        store.save_enrollment([0.0, 0.0, 0.0])
        store.append_attempt(make_attempt())

        reopened = create_descriptor_store(path, history_limit=3)

        np.testing.assert_array_equal(reopened.load_enrollment().descriptor, [0.0, 0.0, 0.0])
        assert len(reopened.load_attempts()) == 1
        assert reopened.history_limit == 3

    def test_corrupt_file_reads_as_empty(self, tmp_path):
        path = tmp_path / "faceauth.json"
        path.write_text("\x00\x01")
        store = create_descriptor_store(path)

        assert store.load_enrollment() is None
        assert store.load_attempts() == []
