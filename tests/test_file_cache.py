"""Tests for the timestamp-validated artifact cache."""

import json
import threading
from datetime import timedelta

import pytest

from screenscope.exceptions import CacheCorruptionError
from screenscope.file_cache import METADATA_FILENAME, parse_timestamp
from screenscope.models import ArtifactType

from conftest import FILE_KEY, TOUCHED_AT, make_metadata


# ---------------------------------------------------------------------------
# Validity
# ---------------------------------------------------------------------------


class TestIsValid:
    def test_no_entry_is_invalid(self, cache):
        assert cache.is_valid(FILE_KEY, TOUCHED_AT) is False

    def test_same_timestamp_is_valid(self, cache):
        cache.save_metadata(FILE_KEY, make_metadata())
        assert cache.is_valid(FILE_KEY, TOUCHED_AT) is True

    def test_older_current_timestamp_is_valid(self, cache):
        cache.save_metadata(FILE_KEY, make_metadata())
        assert cache.is_valid(FILE_KEY, TOUCHED_AT - timedelta(days=1)) is True

    def test_newer_current_timestamp_is_invalid(self, cache):
        cache.save_metadata(FILE_KEY, make_metadata())
        assert cache.is_valid(FILE_KEY, TOUCHED_AT + timedelta(seconds=1)) is False

    def test_idempotent(self, cache):
        cache.save_metadata(FILE_KEY, make_metadata())
        later = TOUCHED_AT + timedelta(hours=1)
        assert cache.is_valid(FILE_KEY, later) == cache.is_valid(FILE_KEY, later)
        assert cache.is_valid(FILE_KEY, TOUCHED_AT) == cache.is_valid(FILE_KEY, TOUCHED_AT)

    def test_accepts_iso_strings(self, cache):
        cache.save_metadata(FILE_KEY, make_metadata())
        assert cache.is_valid(FILE_KEY, "2026-03-01T12:00:00Z") is True
        assert cache.is_valid(FILE_KEY, "2026-03-02T00:00:00Z") is False

    def test_corrupt_metadata_is_invalid(self, cache):
        path = cache.path_for(FILE_KEY)
        path.mkdir(parents=True)
        (path / METADATA_FILENAME).write_text("{not json")
        assert cache.is_valid(FILE_KEY, TOUCHED_AT) is False

    def test_file_key_mismatch_is_invalid(self, cache):
        path = cache.path_for(FILE_KEY)
        path.mkdir(parents=True)
        (path / METADATA_FILENAME).write_text(json.dumps({
            "fileKey": "someOtherFile",
            "lastTouchedAt": "2030-01-01T00:00:00Z",
            "cachedAt": "2030-01-01T00:00:00Z",
        }))
        assert cache.is_valid(FILE_KEY, TOUCHED_AT) is False


class TestMetadata:
    def test_round_trip(self, cache):
        cache.save_metadata(FILE_KEY, make_metadata())
        stored = cache.load_metadata(FILE_KEY)
        assert stored.file_key == FILE_KEY
        assert stored.last_touched_at == TOUCHED_AT
        assert stored.last_touched_by == "designer"
        assert stored.version

    def test_absent_metadata_is_none(self, cache):
        assert cache.load_metadata(FILE_KEY) is None

    def test_malformed_metadata_raises(self, cache):
        path = cache.path_for(FILE_KEY)
        path.mkdir(parents=True)
        (path / METADATA_FILENAME).write_text(json.dumps({"fileKey": FILE_KEY}))
        with pytest.raises(CacheCorruptionError):
            cache.load_metadata(FILE_KEY)

    def test_parse_timestamp_assumes_utc_for_naive(self):
        assert parse_timestamp("2026-03-01T12:00:00") == TOUCHED_AT


# ---------------------------------------------------------------------------
# Artifacts
# ---------------------------------------------------------------------------


class TestArtifacts:
    def test_get_missing_returns_none(self, cache):
        assert cache.get(FILE_KEY, "1:1") is None

    def test_put_then_get_text(self, cache):
        cache.put(FILE_KEY, "1:1", "analysis text")
        assert cache.get(FILE_KEY, "1:1") == "analysis text"

    def test_put_then_get_image_bytes(self, cache):
        cache.put(FILE_KEY, "1:1", b"\x89PNG", ArtifactType.IMAGE)
        assert cache.get(FILE_KEY, "1:1", ArtifactType.IMAGE) == b"\x89PNG"

    def test_artifact_file_naming(self, cache):
        path = cache.put(FILE_KEY, "12:34", "x", ArtifactType.NOTES)
        assert path.name == "12-34.notes.md"
        assert path.parent == cache.path_for(FILE_KEY)

    def test_reput_overwrites(self, cache):
        cache.put(FILE_KEY, "1:1", "first")
        cache.put(FILE_KEY, "1:1", "second")
        assert cache.get(FILE_KEY, "1:1") == "second"
        leftovers = [p for p in cache.path_for(FILE_KEY).iterdir() if p.name.startswith(".tmp-")]
        assert leftovers == []

    def test_artifact_types_are_independent(self, cache):
        cache.put(FILE_KEY, "1:1", "analysis", ArtifactType.ANALYSIS)
        cache.put(FILE_KEY, "1:1", "notes", ArtifactType.NOTES)
        assert cache.get(FILE_KEY, "1:1", ArtifactType.ANALYSIS) == "analysis"
        assert cache.get(FILE_KEY, "1:1", ArtifactType.NOTES) == "notes"

    def test_discard_removes_one_artifact(self, cache):
        cache.put(FILE_KEY, "1:1", "analysis", ArtifactType.ANALYSIS)
        cache.put(FILE_KEY, "1:1", "notes", ArtifactType.NOTES)
        assert cache.discard(FILE_KEY, "1:1", ArtifactType.ANALYSIS) is True
        assert cache.get(FILE_KEY, "1:1", ArtifactType.ANALYSIS) is None
        assert cache.get(FILE_KEY, "1:1", ArtifactType.NOTES) == "notes"

    def test_discard_missing_artifact(self, cache):
        assert cache.discard(FILE_KEY, "1:1") is False

    def test_rejects_path_like_file_keys(self, cache):
        with pytest.raises(ValueError):
            cache.path_for("../escape")

    def test_concurrent_puts_leave_one_complete_value(self, cache):
        values = [f"value-{i}" * 100 for i in range(8)]
        threads = [threading.Thread(target=cache.put, args=(FILE_KEY, "1:1", v)) for v in values]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert cache.get(FILE_KEY, "1:1") in values


# ---------------------------------------------------------------------------
# Invalidation
# ---------------------------------------------------------------------------


class TestInvalidation:
    def test_invalidate_removes_everything(self, cache):
        cache.save_metadata(FILE_KEY, make_metadata())
        cache.put(FILE_KEY, "1:1", "analysis")
        cache.invalidate(FILE_KEY)
        assert cache.get(FILE_KEY, "1:1") is None
        assert cache.load_metadata(FILE_KEY) is None
        assert cache.path_for(FILE_KEY).is_dir()

    def test_validate_keeps_valid_entry(self, cache):
        cache.save_metadata(FILE_KEY, make_metadata())
        cache.put(FILE_KEY, "1:1", "analysis")
        outcome = cache.validate(FILE_KEY, TOUCHED_AT)
        assert outcome.was_invalidated is False
        assert cache.get(FILE_KEY, "1:1") == "analysis"

    def test_validate_wipes_stale_entry(self, cache):
        cache.save_metadata(FILE_KEY, make_metadata())
        cache.put(FILE_KEY, "1:1", "analysis")
        outcome = cache.validate(FILE_KEY, TOUCHED_AT + timedelta(minutes=5))
        assert outcome.was_invalidated is True
        assert outcome.reason == "design file updated"
        assert cache.get(FILE_KEY, "1:1") is None

    def test_validate_first_run(self, cache):
        outcome = cache.validate(FILE_KEY, TOUCHED_AT)
        assert outcome.was_invalidated is True
        assert outcome.reason == "no metadata"

    def test_other_file_keys_untouched(self, cache):
        cache.put("otherFile", "1:1", "keep me")
        cache.invalidate(FILE_KEY)
        assert cache.get("otherFile", "1:1") == "keep me"
