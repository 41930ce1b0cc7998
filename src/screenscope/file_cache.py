"""Filesystem cache of per-screen artifacts, keyed by design file.

Layout::

    <cache_dir>/design-files/<file_key>/
        .cache-metadata.json        file_key, last_touched_at, cached_at, version
        123-456.png                 rendered screen image
        123-456.analysis.md         generated screen analysis
        123-456.notes.md            notes associated with the screen

An entry is valid while the design file's ``last_touched_at`` is not newer
than the one recorded at cache time. Any edit to the file invalidates the
whole entry: a layout change can affect every screen.

Mutations of one file key are serialized by a per-key lock, and every
file is written to a temp name then renamed into place, so a re-put
overwrites atomically and readers never see a half-written artifact.
"""

import json
import logging
import os
import re
import shutil
import tempfile
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, Optional, Union

from .exceptions import CacheCorruptionError
from .models import ArtifactType, CacheMetadata, DesignFileMetadata, node_id_to_filename

logger = logging.getLogger(__name__)

METADATA_FILENAME = ".cache-metadata.json"
CACHE_VERSION = "1.0"

_FILE_KEY_RE = re.compile(r"^[A-Za-z0-9_\-]+$")

Timestamp = Union[datetime, str]


def parse_timestamp(value: Timestamp) -> datetime:
    """Parse an ISO-8601 timestamp (``Z`` suffix allowed) into an aware datetime."""
    if isinstance(value, datetime):
        parsed = value
    else:
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _format_timestamp(value: datetime) -> str:
    return parse_timestamp(value).isoformat()


# ---------------------------------------------------------------------------
# Per-key lock registry
# ---------------------------------------------------------------------------

_locks: dict[str, threading.RLock] = {}
_registry_lock = threading.Lock()


def get_lock(file_key: str) -> threading.RLock:
    """Get or create the lock guarding one file key."""
    with _registry_lock:
        if file_key not in _locks:
            _locks[file_key] = threading.RLock()
        return _locks[file_key]


def reset_locks() -> None:
    """Drop all per-key locks (for testing)."""
    with _registry_lock:
        _locks.clear()


@dataclass(frozen=True)
class CacheValidation:
    was_invalidated: bool
    reason: str = ""


class FileCache:
    """Content-addressed, timestamp-validated artifact store.

    Args:
        base_dir: Cache root; per-file directories live under ``design-files/``.
    """

    def __init__(self, base_dir: Union[str, Path]):
        self.base_dir = Path(base_dir)
        self.root = self.base_dir / "design-files"

    # ----- paths -----------------------------------------------------------

    def path_for(self, file_key: str) -> Path:
        if not _FILE_KEY_RE.match(file_key):
            raise ValueError(f"Invalid design file key: {file_key!r}")
        return self.root / file_key

    def artifact_path(self, file_key: str, screen_id: str, artifact_type: ArtifactType) -> Path:
        return self.path_for(file_key) / f"{node_id_to_filename(screen_id)}.{artifact_type.value}"

    @contextmanager
    def lock(self, file_key: str) -> Iterator[None]:
        """Hold the per-key lock for a multi-step mutation."""
        with get_lock(file_key):
            yield

    # ----- metadata --------------------------------------------------------

    def load_metadata(self, file_key: str) -> Optional[CacheMetadata]:
        """Read stored metadata; None when the entry has none yet.

        Raises:
            CacheCorruptionError: metadata exists but cannot be parsed.
        """
        path = self.path_for(file_key) / METADATA_FILENAME
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise CacheCorruptionError(file_key, f"unreadable metadata: {exc}") from exc

        try:
            data = json.loads(raw)
            return CacheMetadata(
                file_key=data["fileKey"],
                last_touched_at=parse_timestamp(data["lastTouchedAt"]),
                cached_at=parse_timestamp(data["cachedAt"]),
                version=data.get("version", ""),
                last_touched_by=data.get("lastTouchedBy", ""),
            )
        except (ValueError, KeyError, TypeError, AttributeError) as exc:
            raise CacheCorruptionError(file_key, f"malformed metadata: {exc}") from exc

    def save_metadata(self, file_key: str, design_metadata: DesignFileMetadata) -> CacheMetadata:
        """Record the design file's current timestamp as the cache's baseline."""
        metadata = CacheMetadata(
            file_key=file_key,
            last_touched_at=parse_timestamp(design_metadata.last_touched_at),
            cached_at=datetime.now(timezone.utc),
            version=CACHE_VERSION,
            last_touched_by=design_metadata.last_touched_by,
        )
        payload = {
            "fileKey": metadata.file_key,
            "lastTouchedAt": _format_timestamp(metadata.last_touched_at),
            "cachedAt": _format_timestamp(metadata.cached_at),
            "version": metadata.version,
            "lastTouchedBy": metadata.last_touched_by,
        }
        with self.lock(file_key):
            self._atomic_write(
                self.path_for(file_key) / METADATA_FILENAME,
                json.dumps(payload, indent=2).encode("utf-8"),
            )
        logger.debug("Saved cache metadata for %s", file_key)
        return metadata

    # ----- validity --------------------------------------------------------

    def _check(self, file_key: str, current_last_touched_at: Timestamp) -> tuple[bool, str]:
        try:
            metadata = self.load_metadata(file_key)
        except CacheCorruptionError as exc:
            logger.warning("Treating cache as absent: %s", exc.message, extra={"file_key": file_key})
            return False, "corrupt metadata"

        if metadata is None:
            return False, "no metadata"

        if metadata.file_key != file_key:
            logger.warning(
                "Cache metadata file key mismatch: expected %s, found %s",
                file_key, metadata.file_key,
            )
            return False, "file key mismatch"

        if parse_timestamp(current_last_touched_at) > metadata.last_touched_at:
            return False, "design file updated"

        return True, ""

    def is_valid(self, file_key: str, current_last_touched_at: Timestamp) -> bool:
        """True when cached artifacts still reflect the design file.

        False on first run (no metadata), on unreadable or foreign metadata,
        and whenever the design file was touched after the cache baseline.
        """
        valid, _ = self._check(file_key, current_last_touched_at)
        return valid

    def validate(self, file_key: str, current_last_touched_at: Timestamp) -> CacheValidation:
        """Check validity and, if stale, wipe the entry, atomically per key."""
        with self.lock(file_key):
            valid, reason = self._check(file_key, current_last_touched_at)
            if valid:
                logger.info("Cache valid for %s", file_key)
                return CacheValidation(was_invalidated=False)
            self.invalidate(file_key)
            logger.info("Cache invalidated for %s (%s)", file_key, reason)
            return CacheValidation(was_invalidated=True, reason=reason)

    def invalidate(self, file_key: str) -> None:
        """Delete every artifact for *file_key* and recreate an empty entry."""
        path = self.path_for(file_key)
        with self.lock(file_key):
            shutil.rmtree(path, ignore_errors=True)
            path.mkdir(parents=True, exist_ok=True)

    # ----- artifacts -------------------------------------------------------

    def get(
        self,
        file_key: str,
        screen_id: str,
        artifact_type: ArtifactType = ArtifactType.ANALYSIS,
    ) -> Optional[Union[str, bytes]]:
        """Stored artifact, or None when absent."""
        path = self.artifact_path(file_key, screen_id, artifact_type)
        try:
            if artifact_type.is_binary:
                return path.read_bytes()
            return path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None

    def put(
        self,
        file_key: str,
        screen_id: str,
        artifact: Union[str, bytes],
        artifact_type: ArtifactType = ArtifactType.ANALYSIS,
    ) -> Path:
        """Store (or overwrite) one screen's artifact."""
        data = artifact.encode("utf-8") if isinstance(artifact, str) else artifact
        path = self.artifact_path(file_key, screen_id, artifact_type)
        with self.lock(file_key):
            self._atomic_write(path, data)
        return path

    def discard(
        self,
        file_key: str,
        screen_id: str,
        artifact_type: ArtifactType = ArtifactType.ANALYSIS,
    ) -> bool:
        """Remove one screen's artifact; False when there was none."""
        path = self.artifact_path(file_key, screen_id, artifact_type)
        with self.lock(file_key):
            try:
                path.unlink()
            except FileNotFoundError:
                return False
        return True

    @staticmethod
    def _atomic_write(path: Path, data: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=".tmp-", suffix=path.suffix)
        try:
            with os.fdopen(fd, "wb") as fh:
                fh.write(data)
            os.replace(tmp_name, path)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise
