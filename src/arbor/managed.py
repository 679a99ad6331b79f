"""Managed-Branch Tracker: the set of branches this tool created.

A marker is a promise "I may delete this branch later". It is written only
after branch, worktree and mapping all exist, and removed once the branch is
deleted or found gone. One marker file per branch under
``<metadata>/managed-branches/``; the file name combines the sanitized name
with a short digest of the exact branch name so sanitizer collisions can
never make two branches share a marker.
"""

from __future__ import annotations

import hashlib
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path
from typing import ClassVar, Final

import msgspec
from msgspec import Struct

from .context import RepoContext
from .errors import ArborError, IntegrityError, StorageIOError
from .fs import atomic_write
from .locking import repo_lock
from .sanitize import sanitize

MARKER_DIRNAME: Final[str] = "managed-branches"
MARKER_SUFFIX: Final[str] = ".json"


class ManagedBranchMarker(Struct, frozen=True, forbid_unknown_fields=True):
    repository: str
    branch: str
    created_at: datetime


def marker_filename(branch: str) -> str:
    digest = hashlib.sha256(branch.encode()).hexdigest()[:8]
    return f"{sanitize(branch)}-{digest}{MARKER_SUFFIX}"


class ManagedBranchTracker:
    """Per-repository marker files with lock-serialized mutation."""

    __slots__ = ("_ctx", "_lock_path", "marker_dir")

    # Tests can inject a fixed clock
    _clock: ClassVar[Callable[[], datetime]] = lambda: datetime.now(UTC)

    def __init__(self, ctx: RepoContext) -> None:
        self._ctx = ctx
        self.marker_dir: Final[Path] = ctx.metadata_dir / MARKER_DIRNAME
        self._lock_path: Final[Path] = ctx.metadata_dir / f"{MARKER_DIRNAME}.lock"

    def _marker_path(self, branch: str) -> Path:
        return self.marker_dir / marker_filename(branch)

    def _read_marker(self, path: Path) -> ManagedBranchMarker | None:
        try:
            return msgspec.json.decode(path.read_bytes(), type=ManagedBranchMarker)
        except FileNotFoundError:
            return None
        except msgspec.DecodeError as e:
            raise IntegrityError(f"Corrupt managed-branch marker {path}: {e}") from e
        except OSError as e:
            raise StorageIOError("Failed to read managed-branch marker", path) from e

    def mark(self, branch: str) -> None:
        """Record that this tool created ``branch``. Idempotent."""
        marker = ManagedBranchMarker(
            repository=str(self._ctx.repo_path),
            branch=branch,
            created_at=type(self)._clock(),
        )
        path = self._marker_path(branch)
        with repo_lock(self._lock_path, self._ctx.lock_timeout):
            try:
                atomic_write(path, msgspec.json.encode(marker))
            except OSError as e:
                raise StorageIOError("Failed to write managed-branch marker", path) from e

    def is_managed(self, branch: str) -> bool:
        marker = self._read_marker(self._marker_path(branch))
        # Digest collisions are astronomically unlikely; still compare the name
        return marker is not None and marker.branch == branch

    def get(self, branch: str) -> ManagedBranchMarker | None:
        marker = self._read_marker(self._marker_path(branch))
        if marker is None or marker.branch != branch:
            return None
        return marker

    def unmark(self, branch: str) -> bool:
        """Remove the marker. No-op (False) when absent."""
        path = self._marker_path(branch)
        with repo_lock(self._lock_path, self._ctx.lock_timeout):
            try:
                path.unlink()
            except FileNotFoundError:
                return False
            except OSError as e:
                raise StorageIOError("Failed to remove managed-branch marker", path) from e
        return True

    def markers(self) -> list[ManagedBranchMarker]:
        """All markers of this repository, sorted by branch name.

        Raises:
            IntegrityError: If any marker file is corrupt.
        """
        found, unreadable = self.scan()
        if unreadable:
            raise unreadable[0][1]
        return found

    def scan(self) -> tuple[list[ManagedBranchMarker], list[tuple[Path, ArborError]]]:
        """Readable markers sorted by branch name, plus each unreadable file and its error."""
        if not self.marker_dir.is_dir():
            return [], []
        found: list[ManagedBranchMarker] = []
        unreadable: list[tuple[Path, ArborError]] = []
        for path in sorted(self.marker_dir.glob(f"*{MARKER_SUFFIX}")):
            try:
                marker = self._read_marker(path)
            except (IntegrityError, StorageIOError) as e:
                unreadable.append((path, e))
                continue
            if marker is not None:
                found.append(marker)
        return sorted(found, key=lambda m: m.branch), unreadable

    def branches(self) -> set[str]:
        return {m.branch for m in self.markers()}
