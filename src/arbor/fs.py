"""Filesystem surface: pattern-filtered tree copy, directory lifecycle, atomic replace.

Every OSError leaving this module is wrapped in StorageIOError naming the
path involved, so callers only handle domain errors.
"""

from __future__ import annotations

import os
import shutil
from pathlib import Path
from typing import Protocol

from .errors import StorageIOError
from .patterns import ConfigPatternSet


def atomic_write(path: Path, data: bytes) -> None:  # Time: O(n), Space: O(1)
    """Atomically replace ``path`` with ``data`` via tmp-fsync-rename.

    Pattern: write to .tmp -> fsync -> rename over target.
    Rename is atomic on POSIX; readers see the old or the new content, never a
    partial write. Callers serialize writers with a lock.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    temp_file = path.with_name(path.name + ".tmp")

    with temp_file.open("wb") as f:
        f.write(data)
        f.flush()
        os.fsync(f.fileno())

    temp_file.rename(path)


class FilesystemSurface(Protocol):
    """Protocol for the file operations the lifecycle engine consumes."""

    def copy_matching(
        self, source: Path, destination: Path, pattern_set: ConfigPatternSet
    ) -> list[str]:
        """Copy every file under ``source`` selected by ``pattern_set``.

        Returns:
            Relative POSIX paths of the copied files, in walk order.
        """
        ...

    def ensure_dir(self, path: Path) -> None: ...

    def remove_tree(self, path: Path) -> None:
        """Remove a directory tree; a missing directory is not an error."""
        ...

    def atomic_replace(self, path: Path, data: bytes) -> None: ...


class LocalFilesystem:
    """Filesystem surface backed by the host filesystem."""

    __slots__ = ()

    def copy_matching(
        self, source: Path, destination: Path, pattern_set: ConfigPatternSet
    ) -> list[str]:
        copied: list[str] = []
        source = Path(source)
        destination = Path(destination)

        def _raise(err: OSError) -> None:
            raise err

        try:
            for dirpath, dirnames, filenames in os.walk(source, onerror=_raise):
                base = Path(dirpath).relative_to(source)
                # Prune in place so os.walk never descends into them
                dirnames[:] = sorted(
                    d for d in dirnames if not pattern_set.prunes_directory(base / d)
                )
                for name in sorted(filenames):
                    relative = base / name
                    if not pattern_set.is_selected(relative):
                        continue
                    target = destination / relative
                    target.parent.mkdir(parents=True, exist_ok=True)
                    shutil.copy2(Path(dirpath) / name, target, follow_symlinks=False)
                    copied.append(relative.as_posix())
        except OSError as e:
            raise StorageIOError(
                f"Failed to copy configuration files ({e.strerror or e})",
                e.filename or source,
            ) from e
        return copied

    def ensure_dir(self, path: Path) -> None:
        try:
            Path(path).mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageIOError(f"Failed to create directory ({e.strerror or e})", path) from e

    def remove_tree(self, path: Path) -> None:
        path = Path(path)
        try:
            if path.is_symlink() or path.is_file():
                path.unlink()
            elif path.exists():
                shutil.rmtree(path)
        except OSError as e:
            raise StorageIOError(f"Failed to remove directory ({e.strerror or e})", path) from e

    def atomic_replace(self, path: Path, data: bytes) -> None:
        try:
            atomic_write(Path(path), data)
        except OSError as e:
            raise StorageIOError(f"Failed to write file ({e.strerror or e})", path) from e
