"""Process-safe persistence of one serialized table per file.

Read-modify-write cycles run under an advisory lock on ``<file>.lock``;
every write is tmp + fsync + rename, so lock-free readers only ever observe a
complete table.
"""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path

import msgspec

from .errors import IntegrityError, StorageIOError
from .fs import atomic_write
from .locking import repo_lock


class TableStore[T: msgspec.Struct]:
    """Lock-serialized, atomically replaced msgspec table."""

    __slots__ = ("_decoder", "_lock_path", "_lock_timeout", "_type", "path")

    def __init__(self, path: Path, table_type: type[T], lock_timeout: float) -> None:
        self.path = Path(path)
        self._type = table_type
        self._decoder = msgspec.json.Decoder(table_type)
        self._lock_path = self.path.with_name(self.path.name + ".lock")
        self._lock_timeout = lock_timeout

    def _with_lock[R](self, fn: Callable[[], R]) -> R:
        """Execute fn while holding exclusive lock on the table."""
        with repo_lock(self._lock_path, self._lock_timeout):
            return fn()

    def _load_unlocked(self) -> T:
        """Load table from disk. A missing file is an empty table."""
        try:
            raw = self.path.read_bytes()
        except FileNotFoundError:
            return self._type()
        except OSError as e:
            raise StorageIOError(f"Failed to read {self._type.__name__}", self.path) from e

        if not raw.strip():
            return self._type()
        try:
            return self._decoder.decode(raw)
        except msgspec.DecodeError as e:
            raise IntegrityError(
                f"Corrupt {self._type.__name__} table at {self.path}: {e}",
                remediation="Inspect the file; removing it forgets the stored entries.",
            ) from e

    def _save_unlocked(self, table: T) -> None:
        try:
            atomic_write(self.path, msgspec.json.format(msgspec.json.encode(table), indent=2))
        except OSError as e:
            raise StorageIOError(f"Failed to write {self._type.__name__}", self.path) from e

    def read(self) -> T:
        """Snapshot of the current table (no lock needed, writes are atomic)."""
        return self._load_unlocked()

    def mutate[R](self, fn: Callable[[T], tuple[T | None, R]]) -> R:
        """Atomically apply ``fn`` to the table.

        ``fn`` returns ``(new_table, result)``; a ``None`` table means
        "unchanged" and skips the write.
        """

        def _do_mutate() -> R:
            table = self._load_unlocked()
            new_table, result = fn(table)
            if new_table is not None:
                self._save_unlocked(new_table)
            return result

        return self._with_lock(_do_mutate)
