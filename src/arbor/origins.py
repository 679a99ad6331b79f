"""Origin Tracker: worktree path -> repository it was created from.

Stored as a plain keyed association, never as an in-memory back-pointer.
Absence of a record is a normal state for worktrees created before origin
tracking existed.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Final

import msgspec
from msgspec import Struct, field

from .context import META_DIRNAME, RepoContext
from .store import TableStore

logger = logging.getLogger(__name__)

ORIGINS_FILENAME: Final[str] = "origins.json"


class OriginRecord(Struct, frozen=True):
    worktree_path: str
    origin_repository_path: str


class OriginTable(Struct, forbid_unknown_fields=True):
    origins: dict[str, str] = field(default_factory=dict)


def _key(worktree_path: Path | str) -> str:
    return str(Path(worktree_path).resolve())


class OriginStore:
    __slots__ = ("_store",)

    def __init__(self, ctx: RepoContext) -> None:
        self._store: TableStore[OriginTable] = TableStore(
            ctx.metadata_dir / ORIGINS_FILENAME, OriginTable, ctx.lock_timeout
        )

    def record(self, worktree_path: Path, origin_repository_path: Path) -> None:
        key = _key(worktree_path)
        origin = str(Path(origin_repository_path).resolve())

        def _do_record(table: OriginTable) -> tuple[OriginTable | None, None]:
            if table.origins.get(key) == origin:
                return None, None
            return OriginTable(origins={**table.origins, key: origin}), None

        self._store.mutate(_do_record)

    def get(self, worktree_path: Path) -> str | None:
        return self._store.read().origins.get(_key(worktree_path))

    def remove(self, worktree_path: Path) -> bool:
        """Delete the record. No-op (False) when absent."""
        key = _key(worktree_path)

        def _do_remove(table: OriginTable) -> tuple[OriginTable | None, bool]:
            if key not in table.origins:
                return None, False
            remaining = {k: v for k, v in table.origins.items() if k != key}
            return OriginTable(origins=remaining), True

        return self._store.mutate(_do_remove)

    def records(self) -> list[OriginRecord]:
        return [
            OriginRecord(worktree_path=k, origin_repository_path=v)
            for k, v in sorted(self._store.read().origins.items())
        ]


def find_origin(storage_root: Path, worktree_path: Path) -> tuple[Path, str | None] | None:
    """Locate the origin of a worktree directory without knowing its repository.

    ``worktree_path`` may be any path inside a worktree. Every repository
    sharing the display name is searched, since several may store metadata
    under the same ``<root>/<display>/``.

    Returns:
        None if the path is not inside a worktree under ``storage_root``;
        otherwise (worktree directory, origin path or None when unrecorded).
    """
    root = Path(storage_root).resolve()
    try:
        relative = Path(worktree_path).resolve().relative_to(root)
    except ValueError:
        return None

    parts = relative.parts
    if len(parts) < 2 or parts[1] == META_DIRNAME:
        return None

    worktree_dir = root / parts[0] / parts[1]
    key = str(worktree_dir)
    meta_root = root / parts[0] / META_DIRNAME
    if meta_root.is_dir():
        for table_path in sorted(meta_root.glob(f"*/{ORIGINS_FILENAME}")):
            try:
                table = msgspec.json.decode(table_path.read_bytes(), type=OriginTable)
            except (OSError, msgspec.DecodeError) as e:
                # Another repository's unreadable table must not hide ours
                logger.warning("Skipping unreadable origin table %s: %s", table_path, e)
                continue
            if origin := table.origins.get(key):
                return worktree_dir, origin
    return worktree_dir, None
