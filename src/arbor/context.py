"""Repository-scoped context passed explicitly through every operation.

One RepoContext is built per command invocation. It pins the repository
identity (symlink-resolved root), the storage root and the per-repository
metadata directory so no module consults ambient global state.
"""

from __future__ import annotations

import hashlib
import os
from pathlib import Path
from typing import Final

STORAGE_ROOT_ENV: Final[str] = "WORKTREE_STORAGE_ROOT"
LOCK_TIMEOUT_ENV: Final[str] = "ARBOR_LOCK_TIMEOUT"
DEFAULT_LOCK_TIMEOUT: Final[float] = 10.0
META_DIRNAME: Final[str] = ".meta"


def get_storage_root() -> Path:
    """Get storage root, respecting WORKTREE_STORAGE_ROOT env var."""
    env_path = os.getenv(STORAGE_ROOT_ENV)
    if env_path:
        return Path(env_path).expanduser()
    return Path.home() / ".worktrees"


def get_lock_timeout() -> float:
    try:
        return float(os.getenv(LOCK_TIMEOUT_ENV, DEFAULT_LOCK_TIMEOUT))
    except (TypeError, ValueError):
        return DEFAULT_LOCK_TIMEOUT


def repo_key_for(repo_path: Path) -> str:
    """Compute the stable identity key for a repository (no I/O besides resolve)."""
    return hashlib.sha256(str(repo_path.resolve()).encode()).hexdigest()[:16]


class RepoContext:
    """Identity and storage locations for one repository."""

    __slots__ = ("display_name", "lock_timeout", "repo_key", "repo_path", "storage_root")

    def __init__(
        self,
        repo_path: Path,
        storage_root: Path | None = None,
        *,
        lock_timeout: float | None = None,
    ) -> None:
        self.repo_path: Final[Path] = Path(repo_path).resolve()
        if not self.repo_path.name:
            raise ValueError(f"Could not determine repository name from path: {repo_path}")
        root = Path(storage_root) if storage_root is not None else get_storage_root()
        root.mkdir(parents=True, exist_ok=True)
        self.storage_root: Final[Path] = root.resolve()
        self.display_name: Final[str] = self.repo_path.name
        self.repo_key: Final[str] = repo_key_for(self.repo_path)
        self.lock_timeout: Final[float] = (
            lock_timeout if lock_timeout is not None else get_lock_timeout()
        )

    def __repr__(self) -> str:
        return f"RepoContext({self.repo_path!s}, key={self.repo_key})"

    @property
    def repo_storage_dir(self) -> Path:
        """``<root>/<display>/`` - shared by every repository with this display name."""
        return self.storage_root / self.display_name

    @property
    def metadata_dir(self) -> Path:
        """Per-repository metadata, namespaced by identity rather than display name."""
        return self.repo_storage_dir / META_DIRNAME / self.repo_key

    @property
    def operation_lock_path(self) -> Path:
        return self.metadata_dir / "operation.lock"

    def worktree_path(self, sanitized_name: str) -> Path:
        return self.repo_storage_dir / sanitized_name

    def sanitized_from_path(self, path: Path) -> str | None:
        """Sanitized segment when ``path`` lies in this repository's worktree namespace."""
        try:
            relative = Path(path).resolve().relative_to(self.repo_storage_dir)
        except ValueError:
            return None
        parts = relative.parts
        if not parts or parts[0] == META_DIRNAME:
            return None
        return parts[0]
