"""VCS surface: the version-control operations the engine consumes.

VcsSurface is the interface; GitVcs implements it over the git CLI through
run_git. Failures are classified into domain errors (branch exists,
reference not found, dirty worktree) from git's exit status and stderr,
never surfaced as raw process output.
"""

from __future__ import annotations

import logging
import subprocess
from pathlib import Path
from typing import Final, Protocol

from msgspec import Struct

from .errors import (
    BranchExistsError,
    DirtyWorktreeError,
    PreconditionError,
    ReferenceNotFoundError,
    VcsCommandError,
)
from .git import ensure_git_available, get_toplevel, run_git
from .runtime import CommandResult

logger = logging.getLogger(__name__)

_HEADS: Final[str] = "refs/heads/"

# Keys copied into a new worktree's config; everything else stays repository-local
_EXCLUDED_CONFIG_KEYS: Final[frozenset[str]] = frozenset(
    {"core.bare", "core.worktree", "core.repositoryformatversion", "extensions.worktreeconfig"}
)
_EXCLUDED_CONFIG_PREFIXES: Final[tuple[str, ...]] = ("branch.", "remote.", "submodule.")
_INHERITED_CONFIG_PREFIXES: Final[tuple[str, ...]] = (
    "user.",
    "commit.",
    "gpg.",
    "credential.",
    "push.",
    "pull.",
    "merge.",
    "diff.",
    "log.",
    "color.",
)
_INHERITED_CORE_KEYS: Final[frozenset[str]] = frozenset(
    {"core.editor", "core.pager", "core.autocrlf", "core.filemode", "init.defaultbranch"}
)


class WorktreeEntry(Struct, frozen=True):
    """One record of ``git worktree list --porcelain``."""

    path: str
    branch: str | None = None
    head: str | None = None
    bare: bool = False
    detached: bool = False
    prunable: bool = False


class VcsSurface(Protocol):
    """Protocol for the version-control operations of one repository."""

    def validate_branch_name(self, name: str) -> None: ...

    def branch_exists(self, name: str) -> bool: ...

    def create_branch(self, name: str, start_point: str | None = None) -> None: ...

    def list_branches(self) -> list[str]: ...

    def create_worktree(self, branch_name: str, target_path: Path) -> None: ...

    def remove_worktree(self, path: Path) -> None: ...

    def list_worktrees(self) -> list[WorktreeEntry]: ...

    def resolve_head_branch(self, worktree_path: Path) -> str | None: ...

    def is_foreign_checkout(self, path: Path) -> bool: ...

    def delete_branch(self, name: str) -> None: ...

    def prune_worktree_reference(self, path: Path) -> None: ...

    def inherit_config(self, worktree_path: Path) -> None: ...


def should_inherit_config_key(key: str) -> bool:
    """Decide whether a parent config key is copied into a worktree."""
    key = key.lower()
    if key in _EXCLUDED_CONFIG_KEYS or key.startswith(_EXCLUDED_CONFIG_PREFIXES):
        return False
    if key in _INHERITED_CORE_KEYS:
        return True
    if key.startswith("core."):
        return False
    return key.startswith(_INHERITED_CONFIG_PREFIXES)


def parse_worktree_porcelain(output: str) -> list[WorktreeEntry]:  # Time: O(n), Space: O(n)
    """Parse ``git worktree list --porcelain`` into entries (blank-line separated)."""
    entries: list[WorktreeEntry] = []
    current: dict[str, str | bool] = {}

    def _flush() -> None:
        if "path" in current:
            entries.append(WorktreeEntry(**current))  # type: ignore[arg-type]
        current.clear()

    for line in output.splitlines():
        if not line.strip():
            _flush()
            continue
        key, _, value = line.partition(" ")
        match key:
            case "worktree":
                _flush()
                current["path"] = value
            case "HEAD":
                current["head"] = value
            case "branch":
                current["branch"] = value.removeprefix(_HEADS)
            case "bare" | "detached" | "prunable":
                current[key] = True
            case _:
                pass
    _flush()
    return entries


class GitVcs:
    """VCS surface over the git CLI for the repository at ``repo_path``."""

    __slots__ = ("repo_path",)

    def __init__(self, repo_path: Path) -> None:
        self.repo_path: Final[Path] = Path(repo_path)

    def _run(
        self, args: list[str], *, read_only: bool = False, cwd: Path | None = None
    ) -> CommandResult:
        try:
            return run_git(args, cwd=str(cwd or self.repo_path), read_only=read_only)
        except subprocess.TimeoutExpired as e:
            raise VcsCommandError(args, -1, f"timed out after {e.timeout}s") from e

    @staticmethod
    def _failure(args: list[str], result: CommandResult) -> VcsCommandError:
        return VcsCommandError(args, result.returncode, result.failure_detail())

    @classmethod
    def discover(cls, cwd: Path) -> GitVcs:
        """Find the main repository for ``cwd``, even when run inside a linked worktree.

        Raises:
            PreconditionError: If ``cwd`` is not inside a git repository.
        """
        ensure_git_available()
        result = run_git(
            ["rev-parse", "--path-format=absolute", "--git-common-dir"],
            cwd=str(cwd),
            read_only=True,
        )
        if result.returncode != 0:
            raise PreconditionError(
                f"Not a git repository: {cwd}",
                remediation="Run this command from inside the repository you want to manage.",
            )
        common_dir = Path(result.stdout.strip())
        if common_dir.name == ".git":
            return cls(common_dir.parent.resolve())
        toplevel = get_toplevel(str(cwd))
        if toplevel is not None:
            return cls(Path(toplevel).resolve())
        return cls(common_dir.resolve())

    def validate_branch_name(self, name: str) -> None:
        if not name or name.startswith("-"):
            raise PreconditionError(f"Invalid branch name: {name!r}")
        result = self._run(["check-ref-format", "--branch", name], read_only=True)
        if result.returncode != 0:
            raise PreconditionError(
                f"Invalid branch name: {name!r}",
                remediation="See 'git check-ref-format --help' for the naming rules.",
            )

    def branch_exists(self, name: str) -> bool:
        args = ["show-ref", "--verify", "--quiet", f"{_HEADS}{name}"]
        result = self._run(args, read_only=True)
        if result.returncode == 0:
            return True
        if result.returncode == 1:
            return False
        raise self._failure(args, result)

    def create_branch(self, name: str, start_point: str | None = None) -> None:
        self.validate_branch_name(name)
        args = ["branch", name, *([start_point] if start_point else [])]
        result = self._run(args)
        if result.returncode == 0:
            return
        stderr = result.stderr.lower()
        if "already exists" in stderr:
            raise BranchExistsError(name)
        if start_point and ("not a valid" in stderr or "invalid reference" in stderr):
            raise ReferenceNotFoundError(start_point, result.stderr.strip())
        raise self._failure(args, result)

    def list_branches(self) -> list[str]:
        args = ["for-each-ref", "--format=%(refname)", _HEADS]
        result = self._run(args, read_only=True)
        if result.returncode != 0:
            raise self._failure(args, result)
        return [
            line.removeprefix(_HEADS)
            for line in result.stdout.splitlines()
            if line.startswith(_HEADS)
        ]

    def create_worktree(self, branch_name: str, target_path: Path) -> None:
        args = ["worktree", "add", str(target_path), branch_name]
        result = self._run(args)
        if result.returncode == 0:
            return
        stderr = result.stderr.lower()
        if "already checked out" in stderr or "already used by worktree" in stderr:
            raise PreconditionError(
                f"Branch '{branch_name}' is already checked out in another worktree",
                remediation=result.stderr.strip(),
            )
        if "already exists" in stderr:
            raise PreconditionError(f"Worktree path already exists: {target_path}")
        if "invalid reference" in stderr:
            raise ReferenceNotFoundError(branch_name, result.stderr.strip())
        raise self._failure(args, result)

    def remove_worktree(self, path: Path) -> None:
        args = ["worktree", "remove", "--force", str(path)]
        result = self._run(args)
        if result.returncode == 0:
            return
        stderr = result.stderr.lower()
        if "is not a working tree" in stderr or "not a working tree" in stderr:
            raise ReferenceNotFoundError(str(path), "not a registered worktree")
        if "modified or untracked" in stderr:
            raise DirtyWorktreeError(path)
        raise self._failure(args, result)

    def list_worktrees(self) -> list[WorktreeEntry]:
        args = ["worktree", "list", "--porcelain"]
        result = self._run(args, read_only=True)
        if result.returncode != 0:
            raise self._failure(args, result)
        return parse_worktree_porcelain(result.stdout)

    def resolve_head_branch(self, worktree_path: Path) -> str | None:
        """Branch checked out in ``worktree_path``, or None if detached/unknown.

        Asks the worktree itself first; if it is damaged (no ``.git`` entry),
        falls back to the repository's own worktree list, which git keeps
        independent of the directory contents.
        """
        worktree_path = Path(worktree_path)
        if (worktree_path / ".git").exists():
            result = self._run(
                ["symbolic-ref", "--quiet", "HEAD"], read_only=True, cwd=worktree_path
            )
            if result.returncode == 0 and result.stdout.strip().startswith(_HEADS):
                return result.stdout.strip().removeprefix(_HEADS)

        target = str(worktree_path.resolve())
        try:
            entries = self.list_worktrees()
        except VcsCommandError as e:
            logger.debug("Worktree list unavailable while resolving HEAD: %s", e)
            return None
        for entry in entries:
            if str(Path(entry.path).resolve()) == target:
                return entry.branch
        return None

    def common_dir(self) -> Path:
        args = ["rev-parse", "--path-format=absolute", "--git-common-dir"]
        result = self._run(args, read_only=True)
        if result.returncode != 0:
            raise self._failure(args, result)
        return Path(result.stdout.strip()).resolve()

    def is_foreign_checkout(self, path: Path) -> bool:
        """True when ``path`` holds a checkout that is not a worktree of this repository.

        Reads the ``.git`` entry directly instead of asking git, so a damaged
        worktree is never attributed to whatever repository encloses it. A
        directory with no ``.git`` entry is not foreign; one whose ``.git``
        cannot be read is.
        """
        dotgit = Path(path) / ".git"
        if dotgit.is_dir():
            return True
        if not dotgit.is_file():
            return False
        try:
            content = dotgit.read_text(errors="replace").strip()
        except OSError as e:
            logger.warning("Cannot read %s: %s", dotgit, e)
            return True
        if not content.startswith("gitdir:"):
            return True
        gitdir = Path(content.removeprefix("gitdir:").strip())
        if not gitdir.is_absolute():
            gitdir = dotgit.parent / gitdir
        return not gitdir.resolve().is_relative_to(self.common_dir())

    def delete_branch(self, name: str) -> None:
        args = ["branch", "-D", name]
        result = self._run(args)
        if result.returncode == 0:
            return
        stderr = result.stderr.lower()
        if "not found" in stderr:
            raise ReferenceNotFoundError(name)
        if "checked out" in stderr or "cannot delete" in stderr:
            raise PreconditionError(
                f"Branch '{name}' cannot be deleted: {result.stderr.strip()}"
            )
        raise self._failure(args, result)

    def prune_worktree_reference(self, path: Path) -> None:
        """Drop git's record of a worktree whose directory is gone."""
        args = ["worktree", "prune"]
        result = self._run(args)
        if result.returncode != 0:
            raise self._failure(args, result)
        target = str(Path(path).resolve())
        if any(str(Path(e.path).resolve()) == target for e in self.list_worktrees()):
            raise VcsCommandError(args, 0, f"reference to {path} survived prune (locked?)")

    def inherit_config(self, worktree_path: Path) -> None:
        """Copy the parent's user-level settings into worktree-specific config."""
        args = ["config", "extensions.worktreeConfig", "true"]
        result = self._run(args)
        if result.returncode != 0:
            raise self._failure(args, result)

        listing = self._run(["config", "--list", "-z"], read_only=True)
        if listing.returncode != 0:
            raise self._failure(["config", "--list", "-z"], listing)

        for item in listing.stdout.split("\0"):
            key, _, value = item.partition("\n")
            if not key or not should_inherit_config_key(key):
                continue
            set_args = ["config", "--worktree", key, value]
            try:
                set_result = self._run(set_args, cwd=Path(worktree_path))
            except ValueError as e:
                logger.warning("Skipping config %s: %s", key, e)
                continue
            if set_result.returncode != 0:
                logger.warning(
                    "Failed to set config %s in %s: %s",
                    key,
                    worktree_path,
                    set_result.stderr.strip(),
                )
