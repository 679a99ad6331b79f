"""Lifecycle Orchestrator: create and remove worktrees as all-or-nothing sequences.

Creation is a saga. Each step that changes durable state pushes a
compensation; when a later step fails the compensations run in reverse
order. If any of them fails too, the caller gets RollbackIncompleteError
listing exactly what was left behind.

Removal resolves the branch from the worktree's own HEAD before trusting the
stored mapping, removes the directory, deletes the branch only when this
tool created it (unless forced), and always clears the mapping and origin.
It only touches worktrees this repository maps or has registered.

Both sequences run under the repository's operation lock, so at most one
create/remove/cleanup is in flight per repository.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from enum import Enum
from pathlib import Path

from msgspec import Struct, field

from .context import RepoContext
from .errors import (
    ArborError,
    BranchExistsError,
    ConflictError,
    IntegrityError,
    NotFoundError,
    PreconditionError,
    ReferenceNotFoundError,
    RollbackIncompleteError,
    StorageIOError,
    UnsafeOperationError,
    VcsCommandError,
)
from .fs import FilesystemSurface, LocalFilesystem
from .index import BranchPathIndex
from .inventory import Inventory, Located
from .journal import JOURNAL_FILENAME, OperationJournal
from .locking import repo_lock
from .managed import ManagedBranchTracker
from .origins import OriginStore
from .patterns import load_pattern_set
from .vcs import VcsSurface

logger = logging.getLogger(__name__)


class CreateMode(str, Enum):
    SMART = "smart"
    NEW_BRANCH = "new-branch"
    EXISTING_BRANCH = "existing-branch"


class BranchPolicy(str, Enum):
    """What removal does with the worktree's branch."""

    MANAGED_ONLY = "managed-only"
    FORCE_DELETE = "force-delete"
    KEEP = "keep"


class CreationResult(Struct, frozen=True):
    branch: str
    sanitized: str
    worktree_path: str
    created_branch: bool
    copied_files: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


class RemovalResult(Struct, frozen=True):
    worktree_path: str
    branch: str | None
    branch_source: str | None
    branch_deleted: bool
    warnings: list[str] = field(default_factory=list)


class _Saga:
    """Compensation stack for one creation attempt."""

    __slots__ = ("_steps",)

    def __init__(self) -> None:
        self._steps: list[tuple[str, Callable[[], object]]] = []

    def push(self, leftover: str, undo: Callable[[], object]) -> None:
        self._steps.append((leftover, undo))

    def compensate(self) -> list[str]:
        """Run every compensation newest-first; return what could not be undone."""
        leftovers: list[str] = []
        while self._steps:
            leftover, undo = self._steps.pop()
            try:
                undo()
            except (ArborError, OSError) as e:
                logger.error("Rollback step failed, leaving %s: %s", leftover, e)
                leftovers.append(leftover)
        leftovers.reverse()
        return leftovers


class LifecycleOrchestrator:
    """Composes index, tracker, origin store, VCS and filesystem for one repository."""

    __slots__ = ("ctx", "filesystem", "index", "inventory", "journal", "origins", "tracker", "vcs")

    def __init__(
        self,
        ctx: RepoContext,
        vcs: VcsSurface,
        filesystem: FilesystemSurface | None = None,
        journal: OperationJournal | None = None,
    ) -> None:
        self.ctx = ctx
        self.vcs = vcs
        self.filesystem: FilesystemSurface = filesystem or LocalFilesystem()
        self.index = BranchPathIndex(ctx)
        self.tracker = ManagedBranchTracker(ctx)
        self.origins = OriginStore(ctx)
        self.inventory = Inventory(ctx, vcs)
        self.journal = journal or OperationJournal(ctx.metadata_dir / JOURNAL_FILENAME)

    # ------------------------------------------------------------------ create

    def create(
        self,
        branch: str,
        mode: CreateMode = CreateMode.SMART,
        start_point: str | None = None,
    ) -> CreationResult:
        """Create a worktree (and, depending on ``mode``, its branch).

        Raises:
            PreconditionError: Mode conflicts with the branch's existence, the
                worktree already exists, or the branch is checked out elsewhere.
            ConflictError: Another process created the branch concurrently.
            RollbackIncompleteError: A step failed and undoing it failed too.
        """
        with repo_lock(self.ctx.operation_lock_path, self.ctx.lock_timeout):
            saga = _Saga()
            try:
                result = self._create_steps(branch, mode, start_point, saga)
            except (Exception, KeyboardInterrupt) as e:
                leftovers = saga.compensate()
                self.journal.log(
                    "create_failed", branch=branch, error=str(e), leftovers=leftovers
                )
                if leftovers:
                    raise RollbackIncompleteError(e, leftovers) from e
                raise
        self.journal.log(
            "create",
            branch=result.branch,
            path=result.worktree_path,
            created_branch=result.created_branch,
            copied=len(result.copied_files),
        )
        logger.info("Created worktree for %s at %s", result.branch, result.worktree_path)
        return result

    def _check_mode(self, branch: str, mode: CreateMode, start_point: str | None) -> bool:
        """Validate the request; return whether the branch must be created."""
        self.vcs.validate_branch_name(branch)
        exists = self.vcs.branch_exists(branch)

        if mode is CreateMode.NEW_BRANCH and exists:
            raise PreconditionError(
                f"Branch '{branch}' already exists",
                remediation=f"Use --existing-branch to create a worktree for '{branch}'.",
            )
        if mode is CreateMode.EXISTING_BRANCH and not exists:
            raise PreconditionError(
                f"Branch '{branch}' does not exist",
                remediation="Use --new-branch to create it, or omit the flag.",
            )
        if exists and start_point:
            raise PreconditionError(
                f"Branch '{branch}' already exists; --from only applies to new branches",
                remediation="Omit --from to check out the existing branch.",
            )
        return not exists

    def _create_steps(
        self, branch: str, mode: CreateMode, start_point: str | None, saga: _Saga
    ) -> CreationResult:
        create_branch = self._check_mode(branch, mode, start_point)

        mapping = self.index.get(branch)
        if mapping is not None and self.ctx.worktree_path(mapping.sanitized).exists():
            raise PreconditionError(
                f"Worktree for '{branch}' already exists at "
                f"{self.ctx.worktree_path(mapping.sanitized)}",
                remediation=f"Use 'arbor jump {branch}' to go there.",
            )

        if create_branch:
            try:
                self.vcs.create_branch(branch, start_point)
            except BranchExistsError as e:
                raise ConflictError(
                    f"Branch '{branch}' was created by another process during this operation",
                    remediation="Retry with --existing-branch if you want to use it.",
                ) from e
            saga.push(
                f"branch '{branch}' (git branch -D {branch})",
                lambda: self.vcs.delete_branch(branch),
            )

        allocation = self.index.allocate(branch)
        if allocation.created:
            saga.push(
                f"branch-index entry for '{branch}' in {self.index.path}",
                lambda: self.index.remove(branch),
            )
        target = self.ctx.worktree_path(allocation.sanitized)

        self.filesystem.ensure_dir(target.parent)
        self.vcs.create_worktree(branch, target)
        saga.push(
            f"worktree at {target} (git worktree remove --force {target})",
            lambda: self._discard_worktree(target),
        )

        warnings: list[str] = []
        try:
            self.vcs.inherit_config(target)
        except ArborError as e:
            logger.warning("Could not inherit git config into %s: %s", target, e)
            warnings.append(f"git config not inherited: {e.message}")

        self.origins.record(target, self.ctx.repo_path)
        saga.push(
            f"origin record for {target}",
            lambda: self.origins.remove(target),
        )

        if create_branch:
            self.tracker.mark(branch)
            saga.push(
                f"managed-branch marker for '{branch}'",
                lambda: self.tracker.unmark(branch),
            )

        try:
            pattern_set = load_pattern_set(self.ctx.repo_path)
        except OSError as e:
            raise StorageIOError("Failed to read copy-pattern overrides", self.ctx.repo_path) from e
        copied = self.filesystem.copy_matching(self.ctx.repo_path, target, pattern_set)
        if copied:
            logger.info("Copied %d configuration file(s) into %s", len(copied), target)

        return CreationResult(
            branch=branch,
            sanitized=allocation.sanitized,
            worktree_path=str(target),
            created_branch=create_branch,
            copied_files=copied,
            warnings=warnings,
        )

    def _is_registered(self, path: Path) -> bool:
        resolved = path.resolve()
        return any(Path(e.path).resolve() == resolved for e in self.vcs.list_worktrees())

    def _discard_worktree(self, target: Path) -> None:
        try:
            self.vcs.remove_worktree(target)
        except ReferenceNotFoundError:
            pass
        self.filesystem.remove_tree(target)
        if self._is_registered(target):
            self.vcs.prune_worktree_reference(target)

    # ------------------------------------------------------------------ remove

    def remove(
        self, target: str, policy: BranchPolicy = BranchPolicy.MANAGED_ONLY
    ) -> RemovalResult:
        """Remove a worktree and, per ``policy``, its branch.

        ``target`` is a canonical branch name, a sanitized directory name or
        an absolute worktree path.

        Raises:
            NotFoundError: If nothing in this repository matches ``target``.
        """
        with repo_lock(self.ctx.operation_lock_path, self.ctx.lock_timeout):
            located = self.inventory.locate(target)
            result = self._remove_located(located, policy)
        self.journal.log(
            "remove",
            path=result.worktree_path,
            branch=result.branch,
            source=result.branch_source,
            branch_deleted=result.branch_deleted,
        )
        return result

    def _resolve_branch(self, located: Located) -> tuple[str | None, str | None]:
        """The worktree's branch and where it came from: ``"head"`` or ``"mapping"``.

        HEAD is read only from worktrees registered with this repository; the
        caller has already refused checkouts of other repositories.
        """
        head = None
        if located.registered:
            head = self.vcs.resolve_head_branch(located.worktree_path)
        mapped = located.mapping.canonical if located.mapping else None
        if head is not None:
            if mapped is not None and mapped != head:
                logger.warning(
                    "Worktree %s has '%s' checked out but is mapped to '%s'; using '%s'",
                    located.worktree_path,
                    head,
                    mapped,
                    head,
                )
            return head, "head"
        if mapped is not None:
            return mapped, "mapping"
        return None, None

    def _remove_located(self, located: Located, policy: BranchPolicy) -> RemovalResult:
        path = located.worktree_path
        warnings: list[str] = []

        if located.mapping is None and not located.registered:
            raise NotFoundError(f"Worktree not found: {path}")
        if path.exists() and self.vcs.is_foreign_checkout(path):
            raise PreconditionError(
                f"{path} is checked out from another repository; not removed",
                remediation="Run 'arbor remove' from the repository that owns it.",
            )

        branch, source = self._resolve_branch(located)
        if branch is None:
            problem = IntegrityError(
                f"Could not determine the branch of {path}; branch left untouched",
                remediation="Delete the branch with 'git branch -D' if it is no longer needed.",
            )
            logger.warning("%s", problem.message)
            warnings.append(str(problem))

        registered = located.registered
        if path.exists():
            if registered:
                try:
                    self.vcs.remove_worktree(path)
                    registered = False
                except (ReferenceNotFoundError, VcsCommandError) as e:
                    # Damaged worktrees (missing .git) are refused by git; delete by hand
                    logger.warning("git could not remove %s, deleting directory: %s", path, e)
            self.filesystem.remove_tree(path)
            if registered:
                self.vcs.prune_worktree_reference(path)
        elif registered:
            self.vcs.prune_worktree_reference(path)
        logger.info("Removed worktree %s", path)

        deleted = False
        if branch is not None:
            deleted, warning = self._dispose_branch(branch, policy)
            if warning:
                warnings.append(warning)

        if located.mapping is not None:
            self.index.remove(located.mapping.canonical)
        self.origins.remove(path)

        return RemovalResult(
            worktree_path=str(path),
            branch=branch,
            branch_source=source,
            branch_deleted=deleted,
            warnings=warnings,
        )

    def _dispose_branch(self, branch: str, policy: BranchPolicy) -> tuple[bool, str | None]:
        """Apply ``policy`` to ``branch``; return (deleted, warning)."""
        managed = self.tracker.is_managed(branch)

        if policy is BranchPolicy.KEEP:
            if managed:
                # Unmarked so cleanup never deletes a branch the user chose to keep
                self.tracker.unmark(branch)
            return False, None

        if policy is BranchPolicy.MANAGED_ONLY and not managed:
            unsafe = UnsafeOperationError(
                f"Branch '{branch}' was not created by arbor; kept",
                remediation="Pass --force-delete-branch to delete it anyway.",
            )
            logger.info("%s", unsafe.message)
            return False, str(unsafe)

        if not self.vcs.branch_exists(branch):
            self.tracker.unmark(branch)
            return False, None

        try:
            self.vcs.delete_branch(branch)
        except ArborError as e:
            logger.warning("Failed to delete branch %s: %s", branch, e)
            return False, f"branch '{branch}' not deleted: {e.message}"
        self.tracker.unmark(branch)
        logger.info("Deleted branch %s", branch)
        return True, None

    # ------------------------------------------------------------- sync-config

    def sync_config(self, source: str, destination: str) -> list[str]:
        """Copy configuration files between two worktrees of this repository.

        Either side may be ``"origin"`` for the main checkout. Files are
        selected with the same patterns as creation.
        """
        source_dir = self._sync_endpoint(source)
        destination_dir = self._sync_endpoint(destination)
        if source_dir.resolve() == destination_dir.resolve():
            raise PreconditionError("Source and destination are the same worktree")

        try:
            pattern_set = load_pattern_set(self.ctx.repo_path)
        except OSError as e:
            raise StorageIOError("Failed to read copy-pattern overrides", self.ctx.repo_path) from e
        copied = self.filesystem.copy_matching(source_dir, destination_dir, pattern_set)
        self.journal.log(
            "sync_config",
            source=str(source_dir),
            destination=str(destination_dir),
            copied=len(copied),
        )
        return copied

    def _sync_endpoint(self, target: str) -> Path:
        if target == "origin":
            return self.ctx.repo_path
        path = self.inventory.locate(target).worktree_path
        if not path.is_dir():
            raise NotFoundError(f"Worktree directory does not exist: {path}")
        return path
