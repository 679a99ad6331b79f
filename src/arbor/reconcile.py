"""Consistency Reconciler: repair drift between VCS, storage and metadata.

Three views are compared: git's worktree references and branches, the
directories under the storage root, and the index/marker/origin tables.
Repairs run in dependency order (stale references first, then mappings and
origins, then branches, then markers) so each stage sees the previous
stage's result. A failure on one item is recorded and the run moves on;
only failing to read a view at all aborts the run.

A branch is deleted only when it carries a managed marker, has no worktree
anywhere, is not checked out, and is not a protected branch.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Final

from msgspec import Struct, field

from .context import RepoContext
from .errors import ArborError
from .index import BranchPathIndex
from .journal import JOURNAL_FILENAME, OperationJournal
from .locking import repo_lock
from .managed import ManagedBranchTracker
from .origins import OriginStore
from .vcs import VcsSurface, WorktreeEntry

logger = logging.getLogger(__name__)

PROTECTED_BRANCHES: Final[frozenset[str]] = frozenset({"main", "master"})


class ReconcileFailure(Struct, frozen=True):
    action: str
    subject: str
    error: str


class ReconcileReport(Struct):
    pruned_references: list[str] = field(default_factory=list)
    removed_mappings: list[str] = field(default_factory=list)
    removed_origins: list[str] = field(default_factory=list)
    deleted_branches: list[str] = field(default_factory=list)
    unmarked_branches: list[str] = field(default_factory=list)
    skipped_unmanaged: list[str] = field(default_factory=list)
    failures: list[ReconcileFailure] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures

    @property
    def changed(self) -> bool:
        return any(
            (
                self.pruned_references,
                self.removed_mappings,
                self.removed_origins,
                self.deleted_branches,
                self.unmarked_branches,
            )
        )


def _resolved(path: Path | str) -> str:
    return str(Path(path).resolve())


class Reconciler:
    __slots__ = ("ctx", "index", "journal", "origins", "tracker", "vcs")

    def __init__(
        self, ctx: RepoContext, vcs: VcsSurface, journal: OperationJournal | None = None
    ) -> None:
        self.ctx = ctx
        self.vcs = vcs
        self.index = BranchPathIndex(ctx)
        self.tracker = ManagedBranchTracker(ctx)
        self.origins = OriginStore(ctx)
        self.journal = journal or OperationJournal(ctx.metadata_dir / JOURNAL_FILENAME)

    def run(self) -> ReconcileReport:
        """Run a full reconciliation pass. Safe to repeat: a second run changes nothing."""
        report = ReconcileReport()
        with repo_lock(self.ctx.operation_lock_path, self.ctx.lock_timeout):
            worktrees = self._prune_stale_references(report)
            self._remove_orphan_metadata(worktrees, report)
            self._delete_orphan_branches(worktrees, report)
            self._unmark_missing_branches(report)

        self.journal.log(
            "cleanup",
            pruned=report.pruned_references,
            mappings=report.removed_mappings,
            branches=report.deleted_branches,
            unmarked=report.unmarked_branches,
            failures=len(report.failures),
        )
        for failure in report.failures:
            logger.warning(
                "Cleanup could not %s %s: %s", failure.action, failure.subject, failure.error
            )
        return report

    def _prune_stale_references(self, report: ReconcileReport) -> list[WorktreeEntry]:
        entries = self.vcs.list_worktrees()
        # The first entry is the main checkout and is never pruned
        for entry in entries[1:]:
            if entry.bare or Path(entry.path).exists():
                continue
            try:
                self.vcs.prune_worktree_reference(Path(entry.path))
            except ArborError as e:
                report.failures.append(ReconcileFailure("prune", entry.path, str(e)))
                continue
            logger.info("Pruned stale worktree reference %s", entry.path)
            report.pruned_references.append(entry.path)
        return self.vcs.list_worktrees() if report.pruned_references else entries

    def _remove_orphan_metadata(
        self, worktrees: list[WorktreeEntry], report: ReconcileReport
    ) -> None:
        registered = {_resolved(e.path) for e in worktrees}

        for mapping in self.index.entries():
            path = self.ctx.worktree_path(mapping.sanitized)
            if path.exists() or _resolved(path) in registered:
                continue
            try:
                self.index.remove(mapping.canonical)
                self.origins.remove(path)
            except ArborError as e:
                report.failures.append(
                    ReconcileFailure("remove mapping", mapping.canonical, str(e))
                )
                continue
            logger.info("Removed mapping %s -> %s", mapping.canonical, mapping.sanitized)
            report.removed_mappings.append(mapping.canonical)

        for record in self.origins.records():
            path = Path(record.worktree_path)
            if path.exists() or _resolved(path) in registered:
                continue
            try:
                self.origins.remove(path)
            except ArborError as e:
                report.failures.append(ReconcileFailure("remove origin", str(path), str(e)))
                continue
            report.removed_origins.append(str(path))

    def _delete_orphan_branches(
        self, worktrees: list[WorktreeEntry], report: ReconcileReport
    ) -> None:
        checked_out = {e.branch for e in worktrees if e.branch}
        found, unreadable = self.tracker.scan()
        for path, error in unreadable:
            report.failures.append(ReconcileFailure("read marker", str(path), str(error)))
        managed = {m.branch for m in found}
        with_directory = {
            m.canonical
            for m in self.index.entries()
            if self.ctx.worktree_path(m.sanitized).exists()
        }

        for branch in self.vcs.list_branches():
            if branch in checked_out or branch in with_directory or branch in PROTECTED_BRANCHES:
                continue
            if branch not in managed:
                report.skipped_unmanaged.append(branch)
                continue
            try:
                self.vcs.delete_branch(branch)
                self.tracker.unmark(branch)
            except ArborError as e:
                report.failures.append(ReconcileFailure("delete branch", branch, str(e)))
                continue
            logger.info("Deleted orphaned managed branch %s", branch)
            report.deleted_branches.append(branch)

    def _unmark_missing_branches(self, report: ReconcileReport) -> None:
        existing = set(self.vcs.list_branches())
        # Unreadable markers were already reported by the branch phase
        found, _ = self.tracker.scan()
        for branch in sorted({m.branch for m in found} - existing):
            try:
                self.tracker.unmark(branch)
            except ArborError as e:
                report.failures.append(ReconcileFailure("unmark", branch, str(e)))
                continue
            logger.info("Removed marker for missing branch %s", branch)
            report.unmarked_branches.append(branch)
