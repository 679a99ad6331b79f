"""Read-only views over stored and live worktree state.

Target resolution for remove/sync-config, listings for ``arbor list``, the
VCS/index cross-reference behind ``arbor status``, name lookup for
``arbor jump`` and origin lookup for ``arbor back``. Nothing here mutates
state.
"""

from __future__ import annotations

import logging
from pathlib import Path

import msgspec
from msgspec import Struct, field

from .context import META_DIRNAME, RepoContext
from .errors import NotFoundError, PreconditionError
from .index import INDEX_FILENAME, BranchMapping, BranchPathIndex, IndexTable
from .managed import ManagedBranchTracker
from .origins import OriginStore, find_origin
from .sanitize import sanitize
from .vcs import VcsSurface, WorktreeEntry

logger = logging.getLogger(__name__)


class Located(Struct, frozen=True):
    """A resolved remove/sync target inside this repository's namespace."""

    worktree_path: Path
    sanitized: str
    mapping: BranchMapping | None = None
    registered: bool = False


class WorktreeRecord(Struct, frozen=True):
    repository: str
    branch: str
    sanitized: str
    path: str
    exists: bool
    managed: bool = False
    origin: str | None = None
    mapped: bool = True


class StatusLine(Struct, frozen=True):
    path: str
    branch: str | None
    exists: bool
    registered: bool
    mapped: bool


class StatusReport(Struct, frozen=True):
    repository: str
    repository_path: str
    vcs_worktrees: list[StatusLine] = field(default_factory=list)
    managed_worktrees: list[StatusLine] = field(default_factory=list)

    @property
    def consistent(self) -> bool:
        lines = [*self.vcs_worktrees, *self.managed_worktrees]
        return all(line.exists and line.registered and line.mapped for line in lines)


def _same_path(a: Path | str, b: Path | str) -> bool:
    return Path(a).resolve() == Path(b).resolve()


def _registered(entries: list[WorktreeEntry], path: Path) -> WorktreeEntry | None:
    return next((e for e in entries if _same_path(e.path, path)), None)


class Inventory:
    """Queries for one repository."""

    __slots__ = ("ctx", "index", "origins", "tracker", "vcs")

    def __init__(self, ctx: RepoContext, vcs: VcsSurface) -> None:
        self.ctx = ctx
        self.vcs = vcs
        self.index = BranchPathIndex(ctx)
        self.tracker = ManagedBranchTracker(ctx)
        self.origins = OriginStore(ctx)

    def locate(self, target: str) -> Located:
        """Resolve a canonical name, sanitized name or absolute path to a worktree.

        Only worktrees this repository owns are returned: those mapped in its
        index or registered in its own worktree list. Precedence: absolute
        path, mapped canonical name, mapped sanitized name, then a registered
        worktree in our namespace by branch or directory name.

        Raises:
            PreconditionError: If an absolute path lies outside the namespace,
                or the matching directory belongs to no worktree of ours.
            NotFoundError: If nothing matches.
        """
        registered: dict[str, WorktreeEntry] = {}
        for entry in self.vcs.list_worktrees():
            sanitized = self.ctx.sanitized_from_path(Path(entry.path))
            if sanitized is not None:
                registered[sanitized] = entry

        target_path = Path(target)
        if target_path.is_absolute():
            sanitized = self.ctx.sanitized_from_path(target_path)
            if sanitized is None:
                raise PreconditionError(
                    f"Not a worktree managed for this repository: {target}",
                    remediation=f"Managed worktrees live under {self.ctx.repo_storage_dir}",
                )
            mapping = self.index.find_sanitized(sanitized)
            if mapping is None and sanitized not in registered:
                if not self.ctx.worktree_path(sanitized).exists():
                    raise NotFoundError(f"Worktree not found: {target}")
                raise self._unowned(sanitized)
            return Located(
                worktree_path=self.ctx.worktree_path(sanitized),
                sanitized=sanitized,
                mapping=mapping,
                registered=sanitized in registered,
            )

        mapping = self.index.get(target) or self.index.find_sanitized(target)
        if mapping is not None:
            return Located(
                worktree_path=self.ctx.worktree_path(mapping.sanitized),
                sanitized=mapping.sanitized,
                mapping=mapping,
                registered=mapping.sanitized in registered,
            )

        fallback = sanitize(target)
        candidates = [s for s, e in registered.items() if e.branch == target]
        candidates += [s for s in registered if s in (target, fallback)]
        if candidates:
            return Located(
                worktree_path=self.ctx.worktree_path(candidates[0]),
                sanitized=candidates[0],
                registered=True,
            )

        if self.ctx.worktree_path(fallback).exists():
            raise self._unowned(fallback)
        raise NotFoundError(f"No worktree found for '{target}'")

    def _unowned(self, sanitized: str) -> PreconditionError:
        return PreconditionError(
            f"{self.ctx.worktree_path(sanitized)} is not a worktree of this repository",
            remediation=(
                "Another repository with the same name may own it; "
                "run the command from that repository."
            ),
        )

    def list_worktrees(self) -> list[WorktreeRecord]:
        """Mapped worktrees of this repository plus unmapped ones git knows in our namespace."""
        managed = self.tracker.branches()
        records: list[WorktreeRecord] = []
        seen: set[str] = set()

        for mapping in self.index.entries():
            path = self.ctx.worktree_path(mapping.sanitized)
            seen.add(mapping.sanitized)
            records.append(
                WorktreeRecord(
                    repository=self.ctx.display_name,
                    branch=mapping.canonical,
                    sanitized=mapping.sanitized,
                    path=str(path),
                    exists=path.is_dir(),
                    managed=mapping.canonical in managed,
                    origin=self.origins.get(path),
                )
            )

        for entry in self.vcs.list_worktrees():
            sanitized = self.ctx.sanitized_from_path(Path(entry.path))
            if sanitized is None or sanitized in seen:
                continue
            seen.add(sanitized)
            path = self.ctx.worktree_path(sanitized)
            records.append(
                WorktreeRecord(
                    repository=self.ctx.display_name,
                    branch=entry.branch or sanitized,
                    sanitized=sanitized,
                    path=str(path),
                    exists=path.is_dir(),
                    managed=entry.branch in managed if entry.branch else False,
                    origin=self.origins.get(path),
                    mapped=False,
                )
            )

        return sorted(records, key=lambda r: r.branch)

    def status(self) -> StatusReport:
        entries = self.vcs.list_worktrees()
        mappings = self.index.entries()
        mapped_paths = {str(self.ctx.worktree_path(m.sanitized).resolve()) for m in mappings}

        vcs_lines = [
            StatusLine(
                path=e.path,
                branch=e.branch,
                exists=Path(e.path).is_dir(),
                registered=True,
                # The main checkout is never mapped and is not an inconsistency
                mapped=i == 0 or str(Path(e.path).resolve()) in mapped_paths,
            )
            for i, e in enumerate(entries)
        ]
        managed_lines = [
            StatusLine(
                path=str(path),
                branch=m.canonical,
                exists=path.is_dir(),
                registered=_registered(entries, path) is not None,
                mapped=True,
            )
            for m in mappings
            if (path := self.ctx.worktree_path(m.sanitized))
        ]
        return StatusReport(
            repository=self.ctx.display_name,
            repository_path=str(self.ctx.repo_path),
            vcs_worktrees=vcs_lines,
            managed_worktrees=managed_lines,
        )

    def find(self, target: str) -> WorktreeRecord:
        return match_worktree([r for r in self.list_worktrees() if r.exists], target)


def match_worktree(records: list[WorktreeRecord], target: str) -> WorktreeRecord:
    """Exact branch-name match first, then a unique substring match.

    Raises:
        NotFoundError: If nothing matches.
        PreconditionError: If the substring matches several worktrees.
    """
    for record in records:
        if record.branch == target:
            return record

    matches = [r for r in records if target in r.branch]
    if not matches:
        raise NotFoundError(f"No worktree found matching '{target}'")
    if len(matches) > 1:
        listing = "\n".join(f"  {r.repository}/{r.branch}" for r in matches)
        raise PreconditionError(
            f"Ambiguous worktree name '{target}'",
            remediation=f"Multiple worktrees match; be more specific:\n{listing}",
        )
    return matches[0]


def list_all_worktrees(storage_root: Path) -> list[WorktreeRecord]:
    """Every worktree under the storage root, across repositories.

    Reads each repository's index table directly, so it needs no VCS access.
    Directories no index claims are listed under their directory name; an
    unreadable index is skipped with a warning.
    """
    root = Path(storage_root).resolve()
    if not root.is_dir():
        return []

    records: list[WorktreeRecord] = []
    for repo_dir in sorted(p for p in root.iterdir() if p.is_dir() and not p.name.startswith(".")):
        claimed: set[str] = set()
        for table_path in sorted((repo_dir / META_DIRNAME).glob(f"*/{INDEX_FILENAME}")):
            try:
                table = msgspec.json.decode(table_path.read_bytes(), type=IndexTable)
            except (OSError, msgspec.DecodeError) as e:
                logger.warning("Skipping unreadable branch index %s: %s", table_path, e)
                continue
            for mapping in table.entries:
                path = repo_dir / mapping.sanitized
                claimed.add(mapping.sanitized)
                records.append(
                    WorktreeRecord(
                        repository=repo_dir.name,
                        branch=mapping.canonical,
                        sanitized=mapping.sanitized,
                        path=str(path),
                        exists=path.is_dir(),
                    )
                )
        for child in sorted(repo_dir.iterdir()):
            if child.is_dir() and not child.name.startswith(".") and child.name not in claimed:
                records.append(
                    WorktreeRecord(
                        repository=repo_dir.name,
                        branch=child.name,
                        sanitized=child.name,
                        path=str(child),
                        exists=True,
                        mapped=False,
                    )
                )
    return records


def origin_of(storage_root: Path, cwd: Path) -> Path:
    """Origin repository of the worktree containing ``cwd`` (``arbor back``).

    Raises:
        PreconditionError: If ``cwd`` is not inside a managed worktree.
        NotFoundError: If no origin was recorded, or it no longer exists.
    """
    found = find_origin(storage_root, cwd)
    if found is None:
        raise PreconditionError(
            "Not currently in a worktree directory managed by this tool.",
            remediation="'arbor back' only works from within worktrees created by 'arbor create'.",
        )
    worktree_dir, origin = found
    if origin is None:
        raise NotFoundError(
            f"No origin information recorded for {worktree_dir}",
            remediation="This worktree may have been created before origin tracking existed.",
        )
    origin_path = Path(origin)
    if not origin_path.is_dir():
        raise NotFoundError(
            f"Origin repository no longer exists at: {origin}",
            remediation="The original repository may have been moved or deleted.",
        )
    return origin_path
