"""Branch-Path Index: canonical branch name <-> sanitized directory name.

The index is one table per repository and is kept bijective: no two
entries share a canonical name and no two share a sanitized name.

Collision policy: when ``sanitize(name)`` is already taken, the index tries
``<base>-2``, ``<base>-3``, ... and takes the first candidate that is neither
mapped in this repository nor present as a directory in the shared
``<root>/<display>/`` namespace (another repository with the same display
name may own it). Allocation order therefore decides suffixes, and once
allocated a name never changes.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Final

from msgspec import Struct, field

from .context import META_DIRNAME, RepoContext
from .errors import ConflictError, IntegrityError, NotFoundError
from .sanitize import SUBSTITUTE, sanitize
from .store import TableStore

logger = logging.getLogger(__name__)

INDEX_FILENAME: Final[str] = "branch-index.json"
MAX_DISAMBIGUATION: Final[int] = 10_000


class BranchMapping(Struct, frozen=True, forbid_unknown_fields=True):
    canonical: str
    sanitized: str


class IndexTable(Struct, forbid_unknown_fields=True):
    repository: str = ""
    entries: list[BranchMapping] = field(default_factory=list)

    def by_canonical(self, canonical: str) -> BranchMapping | None:
        return next((e for e in self.entries if e.canonical == canonical), None)

    def by_sanitized(self, sanitized: str) -> BranchMapping | None:
        return next((e for e in self.entries if e.sanitized == sanitized), None)

    def validate(self) -> None:
        """Raise IntegrityError if the table is not a bijection."""
        canonicals = [e.canonical for e in self.entries]
        sanitized = [e.sanitized for e in self.entries]
        if len(set(canonicals)) != len(canonicals) or len(set(sanitized)) != len(sanitized):
            raise IntegrityError(
                "Branch index has duplicate entries; lookups would disagree",
                remediation="Run 'arbor cleanup' or remove the duplicated lines by hand.",
            )


class Allocation(Struct, frozen=True):
    """Result of resolving a canonical name. ``created`` is False for a reused mapping."""

    sanitized: str
    created: bool


class BranchPathIndex:
    """Persisted, process-safe mapping between branch names and directory names."""

    __slots__ = ("_ctx", "_store")

    def __init__(self, ctx: RepoContext) -> None:
        self._ctx = ctx
        self._store: TableStore[IndexTable] = TableStore(
            ctx.metadata_dir / INDEX_FILENAME, IndexTable, ctx.lock_timeout
        )

    @property
    def path(self) -> Path:
        return self._store.path

    def _read(self) -> IndexTable:
        table = self._store.read()
        table.validate()
        return table

    def _candidate_free(self, table: IndexTable, candidate: str) -> bool:
        if candidate == META_DIRNAME or table.by_sanitized(candidate) is not None:
            return False
        return not self._ctx.worktree_path(candidate).exists()

    def allocate(self, canonical: str) -> Allocation:  # Time: O(n*k), Space: O(n)
        """Return the existing mapping or allocate and persist a new one."""
        if not canonical:
            raise ValueError("Branch name cannot be empty")

        def _do_allocate(table: IndexTable) -> tuple[IndexTable | None, Allocation]:
            table.validate()
            if existing := table.by_canonical(canonical):
                return None, Allocation(sanitized=existing.sanitized, created=False)

            base = sanitize(canonical)
            candidate = base
            suffix = 1
            while not self._candidate_free(table, candidate):
                suffix += 1
                if suffix > MAX_DISAMBIGUATION:
                    raise ConflictError(
                        f"Could not allocate a directory name for '{canonical}' "
                        f"({MAX_DISAMBIGUATION} candidates taken)"
                    )
                candidate = f"{base}{SUBSTITUTE}{suffix}"

            if candidate != base:
                logger.debug("Sanitized name %r taken; using %r for %r", base, candidate, canonical)

            new_table = IndexTable(
                repository=str(self._ctx.repo_path),
                entries=[*table.entries, BranchMapping(canonical=canonical, sanitized=candidate)],
            )
            return new_table, Allocation(sanitized=candidate, created=True)

        return self._store.mutate(_do_allocate)

    def resolve_sanitized(self, canonical: str) -> str:
        """Idempotent: the same canonical name always yields the same directory name."""
        return self.allocate(canonical).sanitized

    def resolve_canonical(self, sanitized: str) -> str:
        """Reverse lookup.

        Raises:
            NotFoundError: If no branch is mapped to ``sanitized``.
        """
        mapping = self._read().by_sanitized(sanitized)
        if mapping is None:
            raise NotFoundError(f"No branch mapped to directory '{sanitized}'")
        return mapping.canonical

    def get(self, canonical: str) -> BranchMapping | None:
        return self._read().by_canonical(canonical)

    def find_sanitized(self, sanitized: str) -> BranchMapping | None:
        return self._read().by_sanitized(sanitized)

    def entries(self) -> list[BranchMapping]:
        return list(self._read().entries)

    def remove(self, canonical: str) -> bool:
        """Delete the mapping for ``canonical``. No-op (False) when absent."""

        def _do_remove(table: IndexTable) -> tuple[IndexTable | None, bool]:
            remaining = [e for e in table.entries if e.canonical != canonical]
            if len(remaining) == len(table.entries):
                return None, False
            return IndexTable(repository=table.repository, entries=remaining), True

        return self._store.mutate(_do_remove)
