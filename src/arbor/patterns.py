"""Copy-pattern resolution for files that travel with a new worktree.

Merges the shipped defaults with the repository-local override file into an
ordered, provenance-tagged ConfigPatternSet. Matching is a pure function of
(path, pattern set):

- a path is selected only if some include matches it;
- a ``user`` exclude always wins (also over a ``user`` include);
- a ``default`` exclude loses only to a matching ``user`` include.

Pattern syntax (``/``-separated, fnmatch per segment, case-sensitive):

- trailing ``/`` marks a directory pattern, matching paths beneath it;
- no inner ``/`` means unanchored, the pattern may match any segment;
- an inner ``/`` anchors the pattern at the repository root; it matches the
  path itself or anything beneath it.
"""

from __future__ import annotations

import logging
import tomllib
from enum import Enum
from fnmatch import fnmatchcase
from pathlib import Path
from typing import Final

import msgspec
from msgspec import Struct, field

logger = logging.getLogger(__name__)

OVERRIDE_FILENAME: Final[str] = ".worktree-config.toml"

DEFAULT_INCLUDE: Final[tuple[str, ...]] = (".env*", ".vscode/", "*.local.json", "config/local/*")
DEFAULT_EXCLUDE: Final[tuple[str, ...]] = ("node_modules/", "target/", ".git/", "*.log", "*.tmp")


class Provenance(str, Enum):
    DEFAULT = "default"
    USER = "user"


class UserPatterns(Struct):
    """Shape of the ``[copy-patterns]`` table. Absent lists stay None."""

    include: list[str] | None = None
    exclude: list[str] | None = None


class _OverrideFile(Struct, rename="kebab"):
    copy_patterns: UserPatterns = field(default_factory=UserPatterns)


class CompiledPattern(Struct, frozen=True):
    """One pattern pre-split into segments, tagged with where it came from."""

    pattern: str
    provenance: Provenance
    segments: tuple[str, ...]
    anchored: bool
    directory: bool

    @classmethod
    def compile(cls, pattern: str, provenance: Provenance) -> CompiledPattern:
        text = pattern.strip()
        while text.startswith("./"):
            text = text[2:]
        directory = text.endswith("/")
        body = text.strip("/")
        if not body:
            raise ValueError(f"Empty copy pattern: {pattern!r}")
        segments = tuple(s for s in body.split("/") if s)
        return cls(
            pattern=pattern,
            provenance=provenance,
            segments=segments,
            anchored=len(segments) > 1 or text.startswith("/"),
            directory=directory,
        )

    def matches(self, parts: tuple[str, ...], is_dir: bool = False) -> bool:  # Time: O(p*s)
        """Check a relative path (already split into parts) against this pattern."""
        if self.anchored:
            return self._matches_at(parts, 0, is_dir)
        return any(self._matches_at(parts, start, is_dir) for start in range(len(parts)))

    def _matches_at(self, parts: tuple[str, ...], start: int, is_dir: bool) -> bool:
        end = start + len(self.segments)
        if end > len(parts):
            return False
        # Directory patterns need the match to be a directory: a strict ancestor,
        # or the path itself when the caller says it is one
        if self.directory and end == len(parts) and not is_dir:
            return False
        return all(
            fnmatchcase(part, seg)
            for part, seg in zip(parts[start:end], self.segments, strict=True)
        )


class ConfigPatternSet(Struct, frozen=True):
    """Ordered include/exclude matchers. Built per operation, never persisted."""

    include: tuple[CompiledPattern, ...] = ()
    exclude: tuple[CompiledPattern, ...] = ()

    def include_patterns(self) -> list[tuple[str, Provenance]]:
        return [(p.pattern, p.provenance) for p in self.include]

    def exclude_patterns(self) -> list[tuple[str, Provenance]]:
        return [(p.pattern, p.provenance) for p in self.exclude]

    @property
    def has_user_include(self) -> bool:
        return any(p.provenance is Provenance.USER for p in self.include)

    def is_selected(self, relative_path: str | Path) -> bool:
        return is_selected(relative_path, self)

    def prunes_directory(self, relative_dir: str | Path) -> bool:
        """True when nothing beneath ``relative_dir`` can ever be selected."""
        parts = _split(relative_dir)
        if not parts:
            return False
        if parts[-1] == ".git":
            return True
        excluded_by = [p for p in self.exclude if p.matches(parts, is_dir=True)]
        if any(p.provenance is Provenance.USER for p in excluded_by):
            return True
        return bool(excluded_by) and not self.has_user_include


def _split(relative_path: str | Path) -> tuple[str, ...]:
    return tuple(p for p in Path(relative_path).as_posix().split("/") if p and p != ".")


def _dedupe(patterns: list[str] | tuple[str, ...], provenance: Provenance) -> list[CompiledPattern]:
    seen: set[str] = set()
    compiled: list[CompiledPattern] = []
    for pattern in patterns:
        if pattern in seen:
            continue
        seen.add(pattern)
        if not pattern.strip().strip("/."):
            logger.warning("Ignoring empty %s copy pattern %r", provenance.value, pattern)
            continue
        compiled.append(CompiledPattern.compile(pattern, provenance))
    return compiled


def resolve(
    defaults: UserPatterns,
    user: UserPatterns | None = None,
) -> ConfigPatternSet:
    """Merge defaults and optional user patterns into a ConfigPatternSet.

    Defaults come first, user entries are appended. Duplicates are removed
    within one provenance (first occurrence wins) but never across
    provenances, so a user pattern equal to a default keeps its user tag.
    """
    include = _dedupe(defaults.include or (), Provenance.DEFAULT)
    exclude = _dedupe(defaults.exclude or (), Provenance.DEFAULT)
    if user is not None:
        include += _dedupe(user.include or (), Provenance.USER)
        exclude += _dedupe(user.exclude or (), Provenance.USER)
    return ConfigPatternSet(include=tuple(include), exclude=tuple(exclude))


def is_selected(relative_path: str | Path, pattern_set: ConfigPatternSet) -> bool:
    """Decide whether a file at ``relative_path`` is copied."""
    parts = _split(relative_path)
    if not parts:
        return False

    included_by = [p for p in pattern_set.include if p.matches(parts)]
    if not included_by:
        return False

    excluded_by = [p for p in pattern_set.exclude if p.matches(parts)]
    if not excluded_by:
        return True

    # User exclude is the tiebreaker, even against a user include
    if any(p.provenance is Provenance.USER for p in excluded_by):
        return False
    return any(p.provenance is Provenance.USER for p in included_by)


def default_patterns() -> UserPatterns:
    return UserPatterns(include=list(DEFAULT_INCLUDE), exclude=list(DEFAULT_EXCLUDE))


def load_user_patterns(repo_path: Path) -> UserPatterns | None:
    """Read ``.worktree-config.toml`` from the repository root.

    Returns None when the file is missing, blank or invalid. Invalid content
    is logged and ignored so a typo never blocks worktree creation.

    Raises:
        OSError: If the file exists but cannot be read.
    """
    config_path = Path(repo_path) / OVERRIDE_FILENAME
    if not config_path.exists():
        return None

    content = config_path.read_text(encoding="utf-8")
    if not content.strip():
        return None

    try:
        data = tomllib.loads(content)
        return msgspec.convert(data, _OverrideFile).copy_patterns
    except (tomllib.TOMLDecodeError, msgspec.ValidationError) as e:
        logger.warning(
            "Invalid %s (%s); using default copy patterns. Fix the file and try again.",
            config_path,
            e,
        )
        return None


def load_pattern_set(repo_path: Path) -> ConfigPatternSet:
    """Build the pattern set for a repository: defaults merged with its override file."""
    return resolve(default_patterns(), load_user_patterns(repo_path))
