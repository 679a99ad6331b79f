"""Tests for index.py - Branch-Path Index bijectivity, idempotency and collisions."""

import shutil
import tempfile
import threading
from pathlib import Path

import pytest
from hypothesis import settings
from hypothesis import strategies as st
from hypothesis.stateful import RuleBasedStateMachine, invariant, rule

from arbor.context import RepoContext
from arbor.errors import IntegrityError, NotFoundError
from arbor.index import BranchPathIndex


@pytest.fixture
def index(tmp_path):
    repo = tmp_path / "myproject"
    repo.mkdir()
    return BranchPathIndex(RepoContext(repo, tmp_path / "storage", lock_timeout=5.0))


def test_allocate_is_idempotent(index):
    first = index.allocate("feature/auth")
    second = index.allocate("feature/auth")

    assert first.sanitized == "feature-auth"
    assert first.created is True
    assert second.sanitized == "feature-auth"
    assert second.created is False
    assert len(index.entries()) == 1


def test_colliding_names_get_numeric_suffixes(index):
    assert index.resolve_sanitized("feature/x") == "feature-x"
    assert index.resolve_sanitized("feature-x") == "feature-x-2"
    assert index.resolve_sanitized("feature:x") == "feature-x-3"

    assert index.resolve_canonical("feature-x") == "feature/x"
    assert index.resolve_canonical("feature-x-2") == "feature-x"
    assert index.resolve_canonical("feature-x-3") == "feature:x"


def test_allocation_is_stable_after_other_entries_are_removed(index):
    index.allocate("feature/x")
    index.allocate("feature-x")
    index.remove("feature/x")

    assert index.resolve_sanitized("feature-x") == "feature-x-2"


def test_suffix_skips_directory_owned_by_another_repository(tmp_path):
    """Two repositories named 'myproject' share <root>/myproject/."""
    storage = tmp_path / "storage"
    first = tmp_path / "a" / "myproject"
    second = tmp_path / "b" / "myproject"
    first.mkdir(parents=True)
    second.mkdir(parents=True)
    first_ctx = RepoContext(first, storage)
    second_ctx = RepoContext(second, storage)

    allocated = BranchPathIndex(first_ctx).resolve_sanitized("feature/x")
    first_ctx.worktree_path(allocated).mkdir(parents=True)

    assert BranchPathIndex(second_ctx).resolve_sanitized("feature/x") == "feature-x-2"
    assert first_ctx.metadata_dir != second_ctx.metadata_dir


def test_resolve_canonical_unknown_raises(index):
    with pytest.raises(NotFoundError, match="ghost"):
        index.resolve_canonical("ghost")


def test_remove_is_idempotent(index):
    index.allocate("feature/auth")

    assert index.remove("feature/auth") is True
    assert index.remove("feature/auth") is False
    assert index.get("feature/auth") is None


def test_index_survives_new_instance(index, tmp_path):
    index.allocate("feature/auth")
    index.allocate("bugfix/1")

    reopened = BranchPathIndex(RepoContext(tmp_path / "myproject", tmp_path / "storage"))

    assert reopened.resolve_canonical("feature-auth") == "feature/auth"
    assert reopened.find_sanitized("bugfix-1").canonical == "bugfix/1"


def test_corrupt_index_raises_integrity_error(index):
    index.allocate("feature/auth")
    index.path.write_text("{not json")

    with pytest.raises(IntegrityError, match="Corrupt"):
        index.entries()


def test_duplicate_entries_raise_integrity_error(index):
    index.allocate("feature/auth")
    index.path.write_text(
        '{"repository": "", "entries": ['
        '{"canonical": "a", "sanitized": "x"}, {"canonical": "b", "sanitized": "x"}]}'
    )

    with pytest.raises(IntegrityError, match="duplicate"):
        index.get("a")


def test_concurrent_allocation_of_same_name_agrees(index):
    """Racing allocations of one name all observe a single mapping."""
    results: list[str] = []
    barrier = threading.Barrier(8)

    def allocate():
        barrier.wait()
        results.append(index.resolve_sanitized("feature/race"))

    threads = [threading.Thread(target=allocate) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert set(results) == {"feature-race"}
    assert len(index.entries()) == 1


def test_concurrent_colliding_names_stay_bijective(index):
    names = ["feature/x", "feature-x", "feature:x", "feature\\x"]
    barrier = threading.Barrier(len(names))

    def allocate(name):
        barrier.wait()
        index.allocate(name)

    threads = [threading.Thread(target=allocate, args=(n,)) for n in names]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    sanitized = [e.sanitized for e in index.entries()]
    assert len(sanitized) == len(set(sanitized)) == len(names)
    assert set(sanitized) == {"feature-x", "feature-x-2", "feature-x-3", "feature-x-4"}


branch_names = st.text(alphabet="ab/-:.", min_size=1, max_size=6)


@settings(max_examples=30, stateful_step_count=25, deadline=None)
class BranchIndexStateMachine(RuleBasedStateMachine):
    """Random allocate/remove sequences keep the index a bijection."""

    def __init__(self) -> None:
        super().__init__()
        self.tmpdir = Path(tempfile.mkdtemp())
        repo = self.tmpdir / "repo"
        repo.mkdir()
        self.index = BranchPathIndex(RepoContext(repo, self.tmpdir / "storage"))
        self.model: dict[str, str] = {}

    @rule(name=branch_names)
    def allocate(self, name: str) -> None:
        sanitized = self.index.resolve_sanitized(name)
        if name in self.model:
            assert sanitized == self.model[name]
        self.model[name] = sanitized

    @rule(name=branch_names)
    def remove(self, name: str) -> None:
        removed = self.index.remove(name)
        assert removed == (name in self.model)
        self.model.pop(name, None)

    @invariant()
    def matches_model(self) -> None:
        stored = {e.canonical: e.sanitized for e in self.index.entries()}
        assert stored == self.model

    @invariant()
    def bijective(self) -> None:
        sanitized = list(self.model.values())
        assert len(sanitized) == len(set(sanitized))
        for canonical, name in self.model.items():
            assert self.index.resolve_canonical(name) == canonical

    def teardown(self) -> None:
        shutil.rmtree(self.tmpdir, ignore_errors=True)


TestBranchIndexStateMachine = BranchIndexStateMachine.TestCase
