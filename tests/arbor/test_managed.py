"""Tests for managed.py - Managed-Branch Tracker."""

from datetime import UTC, datetime

import msgspec
import pytest
import time_machine

from arbor.context import RepoContext
from arbor.errors import IntegrityError
from arbor.managed import ManagedBranchMarker, ManagedBranchTracker, marker_filename


@pytest.fixture
def tracker(tmp_path):
    repo = tmp_path / "myproject"
    repo.mkdir()
    return ManagedBranchTracker(RepoContext(repo, tmp_path / "storage", lock_timeout=5.0))


def test_unmarked_branch_is_not_managed(tracker):
    assert tracker.is_managed("feature/x") is False
    assert tracker.get("feature/x") is None


def test_mark_records_creation_time(tracker):
    frozen = datetime(2024, 3, 1, 12, 30, tzinfo=UTC)
    with time_machine.travel(frozen, tick=False):
        tracker.mark("feature/x")

    marker = tracker.get("feature/x")
    assert marker is not None
    assert marker.branch == "feature/x"
    assert marker.created_at == frozen
    assert tracker.is_managed("feature/x")


def test_mark_is_idempotent(tracker):
    tracker.mark("feature/x")
    tracker.mark("feature/x")

    assert [m.branch for m in tracker.markers()] == ["feature/x"]


def test_unmark_is_idempotent(tracker):
    tracker.mark("feature/x")

    assert tracker.unmark("feature/x") is True
    assert tracker.unmark("feature/x") is False
    assert not tracker.is_managed("feature/x")


def test_sanitizer_collisions_get_separate_markers(tracker):
    tracker.mark("feature/x")
    tracker.mark("feature-x")

    assert marker_filename("feature/x") != marker_filename("feature-x")
    assert tracker.branches() == {"feature/x", "feature-x"}

    tracker.unmark("feature/x")
    assert tracker.is_managed("feature-x")
    assert not tracker.is_managed("feature/x")


def test_marker_file_format(tracker):
    with time_machine.travel(datetime(2024, 1, 2, tzinfo=UTC), tick=False):
        tracker.mark("main-work")

    path = tracker.marker_dir / marker_filename("main-work")
    decoded = msgspec.json.decode(path.read_bytes())
    assert decoded["branch"] == "main-work"
    assert decoded["repository"].endswith("myproject")
    assert decoded["created_at"].startswith("2024-01-02T00:00:00")


def test_corrupt_marker_raises_integrity_error(tracker):
    tracker.mark("feature/x")
    (tracker.marker_dir / marker_filename("feature/x")).write_text("garbage")

    with pytest.raises(IntegrityError, match="Corrupt managed-branch marker"):
        tracker.is_managed("feature/x")


def test_scan_separates_unreadable_markers(tracker):
    tracker.mark("feature/b")
    tracker.mark("feature/a")
    junk = tracker.marker_dir / "junk-00000000.json"
    junk.write_text("garbage")

    found, unreadable = tracker.scan()

    assert [m.branch for m in found] == ["feature/a", "feature/b"]
    ((path, error),) = unreadable
    assert path == junk
    assert isinstance(error, IntegrityError)
    with pytest.raises(IntegrityError):
        tracker.branches()


def test_marker_for_other_branch_under_same_file_is_ignored(tracker):
    """A marker is only honored for the exact branch name stored inside it."""
    path = tracker.marker_dir / marker_filename("feature/x")
    path.parent.mkdir(parents=True)
    path.write_bytes(
        msgspec.json.encode(
            ManagedBranchMarker(
                repository="/elsewhere", branch="other", created_at=datetime.now(UTC)
            )
        )
    )

    assert tracker.is_managed("feature/x") is False
