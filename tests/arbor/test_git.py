# tests/arbor/test_git.py
"""Tests for run_git, the validated git entry point over runtime.py."""

from unittest.mock import MagicMock, patch

import pytest

from arbor.errors import PreconditionError
from arbor.git import check_git_args, ensure_git_available, get_toplevel, run_git


def test_run_git_uses_runtime():
    with patch("arbor.git._runtime") as mock_runtime:
        mock_runtime.execute.return_value = MagicMock(returncode=0, stdout="ok\n", stderr="")

        result = run_git(["branch", "feature/x"], cwd="/tmp")

        mock_runtime.execute.assert_called_once_with(
            ["git", "branch", "feature/x"],
            cwd="/tmp",
            timeout=60,
            exclusive=True,
        )
        assert result.stdout == "ok\n"


def test_read_only_queries_skip_exclusive_lock():
    with patch("arbor.git._runtime") as mock_runtime:
        mock_runtime.execute.return_value = MagicMock(returncode=0, stdout="", stderr="")

        run_git(["worktree", "list", "--porcelain"], cwd="/tmp", read_only=True)

        assert mock_runtime.execute.call_args.kwargs["exclusive"] is False


@pytest.mark.parametrize(
    "args",
    [
        ["-c", "core.pager=evil", "log"],
        ["--config=core.pager=evil", "log"],
        ["--config-env=core.pager=EVIL", "log"],
        ["fetch", "--upload-pack=evil"],
        ["push", "--receive-pack", "evil"],
    ],
)
def test_dangerous_options_are_rejected(args):
    with patch("arbor.git._runtime") as mock_runtime:
        with pytest.raises(ValueError, match="Dangerous git option"):
            run_git(args, cwd="/tmp")
        mock_runtime.execute.assert_not_called()


def test_values_containing_equals_are_allowed():
    check_git_args(["config", "--worktree", "user.name", "a=b"])
    check_git_args(["branch", "feature/x=y", "main"])


def test_ensure_git_available_maps_to_precondition():
    with patch("arbor.git._runtime") as mock_runtime:
        mock_runtime.git_version.side_effect = RuntimeError("git not found in PATH")

        with pytest.raises(PreconditionError, match="git not found"):
            ensure_git_available()


def test_ensure_git_available_returns_version():
    with patch("arbor.git._runtime") as mock_runtime:
        mock_runtime.git_version.return_value = (2, 43)

        assert ensure_git_available() == (2, 43)


def test_get_toplevel(repo, tmp_path):
    (repo / "sub").mkdir()

    assert get_toplevel(str(repo / "sub")) == str(repo.resolve())
    outside = tmp_path / "plain"
    outside.mkdir()
    assert get_toplevel(str(outside)) is None
