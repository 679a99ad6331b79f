# tests/arbor/conftest.py
"""
Shared pytest fixtures for arbor tests.

Every test gets an isolated git configuration and its own storage root, so
nothing touches the user's ~/.worktrees or global git settings.
"""

import subprocess
from pathlib import Path

import pytest

from arbor.context import STORAGE_ROOT_ENV, RepoContext
from arbor.errors import StorageIOError
from arbor.fs import LocalFilesystem
from arbor.lifecycle import LifecycleOrchestrator
from arbor.vcs import GitVcs


@pytest.fixture(autouse=True)
def isolate_git_config(monkeypatch):
    """Isolate tests from user's global git config.

    Prevents GPG signing, custom hooks, and other user config
    from affecting test execution.
    """
    monkeypatch.setenv("GIT_CONFIG_GLOBAL", "/dev/null")
    monkeypatch.setenv("GIT_CONFIG_SYSTEM", "/dev/null")


def git(cwd: Path, *args: str) -> str:
    """Run git in ``cwd`` and return stdout (raises on failure)."""
    result = subprocess.run(
        ["git", *args], cwd=cwd, capture_output=True, text=True, check=True
    )
    return result.stdout


def init_repo(path: Path) -> Path:
    path.mkdir(parents=True, exist_ok=True)
    git(path, "init", "-b", "main")
    git(path, "config", "user.email", "test@test.com")
    git(path, "config", "user.name", "Test")
    (path / "README.md").write_text("# Project")
    git(path, "add", "-A")
    git(path, "commit", "-m", "initial")
    return path


def branches(repo: Path) -> set[str]:
    out = git(repo, "for-each-ref", "--format=%(refname:short)", "refs/heads/")
    return set(out.split())


@pytest.fixture
def storage_root(tmp_path, monkeypatch):
    """Storage root under tmp_path, also exported through the environment."""
    root = tmp_path / "storage"
    monkeypatch.setenv(STORAGE_ROOT_ENV, str(root))
    return root


@pytest.fixture
def repo(tmp_path):
    """A git repository with one commit on main."""
    return init_repo(tmp_path / "myproject")


@pytest.fixture
def ctx(repo, storage_root):
    return RepoContext(repo, storage_root, lock_timeout=5.0)


@pytest.fixture
def vcs(repo):
    return GitVcs(repo)


@pytest.fixture
def orchestrator(ctx, vcs):
    return LifecycleOrchestrator(ctx, vcs)


class FlakyVcs(GitVcs):
    """GitVcs that raises a configured error from selected operations."""

    def __init__(self, repo_path: Path, failures: dict[str, Exception] | None = None) -> None:
        super().__init__(repo_path)
        self.failures = dict(failures or {})

    def _maybe_fail(self, operation: str) -> None:
        if (error := self.failures.get(operation)) is not None:
            raise error

    def create_worktree(self, branch_name, target_path):
        self._maybe_fail("create_worktree")
        super().create_worktree(branch_name, target_path)

    def delete_branch(self, name):
        self._maybe_fail("delete_branch")
        super().delete_branch(name)

    def inherit_config(self, worktree_path):
        self._maybe_fail("inherit_config")
        super().inherit_config(worktree_path)


class FailingCopyFilesystem(LocalFilesystem):
    """Filesystem whose pattern copy always fails, after the worktree exists."""

    def copy_matching(self, source, destination, pattern_set):
        raise StorageIOError(
            "Failed to copy configuration files (No space left on device)", destination
        )
