# tests/arbor/test_cli.py
"""
Tests for the arbor command-line interface.

Commands run in-process through main() with the working directory set to a
real repository and the storage root redirected through the environment.
"""

import json
import shutil

import pytest

from arbor.cli import main
from arbor.context import LOCK_TIMEOUT_ENV, RepoContext
from arbor.locking import repo_lock
from tests.arbor.conftest import branches, git


@pytest.fixture
def in_repo(repo, storage_root, monkeypatch):
    monkeypatch.chdir(repo)
    return repo


def _exit_code(argv):
    with pytest.raises(SystemExit) as exc_info:
        main(argv)
    return exc_info.value.code


def test_requires_a_command(capsys):
    assert _exit_code([]) == 2


def test_create_and_remove(in_repo, storage_root, capsys):
    main(["create", "feature/x"])

    out = capsys.readouterr().out
    path = storage_root.resolve() / "myproject" / "feature-x"
    assert f"Created branch and worktree for 'feature/x' at {path}" in out
    assert path.is_dir()

    main(["remove", "feature/x"])

    out = capsys.readouterr().out
    assert f"Removed worktree {path}" in out
    assert "Deleted branch 'feature/x'" in out
    assert not path.exists()
    assert "feature/x" not in branches(in_repo)


def test_create_existing_branch_mode(in_repo, capsys):
    git(in_repo, "branch", "existing")

    main(["create", "existing", "--existing-branch"])

    assert "Created worktree for 'existing'" in capsys.readouterr().out


def test_create_precondition_failure_exits_1(in_repo, capsys):
    assert _exit_code(["create", "missing", "--existing-branch"]) == 1

    err = capsys.readouterr().err
    assert "Error: Branch 'missing' does not exist" in err
    assert "--new-branch" in err


def test_lock_timeout_exits_2(in_repo, storage_root, monkeypatch, capsys):
    monkeypatch.setenv(LOCK_TIMEOUT_ENV, "0.1")
    ctx = RepoContext(in_repo, storage_root)

    with repo_lock(ctx.operation_lock_path, 5.0):
        assert _exit_code(["create", "feature/x"]) == 2

    assert "Timed out" in capsys.readouterr().err
    assert "feature/x" not in branches(in_repo)


def test_outside_repository(tmp_path, storage_root, monkeypatch, capsys):
    plain = tmp_path / "plain"
    plain.mkdir()
    monkeypatch.chdir(plain)

    assert _exit_code(["status"]) == 1
    assert "Not a git repository" in capsys.readouterr().err


def test_remove_unmanaged_branch_warns_and_keeps(in_repo, capsys):
    git(in_repo, "branch", "theirs")
    main(["create", "theirs"])
    capsys.readouterr()

    main(["remove", "theirs"])

    captured = capsys.readouterr()
    assert "Warning: Branch 'theirs' was not created by arbor; kept" in captured.err
    assert "Deleted branch" not in captured.out
    assert "theirs" in branches(in_repo)


def test_remove_force_deletes_unmanaged_branch(in_repo, capsys):
    git(in_repo, "branch", "theirs")
    main(["create", "theirs"])

    main(["remove", "theirs", "--force-delete-branch"])

    assert "theirs" not in branches(in_repo)


def test_list_all_and_json(in_repo, storage_root, capsys):
    main(["create", "feature/x"])
    capsys.readouterr()

    main(["list"])
    out = capsys.readouterr().out
    assert out.startswith("myproject/feature/x\t")

    main(["list", "--current", "--json"])
    (record,) = json.loads(capsys.readouterr().out)
    assert record["branch"] == "feature/x"
    assert record["managed"] is True
    assert record["origin"] == str(in_repo.resolve())


def test_list_empty(in_repo, capsys):
    main(["list"])

    assert capsys.readouterr().out == "No worktrees found\n"


def test_jump_and_back(in_repo, storage_root, monkeypatch, capsys):
    main(["create", "feature/auth"])
    capsys.readouterr()

    main(["jump", "auth"])
    path = capsys.readouterr().out.strip()
    assert path == str(storage_root.resolve() / "myproject" / "feature-auth")

    monkeypatch.chdir(path)
    main(["back"])
    assert capsys.readouterr().out.strip() == str(in_repo.resolve())


def test_jump_ambiguous_exits_1(in_repo, capsys):
    main(["create", "feature/auth"])
    main(["create", "fix/auth"])
    capsys.readouterr()

    assert _exit_code(["jump", "auth", "--current"]) == 1
    assert "Ambiguous worktree name 'auth'" in capsys.readouterr().err


def test_back_outside_worktree(in_repo, capsys):
    assert _exit_code(["back"]) == 1
    assert "Not currently in a worktree directory" in capsys.readouterr().err


def test_status_and_cleanup(in_repo, storage_root, capsys):
    main(["create", "feature/x"])
    capsys.readouterr()

    main(["status"])
    out = capsys.readouterr().out
    assert "Repository: myproject" in out
    assert "Run 'arbor cleanup'" not in out
    assert "Recent operations:" in out
    assert "create feature/x" in out

    shutil.rmtree(storage_root / "myproject" / "feature-x")
    main(["status", "--json"])
    report = json.loads(capsys.readouterr().out)
    assert report["managed_worktrees"][0]["exists"] is False

    main(["cleanup"])
    out = capsys.readouterr().out
    assert "Removed orphaned mapping for 'feature/x'" in out
    assert "Deleted orphaned branch 'feature/x'" in out

    main(["cleanup"])
    assert capsys.readouterr().out == "Nothing to clean up\n"


def test_sync_config_from_origin(in_repo, capsys):
    main(["create", "feature/x"])
    (in_repo / ".env").write_text("KEY=1")
    capsys.readouterr()

    main(["sync-config", "origin", "feature/x"])

    assert "copied .env" in capsys.readouterr().out


def test_version(capsys):
    assert _exit_code(["--version"]) == 0
    assert capsys.readouterr().out.startswith("arbor ")
