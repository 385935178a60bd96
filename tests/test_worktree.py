import subprocess
from pathlib import Path

import pytest

from convoy.git import GitClient
from convoy.workspace.worktree import (
    WorkspaceError,
    WorktreeManager,
    WorktreeStatus,
    branch_for_issue,
)


def _git(repo: Path, *args: str) -> str:
    proc = subprocess.run(["git", *args], cwd=repo, check=True, text=True, capture_output=True)
    return proc.stdout.strip()


def _init_git_repo(repo_path: Path) -> None:
    _git(repo_path, "init")
    _git(repo_path, "symbolic-ref", "HEAD", "refs/heads/main")
    _git(repo_path, "config", "user.email", "test@example.com")
    _git(repo_path, "config", "user.name", "Test User")
    (repo_path / "README.md").write_text("seed\n", encoding="utf-8")
    _git(repo_path, "add", "README.md")
    _git(repo_path, "commit", "-m", "seed")


@pytest.fixture
def repo(tmp_path: Path) -> Path:
    path = tmp_path / "repo"
    path.mkdir()
    _init_git_repo(path)
    return path


def test_allocate_creates_worktree_on_issue_branch(repo: Path) -> None:
    manager = WorktreeManager(repo)

    workspace = manager.allocate(42, "main")

    assert workspace.path == repo.resolve() / ".convoy" / "worktrees" / "issue-42"
    assert workspace.branch == "convoy/issue-42"
    assert (workspace.path / "README.md").exists()
    assert GitClient(workspace.path).current_branch() == "convoy/issue-42"
    assert [info.status for info in manager.list()] == [WorktreeStatus.ACTIVE]
    assert _git(repo, "status", "--porcelain") == ""


def test_allocate_reuses_existing_directory(repo: Path) -> None:
    manager = WorktreeManager(repo)
    first = manager.allocate(7, "main")
    (first.path / "scratch.txt").write_text("keep\n", encoding="utf-8")

    second = manager.allocate(7, "main")

    assert second.path == first.path
    assert (second.path / "scratch.txt").exists()


def test_allocate_replaces_leftover_branch(repo: Path) -> None:
    _git(repo, "branch", branch_for_issue(5))
    manager = WorktreeManager(repo)

    workspace = manager.allocate(5, "main")

    assert workspace.path.exists()


def test_allocate_from_unknown_base_raises(repo: Path) -> None:
    with pytest.raises(WorkspaceError):
        WorktreeManager(repo).allocate(1, "no-such-branch")


def test_allocate_reports_unwritable_worktree_root(repo: Path) -> None:
    (repo / ".convoy").mkdir()
    (repo / ".convoy" / "worktrees").write_text("not a directory\n", encoding="utf-8")
    manager = WorktreeManager(repo)

    with pytest.raises(WorkspaceError, match="Could not prepare"):
        manager.allocate(4, "main")


def test_release_removes_directory_and_branch(repo: Path) -> None:
    manager = WorktreeManager(repo)
    workspace = manager.allocate(3, "main")

    manager.release(3)

    assert not workspace.path.exists()
    assert not GitClient(repo).branch_exists("convoy/issue-3")
    assert manager.list() == []


def test_release_can_keep_branch(repo: Path) -> None:
    manager = WorktreeManager(repo)
    manager.allocate(3, "main")

    manager.release(3, keep_branch=True)

    assert GitClient(repo).branch_exists("convoy/issue-3")


def test_stale_worktrees_are_listed_and_pruned(repo: Path) -> None:
    manager = WorktreeManager(repo)
    manager.allocate(1, "main")
    manager.allocate(2, "main")
    _git(repo, "worktree", "remove", "--force", str(manager.path_for(2)))
    manager.path_for(2).mkdir(parents=True)
    (manager.path_for(2) / "orphan.txt").write_text("x\n", encoding="utf-8")

    stale = manager.list_stale()
    assert [info.issue for info in stale] == [2]

    assert manager.prune_stale() == 1
    assert not manager.path_for(2).exists()
    assert [info.issue for info in manager.list()] == [1]


def test_release_all(repo: Path) -> None:
    manager = WorktreeManager(repo)
    for issue in (1, 2, 3):
        manager.allocate(issue, "main")

    assert manager.release_all() == 3
    assert manager.list() == []


def test_dry_run_does_not_touch_disk(repo: Path) -> None:
    manager = WorktreeManager(repo, dry_run=True)

    workspace = manager.allocate(9, "main")
    manager.release(9)

    assert workspace.branch == "convoy/issue-9"
    assert not workspace.path.exists()
    assert not (repo / ".convoy").exists()


def test_release_of_missing_worktree_is_a_no_op(repo: Path) -> None:
    manager = WorktreeManager(repo)
    manager.release(404)
    assert manager.list() == []
