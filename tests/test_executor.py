import asyncio
import subprocess
from collections.abc import AsyncIterator
from pathlib import Path

import pytest

from convoy.backends.base import AgentBackend, BackendExecutionError
from convoy.config import AgentConfig
from convoy.executor import ExecutionContext, TaskExecutor
from convoy.git import GitClient
from convoy.tracker import (
    LABEL_DONE,
    LABEL_FAILED,
    LABEL_IN_PROGRESS,
    Issue,
    IssueComment,
    TrackerError,
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


class FakeTracker:
    def __init__(self, issues: dict[int, Issue]) -> None:
        self.issues = issues
        self.labels: list[tuple[int, str]] = []
        self.comments: list[tuple[int, str]] = []
        self.pull_requests: list[dict[str, str]] = []

    def get_issue(self, number: int) -> Issue:
        if number not in self.issues:
            raise TrackerError(f"Issue #{number} not found.")
        return self.issues[number]

    def issue_comments(self, number: int) -> list[IssueComment]:
        return [IssueComment(author="pm", body="Keep the API stable.")]

    def set_status_label(self, number: int, label: str) -> bool:
        self.labels.append((number, label))
        return True

    def add_comment(self, number: int, body: str) -> None:
        self.comments.append((number, body))

    def find_or_create_pull_request(self, head: str, base: str, title: str, body: str) -> int:
        self.pull_requests.append({"head": head, "base": base, "title": title, "body": body})
        return 77


class WritingBackend(AgentBackend):
    """Pretends to be an agent by editing a file in the working directory."""

    def __init__(self, filename: str | None = "feature.py") -> None:
        self.filename = filename
        self.prompts: list[str] = []
        self.cwds: list[Path] = []

    async def execute(
        self,
        prompt: str,
        *,
        cwd: Path,
        model: str | None = None,
    ) -> AsyncIterator[str]:
        self.prompts.append(prompt)
        self.cwds.append(cwd)
        if self.filename:
            (cwd / self.filename).write_text("print('hi')\n", encoding="utf-8")
        yield "Implemented the feature."


class FailingBackend(AgentBackend):
    async def execute(
        self,
        prompt: str,
        *,
        cwd: Path,
        model: str | None = None,
    ) -> AsyncIterator[str]:
        raise BackendExecutionError("All agent attempts failed. claude[0]: exit 1", retriable=False)
        yield ""  # pragma: no cover


@pytest.fixture
def repo(tmp_path: Path) -> Path:
    path = tmp_path / "repo"
    path.mkdir()
    _init_git_repo(path)
    return path


def _tracker() -> FakeTracker:
    return FakeTracker({12: Issue(number=12, title="Add login form", body="Build it.")})


def _context(**overrides) -> ExecutionContext:
    values = {"provider": "claude", "model": "claude-sonnet-4-5"}
    values.update(overrides)
    return ExecutionContext(**values)


def test_success_commits_and_reports_sha(repo: Path) -> None:
    tracker = _tracker()
    backend = WritingBackend()
    executor = TaskExecutor(repo, tracker, backend, AgentConfig(auto_pr=False))

    result = asyncio.run(executor.execute(12, _context()))

    assert result.success
    assert result.submission_ref == GitClient(repo).head_sha()
    assert _git(repo, "log", "-1", "--format=%s") == "Add login form (#12)"
    assert tracker.labels == [(12, LABEL_IN_PROGRESS), (12, LABEL_DONE)]
    assert "Task completed" in tracker.comments[-1][1]
    assert "Add login form" in backend.prompts[0]
    assert "Keep the API stable." in backend.prompts[0]


def test_success_without_changes_has_no_submission(repo: Path) -> None:
    tracker = _tracker()
    executor = TaskExecutor(repo, tracker, WritingBackend(filename=None), AgentConfig(auto_pr=False))

    result = asyncio.run(executor.execute(12, _context()))

    assert result.success
    assert result.submission_ref is None


def test_auto_pr_pushes_branch_and_opens_pull_request(
    repo: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    pushed: list[tuple[str, bool]] = []

    def fake_push(self, branch, remote="origin", *, force_with_lease=False):
        pushed.append((branch, force_with_lease))

    monkeypatch.setattr(GitClient, "push", fake_push)
    tracker = _tracker()
    executor = TaskExecutor(repo, tracker, WritingBackend(), AgentConfig(auto_pr=True))

    result = asyncio.run(
        executor.execute(12, _context(branch="convoy/sprint-s1", sprint="S1", base_branch="main"))
    )

    assert result.success
    assert result.submission_ref == "#77"
    assert pushed == [("convoy/sprint-s1", True)]
    assert tracker.pull_requests == [
        {
            "head": "convoy/sprint-s1",
            "base": "main",
            "title": "[S1] Add login form",
            "body": "Closes #12",
        }
    ]


def test_push_failure_after_commit_still_succeeds_once(repo: Path) -> None:
    tracker = _tracker()
    executor = TaskExecutor(repo, tracker, WritingBackend(), AgentConfig(auto_pr=True))

    first = asyncio.run(executor.execute(12, _context(base_branch="main")))

    assert first.success
    assert first.submission_ref == GitClient(repo).head_sha()
    assert tracker.pull_requests == []
    assert tracker.labels[-1] == (12, LABEL_DONE)
    assert any("no pull request was opened" in body for _, body in tracker.comments)
    assert _git(repo, "log", "--format=%s").splitlines() == ["Add login form (#12)", "seed"]


def test_pull_request_failure_after_push_still_succeeds(
    repo: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    class BrokenPullRequests(FakeTracker):
        def find_or_create_pull_request(self, head, base, title, body):
            raise TrackerError("GitHub API rate limit hit. Try again later.")

    monkeypatch.setattr(GitClient, "push", lambda self, branch, *args, **kwargs: None)
    tracker = BrokenPullRequests({12: Issue(number=12, title="Add login form")})
    executor = TaskExecutor(repo, tracker, WritingBackend(), AgentConfig(auto_pr=True))

    result = asyncio.run(executor.execute(12, _context()))

    assert result.success
    assert result.submission_ref == GitClient(repo).head_sha()
    assert "rate limit" in tracker.comments[0][1]


def test_agent_failure_labels_and_comments(repo: Path) -> None:
    tracker = _tracker()
    executor = TaskExecutor(repo, tracker, FailingBackend(), AgentConfig(auto_pr=False))

    result = asyncio.run(executor.execute(12, _context()))

    assert not result.success
    assert "All agent attempts failed" in (result.error or "")
    assert tracker.labels[-1] == (12, LABEL_FAILED)
    assert "Task failed" in tracker.comments[-1][1]


def test_unknown_issue_fails_without_running_agent(repo: Path) -> None:
    backend = WritingBackend()
    executor = TaskExecutor(repo, _tracker(), backend, AgentConfig())

    result = asyncio.run(executor.execute(99, _context()))

    assert not result.success
    assert "not found" in (result.error or "")
    assert backend.prompts == []


def test_dry_run_builds_prompt_but_never_calls_agent(repo: Path) -> None:
    tracker = _tracker()
    backend = WritingBackend()
    executor = TaskExecutor(repo, tracker, backend, AgentConfig())

    result = asyncio.run(executor.execute(12, _context(dry_run=True)))

    assert result.success
    assert result.summary == "dry run"
    assert backend.prompts == []
    assert tracker.labels == []
    assert tracker.comments == []


def test_workspace_path_is_used_as_agent_cwd(repo: Path, tmp_path: Path) -> None:
    worktree = tmp_path / "wt"
    _git(repo, "worktree", "add", str(worktree), "-b", "convoy/issue-12", "main")
    backend = WritingBackend()
    executor = TaskExecutor(repo, _tracker(), backend, AgentConfig(auto_pr=False))

    result = asyncio.run(executor.execute(12, _context(workspace_path=worktree)))

    assert result.success
    assert backend.cwds == [worktree]
    assert (worktree / "feature.py").exists()
    assert not (repo / "feature.py").exists()
    assert result.submission_ref == GitClient(worktree).head_sha()
