from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from convoy.backends.base import AgentBackend
from convoy.config import AgentConfig
from convoy.git import GitClient, GitError
from convoy.logging_utils import get_logger
from convoy.prompts import PromptContext, build_execution_prompt
from convoy.tracker import (
    LABEL_DONE,
    LABEL_FAILED,
    LABEL_IN_PROGRESS,
    GitHubTracker,
    Issue,
    IssueComment,
    TrackerError,
)

logger = get_logger(__name__)

SUMMARY_COMMENT_CHARS = 2000


@dataclass(slots=True)
class ExecutionContext:
    provider: str
    model: str
    base_branch: str = "main"
    dry_run: bool = False
    workspace_path: Path | None = None
    prior_work_diff: str | None = None
    branch: str | None = None
    sprint: str | None = None
    position: str | None = None


@dataclass(slots=True)
class ExecutionResult:
    success: bool
    submission_ref: str | None = None
    error: str | None = None
    summary: str = ""


class TaskExecutor:
    """Runs one issue through the agent and turns the outcome into an ExecutionResult."""

    def __init__(
        self,
        project_root: Path,
        tracker: GitHubTracker,
        backend: AgentBackend,
        agent_config: AgentConfig,
    ) -> None:
        self.project_root = project_root.resolve()
        self.tracker = tracker
        self.backend = backend
        self.agent_config = agent_config

    def _label(self, issue: int, label: str) -> None:
        if self.agent_config.auto_label:
            self.tracker.set_status_label(issue, label)

    def _comment(self, issue: int, body: str) -> None:
        try:
            self.tracker.add_comment(issue, body)
        except TrackerError as exc:
            logger.warning("Could not comment on #%d: %s", issue, exc)

    def _comments(self, issue: int) -> list[IssueComment]:
        try:
            return self.tracker.issue_comments(issue)
        except TrackerError as exc:
            logger.warning("Could not load comments for #%d: %s", issue, exc)
            return []

    async def _run_agent(self, prompt: str, cwd: Path, model: str) -> str:
        chunks: list[str] = []
        async for chunk in self.backend.execute(prompt, cwd=cwd, model=model):
            chunks.append(chunk)
        return "".join(chunks).strip()

    def _submit(self, issue: Issue, cwd: Path, context: ExecutionContext) -> str | None:
        git = GitClient(cwd)
        sha = git.commit_all(f"{issue.title} (#{issue.number})")
        if sha is None:
            logger.warning("Agent left no changes for #%d", issue.number)
            return None
        if not self.agent_config.auto_pr:
            return sha
        # Past the commit the task counts as done; publishing is best-effort.
        try:
            return self._publish(git, issue, context)
        except (GitError, TrackerError) as exc:
            logger.warning(
                "Committed #%d as %s but could not open a PR: %s", issue.number, sha, exc
            )
            self._comment(
                issue.number,
                f"Changes were committed as {sha} but no pull request was opened:\n\n"
                f"```\n{str(exc)[:1000]}\n```",
            )
            return sha

    def _publish(self, git: GitClient, issue: Issue, context: ExecutionContext) -> str:
        branch = context.branch or git.current_branch()
        # Sprint branches are rewritten by the pre-task rebase.
        git.push(branch, force_with_lease=True)
        title = f"[{context.sprint}] {issue.title}" if context.sprint else issue.title
        number = self.tracker.find_or_create_pull_request(
            head=branch,
            base=context.base_branch,
            title=title,
            body=f"Closes #{issue.number}",
        )
        return f"#{number}"

    async def execute(self, issue_number: int, context: ExecutionContext) -> ExecutionResult:
        try:
            issue = self.tracker.get_issue(issue_number)
        except TrackerError as exc:
            return ExecutionResult(success=False, error=f"Could not load issue: {exc}")

        if not context.dry_run:
            self._label(issue_number, LABEL_IN_PROGRESS)

        prompt = build_execution_prompt(
            PromptContext(
                issue=issue,
                project_root=context.workspace_path or self.project_root,
                base_branch=context.base_branch,
                provider=context.provider,
                model=context.model,
                comments=self._comments(issue_number),
                sprint=context.sprint,
                position=context.position,
                prior_work_diff=context.prior_work_diff,
            )
        )

        if context.dry_run:
            logger.info(
                "[dry run] would run %s (%s) on #%d: %s (%d prompt chars)",
                context.provider,
                context.model,
                issue_number,
                issue.title,
                len(prompt),
            )
            return ExecutionResult(success=True, summary="dry run")

        cwd = context.workspace_path or self.project_root
        logger.info("Running %s on #%d in %s", context.provider, issue_number, cwd)
        try:
            summary = await self._run_agent(prompt, cwd, context.model)
            submission_ref = self._submit(issue, cwd, context)
        except Exception as exc:
            error = str(exc) or exc.__class__.__name__
            logger.error("Task #%d failed: %s", issue_number, error)
            self._label(issue_number, LABEL_FAILED)
            self._comment(issue_number, f"**Task failed**\n\n```\n{error[:1000]}\n```")
            return ExecutionResult(success=False, error=error)

        self._label(issue_number, LABEL_DONE)
        ref_line = f"\n\nSubmitted as {submission_ref}." if submission_ref else ""
        self._comment(
            issue_number,
            f"**Task completed**{ref_line}\n\n{summary[:SUMMARY_COMMENT_CHARS]}".rstrip(),
        )
        return ExecutionResult(success=True, submission_ref=submission_ref, summary=summary)
