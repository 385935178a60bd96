from __future__ import annotations

import asyncio
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

from convoy.executor import ExecutionContext, ExecutionResult
from convoy.git import GitError
from convoy.logging_utils import get_logger
from convoy.orchestrator.outcome import (
    INTERRUPTED_REASON,
    RESUME_COMMAND,
    OutcomeStatus,
    RunOutcome,
)
from convoy.orchestrator.settings import RunSettings
from convoy.orchestrator.shutdown import ShutdownGuard
from convoy.orchestrator.sprint import Executor
from convoy.state.run_state import RunState, RunStateStore, RunTask, TaskStatus
from convoy.tracker import GitHubTracker, TrackerError
from convoy.workspace.worktree import Workspace, WorkspaceError, WorktreeManager

logger = get_logger(__name__)


@dataclass(slots=True)
class TargetRejection:
    issue: int
    reason: str


def batches(tasks: Sequence[RunTask], size: int) -> list[list[RunTask]]:
    step = max(1, size)
    return [list(tasks[index : index + step]) for index in range(0, len(tasks), step)]


class ParallelExecutor:
    """Runs independent issues in fixed-size concurrent batches, one worktree each."""

    def __init__(
        self,
        store: RunStateStore,
        executor: Executor,
        worktrees: WorktreeManager,
        tracker: GitHubTracker,
        settings: RunSettings,
        shutdown: ShutdownGuard | None = None,
    ) -> None:
        self.store = store
        self.executor = executor
        self.worktrees = worktrees
        self.tracker = tracker
        self.settings = settings
        self.shutdown = shutdown

    def validate_targets(self, issues: Sequence[int]) -> list[TargetRejection]:
        """Sprint issues must go through the sprint sequencer, never a parallel run."""
        rejections: list[TargetRejection] = []
        for number in issues:
            try:
                issue = self.tracker.get_issue(number)
            except TrackerError as exc:
                rejections.append(TargetRejection(number, f"could not be looked up: {exc}"))
                continue
            if issue.milestone:
                rejections.append(
                    TargetRejection(
                        number,
                        f"belongs to sprint '{issue.milestone}'; "
                        f"run it with `convoy run --sprint \"{issue.milestone}\"`",
                    )
                )
        return rejections

    def _allocate(self, task: RunTask, base_branch: str) -> Workspace | None:
        try:
            return self.worktrees.allocate(task.issue, base_branch)
        except (WorkspaceError, GitError, OSError) as exc:
            logger.warning(
                "Could not isolate #%d, running it in the project root instead: %s",
                task.issue,
                exc,
            )
            return None

    def _release(self, workspace: Workspace) -> None:
        try:
            self.worktrees.release(workspace.issue, keep_branch=not self.settings.auto_pr)
        except (WorkspaceError, GitError, OSError) as exc:
            logger.warning("Could not remove worktree for #%d: %s", workspace.issue, exc)

    async def _run_one(self, state: RunState, task: RunTask) -> Path | None:
        """Run one task to a terminal status. Returns the workspace kept for inspection."""
        try:
            return await self._attempt(state, task)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            # A single task must never raise into gather.
            logger.exception("Unexpected error while running #%d", task.issue)
            if task.status in (TaskStatus.PENDING, TaskStatus.IN_PROGRESS):
                task.fail(str(exc) or exc.__class__.__name__)
                self.store.save(state)
            return None

    async def _attempt(self, state: RunState, task: RunTask) -> Path | None:
        task.start()
        self.store.save(state)
        workspace = self._allocate(task, state.base_branch)
        try:
            context = ExecutionContext(
                provider=self.settings.provider,
                model=self.settings.model,
                base_branch=state.base_branch,
                dry_run=self.settings.dry_run,
                workspace_path=(
                    None if workspace is None or self.settings.dry_run else workspace.path
                ),
                branch=workspace.branch if workspace is not None else None,
            )
            result = await self.executor.execute(task.issue, context)
        except asyncio.CancelledError:
            if task.status is TaskStatus.IN_PROGRESS:
                task.fail(INTERRUPTED_REASON)
                self.store.save(state)
            raise
        except Exception as exc:
            result = ExecutionResult(success=False, error=str(exc) or exc.__class__.__name__)

        if result.success:
            if workspace is not None:
                self._release(workspace)
            task.complete(result.submission_ref)
            self.store.save(state)
            logger.info("Finished #%d (%s)", task.issue, result.submission_ref or "no submission")
            return None

        task.fail(result.error or "task failed")
        self.store.save(state)
        logger.warning("Task #%d failed: %s", task.issue, task.error)
        if workspace is None or self.settings.dry_run:
            return None
        logger.info("Keeping worktree %s for inspection", workspace.path)
        return workspace.path

    async def run(self, state: RunState) -> RunOutcome:
        if self.shutdown is not None:
            self.shutdown.track(state)
        pending = [task for task in state.ordered_tasks() if task.status is TaskStatus.PENDING]
        preserved: list[Path] = []
        groups = batches(pending, self.settings.max_parallel)
        for index, group in enumerate(groups, 1):
            if self.shutdown is not None and self.shutdown.stop_requested:
                return RunOutcome(
                    status=OutcomeStatus.INTERRUPTED,
                    run_id=state.run_id,
                    message="Run interrupted before all batches started.",
                    hint=f"Resume with: {RESUME_COMMAND}",
                    failed=[item.issue for item in state.failed_tasks()],
                    preserved_workspaces=preserved,
                )
            logger.info(
                "Batch %d/%d: %s",
                index,
                len(groups),
                ", ".join(f"#{task.issue}" for task in group),
            )
            kept = await asyncio.gather(*(self._run_one(state, task) for task in group))
            preserved.extend(path for path in kept if path is not None)

        stats = state.stats()
        if state.is_complete():
            self.store.clear()
            return RunOutcome(
                status=OutcomeStatus.COMPLETED,
                run_id=state.run_id,
                message=f"All {stats.total} task(s) finished.",
            )
        failed = [item.issue for item in state.failed_tasks()]
        return RunOutcome(
            status=OutcomeStatus.PARTIAL,
            run_id=state.run_id,
            message=(
                f"{stats.done}/{stats.total} task(s) finished; "
                f"failed: {', '.join(f'#{number}' for number in failed)}."
            ),
            hint=f"Inspect the kept worktrees, then retry with `{RESUME_COMMAND}`.",
            failed=failed,
            preserved_workspaces=preserved,
        )
