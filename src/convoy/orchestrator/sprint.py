from __future__ import annotations

import asyncio
from typing import Protocol

from convoy.executor import ExecutionContext, ExecutionResult
from convoy.git import GitClient, GitError
from convoy.logging_utils import get_logger
from convoy.orchestrator.outcome import (
    INTERRUPTED_REASON,
    RESUME_COMMAND,
    OutcomeStatus,
    RunOutcome,
)
from convoy.orchestrator.settings import RunSettings
from convoy.orchestrator.shutdown import ShutdownGuard
from convoy.state.run_state import RunKind, RunState, RunStateStore, RunTask, TaskStatus
from convoy.workspace.conflict import ConflictGuard

logger = get_logger(__name__)


class Executor(Protocol):
    async def execute(self, issue_number: int, context: ExecutionContext) -> ExecutionResult: ...


def sprint_branch_name(sprint: str) -> str:
    slug = "".join(ch if ch.isalnum() else "-" for ch in sprint.lower()).strip("-")
    while "--" in slug:
        slug = slug.replace("--", "-")
    return f"convoy/sprint-{slug or 'unnamed'}"


class SprintSequencer:
    """Runs a sprint's tasks one at a time, in order, on one shared branch."""

    def __init__(
        self,
        store: RunStateStore,
        executor: Executor,
        git: GitClient,
        guard: ConflictGuard,
        settings: RunSettings,
        shutdown: ShutdownGuard | None = None,
    ) -> None:
        self.store = store
        self.executor = executor
        self.git = git
        self.guard = guard
        self.settings = settings
        self.shutdown = shutdown

    def _stop_requested(self) -> bool:
        return self.shutdown is not None and self.shutdown.stop_requested

    def _halt(self, state: RunState, task: RunTask, message: str, hint: str) -> RunOutcome:
        logger.warning("Sprint halted at #%d: %s", task.issue, message)
        return RunOutcome(
            status=OutcomeStatus.HALTED,
            run_id=state.run_id,
            message=message,
            hint=hint,
            failed=[item.issue for item in state.failed_tasks()],
        )

    async def run_task(
        self,
        state: RunState,
        task: RunTask,
        position: int = 1,
    ) -> ExecutionResult:
        task.start()
        self.store.save(state)
        logger.info("Starting #%d (%d/%d)", task.issue, position, len(state.tasks))
        try:
            prior_work = None if self.settings.dry_run else self.git.diff(state.base_branch)
            context = ExecutionContext(
                provider=self.settings.provider,
                model=self.settings.model,
                base_branch=state.base_branch,
                dry_run=self.settings.dry_run,
                prior_work_diff=prior_work or None,
                branch=state.branch,
                sprint=state.sprint,
                position=f"{position}/{len(state.tasks)}",
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
            task.complete(result.submission_ref)
            logger.info("Finished #%d (%s)", task.issue, result.submission_ref or "no submission")
        else:
            task.fail(result.error or "task failed")
            logger.warning("Task #%d failed: %s", task.issue, task.error)
        self.store.save(state)
        return result

    async def run(self, state: RunState) -> RunOutcome:
        if state.kind is not RunKind.SPRINT or not state.branch:
            raise ValueError("SprintSequencer only runs sprint runs.")
        if self.shutdown is not None:
            self.shutdown.track(state)

        if not self.settings.dry_run:
            try:
                self.git.checkout_branch(state.branch, state.base_branch)
            except GitError as exc:
                return RunOutcome(
                    status=OutcomeStatus.HALTED,
                    run_id=state.run_id,
                    message=f"Could not check out sprint branch {state.branch}: {exc}",
                    hint=f"Fix the working tree, then run `{RESUME_COMMAND}`.",
                )

        for position, task in enumerate(state.ordered_tasks()):
            if task.status is not TaskStatus.PENDING:
                continue
            if self._stop_requested():
                return RunOutcome(
                    status=OutcomeStatus.INTERRUPTED,
                    run_id=state.run_id,
                    message="Run interrupted before all tasks finished.",
                    hint=f"Resume with: {RESUME_COMMAND}",
                    failed=[item.issue for item in state.failed_tasks()],
                )

            if position > 0 and self.settings.rebase_before_task:
                try:
                    verdict = self.guard.guard()
                except GitError as exc:
                    task.fail(f"conflict check failed: {exc}")
                    self.store.save(state)
                    return self._halt(
                        state,
                        task,
                        f"Could not check #{task.issue} against {state.base_branch}: {exc}",
                        f"Fix the repository state, then run `{RESUME_COMMAND}`.",
                    )
                if verdict.halted:
                    task.fail(verdict.reason or verdict.decision.value)
                    self.store.save(state)
                    return self._halt(
                        state,
                        task,
                        f"Task #{task.issue} stopped the sprint: {verdict.describe()}",
                        (
                            f"Resolve the conflict on {state.branch} against "
                            f"{state.base_branch} manually, then run `{RESUME_COMMAND}`."
                        ),
                    )

            result = await self.run_task(state, task, position + 1)
            if not result.success and self.settings.stop_on_failure:
                return self._halt(
                    state,
                    task,
                    f"Task #{task.issue} failed: {task.error}",
                    f"Fix the cause, then run `{RESUME_COMMAND}` to retry from #{task.issue}.",
                )

        stats = state.stats()
        if state.is_complete():
            self.store.clear()
            return RunOutcome(
                status=OutcomeStatus.COMPLETED,
                run_id=state.run_id,
                message=f"Sprint {state.sprint} finished: {stats.done}/{stats.total} done.",
            )
        return RunOutcome(
            status=OutcomeStatus.PARTIAL,
            run_id=state.run_id,
            message=(
                f"Sprint {state.sprint} finished with failures: "
                f"{stats.done} done, {stats.failed} failed."
            ),
            hint=f"Retry the failed tasks with `{RESUME_COMMAND}`.",
            failed=[item.issue for item in state.failed_tasks()],
        )
