from __future__ import annotations

from convoy.logging_utils import get_logger
from convoy.orchestrator.outcome import OutcomeStatus, RunOutcome
from convoy.orchestrator.parallel import ParallelExecutor
from convoy.orchestrator.sprint import SprintSequencer
from convoy.state.run_state import RunKind, RunStateStore

logger = get_logger(__name__)


class ResumeController:
    """Continues the stored run. It never builds a new run state."""

    def __init__(
        self,
        store: RunStateStore,
        sprint: SprintSequencer,
        parallel: ParallelExecutor,
    ) -> None:
        self.store = store
        self.sprint = sprint
        self.parallel = parallel

    async def resume(self) -> RunOutcome:
        state = self.store.load()
        if state is None:
            return RunOutcome(
                status=OutcomeStatus.NOTHING_TO_RESUME,
                message="No run to resume.",
            )

        before = state.stats()
        logger.info(
            "Resuming %s run %s: %d done, %d failed, %d pending, %d interrupted",
            state.kind,
            state.run_id,
            before.done,
            before.failed,
            before.pending,
            before.in_progress,
        )
        for task in state.ordered_tasks():
            if task.reset_for_retry():
                self.store.save(state)

        if state.is_complete():
            self.store.clear()
            outcome = RunOutcome(
                status=OutcomeStatus.COMPLETED,
                run_id=state.run_id,
                message="Every task in the stored run is already done.",
            )
        else:
            match state.kind:
                case RunKind.SPRINT:
                    outcome = await self.sprint.run(state)
                case RunKind.PARALLEL:
                    outcome = await self.parallel.run(state)
        outcome.resumed_from = before
        return outcome
