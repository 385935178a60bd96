from convoy.orchestrator.outcome import (
    INTERRUPTED_REASON,
    RESUME_COMMAND,
    OutcomeStatus,
    RunOutcome,
)
from convoy.orchestrator.parallel import ParallelExecutor, TargetRejection, batches
from convoy.orchestrator.resume import ResumeController
from convoy.orchestrator.settings import RunSettings
from convoy.orchestrator.shutdown import ShutdownGuard
from convoy.orchestrator.sprint import SprintSequencer, sprint_branch_name

__all__ = [
    "INTERRUPTED_REASON",
    "RESUME_COMMAND",
    "OutcomeStatus",
    "ParallelExecutor",
    "ResumeController",
    "RunOutcome",
    "RunSettings",
    "ShutdownGuard",
    "SprintSequencer",
    "TargetRejection",
    "batches",
    "sprint_branch_name",
]
