from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path

from convoy.state.run_state import RunStats

RESUME_COMMAND = "convoy run --resume"
INTERRUPTED_REASON = "Interrupted by user"


class OutcomeStatus(StrEnum):
    COMPLETED = "completed"
    HALTED = "halted"
    PARTIAL = "partial"
    NOTHING_TO_RESUME = "nothing_to_resume"
    INTERRUPTED = "interrupted"


_EXIT_CODES = {
    OutcomeStatus.COMPLETED: 0,
    OutcomeStatus.NOTHING_TO_RESUME: 0,
    OutcomeStatus.HALTED: 1,
    OutcomeStatus.PARTIAL: 1,
    OutcomeStatus.INTERRUPTED: 130,
}


@dataclass(slots=True)
class RunOutcome:
    status: OutcomeStatus
    message: str
    run_id: str | None = None
    hint: str | None = None
    failed: list[int] = field(default_factory=list)
    preserved_workspaces: list[Path] = field(default_factory=list)
    resumed_from: RunStats | None = None

    @property
    def exit_code(self) -> int:
        return _EXIT_CODES[self.status]

    @property
    def ok(self) -> bool:
        return self.exit_code == 0
