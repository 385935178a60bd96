from __future__ import annotations

import json
import os
import tempfile
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from pathlib import Path
from typing import Any
from uuid import uuid4

from convoy.config import CONFIG_DIR, ensure_project_dir
from convoy.logging_utils import get_logger

logger = get_logger(__name__)

RUN_STATE_FILE = "run-state.json"
SCHEMA_VERSION = 1


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


class RunStateError(RuntimeError):
    """Raised when run-state operations fail."""


class RunInProgressError(RunStateError):
    """Raised when a new run would replace one that still has work left."""


class InvalidTransitionError(RunStateError):
    """Raised when a task status change is not part of the lifecycle."""


class TaskStatus(StrEnum):
    PENDING = "pending"
    IN_PROGRESS = "in-progress"
    DONE = "done"
    FAILED = "failed"


class RunKind(StrEnum):
    SPRINT = "sprint"
    PARALLEL = "parallel"


# failed -> pending and in-progress -> pending are not listed here;
# only RunTask.reset_for_retry() may take them.
_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.PENDING: frozenset({TaskStatus.IN_PROGRESS, TaskStatus.FAILED}),
    TaskStatus.IN_PROGRESS: frozenset({TaskStatus.DONE, TaskStatus.FAILED}),
    TaskStatus.DONE: frozenset(),
    TaskStatus.FAILED: frozenset(),
}


@dataclass(slots=True)
class RunTask:
    issue: int
    order: int | None = None
    status: TaskStatus = TaskStatus.PENDING
    submission_ref: str | None = None
    error: str | None = None
    failed_at: str | None = None
    completed_at: str | None = None

    def _move(self, target: TaskStatus) -> None:
        if target not in _TRANSITIONS[self.status]:
            raise InvalidTransitionError(
                f"Task #{self.issue} cannot move from {self.status} to {target}."
            )
        self.status = target

    def start(self) -> None:
        self._move(TaskStatus.IN_PROGRESS)

    def complete(self, submission_ref: str | None = None) -> None:
        self._move(TaskStatus.DONE)
        self.completed_at = _utcnow_iso()
        if submission_ref:
            self.submission_ref = submission_ref

    def fail(self, error: str) -> None:
        self._move(TaskStatus.FAILED)
        self.error = error
        self.failed_at = _utcnow_iso()

    def reset_for_retry(self) -> bool:
        """Put a failed or interrupted task back in the queue. Returns True if it changed."""
        match self.status:
            case TaskStatus.FAILED | TaskStatus.IN_PROGRESS:
                self.status = TaskStatus.PENDING
                self.error = None
                self.failed_at = None
                return True
            case TaskStatus.PENDING | TaskStatus.DONE:
                return False

    def to_dict(self) -> dict[str, Any]:
        return {
            "issue": self.issue,
            "order": self.order,
            "status": self.status.value,
            "submission_ref": self.submission_ref,
            "error": self.error,
            "failed_at": self.failed_at,
            "completed_at": self.completed_at,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> RunTask:
        order = payload.get("order")
        return cls(
            issue=int(payload["issue"]),
            order=int(order) if order is not None else None,
            status=TaskStatus(payload.get("status", TaskStatus.PENDING)),
            submission_ref=payload.get("submission_ref"),
            error=payload.get("error"),
            failed_at=payload.get("failed_at"),
            completed_at=payload.get("completed_at"),
        )


@dataclass(slots=True)
class RunStats:
    total: int
    done: int
    failed: int
    pending: int
    in_progress: int


@dataclass(slots=True)
class RunState:
    run_id: str
    kind: RunKind
    tasks: list[RunTask]
    base_branch: str = "main"
    branch: str | None = None
    sprint: str | None = None
    started_at: str = field(default_factory=_utcnow_iso)

    def __post_init__(self) -> None:
        if not self.tasks:
            raise ValueError("A run needs at least one task.")
        seen: set[int] = set()
        for task in self.tasks:
            if task.issue in seen:
                raise ValueError(f"Issue #{task.issue} appears more than once in the run.")
            seen.add(task.issue)
        if self.kind is RunKind.SPRINT and not self.branch:
            raise ValueError("Sprint runs need a shared branch.")
        if self.kind is RunKind.PARALLEL and self.branch:
            raise ValueError("Parallel runs do not use a shared branch.")

    def task(self, issue: int) -> RunTask:
        for task in self.tasks:
            if task.issue == issue:
                return task
        raise KeyError(issue)

    def ordered_tasks(self) -> list[RunTask]:
        """Tasks by ascending order, unordered last, ties kept in list position."""
        indexed = list(enumerate(self.tasks))
        indexed.sort(
            key=lambda item: (item[1].order is None, item[1].order or 0, item[0])
        )
        return [task for _, task in indexed]

    def stats(self) -> RunStats:
        counts = {status: 0 for status in TaskStatus}
        for task in self.tasks:
            counts[task.status] += 1
        return RunStats(
            total=len(self.tasks),
            done=counts[TaskStatus.DONE],
            failed=counts[TaskStatus.FAILED],
            pending=counts[TaskStatus.PENDING],
            in_progress=counts[TaskStatus.IN_PROGRESS],
        )

    def is_complete(self) -> bool:
        return all(task.status is TaskStatus.DONE for task in self.tasks)

    def has_unfinished_work(self) -> bool:
        return any(
            task.status in {TaskStatus.PENDING, TaskStatus.IN_PROGRESS} for task in self.tasks
        )

    def failed_tasks(self) -> list[RunTask]:
        return [task for task in self.ordered_tasks() if task.status is TaskStatus.FAILED]

    def to_dict(self) -> dict[str, Any]:
        return {
            "schema_version": SCHEMA_VERSION,
            "run_id": self.run_id,
            "kind": self.kind.value,
            "sprint": self.sprint,
            "branch": self.branch,
            "base_branch": self.base_branch,
            "started_at": self.started_at,
            "tasks": [task.to_dict() for task in self.tasks],
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> RunState:
        return cls(
            run_id=str(payload["run_id"]),
            kind=RunKind(payload["kind"]),
            tasks=[RunTask.from_dict(item) for item in payload.get("tasks", [])],
            base_branch=str(payload.get("base_branch") or "main"),
            branch=payload.get("branch"),
            sprint=payload.get("sprint"),
            started_at=str(payload.get("started_at") or _utcnow_iso()),
        )


def new_run_id() -> str:
    stamp = datetime.now(UTC).strftime("%Y%m%dT%H%M%S")
    return f"run-{stamp}-{uuid4().hex[:6]}"


def create_sprint_run_state(
    sprint: str,
    branch: str,
    base_branch: str,
    issues: Sequence[tuple[int, int | None]],
    *,
    done: Iterable[int] = (),
) -> RunState:
    """Build a sprint run from ``(issue, order)`` pairs.

    The order is captured here once; later changes to order labels on the
    tracker never reshuffle a run that is already stored.
    """
    already_done = set(done)
    tasks = [
        RunTask(
            issue=number,
            order=order,
            status=TaskStatus.DONE if number in already_done else TaskStatus.PENDING,
        )
        for number, order in issues
    ]
    state = RunState(
        run_id=new_run_id(),
        kind=RunKind.SPRINT,
        tasks=tasks,
        base_branch=base_branch,
        branch=branch,
        sprint=sprint,
    )
    state.tasks = state.ordered_tasks()
    return state


def create_parallel_run_state(issue_numbers: Sequence[int], base_branch: str) -> RunState:
    return RunState(
        run_id=new_run_id(),
        kind=RunKind.PARALLEL,
        tasks=[RunTask(issue=number, order=index) for index, number in enumerate(issue_numbers, 1)],
        base_branch=base_branch,
    )


class RunStateStore:
    """Single-document persistence for the active run under ``.convoy/``."""

    def __init__(self, project_root: Path) -> None:
        self.project_root = project_root.resolve()
        self.path = self.project_root / CONFIG_DIR / RUN_STATE_FILE

    def exists(self) -> bool:
        return self.path.exists()

    def load(self) -> RunState | None:
        if not self.path.exists():
            return None
        try:
            payload = json.loads(self.path.read_text(encoding="utf-8"))
            return RunState.from_dict(payload)
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as exc:
            logger.warning("Ignoring unreadable run state at %s: %s", self.path, exc)
            return None

    def save(self, state: RunState) -> None:
        ensure_project_dir(self.project_root)
        serialized = json.dumps(state.to_dict(), ensure_ascii=False, indent=2) + "\n"
        fd, tmp_name = tempfile.mkstemp(
            prefix=".run-state-", suffix=".tmp", dir=self.path.parent
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(serialized)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_name, self.path)
        except BaseException:
            try:
                os.unlink(tmp_name)
            except FileNotFoundError:
                pass
            raise

    def clear(self) -> None:
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass

    def ensure_can_start(self) -> None:
        existing = self.load()
        if existing is None:
            return
        if existing.has_unfinished_work():
            stats = existing.stats()
            raise RunInProgressError(
                f"Run {existing.run_id} is still active "
                f"({stats.done}/{stats.total} done, {stats.pending} pending, "
                f"{stats.in_progress} in progress). "
                "Continue it with `convoy run --resume` or discard it with `convoy cancel`."
            )
        failed = [f"#{task.issue}" for task in existing.failed_tasks()]
        if failed:
            logger.warning(
                "Discarding finished run %s with failed tasks: %s",
                existing.run_id,
                ", ".join(failed),
            )
        self.clear()
