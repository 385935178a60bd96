from convoy.state.run_state import (
    InvalidTransitionError,
    RunInProgressError,
    RunKind,
    RunState,
    RunStateError,
    RunStateStore,
    RunStats,
    RunTask,
    TaskStatus,
    create_parallel_run_state,
    create_sprint_run_state,
)

__all__ = [
    "InvalidTransitionError",
    "RunInProgressError",
    "RunKind",
    "RunState",
    "RunStateError",
    "RunStateStore",
    "RunStats",
    "RunTask",
    "TaskStatus",
    "create_parallel_run_state",
    "create_sprint_run_state",
]
