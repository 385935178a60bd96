import signal
from pathlib import Path

from convoy.orchestrator.outcome import INTERRUPTED_REASON
from convoy.orchestrator.shutdown import ShutdownGuard
from convoy.state.run_state import RunStateStore, TaskStatus, create_parallel_run_state


class FakeClock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


def _guard(tmp_path: Path, clock: FakeClock, exits: list[int]) -> ShutdownGuard:
    return ShutdownGuard(RunStateStore(tmp_path), exit_func=exits.append, clock=clock)


def _running_state():
    state = create_parallel_run_state([1, 2, 3], "main")
    state.task(1).start()
    state.task(1).complete("sha1")
    state.task(2).start()
    return state


def test_first_signal_persists_interrupted_tasks(tmp_path: Path) -> None:
    exits: list[int] = []
    guard = _guard(tmp_path, FakeClock(), exits)
    guard.track(_running_state())

    guard.handle_signal(signal.SIGINT)

    assert guard.stop_requested
    assert exits == []
    stored = guard.store.load()
    assert stored is not None
    assert stored.task(1).status is TaskStatus.DONE
    assert stored.task(2).status is TaskStatus.FAILED
    assert stored.task(2).error == INTERRUPTED_REASON
    assert stored.task(3).status is TaskStatus.PENDING


def test_second_signal_inside_window_forces_exit(tmp_path: Path) -> None:
    clock = FakeClock()
    exits: list[int] = []
    guard = _guard(tmp_path, clock, exits)
    guard.track(_running_state())

    guard.handle_signal(signal.SIGINT)
    clock.now += 0.5
    guard.handle_signal(signal.SIGINT)

    assert exits == [1]
    assert guard.store.exists()


def test_second_signal_after_window_does_not_force_exit(tmp_path: Path) -> None:
    clock = FakeClock()
    exits: list[int] = []
    guard = _guard(tmp_path, clock, exits)
    guard.track(_running_state())

    guard.handle_signal(signal.SIGTERM)
    clock.now += 5
    guard.handle_signal(signal.SIGTERM)

    assert exits == []


def test_signal_without_tracked_run_saves_nothing(tmp_path: Path) -> None:
    guard = _guard(tmp_path, FakeClock(), [])

    guard.handle_signal(signal.SIGINT)

    assert guard.stop_requested
    assert not guard.store.exists()
