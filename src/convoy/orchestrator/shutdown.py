from __future__ import annotations

import asyncio
import os
import signal
import time
from collections.abc import Callable
from types import FrameType
from typing import Any

from convoy.logging_utils import get_logger
from convoy.orchestrator.outcome import INTERRUPTED_REASON, RESUME_COMMAND
from convoy.state.run_state import RunState, RunStateStore, TaskStatus

logger = get_logger(__name__)

FORCE_EXIT_WINDOW_SECONDS = 2.0
_SIGNALS = (signal.SIGINT, signal.SIGTERM)


class ShutdownGuard:
    """Turns SIGINT/SIGTERM into a persisted, resumable stop.

    The first signal marks running tasks failed, saves the run and cancels the
    main task. A second signal inside the force window saves once more and exits.
    """

    def __init__(
        self,
        store: RunStateStore,
        *,
        exit_func: Callable[[int], Any] = os._exit,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.store = store
        self.state: RunState | None = None
        self.stop_requested = False
        self._exit = exit_func
        self._clock = clock
        self._last_signal_at: float | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._main_task: asyncio.Task[Any] | None = None
        self._previous: dict[int, Any] = {}

    def track(self, state: RunState) -> None:
        self.state = state

    def mark_interrupted(self) -> list[int]:
        if self.state is None:
            return []
        interrupted: list[int] = []
        for task in self.state.tasks:
            if task.status is TaskStatus.IN_PROGRESS:
                task.fail(INTERRUPTED_REASON)
                interrupted.append(task.issue)
        self.store.save(self.state)
        return interrupted

    def handle_signal(self, signum: int) -> None:
        now = self._clock()
        if (
            self.stop_requested
            and self._last_signal_at is not None
            and now - self._last_signal_at < FORCE_EXIT_WINDOW_SECONDS
        ):
            logger.error("Second interrupt received, forcing exit")
            self.mark_interrupted()
            self._exit(1)
            return

        self.stop_requested = True
        self._last_signal_at = now
        interrupted = self.mark_interrupted()
        logger.warning(
            "Received %s; stopping run (%d task(s) interrupted). Resume with: %s",
            signal.Signals(signum).name,
            len(interrupted),
            RESUME_COMMAND,
        )
        if self._main_task is not None and not self._main_task.done():
            self._main_task.cancel()

    def _on_signal(self, signum: int, frame: FrameType | None) -> None:
        # A forced exit must not wait for a loop that may be blocked.
        if self.stop_requested:
            self.handle_signal(signum)
        elif self._loop is not None and self._loop.is_running():
            self._loop.call_soon_threadsafe(self.handle_signal, signum)
        else:
            self.handle_signal(signum)

    def install(self) -> None:
        self._loop = asyncio.get_running_loop()
        self._main_task = asyncio.current_task()
        for sig in _SIGNALS:
            self._previous[sig] = signal.getsignal(sig)
            signal.signal(sig, self._on_signal)

    def uninstall(self) -> None:
        for sig, previous in self._previous.items():
            signal.signal(sig, previous)
        self._previous.clear()
        self._loop = None
        self._main_task = None

    def __enter__(self) -> ShutdownGuard:
        self.install()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.uninstall()
