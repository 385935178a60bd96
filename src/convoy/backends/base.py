from __future__ import annotations

import asyncio
import json
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Callable
from pathlib import Path
from typing import Any

BackendEventHook = Callable[[dict[str, Any]], None]


class BackendExecutionError(RuntimeError):
    """Raised when a backend process execution fails."""

    def __init__(
        self,
        message: str,
        *,
        backend: str | None = None,
        exit_code: int | None = None,
        retriable: bool = True,
    ) -> None:
        super().__init__(message)
        self.backend = backend
        self.exit_code = exit_code
        self.retriable = retriable


class BackendTimeoutError(BackendExecutionError):
    """Raised when backend execution exceeds configured timeout."""


class BackendProcessError(BackendExecutionError):
    """Raised when backend process lifecycle fails."""


class AgentBackend(ABC):
    name: str = "agent"

    @abstractmethod
    def execute(
        self,
        prompt: str,
        *,
        cwd: Path,
        model: str | None = None,
    ) -> AsyncIterator[str]:
        """Run the agent inside ``cwd`` and stream textual chunks."""


class CLIAgentBackend(AgentBackend):
    """Shared process handling for agents driven through a JSON-lines CLI."""

    def __init__(self, binary: str, event_hook: BackendEventHook | None = None) -> None:
        self.binary = binary
        self.event_hook = event_hook

    def _emit(self, payload: dict[str, Any]) -> None:
        if self.event_hook is not None:
            self.event_hook(payload)

    @abstractmethod
    def build_command(self, prompt: str, model: str | None) -> list[str]:
        """Return the argv for one agent invocation."""

    def prompt_stdin(self, prompt: str) -> str | None:
        """Text written to the process stdin; ``None`` closes it immediately."""
        return None

    def build_env(self) -> dict[str, str] | None:
        return None

    @abstractmethod
    def extract_content(self, event: dict[str, Any]) -> str:
        """Pull displayable text out of one decoded event."""

    @staticmethod
    def _appears_partial_json(raw: str) -> bool:
        return raw.count("{") > raw.count("}") or raw.count("[") > raw.count("]")

    async def execute(
        self,
        prompt: str,
        *,
        cwd: Path,
        model: str | None = None,
    ) -> AsyncIterator[str]:
        command = self.build_command(prompt, model)
        stdin_text = self.prompt_stdin(prompt)
        self._emit({"event": "agent_start", "backend": self.name, "cwd": str(cwd), "model": model})
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(cwd),
                env=self.build_env(),
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise BackendProcessError(
                f"{self.name} binary not found: {self.binary}",
                backend=self.name,
                retriable=False,
            ) from exc

        if process.stdout is None or process.stdin is None:
            raise BackendProcessError(
                f"{self.name} backend did not expose its pipes.",
                backend=self.name,
                retriable=False,
            )

        stderr_task = asyncio.ensure_future(process.stderr.read()) if process.stderr else None
        try:
            if stdin_text is not None:
                process.stdin.write(stdin_text.encode("utf-8"))
                await process.stdin.drain()
            process.stdin.close()

            parse_buffer = ""
            async for raw_line in process.stdout:
                line = raw_line.decode("utf-8", errors="replace").strip()
                if not line:
                    continue
                candidate = f"{parse_buffer}{line}" if parse_buffer else line
                try:
                    event = json.loads(candidate)
                    parse_buffer = ""
                except json.JSONDecodeError:
                    if self._appears_partial_json(candidate):
                        parse_buffer = candidate
                        continue
                    parse_buffer = ""
                    yield line
                    continue

                if not isinstance(event, dict):
                    continue
                content = self.extract_content(event)
                if content:
                    yield content

            if parse_buffer:
                yield parse_buffer

            return_code = await process.wait()
            stderr_bytes = await stderr_task if stderr_task is not None else b""
        finally:
            if process.returncode is None:
                process.kill()
                await process.wait()
                self._emit({"event": "agent_killed", "backend": self.name})
            if stderr_task is not None and not stderr_task.done():
                stderr_task.cancel()

        stderr_output = stderr_bytes.decode("utf-8", errors="replace").strip()
        self._emit({"event": "agent_exit", "backend": self.name, "exit_code": return_code})
        if return_code != 0:
            raise BackendExecutionError(
                f"{self.name} exited with code {return_code}: {stderr_output[:400]}",
                backend=self.name,
                exit_code=return_code,
                retriable=True,
            )
