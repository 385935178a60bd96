from __future__ import annotations

import os
from typing import Any

from convoy.backends.base import BackendEventHook, CLIAgentBackend

# Variables that make a nested claude process believe it runs inside another session.
_NESTED_SESSION_VARS = ("CLAUDECODE", "CLAUDE_CODE")


class ClaudeCodeBackend(CLIAgentBackend):
    name = "claude"

    def __init__(self, binary: str = "claude", event_hook: BackendEventHook | None = None) -> None:
        super().__init__(binary, event_hook)

    def build_command(self, prompt: str, model: str | None) -> list[str]:
        command = [
            self.binary,
            "--print",
            "--dangerously-skip-permissions",
            "--no-session-persistence",
        ]
        if model and model.strip():
            command.extend(["--model", model.strip()])
        command.extend(["--verbose", "--output-format", "stream-json"])
        return command

    def prompt_stdin(self, prompt: str) -> str | None:
        return prompt

    def build_env(self) -> dict[str, str] | None:
        env = os.environ.copy()
        for key in _NESTED_SESSION_VARS:
            env.pop(key, None)
        return env

    def extract_content(self, event: dict[str, Any]) -> str:
        event_type = event.get("type")
        if event_type == "result":
            result = event.get("result")
            return result if isinstance(result, str) else ""
        if event_type != "assistant":
            return ""
        message = event.get("message")
        if not isinstance(message, dict):
            return ""
        content = message.get("content")
        if not isinstance(content, list):
            return ""
        parts: list[str] = []
        for item in content:
            if not isinstance(item, dict):
                continue
            if item.get("type") == "tool_use":
                self._emit({"event": "agent_tool", "backend": self.name, "tool": item.get("name")})
            elif item.get("type") == "text" and isinstance(item.get("text"), str):
                parts.append(item["text"])
        return "".join(parts)
