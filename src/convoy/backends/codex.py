from __future__ import annotations

from typing import Any

from convoy.backends.base import BackendEventHook, CLIAgentBackend


class CodexBackend(CLIAgentBackend):
    name = "codex"

    def __init__(self, binary: str = "codex", event_hook: BackendEventHook | None = None) -> None:
        super().__init__(binary, event_hook)

    def build_command(self, prompt: str, model: str | None) -> list[str]:
        command = [self.binary, "exec", "--full-auto", "--skip-git-repo-check", "--json"]
        if model and model.strip():
            command.extend(["--model", model.strip()])
        # "-" reads the prompt from stdin; long prompts overflow argv limits.
        command.append("-")
        return command

    def prompt_stdin(self, prompt: str) -> str | None:
        return prompt

    def extract_content(self, event: dict[str, Any]) -> str:
        item = event.get("item")
        if not isinstance(item, dict):
            return ""
        item_type = item.get("type")
        event_type = event.get("type")
        if event_type == "item.started" and item_type == "command_execution":
            self._emit(
                {
                    "event": "agent_tool",
                    "backend": self.name,
                    "command": str(item.get("command", ""))[:80],
                }
            )
            return ""
        if event_type == "item.completed" and item_type == "agent_message":
            text = item.get("text")
            return text if isinstance(text, str) else ""
        return ""
