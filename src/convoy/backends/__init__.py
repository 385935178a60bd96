from __future__ import annotations

from convoy.backends.base import (
    AgentBackend,
    BackendEventHook,
    BackendExecutionError,
    BackendProcessError,
    BackendTimeoutError,
    CLIAgentBackend,
)
from convoy.backends.claude import ClaudeCodeBackend
from convoy.backends.codex import CodexBackend
from convoy.backends.resilient import ResilientBackend, RetryPolicy
from convoy.config import BackendConfig

__all__ = [
    "AgentBackend",
    "BackendEventHook",
    "BackendExecutionError",
    "BackendProcessError",
    "BackendTimeoutError",
    "CLIAgentBackend",
    "ClaudeCodeBackend",
    "CodexBackend",
    "ResilientBackend",
    "RetryPolicy",
    "backend_for",
    "build_backend",
]


def backend_for(provider: str, event_hook: BackendEventHook | None = None) -> AgentBackend:
    if provider == "claude":
        return ClaudeCodeBackend(event_hook=event_hook)
    if provider == "codex":
        return CodexBackend(event_hook=event_hook)
    raise ValueError(f"Unsupported AI provider: {provider}")


def build_backend(
    provider: str,
    config: BackendConfig,
    event_hook: BackendEventHook | None = None,
) -> ResilientBackend:
    return ResilientBackend(
        primary_name=provider,
        primary_backend=backend_for(provider, event_hook),
        fallback_name=config.fallback,
        fallback_backend=backend_for(config.fallback, event_hook),
        retry_policy=RetryPolicy(
            max_retries=max(0, int(config.max_retries)),
            backoff_seconds=float(config.retry_backoff_seconds),
            timeout_seconds=float(config.timeout_seconds),
        ),
        event_hook=event_hook,
    )
