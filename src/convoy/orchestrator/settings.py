from __future__ import annotations

from dataclasses import dataclass

from convoy.config import ConvoyConfig


@dataclass(slots=True)
class RunSettings:
    provider: str
    model: str
    base_branch: str = "main"
    dry_run: bool = False
    max_parallel: int = 3
    stop_on_failure: bool = True
    rebase_before_task: bool = True
    auto_pr: bool = True

    @classmethod
    def from_config(cls, config: ConvoyConfig, *, dry_run: bool = False) -> RunSettings:
        return cls(
            provider=config.ai.provider,
            model=config.ai.model,
            base_branch=config.agent.base_branch,
            dry_run=dry_run,
            max_parallel=max(1, int(config.agent.max_parallel)),
            stop_on_failure=config.sprint.stop_on_failure,
            rebase_before_task=config.agent.rebase_before_task,
            auto_pr=config.agent.auto_pr,
        )
