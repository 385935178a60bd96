from __future__ import annotations

import asyncio
import json
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import click

from convoy import __version__
from convoy.backends import AgentBackend, build_backend
from convoy.config import (
    DEFAULT_MODELS,
    ConfigError,
    ConvoyConfig,
    config_path_for,
    load_config,
    save_config,
)
from convoy.executor import TaskExecutor
from convoy.git import GitClient, GitError
from convoy.logging_utils import configure_logging, get_logger
from convoy.orchestrator import (
    RESUME_COMMAND,
    ParallelExecutor,
    ResumeController,
    RunOutcome,
    RunSettings,
    ShutdownGuard,
    SprintSequencer,
    TargetRejection,
    sprint_branch_name,
)
from convoy.state import (
    RunInProgressError,
    RunState,
    RunStateStore,
    TaskStatus,
    create_parallel_run_state,
    create_sprint_run_state,
)
from convoy.tracker import LABEL_QUEUED, GitHubTracker, TrackerError
from convoy.workspace import ConflictGuard, WorkspaceError, WorktreeManager

logger = get_logger(__name__)

INTERRUPTED_EXIT_CODE = 130


class UsageProblem(click.ClickException):
    """A run that cannot start as requested. Exits with 2 like click usage errors."""

    exit_code = 2


@dataclass(slots=True)
class Runtime:
    project_root: Path
    config: ConvoyConfig
    settings: RunSettings
    store: RunStateStore
    tracker: GitHubTracker
    git: GitClient
    worktrees: WorktreeManager
    executor: TaskExecutor
    shutdown: ShutdownGuard

    def sprint_sequencer(self) -> SprintSequencer:
        guard = ConflictGuard(
            self.git,
            self.settings.base_branch,
            dry_run=self.settings.dry_run,
        )
        return SprintSequencer(
            self.store,
            self.executor,
            self.git,
            guard,
            self.settings,
            shutdown=self.shutdown,
        )

    def parallel_executor(self) -> ParallelExecutor:
        return ParallelExecutor(
            self.store,
            self.executor,
            self.worktrees,
            self.tracker,
            self.settings,
            shutdown=self.shutdown,
        )


def _log_backend_event(event: dict[str, Any]) -> None:
    name = event.get("event")
    if name in {"backend_retry", "backend_attempt_failed", "agent_killed"}:
        logger.warning("backend event: %s", event)
    else:
        logger.debug("backend event: %s", event)


def _build_backend(config: ConvoyConfig) -> AgentBackend:
    return build_backend(config.ai.provider, config.backend, event_hook=_log_backend_event)


def _build_tracker(project_root: Path) -> GitHubTracker:
    return GitHubTracker(project_root)


def _load_project_config(project_root: Path) -> ConvoyConfig:
    try:
        return load_config(config_path_for(project_root))
    except ConfigError as exc:
        raise UsageProblem(str(exc)) from exc


def _load_runtime(project_root: Path, config: ConvoyConfig, *, dry_run: bool) -> Runtime:
    settings = RunSettings.from_config(config, dry_run=dry_run)
    store = RunStateStore(project_root)
    tracker = _build_tracker(project_root)
    executor = TaskExecutor(project_root, tracker, _build_backend(config), config.agent)
    return Runtime(
        project_root=project_root,
        config=config,
        settings=settings,
        store=store,
        tracker=tracker,
        git=GitClient(project_root),
        worktrees=WorktreeManager(project_root, dry_run=dry_run),
        executor=executor,
        shutdown=ShutdownGuard(store),
    )


def _apply_overrides(
    config: ConvoyConfig,
    *,
    provider: str | None,
    model: str | None,
    max_parallel: int | None,
    continue_on_failure: bool,
) -> None:
    if provider and provider != config.ai.provider:
        config.ai.provider = provider  # type: ignore[assignment]
        config.ai.model = DEFAULT_MODELS[provider]
    if model:
        config.ai.model = model
    if max_parallel is not None:
        config.agent.max_parallel = max_parallel
    if continue_on_failure:
        config.sprint.stop_on_failure = False


def _mark_queued(runtime: Runtime, state: RunState) -> None:
    if runtime.settings.dry_run or not runtime.config.agent.auto_label:
        return
    for task in state.tasks:
        if task.status is TaskStatus.PENDING:
            runtime.tracker.set_status_label(task.issue, LABEL_QUEUED)


def _prepare_sprint(runtime: Runtime, sprint_name: str | None) -> RunState:
    name = (sprint_name or runtime.config.sprint.active).strip()
    if not name:
        raise UsageProblem(
            "No active sprint. Pass --sprint NAME or set sprint.active in .convoy/config.toml."
        )
    issues = runtime.tracker.list_ordered(name)
    if not issues:
        raise UsageProblem(f"No open issues found in sprint '{name}'.")
    state = create_sprint_run_state(
        name,
        sprint_branch_name(name),
        runtime.settings.base_branch,
        [(issue.number, issue.order) for issue in issues],
        done=[issue.number for issue in issues if issue.is_done],
    )
    runtime.store.save(state)
    _mark_queued(runtime, state)
    click.echo(f"Sprint {name}: {len(state.tasks)} task(s) on {state.branch}")
    return state


def _prepare_parallel(
    runtime: Runtime,
    parallel: ParallelExecutor,
    issues: Sequence[int],
) -> RunState:
    targets = list(dict.fromkeys(issues))
    rejections = parallel.validate_targets(targets)
    if rejections:
        raise UsageProblem(_format_rejections(rejections))
    state = create_parallel_run_state(targets, runtime.settings.base_branch)
    runtime.store.save(state)
    _mark_queued(runtime, state)
    click.echo(
        f"Running {len(targets)} issue(s), up to {runtime.settings.max_parallel} at a time"
    )
    return state


def _format_rejections(rejections: list[TargetRejection]) -> str:
    lines = ["Refusing to run: some issues cannot run outside their sprint."]
    lines.extend(f"  #{item.issue}: {item.reason}" for item in rejections)
    return "\n".join(lines)


async def _dispatch(
    runtime: Runtime,
    issues: Sequence[int],
    *,
    resume: bool,
    sprint_name: str | None,
) -> RunOutcome:
    with runtime.shutdown:
        sequencer = runtime.sprint_sequencer()
        parallel = runtime.parallel_executor()
        if resume:
            return await ResumeController(runtime.store, sequencer, parallel).resume()

        runtime.store.ensure_can_start()
        if not issues:
            return await sequencer.run(_prepare_sprint(runtime, sprint_name))
        return await parallel.run(_prepare_parallel(runtime, parallel, issues))


def _report(outcome: RunOutcome) -> None:
    if outcome.resumed_from is not None:
        stats = outcome.resumed_from
        click.echo(
            f"Resumed run {outcome.run_id}: {stats.done} done, {stats.failed} failed, "
            f"{stats.pending + stats.in_progress} pending"
        )
    click.echo(outcome.message)
    for path in outcome.preserved_workspaces:
        click.echo(f"Kept worktree: {path}")
    if outcome.hint:
        click.echo(outcome.hint)


@click.group()
@click.version_option(__version__, prog_name="convoy")
def cli() -> None:
    """Convoy: run tracker issues through a code agent, in sprints or in parallel."""


@cli.command("init")
@click.option("--provider", type=click.Choice(["claude", "codex"]), default=None)
@click.option("--base-branch", default=None)
def init_command(provider: str | None, base_branch: str | None) -> None:
    project_root = Path.cwd().resolve()
    config_path = config_path_for(project_root)
    config = _load_project_config(project_root)
    if provider and provider != config.ai.provider:
        config.ai.provider = provider  # type: ignore[assignment]
        config.ai.model = DEFAULT_MODELS[provider]
    if base_branch:
        config.agent.base_branch = base_branch
    try:
        config.validate()
    except ConfigError as exc:
        raise UsageProblem(str(exc)) from exc
    save_config(config_path, config)

    click.echo(f"Initialized convoy in {project_root}")
    click.echo(f"Config: {config_path}")
    click.echo(f"Provider: {config.ai.provider} ({config.ai.model})")
    click.echo(f"Base branch: {config.agent.base_branch}")


@cli.command("run")
@click.argument("issues", nargs=-1, type=click.IntRange(min=1))
@click.option("--resume", is_flag=True, default=False, help="Continue the stored run.")
@click.option("--dry-run", is_flag=True, default=False, help="Show what would run.")
@click.option("--sprint", "sprint_name", default=None, help="Sprint (milestone) to run.")
@click.option("--provider", type=click.Choice(["claude", "codex"]), default=None)
@click.option("--model", default=None)
@click.option("--max-parallel", type=click.IntRange(min=1), default=None)
@click.option("--continue-on-failure", is_flag=True, default=False)
@click.pass_context
def run_command(
    ctx: click.Context,
    issues: tuple[int, ...],
    resume: bool,
    dry_run: bool,
    sprint_name: str | None,
    provider: str | None,
    model: str | None,
    max_parallel: int | None,
    continue_on_failure: bool,
) -> None:
    project_root = Path.cwd().resolve()
    config = _load_project_config(project_root)
    _apply_overrides(
        config,
        provider=provider,
        model=model,
        max_parallel=max_parallel,
        continue_on_failure=continue_on_failure,
    )
    configure_logging(config.logging.level, log_file=config.logging.file or None)
    if resume and dry_run:
        raise UsageProblem(
            "--dry-run cannot be combined with --resume; the stored run would be consumed."
        )
    if resume and issues:
        click.echo("Ignoring issue arguments: --resume continues the stored run.", err=True)
    if sprint_name and issues:
        raise UsageProblem("Pass either --sprint or issue numbers, not both.")

    runtime = _load_runtime(project_root, config, dry_run=dry_run)
    try:
        outcome = asyncio.run(
            _dispatch(
                runtime,
                () if resume else issues,
                resume=resume,
                sprint_name=sprint_name,
            )
        )
    except (asyncio.CancelledError, KeyboardInterrupt):
        click.echo(f"\nInterrupted. Resume with: {RESUME_COMMAND}", err=True)
        ctx.exit(INTERRUPTED_EXIT_CODE)
    except RunInProgressError as exc:
        raise UsageProblem(str(exc)) from exc
    except (TrackerError, GitError, WorkspaceError) as exc:
        raise click.ClickException(str(exc)) from exc

    _report(outcome)
    if outcome.exit_code:
        ctx.exit(outcome.exit_code)


@cli.command("status")
def status_command() -> None:
    project_root = Path.cwd().resolve()
    store = RunStateStore(project_root)
    state = store.load()
    payload: dict[str, Any] = {"run": None}
    if state is not None:
        stats = state.stats()
        payload["run"] = state.to_dict()
        payload["stats"] = {
            "total": stats.total,
            "done": stats.done,
            "failed": stats.failed,
            "pending": stats.pending,
            "in_progress": stats.in_progress,
        }
    payload["worktrees"] = [info.to_dict() for info in WorktreeManager(project_root).list()]
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


@cli.command("cancel")
@click.option("--release-worktrees", is_flag=True, default=False)
def cancel_command(release_worktrees: bool) -> None:
    project_root = Path.cwd().resolve()
    store = RunStateStore(project_root)
    state = store.load()
    if state is None:
        click.echo("No run to cancel.")
    else:
        store.clear()
        click.echo(f"Cancelled run {state.run_id}.")
    if release_worktrees:
        removed = WorktreeManager(project_root).release_all()
        click.echo(f"Removed {removed} worktree(s).")


@cli.group("worktrees")
def worktrees_group() -> None:
    """Inspect and clean up per-issue worktrees."""


@worktrees_group.command("list")
def worktrees_list_command() -> None:
    worktrees = WorktreeManager(Path.cwd().resolve()).list()
    if not worktrees:
        click.echo("No worktrees.")
        return
    for info in worktrees:
        click.echo(f"#{info.issue:<6} {info.status.value:<7} {info.branch:<24} {info.path}")


@worktrees_group.command("prune")
def worktrees_prune_command() -> None:
    try:
        removed = WorktreeManager(Path.cwd().resolve()).prune_stale()
    except WorkspaceError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Removed {removed} stale worktree(s).")


@worktrees_group.command("clean")
def worktrees_clean_command() -> None:
    try:
        removed = WorktreeManager(Path.cwd().resolve()).release_all()
    except WorkspaceError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Removed {removed} worktree(s).")
