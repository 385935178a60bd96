from __future__ import annotations

import os
import re
import shutil
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path

from convoy.config import CONFIG_DIR, ensure_project_dir
from convoy.git import GitClient, GitError
from convoy.logging_utils import get_logger

logger = get_logger(__name__)

WORKTREE_DIR = "worktrees"
_ENTRY_PATTERN = re.compile(r"^issue-(\d+)$")


class WorkspaceError(RuntimeError):
    """Raised when an isolated workspace cannot be created or removed."""


class WorktreeStatus(StrEnum):
    ACTIVE = "active"
    STALE = "stale"


@dataclass(slots=True)
class Workspace:
    issue: int
    path: Path
    branch: str


@dataclass(slots=True)
class WorktreeInfo:
    issue: int
    path: Path
    branch: str
    status: WorktreeStatus

    def to_dict(self) -> dict[str, object]:
        return {
            "issue": self.issue,
            "path": str(self.path),
            "branch": self.branch,
            "status": self.status.value,
        }


def branch_for_issue(issue: int) -> str:
    return f"convoy/issue-{issue}"


class WorktreeManager:
    """One git worktree per issue under ``.convoy/worktrees/issue-<N>``."""

    def __init__(self, project_root: Path, dry_run: bool = False) -> None:
        self.project_root = project_root.resolve()
        self.root = self.project_root / CONFIG_DIR / WORKTREE_DIR
        self.dry_run = dry_run
        self.git = GitClient(self.project_root)

    def path_for(self, issue: int) -> Path:
        return self.root / f"issue-{issue}"

    def allocate(self, issue: int, base_branch: str) -> Workspace:
        path = self.path_for(issue)
        branch = branch_for_issue(issue)
        if self.dry_run:
            logger.info("[dry run] would create worktree %s on %s", path, branch)
            return Workspace(issue=issue, path=path, branch=branch)

        if path.exists():
            logger.debug("Reusing worktree for #%d at %s", issue, path)
            return Workspace(issue=issue, path=path, branch=branch)

        try:
            ensure_project_dir(self.project_root)
            self.root.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise WorkspaceError(f"Could not prepare {self.root}: {exc}") from exc
        if self.git.branch_exists(branch):
            self.git.run(["branch", "-D", branch], check=False)
        try:
            self.git.run(["worktree", "add", str(path), "-b", branch, base_branch])
        except GitError as exc:
            raise WorkspaceError(f"Could not create worktree for #{issue}: {exc}") from exc
        logger.info("Created worktree for #%d at %s (from %s)", issue, path, base_branch)
        return Workspace(issue=issue, path=path, branch=branch)

    def release(self, issue: int, *, keep_branch: bool = False) -> None:
        path = self.path_for(issue)
        branch = branch_for_issue(issue)
        if self.dry_run:
            logger.info("[dry run] would remove worktree %s", path)
            return
        if path.exists():
            proc = self.git.run(["worktree", "remove", str(path), "--force"], check=False)
            if proc.returncode != 0:
                logger.warning(
                    "git worktree remove failed for #%d, deleting directory: %s",
                    issue,
                    proc.stderr.strip(),
                )
                try:
                    shutil.rmtree(path)
                except OSError as exc:
                    raise WorkspaceError(f"Could not remove worktree for #{issue}: {exc}") from exc
            logger.info("Removed worktree for #%d", issue)
        if not keep_branch and self.git.branch_exists(branch):
            self.git.run(["branch", "-D", branch], check=False)

    def _registered_paths(self) -> set[str]:
        proc = self.git.run(["worktree", "list", "--porcelain"], check=False)
        registered: set[str] = set()
        for line in proc.stdout.splitlines():
            if line.startswith("worktree "):
                raw = line.removeprefix("worktree ").strip()
                registered.add(raw)
                registered.add(os.path.realpath(raw))
        return registered

    def list(self) -> list[WorktreeInfo]:
        if not self.root.is_dir():
            return []
        registered = self._registered_paths()
        worktrees: list[WorktreeInfo] = []
        for entry in sorted(self.root.iterdir()):
            match = _ENTRY_PATTERN.match(entry.name)
            if not match or not entry.is_dir():
                continue
            issue = int(match.group(1))
            known = str(entry) in registered or os.path.realpath(entry) in registered
            worktrees.append(
                WorktreeInfo(
                    issue=issue,
                    path=entry,
                    branch=branch_for_issue(issue),
                    status=WorktreeStatus.ACTIVE if known else WorktreeStatus.STALE,
                )
            )
        worktrees.sort(key=lambda info: info.issue)
        return worktrees

    def list_stale(self) -> list[WorktreeInfo]:
        return [info for info in self.list() if info.status is WorktreeStatus.STALE]

    def prune_stale(self) -> int:
        stale = self.list_stale()
        for info in stale:
            logger.info("Cleaning up stale worktree for #%d", info.issue)
            self.release(info.issue)
        if stale and not self.dry_run:
            self.git.run(["worktree", "prune"], check=False)
        return len(stale)

    def release_all(self) -> int:
        worktrees = self.list()
        for info in worktrees:
            self.release(info.issue)
        if worktrees and not self.dry_run:
            self.git.run(["worktree", "prune"], check=False)
        return len(worktrees)
