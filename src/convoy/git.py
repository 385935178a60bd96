from __future__ import annotations

import subprocess
from pathlib import Path

from convoy.logging_utils import get_logger

logger = get_logger(__name__)


class GitError(RuntimeError):
    """Raised when a git command fails."""

    def __init__(self, message: str, *, args: list[str] | None = None, returncode: int = 1) -> None:
        super().__init__(message)
        self.git_args = list(args or [])
        self.returncode = returncode


class GitClient:
    def __init__(self, cwd: Path) -> None:
        self.cwd = cwd.resolve()

    def run(self, args: list[str], check: bool = True) -> subprocess.CompletedProcess[str]:
        try:
            proc = subprocess.run(
                ["git", "--no-pager", *args],
                cwd=self.cwd,
                text=True,
                capture_output=True,
            )
        except FileNotFoundError as exc:
            raise GitError("git executable not found on PATH.", args=args) from exc
        if check and proc.returncode != 0:
            raise GitError(
                proc.stderr.strip() or proc.stdout.strip() or f"git {' '.join(args)} failed",
                args=args,
                returncode=proc.returncode,
            )
        return proc

    def current_branch(self) -> str:
        return self.run(["rev-parse", "--abbrev-ref", "HEAD"]).stdout.strip()

    def branch_exists(self, name: str) -> bool:
        proc = self.run(["rev-parse", "--verify", "--quiet", f"refs/heads/{name}"], check=False)
        return proc.returncode == 0

    def ref_exists(self, ref: str) -> bool:
        proc = self.run(["rev-parse", "--verify", "--quiet", f"{ref}^{{commit}}"], check=False)
        return proc.returncode == 0

    def checkout_branch(self, name: str, start_point: str | None = None) -> None:
        if self.branch_exists(name):
            if self.current_branch() != name:
                self.run(["checkout", name])
            return
        args = ["checkout", "-b", name]
        if start_point:
            args.append(start_point)
        self.run(args)
        logger.info("Created branch %s from %s", name, start_point or "HEAD")

    def has_changes(self) -> bool:
        return bool(self.run(["status", "--porcelain"]).stdout.strip())

    def head_sha(self) -> str:
        return self.run(["rev-parse", "HEAD"]).stdout.strip()

    def commit_all(self, message: str) -> str | None:
        """Stage everything and commit. Returns the new sha, or None when the tree is clean."""
        if not self.has_changes():
            return None
        self.run(["add", "-A"])
        self.run(["commit", "-m", message])
        return self.head_sha()

    def push(self, branch: str, remote: str = "origin", *, force_with_lease: bool = False) -> None:
        args = ["push", "-u", remote, branch]
        if force_with_lease:
            args.append("--force-with-lease")
        self.run(args)

    def has_remote(self, remote: str = "origin") -> bool:
        proc = self.run(["remote"], check=False)
        return remote in proc.stdout.split()

    def fetch(self, remote: str, branch: str) -> bool:
        proc = self.run(["fetch", remote, branch], check=False)
        if proc.returncode != 0:
            logger.debug("git fetch %s %s failed: %s", remote, branch, proc.stderr.strip())
        return proc.returncode == 0

    def merge_base(self, left: str, right: str) -> str | None:
        proc = self.run(["merge-base", left, right], check=False)
        if proc.returncode != 0:
            return None
        return proc.stdout.strip() or None

    def rev_parse(self, ref: str) -> str:
        return self.run(["rev-parse", ref]).stdout.strip()

    def count_commits(self, range_spec: str) -> int:
        raw = self.run(["rev-list", "--count", range_spec]).stdout.strip()
        try:
            return int(raw)
        except ValueError:
            return 0

    def changed_files(self, left: str, right: str) -> set[str]:
        raw = self.run(["diff", "--name-only", left, right]).stdout
        return {line.strip() for line in raw.splitlines() if line.strip()}

    def unmerged_files(self) -> list[str]:
        raw = self.run(["diff", "--name-only", "--diff-filter=U"], check=False).stdout
        return [line.strip() for line in raw.splitlines() if line.strip()]

    def diff(self, base: str) -> str:
        return self.run(["diff", f"{base}...HEAD"], check=False).stdout
