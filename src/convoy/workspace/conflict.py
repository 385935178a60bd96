from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum

from convoy.git import GitClient
from convoy.logging_utils import get_logger

logger = get_logger(__name__)

CONFLICT_REASON = "merge conflict with base branch"
REBASE_FAILED_REASON = "rebase failed"


@dataclass(slots=True)
class ConflictCheck:
    base_advanced: bool
    has_conflict: bool = False
    conflicting_files: list[str] = field(default_factory=list)
    new_commits: int = 0
    base_ref: str | None = None


class GuardDecision(StrEnum):
    PROCEED = "proceed"
    REBASED = "rebased"
    CONFLICT = "conflict"
    REBASE_FAILED = "rebase_failed"


@dataclass(slots=True)
class GuardResult:
    decision: GuardDecision
    reason: str | None = None
    conflicting_files: list[str] = field(default_factory=list)

    @property
    def halted(self) -> bool:
        return self.decision in {GuardDecision.CONFLICT, GuardDecision.REBASE_FAILED}

    def describe(self) -> str:
        if not self.conflicting_files:
            return self.reason or self.decision.value
        return f"{self.reason}: {', '.join(self.conflicting_files)}"


class ConflictGuard:
    """Detects base-branch drift between sprint tasks and rebases when it is safe.

    Any file touched on both sides since the merge base counts as a conflict;
    the guard never tries to resolve one.
    """

    def __init__(
        self,
        git: GitClient,
        base_branch: str,
        remote: str = "origin",
        dry_run: bool = False,
    ) -> None:
        self.git = git
        self.base_branch = base_branch
        self.remote = remote
        self.dry_run = dry_run

    def _resolve_base_ref(self) -> str | None:
        remote_ref = f"{self.remote}/{self.base_branch}"
        if self.git.has_remote(self.remote):
            if not self.git.fetch(self.remote, self.base_branch):
                logger.warning("Could not fetch %s; using the last known base", remote_ref)
            if self.git.ref_exists(remote_ref):
                return remote_ref
        if self.git.ref_exists(self.base_branch):
            return self.base_branch
        return None

    def check(self) -> ConflictCheck:
        base_ref = self._resolve_base_ref()
        if base_ref is None:
            logger.warning("Base branch %s not found; skipping conflict check", self.base_branch)
            return ConflictCheck(base_advanced=False)

        merge_base = self.git.merge_base("HEAD", base_ref)
        if merge_base is None:
            return ConflictCheck(base_advanced=False, base_ref=base_ref)
        if self.git.rev_parse(base_ref) == merge_base:
            return ConflictCheck(base_advanced=False, base_ref=base_ref)

        new_commits = self.git.count_commits(f"{merge_base}..{base_ref}")
        theirs = self.git.changed_files(merge_base, base_ref)
        ours = self.git.changed_files(merge_base, "HEAD")
        overlap = sorted(theirs & ours)
        return ConflictCheck(
            base_advanced=True,
            has_conflict=bool(overlap),
            conflicting_files=overlap,
            new_commits=new_commits,
            base_ref=base_ref,
        )

    def rebase(self, base_ref: str) -> tuple[bool, list[str]]:
        proc = self.git.run(["rebase", base_ref], check=False)
        if proc.returncode == 0:
            return True, []
        unmerged = self.git.unmerged_files()
        self.git.run(["rebase", "--abort"], check=False)
        return False, unmerged

    def guard(self) -> GuardResult:
        if self.dry_run:
            return GuardResult(decision=GuardDecision.PROCEED)

        check = self.check()
        if not check.base_advanced or check.base_ref is None:
            return GuardResult(decision=GuardDecision.PROCEED)

        logger.info(
            "%s advanced by %d commit(s) since this branch diverged",
            check.base_ref,
            check.new_commits,
        )
        if check.has_conflict:
            logger.warning("Overlapping changes with %s: %s", check.base_ref, check.conflicting_files)
            return GuardResult(
                decision=GuardDecision.CONFLICT,
                reason=CONFLICT_REASON,
                conflicting_files=check.conflicting_files,
            )

        ok, unmerged = self.rebase(check.base_ref)
        if not ok:
            logger.warning("Rebase onto %s failed and was aborted", check.base_ref)
            return GuardResult(
                decision=GuardDecision.REBASE_FAILED,
                reason=REBASE_FAILED_REASON,
                conflicting_files=unmerged,
            )
        logger.info("Rebased onto %s", check.base_ref)
        return GuardResult(decision=GuardDecision.REBASED)
