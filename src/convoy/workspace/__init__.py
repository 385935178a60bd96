from convoy.workspace.conflict import (
    CONFLICT_REASON,
    REBASE_FAILED_REASON,
    ConflictCheck,
    ConflictGuard,
    GuardDecision,
    GuardResult,
)
from convoy.workspace.worktree import (
    Workspace,
    WorkspaceError,
    WorktreeInfo,
    WorktreeManager,
    WorktreeStatus,
    branch_for_issue,
)

__all__ = [
    "CONFLICT_REASON",
    "REBASE_FAILED_REASON",
    "ConflictCheck",
    "ConflictGuard",
    "GuardDecision",
    "GuardResult",
    "Workspace",
    "WorkspaceError",
    "WorktreeInfo",
    "WorktreeManager",
    "WorktreeStatus",
    "branch_for_issue",
]
