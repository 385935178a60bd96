from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

from convoy.git import GitClient, GitError
from convoy.tracker import Issue, IssueComment

INSTRUCTIONS_FILE = "CONVOY.md"
MAX_TREE_ENTRIES = 80
MAX_DIFF_CHARS = 20_000
_TREE_SKIP = {".git", ".convoy", "node_modules", "dist", "build", "__pycache__", ".venv"}


@dataclass(slots=True)
class PromptContext:
    issue: Issue
    project_root: Path
    base_branch: str
    provider: str
    model: str
    comments: list[IssueComment] = field(default_factory=list)
    sprint: str | None = None
    position: str | None = None
    prior_work_diff: str | None = None


def _read_optional(path: Path) -> str | None:
    try:
        text = path.read_text(encoding="utf-8").strip()
    except (FileNotFoundError, IsADirectoryError, UnicodeDecodeError):
        return None
    return text or None


def _file_tree(root: Path) -> list[str]:
    entries: list[str] = []
    for child in sorted(root.iterdir()):
        if child.name in _TREE_SKIP:
            continue
        entries.append(f"./{child.name}")
        if child.is_dir():
            for grandchild in sorted(child.iterdir()):
                if grandchild.name in _TREE_SKIP:
                    continue
                entries.append(f"./{child.name}/{grandchild.name}")
        if len(entries) >= MAX_TREE_ENTRIES:
            break
    return entries[:MAX_TREE_ENTRIES]


def _system_section(project_root: Path) -> str | None:
    instructions = _read_optional(project_root / INSTRUCTIONS_FILE)
    if instructions is None:
        return None
    return f"# Project Instructions ({INSTRUCTIONS_FILE})\n\n{instructions}"


def _task_section(issue: Issue, comments: list[IssueComment]) -> str:
    parts = [f"# Task\n\n## Issue #{issue.number}: {issue.title}", "", issue.body or "(no description)"]
    visible = [label for label in issue.labels if not label.startswith("convoy:")]
    if visible:
        parts.append(f"\n**Labels:** {', '.join(visible)}")
    if comments:
        parts.append("\n## Issue Comments\n")
        for comment in comments:
            parts.append(f"**{comment.author or 'unknown'}:** {comment.body}")
    return "\n".join(parts)


def _sprint_section(sprint: str | None, position: str | None, diff: str | None) -> str:
    parts = ["# Sprint Context"]
    if sprint:
        parts.append(f"**Sprint:** {sprint}")
    if position:
        parts.append(f"**Position:** Task {position}")
    if diff:
        if len(diff) > MAX_DIFF_CHARS:
            diff = diff[:MAX_DIFF_CHARS] + "\n... (diff truncated)"
        parts.append(
            "\n## Changes from Previous Tasks\n\n"
            "The following changes have already been made by earlier tasks in this sprint:\n\n"
            f"```diff\n{diff}\n```"
        )
    parts.append(
        "\n**Important:** Build upon the changes from previous tasks. "
        "Do not revert or undo their work."
    )
    return "\n".join(parts)


def _repo_section(project_root: Path) -> str:
    parts = ["# Repository Context"]
    tree = _file_tree(project_root)
    if tree:
        parts.append("## File Tree\n\n```\n" + "\n".join(tree) + "\n```")
    git = GitClient(project_root)
    try:
        log = git.run(["log", "--oneline", "-10"]).stdout.strip()
        branch = git.current_branch()
    except GitError:
        return "\n\n".join(parts)
    if log:
        parts.append(f"## Recent Commits\n\n```\n{log}\n```")
    parts.append(f"**Current branch:** {branch}")
    return "\n\n".join(parts)


def _rules_section(base_branch: str, provider: str, model: str) -> str:
    return (
        "# Execution Rules\n\n"
        "1. **Code quality:** Follow existing code style. Run linters and formatters if available.\n"
        "2. **Testing:** If test files exist for modified code, update them accordingly.\n"
        "3. **Do NOT:**\n"
        "   - Commit or push (the orchestrator commits and pushes your changes)\n"
        "   - Modify files outside the scope of this issue\n"
        "   - Delete or revert changes from previous sprint tasks\n"
        f"4. **Base branch:** {base_branch}\n"
        f"5. **Provider:** {provider} / {model}\n\n"
        "When you are done, provide a brief summary of what you changed and why."
    )


def build_execution_prompt(context: PromptContext) -> str:
    sections: list[str] = []
    system = _system_section(context.project_root)
    if system:
        sections.append(system)
    sections.append(_task_section(context.issue, context.comments))
    if context.sprint or context.prior_work_diff:
        sections.append(
            _sprint_section(context.sprint, context.position, context.prior_work_diff)
        )
    sections.append(_repo_section(context.project_root))
    sections.append(_rules_section(context.base_branch, context.provider, context.model))
    return "\n\n---\n\n".join(sections)
