from __future__ import annotations

import json
import re
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from convoy.logging_utils import get_logger

logger = get_logger(__name__)

ISSUE_FIELDS = "number,title,body,state,labels,milestone,url"
ORDER_LABEL_PATTERN = re.compile(r"^order:(\d+)$")
PR_NUMBER_PATTERN = re.compile(r"/pull/(\d+)")

LABEL_QUEUED = "convoy:queued"
LABEL_IN_PROGRESS = "convoy:in-progress"
LABEL_DONE = "convoy:done"
LABEL_FAILED = "convoy:failed"
STATUS_LABELS = (LABEL_QUEUED, LABEL_IN_PROGRESS, LABEL_DONE, LABEL_FAILED)


class TrackerError(RuntimeError):
    """Raised when the issue tracker cannot be reached or returns garbage."""


@dataclass(slots=True)
class Issue:
    number: int
    title: str
    body: str = ""
    state: str = "open"
    labels: list[str] = field(default_factory=list)
    milestone: str | None = None
    url: str = ""

    @property
    def order(self) -> int | None:
        for label in self.labels:
            match = ORDER_LABEL_PATTERN.match(label)
            if match:
                return int(match.group(1))
        return None

    @property
    def is_done(self) -> bool:
        return LABEL_DONE in self.labels

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> Issue:
        milestone = payload.get("milestone")
        labels = payload.get("labels") or []
        return cls(
            number=int(payload["number"]),
            title=str(payload.get("title", "")),
            body=str(payload.get("body") or ""),
            state=str(payload.get("state", "open")).lower(),
            labels=[
                str(item.get("name")) if isinstance(item, dict) else str(item)
                for item in labels
            ],
            milestone=milestone.get("title") if isinstance(milestone, dict) else milestone,
            url=str(payload.get("url", "")),
        )


@dataclass(slots=True)
class IssueComment:
    author: str
    body: str


def sort_by_order(issues: list[Issue]) -> list[Issue]:
    """Ascending by order label, unlabelled issues last, ties in input order."""
    return sorted(issues, key=lambda issue: (issue.order is None, issue.order or 0))


class GitHubTracker:
    """Issue tracker operations backed by the ``gh`` CLI."""

    def __init__(self, project_root: Path, binary: str = "gh") -> None:
        self.project_root = project_root.resolve()
        self.binary = binary

    def _run_gh(self, args: list[str], *, stdin: str | None = None) -> str:
        logger.debug("gh %s", " ".join(args))
        try:
            proc = subprocess.run(
                [self.binary, *args],
                cwd=self.project_root,
                input=stdin,
                text=True,
                capture_output=True,
            )
        except FileNotFoundError as exc:
            raise TrackerError(f"GitHub CLI not found: {self.binary}") from exc
        if proc.returncode != 0:
            stderr = proc.stderr.strip()
            if "rate limit" in stderr.lower():
                raise TrackerError("GitHub API rate limit hit. Try again later.")
            raise TrackerError(f"gh {' '.join(args[:2])} failed: {stderr or proc.stdout.strip()}")
        return proc.stdout

    def _run_json(self, args: list[str]) -> Any:
        output = self._run_gh(args)
        if not output.strip():
            return None
        try:
            return json.loads(output)
        except json.JSONDecodeError as exc:
            raise TrackerError(f"gh {' '.join(args[:2])} returned invalid JSON.") from exc

    def list_issues(
        self,
        *,
        milestone: str | None = None,
        label: str | None = None,
        state: str = "open",
        limit: int = 100,
    ) -> list[Issue]:
        args = ["issue", "list", "--json", ISSUE_FIELDS, "--state", state, "--limit", str(limit)]
        if milestone:
            args.extend(["--milestone", milestone])
        if label:
            args.extend(["--label", label])
        payload = self._run_json(args) or []
        return [Issue.from_payload(item) for item in payload]

    def list_ordered(self, milestone: str) -> list[Issue]:
        return sort_by_order(self.list_issues(milestone=milestone, state="open"))

    def get_issue(self, number: int) -> Issue:
        payload = self._run_json(["issue", "view", str(number), "--json", ISSUE_FIELDS])
        if not isinstance(payload, dict):
            raise TrackerError(f"Issue #{number} not found.")
        return Issue.from_payload(payload)

    def issue_comments(self, number: int) -> list[IssueComment]:
        payload = self._run_json(["issue", "view", str(number), "--json", "comments"]) or {}
        comments: list[IssueComment] = []
        for item in payload.get("comments", []):
            if not isinstance(item, dict):
                continue
            author = item.get("author")
            login = author.get("login", "") if isinstance(author, dict) else ""
            comments.append(IssueComment(author=str(login), body=str(item.get("body", ""))))
        return comments

    def update_labels(
        self,
        number: int,
        add: list[str] | None = None,
        remove: list[str] | None = None,
    ) -> None:
        args = ["issue", "edit", str(number)]
        for label in add or []:
            args.extend(["--add-label", label])
        for label in remove or []:
            args.extend(["--remove-label", label])
        if len(args) == 3:
            return
        self._run_gh(args)

    def add_comment(self, number: int, body: str) -> None:
        self._run_gh(["issue", "comment", str(number), "--body-file", "-"], stdin=body)

    def find_or_create_pull_request(self, head: str, base: str, title: str, body: str) -> int:
        existing = self._run_json(
            ["pr", "list", "--head", head, "--state", "open", "--json", "number"]
        )
        if existing:
            return int(existing[0]["number"])
        output = self._run_gh(
            [
                "pr",
                "create",
                "--title",
                title,
                "--body-file",
                "-",
                "--head",
                head,
                "--base",
                base,
            ],
            stdin=body,
        )
        match = PR_NUMBER_PATTERN.search(output)
        if not match:
            raise TrackerError(f"Could not extract PR number from: {output.strip()}")
        return int(match.group(1))

    def set_status_label(self, number: int, label: str) -> bool:
        """Swap the convoy status label. Failures are logged and reported, never raised."""
        try:
            self.update_labels(
                number,
                add=[label],
                remove=[item for item in STATUS_LABELS if item != label],
            )
        except TrackerError as exc:
            logger.warning("Could not set label %s on #%d: %s", label, number, exc)
            return False
        return True
