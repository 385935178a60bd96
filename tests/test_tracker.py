import json
import subprocess
from pathlib import Path
from typing import Any

import pytest

from convoy.tracker import (
    LABEL_DONE,
    LABEL_FAILED,
    GitHubTracker,
    Issue,
    TrackerError,
    sort_by_order,
)


class FakeGh:
    """Replays canned gh responses keyed by the first two arguments."""

    def __init__(self, responses: dict[tuple[str, str], list[tuple[int, str, str]]]) -> None:
        self.responses = responses
        self.calls: list[dict[str, Any]] = []

    def __call__(self, command: list[str], **kwargs: Any) -> subprocess.CompletedProcess[str]:
        self.calls.append({"args": command[1:], "input": kwargs.get("input")})
        queue = self.responses.get((command[1], command[2]), [(0, "", "")])
        code, stdout, stderr = queue.pop(0) if len(queue) > 1 else queue[0]
        return subprocess.CompletedProcess(command, code, stdout, stderr)


def _payload(number: int, labels: list[str], milestone: str | None = None) -> dict[str, Any]:
    return {
        "number": number,
        "title": f"Issue {number}",
        "body": None,
        "state": "OPEN",
        "labels": [{"name": label} for label in labels],
        "milestone": {"title": milestone} if milestone else None,
        "url": f"https://github.com/acme/app/issues/{number}",
    }


def _tracker(monkeypatch: pytest.MonkeyPatch, fake: FakeGh, tmp_path: Path) -> GitHubTracker:
    monkeypatch.setattr(subprocess, "run", fake)
    return GitHubTracker(tmp_path)


def test_issue_parses_order_label_and_done_flag() -> None:
    issue = Issue.from_payload(_payload(5, ["bug", "order:3", LABEL_DONE], milestone="Sprint 2"))

    assert issue.order == 3
    assert issue.is_done
    assert issue.milestone == "Sprint 2"
    assert issue.state == "open"
    assert issue.body == ""
    assert Issue(number=1, title="x", labels=["order:abc"]).order is None


def test_sort_by_order_puts_unordered_last_and_keeps_ties_stable() -> None:
    issues = [
        Issue(number=1, title="a"),
        Issue(number=2, title="b", labels=["order:2"]),
        Issue(number=3, title="c", labels=["order:1"]),
        Issue(number=4, title="d", labels=["order:2"]),
    ]

    assert [issue.number for issue in sort_by_order(issues)] == [3, 2, 4, 1]


def test_list_ordered_queries_milestone(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    payload = [_payload(8, ["order:2"]), _payload(9, ["order:1"])]
    fake = FakeGh({("issue", "list"): [(0, json.dumps(payload), "")]})
    tracker = _tracker(monkeypatch, fake, tmp_path)

    issues = tracker.list_ordered("Sprint 1")

    assert [issue.number for issue in issues] == [9, 8]
    args = fake.calls[0]["args"]
    assert args[args.index("--milestone") + 1] == "Sprint 1"
    assert args[args.index("--state") + 1] == "open"


def test_get_issue_and_comments(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    comments = {"comments": [{"author": {"login": "pm"}, "body": "Ship it"}, "junk"]}
    fake = FakeGh(
        {
            ("issue", "view"): [
                (0, json.dumps(_payload(4, [])), ""),
                (0, json.dumps(comments), ""),
            ]
        }
    )
    tracker = _tracker(monkeypatch, fake, tmp_path)

    assert tracker.get_issue(4).title == "Issue 4"
    loaded = tracker.issue_comments(4)
    assert [(item.author, item.body) for item in loaded] == [("pm", "Ship it")]


def test_errors_raise_tracker_error(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    fake = FakeGh(
        {
            ("issue", "view"): [(1, "", "could not resolve to an Issue")],
            ("issue", "list"): [(1, "", "API rate limit exceeded")],
        }
    )
    tracker = _tracker(monkeypatch, fake, tmp_path)

    with pytest.raises(TrackerError, match="could not resolve"):
        tracker.get_issue(404)
    with pytest.raises(TrackerError, match="rate limit"):
        tracker.list_issues()


def test_invalid_json_raises(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    tracker = _tracker(monkeypatch, FakeGh({("issue", "view"): [(0, "<html>", "")]}), tmp_path)

    with pytest.raises(TrackerError, match="invalid JSON"):
        tracker.get_issue(1)


def test_missing_gh_binary(tmp_path: Path) -> None:
    tracker = GitHubTracker(tmp_path, binary="gh-definitely-missing")

    with pytest.raises(TrackerError, match="not found"):
        tracker.get_issue(1)


def test_existing_pull_request_is_reused(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    fake = FakeGh({("pr", "list"): [(0, json.dumps([{"number": 31}]), "")]})
    tracker = _tracker(monkeypatch, fake, tmp_path)

    assert tracker.find_or_create_pull_request("convoy/issue-3", "main", "t", "b") == 31
    assert len(fake.calls) == 1


def test_pull_request_is_created(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    fake = FakeGh(
        {
            ("pr", "list"): [(0, "[]", "")],
            ("pr", "create"): [(0, "https://github.com/acme/app/pull/45\n", "")],
        }
    )
    tracker = _tracker(monkeypatch, fake, tmp_path)

    number = tracker.find_or_create_pull_request("convoy/issue-3", "main", "Title", "Closes #3")

    assert number == 45
    assert fake.calls[1]["input"] == "Closes #3"


def test_pull_request_without_url_raises(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    fake = FakeGh({("pr", "list"): [(0, "[]", "")], ("pr", "create"): [(0, "created\n", "")]})
    tracker = _tracker(monkeypatch, fake, tmp_path)

    with pytest.raises(TrackerError, match="PR number"):
        tracker.find_or_create_pull_request("h", "main", "t", "b")


def test_status_label_swap_is_best_effort(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    fake = FakeGh({("issue", "edit"): [(0, "", ""), (1, "", "label not found")]})
    tracker = _tracker(monkeypatch, fake, tmp_path)

    assert tracker.set_status_label(3, LABEL_FAILED) is True
    args = fake.calls[0]["args"]
    assert args[args.index("--add-label") + 1] == LABEL_FAILED
    assert "--remove-label" in args
    assert LABEL_FAILED not in args[args.index("--remove-label") :]

    assert tracker.set_status_label(3, LABEL_DONE) is False
