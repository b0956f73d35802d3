from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest

from shipgate.adapters import (
    Adapters,
    CodeHost,
    ContinuousIntegration,
    CoverageTool,
    IssueTracker,
    VersionControl,
)
from shipgate.config_loader import IdentityConfig, RetryConfig, ShipgateConfig, load_config
from shipgate.models import BranchState, Issue, PullRequest
from shipgate.orchestrator import TaskOrchestrator

NO_RETRY = RetryConfig(attempts=1, min_wait=0, max_wait=0)

SIGNER_NAME = "Dev One"
SIGNER_EMAIL = "dev@example.com"


def signed(subject: str, issue_id: str = "ABC-123", body: str = "Details.") -> str:
    return f"{subject} ({issue_id})\n\n{body}\n\nSigned-off-by: {SIGNER_NAME} <{SIGNER_EMAIL}>"


# ---------------------------------------------------------------------------
# In-memory adapters
# ---------------------------------------------------------------------------

class FakeTracker(IssueTracker):
    def __init__(self, calls: list[str]):
        super().__init__(NO_RETRY)
        self.calls = calls
        self.issues: dict[str, Issue] = {}
        self.fields: dict[tuple[str, str], Any] = {}
        self.ignore_writes = False
        self.closed = False

    def fetch_issue(self, issue_id: str) -> Issue:
        self.calls.append(f"tracker.fetch_issue:{issue_id}")
        return self.issues.get(issue_id) or Issue(
            key=issue_id,
            summary=f"Fix the widget for {issue_id}",
            acceptance_criteria=["Widget renders", "No regressions"],
            story_points=3,
            url=f"https://jira.example.com/browse/{issue_id}",
        )

    def close(self) -> None:
        self.closed = True

    def update_field(self, issue_id: str, field_key: str, value: dict[str, Any]) -> None:
        self.calls.append(f"tracker.update_field:{issue_id}:{field_key}")
        if not self.ignore_writes:
            self.fields[(issue_id, field_key)] = value

    def get_field(self, issue_id: str, field_key: str) -> Any:
        self.calls.append(f"tracker.get_field:{issue_id}:{field_key}")
        return self.fields.get((issue_id, field_key))


class FakeVCS(VersionControl):
    def __init__(self, calls: list[str]):
        super().__init__(NO_RETRY)
        self.calls = calls
        self.branches: dict[str, BranchState] = {}
        self.messages: list[str] = [signed("Fix widget rendering")]
        self.paths: list[str] = ["src/widget.py", "tests/test_widget.py"]
        self.created: list[str] = []
        self.pushed: set[str] = set()
        self.fork_points: dict[str, str] = {}

    def branch_state(self, name: str, base: str, fork_point: str = "") -> BranchState:
        self.calls.append(f"vcs.branch_state:{name}")
        self.fork_points[name] = fork_point
        return self.branches.get(name, BranchState(exists=False))

    def create_branch(self, name: str, base: str) -> str:
        self.calls.append(f"vcs.create_branch:{name}")
        self.created.append(name)
        self.branches[name] = BranchState(exists=True, head_sha="c0ffee")
        return "f0cacc1a"

    def push(self, name: str) -> bool:
        self.calls.append(f"vcs.push:{name}")
        if name in self.pushed:
            return False
        self.pushed.add(name)
        return True

    def commit_messages(self, name: str, base: str) -> list[str]:
        self.calls.append(f"vcs.commit_messages:{name}")
        return list(self.messages)

    def changed_paths(self, name: str, base: str) -> list[str]:
        self.calls.append(f"vcs.changed_paths:{name}")
        return list(self.paths)


class FakeCodeHost(CodeHost):
    def __init__(self, calls: list[str]):
        super().__init__(NO_RETRY)
        self.calls = calls
        self.prs: dict[str, PullRequest] = {}
        self.bodies: dict[int, str] = {}
        self.created: list[int] = []
        self.updated: list[int] = []
        self.repo_labels: set[str] = set()
        self.pr_labels: dict[int, list[str]] = {}

    def find_open_pr(self, branch: str) -> PullRequest | None:
        self.calls.append(f"codehost.find_open_pr:{branch}")
        return self.prs.get(branch)

    def create_pr(self, branch: str, base: str, title: str, body_html: str) -> PullRequest:
        self.calls.append(f"codehost.create_pr:{branch}")
        number = 100 + len(self.created) + 1
        pr = PullRequest(
            number=number,
            url=f"https://github.com/acme/widget/pull/{number}",
            branch=branch,
            base=base,
            title=title,
        )
        self.prs[branch] = pr
        self.bodies[number] = body_html
        self.created.append(number)
        return pr

    def update_pr(self, number: int, body_html: str) -> None:
        self.calls.append(f"codehost.update_pr:{number}")
        self.bodies[number] = body_html
        self.updated.append(number)

    def apply_labels(self, number: int, labels: list[str]) -> list[str]:
        self.calls.append(f"codehost.apply_labels:{number}")
        current = self.pr_labels.setdefault(number, [])
        added = [name for name in labels if name not in current]
        current.extend(added)
        return added

    def create_label_if_missing(self, name: str, description: str, color: str) -> bool:
        self.calls.append(f"codehost.create_label:{name}")
        if name in self.repo_labels:
            return False
        self.repo_labels.add(name)
        return True


class FakeCI(ContinuousIntegration):
    def __init__(self, calls: list[str]):
        super().__init__(NO_RETRY)
        self.calls = calls
        self.statuses: dict[str, str] = {"build": "success", "lint": "success"}
        self.failed_ids: list[str] = []
        self.reruns: list[str] = []

    def get_check_statuses(self, pr_number: int) -> dict[str, str]:
        self.calls.append(f"ci.get_check_statuses:{pr_number}")
        return dict(self.statuses)

    def failed_run_ids(self, branch: str) -> list[str]:
        self.calls.append(f"ci.failed_run_ids:{branch}")
        return list(self.failed_ids)

    def rerun_failed_checks(self, run_id: str) -> None:
        self.calls.append(f"ci.rerun:{run_id}")
        self.reruns.append(run_id)


class FakeCoverage(CoverageTool):
    def __init__(self, calls: list[str]):
        super().__init__(NO_RETRY)
        self.calls = calls
        self.base = 85.0
        self.head = 86.5
        self.instrumented = False
        self.commit_message = ""

    def has_instrumentation(self, path: str, ref: str) -> bool:
        self.calls.append(f"coverage.has_instrumentation:{ref}:{path}")
        return self.instrumented

    def inject_instrumentation(self, path: str, branch: str, message: str) -> str:
        self.calls.append(f"coverage.inject:{branch}:{path}")
        self.commit_message = message
        self.instrumented = True
        return "c0debabe"

    def measure(self, ref: str) -> float:
        self.calls.append(f"coverage.measure:{ref}")
        return self.base if ref.startswith("origin/") else self.head


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def calls() -> list[str]:
    return []


@pytest.fixture
def adapters(calls) -> Adapters:
    return Adapters(
        tracker=FakeTracker(calls),
        vcs=FakeVCS(calls),
        codehost=FakeCodeHost(calls),
        ci=FakeCI(calls),
        coverage=FakeCoverage(calls),
    )


@pytest.fixture
def config(tmp_path: Path, monkeypatch) -> ShipgateConfig:
    for var in ("SHIPGATE_SIGNOFF_NAME", "SHIPGATE_SIGNOFF_EMAIL", "JIRA_URL", "JIRA_USER"):
        monkeypatch.delenv(var, raising=False)
    cfg = load_config(tmp_path)
    cfg.identity = IdentityConfig(name=SIGNER_NAME, email=SIGNER_EMAIL)
    return cfg


@pytest.fixture
def orchestrator(tmp_path: Path, config: ShipgateConfig, adapters: Adapters) -> TaskOrchestrator:
    return TaskOrchestrator(tmp_path, config, adapters)
