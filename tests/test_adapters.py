import json
import subprocess

import httpx
import pytest

from shipgate.adapters import ExternalAdapter, external_call
from shipgate.adapters.github import GitHubCodeHost
from shipgate.adapters.jira import (
    JiraIssueTracker,
    TrackerRejected,
    TrackerUnavailable,
    parse_acceptance_criteria,
)
from shipgate.config_loader import RetryConfig, TrackerConfig
from shipgate.errors import ExternalServiceError

FAST_RETRY = RetryConfig(attempts=3, min_wait=0, max_wait=0)


class Flaky(ExternalAdapter):
    def __init__(self, failures, error=ExternalServiceError):
        super().__init__(FAST_RETRY)
        self.failures = failures
        self.error = error
        self.attempts = 0

    @external_call
    def call(self):
        self.attempts += 1
        if self.attempts <= self.failures:
            raise self.error("service unavailable")
        return "ok"


class TestRetry:
    def test_transient_failure_is_retried(self):
        adapter = Flaky(failures=2)
        assert adapter.call() == "ok"
        assert adapter.attempts == 3

    def test_retries_are_bounded(self):
        adapter = Flaky(failures=10)
        with pytest.raises(ExternalServiceError):
            adapter.call()
        assert adapter.attempts == 3

    def test_non_retryable_error_fails_fast(self):
        adapter = Flaky(failures=10, error=TrackerRejected)
        with pytest.raises(TrackerRejected):
            adapter.call()
        assert adapter.attempts == 1


# ---------------------------------------------------------------------------
# Jira
# ---------------------------------------------------------------------------

ISSUE_DOC = {
    "key": "ABC-123",
    "fields": {
        "summary": "Widget crashes on resize",
        "description": "Steps...\n\nh3. Acceptance Criteria\n* Resize works\n* No flicker\n\nNotes after.",
        "customfield_10016": 5,
        "issuelinks": [{"outwardIssue": {"key": "ABC-100"}}, {"inwardIssue": {"key": "ABC-99"}}],
    },
}


class FakeJira:
    def __init__(self, fail_first=0):
        self.fields = {}
        self.requests = []
        self.fail_first = fail_first

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append((request.method, request.url.path))
        if self.fail_first:
            self.fail_first -= 1
            return httpx.Response(503)
        if request.method == "PUT":
            self.fields.update(json.loads(request.content)["fields"])
            return httpx.Response(204)
        wanted = request.url.params.get("fields")
        if wanted:
            return httpx.Response(200, json={"key": "ABC-123", "fields": {wanted: self.fields.get(wanted)}})
        if request.url.path.endswith("/MISSING-1"):
            return httpx.Response(404, text="Issue does not exist")
        return httpx.Response(200, json=ISSUE_DOC)


def _tracker(server: FakeJira) -> JiraIssueTracker:
    config = TrackerConfig(url="https://jira.example.com")
    client = httpx.Client(base_url=config.url, transport=httpx.MockTransport(server))
    return JiraIssueTracker(config, retry=FAST_RETRY, client=client)


def test_fetch_issue_maps_fields():
    issue = _tracker(FakeJira()).fetch_issue("ABC-123")
    assert issue.summary == "Widget crashes on resize"
    assert issue.acceptance_criteria == ["Resize works", "No flicker"]
    assert issue.story_points == 5.0
    assert issue.links == ["ABC-100", "ABC-99"]
    assert issue.url == "https://jira.example.com/browse/ABC-123"


def test_disclosure_field_round_trip():
    server = FakeJira()
    tracker = _tracker(server)
    tracker.update_field("ABC-123", "customfield_ai_assistance", {"value": "Yes"})
    assert tracker.get_field("ABC-123", "customfield_ai_assistance") == {"value": "Yes"}
    assert ("PUT", "/rest/api/2/issue/ABC-123") in server.requests


def test_service_unavailable_is_retried():
    server = FakeJira(fail_first=2)
    assert _tracker(server).fetch_issue("ABC-123").key == "ABC-123"
    assert len(server.requests) == 3


def test_exhausted_retries_surface_unavailable():
    server = FakeJira(fail_first=5)
    with pytest.raises(TrackerUnavailable):
        _tracker(server).fetch_issue("ABC-123")
    assert len(server.requests) == 3


def test_client_error_is_not_retried():
    server = FakeJira()
    with pytest.raises(TrackerRejected):
        _tracker(server).fetch_issue("MISSING-1")
    assert len(server.requests) == 1


def test_close_releases_the_http_client():
    client = httpx.Client(transport=httpx.MockTransport(FakeJira()))
    tracker = JiraIssueTracker(TrackerConfig(url="https://jira.example.com"), client=client)
    tracker.close()
    assert client.is_closed


def test_acceptance_criteria_without_heading():
    assert parse_acceptance_criteria("* just a bullet") == []


# ---------------------------------------------------------------------------
# GitHub (gh CLI)
# ---------------------------------------------------------------------------

def test_apply_labels_only_adds_missing(tmp_path, monkeypatch):
    issued = []

    def fake_run(cmd, **kwargs):
        issued.append(cmd)
        if "view" in cmd:
            out = json.dumps({"labels": [{"name": "Aspect: Stability"}]})
        else:
            out = ""
        return subprocess.CompletedProcess(cmd, 0, stdout=out, stderr="")

    monkeypatch.setattr(subprocess, "run", fake_run)
    host = GitHubCodeHost(tmp_path, retry=FAST_RETRY)
    added = host.apply_labels(7, ["Aspect: Stability", "Expeditor: Bump Version Patch"])

    assert added == ["Expeditor: Bump Version Patch"]
    edit = [c for c in issued if "edit" in c][0]
    assert "Aspect: Stability" not in edit
