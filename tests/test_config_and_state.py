import pytest

from shipgate.config_loader import load_config, validate_credentials
from shipgate.errors import TaskNotFoundError
from shipgate.models import Classification, Task, derive_branch_name
from shipgate.state import TaskStore


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for var in ("SHIPGATE_SIGNOFF_NAME", "SHIPGATE_SIGNOFF_EMAIL", "JIRA_URL", "JIRA_USER", "JIRA_TOKEN"):
        monkeypatch.delenv(var, raising=False)


def test_defaults(tmp_path):
    config = load_config(tmp_path)
    assert config.policy.coverage_threshold == 80.0
    assert "LICENSE" in config.policy.protected_paths
    assert config.tracker.disclosure_value == "Yes"
    assert config.codehost.base_branch == "main"
    assert any(rule.type == "bugfix" for rule in config.labels.rules)


def test_repo_overrides_are_deep_merged(tmp_path):
    (tmp_path / ".shipgate").mkdir()
    (tmp_path / ".shipgate" / "config.yaml").write_text(
        "policy:\n  coverage_threshold: 90\ncodehost:\n  base_branch: develop\n"
    )
    config = load_config(tmp_path)
    assert config.policy.coverage_threshold == 90.0
    assert "LICENSE" in config.policy.protected_paths
    assert config.codehost.base_branch == "develop"
    assert config.codehost.remote == "origin"


def test_env_overrides(tmp_path, monkeypatch):
    monkeypatch.setenv("SHIPGATE_SIGNOFF_NAME", "Dev One")
    monkeypatch.setenv("SHIPGATE_SIGNOFF_EMAIL", "dev@example.com")
    monkeypatch.setenv("JIRA_URL", "https://jira.example.com")
    config = load_config(tmp_path)
    assert config.identity.name == "Dev One"
    assert config.identity.email == "dev@example.com"
    assert config.tracker.url == "https://jira.example.com"


def test_validate_credentials(monkeypatch):
    monkeypatch.setenv("JIRA_TOKEN", "secret")
    creds = validate_credentials()
    assert creds["JIRA_TOKEN"] is True
    assert creds["JIRA_URL"] is False


def test_branch_names():
    assert derive_branch_name("ABC-123") == "ABC-123"
    assert derive_branch_name("fix the  flaky test!") == "fix-the-flaky-test"
    assert Task.from_slug().task_id.startswith("task-")


def test_store_round_trip(tmp_path):
    store = TaskStore(tmp_path)
    task = Task.for_issue("ABC-123", Classification(type="bugfix"), explicit_approval=True)
    task.context["coverage_before"] = 81.5
    store.save(task)

    loaded = store.load("ABC-123")
    assert loaded.classification.type == "bugfix"
    assert loaded.explicit_approval
    assert loaded.context["coverage_before"] == 81.5
    assert [t.task_id for t in store.list()] == ["ABC-123"]


def test_store_missing_task(tmp_path):
    with pytest.raises(TaskNotFoundError):
        TaskStore(tmp_path).load("NOPE-1")
