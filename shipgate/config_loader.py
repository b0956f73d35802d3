"""
Configuration loader for SHIPGATE.
Merges defaults with per-repo .shipgate/config.yaml overrides.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field

from shipgate.models import ChangeType, Label


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

class IdentityConfig(BaseModel):
    """Declared contributor identity every Signed-off-by line must match."""
    name: str = ""
    email: str = ""


class PolicyConfig(BaseModel):
    coverage_threshold: float = 80.0
    require_issue_in_subject: bool = True
    protected_paths: list[str] = Field(default_factory=list)


class CoverageConfig(BaseModel):
    command: str = "python -m pytest --cov --cov-report=json:.shipgate/coverage.json -q"
    report_path: str = ".shipgate/coverage.json"
    target_file: str = "pyproject.toml"
    instrumentation_marker: str = "[tool.coverage.run]"
    instrumentation_block: str = "\n[tool.coverage.run]\nbranch = true\n"


class LabelRule(BaseModel):
    type: ChangeType
    public_api_changed: bool | None = None
    priority: bool = False
    labels: list[Label] = Field(default_factory=list)


class LabelsConfig(BaseModel):
    platforms: list[str] = Field(default_factory=list)
    rules: list[LabelRule] = Field(default_factory=list)


class RetryConfig(BaseModel):
    attempts: int = 4
    min_wait: float = 1.0
    max_wait: float = 10.0


class WorkspaceConfig(BaseModel):
    state_dir: str = ".shipgate/tasks"
    audit_dir: str = ".shipgate/audit"
    lock_dir: str = ".shipgate/locks"
    audit_batch_size: int = 20


class TrackerConfig(BaseModel):
    url: str = ""
    user: str = ""
    disclosure_field: str = "customfield_ai_assistance"
    disclosure_value: str = "Yes"
    story_points_field: str = "customfield_10016"
    timeout: float = 20.0


class CodeHostConfig(BaseModel):
    base_branch: str = "main"
    remote: str = "origin"


class ShipgateConfig(BaseModel):
    identity: IdentityConfig = Field(default_factory=IdentityConfig)
    policy: PolicyConfig = Field(default_factory=PolicyConfig)
    coverage: CoverageConfig = Field(default_factory=CoverageConfig)
    labels: LabelsConfig = Field(default_factory=LabelsConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    workspace: WorkspaceConfig = Field(default_factory=WorkspaceConfig)
    tracker: TrackerConfig = Field(default_factory=TrackerConfig)
    codehost: CodeHostConfig = Field(default_factory=CodeHostConfig)


# ---------------------------------------------------------------------------
# Loader
# ---------------------------------------------------------------------------

_DEFAULT_CONFIG_PATH = Path(__file__).parent / "config.yaml"


def _deep_merge(base: dict, override: dict) -> dict:
    """Recursively merge override into base."""
    merged = base.copy()
    for key, value in override.items():
        if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_config(repo_path: Path | None = None) -> ShipgateConfig:
    """
    Load config by merging:
      1. Built-in defaults (shipgate/config.yaml)
      2. Repo-level overrides (<repo>/.shipgate/config.yaml)
      3. Environment variable overrides (identity + tracker endpoint)
    """
    # 1. Built-in defaults
    with open(_DEFAULT_CONFIG_PATH, "r") as f:
        base: dict[str, Any] = yaml.safe_load(f) or {}

    # 2. Repo overrides
    if repo_path:
        repo_config = repo_path / ".shipgate" / "config.yaml"
        if repo_config.exists():
            with open(repo_config, "r") as f:
                overrides: dict[str, Any] = yaml.safe_load(f) or {}
            base = _deep_merge(base, overrides)

    # 3. Env overrides
    env_overrides: dict[str, Any] = {}
    if os.environ.get("SHIPGATE_SIGNOFF_NAME"):
        env_overrides.setdefault("identity", {})["name"] = os.environ["SHIPGATE_SIGNOFF_NAME"]
    if os.environ.get("SHIPGATE_SIGNOFF_EMAIL"):
        env_overrides.setdefault("identity", {})["email"] = os.environ["SHIPGATE_SIGNOFF_EMAIL"]
    if os.environ.get("JIRA_URL"):
        env_overrides.setdefault("tracker", {})["url"] = os.environ["JIRA_URL"]
    if os.environ.get("JIRA_USER"):
        env_overrides.setdefault("tracker", {})["user"] = os.environ["JIRA_USER"]
    base = _deep_merge(base, env_overrides)

    return ShipgateConfig(**base)


def validate_credentials() -> dict[str, bool]:
    """Check which external-service credentials are available."""
    return {
        "JIRA_URL":      bool(os.environ.get("JIRA_URL")),
        "JIRA_TOKEN":    bool(os.environ.get("JIRA_TOKEN")),
        "GH_TOKEN":      bool(os.environ.get("GH_TOKEN") or os.environ.get("GITHUB_TOKEN")),
        "SHIPGATE_SIGNOFF_EMAIL": bool(os.environ.get("SHIPGATE_SIGNOFF_EMAIL")),
    }
