"""
SHIPGATE CodeHost + ContinuousIntegration adapters (GitHub via `gh` CLI).
"""

from __future__ import annotations

import json
import subprocess
from pathlib import Path
from typing import Any

from loguru import logger

from shipgate.adapters import CodeHost, ContinuousIntegration, external_call
from shipgate.config_loader import RetryConfig
from shipgate.errors import ExternalServiceError
from shipgate.models import PullRequest


class GhError(ExternalServiceError):
    pass


class _GhCli:
    repo_path: Path

    def _gh(self, *args: str) -> str:
        cmd = ["gh", *args]
        try:
            result = subprocess.run(cmd, cwd=self.repo_path, capture_output=True, text=True, timeout=60)
        except subprocess.TimeoutExpired as e:
            raise GhError(f"gh timed out: {' '.join(cmd[:3])}") from e
        if result.returncode != 0:
            raise GhError(f"gh failed: {' '.join(cmd[:3])}\n{result.stderr.strip()}")
        return result.stdout

    def _gh_json(self, *args: str) -> Any:
        out = self._gh(*args)
        try:
            return json.loads(out or "null")
        except json.JSONDecodeError as e:
            raise GhError(f"gh returned invalid JSON for {' '.join(args[:2])}: {e}") from e


# ---------------------------------------------------------------------------
# Code host
# ---------------------------------------------------------------------------

class GitHubCodeHost(_GhCli, CodeHost):
    def __init__(self, repo_path: Path, retry: RetryConfig | None = None):
        super().__init__(retry)
        self.repo_path = repo_path.resolve()

    @external_call
    def find_open_pr(self, branch: str) -> PullRequest | None:
        data = self._gh_json(
            "pr", "list", "--head", branch, "--state", "open",
            "--json", "number,url,headRefName,baseRefName,title,state",
        ) or []
        for item in data:
            if item.get("headRefName") == branch:
                return PullRequest(
                    number=item["number"],
                    url=item.get("url", ""),
                    branch=branch,
                    base=item.get("baseRefName", "main"),
                    title=item.get("title", ""),
                    state=str(item.get("state", "open")).lower(),
                )
        return None

    @external_call
    def create_pr(self, branch: str, base: str, title: str, body_html: str) -> PullRequest:
        url = self._gh(
            "pr", "create",
            "--head", branch,
            "--base", base,
            "--title", title,
            "--body", body_html,
        ).strip()
        number = int(url.rstrip("/").rsplit("/", 1)[-1])
        logger.info(f"[GITHUB] Opened PR #{number} for {branch}")
        return PullRequest(number=number, url=url, branch=branch, base=base, title=title)

    @external_call
    def update_pr(self, number: int, body_html: str) -> None:
        self._gh("pr", "edit", str(number), "--body", body_html)
        logger.info(f"[GITHUB] Updated PR #{number} body")

    @external_call
    def apply_labels(self, number: int, labels: list[str]) -> list[str]:
        data = self._gh_json("pr", "view", str(number), "--json", "labels") or {}
        present = {lbl.get("name") for lbl in data.get("labels", [])}
        missing = [name for name in labels if name not in present]
        if missing:
            self._gh("pr", "edit", str(number), "--add-label", ",".join(missing))
            logger.info(f"[GITHUB] PR #{number} labelled: {missing}")
        return missing

    @external_call
    def create_label_if_missing(self, name: str, description: str, color: str) -> bool:
        data = self._gh_json("label", "list", "--json", "name", "--limit", "1000") or []
        if any(lbl.get("name") == name for lbl in data):
            return False
        self._gh("label", "create", name, "--description", description, "--color", color)
        logger.info(f"[GITHUB] Created label {name!r}")
        return True


# ---------------------------------------------------------------------------
# CI (GitHub Actions)
# ---------------------------------------------------------------------------

class GitHubActionsCI(_GhCli, ContinuousIntegration):
    def __init__(self, repo_path: Path, retry: RetryConfig | None = None):
        super().__init__(retry)
        self.repo_path = repo_path.resolve()

    @external_call
    def get_check_statuses(self, pr_number: int) -> dict[str, str]:
        data = self._gh_json("pr", "checks", str(pr_number), "--json", "name,state") or []
        return {item["name"]: str(item.get("state", "")).lower() for item in data}

    @external_call
    def failed_run_ids(self, branch: str) -> list[str]:
        data = self._gh_json(
            "run", "list", "--branch", branch, "--limit", "20",
            "--json", "databaseId,conclusion",
        ) or []
        return [str(run["databaseId"]) for run in data if run.get("conclusion") == "failure"]

    @external_call
    def rerun_failed_checks(self, run_id: str) -> None:
        self._gh("run", "rerun", run_id, "--failed")
        logger.info(f"[CI] Re-running failed jobs of run {run_id}")
