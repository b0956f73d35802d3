"""
SHIPGATE CoverageTool adapter (pytest-cov via isolated git worktrees).

Every checkout happens in a throwaway worktree, so the operator's own
checkout is never touched:
  - instrumentation is committed onto the task branch from a worktree
    attached to that branch
  - each measurement runs in a detached worktree of the requested ref
"""

from __future__ import annotations

import json
import shlex
import shutil
import subprocess
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from loguru import logger

from shipgate.adapters import CoverageTool, external_call
from shipgate.config_loader import CoverageConfig, RetryConfig
from shipgate.errors import ExternalServiceError


class CoverageRunError(ExternalServiceError):
    retryable = False


class PytestCoverageTool(CoverageTool):
    def __init__(self, repo_path: Path, config: CoverageConfig, retry: RetryConfig | None = None):
        super().__init__(retry)
        self.repo_path = repo_path.resolve()
        self.config = config
        self._cache: dict[str, float] = {}

    def has_instrumentation(self, path: str, ref: str) -> bool:
        result = subprocess.run(
            ["git", "show", f"{ref}:{path}"],
            cwd=self.repo_path, capture_output=True, text=True, timeout=120,
        )
        if result.returncode != 0:
            return False
        return self.config.instrumentation_marker in result.stdout

    @external_call
    def inject_instrumentation(self, path: str, branch: str, message: str) -> str:
        with self._worktree(branch) as tree:
            target = tree / path
            existing = target.read_text() if target.exists() else ""
            if self.config.instrumentation_marker in existing:
                return ""
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(existing.rstrip("\n") + "\n" + self.config.instrumentation_block)
            self._run(["git", "add", "--", path], cwd=tree)
            self._run(["git", "commit", "--quiet", "-m", message], cwd=tree)
            sha = self._run(["git", "rev-parse", "HEAD"], cwd=tree).strip()
        logger.info(f"[COVERAGE] Instrumentation committed to {branch}:{path} ({sha[:8]})")
        return sha

    @external_call
    def measure(self, ref: str) -> float:
        sha = self._run(["git", "rev-parse", ref], cwd=self.repo_path).strip()
        if sha in self._cache:
            return self._cache[sha]

        with self._worktree(sha, detach=True) as tree:
            subprocess.run(
                shlex.split(self.config.command),
                cwd=tree, capture_output=True, text=True, timeout=1800,
            )
            report = tree / self.config.report_path
            if not report.exists():
                raise CoverageRunError(f"No coverage report produced for {ref} ({report})")
            percent = float(json.loads(report.read_text())["totals"]["percent_covered"])

        self._cache[sha] = round(percent, 2)
        logger.info(f"[COVERAGE] {ref} ({sha[:8]}): {self._cache[sha]}%")
        return self._cache[sha]

    @contextmanager
    def _worktree(self, ref: str, detach: bool = False) -> Iterator[Path]:
        tmp = Path(tempfile.mkdtemp(prefix="shipgate-cov-"))
        tree = tmp / "tree"
        cmd = ["git", "worktree", "add"]
        if detach:
            cmd.append("--detach")
        try:
            self._run([*cmd, str(tree), ref], cwd=self.repo_path)
            yield tree
        finally:
            subprocess.run(
                ["git", "worktree", "remove", "--force", str(tree)],
                cwd=self.repo_path, capture_output=True, text=True,
            )
            shutil.rmtree(tmp, ignore_errors=True)

    @staticmethod
    def _run(cmd: list[str], cwd: Path) -> str:
        result = subprocess.run(cmd, cwd=cwd, capture_output=True, text=True, timeout=120)
        if result.returncode != 0:
            raise CoverageRunError(f"{' '.join(cmd[:3])} failed: {result.stderr.strip()}")
        return result.stdout
