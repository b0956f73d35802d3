"""
SHIPGATE Idempotency Tracker

Detects pre-existing external state for a Task (branch, PR, coverage
instrumentation) so re-entry reuses it instead of creating duplicates.

Also owns the per-branch advisory locks: only one Task may be active
for a given branch name. The lock is an in-process mutex plus an
exclusive-create lock file, so it holds across threads, processes and
restarts until the owning Task reaches a terminal state.
"""

from __future__ import annotations

import os
import re
import threading
from pathlib import Path
from typing import Any, Literal

from loguru import logger
from pydantic import BaseModel, Field

from shipgate.adapters import Adapters
from shipgate.errors import ConcurrentTaskConflict, DivergedConflict
from shipgate.models import Task

ResourceKind = Literal["branch", "pull_request", "compliance_instrumentation"]


class ExistingResource(BaseModel):
    kind: ResourceKind
    ref: str
    detail: dict[str, Any] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Branch locks
# ---------------------------------------------------------------------------

class BranchLockRegistry:
    """Lock files hold the owning run token on the first line and the task id on the second."""

    def __init__(self, lock_dir: Path):
        self.lock_dir = lock_dir
        self.lock_dir.mkdir(parents=True, exist_ok=True)
        self._mutex = threading.Lock()

    def _path(self, branch: str) -> Path:
        return self.lock_dir / (re.sub(r"[^A-Za-z0-9._-]", "_", branch) + ".lock")

    def _read(self, branch: str) -> list[str]:
        path = self._path(branch)
        if not path.exists():
            return []
        return path.read_text(encoding="utf-8").splitlines()

    def holder(self, branch: str) -> str | None:
        lines = self._read(branch)
        if not lines:
            return None
        return lines[0].strip() or None

    def acquire(self, branch: str, owner: str, label: str = "") -> None:
        """Re-entrant for the owning run; ConcurrentTaskConflict for anyone else."""
        with self._mutex:
            path = self._path(branch)
            try:
                fd = os.open(path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
            except FileExistsError:
                lines = self._read(branch)
                if lines and lines[0].strip() == owner:
                    return
                held_by = lines[1].strip() if len(lines) > 1 else (lines[0].strip() if lines else "?")
                raise ConcurrentTaskConflict(
                    f"Branch {branch} is held by active task {held_by}",
                    artifact=held_by,
                )
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(f"{owner}\n{label}\n" if label else f"{owner}\n")
            logger.debug(f"[LOCK] {label or owner} acquired {branch}")

    def release(self, branch: str, owner: str) -> bool:
        with self._mutex:
            if self.holder(branch) != owner:
                return False
            self._path(branch).unlink(missing_ok=True)
            logger.debug(f"[LOCK] {owner} released {branch}")
            return True


# ---------------------------------------------------------------------------
# Tracker
# ---------------------------------------------------------------------------

class IdempotencyTracker:
    def __init__(self, adapters: Adapters, locks: BranchLockRegistry, instrumentation_target: str):
        self.adapters = adapters
        self.locks = locks
        self.instrumentation_target = instrumentation_target

    def claim(self, task: Task) -> None:
        """Mutual-exclusion boundary for lookup-then-act on the task's branch."""
        self.locks.acquire(task.branch_name, task.run_id, task.task_id)

    def release(self, task: Task) -> bool:
        return self.locks.release(task.branch_name, task.run_id)

    def lookup(self, task: Task, kind: ResourceKind) -> ExistingResource | None:
        if kind == "branch":
            state = self.adapters.vcs.branch_state(
                task.branch_name, task.base_branch, task.context.get("fork_point", "")
            )
            if not state.exists:
                return None
            if state.diverged:
                raise DivergedConflict(
                    f"Branch {task.branch_name} has diverged from {task.base_branch}; "
                    "refusing to overwrite it",
                    artifact=task.branch_name,
                )
            return ExistingResource(kind=kind, ref=task.branch_name, detail={"head_sha": state.head_sha})

        if kind == "pull_request":
            pr = self.adapters.codehost.find_open_pr(task.branch_name)
            if pr is None:
                return None
            return ExistingResource(kind=kind, ref=str(pr.number), detail=pr.model_dump())

        if kind == "compliance_instrumentation":
            if self.adapters.coverage.has_instrumentation(self.instrumentation_target, task.branch_name):
                return ExistingResource(kind=kind, ref=self.instrumentation_target)
            return None

        raise ValueError(f"Unknown resource kind: {kind}")
