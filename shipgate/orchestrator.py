"""
SHIPGATE Task Orchestrator

Top-level driver. Owns the collaborators for one repository and is the
only place Tasks are created, reloaded and persisted:

  start   → create Task, claim its branch, run to the first gate
  decide  → resolve the open gate; continue on confirm, or abort a halted Task
  resume  → re-run a halted or rejected Task from its current stage
  status  → the stored Task
  summary → post-task summary built from the audit log

The Task is written to the TaskStore after every transition, so a
crashed process resumes exactly where it stopped.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Sequence

from loguru import logger

from shipgate.adapters import Adapters
from shipgate.audit_logger import AuditRecorder
from shipgate.config_loader import ShipgateConfig
from shipgate.errors import ConcurrentTaskConflict, ShipgateError, TaskTerminalError
from shipgate.event_bus import EventBus
from shipgate.executor import StageExecutor
from shipgate.gates import GateController
from shipgate.idempotency import BranchLockRegistry, IdempotencyTracker
from shipgate.labels import LabelResolver
from shipgate.models import Classification, GateDecision, Task, TaskResult
from shipgate.stages import DEFAULT_PIPELINE, Stage, StageContext
from shipgate.state import TaskStore


class TaskOrchestrator:
    def __init__(
        self,
        repo_path: Path,
        config: ShipgateConfig,
        adapters: Adapters,
        stages: Sequence[Stage] = DEFAULT_PIPELINE,
        event_bus: EventBus | None = None,
    ):
        self.repo_path = repo_path.resolve()
        self.config = config
        self.adapters = adapters
        self.event_bus = event_bus or EventBus()

        ws = config.workspace
        self.store = TaskStore(self.repo_path / ws.state_dir)
        self.locks = BranchLockRegistry(self.repo_path / ws.lock_dir)
        self.audit = AuditRecorder(self.repo_path / ws.audit_dir, ws.audit_batch_size, self.event_bus)
        self.gates = GateController([s.name for s in stages], self.event_bus)
        self.tracker = IdempotencyTracker(adapters, self.locks, config.coverage.target_file)
        ctx = StageContext(
            adapters=adapters,
            tracker=self.tracker,
            resolver=LabelResolver(config.labels),
            config=config,
        )
        self.executor = StageExecutor(stages, ctx, self.gates, self.audit)

    def close(self) -> None:
        self.audit.flush()
        self.adapters.close()

    def __enter__(self) -> "TaskOrchestrator":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    # -----------------------------------------------------------------------
    # Operations
    # -----------------------------------------------------------------------

    def start(
        self,
        issue_id: str | None = None,
        slug: str | None = None,
        classification: Classification | None = None,
        explicit_approval: bool = False,
        context: dict[str, Any] | None = None,
    ) -> TaskResult:
        base = self.config.codehost.base_branch
        if issue_id:
            task = Task.for_issue(issue_id, classification, base, explicit_approval)
        else:
            task = Task.from_slug(slug, classification, base, explicit_approval)
        task.context.update(context or {})

        # The branch lock is taken before the store is read or written, so a
        # second start for the same branch fails here and persists nothing.
        self.tracker.claim(task)
        if self.store.exists(task.task_id):
            existing = self.store.load(task.task_id)
            if existing.status == "completed":
                self.tracker.release(task)
                logger.info(f"[ORCH] {task.task_id} already completed")
                return self.executor.run(existing)
            if not existing.is_terminal:
                self.tracker.release(task)
                raise ConcurrentTaskConflict(
                    f"Task {task.task_id} is already {existing.status}; use resume or decide",
                    artifact=task.task_id,
                )
            # A previously aborted task may be started afresh.

        logger.info(f"[ORCH] Started {task.task_id} on {task.branch_name}")
        self.store.save(task)
        return self._run(task)

    def resume(self, task_id: str) -> TaskResult:
        task = self.store.load(task_id)
        logger.info(f"[ORCH] Resuming {task_id} ({task.status}) at stage {task.current_stage}")
        return self._run(task)

    def decide(self, task_id: str, decision: GateDecision | str, note: str = "") -> TaskResult:
        task = self.store.load(task_id)
        if task.is_terminal:
            raise TaskTerminalError(f"Task {task_id} is {task.status}", artifact=task_id)
        if task.status == "halted" and GateDecision(decision) is GateDecision.ABORT:
            return self._abort_halted(task)

        gate = self.gates.resolve(task, decision, note)
        self.audit.record(task_id, gate.stage_name, gate.state)

        if gate.state == "aborted":
            self.tracker.release(task)
            self.audit.flush(task_id)
            self.store.save(task)
            logger.info(f"[ORCH] {task_id} aborted at {gate.stage_name}")
            return self._result(task)

        self.store.save(task)
        if gate.state == "rejected":
            result = self._result(task)
            result.revision_request = task.revision_requests[-1]
            return result
        return self._run(task)

    def status(self, task_id: str) -> Task:
        return self.store.load(task_id)

    def list(self) -> list[Task]:
        return self.store.list()

    def summary(self, task_id: str) -> dict[str, Any]:
        """Post-task summary assembled from the audit log."""
        task = self.store.load(task_id)
        entries = self.audit.entries(task_id)
        return {
            "task_id": task.task_id,
            "issue_id": task.issue_id,
            "status": task.status,
            "branch": task.branch_name,
            "stage": self.executor.stage_name(task.current_stage),
            "pr_url": task.pr.url if task.pr else None,
            "labels": list(task.labels),
            "manual_review": task.manual_review,
            "compliance": task.compliance.model_dump(mode="json") if task.compliance else None,
            "halt_reason": task.halt_reason,
            "revision_requests": list(task.revision_requests),
            "stages": [
                {"stage": e.stage_name, "outcome": e.outcome, "at": e.timestamp}
                for e in entries
            ],
            "side_effects": [s for e in entries for s in e.side_effects_performed],
        }

    # -----------------------------------------------------------------------
    # Internals
    # -----------------------------------------------------------------------

    def _abort_halted(self, task: Task) -> TaskResult:
        """A halted task has no open gate; abort drops it and frees its branch."""
        stage_name = (task.halt_reason or {}).get("stage") or self.executor.stage_name(task.current_stage)
        task.status = "aborted"
        task.touch()
        self.tracker.release(task)
        self.audit.record(task.task_id, stage_name, "aborted")
        self.audit.flush(task.task_id)
        self.store.save(task)
        logger.info(f"[ORCH] {task.task_id} aborted while halted at {stage_name}")
        return self._result(task)

    def _run(self, task: Task) -> TaskResult:
        try:
            result = self.executor.run(task)
        except ShipgateError:
            self.store.save(task)
            raise
        self.store.save(task)
        return result

    def _result(self, task: Task) -> TaskResult:
        return TaskResult(
            task_id=task.task_id,
            status=task.status,
            current_stage=task.current_stage,
            stage_name=self.executor.stage_name(task.current_stage),
            error=task.halt_reason,
            pr_url=task.pr.url if task.pr else None,
        )
