"""
SHIPGATE Stage Executor — The Brainstem

It is NOT smart. It is deterministic.

Responsibilities:
  - Run stages in order from task.current_stage
  - Claim the branch lock before idempotency-sensitive stages
  - Record one audit entry per stage attempt
  - Open a gate after every gated stage and stop there
  - Halt on any typed error, recording what already happened

It never decides whether to advance past a gate. Only the operator
does that, through the GateController.
"""

from __future__ import annotations

from typing import Sequence

from loguru import logger

from shipgate.audit_logger import AuditRecorder
from shipgate.errors import ShipgateError, TaskTerminalError
from shipgate.gates import GateController
from shipgate.idempotency import IdempotencyTracker
from shipgate.models import StageResult, Task, TaskResult
from shipgate.stages import Stage, StageContext


class StageExecutor:
    def __init__(
        self,
        stages: Sequence[Stage],
        ctx: StageContext,
        gates: GateController,
        audit: AuditRecorder,
    ):
        self.stages = list(stages)
        self.ctx = ctx
        self.gates = gates
        self.audit = audit

    @property
    def tracker(self) -> IdempotencyTracker:
        return self.ctx.tracker

    def stage_name(self, index: int) -> str | None:
        return self.stages[index].name if index < len(self.stages) else None

    def run(self, task: Task) -> TaskResult:
        """Advance the task until it hits a gate, a halt, or the end of the pipeline."""
        if task.status == "completed":
            # Re-running a finished task is a no-op: no adapter calls.
            return self._result(task)
        if task.status == "aborted":
            raise TaskTerminalError(f"Task {task.task_id} was aborted", artifact=task.task_id)
        if self.gates.pending(task) is not None:
            return self._result(task)

        if task.current_stage < len(self.stages):
            # Only the lock holder may be running on this branch.
            try:
                self.tracker.claim(task)
            except ShipgateError as e:
                self._halt(task, self.stages[task.current_stage], e)
                raise

        task.status = "running"
        task.halt_reason = None
        logger.info(f"[EXEC] {task.task_id} starting at {self.stage_name(task.current_stage)}")

        while task.current_stage < len(self.stages):
            index = task.current_stage
            stage = self.stages[index]
            logger.info(f"[EXEC] {task.task_id} → {stage.name}")

            try:
                if stage.idempotent_sensitive:
                    self.tracker.claim(task)
                result = stage.execute(task, self.ctx)
            except ShipgateError as e:
                self._halt(task, stage, e)
                raise

            self.audit.record(task.task_id, stage.name, result.outcome, result.side_effects)
            task.context.setdefault("stage_summaries", {})[stage.name] = result.summary
            logger.info(f"[EXEC] {task.task_id} {stage.name}: {result.outcome}")

            if stage.requires_gate:
                self.gates.open(task, index, self._gate_summary(stage, result))
                return self._result(task)

            task.current_stage = index + 1

        self._complete(task)
        return self._result(task)

    # -----------------------------------------------------------------------
    # Transitions
    # -----------------------------------------------------------------------

    def _halt(self, task: Task, stage: Stage, error: ShipgateError) -> None:
        task.status = "halted"
        task.halt_reason = {"stage": stage.name, **error.to_dict()}
        self.audit.record(task.task_id, stage.name, "failed", error.side_effects)
        self.audit.flush(task.task_id)
        logger.warning(f"[EXEC] {task.task_id} halted at {stage.name}: {error.code}: {error.message}")

    def _complete(self, task: Task) -> None:
        task.status = "completed"
        task.pending_gate = None
        self.tracker.release(task)
        self.audit.flush(task.task_id)
        logger.info(f"[EXEC] {task.task_id} completed")

    @staticmethod
    def _gate_summary(stage: Stage, result: StageResult) -> str:
        header = f"[{stage.name}] {result.outcome}"
        return f"{header}\n{result.summary}" if result.summary else header

    def _result(self, task: Task) -> TaskResult:
        prompt = self.gates.prompt(task) if self.gates.pending(task) else None
        return TaskResult(
            task_id=task.task_id,
            status=task.status,
            current_stage=task.current_stage,
            stage_name=self.stage_name(task.current_stage),
            prompt=prompt,
            error=task.halt_reason,
            pr_url=task.pr.url if task.pr else None,
        )
