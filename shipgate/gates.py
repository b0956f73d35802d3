"""
SHIPGATE Gate Controller

Confirm / halt / resume protocol at stage boundaries.

    Open ──confirm──▶ Confirmed  (stage index + 1, pipeline resumes)
      ├──reject───▶ Rejected   (same stage index, revision requested)
      └──abort────▶ Aborted    (task terminal)

There is no timeout and no auto-confirm: an unanswered gate parks the
Task in awaiting_confirmation indefinitely. Only the open gate's stage
index is persisted on the Task; resolved gates are dropped.
"""

from __future__ import annotations

from typing import Sequence

from loguru import logger

from shipgate.errors import GateNotOpenError, TaskTerminalError
from shipgate.event_bus import EventBus
from shipgate.models import Gate, GateDecision, StagePrompt, Task, utc_now

_RESOLVED_STATE = {
    GateDecision.CONFIRM: "confirmed",
    GateDecision.REJECT: "rejected",
    GateDecision.ABORT: "aborted",
}


class GateController:
    def __init__(self, stage_names: Sequence[str], event_bus: EventBus | None = None):
        self.stage_names = list(stage_names)
        self.event_bus = event_bus

    def open(self, task: Task, stage_index: int, summary: str = "") -> Gate:
        if task.is_terminal:
            raise TaskTerminalError(f"Task {task.task_id} is {task.status}")
        task.pending_gate = stage_index
        task.status = "awaiting_confirmation"
        task.context["gate_summary"] = summary
        task.context["gate_opened_at"] = utc_now()
        gate = self._gate(task)
        logger.info(f"[GATE] {task.task_id} waiting at {gate.stage_name}")
        if self.event_bus:
            self.event_bus.emit("gate_opened", task.task_id, self.prompt(task).model_dump())
        return gate

    def pending(self, task: Task) -> Gate | None:
        if task.pending_gate is None or task.status != "awaiting_confirmation":
            return None
        return self._gate(task)

    def prompt(self, task: Task) -> StagePrompt:
        gate = self.pending(task)
        if gate is None:
            raise GateNotOpenError(f"Task {task.task_id} has no open gate")
        return StagePrompt(
            task_id=task.task_id,
            stage_name=gate.stage_name,
            summary=task.context.get("gate_summary", ""),
            remaining_stages=self.stage_names[gate.stage_index + 1:],
        )

    def resolve(self, task: Task, decision: GateDecision | str, note: str = "") -> Gate:
        decision = GateDecision(decision)
        gate = self.pending(task)
        if gate is None:
            raise GateNotOpenError(f"Task {task.task_id} has no open gate to {decision.value}")

        if decision is GateDecision.CONFIRM:
            task.current_stage = gate.stage_index + 1
            task.status = "pending"
        elif decision is GateDecision.REJECT:
            # Local retry: same stage, never an earlier one.
            task.current_stage = gate.stage_index
            task.status = "pending"
            task.revision_requests.append(note or f"Revision requested at {gate.stage_name}")
        else:
            task.status = "aborted"

        task.pending_gate = None
        task.context.pop("gate_summary", None)
        task.context.pop("gate_opened_at", None)
        gate = gate.model_copy(update={"state": _RESOLVED_STATE[decision]})
        logger.info(f"[GATE] {task.task_id} {gate.stage_name}: {gate.state}")
        if self.event_bus:
            self.event_bus.emit("gate_resolved", task.task_id, gate.model_dump())
        return gate

    def _gate(self, task: Task) -> Gate:
        index = task.pending_gate if task.pending_gate is not None else task.current_stage
        name = self.stage_names[index] if index < len(self.stage_names) else "end"
        return Gate(
            task_id=task.task_id,
            stage_index=index,
            stage_name=name,
            opened_at=task.context.get("gate_opened_at") or utc_now(),
        )
