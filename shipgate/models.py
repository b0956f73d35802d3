"""
SHIPGATE Data Model

Task is the single piece of mutable orchestration state. It is passed
explicitly through every component call; there is no ambient
"current task". Everything else here is either an immutable snapshot
(ComplianceRecord, AuditEntry) or an adapter payload.
"""

from __future__ import annotations

import re
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

TaskStatus = Literal[
    "pending",
    "awaiting_confirmation",
    "running",
    "halted",
    "completed",
    "aborted",
]

TERMINAL_STATUSES: frozenset[str] = frozenset({"completed", "aborted"})

StageOutcome = Literal["created", "reused", "updated", "skipped", "passed", "failed"]

LabelTag = Literal["Aspect", "Platform", "Expeditor", "dependency", "other"]

ChangeType = Literal[
    "bugfix", "feature", "security", "docs", "chore", "dependency", "refactor"
]


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Adapter payloads
# ---------------------------------------------------------------------------

class Issue(BaseModel):
    key: str
    summary: str = ""
    description: str = ""
    acceptance_criteria: list[str] = Field(default_factory=list)
    story_points: float | None = None
    links: list[str] = Field(default_factory=list)
    url: str = ""


class BranchState(BaseModel):
    exists: bool = False
    diverged: bool = False
    head_sha: str = ""


class PullRequest(BaseModel):
    number: int
    url: str = ""
    branch: str
    base: str = "main"
    title: str = ""
    state: str = "open"
    run_id: str | None = None


# ---------------------------------------------------------------------------
# Classification + Labels
# ---------------------------------------------------------------------------

class Classification(BaseModel):
    """The tuple of change attributes used to resolve labels."""
    model_config = ConfigDict(frozen=True)

    type: ChangeType = "feature"
    public_api_changed: bool = False
    security_relevant: bool = False
    platform: str | None = None


class Label(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    tag: LabelTag = "other"
    description: str = ""
    color: str = "ededed"

    @property
    def display_name(self) -> str:
        if self.tag in ("Aspect", "Platform", "Expeditor"):
            return f"{self.tag}: {self.name}"
        return self.name


# ---------------------------------------------------------------------------
# Compliance + Audit snapshots
# ---------------------------------------------------------------------------

class ComplianceRecord(BaseModel):
    """Per-task compliance snapshot. Replaced wholesale, never mutated."""
    model_config = ConfigDict(frozen=True)

    sign_off_present: bool = False
    protected_files_touched: frozenset[str] = frozenset()
    coverage_delta: float = 0.0
    coverage_absolute: float = 0.0
    failures: tuple[str, ...] = ()
    computed_at: str = Field(default_factory=utc_now)

    @property
    def passed(self) -> bool:
        return not self.failures


class AuditEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    timestamp: str = Field(default_factory=utc_now)
    task_id: str
    stage_name: str
    outcome: str
    side_effects_performed: tuple[str, ...] = ()


# ---------------------------------------------------------------------------
# Stage + Gate protocol
# ---------------------------------------------------------------------------

class StageResult(BaseModel):
    outcome: StageOutcome
    summary: str = ""
    side_effects: list[str] = Field(default_factory=list)
    data: dict[str, Any] = Field(default_factory=dict)


class GateDecision(str, Enum):
    CONFIRM = "confirm"
    REJECT = "reject"
    ABORT = "abort"


class Gate(BaseModel):
    task_id: str
    stage_index: int
    stage_name: str
    state: Literal["open", "confirmed", "rejected", "aborted"] = "open"
    opened_at: str = Field(default_factory=utc_now)


class StagePrompt(BaseModel):
    """One operator turn, emitted at every gated stage boundary."""
    task_id: str
    stage_name: str
    summary: str
    remaining_stages: list[str] = Field(default_factory=list)
    prompt: str = "confirm|reject|abort"


# ---------------------------------------------------------------------------
# Task
# ---------------------------------------------------------------------------

_SLUG_RE = re.compile(r"[^A-Za-z0-9._-]+")


def derive_branch_name(key: str) -> str:
    """Issue keys are used verbatim (ABC-123); free text is slugged."""
    slug = _SLUG_RE.sub("-", key.strip()).strip("-")
    return slug or "change"


class Task(BaseModel):
    """One end-to-end change request progressing through the pipeline."""

    task_id: str
    run_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    issue_id: str | None = None
    current_stage: int = 0
    status: TaskStatus = "pending"
    branch_name: str
    base_branch: str = "main"
    pr: PullRequest | None = None
    compliance: ComplianceRecord | None = None
    classification: Classification = Field(default_factory=Classification)
    labels: list[str] = Field(default_factory=list)
    manual_review: bool = False
    explicit_approval: bool = False
    pending_gate: int | None = None
    halt_reason: dict[str, Any] | None = None
    revision_requests: list[str] = Field(default_factory=list)
    issue: Issue | None = None
    context: dict[str, Any] = Field(default_factory=dict)
    created_at: str = Field(default_factory=utc_now)
    updated_at: str = Field(default_factory=utc_now)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def touch(self) -> None:
        self.updated_at = utc_now()

    @classmethod
    def for_issue(
        cls,
        issue_id: str,
        classification: Classification | None = None,
        base_branch: str = "main",
        explicit_approval: bool = False,
    ) -> "Task":
        return cls(
            task_id=issue_id,
            issue_id=issue_id,
            branch_name=derive_branch_name(issue_id),
            base_branch=base_branch,
            classification=classification or Classification(),
            explicit_approval=explicit_approval,
        )

    @classmethod
    def from_slug(
        cls,
        slug: str | None = None,
        classification: Classification | None = None,
        base_branch: str = "main",
        explicit_approval: bool = False,
    ) -> "Task":
        if not slug:
            ts = datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S")
            slug = f"task-{ts}"
        name = derive_branch_name(slug)
        return cls(
            task_id=name,
            branch_name=name,
            base_branch=base_branch,
            classification=classification or Classification(),
            explicit_approval=explicit_approval,
        )


class TaskResult(BaseModel):
    task_id: str
    status: TaskStatus
    current_stage: int
    stage_name: str | None = None
    prompt: StagePrompt | None = None
    error: dict[str, Any] | None = None
    pr_url: str | None = None
    revision_request: str | None = None
