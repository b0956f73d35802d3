"""
SHIPGATE Stage Pipeline

Each stage is:
  - A name
  - Flags: requires_gate, idempotent_sensitive, compliance_relevant
  - An idempotent execute(task, ctx) -> StageResult

Stages are immutable and shared by every Task. All per-task state
lives on the Task; external state is reached only through adapters.

Pipeline: Intake → Branch → Instrumentation → Commit Check → Coverage
          → Push → Pull Request → Labels → Disclosure → Checks
"""

from __future__ import annotations

import hashlib
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

from loguru import logger

from shipgate import compliance
from shipgate.adapters import Adapters
from shipgate.config_loader import ShipgateConfig
from shipgate.errors import ExternalServiceError
from shipgate.idempotency import IdempotencyTracker
from shipgate.labels import LabelResolver
from shipgate.models import ComplianceRecord, Issue, PullRequest, StageResult, Task
from shipgate.templates import format_commit_message, parse_commit_message, render_pr_body


@dataclass
class StageContext:
    """Collaborators a stage may use. Shared; holds no task state."""
    adapters: Adapters
    tracker: IdempotencyTracker
    resolver: LabelResolver
    config: ShipgateConfig


class Stage(ABC):
    name: str = "unknown"
    requires_gate: bool = False
    idempotent_sensitive: bool = False
    compliance_relevant: bool = False

    @abstractmethod
    def execute(self, task: Task, ctx: StageContext) -> StageResult:
        ...

    def __repr__(self) -> str:
        return f"<Stage {self.name}>"


# ---------------------------------------------------------------------------
# 1. Intake
# ---------------------------------------------------------------------------

class IntakeStage(Stage):
    name = "intake"
    requires_gate = True

    def execute(self, task: Task, ctx: StageContext) -> StageResult:
        if task.issue_id:
            issue = ctx.adapters.tracker.fetch_issue(task.issue_id)
        else:
            issue = Issue(key=task.task_id, summary=task.context.get("summary", task.task_id))
        task.issue = issue

        lines = [f"{issue.key}: {issue.summary}", f"Branch: {task.branch_name} (base {task.base_branch})"]
        if issue.story_points is not None:
            lines.append(f"Story points: {issue.story_points:g}")
        if issue.acceptance_criteria:
            lines.append("Acceptance criteria:")
            lines.extend(f"  - {ac}" for ac in issue.acceptance_criteria)
        return StageResult(outcome="passed", summary="\n".join(lines))


# ---------------------------------------------------------------------------
# 2. Branch
# ---------------------------------------------------------------------------

class BranchStage(Stage):
    name = "branch"
    idempotent_sensitive = True

    def execute(self, task: Task, ctx: StageContext) -> StageResult:
        existing = ctx.tracker.lookup(task, "branch")
        if existing:
            return StageResult(
                outcome="reused",
                summary=f"Reusing existing branch {task.branch_name}",
                data=existing.detail,
            )

        fork_point = ctx.adapters.vcs.create_branch(task.branch_name, task.base_branch)
        if fork_point:
            task.context["fork_point"] = fork_point
        return StageResult(
            outcome="created",
            summary=f"Created {task.branch_name} from {task.base_branch}",
            side_effects=[f"branch:create:{task.branch_name}"],
        )


# ---------------------------------------------------------------------------
# 3. Coverage instrumentation
# ---------------------------------------------------------------------------

class InstrumentationStage(Stage):
    name = "instrumentation"
    idempotent_sensitive = True

    def execute(self, task: Task, ctx: StageContext) -> StageResult:
        target = ctx.config.coverage.target_file
        if ctx.tracker.lookup(task, "compliance_instrumentation"):
            return StageResult(outcome="skipped", summary=f"Coverage tooling already configured in {target}")

        identity = ctx.config.identity
        message = format_commit_message(
            "Configure coverage tooling",
            task.issue_id or task.task_id,
            f"Adds {ctx.config.coverage.instrumentation_marker} to {target}.",
            identity.name,
            identity.email,
        )
        sha = ctx.adapters.coverage.inject_instrumentation(target, task.branch_name, message)
        return StageResult(
            outcome="created",
            summary=f"Coverage tooling committed to {task.branch_name}:{target}",
            side_effects=[f"instrumentation:{target}:{sha}"],
        )


# ---------------------------------------------------------------------------
# 4. Commit check (sign-off + protected files)
# ---------------------------------------------------------------------------

def _collect_changes(task: Task, ctx: StageContext) -> tuple[list[str], list[str]]:
    vcs = ctx.adapters.vcs
    messages = vcs.commit_messages(task.branch_name, task.base_branch)
    paths = vcs.changed_paths(task.branch_name, task.base_branch)
    task.context["commit_subjects"] = [parse_commit_message(m).subject for m in messages]
    task.context["changed_paths"] = paths
    return messages, paths


class CommitCheckStage(Stage):
    name = "commit_check"
    requires_gate = True
    compliance_relevant = True

    def execute(self, task: Task, ctx: StageContext) -> StageResult:
        messages, paths = _collect_changes(task, ctx)
        record, results = compliance.evaluate(
            messages,
            paths,
            identity=ctx.config.identity,
            protected_set=ctx.config.policy.protected_paths,
            explicit_approval=task.explicit_approval,
        )
        task.compliance = record
        for result in results:
            compliance.raise_for(result)

        lines = [r.reason for r in results]
        if ctx.config.policy.require_issue_in_subject and task.issue_id:
            untagged = [
                parse_commit_message(m).subject for m in messages
                if parse_commit_message(m).issue_id != task.issue_id
            ]
            if untagged:
                logger.warning(f"[COMMIT] {len(untagged)} subjects missing ({task.issue_id})")
                lines.append(f"Subjects missing ({task.issue_id}): {untagged}")
        lines.append(f"{len(paths)} files changed")
        return StageResult(outcome="passed", summary="\n".join(lines), data={"commits": len(messages)})


# ---------------------------------------------------------------------------
# 5. Coverage
# ---------------------------------------------------------------------------

class CoverageStage(Stage):
    name = "coverage"
    compliance_relevant = True

    def execute(self, task: Task, ctx: StageContext) -> StageResult:
        tool = ctx.adapters.coverage
        before = tool.measure(f"{ctx.config.codehost.remote}/{task.base_branch}")
        after = tool.measure(task.branch_name)
        task.context["coverage_before"] = before
        task.context["coverage_after"] = after

        threshold = ctx.config.policy.coverage_threshold
        result = compliance.check_coverage(before, after, threshold)

        previous = task.compliance or ComplianceRecord()
        failures = tuple(f for f in previous.failures if f != result.code)
        if not result.passed:
            failures += (result.code,)
        task.compliance = ComplianceRecord(
            sign_off_present=previous.sign_off_present,
            protected_files_touched=previous.protected_files_touched,
            coverage_delta=round(after - before, 2),
            coverage_absolute=after,
            failures=failures,
        )
        compliance.raise_for(result)
        return StageResult(outcome="passed", summary=result.reason, data={"before": before, "after": after})


# ---------------------------------------------------------------------------
# 6. Push
# ---------------------------------------------------------------------------

class PushStage(Stage):
    name = "push"

    def execute(self, task: Task, ctx: StageContext) -> StageResult:
        pushed = ctx.adapters.vcs.push(task.branch_name)
        if not pushed:
            return StageResult(outcome="skipped", summary=f"{task.branch_name} already up to date")
        return StageResult(
            outcome="updated",
            summary=f"Pushed {task.branch_name}",
            side_effects=[f"push:{task.branch_name}"],
        )


# ---------------------------------------------------------------------------
# 7. Pull request
# ---------------------------------------------------------------------------

def _digest(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


class PullRequestStage(Stage):
    name = "pull_request"
    requires_gate = True
    idempotent_sensitive = True
    compliance_relevant = True

    def execute(self, task: Task, ctx: StageContext) -> StageResult:
        # Commits may have changed since the commit check (e.g. after a reject).
        messages, paths = _collect_changes(task, ctx)
        coverage = None
        if "coverage_before" in task.context:
            coverage = (task.context["coverage_before"], task.context["coverage_after"])
        record, results = compliance.evaluate(
            messages,
            paths,
            identity=ctx.config.identity,
            protected_set=ctx.config.policy.protected_paths,
            explicit_approval=task.explicit_approval,
            coverage=coverage,
            threshold=ctx.config.policy.coverage_threshold,
        )
        task.compliance = record
        for result in results:
            compliance.raise_for(result)

        issue_key = task.issue_id or task.task_id
        identity = ctx.config.identity
        body = render_pr_body(
            issue=task.issue,
            issue_key=issue_key,
            commit_subjects=task.context.get("commit_subjects", []),
            compliance=record,
            coverage_before=float(task.context.get("coverage_before", record.coverage_absolute)),
            risk=task.context.get("risk", "Standard review."),
            signer=f"{identity.name} <{identity.email}>",
        )
        digest = _digest(body)

        existing = ctx.tracker.lookup(task, "pull_request")
        if existing:
            pr = PullRequest(**existing.detail)
            task.pr = pr
            if task.context.get("pr_body_digest") == digest:
                return StageResult(outcome="reused", summary=f"PR #{pr.number} unchanged: {pr.url}")
            ctx.adapters.codehost.update_pr(pr.number, body)
            task.context["pr_body_digest"] = digest
            return StageResult(
                outcome="updated",
                summary=f"Updated PR #{pr.number}: {pr.url}",
                side_effects=[f"pr:update:{pr.number}"],
            )

        summary = task.issue.summary if task.issue and task.issue.summary else task.branch_name
        pr = ctx.adapters.codehost.create_pr(
            task.branch_name, task.base_branch, f"{summary} ({issue_key})", body
        )
        task.pr = pr
        task.context["pr_body_digest"] = digest
        return StageResult(
            outcome="created",
            summary=f"Opened PR #{pr.number}: {pr.url}",
            side_effects=[f"pr:create:{pr.number}"],
        )


# ---------------------------------------------------------------------------
# 8. Labels
# ---------------------------------------------------------------------------

class LabelsStage(Stage):
    name = "labels"

    def execute(self, task: Task, ctx: StageContext) -> StageResult:
        resolution = ctx.resolver.resolve(task.classification)
        task.context["priority"] = resolution.priority
        if resolution.code:
            task.labels = []
            task.manual_review = True
            logger.warning(f"[LABELS] {task.task_id}: {resolution.reason}; flagged for manual labelling")
            return StageResult(
                outcome="skipped",
                summary=f"{resolution.code}: {resolution.reason}. No labels applied; manual review required.",
                data={"code": resolution.code},
            )

        pr = _require_pr(task)
        codehost = ctx.adapters.codehost
        side_effects: list[str] = []
        for label in resolution.labels:
            if codehost.create_label_if_missing(label.display_name, label.description, label.color):
                side_effects.append(f"label:create:{label.display_name}")
        added = codehost.apply_labels(pr.number, resolution.names)
        side_effects.extend(f"label:apply:{name}" for name in added)

        task.labels = resolution.names
        priority = " (priority)" if resolution.priority else ""
        return StageResult(
            outcome="updated" if added else "reused",
            summary=f"Labels{priority}: {', '.join(resolution.names)}",
            side_effects=side_effects,
        )


# ---------------------------------------------------------------------------
# 9. AI-assistance disclosure
# ---------------------------------------------------------------------------

def _field_value(raw: Any) -> Any:
    if isinstance(raw, dict):
        return raw.get("value")
    if isinstance(raw, list) and raw:
        return _field_value(raw[0])
    return raw


class DisclosureStage(Stage):
    name = "disclosure"

    def execute(self, task: Task, ctx: StageContext) -> StageResult:
        if not task.issue_id:
            return StageResult(outcome="skipped", summary="No tracker issue to update")

        tracker = ctx.adapters.tracker
        field_key = ctx.config.tracker.disclosure_field
        wanted = ctx.config.tracker.disclosure_value

        if _field_value(tracker.get_field(task.issue_id, field_key)) == wanted:
            return StageResult(outcome="reused", summary=f"{field_key} already {wanted!r}")

        tracker.update_field(task.issue_id, field_key, {"value": wanted})
        effect = f"field:{task.issue_id}:{field_key}"
        actual = _field_value(tracker.get_field(task.issue_id, field_key))
        if actual != wanted:
            raise ExternalServiceError(
                f"Read-back of {field_key} returned {actual!r}, expected {wanted!r}",
                artifact=field_key,
                side_effects=[effect],
            )
        return StageResult(
            outcome="updated",
            summary=f"{task.issue_id}.{field_key} set to {wanted!r} (verified)",
            side_effects=[effect],
        )


# ---------------------------------------------------------------------------
# 10. CI checks
# ---------------------------------------------------------------------------

PENDING_STATES = {"pending", "queued", "in_progress", "expected", "waiting", "requested"}
FAILING_STATES = {"failure", "fail", "error", "cancelled", "timed_out", "action_required", "startup_failure"}


class ChecksStage(Stage):
    name = "checks"
    requires_gate = True

    def execute(self, task: Task, ctx: StageContext) -> StageResult:
        pr = _require_pr(task)
        ci = ctx.adapters.ci
        statuses = ci.get_check_statuses(pr.number)
        failing = sorted(name for name, state in statuses.items() if state in FAILING_STATES)
        pending = sorted(name for name, state in statuses.items() if state in PENDING_STATES)

        if failing:
            rerun: list[str] = list(task.context.get("rerun_run_ids", []))
            side_effects = []
            for run_id in ci.failed_run_ids(task.branch_name):
                if run_id in rerun:
                    continue
                ci.rerun_failed_checks(run_id)
                rerun.append(run_id)
                side_effects.append(f"ci:rerun:{run_id}")
            task.context["rerun_run_ids"] = rerun
            raise ExternalServiceError(
                f"Checks failing on PR #{pr.number}: {failing}",
                artifact=failing,
                side_effects=side_effects,
            )
        if pending:
            raise ExternalServiceError(f"Checks still running on PR #{pr.number}: {pending}", artifact=pending)

        return StageResult(
            outcome="passed",
            summary=f"All {len(statuses)} checks passing on PR #{pr.number}; ready to merge",
            data={"checks": statuses},
        )


def _require_pr(task: Task) -> PullRequest:
    if task.pr is None:
        raise ExternalServiceError(f"Task {task.task_id} has no pull request yet")
    return task.pr


DEFAULT_PIPELINE: tuple[Stage, ...] = (
    IntakeStage(),
    BranchStage(),
    InstrumentationStage(),
    CommitCheckStage(),
    CoverageStage(),
    PushStage(),
    PullRequestStage(),
    LabelsStage(),
    DisclosureStage(),
    ChecksStage(),
)
