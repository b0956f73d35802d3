"""
SHIPGATE Batch Runner

Starts several Tasks at once. Each worker drives its Task until it
parks at its first gate or halts; nothing is ever auto-confirmed.

Workers are threads so they share one orchestrator and therefore one
branch-lock registry: two requests resolving to the same branch end
with the second halted on ConcurrentTaskConflict.
"""

from __future__ import annotations

import concurrent.futures
from typing import Any

from loguru import logger
from rich.console import Console
from rich.table import Table

from shipgate.errors import ShipgateError
from shipgate.models import Classification
from shipgate.orchestrator import TaskOrchestrator

console = Console()


def _run_single_task(
    orchestrator: TaskOrchestrator,
    issue_id: str,
    classification: Classification | None,
    explicit_approval: bool,
) -> dict[str, Any]:
    try:
        result = orchestrator.start(
            issue_id=issue_id,
            classification=classification,
            explicit_approval=explicit_approval,
        )
        return result.model_dump(mode="json")
    except ShipgateError as e:
        logger.error(f"[BATCH] {issue_id} halted: {e.code}: {e.message}")
        return {"task_id": issue_id, "status": "halted", "error": e.to_dict()}


def run_parallel(
    orchestrator: TaskOrchestrator,
    issue_ids: list[str],
    max_workers: int = 3,
    classification: Classification | None = None,
    explicit_approval: bool = False,
) -> list[dict[str, Any]]:
    """Start every issue concurrently and report where each one stopped."""
    # Duplicates would share a task id.
    issue_ids = list(dict.fromkeys(issue_ids))
    _print_batch_header(len(issue_ids), max_workers)

    results: list[dict[str, Any]] = []
    with concurrent.futures.ThreadPoolExecutor(max_workers=max_workers) as executor:
        future_to_issue = {
            executor.submit(_run_single_task, orchestrator, issue_id, classification, explicit_approval): issue_id
            for issue_id in issue_ids
        }

        for future in concurrent.futures.as_completed(future_to_issue):
            result = future.result()
            results.append(result)
            _log_task_completion(result)

    results.sort(key=lambda r: issue_ids.index(r["task_id"]) if r["task_id"] in issue_ids else len(issue_ids))
    _print_batch_summary(results)
    return results


# --- Helpers ---

_STATUS_COLORS = {"awaiting_confirmation": "yellow", "completed": "green"}


def _print_batch_header(count: int, workers: int) -> None:
    console.print(f"\n[bold]SHIPGATE batch: {count} tasks, {workers} workers[/]")
    console.print("[dim]Each task stops at its first gate for confirmation.[/]\n")


def _log_task_completion(result: dict[str, Any]) -> None:
    status = result.get("status", "unknown")
    color = _STATUS_COLORS.get(status, "red")
    console.print(f"  [{color}]{result.get('task_id', '?')}: {status}[/]")


def _print_batch_summary(results: list[dict[str, Any]]) -> None:
    table = Table(title="Batch Results", border_style="bright_green")
    table.add_column("Task")
    table.add_column("Status")
    table.add_column("Stage")
    table.add_column("Detail")

    for r in results:
        status = r.get("status", "unknown")
        color = _STATUS_COLORS.get(status, "red")
        error = r.get("error") or {}
        detail = error.get("code") or r.get("pr_url") or ""
        table.add_row(
            r.get("task_id", "?"),
            f"[{color}]{status}[/]",
            str(r.get("stage_name") or error.get("stage") or "-"),
            str(detail)[:60],
        )

    console.print(table)
    parked = sum(1 for r in results if r.get("status") == "awaiting_confirmation")
    console.print(f"\n[bold]{parked}/{len(results)} awaiting confirmation[/]")
