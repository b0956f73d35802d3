"""
SHIPGATE CLI — The Interface

  shipgate start --issue ABC-123            (tracker issue)
  shipgate start --slug fix-flaky-test      (no tracker issue)
  shipgate decide ABC-123 confirm|reject|abort
  shipgate resume ABC-123                   (after a halt or a reject)

Plus utilities:
  - shipgate status [TASK_ID]   (tasks, credentials, config)
  - shipgate audit TASK_ID      (post-task summary from the audit log)
  - shipgate batch              (start several issues in parallel)
  - shipgate init [PATH]        (bootstrap .shipgate in a repo)
"""

from __future__ import annotations

import os
import shutil
from pathlib import Path
from typing import Optional

import typer
from dotenv import load_dotenv
from loguru import logger
from pydantic import ValidationError
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.prompt import Prompt
from rich.table import Table

from shipgate.adapters import Adapters
from shipgate.adapters.coverage import PytestCoverageTool
from shipgate.adapters.git import GitVersionControl
from shipgate.adapters.github import GitHubActionsCI, GitHubCodeHost
from shipgate.adapters.jira import JiraIssueTracker
from shipgate.config_loader import ShipgateConfig, load_config, validate_credentials
from shipgate.errors import ShipgateError
from shipgate.identity import BANNER, __codename__, __tagline__, __version__
from shipgate.models import Classification, GateDecision, TaskResult
from shipgate.orchestrator import TaskOrchestrator
from shipgate.parallel import run_parallel

# Load .env from current directory or home
load_dotenv()
load_dotenv(Path.home() / ".shipgate" / ".env")

app = typer.Typer(
    name="shipgate",
    help=f"{__codename__}: {__tagline__}\nGated change-delivery pipeline.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)

console = Console()

REPO_OPTION = typer.Option(Path("."), "--repo", "-r", help="Path to the target repository")


def version_callback(value: bool):
    if value:
        console.print(f"{__codename__} v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Optional[bool] = typer.Option(
        None,
        "--version",
        callback=version_callback,
        is_eager=True,
        help="Show the version and exit.",
    ),
):
    pass


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------

def build_adapters(repo: Path, config: ShipgateConfig) -> Adapters:
    retry = config.retry
    return Adapters(
        tracker=JiraIssueTracker(config.tracker, token=os.environ.get("JIRA_TOKEN", ""), retry=retry),
        vcs=GitVersionControl(repo, remote=config.codehost.remote, retry=retry),
        codehost=GitHubCodeHost(repo, retry=retry),
        ci=GitHubActionsCI(repo, retry=retry),
        coverage=PytestCoverageTool(repo, config.coverage, retry=retry),
    )


def build_orchestrator(repo: Path) -> TaskOrchestrator:
    repo = repo.resolve()
    if not repo.exists():
        console.print(f"[red]Repository not found: {repo}[/]")
        raise typer.Exit(1)
    config = load_config(repo)
    return TaskOrchestrator(repo, config, build_adapters(repo, config))


# ---------------------------------------------------------------------------
# Banner + rendering
# ---------------------------------------------------------------------------

def _print_banner():
    console.print(f"[bright_green]{BANNER}[/]")
    console.print(f"  [dim]v{__version__}: {__tagline__}[/]\n")


def _print_error(e: ShipgateError) -> None:
    body = f"[bold]{escape(e.message)}[/]"
    artifact = e.to_dict()["artifact"]
    if artifact:
        body += f"\n\n[dim]Offending artifact:[/] {escape(str(artifact))}"
    console.print(Panel(body, title=f"🚫 {e.code}", border_style="red"))


def _print_result(result: TaskResult) -> None:
    color = {
        "completed": "green",
        "awaiting_confirmation": "yellow",
        "pending": "cyan",
    }.get(result.status, "red")
    console.print(f"\n[bold {color}]{result.task_id}: {result.status}[/]", highlight=False)
    if result.stage_name:
        console.print(f"  [dim]Stage:[/] {result.stage_name}")
    if result.pr_url:
        console.print(f"  [dim]PR:[/] {result.pr_url}")
    if result.revision_request:
        console.print(f"  [yellow]Revision requested:[/] {result.revision_request}")
        console.print(f"  [dim]Run `shipgate resume {result.task_id}` once revised.[/]")


def _drive(orch: TaskOrchestrator, result: TaskResult, detach: bool) -> TaskResult:
    """Answer gate prompts interactively until the task leaves awaiting_confirmation."""
    while result.prompt is not None:
        prompt = result.prompt
        console.print(Panel(
            f"{prompt.summary}\n\n[dim]Remaining:[/] {' → '.join(prompt.remaining_stages) or 'none'}",
            title=f"⏸  {prompt.task_id} · {prompt.stage_name}",
            subtitle=prompt.prompt,
            border_style="yellow",
        ))
        if detach:
            console.print(f"[dim]Parked. Answer with `shipgate decide {prompt.task_id} confirm|reject|abort`.[/]")
            break

        decision = Prompt.ask("Decision", choices=[d.value for d in GateDecision], default="confirm")
        note = ""
        if decision == GateDecision.REJECT.value:
            note = Prompt.ask("Revision note", default="")
        result = orch.decide(prompt.task_id, decision, note)
    return result


def _run_guarded(fn, *args, **kwargs) -> TaskResult:
    try:
        return fn(*args, **kwargs)
    except ShipgateError as e:
        _print_error(e)
        raise typer.Exit(1)


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

@app.command()
def start(
    repo: Path = REPO_OPTION,
    issue: Optional[str] = typer.Option(None, "--issue", "-i", help="Tracker issue key, e.g. ABC-123"),
    slug: Optional[str] = typer.Option(None, "--slug", "-s", help="Branch slug when there is no tracker issue"),
    change_type: str = typer.Option("feature", "--type", "-t", help="bugfix, feature, security, docs, chore, dependency, refactor"),
    api_change: bool = typer.Option(False, "--api-change", help="The change alters the public API"),
    security: bool = typer.Option(False, "--security", help="The change is security relevant"),
    platform: Optional[str] = typer.Option(None, "--platform", "-p", help="Platform the change targets"),
    approve_protected: bool = typer.Option(False, "--approve-protected", help="Explicitly approve protected-file changes"),
    risk: Optional[str] = typer.Option(None, "--risk", help="Risk & mitigations text for the PR body"),
    detach: bool = typer.Option(False, "--detach", "-d", help="Leave the task parked at the first gate"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """Start a task and drive it through its gates."""
    _print_banner()
    _configure_logging(verbose)

    try:
        classification = Classification(
            type=change_type,
            public_api_changed=api_change,
            security_relevant=security,
            platform=platform,
        )
    except ValidationError:
        console.print(f"[red]Unknown change type: {change_type}[/]")
        raise typer.Exit(1)

    with build_orchestrator(repo) as orch:
        context = {"risk": risk} if risk else {}
        result = _run_guarded(
            orch.start,
            issue_id=issue,
            slug=slug,
            classification=classification,
            explicit_approval=approve_protected,
            context=context,
        )
        result = _run_guarded(_drive, orch, result, detach)
        _print_result(result)


@app.command()
def resume(
    task_id: str = typer.Argument(..., help="Task to resume"),
    repo: Path = REPO_OPTION,
    detach: bool = typer.Option(False, "--detach", "-d"),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
):
    """Re-run a halted or rejected task from its current stage."""
    _configure_logging(verbose)
    with build_orchestrator(repo) as orch:
        result = _run_guarded(orch.resume, task_id)
        result = _run_guarded(_drive, orch, result, detach)
        _print_result(result)


@app.command()
def decide(
    task_id: str = typer.Argument(..., help="Task waiting at a gate"),
    decision: GateDecision = typer.Argument(..., help="confirm, reject or abort"),
    note: str = typer.Option("", "--note", "-n", help="Revision request for a reject"),
    repo: Path = REPO_OPTION,
    detach: bool = typer.Option(False, "--detach", "-d"),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
):
    """Answer the open gate of a parked task."""
    _configure_logging(verbose)
    with build_orchestrator(repo) as orch:
        result = _run_guarded(orch.decide, task_id, decision, note)
        result = _run_guarded(_drive, orch, result, detach)
        _print_result(result)


@app.command()
def status(
    task_id: Optional[str] = typer.Argument(None, help="Show one task in detail"),
    repo: Path = REPO_OPTION,
):
    """Show tasks, credentials and system tools."""
    with build_orchestrator(repo) as orch:

        if task_id:
            try:
                task = orch.status(task_id)
            except ShipgateError as e:
                _print_error(e)
                raise typer.Exit(1)
            lines = [
                f"[bold]Status:[/] {task.status}",
                f"[bold]Stage:[/] {task.current_stage} ({orch.executor.stage_name(task.current_stage) or 'done'})",
                f"[bold]Branch:[/] {task.branch_name} → {task.base_branch}",
            ]
            if task.pr:
                lines.append(f"[bold]PR:[/] #{task.pr.number} {task.pr.url}")
            if task.labels:
                lines.append(f"[bold]Labels:[/] {', '.join(task.labels)}")
            if task.manual_review:
                lines.append("[yellow]Manual labelling required[/]")
            if task.halt_reason:
                lines.append(f"[red]Halted:[/] {task.halt_reason.get('code')}: {task.halt_reason.get('message')}")
            console.print(Panel("\n".join(lines), title=task.task_id, border_style="cyan"))
            return

        tasks = orch.list()
        task_table = Table(title="Tasks", border_style="cyan")
        task_table.add_column("Task")
        task_table.add_column("Status")
        task_table.add_column("Stage")
        task_table.add_column("Branch")
        for task in tasks:
            task_table.add_row(
                task.task_id,
                task.status,
                orch.executor.stage_name(task.current_stage) or "done",
                task.branch_name,
            )
        if tasks:
            console.print(task_table)
        else:
            console.print("[dim]No tasks yet.[/]")

        key_table = Table(title="Credentials", border_style="cyan")
        key_table.add_column("Key")
        key_table.add_column("Status")
        for key, available in validate_credentials().items():
            key_table.add_row(key, "[green]✓ Available[/]" if available else "[red]✗ Missing[/]")
        console.print(key_table)

        tools_table = Table(title="System Tools", border_style="cyan")
        tools_table.add_column("Tool")
        tools_table.add_column("Status")
        for tool in ["git", "gh"]:
            found = shutil.which(tool)
            tools_table.add_row(tool, f"[green]✓ {found}[/]" if found else "[dim]✗ Not found[/]")
        console.print(tools_table)

        policy = orch.config.policy
        console.print(f"\n[bold]Coverage floor:[/] {policy.coverage_threshold}%")
        if policy.protected_paths:
            console.print("[bold]Protected paths:[/]")
            for p in policy.protected_paths:
                console.print(f"  🔒 {p}")


@app.command()
def audit(
    task_id: str = typer.Argument(..., help="Task to summarise"),
    repo: Path = REPO_OPTION,
):
    """Post-task summary built from the audit log."""
    with build_orchestrator(repo) as orch:
        try:
            summary = orch.summary(task_id)
        except ShipgateError as e:
            _print_error(e)
            raise typer.Exit(1)

        table = Table(title=f"Audit: {task_id}", border_style="cyan")
        table.add_column("Time", style="dim")
        table.add_column("Stage")
        table.add_column("Outcome")
        for entry in summary["stages"]:
            color = "red" if entry["outcome"] == "failed" else "green"
            table.add_row(entry["at"][:19], entry["stage"], f"[{color}]{entry['outcome']}[/]")
        console.print(table)

        console.print(f"\n[bold]Status:[/] {summary['status']}")
        if summary["pr_url"]:
            console.print(f"[bold]PR:[/] {summary['pr_url']}")
        if summary["labels"]:
            console.print(f"[bold]Labels:[/] {', '.join(summary['labels'])}")
        if summary["side_effects"]:
            console.print("[bold]Side effects:[/]")
            for effect in summary["side_effects"]:
                console.print(f"  [dim]{effect}[/]")


@app.command()
def batch(
    issues: list[str] = typer.Option(..., "--issue", "-i", help="Issue key (repeatable)"),
    repo: Path = REPO_OPTION,
    workers: int = typer.Option(3, "--workers", "-w", help="Max concurrent tasks"),
    change_type: str = typer.Option("feature", "--type", "-t"),
    api_change: bool = typer.Option(False, "--api-change"),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
):
    """Start several issues in parallel; each parks at its first gate."""
    _print_banner()
    _configure_logging(verbose)

    try:
        classification = Classification(type=change_type, public_api_changed=api_change)
    except ValidationError:
        console.print(f"[red]Unknown change type: {change_type}[/]")
        raise typer.Exit(1)

    with build_orchestrator(repo) as orch:
        results = run_parallel(orch, issues, max_workers=workers, classification=classification)

    if any(r.get("status") == "halted" for r in results):
        raise typer.Exit(1)


@app.command()
def init(
    repo: Optional[Path] = typer.Argument(None, help="Path to repository"),
):
    """Initialize .shipgate directory in a repository."""
    _print_banner()

    repo = (repo or Path.cwd()).resolve()
    sg_dir = repo / ".shipgate"
    sg_dir.mkdir(exist_ok=True)
    for sub in ("tasks", "audit", "locks"):
        (sg_dir / sub).mkdir(exist_ok=True)

    config_path = sg_dir / "config.yaml"
    if not config_path.exists():
        config_path.write_text("""# SHIPGATE repo-level config overrides
# These merge with the built-in defaults.

# Contributor identity every Signed-off-by line must match:
# identity:
#   name: "Jane Doe"
#   email: "jane@example.com"

# policy:
#   coverage_threshold: 80.0
#   protected_paths:
#     - "LICENSE"
#     - ".github/workflows/"

# tracker:
#   url: "https://example.atlassian.net"
#   disclosure_field: "customfield_12345"
""")

    gitignore = repo / ".gitignore"
    ignore_entries = [".shipgate/tasks/", ".shipgate/locks/", ".shipgate/coverage.json"]
    if gitignore.exists():
        content = gitignore.read_text()
        additions = [e for e in ignore_entries if e not in content]
        if additions:
            with open(gitignore, "a") as f:
                f.write("\n# SHIPGATE\n")
                for e in additions:
                    f.write(f"{e}\n")
    else:
        gitignore.write_text("# SHIPGATE\n" + "\n".join(ignore_entries) + "\n")

    console.print(f"[green]✅ Initialized SHIPGATE in {sg_dir}[/]")
    console.print(f"  Config:  {config_path}")
    console.print(f"  Tasks:   {sg_dir / 'tasks'}")
    console.print(f"  Audit:   {sg_dir / 'audit'}")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _configure_logging(verbose: bool) -> None:
    logger.remove()
    if verbose:
        logger.add(
            lambda msg: console.print(msg.rstrip("\n"), style="dim", highlight=False, markup=False),
            level="DEBUG",
            format="{time:HH:mm:ss} | {level:<7} | {message}",
        )
    else:
        logger.add(
            lambda msg: console.print(msg.rstrip("\n"), style="dim", highlight=False, markup=False),
            level="WARNING",
            format="{message}",
        )


# ---------------------------------------------------------------------------
# Entry
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    app()
