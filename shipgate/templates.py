"""
SHIPGATE wire formats: the HTML PR body and the commit message.

The PR body is a fixed template. Callers only supply values; every
value is HTML-escaped before substitution.
"""

from __future__ import annotations

import html
import re
from dataclasses import dataclass, field
from string import Template

from shipgate.models import ComplianceRecord, Issue

PR_SECTIONS = (
    "Summary",
    "Issue link",
    "Changes",
    "Tests &amp; Coverage",
    "Risk &amp; Mitigations",
    "DCO",
)

PR_BODY_TEMPLATE = Template("""<h2>Summary</h2>
<p>$summary</p>

<h2>Issue link</h2>
<p><a href="$issue_url">$issue_key</a></p>

<h2>Changes</h2>
<ul>
$changes
</ul>

<h2>Tests &amp; Coverage</h2>
<p>Coverage: $coverage_before% &rarr; $coverage_after% ($coverage_delta)</p>
<ul>
$acceptance
</ul>

<h2>Risk &amp; Mitigations</h2>
<p>$risk</p>

<h2>DCO</h2>
<p>$dco</p>
""")


def _items(values: list[str], empty: str) -> str:
    if not values:
        return f"  <li>{html.escape(empty)}</li>"
    return "\n".join(f"  <li>{html.escape(v)}</li>" for v in values)


def render_pr_body(
    issue: Issue | None,
    issue_key: str,
    commit_subjects: list[str],
    compliance: ComplianceRecord | None,
    coverage_before: float,
    risk: str,
    signer: str,
) -> str:
    summary = issue.summary if issue and issue.summary else issue_key
    after = compliance.coverage_absolute if compliance else coverage_before
    delta = compliance.coverage_delta if compliance else 0.0
    touched = sorted(compliance.protected_files_touched) if compliance else []
    if touched:
        risk = f"{risk} Protected files changed with explicit approval: {', '.join(touched)}."
    dco = (
        f"All commits carry Signed-off-by: {signer}"
        if compliance and compliance.sign_off_present
        else "Sign-off not verified"
    )
    return PR_BODY_TEMPLATE.substitute(
        summary=html.escape(summary),
        issue_url=html.escape(issue.url if issue and issue.url else "#", quote=True),
        issue_key=html.escape(issue_key),
        changes=_items(commit_subjects, "No commits"),
        coverage_before=f"{coverage_before:.2f}",
        coverage_after=f"{after:.2f}",
        coverage_delta=html.escape(f"{delta:+.2f}"),
        acceptance=_items(issue.acceptance_criteria if issue else [], "No acceptance criteria listed"),
        risk=html.escape(risk.strip()),
        dco=html.escape(dco),
    )


# ---------------------------------------------------------------------------
# Commit message
# ---------------------------------------------------------------------------

_SUBJECT_RE = re.compile(r"^(?P<subject>.*\S)\s+\((?P<issue>[^()\s]+)\)$")


@dataclass
class CommitMessage:
    subject: str
    issue_id: str | None
    body: str = ""
    sign_offs: list[str] = field(default_factory=list)


def format_commit_message(subject: str, issue_id: str, body: str, name: str, email: str) -> str:
    parts = [f"{subject.strip()} ({issue_id})"]
    if body.strip():
        parts.append(body.strip())
    parts.append(f"Signed-off-by: {name} <{email}>")
    return "\n\n".join(parts)


def parse_commit_message(message: str) -> CommitMessage:
    lines = message.strip().splitlines()
    first = lines[0].strip() if lines else ""
    match = _SUBJECT_RE.match(first)
    subject, issue_id = (match.group("subject"), match.group("issue")) if match else (first, None)

    sign_offs = [l.strip() for l in lines[1:] if l.strip().startswith("Signed-off-by:")]
    body_lines = [l for l in lines[1:] if not l.strip().startswith("Signed-off-by:")]
    return CommitMessage(
        subject=subject,
        issue_id=issue_id,
        body="\n".join(body_lines).strip(),
        sign_offs=sign_offs,
    )
