"""
SHIPGATE Compliance Validator

Pure functions. No adapters, no I/O, no logging side effects.
Each check returns a CheckResult; `raise_for` turns a failing result
into its typed error so the executor can halt on it.
"""

from __future__ import annotations

import fnmatch
import re
from dataclasses import dataclass
from typing import Any, Iterable

from shipgate.config_loader import IdentityConfig
from shipgate.errors import (
    ComplianceError,
    CoverageBelowThreshold,
    MissingSignOff,
    ProtectedFileViolation,
)
from shipgate.models import ComplianceRecord

DEFAULT_COVERAGE_THRESHOLD = 80.0

SIGN_OFF_RE = re.compile(r"^Signed-off-by:\s*(?P<name>.+?)\s*<(?P<email>[^<>\s]+)>\s*$")


@dataclass(frozen=True)
class CheckResult:
    passed: bool
    code: str
    reason: str
    artifact: Any = None


# ---------------------------------------------------------------------------
# Sign-off (DCO)
# ---------------------------------------------------------------------------

def _identity_matches(name: str, email: str, identity: IdentityConfig) -> bool:
    # Unset identity fields accept any well-formed value.
    if identity.name and name.strip() != identity.name.strip():
        return False
    if identity.email and email.strip().lower() != identity.email.strip().lower():
        return False
    return True


def has_sign_off(message: str, identity: IdentityConfig) -> bool:
    for line in message.splitlines():
        match = SIGN_OFF_RE.match(line.strip())
        if match and _identity_matches(match.group("name"), match.group("email"), identity):
            return True
    return False


def check_sign_off(commit_messages: Iterable[str], identity: IdentityConfig) -> CheckResult:
    messages = list(commit_messages)
    if not messages:
        return CheckResult(False, MissingSignOff.code, "No commits between base and branch", None)

    for message in messages:
        if not has_sign_off(message, identity):
            subject = message.strip().splitlines()[0] if message.strip() else "<empty message>"
            who = f"{identity.name} <{identity.email}>".strip() if identity.email else "a contributor"
            return CheckResult(
                False,
                MissingSignOff.code,
                f"Commit lacks a Signed-off-by line for {who}",
                subject,
            )
    return CheckResult(True, MissingSignOff.code, f"All {len(messages)} commits signed off")


# ---------------------------------------------------------------------------
# Protected files
# ---------------------------------------------------------------------------

def _is_protected(path: str, entry: str) -> bool:
    if path.startswith("./"):
        path = path[2:]
    if entry.endswith("/"):
        return path.startswith(entry)
    if any(ch in entry for ch in "*?["):
        return fnmatch.fnmatch(path, entry)
    return path == entry


def protected_touched(changed_paths: Iterable[str], protected_set: Iterable[str]) -> frozenset[str]:
    entries = list(protected_set)
    return frozenset(p for p in changed_paths if any(_is_protected(p, e) for e in entries))


def check_protected_files(
    changed_paths: Iterable[str],
    protected_set: Iterable[str],
    explicit_approval: bool = False,
) -> CheckResult:
    touched = protected_touched(changed_paths, protected_set)
    if not touched:
        return CheckResult(True, ProtectedFileViolation.code, "No protected files changed")
    if explicit_approval:
        return CheckResult(
            True,
            ProtectedFileViolation.code,
            f"Protected files changed with explicit approval: {sorted(touched)}",
            touched,
        )
    return CheckResult(
        False,
        ProtectedFileViolation.code,
        f"Protected files changed without approval: {sorted(touched)}",
        touched,
    )


# ---------------------------------------------------------------------------
# Coverage
# ---------------------------------------------------------------------------

def check_coverage(
    before: float,
    after: float,
    threshold: float = DEFAULT_COVERAGE_THRESHOLD,
) -> CheckResult:
    """
    Blocking only when the result is below the floor AND lower than before.
    An improvement that is still below the floor is reported, not blocking.
    """
    delta = round(after - before, 2)
    if after < threshold and after < before:
        return CheckResult(
            False,
            CoverageBelowThreshold.code,
            f"Coverage dropped {before}% → {after}% (floor {threshold}%)",
            after,
        )
    if after < threshold:
        return CheckResult(
            True,
            CoverageBelowThreshold.code,
            f"Coverage {after}% is below the {threshold}% floor but did not regress (Δ {delta:+})",
            after,
        )
    return CheckResult(True, CoverageBelowThreshold.code, f"Coverage {after}% (Δ {delta:+})", after)


# ---------------------------------------------------------------------------
# Record + error mapping
# ---------------------------------------------------------------------------

_ERRORS: dict[str, type[ComplianceError]] = {
    MissingSignOff.code: MissingSignOff,
    ProtectedFileViolation.code: ProtectedFileViolation,
    CoverageBelowThreshold.code: CoverageBelowThreshold,
}


def evaluate(
    commit_messages: Iterable[str],
    changed_paths: Iterable[str],
    identity: IdentityConfig,
    protected_set: Iterable[str],
    explicit_approval: bool = False,
    coverage: tuple[float, float] | None = None,
    threshold: float = DEFAULT_COVERAGE_THRESHOLD,
) -> tuple[ComplianceRecord, list[CheckResult]]:
    """Run every applicable check and build a fresh ComplianceRecord."""
    changed = list(changed_paths)
    results = [
        check_sign_off(commit_messages, identity),
        check_protected_files(changed, protected_set, explicit_approval),
    ]
    before = after = 0.0
    if coverage is not None:
        before, after = coverage
        results.append(check_coverage(before, after, threshold))

    record = ComplianceRecord(
        sign_off_present=results[0].passed,
        protected_files_touched=protected_touched(changed, protected_set),
        coverage_delta=round(after - before, 2),
        coverage_absolute=after,
        failures=tuple(r.code for r in results if not r.passed),
    )
    return record, results


def raise_for(result: CheckResult) -> None:
    if result.passed:
        return
    error_cls = _ERRORS.get(result.code, ComplianceError)
    raise error_cls(result.reason, artifact=result.artifact)
