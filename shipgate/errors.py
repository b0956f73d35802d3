"""
SHIPGATE Error Taxonomy

Every failure the engine surfaces to an operator is one of these.
Compliance errors carry the offending artifact (commit subject, file
paths, coverage number) so the operator can act on it directly.
"""

from __future__ import annotations

from typing import Any


class ShipgateError(Exception):
    """Base for all typed orchestration errors."""

    code: str = "ShipgateError"
    retryable: bool = False

    def __init__(self, message: str, artifact: Any = None, side_effects: list[str] | None = None):
        super().__init__(message)
        self.message = message
        self.artifact = artifact
        # External actions already performed before the failure was raised.
        self.side_effects = list(side_effects or [])

    def to_dict(self) -> dict[str, Any]:
        artifact = self.artifact
        if isinstance(artifact, (set, frozenset)):
            artifact = sorted(artifact)
        return {"code": self.code, "message": self.message, "artifact": artifact}


# ---------------------------------------------------------------------------
# Compliance
# ---------------------------------------------------------------------------

class ComplianceError(ShipgateError):
    """Blocks stage advancement. Never auto-corrected."""

    code = "ComplianceError"


class MissingSignOff(ComplianceError):
    code = "MissingSignOff"


class ProtectedFileViolation(ComplianceError):
    code = "ProtectedFileViolation"


class CoverageBelowThreshold(ComplianceError):
    code = "CoverageBelowThreshold"


# ---------------------------------------------------------------------------
# Fatal for the current run
# ---------------------------------------------------------------------------

class DivergedConflict(ShipgateError):
    """Remote branch exists but no longer descends from the expected base."""

    code = "DivergedConflict"


class ConcurrentTaskConflict(ShipgateError):
    """Another active Task already holds the branch."""

    code = "ConcurrentTaskConflict"


class ExternalServiceError(ShipgateError):
    """Transient adapter failure (network, rate limit, CLI exit)."""

    code = "ExternalServiceError"
    retryable = True


class UnmappedClassification(ShipgateError):
    """No label rule covers the classification. Fails closed."""

    code = "UnmappedClassification"


# ---------------------------------------------------------------------------
# Engine usage
# ---------------------------------------------------------------------------

class GateNotOpenError(ShipgateError):
    code = "GateNotOpen"


class TaskTerminalError(ShipgateError):
    code = "TaskTerminal"


class TaskNotFoundError(ShipgateError):
    code = "TaskNotFound"
