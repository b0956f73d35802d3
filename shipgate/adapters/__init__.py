"""
SHIPGATE External Adapters

One narrow interface per external system. Each is:
  - A request/response mapping, nothing more
  - Independently fakeable for tests
  - Idempotent against unchanged remote state

Transient failures surface as ExternalServiceError and are retried
here, at the adapter layer only, with bounded exponential backoff.
"""

from __future__ import annotations

import functools
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, TypeVar

from loguru import logger
from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from shipgate.config_loader import RetryConfig
from shipgate.errors import ExternalServiceError
from shipgate.models import BranchState, Issue, PullRequest

F = TypeVar("F", bound=Callable[..., Any])


# ---------------------------------------------------------------------------
# Retry
# ---------------------------------------------------------------------------

def _is_transient(exc: BaseException) -> bool:
    return isinstance(exc, ExternalServiceError) and exc.retryable


def _log_retry(state: RetryCallState) -> None:
    exc = state.outcome.exception() if state.outcome else None
    logger.warning(
        f"[ADAPTER] {state.fn.__qualname__ if state.fn else '?'} failed "
        f"(attempt {state.attempt_number}): {exc}"
    )


def external_call(fn: F) -> F:
    """Retry transient ExternalServiceError with the adapter's RetryConfig; re-raise on exhaustion."""

    @functools.wraps(fn)
    def wrapper(self: "ExternalAdapter", *args: Any, **kwargs: Any) -> Any:
        retrying = Retrying(
            stop=stop_after_attempt(max(1, self.retry.attempts)),
            wait=wait_exponential(min=self.retry.min_wait, max=self.retry.max_wait),
            retry=retry_if_exception(_is_transient),
            before_sleep=_log_retry,
            reraise=True,
        )
        return retrying(fn, self, *args, **kwargs)

    return wrapper  # type: ignore[return-value]


class ExternalAdapter:
    def __init__(self, retry: RetryConfig | None = None):
        self.retry = retry or RetryConfig()

    def close(self) -> None:
        """Release held connections. Subprocess-backed adapters hold none."""


# ---------------------------------------------------------------------------
# Interfaces
# ---------------------------------------------------------------------------

class IssueTracker(ExternalAdapter, ABC):
    @abstractmethod
    def fetch_issue(self, issue_id: str) -> Issue: ...

    @abstractmethod
    def update_field(self, issue_id: str, field_key: str, value: dict[str, Any]) -> None: ...

    @abstractmethod
    def get_field(self, issue_id: str, field_key: str) -> Any: ...


class VersionControl(ExternalAdapter, ABC):
    @abstractmethod
    def branch_state(self, name: str, base: str, fork_point: str = "") -> BranchState:
        """Remote state of a branch. `fork_point` is the base commit it was created from, when known."""

    @abstractmethod
    def create_branch(self, name: str, base: str) -> str:
        """Create the branch from the tip of `base`; returns that fork-point commit."""

    @abstractmethod
    def push(self, name: str) -> bool:
        """Push without force. Returns False when the remote was already up to date."""

    @abstractmethod
    def commit_messages(self, name: str, base: str) -> list[str]: ...

    @abstractmethod
    def changed_paths(self, name: str, base: str) -> list[str]: ...


class CodeHost(ExternalAdapter, ABC):
    @abstractmethod
    def find_open_pr(self, branch: str) -> PullRequest | None: ...

    @abstractmethod
    def create_pr(self, branch: str, base: str, title: str, body_html: str) -> PullRequest: ...

    @abstractmethod
    def update_pr(self, number: int, body_html: str) -> None: ...

    @abstractmethod
    def apply_labels(self, number: int, labels: list[str]) -> list[str]:
        """Apply labels; returns the ones that were not already present."""

    @abstractmethod
    def create_label_if_missing(self, name: str, description: str, color: str) -> bool: ...


class ContinuousIntegration(ExternalAdapter, ABC):
    @abstractmethod
    def get_check_statuses(self, pr_number: int) -> dict[str, str]: ...

    @abstractmethod
    def failed_run_ids(self, branch: str) -> list[str]: ...

    @abstractmethod
    def rerun_failed_checks(self, run_id: str) -> None: ...


class CoverageTool(ExternalAdapter, ABC):
    """Opaque test-runner collaborator: instrumentation presence + a coverage number."""

    @abstractmethod
    def has_instrumentation(self, path: str, ref: str) -> bool: ...

    @abstractmethod
    def inject_instrumentation(self, path: str, branch: str, message: str) -> str:
        """Commit the instrumentation block to `path` on `branch`; returns the new commit."""

    @abstractmethod
    def measure(self, ref: str) -> float: ...


@dataclass
class Adapters:
    tracker: IssueTracker
    vcs: VersionControl
    codehost: CodeHost
    ci: ContinuousIntegration
    coverage: CoverageTool

    def close(self) -> None:
        for adapter in (self.tracker, self.vcs, self.codehost, self.ci, self.coverage):
            adapter.close()
