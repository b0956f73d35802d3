"""
SHIPGATE VersionControl adapter (git CLI).

Never force-pushes. Branch creation and push are no-ops against
unchanged remote state.
"""

from __future__ import annotations

import subprocess
from pathlib import Path

from loguru import logger

from shipgate.adapters import VersionControl, external_call
from shipgate.config_loader import RetryConfig
from shipgate.errors import ExternalServiceError
from shipgate.models import BranchState


class GitError(ExternalServiceError):
    pass


class GitVersionControl(VersionControl):
    """git operations against a local clone with a configured remote."""

    def __init__(self, repo_path: Path, remote: str = "origin", retry: RetryConfig | None = None):
        super().__init__(retry)
        self.repo_path = repo_path.resolve()
        self.remote = remote

    @external_call
    def branch_state(self, name: str, base: str, fork_point: str = "") -> BranchState:
        self._git("fetch", self.remote, "--quiet")
        remote_sha = self._remote_sha(name)
        if not remote_sha:
            return BranchState(exists=False)

        local_sha = self._local_sha(name)
        if local_sha and local_sha != remote_sha:
            # Fast-forward in either direction is fine; forked history is not.
            ahead = self._is_ancestor(remote_sha, local_sha)
            behind = self._is_ancestor(local_sha, remote_sha)
            if not (ahead or behind):
                return BranchState(exists=True, diverged=True, head_sha=remote_sha)

        base_ref = f"{self.remote}/{base}"
        fork = fork_point or self._fork_point(base_ref, remote_sha)
        if not fork:
            logger.warning(f"[GIT] {name} shares no history with {base_ref}")
            return BranchState(exists=True, diverged=True, head_sha=remote_sha)

        # The branch must still build on its fork point, and the base must still contain it.
        diverged = not (self._is_ancestor(fork, remote_sha) and self._is_ancestor(fork, base_ref))
        if diverged:
            logger.warning(f"[GIT] {name} forked at {fork[:12]}, which {base_ref} no longer contains")
        return BranchState(exists=True, diverged=diverged, head_sha=remote_sha)

    @external_call
    def create_branch(self, name: str, base: str) -> str:
        base_ref = f"{self.remote}/{base}"
        if self._local_sha(name):
            logger.debug(f"[GIT] Local branch {name} already present")
            return self._git("merge-base", base_ref, name, check=False, capture=True).strip()
        fork = self._git("rev-parse", "--verify", base_ref, capture=True).strip()
        self._git("branch", name, fork)
        logger.info(f"[GIT] Created branch {name} from {base_ref} at {fork[:12]}")
        return fork

    @external_call
    def push(self, name: str) -> bool:
        local_sha = self._local_sha(name)
        if local_sha and local_sha == self._remote_sha(name):
            logger.info(f"[GIT] {name} already up to date on {self.remote}")
            return False
        self._git("push", "-u", self.remote, name)
        logger.info(f"[GIT] Pushed {name}")
        return True

    @external_call
    def commit_messages(self, name: str, base: str) -> list[str]:
        out = self._git("log", "--format=%B%x00", f"{self.remote}/{base}..{name}", capture=True)
        return [m.strip() for m in out.split("\x00") if m.strip()]

    @external_call
    def changed_paths(self, name: str, base: str) -> list[str]:
        out = self._git("diff", "--name-only", f"{self.remote}/{base}...{name}", capture=True)
        return [line.strip() for line in out.splitlines() if line.strip()]

    # -----------------------------------------------------------------------
    # Helpers
    # -----------------------------------------------------------------------

    def _remote_sha(self, name: str) -> str:
        out = self._git("ls-remote", "--heads", self.remote, name, capture=True)
        for line in out.splitlines():
            sha, _, ref = line.partition("\t")
            if ref.strip() == f"refs/heads/{name}":
                return sha.strip()
        return ""

    def _local_sha(self, name: str) -> str:
        return self._git(
            "rev-parse", "--verify", "--quiet", f"refs/heads/{name}", check=False, capture=True
        ).strip()

    def _fork_point(self, base_ref: str, sha: str) -> str:
        """Where `sha` left `base_ref`; the remote-tracking reflog sees past rewrites of the base."""
        point = self._git("merge-base", "--fork-point", base_ref, sha, check=False, capture=True).strip()
        return point or self._git("merge-base", base_ref, sha, check=False, capture=True).strip()

    def _is_ancestor(self, ancestor: str, descendant: str) -> bool:
        result = subprocess.run(
            ["git", "merge-base", "--is-ancestor", ancestor, descendant],
            cwd=self.repo_path, capture_output=True, text=True, timeout=60,
        )
        return result.returncode == 0

    def _git(self, *args: str, check: bool = True, capture: bool = False) -> str:
        cmd = ["git", *args]
        try:
            result = subprocess.run(cmd, cwd=self.repo_path, capture_output=True, text=True, timeout=60)
        except subprocess.TimeoutExpired as e:
            raise GitError(f"Git timed out: {' '.join(cmd)}") from e
        if check and result.returncode != 0:
            raise GitError(f"Git failed: {' '.join(cmd)}\n{result.stderr}")
        return result.stdout if capture else ""
