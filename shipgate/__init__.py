"""
SHIPGATE — change-request orchestration from intake to merge.

Sequences gated stages across the issue tracker, git, the code host
and CI while enforcing DCO sign-off, coverage and protected-file policy.
"""

from shipgate.identity import __version__

__all__ = ["__version__"]
