"""
SHIPGATE IssueTracker adapter (Jira REST v2 over httpx).

Field updates use the select-option payload shape ({"value": "Yes"})
and are verified by reading the field back.
"""

from __future__ import annotations

import re
from typing import Any

import httpx
from loguru import logger

from shipgate.adapters import IssueTracker, external_call
from shipgate.config_loader import RetryConfig, TrackerConfig
from shipgate.errors import ExternalServiceError
from shipgate.models import Issue


class TrackerUnavailable(ExternalServiceError):
    """Network failure, 429 or 5xx. Retried."""


class TrackerRejected(ExternalServiceError):
    """4xx other than 429. Not retried; surfaces as a halt."""

    retryable = False


_TRANSIENT_STATUS = {429, 502, 503, 504}
_AC_HEADING = re.compile(r"^\s*(h\d\.\s*)?acceptance criteria\s*:?\s*$", re.IGNORECASE)
_BULLET = re.compile(r"^\s*(?:[-*#]+|\d+[.)])\s+(.*\S)\s*$")


def parse_acceptance_criteria(description: str) -> list[str]:
    """Collect the bullet list following an 'Acceptance Criteria' heading."""
    criteria: list[str] = []
    in_section = False
    for line in description.splitlines():
        if _AC_HEADING.match(line):
            in_section = True
            continue
        if not in_section:
            continue
        match = _BULLET.match(line)
        if match:
            criteria.append(match.group(1))
        elif line.strip() and criteria:
            break
    return criteria


class JiraIssueTracker(IssueTracker):
    def __init__(
        self,
        config: TrackerConfig,
        token: str = "",
        retry: RetryConfig | None = None,
        client: httpx.Client | None = None,
    ):
        super().__init__(retry)
        self.config = config
        if client is None:
            headers = {"Accept": "application/json"}
            auth = None
            if config.user:
                auth = httpx.BasicAuth(config.user, token)
            elif token:
                headers["Authorization"] = f"Bearer {token}"
            client = httpx.Client(
                base_url=config.url.rstrip("/"),
                headers=headers,
                auth=auth,
                timeout=config.timeout,
            )
        self._client = client

    def close(self) -> None:
        self._client.close()

    @external_call
    def fetch_issue(self, issue_id: str) -> Issue:
        doc = self._request("GET", f"/rest/api/2/issue/{issue_id}")
        fields = doc.get("fields") or {}
        description = fields.get("description") or ""

        links: list[str] = []
        for link in fields.get("issuelinks") or []:
            other = link.get("outwardIssue") or link.get("inwardIssue") or {}
            if other.get("key"):
                links.append(other["key"])

        points = fields.get(self.config.story_points_field)
        return Issue(
            key=doc.get("key", issue_id),
            summary=fields.get("summary") or "",
            description=description,
            acceptance_criteria=parse_acceptance_criteria(description),
            story_points=float(points) if points is not None else None,
            links=links,
            url=f"{self.config.url.rstrip('/')}/browse/{doc.get('key', issue_id)}",
        )

    @external_call
    def update_field(self, issue_id: str, field_key: str, value: dict[str, Any]) -> None:
        self._request("PUT", f"/rest/api/2/issue/{issue_id}", json={"fields": {field_key: value}})
        logger.info(f"[JIRA] {issue_id}.{field_key} ← {value}")

    @external_call
    def get_field(self, issue_id: str, field_key: str) -> Any:
        doc = self._request("GET", f"/rest/api/2/issue/{issue_id}", params={"fields": field_key})
        return (doc.get("fields") or {}).get(field_key)

    def _request(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        try:
            response = self._client.request(method, path, **kwargs)
        except httpx.TransportError as e:
            raise TrackerUnavailable(f"Jira {method} {path} failed: {e}") from e

        if response.status_code in _TRANSIENT_STATUS or response.status_code >= 500:
            raise TrackerUnavailable(f"Jira {method} {path} → HTTP {response.status_code}")
        if response.status_code >= 400:
            raise TrackerRejected(
                f"Jira {method} {path} → HTTP {response.status_code}: {response.text[:300]}"
            )
        if response.status_code == 204 or not response.content:
            return {}
        return response.json()
