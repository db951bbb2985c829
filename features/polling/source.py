"""
GitHub Projects work item source.

Ready items are the project (v2) items whose ``Status`` field equals the
target column and which carry a ``Branch`` text field. An optional numeric
``Priority`` field ranks them.

Authentication is resolved lazily, once per source instance, and kept in a
GitHubSession owned by that instance.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from functools import partial

import httpx

import config
from errors import WorkItemError
from models.schemas import ProjectConfig, WorkItem
from utils.retry import retry_with_backoff
from utils.secrets import resolve_token

log = logging.getLogger(__name__)

PROJECT_ITEMS_QUERY = """
query($org: String!, $projectNumber: Int!) {
  organization(login: $org) {
    projectV2(number: $projectNumber) {
      items(first: 100) {
        nodes {
          id
          fieldValues(first: 20) {
            nodes {
              ... on ProjectV2ItemFieldTextValue {
                text
                field { ... on ProjectV2FieldCommon { name } }
              }
              ... on ProjectV2ItemFieldSingleSelectValue {
                name
                field { ... on ProjectV2FieldCommon { name } }
              }
              ... on ProjectV2ItemFieldNumberValue {
                number
                field { ... on ProjectV2FieldCommon { name } }
              }
            }
          }
          content {
            ... on Issue { title body createdAt }
            ... on DraftIssue { title body createdAt }
          }
        }
      }
    }
  }
}
"""


@dataclass
class GitHubSession:
    """An authenticated HTTP client for the GitHub REST and GraphQL APIs."""
    token: str
    client: httpx.AsyncClient

    async def aclose(self) -> None:
        await self.client.aclose()


def open_github_session(
    token: str,
    api_url: str = config.GITHUB_API_URL,
    transport: httpx.AsyncBaseTransport | None = None,
) -> GitHubSession:
    client = httpx.AsyncClient(
        base_url=api_url.rstrip("/"),
        headers={
            "Authorization": f"Bearer {token}",
            "Accept": "application/vnd.github+json",
        },
        timeout=30,
        transport=transport,
    )
    return GitHubSession(token=token, client=client)


def _field_value(nodes: list[dict], field_name: str, key: str):
    for node in nodes:
        if (node.get("field") or {}).get("name") == field_name:
            return node.get(key)
    return None


def _parse_created_at(value: str | None) -> datetime:
    if not value:
        return datetime.now(timezone.utc)
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def parse_project_items(data: dict, target_status: str) -> list[WorkItem]:
    """Turn a projectV2 GraphQL response into ready WorkItems."""
    project = ((data.get("organization") or {}).get("projectV2")) or {}
    nodes = (project.get("items") or {}).get("nodes") or []

    items = []
    for node in nodes:
        fields = (node.get("fieldValues") or {}).get("nodes") or []
        status = _field_value(fields, "Status", "name")
        if status != target_status:
            continue

        branch = _field_value(fields, "Branch", "text")
        if not branch:
            log.warning("Work item %s has no branch name, skipping", node.get("id"))
            continue

        priority = _field_value(fields, "Priority", "number")
        content = node.get("content") or {}
        items.append(WorkItem(
            id=node["id"],
            title=content.get("title") or "",
            description=content.get("body") or "",
            branch_name=branch,
            status=status,
            created_at=_parse_created_at(content.get("createdAt")),
            priority=int(priority) if priority is not None else None,
        ))
    return items


class GitHubProjectSource:
    """Work item source backed by a GitHub organization project board."""

    def __init__(
        self,
        owner: str,
        repo: str,
        token: str = "",
        token_secret_arn: str = "",
        region: str = config.AWS_REGION,
        api_url: str = config.GITHUB_API_URL,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.owner = owner
        self.repo = repo
        self._token = token
        self._token_secret_arn = token_secret_arn
        self._region = region
        self._api_url = api_url
        self._transport = transport
        self._session: GitHubSession | None = None

    async def session(self) -> GitHubSession:
        if self._session is None:
            loop = asyncio.get_running_loop()
            token = await loop.run_in_executor(None, partial(
                resolve_token, self._token, self._token_secret_arn, self._region,
            ))
            self._session = open_github_session(token, self._api_url, self._transport)
        return self._session

    async def aclose(self) -> None:
        if self._session is not None:
            await self._session.aclose()
            self._session = None

    async def _query_project_items(self, project: ProjectConfig) -> list[WorkItem]:
        session = await self.session()
        resp = await session.client.post("/graphql", json={
            "query": PROJECT_ITEMS_QUERY,
            "variables": {"org": project.organization, "projectNumber": project.project_number},
        })
        resp.raise_for_status()
        payload = resp.json()
        if payload.get("errors"):
            raise RuntimeError("; ".join(e.get("message", "") for e in payload["errors"]))
        return parse_project_items(payload.get("data") or {}, project.target_status_column)

    async def fetch_ready_items(self, project: ProjectConfig) -> list[WorkItem]:
        """Fetch items in the target status column. Raises WorkItemError."""
        log.info(
            "Fetching work items: org=%s repo=%s project=%d status=%r",
            project.organization, project.repository,
            project.project_number, project.target_status_column,
        )
        try:
            items = await retry_with_backoff(
                lambda: self._query_project_items(project),
                max_attempts=3, initial_delay=1.0, max_delay=5.0,
            )
        except Exception as e:
            log.error("Failed to fetch work items: %s", e)
            if "rate limit" in str(e).lower() or "403" in str(e):
                raise WorkItemError(
                    "GitHub API rate limit exceeded. Please wait before retrying.",
                ) from e
            raise WorkItemError(f"Failed to fetch work items: {e}") from e

        log.info("Fetched %d ready work items", len(items))
        return items

    async def verify_pull_request_open(self, branch_name: str) -> bool:
        """True if an open PR exists for ``branch_name``. Errors count as False."""
        try:
            session = await self.session()
            resp = await session.client.get(
                f"/repos/{self.owner}/{self.repo}/pulls",
                params={"head": f"{self.owner}:{branch_name}", "state": "open"},
            )
            resp.raise_for_status()
            return len(resp.json()) > 0
        except Exception as e:
            log.error("Failed to verify pull request for %s: %s", branch_name, e)
            return False
