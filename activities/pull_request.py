"""
Activity: Pull Request Update — write the run report into the body of the
branch's open pull request (GitHub) or merge request (GitLab).
"""

from __future__ import annotations

import asyncio
import logging
from functools import partial
from urllib.parse import quote

import httpx

import config
from errors import PRUpdateError
from models.schemas import BuildMetadata, CoverageResult, PRResult, TestResult
from utils.retry import retry_with_backoff
from utils.sanitize import sanitize_string
from utils.secrets import resolve_token

log = logging.getLogger(__name__)


def is_transient_http_error(error: BaseException) -> bool:
    """Network failures, rate limits and 5xx responses. Other 4xx will not change on retry."""
    if isinstance(error, httpx.HTTPStatusError):
        status = error.response.status_code
        return status == 429 or status >= 500
    return isinstance(error, httpx.TransportError)


def generate_pr_body(
    task_id: str,
    test_result: TestResult,
    coverage: CoverageResult,
    metadata: BuildMetadata,
    threshold: float = config.COVERAGE_THRESHOLD,
    modified_files: list[str] | None = None,
) -> str:
    """Render the Markdown report pushed as the PR description."""
    build = f"[{metadata.build_id}]({metadata.build_url})" if metadata.build_url else metadata.build_id
    lines = [
        "## Kiro Worker Automated Changes",
        "",
        f"**Task**: {task_id or 'all'}",
        f"**Build**: {build}",
        f"**Environment**: {metadata.environment}",
        f"**Timestamp**: {metadata.timestamp.isoformat()}",
        "",
        "### Test Results",
        f"- **Total Tests**: {test_result.total_tests}",
        f"- **Passed**: {test_result.passed_tests} ✅",
        f"- **Failed**: {test_result.failed_tests}{' ❌' if test_result.failed_tests else ''}",
        f"- **Status**: {'✅ All tests passed' if test_result.passed else '❌ Tests failed'}",
        "",
        "### Code Coverage",
        f"- **Overall Coverage**: {coverage.percentage:.2f}% {'✅' if coverage.meets_threshold else '⚠️'}",
        f"- **Lines**: {coverage.lines:.2f}%",
        f"- **Functions**: {coverage.functions:.2f}%",
        f"- **Branches**: {coverage.branches:.2f}%",
        f"- **Statements**: {coverage.statements:.2f}%",
        f"- **Threshold**: {f'Met (≥{threshold:g}%)' if coverage.meets_threshold else f'Not met (<{threshold:g}%)'}",
    ]
    if coverage.summary:
        lines += ["", coverage.summary]

    if modified_files:
        lines += ["", f"### Modified Files ({len(modified_files)})"]
        lines += [f"- `{path}`" for path in modified_files]

    if test_result.failures:
        lines += ["", "### Failed Tests"]
        for failure in test_result.failures:
            lines += ["", f"#### {failure.test_name}", "```", failure.error, "```"]

    return sanitize_string("\n".join(lines) + "\n")


class PullRequestUpdater:

    def __init__(
        self,
        owner: str,
        repo: str,
        platform: str = config.PR_PLATFORM,
        token: str = "",
        token_secret_arn: str = config.API_TOKEN_SECRET_ARN,
        region: str = config.AWS_REGION,
        github_api_url: str = config.GITHUB_API_URL,
        gitlab_api_url: str = config.GITLAB_API_URL,
        transport: httpx.AsyncBaseTransport | None = None,
        retry_delay: float = 1.0,
    ):
        self.owner = owner
        self.repo = repo
        self.platform = platform
        self._token = token
        self._token_secret_arn = token_secret_arn
        self._region = region
        self.github_api_url = github_api_url.rstrip("/")
        self.gitlab_api_url = gitlab_api_url.rstrip("/")
        self._transport = transport
        self._retry_delay = retry_delay

    async def _resolve_token(self) -> str:
        if not self._token:
            loop = asyncio.get_running_loop()
            self._token = await loop.run_in_executor(None, partial(
                resolve_token, "", self._token_secret_arn, self._region,
            ))
        return self._token

    def _client(self, token: str) -> httpx.AsyncClient:
        if self.platform == "gitlab":
            headers = {"PRIVATE-TOKEN": token}
        else:
            headers = {"Authorization": f"Bearer {token}", "Accept": "application/vnd.github+json"}
        return httpx.AsyncClient(headers=headers, timeout=30, transport=self._transport)

    async def has_open_pr(self, source_branch: str) -> bool:
        """True if an open PR/MR exists for ``source_branch``. Errors count as False."""
        try:
            token = await self._resolve_token()
            async with self._client(token) as client:
                return await self._find(client, source_branch) is not None
        except Exception as e:
            log.error("Failed to verify pull request for %s: %s", source_branch, sanitize_string(str(e)))
            return False

    async def update_pr(self, source_branch: str, body: str) -> PRResult:
        """Replace the description of the open PR/MR for ``source_branch``."""
        log.info("Updating %s pull request for branch %s", self.platform, source_branch)
        try:
            token = await self._resolve_token()
            async with self._client(token) as client:
                result = await retry_with_backoff(
                    lambda: self._update(client, source_branch, body),
                    max_attempts=3,
                    initial_delay=self._retry_delay,
                    max_delay=5.0,
                    retry_on=(httpx.TransportError, httpx.HTTPStatusError),
                    should_retry=is_transient_http_error,
                )
        except PRUpdateError:
            raise
        except Exception as e:
            log.error("Failed to update pull request for %s: %s", source_branch, e)
            raise PRUpdateError(f"Failed to update pull request: {e}") from e

        log.info("Pull request updated: #%s %s", result.pr_number, result.pr_url)
        return result

    def _base_url(self) -> str:
        if self.platform == "gitlab":
            project_id = quote(f"{self.owner}/{self.repo}", safe="")
            return f"{self.gitlab_api_url}/projects/{project_id}/merge_requests"
        return f"{self.github_api_url}/repos/{self.owner}/{self.repo}/pulls"

    async def _find(self, client: httpx.AsyncClient, branch: str) -> dict | None:
        if self.platform == "gitlab":
            params = {"source_branch": branch, "state": "opened"}
        else:
            params = {"head": f"{self.owner}:{branch}", "state": "open"}
        resp = await client.get(self._base_url(), params=params)
        resp.raise_for_status()
        found = resp.json()
        return found[0] if found else None

    async def _update(self, client: httpx.AsyncClient, branch: str, body: str) -> PRResult:
        pr = await self._find(client, branch)
        if pr is None:
            kind = "merge request" if self.platform == "gitlab" else "pull request"
            raise PRUpdateError(f"No open {kind} found for branch: {branch}", "find")

        if self.platform == "gitlab":
            resp = await client.put(f"{self._base_url()}/{pr['iid']}", json={"description": body})
            resp.raise_for_status()
            return PRResult(success=True, pr_number=pr["iid"], pr_url=pr.get("web_url"))

        resp = await client.patch(f"{self._base_url()}/{pr['number']}", json={"body": body})
        resp.raise_for_status()
        return PRResult(success=True, pr_number=pr["number"], pr_url=pr.get("html_url"))
