"""GitHub integration for Flowize.

``IssueTracker`` is the capability the workflow depends on; ``GitHubClient``
implements it against the GitHub REST API.
"""

from __future__ import annotations

import asyncio
import base64
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, List, Optional, Protocol

import httpx

from flowize.config import Config
from flowize.errors import ApiErrorKind, ExternalApiError
from flowize.tasks import CheckState

logger = logging.getLogger(__name__)

GITHUB_API = "https://api.github.com"
API_VERSION = "2022-11-28"


@dataclass
class Issue:
    """GitHub issue information."""

    number: int
    title: str
    body: str
    url: str
    labels: List[str] = field(default_factory=list)


@dataclass
class PullRequest:
    """GitHub pull request information."""

    number: int
    title: str
    url: str
    branch: str
    body: str = ""
    merged_at: Optional[str] = None


@dataclass
class PullRequestDetails:
    """Mergeability context of a pull request."""

    number: int
    url: str
    base_ref: str
    head_ref: str
    mergeable: Optional[bool] = None
    mergeable_state: str = "unknown"


class IssueTracker(Protocol):
    async def create_issue(self, title: str, body: str, labels: list[str]) -> Issue: ...

    async def list_open_issues(self) -> list[Issue]: ...

    async def get_branch_head_sha(self, branch: str) -> str: ...

    async def create_branch(self, branch: str, base_sha: str) -> None: ...

    async def commit_file(self, branch: str, path: str, content: str, message: str) -> None: ...

    async def create_pull_request(self, head: str, base: str, title: str, body: str) -> PullRequest: ...

    async def merge_pull_request(self, number: int, title: Optional[str] = None) -> None: ...

    async def list_open_pull_requests(self) -> list[PullRequest]: ...

    async def list_merged_pull_requests(self) -> list[PullRequest]: ...

    async def get_pull_request_details(self, number: int) -> PullRequestDetails: ...

    async def get_commit_status(self, ref: str) -> CheckState: ...


def _error_text(response: httpx.Response) -> str:
    """GitHub's ``message`` plus any per-field ``errors`` entries."""
    message = response.reason_phrase or ""
    details = ""
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        message = body.get("message") or message
        errors = body.get("errors")
        if isinstance(errors, list):
            details = ", ".join(
                e.get("message") or f"Code: {e.get('code')} Resource: {e.get('resource')}"
                for e in errors
                if isinstance(e, dict)
            )
    return f"{message} ({details})" if details else message


def map_github_error(response: httpx.Response, context: str) -> ExternalApiError:
    """Classify a failed GitHub response into an ``ExternalApiError``."""
    status = response.status_code
    text = _error_text(response)

    if status == 403:
        if response.headers.get("x-ratelimit-remaining") == "0":
            reset = response.headers.get("x-ratelimit-reset")
            reset_at = ""
            if reset and reset.isdigit():
                reset_at = f" Reset at {datetime.fromtimestamp(int(reset)).strftime('%H:%M:%S')}."
            return ExternalApiError(
                ApiErrorKind.RATE_LIMIT, context, f"GitHub API Rate Limit Exceeded.{reset_at}", status=status
            )
        return ExternalApiError(
            ApiErrorKind.PERMISSION,
            context,
            f'Permission denied (403) during {context}. GitHub says: "{text}". '
            "Ensure your Token has the correct scopes.",
            status=status,
        )

    if status == 404:
        return ExternalApiError(
            ApiErrorKind.NOT_FOUND,
            context,
            f'Resource not found (404) during {context}. GitHub says: "{text}". '
            "Check repository owner, name, and permissions.",
            status=status,
        )

    if status == 422:
        return ExternalApiError(
            ApiErrorKind.VALIDATION, context, f'Validation Failed (422) during {context}. GitHub says: "{text}"',
            status=status,
        )

    if status == 405:
        return ExternalApiError(
            ApiErrorKind.MERGE_NOT_ALLOWED,
            context,
            f"Method Not Allowed (405) during {context}. The resource is in a state that prevents "
            f'the operation (e.g. merge conflicts). GitHub says: "{text}"',
            status=status,
        )

    return ExternalApiError(
        ApiErrorKind.OTHER, context, f"GitHub API Error ({status}) during {context}: {text}", status=status
    )


def _to_issue(data: dict[str, Any]) -> Issue:
    return Issue(
        number=int(data["number"]),
        title=data.get("title") or "",
        body=data.get("body") or "",
        url=data.get("html_url") or "",
        labels=[
            (label.get("name") if isinstance(label, dict) else str(label)) or ""
            for label in data.get("labels") or []
        ],
    )


def _to_pull_request(data: dict[str, Any]) -> PullRequest:
    return PullRequest(
        number=int(data["number"]),
        title=data.get("title") or "",
        url=data.get("html_url") or "",
        branch=(data.get("head") or {}).get("ref") or "",
        body=data.get("body") or "",
        merged_at=data.get("merged_at"),
    )


class GitHubClient:
    """``IssueTracker`` over the GitHub REST API.

    Args:
        owner: Repository owner
        repo: Repository name
        token: Personal access token (bearer auth)
        transport: Optional httpx transport (tests pass ``httpx.MockTransport``)
        sleep: Coroutine used while waiting for an updated branch to sync
    """

    def __init__(
        self,
        owner: str,
        repo: str,
        token: Optional[str],
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        base_url: str = GITHUB_API,
    ) -> None:
        self.owner = owner
        self.repo = repo
        self.token = (token or "").strip()
        self.transport = transport
        self.sleep = sleep
        self.base_url = base_url

    @classmethod
    def from_config(cls, config: Config, transport: Optional[httpx.AsyncBaseTransport] = None) -> "GitHubClient":
        return cls(config.repo_owner, config.repo_name, config.github_token, transport=transport)

    @property
    def repo_path(self) -> str:
        return f"/repos/{self.owner}/{self.repo}"

    async def _request(
        self,
        method: str,
        path: str,
        context: str,
        json: Optional[dict[str, Any]] = None,
        params: Optional[dict[str, str]] = None,
    ) -> httpx.Response:
        if not self.token:
            raise ExternalApiError(ApiErrorKind.PERMISSION, context, "GitHub Token not configured")

        headers = {
            "Authorization": f"Bearer {self.token}",
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": API_VERSION,
        }
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url, headers=headers, timeout=30, transport=self.transport
            ) as client:
                return await client.request(method, path, json=json, params=params)
        except httpx.TransportError as e:
            raise ExternalApiError(ApiErrorKind.OTHER, context, f"GitHub request failed during {context}: {e}") from e

    async def _checked(self, method: str, path: str, context: str, **kwargs: Any) -> Any:
        response = await self._request(method, path, context, **kwargs)
        if not response.is_success:
            raise map_github_error(response, context)
        return response.json() if response.content else None

    async def create_issue(self, title: str, body: str, labels: list[str]) -> Issue:
        data = await self._checked(
            "POST", f"{self.repo_path}/issues", "Create Issue",
            json={"title": title, "body": body, "labels": labels},
        )
        return _to_issue(data)

    async def list_open_issues(self) -> list[Issue]:
        """Open issues, excluding pull requests (which the issues API also returns)."""
        data = await self._checked("GET", f"{self.repo_path}/issues", "Fetch Issues", params={"state": "open"})
        return [_to_issue(item) for item in data or [] if "pull_request" not in item]

    async def get_branch_head_sha(self, branch: str = "main") -> str:
        context = f"Get Branch SHA ({branch})"
        response = await self._request("GET", f"{self.repo_path}/git/ref/heads/{branch}", context)

        if response.status_code == 404 and branch == "main":
            logger.warning("Branch 'main' not found, attempting fallback to 'master'")
            fallback = await self._request("GET", f"{self.repo_path}/git/ref/heads/master", context)
            if fallback.is_success:
                response = fallback

        if not response.is_success:
            raise map_github_error(response, context)
        return str(response.json()["object"]["sha"])

    async def create_branch(self, branch: str, base_sha: str) -> None:
        """Create ``branch`` at ``base_sha``; an existing branch is left alone."""
        check = await self._request("GET", f"{self.repo_path}/git/ref/heads/{branch}", f"Check Branch {branch}")
        if check.is_success:
            return

        await self._checked(
            "POST", f"{self.repo_path}/git/refs", f"Create Branch {branch}",
            json={"ref": f"refs/heads/{branch}", "sha": base_sha},
        )

    async def commit_file(self, branch: str, path: str, content: str, message: str) -> None:
        """Create or update ``path`` on ``branch`` with a single commit."""
        sha = None
        check = await self._request(
            "GET", f"{self.repo_path}/contents/{path}", f"Check File Existence {path}", params={"ref": branch}
        )
        if check.is_success:
            sha = check.json().get("sha")
        elif check.status_code != 404:
            raise map_github_error(check, f"Check File Existence {path}")

        payload: dict[str, Any] = {
            "message": message,
            "content": base64.b64encode(content.encode("utf-8")).decode("ascii"),
            "branch": branch,
        }
        if sha:
            payload["sha"] = sha
        await self._checked("PUT", f"{self.repo_path}/contents/{path}", f"Commit File {path}", json=payload)

    async def create_pull_request(self, head: str, base: str, title: str, body: str) -> PullRequest:
        """Open a PR; if one is already open for ``head`` it is returned instead."""
        context = "Create Pull Request"
        response = await self._request(
            "POST", f"{self.repo_path}/pulls", context,
            json={"title": title, "body": body, "head": head, "base": base},
        )

        if response.status_code == 422:
            clean_head = head.split(":", 1)[1] if ":" in head else head
            existing = await self._request(
                "GET", f"{self.repo_path}/pulls", "Find Existing Pull Request",
                params={"head": f"{self.owner}:{clean_head}", "state": "open"},
            )
            if existing.is_success:
                prs = existing.json()
                if prs:
                    logger.info("Found existing PR for %s: %s", clean_head, prs[0].get("html_url"))
                    return _to_pull_request(prs[0])

        if not response.is_success:
            raise map_github_error(response, context)
        return _to_pull_request(response.json())

    async def merge_pull_request(self, number: int, title: Optional[str] = None) -> None:
        """Squash-merge PR ``number``.

        When GitHub refuses (405), the PR branch is updated from its base once
        and the merge retried.
        """
        context = "Merge Pull Request"
        path = f"{self.repo_path}/pulls/{number}/merge"
        payload: dict[str, Any] = {"merge_method": "squash"}
        if title:
            payload["commit_title"] = title

        response = await self._request("PUT", path, context, json=payload)

        if response.status_code == 405:
            logger.warning("Merge of PR #%s refused (405); updating branch and retrying", number)
            update = await self._request(
                "PUT", f"{self.repo_path}/pulls/{number}/update-branch", f"Update Branch (PR #{number})"
            )
            if not update.is_success:
                raise ExternalApiError(
                    ApiErrorKind.MERGE_NOT_ALLOWED,
                    context,
                    f"Merge Failed: The PR is not mergeable and auto-update failed: {_error_text(update)}",
                    status=update.status_code,
                )
            await self.sleep(2.0)
            response = await self._request("PUT", path, context, json=payload)

        if not response.is_success:
            raise map_github_error(response, context)

    async def list_open_pull_requests(self) -> list[PullRequest]:
        data = await self._checked(
            "GET", f"{self.repo_path}/pulls", "Fetch Open PRs",
            params={"state": "open", "sort": "updated", "direction": "desc"},
        )
        return [_to_pull_request(item) for item in data or []]

    async def list_merged_pull_requests(self) -> list[PullRequest]:
        data = await self._checked(
            "GET", f"{self.repo_path}/pulls", "Fetch Merged PRs",
            params={"state": "closed", "sort": "updated", "direction": "desc"},
        )
        return [_to_pull_request(item) for item in data or [] if item.get("merged_at")]

    async def get_pull_request_details(self, number: int) -> PullRequestDetails:
        data = await self._checked("GET", f"{self.repo_path}/pulls/{number}", f"Fetch Pull Request ({number})")
        return PullRequestDetails(
            number=int(data["number"]),
            url=data.get("html_url") or "",
            base_ref=(data.get("base") or {}).get("ref") or "",
            head_ref=(data.get("head") or {}).get("ref") or "",
            mergeable=data.get("mergeable"),
            mergeable_state=data.get("mergeable_state") or "unknown",
        )

    async def get_commit_status(self, ref: str) -> CheckState:
        """Combined status of ``ref``; unknown refs count as pending."""
        context = f"Fetch Commit Status ({ref})"
        response = await self._request("GET", f"{self.repo_path}/commits/{ref}/status", context)
        if response.status_code == 404:
            return CheckState.PENDING
        if not response.is_success:
            raise map_github_error(response, context)

        state = response.json().get("state")
        if state == "success":
            return CheckState.SUCCESS
        if state in ("failure", "error"):
            return CheckState.FAILED
        return CheckState.PENDING
