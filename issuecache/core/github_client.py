"""
GitHub REST API adapter.

One method call fetches exactly one page. Pagination is driven by the
caller through opaque page tokens (the ``rel="next"`` URL from GitHub's
Link header), so the sync engine can check for cancellation between pages.

Failures are mapped onto the error kinds in ``issuecache.core.errors``.
Nothing is retried here.
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Generic, List, Optional, TypeVar

import httpx
from pydantic import BaseModel, field_validator

from issuecache.config import Settings
from issuecache.core.errors import (
    AuthenticationError,
    GitHubClientError,
    NotFoundError,
    RateLimitExceeded,
    TransientNetworkError,
)
from issuecache.core.logging_utils import redact_token, sanitize_for_logging
from issuecache.core.rate_limiter import RateLimiter


logger = logging.getLogger(__name__)

T = TypeVar("T")

NEXT_LINK_PATTERN = re.compile(r'\s*<([^>]+)>;\s*rel="next"')


def _to_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def format_since(value: datetime) -> str:
    """Format a naive-UTC timestamp as the ISO 8601 form GitHub expects."""
    value = _to_naive_utc(value)
    return value.strftime("%Y-%m-%dT%H:%M:%SZ")


# -------------------------------------------------------------------------
# DTOs
# -------------------------------------------------------------------------

class IssueDTO(BaseModel):
    """An item from the issues listing; may be a pull request."""
    number: int
    title: str = ""
    body: Optional[str] = None
    state: str = "open"
    author: str = ""
    created_at: datetime
    updated_at: datetime
    closed_at: Optional[datetime] = None
    comment_count: int = 0
    labels: List[str] = []
    assignees: List[str] = []
    is_pull_request: bool = False

    @field_validator("created_at", "updated_at", "closed_at")
    @classmethod
    def _naive_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _to_naive_utc(value)

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "IssueDTO":
        """Build from a GitHub issues API object."""
        user = data.get("user") or {}
        return cls(
            number=data["number"],
            title=data.get("title") or "",
            body=data.get("body"),
            state=data.get("state") or "open",
            author=user.get("login") or "",
            created_at=data["created_at"],
            updated_at=data["updated_at"],
            closed_at=data.get("closed_at"),
            comment_count=data.get("comments") or 0,
            labels=[label["name"] for label in data.get("labels") or [] if label.get("name")],
            assignees=[a["login"] for a in data.get("assignees") or [] if a.get("login")],
            # GitHub co-mingles pull requests in the issues listing and marks them with this key
            is_pull_request="pull_request" in data,
        )


class CommentDTO(BaseModel):
    """An issue comment."""
    id: int
    issue_number: int
    body: str = ""
    author: str = ""
    created_at: datetime
    updated_at: datetime

    @field_validator("created_at", "updated_at")
    @classmethod
    def _naive_utc(cls, value: datetime) -> datetime:
        return _to_naive_utc(value)

    @classmethod
    def from_api(cls, issue_number: int, data: Dict[str, Any]) -> "CommentDTO":
        user = data.get("user") or {}
        return cls(
            id=data["id"],
            issue_number=issue_number,
            body=data.get("body") or "",
            author=user.get("login") or "",
            created_at=data["created_at"],
            updated_at=data["updated_at"],
        )


@dataclass
class Page(Generic[T]):
    """One page of a listing. ``next_page_token`` is None on the last page."""
    items: List[T] = field(default_factory=list)
    next_page_token: Optional[str] = None


# -------------------------------------------------------------------------
# Client
# -------------------------------------------------------------------------

class GitHubClient:
    """Wrapper for GitHub REST API interactions."""

    DEFAULT_BASE_URL = "https://api.github.com"
    MAX_PER_PAGE = 100

    def __init__(
        self,
        token: str,
        base_url: Optional[str] = None,
        *,
        per_page: int = MAX_PER_PAGE,
        timeout: float = 30.0,
        connect_timeout: float = 10.0,
        delay_ms: int = 0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize the client.

        Args:
            token: GitHub token (PAT, fine-grained token, or gh CLI token)
            base_url: API base URL (GitHub Enterprise installs differ)
            per_page: Page size for listings, capped at GitHub's maximum of 100
            timeout: Per-request read/write/pool timeout in seconds
            connect_timeout: Per-request connect timeout in seconds
            delay_ms: Delay between requests in milliseconds
            transport: Optional httpx transport (tests use httpx.MockTransport)
        """
        self.base_url = (base_url or self.DEFAULT_BASE_URL).rstrip("/")
        self.per_page = max(1, min(per_page, self.MAX_PER_PAGE))
        self.rate_limiter = RateLimiter(delay_ms=delay_ms)
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers={
                "Authorization": f"Bearer {token}",
                "Accept": "application/vnd.github+json",
                "X-GitHub-Api-Version": "2022-11-28",
                "User-Agent": "issue-cache",
            },
            timeout=httpx.Timeout(timeout, connect=connect_timeout),
            transport=transport,
        )
        logger.debug(f"GitHub client for {self.base_url} using token {redact_token(token)}")

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        token: str,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> "GitHubClient":
        return cls(
            token,
            settings.github_api_url,
            per_page=settings.page_size,
            timeout=settings.request_timeout_seconds,
            connect_timeout=settings.connect_timeout_seconds,
            delay_ms=settings.github_api_delay_ms,
            transport=transport,
        )

    async def __aenter__(self) -> "GitHubClient":
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    async def close(self) -> None:
        """Close the httpx client and log the request totals."""
        metrics = self.rate_limiter.get_metrics()
        if metrics["operation_count"]:
            logger.info(
                f"GitHub requests: {metrics['operation_count']} in {metrics['duration_seconds']}s "
                f"({metrics['operations_per_second']}/s)"
            )
        await self._client.aclose()

    # --- Listings ---

    async def list_issues(
        self,
        repo: str,
        since: Optional[datetime] = None,
        page_token: Optional[str] = None,
    ) -> Page[IssueDTO]:
        """
        Fetch one page of open issues (pull requests included, flagged).

        Args:
            repo: Repository in owner/name form
            since: Only issues updated at or after this naive-UTC time
            page_token: Token from the previous page; None for the first page
        """
        if page_token:
            response = await self._get(self._validate_page_token(page_token))
        else:
            params = {
                "state": "open",
                "sort": "created",
                "direction": "asc",
                "per_page": str(self.per_page),
            }
            if since is not None:
                params["since"] = format_since(since)
            response = await self._get(f"/repos/{repo}/issues", params=params)

        items = self._parse_items(response, IssueDTO.from_api)
        return Page(items=items, next_page_token=self._parse_next_link(response.headers.get("Link", "")))

    async def list_comments(
        self,
        repo: str,
        issue_number: int,
        since: Optional[datetime] = None,
        page_token: Optional[str] = None,
    ) -> Page[CommentDTO]:
        """Fetch one page of comments for an issue."""
        if page_token:
            response = await self._get(self._validate_page_token(page_token))
        else:
            params = {"per_page": str(self.per_page)}
            if since is not None:
                params["since"] = format_since(since)
            response = await self._get(f"/repos/{repo}/issues/{issue_number}/comments", params=params)

        items = self._parse_items(response, lambda item: CommentDTO.from_api(issue_number, item))
        return Page(items=items, next_page_token=self._parse_next_link(response.headers.get("Link", "")))

    # --- Plumbing ---

    async def _get(self, path: str, params: Optional[Dict[str, str]] = None) -> httpx.Response:
        """Make one GET request and map failures onto the error taxonomy."""
        await self.rate_limiter.delay()
        try:
            response = await self._client.get(path, params=params)
        except httpx.TimeoutException as e:
            raise TransientNetworkError(f"Request to GitHub timed out: {type(e).__name__}") from e
        except httpx.HTTPError as e:
            raise TransientNetworkError(f"Network error talking to GitHub: {e}") from e
        finally:
            self.rate_limiter.record_operation()

        if response.status_code >= 400:
            self._raise_for_status(response)
        return response

    def _raise_for_status(self, response: httpx.Response) -> None:
        status = response.status_code
        message = self._error_message(response)

        if status == 401:
            raise AuthenticationError(f"GitHub API error 401: {message}", status_code=status)

        if status == 403:
            if response.headers.get("X-RateLimit-Remaining") == "0":
                reset = float(response.headers.get("X-RateLimit-Reset", "0") or 0)
                raise RateLimitExceeded(
                    datetime.fromtimestamp(reset, tz=timezone.utc),
                    status_code=status,
                )
            if "Retry-After" in response.headers or "rate limit" in message.lower():
                raise RateLimitExceeded(
                    self._retry_after(response),
                    "Secondary rate limit exceeded",
                    status_code=status,
                )
            raise AuthenticationError(f"GitHub API error 403: {message}", status_code=status)

        if status == 429:
            raise RateLimitExceeded(
                self._retry_after(response),
                "Secondary rate limit exceeded",
                status_code=status,
            )

        if status in (404, 410):
            raise NotFoundError(f"GitHub API error {status}: {message}", status_code=status)

        if status >= 500:
            raise TransientNetworkError(f"GitHub API server error {status}: {message}", status_code=status)

        raise GitHubClientError(f"GitHub API error {status}: {message}", status_code=status)

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            body = response.json() if response.content else {}
        except ValueError:
            body = {}
        if isinstance(body, dict) and body.get("message"):
            return sanitize_for_logging(body["message"])
        return sanitize_for_logging(response.text or response.reason_phrase)

    @staticmethod
    def _retry_after(response: httpx.Response) -> datetime:
        try:
            seconds = int(response.headers.get("Retry-After", "60"))
        except ValueError:
            seconds = 60
        return datetime.fromtimestamp(datetime.now(timezone.utc).timestamp() + seconds, tz=timezone.utc)

    @staticmethod
    def _json_list(response: httpx.Response) -> List[Dict[str, Any]]:
        try:
            data = response.json()
        except ValueError as e:
            raise GitHubClientError("GitHub returned a non-JSON response", status_code=response.status_code) from e
        if not isinstance(data, list):
            raise GitHubClientError("Unexpected GitHub response: expected a list", status_code=response.status_code)
        return data

    @classmethod
    def _parse_items(cls, response: httpx.Response, parse: Callable[[Dict[str, Any]], T]) -> List[T]:
        items = []
        for item in cls._json_list(response):
            try:
                items.append(parse(item))
            except (KeyError, TypeError, AttributeError, ValueError) as e:
                # pydantic.ValidationError is a ValueError
                raise GitHubClientError(
                    f"Unexpected GitHub response: malformed item ({type(e).__name__}: {sanitize_for_logging(str(e), 200)})",
                    status_code=response.status_code,
                ) from e
        return items

    def _validate_page_token(self, token: str) -> str:
        # Page tokens are next-page URLs; never follow one off the API host
        if not token.startswith(self.base_url + "/"):
            raise GitHubClientError(f"Invalid page token: {sanitize_for_logging(token, 100)}")
        return token

    def _parse_next_link(self, link_header: str) -> Optional[str]:
        """
        Extract the rel="next" URL from a Link header.

        Format: <https://api.github.com/...?page=2>; rel="next", <...>; rel="last"
        """
        if not link_header:
            return None

        for part in link_header.split(","):
            match = NEXT_LINK_PATTERN.match(part.strip())
            if match:
                url = match.group(1)
                # A foreign next link must not silently end pagination
                if not url.startswith(self.base_url + "/"):
                    logger.warning(f"Link header URL outside {self.base_url}: {sanitize_for_logging(url, 100)}")
                    raise GitHubClientError("GitHub returned a next-page link for a different host")
                return url
        return None
