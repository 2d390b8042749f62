"""
Error taxonomy for the sync engine.

Remote failures are raised by the GitHub client, storage failures by the
cache store. Both propagate through the sync engine unchanged; the engine
only attaches the counts that were persisted before the failure.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Optional


class IssueCacheError(Exception):
    """Base class for errors surfaced by the sync engine."""

    def __init__(self, message: str = ""):
        super().__init__(message)
        # Set by SyncEngine when a pass aborts; counts persisted before the failure
        self.partial_result: Optional[Any] = None


class GitHubClientError(IssueCacheError):
    """Raised when a GitHub API request fails."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class AuthenticationError(GitHubClientError):
    """Invalid, expired or insufficiently scoped token."""


class RateLimitExceeded(GitHubClientError):
    """Primary or secondary GitHub rate limit hit."""

    def __init__(self, reset_at: datetime, message: str = "Rate limit exceeded", status_code: int = 403):
        self.reset_at = reset_at
        super().__init__(f"{message}. Resets at {reset_at.isoformat()}", status_code=status_code)


class NotFoundError(GitHubClientError):
    """Repository or issue does not exist (or is invisible to the token)."""


class TransientNetworkError(GitHubClientError):
    """Timeouts, connection failures and 5xx responses."""


class NoAuthFoundError(IssueCacheError):
    """No token in the environment, the stored config, or the gh CLI."""

    def __init__(self):
        super().__init__(
            "No GitHub authentication found.\n\n"
            "Please set one of the following:\n"
            "1. Environment variable: export GITHUB_TOKEN=your_token\n"
            "2. Stored config: add GITHUB_TOKEN=your_token to the .env file\n"
            "3. GitHub CLI: log in with 'gh auth login'"
        )


class StorageError(IssueCacheError):
    """Write or read failure in the local cache database."""


class ErrorCategory(str, Enum):
    MINOR = "minor"
    CRITICAL = "critical"


@dataclass(frozen=True)
class ErrorHint:
    message: str
    action: str
    can_retry: bool


def classify_error(exc: BaseException) -> ErrorCategory:
    """Critical errors need user action; minor ones can simply be retried later."""
    if isinstance(exc, (AuthenticationError, NoAuthFoundError, StorageError)):
        return ErrorCategory.CRITICAL
    return ErrorCategory.MINOR


def error_hint(exc: BaseException) -> ErrorHint:
    """Return actionable guidance for an error."""
    if isinstance(exc, RateLimitExceeded):
        return ErrorHint(
            message="GitHub API rate limit exceeded",
            action=f"Wait until {exc.reset_at.isoformat()} and sync again",
            can_retry=True,
        )
    if isinstance(exc, (AuthenticationError, NoAuthFoundError)):
        return ErrorHint(
            message="GitHub authentication failed",
            action="Check GITHUB_TOKEN or run 'gh auth login', then sync again",
            can_retry=False,
        )
    if isinstance(exc, NotFoundError):
        return ErrorHint(
            message="Repository not found",
            action="Check the owner/name and that the token can read the repository",
            can_retry=False,
        )
    if isinstance(exc, TransientNetworkError):
        return ErrorHint(
            message="Unable to reach GitHub",
            action="Check your internet connection and try again",
            can_retry=True,
        )
    if isinstance(exc, StorageError):
        return ErrorHint(
            message="Local cache database error",
            action="Check the database path is writable; delete the cache file to rebuild it",
            can_retry=False,
        )
    return ErrorHint(
        message="Unexpected error",
        action="Try again; rerun with LOG_LEVEL=DEBUG for details",
        can_retry=True,
    )
