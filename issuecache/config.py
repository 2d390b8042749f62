import os
import re
from typing import List

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


REPOSITORY_PATTERN = re.compile(r"^[A-Za-z0-9_.-]+/[A-Za-z0-9_.-]+$")


class Settings(BaseSettings):
    """Application settings loaded from environment variables and an optional .env file."""

    model_config = SettingsConfigDict(
        env_file=os.environ.get("ISSUECACHE_ENV_FILE", ".env"),
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Server Configuration
    host: str = "127.0.0.1"
    port: int = 8000

    # Database Configuration (SQLite file in the working directory by default)
    database_url: str = "sqlite+aiosqlite:///.ghissues.db"

    # GitHub
    # GITHUB_TOKEN in the environment wins over the same key in the .env file
    github_token: str = ""
    github_api_url: str = "https://api.github.com"
    # Legacy single repository; REPOSITORIES (a JSON list) seeds the configured list
    repository: str = ""
    repositories: List[str] = []

    # Pagination: GitHub caps per_page at 100
    page_size: int = Field(default=100, ge=1, le=100)

    # Per-request timeouts, independent of sync cancellation
    request_timeout_seconds: float = 30.0
    connect_timeout_seconds: float = 10.0

    # Delay between GitHub API requests in milliseconds (0 = no pacing)
    github_api_delay_ms: int = 0

    # Logging
    log_level: str = "INFO"

    # Application Settings
    app_title: str = "Issue Cache"
    app_description: str = "Offline cache of GitHub issues and comments"

    @field_validator("repositories")
    @classmethod
    def _validate_repositories(cls, value: List[str]) -> List[str]:
        return [validate_repository(repo) for repo in value]

    def configured_repositories(self) -> List[str]:
        """Repositories to seed the configured list with, legacy field last."""
        repos = list(self.repositories)
        if self.repository and self.repository.strip() not in repos:
            repos.append(validate_repository(self.repository))
        return repos


def validate_repository(repository: str) -> str:
    """
    Validate an ``owner/name`` repository identifier.

    Returns:
        The repository string, stripped of surrounding whitespace.

    Raises:
        ValueError: If the identifier is not in owner/name form.
    """
    repo = (repository or "").strip()
    if not REPOSITORY_PATTERN.match(repo):
        raise ValueError(f"Invalid repository format: {repository!r} (expected owner/name)")
    return repo
