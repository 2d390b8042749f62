"""
Local cache of issues, comments and sync metadata.

Every write runs in its own transaction and is idempotent: replaying the
same input leaves the same rows behind. The store knows nothing about the
remote API; callers hand it ``Issue``/``Comment`` model instances.
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, Iterable, List, Optional

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from issuecache.core.errors import StorageError
from issuecache.core.logging_utils import sanitize_exception_for_logging
from issuecache.models import Comment, ConfiguredRepository, Issue, SyncMetadata


logger = logging.getLogger(__name__)


ISSUE_SORT_COLUMNS = {
    "updated": Issue.updated_at,
    "created": Issue.created_at,
    "number": Issue.number,
    "comments": Issue.comment_count,
}


def _copy_issue(repo: str, issue: Issue) -> Issue:
    return Issue(
        repo=repo,
        number=issue.number,
        title=issue.title,
        body=issue.body,
        state=issue.state,
        author=issue.author,
        created_at=issue.created_at,
        updated_at=issue.updated_at,
        closed_at=issue.closed_at,
        comment_count=issue.comment_count,
        labels=list(issue.labels or []),
        assignees=list(issue.assignees or []),
    )


def _copy_comment(repo: str, issue_number: int, comment: Comment) -> Comment:
    return Comment(
        repo=repo,
        id=comment.id,
        issue_number=issue_number,
        body=comment.body,
        author=comment.author,
        created_at=comment.created_at,
        updated_at=comment.updated_at,
    )


class CacheStore:
    """Upsert, query and delete primitives over the cache database."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self._session_maker = session_maker

    @asynccontextmanager
    async def _transaction(self, operation: str) -> AsyncIterator[AsyncSession]:
        try:
            async with self._session_maker() as session:
                async with session.begin():
                    yield session
        except SQLAlchemyError as e:
            logger.error(f"Cache store failed to {operation}: {sanitize_exception_for_logging(e)}")
            raise StorageError(f"Failed to {operation}: {e}") from e

    # --- Writes ---

    async def upsert_issue(self, repo: str, issue: Issue) -> None:
        """Insert or overwrite an issue by (repo, number), replacing labels and assignees."""
        async with self._transaction(f"store issue {issue.number}") as session:
            await session.merge(_copy_issue(repo, issue))

    async def replace_comments(self, repo: str, issue_number: int, comments: Iterable[Comment]) -> int:
        """
        Replace all comments of an issue.

        Returns:
            Number of comment rows written.
        """
        async with self._transaction(f"replace comments of issue {issue_number}") as session:
            await session.execute(
                delete(Comment).where(
                    Comment.repo == repo,
                    Comment.issue_number == issue_number,
                )
            )
            written = 0
            for comment in comments:
                await session.merge(_copy_comment(repo, issue_number, comment))
                written += 1
            return written

    async def upsert_comments(self, repo: str, issue_number: int, comments: Iterable[Comment]) -> int:
        """Insert or overwrite comments by (repo, id), keeping the issue's other comments."""
        async with self._transaction(f"store comments of issue {issue_number}") as session:
            written = 0
            for comment in comments:
                await session.merge(_copy_comment(repo, issue_number, comment))
                written += 1
            return written

    async def delete_issue(self, repo: str, number: int) -> bool:
        """
        Delete an issue and its comments.

        Returns:
            True if an issue row was removed.
        """
        async with self._transaction(f"delete issue {number}") as session:
            # Explicit so the cascade does not depend on PRAGMA foreign_keys
            await session.execute(
                delete(Comment).where(Comment.repo == repo, Comment.issue_number == number)
            )
            result = await session.execute(
                delete(Issue).where(Issue.repo == repo, Issue.number == number)
            )
            return result.rowcount > 0

    async def set_last_sync_time(self, repo: str, timestamp: datetime) -> None:
        async with self._transaction("update last sync time") as session:
            await session.merge(SyncMetadata(repo=repo, last_sync_at=timestamp))

    async def clear_repository(self, repo: str) -> None:
        """Remove every cached row for a repository, including its sync metadata."""
        async with self._transaction(f"clear cache for {repo}") as session:
            await session.execute(delete(Comment).where(Comment.repo == repo))
            await session.execute(delete(Issue).where(Issue.repo == repo))
            await session.execute(delete(SyncMetadata).where(SyncMetadata.repo == repo))

    # --- Reads ---

    async def get_last_sync_time(self, repo: str) -> Optional[datetime]:
        async with self._transaction("read last sync time") as session:
            result = await session.execute(
                select(SyncMetadata.last_sync_at).where(SyncMetadata.repo == repo)
            )
            return result.scalar_one_or_none()

    async def list_issue_numbers(self, repo: str) -> List[int]:
        async with self._transaction("list issue numbers") as session:
            result = await session.execute(
                select(Issue.number).where(Issue.repo == repo).order_by(Issue.number)
            )
            return list(result.scalars().all())

    async def list_issues(self, repo: str, sort: str = "updated", descending: bool = True) -> List[Issue]:
        """List cached issues; most recently updated first by default."""
        column = ISSUE_SORT_COLUMNS.get(sort)
        if column is None:
            raise ValueError(f"Unknown sort field: {sort!r}")
        order = column.desc() if descending else column.asc()
        async with self._transaction("list issues") as session:
            result = await session.execute(
                select(Issue).where(Issue.repo == repo).order_by(order, Issue.number)
            )
            return list(result.scalars().all())

    async def get_issue(self, repo: str, number: int) -> Optional[Issue]:
        async with self._transaction(f"read issue {number}") as session:
            result = await session.execute(
                select(Issue).where(Issue.repo == repo, Issue.number == number)
            )
            return result.scalar_one_or_none()

    async def list_comments(self, repo: str, issue_number: int) -> List[Comment]:
        """Comments of an issue in chronological order."""
        async with self._transaction(f"list comments of issue {issue_number}") as session:
            result = await session.execute(
                select(Comment)
                .where(Comment.repo == repo, Comment.issue_number == issue_number)
                .order_by(Comment.created_at, Comment.id)
            )
            return list(result.scalars().all())

    async def count_issues(self, repo: str) -> int:
        async with self._transaction("count issues") as session:
            result = await session.execute(
                select(func.count()).select_from(Issue).where(Issue.repo == repo)
            )
            return result.scalar_one()

    async def count_comments(self, repo: str) -> int:
        async with self._transaction("count comments") as session:
            result = await session.execute(
                select(func.count()).select_from(Comment).where(Comment.repo == repo)
            )
            return result.scalar_one()

    # --- Configured repositories ---

    async def list_repositories(self) -> List[ConfiguredRepository]:
        """Configured repositories in the order they were added."""
        async with self._transaction("list repositories") as session:
            result = await session.execute(select(ConfiguredRepository).order_by(ConfiguredRepository.id))
            return list(result.scalars().all())

    async def get_default_repository(self) -> Optional[str]:
        """The default repository, falling back to the first one added."""
        repos = await self.list_repositories()
        for repo in repos:
            if repo.is_default:
                return repo.name
        return repos[0].name if repos else None

    async def add_repository(self, name: str) -> bool:
        """
        Add a repository. The first one added becomes the default.

        Returns:
            False if it was already configured.
        """
        async with self._transaction(f"add repository {name}") as session:
            existing = await session.execute(
                select(ConfiguredRepository.name).where(ConfiguredRepository.name == name)
            )
            if existing.scalar_one_or_none() is not None:
                return False
            has_default = await session.execute(
                select(func.count()).select_from(ConfiguredRepository).where(ConfiguredRepository.is_default)
            )
            session.add(ConfiguredRepository(name=name, is_default=has_default.scalar_one() == 0))
            return True

    async def seed_repositories(self, names: Iterable[str]) -> int:
        """Add the repositories not configured yet. Returns how many were added."""
        added = 0
        for name in names:
            if await self.add_repository(name):
                added += 1
        return added

    async def remove_repository(self, name: str) -> bool:
        """
        Remove a repository from the configured list; its cached rows stay.

        When the default is removed, the earliest remaining one takes over.

        Returns:
            False if it was not configured.
        """
        async with self._transaction(f"remove repository {name}") as session:
            result = await session.execute(
                select(ConfiguredRepository).where(ConfiguredRepository.name == name)
            )
            repo = result.scalar_one_or_none()
            if repo is None:
                return False
            was_default = repo.is_default
            await session.delete(repo)
            await session.flush()
            if was_default:
                result = await session.execute(
                    select(ConfiguredRepository).order_by(ConfiguredRepository.id).limit(1)
                )
                successor = result.scalar_one_or_none()
                if successor is not None:
                    successor.is_default = True
            return True

    async def set_default_repository(self, name: str) -> bool:
        """Returns False if the repository is not configured."""
        async with self._transaction(f"set default repository {name}") as session:
            result = await session.execute(
                select(ConfiguredRepository.id).where(ConfiguredRepository.name == name)
            )
            repo_id = result.scalar_one_or_none()
            if repo_id is None:
                return False
            await session.execute(update(ConfiguredRepository).values(is_default=False))
            await session.execute(
                update(ConfiguredRepository).where(ConfiguredRepository.id == repo_id).values(is_default=True)
            )
            return True
