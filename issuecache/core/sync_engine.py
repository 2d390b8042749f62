"""
Sync engine: mirrors a repository's open issues and comments into the cache.

A pass runs as one sequential task:

1. read the last successful sync time (absent means a full pass),
2. page through open issues, upserting each non-pull-request issue and then
   its comments,
3. reconcile the cache against the set of issue numbers seen,
4. record the time captured at the start of the pass.

Cancellation (an ``asyncio.Event``) is checked before every page request
and before every issue. A cancelled or failed pass never reconciles and
never moves the last sync time, so the next run resumes from the last
complete pass.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import AbstractSet, Any, Callable, Dict, List, Optional, Protocol, Set, Tuple

from issuecache.config import validate_repository
from issuecache.core.cache_store import CacheStore
from issuecache.core.errors import IssueCacheError
from issuecache.core.github_client import CommentDTO, IssueDTO, Page
from issuecache.core.logging_utils import sanitize_for_logging
from issuecache.core.reconciler import ChangeReconciler
from issuecache.models import Comment, Issue


logger = logging.getLogger(__name__)


PHASE_ISSUES = "issues"
PHASE_COMMENTS = "comments"

# progress(phase, current, total); total is 0 when unknown
ProgressCallback = Callable[[str, int, int], None]


class RemoteSource(Protocol):
    """What the engine needs from the remote issue tracker."""

    async def list_issues(
        self,
        repo: str,
        since: Optional[datetime] = None,
        page_token: Optional[str] = None,
    ) -> Page[IssueDTO]: ...

    async def list_comments(
        self,
        repo: str,
        issue_number: int,
        since: Optional[datetime] = None,
        page_token: Optional[str] = None,
    ) -> Page[CommentDTO]: ...


def utcnow() -> datetime:
    """Current time as naive UTC, the form timestamps are stored in."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


@dataclass
class SyncResult:
    """
    Outcome of one pass, also filled in when cancelled or failed.

    ``issues_fetched`` counts fully processed issues (row and comments). A
    failure while fetching an issue's comments leaves that issue's row stored
    but uncounted.
    """
    repository: str
    started_at: datetime
    incremental: bool = False
    issues_fetched: int = 0
    comments_fetched: int = 0
    issues_deleted: int = 0
    pull_requests_skipped: int = 0
    pages_fetched: int = 0
    cancelled: bool = False
    duration: timedelta = field(default_factory=timedelta)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "repository": self.repository,
            "started_at": self.started_at.isoformat(),
            "incremental": self.incremental,
            "issues_fetched": self.issues_fetched,
            "comments_fetched": self.comments_fetched,
            "issues_deleted": self.issues_deleted,
            "pull_requests_skipped": self.pull_requests_skipped,
            "pages_fetched": self.pages_fetched,
            "cancelled": self.cancelled,
            "duration_seconds": round(self.duration.total_seconds(), 3),
        }


class SyncCancelled(Exception):
    """Internal signal used to unwind the loops once cancellation is observed."""


def issue_from_dto(dto: IssueDTO) -> Issue:
    return Issue(
        number=dto.number,
        title=dto.title,
        body=dto.body,
        state=dto.state,
        author=dto.author,
        created_at=dto.created_at,
        updated_at=dto.updated_at,
        closed_at=dto.closed_at,
        comment_count=dto.comment_count,
        labels=list(dto.labels),
        assignees=list(dto.assignees),
    )


def comment_from_dto(dto: CommentDTO) -> Comment:
    return Comment(
        id=dto.id,
        issue_number=dto.issue_number,
        body=dto.body,
        author=dto.author,
        created_at=dto.created_at,
        updated_at=dto.updated_at,
    )


class SyncEngine:
    """Drives synchronization passes for one repository at a time."""

    def __init__(
        self,
        store: CacheStore,
        source: RemoteSource,
        *,
        reconciler: Optional[ChangeReconciler] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        """
        Args:
            store: Cache store the pass writes into
            source: Remote source adapter (GitHubClient in production)
            reconciler: Defaults to a ChangeReconciler over ``store``
            clock: Returns naive-UTC now; the value taken at the start of a
                pass becomes its last sync time
        """
        self.store = store
        self.source = source
        self.reconciler = reconciler or ChangeReconciler(store)
        self.clock = clock

    async def sync(
        self,
        repository: str,
        progress: Optional[ProgressCallback] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> SyncResult:
        """
        Run one synchronization pass.

        Returns:
            SyncResult; ``cancelled`` is True when the pass stopped early.

        Raises:
            ValueError: If the repository is not in owner/name form.
            GitHubClientError: Remote failure (auth, rate limit, network...).
            StorageError: Cache database failure.

            Both carry ``partial_result`` with the counts persisted so far.
        """
        repo = validate_repository(repository)
        last_sync = await self.store.get_last_sync_time(repo)

        started_at = self.clock()
        started_monotonic = time.monotonic()
        result = SyncResult(repository=repo, started_at=started_at, incremental=last_sync is not None)

        if last_sync is None:
            logger.info(f"Starting full sync of {repo}")
        else:
            logger.info(f"Starting incremental sync of {repo} (since {last_sync.isoformat()}Z)")

        try:
            cached = set(await self.store.list_issue_numbers(repo)) if result.incremental else set()
            fetched, pull_requests = await self._sync_issues(repo, last_sync, cached, result, progress, cancel_event)

            if result.incremental:
                # The since-filtered listing only holds recently updated issues
                open_numbers, scanned_pull_requests = await self._scan_open_issue_numbers(repo, cancel_event)
                baseline = open_numbers | fetched
                pull_requests |= scanned_pull_requests
            else:
                baseline = fetched

            result.issues_deleted = await self.reconciler.reconcile(repo, baseline, exclude=pull_requests)
            await self.store.set_last_sync_time(repo, started_at)

        except SyncCancelled:
            result.cancelled = True
            logger.info(
                f"Sync of {repo} cancelled after {result.issues_fetched} issue(s) and "
                f"{result.comments_fetched} comment(s); last sync time left unchanged"
            )
        except IssueCacheError as e:
            e.partial_result = result
            logger.error(
                f"Sync of {repo} failed after {result.issues_fetched} issue(s) and "
                f"{result.comments_fetched} comment(s): {type(e).__name__}: {e}"
            )
            raise
        finally:
            result.duration = timedelta(seconds=time.monotonic() - started_monotonic)

        if not result.cancelled:
            logger.info(
                f"Sync of {repo} completed: {result.issues_fetched} issue(s), "
                f"{result.comments_fetched} comment(s), {result.issues_deleted} deleted, "
                f"{result.pull_requests_skipped} pull request(s) skipped "
                f"in {result.duration.total_seconds():.1f}s"
            )
        return result

    # --- Passes ---

    async def _sync_issues(
        self,
        repo: str,
        since: Optional[datetime],
        cached: AbstractSet[int],
        result: SyncResult,
        progress: Optional[ProgressCallback],
        cancel_event: Optional[asyncio.Event],
    ) -> Tuple[Set[int], Set[int]]:
        """
        Page through issues, persisting each with its comments.

        ``cached`` holds the issue numbers in the cache before the pass; an
        issue outside it gets its full comment history even on an
        incremental pass. Returns (fetched, pull requests).
        """
        fetched: Set[int] = set()
        pull_requests: Set[int] = set()
        page_token: Optional[str] = None

        while True:
            self._check_cancelled(cancel_event)
            page = await self.source.list_issues(repo, since=since, page_token=page_token)
            result.pages_fetched += 1
            logger.debug(f"{repo}: issue page {result.pages_fetched} with {len(page.items)} item(s)")

            for item in page.items:
                self._check_cancelled(cancel_event)

                if item.is_pull_request:
                    pull_requests.add(item.number)
                    result.pull_requests_skipped += 1
                    continue
                if item.number in fetched:
                    # Listing shifted between pages; already persisted this pass
                    continue

                comments_since = since if item.number in cached else None
                await self._sync_issue(repo, item, comments_since, result, progress)
                fetched.add(item.number)
                result.issues_fetched += 1
                self._report(progress, PHASE_ISSUES, result.issues_fetched, 0)

            # Only the pagination metadata ends the listing; empty pages may still have a next page
            if page.next_page_token is None:
                break
            page_token = page.next_page_token

        return fetched, pull_requests

    async def _sync_issue(
        self,
        repo: str,
        item: IssueDTO,
        since: Optional[datetime],
        result: SyncResult,
        progress: Optional[ProgressCallback],
    ) -> None:
        """
        Upsert one issue, then its comments. The issue row always precedes its comments.

        ``since`` is None when the issue needs its whole comment history
        (full pass, or an issue new to the cache).
        """
        logger.debug(f"{repo}#{item.number}: {sanitize_for_logging(item.title, 80)}")
        await self.store.upsert_issue(repo, issue_from_dto(item))

        if item.comment_count == 0:
            await self.store.replace_comments(repo, item.number, [])
            return

        comments = await self._fetch_comments(repo, item, since, progress)
        if since is None:
            written = await self.store.replace_comments(repo, item.number, comments)
        else:
            # Incremental listings only hold comments changed since the cursor
            written = await self.store.upsert_comments(repo, item.number, comments)
        result.comments_fetched += written

    async def _fetch_comments(
        self,
        repo: str,
        item: IssueDTO,
        since: Optional[datetime],
        progress: Optional[ProgressCallback],
    ) -> List[Comment]:
        comments: List[Comment] = []
        page_token: Optional[str] = None
        while True:
            page = await self.source.list_comments(repo, item.number, since=since, page_token=page_token)
            comments.extend(comment_from_dto(dto) for dto in page.items)
            self._report(progress, PHASE_COMMENTS, len(comments), item.comment_count)
            if page.next_page_token is None:
                return comments
            page_token = page.next_page_token

    async def _scan_open_issue_numbers(
        self,
        repo: str,
        cancel_event: Optional[asyncio.Event],
    ) -> Tuple[Set[int], Set[int]]:
        """List every open issue number (no comments). Returns (issues, pull requests)."""
        numbers: Set[int] = set()
        pull_requests: Set[int] = set()
        page_token: Optional[str] = None
        pages = 0

        while True:
            self._check_cancelled(cancel_event)
            page = await self.source.list_issues(repo, page_token=page_token)
            pages += 1
            for item in page.items:
                if item.is_pull_request:
                    pull_requests.add(item.number)
                else:
                    numbers.add(item.number)
            if page.next_page_token is None:
                break
            page_token = page.next_page_token

        logger.debug(f"{repo}: {len(numbers)} open issue(s) across {pages} page(s)")
        return numbers, pull_requests

    # --- Helpers ---

    @staticmethod
    def _check_cancelled(cancel_event: Optional[asyncio.Event]) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise SyncCancelled()

    @staticmethod
    def _report(progress: Optional[ProgressCallback], phase: str, current: int, total: int) -> None:
        if progress is not None:
            progress(phase, current, total)
