"""Tests for the sync engine against an in-memory remote source."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from issuecache.core.cache_store import CacheStore
from issuecache.core.errors import (
    AuthenticationError,
    RateLimitExceeded,
    StorageError,
    TransientNetworkError,
)
from issuecache.core.github_client import Page
from issuecache.core.sync_engine import (
    PHASE_COMMENTS,
    PHASE_ISSUES,
    SyncEngine,
    issue_from_dto,
    utcnow,
)
from tests.sync_helpers import FakeSource, FixedClock, ScriptedSource, T0, make_comment, make_issue


REPO = "o/r"
T1 = T0 + timedelta(days=1)
T2 = T0 + timedelta(days=2)


async def snapshot(store: CacheStore, repo: str = REPO):
    """Everything cached for a repository, in a comparable form."""
    rows = []
    for issue in await store.list_issues(repo, sort="number", descending=False):
        comments = await store.list_comments(repo, issue.number)
        rows.append((
            issue.number,
            issue.title,
            issue.body,
            issue.updated_at,
            issue.comment_count,
            tuple(issue.labels),
            tuple(issue.assignees),
            tuple((c.id, c.body, c.updated_at) for c in comments),
        ))
    return rows


# -------------------------------------------------------------------------
# Full passes
# -------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_first_sync_of_repository(store):
    """Two pages, one pull request, comments only fetched where reported."""
    source = FakeSource(
        issues=[make_issue(1, comments=2), make_issue(2), make_issue(3, pull_request=True)],
        comments={1: [make_comment(101, 1), make_comment(102, 1)]},
        page_size=2,
    )
    engine = SyncEngine(store, source, clock=FixedClock(T1))

    result = await engine.sync(REPO)

    assert result.issues_fetched == 2
    assert result.comments_fetched == 2
    assert result.issues_deleted == 0
    assert result.pull_requests_skipped == 1
    assert result.pages_fetched == 2
    assert result.cancelled is False
    assert result.incremental is False

    assert await store.list_issue_numbers(REPO) == [1, 2]
    assert [c.id for c in await store.list_comments(REPO, 1)] == [101, 102]
    assert await store.list_comments(REPO, 2) == []
    # Issue 2 reports zero comments and PR 3 is never expanded
    assert [call["issue_number"] for call in source.comment_calls] == [1]
    assert await store.get_last_sync_time(REPO) == T1


@pytest.mark.asyncio
async def test_issue_fields_are_persisted(store):
    source = FakeSource(issues=[make_issue(7, labels=["bug", "ui"], assignees=["alice"])])
    await SyncEngine(store, source).sync(REPO)

    issue = await store.get_issue(REPO, 7)
    assert issue.title == "Issue 7"
    assert issue.author == "octocat"
    assert issue.labels == ["bug", "ui"]
    assert issue.assignees == ["alice"]
    assert issue.state == "open"


@pytest.mark.asyncio
async def test_progress_events_are_ordered(store):
    source = FakeSource(
        issues=[make_issue(1, comments=2), make_issue(2)],
        comments={1: [make_comment(101, 1), make_comment(102, 1)]},
    )
    events = []

    await SyncEngine(store, source).sync(REPO, progress=lambda *e: events.append(e))

    assert events == [
        (PHASE_COMMENTS, 2, 2),
        (PHASE_ISSUES, 1, 0),
        (PHASE_ISSUES, 2, 0),
    ]


@pytest.mark.asyncio
async def test_sync_rejects_invalid_repository(store):
    with pytest.raises(ValueError):
        await SyncEngine(store, FakeSource()).sync("not-a-repo")


# -------------------------------------------------------------------------
# Pagination
# -------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.parametrize("total,page_size,expected_pages", [(250, 100, 3), (200, 100, 2), (1, 100, 1), (0, 100, 1)])
async def test_pagination_requests_ceil_pages(store, total, page_size, expected_pages):
    source = FakeSource(issues=[make_issue(n) for n in range(1, total + 1)], page_size=page_size)

    result = await SyncEngine(store, source).sync(REPO)

    assert len(source.issue_calls) == expected_pages
    assert result.pages_fetched == expected_pages
    assert result.issues_fetched == total
    assert await store.count_issues(REPO) == total


@pytest.mark.asyncio
async def test_empty_page_with_next_token_is_followed(store):
    source = ScriptedSource([
        Page(items=[make_issue(1)], next_page_token="p2"),
        Page(items=[], next_page_token="p3"),
        Page(items=[make_issue(2)], next_page_token=None),
    ])

    result = await SyncEngine(store, source).sync(REPO)

    assert source.issue_calls == [None, "p2", "p3"]
    assert result.issues_fetched == 2
    assert await store.list_issue_numbers(REPO) == [1, 2]


@pytest.mark.asyncio
async def test_issue_repeated_across_pages_is_processed_once(store):
    source = ScriptedSource([
        Page(items=[make_issue(1), make_issue(2)], next_page_token="p2"),
        Page(items=[make_issue(2), make_issue(3)], next_page_token=None),
    ])

    result = await SyncEngine(store, source).sync(REPO)

    assert result.issues_fetched == 3
    assert await store.list_issue_numbers(REPO) == [1, 2, 3]


# -------------------------------------------------------------------------
# Idempotence and incremental passes
# -------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_second_pass_over_unchanged_remote_changes_nothing(store):
    source = FakeSource(
        issues=[make_issue(1, comments=1, labels=["bug"]), make_issue(2), make_issue(3, comments=2)],
        comments={1: [make_comment(11, 1)], 3: [make_comment(31, 3), make_comment(32, 3)]},
    )
    engine = SyncEngine(store, source, clock=FixedClock(T1, T2))

    await engine.sync(REPO)
    before = await snapshot(store)
    second = await engine.sync(REPO)

    assert await snapshot(store) == before
    assert second.incremental is True
    assert second.issues_deleted == 0


@pytest.mark.asyncio
async def test_full_pass_replayed_gives_identical_cache(store):
    source = FakeSource(
        issues=[make_issue(1, comments=2), make_issue(2, comments=1)],
        comments={1: [make_comment(11, 1), make_comment(12, 1)], 2: [make_comment(21, 2)]},
    )
    await SyncEngine(store, source).sync(REPO)
    before = await snapshot(store)

    # Forget the cursor so the next pass is a full one again
    await store.clear_repository(REPO)
    await SyncEngine(store, source).sync(REPO)
    await SyncEngine(store, source).sync(REPO)

    assert await snapshot(store) == before


@pytest.mark.asyncio
async def test_incremental_pass_uses_last_sync_time_as_cursor(store):
    source = FakeSource(issues=[make_issue(1)])
    engine = SyncEngine(store, source, clock=FixedClock(T1, T2))

    await engine.sync(REPO)
    result = await engine.sync(REPO)

    assert result.incremental is True
    # First pass, then the since-filtered listing, then the membership scan
    assert [call["since"] for call in source.issue_calls] == [None, T1, None]
    assert await store.get_last_sync_time(REPO) == T2


@pytest.mark.asyncio
async def test_incremental_pass_updates_changed_issue_and_keeps_old_comments(store):
    source = FakeSource(
        issues=[make_issue(1, comments=1), make_issue(2)],
        comments={1: [make_comment(11, 1)]},
    )
    engine = SyncEngine(store, source, clock=FixedClock(T1, T2))
    await engine.sync(REPO)

    changed_at = T1 + timedelta(hours=1)
    source.set_issues([make_issue(1, title="Renamed", comments=2, updated_at=changed_at), make_issue(2)])
    source.comments[1] = [make_comment(11, 1), make_comment(12, 1, updated_at=changed_at)]

    result = await engine.sync(REPO)

    assert result.issues_fetched == 1
    assert result.comments_fetched == 1
    assert (await store.get_issue(REPO, 1)).title == "Renamed"
    assert [c.id for c in await store.list_comments(REPO, 1)] == [11, 12]
    assert source.comment_calls[-1]["since"] == T1


@pytest.mark.asyncio
async def test_reopened_issue_gets_full_comment_history(store):
    source = FakeSource(
        issues=[make_issue(1, comments=2), make_issue(2)],
        comments={1: [make_comment(11, 1), make_comment(12, 1)]},
    )
    engine = SyncEngine(store, source, clock=FixedClock(T1, T2, T2 + timedelta(days=1)))
    await engine.sync(REPO)

    # Closed upstream: leaves the open listing and the cache
    source.set_issues([make_issue(2)])
    assert (await engine.sync(REPO)).issues_deleted == 1
    assert await store.count_comments(REPO) == 0

    # Reopened: listed again as updated, its comments all predate the cursor
    source.set_issues([make_issue(1, comments=2, updated_at=T2 + timedelta(hours=1)), make_issue(2)])
    result = await engine.sync(REPO)

    assert result.comments_fetched == 2
    assert [c.id for c in await store.list_comments(REPO, 1)] == [11, 12]
    assert source.comment_calls[-1]["since"] is None


@pytest.mark.asyncio
async def test_issue_new_to_cache_on_incremental_pass_fetches_all_comments(store):
    source = FakeSource(issues=[make_issue(1)])
    engine = SyncEngine(store, source, clock=FixedClock(T1, T2))
    await engine.sync(REPO)

    # Transferred in with an old comment history
    source.set_issues([make_issue(1), make_issue(5, comments=1, updated_at=T1 + timedelta(hours=2))])
    source.comments[5] = [make_comment(51, 5)]
    result = await engine.sync(REPO)

    assert result.issues_fetched == 1
    assert [c.id for c in await store.list_comments(REPO, 5)] == [51]


# -------------------------------------------------------------------------
# Reconciliation
# -------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_issue_missing_from_remote_is_deleted_with_comments(store):
    source = FakeSource(
        issues=[make_issue(1), make_issue(2, comments=2), make_issue(3)],
        comments={2: [make_comment(21, 2), make_comment(22, 2)]},
    )
    engine = SyncEngine(store, source, clock=FixedClock(T1, T2))
    await engine.sync(REPO)
    assert await store.count_comments(REPO) == 2

    source.set_issues([make_issue(1), make_issue(3)])
    result = await engine.sync(REPO)

    assert result.issues_deleted == 1
    assert await store.list_issue_numbers(REPO) == [1, 3]
    assert await store.count_comments(REPO) == 0


@pytest.mark.asyncio
async def test_full_pass_deletes_issues_not_listed(store):
    await store.upsert_issue(REPO, issue_from_dto(make_issue(42)))
    source = FakeSource(issues=[make_issue(1)])

    result = await SyncEngine(store, source).sync(REPO)

    assert result.issues_deleted == 1
    assert await store.list_issue_numbers(REPO) == [1]


@pytest.mark.asyncio
async def test_other_repositories_are_not_reconciled(store):
    await store.upsert_issue("other/repo", issue_from_dto(make_issue(5)))

    await SyncEngine(store, FakeSource(issues=[make_issue(1)])).sync(REPO)

    assert await store.list_issue_numbers("other/repo") == [5]


# -------------------------------------------------------------------------
# Pull requests
# -------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_pull_requests_are_never_stored(store):
    source = FakeSource(issues=[make_issue(1), make_issue(2, pull_request=True, comments=3)])

    result = await SyncEngine(store, source).sync(REPO)

    assert await store.list_issue_numbers(REPO) == [1]
    assert result.pull_requests_skipped == 1
    assert source.comment_calls == []


@pytest.mark.asyncio
async def test_pull_request_numbers_are_not_reconciled(store):
    # Cached before it showed up as a pull request in the listing
    await store.upsert_issue(REPO, issue_from_dto(make_issue(4)))
    source = FakeSource(issues=[make_issue(1), make_issue(4, pull_request=True)])

    result = await SyncEngine(store, source).sync(REPO)

    assert result.issues_deleted == 0
    assert await store.list_issue_numbers(REPO) == [1, 4]


# -------------------------------------------------------------------------
# Cancellation
# -------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_cancel_after_five_of_ten_issues(store):
    source = FakeSource(
        issues=[make_issue(n, comments=1) for n in range(1, 11)],
        comments={n: [make_comment(n * 10, n)] for n in range(1, 11)},
    )
    cancel_event = asyncio.Event()

    def on_progress(phase, current, total):
        if phase == PHASE_ISSUES and current == 5:
            cancel_event.set()

    result = await SyncEngine(store, source).sync(REPO, progress=on_progress, cancel_event=cancel_event)

    assert result.cancelled is True
    assert result.issues_fetched == 5
    assert result.comments_fetched == 5
    assert await store.list_issue_numbers(REPO) == [1, 2, 3, 4, 5]
    assert await store.count_comments(REPO) == 5
    assert await store.get_last_sync_time(REPO) is None


@pytest.mark.asyncio
async def test_cancelled_pass_leaves_metadata_and_stale_issues(store):
    await store.upsert_issue(REPO, issue_from_dto(make_issue(99)))
    await store.set_last_sync_time(REPO, T1)
    changed_at = T1 + timedelta(hours=1)
    source = FakeSource(issues=[make_issue(n, updated_at=changed_at) for n in range(1, 11)])
    cancel_event = asyncio.Event()

    def on_progress(phase, current, total):
        if current == 3:
            cancel_event.set()

    result = await SyncEngine(store, source, clock=FixedClock(T2)).sync(
        REPO, progress=on_progress, cancel_event=cancel_event
    )

    assert result.cancelled is True
    assert result.issues_deleted == 0
    assert await store.list_issue_numbers(REPO) == [1, 2, 3, 99]
    assert await store.get_last_sync_time(REPO) == T1


@pytest.mark.asyncio
async def test_cancel_before_first_page(store):
    source = FakeSource(issues=[make_issue(1)])
    cancel_event = asyncio.Event()
    cancel_event.set()

    result = await SyncEngine(store, source).sync(REPO, cancel_event=cancel_event)

    assert result.cancelled is True
    assert result.pages_fetched == 0
    assert source.issue_calls == []
    assert await store.count_issues(REPO) == 0


# -------------------------------------------------------------------------
# Sync metadata
# -------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_last_sync_time_is_captured_at_start(store):
    clock = FixedClock(T1, T2)
    # Remote timestamps later than the clock must not leak into the cursor
    late = T2 + timedelta(days=30)
    source = FakeSource(issues=[make_issue(1, updated_at=late)])

    result = await SyncEngine(store, source, clock=clock).sync(REPO)

    assert clock.calls == 1
    assert result.started_at == T1
    assert await store.get_last_sync_time(REPO) == T1


def test_utcnow_is_naive_utc():
    now = utcnow()
    assert now.tzinfo is None
    assert abs(datetime.now(timezone.utc).replace(tzinfo=None) - now) < timedelta(seconds=5)


# -------------------------------------------------------------------------
# Errors
# -------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_network_error_mid_pass_reports_partial_counts(store):
    source = FakeSource(issues=[make_issue(n) for n in range(1, 5)], page_size=2)
    source.issue_errors[1] = TransientNetworkError("connection reset")

    with pytest.raises(TransientNetworkError) as exc_info:
        await SyncEngine(store, source).sync(REPO)

    partial = exc_info.value.partial_result
    assert partial.issues_fetched == 2
    assert partial.cancelled is False
    assert await store.list_issue_numbers(REPO) == [1, 2]
    assert await store.get_last_sync_time(REPO) is None


@pytest.mark.asyncio
async def test_rate_limit_on_comments_aborts_without_reconciling(store):
    await store.upsert_issue(REPO, issue_from_dto(make_issue(99)))
    source = FakeSource(
        issues=[make_issue(1, comments=1), make_issue(2, comments=1)],
        comments={1: [make_comment(11, 1)], 2: [make_comment(21, 2)]},
    )
    source.comment_errors[2] = RateLimitExceeded(datetime(2024, 1, 2, tzinfo=timezone.utc))

    with pytest.raises(RateLimitExceeded) as exc_info:
        await SyncEngine(store, source).sync(REPO)

    assert exc_info.value.partial_result.issues_fetched == 1
    assert exc_info.value.partial_result.comments_fetched == 1
    # Issue 2's row was written before its comments failed; it is not counted
    assert await store.list_issue_numbers(REPO) == [1, 2, 99]
    assert await store.get_last_sync_time(REPO) is None


@pytest.mark.asyncio
async def test_authentication_error_propagates_unchanged(store):
    source = FakeSource(issues=[make_issue(1)])
    source.issue_errors[0] = AuthenticationError("Bad credentials", status_code=401)

    with pytest.raises(AuthenticationError) as exc_info:
        await SyncEngine(store, source).sync(REPO)

    assert exc_info.value.status_code == 401
    assert exc_info.value.partial_result.issues_fetched == 0


@pytest.mark.asyncio
async def test_failure_in_membership_scan_keeps_cursor(store):
    source = FakeSource(issues=[make_issue(1), make_issue(2)])
    engine = SyncEngine(store, source, clock=FixedClock(T1, T2))
    await engine.sync(REPO)

    source.set_issues([make_issue(1)])
    # Calls: 0 = first pass, 1 = since listing, 2 = membership scan
    source.issue_errors[2] = TransientNetworkError("timeout")

    with pytest.raises(TransientNetworkError):
        await engine.sync(REPO)

    assert await store.list_issue_numbers(REPO) == [1, 2]
    assert await store.get_last_sync_time(REPO) == T1


class FailingStore(CacheStore):
    def __init__(self, session_maker, fail_on: int):
        super().__init__(session_maker)
        self.fail_on = fail_on

    async def upsert_issue(self, repo, issue):
        if issue.number == self.fail_on:
            raise StorageError("disk I/O error")
        await super().upsert_issue(repo, issue)


@pytest.mark.asyncio
async def test_storage_error_propagates_with_partial_result(session_maker):
    store = FailingStore(session_maker, fail_on=2)
    source = FakeSource(issues=[make_issue(1), make_issue(2), make_issue(3)])

    with pytest.raises(StorageError) as exc_info:
        await SyncEngine(store, source).sync(REPO)

    assert exc_info.value.partial_result.issues_fetched == 1
    assert await store.list_issue_numbers(REPO) == [1]
    assert await store.get_last_sync_time(REPO) is None
