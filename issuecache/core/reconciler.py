"""Removal of cached issues that dropped out of the open-issues listing."""

import logging
from typing import AbstractSet, Iterable, List

from issuecache.core.cache_store import CacheStore


logger = logging.getLogger(__name__)


def stale_issue_numbers(
    local: Iterable[int],
    fetched: AbstractSet[int],
    exclude: AbstractSet[int] = frozenset(),
) -> List[int]:
    """
    Local issue numbers absent from the fetched set.

    Numbers in ``exclude`` (pull requests seen during the pass) are never
    reported as stale.
    """
    return sorted(n for n in set(local) if n not in fetched and n not in exclude)


class ChangeReconciler:
    """
    Deletes cached issues (and their comments) missing from a complete pass.

    This cannot tell a closed issue from a deleted one or from one that turned
    into a pull request; all of them simply leave the cache.
    """

    def __init__(self, store: CacheStore):
        self.store = store

    async def reconcile(
        self,
        repo: str,
        fetched: AbstractSet[int],
        exclude: AbstractSet[int] = frozenset(),
    ) -> int:
        """
        Delete stale issues for a repository.

        Must only be called with the fetched-set of a complete, uninterrupted pass.

        Returns:
            Number of issues deleted.
        """
        local = await self.store.list_issue_numbers(repo)
        stale = stale_issue_numbers(local, fetched, exclude)
        if not stale:
            logger.debug(f"Reconcile {repo}: nothing to delete ({len(local)} cached)")
            return 0

        deleted = 0
        for number in stale:
            if await self.store.delete_issue(repo, number):
                deleted += 1

        logger.info(f"Reconcile {repo}: removed {deleted} issue(s) no longer open upstream")
        return deleted
