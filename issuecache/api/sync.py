"""API endpoints for triggering, inspecting and cancelling sync passes."""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Optional
from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel

from issuecache.api.deps import get_store, repository_path
from issuecache.core.cache_store import CacheStore
from issuecache.core.errors import IssueCacheError, classify_error, error_hint
from issuecache.core.logging_utils import sanitize_exception_for_logging
from issuecache.core.sync_engine import RemoteSource, SyncEngine

logger = logging.getLogger(__name__)


router = APIRouter(prefix="/api/repos/{owner}/{name}/sync", tags=["sync"])


@dataclass
class RepoSyncState:
    """In-memory status of the current/last pass for one repository."""
    task: Optional[asyncio.Task] = None
    cancel_event: Optional[asyncio.Event] = None
    progress: Dict[str, Any] = field(default_factory=dict)
    last_result: Optional[Dict[str, Any]] = None
    last_error: Optional[Dict[str, Any]] = None

    @property
    def running(self) -> bool:
        return self.task is not None and not self.task.done()


class SyncTaskManager:
    """
    Runs sync passes as background tasks, one at a time per process.

    ``source_factory`` is a coroutine function building a fresh remote
    source per pass; the source is closed when the pass ends if it has a
    ``close`` coroutine.
    """

    def __init__(self, store: CacheStore, source_factory: Callable[[], Awaitable[RemoteSource]]):
        self.store = store
        self.source_factory = source_factory
        self._states: Dict[str, RepoSyncState] = {}

    def state(self, repo: str) -> RepoSyncState:
        return self._states.setdefault(repo, RepoSyncState())

    def running_repository(self) -> Optional[str]:
        """The repository whose pass is running, if any."""
        for repo, state in self._states.items():
            if state.running:
                return repo
        return None

    def start(self, repo: str) -> RepoSyncState:
        # One pass per process: the cache database has a single writer
        running = self.running_repository()
        if running is not None:
            raise RuntimeError(f"A sync of {running} is already running")

        state = self.state(repo)
        state.cancel_event = asyncio.Event()
        state.progress = {}
        state.task = asyncio.create_task(self._run(repo, state))
        return state

    def cancel(self, repo: str) -> bool:
        """Request cancellation. Returns False if nothing is running."""
        state = self.state(repo)
        if not state.running or state.cancel_event is None:
            return False
        if not state.cancel_event.is_set():
            logger.info(f"Cancellation requested for sync of {repo}")
            state.cancel_event.set()
        return True

    async def shutdown(self, timeout: float = 30.0) -> None:
        """Cancel running passes and wait for them to stop at their next checkpoint."""
        tasks = []
        for repo, state in self._states.items():
            if state.running:
                self.cancel(repo)
                tasks.append(state.task)
        if not tasks:
            return

        logger.info(f"Waiting for {len(tasks)} sync task(s) to stop (timeout: {timeout}s)...")
        try:
            await asyncio.wait_for(asyncio.gather(*tasks, return_exceptions=True), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Sync tasks still running after {timeout}s; cancelling them")
            for task in tasks:
                task.cancel()

    async def _run(self, repo: str, state: RepoSyncState) -> None:
        def on_progress(phase: str, current: int, total: int) -> None:
            state.progress = {"phase": phase, "current": current, "total": total}

        state.last_error = None
        source = None
        try:
            source = await self.source_factory()
            engine = SyncEngine(self.store, source)
            result = await engine.sync(repo, progress=on_progress, cancel_event=state.cancel_event)
            state.last_result = result.to_dict()
        except IssueCacheError as e:
            hint = error_hint(e)
            state.last_error = {
                "type": type(e).__name__,
                "category": classify_error(e).value,
                "message": str(e),
                "hint": hint.action,
                "can_retry": hint.can_retry,
                "status_code": getattr(e, "status_code", None),
            }
            if e.partial_result is not None:
                state.last_result = e.partial_result.to_dict()
        except Exception as e:
            logger.error(f"Unexpected error in sync of {repo}: {sanitize_exception_for_logging(e)}", exc_info=True)
            state.last_error = {
                "type": type(e).__name__,
                "category": classify_error(e).value,
                "message": "Unexpected error during sync",
                "hint": error_hint(e).action,
                "can_retry": True,
                "status_code": None,
            }
        finally:
            close = getattr(source, "close", None)
            if close is not None:
                await close()


def get_sync_manager(request: Request) -> SyncTaskManager:
    return request.app.state.sync_manager


class SyncStatusResponse(BaseModel):
    """Sync status of a repository."""
    repository: str
    running: bool
    last_sync_at: Optional[datetime]
    cached_issues: int
    cached_comments: int
    progress: Dict[str, Any]
    last_result: Optional[Dict[str, Any]] = None
    last_error: Optional[Dict[str, Any]] = None


@router.get("", response_model=SyncStatusResponse)
async def get_sync_status(
    repo: str = Depends(repository_path),
    store: CacheStore = Depends(get_store),
    manager: SyncTaskManager = Depends(get_sync_manager),
):
    """Last sync time, cache counts and the state of the current/last pass."""
    state = manager.state(repo)
    return SyncStatusResponse(
        repository=repo,
        running=state.running,
        last_sync_at=await store.get_last_sync_time(repo),
        cached_issues=await store.count_issues(repo),
        cached_comments=await store.count_comments(repo),
        progress=state.progress,
        last_result=state.last_result,
        last_error=state.last_error,
    )


@router.post("", status_code=202)
async def start_sync(
    repo: str = Depends(repository_path),
    manager: SyncTaskManager = Depends(get_sync_manager),
):
    """Start a background sync pass."""
    try:
        manager.start(repo)
    except RuntimeError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return {"repository": repo, "status": "started"}


@router.post("/cancel", status_code=202)
async def cancel_sync(
    repo: str = Depends(repository_path),
    manager: SyncTaskManager = Depends(get_sync_manager),
):
    """Ask the running pass to stop at its next checkpoint."""
    if not manager.cancel(repo):
        raise HTTPException(status_code=409, detail=f"No sync of {repo} is running")
    return {"repository": repo, "status": "cancelling"}
