from contextlib import asynccontextmanager
from datetime import datetime, timezone
import logging
from typing import Awaitable, Callable, Optional
from fastapi import FastAPI, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession

from issuecache import __version__
from issuecache.api import issues, repos, sync
from issuecache.config import Settings
from issuecache.core.auth import resolve_token
from issuecache.core.cache_store import CacheStore
from issuecache.core.errors import (
    AuthenticationError,
    GitHubClientError,
    IssueCacheError,
    NoAuthFoundError,
    error_hint,
)
from issuecache.core.github_client import GitHubClient
from issuecache.core.logging_utils import configure_logging, sanitize_exception_for_logging
from issuecache.core.sync_engine import RemoteSource
from issuecache.database import create_engine, create_session_maker, get_db, init_db


logger = logging.getLogger(__name__)


def github_source_factory(settings: Settings) -> Callable[[], Awaitable[RemoteSource]]:
    """Build a GitHub client per sync pass, resolving the token each time."""
    async def factory() -> RemoteSource:
        token, _ = await resolve_token(settings)
        return GitHubClient.from_settings(settings, token)
    return factory


def create_app(
    settings: Optional[Settings] = None,
    *,
    engine: Optional[AsyncEngine] = None,
    source_factory: Optional[Callable[[], Awaitable[RemoteSource]]] = None,
) -> FastAPI:
    """
    Build the API application.

    Everything the routes need hangs off ``app.state``; nothing is read from
    module-level globals.
    """
    settings = settings or Settings()
    engine = engine or create_engine(settings)
    session_maker = create_session_maker(engine)
    store = CacheStore(session_maker)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Lifecycle events for the application."""
        await init_db(engine)
        seeded = await store.seed_repositories(settings.configured_repositories())
        if seeded:
            logger.info(f"Added {seeded} repository(ies) from settings")
        yield
        await app.state.sync_manager.shutdown()
        await engine.dispose()

    app = FastAPI(
        title=settings.app_title,
        description=settings.app_description,
        version=__version__,
        lifespan=lifespan,
    )

    app.state.settings = settings
    app.state.engine = engine
    app.state.session_maker = session_maker
    app.state.store = store
    app.state.sync_manager = sync.SyncTaskManager(
        store, source_factory or github_source_factory(settings)
    )

    app.include_router(repos.router)
    app.include_router(issues.router)
    app.include_router(sync.router)

    @app.exception_handler(IssueCacheError)
    async def issue_cache_error_handler(request: Request, exc: IssueCacheError) -> JSONResponse:
        if isinstance(exc, (AuthenticationError, NoAuthFoundError)):
            status_code = 401
        elif isinstance(exc, GitHubClientError):
            status_code = 502
        else:
            status_code = 500
        hint = error_hint(exc)
        return JSONResponse(
            status_code=status_code,
            content={"detail": hint.message, "hint": hint.action, "error": type(exc).__name__},
        )

    @app.get("/health")
    async def health(db: AsyncSession = Depends(get_db)):
        """Health check: the API is up and the cache database answers."""
        try:
            await db.execute(text("SELECT 1"))
            database = "healthy"
        except SQLAlchemyError as e:
            logger.warning(f"Health check database query failed: {sanitize_exception_for_logging(e)}")
            database = "unhealthy"
        return {
            "status": "healthy" if database == "healthy" else "degraded",
            "database": database,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    return app


if __name__ == "__main__":
    import uvicorn

    _settings = Settings()
    configure_logging(_settings.log_level)
    uvicorn.run(
        "issuecache.main:create_app",
        factory=True,
        host=_settings.host,
        port=_settings.port,
    )
