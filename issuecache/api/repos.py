"""API endpoints for the configured repository list."""

import logging
from datetime import datetime
from typing import List, Optional
from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, field_validator

from issuecache.api.deps import get_store, repository_path
from issuecache.config import validate_repository
from issuecache.core.cache_store import CacheStore

logger = logging.getLogger(__name__)


router = APIRouter(prefix="/api/repos", tags=["repositories"])


class RepositoryCreate(BaseModel):
    """Schema for adding a repository."""
    name: str

    @field_validator("name")
    @classmethod
    def _owner_name(cls, value: str) -> str:
        return validate_repository(value)


class RepositoryResponse(BaseModel):
    """A configured repository with its cache status."""
    name: str
    is_default: bool
    last_sync_at: Optional[datetime]
    cached_issues: int


async def _describe(store: CacheStore, name: str, is_default: bool) -> RepositoryResponse:
    return RepositoryResponse(
        name=name,
        is_default=is_default,
        last_sync_at=await store.get_last_sync_time(name),
        cached_issues=await store.count_issues(name),
    )


@router.get("", response_model=List[RepositoryResponse])
async def list_repositories(store: CacheStore = Depends(get_store)):
    """Configured repositories in the order they were added."""
    default = await store.get_default_repository()
    return [await _describe(store, repo.name, repo.name == default) for repo in await store.list_repositories()]


@router.post("", response_model=RepositoryResponse, status_code=201)
async def add_repository(payload: RepositoryCreate, store: CacheStore = Depends(get_store)):
    """Add a repository; the first one added becomes the default."""
    if not await store.add_repository(payload.name):
        raise HTTPException(status_code=409, detail=f"Repository {payload.name} is already configured")
    logger.info(f"Added repository {payload.name}")
    return await _describe(store, payload.name, await store.get_default_repository() == payload.name)


@router.delete("/{owner}/{name}", status_code=204)
async def remove_repository(
    repo: str = Depends(repository_path),
    purge_cache: bool = Query(False, description="Also delete the repository's cached issues and comments"),
    store: CacheStore = Depends(get_store),
):
    """Remove a repository from the configured list."""
    if not await store.remove_repository(repo):
        raise HTTPException(status_code=404, detail=f"Repository {repo} is not configured")
    if purge_cache:
        await store.clear_repository(repo)
    logger.info(f"Removed repository {repo}{' and its cache' if purge_cache else ''}")


@router.put("/{owner}/{name}/default", response_model=RepositoryResponse)
async def set_default_repository(
    repo: str = Depends(repository_path),
    store: CacheStore = Depends(get_store),
):
    """Make a configured repository the default."""
    if not await store.set_default_repository(repo):
        raise HTTPException(status_code=404, detail=f"Repository {repo} is not configured")
    return await _describe(store, repo, True)
