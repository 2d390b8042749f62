"""Read-only API over the cache, consumed by the display layer."""

from datetime import datetime
from typing import List, Literal, Optional
from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, ConfigDict

from issuecache.api.deps import get_store, repository_path
from issuecache.core.cache_store import CacheStore


router = APIRouter(prefix="/api/repos/{owner}/{name}/issues", tags=["issues"])


class IssueResponse(BaseModel):
    """Schema for a cached issue."""
    model_config = ConfigDict(from_attributes=True)

    number: int
    title: str
    body: Optional[str]
    state: str
    author: str
    created_at: datetime
    updated_at: datetime
    closed_at: Optional[datetime]
    comment_count: int
    labels: List[str]
    assignees: List[str]


class CommentResponse(BaseModel):
    """Schema for a cached comment."""
    model_config = ConfigDict(from_attributes=True)

    id: int
    issue_number: int
    body: str
    author: str
    created_at: datetime
    updated_at: datetime


@router.get("", response_model=List[IssueResponse])
async def list_issues(
    repo: str = Depends(repository_path),
    sort: Literal["updated", "created", "number", "comments"] = Query("updated"),
    order: Literal["asc", "desc"] = Query("desc"),
    store: CacheStore = Depends(get_store),
):
    """List cached issues for a repository."""
    return await store.list_issues(repo, sort=sort, descending=order == "desc")


@router.get("/{number}", response_model=IssueResponse)
async def get_issue(
    number: int,
    repo: str = Depends(repository_path),
    store: CacheStore = Depends(get_store),
):
    """Get one cached issue."""
    issue = await store.get_issue(repo, number)
    if issue is None:
        raise HTTPException(status_code=404, detail=f"Issue {repo}#{number} not found in cache")
    return issue


@router.get("/{number}/comments", response_model=List[CommentResponse])
async def list_comments(
    number: int,
    repo: str = Depends(repository_path),
    store: CacheStore = Depends(get_store),
):
    """List the comments of a cached issue, oldest first."""
    if await store.get_issue(repo, number) is None:
        raise HTTPException(status_code=404, detail=f"Issue {repo}#{number} not found in cache")
    return await store.list_comments(repo, number)
