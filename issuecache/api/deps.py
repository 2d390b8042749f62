from fastapi import HTTPException, Request

from issuecache.config import validate_repository
from issuecache.core.cache_store import CacheStore


def get_store(request: Request) -> CacheStore:
    return request.app.state.store


def repository_path(owner: str, name: str) -> str:
    """Path parameters → validated owner/name, 400 otherwise."""
    try:
        return validate_repository(f"{owner}/{name}")
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
