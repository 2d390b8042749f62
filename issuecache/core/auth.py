"""GitHub token resolution."""

import asyncio
import logging
import os
import shutil
from enum import Enum
from typing import Mapping, Optional, Tuple

from issuecache.config import Settings
from issuecache.core.errors import NoAuthFoundError
from issuecache.core.logging_utils import redact_token


logger = logging.getLogger(__name__)


class TokenSource(str, Enum):
    ENVIRONMENT = "environment variable (GITHUB_TOKEN)"
    CONFIG = "config file"
    GH_CLI = "GitHub CLI"


async def gh_cli_token(timeout: float = 10.0) -> Optional[str]:
    """Return the token from ``gh auth token``, or None if gh is missing or logged out."""
    gh = shutil.which("gh")
    if gh is None:
        return None
    try:
        proc = await asyncio.create_subprocess_exec(
            gh, "auth", "token",
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.DEVNULL,
        )
    except OSError as e:
        logger.debug(f"gh auth token unavailable: {type(e).__name__}")
        return None

    try:
        stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        logger.debug(f"gh auth token did not answer within {timeout}s")
        try:
            proc.kill()
            await proc.wait()
        except ProcessLookupError:
            pass
        return None

    if proc.returncode != 0:
        logger.debug(f"gh auth token exited with status {proc.returncode}")
        return None
    token = stdout.decode("utf-8", errors="replace").strip()
    return token or None


async def resolve_token(
    settings: Settings,
    environ: Optional[Mapping[str, str]] = None,
) -> Tuple[str, TokenSource]:
    """
    Find a GitHub token.

    Precedence:
    1. GITHUB_TOKEN environment variable
    2. github_token from the stored config (.env file)
    3. GitHub CLI (gh auth token)

    Raises:
        NoAuthFoundError: If no source yields a token.
    """
    environ = os.environ if environ is None else environ

    token = (environ.get("GITHUB_TOKEN") or "").strip()
    if token:
        source = TokenSource.ENVIRONMENT
    elif settings.github_token.strip():
        token = settings.github_token.strip()
        source = TokenSource.CONFIG
    else:
        token = await gh_cli_token() or ""
        source = TokenSource.GH_CLI

    if not token:
        raise NoAuthFoundError()

    logger.info(f"Using GitHub token {redact_token(token)} from {source.value}")
    return token, source
