"""
Request pacing for GitHub API calls.

A sync pass issues one listing request per page plus one comments request
per issue. A configurable delay keeps large repositories from tripping
GitHub's secondary rate limits. Rate-limit responses are not retried here:
they surface to the caller, which re-runs the sync later.
"""

import asyncio
from typing import Any
from datetime import datetime, timezone


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RateLimiter:
    """
    Pacing for GitHub API requests.

    Provides:
    - Configurable delay before each request (the first request is not delayed)
    - Request counts and timing, logged when the client closes
    """

    def __init__(self, delay_ms: int = 0):
        """
        Initialize rate limiter.

        Args:
            delay_ms: Delay in milliseconds between requests
        """
        self.delay_ms = delay_ms
        self.operation_count = 0
        self.start_time: datetime | None = None

    async def delay(self) -> None:
        """Apply configured delay between requests."""
        if self.delay_ms > 0 and self.operation_count > 0:
            await asyncio.sleep(self.delay_ms / 1000.0)

    def record_operation(self) -> None:
        """Record that a request was performed."""
        if self.start_time is None:
            self.start_time = _utcnow()
        self.operation_count += 1

    def get_metrics(self) -> dict[str, Any]:
        """
        Get metrics about paced requests.

        Returns:
            Dictionary with request count, duration, and rate
        """
        if self.start_time is None:
            return {
                "operation_count": self.operation_count,
                "duration_seconds": 0,
                "operations_per_second": 0
            }

        duration = (_utcnow() - self.start_time).total_seconds()
        ops_per_sec = self.operation_count / duration if duration > 0 else 0

        return {
            "operation_count": self.operation_count,
            "duration_seconds": round(duration, 2),
            "operations_per_second": round(ops_per_sec, 2)
        }
