"""
Logging setup and helpers for safe logging.

Issue titles and comment bodies come from arbitrary GitHub users, so they
are sanitized before they reach a log line. Tokens are only ever logged in
redacted form.
"""

import logging
import re
from typing import Any


LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(level: str = "INFO") -> None:
    """Configure root logging for the API server and the sync script."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
    )
    # httpx logs every request at INFO; keep it for DEBUG runs only
    if level.upper() != "DEBUG":
        logging.getLogger("httpx").setLevel(logging.WARNING)


def sanitize_for_logging(value: Any, max_length: int = 200) -> str:
    """
    Remove control characters and limit length for safe logging.

    Prevents CRLF injection where an issue title containing newlines could
    forge log entries.

    Examples:
        >>> sanitize_for_logging("normal title")
        'normal title'
        >>> sanitize_for_logging("evil\\nERROR forged")
        'evil\\\\nERROR forged'
        >>> sanitize_for_logging("x" * 30, max_length=10)
        'xxxxxxxxxx...[truncated 20 chars]'
    """
    if not isinstance(value, str):
        value = str(value)

    sanitized = (
        value.replace('\r', '\\r')
        .replace('\n', '\\n')
        .replace('\t', '\\t')
        .replace('\x00', '\\x00')
    )

    # Remaining ASCII control characters
    sanitized = re.sub(r'[\x01-\x08\x0b-\x0c\x0e-\x1f]', '', sanitized)

    if len(sanitized) > max_length:
        truncated_count = len(sanitized) - max_length
        sanitized = sanitized[:max_length] + f"...[truncated {truncated_count} chars]"

    return sanitized


def sanitize_exception_for_logging(exc: BaseException) -> str:
    """
    Exception type name only.

    httpx and sqlite error messages can echo request headers or SQL
    parameters, so unexpected exceptions are logged by type.

    Examples:
        >>> sanitize_exception_for_logging(ValueError("token ghp_xxx"))
        'ValueError'
    """
    return type(exc).__name__


def redact_token(value: str, visible_chars: int = 4) -> str:
    """
    Redact a token for safe logging.

    Examples:
        >>> redact_token("ghp_1234567890abcdef")
        'ghp_...cdef'
        >>> redact_token("short", visible_chars=4)
        '*****'
    """
    if len(value) <= visible_chars * 2:
        return "*" * len(value)

    return f"{value[:visible_chars]}...{value[-visible_chars:]}"
