"""Tests for log sanitisation helpers."""

import logging

from issuecache.core.logging_utils import (
    configure_logging,
    redact_token,
    sanitize_exception_for_logging,
    sanitize_for_logging,
)


def test_sanitize_escapes_newlines():
    assert sanitize_for_logging("title\nERROR forged") == "title\\nERROR forged"
    assert sanitize_for_logging("a\r\tb") == "a\\r\\tb"


def test_sanitize_strips_control_characters():
    assert sanitize_for_logging("bell\x07 here\x1b") == "bell here"


def test_sanitize_truncates():
    assert sanitize_for_logging("x" * 30, max_length=10) == "xxxxxxxxxx...[truncated 20 chars]"


def test_sanitize_non_string():
    assert sanitize_for_logging(42) == "42"


def test_sanitize_exception_hides_message():
    assert sanitize_exception_for_logging(ValueError("token ghp_secret")) == "ValueError"


def test_redact_token():
    assert redact_token("ghp_1234567890abcdef") == "ghp_...cdef"
    assert redact_token("short") == "*****"


def test_configure_logging_quiets_httpx():
    configure_logging("INFO")
    assert logging.getLogger("httpx").level == logging.WARNING
