"""Retry policies shared by the AI client and the upload orchestrator.

Every policy is a plain function of the attempt number (1-based) so the
schedules can be checked without sleeping.
"""
from typing import Iterable

EXTRACTION_MAX_ATTEMPTS = 5
EXTRACTION_BASE_DELAY = 3.0
EXTRACTION_MAX_DELAY = 30.0
EXTRACTION_TRANSIENT_MARKERS = ("503", "overloaded", "resource exhausted", "rate limit")

COUNT_MAX_ATTEMPTS = 3
COUNT_TRANSIENT_MARKERS = ("503", "overloaded")

UPLOAD_MAX_ATTEMPTS = 3


def extraction_backoff(attempt: int) -> float:
    """Seconds to wait after failed extraction ``attempt``: 3, 6, 12, 24, capped at 30."""
    return min(EXTRACTION_BASE_DELAY * 2 ** (attempt - 1), EXTRACTION_MAX_DELAY)


def count_backoff(attempt: int) -> float:
    return 2.0 * attempt


def upload_backoff(attempt: int) -> float:
    return 2.0 * attempt


def is_transient(exc: BaseException, markers: Iterable[str] = EXTRACTION_TRANSIENT_MARKERS) -> bool:
    message = str(exc).lower()
    return any(marker in message for marker in markers)
