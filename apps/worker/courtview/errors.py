"""
Error taxonomy shared by the schedule pipeline and document retrieval.

Parse ambiguity is deliberately absent: a page without the schedule table
is an empty record set, not an error.
"""

from __future__ import annotations


class CourtViewError(Exception):
    """Base exception for courtview errors."""


class UpstreamFetchError(CourtViewError):
    """Network failure or non-2xx response from the schedule or document source."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class RateLimitedError(UpstreamFetchError):
    """429 from upstream. Callers should back off longer than the default."""

    def __init__(self, message: str, retry_after: float | None = None):
        super().__init__(message, status_code=429)
        self.retry_after = retry_after


class CaptchaRejectedError(CourtViewError):
    """Upstream refused the submitted captcha code (routine, drives retries)."""


class SessionExpiredError(CourtViewError):
    """Captcha session id unknown or past its TTL. Caller must restart."""


class InvalidInputError(CourtViewError):
    """Malformed document id, code or date. Raised before any network call."""


class DocumentRetrievalError(CourtViewError):
    """Retrieval budget exhausted."""

    def __init__(self, message: str, attempts: int, last_error: Exception | None = None):
        super().__init__(message)
        self.attempts = attempts
        self.last_error = last_error
