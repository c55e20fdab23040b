"""
Error taxonomy for platform sync and metrics aggregation.

Exception Hierarchy:
    SyncError (base)
    ├── CredentialError      - Invalid/expired credentials (not retried)
    ├── ApiError             - HTTP/network failure (retried when transient)
    └── ParseError           - One malformed report/CSV record (skipped)

    InvariantViolation       - Programming error, never caught
    QueryTimeoutError        - Database query exceeded timeout
"""
from typing import Any, Optional


class SyncError(Exception):
    """Base exception for all platform sync errors."""

    def __init__(self, message: str, details: str = None, platform: str = None):
        self.message = message
        self.details = details
        self.platform = platform
        super().__init__(self.message)

    def __str__(self) -> str:
        prefix = f"[{self.platform}] " if self.platform else ""
        if self.details:
            return f"{prefix}{self.message}: {self.details}"
        return f"{prefix}{self.message}"


class CredentialError(SyncError):
    """
    Credentials were rejected or are incomplete.

    Fails the affected platform only. Never retried; the message is
    shown to the user as something they can fix.
    """


class ApiError(SyncError):
    """
    Platform API returned an error response or the request failed.

    Check status_code for HTTP failures. status_code is None for
    network errors and timeouts.
    """

    def __init__(
        self,
        message: str,
        details: str = None,
        platform: str = None,
        status_code: int = None,
        retry_after: int = None,
    ):
        super().__init__(message, details, platform)
        self.status_code = status_code
        self.retry_after = retry_after

    @property
    def is_transient(self) -> bool:
        """Network failures, timeouts, 429 and 5xx are worth retrying."""
        if self.status_code is None:
            return True
        return self.status_code == 429 or self.status_code >= 500


class ParseError(SyncError):
    """
    A single report row or API record could not be interpreted.

    The record is skipped; parsing continues with the next one.
    """

    def __init__(self, message: str, details: str = None, platform: str = None, record: Any = None):
        super().__init__(message, details, platform)
        text = repr(record) if record is not None else None
        self.record = text[:200] + "..." if text and len(text) > 200 else text


class InvariantViolation(Exception):
    """
    An internal invariant was broken (e.g. a direct write of a unified snapshot).

    Signals a bug. Callers must not catch this and carry on.
    """


class QueryTimeoutError(Exception):
    """
    Database query exceeded timeout.
    """

    def __init__(self, query: str, timeout: float, details: Optional[str] = None):
        self.query = query[:200] + "..." if len(query) > 200 else query
        self.timeout = timeout
        self.details = details
        message = f"Query timed out after {timeout}s"
        if details:
            message = f"{message}: {details}"
        super().__init__(message)

    def __str__(self) -> str:
        return f"QueryTimeoutError: Query timed out after {self.timeout}s - {self.query}"


def is_retryable(error: BaseException) -> bool:
    """Retryability predicate shared by all platform adapters."""
    if isinstance(error, CredentialError):
        return False
    if isinstance(error, ApiError):
        return error.is_transient
    return False
