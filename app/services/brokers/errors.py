"""Broker adapter errors.

Adapters raise these; the sync engine decides from ``retryable`` whether a
call is worth repeating and records ``code`` on the sync run.
"""

from __future__ import annotations

from typing import Any, Optional


class BrokerError(Exception):
    code: str = "BROKER_ERROR"

    def __init__(self, message: str, code: str | None = None, details: Any = None):
        super().__init__(message)
        self.message = message
        self.code = code or self.code
        self.details = details

    @property
    def retryable(self) -> bool:
        return False


class BrokerAuthError(BrokerError):
    """Credentials rejected or expired. Never retried."""

    code = "AUTH_ERROR"


class BrokerRateLimitError(BrokerError):
    code = "RATE_LIMITED"

    def __init__(self, message: str, retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after

    @property
    def retryable(self) -> bool:
        return True


class BrokerApiError(BrokerError):
    code = "API_ERROR"

    def __init__(self, message: str, status_code: Optional[int] = None, details: Any = None):
        super().__init__(message, details=details)
        self.status_code = status_code

    @property
    def retryable(self) -> bool:
        # Transport failures carry no status code.
        return self.status_code is None or self.status_code >= 500


class BrokerNotSupportedError(BrokerError):
    code = "NOT_SUPPORTED"


class BrokerUnavailableError(BrokerApiError):
    """5xx responses, timeouts and connection failures."""

    code = "UNAVAILABLE"

    @property
    def retryable(self) -> bool:
        return True
