"""
Errors raised by remote gateways.

The sync coordinator decides what to do with each kind: transient errors are
retried with backoff, rate limits pause every flow, rejections are surfaced,
auth failures halt syncing and duplicates count as confirmed.
"""

from __future__ import annotations

from datetime import datetime


class GatewayError(Exception):
    """Base class for remote API failures."""


class TransientError(GatewayError):
    """Timeout, unreachable host or server-side failure. Safe to retry."""


class RateLimitedError(TransientError):
    """The server asked us to slow down."""

    def __init__(self, message: str = "Rate limit exceeded", reset_at: datetime | None = None):
        super().__init__(message)
        self.reset_at = reset_at


class AuthError(GatewayError):
    """Token missing, invalid or expired."""


class RequestRejectedError(GatewayError):
    """The server refused the request as invalid. Retrying will not help."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class OutcomeRejectedError(RequestRejectedError):
    """The server refused a submitted outcome (validation rejection)."""


class DuplicateSubmissionError(GatewayError):
    """The idempotency token was already applied by the server."""
