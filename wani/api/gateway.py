"""
Remote API gateway interface.

The sync coordinator talks to the server only through this interface, so the
transport can be swapped (or faked in tests). Implementations must be safe to
retry: submitting the same idempotency token twice must never apply an
outcome twice.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime

from wani.core.models import AssignmentUpdate, Page, ReviewOutcome


class RemoteGateway(ABC):
    """Transport to the remote learning service."""

    # True when lookup_token can tell whether a token was already applied.
    supports_token_lookup: bool = False

    @abstractmethod
    async def fetch_subjects(
        self,
        since_cursor: datetime | None,
        page: str | None = None,
        etag: str | None = None,
    ) -> Page:
        """
        Fetch one page of subjects updated after since_cursor.

        Args:
            since_cursor: Only subjects updated after this time (None: all)
            page: Continuation returned by the previous page
            etag: ETag of the last full pull, for a conditional request

        Returns:
            Page of Subject items
        """

    @abstractmethod
    async def fetch_assignments(
        self,
        since_cursor: datetime | None,
        page: str | None = None,
        etag: str | None = None,
    ) -> Page:
        """Fetch one page of AssignmentUpdate items updated after since_cursor."""

    @abstractmethod
    async def submit_outcome(self, idempotency_token: str, outcome: ReviewOutcome) -> AssignmentUpdate:
        """
        Submit one outcome.

        Returns:
            The authoritative assignment after the server applied the outcome

        Raises:
            OutcomeRejectedError, AuthError, RateLimitedError, TransientError,
            DuplicateSubmissionError
        """

    async def lookup_token(self, idempotency_token: str) -> AssignmentUpdate | None:
        """
        Assignment produced by an already applied token, or None if unknown.

        Only meaningful when supports_token_lookup is True.
        """
        return None

    async def close(self) -> None:
        """Release network resources."""
