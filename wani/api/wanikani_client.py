"""
WaniKani API v2 gateway.

HTTP client used by the sync coordinator for:
- Paginated, incremental pulls of subjects and assignments
- Submitting lesson starts and reviews with an idempotency key

Hardening:
- Every request has a bounded timeout
- Conditional requests (If-None-Match / updated_after)
- Rate-limit headers parsed so callers can wait for the reset
- HTTP failures mapped onto the gateway error hierarchy
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

import httpx
from loguru import logger
from pydantic import ValidationError

from config import get_settings
from wani.api.errors import (
    AuthError,
    DuplicateSubmissionError,
    OutcomeRejectedError,
    RateLimitedError,
    RequestRejectedError,
    TransientError,
)
from wani.api.gateway import RemoteGateway
from wani.api.schemas import (
    Collection,
    Resource,
    ReviewResponse,
    assignment_update_from_resource,
    subject_from_resource,
)
from wani.core.models import AssignmentUpdate, Page, ReviewOutcome, SessionKind


@dataclass
class RateLimit:
    """Rate limit state reported by the RateLimit-* headers."""

    limit: int
    remaining: int
    reset: int  # epoch seconds

    @property
    def reset_at(self) -> datetime:
        return datetime.fromtimestamp(self.reset, tz=UTC)

    @classmethod
    def from_headers(cls, headers: httpx.Headers) -> RateLimit | None:
        """Parse the headers; None if any of them is missing or malformed."""
        try:
            return cls(
                limit=int(headers["RateLimit-Limit"]),
                remaining=int(headers["RateLimit-Remaining"]),
                reset=int(headers["RateLimit-Reset"]),
            )
        except (KeyError, ValueError):
            return None


def _isoformat(value: datetime) -> str:
    return value.astimezone(UTC).isoformat().replace("+00:00", "Z")


class WaniKaniGateway(RemoteGateway):
    """
    Async wrapper around the WaniKani REST API.

    The API has no endpoint for looking up an idempotency key, so crash
    recovery relies on a fresh progress pull instead.
    """

    supports_token_lookup = False

    def __init__(
        self,
        api_token: str | None = None,
        base_url: str | None = None,
        revision: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """
        Initialize the gateway.

        Args:
            api_token: Personal access token (default from config)
            base_url: API base URL (default from config)
            revision: Wanikani-Revision header value (default from config)
            timeout: Request timeout in seconds (default from config)
            transport: Custom httpx transport (tests)
        """
        settings = get_settings()
        self.api_token = api_token if api_token is not None else settings.wanikani_api_token
        self.base_url = (base_url or settings.wanikani_api_url).rstrip("/")
        self.revision = revision or settings.wanikani_revision
        self.timeout = timeout or settings.request_timeout_seconds
        self.rate_limit: RateLimit | None = None

        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers={
                "Authorization": f"Bearer {self.api_token}",
                "Wanikani-Revision": self.revision,
                "Content-Type": "application/json",
            },
            timeout=httpx.Timeout(self.timeout),
            transport=transport,
        )

        logger.debug("Initialized WaniKani gateway: url={}, timeout={}s", self.base_url, self.timeout)

    async def __aenter__(self) -> WaniKaniGateway:
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    async def close(self) -> None:
        await self._client.aclose()

    # ========================================
    # Core request handling
    # ========================================

    async def _request(
        self,
        method: str,
        url: str,
        rejected: type[RequestRejectedError] = RequestRejectedError,
        **kwargs: Any,
    ) -> httpx.Response:
        """
        Send a request and map failures onto gateway errors.

        Raises:
            TransientError: timeout, connection failure or 5xx
            RateLimitedError: HTTP 429
            AuthError: HTTP 401/403
            DuplicateSubmissionError: HTTP 409
            RequestRejectedError (or `rejected`): any other 4xx
        """
        logger.debug("WaniKani request: {} {}", method, url)
        try:
            response = await self._client.request(method, url, **kwargs)
        except httpx.TimeoutException as exc:
            raise TransientError(f"Request to {url} timed out: {exc}") from exc
        except httpx.TransportError as exc:
            raise TransientError(f"WaniKani unreachable: {exc}") from exc

        self.rate_limit = RateLimit.from_headers(response.headers) or self.rate_limit
        status = response.status_code

        if status in (200, 201, 304):
            return response
        if status in (401, 403):
            raise AuthError(
                f"HTTP {status}: Unauthorized. Make sure your WaniKani auth token is correct "
                "and hasn't expired."
            )
        if status == 429:
            limit = RateLimit.from_headers(response.headers)
            raise RateLimitedError(
                "WaniKani API rate limit exceeded.",
                reset_at=limit.reset_at if limit else None,
            )
        if status == 409:
            raise DuplicateSubmissionError(f"HTTP 409: {self._error_detail(response)}")
        if status >= 500:
            raise TransientError(f"HTTP status code {status}")
        raise rejected(f"HTTP {status}: {self._error_detail(response)}", status_code=status)

    @staticmethod
    def _error_detail(response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return response.text[:200]
        if isinstance(body, dict):
            return str(body.get("error") or body.get("detail") or body)
        return str(body)

    async def _fetch_collection(
        self,
        path: str,
        since_cursor: datetime | None,
        page: str | None,
        etag: str | None,
    ) -> tuple[Collection | None, str | None]:
        if page:
            response = await self._request("GET", page)
        else:
            params = {"updated_after": _isoformat(since_cursor)} if since_cursor else None
            headers = {"If-None-Match": etag} if etag else None
            response = await self._request("GET", path, params=params, headers=headers)

        if response.status_code == 304:
            return None, etag

        try:
            collection = Collection.model_validate(response.json())
        except (ValidationError, ValueError) as exc:
            raise TransientError(f"Unexpected response for {path}: {exc}") from exc
        return collection, response.headers.get("ETag")

    # ========================================
    # Pulls
    # ========================================

    async def fetch_subjects(
        self,
        since_cursor: datetime | None,
        page: str | None = None,
        etag: str | None = None,
    ) -> Page:
        collection, new_etag = await self._fetch_collection("/subjects", since_cursor, page, etag)
        if collection is None:
            return Page(etag=new_etag, not_modified=True)

        subjects = []
        parse_fails = 0
        for resource in collection.data:
            try:
                subject = subject_from_resource(resource)
            except ValidationError as exc:
                parse_fails += 1
                logger.warning("Skipping unparseable {} {}: {}", resource.object, resource.id, exc)
                continue
            if subject is not None:
                subjects.append(subject)

        if parse_fails:
            logger.info("Parse failures in subjects page: {}", parse_fails)
        return Page(items=subjects, next_page=collection.pages.next_url, etag=new_etag, skipped=parse_fails)

    async def fetch_assignments(
        self,
        since_cursor: datetime | None,
        page: str | None = None,
        etag: str | None = None,
    ) -> Page:
        collection, new_etag = await self._fetch_collection("/assignments", since_cursor, page, etag)
        if collection is None:
            return Page(etag=new_etag, not_modified=True)

        updates = []
        parse_fails = 0
        for resource in collection.data:
            try:
                updates.append(assignment_update_from_resource(resource))
            except ValidationError as exc:
                parse_fails += 1
                logger.warning("Skipping unparseable assignment {}: {}", resource.id, exc)
        return Page(items=updates, next_page=collection.pages.next_url, etag=new_etag, skipped=parse_fails)

    # ========================================
    # Submissions
    # ========================================

    async def submit_outcome(self, idempotency_token: str, outcome: ReviewOutcome) -> AssignmentUpdate:
        headers = {"Idempotency-Key": idempotency_token}

        if outcome.session_kind is SessionKind.LESSON:
            if outcome.assignment_id is None:
                raise OutcomeRejectedError(f"Lesson for subject {outcome.subject_id} has no assignment id")
            response = await self._request(
                "PUT",
                f"/assignments/{outcome.assignment_id}/start",
                rejected=OutcomeRejectedError,
                headers=headers,
                json={"assignment": {"started_at": _isoformat(outcome.completed_at)}},
            )
            return self._parse_assignment(response)

        review: dict[str, Any] = {
            "incorrect_meaning_answers": outcome.meaning_incorrect,
            "incorrect_reading_answers": outcome.reading_incorrect,
            "created_at": _isoformat(outcome.completed_at),
        }
        if outcome.assignment_id is not None:
            review["assignment_id"] = outcome.assignment_id
        else:
            review["subject_id"] = outcome.subject_id

        response = await self._request(
            "POST",
            "/reviews",
            rejected=OutcomeRejectedError,
            headers=headers,
            json={"review": review},
        )
        try:
            body = ReviewResponse.model_validate(response.json())
        except (ValidationError, ValueError) as exc:
            raise TransientError(f"Unexpected review response: {exc}") from exc

        if body.resources_updated and body.resources_updated.assignment:
            return assignment_update_from_resource(body.resources_updated.assignment)

        # No embedded assignment: fall back to what the review itself reports.
        fields: dict[str, Any] = {}
        if "ending_srs_stage" in body.data:
            fields["srs_stage"] = int(body.data["ending_srs_stage"])
        return AssignmentUpdate(
            subject_id=outcome.subject_id,
            subject_kind=None,
            fields=fields,
        )

    @staticmethod
    def _parse_assignment(response: httpx.Response) -> AssignmentUpdate:
        try:
            return assignment_update_from_resource(Resource.model_validate(response.json()))
        except (ValidationError, ValueError) as exc:
            raise TransientError(f"Unexpected assignment response: {exc}") from exc
