"""
Sync coordinator for wani-offline.

Reconciles the local cache with the server while sessions keep running
offline. Three independent flows:
- Catalog pull: new/updated subjects since the subjects cursor
- Progress pull: authoritative assignments since the assignments cursor
- Outcome push: queued outcomes, per subject in FIFO order

Failure handling:
- Transient errors back off per flow (capped exponential)
- A rate limit pauses every flow until the server's reset time
- Rejected outcomes are marked errored and surfaced, never retried
- An auth failure halts all flows until resume()

Usage:
    coordinator = SyncCoordinator(store, gateway)
    await coordinator.run_once()          # one pass, e.g. `wani sync`
    await coordinator.run(stop_event)     # loop while a session runs
"""

from __future__ import annotations

import asyncio
import time
from collections import defaultdict
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any, TypeVar

from loguru import logger

from config import get_settings
from wani.api.errors import (
    AuthError,
    DuplicateSubmissionError,
    GatewayError,
    OutcomeRejectedError,
    RateLimitedError,
    TransientError,
)
from wani.api.gateway import RemoteGateway
from wani.core.models import (
    AssignmentUpdate,
    Page,
    ReviewOutcome,
    SourcePriority,
    SyncState,
)
from wani.store.errors import UnknownSubjectError
from wani.store.local_store import LocalStore
from wani.sync.backoff import Clock, FlowSchedule, RateLimitWindow, backoff_delay

T = TypeVar("T")

CATALOG = "catalog"
PROGRESS = "progress"
PUSH = "push"

SUBJECTS_RESOURCE = "subjects"
ASSIGNMENTS_RESOURCE = "assignments"


@dataclass
class SyncStatus:
    """Current sync status, read by the presentation layer."""

    is_syncing: bool = False
    halted: bool = False
    auth_error: str | None = None
    reconciled: bool = False
    last_sync_at: datetime | None = None
    last_sync_success: bool = True
    error_message: str | None = None
    paused_until: datetime | None = None
    subjects_pulled: int = 0
    assignments_pulled: int = 0
    outcomes_confirmed: int = 0
    outcomes_errored: int = 0
    total_syncs: int = 0
    errors: list[str] = field(default_factory=list)  # surfaced rejections


class SyncCoordinator:
    """
    Drives catalog pulls, progress pulls and outcome pushes.

    Store calls are synchronous and short; the only suspension points are
    gateway calls, each bounded by request_timeout.
    """

    def __init__(
        self,
        store: LocalStore,
        gateway: RemoteGateway,
        *,
        request_timeout: float | None = None,
        backoff_base: float | None = None,
        backoff_cap: float | None = None,
        pull_interval: float | None = None,
        push_interval: float | None = None,
        push_batch_size: int | None = None,
        min_poll: float | None = None,
        max_poll: float | None = None,
        clock: Clock = time.monotonic,
        now: Callable[[], datetime] | None = None,
    ):
        settings = get_settings()
        self.store = store
        self.gateway = gateway
        self.request_timeout = request_timeout or settings.request_timeout_seconds
        self.backoff_base = backoff_base or settings.sync_backoff_base_seconds
        self.backoff_cap = backoff_cap or settings.sync_backoff_cap_seconds
        self.push_batch_size = push_batch_size or settings.sync_push_batch_size
        self.min_poll = min_poll if min_poll is not None else settings.sync_min_poll_seconds
        self.max_poll = max_poll if max_poll is not None else settings.sync_max_poll_seconds
        self._clock = clock
        self._now = now or (lambda: datetime.now(UTC))

        pull_every = pull_interval if pull_interval is not None else settings.sync_pull_interval_seconds
        push_every = push_interval if push_interval is not None else settings.sync_push_interval_seconds
        self.schedules: dict[str, FlowSchedule] = {
            name: FlowSchedule(
                name=name,
                interval=interval,
                base_delay=self.backoff_base,
                max_delay=self.backoff_cap,
                clock=clock,
            )
            for name, interval in ((CATALOG, pull_every), (PROGRESS, pull_every), (PUSH, push_every))
        }
        self.rate_limit = RateLimitWindow(clock=clock)
        self.status = SyncStatus()

        self._flow_locks = {name: asyncio.Lock() for name in self.schedules}
        self._subject_locks: defaultdict[int, asyncio.Lock] = defaultdict(asyncio.Lock)

    # ========================================
    # Helpers
    # ========================================

    async def _call(self, awaitable: Awaitable[T]) -> T:
        """Await a gateway call with the request timeout. Timeouts are transient."""
        try:
            return await asyncio.wait_for(awaitable, timeout=self.request_timeout)
        except TimeoutError as exc:
            raise TransientError(f"Remote call exceeded {self.request_timeout}s") from exc

    def _blocked(self) -> bool:
        return self.status.halted or self.rate_limit.is_paused()

    def _record_failure(self, flow: str, exc: GatewayError) -> None:
        """Single place deciding how a gateway failure affects scheduling."""
        schedule = self.schedules[flow]
        self.status.last_sync_success = False
        self.status.error_message = str(exc)

        if isinstance(exc, AuthError):
            self.status.halted = True
            self.status.auth_error = str(exc)
            logger.error("Sync halted, authentication failed: {}", exc)
            return

        delay = schedule.record_failure(str(exc))
        if isinstance(exc, RateLimitedError):
            if exc.reset_at is not None:
                pause = self.rate_limit.pause_until(exc.reset_at, self._now())
            else:
                pause = backoff_delay(schedule.failures, self.backoff_base, self.backoff_cap)
                self.rate_limit.pause_for(pause)
            self.status.paused_until = self._now() + timedelta(seconds=self.rate_limit.remaining())
            logger.warning("Rate limited during {}; all flows paused for {:.0f}s", flow, pause)
            return

        logger.warning(
            "{} failed ({} in a row), retrying in {:.0f}s: {}",
            flow,
            schedule.failures,
            delay,
            exc,
        )

    def _record_success(self, flow: str) -> None:
        self.schedules[flow].record_success()
        self.status.last_sync_at = self._now()
        self.status.last_sync_success = True
        self.status.error_message = None

    def _adopt(self, update: AssignmentUpdate) -> bool:
        """Write an authoritative assignment into the store."""
        if not update.fields:
            return False
        try:
            return self.store.apply_assignment_update(
                update.subject_id,
                update.fields,
                SourcePriority.SERVER,
                update.data_updated_at,
            )
        except UnknownSubjectError:
            logger.info("Assignment for uncached subject {} deferred to next pull", update.subject_id)
            return False

    # ========================================
    # Pulls
    # ========================================

    async def _pull(
        self,
        flow: str,
        resource: str,
        fetch: Callable[..., Awaitable[Page]],
        apply: Callable[[Page], tuple[int, bool]],
        force: bool,
    ) -> dict[str, Any]:
        if self._blocked():
            return {"skipped": True}

        async with self._flow_locks[flow]:
            refetch = self.store.has_unresolved_quarantine(resource)
            full = force or refetch
            cursor = self.store.get_cursor(resource)
            since = None if full else cursor.updated_after
            etag = None if full else cursor.etag
            started = self._now()

            results: dict[str, Any] = {"written": 0, "pages": 0, "complete": True, "full": full}
            next_page: str | None = None
            new_etag = etag
            try:
                while True:
                    page = await self._call(fetch(since, page=next_page, etag=etag if next_page is None else None))
                    results["pages"] += 1
                    if next_page is None and page.etag:
                        new_etag = page.etag
                    if page.not_modified:
                        results["not_modified"] = True
                        break

                    written, complete = apply(page)
                    results["written"] += written
                    results["complete"] = results["complete"] and complete

                    if not page.next_page:
                        break
                    next_page = page.next_page
            except GatewayError as exc:
                self._record_failure(flow, exc)
                results["error"] = str(exc)
                return results

            if not results["complete"]:
                # Retried with backoff; the cursor stays put so nothing is missed.
                self.schedules[flow].record_failure("records skipped")
                logger.info("{} pull incomplete, cursor for {} not advanced", flow, resource)
                return results

            self.store.advance_cursor(resource, started, new_etag)
            if refetch:
                self.store.resolve_quarantine(resource)
                logger.info("Re-fetched quarantined {} records", resource)
            self._record_success(flow)
            return results

    def _apply_subjects(self, page: Page) -> tuple[int, bool]:
        written = self.store.upsert_subjects(page.items)
        self.status.subjects_pulled += written
        if page.skipped:
            logger.warning("{} unreadable subjects on this page, fetched again next pull", page.skipped)
        return written, not page.skipped

    def _apply_assignments(self, page: Page) -> tuple[int, bool]:
        written = 0
        uncached = False
        for update in page.items:
            try:
                applied = self.store.apply_assignment_update(
                    update.subject_id,
                    update.fields,
                    SourcePriority.SERVER,
                    update.data_updated_at,
                )
            except UnknownSubjectError:
                logger.info("Skipping assignment for uncached subject {}", update.subject_id)
                uncached = True
                continue
            if applied:
                written += 1
            self._confirm_applied_outcomes(update)

        self.status.assignments_pulled += written
        if uncached:
            self.schedules[CATALOG].trigger()
        return written, not (uncached or page.skipped)

    def _confirm_applied_outcomes(self, update: AssignmentUpdate) -> int:
        """
        Confirm queued outcomes the server has evidently applied already.

        An outcome counts as applied when the server stage equals its
        expected stage, the stage actually changes, and the server data is not
        older than the outcome. Everything before it in the subject's chain
        was applied first and is confirmed with it.
        """
        stage = update.srs_stage
        if stage is None:
            return 0
        chain = self.store.unsettled_outcomes_for(update.subject_id)
        latest: int | None = None
        for index, outcome in enumerate(chain):
            if outcome.expected_srs_stage == outcome.starting_srs_stage:
                continue  # stage unchanged, indistinguishable from "not applied"
            if outcome.expected_srs_stage != stage:
                continue
            if update.data_updated_at is not None and update.data_updated_at < outcome.completed_at:
                continue
            latest = index

        if latest is None:
            return 0
        confirmed = 0
        for outcome in chain[: latest + 1]:
            if self.store.mark_outcome_confirmed(outcome.local_id):
                confirmed += 1
                logger.info(
                    "Outcome {} for subject {} already applied by the server",
                    outcome.local_id,
                    outcome.subject_id,
                )
        self.status.outcomes_confirmed += confirmed
        return confirmed

    async def pull_catalog(self, force: bool = False) -> dict[str, Any]:
        """
        Pull new/updated subjects into the store.

        Args:
            force: Ignore the cursor and fetch the whole catalog
        """
        return await self._pull(CATALOG, SUBJECTS_RESOURCE, self.gateway.fetch_subjects, self._apply_subjects, force)

    async def pull_progress(self, force: bool = False) -> dict[str, Any]:
        """Pull authoritative assignments, overwriting speculative local values."""
        return await self._pull(
            PROGRESS, ASSIGNMENTS_RESOURCE, self.gateway.fetch_assignments, self._apply_assignments, force
        )

    # ========================================
    # Crash recovery
    # ========================================

    async def reconcile(self) -> bool:
        """
        Settle outcomes left `submitted` by a previous run.

        Uses the gateway's token lookup when it has one, otherwise a progress
        pull and its stage inference. Pushing is blocked until this succeeds.
        """
        if self.status.reconciled:
            return True
        if self._blocked():
            return False

        in_flight = self.store.list_outcomes(SyncState.SUBMITTED)
        if in_flight:
            logger.info("Reconciling {} outcomes submitted before restart", len(in_flight))
            if self.gateway.supports_token_lookup:
                try:
                    for outcome in in_flight:
                        update = await self._call(self.gateway.lookup_token(outcome.idempotency_token))
                        if update is None:
                            continue
                        if self.store.mark_outcome_confirmed(outcome.local_id):
                            self.status.outcomes_confirmed += 1
                        self._adopt(update)
                except GatewayError as exc:
                    self._record_failure(PUSH, exc)
                    return False
            else:
                results = await self.pull_progress()
                if "error" in results or results.get("skipped"):
                    return False

        self.status.reconciled = True
        return True

    # ========================================
    # Push
    # ========================================

    async def push_outcomes(self) -> dict[str, Any]:
        """
        Submit queued outcomes, per subject in the order they were enqueued.

        Returns:
            Counts of confirmed, duplicate, errored and deferred outcomes
        """
        results: dict[str, Any] = {"confirmed": 0, "duplicates": 0, "errored": 0, "deferred": 0}
        if self._blocked():
            results["skipped"] = True
            return results
        if not await self.reconcile():
            results["skipped"] = True
            return results

        async with self._flow_locks[PUSH]:
            queued = self.store.dequeue_pending_outcomes(limit=self.push_batch_size)
            chains: dict[int, list[ReviewOutcome]] = {}
            for outcome in queued:
                chains.setdefault(outcome.subject_id, []).append(outcome)

            failure: GatewayError | None = None
            for subject_id, chain in chains.items():
                try:
                    await self._push_chain(subject_id, chain, results)
                except (AuthError, RateLimitedError) as exc:
                    failure = exc
                    break
                except TransientError as exc:
                    # This subject waits; later subjects may still get through.
                    failure = exc
                    results["deferred"] += 1

        if failure is not None:
            self._record_failure(PUSH, failure)
            results["error"] = str(failure)
        else:
            self._record_success(PUSH)
        if queued:
            logger.info(
                "Push: {} confirmed, {} duplicates, {} errored",
                results["confirmed"],
                results["duplicates"],
                results["errored"],
            )
        return results

    async def _push_chain(self, subject_id: int, chain: list[ReviewOutcome], results: dict[str, Any]) -> None:
        """Submit one subject's outcomes in order. Stops at the first transient failure."""
        async with self._subject_locks[subject_id]:
            for queued in chain:
                # A concurrent push may have settled it while we waited for the lock.
                outcome = self.store.get_outcome(queued.local_id)
                if outcome is None or outcome.sync_state.is_settled:
                    continue

                self.store.mark_outcome_submitted(outcome.local_id, self._now())
                try:
                    update = await self._call(
                        self.gateway.submit_outcome(outcome.idempotency_token, outcome)
                    )
                except DuplicateSubmissionError as exc:
                    logger.info("Outcome {} was already applied: {}", outcome.local_id, exc)
                    if self.store.mark_outcome_confirmed(outcome.local_id):
                        self.status.outcomes_confirmed += 1
                        results["duplicates"] += 1
                    continue
                except OutcomeRejectedError as exc:
                    message = f"Subject {subject_id}: {exc}"
                    logger.error("Outcome {} rejected by the server: {}", outcome.local_id, exc)
                    self.store.mark_outcome_errored(outcome.local_id, str(exc))
                    self.status.errors.append(message)
                    self.status.outcomes_errored += 1
                    results["errored"] += 1
                    continue

                if self.store.mark_outcome_confirmed(outcome.local_id):
                    self.status.outcomes_confirmed += 1
                    results["confirmed"] += 1
                self._adopt(update)

    def trigger_push(self) -> None:
        """Ask for a push at the next opportunity (new outcomes were queued)."""
        self.schedules[PUSH].trigger()

    # ========================================
    # Scheduling
    # ========================================

    async def _pull_chain(self) -> dict[str, Any]:
        # Progress runs after the catalog so new subjects exist before their assignments.
        results: dict[str, Any] = {}
        if self.schedules[CATALOG].is_eligible():
            results[CATALOG] = await self.pull_catalog()
        if self.schedules[PROGRESS].is_eligible() and not self._blocked():
            results[PROGRESS] = await self.pull_progress()
        return results

    async def run_once(self) -> dict[str, Any]:
        """
        Run every eligible flow once. Pulls and push run concurrently.

        Returns:
            Results per flow that ran
        """
        if self._blocked():
            return {}

        self.status.is_syncing = True
        try:
            tasks: list[Awaitable[dict[str, Any]]] = [self._pull_chain()]
            push = self.schedules[PUSH].is_eligible()
            if push:
                tasks.append(self.push_outcomes())
            outcomes = await asyncio.gather(*tasks)
        finally:
            self.status.is_syncing = False
            self.status.total_syncs += 1

        results = dict(outcomes[0])
        if push:
            results[PUSH] = outcomes[1]
        return results

    def next_delay(self) -> float:
        """Seconds until some flow is eligible, clamped to [min_poll, max_poll]."""
        if self.status.halted:
            return self.max_poll
        wait = min(schedule.seconds_until_eligible() for schedule in self.schedules.values())
        wait = max(wait, self.rate_limit.remaining())
        return min(self.max_poll, max(self.min_poll, wait))

    async def run(self, stop_event: asyncio.Event) -> None:
        """Keep syncing until stop_event is set."""
        logger.info("Sync coordinator started")
        while not stop_event.is_set():
            await self.run_once()
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.next_delay())
            except TimeoutError:
                pass
        logger.info("Sync coordinator stopped")

    def resume(self) -> None:
        """Clear an auth halt (after the token was fixed) and make every flow eligible."""
        self.status.halted = False
        self.status.auth_error = None
        for schedule in self.schedules.values():
            schedule.failures = 0
            schedule.next_eligible = 0.0
        logger.info("Sync resumed")
