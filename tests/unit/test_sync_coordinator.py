"""
Unit tests for the sync coordinator.

The server is the in-memory FakeGateway from conftest; time is a ManualClock.
"""

import asyncio
from datetime import UTC, datetime, timedelta

import pytest
from sqlalchemy import create_engine, text

from wani.api.errors import (
    AuthError,
    DuplicateSubmissionError,
    OutcomeRejectedError,
    RateLimitedError,
    TransientError,
)
from wani.core.models import AssignmentUpdate, Page, SourcePriority, SubjectKind, SyncState
from wani.sync.coordinator import CATALOG, PROGRESS, PUSH, SyncCoordinator

NOW = datetime(2026, 10, 18, 12, 0, tzinfo=UTC)


def make_coordinator(store, gateway, clock, **overrides) -> SyncCoordinator:
    options = dict(
        request_timeout=1.0,
        backoff_base=2.0,
        backoff_cap=60.0,
        pull_interval=600.0,
        push_interval=30.0,
        push_batch_size=100,
        min_poll=1.0,
        max_poll=60.0,
        clock=clock,
        now=lambda: NOW,
    )
    options.update(overrides)
    return SyncCoordinator(store, gateway, **options)


def server_assignment(subject_id, stage, updated_at=NOW + timedelta(minutes=5)):
    return AssignmentUpdate(
        subject_id=subject_id,
        subject_kind=SubjectKind.KANJI,
        fields={"srs_stage": stage, "assignment_id": 1000 + subject_id},
        data_updated_at=updated_at,
    )


def states(store):
    return {o.local_id: o.sync_state for o in store.list_outcomes()}


class TestCatalogPull:
    """Tests for pull_catalog()."""

    @pytest.mark.asyncio
    async def test_pages_written_and_cursor_advanced(self, store, gateway, clock, make_subject):
        gateway.subject_pages = [
            Page(items=[make_subject(1)], next_page="1", etag="etag-1"),
            Page(items=[make_subject(2), make_subject(3)]),
        ]
        coordinator = make_coordinator(store, gateway, clock)

        results = await coordinator.pull_catalog()

        assert results["written"] == 3
        assert results["pages"] == 2
        assert store.count_subjects() == 3
        cursor = store.get_cursor("subjects")
        assert cursor.updated_after == NOW
        assert cursor.etag == "etag-1"
        assert [(c[1], c[2]) for c in gateway.fetch_calls] == [(None, None), (None, "1")]

    @pytest.mark.asyncio
    async def test_incremental_pull_uses_cursor(self, store, gateway, clock):
        store.advance_cursor("subjects", NOW - timedelta(days=1), "etag-0")
        coordinator = make_coordinator(store, gateway, clock)

        await coordinator.pull_catalog()
        assert gateway.fetch_calls[-1][1:] == (NOW - timedelta(days=1), None, "etag-0")

        await coordinator.pull_catalog(force=True)
        assert gateway.fetch_calls[-1][1:] == (None, None, None)

    @pytest.mark.asyncio
    async def test_failure_mid_pagination_keeps_cursor(self, store, gateway, clock, make_subject):
        class FailingSecondPage(type(gateway)):
            async def fetch_subjects(self, since_cursor, page=None, etag=None):
                if page:
                    raise TransientError("HTTP status code 502")
                return Page(items=[make_subject(1)], next_page="1")

        gateway = FailingSecondPage()
        coordinator = make_coordinator(store, gateway, clock)

        results = await coordinator.pull_catalog()

        assert "error" in results
        assert store.get_cursor("subjects").updated_after is None
        assert coordinator.schedules[CATALOG].failures == 1
        assert not coordinator.schedules[CATALOG].is_eligible()

    @pytest.mark.asyncio
    async def test_quarantined_subjects_trigger_full_refetch(self, db_path, store, gateway, clock, make_subject, seed_review):
        seed_review(store, make_subject(1))
        store.advance_cursor("subjects", NOW - timedelta(days=1))
        engine = create_engine(f"sqlite:///{db_path}")
        with engine.begin() as conn:
            conn.execute(text("UPDATE subjects SET payload = 'garbage' WHERE id = 1"))
        engine.dispose()
        assert store.get_subject(1) is None

        gateway.subject_pages = [Page(items=[make_subject(1)])]
        coordinator = make_coordinator(store, gateway, clock)
        await coordinator.pull_catalog()

        assert gateway.fetch_calls[-1][1] is None  # cursor ignored
        assert store.get_subject(1) is not None
        assert not store.has_unresolved_quarantine("subjects")

    @pytest.mark.asyncio
    async def test_unparseable_subjects_keep_cursor(self, store, gateway, clock, make_subject):
        store.advance_cursor("subjects", NOW - timedelta(days=1))
        gateway.subject_pages = [Page(items=[make_subject(1)], skipped=1)]
        coordinator = make_coordinator(store, gateway, clock)

        results = await coordinator.pull_catalog()

        assert results["complete"] is False
        assert store.count_subjects() == 1
        assert store.get_cursor("subjects").updated_after == NOW - timedelta(days=1)
        assert coordinator.schedules[CATALOG].failures == 1


class TestProgressPull:
    """Tests for pull_progress()."""

    @pytest.mark.asyncio
    async def test_server_state_replaces_speculative_state(self, store, gateway, clock, tree, seed_review):
        seed_review(store, tree, stage=3)
        store.apply_assignment_update(1, {"srs_stage": 4}, SourcePriority.LOCAL)
        gateway.assignment_pages = [Page(items=[server_assignment(1, 2)])]
        coordinator = make_coordinator(store, gateway, clock)

        await coordinator.pull_progress()

        assignment = store.get_assignment(1)
        assert assignment.srs_stage == 2
        assert assignment.source is SourcePriority.SERVER
        assert store.get_cursor("assignments").updated_after == NOW

    @pytest.mark.asyncio
    async def test_uncached_subject_defers_cursor(self, store, gateway, clock, tree, seed_review):
        seed_review(store, tree)
        gateway.assignment_pages = [Page(items=[server_assignment(1, 2), server_assignment(99, 1)])]
        coordinator = make_coordinator(store, gateway, clock)
        coordinator.schedules[CATALOG].record_success()

        results = await coordinator.pull_progress()

        assert not results["complete"]
        assert store.get_assignment(1).srs_stage == 2
        assert store.get_cursor("assignments").updated_after is None
        assert coordinator.schedules[CATALOG].is_eligible()

    @pytest.mark.asyncio
    async def test_applied_outcomes_are_confirmed(self, store, gateway, clock, tree, make_outcome, seed_review):
        """An outcome the server already reflects is not submitted again."""
        seed_review(store, tree, stage=1)
        first = store.enqueue_outcome(make_outcome(1, starting=1, expected=2, token="a"))
        second = store.enqueue_outcome(
            make_outcome(1, starting=2, expected=3, token="b", completed_at=NOW + timedelta(minutes=1))
        )
        store.mark_outcome_submitted(first, NOW)
        store.mark_outcome_submitted(second, NOW)
        gateway.assignment_pages = [Page(items=[server_assignment(1, 3)])]
        coordinator = make_coordinator(store, gateway, clock)

        await coordinator.pull_progress()

        assert states(store) == {first: SyncState.CONFIRMED, second: SyncState.CONFIRMED}

    @pytest.mark.asyncio
    async def test_unchanged_stage_is_not_evidence(self, store, gateway, clock, tree, make_outcome, seed_review):
        seed_review(store, tree, stage=1)
        local_id = store.enqueue_outcome(make_outcome(1, starting=1, expected=1, token="a"))
        gateway.assignment_pages = [Page(items=[server_assignment(1, 1)])]
        coordinator = make_coordinator(store, gateway, clock)

        await coordinator.pull_progress()

        assert states(store) == {local_id: SyncState.PENDING}

    @pytest.mark.asyncio
    async def test_older_server_data_is_not_evidence(self, store, gateway, clock, tree, make_outcome, seed_review):
        seed_review(store, tree, stage=1)
        local_id = store.enqueue_outcome(make_outcome(1, starting=1, expected=2, token="a"))
        gateway.assignment_pages = [Page(items=[server_assignment(1, 2, updated_at=NOW - timedelta(hours=1))])]
        coordinator = make_coordinator(store, gateway, clock)

        await coordinator.pull_progress()

        assert states(store) == {local_id: SyncState.PENDING}


class TestPush:
    """Tests for push_outcomes()."""

    @pytest.mark.asyncio
    async def test_outcomes_pushed_in_order_and_adopted(self, store, gateway, clock, tree, make_outcome, seed_review):
        seed_review(store, tree, stage=1)
        store.enqueue_outcome(make_outcome(1, starting=1, expected=2, token="a"))
        store.enqueue_outcome(make_outcome(1, starting=2, expected=3, token="b", completed_at=NOW + timedelta(minutes=1)))
        coordinator = make_coordinator(store, gateway, clock)

        results = await coordinator.push_outcomes()

        assert results["confirmed"] == 2
        assert [token for token, _ in gateway.submitted] == ["a", "b"]
        assert store.dequeue_pending_outcomes() == []
        assert store.get_assignment(1).srs_stage == 3
        assert coordinator.schedules[PUSH].failures == 0

    @pytest.mark.asyncio
    async def test_duplicate_counts_as_confirmed(self, store, gateway, clock, tree, make_outcome, seed_review):
        seed_review(store, tree)
        local_id = store.enqueue_outcome(make_outcome(1, token="a"))
        gateway.submit_errors = [DuplicateSubmissionError("HTTP 409: already applied")]
        coordinator = make_coordinator(store, gateway, clock)

        results = await coordinator.push_outcomes()

        assert results["duplicates"] == 1
        assert states(store) == {local_id: SyncState.CONFIRMED}

    @pytest.mark.asyncio
    async def test_unreadable_outcome_does_not_stop_push(self, db_path, store, gateway, clock, tree, make_outcome, seed_review):
        seed_review(store, tree)
        bad = store.enqueue_outcome(make_outcome(1, token="bad"))
        good = store.enqueue_outcome(make_outcome(1, starting=2, expected=3, token="good"))
        engine = create_engine(f"sqlite:///{db_path}")
        with engine.begin() as conn:
            conn.execute(text(f"UPDATE review_outcomes SET completed_at = 'garbage' WHERE local_id = {bad}"))
        engine.dispose()
        coordinator = make_coordinator(store, gateway, clock)

        results = await coordinator.push_outcomes()

        assert results["confirmed"] == 1
        assert [token for token, _ in gateway.submitted] == ["good"]
        assert states(store) == {good: SyncState.CONFIRMED}
        assert store.has_unresolved_quarantine("review_outcomes")

    @pytest.mark.asyncio
    async def test_outcome_settled_elsewhere_is_not_counted(
        self, store, gateway, clock, make_subject, make_outcome, seed_review
    ):
        class SettledMidFlight(type(gateway)):
            async def submit_outcome(self, idempotency_token, outcome):
                # A progress pull confirmed it while the request was out.
                store.mark_outcome_confirmed(outcome.local_id)
                return await super().submit_outcome(idempotency_token, outcome)

        seed_review(store, make_subject(1))
        seed_review(store, make_subject(2))
        store.enqueue_outcome(make_outcome(1, token="a"))
        store.enqueue_outcome(make_outcome(2, token="b"))
        gateway = SettledMidFlight()
        gateway.submit_errors = [None, DuplicateSubmissionError("HTTP 409: already applied")]
        coordinator = make_coordinator(store, gateway, clock)

        results = await coordinator.push_outcomes()

        assert results["confirmed"] == 0
        assert results["duplicates"] == 0
        assert coordinator.status.outcomes_confirmed == 0
        assert set(states(store).values()) == {SyncState.CONFIRMED}

    @pytest.mark.asyncio
    async def test_rejection_is_surfaced_and_chain_continues(self, store, gateway, clock, tree, make_outcome, seed_review):
        seed_review(store, tree)
        rejected = store.enqueue_outcome(make_outcome(1, token="a"))
        later = store.enqueue_outcome(make_outcome(1, starting=2, expected=3, token="b"))
        gateway.submit_errors = [OutcomeRejectedError("HTTP 422: Invalid review", status_code=422)]
        coordinator = make_coordinator(store, gateway, clock)

        results = await coordinator.push_outcomes()

        assert results["errored"] == 1
        assert states(store) == {rejected: SyncState.ERRORED, later: SyncState.CONFIRMED}
        assert store.get_outcome(rejected).error == "HTTP 422: Invalid review"
        assert len(coordinator.status.errors) == 1
        assert "422" in coordinator.status.errors[0]

        # Errored outcomes are never retried.
        await coordinator.push_outcomes()
        assert [token for token, _ in gateway.submitted] == ["a", "b"]

    @pytest.mark.asyncio
    async def test_transient_failure_stops_only_that_subject(
        self, store, gateway, clock, make_subject, make_outcome, seed_review
    ):
        seed_review(store, make_subject(1))
        seed_review(store, make_subject(2))
        first = store.enqueue_outcome(make_outcome(1, token="a"))
        blocked = store.enqueue_outcome(make_outcome(1, starting=2, expected=3, token="b"))
        other = store.enqueue_outcome(make_outcome(2, token="c"))
        gateway.submit_errors = [TransientError("HTTP status code 503")]
        coordinator = make_coordinator(store, gateway, clock)

        results = await coordinator.push_outcomes()

        assert results["deferred"] == 1
        assert [token for token, _ in gateway.submitted] == ["a", "c"]
        assert states(store) == {first: SyncState.SUBMITTED, blocked: SyncState.PENDING, other: SyncState.CONFIRMED}
        assert coordinator.schedules[PUSH].failures == 1
        assert coordinator.schedules[PUSH].seconds_until_eligible() == 2.0

        # Next attempt resends the same token, then the rest of the chain.
        clock.advance(2)
        await coordinator.push_outcomes()
        assert [token for token, _ in gateway.submitted] == ["a", "c", "a", "b"]
        assert store.dequeue_pending_outcomes() == []

    @pytest.mark.asyncio
    async def test_timeout_is_transient(self, store, gateway, clock, tree, make_outcome, seed_review):
        seed_review(store, tree)
        local_id = store.enqueue_outcome(make_outcome(1, token="a"))
        gateway.submit_delay = 0.5
        coordinator = make_coordinator(store, gateway, clock, request_timeout=0.01)

        results = await coordinator.push_outcomes()

        assert "error" in results
        assert states(store) == {local_id: SyncState.SUBMITTED}
        assert coordinator.schedules[PUSH].failures == 1

    @pytest.mark.asyncio
    async def test_always_rate_limited_loses_nothing(self, store, gateway, clock, make_subject, make_outcome, seed_review):
        """A server that always answers 429 delays the queue but never drops it."""
        seed_review(store, make_subject(1))
        seed_review(store, make_subject(2))
        ids = [
            store.enqueue_outcome(make_outcome(1, token="a")),
            store.enqueue_outcome(make_outcome(1, starting=2, expected=3, token="b")),
            store.enqueue_outcome(make_outcome(2, token="c")),
        ]
        gateway.always_raise = RateLimitedError("WaniKani API rate limit exceeded.")
        coordinator = make_coordinator(store, gateway, clock)

        for _ in range(12):
            await coordinator.push_outcomes()
            # Blocked while paused: no request goes out.
            attempts = len(gateway.submitted)
            await coordinator.push_outcomes()
            assert len(gateway.submitted) == attempts

            delay = coordinator.next_delay()
            assert 1.0 <= delay <= 60.0
            clock.advance(delay)

        assert len(store.dequeue_pending_outcomes()) == 3
        assert coordinator.schedules[PUSH].failures == 12
        assert coordinator.status.paused_until is not None

        gateway.always_raise = None
        await coordinator.push_outcomes()

        assert set(states(store).values()) == {SyncState.CONFIRMED}
        assert set(gateway.applied) == {"a", "b", "c"}
        assert sorted(states(store)) == ids

    @pytest.mark.asyncio
    async def test_rate_limit_reset_time_is_honoured(self, store, gateway, clock, tree, make_outcome, seed_review):
        seed_review(store, tree)
        store.enqueue_outcome(make_outcome(1, token="a"))
        gateway.submit_errors = [RateLimitedError("slow down", reset_at=NOW + timedelta(seconds=40))]
        coordinator = make_coordinator(store, gateway, clock)

        await coordinator.push_outcomes()

        assert coordinator.rate_limit.remaining() == 40
        assert coordinator.next_delay() == 40
        assert (await coordinator.pull_catalog()) == {"skipped": True}

    @pytest.mark.asyncio
    async def test_auth_failure_halts_until_resume(self, store, gateway, clock, tree, make_outcome, seed_review):
        seed_review(store, tree)
        local_id = store.enqueue_outcome(make_outcome(1, token="a"))
        gateway.always_raise = AuthError("HTTP 401: Unauthorized")
        coordinator = make_coordinator(store, gateway, clock)

        await coordinator.push_outcomes()
        assert coordinator.status.halted
        assert "401" in coordinator.status.auth_error

        gateway.always_raise = None
        assert (await coordinator.push_outcomes())["skipped"]
        assert await coordinator.run_once() == {}
        assert len(gateway.submitted) == 1
        assert coordinator.next_delay() == 60.0

        coordinator.resume()
        await coordinator.push_outcomes()
        assert states(store) == {local_id: SyncState.CONFIRMED}

    @pytest.mark.asyncio
    async def test_concurrent_pushes_never_overlap_a_subject(
        self, store, gateway, clock, make_subject, make_outcome, seed_review
    ):
        seed_review(store, make_subject(1))
        seed_review(store, make_subject(2))
        for i in range(3):
            store.enqueue_outcome(make_outcome(1, starting=i + 1, expected=i + 2, token=f"s1-{i}"))
            store.enqueue_outcome(make_outcome(2, starting=i + 1, expected=i + 2, token=f"s2-{i}"))
        gateway.submit_delay = 0.01
        coordinator = make_coordinator(store, gateway, clock)

        await asyncio.gather(coordinator.push_outcomes(), coordinator.push_outcomes())

        assert gateway.max_in_flight == {1: 1, 2: 1}
        tokens = [token for token, _ in gateway.submitted]
        assert sorted(tokens) == sorted(set(tokens))
        assert [t for t in tokens if t.startswith("s1")] == ["s1-0", "s1-1", "s1-2"]
        assert store.dequeue_pending_outcomes() == []


class TestReconcile:
    """Crash recovery for outcomes left `submitted`."""

    @pytest.mark.asyncio
    async def test_progress_pull_settles_applied_outcomes(self, store, gateway, clock, tree, make_outcome, seed_review):
        """Sent before a crash and applied: confirmed without a second submission."""
        seed_review(store, tree, stage=1)
        local_id = store.enqueue_outcome(make_outcome(1, starting=1, expected=2, token="a"))
        store.mark_outcome_submitted(local_id, NOW)
        gateway.assignment_pages = [Page(items=[server_assignment(1, 2)])]
        coordinator = make_coordinator(store, gateway, clock)

        await coordinator.push_outcomes()

        assert gateway.submitted == []
        assert states(store) == {local_id: SyncState.CONFIRMED}
        assert coordinator.status.reconciled

    @pytest.mark.asyncio
    async def test_unapplied_outcome_is_resent_with_same_token(
        self, store, gateway, clock, tree, make_outcome, seed_review
    ):
        seed_review(store, tree, stage=1)
        local_id = store.enqueue_outcome(make_outcome(1, starting=1, expected=2, token="a"))
        store.mark_outcome_submitted(local_id, NOW)
        gateway.assignment_pages = [Page(items=[server_assignment(1, 1)])]
        coordinator = make_coordinator(store, gateway, clock)

        await coordinator.push_outcomes()

        assert [token for token, _ in gateway.submitted] == ["a"]
        assert states(store) == {local_id: SyncState.CONFIRMED}

    @pytest.mark.asyncio
    async def test_token_lookup_used_when_supported(
        self, store, lookup_gateway, clock, make_subject, make_outcome, seed_review
    ):
        seed_review(store, make_subject(1))
        seed_review(store, make_subject(2))
        applied = store.enqueue_outcome(make_outcome(1, token="applied"))
        lost = store.enqueue_outcome(make_outcome(2, token="lost"))
        store.mark_outcome_submitted(applied, NOW)
        store.mark_outcome_submitted(lost, NOW)
        lookup_gateway.applied["applied"] = server_assignment(1, 2)
        coordinator = make_coordinator(store, lookup_gateway, clock)

        await coordinator.push_outcomes()

        assert lookup_gateway.lookups == ["applied", "lost"]
        assert lookup_gateway.fetch_calls == []
        assert [token for token, _ in lookup_gateway.submitted] == ["lost"]
        assert states(store) == {applied: SyncState.CONFIRMED, lost: SyncState.CONFIRMED}

    @pytest.mark.asyncio
    async def test_push_waits_for_reconciliation(self, store, gateway, clock, tree, make_outcome, seed_review):
        seed_review(store, tree)
        local_id = store.enqueue_outcome(make_outcome(1, token="a"))
        store.mark_outcome_submitted(local_id, NOW)
        gateway.fetch_error = TransientError("unreachable")
        coordinator = make_coordinator(store, gateway, clock)

        results = await coordinator.push_outcomes()

        assert results["skipped"]
        assert gateway.submitted == []
        assert not coordinator.status.reconciled
        assert coordinator.schedules[PROGRESS].failures == 1


class TestScheduling:
    @pytest.mark.asyncio
    async def test_run_once_runs_every_eligible_flow(self, store, gateway, clock, make_subject):
        gateway.subject_pages = [Page(items=[make_subject(1)])]
        coordinator = make_coordinator(store, gateway, clock)

        results = await coordinator.run_once()

        assert set(results) == {CATALOG, PROGRESS, PUSH}
        assert coordinator.status.total_syncs == 1
        assert not coordinator.status.is_syncing

        # Nothing is eligible again until the push interval has passed.
        assert await coordinator.run_once() == {}
        assert coordinator.next_delay() == 30.0

    @pytest.mark.asyncio
    async def test_next_delay_clamped(self, store, gateway, clock):
        coordinator = make_coordinator(store, gateway, clock, min_poll=5.0)
        assert coordinator.next_delay() == 5.0

    @pytest.mark.asyncio
    async def test_run_stops_on_event(self, store, gateway):
        coordinator = make_coordinator(store, gateway, clock=lambda: 0.0, min_poll=0.01, max_poll=0.01)
        coordinator.schedules[CATALOG].interval = 0
        stop = asyncio.Event()

        task = asyncio.create_task(coordinator.run(stop))
        await asyncio.sleep(0.05)
        stop.set()
        await asyncio.wait_for(task, timeout=1)

        assert coordinator.status.total_syncs >= 1
