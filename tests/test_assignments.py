"""Tests for bulk user-role-store assignment."""

from __future__ import annotations

import asyncio

import pytest

from storeauth.core.assignments import (
    AssignmentSession,
    BulkAssignmentOrchestrator,
    Stage,
    SubmitResult,
    TupleFailure,
    build_tuples,
    progress,
    steps,
)
from storeauth.core.models import AssignmentTuple
from storeauth.exceptions import (
    FAILURE_NETWORK,
    FAILURE_PERMISSION,
    FAILURE_VALIDATION,
    PermissionDeniedError,
    TransportError,
    ValidationError,
)


@pytest.fixture
def orchestrator(fake_api):
    return BulkAssignmentOrchestrator(fake_api, concurrency=1)


def _selecting(orchestrator, users=(1,), roles=(10,), stores=("s1",)) -> AssignmentSession:
    session = orchestrator.start()
    for u in users:
        session = orchestrator.toggle_user(session, u)
    for r in roles:
        session = orchestrator.toggle_role(session, r)
    for s in stores:
        session = orchestrator.toggle_store(session, s)
    return session


# ---------------------------------------------------------------------------
# Tuple expansion
# ---------------------------------------------------------------------------


class TestBuildTuples:
    def test_four_tuples_user_major(self):
        tuples = build_tuples([1, 2], [10], ["s1", "s2"])
        assert len(tuples) == 4
        assert [t.key for t in tuples] == [
            (1, 10, "s1"),
            (1, 10, "s2"),
            (2, 10, "s1"),
            (2, 10, "s2"),
        ]

    def test_metadata_and_status_carried(self):
        (t,) = build_tuples([1], [2], [3], metadata={"note": "seasonal"}, is_active=False)
        assert t.store_id == "3"
        assert t.metadata == {"note": "seasonal"}
        assert t.is_active is False

    def test_duplicates_collapsed(self):
        assert len(build_tuples([1, 1], [2], ["s", "s"])) == 1

    def test_empty_selection_rejected(self):
        with pytest.raises(ValidationError) as exc_info:
            build_tuples([], [1], [])
        assert set(exc_info.value.errors) == {"users", "stores"}


# ---------------------------------------------------------------------------
# Session stages
# ---------------------------------------------------------------------------


class TestSession:
    def test_start_enters_selecting(self, orchestrator):
        session = orchestrator.start()
        assert session.stage is Stage.SELECTING
        assert not orchestrator.can_assign(session)

    def test_toggling_adds_and_removes(self, orchestrator):
        session = orchestrator.start()
        session = orchestrator.toggle_user(session, 1)
        session = orchestrator.toggle_user(session, 2)
        session = orchestrator.toggle_user(session, 1)
        assert session.selected_users == (2,)
        session = orchestrator.toggle_store(session, 5)
        assert session.selected_stores == ("5",)

    def test_sessions_are_values(self, orchestrator):
        first = orchestrator.start()
        second = orchestrator.toggle_role(first, 3)
        assert first.selected_roles == ()
        assert second.selected_roles == (3,)

    def test_confirm_requires_full_selection(self, orchestrator):
        session = _selecting(orchestrator, stores=())
        assert not orchestrator.can_assign(session)
        with pytest.raises(ValidationError) as exc_info:
            orchestrator.confirm(session)
        assert list(exc_info.value.errors) == ["stores"]

    def test_confirm_and_cancel(self, orchestrator):
        session = _selecting(orchestrator)
        assert orchestrator.can_assign(session)
        confirming = orchestrator.confirm(session)
        assert confirming.stage is Stage.CONFIRMING
        back = orchestrator.cancel_confirmation(confirming)
        assert back.stage is Stage.SELECTING
        assert back.selected_users == session.selected_users

    def test_toggling_outside_selecting_rejected(self, orchestrator):
        confirming = orchestrator.confirm(_selecting(orchestrator))
        with pytest.raises(ValidationError):
            orchestrator.toggle_user(confirming, 9)

    async def test_submit_requires_confirmation(self, orchestrator):
        with pytest.raises(ValidationError):
            await orchestrator.submit_session(_selecting(orchestrator))

    async def test_submit_session_completes(self, orchestrator, fake_api):
        session = _selecting(orchestrator, users=(1, 2), roles=(10,), stores=("s1",))
        done = await orchestrator.submit_session(orchestrator.confirm(session))
        assert done.stage is Stage.COMPLETED
        assert done.result.summary() == "2 succeeded, 0 failed"
        assert set(fake_api.assignments) == {(1, 10, "s1"), (2, 10, "s1")}

    async def test_submit_session_with_errors(self, orchestrator, fake_api):
        fake_api.assign_failures[(2, 10, "s1")] = PermissionDeniedError("Forbidden")
        session = _selecting(orchestrator, users=(1, 2))
        done = await orchestrator.submit_session(orchestrator.confirm(session))
        assert done.stage is Stage.COMPLETED_WITH_ERRORS
        assert len(done.result.failed) == 1


class TestProgress:
    def test_counts_stages_not_tuples(self, orchestrator):
        session = orchestrator.start()
        assert progress(session) == (0, 5)
        session = orchestrator.toggle_user(session, 1)
        session = orchestrator.toggle_user(session, 2)
        assert progress(session) == (1, 5)
        session = orchestrator.toggle_role(session, 1)
        session = orchestrator.toggle_store(session, 1)
        assert progress(session) == (3, 5)

    async def test_finished_run_completes_every_step(self, orchestrator):
        done = await orchestrator.submit_session(orchestrator.confirm(_selecting(orchestrator)))
        assert progress(done) == (5, 5)
        assert [s.id for s in steps(done)] == ["users", "roles", "stores", "confirm", "submit"]

    def test_confirming_has_not_confirmed_yet(self, orchestrator):
        confirming = orchestrator.confirm(_selecting(orchestrator))
        assert progress(confirming) == (3, 5)


# ---------------------------------------------------------------------------
# Submit
# ---------------------------------------------------------------------------


class TestSubmit:
    async def test_one_failure_does_not_stop_the_rest(self, orchestrator, fake_api):
        tuples = build_tuples([1, 2, 3], [10], ["s1", "s2"])
        fake_api.assign_failures[(2, 10, "s1")] = TransportError("boom")

        result = await orchestrator.submit(tuples)

        assert len(result.succeeded) == len(tuples) - 1
        assert len(result.failed) == 1
        assert result.failed[0].tuple.key == (2, 10, "s1")
        # Every tuple attempted exactly once, in build order.
        assert [key for name, key in fake_api.calls if name == "assign"] == [t.key for t in tuples]

    async def test_failure_kinds(self, orchestrator, fake_api):
        tuples = build_tuples([1, 2, 3, 4], [10], ["s1"])
        fake_api.assign_failures[(1, 10, "s1")] = PermissionDeniedError("Forbidden")
        fake_api.assign_failures[(2, 10, "s1")] = ValidationError(
            "Invalid data", {"store_id": ["The selected store is inactive."]}
        )
        fake_api.assign_failures[(3, 10, "s1")] = TransportError("timeout")

        result = await orchestrator.submit(tuples)

        kinds = [f.kind for f in result.failed]
        assert kinds == [FAILURE_PERMISSION, FAILURE_VALIDATION, FAILURE_NETWORK]
        assert result.failed[0].reason.startswith("Insufficient permission")
        assert result.failed[1].field_errors == {"store_id": ["The selected store is inactive."]}
        assert result.failed[1].reason == "The selected store is inactive."
        assert result.succeeded == [tuples[3]]

    async def test_unexpected_exception_reported_as_network(self, orchestrator, fake_api):
        tuples = build_tuples([1], [10], ["s1", "s2"])
        fake_api.assign_failures[(1, 10, "s1")] = RuntimeError("socket closed")
        result = await orchestrator.submit(tuples)
        assert [f.kind for f in result.failed] == [FAILURE_NETWORK]
        assert [t.key for t in result.succeeded] == [(1, 10, "s2")]

    async def test_concurrent_submit_keeps_order(self, fake_api):
        delays = {1: 0.03, 2: 0.0, 3: 0.01, 4: 0.0}
        real_assign = fake_api.assign_user_role_store

        async def slow_assign(assignment):
            await asyncio.sleep(delays[assignment.user_id])
            return await real_assign(assignment)

        fake_api.assign_user_role_store = slow_assign
        fake_api.assign_failures[(3, 10, "s1")] = TransportError("boom")
        orchestrator = BulkAssignmentOrchestrator(fake_api, concurrency=4)

        tuples = build_tuples([1, 2, 3, 4], [10], ["s1"])
        result = await orchestrator.submit(tuples)

        assert [t.user_id for t in result.succeeded] == [1, 2, 4]
        assert [f.tuple.user_id for f in result.failed] == [3]

    async def test_empty_submit(self, orchestrator):
        result = await orchestrator.submit([])
        assert result.total == 0
        assert result.summary() == "0 succeeded, 0 failed"

    def test_invalid_concurrency(self, fake_api):
        with pytest.raises(ValueError):
            BulkAssignmentOrchestrator(fake_api, concurrency=0)


class TestSubmitResult:
    def test_summary_lists_distinct_reasons(self):
        t = AssignmentTuple(user_id=1, role_id=1, store_id="s")
        result = SubmitResult(
            succeeded=[t, t, t],
            failed=[
                TupleFailure(t, "Network error", "network"),
                TupleFailure(t, "Network error", "network"),
            ],
        )
        assert result.summary() == "3 succeeded, 2 failed: Network error"
        assert result.has_errors


# ---------------------------------------------------------------------------
# Toggle / remove
# ---------------------------------------------------------------------------


class TestToggleAndRemove:
    async def test_toggle_flips_one_tuple(self, orchestrator, fake_api):
        a, b = build_tuples([1, 2], [10], ["s1"])
        await orchestrator.submit([a, b])

        toggled = await orchestrator.toggle_status(a)

        assert toggled.is_active is False
        assert fake_api.assignments[b.key].is_active is True

    async def test_concurrent_toggles_do_not_interfere(self, orchestrator, fake_api):
        tuples = build_tuples([1, 2, 3], [10], ["s1"])
        await orchestrator.submit(tuples)
        results = await asyncio.gather(*(orchestrator.toggle_status(t) for t in tuples))
        assert [r.is_active for r in results] == [False, False, False]
        assert all(not fake_api.assignments[t.key].is_active for t in tuples)

    async def test_remove_is_idempotent(self, orchestrator, fake_api):
        (t,) = build_tuples([1], [10], ["s1"])
        await orchestrator.submit([t])
        await orchestrator.remove(t)
        await orchestrator.remove(t)
        assert t.key not in fake_api.assignments
        assert [name for name, _ in fake_api.calls].count("remove") == 2

    async def test_remove_propagates_other_errors(self, orchestrator, fake_api):
        async def forbidden(assignment):
            raise PermissionDeniedError("Forbidden")

        fake_api.remove_assignment = forbidden
        (t,) = build_tuples([1], [10], ["s1"])
        with pytest.raises(PermissionDeniedError):
            await orchestrator.remove(t)
