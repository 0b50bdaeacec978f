"""Bulk user-role-store assignment.

An operator checks a subset of users, roles and stores; the orchestrator
expands that selection into one :class:`AssignmentTuple` per combination and
submits each one independently.  A failing tuple never aborts the rest of the
run, and results are reported in submission order.

Stages of one run::

    IDLE -> SELECTING -> CONFIRMING -> SUBMITTING -> COMPLETED
                 ^            |                    \\-> COMPLETED_WITH_ERRORS
                 +--cancel----+
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field, replace
from enum import StrEnum
from typing import Any

from storeauth.client.base import AdminApi
from storeauth.core.models import AssignmentStep, AssignmentTuple
from storeauth.exceptions import (
    NotFoundError,
    StoreAuthError,
    ValidationError,
    describe_failure,
)

logger = logging.getLogger("storeauth.assignments")


class Stage(StrEnum):
    IDLE = "idle"
    SELECTING = "selecting"
    CONFIRMING = "confirming"
    SUBMITTING = "submitting"
    COMPLETED = "completed"
    COMPLETED_WITH_ERRORS = "completed_with_errors"


FINISHED_STAGES: frozenset[Stage] = frozenset({Stage.COMPLETED, Stage.COMPLETED_WITH_ERRORS})


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TupleFailure:
    """One tuple that could not be assigned, with a displayable reason."""

    tuple: AssignmentTuple
    reason: str
    kind: str
    field_errors: dict[str, list[str]] = field(default_factory=dict)


@dataclass(frozen=True)
class SubmitResult:
    """Per-tuple outcome of a bulk submit, both lists in submission order."""

    succeeded: list[AssignmentTuple] = field(default_factory=list)
    failed: list[TupleFailure] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.succeeded) + len(self.failed)

    @property
    def has_errors(self) -> bool:
        return bool(self.failed)

    def summary(self) -> str:
        """Counts plus the distinct failure reasons, e.g. ``"3 succeeded, 1 failed: ..."``."""
        text = f"{len(self.succeeded)} succeeded, {len(self.failed)} failed"
        if self.failed:
            reasons = dict.fromkeys(f.reason for f in self.failed)
            text += ": " + "; ".join(reasons)
        return text


# ---------------------------------------------------------------------------
# Session state
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AssignmentSession:
    """Everything one bulk-assignment run knows, passed between stages.

    Selections keep the order in which they were checked.
    """

    selected_users: tuple[int, ...] = ()
    selected_roles: tuple[int, ...] = ()
    selected_stores: tuple[str, ...] = ()
    stage: Stage = Stage.IDLE
    result: SubmitResult | None = None
    metadata: dict[str, Any] | None = None
    is_active: bool = True


def _toggled(selection: tuple[Any, ...], item: Any) -> tuple[Any, ...]:
    if item in selection:
        return tuple(x for x in selection if x != item)
    return (*selection, item)


def _unique(items: Iterable[Any]) -> list[Any]:
    return list(dict.fromkeys(items))


def build_tuples(
    users: Iterable[int],
    roles: Iterable[int],
    stores: Iterable[str | int],
    *,
    metadata: dict[str, Any] | None = None,
    is_active: bool = True,
) -> list[AssignmentTuple]:
    """Expand the selected users, roles and stores into assignment tuples.

    The result is the cross product of the three selections in user-major
    order: ``(u1, r1, s1), (u1, r1, s2), (u2, r1, s1), ...``.  Repeated ids
    are collapsed.

    Raises:
        ValidationError: any of the three selections is empty.
    """
    user_ids = _unique(users)
    role_ids = _unique(roles)
    store_ids = _unique(str(s) for s in stores)
    _check_selection(user_ids, role_ids, store_ids)
    return [
        AssignmentTuple(
            user_id=user_id,
            role_id=role_id,
            store_id=store_id,
            metadata=metadata,
            is_active=is_active,
        )
        for user_id in user_ids
        for role_id in role_ids
        for store_id in store_ids
    ]


def _check_selection(users: Sequence[Any], roles: Sequence[Any], stores: Sequence[Any]) -> None:
    errors: dict[str, list[str]] = {}
    if not users:
        errors["users"] = ["Select at least one user"]
    if not roles:
        errors["roles"] = ["Select at least one role"]
    if not stores:
        errors["stores"] = ["Select at least one store"]
    if errors:
        raise ValidationError("Please select at least one user, role, and store", errors)


# ---------------------------------------------------------------------------
# Progress
# ---------------------------------------------------------------------------


def steps(session: AssignmentSession) -> list[AssignmentStep]:
    """The five conceptual stages of a run and whether each is done."""
    confirmed = session.stage is Stage.SUBMITTING or session.stage in FINISHED_STAGES
    return [
        AssignmentStep(id="users", title="Select users", completed=bool(session.selected_users)),
        AssignmentStep(id="roles", title="Select roles", completed=bool(session.selected_roles)),
        AssignmentStep(
            id="stores", title="Select stores", completed=bool(session.selected_stores)
        ),
        AssignmentStep(id="confirm", title="Confirm", completed=confirmed),
        AssignmentStep(
            id="submit", title="Submit", completed=session.stage in FINISHED_STAGES
        ),
    ]


def progress(session: AssignmentSession) -> tuple[int, int]:
    """``(completed_steps, total_steps)``; counts stages, not tuples."""
    current = steps(session)
    return sum(1 for s in current if s.completed), len(current)


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


class BulkAssignmentOrchestrator:
    """Drive assignment sessions and submit their tuples through *api*.

    ``concurrency`` bounds how many assignment calls are in flight at once;
    with the default of 1 tuples are sent strictly one after another.
    """

    def __init__(self, api: AdminApi, *, concurrency: int | None = None) -> None:
        if concurrency is None:
            from storeauth.config import settings

            concurrency = settings.assignment_concurrency
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self._api = api
        self.concurrency = concurrency

    # -- session transitions ---------------------------------------------

    def start(
        self, *, metadata: dict[str, Any] | None = None, is_active: bool = True
    ) -> AssignmentSession:
        return AssignmentSession(stage=Stage.SELECTING, metadata=metadata, is_active=is_active)

    def toggle_user(self, session: AssignmentSession, user_id: int) -> AssignmentSession:
        self._expect(session, Stage.SELECTING)
        return replace(session, selected_users=_toggled(session.selected_users, user_id))

    def toggle_role(self, session: AssignmentSession, role_id: int) -> AssignmentSession:
        self._expect(session, Stage.SELECTING)
        return replace(session, selected_roles=_toggled(session.selected_roles, role_id))

    def toggle_store(self, session: AssignmentSession, store_id: str | int) -> AssignmentSession:
        self._expect(session, Stage.SELECTING)
        return replace(session, selected_stores=_toggled(session.selected_stores, str(store_id)))

    @staticmethod
    def can_assign(session: AssignmentSession) -> bool:
        return bool(session.selected_users and session.selected_roles and session.selected_stores)

    def confirm(self, session: AssignmentSession) -> AssignmentSession:
        """Move to CONFIRMING; requires a user, a role and a store."""
        self._expect(session, Stage.SELECTING)
        _check_selection(session.selected_users, session.selected_roles, session.selected_stores)
        return replace(session, stage=Stage.CONFIRMING)

    def cancel_confirmation(self, session: AssignmentSession) -> AssignmentSession:
        self._expect(session, Stage.CONFIRMING)
        return replace(session, stage=Stage.SELECTING)

    async def submit_session(self, session: AssignmentSession) -> AssignmentSession:
        """Submit every tuple of a confirmed session and record the result."""
        self._expect(session, Stage.CONFIRMING)
        submitting = replace(session, stage=Stage.SUBMITTING)
        tuples = build_tuples(
            submitting.selected_users,
            submitting.selected_roles,
            submitting.selected_stores,
            metadata=submitting.metadata,
            is_active=submitting.is_active,
        )
        result = await self.submit(tuples)
        stage = Stage.COMPLETED_WITH_ERRORS if result.has_errors else Stage.COMPLETED
        return replace(submitting, stage=stage, result=result)

    @staticmethod
    def _expect(session: AssignmentSession, stage: Stage) -> None:
        if session.stage is not stage:
            raise ValidationError(
                f"Action not allowed while {session.stage.value}",
                {"stage": [f"Expected stage {stage.value}, got {session.stage.value}"]},
            )

    # -- remote operations -----------------------------------------------

    async def submit(self, tuples: Sequence[AssignmentTuple]) -> SubmitResult:
        """Assign every tuple; failures are collected, never raised."""
        semaphore = asyncio.Semaphore(self.concurrency)

        async def attempt(assignment: AssignmentTuple) -> TupleFailure | None:
            async with semaphore:
                try:
                    await self._api.assign_user_role_store(assignment)
                except StoreAuthError as exc:
                    kind, reason, field_errors = describe_failure(exc)
                    logger.warning(
                        "Assignment failed (%s): %s",
                        kind,
                        exc.message,
                        extra=_tuple_extra(assignment),
                    )
                    return TupleFailure(assignment, reason, kind, field_errors)
                except Exception as exc:
                    logger.exception(
                        "Unexpected error assigning role", extra=_tuple_extra(assignment)
                    )
                    kind, reason, field_errors = describe_failure(exc)
                    return TupleFailure(assignment, reason, kind, field_errors)
            return None

        outcomes = await asyncio.gather(*(attempt(t) for t in tuples))

        succeeded: list[AssignmentTuple] = []
        failed: list[TupleFailure] = []
        for assignment, outcome in zip(tuples, outcomes):
            if outcome is None:
                succeeded.append(assignment)
            else:
                failed.append(outcome)
        result = SubmitResult(succeeded=succeeded, failed=failed)
        logger.info("Bulk assignment finished: %s", result.summary())
        return result

    async def toggle_status(self, assignment: AssignmentTuple) -> AssignmentTuple:
        """Flip ``is_active`` of one existing assignment."""
        updated = await self._api.toggle_assignment_status(assignment)
        state = "activated" if updated.is_active else "deactivated"
        logger.info("Assignment %s", state, extra=_tuple_extra(updated))
        return updated

    async def remove(self, assignment: AssignmentTuple) -> None:
        """Remove one assignment; an already-absent assignment is not an error."""
        try:
            await self._api.remove_assignment(assignment)
        except NotFoundError:
            logger.debug("Assignment already absent", extra=_tuple_extra(assignment))
            return
        logger.info("Assignment removed", extra=_tuple_extra(assignment))


def _tuple_extra(assignment: AssignmentTuple) -> dict[str, Any]:
    return {
        "user_id": assignment.user_id,
        "role_id": assignment.role_id,
        "store_id": assignment.store_id,
    }
