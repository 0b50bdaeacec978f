"""Shared fixtures for storeauth tests."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

import pytest

from storeauth.core.cache import MemoryStore, PermissionSnapshotCache
from storeauth.core.hierarchy import HierarchyGraph
from storeauth.core.models import (
    AssignmentTuple,
    AuthRule,
    AuthRuleDraft,
    HierarchyEdge,
    Permission,
    Role,
    Store,
    User,
)
from storeauth.exceptions import NotFoundError

EPOCH = datetime(2025, 1, 15, 9, 0, tzinfo=timezone.utc)


class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime = EPOCH) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


class FakeAdminApi:
    """In-memory stand-in for the remote admin API.

    ``assign_failures`` / ``remove_edge_failures`` map a tuple key or edge id
    to the exception the matching call should raise.
    """

    def __init__(self) -> None:
        self.roles: list[Role] = []
        self.permissions: list[Permission] = []
        self.hierarchy: dict[str, list[HierarchyEdge]] = {}
        self.rules: list[AuthRule] = []
        self.users: list[User] = []
        self.stores: list[Store] = []
        self.profile: dict[str, Any] = {}
        self.assignments: dict[tuple[int, int, str], AssignmentTuple] = {}
        self.assign_failures: dict[tuple[int, int, str], Exception] = {}
        self.remove_edge_failures: dict[int, Exception] = {}
        self.calls: list[tuple[str, Any]] = []
        self._next_id = 100

    def _id(self) -> int:
        self._next_id += 1
        return self._next_id

    # Fetch
    async def get_roles(self, store_id: str | None = None) -> list[Role]:
        self.calls.append(("get_roles", store_id))
        return list(self.roles)

    async def get_permissions(self) -> list[Permission]:
        return list(self.permissions)

    async def get_hierarchy(self, store_id: str) -> list[HierarchyEdge]:
        self.calls.append(("get_hierarchy", store_id))
        return list(self.hierarchy.get(store_id, []))

    async def get_auth_rules(self, filters: dict[str, Any] | None = None) -> list[AuthRule]:
        self.calls.append(("get_auth_rules", filters))
        return list(self.rules)

    async def get_users(self, filters: dict[str, Any] | None = None) -> list[User]:
        return list(self.users)

    async def get_stores(self, filters: dict[str, Any] | None = None) -> list[Store]:
        return list(self.stores)

    async def get_profile(self) -> dict[str, Any]:
        self.calls.append(("get_profile", None))
        return dict(self.profile)

    # Mutate
    async def create_hierarchy_edge(self, edge: HierarchyEdge) -> HierarchyEdge:
        created = edge.model_copy(update={"id": self._id()})
        self.hierarchy.setdefault(edge.store_id, []).append(created)
        self.calls.append(("create_hierarchy_edge", created.id))
        return created

    async def remove_hierarchy_edge(self, edge: HierarchyEdge) -> None:
        self.calls.append(("remove_hierarchy_edge", edge.id))
        if edge.id in self.remove_edge_failures:
            raise self.remove_edge_failures[edge.id]
        edges = self.hierarchy.get(edge.store_id, [])
        self.hierarchy[edge.store_id] = [e for e in edges if e.id != edge.id]

    async def create_auth_rule(self, draft: AuthRuleDraft) -> AuthRule:
        rule = AuthRule(id=self._id(), **draft.model_dump())
        self.rules.append(rule)
        self.calls.append(("create_auth_rule", rule.id))
        return rule

    async def toggle_auth_rule(self, rule_id: int, is_active: bool) -> AuthRule | None:
        self.calls.append(("toggle_auth_rule", (rule_id, is_active)))
        return None

    async def assign_user_role_store(self, assignment: AssignmentTuple) -> AssignmentTuple:
        self.calls.append(("assign", assignment.key))
        if assignment.key in self.assign_failures:
            raise self.assign_failures[assignment.key]
        self.assignments[assignment.key] = assignment
        return assignment

    async def toggle_assignment_status(self, assignment: AssignmentTuple) -> AssignmentTuple:
        current = self.assignments.get(assignment.key)
        if current is None:
            raise NotFoundError("Assignment not found")
        updated = current.model_copy(update={"is_active": not current.is_active})
        self.assignments[assignment.key] = updated
        return updated

    async def remove_assignment(self, assignment: AssignmentTuple) -> None:
        self.calls.append(("remove", assignment.key))
        if self.assignments.pop(assignment.key, None) is None:
            raise NotFoundError("Assignment not found")


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def cache(memory_store, clock):
    """Snapshot cache over an in-memory store with a frozen clock."""
    return PermissionSnapshotCache(memory_store, clock=clock)


@pytest.fixture
def graph():
    return HierarchyGraph()


@pytest.fixture
def fake_api():
    return FakeAdminApi()


@pytest.fixture
def profile():
    """A ``/auth/me`` style profile for a store manager."""
    return {
        "id": 7,
        "name": "Dana",
        "all_permissions": [
            {"id": 1, "name": "users.view"},
            {"id": 2, "name": "users.edit"},
            {"id": 3, "name": "assignments.create"},
        ],
        "global_roles": [
            {
                "id": 10,
                "name": "store-manager",
                "permissions": [
                    {"id": 1, "name": "users.view"},
                    {"id": 3, "name": "assignments.create"},
                ],
            },
            {
                "id": 11,
                "name": "auditor",
                "permissions": [{"id": 1, "name": "users.view"}],
            },
        ],
        "global_permissions": [{"id": 2, "name": "users.edit"}],
        "stores": [{"id": 1, "name": "Downtown"}, {"id": "s-2", "name": "Airport"}],
        "summary": {"total_stores": 2, "total_roles": 2},
    }
