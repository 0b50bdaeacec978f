"""Protocol for the remote admin API consumed by the services."""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable

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


@runtime_checkable
class AdminApi(Protocol):
    """Fetch and mutate operations of the remote admin service.

    Implementations raise :mod:`storeauth.exceptions` errors: 403 as
    ``PermissionDeniedError``, 422 as ``ValidationError`` and network or
    server failures as ``TransportError``.
    """

    # Fetch
    async def get_roles(self, store_id: str | None = None) -> list[Role]: ...

    async def get_permissions(self) -> list[Permission]: ...

    async def get_hierarchy(self, store_id: str) -> list[HierarchyEdge]: ...

    async def get_auth_rules(self, filters: dict[str, Any] | None = None) -> list[AuthRule]: ...

    async def get_users(self, filters: dict[str, Any] | None = None) -> list[User]: ...

    async def get_stores(self, filters: dict[str, Any] | None = None) -> list[Store]: ...

    async def get_profile(self) -> dict[str, Any]: ...

    # Mutate
    async def create_hierarchy_edge(self, edge: HierarchyEdge) -> HierarchyEdge: ...

    async def remove_hierarchy_edge(self, edge: HierarchyEdge) -> None: ...

    async def create_auth_rule(self, draft: AuthRuleDraft) -> AuthRule: ...

    async def toggle_auth_rule(self, rule_id: int, is_active: bool) -> AuthRule | None: ...

    async def assign_user_role_store(self, assignment: AssignmentTuple) -> AssignmentTuple: ...

    async def toggle_assignment_status(self, assignment: AssignmentTuple) -> AssignmentTuple: ...

    async def remove_assignment(self, assignment: AssignmentTuple) -> None: ...
