"""Service layer: binds the in-memory core to the remote admin API."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from datetime import timedelta
from typing import Any

from storeauth.client.base import AdminApi
from storeauth.core.cache import PermissionSnapshotCache, get_snapshot_cache
from storeauth.core.hierarchy import HierarchyGraph
from storeauth.core.models import (
    AuthRule,
    AuthRuleDraft,
    BatchDeleteResult,
    DeleteFailure,
    EdgeValidation,
    HierarchyEdge,
    PermissionSnapshot,
    RoleTreeNode,
)
from storeauth.core.rules import toggle_rule, validate_rule_draft
from storeauth.exceptions import (
    ConflictError,
    NotFoundError,
    StoreAuthError,
    describe_failure,
)

logger = logging.getLogger("storeauth.service")


class HierarchyService:
    """Keeps a :class:`HierarchyGraph` in step with the remote hierarchy."""

    def __init__(self, api: AdminApi, graph: HierarchyGraph | None = None) -> None:
        self.api = api
        self.graph = graph or HierarchyGraph()

    async def refresh(self, store_id: str) -> list[HierarchyEdge]:
        """Replace the local edges of *store_id* with the remote ones."""
        edges = await self.api.get_hierarchy(store_id)
        self.graph.load(store_id, [e for e in edges if e.is_active])
        return self.graph.edges(store_id)

    async def validate(
        self,
        store_id: str,
        higher_role_id: int,
        lower_role_id: int,
        *,
        refresh: bool = True,
    ) -> EdgeValidation:
        if refresh:
            await self.refresh(store_id)
        return self.graph.validate(store_id, higher_role_id, lower_role_id)

    async def create(
        self,
        store_id: str,
        higher_role_id: int,
        lower_role_id: int,
        *,
        created_by: str | None = None,
        reason: str | None = None,
    ) -> HierarchyEdge:
        """Create an edge remotely, re-checking it against fresh data first.

        Raises:
            ConflictError: the edge exists or would close a cycle.
        """
        check = await self.validate(store_id, higher_role_id, lower_role_id)
        if not check.ok:
            raise ConflictError(
                check.reason or "Conflict", reason="exists" if check.exists else "cycle"
            )

        candidate = HierarchyEdge(
            store_id=store_id,
            higher_role_id=higher_role_id,
            lower_role_id=lower_role_id,
            created_by=created_by,
            reason=reason,
        )
        created = await self.api.create_hierarchy_edge(candidate)
        edge = self.graph.create(
            store_id,
            higher_role_id,
            lower_role_id,
            created_by=created_by,
            reason=reason,
            edge_id=created.id,
        )
        logger.info(
            "Hierarchy edge %d -> %d created",
            higher_role_id,
            lower_role_id,
            extra={"store_id": store_id, "edge_id": edge.id},
        )
        return edge

    async def delete_batch(self, edge_ids: Iterable[int]) -> BatchDeleteResult:
        """Remove each edge remotely and locally; failures stay per item."""
        result = BatchDeleteResult()
        for edge_id in edge_ids:
            edge = self.graph.get_edge(edge_id)
            if edge is None:
                result.failed.append(DeleteFailure(id=edge_id, reason="Edge not found"))
                continue
            try:
                await self.api.remove_hierarchy_edge(edge)
            except NotFoundError:
                logger.debug("Edge already removed remotely", extra={"edge_id": edge_id})
            except StoreAuthError as exc:
                _, message, _ = describe_failure(exc)
                logger.warning(
                    "Failed to delete hierarchy edge: %s", exc.message, extra={"edge_id": edge_id}
                )
                result.failed.append(DeleteFailure(id=edge_id, reason=message))
                continue
            except Exception as exc:
                logger.exception(
                    "Unexpected error deleting hierarchy edge", extra={"edge_id": edge_id}
                )
                _, message, _ = describe_failure(exc)
                result.failed.append(DeleteFailure(id=edge_id, reason=message))
                continue
            self.graph.remove(edge_id)
            result.deleted.append(edge_id)

        logger.info("Hierarchy batch delete: %s", result.summary())
        return result

    async def tree(self, store_id: str) -> list[RoleTreeNode]:
        roles = await self.api.get_roles(store_id)
        await self.refresh(store_id)
        return self.graph.build_tree(store_id, roles)


class AuthRuleService:
    """Fetch, create and toggle authorization rules."""

    def __init__(self, api: AdminApi) -> None:
        self.api = api

    async def list_rules(self, filters: Mapping[str, Any] | None = None) -> list[AuthRule]:
        return await self.api.get_auth_rules(dict(filters) if filters else None)

    async def create(self, data: Mapping[str, Any] | AuthRuleDraft) -> AuthRule:
        """Validate *data* locally, then submit it.

        Raises:
            ValidationError: the draft is rejected locally or by the API.
        """
        draft = validate_rule_draft(data)
        rule = await self.api.create_auth_rule(draft)
        logger.info("Authorization rule created", extra={"rule_id": rule.id})
        return rule

    async def toggle(self, rule: AuthRule) -> AuthRule:
        flipped = toggle_rule(rule)
        await self.api.toggle_auth_rule(rule.id, flipped.is_active)
        logger.info(
            "Authorization rule %s",
            "activated" if flipped.is_active else "deactivated",
            extra={"rule_id": rule.id},
        )
        return flipped


class SessionService:
    """Populates the permission snapshot cache at session start."""

    def __init__(
        self,
        api: AdminApi,
        cache: PermissionSnapshotCache | None = None,
        *,
        ttl: timedelta | None = None,
    ) -> None:
        if ttl is None:
            from storeauth.config import settings

            ttl = timedelta(minutes=settings.cache_ttl_minutes)
        self.api = api
        self.cache = cache or get_snapshot_cache()
        self.ttl = ttl

    async def initialize(self) -> PermissionSnapshot:
        """Fetch the acting user's profile and cache a fresh snapshot."""
        profile = await self.api.get_profile()
        snapshot = PermissionSnapshot.from_profile(profile, ttl=self.ttl, now=self.cache.now())
        self.cache.save(snapshot)
        logger.info(
            "Permission snapshot initialized: %d permissions, %d roles, %d stores",
            len(snapshot.all_permissions),
            len(snapshot.global_roles),
            len(snapshot.stores),
        )
        return snapshot

    async def current(self) -> PermissionSnapshot:
        """Cached snapshot, refetched when missing or expired."""
        return self.cache.load() or await self.initialize()

    def logout(self) -> None:
        self.cache.clear()
