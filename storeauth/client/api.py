"""HTTP client for the remote admin API.

Wraps ``httpx.AsyncClient`` with bearer-token auth, envelope unwrapping
(``{"success": true, "data": {...}}``) and exponential-backoff retries for
network errors and 5xx responses. Non-2xx responses are translated into the
:mod:`storeauth.exceptions` hierarchy.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, TypeVar

import httpx
from pydantic import BaseModel

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
from storeauth.exceptions import StoreAuthError, TransportError, error_from_response

logger = logging.getLogger("storeauth.client")

M = TypeVar("M", bound=BaseModel)


def _unwrap(payload: Any, *keys: str) -> Any:
    """Strip the response envelope, then the first present *keys* entry."""
    data = payload
    if isinstance(data, dict) and ("data" in data or "success" in data):
        data = data.get("data")
    for key in keys:
        if isinstance(data, dict) and key in data:
            data = data[key]
            break
    # Paginated listings nest the rows under a second "data".
    if isinstance(data, dict) and isinstance(data.get("data"), list):
        data = data["data"]
    return data


def _models(model: type[M], payload: Any, *keys: str) -> list[M]:
    rows = _unwrap(payload, *keys)
    if not isinstance(rows, list):
        raise TransportError(f"Expected a list of {model.__name__} in response")
    return [model.model_validate(row) for row in rows]


def _safe_json(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return None


class AdminApiClient:
    """Async client for roles, hierarchy, rules and assignments endpoints."""

    def __init__(
        self,
        base_url: str | None = None,
        token: str | None = None,
        *,
        timeout: float | None = None,
        retry_attempts: int | None = None,
        retry_delay: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        from storeauth.config import settings

        self.base_url = (base_url or settings.api_base_url).rstrip("/")
        self.retry_attempts = settings.retry_attempts if retry_attempts is None else retry_attempts
        self.retry_delay = settings.retry_delay if retry_delay is None else retry_delay
        token = token if token is not None else settings.api_token

        headers = {"Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers=headers,
            timeout=timeout if timeout is not None else settings.request_timeout,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> AdminApiClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    # -- transport --------------------------------------------------------

    async def _request(
        self,
        method: str,
        url: str,
        *,
        json: Any = None,
        params: dict[str, Any] | None = None,
    ) -> Any:
        attempt = 0
        while True:
            start = time.monotonic()
            cause: Exception | None = None
            try:
                response = await self._client.request(method, url, json=json, params=params)
            except httpx.HTTPError as exc:
                cause = exc
                error: StoreAuthError = TransportError(f"{method} {url} failed: {exc}")
            else:
                duration_ms = round((time.monotonic() - start) * 1000, 2)
                logger.debug(
                    "%s %s -> %d",
                    method,
                    url,
                    response.status_code,
                    extra={"status_code": response.status_code, "duration_ms": duration_ms},
                )
                if response.is_success:
                    if not response.content:
                        return None
                    try:
                        return response.json()
                    except ValueError as exc:
                        raise TransportError(f"{method} {url} returned invalid JSON") from exc
                error = error_from_response(response.status_code, _safe_json(response))

            if isinstance(error, TransportError) and attempt < self.retry_attempts:
                delay = self.retry_delay * (2**attempt)
                attempt += 1
                logger.warning(
                    "Retrying %s %s in %.2fs (attempt %d/%d): %s",
                    method,
                    url,
                    delay,
                    attempt,
                    self.retry_attempts,
                    error.message,
                )
                await asyncio.sleep(delay)
                continue
            raise error from cause

    # -- fetch ------------------------------------------------------------

    async def get_roles(self, store_id: str | None = None) -> list[Role]:
        params = {"store_id": store_id} if store_id is not None else None
        return _models(Role, await self._request("GET", "/roles", params=params), "roles")

    async def get_permissions(self) -> list[Permission]:
        return _models(Permission, await self._request("GET", "/permissions"), "permissions")

    async def get_hierarchy(self, store_id: str) -> list[HierarchyEdge]:
        payload = await self._request(
            "GET", "/role-hierarchy/store", params={"store_id": store_id}
        )
        return _models(HierarchyEdge, payload, "hierarchies")

    async def get_auth_rules(self, filters: dict[str, Any] | None = None) -> list[AuthRule]:
        payload = await self._request("GET", "/auth-rules", params=filters or None)
        return _models(AuthRule, payload, "rules")

    async def get_users(self, filters: dict[str, Any] | None = None) -> list[User]:
        payload = await self._request("GET", "/users", params=filters or None)
        return _models(User, payload, "users")

    async def get_stores(self, filters: dict[str, Any] | None = None) -> list[Store]:
        payload = await self._request("GET", "/stores", params=filters or None)
        return _models(Store, payload, "stores")

    async def get_store_assignments(self, store_id: str) -> list[AssignmentTuple]:
        payload = await self._request(
            "GET", "/user-role-store/store-assignments", params={"store_id": store_id}
        )
        return _models(AssignmentTuple, payload, "assignments")

    async def get_user_assignments(self, user_id: int) -> list[AssignmentTuple]:
        payload = await self._request(
            "GET", "/user-role-store/user-assignments", params={"user_id": user_id}
        )
        return _models(AssignmentTuple, payload, "assignments")

    async def get_profile(self) -> dict[str, Any]:
        profile = _unwrap(await self._request("GET", "/auth/me"), "user")
        if not isinstance(profile, dict):
            raise TransportError("Expected a user profile object in response")
        return profile

    # -- mutate -----------------------------------------------------------

    async def create_hierarchy_edge(self, edge: HierarchyEdge) -> HierarchyEdge:
        body = {
            "store_id": edge.store_id,
            "higher_role_id": edge.higher_role_id,
            "lower_role_id": edge.lower_role_id,
            "metadata": {"created_by": edge.created_by, "reason": edge.reason},
            "is_active": edge.is_active,
        }
        created = _unwrap(await self._request("POST", "/role-hierarchy", json=body), "hierarchy")
        if not isinstance(created, dict):
            return edge
        if {"store_id", "higher_role_id", "lower_role_id"} <= created.keys():
            return HierarchyEdge.model_validate(created)
        return edge.model_copy(update={"id": created.get("id")})

    async def remove_hierarchy_edge(self, edge: HierarchyEdge) -> None:
        body = {
            "store_id": edge.store_id,
            "higher_role_id": edge.higher_role_id,
            "lower_role_id": edge.lower_role_id,
        }
        await self._request("POST", "/role-hierarchy/remove", json=body)

    async def create_auth_rule(self, draft: AuthRuleDraft) -> AuthRule:
        body = draft.model_dump(mode="json", exclude_none=True)
        created = _unwrap(await self._request("POST", "/auth-rules", json=body), "rule")
        if not isinstance(created, dict):
            raise TransportError("Expected the created rule in response")
        return AuthRule.model_validate(created)

    async def toggle_auth_rule(self, rule_id: int, is_active: bool) -> AuthRule | None:
        payload = await self._request(
            "POST", f"/auth-rules/{rule_id}/toggle-status", json={"is_active": is_active}
        )
        updated = _unwrap(payload, "rule")
        if isinstance(updated, dict) and "id" in updated:
            return AuthRule.model_validate(updated)
        return None

    async def assign_user_role_store(self, assignment: AssignmentTuple) -> AssignmentTuple:
        body = assignment.model_dump(mode="json", exclude_none=True)
        created = _unwrap(
            await self._request("POST", "/user-role-store/assign", json=body), "assignment"
        )
        if isinstance(created, dict) and {"user_id", "role_id", "store_id"} <= created.keys():
            return AssignmentTuple.model_validate(created)
        return assignment

    async def toggle_assignment_status(self, assignment: AssignmentTuple) -> AssignmentTuple:
        body = {
            "user_id": assignment.user_id,
            "role_id": assignment.role_id,
            "store_id": assignment.store_id,
        }
        updated = _unwrap(
            await self._request("POST", "/user-role-store/toggle", json=body), "assignment"
        )
        if isinstance(updated, dict) and "is_active" in updated:
            return assignment.model_copy(update={"is_active": bool(updated["is_active"])})
        return assignment.model_copy(update={"is_active": not assignment.is_active})

    async def remove_assignment(self, assignment: AssignmentTuple) -> None:
        body = {
            "user_id": assignment.user_id,
            "role_id": assignment.role_id,
            "store_id": assignment.store_id,
        }
        await self._request("POST", "/user-role-store/remove", json=body)
