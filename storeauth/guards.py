"""Access guards over the cached permission snapshot.

Guards answer "may the current session do this?" synchronously from
:class:`~storeauth.core.cache.PermissionSnapshotCache`.  They fail closed: no
snapshot (never loaded, expired or corrupt) means ``unauthenticated``.

Usage::

    decision = check_access(cache, permissions=["users.view", "users.edit"])

    @require_access(roles=["store-manager"], permissions=["assignments.create"])
    async def assign(...): ...
"""

from __future__ import annotations

import functools
import inspect
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from storeauth.core.cache import PermissionSnapshotCache, get_snapshot_cache
from storeauth.exceptions import NotAuthenticatedError, PermissionDeniedError


class CheckType(StrEnum):
    """How a list of required names is combined."""

    ANY = "any"
    ALL = "all"


class AccessDeniedReason(StrEnum):
    UNAUTHENTICATED = "unauthenticated"
    INSUFFICIENT_PERMISSIONS = "insufficient_permissions"
    INSUFFICIENT_ROLES = "insufficient_roles"


@dataclass(frozen=True)
class AccessDecision:
    allowed: bool
    reason: AccessDeniedReason | None = None

    def __bool__(self) -> bool:
        return self.allowed


def check_access(
    cache: PermissionSnapshotCache,
    *,
    permissions: Iterable[str] = (),
    permission_check: CheckType = CheckType.ANY,
    roles: Iterable[str] = (),
    role_check: CheckType = CheckType.ANY,
) -> AccessDecision:
    """Decide access from the snapshot; empty requirement lists are skipped."""
    if not cache.has_snapshot():
        return AccessDecision(False, AccessDeniedReason.UNAUTHENTICATED)

    wanted_permissions = list(permissions)
    if wanted_permissions:
        if permission_check is CheckType.ALL:
            ok = cache.has_all_permissions(wanted_permissions)
        else:
            ok = cache.has_any_permission(wanted_permissions)
        if not ok:
            return AccessDecision(False, AccessDeniedReason.INSUFFICIENT_PERMISSIONS)

    wanted_roles = list(roles)
    if wanted_roles:
        if role_check is CheckType.ALL:
            ok = cache.has_all_roles(wanted_roles)
        else:
            ok = cache.has_any_role(wanted_roles)
        if not ok:
            return AccessDecision(False, AccessDeniedReason.INSUFFICIENT_ROLES)

    return AccessDecision(True)


def _raise_for(decision: AccessDecision, permissions: list[str], roles: list[str]) -> None:
    if decision.reason is AccessDeniedReason.UNAUTHENTICATED:
        raise NotAuthenticatedError("Authentication required. Please login")
    if decision.reason is AccessDeniedReason.INSUFFICIENT_PERMISSIONS:
        raise PermissionDeniedError(f"Requires permissions: {', '.join(permissions)}")
    raise PermissionDeniedError(f"Requires roles: {', '.join(roles)}")


def require_access(
    *,
    permissions: Iterable[str] = (),
    permission_check: CheckType = CheckType.ANY,
    roles: Iterable[str] = (),
    role_check: CheckType = CheckType.ANY,
    cache: PermissionSnapshotCache | None = None,
) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """Decorator factory guarding a sync or async callable.

    The check runs on every call. Raises ``NotAuthenticatedError`` without a
    snapshot and ``PermissionDeniedError`` when requirements are not met.
    """
    required_permissions = list(permissions)
    required_roles = list(roles)

    def _check() -> None:
        decision = check_access(
            cache or get_snapshot_cache(),
            permissions=required_permissions,
            permission_check=permission_check,
            roles=required_roles,
            role_check=role_check,
        )
        if not decision.allowed:
            _raise_for(decision, required_permissions, required_roles)

    def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
        if inspect.iscoroutinefunction(func):

            @functools.wraps(func)
            async def async_wrapper(*args: Any, **kwargs: Any) -> Any:
                _check()
                return await func(*args, **kwargs)

            return async_wrapper

        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            _check()
            return func(*args, **kwargs)

        return wrapper

    return decorator
