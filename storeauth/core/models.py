"""Domain models for the authorization and assignment core.

Field names follow the remote admin API so fetched payloads validate
directly:
- Role / Permission: guard-scoped, ``guard_name`` is the guard context
- HierarchyEdge: "higher role manages lower role" within one store
- AuthRule: per-route authorization rule with ANY/ALL requirements
- PermissionSnapshot: time-bound copy of what the current session may do
- AssignmentTuple: one (user, role, store) binding
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class HttpMethod(str, Enum):
    GET = "GET"
    POST = "POST"
    PUT = "PUT"
    PATCH = "PATCH"
    DELETE = "DELETE"
    OPTIONS = "OPTIONS"
    HEAD = "HEAD"


# ---------------------------------------------------------------------------
# Roles, permissions, stores, users
# ---------------------------------------------------------------------------


class Permission(BaseModel):
    id: int
    name: str
    guard_name: str = "web"


class Role(BaseModel):
    """A guard-scoped role; names are unique only within one guard."""

    id: int
    name: str
    guard_name: str = "web"
    permissions: list[Permission] = Field(default_factory=list)

    @field_validator("permissions", mode="before")
    @classmethod
    def _none_to_empty(cls, v: Any) -> Any:
        return [] if v is None else v


class Store(BaseModel):
    id: str
    name: str
    is_active: bool = True
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, v: Any) -> Any:
        return str(v) if isinstance(v, int) else v

    @field_validator("metadata", mode="before")
    @classmethod
    def _none_to_empty(cls, v: Any) -> Any:
        return {} if v is None else v


class User(BaseModel):
    id: int
    name: str
    email: str | None = None
    is_active: bool = True


# ---------------------------------------------------------------------------
# Role hierarchy
# ---------------------------------------------------------------------------


class HierarchyEdge(BaseModel):
    """Directed "manages" relation between two roles within one store."""

    id: int | None = None
    store_id: str
    higher_role_id: int
    lower_role_id: int
    created_by: str | None = None
    reason: str | None = None
    is_active: bool = True

    @model_validator(mode="before")
    @classmethod
    def _flatten_metadata(cls, data: Any) -> Any:
        # The API nests created_by / reason under ``metadata``.
        if isinstance(data, dict) and isinstance(data.get("metadata"), dict):
            data = dict(data)
            meta = data.pop("metadata")
            data.setdefault("created_by", meta.get("created_by"))
            data.setdefault("reason", meta.get("reason"))
        if isinstance(data, dict) and isinstance(data.get("store_id"), int):
            data = {**data, "store_id": str(data["store_id"])}
        return data

    @property
    def pair(self) -> tuple[int, int]:
        return (self.higher_role_id, self.lower_role_id)


class EdgeValidation(BaseModel):
    """Outcome of checking a candidate hierarchy edge."""

    exists: bool = False
    would_cycle: bool = False

    @property
    def ok(self) -> bool:
        return not (self.exists or self.would_cycle)

    @property
    def reason(self) -> str | None:
        if self.exists:
            return "This relationship already exists"
        if self.would_cycle:
            return "This relationship would create a cycle"
        return None


class DeleteFailure(BaseModel):
    id: int
    reason: str


class BatchDeleteResult(BaseModel):
    deleted: list[int] = Field(default_factory=list)
    failed: list[DeleteFailure] = Field(default_factory=list)

    def summary(self) -> str:
        text = f"{len(self.deleted)} deleted, {len(self.failed)} failed"
        if self.failed:
            text += ": " + "; ".join(f"#{f.id} {f.reason}" for f in self.failed)
        return text


class RoleTreeNode(BaseModel):
    """Display node of the per-store hierarchy forest."""

    role: Role
    permissions: list[Permission] = Field(default_factory=list)
    children: list[RoleTreeNode] = Field(default_factory=list)
    depth: int = 0


RoleTreeNode.model_rebuild()


# ---------------------------------------------------------------------------
# Authorization rules
# ---------------------------------------------------------------------------


class AuthRuleDraft(BaseModel):
    """Rule fields as submitted when creating a rule."""

    service: str
    method: HttpMethod
    path_dsl: str | None = None
    route_name: str | None = None
    roles_any: list[str] = Field(default_factory=list)
    permissions_any: list[str] = Field(default_factory=list)
    permissions_all: list[str] = Field(default_factory=list)
    priority: int = 0
    is_active: bool = True

    @field_validator("roles_any", "permissions_any", "permissions_all", mode="before")
    @classmethod
    def _none_to_empty(cls, v: Any) -> Any:
        return [] if v is None else v

    @field_validator("method", mode="before")
    @classmethod
    def _upper_method(cls, v: Any) -> Any:
        return v.upper() if isinstance(v, str) else v

    @field_validator("path_dsl", "route_name", mode="before")
    @classmethod
    def _blank_to_none(cls, v: Any) -> Any:
        if isinstance(v, str):
            v = v.strip()
            return v or None
        return v

    @model_validator(mode="after")
    def _one_target(self) -> AuthRuleDraft:
        if (self.path_dsl is None) == (self.route_name is None):
            raise ValueError("exactly one of path_dsl or route_name must be set")
        return self

    @property
    def is_open(self) -> bool:
        """True when the rule lists no requirement at all."""
        return not (self.roles_any or self.permissions_any or self.permissions_all)


class AuthRule(AuthRuleDraft):
    """A stored rule; lower ``priority`` wins among matches."""

    id: int


# ---------------------------------------------------------------------------
# Permission snapshot
# ---------------------------------------------------------------------------


class PermissionSnapshot(BaseModel):
    """Read-only view of the session's permissions, roles and stores."""

    model_config = ConfigDict(frozen=True)

    cached_at: datetime
    expires_at: datetime
    all_permissions: list[Permission] = Field(default_factory=list)
    global_roles: list[Role] = Field(default_factory=list)
    global_permissions: list[Permission] = Field(default_factory=list)
    roles_permissions: list[Permission] = Field(default_factory=list)
    stores: list[Store] = Field(default_factory=list)
    summary: dict[str, Any] | None = None

    @field_validator(
        "all_permissions",
        "global_roles",
        "global_permissions",
        "roles_permissions",
        "stores",
        mode="before",
    )
    @classmethod
    def _none_to_empty(cls, v: Any) -> Any:
        return [] if v is None else v

    @field_validator("cached_at", "expires_at")
    @classmethod
    def _assume_utc(cls, v: datetime) -> datetime:
        return v.replace(tzinfo=timezone.utc) if v.tzinfo is None else v

    @classmethod
    def from_profile(
        cls,
        profile: dict[str, Any],
        *,
        ttl: timedelta = timedelta(minutes=30),
        now: datetime | None = None,
    ) -> PermissionSnapshot:
        """Build a snapshot from a user profile payload.

        ``roles_permissions`` is flattened from the permissions of every
        global role, de-duplicated by name in first-seen order.
        """
        now = now or _utcnow()
        global_roles = [Role.model_validate(r) for r in profile.get("global_roles") or []]
        seen: set[str] = set()
        roles_permissions: list[Permission] = []
        for role in global_roles:
            for perm in role.permissions:
                if perm.name not in seen:
                    seen.add(perm.name)
                    roles_permissions.append(perm)
        return cls(
            cached_at=now,
            expires_at=now + ttl,
            all_permissions=profile.get("all_permissions") or [],
            global_roles=global_roles,
            global_permissions=profile.get("global_permissions") or [],
            roles_permissions=roles_permissions,
            stores=profile.get("stores") or [],
            summary=profile.get("summary"),
        )


# ---------------------------------------------------------------------------
# Assignments
# ---------------------------------------------------------------------------


class AssignmentTuple(BaseModel):
    """One user-role-store binding."""

    model_config = ConfigDict(frozen=True)

    user_id: int
    role_id: int
    store_id: str
    metadata: dict[str, Any] | None = None
    is_active: bool = True

    @field_validator("store_id", mode="before")
    @classmethod
    def _coerce_store_id(cls, v: Any) -> Any:
        return str(v) if isinstance(v, int) else v

    @property
    def key(self) -> tuple[int, int, str]:
        return (self.user_id, self.role_id, self.store_id)


class AssignmentStep(BaseModel):
    id: str
    title: str
    completed: bool = False
