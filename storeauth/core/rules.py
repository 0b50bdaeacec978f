"""Authorization rule matching and evaluation.

A rule applies to one service + HTTP method and targets either a path DSL
(``/api/users/{id}/posts/*``) or a named route (``users.posts.index``).
Among the active rules matching a request, the lowest ``priority`` wins.
The principal is then authorized when::

    (roles_any satisfied OR permissions_any satisfied) AND permissions_all satisfied

An empty list counts as satisfied, so a rule listing only ``roles_any``
is met by ``permissions_any`` being empty. A rule with no requirement at
all is an explicit open rule.

Path DSL segments:
    ``{name}``  captures exactly one segment as parameter ``name``
    ``*``       matches exactly one segment; as the last segment it matches
                one or more remaining segments
    ``**``      matches the rest of the path (zero or more segments)
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any

import pydantic

from storeauth.core.models import AuthRule, AuthRuleDraft
from storeauth.exceptions import ValidationError

logger = logging.getLogger("storeauth.rules")

_PARAM_RE = re.compile(r"^\{([A-Za-z_][A-Za-z0-9_]*)\}$")


@dataclass(frozen=True)
class Principal:
    """The role and permission names held by the subject being checked."""

    roles: frozenset[str] = frozenset()
    permissions: frozenset[str] = frozenset()

    @classmethod
    def of(cls, roles: Iterable[str] = (), permissions: Iterable[str] = ()) -> Principal:
        return cls(roles=frozenset(roles), permissions=frozenset(permissions))


@dataclass
class AuthorizationDecision:
    allowed: bool
    rule: AuthRule | None = None
    reason: str = ""


@dataclass
class PathTestResult:
    matches: bool
    params: dict[str, str] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Path DSL
# ---------------------------------------------------------------------------


def _normalize(path: str) -> str:
    path = path.split("?", 1)[0]
    return "/" + path.strip().strip("/")


@lru_cache(maxsize=512)
def compile_path_dsl(path_dsl: str) -> re.Pattern[str]:
    """Compile a path DSL into an anchored regular expression.

    Raises:
        ValidationError: on an empty DSL, a malformed or duplicated
            parameter, or ``**`` anywhere but the last segment.
    """
    if not path_dsl or not path_dsl.strip():
        raise ValidationError("Invalid path DSL", {"path_dsl": ["Path DSL is required"]})

    segments = [s for s in _normalize(path_dsl).split("/") if s]
    parts: list[str] = []
    names: set[str] = set()
    for index, segment in enumerate(segments):
        if segment == "**":
            if index != len(segments) - 1:
                raise ValidationError(
                    "Invalid path DSL",
                    {"path_dsl": ["'**' is only allowed as the last segment"]},
                )
            parts.append("(?:/.*)?")
            continue
        if segment == "*":
            parts.append("(?:/[^/]+)+" if index == len(segments) - 1 else "/[^/]+")
            continue
        param = _PARAM_RE.match(segment)
        if param:
            name = param.group(1)
            if name in names:
                raise ValidationError(
                    "Invalid path DSL", {"path_dsl": [f"Duplicate parameter '{name}'"]}
                )
            names.add(name)
            parts.append(f"/(?P<{name}>[^/]+)")
            continue
        if "{" in segment or "}" in segment:
            raise ValidationError(
                "Invalid path DSL", {"path_dsl": [f"Malformed parameter segment '{segment}'"]}
            )
        parts.append("/" + re.escape(segment))

    pattern = "".join(parts) or "/"
    return re.compile(f"^{pattern}/?$" if pattern != "/" else "^/$")


def match_path(path_dsl: str, path: str) -> dict[str, str] | None:
    """Return captured parameters when *path* matches *path_dsl*, else None."""
    m = compile_path_dsl(path_dsl).match(_normalize(path))
    if m is None:
        return None
    return {k: v for k, v in m.groupdict().items() if v is not None}


def check_path(path_dsl: str, sample_path: str) -> PathTestResult:
    """Check a sample path against a DSL, as the rule tester does."""
    params = match_path(path_dsl, sample_path)
    if params is None:
        return PathTestResult(matches=False)
    return PathTestResult(matches=True, params=params)


# ---------------------------------------------------------------------------
# Evaluator
# ---------------------------------------------------------------------------


class AuthorizationRuleEvaluator:
    """Stateless rule matcher and ANY/ALL evaluator."""

    def match(
        self,
        rules: Iterable[AuthRule],
        service: str,
        method: str,
        path: str,
        *,
        route_name: str | None = None,
    ) -> AuthRule | None:
        """Return the active matching rule with the lowest priority.

        Ties keep the order in which *rules* were supplied.
        """
        method = method.upper()
        target_route = route_name if route_name is not None else path
        candidates: list[AuthRule] = []
        for rule in rules:
            if not rule.is_active:
                continue
            if rule.service != service or rule.method.value != method:
                continue
            if rule.path_dsl is not None:
                try:
                    params = match_path(rule.path_dsl, path)
                except ValidationError as exc:
                    logger.warning(
                        "Skipping rule with invalid path DSL: %s",
                        "; ".join(exc.messages()),
                        extra={"rule_id": rule.id},
                    )
                    continue
                if params is None:
                    continue
            elif rule.route_name != target_route:
                continue
            candidates.append(rule)

        if not candidates:
            return None
        # sorted() is stable, so equal priorities keep input order.
        return sorted(candidates, key=lambda r: r.priority)[0]

    def authorize(self, rule: AuthRuleDraft, principal: Principal) -> bool:
        """Apply ``(roles_any OR permissions_any) AND permissions_all``."""
        if rule.is_open:
            return True

        roles_ok = not rule.roles_any or not principal.roles.isdisjoint(rule.roles_any)
        perm_any_ok = not rule.permissions_any or not principal.permissions.isdisjoint(
            rule.permissions_any
        )
        all_ok = principal.permissions.issuperset(rule.permissions_all)
        return (roles_ok or perm_any_ok) and all_ok

    def evaluate(
        self,
        rules: Iterable[AuthRule],
        service: str,
        method: str,
        path: str,
        principal: Principal,
        *,
        route_name: str | None = None,
    ) -> AuthorizationDecision:
        """Match then authorize; requests with no matching rule are denied."""
        rule = self.match(rules, service, method, path, route_name=route_name)
        if rule is None:
            return AuthorizationDecision(allowed=False, reason="no_matching_rule")
        if self.authorize(rule, principal):
            return AuthorizationDecision(
                allowed=True, rule=rule, reason="open_rule" if rule.is_open else "authorized"
            )
        return AuthorizationDecision(allowed=False, rule=rule, reason="requirements_not_met")


# ---------------------------------------------------------------------------
# Rule editing
# ---------------------------------------------------------------------------


def validate_rule_draft(data: Mapping[str, Any] | AuthRuleDraft) -> AuthRuleDraft:
    """Validate a new rule before it is submitted.

    Raises:
        ValidationError: with one entry per offending field.
    """
    errors: dict[str, list[str]] = {}
    raw = data.model_dump() if isinstance(data, AuthRuleDraft) else dict(data)

    try:
        draft = AuthRuleDraft.model_validate(raw)
    except pydantic.ValidationError as exc:
        for err in exc.errors():
            loc = err.get("loc") or ()
            field_name = str(loc[0]) if loc else "path"
            if not loc:
                # Model-level check: exactly one target.
                errors.setdefault("path", []).append(
                    "Provide either a path DSL or a route name, not both"
                )
                continue
            errors.setdefault(field_name, []).append(_field_message(field_name, err))
        raise ValidationError("Invalid authorization rule", errors) from exc

    if not draft.service.strip():
        errors.setdefault("service", []).append("Service is required")
    if draft.priority < 0:
        errors.setdefault("priority", []).append("Priority must be zero or greater")
    if draft.path_dsl is not None:
        try:
            compile_path_dsl(draft.path_dsl)
        except ValidationError as exc:
            errors.setdefault("path_dsl", []).extend(exc.errors.get("path_dsl", [exc.message]))
    if draft.is_open:
        errors.setdefault("authorization", []).append(
            "At least one role or permission is required"
        )

    if errors:
        raise ValidationError("Invalid authorization rule", errors)
    return draft


def _field_message(field_name: str, err: Mapping[str, Any]) -> str:
    if err.get("type") == "missing":
        return {
            "service": "Service is required",
            "method": "HTTP method is required",
        }.get(field_name, f"{field_name} is required")
    if field_name == "method":
        return "HTTP method must be one of GET, POST, PUT, PATCH, DELETE, OPTIONS, HEAD"
    return str(err.get("msg", "Invalid value"))


def toggle_rule(rule: AuthRule) -> AuthRule:
    """Return a copy of *rule* with ``is_active`` flipped and nothing else changed."""
    return rule.model_copy(update={"is_active": not rule.is_active})
