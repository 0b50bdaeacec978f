"""Per-store role hierarchy graph.

Each store owns an independent directed acyclic graph whose edges read
"higher role manages lower role". Edges are kept as adjacency lists keyed
by the higher role, plus an index by edge id for batch deletion. Every
insert is checked for duplicates and for reachability from the lower role
back to the higher one, so no sequence of successful mutations can leave a
cycle behind.
"""

from __future__ import annotations

import logging
from collections import deque
from collections.abc import Iterable, Mapping

from storeauth.core.models import (
    BatchDeleteResult,
    DeleteFailure,
    EdgeValidation,
    HierarchyEdge,
    Role,
    RoleTreeNode,
)
from storeauth.exceptions import ConflictError

logger = logging.getLogger("storeauth.hierarchy")


class HierarchyGraph:
    """In-memory role hierarchy, one DAG per store."""

    def __init__(self) -> None:
        # store_id -> higher_role_id -> {lower_role_id: edge_id}
        self._adjacency: dict[str, dict[int, dict[int, int]]] = {}
        self._edges: dict[int, HierarchyEdge] = {}
        self._next_local_id = -1

    # -- queries ----------------------------------------------------------

    def edges(self, store_id: str) -> list[HierarchyEdge]:
        """All edges of *store_id* in insertion order."""
        return [e for e in self._edges.values() if e.store_id == store_id]

    def get_edge(self, edge_id: int) -> HierarchyEdge | None:
        return self._edges.get(edge_id)

    def manages(self, store_id: str, higher_role_id: int, lower_role_id: int) -> bool:
        """True when a direct edge higher -> lower exists in *store_id*."""
        return lower_role_id in self._adjacency.get(store_id, {}).get(higher_role_id, {})

    def reachable(self, store_id: str, source: int, target: int) -> bool:
        """Breadth-first search along outgoing edges from *source* to *target*."""
        adjacency = self._adjacency.get(store_id, {})
        visited: set[int] = {source}
        queue: deque[int] = deque([source])
        while queue:
            current = queue.popleft()
            if current == target:
                return True
            for nxt in adjacency.get(current, {}):
                if nxt not in visited:
                    visited.add(nxt)
                    queue.append(nxt)
        return False

    def subordinates(self, store_id: str, role_id: int) -> set[int]:
        """Every role transitively managed by *role_id* (excluding itself)."""
        adjacency = self._adjacency.get(store_id, {})
        found: set[int] = set()
        stack = list(adjacency.get(role_id, {}))
        while stack:
            current = stack.pop()
            if current in found:
                continue
            found.add(current)
            stack.extend(adjacency.get(current, {}))
        found.discard(role_id)
        return found

    def validate(self, store_id: str, higher_role_id: int, lower_role_id: int) -> EdgeValidation:
        """Check a candidate edge without mutating anything.

        ``would_cycle`` is set when the edge is a self-edge or when the lower
        role can already reach the higher role through existing edges.
        """
        exists = self.manages(store_id, higher_role_id, lower_role_id)
        would_cycle = higher_role_id == lower_role_id or self.reachable(
            store_id, lower_role_id, higher_role_id
        )
        return EdgeValidation(exists=exists, would_cycle=would_cycle)

    # -- mutation ---------------------------------------------------------

    def create(
        self,
        store_id: str,
        higher_role_id: int,
        lower_role_id: int,
        *,
        created_by: str | None = None,
        reason: str | None = None,
        edge_id: int | None = None,
    ) -> HierarchyEdge:
        """Insert an edge after re-validating it.

        Raises:
            ConflictError: the edge already exists (reason ``"exists"``) or
                would close a cycle (reason ``"cycle"``).
        """
        check = self.validate(store_id, higher_role_id, lower_role_id)
        if check.exists:
            raise ConflictError(check.reason or "", reason="exists")
        if check.would_cycle:
            raise ConflictError(check.reason or "", reason="cycle")
        if edge_id is not None and edge_id in self._edges:
            raise ConflictError(f"Edge id {edge_id} is already in use", reason="exists")

        if edge_id is None:
            edge_id = self._next_local_id
            self._next_local_id -= 1

        edge = HierarchyEdge(
            id=edge_id,
            store_id=store_id,
            higher_role_id=higher_role_id,
            lower_role_id=lower_role_id,
            created_by=created_by,
            reason=reason,
        )
        self._insert(edge)
        return edge

    def add_edge(self, edge: HierarchyEdge) -> HierarchyEdge:
        """Insert a fetched edge, applying the same checks as :meth:`create`."""
        return self.create(
            edge.store_id,
            edge.higher_role_id,
            edge.lower_role_id,
            created_by=edge.created_by,
            reason=edge.reason,
            edge_id=edge.id,
        )

    def load(self, store_id: str, edges: Iterable[HierarchyEdge]) -> None:
        """Replace the edges of *store_id* with *edges*.

        The previous edges are restored if the new set contains a duplicate
        or a cycle.
        """
        previous = self.edges(store_id)
        self._clear_store(store_id)
        try:
            for edge in edges:
                if edge.store_id != store_id:
                    continue
                self.add_edge(edge)
        except ConflictError:
            self._clear_store(store_id)
            for edge in previous:
                self._insert(edge)
            raise
        logger.debug(
            "Loaded %d hierarchy edges",
            len(self.edges(store_id)),
            extra={"store_id": store_id},
        )

    def remove(self, edge_id: int) -> HierarchyEdge:
        """Remove a single edge by id; raises ``KeyError`` if unknown."""
        edge = self._edges.pop(edge_id)
        store = self._adjacency.get(edge.store_id, {})
        lowers = store.get(edge.higher_role_id, {})
        lowers.pop(edge.lower_role_id, None)
        if not lowers:
            store.pop(edge.higher_role_id, None)
        return edge

    def delete_batch(self, edge_ids: Iterable[int]) -> BatchDeleteResult:
        """Delete each edge independently; unknown ids are reported, not raised."""
        result = BatchDeleteResult()
        for edge_id in edge_ids:
            if edge_id not in self._edges:
                result.failed.append(DeleteFailure(id=edge_id, reason="Edge not found"))
                continue
            self.remove(edge_id)
            result.deleted.append(edge_id)
        return result

    # -- display ----------------------------------------------------------

    def build_tree(
        self,
        store_id: str,
        roles: Mapping[int, Role] | Iterable[Role] = (),
    ) -> list[RoleTreeNode]:
        """Build the display forest for *store_id*.

        Roots are roles with no incoming edge, including roles from *roles*
        that take part in no edge; those appear as leaf roots. A role
        managed by several roles appears under each of them. Roles missing
        from *roles* get a placeholder name.
        """
        role_map = dict(roles) if isinstance(roles, Mapping) else {r.id: r for r in roles}
        adjacency = self._adjacency.get(store_id, {})

        members: set[int] = set(role_map)
        lowers: set[int] = set()
        for higher, targets in adjacency.items():
            members.add(higher)
            members.update(targets)
            lowers.update(targets)

        def role_for(role_id: int) -> Role:
            return role_map.get(role_id) or Role(id=role_id, name=f"role-{role_id}")

        def sort_key(role_id: int) -> tuple[str, int]:
            return (role_for(role_id).name.lower(), role_id)

        def node(role_id: int, depth: int) -> RoleTreeNode:
            role = role_for(role_id)
            ordered = sorted(adjacency.get(role_id, {}), key=sort_key)
            children = [node(c, depth + 1) for c in ordered]
            return RoleTreeNode(
                role=role, permissions=list(role.permissions), children=children, depth=depth
            )

        roots = sorted(members - lowers, key=sort_key)
        return [node(r, 0) for r in roots]

    # -- internals --------------------------------------------------------

    def _insert(self, edge: HierarchyEdge) -> None:
        store = self._adjacency.setdefault(edge.store_id, {})
        store.setdefault(edge.higher_role_id, {})[edge.lower_role_id] = edge.id
        self._edges[edge.id] = edge

    def _clear_store(self, store_id: str) -> None:
        for edge_id in [e.id for e in self.edges(store_id)]:
            self._edges.pop(edge_id, None)
        self._adjacency.pop(store_id, None)
