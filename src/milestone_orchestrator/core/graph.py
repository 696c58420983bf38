"""Dependency graph over milestones and tasks.

Provides:
- Cycle rejection on edge insertion (DFS from the required node back)
- Topological ordering via Kahn's algorithm
- Critical path (longest cumulative-effort chain) for ETA projection
- Ready-node queries for work assignment
- Serialisation (to_dict / from_dict)
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from typing import Any

from milestone_orchestrator.errors import CycleError

logger = logging.getLogger(__name__)


@dataclass
class Node:
    id: str
    kind: str = "task"
    effort: float = 0.0
    status: str = "pending"


@dataclass
class CriticalPath:
    nodes: list[str] = field(default_factory=list)
    effort: float = 0.0


class DependencyGraph:
    """Directed graph where an edge ``a -> b`` means *a requires b*.

    Every method runs under one graph-wide reentrant lock, so a cycle check
    and the insert it guards are a single step even when callers hold
    different entity locks.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._nodes: dict[str, Node] = {}
        # Forward edges: node → nodes it requires
        self._requires: dict[str, set[str]] = {}
        # Reverse edges: node → nodes that require it
        self._required_by: dict[str, set[str]] = {}

    # ── Mutation ─────────────────────────────────────────────────────

    def add_node(
        self,
        node_id: str,
        effort: float = 0.0,
        status: str = "pending",
        kind: str = "task",
        requires: list[str] | tuple[str, ...] = (),
    ) -> Node:
        """Add or update a node together with the nodes it requires.

        Raises KeyError (graph unchanged) if a required node is unknown.
        """
        with self._lock:
            for dep in requires:
                if dep not in self._nodes and dep != node_id:
                    raise KeyError(dep)
            node = self._nodes.get(node_id)
            if node is None:
                node = self._nodes[node_id] = Node(node_id, kind, float(effort), status)
                self._requires[node_id] = set()
                self._required_by[node_id] = set()
            else:
                node.effort, node.status, node.kind = float(effort), status, kind
            for dep in requires:
                self.add_edge(node_id, dep)
            return node

    def remove_node(self, node_id: str) -> None:
        with self._lock:
            for dep in self._requires.pop(node_id, set()):
                self._required_by[dep].discard(node_id)
            for dependent in self._required_by.pop(node_id, set()):
                self._requires[dependent].discard(node_id)
            self._nodes.pop(node_id, None)

    def add_edge(self, frm: str, to: str) -> None:
        """Record that ``frm`` requires ``to``.

        Raises:
            KeyError: if either node is unknown.
            CycleError: if ``to`` already (transitively) requires ``frm``.
                The graph is left unchanged.
        """
        with self._lock:
            for node_id in (frm, to):
                if node_id not in self._nodes:
                    raise KeyError(node_id)
            if to in self._requires[frm]:
                return
            if frm == to:
                raise CycleError([frm, frm])
            path = self._find_path(to, frm)
            if path is not None:
                raise CycleError([frm] + path)
            self._requires[frm].add(to)
            self._required_by[to].add(frm)

    def remove_edge(self, frm: str, to: str) -> bool:
        with self._lock:
            if to not in self._requires.get(frm, set()):
                return False
            self._requires[frm].discard(to)
            self._required_by[to].discard(frm)
            return True

    def set_status(self, node_id: str, status: str) -> None:
        with self._lock:
            self._nodes[node_id].status = status

    # ── Queries ──────────────────────────────────────────────────────

    def __contains__(self, node_id: str) -> bool:
        with self._lock:
            return node_id in self._nodes

    def __len__(self) -> int:
        with self._lock:
            return len(self._nodes)

    def node(self, node_id: str) -> Node:
        with self._lock:
            return self._nodes[node_id]

    def nodes(self, kind: str | None = None) -> list[Node]:
        with self._lock:
            return [n for n in self._nodes.values() if kind is None or n.kind == kind]

    def edges(self) -> list[tuple[str, str]]:
        with self._lock:
            return sorted((frm, to) for frm, deps in self._requires.items() for to in deps)

    def dependencies(self, node_id: str) -> set[str]:
        with self._lock:
            return set(self._requires.get(node_id, set()))

    def dependents(self, node_id: str) -> set[str]:
        with self._lock:
            return set(self._required_by.get(node_id, set()))

    def is_ready(self, node_id: str) -> bool:
        with self._lock:
            return all(self._nodes[d].status == "completed" for d in self._requires[node_id])

    def ready_nodes(self, kind: str | None = None) -> list[str]:
        """Unfinished nodes whose every dependency is completed."""
        with self._lock:
            return sorted(
                n.id for n in self._nodes.values()
                if n.status != "completed"
                and (kind is None or n.kind == kind)
                and self.is_ready(n.id)
            )

    def topological_order(self) -> list[str]:
        """Kahn's algorithm; dependencies come before the nodes requiring them.

        Raises CycleError if the graph is not a DAG, which ``add_edge``
        should make impossible.
        """
        with self._lock:
            in_degree = {n: len(deps) for n, deps in self._requires.items()}
            queue = deque(sorted(n for n, deg in in_degree.items() if deg == 0))
            order: list[str] = []
            while queue:
                node_id = queue.popleft()
                order.append(node_id)
                for dependent in sorted(self._required_by[node_id]):
                    in_degree[dependent] -= 1
                    if in_degree[dependent] == 0:
                        queue.append(dependent)
            if len(order) < len(self._nodes):
                remaining = sorted(n for n, deg in in_degree.items() if deg > 0)
                raise CycleError(remaining)
            return order

    def critical_path(self, remaining_only: bool = False) -> CriticalPath:
        """Longest chain by cumulative effort.

        With ``remaining_only`` completed nodes weigh nothing, which turns
        the result into the effort still standing between now and done.
        """
        def weight(node_id: str) -> float:
            node = self._nodes[node_id]
            if remaining_only and node.status == "completed":
                return 0.0
            return node.effort

        with self._lock:
            best: dict[str, float] = {}
            prev: dict[str, str | None] = {}
            for node_id in self.topological_order():
                best_dep, best_effort = None, 0.0
                for dep in sorted(self._requires[node_id]):
                    if best[dep] > best_effort:
                        best_dep, best_effort = dep, best[dep]
                best[node_id] = best_effort + weight(node_id)
                prev[node_id] = best_dep

        if not best:
            return CriticalPath()
        end = max(sorted(best), key=lambda n: best[n])
        path = []
        cursor: str | None = end
        while cursor is not None:
            path.append(cursor)
            cursor = prev[cursor]
        path.reverse()
        return CriticalPath(nodes=path, effort=round(best[end], 4))

    # ── Serialisation ────────────────────────────────────────────────

    def to_dict(self) -> dict[str, Any]:
        with self._lock:
            return {
                "nodes": [
                    {"id": n.id, "kind": n.kind, "effort": n.effort, "status": n.status}
                    for n in sorted(self._nodes.values(), key=lambda n: n.id)
                ],
                "edges": [list(e) for e in self.edges()],
            }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DependencyGraph":
        graph = cls()
        for n in data.get("nodes", []):
            graph.add_node(n["id"], n.get("effort", 0.0), n.get("status", "pending"), n.get("kind", "task"))
        for frm, to in data.get("edges", []):
            graph.add_edge(frm, to)
        return graph

    # ── Internal helpers ─────────────────────────────────────────────

    def _find_path(self, start: str, target: str) -> list[str] | None:
        """DFS along ``requires`` edges; the path from start to target, if any."""
        stack: list[tuple[str, list[str]]] = [(start, [start])]
        visited: set[str] = set()
        while stack:
            node_id, path = stack.pop()
            if node_id == target:
                return path
            if node_id in visited:
                continue
            visited.add(node_id)
            for dep in self._requires.get(node_id, set()):
                if dep not in visited:
                    stack.append((dep, path + [dep]))
        return None
