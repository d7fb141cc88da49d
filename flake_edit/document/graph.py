"""Follows edges between top-level inputs and cycle detection over them."""

from __future__ import annotations

from collections import deque
from typing import Dict, Iterable, List, Mapping, Optional, Set, Tuple

from .model import Document


def target_root(target: str) -> str:
    """Top-level input named by a follows target such as "harmonia/treefmt-nix"."""
    return target.split("/", 1)[0]


class FollowsGraph:
    """Directed graph where an edge A -> B means some input under A follows B."""

    def __init__(self, edges: Iterable[Tuple[str, str]] = ()) -> None:
        self._edges: Dict[str, Set[str]] = {}
        for source, target in edges:
            self.add(source, target)

    @classmethod
    def from_document(cls, document: Document) -> "FollowsGraph":
        graph = cls()
        for node in document.all():
            for decl in node.follows:
                graph.add(node.id, target_root(decl.target))
            if node.follows_target:
                graph.add(node.id, target_root(node.follows_target))
        return graph

    def add(self, source: str, target: str) -> None:
        # Targets inside the same input (siblings) are handled by resolution_cycle.
        if not source or not target or source == target:
            return
        self._edges.setdefault(source, set()).add(target)

    def edges(self) -> List[Tuple[str, str]]:
        return [
            (source, target)
            for source in sorted(self._edges)
            for target in sorted(self._edges[source])
        ]

    def path(self, start: str, goal: str) -> Optional[List[str]]:
        """Shortest path of ids from `start` to `goal`, or None."""
        if start == goal:
            return [start]
        previous: Dict[str, str] = {}
        queue = deque([start])
        seen = {start}
        while queue:
            current = queue.popleft()
            for neighbour in sorted(self._edges.get(current, ())):
                if neighbour in seen:
                    continue
                previous[neighbour] = current
                if neighbour == goal:
                    route = [goal]
                    while route[-1] != start:
                        route.append(previous[route[-1]])
                    return list(reversed(route))
                seen.add(neighbour)
                queue.append(neighbour)
        return None

    def cycle_with(self, source: str, target: str) -> Optional[List[str]]:
        """The cycle that adding `source -> target` would close, if any."""
        if not target:
            return None
        route = self.path(target, source)
        if route is None:
            return None
        return [source] + route


def declared_targets(document: Document) -> Dict[str, str]:
    """Map "parent/child" input paths to the follows target declared for them."""
    declared: Dict[str, str] = {}
    for node in document.all():
        if node.follows_target:
            declared[node.id] = node.follows_target
        for decl in node.follows:
            declared["/".join([node.id, *decl.child_path.split(".")])] = decl.target
    return declared


def resolution_cycle(
    declared: Mapping[str, str], source: str, target: str
) -> Optional[List[str]]:
    """Chase `target` through the declared follows with `source -> target` added.

    Returns the chain of paths when resolution leads back into `source`, or
    loops on itself; None when it ends at an input that is not redirected.
    """
    edges = dict(declared)
    edges[source] = target
    route = [source, target]
    seen = {source}
    current = target
    while True:
        if current == source or current.startswith(source + "/"):
            return route
        if current in seen:
            return route
        seen.add(current)
        hop = _redirect(edges, current)
        if hop is None:
            return None
        current = hop
        route.append(current)


def _redirect(edges: Mapping[str, str], path: str) -> Optional[str]:
    parts = path.split("/")
    for index in range(1, len(parts) + 1):
        prefix = "/".join(parts[:index])
        if prefix in edges:
            return "/".join([edges[prefix], *parts[index:]])
    return None


__all__ = ["FollowsGraph", "declared_targets", "resolution_cycle", "target_root"]
