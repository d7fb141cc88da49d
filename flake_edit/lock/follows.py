"""Infer which nested inputs should follow top-level inputs, and which follows are stale."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Set, Tuple

from ..config import FollowConfig
from ..document.graph import FollowsGraph
from ..document.model import Document
from ..logging import get_logger
from .graph import FollowsMarker, LockEdge, LockGraph


@dataclass(frozen=True)
class FollowAddition:
    parent_path: str
    child_name: str
    target_id: str

    @property
    def path(self) -> str:
        return f"{self.parent_path}.{self.child_name}"


@dataclass(frozen=True)
class FollowRemoval:
    parent_path: str
    child_name: str

    @property
    def path(self) -> str:
        return f"{self.parent_path}.{self.child_name}"


@dataclass(frozen=True)
class FollowsPlan:
    """Follows declarations to add and remove, computed fresh per run."""

    additions: Tuple[FollowAddition, ...] = ()
    removals: Tuple[FollowRemoval, ...] = ()

    @property
    def empty(self) -> bool:
        return not self.additions and not self.removals


def split_child_path(input_id: str, child_path: str) -> Tuple[str, str]:
    """("crane", "rust-overlay.nixpkgs") -> ("crane.rust-overlay", "nixpkgs")."""
    parts = child_path.split(".")
    return ".".join([input_id, *parts[:-1]]), parts[-1]


class FollowsReconciler:
    """Compares the lock graph with the manifest's top-level inputs."""

    def __init__(self, config: FollowConfig) -> None:
        self._config = config
        self.logger = get_logger("follows")

    def plan(self, document: Document, lock: LockGraph) -> FollowsPlan:
        top_ids = set(document.ids())
        declared = self._declared(document)
        graph = self._edge_graph(document, lock)

        removals = self._stale(document, lock)

        additions: List[FollowAddition] = []
        proposed: Set[Tuple[str, str]] = set()

        def descend(edge: LockEdge) -> bool:
            key = (edge.parent_path, edge.child_name)
            return key not in declared and key not in proposed

        for edge in lock.walk(descend):
            if isinstance(edge.target, FollowsMarker):
                continue
            key = (edge.parent_path, edge.child_name)
            if key in declared:
                continue
            if self._config.is_ignored(edge.path, edge.child_name):
                self.logger.debug("Ignoring %s (configured)", edge.path)
                continue
            target = self._match(edge.child_name, top_ids)
            if target is None:
                continue
            target = self._collapse(document, target)
            if target is None:
                continue
            if not self._compatible(lock, edge.target, target):
                self.logger.debug(
                    "Skipping %s -> %s: locked sources differ", edge.path, target
                )
                continue
            parent_root = edge.parent_path.split(".", 1)[0]
            cycle = graph.cycle_with(parent_root, target)
            if cycle is not None:
                self.logger.debug(
                    "Skipping %s -> %s: would create cycle %s",
                    edge.path,
                    target,
                    " -> ".join(cycle),
                )
                continue
            graph.add(parent_root, target)
            proposed.add(key)
            additions.append(FollowAddition(edge.parent_path, edge.child_name, target))

        return FollowsPlan(additions=tuple(additions), removals=tuple(removals))

    # ------------------------------------------------------------------
    # Internals

    @staticmethod
    def _declared(document: Document) -> Dict[Tuple[str, str], str]:
        declared: Dict[Tuple[str, str], str] = {}
        for node in document.all():
            for decl in node.follows:
                declared[split_child_path(node.id, decl.child_path)] = decl.target
        return declared

    @staticmethod
    def _edge_graph(document: Document, lock: LockGraph) -> FollowsGraph:
        graph = FollowsGraph.from_document(document)
        for name, edge in lock.node(lock.root).children.items():
            if isinstance(edge, FollowsMarker) and edge.path:
                graph.add(name, edge.path[0])
        for edge in lock.walk():
            if isinstance(edge.target, FollowsMarker) and edge.target.path:
                graph.add(edge.parent_path.split(".", 1)[0], edge.target.path[0])
        return graph

    def _match(self, child_name: str, top_ids: Set[str]) -> Optional[str]:
        if child_name in top_ids:
            return child_name
        canonical = self._config.resolve_alias(child_name)
        if canonical is not None and canonical in top_ids:
            return canonical
        return None

    @staticmethod
    def _collapse(document: Document, target: str) -> Optional[str]:
        """Skip over top-level inputs that merely follow another top-level input."""
        seen = {target}
        current = target
        while True:
            node = document.find(current)
            hop = node.follows_target if node is not None else None
            if not hop or "/" in hop or document.find(hop) is None:
                return current
            if hop in seen:
                return None
            seen.add(hop)
            current = hop

    @staticmethod
    def _compatible(lock: LockGraph, child_node: object, target: str) -> bool:
        top_node = lock.top_node(target)
        if top_node is None or not isinstance(child_node, str):
            return False
        if top_node == child_node:
            return True
        ours = lock.node(child_node).locked
        theirs = lock.node(top_node).locked
        if ours is None or theirs is None:
            return False
        return ours.compatible_with(theirs)

    def _stale(self, document: Document, lock: LockGraph) -> List[FollowRemoval]:
        removals: List[FollowRemoval] = []
        for node in document.all():
            for decl in node.follows:
                parent_path, child = split_child_path(node.id, decl.child_path)
                if self._config.is_ignored(f"{parent_path}.{child}", child):
                    continue
                parent_node = self._lock_node_for(lock, parent_path.split("."))
                if parent_node is None:
                    continue
                if child not in lock.node(parent_node).children:
                    self.logger.debug("Follows %s.%s is stale", parent_path, child)
                    removals.append(FollowRemoval(parent_path, child))
        return removals

    @staticmethod
    def _lock_node_for(lock: LockGraph, path: Sequence[str]) -> Optional[str]:
        current = lock.root
        for name in path:
            if name not in lock.node(current).children:
                return None
            current = lock.resolve_follow(current, name)
        return current


__all__ = [
    "FollowAddition",
    "FollowRemoval",
    "FollowsPlan",
    "FollowsReconciler",
    "split_child_path",
]
