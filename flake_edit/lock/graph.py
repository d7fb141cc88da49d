"""Model of flake.lock: resolved nodes and the edges between them."""

from __future__ import annotations

from dataclasses import dataclass, field
import json
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Tuple, Union

from ..errors import CycleDetected, DanglingReference, MalformedLock

FORGE_TYPES = ("github", "gitlab", "sourcehut")


@dataclass(frozen=True)
class LockedSource:
    """The `locked` attribute of a lock node."""

    kind: str
    owner: Optional[str] = None
    repo: Optional[str] = None
    url: Optional[str] = None
    path: Optional[str] = None
    ref: Optional[str] = None
    rev: Optional[str] = None
    nar_hash: Optional[str] = None
    last_modified: Optional[int] = None
    host: Optional[str] = None

    @property
    def identity(self) -> str:
        """Upstream location, ignoring revision."""
        if self.kind in FORGE_TYPES:
            host = f"@{self.host.lower()}" if self.host else ""
            return f"{self.kind}{host}:{(self.owner or '').lower()}/{(self.repo or '').lower()}"
        if self.kind == "path":
            return f"path:{self.path}"
        return f"{self.kind}:{self.url}"

    def compatible_with(self, other: "LockedSource") -> bool:
        return self.identity == other.identity


@dataclass(frozen=True)
class FollowsMarker:
    """Edge that reuses the node reached by walking `path` from the root."""

    path: Tuple[str, ...]

    def __str__(self) -> str:
        return "/".join(self.path)


Edge = Union[str, FollowsMarker]


@dataclass(frozen=True)
class LockNode:
    node_id: str
    locked: Optional[LockedSource]
    original: Mapping[str, Any] = field(default_factory=dict)
    children: Mapping[str, Edge] = field(default_factory=dict)
    flake: bool = True


@dataclass(frozen=True)
class LockEdge:
    """One child edge found while walking down from a top-level input."""

    parent_path: str
    parent_node: str
    child_name: str
    target: Edge

    @property
    def path(self) -> str:
        return f"{self.parent_path}.{self.child_name}"


class LockGraph:
    """Rooted graph of lock nodes."""

    def __init__(self, nodes: Mapping[str, LockNode], root: str, version: Optional[int] = None) -> None:
        self._nodes = dict(nodes)
        self.root = root
        self.version = version

    @classmethod
    def parse(cls, data: Union[str, bytes]) -> "LockGraph":
        try:
            payload = json.loads(data)
        except (ValueError, UnicodeDecodeError) as exc:
            raise MalformedLock(f"not valid JSON ({exc})") from exc
        if not isinstance(payload, dict):
            raise MalformedLock("top level must be an object")
        raw_nodes = payload.get("nodes")
        root = payload.get("root")
        if not isinstance(raw_nodes, dict):
            raise MalformedLock("missing 'nodes' object")
        if not isinstance(root, str):
            raise MalformedLock("missing 'root' node id")
        if root not in raw_nodes:
            raise MalformedLock(f"root node '{root}' is not defined")
        version = payload.get("version")
        if version is not None and not isinstance(version, int):
            raise MalformedLock("'version' must be an integer")

        nodes = {node_id: _parse_node(node_id, raw) for node_id, raw in raw_nodes.items()}
        for node in nodes.values():
            for child, edge in node.children.items():
                if isinstance(edge, str) and edge not in nodes:
                    raise DanglingReference(node.node_id, child, edge)
        return cls(nodes, root, version)

    @classmethod
    def from_path(cls, path: Path) -> "LockGraph":
        return cls.parse(path.read_bytes())

    def node(self, node_id: str) -> LockNode:
        try:
            return self._nodes[node_id]
        except KeyError:
            raise MalformedLock(f"unknown node '{node_id}'") from None

    def top_level(self) -> List[str]:
        return list(self.node(self.root).children)

    def resolve_follow(self, node_id: str, child_name: str) -> str:
        """Concrete node id behind `node_id`'s child, chasing follows markers."""
        return self._resolve(node_id, child_name, [])

    def top_node(self, input_id: str) -> Optional[str]:
        if input_id not in self.node(self.root).children:
            return None
        return self.resolve_follow(self.root, input_id)

    def rev_for(self, input_id: str) -> Optional[str]:
        node_id = self.top_node(input_id)
        if node_id is None:
            return None
        locked = self.node(node_id).locked
        return locked.rev if locked else None

    def walk(self, descend: Optional[Callable[[LockEdge], bool]] = None) -> Iterator[LockEdge]:
        """Yield edges below each top-level input, depth first in lock order.

        Only direct edges are followed. `descend` decides whether the walk
        continues below a direct edge.
        """
        for name, edge in self.node(self.root).children.items():
            if isinstance(edge, FollowsMarker):
                continue
            yield from self._walk(edge, name, {self.root, edge}, descend)

    # ------------------------------------------------------------------
    # Internals

    def _walk(
        self,
        node_id: str,
        path: str,
        visited: set,
        descend: Optional[Callable[[LockEdge], bool]],
    ) -> Iterator[LockEdge]:
        for child, target in self.node(node_id).children.items():
            edge = LockEdge(parent_path=path, parent_node=node_id, child_name=child, target=target)
            yield edge
            if isinstance(target, FollowsMarker) or target in visited:
                continue
            if descend is not None and not descend(edge):
                continue
            yield from self._walk(target, edge.path, visited | {target}, descend)

    def _resolve(self, node_id: str, child_name: str, chase: List[Tuple[str, str]]) -> str:
        key = (node_id, child_name)
        if key in chase:
            raise CycleDetected([f"{node}.{child}" for node, child in chase + [key]])
        edge = self.node(node_id).children.get(child_name)
        if edge is None:
            raise DanglingReference(node_id, child_name, "(no such input)")
        if isinstance(edge, str):
            return edge
        current = self.root
        for name in edge.path:
            current = self._resolve(current, name, chase + [key])
        return current


def _parse_node(node_id: str, raw: Any) -> LockNode:
    if not isinstance(raw, dict):
        raise MalformedLock(f"node '{node_id}' must be an object")
    children: Dict[str, Edge] = {}
    inputs = raw.get("inputs", {})
    if not isinstance(inputs, dict):
        raise MalformedLock(f"node '{node_id}' has a non-object 'inputs'")
    for child, target in inputs.items():
        if isinstance(target, str):
            children[child] = target
        elif isinstance(target, list) and all(isinstance(part, str) for part in target):
            children[child] = FollowsMarker(tuple(target))
        else:
            raise MalformedLock(f"node '{node_id}' input '{child}' must be a string or a list of strings")
    locked_raw = raw.get("locked")
    locked = None
    if locked_raw is not None:
        if not isinstance(locked_raw, dict) or not isinstance(locked_raw.get("type"), str):
            raise MalformedLock(f"node '{node_id}' has an invalid 'locked' entry")
        last_modified = locked_raw.get("lastModified")
        locked = LockedSource(
            kind=locked_raw["type"],
            owner=_opt_str(locked_raw.get("owner")),
            repo=_opt_str(locked_raw.get("repo")),
            url=_opt_str(locked_raw.get("url")),
            path=_opt_str(locked_raw.get("path")),
            ref=_opt_str(locked_raw.get("ref")),
            rev=_opt_str(locked_raw.get("rev")),
            nar_hash=_opt_str(locked_raw.get("narHash")),
            last_modified=last_modified if isinstance(last_modified, int) else None,
            host=_opt_str(locked_raw.get("host")),
        )
    original = raw.get("original")
    return LockNode(
        node_id=node_id,
        locked=locked,
        original=original if isinstance(original, dict) else {},
        children=children,
        flake=raw.get("flake", True) is not False,
    )


def _opt_str(value: Any) -> Optional[str]:
    return value if isinstance(value, str) else None


__all__ = [
    "Edge",
    "FollowsMarker",
    "LockEdge",
    "LockGraph",
    "LockNode",
    "LockedSource",
]
