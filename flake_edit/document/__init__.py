"""Format-preserving document model for flake manifests."""

from .graph import FollowsGraph, target_root
from .model import (
    CONTAINER_BLOCK,
    CONTAINER_TOPLEVEL,
    STYLE_DOTTED,
    STYLE_NESTED,
    Document,
    FollowsDecl,
    InputNode,
    Span,
)
from .render import FragmentRenderer

__all__ = [
    "CONTAINER_BLOCK",
    "CONTAINER_TOPLEVEL",
    "Document",
    "FollowsDecl",
    "FollowsGraph",
    "FragmentRenderer",
    "InputNode",
    "STYLE_DOTTED",
    "STYLE_NESTED",
    "Span",
    "target_root",
]
