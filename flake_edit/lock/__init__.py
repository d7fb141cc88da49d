"""Lock file model and follows reconciliation."""

from .follows import FollowAddition, FollowRemoval, FollowsPlan, FollowsReconciler
from .graph import FollowsMarker, LockedSource, LockEdge, LockGraph, LockNode

__all__ = [
    "FollowAddition",
    "FollowRemoval",
    "FollowsMarker",
    "FollowsPlan",
    "FollowsReconciler",
    "LockEdge",
    "LockGraph",
    "LockNode",
    "LockedSource",
]
