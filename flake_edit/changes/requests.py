"""Change requests understood by the change engine."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Union


@dataclass(frozen=True)
class Add:
    locator: str
    id: Optional[str] = None
    flake: bool = True
    overwrite: bool = False
    ref_or_rev: Optional[str] = None
    shallow: bool = False


@dataclass(frozen=True)
class Remove:
    id: str


@dataclass(frozen=True)
class ChangeUri:
    id: str
    locator: str


@dataclass(frozen=True)
class Pin:
    """Pin an input to `rev`, or to the revision recorded in the lock file."""

    id: str
    rev: Optional[str] = None


@dataclass(frozen=True)
class Unpin:
    """Drop the ref or rev of an input, or put `restore` back in its place."""

    id: str
    restore: Optional[str] = None


@dataclass(frozen=True)
class AddFollow:
    parent_path: str
    child: str
    target: str


@dataclass(frozen=True)
class RemoveFollow:
    parent_path: str
    child: str


@dataclass(frozen=True)
class Toggle:
    id: Optional[str] = None
    target: Optional[str] = None


@dataclass(frozen=True)
class Update:
    """Move an input (every input when `id` is None) to the newest release or channel."""

    id: Optional[str] = None
    init: bool = False


@dataclass(frozen=True)
class AutoFollow:
    pass


ChangeRequest = Union[
    Add, Remove, ChangeUri, Pin, Unpin, AddFollow, RemoveFollow, Toggle, Update, AutoFollow
]


__all__ = [
    "Add",
    "AddFollow",
    "AutoFollow",
    "ChangeRequest",
    "ChangeUri",
    "Pin",
    "Remove",
    "RemoveFollow",
    "Toggle",
    "Unpin",
    "Update",
]
