"""Change requests and the engine that applies them."""

from .engine import ChangeEngine, ChangeResult
from .requests import (
    Add,
    AddFollow,
    AutoFollow,
    ChangeRequest,
    ChangeUri,
    Pin,
    Remove,
    RemoveFollow,
    Toggle,
    Unpin,
    Update,
)
from .toggle import Toggler

__all__ = [
    "Add",
    "AddFollow",
    "AutoFollow",
    "ChangeEngine",
    "ChangeRequest",
    "ChangeResult",
    "ChangeUri",
    "Pin",
    "Remove",
    "RemoveFollow",
    "Toggle",
    "Toggler",
    "Unpin",
    "Update",
]
