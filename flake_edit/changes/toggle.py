"""Switch between commented-out alternatives of an input.

Toggling works on raw lines because comments never reach the parsed
document. Each line is classified once; related lines are grouped into
version groups; toggling swaps comment markers between two groups.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import re
from typing import Dict, List, Optional, Sequence

from ..errors import (
    InputNotFound,
    MultipleToggleableInputs,
    NoToggleableInputs,
    NoToggleableVersions,
    SelectionRequired,
)
from ..logging import get_logger
from ..prompt import Chooser
from ..document.lexer import unescape_string

ACTIVE = "active"
INACTIVE = "inactive"
UNRELATED = "unrelated"

_NAME = r"[A-Za-z_][A-Za-z0-9_'-]*"
_STATEMENT_RE = re.compile(
    r"^(?P<indent>[ \t]*)(?P<marker>#[ \t]*)?"
    r"(?P<body>(?:inputs\.)?(?P<id>" + _NAME + r")\."
    r"(?P<field>url|flake|inputs\." + _NAME + r"(?:\.inputs\." + _NAME + r")*\.follows)"
    r"\s*=\s*(?P<value>\"(?:[^\"\\]|\\.)*\"|true|false)\s*;.*)$"
)


@dataclass(frozen=True)
class LineClass:
    """Classification of one manifest line."""

    kind: str
    input_id: Optional[str] = None
    field: Optional[str] = None
    value: Optional[str] = None
    indent: str = ""
    marker: str = ""
    body: str = ""


UNRELATED_LINE = LineClass(kind=UNRELATED)


def classify(line: str) -> LineClass:
    """Classify a line (without its newline) as active, inactive or unrelated."""
    match = _STATEMENT_RE.match(line)
    if match is None:
        return UNRELATED_LINE
    field_name = match.group("field")
    if field_name.endswith(".follows"):
        field_name = "follows"
    value = match.group("value")
    if value.startswith('"'):
        value = unescape_string(value[1:-1])
    marker = match.group("marker") or ""
    return LineClass(
        kind=INACTIVE if marker else ACTIVE,
        input_id=match.group("id"),
        field=field_name,
        value=value,
        indent=match.group("indent"),
        marker=marker,
        body=match.group("body"),
    )


@dataclass
class VersionGroup:
    """A locator line plus the contiguous same-id lines that belong to it."""

    input_id: str
    active: bool
    url: str
    lines: List[int] = field(default_factory=list)


@dataclass(frozen=True)
class ToggleResult:
    text: str
    input_id: str
    activated: str
    deactivated: Optional[str]


def build_groups(classes: Sequence[LineClass]) -> List[VersionGroup]:
    groups: List[VersionGroup] = []
    current: Optional[VersionGroup] = None
    for index, line in enumerate(classes):
        if line.kind == UNRELATED:
            current = None
            continue
        active = line.kind == ACTIVE
        if line.field == "url":
            current = VersionGroup(input_id=line.input_id or "", active=active, url=line.value or "")
            current.lines.append(index)
            groups.append(current)
        elif (
            current is not None
            and current.input_id == line.input_id
            and current.active == active
            and current.lines[-1] == index - 1
        ):
            current.lines.append(index)
        else:
            current = None
    return groups


def toggleable_ids(groups: Sequence[VersionGroup]) -> List[str]:
    """Ids with an active group and at least one inactive one, in file order."""
    seen: Dict[str, List[bool]] = {}
    for group in groups:
        seen.setdefault(group.input_id, []).append(group.active)
    return [
        input_id
        for input_id, states in seen.items()
        if any(states) and not all(states)
    ]


class Toggler:
    """Applies toggles using a chooser for ambiguous selections."""

    def __init__(self, chooser: Chooser) -> None:
        self._chooser = chooser
        self.logger = get_logger("toggle")

    def toggle(
        self, text: str, input_id: Optional[str] = None, *, target: Optional[str] = None
    ) -> ToggleResult:
        lines = text.splitlines(keepends=True)
        classes = self._classify(text)
        groups = build_groups(classes)

        if input_id is None:
            ids = toggleable_ids(groups)
            if not ids:
                raise NoToggleableInputs()
            if len(ids) > 1:
                raise MultipleToggleableInputs(ids)
            input_id = ids[0]
            self.logger.debug("Auto-detected toggleable input %s", input_id)

        own = [group for group in groups if group.input_id == input_id]
        if not own:
            known = sorted({group.input_id for group in groups})
            raise InputNotFound(input_id, known, detail="among toggleable lines")
        inactive = [group for group in own if not group.active]
        active = next((group for group in own if group.active), None)
        if not inactive:
            raise NoToggleableVersions(input_id)

        chosen = self._select(input_id, inactive, target)
        markers = [classes[index].marker for index in chosen.lines]

        for index in chosen.lines:
            line = classes[index]
            lines[index] = line.indent + line.body + _newline(lines[index])
        if active is not None:
            for position, index in enumerate(active.lines):
                line = classes[index]
                marker = markers[position] if position < len(markers) else markers[0]
                lines[index] = line.indent + marker + line.body + _newline(lines[index])

        self.logger.debug(
            "Toggled %s to %s (was %s)",
            input_id,
            chosen.url,
            active.url if active else "none",
        )
        return ToggleResult(
            text="".join(lines),
            input_id=input_id,
            activated=chosen.url,
            deactivated=active.url if active else None,
        )

    # ------------------------------------------------------------------
    # Internals

    @staticmethod
    def _classify(text: str) -> List[LineClass]:
        return [classify(line.rstrip("\r\n")) for line in text.splitlines(keepends=True)]

    def _select(
        self, input_id: str, inactive: List[VersionGroup], target: Optional[str]
    ) -> VersionGroup:
        options = [group.url for group in inactive]
        if target is not None:
            exact = [group for group in inactive if group.url == target]
            if exact:
                return exact[0]
            partial = [group for group in inactive if target in group.url]
            if len(partial) == 1:
                return partial[0]
            raise SelectionRequired(f"{input_id} (no single match for '{target}')", options)
        if len(inactive) == 1:
            return inactive[0]
        return inactive[self._chooser.choose(input_id, options)]


def _newline(line: str) -> str:
    stripped = line.rstrip("\r\n")
    return line[len(stripped):]


__all__ = [
    "ACTIVE",
    "INACTIVE",
    "LineClass",
    "ToggleResult",
    "Toggler",
    "UNRELATED",
    "VersionGroup",
    "build_groups",
    "classify",
    "toggleable_ids",
]
