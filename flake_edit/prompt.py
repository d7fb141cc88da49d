"""Selection capability used when an edit has several valid targets."""

from __future__ import annotations

import sys
from typing import Callable, Optional, Protocol, Sequence, TextIO

from .errors import SelectionRequired


class Chooser(Protocol):
    """Picks one of several options and returns its index."""

    def choose(self, title: str, options: Sequence[str]) -> int:
        ...


class NonInteractiveChooser:
    """Chooser for CI and scripts: every call fails with the available options."""

    def choose(self, title: str, options: Sequence[str]) -> int:
        raise SelectionRequired(title, options)


class TerminalChooser:
    """Numbered prompt on the terminal."""

    def __init__(
        self,
        *,
        reader: Callable[[str], str] = input,
        stream: Optional[TextIO] = None,
    ) -> None:
        self._reader = reader
        self._stream = stream or sys.stderr

    def choose(self, title: str, options: Sequence[str]) -> int:
        if not options:
            raise ValueError("choose() needs at least one option")
        print(f"Select a version for '{title}':", file=self._stream)
        for index, option in enumerate(options, start=1):
            print(f"  {index}) {option}", file=self._stream)
        while True:
            try:
                answer = self._reader(f"[1-{len(options)}]: ").strip()
            except EOFError:
                raise SelectionRequired(title, options) from None
            if answer.isdigit() and 1 <= int(answer) <= len(options):
                return int(answer) - 1
            print(f"Please enter a number between 1 and {len(options)}.", file=self._stream)


__all__ = ["Chooser", "NonInteractiveChooser", "TerminalChooser"]
