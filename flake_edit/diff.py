"""Unified diff rendering for dry runs."""

from __future__ import annotations

import difflib


def render_diff(original: str, updated: str, path: str) -> str:
    """Unified diff between two versions of a file; empty when they are equal."""
    if original == updated:
        return ""
    lines = difflib.unified_diff(
        original.splitlines(keepends=True),
        updated.splitlines(keepends=True),
        fromfile=f"{path} (original)",
        tofile=f"{path} (updated)",
    )
    rendered = []
    for line in lines:
        rendered.append(line if line.endswith("\n") else line + "\n\\ No newline at end of file\n")
    return "".join(rendered)


__all__ = ["render_diff"]
