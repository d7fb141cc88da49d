"""Jinja2 templates for the text fragments inserted into a manifest."""

from __future__ import annotations

import re
from typing import List, Sequence

from jinja2 import DictLoader, Environment

from .lexer import escape_string
from .model import STYLE_NESTED

_IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_'-]*$")

_TEMPLATES = {
    "dotted.j2": (
        '{{ prefix }}{{ id | attr }}.url = {{ url | nix_string }};\n'
        "{% if not flake %}\n"
        "{{ prefix }}{{ id | attr }}.flake = false;\n"
        "{% endif %}\n"
        "{% for child, target in follows %}\n"
        '{{ prefix }}{{ id | attr }}.inputs.{{ child | attrpath }}.follows = {{ target | nix_string }};\n'
        "{% endfor %}\n"
    ),
    "nested.j2": (
        "{{ prefix }}{{ id | attr }} = {\n"
        "{{ unit }}url = {{ url | nix_string }};\n"
        "{% if not flake %}\n"
        "{{ unit }}flake = false;\n"
        "{% endif %}\n"
        "{% for child, target in follows %}\n"
        "{{ unit }}inputs.{{ child | attrpath }}.follows = {{ target | nix_string }};\n"
        "{% endfor %}\n"
        "};\n"
    ),
    "statement.j2": "{{ path | attrpath }} = {{ value }};",
}


def nix_attr(name: str) -> str:
    """Quote an attribute name unless it is a plain identifier."""
    if _IDENTIFIER_RE.match(name):
        return name
    return f'"{escape_string(name)}"'


def nix_attrpath(path: object) -> str:
    parts = path.split(".") if isinstance(path, str) else list(path)  # type: ignore[call-overload]
    return ".".join(nix_attr(part) for part in parts)


def nix_string(value: str) -> str:
    return f'"{escape_string(value)}"'


class FragmentRenderer:
    """Renders new input declarations and single statements."""

    def __init__(self) -> None:
        self._env = Environment(
            loader=DictLoader(_TEMPLATES),
            autoescape=False,
            trim_blocks=True,
            lstrip_blocks=True,
        )
        self._env.filters["attr"] = nix_attr
        self._env.filters["attrpath"] = nix_attrpath
        self._env.filters["nix_string"] = nix_string

    def input(
        self,
        style: str,
        *,
        input_id: str,
        url: str,
        flake: bool = True,
        follows: Sequence[tuple[str, str]] = (),
        prefix: str = "",
        unit: str = "  ",
    ) -> List[str]:
        """Lines of a new input declaration, without leading indentation."""
        name = "nested.j2" if style == STYLE_NESTED else "dotted.j2"
        rendered = self._env.get_template(name).render(
            id=input_id,
            url=url,
            flake=flake,
            follows=[(child.replace(".", ".inputs."), target) for child, target in follows],
            prefix=prefix,
            unit=unit,
        )
        return rendered.rstrip("\n").split("\n")

    def statement(self, path: Sequence[str], value: str) -> str:
        """A single `a.b.c = value;` statement; `value` is already a Nix literal."""
        return self._env.get_template("statement.j2").render(path=list(path), value=value)


__all__ = ["FragmentRenderer", "nix_attr", "nix_attrpath", "nix_string"]
