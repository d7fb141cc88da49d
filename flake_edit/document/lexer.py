"""Tokenizer for the subset of Nix used by flake manifests.

Every token keeps its byte offsets into the original text so the document
model can edit values in place. Whitespace and comments are dropped from the
token stream; the offsets of the surrounding tokens are enough to recover
them.
"""

from __future__ import annotations

from dataclasses import dataclass
import re
from typing import List, Optional

from ..errors import MalformedManifest

IDENT = "ident"
STRING = "string"
IND_STRING = "ind_string"
NUMBER = "number"
PATH = "path"
PUNCT = "punct"

KEYWORDS = frozenset(
    {"let", "in", "rec", "with", "assert", "inherit", "if", "then", "else", "or"}
)

_IDENT_RE = re.compile(r"[A-Za-z_][A-Za-z0-9_'-]*")
_NUMBER_RE = re.compile(r"\d+(?:\.\d+)?(?:[eE][+-]?\d+)?")
_PATH_RE = re.compile(r"(?:\.{1,2}|~)?(?:/[A-Za-z0-9._+-]+)+/?")
_SEARCH_PATH_RE = re.compile(r"<[A-Za-z0-9._+-]+(?:/[A-Za-z0-9._+-]+)*>")
_OPERATORS = ("${", "...", "==", "!=", "<=", ">=", "&&", "||", "->", "//", "++")
_SINGLE = "{}[]();=.,:?@+-*/!<>"


@dataclass(frozen=True)
class Token:
    """One lexical token and its position in the source text."""

    kind: str
    text: str
    start: int
    end: int
    interpolated: bool = False

    def is_punct(self, value: str) -> bool:
        return self.kind == PUNCT and self.text == value

    def is_keyword(self, value: str) -> bool:
        return self.kind == IDENT and self.text == value


def tokenize(text: str) -> List[Token]:
    """Split manifest text into significant tokens."""
    return _Lexer(text).run()


def unescape_string(body: str) -> str:
    """Decode the contents of a double-quoted Nix string."""
    result: List[str] = []
    index = 0
    while index < len(body):
        char = body[index]
        if char == "\\" and index + 1 < len(body):
            following = body[index + 1]
            result.append({"n": "\n", "t": "\t", "r": "\r"}.get(following, following))
            index += 2
            continue
        result.append(char)
        index += 1
    return "".join(result)


def escape_string(value: str) -> str:
    """Encode a value for use inside a double-quoted Nix string."""
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return escaped.replace("${", "\\${").replace("\n", "\\n")


class _Lexer:
    def __init__(self, text: str) -> None:
        self._text = text
        self._pos = 0
        self._tokens: List[Token] = []

    def run(self) -> List[Token]:
        text = self._text
        while self._pos < len(text):
            char = text[self._pos]
            if char.isspace():
                self._pos += 1
            elif char == "#":
                newline = text.find("\n", self._pos)
                self._pos = len(text) if newline == -1 else newline
            elif text.startswith("/*", self._pos):
                close = text.find("*/", self._pos + 2)
                if close == -1:
                    raise MalformedManifest("unterminated block comment", offset=self._pos)
                self._pos = close + 2
            elif char == '"':
                self._string()
            elif text.startswith("''", self._pos):
                self._indented_string()
            else:
                self._plain()
        return self._tokens

    # ------------------------------------------------------------------
    # Internals

    def _emit(self, kind: str, start: int, end: int, *, interpolated: bool = False) -> None:
        self._tokens.append(
            Token(kind, self._text[start:end], start, end, interpolated=interpolated)
        )
        self._pos = end

    def _plain(self) -> None:
        text = self._text
        start = self._pos
        match = _PATH_RE.match(text, start)
        if match and not text.startswith("//", start) and self._path_allowed(match):
            self._emit(PATH, start, match.end())
            return
        match = _SEARCH_PATH_RE.match(text, start)
        if match:
            self._emit(PATH, start, match.end())
            return
        match = _IDENT_RE.match(text, start)
        if match:
            self._emit(IDENT, start, match.end())
            return
        match = _NUMBER_RE.match(text, start)
        if match:
            self._emit(NUMBER, start, match.end())
            return
        for operator in _OPERATORS:
            if text.startswith(operator, start):
                self._emit(PUNCT, start, start + len(operator))
                return
        if text[start] in _SINGLE:
            self._emit(PUNCT, start, start + 1)
            return
        raise MalformedManifest(f"unexpected character {text[start]!r}", offset=start)

    def _path_allowed(self, match: "re.Match[str]") -> bool:
        # A bare "/" between operands is division, not a path.
        token = match.group(0)
        if token.startswith(("./", "../", "~/")):
            return True
        previous = self._tokens[-1] if self._tokens else None
        return previous is None or previous.kind == PUNCT

    def _string(self) -> None:
        start = self._pos
        end, interpolated = self._scan_string(start + 1)
        self._emit(STRING, start, end, interpolated=interpolated)

    def _scan_string(self, index: int) -> tuple[int, bool]:
        text = self._text
        interpolated = False
        while index < len(text):
            char = text[index]
            if char == "\\":
                index += 2
                continue
            if char == '"':
                return index + 1, interpolated
            if text.startswith("$${", index):
                index += 3
                continue
            if text.startswith("${", index):
                interpolated = True
                index = self._scan_interpolation(index + 2)
                continue
            index += 1
        raise MalformedManifest("unterminated string", offset=index)

    def _indented_string(self) -> None:
        text = self._text
        start = self._pos
        index = start + 2
        interpolated = False
        while index < len(text):
            if text.startswith("'''", index) or text.startswith("''$", index) or text.startswith("''\\", index):
                index += 3
                continue
            if text.startswith("''", index):
                self._emit(IND_STRING, start, index + 2, interpolated=interpolated)
                return
            if text.startswith("${", index):
                interpolated = True
                index = self._scan_interpolation(index + 2)
                continue
            index += 1
        raise MalformedManifest("unterminated indented string", offset=start)

    def _scan_interpolation(self, index: int) -> int:
        """Return the offset just past the `}` closing an interpolation."""
        text = self._text
        depth = 1
        while index < len(text):
            char = text[index]
            if char == '"':
                index, _ = self._scan_string(index + 1)
                continue
            if char == "{":
                depth += 1
            elif char == "}":
                depth -= 1
                if depth == 0:
                    return index + 1
            index += 1
        raise MalformedManifest("unterminated interpolation", offset=index)


def string_body(token: Token) -> Optional[str]:
    """Decoded value of a string token, or None when it interpolates."""
    if token.interpolated:
        return None
    if token.kind == STRING:
        return unescape_string(token.text[1:-1])
    if token.kind == IND_STRING:
        return token.text[2:-2].strip()
    return None


__all__ = [
    "IDENT",
    "IND_STRING",
    "KEYWORDS",
    "NUMBER",
    "PATH",
    "PUNCT",
    "STRING",
    "Token",
    "escape_string",
    "string_body",
    "tokenize",
    "unescape_string",
]
