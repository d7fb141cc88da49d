"""Format-preserving model of the inputs declared in a flake manifest."""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from ..errors import MalformedManifest
from ..uri.grammar import SourceRef, parse as parse_locator
from .lexer import IDENT, KEYWORDS, STRING, Token, string_body, tokenize, unescape_string

STYLE_DOTTED = "dotted"
STYLE_NESTED = "nested"

CONTAINER_BLOCK = "block"
CONTAINER_TOPLEVEL = "toplevel"


@dataclass(frozen=True)
class Span:
    """Half-open byte range into the manifest text."""

    start: int
    end: int


class SpanTable:
    """Flat table of spans addressed by index.

    Leaf spans cover a single literal value and can be rewritten without a
    reparse; every other span is shifted around them.
    """

    def __init__(self, entries: Optional[List[List[int]]] = None) -> None:
        self._entries: List[List[int]] = entries if entries is not None else []

    def add(self, start: int, end: int, *, leaf: bool = False) -> int:
        self._entries.append([start, end, 1 if leaf else 0])
        return len(self._entries) - 1

    def get(self, index: int) -> Span:
        start, end, _ = self._entries[index]
        return Span(start, end)

    def is_leaf(self, span: Span) -> bool:
        return any(
            entry[2] and entry[0] == span.start and entry[1] == span.end
            for entry in self._entries
        )

    def shifted(self, start: int, end: int, delta: int) -> "SpanTable":
        """Copy of the table after [start, end) was replaced by a region `delta` bytes longer."""
        entries = []
        for entry_start, entry_end, leaf in self._entries:
            if entry_start >= end and entry_start > start:
                entry_start += delta
            if entry_end >= end:
                entry_end += delta
            entries.append([entry_start, entry_end, leaf])
        return SpanTable(entries)

    def __len__(self) -> int:
        return len(self._entries)


@dataclass(frozen=True)
class FollowsDecl:
    """One `inputs.<child>.follows = "<target>";` statement of an input."""

    child_path: str
    target: str
    statement: Span
    value: Span


@dataclass(frozen=True)
class BlockLayout:
    """Braces and inner statements of an attribute-set value."""

    open: Span
    close: Span
    bindings: Tuple[Span, ...]


@dataclass(frozen=True)
class InputNode:
    """One declared input with the spans of its statements and values."""

    id: str
    url: Optional[str]
    is_flake: bool
    follows: Tuple[FollowsDecl, ...]
    follows_target: Optional[str]
    style: str
    container: str
    statements: Tuple[Span, ...]
    url_span: Optional[Span] = None
    flake_span: Optional[Span] = None
    block: Optional[BlockLayout] = None
    declarations: Tuple[FollowsDecl, ...] = ()
    follows_statement: Optional[Span] = None

    @property
    def span(self) -> Span:
        return Span(
            min(span.start for span in self.statements),
            max(span.end for span in self.statements),
        )

    @property
    def locator(self) -> Optional[SourceRef]:
        """The parsed url, or None when the input relies on the registry default."""
        if self.url is None:
            return None
        return parse_locator(self.url)

    def follows_for(self, child_path: str) -> Optional[FollowsDecl]:
        for decl in self.follows:
            if decl.child_path == child_path:
                return decl
        return None


@dataclass
class _NodeRecord:
    id: str
    style: str
    container: str
    statements: List[int] = field(default_factory=list)
    url: Optional[int] = None
    flake: Optional[int] = None
    follows_target: Optional[int] = None
    follows_statement: Optional[int] = None
    follows: List[Tuple[str, int, int]] = field(default_factory=list)
    block: Optional[Tuple[int, int, List[int]]] = None


@dataclass
class _Layout:
    top_open: int
    top_close: int
    block: Optional[Tuple[int, int, List[int]]] = None
    block_statement: Optional[int] = None
    outputs: Optional[int] = None


class Document:
    """Manifest text plus the arena of input nodes parsed from it."""

    def __init__(
        self,
        text: str,
        spans: SpanTable,
        records: Sequence[_NodeRecord],
        layout: _Layout,
    ) -> None:
        self._text = text
        self._spans = spans
        self._records = list(records)
        self._layout = layout
        self._nodes: Optional[List[InputNode]] = None

    @classmethod
    def parse(cls, text: str) -> "Document":
        return _Parser(text).run()

    @property
    def text(self) -> str:
        return self._text

    def all(self) -> List[InputNode]:
        if self._nodes is None:
            self._nodes = [self._materialize(record) for record in self._records]
        return list(self._nodes)

    def find(self, input_id: str) -> Optional[InputNode]:
        for node in self.all():
            if node.id == input_id:
                return node
        return None

    def ids(self) -> List[str]:
        return [record.id for record in self._records]

    # ------------------------------------------------------------------
    # Span operations

    def replace(self, span: Span, text: str) -> "Document":
        """Replace a span; literal values are shifted in place, anything else reparses."""
        updated = self._text[: span.start] + text + self._text[span.end :]
        if self._spans.is_leaf(span):
            delta = len(text) - (span.end - span.start)
            spans = self._spans.shifted(span.start, span.end, delta)
            return Document(updated, spans, self._records, self._layout)
        return Document.parse(updated)

    def insert_fragment(self, after: int, text: str) -> Tuple["Document", Span]:
        """Insert raw text at an offset, returning the new document and the inserted span."""
        if not 0 <= after <= len(self._text):
            raise ValueError(f"Insertion offset {after} outside the manifest")
        updated = self._text[:after] + text + self._text[after:]
        return Document.parse(updated), Span(after, after + len(text))

    def delete(self, spans: Iterable[Span]) -> "Document":
        """Delete the given spans; overlapping spans are merged first."""
        merged: List[Span] = []
        for span in sorted(spans, key=lambda item: (item.start, item.end)):
            if merged and span.start <= merged[-1].end:
                last = merged[-1]
                merged[-1] = Span(last.start, max(last.end, span.end))
            else:
                merged.append(span)
        updated = self._text
        for span in reversed(merged):
            updated = updated[: span.start] + updated[span.end :]
        return Document.parse(updated)

    def removal_extent(self, span: Span) -> Span:
        """Grow a statement span so deleting it leaves no blank line or stray space."""
        text = self._text
        line_start = text.rfind("\n", 0, span.start) + 1
        line_end = text.find("\n", span.end)
        if line_end == -1:
            line_end = len(text)
        prefix = text[line_start : span.start]
        suffix = text[span.end : line_end].strip()
        if not prefix.strip() and (not suffix or suffix.startswith("#")):
            end = line_end + 1 if line_end < len(text) else line_end
            return Span(line_start, end)
        if prefix.strip() and text[span.start - 1] == " ":
            return Span(span.start - 1, span.end)
        if span.end < len(text) and text[span.end] == " ":
            return Span(span.start, span.end + 1)
        return span

    # ------------------------------------------------------------------
    # Layout

    def inputs_block(self) -> Optional[BlockLayout]:
        if self._layout.block is None:
            return None
        return self._block_layout(self._layout.block)

    def outputs_statement(self) -> Optional[Span]:
        if self._layout.outputs is None:
            return None
        return self._spans.get(self._layout.outputs)

    def top_level_braces(self) -> Tuple[Span, Span]:
        return self._spans.get(self._layout.top_open), self._spans.get(self._layout.top_close)

    def dominant_style(self, default: str) -> str:
        """Declaration style used by most inputs; ties go to the last input."""
        nodes = self.all()
        if not nodes:
            return default
        counts = Counter(node.style for node in nodes)
        ranked = counts.most_common()
        if len(ranked) > 1 and ranked[0][1] == ranked[1][1]:
            return nodes[-1].style
        return ranked[0][0]

    def line_start(self, offset: int) -> int:
        return self._text.rfind("\n", 0, offset) + 1

    def line_end(self, offset: int) -> int:
        end = self._text.find("\n", offset)
        return len(self._text) if end == -1 else end

    def line_indent(self, offset: int) -> str:
        start = self.line_start(offset)
        line = self._text[start : self.line_end(offset)]
        return line[: len(line) - len(line.lstrip(" \t"))]

    def rest_of_line_is_blank(self, offset: int) -> bool:
        rest = self._text[offset : self.line_end(offset)].strip()
        return not rest or rest.startswith("#")

    def indent_unit(self, default: str = "  ") -> str:
        """Indentation step observed between a brace line and its first binding."""
        candidates: List[BlockLayout] = []
        block = self.inputs_block()
        if block is not None:
            candidates.append(block)
        candidates.extend(node.block for node in self.all() if node.block is not None)
        for layout in candidates:
            if not layout.bindings:
                continue
            outer = self.line_indent(layout.open.start)
            inner = self.line_indent(layout.bindings[0].start)
            first = layout.bindings[0].start
            if self.line_start(first) == self.line_start(layout.open.start):
                continue
            if inner.startswith(outer) and len(inner) > len(outer):
                return inner[len(outer) :]
        return default

    # ------------------------------------------------------------------
    # Internals

    def _block_layout(self, block: Tuple[int, int, List[int]]) -> BlockLayout:
        open_id, close_id, bindings = block
        return BlockLayout(
            open=self._spans.get(open_id),
            close=self._spans.get(close_id),
            bindings=tuple(self._spans.get(index) for index in bindings),
        )

    def _value(self, index: int) -> str:
        span = self._spans.get(index)
        return unescape_string(self._text[span.start : span.end])

    def _materialize(self, record: _NodeRecord) -> InputNode:
        declarations = tuple(
            FollowsDecl(
                child_path=child_path,
                target=self._value(value),
                statement=self._spans.get(statement),
                value=self._spans.get(value),
            )
            for child_path, statement, value in record.follows
        )
        latest: Dict[str, FollowsDecl] = {}
        for decl in declarations:
            latest.pop(decl.child_path, None)
            latest[decl.child_path] = decl
        flake_span = self._spans.get(record.flake) if record.flake is not None else None
        is_flake = True
        if flake_span is not None:
            is_flake = self._text[flake_span.start : flake_span.end] != "false"
        return InputNode(
            id=record.id,
            url=self._value(record.url) if record.url is not None else None,
            is_flake=is_flake,
            follows=tuple(latest.values()),
            follows_target=(
                self._value(record.follows_target)
                if record.follows_target is not None
                else None
            ),
            style=record.style,
            container=record.container,
            statements=tuple(self._spans.get(index) for index in record.statements),
            url_span=self._spans.get(record.url) if record.url is not None else None,
            flake_span=flake_span,
            block=self._block_layout(record.block) if record.block is not None else None,
            declarations=declarations,
            follows_statement=(
                self._spans.get(record.follows_statement)
                if record.follows_statement is not None
                else None
            ),
        )


@dataclass
class _Binding:
    path: List[str]
    first: int
    value_start: int
    value_end: int
    statement: int


class _Parser:
    """Recursive reader for the attribute sets that hold input declarations."""

    def __init__(self, text: str) -> None:
        self._text = text
        self._tokens = tokenize(text)
        self._spans = SpanTable()
        self._records: Dict[str, _NodeRecord] = {}

    def run(self) -> Document:
        tokens = self._tokens
        if not tokens:
            raise MalformedManifest("the manifest is empty")
        if not tokens[0].is_punct("{"):
            raise MalformedManifest(
                "expected the manifest to be an attribute set", offset=tokens[0].start
            )
        bindings, close = self._bindings(0)
        if close != len(tokens) - 1:
            raise MalformedManifest(
                "unexpected content after the top-level attribute set",
                offset=tokens[close + 1].start,
            )
        layout = _Layout(top_open=self._token_span(0), top_close=self._token_span(close))
        for binding in bindings:
            head = binding.path[0]
            if head == "inputs" and len(binding.path) == 1:
                if not self._is_attrset(binding):
                    raise MalformedManifest(
                        "'inputs' must be an attribute set",
                        offset=tokens[binding.value_start].start,
                    )
                children = self._children(binding)
                layout.block = self._block(binding, children)
                layout.block_statement = binding.statement
                for child in children:
                    self._input(child.path, child, CONTAINER_BLOCK)
            elif head == "inputs":
                self._input(binding.path[1:], binding, CONTAINER_TOPLEVEL)
            elif head == "outputs" and layout.outputs is None:
                layout.outputs = binding.statement
        return Document(self._text, self._spans, list(self._records.values()), layout)

    # ------------------------------------------------------------------
    # Input structure

    def _input(self, path: List[str], binding: _Binding, container: str) -> None:
        input_id = path[0]
        record = self._records.get(input_id)
        if record is None:
            style = STYLE_NESTED if len(path) == 1 else STYLE_DOTTED
            record = _NodeRecord(id=input_id, style=style, container=container)
            self._records[input_id] = record
        record.statements.append(binding.statement)
        if len(path) > 1:
            self._field(record, path[1:], binding)
            return
        if not self._is_attrset(binding):
            raise MalformedManifest(
                f"input '{input_id}' must be an attribute set",
                offset=self._tokens[binding.value_start].start,
            )
        children = self._children(binding)
        record.block = self._block(binding, children)
        for child in children:
            self._field(record, child.path, child)

    def _field(self, record: _NodeRecord, path: List[str], binding: _Binding) -> None:
        if path == ["url"]:
            value = self._string_value(binding)
            if value is not None:
                record.url = value
        elif path == ["flake"]:
            token = self._single_token(binding)
            if token is None or token.kind != IDENT or token.text not in ("true", "false"):
                raise MalformedManifest(
                    f"'{record.id}.flake' must be true or false",
                    offset=self._tokens[binding.value_start].start,
                )
            record.flake = self._spans.add(token.start, token.end, leaf=True)
        elif path == ["follows"]:
            value = self._string_value(binding)
            if value is not None:
                record.follows_target = value
                record.follows_statement = binding.statement
        elif path[0] == "inputs":
            self._nested_inputs(record, [], path[1:], binding)

    def _nested_inputs(
        self, record: _NodeRecord, children: List[str], path: List[str], binding: _Binding
    ) -> None:
        if path:
            self._nested_child(record, children + [path[0]], path[1:], binding)
        elif self._is_attrset(binding):
            for inner in self._children(binding):
                self._nested_inputs(record, children, inner.path, inner)

    def _nested_child(
        self, record: _NodeRecord, children: List[str], path: List[str], binding: _Binding
    ) -> None:
        if not path:
            if self._is_attrset(binding):
                for inner in self._children(binding):
                    self._nested_child(record, children, inner.path, inner)
        elif path == ["follows"]:
            value = self._string_value(binding)
            if value is not None:
                record.follows.append((".".join(children), binding.statement, value))
        elif path[0] == "inputs":
            self._nested_inputs(record, children, path[1:], binding)

    # ------------------------------------------------------------------
    # Attribute sets

    def _bindings(self, open_index: int) -> Tuple[List[_Binding], int]:
        tokens = self._tokens
        index = open_index + 1
        bindings: List[_Binding] = []
        while True:
            if index >= len(tokens):
                raise MalformedManifest(
                    "unbalanced braces: missing '}'", offset=tokens[open_index].start
                )
            token = tokens[index]
            if token.is_punct("}"):
                return bindings, index
            if token.is_keyword("inherit"):
                index = self._skip_value(index + 1) + 1
                continue
            path, after = self._attrpath(index)
            if after >= len(tokens) or not tokens[after].is_punct("="):
                where = tokens[after].start if after < len(tokens) else len(self._text)
                raise MalformedManifest(
                    f"expected '=' after attribute '{'.'.join(path)}'", offset=where
                )
            end = self._skip_value(after + 1)
            statement = self._spans.add(token.start, tokens[end].end)
            bindings.append(_Binding(path, index, after + 1, end, statement))
            index = end + 1

    def _attrpath(self, index: int) -> Tuple[List[str], int]:
        tokens = self._tokens
        parts: List[str] = []
        while True:
            if index >= len(tokens):
                raise MalformedManifest("unexpected end of file in attribute path")
            token = tokens[index]
            if token.kind == IDENT and token.text not in KEYWORDS - {"or"}:
                parts.append(token.text)
            elif token.kind == STRING:
                body = string_body(token)
                parts.append(body if body is not None else token.text)
            elif token.is_punct("${"):
                close = self._match(index)
                parts.append(self._text[token.start : tokens[close].end])
                index = close
            else:
                raise MalformedManifest(
                    f"unexpected {token.text!r} in attribute path", offset=token.start
                )
            index += 1
            if index < len(tokens) and tokens[index].is_punct("."):
                index += 1
                continue
            return parts, index

    def _skip_value(self, index: int) -> int:
        """Return the index of the ';' terminating the value starting at `index`."""
        tokens = self._tokens
        stack: List[str] = []
        while index < len(tokens):
            token = tokens[index]
            if token.kind == IDENT:
                if token.text == "let":
                    stack.append("let")
                elif token.text == "in" and stack and stack[-1] == "let":
                    stack.pop()
                elif token.text in ("with", "assert"):
                    stack.append("with")
            elif token.text in ("{", "[", "(", "${") and token.kind != STRING:
                stack.append(token.text)
            elif token.text in ("}", "]", ")") and token.kind != STRING:
                if not stack or stack[-1] in ("let", "with"):
                    raise MalformedManifest(f"unbalanced {token.text!r}", offset=token.start)
                stack.pop()
            elif token.is_punct(";"):
                if not stack:
                    return index
                if stack[-1] == "with":
                    stack.pop()
            index += 1
        raise MalformedManifest("missing ';' after attribute value", offset=len(self._text))

    def _match(self, open_index: int) -> int:
        depth = 0
        for index in range(open_index, len(self._tokens)):
            token = self._tokens[index]
            if token.kind == STRING:
                continue
            if token.text in ("{", "[", "(", "${"):
                depth += 1
            elif token.text in ("}", "]", ")"):
                depth -= 1
                if depth == 0:
                    return index
        raise MalformedManifest(
            "unbalanced brackets", offset=self._tokens[open_index].start
        )

    def _value_open(self, binding: _Binding) -> Optional[int]:
        index = binding.value_start
        if self._tokens[index].is_keyword("rec"):
            index += 1
        if index < binding.value_end and self._tokens[index].is_punct("{"):
            return index
        return None

    def _is_attrset(self, binding: _Binding) -> bool:
        open_index = self._value_open(binding)
        if open_index is None:
            return False
        return self._match(open_index) == binding.value_end - 1

    def _children(self, binding: _Binding) -> List[_Binding]:
        open_index = self._value_open(binding)
        assert open_index is not None
        children, _ = self._bindings(open_index)
        return children

    def _block(
        self, binding: _Binding, children: List[_Binding]
    ) -> Tuple[int, int, List[int]]:
        open_index = self._value_open(binding)
        assert open_index is not None
        close_index = binding.value_end - 1
        return (
            self._token_span(open_index),
            self._token_span(close_index),
            [child.statement for child in children],
        )

    def _single_token(self, binding: _Binding) -> Optional[Token]:
        if binding.value_end - binding.value_start != 1:
            return None
        return self._tokens[binding.value_start]

    def _string_value(self, binding: _Binding) -> Optional[int]:
        token = self._single_token(binding)
        if token is None or token.kind != STRING or token.interpolated:
            return None
        return self._spans.add(token.start + 1, token.end - 1, leaf=True)

    def _token_span(self, index: int) -> int:
        token = self._tokens[index]
        return self._spans.add(token.start, token.end)


__all__ = [
    "BlockLayout",
    "CONTAINER_BLOCK",
    "CONTAINER_TOPLEVEL",
    "Document",
    "FollowsDecl",
    "InputNode",
    "STYLE_DOTTED",
    "STYLE_NESTED",
    "Span",
    "SpanTable",
]
