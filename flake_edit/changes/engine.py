"""Apply change requests to a manifest document.

Each request is validated completely before the first span operation, so a
failing request never leaves a half-edited document behind. The engine is
stateless between requests; `state` only reflects the request in flight.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Callable, Dict, List, Optional, Protocol, Sequence, Tuple

from ..config import EditContext
from ..document.graph import FollowsGraph, declared_targets, resolution_cycle, target_root
from ..document.lexer import escape_string
from ..document.model import (
    CONTAINER_BLOCK,
    CONTAINER_TOPLEVEL,
    Document,
    FollowsDecl,
    InputNode,
    Span,
)
from ..document.render import FragmentRenderer, nix_string
from ..errors import (
    ChangeError,
    CycleDetected,
    DuplicateInput,
    FlakeEditError,
    InputNotFound,
    MalformedLock,
    NetworkError,
    NothingToUnpin,
    UnknownParent,
)
from ..lock.follows import FollowsPlan, FollowsReconciler
from ..lock.graph import LockGraph
from ..logging import get_logger
from ..prompt import Chooser
from ..uri.grammar import (
    FORGE,
    GIT,
    HINT_REF,
    HINT_REV,
    MERCURIAL,
    SourceRef,
    coerce_url,
    infer_id,
    parse as parse_locator,
    serialize,
)
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

IDLE = "idle"
VALIDATING = "validating"
MUTATING = "mutating"
DONE = "done"
FAILED = "failed"


class VersionSource(Protocol):
    """Finds a newer locator for an input, or None when it is current."""

    def resolve(self, input_id: str, source: SourceRef, *, init: bool = False) -> Optional[SourceRef]:
        ...


@dataclass(frozen=True)
class ChangeResult:
    document: Document
    state: str
    changed: bool
    message: str = ""
    input_id: Optional[str] = None
    previous_ref: Optional[str] = None
    plan: Optional[FollowsPlan] = None


class ChangeEngine:
    """Validates and applies one change request at a time."""

    def __init__(
        self,
        context: EditContext,
        chooser: Chooser,
        *,
        lock: Optional[LockGraph] = None,
        resolver: Optional[VersionSource] = None,
    ) -> None:
        self.context = context
        self.lock = lock
        self.resolver = resolver
        self.renderer = FragmentRenderer()
        self.toggler = Toggler(chooser)
        self.state = IDLE
        self.logger = get_logger("engine")
        self._handlers: Dict[type, Callable[..., ChangeResult]] = {
            Add: self._add,
            Remove: self._remove,
            ChangeUri: self._change_uri,
            Pin: self._pin,
            Unpin: self._unpin,
            AddFollow: self._add_follow,
            RemoveFollow: self._remove_follow,
            Toggle: self._toggle,
            Update: self._update,
            AutoFollow: self._auto_follow,
        }

    def apply(self, document: Document, request: ChangeRequest) -> ChangeResult:
        handler = self._handlers.get(type(request))
        if handler is None:
            raise TypeError(f"Unsupported change request: {request!r}")
        self.state = VALIDATING
        self.logger.debug("Applying %s", request)
        try:
            result = handler(document, request)
        except FlakeEditError:
            self.state = FAILED
            raise
        self.state = DONE
        return result

    # ------------------------------------------------------------------
    # Requests

    def _add(self, document: Document, request: Add) -> ChangeResult:
        ref = parse_locator(coerce_url(request.locator))
        if request.ref_or_rev:
            ref = ref.with_ref_or_rev(request.ref_or_rev)
        if request.shallow:
            if ref.kind == GIT:
                ref = replace(ref, shallow=True)
            else:
                self.logger.debug("Ignoring --shallow for %s locator", ref.kind)
        input_id = request.id or infer_id(ref)
        existing = document.find(input_id)
        if existing is not None and not request.overwrite:
            raise DuplicateInput(input_id)

        self.state = MUTATING
        base = document
        if existing is not None:
            self.logger.debug("Overwriting existing input %s", input_id)
            base = document.delete(self._statement_extents(document, existing))
        url = serialize(ref)
        updated = self._insert_input(base, input_id, url, request.flake)
        return self._done(
            document, updated, f"Added input '{input_id}' ({url})", input_id=input_id
        )

    def _remove(self, document: Document, request: Remove) -> ChangeResult:
        node = self._require(document, request.id)
        self.state = MUTATING
        spans = self._statement_extents(document, node)
        for other in document.all():
            if other.id == node.id:
                continue
            for decl in other.declarations:
                if target_root(decl.target) == node.id:
                    self.logger.debug(
                        "Dropping %s.inputs.%s.follows (target removed)", other.id, decl.child_path
                    )
                    spans.append(document.removal_extent(decl.statement))
            if other.follows_target and target_root(other.follows_target) == node.id:
                self.logger.debug("Dropping %s.follows (target removed)", other.id)
                spans.extend(self._alias_extents(document, other))
        updated = document.delete(spans)
        return self._done(document, updated, f"Removed input '{node.id}'", input_id=node.id)

    def _change_uri(self, document: Document, request: ChangeUri) -> ChangeResult:
        node = self._require(document, request.id)
        ref = parse_locator(coerce_url(request.locator))
        self.state = MUTATING
        updated = self._set_url(document, node, ref)
        return self._done(
            document, updated, f"Changed '{node.id}' to {serialize(ref)}", input_id=node.id
        )

    def _pin(self, document: Document, request: Pin) -> ChangeResult:
        node = self._require(document, request.id)
        ref = self._locator(node)
        rev = request.rev
        if rev is None:
            rev = self.lock.rev_for(node.id) if self.lock is not None else None
            if rev is None:
                known = self.lock.top_level() if self.lock is not None else []
                raise InputNotFound(node.id, known, detail="in the lock file")
        hint = HINT_REV if ref.kind in (GIT, MERCURIAL) or ref.hint is not None else None
        pinned = ref.with_ref_or_rev(rev, hint=hint)
        previous = ref.ref_or_rev if ref.ref_or_rev and not ref.is_revision else None

        self.state = MUTATING
        updated = self._set_url(document, node, pinned)
        return self._done(
            document,
            updated,
            f"Pinned '{node.id}' to {rev}",
            input_id=node.id,
            previous_ref=previous,
        )

    def _unpin(self, document: Document, request: Unpin) -> ChangeResult:
        node = self._require(document, request.id)
        ref = self._locator(node)
        if ref.ref_or_rev is None:
            raise NothingToUnpin(node.id)
        if request.restore:
            hint = HINT_REF if ref.kind in (GIT, MERCURIAL) else None
            unpinned = ref.with_ref_or_rev(request.restore, hint=hint)
        else:
            unpinned = ref.without_ref_or_rev()

        self.state = MUTATING
        updated = self._set_url(document, node, unpinned)
        return self._done(
            document, updated, f"Unpinned '{node.id}' ({serialize(unpinned)})", input_id=node.id
        )

    def _add_follow(self, document: Document, request: AddFollow) -> ChangeResult:
        node, child_path = self._follow_parent(document, request.parent_path, request.child)
        target_id = target_root(request.target)
        if document.find(target_id) is None:
            raise InputNotFound(target_id, document.ids(), detail="(follows target)")
        cycle = None
        if target_id != node.id or "/" not in request.target:
            cycle = FollowsGraph.from_document(document).cycle_with(node.id, target_id)
        if cycle is None:
            source = "/".join([node.id, *child_path.split(".")])
            cycle = resolution_cycle(declared_targets(document), source, request.target)
        if cycle is not None:
            raise CycleDetected(cycle)

        existing = node.follows_for(child_path)
        path = f"{request.parent_path}.{request.child}"
        if existing is not None and existing.target == request.target:
            return self._done(
                document, document, f"'{path}' already follows '{request.target}'", input_id=node.id
            )

        self.state = MUTATING
        if existing is not None:
            updated = document.replace(existing.value, escape_string(request.target))
        else:
            updated = self._insert_follow(document, node, child_path, request.target)
        return self._done(
            document, updated, f"'{path}' now follows '{request.target}'", input_id=node.id
        )

    def _remove_follow(self, document: Document, request: RemoveFollow) -> ChangeResult:
        parts = request.parent_path.split(".")
        node = self._require(document, parts[0])
        child_path = ".".join(parts[1:] + [request.child])
        matches = self._follow_declarations(node, child_path)
        self.state = MUTATING
        updated = document.delete(document.removal_extent(decl.statement) for decl in matches)
        return self._done(
            document,
            updated,
            f"Removed follows for '{request.parent_path}.{request.child}'",
            input_id=node.id,
        )

    def _toggle(self, document: Document, request: Toggle) -> ChangeResult:
        result = self.toggler.toggle(document.text, request.id, target=request.target)
        self.state = MUTATING
        updated = Document.parse(result.text)
        message = f"Toggled '{result.input_id}' to {result.activated}"
        if result.deactivated:
            message += f" (was {result.deactivated})"
        return self._done(document, updated, message, input_id=result.input_id)

    def _update(self, document: Document, request: Update) -> ChangeResult:
        if self.resolver is None:
            raise ChangeError("Version lookups are not available in this context")
        if request.id is not None:
            node = self._require(document, request.id)
            targets: List[Tuple[InputNode, SourceRef]] = [(node, self._locator(node))]
        else:
            targets = [
                (node, node.locator)  # type: ignore[misc]
                for node in document.all()
                if node.url is not None
            ]

        changes: List[Tuple[str, SourceRef]] = []
        for node, ref in targets:
            if request.id is None and ref.kind not in (FORGE, GIT):
                self.logger.debug("Skipping %s: %s locators have no versions", node.id, ref.kind)
                continue
            try:
                newer = self.resolver.resolve(node.id, ref, init=request.init)
            except NetworkError as exc:
                if request.id is not None:
                    raise
                self.logger.warning("Skipping %s: %s", node.id, exc)
                continue
            if newer is None or newer == ref:
                self.logger.debug("%s is up to date", node.id)
                continue
            changes.append((node.id, newer))

        if not changes:
            subject = f"'{request.id}' is" if request.id else "All inputs are"
            return self._done(document, document, f"{subject} already up to date", input_id=request.id)

        self.state = MUTATING
        updated = document
        lines = []
        for input_id, newer in changes:
            node = self._require(updated, input_id)
            updated = self._set_url(updated, node, newer)
            lines.append(f"Updated '{input_id}' to {serialize(newer)}")
        return self._done(document, updated, "\n".join(lines), input_id=request.id)

    def _auto_follow(self, document: Document, request: AutoFollow) -> ChangeResult:
        if self.lock is None:
            raise MalformedLock("no lock file found; run the lock command first")
        plan = FollowsReconciler(self.context.follow).plan(document, self.lock)
        if plan.empty:
            return self._done(document, document, "No inputs to auto-follow.", plan=plan)

        self.state = MUTATING
        updated = document
        lines = []
        for removal in plan.removals:
            parts = removal.parent_path.split(".")
            node = self._require(updated, parts[0])
            updated = self._delete_follow(
                updated, node, ".".join(parts[1:] + [removal.child_name])
            )
            lines.append(f"Removed stale follows {removal.path}")
        for addition in plan.additions:
            parts = addition.parent_path.split(".")
            node = self._require(updated, parts[0])
            updated = self._insert_follow(
                updated, node, ".".join(parts[1:] + [addition.child_name]), addition.target_id
            )
            lines.append(f"{addition.path} now follows {addition.target_id}")
        return self._done(document, updated, "\n".join(lines), plan=plan)

    # ------------------------------------------------------------------
    # Internals

    def _done(
        self,
        original: Document,
        updated: Document,
        message: str,
        *,
        input_id: Optional[str] = None,
        previous_ref: Optional[str] = None,
        plan: Optional[FollowsPlan] = None,
    ) -> ChangeResult:
        return ChangeResult(
            document=updated,
            state=DONE,
            changed=updated.text != original.text,
            message=message,
            input_id=input_id,
            previous_ref=previous_ref,
            plan=plan,
        )

    @staticmethod
    def _require(document: Document, input_id: str) -> InputNode:
        node = document.find(input_id)
        if node is None:
            raise InputNotFound(input_id, document.ids())
        return node

    @staticmethod
    def _locator(node: InputNode) -> SourceRef:
        ref = node.locator
        if ref is None:
            raise InputNotFound(node.id, detail="with a url (it uses the registry default)")
        return ref

    @staticmethod
    def _statement_extents(document: Document, node: InputNode) -> List[Span]:
        return [document.removal_extent(span) for span in node.statements]

    @classmethod
    def _alias_extents(cls, document: Document, node: InputNode) -> List[Span]:
        """An input that is only an alias goes entirely; otherwise just its follows line."""
        if node.url is None and node.flake_span is None and not node.declarations:
            return cls._statement_extents(document, node)
        assert node.follows_statement is not None
        return [document.removal_extent(node.follows_statement)]

    def _follow_parent(
        self, document: Document, parent_path: str, child: str
    ) -> Tuple[InputNode, str]:
        parts = parent_path.split(".")
        node = document.find(parts[0])
        if node is None:
            raise UnknownParent(parent_path, document.ids())
        return node, ".".join(parts[1:] + [child])

    @staticmethod
    def _follow_declarations(node: InputNode, child_path: str) -> List[FollowsDecl]:
        matches = [decl for decl in node.declarations if decl.child_path == child_path]
        if not matches:
            declared = [f"{node.id}.{decl.child_path}" for decl in node.follows]
            raise InputNotFound(
                f"{node.id}.{child_path}", declared, detail="among follows declarations"
            )
        return matches

    def _delete_follow(self, document: Document, node: InputNode, child_path: str) -> Document:
        matches = self._follow_declarations(node, child_path)
        return document.delete(document.removal_extent(decl.statement) for decl in matches)

    def _set_url(self, document: Document, node: InputNode, ref: SourceRef) -> Document:
        value = serialize(ref)
        if node.url_span is not None:
            return document.replace(node.url_span, escape_string(value))
        self.logger.debug("Input %s has no url statement; inserting one", node.id)
        if node.block is not None:
            statement = self.renderer.statement(["url"], nix_string(value))
            return self._insert_into_block(
                document,
                node.block.open,
                node.block.close,
                node.block.bindings,
                [statement],
                first=True,
            )
        statement = self.renderer.statement(
            self._prefix_path(node.container) + [node.id, "url"], nix_string(value)
        )
        return self._insert_before(document, node.statements[0].start, [statement])

    def _insert_follow(
        self, document: Document, node: InputNode, child_path: str, target: str
    ) -> Document:
        segments: List[str] = []
        for part in child_path.split("."):
            segments.extend(["inputs", part])
        segments.append("follows")
        if node.block is not None:
            statement = self.renderer.statement(segments, nix_string(target))
            return self._insert_into_block(
                document, node.block.open, node.block.close, node.block.bindings, [statement]
            )
        statement = self.renderer.statement(
            self._prefix_path(node.container) + [node.id] + segments, nix_string(target)
        )
        last = max(node.statements, key=lambda span: span.end)
        return self._insert_after(document, last, [statement])

    def _insert_input(self, document: Document, input_id: str, url: str, flake: bool) -> Document:
        nodes = document.all()
        style = document.dominant_style(self.context.default_style)
        unit = self.context.indent or document.indent_unit()
        block = document.inputs_block()

        if nodes:
            container = nodes[-1].container
        elif block is not None:
            container = CONTAINER_BLOCK
        else:
            return self._create_section(document, style, unit, input_id, url, flake)

        prefix = "inputs." if container == CONTAINER_TOPLEVEL else ""
        lines = self.renderer.input(
            style, input_id=input_id, url=url, flake=flake, prefix=prefix, unit=unit
        )
        siblings = [node for node in nodes if node.container == container]

        if self.context.ordering == "alphabetical":
            following = next((node for node in siblings if node.id > input_id), None)
            if following is not None:
                return self._insert_before(document, following.span.start, lines)

        if siblings:
            last = max((span for node in siblings for span in node.statements), key=lambda span: span.end)
            return self._insert_after(document, last, lines)
        assert block is not None
        return self._insert_into_block(document, block.open, block.close, block.bindings, lines)

    def _create_section(
        self,
        document: Document,
        style: str,
        unit: str,
        input_id: str,
        url: str,
        flake: bool,
    ) -> Document:
        lines = self.renderer.input(style, input_id=input_id, url=url, flake=flake, unit=unit)
        section = ["inputs = {"] + [unit + line for line in lines] + ["};"]
        outputs = document.outputs_statement()
        if outputs is not None:
            return self._insert_before(document, outputs.start, section + [""])
        _, close = document.top_level_braces()
        indent = document.line_indent(close.start) + unit
        return self._insert_before(document, close.start, section, indent=indent)

    def _insert_before(
        self, document: Document, offset: int, lines: Sequence[str], *, indent: Optional[str] = None
    ) -> Document:
        line_start = document.line_start(offset)
        leading = document.text[line_start:offset]
        if leading.strip():
            updated, _ = document.insert_fragment(offset, " ".join(lines) + " ")
            return updated
        if indent is None:
            indent = leading
        fragment = "".join(_indented(line, indent) + "\n" for line in lines)
        updated, _ = document.insert_fragment(line_start, fragment)
        return updated

    def _insert_after(self, document: Document, anchor: Span, lines: Sequence[str]) -> Document:
        if document.rest_of_line_is_blank(anchor.end):
            indent = document.line_indent(anchor.start)
            fragment = "".join("\n" + _indented(line, indent) for line in lines)
            updated, _ = document.insert_fragment(document.line_end(anchor.end), fragment)
            return updated
        updated, _ = document.insert_fragment(anchor.end, " " + " ".join(lines))
        return updated

    def _insert_into_block(
        self,
        document: Document,
        open_brace: Span,
        close_brace: Span,
        bindings: Sequence[Span],
        lines: Sequence[str],
        *,
        first: bool = False,
    ) -> Document:
        if bindings:
            if first:
                return self._insert_before(document, bindings[0].start, lines)
            return self._insert_after(document, max(bindings, key=lambda span: span.end), lines)
        if document.line_start(open_brace.start) == document.line_start(close_brace.start):
            updated, _ = document.insert_fragment(open_brace.end, " " + " ".join(lines))
            return updated
        unit = self.context.indent or document.indent_unit()
        indent = document.line_indent(open_brace.start) + unit
        fragment = "".join("\n" + _indented(line, indent) for line in lines)
        updated, _ = document.insert_fragment(document.line_end(open_brace.end), fragment)
        return updated

    @staticmethod
    def _prefix_path(container: str) -> List[str]:
        return ["inputs"] if container == CONTAINER_TOPLEVEL else []


def _indented(line: str, indent: str) -> str:
    return indent + line if line else ""


__all__ = [
    "ChangeEngine",
    "ChangeResult",
    "DONE",
    "FAILED",
    "IDLE",
    "MUTATING",
    "VALIDATING",
    "VersionSource",
]
