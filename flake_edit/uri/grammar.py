"""Parser and serializer for flake source locators."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
import re
from typing import Dict, List, Optional, Tuple
from urllib.parse import quote, unquote

from ..errors import AmbiguousId, InvalidAuthority, InvalidScheme, MalformedQuery
from .hosts import by_scheme, by_web_host

FORGE = "forge"
GIT = "git"
MERCURIAL = "hg"
TARBALL = "tarball"
PATH = "path"
INDIRECT = "indirect"

HINT_REF = "ref"
HINT_REV = "rev"

ARCHIVE_SUFFIXES: Tuple[str, ...] = (
    ".tar.gz",
    ".tar.xz",
    ".tar.bz2",
    ".tar.zst",
    ".tgz",
    ".tar",
    ".gz",
    ".bz2",
    ".xz",
    ".zip",
)

_GIT_TRANSPORTS = ("https", "http", "ssh", "file", "git")
_HG_TRANSPORTS = ("https", "http", "ssh", "file")
_TARBALL_TRANSPORTS = ("https", "http", "file")

# Known query keys in serialization order; everything else goes to `extra`.
_QUERY_ORDER = ("dir", "host", "narHash", "ref", "rev", "shallow", "submodules")

_REVISION_RE = re.compile(r"^[0-9a-f]{40}$")
_IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_'-]*$")
_INDIRECT_RE = re.compile(r"^[A-Za-z][A-Za-z0-9_-]*$")
_BAD_ESCAPE_RE = re.compile(r"%(?![0-9A-Fa-f]{2})")
_SCHEME_RE = re.compile(r"^([A-Za-z][A-Za-z0-9+.-]*):")


def looks_like_revision(value: str) -> bool:
    """Return True for a full 40-character lowercase hex commit id."""
    return bool(_REVISION_RE.match(value))


@dataclass(frozen=True)
class SourceRef:
    """A parsed source locator.

    `kind` selects the variant. Forge shorthands fill `scheme`, `owner` and
    `repo`; git, mercurial and tarball locators keep their transport URL in
    `url`; paths keep the filesystem path in `url`; registry indirections
    keep the registry id in `url`.
    """

    kind: str
    scheme: Optional[str] = None
    owner: Optional[str] = None
    repo: Optional[str] = None
    url: Optional[str] = None
    ref_or_rev: Optional[str] = None
    hint: Optional[str] = None
    base_ref: Optional[str] = None
    host: Optional[str] = None
    dir: Optional[str] = None
    shallow: bool = False
    submodules: bool = False
    nar_hash: Optional[str] = None
    extra: Tuple[Tuple[str, str], ...] = ()
    # Whether the kind's prefix was spelled out (`path:`, `flake:`, `tarball+`).
    explicit: bool = field(default=True, compare=False)

    @property
    def is_revision(self) -> bool:
        if self.ref_or_rev is None:
            return False
        if self.hint is not None:
            return self.hint == HINT_REV
        return looks_like_revision(self.ref_or_rev)

    @property
    def supports_ref(self) -> bool:
        return self.kind in (FORGE, GIT, MERCURIAL, INDIRECT)

    @property
    def location(self) -> str:
        """Identity of the upstream, ignoring refs and revisions."""
        if self.kind == FORGE:
            owner = (self.owner or "").lower()
            repo = (self.repo or "").lower()
            return f"{self.scheme}:{owner}/{repo}"
        return f"{self.kind}:{self.url}"

    def with_ref_or_rev(self, value: str, *, hint: Optional[str] = None) -> "SourceRef":
        """Return a copy pointing at `value`, keeping the ref's position."""
        if not self.supports_ref:
            raise InvalidAuthority(serialize(self), f"{self.kind} locators cannot carry a ref or rev")
        if self.kind in (GIT, MERCURIAL):
            new_hint = hint or (HINT_REV if looks_like_revision(value) else HINT_REF)
            base_ref = self.base_ref
            if new_hint == HINT_REV and self.ref_or_rev and not self.is_revision:
                base_ref = self.ref_or_rev
            if new_hint == HINT_REF:
                base_ref = None
            return replace(self, ref_or_rev=value, hint=new_hint, base_ref=base_ref)
        if hint is None and self.hint is not None:
            hint = HINT_REV if looks_like_revision(value) else HINT_REF
        return replace(self, ref_or_rev=value, hint=hint)

    def without_ref_or_rev(self) -> "SourceRef":
        if self.kind in (GIT, MERCURIAL) and self.base_ref and self.is_revision:
            return replace(self, ref_or_rev=self.base_ref, hint=HINT_REF, base_ref=None)
        return replace(self, ref_or_rev=None, hint=None, base_ref=None)

    def __str__(self) -> str:
        return serialize(self)


# ----------------------------------------------------------------------
# Parsing


def parse(text: str) -> SourceRef:
    """Parse a locator string into a SourceRef."""
    raw = text.strip()
    if not raw:
        raise InvalidAuthority(text, "empty locator")

    body, query = _split_query(raw)
    params = _parse_query(text, query)

    if body.startswith(("/", "./", "../")) or body in (".", ".."):
        return _parse_path(text, body, params, explicit=False)

    match = _SCHEME_RE.match(body)
    if match is None:
        return _parse_indirect(text, body, params, explicit=False)

    scheme = match.group(1)
    rest = body[match.end():]
    if by_scheme(scheme) is not None:
        return _parse_forge(text, scheme, rest, params)
    if scheme == "path":
        return _parse_path(text, rest, params, explicit=True)
    if scheme == "flake":
        return _parse_indirect(text, rest, params, explicit=True)
    if scheme.startswith("git+"):
        return _parse_transport(text, GIT, scheme[4:], rest, params, _GIT_TRANSPORTS)
    if scheme.startswith("hg+"):
        return _parse_transport(text, MERCURIAL, scheme[3:], rest, params, _HG_TRANSPORTS)
    if scheme.startswith("tarball+"):
        return _parse_tarball(text, scheme[8:], rest, params, explicit=True)
    if scheme in _TARBALL_TRANSPORTS:
        if not _has_archive_suffix(rest):
            raise InvalidScheme(
                text, f"'{scheme}' URLs are only accepted for archives ({', '.join(ARCHIVE_SUFFIXES)})"
            )
        return _parse_tarball(text, scheme, rest, params, explicit=False)
    raise InvalidScheme(text, f"unknown locator type '{scheme}'")


def coerce_url(text: str) -> str:
    """Rewrite a forge web URL into its shorthand form; other text passes through."""
    match = re.match(r"^https?://([^/]+)/(.*)$", text.strip())
    if match is None:
        return text
    forge = by_web_host(match.group(1))
    if forge is None:
        return text
    path = match.group(2).rstrip("/")
    segments = path.split("/")
    if len(segments) < 2 or not segments[0] or not segments[1]:
        return text
    owner, repo = segments[0], segments[1]
    if repo.endswith(".git"):
        repo = repo[:-4]
    rest = "/".join(segments[2:])
    if not rest:
        return f"{forge.scheme}:{owner}/{repo}"
    marker = forge.tree_marker + "/"
    if rest.startswith(marker) and len(rest) > len(marker):
        return f"{forge.scheme}:{owner}/{repo}/{rest[len(marker):]}"
    return text


def infer_id(ref: SourceRef) -> str:
    """Best-effort input id for a locator, raising AmbiguousId when impossible."""
    candidate: Optional[str] = None
    if ref.kind == FORGE:
        candidate = _strip_suffix(ref.repo or "", (".git",))
    elif ref.kind == INDIRECT:
        candidate = ref.url
    elif ref.kind in (GIT, MERCURIAL, TARBALL, PATH):
        location = ref.url or ""
        if "://" in location:
            location = location.split("://", 1)[1]
            location = location.split("/", 1)[1] if "/" in location else ""
        segments = [segment for segment in location.split("/") if segment not in ("", ".", "..")]
        if segments:
            candidate = _strip_suffix(segments[-1], ARCHIVE_SUFFIXES + (".git",))
    if not candidate or not _IDENTIFIER_RE.match(candidate):
        raise AmbiguousId(serialize(ref))
    return candidate


# ----------------------------------------------------------------------
# Serialization


def serialize(ref: SourceRef) -> str:
    """Render a SourceRef in canonical form."""
    query: Dict[str, str] = {}
    if ref.dir:
        query["dir"] = ref.dir
    if ref.host:
        query["host"] = ref.host
    if ref.nar_hash:
        query["narHash"] = ref.nar_hash

    if ref.kind == FORGE:
        head = f"{ref.scheme}:{ref.owner}/{ref.repo}"
        if ref.ref_or_rev and ref.hint is None:
            head += f"/{ref.ref_or_rev}"
        elif ref.ref_or_rev:
            query[ref.hint or HINT_REF] = ref.ref_or_rev
    elif ref.kind in (GIT, MERCURIAL):
        head = f"{ref.kind}+{ref.url}"
        if ref.ref_or_rev:
            key = HINT_REV if ref.is_revision else HINT_REF
            query[key] = ref.ref_or_rev
            if key == HINT_REV and ref.base_ref:
                query[HINT_REF] = ref.base_ref
    elif ref.kind == TARBALL:
        head = f"tarball+{ref.url}" if ref.explicit else (ref.url or "")
    elif ref.kind == PATH:
        head = f"path:{ref.url}" if ref.explicit else (ref.url or "")
    elif ref.kind == INDIRECT:
        head = f"flake:{ref.url}" if ref.explicit else (ref.url or "")
        if ref.ref_or_rev and ref.hint is None:
            head += f"/{ref.ref_or_rev}"
        elif ref.ref_or_rev:
            query[ref.hint or HINT_REF] = ref.ref_or_rev
    else:  # pragma: no cover - kinds are closed
        raise ValueError(f"Unknown locator kind {ref.kind!r}")

    if ref.shallow:
        query["shallow"] = "1"
    if ref.submodules:
        query["submodules"] = "1"

    pairs: List[Tuple[str, str]] = [(key, query[key]) for key in _QUERY_ORDER if key in query]
    pairs.extend(sorted(ref.extra))
    if not pairs:
        return head
    encoded = "&".join(f"{key}={quote(value, safe='/:@-._~+,=')}" for key, value in pairs)
    return f"{head}?{encoded}"


# ----------------------------------------------------------------------
# Internals


def _split_query(raw: str) -> Tuple[str, str]:
    body, _, query = raw.partition("?")
    if _trim_slash(body):
        body = body.rstrip("/")
    return body, query


def _trim_slash(body: str) -> bool:
    # Keep roots such as "/" and "git+file:///" intact.
    stripped = body.rstrip("/")
    return bool(stripped) and not stripped.endswith(":")


def _parse_query(text: str, query: str) -> Dict[str, str]:
    params: Dict[str, str] = {}
    if not query:
        return params
    for pair in query.split("&"):
        if not pair:
            continue
        if "=" not in pair:
            raise MalformedQuery(text, f"query parameter '{pair}' has no value")
        key, value = pair.split("=", 1)
        if not key:
            raise MalformedQuery(text, f"query parameter '{pair}' has no key")
        if _BAD_ESCAPE_RE.search(key) or _BAD_ESCAPE_RE.search(value):
            raise MalformedQuery(text, f"invalid percent-escape in '{pair}'")
        key, value = unquote(key), unquote(value)
        if key in params:
            raise MalformedQuery(text, f"query parameter '{key}' given twice")
        if not value:
            raise MalformedQuery(text, f"query parameter '{key}' has an empty value")
        params[key] = value
    return params


def _apply_common(text: str, ref: SourceRef, params: Dict[str, str], *, ref_keys: bool) -> SourceRef:
    params = dict(params)
    updates: Dict[str, object] = {}
    if "dir" in params:
        updates["dir"] = params.pop("dir")
    if "host" in params:
        updates["host"] = params.pop("host")
    if "narHash" in params:
        updates["nar_hash"] = params.pop("narHash")
    for flag in ("shallow", "submodules"):
        if flag in params:
            updates[flag] = _parse_bool(text, flag, params.pop(flag))
    if ref_keys:
        query_ref = params.pop(HINT_REF, None)
        query_rev = params.pop(HINT_REV, None)
        updates.update(_resolve_ref_keys(text, ref, query_ref, query_rev))
    updates["extra"] = tuple(sorted(params.items()))
    return replace(ref, **updates)  # type: ignore[arg-type]


def _resolve_ref_keys(
    text: str, ref: SourceRef, query_ref: Optional[str], query_rev: Optional[str]
) -> Dict[str, object]:
    if query_ref is None and query_rev is None:
        return {}
    if ref.ref_or_rev is not None:
        raise MalformedQuery(text, "ref/rev given both in the path and in the query")
    if ref.kind in (GIT, MERCURIAL):
        if query_rev is not None:
            return {"ref_or_rev": query_rev, "hint": HINT_REV, "base_ref": query_ref}
        return {"ref_or_rev": query_ref, "hint": HINT_REF}
    if query_ref is not None and query_rev is not None:
        raise MalformedQuery(text, f"{ref.kind} locators accept either ref or rev, not both")
    if query_rev is not None:
        return {"ref_or_rev": query_rev, "hint": HINT_REV}
    return {"ref_or_rev": query_ref, "hint": HINT_REF}


def _parse_bool(text: str, key: str, value: str) -> bool:
    lowered = value.lower()
    if lowered in ("1", "true"):
        return True
    if lowered in ("0", "false"):
        return False
    raise MalformedQuery(text, f"'{key}' expects 0/1, got '{value}'")


def _parse_forge(text: str, scheme: str, rest: str, params: Dict[str, str]) -> SourceRef:
    segments = rest.split("/")
    if len(segments) < 2 or not segments[0] or not segments[1]:
        raise InvalidAuthority(text, f"{scheme} locators need '{scheme}:owner/repo[/ref-or-rev]'")
    if any(not segment for segment in segments[2:]):
        raise InvalidAuthority(text, "empty path segment")
    ref_or_rev = "/".join(segments[2:]) or None
    ref = SourceRef(kind=FORGE, scheme=scheme, owner=segments[0], repo=segments[1], ref_or_rev=ref_or_rev)
    return _apply_common(text, ref, params, ref_keys=True)


def _parse_transport(
    text: str,
    kind: str,
    transport: str,
    rest: str,
    params: Dict[str, str],
    allowed: Tuple[str, ...],
) -> SourceRef:
    if transport not in allowed:
        raise InvalidScheme(text, f"unsupported {kind} transport '{transport}'")
    if not rest.startswith("//") or len(rest) <= 2:
        raise InvalidAuthority(text, f"expected '{kind}+{transport}://...'")
    if transport != "file" and not rest[2:].split("/", 1)[0]:
        raise InvalidAuthority(text, "missing host")
    ref = SourceRef(kind=kind, url=f"{transport}:{rest}")
    return _apply_common(text, ref, params, ref_keys=True)


def _parse_tarball(
    text: str, transport: str, rest: str, params: Dict[str, str], *, explicit: bool
) -> SourceRef:
    if transport not in _TARBALL_TRANSPORTS:
        raise InvalidScheme(text, f"unsupported tarball transport '{transport}'")
    if not rest.startswith("//") or len(rest) <= 2:
        raise InvalidAuthority(text, "expected a URL after the tarball scheme")
    ref = SourceRef(kind=TARBALL, url=f"{transport}:{rest}", explicit=explicit)
    return _apply_common(text, ref, params, ref_keys=False)


def _parse_path(text: str, path: str, params: Dict[str, str], *, explicit: bool) -> SourceRef:
    if not path:
        raise InvalidAuthority(text, "empty path")
    if any(char in path for char in "#[]"):
        raise InvalidAuthority(text, "paths may not contain '#', '[' or ']'")
    ref = SourceRef(kind=PATH, url=path, explicit=explicit)
    return _apply_common(text, ref, params, ref_keys=False)


def _parse_indirect(text: str, rest: str, params: Dict[str, str], *, explicit: bool) -> SourceRef:
    segments = rest.split("/", 1)
    flake_id = segments[0]
    if not _INDIRECT_RE.match(flake_id):
        if explicit:
            raise InvalidAuthority(text, f"invalid registry id '{flake_id}'")
        raise InvalidScheme(text, "not a locator: expected 'type:...', a path or a registry id")
    ref_or_rev = segments[1] if len(segments) > 1 and segments[1] else None
    ref = SourceRef(kind=INDIRECT, url=flake_id, ref_or_rev=ref_or_rev, explicit=explicit)
    return _apply_common(text, ref, params, ref_keys=True)


def _has_archive_suffix(url: str) -> bool:
    return url.lower().endswith(ARCHIVE_SUFFIXES)


def _strip_suffix(value: str, suffixes: Tuple[str, ...]) -> str:
    lowered = value.lower()
    for suffix in suffixes:
        if lowered.endswith(suffix):
            return value[: -len(suffix)]
    return value


__all__ = [
    "ARCHIVE_SUFFIXES",
    "FORGE",
    "GIT",
    "HINT_REF",
    "HINT_REV",
    "INDIRECT",
    "MERCURIAL",
    "PATH",
    "SourceRef",
    "TARBALL",
    "coerce_url",
    "infer_id",
    "looks_like_revision",
    "parse",
    "serialize",
]
