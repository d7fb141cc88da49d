"""Pick the newest release or channel for an input.

Two version schemes are recognised. Channels are branch names such as
`nixos-24.05` whose suffix matches the configured pattern; they are only
compared with branches sharing the same prefix. Everything else is read as
a semantic version tag, optionally behind a `v` or `name-` prefix.
"""

from __future__ import annotations

from dataclasses import dataclass
import re
from typing import List, Optional, Protocol, Sequence, Tuple

from ..config import ChannelPolicy
from ..logging import get_logger
from ..uri.grammar import FORGE, GIT, SourceRef
from .client import VersionTag

_TAG_PREFIX = "refs/tags/"
_HEAD_PREFIX = "refs/heads/"
_SEMVER_RE = re.compile(
    r"^(?P<prefix>.*?)"
    r"(?P<major>\d+)(?:\.(?P<minor>\d+))?(?:\.(?P<patch>\d+))?"
    r"(?:-(?P<pre>[0-9A-Za-z.-]+))?(?:\+[0-9A-Za-z.-]+)?$"
)


class VersionLister(Protocol):
    def list_versions(self, source: SourceRef, *, input_id: Optional[str] = None) -> List[VersionTag]:
        ...

    def list_branches(self, source: SourceRef, *, input_id: Optional[str] = None) -> List[str]:
        ...


@dataclass(frozen=True)
class Semver:
    major: int
    minor: int = 0
    patch: int = 0
    pre: Tuple[str, ...] = ()

    @property
    def is_prerelease(self) -> bool:
        return bool(self.pre)

    def key(self) -> Tuple:
        # Releases sort above their pre-releases; numeric identifiers below alphanumeric ones.
        pre_key = tuple((0, int(part), "") if part.isdigit() else (1, 0, part) for part in self.pre)
        return (self.major, self.minor, self.patch, 0 if self.pre else 1, pre_key)


@dataclass(frozen=True)
class TaggedVersion:
    """A tag split into its reusable prefix and its version."""

    tag: str
    prefix: str
    version: Semver


def strip_ref(name: str) -> str:
    for prefix in (_TAG_PREFIX, _HEAD_PREFIX):
        if name.startswith(prefix):
            return name[len(prefix):]
    return name


def parse_tag(tag: str) -> Optional[TaggedVersion]:
    """Read `v1.2`, `release-2.0.1-rc1` or `3` as a version; None for anything else."""
    name = strip_ref(tag)
    match = _SEMVER_RE.match(name)
    if match is None:
        return None
    prefix = match.group("prefix")
    if prefix not in ("", "v", "V") and not prefix.endswith(("-", "_", "-v")):
        return None
    pre = match.group("pre")
    version = Semver(
        major=int(match.group("major")),
        minor=int(match.group("minor") or 0),
        patch=int(match.group("patch") or 0),
        pre=tuple(pre.split(".")) if pre else (),
    )
    return TaggedVersion(tag=name, prefix=prefix, version=version)


class ChannelMatcher:
    """Applies a ChannelPolicy to ref names."""

    def __init__(self, policy: ChannelPolicy) -> None:
        self._policy = policy
        self._pattern = re.compile(policy.pattern)
        # Longest prefix first so "nixpkgs-" wins over "".
        self._prefixes = sorted(policy.prefixes, key=len, reverse=True)

    def is_unstable(self, ref: str) -> bool:
        return strip_ref(ref) in self._policy.unstable

    def match(self, ref: str) -> Optional[Tuple[str, Tuple[int, ...]]]:
        name = strip_ref(ref)
        if name in self._policy.unstable:
            return None
        for prefix in self._prefixes:
            if not name.startswith(prefix):
                continue
            found = self._pattern.match(name[len(prefix):])
            if found is None:
                continue
            groups = found.groups() or (found.group(0),)
            try:
                return prefix, tuple(int(group) for group in groups if group is not None)
            except ValueError:
                return None
        return None


class VersionResolver:
    """Finds the locator an input should move to, if any."""

    def __init__(self, client: VersionLister, policy: ChannelPolicy) -> None:
        self._client = client
        self._channels = ChannelMatcher(policy)
        self.logger = get_logger("versions")

    def resolve(self, input_id: str, source: SourceRef, *, init: bool = False) -> Optional[SourceRef]:
        if source.kind not in (FORGE, GIT):
            self.logger.debug("%s: %s locators have no versions", input_id, source.kind)
            return None
        current = source.ref_or_rev
        if current is not None and source.is_revision:
            self.logger.debug("%s is pinned to a revision; leaving it", input_id)
            return None
        if current is not None and self._channels.is_unstable(current):
            self.logger.debug("%s tracks unstable ref %s; leaving it", input_id, current)
            return None

        if current is not None:
            channel = self._channels.match(current)
            if channel is not None:
                return self._next_channel(input_id, source, current, channel)

        tags = [tag.tag for tag in self._client.list_versions(source, input_id=input_id)]
        if current is None:
            if not init:
                self.logger.debug("%s follows the default branch; pass init to pin a release", input_id)
                return None
            newest = self.newest(tags)
            if newest is None:
                self.logger.debug("%s: no release tags found", input_id)
                return None
            return source.with_ref_or_rev(newest.tag)

        parsed = parse_tag(current)
        if parsed is None:
            if not init:
                self.logger.debug(
                    "%s: ref %s matches no known version scheme; leaving it", input_id, current
                )
                return None
            newest = self.newest(tags)
            if newest is None or newest.tag == strip_ref(current):
                return None
            return source.with_ref_or_rev(newest.tag)

        newest = self.newest(
            tags, prefix=parsed.prefix, allow_prerelease=parsed.version.is_prerelease
        )
        if newest is None or newest.version.key() <= parsed.version.key():
            self.logger.debug("%s is at the newest version %s", input_id, current)
            return None
        return source.with_ref_or_rev(newest.tag)

    @staticmethod
    def newest(
        tags: Sequence[str],
        *,
        prefix: Optional[str] = None,
        allow_prerelease: bool = False,
    ) -> Optional[TaggedVersion]:
        candidates = []
        for tag in tags:
            parsed = parse_tag(tag)
            if parsed is None:
                continue
            if prefix is not None and parsed.prefix != prefix:
                continue
            if parsed.version.is_prerelease and not allow_prerelease:
                continue
            candidates.append(parsed)
        if not candidates:
            return None
        return max(candidates, key=lambda item: item.version.key())

    # ------------------------------------------------------------------
    # Internals

    def _next_channel(
        self,
        input_id: str,
        source: SourceRef,
        current: str,
        channel: Tuple[str, Tuple[int, ...]],
    ) -> Optional[SourceRef]:
        prefix, version = channel
        best: Optional[Tuple[Tuple[int, ...], str]] = None
        for branch in self._client.list_branches(source, input_id=input_id):
            found = self._channels.match(branch)
            if found is None or found[0] != prefix or found[1] <= version:
                continue
            if best is None or found[1] > best[0]:
                best = (found[1], strip_ref(branch))
        if best is None:
            self.logger.debug("%s is on the newest channel %s", input_id, current)
            return None
        self.logger.debug("%s: channel %s -> %s", input_id, current, best[1])
        return source.with_ref_or_rev(best[1])


__all__ = [
    "ChannelMatcher",
    "Semver",
    "TaggedVersion",
    "VersionResolver",
    "parse_tag",
    "strip_ref",
]
