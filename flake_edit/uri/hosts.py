"""Table of well-known source forges and their shorthand schemes."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Optional, Sequence


@dataclass(frozen=True)
class ForgeHost:
    """One forge reachable through a `scheme:owner/repo` shorthand."""

    scheme: str
    web_host: str
    api_base: str
    kind: str
    aliases: Sequence[str] = ()
    tree_marker: str = "tree"


FORGE_HOSTS: Sequence[ForgeHost] = (
    ForgeHost(
        scheme="github",
        web_host="github.com",
        api_base="https://api.github.com",
        kind="github",
        aliases=("www.github.com",),
    ),
    ForgeHost(
        scheme="gitlab",
        web_host="gitlab.com",
        api_base="https://gitlab.com/api/v4",
        kind="gitlab",
        aliases=("www.gitlab.com",),
        tree_marker="-/tree",
    ),
    ForgeHost(
        scheme="sourcehut",
        web_host="git.sr.ht",
        api_base="https://git.sr.ht/api",
        kind="sourcehut",
    ),
)

_BY_SCHEME: Dict[str, ForgeHost] = {host.scheme: host for host in FORGE_HOSTS}
_BY_WEB_HOST: Dict[str, ForgeHost] = {}
for _host in FORGE_HOSTS:
    _BY_WEB_HOST[_host.web_host] = _host
    for _alias in _host.aliases:
        _BY_WEB_HOST[_alias] = _host


def by_scheme(scheme: str) -> Optional[ForgeHost]:
    return _BY_SCHEME.get(scheme)


def by_web_host(host: str) -> Optional[ForgeHost]:
    """Resolve a web host (or one of its aliases) to its forge entry."""
    return _BY_WEB_HOST.get(host.lower())


__all__ = ["FORGE_HOSTS", "ForgeHost", "by_scheme", "by_web_host"]
