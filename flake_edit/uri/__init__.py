"""Source locator grammar."""

from .grammar import (
    FORGE,
    GIT,
    HINT_REF,
    HINT_REV,
    INDIRECT,
    MERCURIAL,
    PATH,
    TARBALL,
    SourceRef,
    coerce_url,
    infer_id,
    looks_like_revision,
    parse,
    serialize,
)

__all__ = [
    "FORGE",
    "GIT",
    "HINT_REF",
    "HINT_REV",
    "INDIRECT",
    "MERCURIAL",
    "PATH",
    "TARBALL",
    "SourceRef",
    "coerce_url",
    "infer_id",
    "looks_like_revision",
    "parse",
    "serialize",
]
