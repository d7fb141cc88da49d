"""Forge queries and version selection."""

from .client import ForgeClient, VersionTag
from .versions import ChannelMatcher, VersionResolver, parse_tag

__all__ = ["ChannelMatcher", "ForgeClient", "VersionResolver", "VersionTag", "parse_tag"]
