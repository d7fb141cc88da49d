"""Configuration loading for flake-edit (flake-edit.yml)."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
import os
from pathlib import Path
import re
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

import yaml

from .errors import FlakeEditError

CONFIG_FILENAMES = ("flake-edit.yml", ".flake-edit.yml")

STYLES = ("dotted", "nested")
ORDERINGS = ("append", "alphabetical")
OUTPUTS = ("write", "diff")


class ConfigError(FlakeEditError):
    """Raised when the configuration file cannot be parsed."""


@dataclass(frozen=True)
class FollowConfig:
    """Ignore list and alias map used when reconciling follows."""

    ignore: Tuple[str, ...] = ()
    aliases: Mapping[str, Tuple[str, ...]] = field(default_factory=dict)

    def is_ignored(self, path: str, child: str) -> bool:
        """True for an exact "parent.child" entry or a bare child-name entry."""
        for entry in self.ignore:
            if "." in entry:
                if entry == path:
                    return True
            elif entry == child:
                return True
        return False

    def resolve_alias(self, name: str) -> Optional[str]:
        for canonical, alternatives in self.aliases.items():
            if name in alternatives:
                return canonical
        return None


@dataclass(frozen=True)
class ChannelPolicy:
    """Which refs count as release channels and which are left alone."""

    prefixes: Tuple[str, ...] = ("nixos-", "nixpkgs-", "release-", "nix-darwin-", "")
    pattern: str = r"^(\d{2})\.(\d{2})$"
    unstable: Tuple[str, ...] = ("nixos-unstable", "nixpkgs-unstable", "master", "main")


@dataclass(frozen=True)
class ForgeSettings:
    """Network behaviour of the forge client."""

    timeout: float = 10.0
    retries: int = 2
    tokens: Mapping[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class LockSettings:
    """How the lock file is regenerated after an edit."""

    regenerate: bool = True
    command: Tuple[str, ...] = ("nix", "flake", "lock")


@dataclass(frozen=True)
class EditContext:
    """Immutable settings passed to every entry point."""

    follow: FollowConfig = field(default_factory=FollowConfig)
    channels: ChannelPolicy = field(default_factory=ChannelPolicy)
    forge: ForgeSettings = field(default_factory=ForgeSettings)
    lock: LockSettings = field(default_factory=LockSettings)
    default_style: str = "dotted"
    ordering: str = "append"
    indent: Optional[str] = None
    cache_dir: Optional[Path] = None
    interactive: bool = True
    output: str = "write"
    source: Optional[Path] = None

    def with_overrides(self, **changes: Any) -> "EditContext":
        """Copy with command-line overrides applied; None values are ignored."""
        applied = {key: value for key, value in changes.items() if value is not None}
        return replace(self, **applied)


def load_config(start: Path | None = None, *, config_path: Path | None = None) -> EditContext:
    """Load settings from an explicit file, the nearest project file, or the user file."""
    config_file = config_path.expanduser().resolve() if config_path else find_config_file(start)
    if config_file is None:
        return EditContext(cache_dir=default_cache_dir())
    if not config_file.exists():
        raise ConfigError(f"Configuration file {config_file} does not exist")

    data = _read_config(config_file)
    if not isinstance(data, dict):
        raise ConfigError(f"{config_file.name} must contain a mapping at the root")

    follow_data = _as_dict(data.get("follow"))
    follow = FollowConfig(
        ignore=tuple(_as_str_list(follow_data.get("ignore"))),
        aliases=_as_aliases(follow_data.get("aliases")),
    )

    edit_data = _as_dict(data.get("edit"))
    default_style = _choice(edit_data.get("default_style"), STYLES, "edit.default_style", "dotted")
    ordering = _choice(edit_data.get("ordering"), ORDERINGS, "edit.ordering", "append")
    indent_width = _as_int(edit_data.get("indent"))
    indent = " " * indent_width if indent_width else None

    channel_data = _as_dict(data.get("channels"))
    channels = ChannelPolicy()
    if channel_data:
        pattern = _as_str(channel_data.get("pattern")) or channels.pattern
        try:
            re.compile(pattern)
        except re.error as exc:
            raise ConfigError(f"channels.pattern is not a valid regular expression: {exc}") from exc
        channels = ChannelPolicy(
            prefixes=tuple(_as_str_list(channel_data.get("prefixes"))) or channels.prefixes,
            pattern=pattern,
            unstable=tuple(_as_str_list(channel_data.get("unstable"))) or channels.unstable,
        )

    forge_data = _as_dict(data.get("forge"))
    retries = _as_int(forge_data.get("retries"))
    forge = ForgeSettings(
        timeout=_as_float(forge_data.get("timeout")) or ForgeSettings.timeout,
        retries=ForgeSettings.retries if retries is None else max(0, retries),
        tokens={str(key): str(value) for key, value in _as_dict(forge_data.get("tokens")).items()},
    )

    lock_data = _as_dict(data.get("lock"))
    regenerate = _as_bool(lock_data.get("regenerate"))
    lock = LockSettings(
        regenerate=True if regenerate is None else regenerate,
        command=tuple(_as_str_list(lock_data.get("command"))) or LockSettings.command,
    )

    cache_dir_str = _as_str(data.get("cache_dir"))
    cache_dir = Path(cache_dir_str).expanduser() if cache_dir_str else default_cache_dir()
    interactive = _as_bool(data.get("interactive"))

    return EditContext(
        follow=follow,
        channels=channels,
        forge=forge,
        lock=lock,
        default_style=default_style,
        ordering=ordering,
        indent=indent,
        cache_dir=cache_dir,
        interactive=True if interactive is None else interactive,
        output=_choice(data.get("output"), OUTPUTS, "output", "write"),
        source=config_file,
    )


def find_config_file(start: Path | None) -> Optional[Path]:
    """Nearest project config in `start` or its ancestors, then the user config."""
    if start is not None:
        directory = start.expanduser().resolve()
        if not directory.is_dir():
            directory = directory.parent
        for candidate_dir in (directory, *directory.parents):
            for name in CONFIG_FILENAMES:
                candidate = candidate_dir / name
                if candidate.is_file():
                    return candidate
    user_config = user_config_dir() / "config.yml"
    if user_config.is_file():
        return user_config
    return None


def user_config_dir() -> Path:
    base = os.environ.get("XDG_CONFIG_HOME")
    root = Path(base) if base else Path.home() / ".config"
    return root / "flake-edit"


def default_cache_dir() -> Path:
    base = os.environ.get("XDG_CACHE_HOME")
    root = Path(base) if base else Path.home() / ".cache"
    return root / "flake-edit"


# ----------------------------------------------------------------------
# Helpers


def _read_config(path: Path) -> Dict[str, Any]:
    text = path.read_text(encoding="utf-8")
    if not text.strip():
        return {}
    try:
        loaded = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ConfigError(f"Failed to parse {path.name}: {exc}") from exc
    return loaded or {}


def _choice(value: Any, choices: Sequence[str], key: str, default: str) -> str:
    if value is None:
        return default
    text = str(value)
    if text not in choices:
        raise ConfigError(f"{key} must be one of {', '.join(choices)}; got '{text}'")
    return text


def _as_aliases(value: Any) -> Dict[str, Tuple[str, ...]]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigError("follow.aliases must map an input name to a list of alternatives")
    aliases: Dict[str, Tuple[str, ...]] = {}
    for canonical, alternatives in value.items():
        names = _as_str_list(alternatives)
        if not names:
            raise ConfigError(f"follow.aliases.{canonical} must list at least one alternative")
        aliases[str(canonical)] = tuple(names)
    return aliases


def _as_dict(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _as_str(value: Any) -> Optional[str]:
    return str(value) if isinstance(value, (str, int, float)) and not isinstance(value, bool) else None


def _as_float(value: Any) -> Optional[float]:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return None
    return None


def _as_int(value: Any) -> Optional[int]:
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    if isinstance(value, str):
        try:
            return int(value)
        except ValueError:
            return None
    return None


def _as_bool(value: Any) -> Optional[bool]:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"true", "yes", "1"}:
            return True
        if lowered in {"false", "no", "0"}:
            return False
    return None


def _as_str_list(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    if isinstance(value, Sequence):
        return [str(item) for item in value if isinstance(item, (str, int, float))]
    return []


__all__ = [
    "ChannelPolicy",
    "ConfigError",
    "EditContext",
    "FollowConfig",
    "ForgeSettings",
    "LockSettings",
    "default_cache_dir",
    "find_config_file",
    "load_config",
]
