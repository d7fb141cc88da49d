"""Locator history used to offer completions for `add` and `change`."""

from __future__ import annotations

from datetime import UTC, datetime
import json
from pathlib import Path
from typing import Dict, List

_CACHE_VERSION = 1

DEFAULT_PREFIXES = (
    "github:",
    "gitlab:",
    "sourcehut:",
    "git+https://",
    "git+ssh://",
    "hg+https://",
    "tarball+https://",
    "path:",
    "flake:",
)


class UriCache:
    """Counts how often each (input id, locator) pair has been seen."""

    def __init__(self, path: Path | None) -> None:
        self._path = path
        self._entries: Dict[str, Dict[str, object]] = {}
        self._dirty = False
        if self._path is not None:
            self._load(self._path)

    def add_entry(self, input_id: str, uri: str) -> None:
        key = f"{input_id}.{uri}"
        entry = self._entries.get(key)
        hits = entry.get("hits", 0) if entry else 0
        self._entries[key] = {
            "id": input_id,
            "uri": uri,
            "hits": (hits if isinstance(hits, int) else 0) + 1,
            "updated_at": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
        }
        self._dirty = True

    def list_uris(self) -> List[str]:
        """Default prefixes, then cached locators by hit count (highest first)."""
        hits: Dict[str, int] = {}
        for entry in self._entries.values():
            uri = str(entry["uri"])
            hits[uri] = hits.get(uri, 0) + int(entry.get("hits", 0))  # type: ignore[arg-type]
        ranked = sorted(hits, key=lambda uri: (-hits[uri], uri))
        return list(DEFAULT_PREFIXES) + [uri for uri in ranked if uri not in DEFAULT_PREFIXES]

    def persist(self) -> None:
        if not self._dirty or self._path is None:
            return
        payload = {"version": _CACHE_VERSION, "entries": self._entries}
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._path.write_text(json.dumps(payload, indent=2, sort_keys=True), encoding="utf-8")
        self._dirty = False

    # ------------------------------------------------------------------
    # Internal helpers

    def _load(self, path: Path) -> None:
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return
        except (OSError, UnicodeDecodeError, json.JSONDecodeError):
            return
        if not isinstance(data, dict) or data.get("version") != _CACHE_VERSION:
            return
        entries = data.get("entries")
        if not isinstance(entries, dict):
            return
        valid: Dict[str, Dict[str, object]] = {}
        for key, raw in entries.items():
            if not isinstance(key, str) or not isinstance(raw, dict):
                continue
            if not isinstance(raw.get("id"), str) or not isinstance(raw.get("uri"), str):
                continue
            if not isinstance(raw.get("hits"), int):
                continue
            valid[key] = raw
        self._entries = valid
        self._dirty = False


__all__ = ["DEFAULT_PREFIXES", "UriCache"]
