"""Remembers the ref an input had before it was pinned."""

from __future__ import annotations

from datetime import UTC, datetime
import json
from pathlib import Path
from typing import Dict, Optional

_CACHE_VERSION = 1


class PinStore:
    """Maps (manifest path, input id) to the symbolic ref replaced by a pin."""

    def __init__(self, path: Path | None) -> None:
        self._path = path
        self._entries: Dict[str, Dict[str, str]] = {}
        self._dirty = False
        if self._path is not None:
            self._load(self._path)

    def record(self, manifest: Path, input_id: str, ref: str) -> None:
        self._entries[self._key(manifest, input_id)] = {
            "ref": ref,
            "pinned_at": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
        }
        self._dirty = True

    def get(self, manifest: Path, input_id: str) -> Optional[str]:
        entry = self._entries.get(self._key(manifest, input_id))
        return entry["ref"] if entry else None

    def forget(self, manifest: Path, input_id: str) -> None:
        if self._entries.pop(self._key(manifest, input_id), None) is not None:
            self._dirty = True

    def persist(self) -> None:
        if not self._dirty or self._path is None:
            return
        payload = {"version": _CACHE_VERSION, "entries": self._entries}
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._path.write_text(json.dumps(payload, indent=2, sort_keys=True), encoding="utf-8")
        self._dirty = False

    # ------------------------------------------------------------------
    # Internal helpers

    @staticmethod
    def _key(manifest: Path, input_id: str) -> str:
        return f"{manifest.expanduser().resolve()}::{input_id}"

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
        self._entries = {
            key: raw
            for key, raw in entries.items()
            if isinstance(key, str) and isinstance(raw, dict) and isinstance(raw.get("ref"), str)
        }
        self._dirty = False


__all__ = ["PinStore"]
