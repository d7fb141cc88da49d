"""Helper utilities for writing throwaway flakes in tests."""

from __future__ import annotations

import copy
import json
import textwrap
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from flake_edit.document.model import Document
from flake_edit.lock.graph import LockGraph

SAMPLE_FLAKE = """\
{
  description = "demo";

  inputs = {
    nixpkgs.url = "github:nixos/nixpkgs/nixos-unstable";
    flake-utils.url = "github:numtide/flake-utils";
    crane.url = "github:ipetkov/crane";
    crane.inputs.nixpkgs.follows = "nixpkgs";
  };

  outputs = { self, nixpkgs, ... }: { };
}
"""

NESTED_FLAKE = """\
{
  inputs = {
    nixpkgs = {
      url = "github:nixos/nixpkgs";
    };
  };

  outputs = _: { };
}
"""

TOPLEVEL_FLAKE = """\
{
  inputs.nixpkgs.url = "github:org/nixpkgs/branchA";

  outputs = { ... }: { };
}
"""

NO_INPUTS_FLAKE = """\
{
  description = "x";

  outputs = _: { };
}
"""


def _github(owner: str, repo: str, rev: str) -> Dict[str, Any]:
    return {
        "lastModified": 1700000000,
        "narHash": "sha256-AAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAA=",
        "owner": owner,
        "repo": repo,
        "rev": rev,
        "type": "github",
    }


SAMPLE_LOCK: Dict[str, Any] = {
    "nodes": {
        "crane": {
            "inputs": {"nixpkgs": ["nixpkgs"], "rust-overlay": "rust-overlay"},
            "locked": _github("ipetkov", "crane", "c" * 40),
            "original": {"owner": "ipetkov", "repo": "crane", "type": "github"},
        },
        "flake-utils": {
            "inputs": {"systems": "systems"},
            "locked": _github("numtide", "flake-utils", "f" * 40),
            "original": {"owner": "numtide", "repo": "flake-utils", "type": "github"},
        },
        "nixpkgs": {
            "locked": _github("nixos", "nixpkgs", "a" * 40),
            "original": {"owner": "nixos", "ref": "nixos-unstable", "repo": "nixpkgs", "type": "github"},
        },
        "nixpkgs_2": {
            "locked": _github("NixOS", "nixpkgs", "b" * 40),
            "original": {"owner": "NixOS", "repo": "nixpkgs", "type": "github"},
        },
        "root": {
            "inputs": {"crane": "crane", "flake-utils": "flake-utils", "nixpkgs": "nixpkgs"},
        },
        "rust-overlay": {
            "inputs": {"nixpkgs": "nixpkgs_2"},
            "locked": _github("oxalica", "rust-overlay", "e" * 40),
            "original": {"owner": "oxalica", "repo": "rust-overlay", "type": "github"},
        },
        "systems": {
            "locked": _github("nix-systems", "default", "d" * 40),
            "original": {"owner": "nix-systems", "repo": "default", "type": "github"},
        },
    },
    "root": "root",
    "version": 7,
}


def sample_lock() -> Dict[str, Any]:
    """Fresh deep copy of SAMPLE_LOCK that tests may mutate."""
    return copy.deepcopy(SAMPLE_LOCK)


def lock_graph(data: Optional[Mapping[str, Any]] = None) -> LockGraph:
    return LockGraph.parse(json.dumps(data if data is not None else SAMPLE_LOCK))


def document(text: str = SAMPLE_FLAKE) -> Document:
    return Document.parse(text)


class FlakeBuilder:
    """Utility for writing flake.nix / flake.lock pairs into a temporary directory."""

    def __init__(self, tmp_path: Path) -> None:
        self.root = tmp_path / "flakes"
        self.root.mkdir()

    def write(
        self,
        name: str = "demo",
        manifest: str = SAMPLE_FLAKE,
        lock: Optional[Mapping[str, Any]] = None,
    ) -> Path:
        """Write a flake directory and return its path."""
        directory = self.root / name
        directory.mkdir(parents=True, exist_ok=True)
        normalised = textwrap.dedent(manifest).lstrip("\n")
        (directory / "flake.nix").write_text(normalised, encoding="utf-8")
        if lock is not None:
            (directory / "flake.lock").write_text(json.dumps(lock, indent=2), encoding="utf-8")
        return directory

    def manifest(self, name: str = "demo") -> str:
        return (self.root / name / "flake.nix").read_text(encoding="utf-8")


__all__ = [
    "FlakeBuilder",
    "NESTED_FLAKE",
    "NO_INPUTS_FLAKE",
    "SAMPLE_FLAKE",
    "SAMPLE_LOCK",
    "TOPLEVEL_FLAKE",
    "document",
    "lock_graph",
    "sample_lock",
]
