"""Integration tests for running change requests against files on disk."""

from __future__ import annotations

import json
import subprocess
from dataclasses import replace
from pathlib import Path

import pytest

from flake_edit.changes import Add, Pin, Remove, Unpin
from flake_edit.config import EditContext, LockSettings
from flake_edit.errors import DuplicateInput, LockRegenerationFailed
from flake_edit.orchestrator import Orchestrator, resolve_manifest, write_atomic
from flake_edit.runner import LockRegenerator
from tests._fixtures.flake_builder import SAMPLE_FLAKE, FlakeBuilder, sample_lock

HOME_MANAGER = '    home-manager.url = "github:nix-community/home-manager";\n'


def _with_home_manager(text: str) -> str:
    follows = '    crane.inputs.nixpkgs.follows = "nixpkgs";\n'
    return text.replace(follows, follows + HOME_MANAGER)


def test_run_writes_manifest_and_records_completions(
    flake_builder: FlakeBuilder, edit_context: EditContext
) -> None:
    flake_dir = flake_builder.write()
    orchestrator = Orchestrator(edit_context)

    outcome = orchestrator.run(flake_dir, Add("github:nix-community/home-manager"))

    assert outcome.changed is True
    assert outcome.dry_run is False
    assert outcome.path == flake_dir / "flake.nix"
    assert flake_builder.manifest() == _with_home_manager(SAMPLE_FLAKE)
    assert "github:nix-community/home-manager" in orchestrator.completions()
    assert (edit_context.cache_dir / "uri-cache.json").is_file()


def test_diff_mode_leaves_manifest_untouched(
    flake_builder: FlakeBuilder, edit_context: EditContext
) -> None:
    flake_dir = flake_builder.write()
    context = edit_context.with_overrides(output="diff")

    outcome = Orchestrator(context).run(flake_dir / "flake.nix", Add("github:nix-community/home-manager"))

    assert outcome.dry_run is True
    assert outcome.diff.startswith("--- flake.nix (original)\n+++ flake.nix (updated)\n")
    assert "+" + HOME_MANAGER in outcome.diff
    assert flake_builder.manifest() == SAMPLE_FLAKE


def test_lock_is_regenerated_after_write(
    flake_builder: FlakeBuilder, edit_context: EditContext
) -> None:
    flake_dir = flake_builder.write()
    calls = []

    def runner(args, cwd):
        calls.append((list(args), Path(cwd)))
        return subprocess.CompletedProcess(args, 0, stdout="", stderr="")

    context = replace(edit_context, lock=LockSettings(regenerate=True))
    orchestrator = Orchestrator(context, lock_regenerator=LockRegenerator(runner=runner))

    outcome = orchestrator.run(flake_dir, Remove("flake-utils"))

    assert outcome.lock_regenerated is True
    assert calls == [(["nix", "flake", "lock"], flake_dir)]


def test_failed_lock_regeneration_restores_manifest(
    flake_builder: FlakeBuilder, edit_context: EditContext
) -> None:
    flake_dir = flake_builder.write()

    def runner(args, cwd):
        return subprocess.CompletedProcess(args, 1, stdout="", stderr="error: cannot fetch\n")

    context = replace(edit_context, lock=LockSettings(regenerate=True))
    orchestrator = Orchestrator(context, lock_regenerator=LockRegenerator(runner=runner))

    with pytest.raises(LockRegenerationFailed):
        orchestrator.run(flake_dir, Remove("flake-utils"))

    assert flake_builder.manifest() == SAMPLE_FLAKE


def test_failed_request_does_not_touch_manifest(
    flake_builder: FlakeBuilder, edit_context: EditContext
) -> None:
    flake_dir = flake_builder.write()

    with pytest.raises(DuplicateInput):
        Orchestrator(edit_context).run(flake_dir, Add("github:nixos/nixpkgs"))

    assert flake_builder.manifest() == SAMPLE_FLAKE


def test_unpin_restores_ref_from_pin_history(
    flake_builder: FlakeBuilder, edit_context: EditContext
) -> None:
    flake_dir = flake_builder.write(lock=sample_lock())
    orchestrator = Orchestrator(edit_context)

    pinned = orchestrator.run(flake_dir, Pin("nixpkgs"))
    assert "github:nixos/nixpkgs/" + "a" * 40 in flake_builder.manifest()
    assert pinned.message == f"Pinned 'nixpkgs' to {'a' * 40}"

    orchestrator.run(flake_dir, Unpin("nixpkgs"))

    assert flake_builder.manifest() == SAMPLE_FLAKE
    pins = json.loads((edit_context.cache_dir / "pins.json").read_text(encoding="utf-8"))
    assert pins["entries"] == {}


def test_reconcile_many_isolates_failures(
    flake_builder: FlakeBuilder, edit_context: EditContext
) -> None:
    good = flake_builder.write("good", lock=sample_lock())
    no_lock = flake_builder.write("no-lock")
    missing = flake_builder.root / "missing"

    results = Orchestrator(edit_context, max_workers=2).reconcile_many([good, no_lock, missing])

    assert [result.ok for result in results] == [True, False, False]
    assert "crane.rust-overlay.nixpkgs now follows nixpkgs" in results[0].message
    assert "run the lock command first" in results[1].error
    assert "crane.inputs.rust-overlay.inputs.nixpkgs.follows" in flake_builder.manifest("good")
    assert flake_builder.manifest("no-lock") == SAMPLE_FLAKE


def test_list_inputs(flake_builder: FlakeBuilder, edit_context: EditContext) -> None:
    flake_dir = flake_builder.write()

    nodes = Orchestrator(edit_context).list_inputs(flake_dir)

    assert [node.id for node in nodes] == ["nixpkgs", "flake-utils", "crane"]


def test_resolve_manifest_and_write_atomic(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        resolve_manifest(tmp_path)

    manifest = tmp_path / "flake.nix"
    manifest.write_text("{ }\n", encoding="utf-8")
    manifest.chmod(0o600)
    assert resolve_manifest(tmp_path) == manifest

    write_atomic(manifest, "{ inputs = { }; }\n")

    assert manifest.read_text(encoding="utf-8") == "{ inputs = { }; }\n"
    assert manifest.stat().st_mode & 0o777 == 0o600
    assert [path.name for path in tmp_path.iterdir()] == ["flake.nix"]


def test_reconcile_many_reports_undecodable_manifest(
    flake_builder: FlakeBuilder, edit_context: EditContext
) -> None:
    good = flake_builder.write("good", lock=sample_lock())
    broken = flake_builder.write("broken", lock=sample_lock())
    (broken / "flake.nix").write_bytes(b'{\n  description = "\xff\xfe";\n}\n')

    results = Orchestrator(edit_context, max_workers=2).reconcile_many([good, broken])

    assert [result.ok for result in results] == [True, False]
    assert "not valid UTF-8" in results[1].error


def test_corrupt_caches_are_ignored(flake_builder: FlakeBuilder, edit_context: EditContext) -> None:
    flake_dir = flake_builder.write(lock=sample_lock())
    edit_context.cache_dir.mkdir(parents=True)
    (edit_context.cache_dir / "pins.json").write_bytes(b"\xff\xfe\x00garbage")
    (edit_context.cache_dir / "uri-cache.json").write_bytes(b"\xff\xfe\x00garbage")

    outcome = Orchestrator(edit_context).run(flake_dir, Pin("nixpkgs"))

    assert outcome.changed is True
    pins = json.loads((edit_context.cache_dir / "pins.json").read_text(encoding="utf-8"))
    assert list(pins["entries"].values())[0]["ref"] == "nixos-unstable"


def test_completions_only_count_the_edited_input(
    flake_builder: FlakeBuilder, edit_context: EditContext
) -> None:
    flake_dir = flake_builder.write()
    orchestrator = Orchestrator(edit_context)

    orchestrator.run(flake_dir, Remove("flake-utils"))
    orchestrator.run(flake_dir, Add("github:nix-community/home-manager"))

    completions = orchestrator.completions()
    assert "github:nix-community/home-manager" in completions
    assert "github:ipetkov/crane" not in completions
    assert "github:numtide/flake-utils" not in completions
