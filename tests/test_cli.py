"""CLI parser behaviour tests."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from flake_edit.changes import AddFollow, AutoFollow, Update
from flake_edit.cli import _build_parser, _request_from_args, main
from tests._fixtures.flake_builder import SAMPLE_FLAKE, FlakeBuilder


def test_cli_accepts_verbose_before_command() -> None:
    parser = _build_parser()
    args = parser.parse_args(["--verbose", "update"])
    assert args.verbose is True
    assert args.command == "update"


def test_cli_accepts_verbose_after_command() -> None:
    parser = _build_parser()
    args = parser.parse_args(["update", "--verbose"])
    assert args.verbose is True
    assert args.command == "update"


def test_cli_accepts_global_flags() -> None:
    parser = _build_parser()
    args = parser.parse_args(["--flake", "sub", "--diff", "--no-lock", "update", "--init"])
    assert args.flake == Path("sub")
    assert args.diff is True
    assert args.no_lock is True
    assert _request_from_args(args) == Update(id=None, init=True)


def test_follow_requests() -> None:
    parser = _build_parser()

    auto = _request_from_args(parser.parse_args(["follow", "--auto"]))
    bare = _request_from_args(parser.parse_args(["follow"]))
    explicit = _request_from_args(parser.parse_args(["follow", "crane", "nixpkgs", "nixpkgs"]))

    assert auto == AutoFollow()
    assert bare == AutoFollow()
    assert explicit == AddFollow(parent_path="crane", child="nixpkgs", target="nixpkgs")


def test_follow_with_partial_arguments_is_rejected(flake_builder: FlakeBuilder) -> None:
    flake_dir = flake_builder.write()

    with pytest.raises(SystemExit) as excinfo:
        main(["--flake", str(flake_dir), "--no-lock", "follow", "crane", "nixpkgs"])

    assert excinfo.value.code == 2


def test_add_writes_manifest(flake_builder: FlakeBuilder, capsys: pytest.CaptureFixture[str]) -> None:
    flake_dir = flake_builder.write()

    main(
        [
            "--flake",
            str(flake_dir),
            "--no-lock",
            "--non-interactive",
            "add",
            "github:nix-community/home-manager",
        ]
    )

    output = capsys.readouterr().out
    assert "Added input 'home-manager'" in output
    assert 'home-manager.url = "github:nix-community/home-manager";' in flake_builder.manifest()


def test_diff_flag_prints_diff(flake_builder: FlakeBuilder, capsys: pytest.CaptureFixture[str]) -> None:
    flake_dir = flake_builder.write()

    main(["--flake", str(flake_dir), "--diff", "remove", "flake-utils"])

    output = capsys.readouterr().out
    assert output.startswith("--- flake.nix (original)")
    assert flake_builder.manifest() == SAMPLE_FLAKE


def test_list_json(flake_builder: FlakeBuilder, capsys: pytest.CaptureFixture[str]) -> None:
    flake_dir = flake_builder.write()

    main(["--flake", str(flake_dir), "list", "--format", "json"])

    payload = json.loads(capsys.readouterr().out)
    assert [entry["id"] for entry in payload] == ["nixpkgs", "flake-utils", "crane"]
    assert payload[2]["follows"] == {"nixpkgs": "nixpkgs"}
    assert payload[0]["url"] == "github:nixos/nixpkgs/nixos-unstable"


def test_errors_exit_with_status_one(
    flake_builder: FlakeBuilder, capsys: pytest.CaptureFixture[str]
) -> None:
    flake_dir = flake_builder.write()

    with pytest.raises(SystemExit) as excinfo:
        main(["--flake", str(flake_dir), "--no-lock", "--non-interactive", "remove", "home-manager"])

    assert excinfo.value.code == 1
    assert capsys.readouterr().err.startswith("flake-edit: ")
    assert flake_builder.manifest() == SAMPLE_FLAKE


def test_missing_manifest_exits_with_status_one(tmp_path: Path) -> None:
    with pytest.raises(SystemExit) as excinfo:
        main(["--flake", str(tmp_path), "--no-lock", "pin", "nixpkgs"])

    assert excinfo.value.code == 1


def test_undecodable_manifest_exits_with_status_one(
    flake_builder: FlakeBuilder, capsys: pytest.CaptureFixture[str]
) -> None:
    flake_dir = flake_builder.write()
    (flake_dir / "flake.nix").write_bytes(b"{ \xff }\n")

    with pytest.raises(SystemExit) as excinfo:
        main(["--flake", str(flake_dir), "list"])

    assert excinfo.value.code == 1
    assert "not valid UTF-8" in capsys.readouterr().err
