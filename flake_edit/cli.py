"""CLI entrypoint for flake-edit commands."""

from __future__ import annotations

import argparse
from dataclasses import replace
import json
from pathlib import Path
from typing import List

from .changes.requests import (
    Add,
    AddFollow,
    AutoFollow,
    ChangeRequest,
    ChangeUri,
    Pin,
    Remove,
    RemoveFollow,
    Toggle,
    Unpin,
    Update,
)
from .config import EditContext, load_config
from .errors import FlakeEditError
from .logging import configure_logging
from .orchestrator import EditOutcome, Orchestrator


def _add_verbose_option(
    parser: argparse.ArgumentParser, *, suppress_default: bool = False
) -> None:
    kwargs: dict[str, object] = {
        "action": "store_true",
        "help": "Increase log verbosity for troubleshooting.",
    }
    if suppress_default:
        kwargs["default"] = argparse.SUPPRESS
    else:
        kwargs["default"] = False
    parser.add_argument(
        "-v",
        "--verbose",
        **kwargs,
    )


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="flake-edit",
        description="Edit the inputs of a flake.nix without disturbing its formatting.",
    )
    _add_verbose_option(parser)
    parser.add_argument(
        "--flake",
        type=Path,
        default=Path("."),
        help="Path to flake.nix or its directory (defaults to the current directory).",
    )
    parser.add_argument("--lock-file", type=Path, help="Path to flake.lock (defaults to the flake's).")
    parser.add_argument("--config", type=Path, help="Explicit flake-edit.yml to load.")
    parser.add_argument(
        "--diff",
        action="store_true",
        help="Print a unified diff instead of writing the manifest.",
    )
    parser.add_argument(
        "--no-lock",
        action="store_true",
        help="Do not regenerate flake.lock after writing.",
    )
    parser.add_argument(
        "--non-interactive",
        action="store_true",
        help="Fail instead of prompting when a choice is needed.",
    )
    parser.add_argument("--log-file", type=Path, help="Also write debug logs to this file.")
    subparsers = parser.add_subparsers(dest="command", required=True)

    add_parser = subparsers.add_parser("add", help="Add a new input.")
    _add_verbose_option(add_parser, suppress_default=True)
    add_parser.add_argument("locator", help="Source locator, e.g. github:nixos/nixpkgs.")
    add_parser.add_argument("id", nargs="?", help="Input id (inferred from the locator when omitted).")
    add_parser.add_argument("--no-flake", action="store_true", help="Mark the input as flake = false.")
    add_parser.add_argument("--overwrite", action="store_true", help="Replace an existing input with the same id.")
    add_parser.add_argument("--ref-or-rev", help="Ref or revision to add the input at.")
    add_parser.add_argument("--shallow", action="store_true", help="Request a shallow clone (git only).")

    remove_parser = subparsers.add_parser("remove", help="Remove an input and follows pointing at it.")
    _add_verbose_option(remove_parser, suppress_default=True)
    remove_parser.add_argument("id")

    change_parser = subparsers.add_parser("change", help="Point an input at a new locator.")
    _add_verbose_option(change_parser, suppress_default=True)
    change_parser.add_argument("id")
    change_parser.add_argument("locator")

    pin_parser = subparsers.add_parser("pin", help="Pin an input to a revision.")
    _add_verbose_option(pin_parser, suppress_default=True)
    pin_parser.add_argument("id")
    pin_parser.add_argument("rev", nargs="?", help="Revision (defaults to the one in flake.lock).")

    unpin_parser = subparsers.add_parser("unpin", help="Remove a pin, restoring the previous ref when known.")
    _add_verbose_option(unpin_parser, suppress_default=True)
    unpin_parser.add_argument("id")

    follow_parser = subparsers.add_parser(
        "follow",
        help="Make a nested input follow a top-level input, or infer follows with --auto.",
    )
    _add_verbose_option(follow_parser, suppress_default=True)
    follow_parser.add_argument("parent", nargs="?", help="Parent path, e.g. crane or crane.rust-overlay.")
    follow_parser.add_argument("child", nargs="?", help="Nested input name.")
    follow_parser.add_argument("target", nargs="?", help="Top-level input to follow.")
    follow_parser.add_argument("--auto", action="store_true", help="Infer follows from flake.lock.")

    unfollow_parser = subparsers.add_parser("unfollow", help="Remove a follows declaration.")
    _add_verbose_option(unfollow_parser, suppress_default=True)
    unfollow_parser.add_argument("parent")
    unfollow_parser.add_argument("child")

    toggle_parser = subparsers.add_parser(
        "toggle", help="Switch an input to one of its commented-out alternatives."
    )
    _add_verbose_option(toggle_parser, suppress_default=True)
    toggle_parser.add_argument("id", nargs="?")
    toggle_parser.add_argument("--to", dest="target", help="Locator (or unique part of it) to activate.")

    update_parser = subparsers.add_parser("update", help="Move inputs to their newest release or channel.")
    _add_verbose_option(update_parser, suppress_default=True)
    update_parser.add_argument("id", nargs="?", help="Input to update (defaults to all inputs).")
    update_parser.add_argument(
        "--init",
        action="store_true",
        help="Pin unversioned inputs to their newest release tag.",
    )

    list_parser = subparsers.add_parser("list", help="List declared inputs.")
    _add_verbose_option(list_parser, suppress_default=True)
    list_parser.add_argument(
        "--format",
        choices=("simple", "json", "uris"),
        default="simple",
        help="Output format; 'uris' prints known locators for completion.",
    )

    reconcile_parser = subparsers.add_parser(
        "reconcile", help="Infer follows for several flakes independently."
    )
    _add_verbose_option(reconcile_parser, suppress_default=True)
    reconcile_parser.add_argument("paths", nargs="+", type=Path)

    return parser


def main(argv: list[str] | None = None) -> None:
    """CLI entrypoint for flake-edit commands."""
    parser = _build_parser()
    args = parser.parse_args(argv)

    configure_logging(verbose=bool(args.verbose), log_file=args.log_file)

    try:
        context = _build_context(args)
    except FlakeEditError as exc:
        parser.exit(1, f"flake-edit: {exc}\n")
    orchestrator = Orchestrator(context)

    if args.command == "list":
        _list(orchestrator, args, parser)
        return
    if args.command == "reconcile":
        _reconcile(orchestrator, args, parser)
        return

    try:
        request = _request_from_args(args)
    except ValueError as exc:
        parser.error(str(exc))
    try:
        outcome = orchestrator.run(args.flake, request, lock_path=args.lock_file)
    except (FlakeEditError, FileNotFoundError) as exc:
        parser.exit(1, f"flake-edit: {exc}\n")
    _report(outcome)


def _build_context(args: argparse.Namespace) -> EditContext:
    context = load_config(args.flake, config_path=args.config)
    lock = replace(context.lock, regenerate=False) if args.no_lock else None
    return context.with_overrides(
        output="diff" if args.diff else None,
        interactive=False if args.non_interactive else None,
        lock=lock,
    )


def _request_from_args(args: argparse.Namespace) -> ChangeRequest:
    command = args.command
    if command == "add":
        return Add(
            locator=args.locator,
            id=args.id,
            flake=not args.no_flake,
            overwrite=args.overwrite,
            ref_or_rev=args.ref_or_rev,
            shallow=args.shallow,
        )
    if command == "remove":
        return Remove(id=args.id)
    if command == "change":
        return ChangeUri(id=args.id, locator=args.locator)
    if command == "pin":
        return Pin(id=args.id, rev=args.rev)
    if command == "unpin":
        return Unpin(id=args.id)
    if command == "follow":
        given = [value for value in (args.parent, args.child, args.target) if value is not None]
        if args.auto or not given:
            if given:
                raise ValueError("follow --auto does not take positional arguments")
            return AutoFollow()
        if len(given) != 3:
            raise ValueError("follow needs PARENT CHILD TARGET, or --auto")
        return AddFollow(parent_path=args.parent, child=args.child, target=args.target)
    if command == "unfollow":
        return RemoveFollow(parent_path=args.parent, child=args.child)
    if command == "toggle":
        return Toggle(id=args.id, target=args.target)
    if command == "update":
        return Update(id=args.id, init=args.init)
    raise ValueError(f"Unknown command {command}")


def _report(outcome: EditOutcome) -> None:
    if outcome.dry_run:
        print(outcome.diff or "(no changes)", end="" if outcome.diff else "\n")
        return
    if outcome.message:
        print(outcome.message)


def _list(orchestrator: Orchestrator, args: argparse.Namespace, parser: argparse.ArgumentParser) -> None:
    if args.format == "uris":
        for uri in orchestrator.completions():
            print(uri)
        return
    try:
        nodes = orchestrator.list_inputs(args.flake)
    except (FlakeEditError, FileNotFoundError) as exc:
        parser.exit(1, f"flake-edit: {exc}\n")
    if args.format == "json":
        payload = [
            {
                "id": node.id,
                "url": node.url,
                "flake": node.is_flake,
                "follows": {decl.child_path: decl.target for decl in node.follows},
            }
            for node in nodes
        ]
        print(json.dumps(payload, indent=2))
        return
    for node in nodes:
        print(f"{node.id} {node.url or '(registry)'}")


def _reconcile(
    orchestrator: Orchestrator, args: argparse.Namespace, parser: argparse.ArgumentParser
) -> None:
    results = orchestrator.reconcile_many(args.paths)
    failures: List[str] = []
    for result in results:
        if result.ok:
            if orchestrator.context.output == "diff":
                print(result.diff or f"{result.path}: no changes")
            else:
                print(f"{result.path}: {result.message}")
        else:
            failures.append(f"{result.path}: {result.error}")
    if failures:
        parser.exit(1, "".join(f"flake-edit: {line}\n" for line in failures))


__all__ = ["main"]
