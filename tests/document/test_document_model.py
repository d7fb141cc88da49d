"""Tests for the manifest document model."""

from __future__ import annotations

import pytest

from flake_edit.document import (
    CONTAINER_BLOCK,
    CONTAINER_TOPLEVEL,
    STYLE_DOTTED,
    STYLE_NESTED,
    Document,
)
from flake_edit.document.lexer import escape_string, tokenize, unescape_string
from flake_edit.errors import MalformedManifest
from tests._fixtures.flake_builder import NESTED_FLAKE, NO_INPUTS_FLAKE, SAMPLE_FLAKE, TOPLEVEL_FLAKE


def test_parse_dotted_inputs_block() -> None:
    doc = Document.parse(SAMPLE_FLAKE)

    assert doc.ids() == ["nixpkgs", "flake-utils", "crane"]
    nixpkgs = doc.find("nixpkgs")
    assert nixpkgs is not None
    assert nixpkgs.url == "github:nixos/nixpkgs/nixos-unstable"
    assert nixpkgs.style == STYLE_DOTTED
    assert nixpkgs.container == CONTAINER_BLOCK
    assert nixpkgs.is_flake is True

    crane = doc.find("crane")
    assert crane is not None
    assert len(crane.statements) == 2
    assert [(decl.child_path, decl.target) for decl in crane.follows] == [("nixpkgs", "nixpkgs")]


def test_url_span_covers_string_interior() -> None:
    doc = Document.parse(SAMPLE_FLAKE)
    node = doc.find("flake-utils")
    assert node is not None and node.url_span is not None

    assert doc.text[node.url_span.start : node.url_span.end] == "github:numtide/flake-utils"


def test_parse_nested_block_style() -> None:
    doc = Document.parse(NESTED_FLAKE)
    node = doc.find("nixpkgs")

    assert node is not None
    assert node.style == STYLE_NESTED
    assert node.block is not None
    assert len(node.block.bindings) == 1
    assert node.url == "github:nixos/nixpkgs"


def test_parse_toplevel_inputs() -> None:
    doc = Document.parse(TOPLEVEL_FLAKE)
    node = doc.find("nixpkgs")

    assert node is not None
    assert node.container == CONTAINER_TOPLEVEL
    assert doc.inputs_block() is None
    assert node.locator is not None
    assert node.locator.ref_or_rev == "branchA"


def test_manifest_without_inputs_has_no_nodes() -> None:
    doc = Document.parse(NO_INPUTS_FLAKE)

    assert doc.all() == []
    assert doc.outputs_statement() is not None


def test_nested_follows_and_flake_false() -> None:
    text = """\
{
  inputs = {
    helper = {
      url = "github:org/helper";
      flake = false;
      inputs.tools.inputs.nixpkgs.follows = "nixpkgs";
    };
    nixpkgs.url = "github:nixos/nixpkgs";
    tools.follows = "nixpkgs";
  };
  outputs = _: { };
}
"""
    doc = Document.parse(text)
    helper = doc.find("helper")
    tools = doc.find("tools")

    assert helper is not None and tools is not None
    assert helper.is_flake is False
    assert helper.follows_for("tools.nixpkgs") is not None
    assert tools.url is None
    assert tools.follows_target == "nixpkgs"


def test_interpolated_url_is_not_editable() -> None:
    text = '{\n  inputs.foo.url = "github:${owner}/foo";\n  outputs = _: { };\n}\n'
    node = Document.parse(text).find("foo")

    assert node is not None
    assert node.url is None
    assert node.url_span is None


def test_comments_and_let_blocks_are_skipped() -> None:
    text = """\
{
  # inputs.old.url = "github:org/old";
  inputs = {
    /* block comment */
    nixpkgs.url = "github:nixos/nixpkgs"; # trailing
  };
  outputs = { nixpkgs, ... }:
    let
      pkgs = nixpkgs.legacyPackages.x86_64-linux;
    in { packages = { }; };
}
"""
    doc = Document.parse(text)

    assert doc.ids() == ["nixpkgs"]


@pytest.mark.parametrize(
    "text",
    [
        "",
        "let x = 1; in { }",
        "{ inputs = { nixpkgs.url = \"github:a/b\"; }",
        "{ inputs = \"nope\"; }",
        "{ inputs.nixpkgs.flake = maybe; }",
        "{ } extra",
    ],
)
def test_malformed_manifests_raise(text: str) -> None:
    with pytest.raises(MalformedManifest):
        Document.parse(text)


def test_replace_leaf_shifts_following_spans() -> None:
    doc = Document.parse(SAMPLE_FLAKE)
    node = doc.find("nixpkgs")
    assert node is not None and node.url_span is not None

    updated = doc.replace(node.url_span, "github:nixos/nixpkgs/nixos-24.05")

    assert updated.find("nixpkgs").url == "github:nixos/nixpkgs/nixos-24.05"
    assert updated.find("crane").url == "github:ipetkov/crane"
    assert updated.find("crane").follows[0].target == "nixpkgs"
    assert updated.text == SAMPLE_FLAKE.replace("nixos-unstable", "nixos-24.05")


def test_removal_extent_takes_the_whole_line() -> None:
    doc = Document.parse(SAMPLE_FLAKE)
    node = doc.find("flake-utils")
    assert node is not None

    updated = doc.delete([doc.removal_extent(node.statements[0])])

    assert updated.text == SAMPLE_FLAKE.replace(
        '    flake-utils.url = "github:numtide/flake-utils";\n', ""
    )


def test_dominant_style_tie_goes_to_last_input() -> None:
    text = """\
{
  inputs = {
    a.url = "github:o/a";
    b = { url = "github:o/b"; };
  };
  outputs = _: { };
}
"""
    doc = Document.parse(text)

    assert doc.dominant_style("dotted") == STYLE_NESTED
    assert Document.parse(NO_INPUTS_FLAKE).dominant_style("nested") == "nested"


def test_indent_unit_is_observed() -> None:
    text = "{\n    inputs = {\n        a.url = \"github:o/a\";\n    };\n    outputs = _: { };\n}\n"

    assert Document.parse(text).indent_unit() == "    "
    assert Document.parse(SAMPLE_FLAKE).indent_unit() == "  "


def test_tokenize_keeps_offsets() -> None:
    text = '{ a.url = "x"; }'
    tokens = tokenize(text)

    assert [token.text for token in tokens] == ["{", "a", ".", "url", "=", '"x"', ";", "}"]
    for token in tokens:
        assert text[token.start : token.end] == token.text


def test_escape_round_trip() -> None:
    value = 'say "hi" ${there}\\'

    assert unescape_string(escape_string(value)) == value
