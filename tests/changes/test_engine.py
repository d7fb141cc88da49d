"""Tests for the change engine."""

from __future__ import annotations

from typing import Dict, Optional

import pytest

from flake_edit.changes import (
    Add,
    AddFollow,
    AutoFollow,
    ChangeEngine,
    ChangeUri,
    Pin,
    Remove,
    RemoveFollow,
    Toggle,
    Unpin,
    Update,
)
from flake_edit.changes.engine import DONE, FAILED
from flake_edit.config import EditContext
from flake_edit.document import Document
from flake_edit.errors import (
    ChangeError,
    CycleDetected,
    DuplicateInput,
    InputNotFound,
    MalformedLock,
    NetworkError,
    NothingToUnpin,
    UnknownParent,
)
from flake_edit.prompt import NonInteractiveChooser
from flake_edit.uri import SourceRef
from tests._fixtures.flake_builder import (
    NESTED_FLAKE,
    NO_INPUTS_FLAKE,
    SAMPLE_FLAKE,
    TOPLEVEL_FLAKE,
    lock_graph,
)

PIN_REV = "deadbeef" * 5
CRANE_FOLLOWS = '    crane.inputs.nixpkgs.follows = "nixpkgs";\n'


class FakeResolver:
    """Returns canned locators per input id."""

    def __init__(self, updates: Dict[str, str], failing: tuple = ()) -> None:
        self.updates = updates
        self.failing = failing
        self.calls = []

    def resolve(self, input_id: str, source: SourceRef, *, init: bool = False) -> Optional[SourceRef]:
        self.calls.append((input_id, init))
        if input_id in self.failing:
            raise NetworkError("boom", transient=True, remote="api.example.com", input_id=input_id)
        if input_id not in self.updates:
            return None
        return source.with_ref_or_rev(self.updates[input_id])


def _engine(context: Optional[EditContext] = None, **kwargs) -> ChangeEngine:
    return ChangeEngine(context or EditContext(), NonInteractiveChooser(), **kwargs)


def _apply(text: str, request, **kwargs):
    return _engine(**kwargs).apply(Document.parse(text), request)


def test_add_appends_after_last_input_in_dominant_style() -> None:
    result = _apply(SAMPLE_FLAKE, Add("github:nix-community/home-manager"))

    assert result.changed is True
    assert result.state == DONE
    assert result.input_id == "home-manager"
    assert result.document.text == SAMPLE_FLAKE.replace(
        CRANE_FOLLOWS,
        CRANE_FOLLOWS + '    home-manager.url = "github:nix-community/home-manager";\n',
    )


def test_add_then_remove_restores_the_manifest() -> None:
    engine = _engine()
    added = engine.apply(Document.parse(SAMPLE_FLAKE), Add("github:foo/bar", flake=False))
    assert '    bar.flake = false;\n' in added.document.text

    removed = engine.apply(added.document, Remove("bar"))

    assert removed.document.text == SAMPLE_FLAKE


def test_add_alphabetical_inserts_before_first_greater_id() -> None:
    context = EditContext(ordering="alphabetical")
    result = _apply(SAMPLE_FLAKE, Add("github:nix-community/home-manager"), context=context)

    assert result.document.ids()[0] == "home-manager"
    assert result.document.text.index("home-manager.url") < result.document.text.index("nixpkgs.url")


def test_add_nested_style_matches_existing_blocks() -> None:
    result = _apply(NESTED_FLAKE, Add("github:numtide/flake-utils"))

    assert result.document.text == NESTED_FLAKE.replace(
        "    };\n  };\n",
        "    };\n"
        "    flake-utils = {\n"
        '      url = "github:numtide/flake-utils";\n'
        "    };\n"
        "  };\n",
    )


def test_add_toplevel_style_keeps_inputs_prefix() -> None:
    result = _apply(TOPLEVEL_FLAKE, Add("github:numtide/flake-utils"))

    assert result.document.text == TOPLEVEL_FLAKE.replace(
        '"github:org/nixpkgs/branchA";\n',
        '"github:org/nixpkgs/branchA";\n  inputs.flake-utils.url = "github:numtide/flake-utils";\n',
    )


def test_add_creates_inputs_section_before_outputs() -> None:
    result = _apply(NO_INPUTS_FLAKE, Add("github:nixos/nixpkgs"))

    assert result.document.text == (
        "{\n"
        '  description = "x";\n'
        "\n"
        "  inputs = {\n"
        '    nixpkgs.url = "github:nixos/nixpkgs";\n'
        "  };\n"
        "\n"
        "  outputs = _: { };\n"
        "}\n"
    )


def test_add_with_ref_and_web_url() -> None:
    result = _apply(
        SAMPLE_FLAKE,
        Add("https://github.com/nix-community/home-manager", ref_or_rev="release-24.05"),
    )

    node = result.document.find("home-manager")
    assert node is not None
    assert node.url == "github:nix-community/home-manager/release-24.05"


def test_add_shallow_only_applies_to_git() -> None:
    result = _apply(SAMPLE_FLAKE, Add("git+https://example.com/team/tool.git", shallow=True))

    assert result.document.find("tool").url == "git+https://example.com/team/tool.git?shallow=1"


def test_add_duplicate_fails_without_overwrite() -> None:
    engine = _engine()
    with pytest.raises(DuplicateInput):
        engine.apply(Document.parse(SAMPLE_FLAKE), Add("github:nixos/nixpkgs"))
    assert engine.state == FAILED


def test_add_overwrite_replaces_statements_but_keeps_follows() -> None:
    result = _apply(SAMPLE_FLAKE, Add("github:nixos/nixpkgs/nixos-24.05", overwrite=True))
    text = result.document.text

    assert "nixos-unstable" not in text
    assert text.count('nixpkgs.url = "github:nixos/nixpkgs/nixos-24.05";') == 1
    assert CRANE_FOLLOWS in text


def test_remove_cascades_to_follows_targeting_the_input() -> None:
    result = _apply(SAMPLE_FLAKE, Remove("nixpkgs"))

    assert result.document.text == SAMPLE_FLAKE.replace(
        '    nixpkgs.url = "github:nixos/nixpkgs/nixos-unstable";\n', ""
    ).replace(CRANE_FOLLOWS, "")


def test_remove_drops_top_level_aliases_of_the_input() -> None:
    text = """\
{
  inputs = {
    nixpkgs.url = "github:nixos/nixpkgs";
    pkgs.follows = "nixpkgs";
    helper = {
      url = "github:org/helper";
      follows = "nixpkgs";
    };
  };
  outputs = _: { };
}
"""

    result = _apply(text, Remove("nixpkgs"))

    assert result.document.text == """\
{
  inputs = {
    helper = {
      url = "github:org/helper";
    };
  };
  outputs = _: { };
}
"""
    assert result.document.find("helper").follows_target is None


def test_remove_unknown_input_lists_alternatives() -> None:
    with pytest.raises(InputNotFound) as excinfo:
        _apply(SAMPLE_FLAKE, Remove("home-manager"))

    assert excinfo.value.alternatives == ["nixpkgs", "flake-utils", "crane"]


def test_change_uri_rewrites_only_the_url() -> None:
    result = _apply(
        SAMPLE_FLAKE,
        ChangeUri("flake-utils", "https://github.com/numtide/flake-utils/tree/v1.0.0"),
    )

    assert result.document.text == SAMPLE_FLAKE.replace(
        "github:numtide/flake-utils", "github:numtide/flake-utils/v1.0.0"
    )


def test_pin_then_unpin_with_restore_is_identity() -> None:
    engine = _engine()
    pinned = engine.apply(Document.parse(TOPLEVEL_FLAKE), Pin("nixpkgs", rev=PIN_REV))

    assert pinned.previous_ref == "branchA"
    assert pinned.document.find("nixpkgs").url == f"github:org/nixpkgs/{PIN_REV}"

    unpinned = engine.apply(pinned.document, Unpin("nixpkgs", restore="branchA"))

    assert unpinned.document.text == TOPLEVEL_FLAKE


def test_pin_reads_revision_from_lock() -> None:
    result = _apply(SAMPLE_FLAKE, Pin("nixpkgs"), lock=lock_graph())

    assert result.document.find("nixpkgs").url == "github:nixos/nixpkgs/" + "a" * 40
    assert result.previous_ref == "nixos-unstable"


def test_pin_without_lock_entry_fails() -> None:
    with pytest.raises(InputNotFound):
        _apply(SAMPLE_FLAKE, Pin("nixpkgs"))


def test_unpin_drops_the_revision() -> None:
    pinned = SAMPLE_FLAKE.replace("nixos-unstable", "a" * 40)
    result = _apply(pinned, Unpin("nixpkgs"))

    assert result.document.find("nixpkgs").url == "github:nixos/nixpkgs"


def test_unpin_git_restores_base_ref() -> None:
    text = TOPLEVEL_FLAKE.replace(
        "github:org/nixpkgs/branchA", "git+https://example.com/foo.git?ref=main"
    )
    engine = _engine()
    pinned = engine.apply(Document.parse(text), Pin("nixpkgs", rev=PIN_REV))
    assert pinned.document.find("nixpkgs").url == (
        f"git+https://example.com/foo.git?ref=main&rev={PIN_REV}"
    )

    unpinned = engine.apply(pinned.document, Unpin("nixpkgs"))

    assert unpinned.document.text == text


def test_unpin_without_ref_fails() -> None:
    with pytest.raises(NothingToUnpin):
        _apply(SAMPLE_FLAKE, Unpin("crane"))


def test_add_follow_to_dotted_input() -> None:
    result = _apply(SAMPLE_FLAKE, AddFollow("crane.rust-overlay", "nixpkgs", "nixpkgs"))

    assert result.document.text == SAMPLE_FLAKE.replace(
        CRANE_FOLLOWS,
        CRANE_FOLLOWS + '    crane.inputs.rust-overlay.inputs.nixpkgs.follows = "nixpkgs";\n',
    )


def test_add_follow_inside_nested_block() -> None:
    engine = _engine()
    doc = engine.apply(Document.parse(NESTED_FLAKE), Add("github:numtide/flake-utils")).document

    result = engine.apply(doc, AddFollow("flake-utils", "nixpkgs", "nixpkgs"))

    assert (
        '      url = "github:numtide/flake-utils";\n'
        '      inputs.nixpkgs.follows = "nixpkgs";\n'
        "    };\n"
    ) in result.document.text


def test_add_follow_existing_target_is_a_noop() -> None:
    result = _apply(SAMPLE_FLAKE, AddFollow("crane", "nixpkgs", "nixpkgs"))

    assert result.changed is False
    assert result.document.text == SAMPLE_FLAKE


def test_add_follow_retargets_existing_declaration() -> None:
    result = _apply(SAMPLE_FLAKE, AddFollow("crane", "nixpkgs", "flake-utils"))

    assert result.document.text == SAMPLE_FLAKE.replace(
        'crane.inputs.nixpkgs.follows = "nixpkgs"', 'crane.inputs.nixpkgs.follows = "flake-utils"'
    )


def test_add_follow_validation_errors() -> None:
    with pytest.raises(UnknownParent):
        _apply(SAMPLE_FLAKE, AddFollow("home-manager", "nixpkgs", "nixpkgs"))
    with pytest.raises(InputNotFound):
        _apply(SAMPLE_FLAKE, AddFollow("crane", "systems", "systems"))
    with pytest.raises(CycleDetected) as excinfo:
        _apply(SAMPLE_FLAKE, AddFollow("nixpkgs", "crane", "crane"))

    assert excinfo.value.path == ["nixpkgs", "crane", "nixpkgs"]


def test_add_follow_to_sibling_input_is_not_a_cycle() -> None:
    engine = _engine()

    result = engine.apply(
        Document.parse(SAMPLE_FLAKE), AddFollow("crane", "flake-utils", "crane/rust-overlay")
    )

    assert 'crane.inputs.flake-utils.follows = "crane/rust-overlay";' in result.document.text

    with pytest.raises(CycleDetected) as excinfo:
        engine.apply(result.document, AddFollow("crane", "rust-overlay", "crane/flake-utils"))
    assert excinfo.value.path == ["crane/rust-overlay", "crane/flake-utils", "crane/rust-overlay"]

    with pytest.raises(CycleDetected):
        _apply(SAMPLE_FLAKE, AddFollow("crane", "flake-utils", "crane/flake-utils/nixpkgs"))
    with pytest.raises(CycleDetected):
        _apply(SAMPLE_FLAKE, AddFollow("crane", "flake-utils", "crane"))


def test_remove_follow() -> None:
    result = _apply(SAMPLE_FLAKE, RemoveFollow("crane", "nixpkgs"))

    assert result.document.text == SAMPLE_FLAKE.replace(CRANE_FOLLOWS, "")
    with pytest.raises(InputNotFound):
        _apply(SAMPLE_FLAKE, RemoveFollow("crane", "rust-overlay"))


def test_toggle_through_engine() -> None:
    text = SAMPLE_FLAKE.replace(
        '    flake-utils.url = "github:numtide/flake-utils";\n',
        '    flake-utils.url = "github:numtide/flake-utils";\n'
        '    # flake-utils.url = "path:/home/me/flake-utils";\n',
    )
    result = _apply(text, Toggle("flake-utils"))

    assert result.document.find("flake-utils").url == "path:/home/me/flake-utils"
    assert "Toggled 'flake-utils'" in result.message


def test_update_single_input_uses_resolver() -> None:
    resolver = FakeResolver({"nixpkgs": "nixos-24.05"})
    result = _apply(SAMPLE_FLAKE, Update("nixpkgs"), resolver=resolver)

    assert result.document.find("nixpkgs").url == "github:nixos/nixpkgs/nixos-24.05"
    assert resolver.calls == [("nixpkgs", False)]


def test_update_all_skips_network_failures() -> None:
    resolver = FakeResolver({"crane": "v0.16.0"}, failing=("nixpkgs",))
    result = _apply(SAMPLE_FLAKE, Update(init=True), resolver=resolver)

    assert result.document.find("crane").url == "github:ipetkov/crane/v0.16.0"
    assert result.document.find("nixpkgs").url == "github:nixos/nixpkgs/nixos-unstable"
    assert [call[0] for call in resolver.calls] == ["nixpkgs", "flake-utils", "crane"]


def test_update_single_input_propagates_network_failures() -> None:
    resolver = FakeResolver({}, failing=("nixpkgs",))
    with pytest.raises(NetworkError):
        _apply(SAMPLE_FLAKE, Update("nixpkgs"), resolver=resolver)


def test_update_reports_up_to_date() -> None:
    result = _apply(SAMPLE_FLAKE, Update(), resolver=FakeResolver({}))

    assert result.changed is False
    assert result.message == "All inputs are already up to date"


def test_update_without_resolver_fails() -> None:
    with pytest.raises(ChangeError):
        _apply(SAMPLE_FLAKE, Update())


def test_auto_follow_adds_inferred_follows_once() -> None:
    engine = _engine(lock=lock_graph())
    first = engine.apply(Document.parse(SAMPLE_FLAKE), AutoFollow())

    assert first.plan is not None
    assert [addition.path for addition in first.plan.additions] == ["crane.rust-overlay.nixpkgs"]
    assert 'crane.inputs.rust-overlay.inputs.nixpkgs.follows = "nixpkgs";' in first.document.text

    second = engine.apply(first.document, AutoFollow())

    assert second.changed is False
    assert second.message == "No inputs to auto-follow."


def test_auto_follow_removes_stale_declarations() -> None:
    text = SAMPLE_FLAKE.replace(
        CRANE_FOLLOWS, CRANE_FOLLOWS + '    crane.inputs.flake-compat.follows = "nixpkgs";\n'
    )
    result = _apply(text, AutoFollow(), lock=lock_graph())

    assert "flake-compat" not in result.document.text
    assert "Removed stale follows crane.flake-compat" in result.message


def test_auto_follow_requires_a_lock() -> None:
    with pytest.raises(MalformedLock):
        _apply(SAMPLE_FLAKE, AutoFollow())


def test_unknown_request_type_is_rejected() -> None:
    with pytest.raises(TypeError):
        _engine().apply(Document.parse(SAMPLE_FLAKE), object())  # type: ignore[arg-type]
