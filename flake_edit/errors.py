"""Error taxonomy shared by every flake-edit subsystem."""

from __future__ import annotations

from typing import Optional, Sequence


class FlakeEditError(RuntimeError):
    """Base class for all user-facing flake-edit failures."""


# ----------------------------------------------------------------------
# Reference grammar


class GrammarError(FlakeEditError):
    """Raised when a source locator cannot be parsed."""

    def __init__(self, text: str, reason: str) -> None:
        self.text = text
        self.reason = reason
        super().__init__(f"Invalid locator '{text}': {reason}")


class InvalidScheme(GrammarError):
    """The prefix before the first ':' is not a known locator kind."""


class InvalidAuthority(GrammarError):
    """The scheme-specific body cannot be split into its required parts."""


class MalformedQuery(GrammarError):
    """A query parameter could not be decoded."""


# ----------------------------------------------------------------------
# Document model


class DocumentError(FlakeEditError):
    """Raised for problems with the manifest or the inputs declared in it."""


class MalformedManifest(DocumentError):
    """The input section cannot be located or has unparseable syntax."""

    def __init__(self, reason: str, *, offset: Optional[int] = None) -> None:
        self.reason = reason
        self.offset = offset
        where = f" at offset {offset}" if offset is not None else ""
        super().__init__(f"Malformed manifest{where}: {reason}")


class DuplicateInput(DocumentError):
    def __init__(self, input_id: str) -> None:
        self.input_id = input_id
        super().__init__(
            f"Input '{input_id}' already exists in the flake; "
            "pass --overwrite to replace it."
        )


class InputNotFound(DocumentError):
    def __init__(
        self, input_id: str, alternatives: Sequence[str] = (), *, detail: str = ""
    ) -> None:
        self.input_id = input_id
        self.alternatives = list(alternatives)
        message = f"Input '{input_id}' not found"
        if detail:
            message += f" {detail}"
        if self.alternatives:
            message += f". Available inputs: {', '.join(self.alternatives)}"
        super().__init__(message)


class AmbiguousId(DocumentError):
    def __init__(self, locator: str) -> None:
        self.locator = locator
        super().__init__(
            f"Cannot infer an input id from '{locator}'; pass one explicitly."
        )


# ----------------------------------------------------------------------
# Change engine


class ChangeError(FlakeEditError):
    """Raised when a change request fails its preconditions."""


class NothingToUnpin(ChangeError):
    def __init__(self, input_id: str) -> None:
        self.input_id = input_id
        super().__init__(f"Input '{input_id}' has no ref or rev to unpin.")


class UnknownParent(ChangeError):
    def __init__(self, parent_path: str, alternatives: Sequence[str] = ()) -> None:
        self.parent_path = parent_path
        self.alternatives = list(alternatives)
        message = f"Cannot add a follows to '{parent_path}': parent input is not declared"
        if self.alternatives:
            message += f". Available inputs: {', '.join(self.alternatives)}"
        super().__init__(message)


# ----------------------------------------------------------------------
# Toggle


class ToggleError(FlakeEditError):
    """Raised when a comment toggle cannot be resolved to one alternative."""


class NoToggleableInputs(ToggleError):
    def __init__(self) -> None:
        super().__init__(
            "No toggleable inputs found: an input needs an active line and at "
            "least one commented-out alternative."
        )


class MultipleToggleableInputs(ToggleError):
    def __init__(self, alternatives: Sequence[str]) -> None:
        self.alternatives = list(alternatives)
        super().__init__(
            "Multiple toggleable inputs found, specify one of: "
            + ", ".join(self.alternatives)
        )


class NoToggleableVersions(ToggleError):
    def __init__(self, input_id: str) -> None:
        self.input_id = input_id
        super().__init__(
            f"Input '{input_id}' has no commented-out alternative to toggle to."
        )


class SelectionRequired(ToggleError):
    def __init__(self, subject: str, alternatives: Sequence[str]) -> None:
        self.subject = subject
        self.alternatives = list(alternatives)
        super().__init__(
            f"'{subject}' has several candidates and no interactive prompt is "
            "available; choose one of: " + ", ".join(self.alternatives)
        )


# ----------------------------------------------------------------------
# Reconciliation


class ReconciliationError(FlakeEditError):
    """Raised for inconsistent follows or lock graph data."""


class CycleDetected(ReconciliationError):
    def __init__(self, path: Sequence[str]) -> None:
        self.path = list(path)
        super().__init__("Follows cycle detected: " + " -> ".join(self.path))


class DanglingReference(ReconciliationError):
    def __init__(self, node_id: str, child: str, target: str) -> None:
        self.node_id = node_id
        self.child = child
        self.target = target
        super().__init__(
            f"Lock node '{node_id}' input '{child}' points to missing node '{target}'"
        )


class MalformedLock(ReconciliationError):
    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(f"Malformed lock file: {reason}")


# ----------------------------------------------------------------------
# Environment


class EnvironmentFailure(FlakeEditError):
    """Raised when an external collaborator (network, process) fails."""


class NetworkError(EnvironmentFailure):
    def __init__(
        self,
        message: str,
        *,
        transient: bool,
        remote: str,
        input_id: Optional[str] = None,
        status: Optional[int] = None,
    ) -> None:
        self.transient = transient
        self.remote = remote
        self.input_id = input_id
        self.status = status
        kind = "transient" if transient else "permanent"
        subject = f" for input '{input_id}'" if input_id else ""
        super().__init__(f"Network error ({kind}){subject} querying {remote}: {message}")


class LockRegenerationFailed(EnvironmentFailure):
    def __init__(self, command: Sequence[str], returncode: int, stderr: str) -> None:
        self.command = list(command)
        self.returncode = returncode
        self.stderr = stderr
        detail = stderr.strip() or "no output"
        super().__init__(
            f"'{' '.join(self.command)}' failed with exit code {returncode}: {detail}"
        )


__all__ = [
    "AmbiguousId",
    "ChangeError",
    "CycleDetected",
    "DanglingReference",
    "DocumentError",
    "DuplicateInput",
    "EnvironmentFailure",
    "FlakeEditError",
    "GrammarError",
    "InputNotFound",
    "InvalidAuthority",
    "InvalidScheme",
    "LockRegenerationFailed",
    "MalformedLock",
    "MalformedManifest",
    "MalformedQuery",
    "MultipleToggleableInputs",
    "NetworkError",
    "NoToggleableInputs",
    "NoToggleableVersions",
    "NothingToUnpin",
    "ReconciliationError",
    "SelectionRequired",
    "ToggleError",
    "UnknownParent",
]
