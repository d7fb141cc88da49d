"""Run change requests against flake files on disk."""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, replace
import os
from pathlib import Path
import tempfile
import threading
from typing import List, Optional, Sequence

from .changes.engine import ChangeEngine, ChangeResult
from .changes.requests import AutoFollow, ChangeRequest, Pin, Unpin
from .config import EditContext
from .diff import render_diff
from .document.model import Document, InputNode
from .errors import FlakeEditError, LockRegenerationFailed, MalformedManifest
from .forge.client import ForgeClient
from .forge.versions import VersionResolver
from .lock.graph import LockGraph
from .logging import get_logger
from .prompt import Chooser, NonInteractiveChooser, TerminalChooser
from .runner import LockRegenerator
from .stores import PinStore, UriCache

MANIFEST_NAME = "flake.nix"
LOCK_NAME = "flake.lock"


@dataclass
class EditOutcome:
    """Result of one request applied to one manifest."""

    path: Path
    diff: str
    dry_run: bool
    changed: bool
    message: str
    lock_regenerated: bool = False


@dataclass
class UnitResult:
    """Per-file result of a batch run."""

    path: Path
    ok: bool
    diff: str = ""
    error: Optional[str] = None
    message: str = ""


class Orchestrator:
    """Loads a manifest and its lock, applies a request, then writes or diffs."""

    def __init__(
        self,
        context: EditContext,
        *,
        chooser: Chooser | None = None,
        forge_client: ForgeClient | None = None,
        lock_regenerator: LockRegenerator | None = None,
        max_workers: int = 4,
    ) -> None:
        self.context = context
        if chooser is None:
            chooser = TerminalChooser() if context.interactive else NonInteractiveChooser()
        self.chooser = chooser
        self.forge_client = forge_client or ForgeClient.from_settings(context.forge)
        self.lock_regenerator = lock_regenerator or LockRegenerator(context.lock.command)
        self.max_workers = max(1, max_workers)
        self.logger = get_logger("orchestrator")
        self._store_lock = threading.Lock()

    def run(
        self,
        flake_path: Path,
        request: ChangeRequest,
        *,
        lock_path: Path | None = None,
    ) -> EditOutcome:
        manifest = resolve_manifest(flake_path)
        original = read_manifest(manifest)
        document = Document.parse(original)
        lock = self._load_lock(lock_path or manifest.parent / LOCK_NAME)

        pins = PinStore(self._cache_file("pins.json"))
        if isinstance(request, Unpin) and request.restore is None:
            stored = pins.get(manifest, request.id)
            if stored:
                self.logger.debug("Restoring %s to %s from the pin history", request.id, stored)
                request = replace(request, restore=stored)

        engine = ChangeEngine(
            self.context,
            self.chooser,
            lock=lock,
            resolver=VersionResolver(self.forge_client, self.context.channels),
        )
        result = engine.apply(document, request)
        updated = result.document.text
        dry_run = self.context.output == "diff"
        diff = render_diff(original, updated, manifest.name)
        outcome = EditOutcome(
            path=manifest,
            diff=diff,
            dry_run=dry_run,
            changed=result.changed,
            message=result.message,
        )
        if dry_run:
            self.logger.info("Dry run; %s not written", manifest)
            return outcome
        if not result.changed:
            self.logger.info("%s unchanged", manifest)
            return outcome

        write_atomic(manifest, updated)
        self.logger.info("Updated %s", manifest)
        if self.context.lock.regenerate:
            try:
                self.lock_regenerator.regenerate(manifest.parent)
            except LockRegenerationFailed:
                self.logger.warning("Lock regeneration failed; restoring %s", manifest)
                write_atomic(manifest, original)
                raise
            outcome.lock_regenerated = True

        self._remember(manifest, request, result)
        return outcome

    def list_inputs(self, flake_path: Path) -> List[InputNode]:
        manifest = resolve_manifest(flake_path)
        document = Document.parse(read_manifest(manifest))
        return document.all()

    def completions(self) -> List[str]:
        return UriCache(self._cache_file("uri-cache.json")).list_uris()

    def reconcile_many(self, paths: Sequence[Path]) -> List[UnitResult]:
        """Auto-follow several manifests independently; one failure does not stop the rest."""
        if not paths:
            return []
        workers = min(self.max_workers, len(paths))
        with ThreadPoolExecutor(max_workers=workers) as pool:
            return list(pool.map(self._reconcile_unit, paths))

    # ------------------------------------------------------------------
    # Internals

    def _reconcile_unit(self, path: Path) -> UnitResult:
        try:
            outcome = self.run(path, AutoFollow())
        except (FlakeEditError, OSError) as exc:
            self.logger.debug("Reconcile failed for %s: %s", path, exc)
            return UnitResult(path=path, ok=False, error=str(exc))
        return UnitResult(path=outcome.path, ok=True, diff=outcome.diff, message=outcome.message)

    def _load_lock(self, path: Path) -> Optional[LockGraph]:
        if not path.is_file():
            self.logger.debug("No lock file at %s", path)
            return None
        return LockGraph.from_path(path)

    def _cache_file(self, name: str) -> Optional[Path]:
        if self.context.cache_dir is None:
            return None
        return self.context.cache_dir / name

    def _remember(self, manifest: Path, request: ChangeRequest, result: ChangeResult) -> None:
        with self._store_lock:
            pins = PinStore(self._cache_file("pins.json"))
            if isinstance(request, Pin) and result.previous_ref and result.input_id:
                pins.record(manifest, result.input_id, result.previous_ref)
            elif isinstance(request, Unpin):
                pins.forget(manifest, request.id)
            cache = UriCache(self._cache_file("uri-cache.json"))
            touched = result.document.find(result.input_id) if result.input_id else None
            if touched is not None and touched.url is not None:
                cache.add_entry(touched.id, touched.url)
            try:
                pins.persist()
                cache.persist()
            except OSError as exc:
                self.logger.warning("Unable to update caches in %s: %s", self.context.cache_dir, exc)


def resolve_manifest(path: Path) -> Path:
    """Accept either a flake directory or the manifest itself."""
    candidate = path.expanduser()
    if candidate.is_dir():
        candidate = candidate / MANIFEST_NAME
    if not candidate.is_file():
        raise FileNotFoundError(f"No flake manifest at {candidate}")
    return candidate


def read_manifest(path: Path) -> str:
    try:
        return path.read_text(encoding="utf-8")
    except UnicodeDecodeError as exc:
        raise MalformedManifest(f"{path} is not valid UTF-8 ({exc.reason})", offset=exc.start) from exc


def write_atomic(path: Path, text: str) -> None:
    """Replace `path` with `text` through a temporary file in the same directory."""
    mode = path.stat().st_mode if path.exists() else None
    handle = tempfile.NamedTemporaryFile(
        "w", encoding="utf-8", dir=str(path.parent), prefix=f".{path.name}.", delete=False
    )
    try:
        with handle:
            handle.write(text)
        if mode is not None:
            os.chmod(handle.name, mode)
        os.replace(handle.name, path)
    except OSError:
        Path(handle.name).unlink(missing_ok=True)
        raise


__all__ = [
    "EditOutcome",
    "Orchestrator",
    "UnitResult",
    "read_manifest",
    "resolve_manifest",
    "write_atomic",
]
