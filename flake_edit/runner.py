"""Lock file regeneration through an external command."""

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import Callable, Iterable, Sequence

from .errors import LockRegenerationFailed
from .logging import get_logger


class LockRegenerator:
    """Runs the lock command (default `nix flake lock`) next to a manifest."""

    def __init__(
        self,
        command: Sequence[str] = ("nix", "flake", "lock"),
        runner: Callable[..., subprocess.CompletedProcess] | None = None,
    ) -> None:
        self.command = tuple(command)
        self._runner = runner or self._default_runner
        self.logger = get_logger("runner")

    def regenerate(self, flake_dir: Path, *, extra_args: Sequence[str] = ()) -> str:
        """Run the command in `flake_dir`; return its stdout or raise LockRegenerationFailed."""
        args = [*self.command, *extra_args]
        self.logger.debug("Running %s in %s", " ".join(args), flake_dir)
        try:
            completed = self._runner(args, cwd=flake_dir)
        except FileNotFoundError as exc:
            raise LockRegenerationFailed(args, 127, str(exc)) from exc
        if completed.returncode != 0:
            raise LockRegenerationFailed(args, completed.returncode, completed.stderr or "")
        return completed.stdout or ""

    @staticmethod
    def _default_runner(args: Iterable[str], *, cwd: Path) -> subprocess.CompletedProcess:
        return subprocess.run(
            list(args),
            cwd=str(cwd),
            check=False,
            text=True,
            capture_output=True,
        )


__all__ = ["LockRegenerator"]
