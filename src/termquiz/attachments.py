"""File attachment checks plus the editor and file-picker collaborators."""

from __future__ import annotations

import logging
import os
import shlex
import shutil
import subprocess
import tempfile
from pathlib import Path
from typing import Callable, Mapping, Sequence

from .errors import AttachmentError, AttachmentReason
from .model import FileConstraints

__all__ = [
    "DEFAULT_EDITOR",
    "validate_attachment",
    "Editor",
    "FilePicker",
]

DEFAULT_EDITOR = "vi"

logger = logging.getLogger("termquiz.attachments")


def validate_attachment(
    path: Path,
    constraints: FileConstraints,
    *,
    existing: Sequence[str] = (),
) -> int:
    """Check ``path`` against ``constraints`` and return its size in bytes.

    ``existing`` lists the attachment names already on the question; a file
    with one of those names replaces the old copy and does not count twice.
    """

    if not path.exists():
        raise AttachmentError(AttachmentReason.MISSING, f"File not found: {path}")
    if not path.is_file():
        raise AttachmentError(AttachmentReason.MISSING, f"Not a file: {path}")
    if not os.access(path, os.R_OK):
        raise AttachmentError(AttachmentReason.MISSING, f"File is not readable: {path}")

    if not constraints.accepts_extension(path.name):
        suffix = path.suffix.lower() or "(none)"
        raise AttachmentError(
            AttachmentReason.WRONG_TYPE,
            f"File type '{suffix}' not allowed. Accepted: {', '.join(constraints.accept)}",
        )

    size = path.stat().st_size
    if constraints.max_size is not None and size > constraints.max_size:
        raise AttachmentError(
            AttachmentReason.TOO_LARGE,
            f"{path.name} is too large: {size} bytes (max {constraints.max_size} bytes)",
        )

    if constraints.max_files is not None:
        count = len(set(existing) | {path.name})
        if count > constraints.max_files:
            raise AttachmentError(
                AttachmentReason.TOO_MANY,
                f"At most {constraints.max_files} file(s) may be attached",
            )
    return size


class Editor:
    """Open text in ``$EDITOR`` and return the saved result."""

    def __init__(
        self,
        command: str | None = None,
        *,
        env: Mapping[str, str] | None = None,
        run: Callable[..., subprocess.CompletedProcess] = subprocess.run,
    ) -> None:
        env_map = os.environ if env is None else env
        self._command = command or env_map.get("EDITOR") or DEFAULT_EDITOR
        self._run = run

    @property
    def command(self) -> str:
        return self._command

    def edit(self, text: str) -> str | None:
        """Return the edited text, or ``None`` when the editor failed."""

        handle = tempfile.NamedTemporaryFile(
            "w", suffix=".md", prefix="termquiz-", delete=False, encoding="utf-8"
        )
        path = Path(handle.name)
        try:
            with handle:
                handle.write(text)
            argv = [*shlex.split(self._command), str(path)]
            try:
                proc = self._run(argv, check=False)
            except OSError as exc:
                logger.warning(
                    "Editor could not be started",
                    extra={"editor": self._command, "error": str(exc)},
                )
                return None
            if proc.returncode != 0:
                logger.warning(
                    "Editor exited with an error",
                    extra={"editor": self._command, "returncode": proc.returncode},
                )
                return None
            return path.read_text(encoding="utf-8")
        finally:
            path.unlink(missing_ok=True)


class FilePicker:
    """Ask for attachment paths with zenity, or a typed path without it."""

    def __init__(
        self,
        *,
        prompt: Callable[[str], str] = input,
        which: Callable[[str], str | None] = shutil.which,
        run: Callable[..., subprocess.CompletedProcess] = subprocess.run,
    ) -> None:
        self._prompt = prompt
        self._which = which
        self._run = run

    def pick(self) -> list[Path] | None:
        """Return the chosen paths, or ``None`` when the user cancelled."""

        zenity = self._which("zenity")
        if zenity:
            return self._pick_with_zenity(zenity)
        try:
            raw = self._prompt("Path of the file to attach (empty to cancel): ")
        except EOFError:
            return None
        value = raw.strip()
        if not value:
            return None
        return [Path(value).expanduser()]

    def _pick_with_zenity(self, zenity: str) -> list[Path] | None:
        proc = self._run(
            [zenity, "--file-selection", "--multiple", "--separator=\n"],
            capture_output=True,
            text=True,
            check=False,
        )
        if proc.returncode != 0:
            return None
        paths = [Path(line) for line in proc.stdout.splitlines() if line.strip()]
        return paths or None
