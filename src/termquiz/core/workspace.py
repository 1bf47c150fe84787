"""State home layout for termquiz.

Everything termquiz keeps between runs (saved sessions, logs, config) lives
under one directory: ``$TERMQUIZ_STATE`` when set, otherwise
``$XDG_STATE_HOME/termquiz`` or ``~/.local/state/termquiz``.
"""

from __future__ import annotations

import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from types import MappingProxyType
from typing import Mapping, MutableMapping

STATE_ENV = "TERMQUIZ_STATE"
XDG_STATE_ENV = "XDG_STATE_HOME"

_SUBDIRS = {
    "sessions": "sessions",
    "logs": "logs",
}


class WorkspaceError(RuntimeError):
    """Raised when the state home cannot be prepared."""


@dataclass(frozen=True)
class WorkspaceLayout:
    """Resolved state home and its named subdirectories."""

    home: Path
    directories: Mapping[str, Path]

    def path_for(self, key: str) -> Path:
        try:
            return self.directories[key]
        except KeyError as exc:
            raise KeyError(f"Unknown state directory '{key}'.") from exc


def resolve_state_home(env: Mapping[str, str] | None = None) -> Path:
    """Return the state home without touching the filesystem."""

    env_map = os.environ if env is None else env
    custom = (env_map.get(STATE_ENV) or "").strip()
    if custom:
        return Path(custom).expanduser().absolute()
    xdg = (env_map.get(XDG_STATE_ENV) or "").strip()
    if xdg:
        return Path(xdg).expanduser().absolute() / "termquiz"
    return Path.home() / ".local" / "state" / "termquiz"


def ensure_workspace(
    *,
    env: Mapping[str, str] | None = None,
    path: Path | None = None,
    create: bool = True,
) -> WorkspaceLayout:
    """Ensure the state home exists and return its layout.

    When the default location is not writable a directory under the system
    temp dir is used instead. An explicit ``path`` or ``$TERMQUIZ_STATE``
    never falls back.
    """

    env_map = os.environ if env is None else env
    explicit = path is not None or bool((env_map.get(STATE_ENV) or "").strip())
    base = path.expanduser().absolute() if path else resolve_state_home(env_map)

    candidates = [base]
    if create and not explicit:
        candidates.append(Path(tempfile.gettempdir()) / "termquiz-state")

    last_error: Exception | None = None
    for candidate in candidates:
        try:
            return _materialize(candidate, create=create)
        except PermissionError as exc:
            last_error = exc
    raise WorkspaceError(f"Unable to prepare state home at {base}") from last_error


def _materialize(base: Path, *, create: bool) -> WorkspaceLayout:
    if base.exists() and not base.is_dir():
        raise WorkspaceError(f"State home exists and is not a directory: {base}")
    directories: MutableMapping[str, Path] = {}
    if create:
        _ensure_dir(base)
    for key, relative in _SUBDIRS.items():
        candidate = base / relative
        if create:
            _ensure_dir(candidate)
        directories[key] = candidate
    return WorkspaceLayout(home=base, directories=MappingProxyType(dict(directories)))


def _ensure_dir(path: Path) -> None:
    try:
        path.mkdir(parents=True, exist_ok=True)
    except FileExistsError as exc:
        raise WorkspaceError(
            f"Expected directory but found a non-directory entry: {path}"
        ) from exc
    try:
        path.chmod(0o700)
    except (PermissionError, NotImplementedError):
        return
