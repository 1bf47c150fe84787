"""User configuration for termquiz.

Settings come from an optional ``config.toml`` in the state home (or the
file named by ``$TERMQUIZ_CONFIG`` / ``--config``), merged onto built-in
defaults. Unknown keys are rejected so typos do not go unnoticed::

    [paths]
    clone_root = "~/exams"

    [editor]
    command = "nvim"

    [logging]
    level = "INFO"

    [push]
    initial_delay = 2
    max_delay = 30
    budget = 600
"""

from __future__ import annotations

import copy
import os
import tomllib
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Mapping, MutableMapping, Optional

from .submission import RetryPolicy

__all__ = [
    "CONFIG_PATH_ENV",
    "CONFIG_FILENAME",
    "ConfigError",
    "TermquizConfig",
    "default_tree",
    "load_config",
    "merge_defaults",
    "resolve_config_path",
]

CONFIG_PATH_ENV = "TERMQUIZ_CONFIG"
CONFIG_FILENAME = "config.toml"

_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


class ConfigError(RuntimeError):
    """Raised when configuration parsing or validation fails."""


@dataclass(frozen=True)
class TermquizConfig:
    clone_root: Optional[Path]
    editor: Optional[str]
    log_level: str
    retry: RetryPolicy
    source: Optional[Path] = None


_DEFAULTS: Dict[str, Any] = {
    "paths": {
        "clone_root": None,
    },
    "editor": {
        "command": None,
    },
    "logging": {
        "level": "INFO",
    },
    "push": {
        "initial_delay": 2.0,
        "max_delay": 30.0,
        "budget": 600.0,
    },
}


def default_tree() -> Dict[str, Any]:
    return copy.deepcopy(_DEFAULTS)


def merge_defaults(
    base: MutableMapping[str, Any],
    override: Mapping[str, Any],
    *,
    path: str = "",
) -> None:
    """Merge ``override`` into ``base`` in place, rejecting unknown keys."""

    for key, value in override.items():
        dotted = f"{path}{key}"
        if key not in base:
            raise ConfigError(f"Unknown configuration key '{dotted}'.")
        if isinstance(base[key], MutableMapping):
            if not isinstance(value, Mapping):
                raise ConfigError(
                    f"Expected table for '{dotted}', found {type(value).__name__}."
                )
            merge_defaults(base[key], value, path=f"{dotted}.")
        else:
            base[key] = value


def resolve_config_path(
    state_home: Path,
    *,
    explicit_path: Optional[Path] = None,
    env: Mapping[str, str] | None = None,
) -> tuple[Path, bool]:
    """Return the config path and whether the user named it explicitly."""

    env_map = os.environ if env is None else env
    if explicit_path is not None:
        return explicit_path.expanduser().resolve(), True
    override = (env_map.get(CONFIG_PATH_ENV) or "").strip()
    if override:
        return Path(override).expanduser().resolve(), True
    return state_home / CONFIG_FILENAME, False


def load_config(
    state_home: Path,
    *,
    explicit_path: Optional[Path] = None,
    env: Mapping[str, str] | None = None,
) -> TermquizConfig:
    """Load the config file (if any) on top of the defaults."""

    path, explicit = resolve_config_path(
        state_home, explicit_path=explicit_path, env=env
    )
    tree = default_tree()
    source: Optional[Path] = None
    if path.exists() or explicit:
        merge_defaults(tree, _load_toml(path))
        source = path
    return _build_config(tree, source)


def _load_toml(path: Path) -> Mapping[str, Any]:
    try:
        with path.open("rb") as handle:
            return tomllib.load(handle)
    except FileNotFoundError as exc:
        raise ConfigError(f"Config file not found: {path}") from exc
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Failed to parse {path}: {exc}") from exc


def _build_config(tree: Mapping[str, Any], source: Optional[Path]) -> TermquizConfig:
    clone_root = tree["paths"]["clone_root"]
    if clone_root is not None and (
        not isinstance(clone_root, str) or not clone_root.strip()
    ):
        raise ConfigError("'paths.clone_root' must be a non-empty string when set.")

    editor = tree["editor"]["command"]
    if editor is not None and (not isinstance(editor, str) or not editor.strip()):
        raise ConfigError("'editor.command' must be a non-empty string when set.")

    level = tree["logging"]["level"]
    if not isinstance(level, str) or level.strip().upper() not in _LOG_LEVELS:
        raise ConfigError(
            "logging.level must be one of DEBUG, INFO, WARNING, ERROR, CRITICAL."
        )

    push = tree["push"]
    initial_delay = _require_positive_number(
        push["initial_delay"], field="push.initial_delay"
    )
    max_delay = _require_positive_number(push["max_delay"], field="push.max_delay")
    budget = _require_positive_number(push["budget"], field="push.budget")
    if max_delay < initial_delay:
        raise ConfigError("push.max_delay must not be smaller than push.initial_delay.")

    return TermquizConfig(
        clone_root=Path(clone_root).expanduser() if clone_root else None,
        editor=editor.strip() if editor else None,
        log_level=level.strip().upper(),
        retry=RetryPolicy(
            initial_delay=initial_delay, max_delay=max_delay, budget=budget
        ),
        source=source,
    )


def _require_positive_number(value: Any, *, field: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        raise ConfigError(f"'{field}' must be a positive number.")
    return float(value)
