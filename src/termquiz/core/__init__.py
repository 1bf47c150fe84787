"""Shared infrastructure helpers for termquiz."""

from __future__ import annotations

from .logging import JsonLogFormatter, configure_logger
from .workspace import (
    STATE_ENV,
    WorkspaceError,
    WorkspaceLayout,
    ensure_workspace,
    resolve_state_home,
)

__all__ = [
    "configure_logger",
    "JsonLogFormatter",
    "ensure_workspace",
    "resolve_state_home",
    "WorkspaceLayout",
    "WorkspaceError",
    "STATE_ENV",
]
