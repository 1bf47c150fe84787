"""termquiz: take a timed quiz in the terminal and submit it with git."""

from __future__ import annotations

from importlib import metadata

try:
    __version__ = metadata.version("termquiz")
except metadata.PackageNotFoundError:  # pragma: no cover - source checkout
    __version__ = "unknown"

__all__ = ["__version__"]
