"""Shared testing fixtures and fakes for the termquiz test suite."""

from .fakes import (  # noqa: F401
    FATAL_FAILURE,
    NETWORK_FAILURE,
    REJECTED,
    FakeClock,
    FakeGit,
    FakeTimer,
    InlineWorker,
)
from .quiz import CLOSES_AT, OPENS_AT, SAMPLE_QUIZ  # noqa: F401
from .workspace import WorkspaceBuilder, build_tree  # noqa: F401

__all__ = [
    "CLOSES_AT",
    "OPENS_AT",
    "SAMPLE_QUIZ",
    "FATAL_FAILURE",
    "NETWORK_FAILURE",
    "REJECTED",
    "FakeClock",
    "FakeGit",
    "FakeTimer",
    "InlineWorker",
    "WorkspaceBuilder",
    "build_tree",
]
