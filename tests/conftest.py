from __future__ import annotations

import logging
import sys
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Callable, Iterator

import pytest

TESTS_DIR = Path(__file__).resolve().parent
if str(TESTS_DIR) not in sys.path:
    sys.path.insert(0, str(TESTS_DIR))

# Make src/ importable when the package is not installed
ROOT = TESTS_DIR.parent
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from fixtures import (  # noqa: E402
    OPENS_AT,
    SAMPLE_QUIZ,
    FakeClock,
    FakeGit,
    FakeTimer,
    InlineWorker,
    WorkspaceBuilder,
)
from termquiz.controller import SessionController  # noqa: E402
from termquiz.git import GitBackend  # noqa: E402
from termquiz.model import Quiz  # noqa: E402
from termquiz.parser import parse_quiz  # noqa: E402
from termquiz.store import SessionStore  # noqa: E402
from termquiz.submission import SubmissionPipeline  # noqa: E402


@dataclass
class Harness:
    controller: SessionController
    store: SessionStore
    git: FakeGit
    clock: FakeClock
    repo: Path
    timers: list[FakeTimer] = field(default_factory=list)


@pytest.fixture(autouse=True)
def _reset_termquiz_logger() -> Iterator[None]:
    yield
    logger = logging.getLogger("termquiz")
    for handler in list(logger.handlers):
        handler.close()
        logger.removeHandler(handler)
    logger.propagate = True
    logger.setLevel(logging.NOTSET)


@pytest.fixture
def workspace(tmp_path: Path) -> WorkspaceBuilder:
    """Provide a helper bound to pytest's per-test tmp directory."""

    return WorkspaceBuilder(tmp_path)


@pytest.fixture
def sample_quiz_bytes() -> bytes:
    return SAMPLE_QUIZ.read_bytes()


@pytest.fixture
def quiz(sample_quiz_bytes: bytes) -> Quiz:
    return parse_quiz(sample_quiz_bytes, "sample_quiz.md")


@pytest.fixture
def clock() -> FakeClock:
    """A clock five minutes into the sample quiz window."""

    return FakeClock(OPENS_AT + timedelta(minutes=5))


@pytest.fixture
def make_controller(
    workspace: WorkspaceBuilder,
    tmp_path: Path,
    quiz: Quiz,
    sample_quiz_bytes: bytes,
    clock: FakeClock,
) -> Callable[..., Harness]:
    """Build a controller wired to fakes; workers only run on demand."""

    def factory(*, git: FakeGit | None = None, git_dir: bool = True) -> Harness:
        repo = tmp_path / "repo"
        if not (repo / quiz.quiz_file).exists():
            repo = workspace.quiz_repo(
                sample_quiz_bytes, quiz_file=quiz.quiz_file, git=git_dir
            )
        fake_git = git or FakeGit(clock=clock)
        store = SessionStore(tmp_path / "state" / "sessions", repo / quiz.quiz_file)
        pipeline = SubmissionPipeline(
            GitBackend(repo, runner=fake_git),
            clock=clock.monotonic,
            sleep=clock.sleep,
        )
        timers: list[FakeTimer] = []

        def timer_factory(end, events):  # noqa: ANN001
            timer = FakeTimer(end, events)
            timers.append(timer)
            return timer

        controller = SessionController(
            quiz,
            store,
            pipeline,
            clock=clock,
            tool_version="9.9.9",
            timer_factory=timer_factory,
            worker_factory=lambda p, b, e, t: InlineWorker(p, b, e, token=t),
        )
        return Harness(controller, store, fake_git, clock, repo, timers)

    return factory
