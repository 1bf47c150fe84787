"""Command-line entry point for termquiz."""

from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path
from typing import Mapping, Optional, Sequence

from rich import box
from rich.console import Console
from rich.prompt import Confirm
from rich.table import Table

from . import __version__
from .attachments import Editor
from .config import ConfigError, TermquizConfig, load_config
from .controller import SessionController
from .core.logging import bind_session, configure_logger
from .core.workspace import WorkspaceError, ensure_workspace
from .errors import (
    AlreadySubmittedError,
    ParseError,
    PersistenceCorruptError,
    SourceResolutionError,
    TimeWindowError,
    TimeWindowReason,
)
from .git import GitBackend
from .model import Quiz
from .parser import parse_quiz
from .session import Phase, QuestionStatus
from .source import ResolvedSource, resolve_source
from .store import LoadStatus, SessionStore
from .submission import SubmissionPipeline
from .timer import format_wait

__all__ = ["build_arg_parser", "main"]

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_USAGE = 2
EXIT_SAVED_LOCALLY = 3

_STATUS_STYLES = {
    QuestionStatus.UNREAD: "dim",
    QuestionStatus.EMPTY: "",
    QuestionStatus.PARTIAL: "yellow",
    QuestionStatus.DONE: "green",
    QuestionStatus.FLAGGED: "red",
}


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="termquiz",
        description="Take a timed quiz in the terminal and submit it with git.",
    )
    parser.add_argument(
        "source",
        nargs="?",
        default=".",
        help="Quiz .md file, directory holding one, or git URL (default: .).",
    )
    parser.add_argument(
        "--clear",
        action="store_true",
        help="Delete the saved session for this quiz and exit.",
    )
    parser.add_argument(
        "--status",
        action="store_true",
        help="Show the saved progress for this quiz and exit.",
    )
    parser.add_argument(
        "--export",
        metavar="PATH",
        help="Write the saved answers as YAML to PATH and exit.",
    )
    parser.add_argument(
        "--clone-to",
        metavar="DIR",
        help="Directory to clone into when SOURCE is a git URL.",
    )
    parser.add_argument(
        "--config",
        metavar="PATH",
        help="Config TOML to use instead of <state home>/config.toml.",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        type=str.upper,
        help="Log level for the log file (default from config: INFO).",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Also print log records to stderr.",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )
    return parser


def main(
    argv: Optional[Sequence[str]] = None,
    *,
    env: Mapping[str, str] | None = None,
    console: Console | None = None,
) -> int:
    parser = build_arg_parser()
    args = parser.parse_args(argv)
    env_map = os.environ if env is None else env
    console = console or Console()

    try:
        layout = ensure_workspace(env=env_map)
        config = load_config(
            layout.home, explicit_path=_to_path(args.config), env=env_map
        )
    except (WorkspaceError, ConfigError) as exc:
        _print_error(str(exc))
        return EXIT_USAGE

    logger, log_path = configure_logger(
        "termquiz",
        log_dir=layout.path_for("logs"),
        level=args.log_level or config.log_level,
        verbose=args.verbose,
    )
    logger.debug("termquiz invoked", extra={"argv": list(argv or sys.argv[1:])})

    try:
        resolved = resolve_source(
            args.source,
            clone_to=_to_path(args.clone_to),
            clone_root=config.clone_root,
        )
    except SourceResolutionError as exc:
        _print_error(str(exc))
        return EXIT_FAILURE

    quiz = _load_quiz(resolved)
    if quiz is None:
        return EXIT_FAILURE

    store = SessionStore(layout.path_for("sessions"), resolved.quiz_path)
    bind_session(logger, quiz_file=resolved.quiz_file, session_key=store.directory.name)
    if args.clear:
        cleared = store.clear()
        console.print("Saved session cleared." if cleared else "No saved session.")
        return EXIT_OK
    if args.status:
        return _handle_status(console, quiz, store)
    if args.export:
        return _handle_export(console, quiz, store, Path(args.export))

    try:
        return _run_session(console, quiz, store, resolved, config, log_path)
    except AlreadySubmittedError as exc:
        console.print(str(exc), markup=False)
        return EXIT_OK
    except TimeWindowError as exc:
        logger.info("Quiz not available", extra={"reason": exc.reason})
        _print_error(str(exc))
        return EXIT_FAILURE


def _load_quiz(resolved: ResolvedSource) -> Quiz | None:
    try:
        data = resolved.quiz_path.read_bytes()
    except OSError as exc:
        _print_error(f"Cannot read {resolved.quiz_path}: {exc}")
        return None
    try:
        return parse_quiz(data, resolved.quiz_file)
    except ParseError as exc:
        _print_error(f"{resolved.quiz_path}:{exc.line}: {exc.message}")
        return None


def _run_session(
    console: Console,
    quiz: Quiz,
    store: SessionStore,
    resolved: ResolvedSource,
    config: TermquizConfig,
    log_path: Path,
) -> int:
    pipeline = SubmissionPipeline(GitBackend(resolved.repo_dir), policy=config.retry)
    controller = SessionController(quiz, store, pipeline, tool_version=__version__)
    try:
        phase = controller.start()
    except PersistenceCorruptError as exc:
        if not _confirm_clear(console, store, str(exc)):
            return EXIT_FAILURE
        phase = controller.start()

    if phase in (Phase.CLOSED, Phase.SUBMITTED):
        _raise_for_phase(controller)
    if phase is Phase.WAITING:
        # The view opens the quiz in place once the window starts; settle
        # unreadable state now while a prompt is still possible.
        saved = store.load(quiz)
        if saved.status is LoadStatus.CORRUPT and not _confirm_clear(
            console, store, f"Saved session is corrupt: {saved.error}"
        ):
            return EXIT_FAILURE

    # Imported late so --status and friends do not pay for loading Textual.
    from .view.app import QuizApp

    QuizApp(controller, editor=Editor(config.editor)).run()
    return _report_outcome(console, controller, log_path)


def _confirm_clear(console: Console, store: SessionStore, problem: str) -> bool:
    console.print(problem, style="red", markup=False)
    if not Confirm.ask(
        "Clear the saved session and start over?", default=False, console=console
    ):
        console.print("Aborted. The saved session was left untouched.")
        return False
    store.clear()
    return True


def _raise_for_phase(controller: SessionController) -> None:
    """Raise the error explaining why the quiz cannot be taken right now."""

    quiz = controller.quiz
    if controller.phase is Phase.WAITING:
        wait = format_wait(controller.seconds_until_start())
        raise TimeWindowError(
            TimeWindowReason.NOT_YET_OPEN,
            f"{quiz.title} is not open yet. It opens at {quiz.start.isoformat()} "
            f"(in {wait}).",
        )
    if controller.phase is Phase.CLOSED:
        raise TimeWindowError(
            TimeWindowReason.CLOSED, f"{quiz.title} closed at {quiz.end.isoformat()}."
        )
    if controller.phase is Phase.SUBMITTED:
        raise AlreadySubmittedError(
            f"A response for {quiz.quiz_file} has already been submitted."
        )


def _report_outcome(
    console: Console, controller: SessionController, log_path: Path
) -> int:
    phase = controller.phase
    if phase in (Phase.WAITING, Phase.CLOSED, Phase.SUBMITTED):
        _raise_for_phase(controller)
    if phase is Phase.DONE:
        console.print("[green]Your answers were submitted.[/green]")
        return EXIT_OK
    if phase is Phase.SAVE_LOCAL:
        if controller.local_save is not None:
            console.print(controller.local_save.instructions, markup=False)
        return EXIT_SAVED_LOCALLY
    if phase is Phase.ERROR:
        heading = "Submission failed" if controller.bundle else "Cannot continue"
        _print_error(f"{heading}: {controller.error}")
        _print_error(f"See {log_path} for details.")
        return EXIT_FAILURE
    console.print("Progress saved. Run termquiz again to continue.")
    return EXIT_OK


def _handle_status(console: Console, quiz: Quiz, store: SessionStore) -> int:
    result = store.load(quiz)
    if result.status is LoadStatus.CORRUPT:
        _print_error(f"Saved session is corrupt: {result.error}")
        return EXIT_FAILURE

    console.print(f"[bold]{quiz.title}[/bold] ({quiz.quiz_file})")
    console.print(f"Window: {quiz.start.isoformat()} to {quiz.end.isoformat()}")
    session = result.session
    if session is None:
        console.print("No saved session.")
        return EXIT_OK
    if session.started_at is not None:
        console.print(f"Started: {session.started_at.isoformat()}")

    table = Table(box=box.SIMPLE, expand=False)
    table.add_column("#", justify="right")
    table.add_column("Question")
    table.add_column("Type")
    table.add_column("Status")
    table.add_column("Hints", justify="right")
    for question in quiz.questions:
        status = session.status(question.id)
        table.add_row(
            str(question.number),
            question.title,
            question.kind.value,
            f"[{_STATUS_STYLES[status]}]{status.value}[/]"
            if _STATUS_STYLES[status]
            else status.value,
            str(session.hints_used(question.id)),
        )
    console.print(table)
    counts = session.status_counts()
    console.print(
        f"{counts.total} questions: {counts.complete} complete, {counts.partial} "
        f"partial, {counts.flagged} flagged, {counts.empty} empty"
    )
    return EXIT_OK


def _handle_export(
    console: Console, quiz: Quiz, store: SessionStore, target: Path
) -> int:
    result = store.load(quiz)
    if result.status is LoadStatus.CORRUPT:
        _print_error(f"Saved session is corrupt: {result.error}")
        return EXIT_FAILURE
    if result.session is None:
        _print_error("No saved session to export.")
        return EXIT_FAILURE
    path = store.export_answers(result.session, quiz, target.expanduser())
    console.print(f"Exported answers to {path}")
    return EXIT_OK


def _to_path(value: str | None) -> Path | None:
    if value is None:
        return None
    return Path(value).expanduser().resolve()


def _print_error(message: str) -> None:
    sys.stderr.write(message + "\n")


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
