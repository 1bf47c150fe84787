"""Submission bundle and the push protocol.

A :class:`SubmissionBundle` is built once from the session and never
changes afterwards. :class:`SubmissionPipeline` writes it into the quiz
repository as ``response/``, commits it and pushes, retrying network
failures with exponential backoff until the retry budget runs out. When
the budget is exhausted the bundle stays in the working copy and the user
gets instructions for pushing it by hand.
"""

from __future__ import annotations

import dataclasses
import logging
import queue
import shutil
import threading
import time
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import Any, Callable, Mapping

import yaml

from .attachments import validate_attachment
from .errors import AttachmentError, PushError, PushErrorKind
from .git import GitBackend, GitCommandError, PushResult, PushStatus
from .model import Answer, FileConstraints, QuestionKind, Quiz
from .session import (
    AckRecord,
    Session,
    StatusCounts,
    answers_from_records,
    answers_to_records,
)

__all__ = [
    "RESPONSE_DIRNAME",
    "BundleAttachment",
    "RejectedAttachment",
    "SubmissionBundle",
    "build_bundle",
    "build_commit_message",
    "load_answers",
    "RetryPolicy",
    "PushEventKind",
    "PushEvent",
    "LocalSave",
    "SubmissionPipeline",
    "PushWorker",
]

RESPONSE_DIRNAME = "response"
_ANSWERS_FILENAME = "answers.yaml"
_META_FILENAME = "meta.yaml"
_FILES_DIRNAME = "files"

logger = logging.getLogger("termquiz.submission")


@dataclass(frozen=True)
class BundleAttachment:
    question_id: str
    source: Path
    name: str

    @property
    def relative_path(self) -> str:
        return f"{_FILES_DIRNAME}/{self.question_id}/{self.name}"


@dataclass(frozen=True)
class RejectedAttachment:
    question_id: str
    name: str
    reason: str
    message: str


@dataclass(frozen=True)
class SubmissionBundle:
    quiz_file: str
    quiz_hash: str
    started_at: datetime | None
    submitted_at: datetime
    acknowledgment: AckRecord | None
    hints_used: Mapping[str, int]
    tool_version: str
    answers: Mapping[str, Answer]
    attachments: tuple[BundleAttachment, ...]
    answers_yaml: str
    meta_yaml: str
    commit_message: str
    counts: StatusCounts
    rejected: tuple[RejectedAttachment, ...] = ()


def build_bundle(
    session: Session,
    quiz: Quiz,
    *,
    attachments_dir: Path,
    submitted_at: datetime,
    tool_version: str,
    strict: bool = True,
) -> SubmissionBundle:
    """Snapshot ``session`` into a bundle, re-validating every attachment.

    Attachments are checked against the rules recorded when they were
    attached, falling back to the question's current constraints. A strict
    build raises :class:`AttachmentError` on the first bad file; a lenient
    build (used when the deadline forces the submission) leaves bad files
    out and lists them in the metadata.
    """

    answers: dict[str, Answer] = {}
    attachments: list[BundleAttachment] = []
    rejected: list[RejectedAttachment] = []

    for question in quiz.questions:
        answer = session.answers.get(question.id) or Answer.empty(question.kind)
        if question.kind is not QuestionKind.FILE:
            answers[question.id] = answer
            continue
        rule = (
            session.attachment_rules.get(question.id)
            or question.constraints
            or FileConstraints()
        )
        accepted: list[str] = []
        for name in answer.files:
            source = attachments_dir / question.id / name
            try:
                validate_attachment(source, rule, existing=accepted)
            except AttachmentError as exc:
                if strict:
                    raise AttachmentError(
                        exc.reason, f"{question.id}: {exc}"
                    ) from exc
                rejected.append(
                    RejectedAttachment(
                        question_id=question.id,
                        name=name,
                        reason=exc.reason.value,
                        message=str(exc),
                    )
                )
                continue
            accepted.append(name)
            attachments.append(
                BundleAttachment(question_id=question.id, source=source, name=name)
            )
        answers[question.id] = Answer(kind=question.kind, files=tuple(accepted))

    if rejected:
        logger.warning(
            "Attachments left out of the submission",
            extra={"rejected": [f"{item.question_id}/{item.name}" for item in rejected]},
        )

    counts = session.status_counts()
    hints_used = {
        qid: count
        for qid, count in sorted(
            session.hints_revealed.items(), key=lambda item: _question_order(item[0])
        )
        if count > 0
    }
    answers_yaml = _dump_yaml(answers_to_records(answers, quiz))
    meta_yaml = _dump_yaml(
        _meta_document(
            quiz,
            session,
            submitted_at=submitted_at,
            tool_version=tool_version,
            hints_used=hints_used,
            rejected=rejected,
        )
    )
    return SubmissionBundle(
        quiz_file=quiz.quiz_file,
        quiz_hash=quiz.quiz_hash,
        started_at=session.started_at,
        submitted_at=submitted_at,
        acknowledgment=session.acknowledgment,
        hints_used=MappingProxyType(hints_used),
        tool_version=tool_version,
        answers=MappingProxyType(answers),
        attachments=tuple(attachments),
        answers_yaml=answers_yaml,
        meta_yaml=meta_yaml,
        commit_message=build_commit_message(
            quiz.quiz_file, counts, session.started_at, submitted_at
        ),
        counts=counts,
        rejected=tuple(rejected),
    )


def build_commit_message(
    quiz_file: str,
    counts: StatusCounts,
    started_at: datetime | None,
    submitted_at: datetime,
) -> str:
    started = started_at.isoformat() if started_at else "unknown"
    return (
        f"termquiz: submit {quiz_file}\n"
        "\n"
        f"Started: {started}\n"
        f"Submitted: {submitted_at.isoformat()}\n"
        f"Questions: {counts.total} ({counts.complete} complete, "
        f"{counts.partial} partial, {counts.flagged} flagged, {counts.empty} empty)"
    )


def load_answers(text: str, quiz: Quiz) -> dict[str, Answer]:
    """Parse an ``answers.yaml`` document back into answers for ``quiz``."""

    records = yaml.safe_load(text) or {}
    if not isinstance(records, Mapping):
        raise ValueError("answers document must be a mapping")
    answers, dropped = answers_from_records(records, quiz)
    if dropped:
        raise ValueError(f"answers do not match the quiz: {', '.join(dropped)}")
    return answers


def _meta_document(
    quiz: Quiz,
    session: Session,
    *,
    submitted_at: datetime,
    tool_version: str,
    hints_used: Mapping[str, int],
    rejected: list[RejectedAttachment],
) -> dict[str, Any]:
    document: dict[str, Any] = {
        "quiz_file": quiz.quiz_file,
        "quiz_hash": quiz.quiz_hash,
        "started_at": session.started_at.isoformat() if session.started_at else None,
        "submitted_at": submitted_at.isoformat(),
        "termquiz_version": tool_version,
    }
    if session.acknowledgment is not None:
        document["acknowledgment"] = session.acknowledgment.to_dict()
    document["hints_used"] = dict(hints_used)
    if rejected:
        document["rejected_attachments"] = [
            {"question": item.question_id, "name": item.name, "reason": item.reason}
            for item in rejected
        ]
    return document


def _dump_yaml(document: Mapping[str, Any]) -> str:
    return yaml.safe_dump(
        dict(document), sort_keys=False, allow_unicode=True, default_flow_style=False
    )


def _question_order(question_id: str) -> int:
    try:
        return int(question_id.lstrip("q"))
    except ValueError:
        return 0


@dataclass(frozen=True)
class RetryPolicy:
    initial_delay: float = 2.0
    max_delay: float = 30.0
    budget: float = 600.0

    def delay(self, failures: int) -> float:
        """Seconds to wait after the ``failures``-th consecutive failure (1-based)."""

        exponent = max(0, failures - 1)
        return min(self.initial_delay * (2**exponent), self.max_delay)


class PushEventKind(Enum):
    SUCCESS = "success"
    RETRYING = "retrying"
    CONFLICT = "conflict"
    FATAL = "fatal"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self is not PushEventKind.RETRYING


@dataclass(frozen=True)
class PushEvent:
    kind: PushEventKind
    detail: str = ""
    attempt: int = 0
    delay: float | None = None
    elapsed: float = 0.0
    token: int = 0
    error: PushError | None = None


@dataclass(frozen=True)
class LocalSave:
    path: Path
    instructions: str


Sleeper = Callable[[float, threading.Event], Any]


def _wait(seconds: float, cancel: threading.Event) -> None:
    cancel.wait(seconds)


class SubmissionPipeline:
    """Stage, commit and push a bundle through a :class:`GitBackend`."""

    def __init__(
        self,
        git: GitBackend,
        *,
        policy: RetryPolicy | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Sleeper = _wait,
        fetch_history: bool = True,
    ) -> None:
        self._git = git
        self._policy = policy or RetryPolicy()
        self._clock = clock
        self._sleep = sleep
        self._fetch_history = fetch_history

    @property
    def git(self) -> GitBackend:
        return self._git

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    @property
    def response_dir(self) -> Path:
        return self._git.repo / RESPONSE_DIRNAME

    def check_history(self) -> bool:
        return self._git.history_contains_valid_response(fetch=self._fetch_history)

    def write_bundle(self, bundle: SubmissionBundle) -> Path:
        """Materialize ``bundle`` as ``<repo>/response``, replacing any old copy."""

        target = self.response_dir
        if target.exists():
            shutil.rmtree(target)
        target.mkdir(parents=True)
        (target / _ANSWERS_FILENAME).write_text(bundle.answers_yaml, encoding="utf-8")
        (target / _META_FILENAME).write_text(bundle.meta_yaml, encoding="utf-8")
        for attachment in bundle.attachments:
            destination = target / attachment.relative_path
            destination.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(attachment.source, destination)
        return target

    def stage(self, bundle: SubmissionBundle) -> bool:
        """Write and commit ``bundle``; raises :class:`PushError` on failure."""

        try:
            self.write_bundle(bundle)
            committed = self._git.commit([RESPONSE_DIRNAME], bundle.commit_message)
        except (GitCommandError, OSError) as exc:
            raise PushError(
                PushErrorKind.FATAL, f"Could not stage submission: {exc}"
            ) from exc
        logger.info(
            "Staged submission",
            extra={"repo": str(self._git.repo), "committed": committed},
        )
        return committed

    def attempt(self) -> PushResult:
        """One push attempt, preceded by the submission history check."""

        if self.check_history():
            return PushResult(
                status=PushStatus.CONFLICT,
                detail="A response has already been submitted for this quiz.",
            )
        return self._git.push()

    def push_with_retry(
        self,
        cancel: threading.Event,
        on_event: Callable[[PushEvent], None] | None = None,
    ) -> PushEvent:
        """Push until success, a terminal failure, cancellation or timeout.

        Returns the terminal event; every event (including ``RETRYING``) is
        also passed to ``on_event``.
        """

        def emit(event: PushEvent) -> PushEvent:
            if on_event is not None:
                on_event(event)
            return event

        first_failure: float | None = None
        failures = 0
        attempt = 0
        while True:
            if cancel.is_set():
                return emit(PushEvent(PushEventKind.CANCELLED, attempt=attempt))
            attempt += 1
            result = self.attempt()
            if result.status is PushStatus.SUCCESS:
                logger.info("Submission pushed", extra={"attempt": attempt})
                return emit(PushEvent(PushEventKind.SUCCESS, attempt=attempt))
            if result.status is PushStatus.CONFLICT:
                logger.warning("Submission conflict", extra={"detail": result.detail})
                return emit(
                    PushEvent(
                        PushEventKind.CONFLICT,
                        result.detail,
                        attempt=attempt,
                        error=PushError(PushErrorKind.CONFLICT, result.detail),
                    )
                )
            if result.status is PushStatus.FATAL:
                logger.error("Submission failed", extra={"detail": result.detail})
                return emit(
                    PushEvent(
                        PushEventKind.FATAL,
                        result.detail,
                        attempt=attempt,
                        error=PushError(PushErrorKind.FATAL, result.detail),
                    )
                )

            now = self._clock()
            if first_failure is None:
                first_failure = now
            elapsed = now - first_failure
            failures += 1
            if elapsed >= self._policy.budget:
                logger.warning(
                    "Retry budget exhausted",
                    extra={"attempt": attempt, "elapsed": elapsed},
                )
                return emit(
                    PushEvent(
                        PushEventKind.TIMED_OUT,
                        result.detail,
                        attempt=attempt,
                        elapsed=elapsed,
                        error=PushError(PushErrorKind.NETWORK, result.detail),
                    )
                )
            delay = self._policy.delay(failures)
            logger.info(
                "Push failed, retrying",
                extra={"attempt": attempt, "delay": delay, "detail": result.detail},
            )
            emit(
                PushEvent(
                    PushEventKind.RETRYING,
                    result.detail,
                    attempt=attempt,
                    delay=delay,
                    elapsed=elapsed,
                )
            )
            self._sleep(delay, cancel)

    def save_local(self, bundle: SubmissionBundle) -> LocalSave:
        """Leave the bundle in the working copy with manual push instructions."""

        target = self.response_dir
        if not (target / _ANSWERS_FILENAME).exists():
            self.write_bundle(bundle)
        committed = False
        try:
            committed = self._git.commit([RESPONSE_DIRNAME], bundle.commit_message)
        except GitCommandError as exc:
            logger.warning("Could not commit local submission", extra={"error": str(exc)})
        repo = self._git.repo
        if committed or self._git.is_repository():
            instructions = (
                f"Your answers are saved in {target}.\n"
                "Push them when you are back online:\n"
                f"  cd {repo} && git push"
            )
        else:
            instructions = (
                f"Your answers are saved in {target}.\n"
                f"{repo} is not a git repository; hand the response folder in "
                "to your instructor."
            )
        logger.info("Saved submission locally", extra={"path": str(target)})
        return LocalSave(path=target, instructions=instructions)


class PushWorker:
    """Run the push protocol for one bundle on a daemon thread.

    Events are tagged with ``token`` and posted to ``events``; the control
    thread drains the queue and ignores events from a cancelled worker.
    """

    def __init__(
        self,
        pipeline: SubmissionPipeline,
        bundle: SubmissionBundle,
        events: "queue.Queue[PushEvent]",
        *,
        token: int = 0,
    ) -> None:
        self._pipeline = pipeline
        self._bundle = bundle
        self._events = events
        self._token = token
        self._cancel = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def token(self) -> int:
        return self._token

    @property
    def bundle(self) -> SubmissionBundle:
        return self._bundle

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def start(self) -> None:
        self._thread = threading.Thread(
            target=self.run, name="termquiz-push", daemon=True
        )
        self._thread.start()

    def cancel(self) -> None:
        self._cancel.set()

    def join(self, timeout: float | None = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout)

    def run(self) -> PushEvent:
        try:
            self._pipeline.stage(self._bundle)
        except PushError as exc:
            logger.error("Could not stage submission", extra={"error": str(exc)})
            return self._post(PushEvent(PushEventKind.FATAL, str(exc), error=exc))
        return self._pipeline.push_with_retry(self._cancel, on_event=self._post)

    def _post(self, event: PushEvent) -> PushEvent:
        tagged = dataclasses.replace(event, token=self._token)
        self._events.put(tagged)
        return tagged
