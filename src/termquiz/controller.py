"""The quiz session state machine.

:class:`SessionController` owns the :class:`~termquiz.session.Session` and
is the only code that changes it or writes it to the store. User actions,
timer events and push results all arrive on the control thread; the timer
and push worker only talk to it through queues drained by :meth:`poll`.
"""

from __future__ import annotations

import hashlib
import logging
import queue
from datetime import datetime
from pathlib import Path
from typing import Callable

from .attachments import validate_attachment
from .errors import AttachmentError, PersistenceCorruptError, PushError, SessionError
from .model import Answer, FileConstraints, Question, QuestionKind, Quiz
from .session import AckRecord, Phase, Session
from .store import LoadStatus, SessionStore
from .submission import (
    LocalSave,
    PushEvent,
    PushEventKind,
    PushWorker,
    SubmissionBundle,
    SubmissionPipeline,
    build_bundle,
)
from .timer import Clock, CountdownTimer, TimerEvent, TimerEventKind, utc_now

__all__ = ["SessionController", "MIN_NAME_LENGTH"]

MIN_NAME_LENGTH = 2

_TIMED_PHASES = {Phase.WORKING, Phase.CONFIRM, Phase.PUSHING, Phase.RETRY}
_TERMINAL_PHASES = {
    Phase.WAITING,
    Phase.CLOSED,
    Phase.SUBMITTED,
    Phase.SAVE_LOCAL,
    Phase.DONE,
    Phase.ERROR,
}

TimerFactory = Callable[[datetime, "queue.Queue[TimerEvent]"], CountdownTimer]
WorkerFactory = Callable[
    [SubmissionPipeline, SubmissionBundle, "queue.Queue[PushEvent]", int], PushWorker
]

logger = logging.getLogger("termquiz.controller")


def _default_worker(
    pipeline: SubmissionPipeline,
    bundle: SubmissionBundle,
    events: "queue.Queue[PushEvent]",
    token: int,
) -> PushWorker:
    return PushWorker(pipeline, bundle, events, token=token)


class SessionController:
    """Drive one quiz attempt from startup to submission."""

    def __init__(
        self,
        quiz: Quiz,
        store: SessionStore,
        pipeline: SubmissionPipeline,
        *,
        clock: Clock = utc_now,
        tool_version: str = "0.0.0",
        timer_factory: TimerFactory | None = None,
        worker_factory: WorkerFactory = _default_worker,
    ) -> None:
        self.quiz = quiz
        self.store = store
        self.pipeline = pipeline
        self._clock = clock
        self._tool_version = tool_version
        self._timer_factory = timer_factory or (
            lambda end, events: CountdownTimer(end, events, clock=clock)
        )
        self._worker_factory = worker_factory

        self.phase = Phase.RESOLVE_SOURCE
        self.session: Session | None = None
        self.notice: str | None = None
        self.error: str | None = None
        self.hint_pending = False
        self.warning_issued = False
        self.bundle: SubmissionBundle | None = None
        self.local_save: LocalSave | None = None
        self.last_push_event: PushEvent | None = None
        self.retry_cancelled = False
        self.push_error: PushError | None = None

        self.timer_events: "queue.Queue[TimerEvent]" = queue.Queue()
        self.push_events: "queue.Queue[PushEvent]" = queue.Queue()
        self._timer: CountdownTimer | None = None
        self._worker: PushWorker | None = None
        self._token = 0

    # ------------------------------------------------------------------
    # Startup

    def start(self) -> Phase:
        """Derive the phase from the clock, history and saved state.

        Raises :class:`PersistenceCorruptError` when saved state exists but
        cannot be read; the caller decides whether to clear it.
        """

        self.phase = Phase.CHECK_TIME
        now = self._clock()
        if now < self.quiz.start:
            return self._set_phase(Phase.WAITING)

        self.phase = Phase.CHECK_SUBMITTED
        if self.pipeline.check_history():
            logger.info("Quiz already submitted", extra={"quiz": self.quiz.quiz_file})
            return self._set_phase(Phase.SUBMITTED)

        if now >= self.quiz.end:
            return self._set_phase(Phase.CLOSED)

        result = self.store.load(self.quiz)
        if result.status is LoadStatus.CORRUPT:
            raise PersistenceCorruptError(
                f"Saved session at {self.store.directory} is unreadable: {result.error}"
            )
        if result.session is not None:
            self.session = result.session
            logger.info(
                "Restored saved session",
                extra={"quiz": self.quiz.quiz_file, "dropped": list(result.dropped)},
            )
        else:
            self.session = Session.fresh(self.quiz)

        if self.session.started_at is not None and self._acknowledged():
            self._begin_working()
        else:
            self._set_phase(Phase.PREAMBLE)
            self._save()
        return self.phase

    def refresh(self) -> Phase:
        """Re-check a waiting quiz; starts it once the window has opened.

        Unreadable saved state found at that point ends in ``ERROR`` since
        there is no prompt inside the running view.
        """

        if self.phase is not Phase.WAITING or self._clock() < self.quiz.start:
            return self.phase
        try:
            return self.start()
        except PersistenceCorruptError as exc:
            logger.error("Saved session is unreadable", extra={"error": str(exc)})
            self.error = str(exc)
            return self._set_phase(Phase.ERROR)

    def continue_from_preamble(self) -> bool:
        if self.phase is not Phase.PREAMBLE or self._close_if_past_end():
            return False
        if not self._acknowledged():
            self._set_phase(Phase.ACK)
            self._save()
            return True
        self._begin_working()
        return True

    def acknowledge(self, name: str, confirmed: bool) -> bool:
        if self.phase is not Phase.ACK or self.session is None:
            return False
        if self._close_if_past_end():
            return False
        cleaned = " ".join(name.split())
        if len(cleaned) < MIN_NAME_LENGTH:
            self.notice = f"Enter your name (at least {MIN_NAME_LENGTH} characters)."
            return False
        if not confirmed:
            self.notice = "Confirm the statement to continue."
            return False
        text = (self.quiz.acknowledgment.text if self.quiz.acknowledgment else "") or ""
        self.session.acknowledgment = AckRecord(
            name=cleaned,
            agreed_at=self._clock(),
            text_hash="sha256:" + hashlib.sha256(text.encode("utf-8")).hexdigest(),
        )
        self.notice = None
        self._begin_working()
        return True

    # ------------------------------------------------------------------
    # Working actions

    @property
    def current_question(self) -> Question:
        index = self.session.current_index if self.session else 0
        return self.quiz.questions[index]

    def go_to(self, index: int) -> bool:
        if not self._working():
            return False
        try:
            self.session.navigate(index, self.quiz)
        except SessionError as exc:
            self.notice = str(exc)
            return False
        self.hint_pending = False
        self._save()
        return True

    def next_question(self) -> bool:
        if not self._working():
            return False
        index = self.session.current_index + 1
        if index >= len(self.quiz.questions):
            return False
        return self.go_to(index)

    def previous_question(self) -> bool:
        if not self._working():
            return False
        index = self.session.current_index - 1
        if index < 0:
            return False
        return self.go_to(index)

    def select_choice(self, index: int) -> bool:
        if not self._working():
            return False
        question = self.current_question
        if not question.kind.is_choice:
            return False
        if index < 0 or index >= len(question.choices):
            self.notice = f"No choice {index + 1} on this question."
            return False
        current = self.session.answer_for(question.id)
        if question.kind is QuestionKind.SINGLE:
            selected = frozenset({index})
        else:
            selected = current.selected ^ {index}
        self.session.set_answer(question.id, Answer(kind=question.kind, selected=selected))
        self._save()
        return True

    def set_text(self, text: str) -> bool:
        if not self._working():
            return False
        question = self.current_question
        if not question.kind.is_text:
            return False
        self.session.set_answer(question.id, Answer(kind=question.kind, text=text))
        self._save()
        return True

    def clear_answer(self) -> bool:
        if not self._working():
            return False
        question = self.current_question
        if question.kind is QuestionKind.FILE:
            for name in self.session.answer_for(question.id).files:
                self.store.remove_attachment(question.id, name)
        self.session.set_answer(question.id, Answer.empty(question.kind))
        self._save()
        return True

    def attach(self, path: Path) -> bool:
        """Validate and stage ``path`` for the current file question."""

        if not self._working():
            return False
        question = self.current_question
        if question.kind is not QuestionKind.FILE:
            return False
        rule = question.constraints or FileConstraints()
        answer = self.session.answer_for(question.id)
        try:
            validate_attachment(path, rule, existing=answer.files)
            self.store.stage_attachment(question.id, path)
        except AttachmentError as exc:
            self.notice = str(exc)
            logger.info(
                "Attachment rejected",
                extra={"question": question.id, "reason": exc.reason.value},
            )
            return False
        except OSError as exc:
            self.notice = f"Could not copy {path}: {exc}"
            logger.warning("Attachment copy failed", extra={"error": str(exc)})
            return False
        files = tuple(name for name in answer.files if name != path.name) + (path.name,)
        self.session.attachment_rules[question.id] = rule
        self.session.set_answer(question.id, Answer(kind=question.kind, files=files))
        self.notice = f"Attached {path.name}"
        self._save()
        return True

    def detach(self, name: str) -> bool:
        if not self._working():
            return False
        question = self.current_question
        if question.kind is not QuestionKind.FILE:
            return False
        answer = self.session.answer_for(question.id)
        if name not in answer.files:
            return False
        self.store.remove_attachment(question.id, name)
        files = tuple(item for item in answer.files if item != name)
        self.session.set_answer(question.id, Answer(kind=question.kind, files=files))
        self._save()
        return True

    def request_hint(self) -> bool:
        if not self._working():
            return False
        question = self.current_question
        if self.session.hints_used(question.id) >= len(question.hints):
            self.notice = "No more hints for this question."
            return False
        self.hint_pending = True
        return True

    def confirm_hint(self) -> bool:
        if not self._working() or not self.hint_pending:
            return False
        self.hint_pending = False
        try:
            self.session.reveal_hint(self.current_question)
        except SessionError as exc:
            self.notice = str(exc)
            return False
        self._save()
        return True

    def cancel_hint(self) -> bool:
        if not self.hint_pending:
            return False
        self.hint_pending = False
        return True

    def toggle_flag(self) -> bool:
        if not self._working():
            return False
        self.session.toggle_flag(self.current_question.id)
        self._save()
        return True

    def toggle_done(self) -> bool:
        if not self._working():
            return False
        try:
            self.session.toggle_done(self.current_question.id)
        except SessionError as exc:
            self.notice = str(exc)
            return False
        self._save()
        return True

    # ------------------------------------------------------------------
    # Submission

    def request_submit(self) -> bool:
        if not self._working():
            return False
        self.hint_pending = False
        self._set_phase(Phase.CONFIRM)
        return True

    def cancel_submit(self) -> bool:
        if self.phase is not Phase.CONFIRM:
            return False
        self._set_phase(Phase.WORKING)
        return True

    def confirm_submit(self) -> bool:
        if self.phase is not Phase.CONFIRM:
            return False
        return self._submit(strict=True)

    def cancel_retry(self) -> bool:
        if self.phase is not Phase.RETRY or self._worker is None:
            return False
        self._worker.cancel()
        self._worker = None
        self._token += 1
        self.retry_cancelled = True
        logger.info("Retry cancelled by user")
        self._save_local()
        return True

    def quit(self) -> bool:
        """Persist and stop background work. Refused while a push is running."""

        if self.phase in (Phase.PUSHING, Phase.RETRY):
            self.notice = "Submission in progress."
            return False
        if self.session is not None and self.phase not in (Phase.DONE, Phase.SUBMITTED):
            if not self._save():
                self.notice = f"{self.notice} Not quitting until progress is saved."
                return False
        self._stop_timer()
        return True

    def _submit(self, *, strict: bool) -> bool:
        if self.pipeline.check_history():
            self.hint_pending = False
            self._set_phase(Phase.SUBMITTED)
            return False
        try:
            bundle = build_bundle(
                self.session,
                self.quiz,
                attachments_dir=self.store.attachments_dir,
                submitted_at=self._clock(),
                tool_version=self._tool_version,
                strict=strict,
            )
        except AttachmentError as exc:
            self.notice = f"Cannot submit: {exc}"
            self._set_phase(Phase.WORKING)
            return False

        self.bundle = bundle
        self.hint_pending = False
        self._set_phase(Phase.PUSHING)
        self._save()
        logger.info(
            "Submitting",
            extra={"quiz": self.quiz.quiz_file, "automatic": not strict},
        )
        if not self.pipeline.git.is_repository():
            self._save_local()
            return True
        self._token += 1
        self._worker = self._worker_factory(
            self.pipeline, bundle, self.push_events, self._token
        )
        self._worker.start()
        return True

    def _save_local(self) -> None:
        try:
            self.local_save = self.pipeline.save_local(self.bundle)
        except OSError as exc:
            self.error = f"Could not save the submission locally: {exc}"
            logger.error("Local save failed", extra={"error": str(exc)})
            self._set_phase(Phase.ERROR)
            return
        self._set_phase(Phase.SAVE_LOCAL)
        self._save()

    # ------------------------------------------------------------------
    # Event intake

    def handle_timer_event(self, event: TimerEvent) -> None:
        if event.kind is TimerEventKind.TICK:
            return
        if event.kind is TimerEventKind.WARNING:
            if self.phase in (Phase.WORKING, Phase.CONFIRM):
                self.warning_issued = True
                self.notice = "Two minutes left."
            return
        if self.phase in (Phase.WORKING, Phase.CONFIRM):
            logger.info("Time expired, submitting automatically")
            self.notice = "Time is up. Submitting your answers."
            self._submit(strict=False)

    def handle_push_event(self, event: PushEvent) -> None:
        if self._worker is None or event.token != self._token:
            return
        self.last_push_event = event
        if event.kind is PushEventKind.RETRYING:
            self._set_phase(Phase.RETRY)
            return
        self._worker = None
        self.push_error = event.error
        if event.kind is PushEventKind.SUCCESS:
            self._set_phase(Phase.DONE)
            self.store.clear()
        elif event.kind is PushEventKind.CONFLICT:
            self._set_phase(Phase.SUBMITTED)
        elif event.kind is PushEventKind.FATAL:
            self.error = str(event.error or event.detail or "git push failed")
            self._set_phase(Phase.ERROR)
            self._save()
        else:
            self._save_local()

    def poll(self) -> int:
        """Apply every queued timer and push event; return how many ran."""

        handled = 0
        while True:
            try:
                timer_event = self.timer_events.get_nowait()
            except queue.Empty:
                break
            self.handle_timer_event(timer_event)
            handled += 1
        while True:
            try:
                push_event = self.push_events.get_nowait()
            except queue.Empty:
                break
            self.handle_push_event(push_event)
            handled += 1
        return handled

    def remaining_seconds(self) -> float:
        return (self.quiz.end - self._clock()).total_seconds()

    def seconds_until_start(self) -> float:
        return (self.quiz.start - self._clock()).total_seconds()

    @property
    def terminal(self) -> bool:
        return self.phase in _TERMINAL_PHASES

    @property
    def push_worker(self) -> PushWorker | None:
        return self._worker

    # ------------------------------------------------------------------
    # Internals

    def _acknowledged(self) -> bool:
        if not self.quiz.requires_acknowledgment:
            return True
        return self.session is not None and self.session.acknowledgment is not None

    def _working(self) -> bool:
        return self.phase is Phase.WORKING and self.session is not None

    def _begin_working(self) -> None:
        if self.session.started_at is None:
            self.session.started_at = self._clock()
        self.session.visited.add(self.current_question.id)
        self._set_phase(Phase.WORKING)
        self._start_timer()
        self._save()

    def _set_phase(self, phase: Phase) -> Phase:
        if phase is not self.phase:
            logger.debug(
                "Phase change",
                extra={"from": self.phase.value, "to": phase.value},
            )
        self.phase = phase
        if phase not in _TIMED_PHASES:
            self._stop_timer()
        return phase

    def _start_timer(self) -> None:
        if self._timer is not None:
            return
        self._timer = self._timer_factory(self.quiz.end, self.timer_events)
        self._timer.start()

    def _stop_timer(self) -> None:
        if self._timer is None:
            return
        self._timer.stop()
        self._timer = None

    def _save(self) -> bool:
        if self.session is None:
            return True
        self.session.phase = self.phase
        try:
            self.store.save(self.session, self.quiz)
        except OSError as exc:
            self.notice = f"Could not save progress: {exc}"
            logger.error(
                "Failed to save session",
                extra={"directory": str(self.store.directory), "error": str(exc)},
            )
            return False
        return True

    def _close_if_past_end(self) -> bool:
        """Move to ``CLOSED`` when the window ended before work began."""

        if self._clock() < self.quiz.end:
            return False
        logger.info(
            "Quiz window closed before the attempt started",
            extra={"quiz": self.quiz.quiz_file},
        )
        self.notice = None
        self._set_phase(Phase.CLOSED)
        return True
