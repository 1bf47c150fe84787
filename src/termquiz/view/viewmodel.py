"""Read-only projection of the controller state for rendering.

The renderer only ever sees a :class:`ViewModel`; user input goes back to
the controller through its action methods, never through these objects.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Tuple

from ..controller import SessionController
from ..errors import PushErrorKind
from ..model import QuestionKind, choice_label
from ..session import Phase, QuestionStatus, StatusCounts
from ..timer import WARNING_WINDOW_SECONDS, format_duration, format_wait

__all__ = [
    "ChoiceItem",
    "SidebarItem",
    "QuestionPanel",
    "ViewModel",
    "STATUS_MARKERS",
    "build_view_model",
]

STATUS_MARKERS = {
    QuestionStatus.UNREAD: " ",
    QuestionStatus.EMPTY: "·",
    QuestionStatus.PARTIAL: "~",
    QuestionStatus.DONE: "✓",
    QuestionStatus.FLAGGED: "!",
}


@dataclass(frozen=True)
class ChoiceItem:
    label: str
    text: str
    selected: bool


@dataclass(frozen=True)
class SidebarItem:
    index: int
    question_id: str
    title: str
    status: QuestionStatus
    current: bool

    @property
    def marker(self) -> str:
        return STATUS_MARKERS[self.status]


@dataclass(frozen=True)
class QuestionPanel:
    number: int
    total: int
    title: str
    body: str
    kind: QuestionKind
    status: QuestionStatus
    choices: Tuple[ChoiceItem, ...] = ()
    text: str = ""
    files: Tuple[str, ...] = ()
    constraints: Optional[str] = None
    hints: Tuple[str, ...] = ()
    hints_remaining: int = 0


@dataclass(frozen=True)
class ViewModel:
    phase: Phase
    title: str
    quiz_file: str
    preamble: str = ""
    remaining: Optional[str] = None
    remaining_seconds: Optional[float] = None
    low_time: bool = False
    sidebar: Tuple[SidebarItem, ...] = ()
    question: Optional[QuestionPanel] = None
    counts: Optional[StatusCounts] = None
    notice: Optional[str] = None
    hint_pending: bool = False
    ack_text: Optional[str] = None
    message: Tuple[str, ...] = ()


def build_view_model(controller: SessionController) -> ViewModel:
    quiz = controller.quiz
    session = controller.session
    phase = controller.phase

    remaining_seconds: Optional[float] = None
    remaining: Optional[str] = None
    if phase in (Phase.WORKING, Phase.CONFIRM, Phase.PUSHING, Phase.RETRY):
        remaining_seconds = max(0.0, controller.remaining_seconds())
        remaining = format_duration(remaining_seconds)

    sidebar: Tuple[SidebarItem, ...] = ()
    question: Optional[QuestionPanel] = None
    counts: Optional[StatusCounts] = None
    if session is not None:
        sidebar = tuple(
            SidebarItem(
                index=index,
                question_id=item.id,
                title=item.title,
                status=session.status(item.id),
                current=index == session.current_index,
            )
            for index, item in enumerate(quiz.questions)
        )
        counts = session.status_counts()
        question = _question_panel(controller)

    return ViewModel(
        phase=phase,
        title=quiz.title,
        quiz_file=quiz.quiz_file,
        preamble=quiz.preamble,
        remaining=remaining,
        remaining_seconds=remaining_seconds,
        low_time=(
            remaining_seconds is not None
            and remaining_seconds <= WARNING_WINDOW_SECONDS
        ),
        sidebar=sidebar,
        question=question,
        counts=counts,
        notice=controller.notice,
        hint_pending=controller.hint_pending,
        ack_text=quiz.acknowledgment.text if quiz.acknowledgment else None,
        message=_phase_message(controller),
    )


def _question_panel(controller: SessionController) -> QuestionPanel:
    session = controller.session
    question = controller.current_question
    answer = session.answer_for(question.id)
    used = session.hints_used(question.id)
    return QuestionPanel(
        number=question.number,
        total=len(controller.quiz.questions),
        title=question.title,
        body=question.body,
        kind=question.kind,
        status=session.status(question.id),
        choices=tuple(
            ChoiceItem(
                label=choice_label(index),
                text=choice.text,
                selected=index in answer.selected,
            )
            for index, choice in enumerate(question.choices)
        ),
        text=answer.text,
        files=answer.files,
        constraints=question.constraints.describe() if question.constraints else None,
        hints=question.hints[:used],
        hints_remaining=len(question.hints) - used,
    )


def _phase_message(controller: SessionController) -> Tuple[str, ...]:
    quiz = controller.quiz
    phase = controller.phase
    if phase is Phase.WAITING:
        return (
            f"{quiz.title} opens at {quiz.start.isoformat()}.",
            f"Starts in {format_wait(controller.seconds_until_start())}.",
        )
    if phase is Phase.CLOSED:
        return (f"{quiz.title} closed at {quiz.end.isoformat()}.",)
    if phase is Phase.SUBMITTED:
        return (
            f"A response for {quiz.quiz_file} has already been submitted.",
            "Nothing was changed.",
        )
    if phase is Phase.CONFIRM:
        counts = controller.session.status_counts()
        return (
            "Submit your answers now? This cannot be undone.",
            f"{counts.complete} complete, {counts.partial} partial, "
            f"{counts.flagged} flagged, {counts.empty} empty.",
        )
    if phase is Phase.PUSHING:
        return ("Submitting your answers...",)
    if phase is Phase.RETRY:
        event = controller.last_push_event
        delay = f" in {format_duration(event.delay)}" if event and event.delay else ""
        attempt = f" (attempt {event.attempt})" if event else ""
        return (
            f"Network problem, retrying{delay}{attempt}.",
            "Press Esc to stop and save your answers locally.",
        )
    if phase is Phase.DONE:
        return ("Your answers were submitted.",)
    if phase is Phase.SAVE_LOCAL:
        save = controller.local_save
        lines = save.instructions.splitlines() if save else []
        return (_local_save_reason(controller), *lines)
    if phase is Phase.ERROR:
        heading = "Submission failed:" if controller.bundle else "Cannot continue:"
        return (heading, controller.error or "unknown error")
    return ()


def _local_save_reason(controller: SessionController) -> str:
    if controller.retry_cancelled:
        return "Submission stopped before it reached the server."
    error = controller.push_error
    if error is not None and error.kind is PushErrorKind.NETWORK:
        return "Could not reach the server."
    return "Your answers were not pushed."
