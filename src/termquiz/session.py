"""Mutable quiz session state and the answers record format.

The session is the only mutable object in a quiz run. It is owned by the
controller; the store keeps a serialized copy and the submission bundle
takes a frozen snapshot. The helpers here enforce the per-question rules:

- every question has exactly one answer slot of the question's kind;
- ``done`` and ``flagged`` are mutually exclusive;
- ``done`` requires a non-empty answer, and emptying an answer clears it;
- revealed hint counts only grow.
"""

from __future__ import annotations

from collections.abc import Mapping, MutableMapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from .errors import SessionError
from .model import (
    Answer,
    FileConstraints,
    Question,
    QuestionKind,
    Quiz,
    choice_index,
    choice_label,
)

__all__ = [
    "Phase",
    "QuestionStatus",
    "StatusCounts",
    "AckRecord",
    "Session",
    "answer_to_record",
    "answer_from_record",
    "answers_to_records",
    "answers_from_records",
]


class Phase(Enum):
    """Controller state-machine nodes."""

    RESOLVE_SOURCE = "resolve_source"
    PARSE = "parse"
    CHECK_TIME = "check_time"
    WAITING = "waiting"
    CLOSED = "closed"
    CHECK_SUBMITTED = "check_submitted"
    SUBMITTED = "submitted"
    PREAMBLE = "preamble"
    ACK = "ack"
    WORKING = "working"
    CONFIRM = "confirm"
    PUSHING = "pushing"
    RETRY = "retry"
    SAVE_LOCAL = "save_local"
    DONE = "done"
    ERROR = "error"

    @classmethod
    def from_value(cls, value: str) -> "Phase":
        for member in cls:
            if member.value == value:
                return member
        raise ValueError(f"Unknown phase '{value}'")


class QuestionStatus(Enum):
    UNREAD = "unread"
    EMPTY = "empty"
    PARTIAL = "partial"
    DONE = "done"
    FLAGGED = "flagged"


@dataclass(frozen=True)
class StatusCounts:
    """Per-status totals. ``empty`` includes the ``unread`` questions."""

    total: int
    complete: int
    partial: int
    flagged: int
    empty: int
    unread: int


@dataclass(frozen=True)
class AckRecord:
    name: str
    agreed_at: datetime
    text_hash: str

    def to_dict(self) -> dict[str, str]:
        return {
            "name": self.name,
            "agreed_at": self.agreed_at.isoformat(),
            "text_hash": self.text_hash,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "AckRecord":
        return cls(
            name=str(payload["name"]),
            agreed_at=datetime.fromisoformat(str(payload["agreed_at"])),
            text_hash=str(payload["text_hash"]),
        )


@dataclass
class Session:
    answers: dict[str, Answer]
    current_index: int = 0
    done: set[str] = field(default_factory=set)
    flagged: set[str] = field(default_factory=set)
    visited: set[str] = field(default_factory=set)
    hints_revealed: dict[str, int] = field(default_factory=dict)
    acknowledgment: AckRecord | None = None
    started_at: datetime | None = None
    attachment_rules: dict[str, FileConstraints] = field(default_factory=dict)
    phase: Phase = Phase.PREAMBLE

    @classmethod
    def fresh(cls, quiz: Quiz) -> "Session":
        answers = {q.id: Answer.empty(q.kind) for q in quiz.questions}
        visited = {quiz.questions[0].id} if quiz.questions else set()
        return cls(answers=answers, visited=visited)

    def answer_for(self, question_id: str) -> Answer:
        try:
            return self.answers[question_id]
        except KeyError as exc:
            raise SessionError(f"Unknown question id '{question_id}'") from exc

    def set_answer(self, question_id: str, answer: Answer) -> None:
        current = self.answer_for(question_id)
        if current.kind is not answer.kind:
            raise SessionError(
                f"{question_id} expects a {current.kind.value} answer, "
                f"got {answer.kind.value}"
            )
        self.answers[question_id] = answer
        if answer.is_empty():
            self.done.discard(question_id)

    def mark_done(self, question_id: str) -> None:
        if self.answer_for(question_id).is_empty():
            raise SessionError(
                f"{question_id} cannot be marked done while its answer is empty"
            )
        self.done.add(question_id)
        self.flagged.discard(question_id)

    def toggle_done(self, question_id: str) -> bool:
        if question_id in self.done:
            self.done.discard(question_id)
            return False
        self.mark_done(question_id)
        return True

    def toggle_flag(self, question_id: str) -> bool:
        self.answer_for(question_id)
        if question_id in self.flagged:
            self.flagged.discard(question_id)
            return False
        self.flagged.add(question_id)
        self.done.discard(question_id)
        return True

    def hints_used(self, question_id: str) -> int:
        return self.hints_revealed.get(question_id, 0)

    def reveal_hint(self, question: Question) -> int:
        used = self.hints_used(question.id)
        if used >= len(question.hints):
            raise SessionError(f"No more hints for {question.id}")
        self.hints_revealed[question.id] = used + 1
        return used + 1

    def navigate(self, index: int, quiz: Quiz) -> None:
        if index < 0 or index >= len(quiz.questions):
            raise SessionError(f"Question index out of range: {index}")
        self.current_index = index
        self.visited.add(quiz.questions[index].id)

    def status(self, question_id: str) -> QuestionStatus:
        if question_id in self.flagged:
            return QuestionStatus.FLAGGED
        if question_id in self.done:
            return QuestionStatus.DONE
        if not self.answer_for(question_id).is_empty():
            return QuestionStatus.PARTIAL
        if question_id in self.visited:
            return QuestionStatus.EMPTY
        return QuestionStatus.UNREAD

    def status_counts(self) -> StatusCounts:
        statuses = [self.status(qid) for qid in self.answers]
        unread = statuses.count(QuestionStatus.UNREAD)
        return StatusCounts(
            total=len(statuses),
            complete=statuses.count(QuestionStatus.DONE),
            partial=statuses.count(QuestionStatus.PARTIAL),
            flagged=statuses.count(QuestionStatus.FLAGGED),
            empty=statuses.count(QuestionStatus.EMPTY) + unread,
            unread=unread,
        )

    def to_dict(self, quiz_hash: str) -> MutableMapping[str, Any]:
        """Serialize everything except the answers (stored separately)."""

        return {
            "quiz_hash": quiz_hash,
            "phase": self.phase.value,
            "current_index": self.current_index,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "acknowledgment": (
                self.acknowledgment.to_dict() if self.acknowledgment else None
            ),
            "done": sorted(self.done),
            "flagged": sorted(self.flagged),
            "visited": sorted(self.visited),
            "hints_revealed": dict(sorted(self.hints_revealed.items())),
            "attachment_rules": {
                qid: _constraints_to_dict(rule)
                for qid, rule in sorted(self.attachment_rules.items())
            },
        }

    @classmethod
    def from_dict(
        cls, payload: Mapping[str, Any], answers: dict[str, Answer]
    ) -> "Session":
        try:
            started_raw = payload.get("started_at")
            ack_raw = payload.get("acknowledgment")
            session = cls(
                answers=answers,
                current_index=int(payload["current_index"]),
                done={str(q) for q in payload.get("done", [])},
                flagged={str(q) for q in payload.get("flagged", [])},
                visited={str(q) for q in payload.get("visited", [])},
                hints_revealed={
                    str(q): int(count)
                    for q, count in dict(payload.get("hints_revealed", {})).items()
                },
                acknowledgment=AckRecord.from_dict(ack_raw) if ack_raw else None,
                started_at=(
                    datetime.fromisoformat(str(started_raw)) if started_raw else None
                ),
                attachment_rules={
                    str(q): _constraints_from_dict(rule)
                    for q, rule in dict(payload.get("attachment_rules", {})).items()
                },
                phase=Phase.from_value(str(payload.get("phase", "preamble"))),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise SessionError(f"Invalid session record: {exc}") from exc
        session._drop_unknown_questions()
        return session

    def _drop_unknown_questions(self) -> None:
        known = set(self.answers)
        self.done &= known
        self.flagged &= known
        self.visited &= known
        self.done = {qid for qid in self.done if not self.answers[qid].is_empty()}
        self.flagged -= self.done
        self.hints_revealed = {
            qid: count for qid, count in self.hints_revealed.items() if qid in known
        }
        self.attachment_rules = {
            qid: rule for qid, rule in self.attachment_rules.items() if qid in known
        }
        if self.current_index >= len(self.answers) or self.current_index < 0:
            self.current_index = 0


def answer_to_record(answer: Answer) -> dict[str, Any]:
    record: dict[str, Any] = {"type": answer.kind.value}
    if answer.kind.is_choice:
        record["selected"] = [choice_label(i) for i in sorted(answer.selected)]
    elif answer.kind.is_text:
        record["text"] = answer.text
    else:
        record["files"] = list(answer.files)
    return record


def answer_from_record(record: Mapping[str, Any], question: Question) -> Answer:
    """Rebuild an :class:`Answer`, validating it against ``question``."""

    if not isinstance(record, Mapping):
        raise ValueError(f"{question.id}: answer record must be a mapping")
    kind = QuestionKind.from_value(str(record.get("type", "")))
    if kind is not question.kind:
        raise ValueError(
            f"{question.id}: record type '{kind.value}' does not match "
            f"question type '{question.kind.value}'"
        )
    if kind.is_choice:
        indices = frozenset(choice_index(label) for label in record.get("selected") or [])
        if any(index >= len(question.choices) for index in indices):
            raise ValueError(f"{question.id}: selection outside the choice list")
        return Answer(kind=kind, selected=indices)
    if kind.is_text:
        text = record.get("text") or ""
        if not isinstance(text, str):
            raise ValueError(f"{question.id}: text answer must be a string")
        return Answer(kind=kind, text=text)
    files = record.get("files") or []
    if not isinstance(files, list):
        raise ValueError(f"{question.id}: files must be a list")
    return Answer(kind=kind, files=tuple(str(name) for name in files))


def answers_to_records(
    answers: Mapping[str, Answer], quiz: Quiz
) -> dict[str, dict[str, Any]]:
    return {
        question.id: answer_to_record(
            answers.get(question.id) or Answer.empty(question.kind)
        )
        for question in quiz.questions
    }


def answers_from_records(
    records: Mapping[str, Any], quiz: Quiz
) -> tuple[dict[str, Answer], list[str]]:
    """Return answers for every question plus the ids that were dropped.

    Records for unknown questions, or whose type no longer matches the
    question, are dropped and reported. Missing questions get empty answers.
    """

    answers = {q.id: Answer.empty(q.kind) for q in quiz.questions}
    dropped: list[str] = []
    by_id = {q.id: q for q in quiz.questions}
    for qid, record in records.items():
        question = by_id.get(str(qid))
        if question is None:
            dropped.append(str(qid))
            continue
        try:
            answers[question.id] = answer_from_record(record, question)
        except ValueError:
            dropped.append(question.id)
    return answers, dropped


def _constraints_to_dict(rule: FileConstraints) -> dict[str, Any]:
    return {
        "max_files": rule.max_files,
        "max_size": rule.max_size,
        "accept": list(rule.accept),
    }


def _constraints_from_dict(payload: Mapping[str, Any]) -> FileConstraints:
    max_files = payload.get("max_files")
    max_size = payload.get("max_size")
    return FileConstraints(
        max_files=int(max_files) if max_files is not None else None,
        max_size=int(max_size) if max_size is not None else None,
        accept=tuple(str(ext) for ext in payload.get("accept", [])),
    )
