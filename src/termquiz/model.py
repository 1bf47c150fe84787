"""Immutable value types describing a parsed quiz and its answers."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

__all__ = [
    "QuestionKind",
    "Choice",
    "FileConstraints",
    "AckConfig",
    "Question",
    "Quiz",
    "Answer",
    "choice_label",
    "choice_index",
]


class QuestionKind(Enum):
    """Closed set of question types; also the ``type`` tag in records."""

    SINGLE = "single"
    MULTI = "multi"
    SHORT = "short"
    LONG = "long"
    FILE = "file"

    @property
    def is_choice(self) -> bool:
        return self in (QuestionKind.SINGLE, QuestionKind.MULTI)

    @property
    def is_text(self) -> bool:
        return self in (QuestionKind.SHORT, QuestionKind.LONG)

    @classmethod
    def from_value(cls, value: str) -> "QuestionKind":
        normalized = str(value).strip().lower()
        for member in cls:
            if member.value == normalized:
                return member
        expected = ", ".join(member.value for member in cls)
        raise ValueError(
            f"Unknown question type '{value}'. Expected one of: {expected}."
        )


def choice_label(index: int) -> str:
    """Return the letter label (``a``, ``b``, ...) for a choice index."""

    if index < 0 or index >= 26:
        raise ValueError(f"Choice index out of range: {index}")
    return chr(ord("a") + index)


def choice_index(label: str) -> int:
    normalized = str(label).strip().lower()
    if len(normalized) != 1 or not "a" <= normalized <= "z":
        raise ValueError(f"Invalid choice label: {label!r}")
    return ord(normalized) - ord("a")


@dataclass(frozen=True)
class Choice:
    """One ``- [ ]`` line. ``marked`` is authoring reference only."""

    label: str
    text: str
    marked: bool = False


@dataclass(frozen=True)
class FileConstraints:
    max_files: int | None = None
    max_size: int | None = None
    accept: tuple[str, ...] = ()

    def accepts_extension(self, name: str) -> bool:
        if not self.accept:
            return True
        lowered = name.lower()
        return any(lowered.endswith(ext) for ext in self.accept)

    def describe(self) -> str:
        parts: list[str] = []
        if self.max_files is not None:
            parts.append(f"max {self.max_files} file(s)")
        if self.max_size is not None:
            parts.append(f"max {_format_size(self.max_size)} each")
        if self.accept:
            parts.append("accepts " + " ".join(self.accept))
        return ", ".join(parts) or "any file"


@dataclass(frozen=True)
class AckConfig:
    required: bool = False
    text: str | None = None


@dataclass(frozen=True)
class Question:
    number: int
    title: str
    body: str
    kind: QuestionKind
    choices: tuple[Choice, ...] = ()
    constraints: FileConstraints | None = None
    hints: tuple[str, ...] = ()

    @property
    def id(self) -> str:
        return f"q{self.number}"


@dataclass(frozen=True)
class Quiz:
    title: str
    preamble: str
    questions: tuple[Question, ...]
    start: datetime
    end: datetime
    quiz_file: str
    quiz_hash: str
    acknowledgment: AckConfig | None = None

    @property
    def requires_acknowledgment(self) -> bool:
        return bool(self.acknowledgment and self.acknowledgment.required)

    @property
    def question_ids(self) -> tuple[str, ...]:
        return tuple(question.id for question in self.questions)

    def question(self, question_id: str) -> Question:
        for question in self.questions:
            if question.id == question_id:
                return question
        raise KeyError(f"Unknown question id '{question_id}'.")


@dataclass(frozen=True)
class Answer:
    """A response whose populated field always matches ``kind``.

    Choice kinds use ``selected`` (choice indices), text kinds use ``text``
    and file questions use ``files`` (attachment names).
    """

    kind: QuestionKind
    selected: frozenset[int] = field(default_factory=frozenset)
    text: str = ""
    files: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if not isinstance(self.selected, frozenset):
            object.__setattr__(self, "selected", frozenset(self.selected))
        if not isinstance(self.files, tuple):
            object.__setattr__(self, "files", tuple(self.files))
        if self.selected and not self.kind.is_choice:
            raise ValueError(f"{self.kind.value} answers cannot hold selections")
        if self.text and not self.kind.is_text:
            raise ValueError(f"{self.kind.value} answers cannot hold text")
        if self.files and self.kind is not QuestionKind.FILE:
            raise ValueError(f"{self.kind.value} answers cannot hold files")
        if self.kind is QuestionKind.SINGLE and len(self.selected) > 1:
            raise ValueError("single choice answers hold at most one selection")

    @classmethod
    def empty(cls, kind: QuestionKind) -> "Answer":
        return cls(kind=kind)

    def is_empty(self) -> bool:
        if self.kind.is_choice:
            return not self.selected
        if self.kind.is_text:
            return not self.text.strip()
        return not self.files


def _format_size(size: int) -> str:
    for unit, factor in (("GB", 1024**3), ("MB", 1024**2), ("KB", 1024)):
        if size >= factor and size % factor == 0:
            return f"{size // factor}{unit}"
    return f"{size}B"
