"""Parse quiz markdown documents into :class:`~termquiz.model.Quiz` values.

A quiz document is a YAML frontmatter block followed by a markdown body::

    ---
    title: Midterm
    start: 2025-01-02T10:00:00-05:00
    end: 2025-01-02T12:00:00-05:00
    acknowledgment:
      required: true
      text: I will work alone.
    ---

    Preamble text.

    ## 1. Pick one
    - [ ] wrong
    - [x] right

    ## 2. Explain
    > long

    :::hint
    Think about ownership.
    :::

The body is scanned line by line so every error can point at a document line.
Fenced code blocks are located with markdown-it-py first; their content is
prompt text and never structure.
"""

from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass, field
from datetime import date, datetime
from pathlib import PurePath
from typing import Any, Mapping, Sequence

import yaml
from markdown_it import MarkdownIt

from .errors import ParseError
from .model import (
    AckConfig,
    Choice,
    FileConstraints,
    Question,
    QuestionKind,
    Quiz,
    choice_label,
)

__all__ = [
    "parse_quiz",
    "parse_size",
    "content_hash",
]

_FENCE_MARKERS = ("---", "...")
_SEPARATOR_RE = re.compile(r"^(?:-{3,}|\*{3,}|_{3,})$")
_H1_RE = re.compile(r"^#(?!#)\s+(?P<text>.+?)\s*#*\s*$")
_H2_RE = re.compile(r"^##(?!#)\s*(?P<text>.*?)\s*#*\s*$")
_HEADING_TEXT_RE = re.compile(r"^(?P<number>\d+)\.\s*(?P<title>.*)$")
_CHOICE_RE = re.compile(r"^\s*[-*+]\s+\[(?P<mark>[ xX])\]\s*(?P<text>.*)$")
_QUOTE_RE = re.compile(r"^\s*>\s?(?P<content>.*)$")
_FILE_DIRECTIVE_RE = re.compile(
    r"^file\s*(?:\((?P<params>[^()]*)\))?$", re.IGNORECASE
)
_SIZE_RE = re.compile(r"^(?P<amount>\d+)\s*(?P<unit>[KMG]?B)?$", re.IGNORECASE)
_HINT_OPEN = ":::hint"
_HINT_CLOSE = ":::"

_SIZE_FACTORS = {
    "B": 1,
    "KB": 1024,
    "MB": 1024**2,
    "GB": 1024**3,
}

_markdown = MarkdownIt("commonmark")


@dataclass
class _QuestionDraft:
    number: int
    title: str
    line: int
    body: list[str] = field(default_factory=list)
    choices: list[Choice] = field(default_factory=list)
    directive: QuestionKind | None = None
    directive_line: int = 0
    constraints: FileConstraints | None = None
    hints: list[str] = field(default_factory=list)


def content_hash(data: bytes) -> str:
    """Return the ``sha256:<hex>`` digest of the raw quiz bytes."""

    return "sha256:" + hashlib.sha256(data).hexdigest()


def parse_quiz(data: bytes, quiz_file: str) -> Quiz:
    """Parse ``data`` into a :class:`Quiz`.

    Raises :class:`ParseError` carrying the 1-based document line of the
    first problem found.
    """

    try:
        text = data.decode("utf-8-sig")
    except UnicodeDecodeError as exc:
        raise ParseError(1, "Quiz file is not valid UTF-8") from exc

    lines = text.splitlines()
    open_idx, close_idx = _locate_frontmatter(lines)
    frontmatter = _load_frontmatter(lines, open_idx, close_idx)
    fm_lines = lines[open_idx + 1 : close_idx]
    fm_offset = open_idx + 2

    start = _coerce_timestamp(frontmatter, "start", fm_lines, fm_offset, open_idx + 1)
    end = _coerce_timestamp(frontmatter, "end", fm_lines, fm_offset, open_idx + 1)
    if end <= start:
        raise ParseError(
            _key_line(fm_lines, "end", fm_offset, open_idx + 1),
            "'end' must be later than 'start'",
        )
    acknowledgment = _coerce_acknowledgment(
        frontmatter, fm_lines, fm_offset, open_idx + 1
    )

    heading, preamble, questions = _parse_body(lines, close_idx + 1)

    title = frontmatter.get("title")
    if title is not None and not isinstance(title, str):
        title = str(title)
    resolved_title = (title or "").strip() or heading or PurePath(quiz_file).stem

    return Quiz(
        title=resolved_title,
        preamble=preamble,
        questions=tuple(questions),
        start=start,
        end=end,
        quiz_file=quiz_file,
        quiz_hash=content_hash(data),
        acknowledgment=acknowledgment,
    )


def parse_size(value: str) -> int:
    """Parse ``5MB`` style sizes into bytes (1024-based units)."""

    match = _SIZE_RE.match(value.strip())
    if not match:
        raise ValueError(f"Invalid size '{value}'")
    unit = (match.group("unit") or "B").upper()
    return int(match.group("amount")) * _SIZE_FACTORS[unit]


def _locate_frontmatter(lines: Sequence[str]) -> tuple[int, int]:
    open_idx = 0
    while open_idx < len(lines) and not lines[open_idx].strip():
        open_idx += 1
    if open_idx >= len(lines) or lines[open_idx].strip() != "---":
        raise ParseError(
            open_idx + 1 if open_idx < len(lines) else 1,
            "Quiz file must start with a YAML frontmatter block (---)",
        )
    for idx in range(open_idx + 1, len(lines)):
        if lines[idx].strip() in _FENCE_MARKERS:
            return open_idx, idx
    raise ParseError(open_idx + 1, "Frontmatter block is not closed with ---")


def _load_frontmatter(
    lines: Sequence[str], open_idx: int, close_idx: int
) -> Mapping[str, Any]:
    raw = "\n".join(lines[open_idx + 1 : close_idx])
    try:
        loaded = yaml.safe_load(raw)
    except yaml.YAMLError as exc:
        mark = getattr(exc, "problem_mark", None)
        line = open_idx + 2 + mark.line if mark is not None else open_idx + 1
        problem = getattr(exc, "problem", None) or str(exc)
        raise ParseError(line, f"Invalid frontmatter: {problem}") from exc
    if loaded is None:
        return {}
    if not isinstance(loaded, Mapping):
        raise ParseError(open_idx + 1, "Frontmatter must be a YAML mapping")
    return loaded


def _key_line(
    fm_lines: Sequence[str], key: str, offset: int, fallback: int
) -> int:
    pattern = re.compile(rf"^\s*{re.escape(key)}\s*:")
    for idx, line in enumerate(fm_lines):
        if pattern.match(line):
            return offset + idx
    return fallback


def _coerce_timestamp(
    frontmatter: Mapping[str, Any],
    key: str,
    fm_lines: Sequence[str],
    offset: int,
    fallback: int,
) -> datetime:
    line = _key_line(fm_lines, key, offset, fallback)
    if key not in frontmatter or frontmatter[key] is None:
        raise ParseError(line, f"Missing required frontmatter field '{key}'")
    value = frontmatter[key]
    if isinstance(value, datetime):
        moment = value
    elif isinstance(value, date):
        raise ParseError(line, f"'{key}' must include a time and timezone offset")
    elif isinstance(value, str):
        try:
            moment = datetime.fromisoformat(value.strip())
        except ValueError as exc:
            raise ParseError(line, f"'{key}' is not a valid timestamp: {value!r}") from exc
    else:
        raise ParseError(line, f"'{key}' is not a valid timestamp: {value!r}")
    if moment.tzinfo is None or moment.utcoffset() is None:
        raise ParseError(line, f"'{key}' must include a timezone offset")
    return moment


def _coerce_acknowledgment(
    frontmatter: Mapping[str, Any],
    fm_lines: Sequence[str],
    offset: int,
    fallback: int,
) -> AckConfig | None:
    raw = frontmatter.get("acknowledgment")
    if raw is None:
        return None
    line = _key_line(fm_lines, "acknowledgment", offset, fallback)
    if not isinstance(raw, Mapping):
        raise ParseError(line, "'acknowledgment' must be a mapping")
    required = raw.get("required", False)
    if not isinstance(required, bool):
        raise ParseError(
            _key_line(fm_lines, "required", offset, line),
            "'acknowledgment.required' must be true or false",
        )
    text = raw.get("text")
    if text is not None and not isinstance(text, str):
        text = str(text)
    if required and not (text or "").strip():
        raise ParseError(
            line,
            "'acknowledgment.text' is required when acknowledgment is required",
        )
    return AckConfig(required=required, text=text.strip() if text else None)


def _fenced_lines(lines: Sequence[str], offset: int) -> set[int]:
    covered: set[int] = set()
    for token in _markdown.parse("\n".join(lines)):
        if token.type == "fence" and token.map:
            start, end = token.map
            covered.update(range(offset + start, offset + end))
    return covered


def _parse_body(
    lines: Sequence[str], body_start: int
) -> tuple[str | None, str, list[Question]]:
    fenced = _fenced_lines(lines[body_start:], body_start)
    heading: str | None = None
    preamble: list[str] = []
    questions: list[Question] = []
    current: _QuestionDraft | None = None
    hint_lines: list[str] | None = None
    hint_target: list[str] = []
    hint_open = 0

    for idx in range(body_start, len(lines)):
        raw = lines[idx]
        lineno = idx + 1
        stripped = raw.strip()

        if idx in fenced:
            if hint_lines is not None:
                hint_lines.append(raw)
            elif current is not None:
                current.body.append(raw)
            else:
                preamble.append(raw)
            continue

        if hint_lines is not None:
            if stripped == _HINT_CLOSE:
                hint = "\n".join(hint_lines).strip()
                if not hint:
                    raise ParseError(hint_open, "Hint block is empty")
                hint_target.append(hint)
                hint_lines = None
            elif stripped.startswith(_HINT_OPEN):
                raise ParseError(lineno, "Hint blocks cannot be nested")
            else:
                hint_lines.append(raw)
            continue

        if _SEPARATOR_RE.match(stripped):
            continue

        if stripped.startswith(_HINT_OPEN):
            if current is None:
                raise ParseError(lineno, "Hint block appears before the first question")
            hint_lines = []
            hint_target = current.hints
            hint_open = lineno
            continue
        if stripped == _HINT_CLOSE:
            raise ParseError(lineno, "Closing ::: without an open hint block")

        h2 = _H2_RE.match(raw)
        if h2:
            if current is not None:
                questions.append(_finalize(current))
            current = _open_question(h2.group("text"), lineno, len(questions) + 1)
            continue

        if current is None:
            h1 = _H1_RE.match(raw)
            if h1 and heading is None:
                heading = h1.group("text")
                continue
            preamble.append(raw)
            continue

        choice = _CHOICE_RE.match(raw)
        if choice:
            if current.directive is not None:
                raise ParseError(
                    lineno,
                    f"Question {current.number} mixes choices with an answer directive",
                )
            if len(current.choices) >= 26:
                raise ParseError(lineno, "Questions support at most 26 choices")
            current.choices.append(
                Choice(
                    label=choice_label(len(current.choices)),
                    text=choice.group("text").strip(),
                    marked=choice.group("mark") in ("x", "X"),
                )
            )
            continue

        quote = _QUOTE_RE.match(raw)
        if quote and _apply_directive(current, quote.group("content").strip(), lineno):
            continue

        current.body.append(raw)

    if hint_lines is not None:
        raise ParseError(hint_open, "Hint block is never closed with :::")
    if current is not None:
        questions.append(_finalize(current))
    if not questions:
        raise ParseError(
            max(len(lines), 1),
            "Quiz has no questions (expected '## 1. Title' headings)",
        )
    return heading, _join_block(preamble), questions


def _open_question(text: str, lineno: int, expected: int) -> _QuestionDraft:
    match = _HEADING_TEXT_RE.match(text)
    if not match:
        raise ParseError(
            lineno,
            f"Question heading must look like '## N. Title', got '## {text}'",
        )
    number = int(match.group("number"))
    if number != expected:
        raise ParseError(
            lineno,
            f"Question numbering error: expected {expected}, found {number}",
        )
    title = match.group("title").strip()
    if not title:
        raise ParseError(lineno, f"Question {number} has no title")
    return _QuestionDraft(number=number, title=title, line=lineno)


def _apply_directive(draft: _QuestionDraft, content: str, lineno: int) -> bool:
    """Record an answer directive; return False for ordinary quote text."""

    lowered = content.lower()
    if lowered in ("short", "long"):
        kind = QuestionKind.SHORT if lowered == "short" else QuestionKind.LONG
        constraints = None
    elif lowered == "file" or re.match(r"^file\s*\(", lowered):
        kind = QuestionKind.FILE
        constraints = _parse_file_directive(content, lineno)
    elif re.match(r"^(short|long)\s*\(", lowered):
        raise ParseError(lineno, f"'{content.split('(')[0].strip()}' takes no parameters")
    else:
        return False

    if draft.choices:
        raise ParseError(
            lineno,
            f"Question {draft.number} mixes choices with an answer directive",
        )
    if draft.directive is not None:
        raise ParseError(
            lineno,
            f"Question {draft.number} already has an answer directive "
            f"on line {draft.directive_line}",
        )
    draft.directive = kind
    draft.directive_line = lineno
    draft.constraints = constraints
    return True


def _parse_file_directive(content: str, lineno: int) -> FileConstraints:
    match = _FILE_DIRECTIVE_RE.match(content.strip())
    if not match:
        raise ParseError(
            lineno,
            "Malformed file directive; expected 'file(key: value, ...)'",
        )
    params = (match.group("params") or "").strip()
    if not params:
        return FileConstraints()

    values: dict[str, Any] = {}
    for part in params.split(","):
        key, sep, value = part.partition(":")
        key = key.strip().lower()
        value = value.strip()
        if not sep or not key or not value:
            raise ParseError(
                lineno, f"Malformed file parameter '{part.strip()}'; expected key: value"
            )
        if key in values:
            raise ParseError(lineno, f"Duplicate file parameter '{key}'")
        if key == "max_files":
            if not value.isdigit() or int(value) < 1:
                raise ParseError(lineno, f"max_files must be a positive integer, got '{value}'")
            values[key] = int(value)
        elif key == "max_size":
            try:
                values[key] = parse_size(value)
            except ValueError as exc:
                raise ParseError(
                    lineno, f"max_size must look like 500KB, 5MB or 1GB, got '{value}'"
                ) from exc
        elif key == "accept":
            values[key] = tuple(_normalize_extension(ext) for ext in value.split())
        else:
            raise ParseError(lineno, f"Unknown file parameter '{key}'")

    return FileConstraints(
        max_files=values.get("max_files"),
        max_size=values.get("max_size"),
        accept=values.get("accept", ()),
    )


def _normalize_extension(raw: str) -> str:
    ext = raw.strip().lower().lstrip("*")
    if not ext.startswith("."):
        ext = "." + ext
    return ext


def _finalize(draft: _QuestionDraft) -> Question:
    if draft.choices:
        marked = sum(1 for choice in draft.choices if choice.marked)
        kind = QuestionKind.MULTI if marked > 1 else QuestionKind.SINGLE
    elif draft.directive is not None:
        kind = draft.directive
    else:
        raise ParseError(
            draft.line,
            f"Question {draft.number} has no choices and no answer directive "
            "(> short, > long or > file(...))",
        )
    return Question(
        number=draft.number,
        title=draft.title,
        body=_join_block(draft.body),
        kind=kind,
        choices=tuple(draft.choices),
        constraints=draft.constraints if kind is QuestionKind.FILE else None,
        hints=tuple(draft.hints),
    )


def _join_block(lines: Sequence[str]) -> str:
    return "\n".join(lines).strip("\n").rstrip()
