"""Crash-safe persistence of in-progress quiz sessions.

Each quiz gets its own directory under ``<state home>/sessions`` named after
a hash of the resolved quiz path::

    <key>/session.json        navigation, flags, acknowledgment, timestamps
    <key>/answers.json        answers record, same shape as answers.yaml
    <key>/files/q<n>/<name>   staged attachment copies

Every record is written to a temp file in the same directory, fsynced and
moved into place, so a crash leaves either the old or the new version.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import shutil
import tempfile
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Mapping

import yaml

from .errors import PersistenceCorruptError, SessionError
from .model import Quiz
from .session import Session, answers_from_records, answers_to_records

__all__ = [
    "LoadStatus",
    "LoadResult",
    "SessionStore",
    "session_key",
]

_SESSION_FILENAME = "session.json"
_ANSWERS_FILENAME = "answers.json"
_FILES_DIRNAME = "files"

logger = logging.getLogger("termquiz.store")


class LoadStatus(Enum):
    RESTORED = "restored"
    NOT_FOUND = "not_found"
    CORRUPT = "corrupt"


@dataclass(frozen=True)
class LoadResult:
    status: LoadStatus
    session: Session | None = None
    error: str | None = None
    dropped: tuple[str, ...] = ()

    def require(self) -> Session | None:
        """Return the restored session, ``None`` when absent, raise if corrupt."""

        if self.status is LoadStatus.CORRUPT:
            raise PersistenceCorruptError(self.error or "Saved session is corrupt")
        return self.session


def session_key(quiz_path: Path) -> str:
    resolved = str(Path(quiz_path).expanduser().resolve())
    return hashlib.sha256(resolved.encode("utf-8")).hexdigest()[:16]


class SessionStore:
    """Save, load and clear the session for one quiz file."""

    def __init__(self, sessions_root: Path, quiz_path: Path) -> None:
        self._root = sessions_root
        self._quiz_path = Path(quiz_path)
        self._directory = sessions_root / session_key(quiz_path)

    @property
    def directory(self) -> Path:
        return self._directory

    @property
    def attachments_dir(self) -> Path:
        return self._directory / _FILES_DIRNAME

    def exists(self) -> bool:
        return (self._directory / _SESSION_FILENAME).exists()

    def save(self, session: Session, quiz: Quiz) -> None:
        self._directory.mkdir(parents=True, exist_ok=True)
        _atomic_write_json(
            self._directory / _ANSWERS_FILENAME,
            answers_to_records(session.answers, quiz),
        )
        _atomic_write_json(
            self._directory / _SESSION_FILENAME,
            session.to_dict(quiz.quiz_hash),
        )

    def load(self, quiz: Quiz) -> LoadResult:
        session_file = self._directory / _SESSION_FILENAME
        answers_file = self._directory / _ANSWERS_FILENAME
        if not session_file.exists():
            if answers_file.exists():
                return LoadResult(
                    status=LoadStatus.CORRUPT,
                    error=f"Session file missing next to {answers_file}",
                )
            return LoadResult(status=LoadStatus.NOT_FOUND)

        try:
            payload = _read_json(session_file)
            records = _read_json(answers_file) if answers_file.exists() else {}
        except PersistenceCorruptError as exc:
            return LoadResult(status=LoadStatus.CORRUPT, error=str(exc))

        stored_hash = payload.get("quiz_hash")
        if stored_hash != quiz.quiz_hash:
            logger.warning(
                "Quiz changed since the session was saved",
                extra={
                    "quiz_file": quiz.quiz_file,
                    "stored_hash": stored_hash,
                    "quiz_hash": quiz.quiz_hash,
                },
            )

        answers, dropped = answers_from_records(records, quiz)
        if dropped:
            logger.warning(
                "Dropped saved answers that no longer match the quiz",
                extra={"quiz_file": quiz.quiz_file, "questions": dropped},
            )
        try:
            session = Session.from_dict(payload, answers)
        except SessionError as exc:
            return LoadResult(status=LoadStatus.CORRUPT, error=str(exc))
        return LoadResult(
            status=LoadStatus.RESTORED, session=session, dropped=tuple(dropped)
        )

    def clear(self) -> bool:
        if not self._directory.exists():
            return False
        shutil.rmtree(self._directory)
        logger.info(
            "Cleared saved session",
            extra={"directory": str(self._directory)},
        )
        return True

    def attachment_path(self, question_id: str, name: str) -> Path:
        return self.attachments_dir / question_id / name

    def stage_attachment(self, question_id: str, source: Path) -> Path:
        """Copy ``source`` into the store, replacing a same-named copy."""

        target = self.attachment_path(question_id, source.name)
        target.parent.mkdir(parents=True, exist_ok=True)
        handle = tempfile.NamedTemporaryFile(
            "wb", delete=False, dir=str(target.parent), prefix=".staging-"
        )
        try:
            with source.open("rb") as reader:
                shutil.copyfileobj(reader, handle)
            handle.flush()
            os.fsync(handle.fileno())
        except OSError:
            handle.close()
            Path(handle.name).unlink(missing_ok=True)
            raise
        handle.close()
        os.replace(handle.name, target)
        return target

    def remove_attachment(self, question_id: str, name: str) -> None:
        self.attachment_path(question_id, name).unlink(missing_ok=True)

    def export_answers(self, session: Session, quiz: Quiz, path: Path) -> Path:
        """Write the answers record for ``session`` as YAML to ``path``."""

        document = {
            "quiz_file": quiz.quiz_file,
            "quiz_hash": quiz.quiz_hash,
            "answers": answers_to_records(session.answers, quiz),
        }
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(
            yaml.safe_dump(document, sort_keys=False, allow_unicode=True),
            encoding="utf-8",
        )
        return path


def _read_json(path: Path) -> Mapping[str, Any]:
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise PersistenceCorruptError(f"Failed to read {path}: {exc}") from exc
    if not isinstance(payload, Mapping):
        raise PersistenceCorruptError(f"Expected a JSON object in {path}")
    return payload


def _atomic_write_json(path: Path, payload: Mapping[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    handle = tempfile.NamedTemporaryFile(
        "w",
        delete=False,
        encoding="utf-8",
        dir=str(path.parent),
    )
    try:
        json.dump(payload, handle, indent=2, sort_keys=True)
        handle.flush()
        os.fsync(handle.fileno())
    except (OSError, TypeError, ValueError):
        handle.close()
        Path(handle.name).unlink(missing_ok=True)
        raise
    handle.close()
    os.replace(handle.name, path)
    try:
        path.chmod(0o600)
    except PermissionError:  # pragma: no cover - depends on filesystem
        pass
