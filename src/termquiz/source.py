"""Locate the quiz file from a path, a directory or a git URL."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping

from .errors import SourceResolutionError
from .git import GitBackend, GitCommandError, Runner, run_git

__all__ = [
    "ResolvedSource",
    "resolve_source",
    "is_git_url",
    "find_quiz_file",
    "default_clone_dir",
    "repo_name_from_url",
]

_DEFAULT_CLONE_ROOT = "termquiz-exams"
_IGNORED_MARKDOWN = {"readme.md", "changelog.md", "license.md", "contributing.md"}

logger = logging.getLogger("termquiz.source")


@dataclass(frozen=True)
class ResolvedSource:
    repo_dir: Path
    quiz_path: Path
    cloned: bool = False

    @property
    def quiz_file(self) -> str:
        return self.quiz_path.name


def is_git_url(value: str) -> bool:
    text = value.strip()
    return (
        text.startswith(("git@", "https://", "http://", "ssh://", "git://"))
        or text.endswith(".git")
    ) and not Path(text).exists()


def repo_name_from_url(url: str) -> str:
    tail = url.rstrip("/").rsplit("/", 1)[-1].rsplit(":", 1)[-1]
    name = tail[:-4] if tail.endswith(".git") else tail
    return name or "repo"


def default_clone_dir(
    url: str,
    *,
    clone_root: Path | None = None,
    env: Mapping[str, str] | None = None,
) -> Path:
    if clone_root is None:
        env_map = os.environ if env is None else env
        home = env_map.get("HOME") or str(Path.home())
        clone_root = Path(home) / _DEFAULT_CLONE_ROOT
    return clone_root.expanduser() / repo_name_from_url(url)


def find_quiz_file(directory: Path) -> Path:
    """Return the single quiz ``.md`` file in ``directory``.

    Common repository documents (README, CHANGELOG, ...) are ignored.
    """

    try:
        entries = sorted(directory.iterdir())
    except OSError as exc:
        raise SourceResolutionError(f"Cannot read directory {directory}: {exc}") from exc
    candidates = [
        entry
        for entry in entries
        if entry.is_file()
        and entry.suffix.lower() == ".md"
        and entry.name.lower() not in _IGNORED_MARKDOWN
    ]
    if not candidates:
        raise SourceResolutionError(f"No .md quiz files found in {directory}")
    if len(candidates) > 1:
        names = "\n".join(f"  - {entry.name}" for entry in candidates)
        raise SourceResolutionError(
            f"Multiple .md files found in {directory}. Specify which one:\n{names}"
        )
    return candidates[0]


def resolve_source(
    source: str,
    *,
    clone_to: Path | None = None,
    clone_root: Path | None = None,
    cwd: Path | None = None,
    runner: Runner = run_git,
) -> ResolvedSource:
    """Resolve ``source`` to a repository directory and a quiz file.

    Git URLs are cloned into ``clone_to`` (default ``~/termquiz-exams/<repo>``)
    or fast-forwarded when that directory already holds a clone.
    """

    if is_git_url(source):
        return _resolve_url(
            source, clone_to=clone_to, clone_root=clone_root, runner=runner
        )

    path = Path(source).expanduser()
    if not path.is_absolute():
        path = (cwd or Path.cwd()) / path
    path = path.resolve()
    if path.is_file():
        if path.suffix.lower() != ".md":
            raise SourceResolutionError(f"Quiz file must be a .md file: {path}")
        return ResolvedSource(repo_dir=path.parent, quiz_path=path)
    if path.is_dir():
        return ResolvedSource(repo_dir=path, quiz_path=find_quiz_file(path))
    raise SourceResolutionError(f"Path not found: {path}")


def _resolve_url(
    url: str,
    *,
    clone_to: Path | None,
    clone_root: Path | None,
    runner: Runner,
) -> ResolvedSource:
    target = (clone_to or default_clone_dir(url, clone_root=clone_root)).expanduser()
    cloned = False
    try:
        if target.exists():
            backend = GitBackend(target, runner=runner)
            if not (target / ".git").exists():
                raise SourceResolutionError(
                    f"Directory {target} exists but is not a git repository"
                )
            backend.pull()
            logger.info("Updated quiz repository", extra={"repo": str(target)})
        else:
            GitBackend.clone(url, target, runner=runner)
            cloned = True
    except GitCommandError as exc:
        raise SourceResolutionError(str(exc)) from exc
    return ResolvedSource(
        repo_dir=target.resolve(), quiz_path=find_quiz_file(target).resolve(), cloned=cloned
    )
