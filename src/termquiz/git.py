"""Thin wrapper around the ``git`` command line.

Commands run through an injectable ``runner`` so tests can script git's
responses without touching a real repository or the network.
"""

from __future__ import annotations

import logging
import os
import re
import subprocess
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, Sequence

from .errors import TermquizError

__all__ = [
    "GitCommandError",
    "GitResult",
    "GitBackend",
    "PushStatus",
    "PushResult",
    "Runner",
    "RESPONSE_ANSWERS_PATH",
    "classify_push_failure",
    "run_git",
]

RESPONSE_ANSWERS_PATH = "response/answers.yaml"
_COMMAND_TIMEOUT_SECONDS = 120

_CONFLICT_PATTERNS = (
    re.compile(r"\[rejected\]"),
    re.compile(r"\brejected\b", re.IGNORECASE),
    re.compile(r"non-fast-forward", re.IGNORECASE),
    re.compile(r"fetch first", re.IGNORECASE),
)
_NETWORK_PATTERNS = (
    re.compile(r"could not resolve host", re.IGNORECASE),
    re.compile(r"unable to access", re.IGNORECASE),
    re.compile(r"could not read from remote", re.IGNORECASE),
    re.compile(r"connection (?:refused|reset|timed out|closed)", re.IGNORECASE),
    re.compile(r"timed out", re.IGNORECASE),
    re.compile(r"network is unreachable", re.IGNORECASE),
    re.compile(r"the remote end hung up", re.IGNORECASE),
)

logger = logging.getLogger("termquiz.git")


class GitCommandError(TermquizError):
    """A git command exited non-zero or could not be started."""

    def __init__(self, args: Sequence[str], returncode: int, stderr: str) -> None:
        command = " ".join(args)
        detail = stderr.strip() or f"exit status {returncode}"
        super().__init__(f"git {command} failed: {detail}")
        self.args_list = tuple(args)
        self.returncode = returncode
        self.stderr = stderr


@dataclass(frozen=True)
class GitResult:
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0


Runner = Callable[[Sequence[str], Path], GitResult]


class PushStatus(Enum):
    SUCCESS = "success"
    NETWORK = "network"
    CONFLICT = "conflict"
    FATAL = "fatal"


@dataclass(frozen=True)
class PushResult:
    status: PushStatus
    detail: str = ""


def run_git(args: Sequence[str], cwd: Path) -> GitResult:
    """Run ``git`` with ``args`` in ``cwd`` without prompting for credentials."""

    env = dict(os.environ)
    env["GIT_TERMINAL_PROMPT"] = "0"
    try:
        proc = subprocess.run(
            ["git", *args],
            cwd=str(cwd),
            capture_output=True,
            check=False,
            timeout=_COMMAND_TIMEOUT_SECONDS,
            env=env,
        )
    except FileNotFoundError as exc:
        return GitResult(returncode=127, stderr=f"git executable not found: {exc}")
    except subprocess.TimeoutExpired:
        return GitResult(
            returncode=124,
            stderr=f"git {args[0]} timed out after {_COMMAND_TIMEOUT_SECONDS}s",
        )
    return GitResult(
        returncode=proc.returncode,
        stdout=proc.stdout.decode("utf-8", errors="replace"),
        stderr=proc.stderr.decode("utf-8", errors="replace"),
    )


def classify_push_failure(result: GitResult) -> PushStatus:
    if result.ok:
        return PushStatus.SUCCESS
    if result.returncode == 127:
        return PushStatus.FATAL
    output = f"{result.stderr}\n{result.stdout}"
    if any(pattern.search(output) for pattern in _CONFLICT_PATTERNS):
        return PushStatus.CONFLICT
    if result.returncode == 124:
        return PushStatus.NETWORK
    if any(pattern.search(output) for pattern in _NETWORK_PATTERNS):
        return PushStatus.NETWORK
    return PushStatus.FATAL


class GitBackend:
    """Git operations scoped to one working copy."""

    def __init__(self, repo: Path, *, runner: Runner = run_git) -> None:
        self._repo = repo
        self._runner = runner

    @property
    def repo(self) -> Path:
        return self._repo

    @classmethod
    def clone(cls, url: str, dest: Path, *, runner: Runner = run_git) -> "GitBackend":
        dest.parent.mkdir(parents=True, exist_ok=True)
        args = ["clone", url, str(dest)]
        result = runner(args, dest.parent)
        if not result.ok:
            raise GitCommandError(args, result.returncode, result.stderr)
        logger.info("Cloned quiz repository", extra={"url": url, "dest": str(dest)})
        return cls(dest, runner=runner)

    def is_repository(self) -> bool:
        if (self._repo / ".git").exists():
            return True
        result = self._runner(["rev-parse", "--is-inside-work-tree"], self._repo)
        return result.ok and result.stdout.strip() == "true"

    def pull(self) -> None:
        self._check(["pull", "--ff-only"])

    def fetch(self) -> bool:
        result = self._runner(["fetch", "--quiet"], self._repo)
        if not result.ok:
            logger.warning(
                "git fetch failed",
                extra={"repo": str(self._repo), "stderr": result.stderr.strip()},
            )
        return result.ok

    def commit(self, paths: Sequence[str], message: str) -> bool:
        """Stage ``paths`` and commit; return ``False`` when nothing changed."""

        self._check(["add", "--all", "--", *paths])
        staged = self._runner(
            ["diff", "--cached", "--quiet", "--", *paths], self._repo
        )
        if staged.ok:
            return False
        self._check(["commit", "-m", message, "--", *paths])
        return True

    def push(self) -> PushResult:
        result = self._runner(["push"], self._repo)
        status = classify_push_failure(result)
        detail = (result.stderr or result.stdout).strip()
        logger.info(
            "git push finished",
            extra={"repo": str(self._repo), "status": status.value},
        )
        return PushResult(status=status, detail=detail)

    def history_contains_valid_response(self, *, fetch: bool = False) -> bool:
        """Return ``True`` when a pushed commit already holds a response.

        Only remote-tracking refs count: a local commit that never reached
        the remote is not a submission.
        """

        if fetch:
            self.fetch()
        result = self._runner(
            ["log", "--remotes", "--format=%H", "--", RESPONSE_ANSWERS_PATH],
            self._repo,
        )
        if not result.ok:
            logger.warning(
                "Could not inspect submission history",
                extra={"repo": str(self._repo), "stderr": result.stderr.strip()},
            )
            return False
        return bool(result.stdout.strip())

    def _check(self, args: Sequence[str]) -> GitResult:
        result = self._runner(list(args), self._repo)
        if not result.ok:
            raise GitCommandError(args, result.returncode, result.stderr)
        return result
