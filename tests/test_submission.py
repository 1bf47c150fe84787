from __future__ import annotations

import queue
import threading
from datetime import datetime, timezone

import pytest
import yaml

from fixtures import FATAL_FAILURE, NETWORK_FAILURE, REJECTED, FakeGit
from termquiz import submission
from termquiz.errors import AttachmentError, AttachmentReason, PushError, PushErrorKind
from termquiz.git import GitBackend, GitResult
from termquiz.model import Answer, FileConstraints, QuestionKind
from termquiz.session import AckRecord, Session
from termquiz.submission import PushEventKind, RetryPolicy, SubmissionPipeline

STARTED = datetime(2025, 1, 2, 15, 5, tzinfo=timezone.utc)
SUBMITTED = datetime(2025, 1, 2, 16, 40, tzinfo=timezone.utc)


@pytest.fixture
def attachments_dir(tmp_path):
    return tmp_path / "state" / "files"


@pytest.fixture
def answered(quiz, attachments_dir):
    state = Session.fresh(quiz)
    state.started_at = STARTED
    state.set_answer("q1", Answer(kind=QuestionKind.SINGLE, selected={1}))
    state.mark_done("q1")
    state.set_answer("q2", Answer(kind=QuestionKind.MULTI, selected={0, 1}))
    state.set_answer("q3", Answer(kind=QuestionKind.SHORT, text="--lib"))
    state.set_answer(
        "q4", Answer(kind=QuestionKind.LONG, text="The result borrows from x or y.")
    )
    state.reveal_hint(quiz.question("q4"))

    staged = attachments_dir / "q5" / "main.rs"
    staged.parent.mkdir(parents=True)
    staged.write_text("fn main() {}\n", encoding="utf-8")
    state.set_answer("q5", Answer(kind=QuestionKind.FILE, files=("main.rs",)))
    state.attachment_rules["q5"] = quiz.question("q5").constraints
    return state


def _bundle(state, quiz, attachments_dir, **kwargs):
    return submission.build_bundle(
        state,
        quiz,
        attachments_dir=attachments_dir,
        submitted_at=SUBMITTED,
        tool_version="0.3.0",
        **kwargs,
    )


def _pipeline(repo, runner, clock=None, **kwargs):
    if clock is not None:
        kwargs.setdefault("clock", clock.monotonic)
        kwargs.setdefault("sleep", clock.sleep)
    return SubmissionPipeline(GitBackend(repo, runner=runner), **kwargs)


def _stage_notes(attachments_dir, state):
    notes = attachments_dir / "q5" / "notes.txt"
    notes.write_text("scratch\n", encoding="utf-8")
    state.set_answer(
        "q5", Answer(kind=QuestionKind.FILE, files=("main.rs", "notes.txt"))
    )


def test_bundle_answers_roundtrip(answered, quiz, attachments_dir):
    bundle = _bundle(answered, quiz, attachments_dir)
    loaded = submission.load_answers(bundle.answers_yaml, quiz)
    assert loaded == dict(bundle.answers)
    assert loaded["q2"].selected == frozenset({0, 1})

    document = yaml.safe_load(bundle.answers_yaml)
    assert list(document) == ["q1", "q2", "q3", "q4", "q5"]
    assert document["q1"] == {"type": "single", "selected": ["b"]}
    assert document["q5"] == {"type": "file", "files": ["main.rs"]}


def test_bundle_meta(answered, quiz, attachments_dir):
    answered.acknowledgment = AckRecord(
        name="Ada Lovelace", agreed_at=STARTED, text_hash="sha256:abc"
    )
    bundle = _bundle(answered, quiz, attachments_dir)
    meta = yaml.safe_load(bundle.meta_yaml)
    assert meta["quiz_file"] == "sample_quiz.md"
    assert meta["quiz_hash"] == quiz.quiz_hash
    assert meta["started_at"] == STARTED.isoformat()
    assert meta["submitted_at"] == SUBMITTED.isoformat()
    assert meta["termquiz_version"] == "0.3.0"
    assert meta["acknowledgment"]["name"] == "Ada Lovelace"
    assert meta["hints_used"] == {"q4": 1}
    assert "rejected_attachments" not in meta
    assert bundle.attachments[0].relative_path == "files/q5/main.rs"


def test_bundle_without_acknowledgment_omits_it(answered, quiz, attachments_dir):
    meta = yaml.safe_load(_bundle(answered, quiz, attachments_dir).meta_yaml)
    assert "acknowledgment" not in meta


def test_commit_message(answered, quiz, attachments_dir):
    bundle = _bundle(answered, quiz, attachments_dir)
    assert bundle.commit_message == (
        "termquiz: submit sample_quiz.md\n"
        "\n"
        f"Started: {STARTED.isoformat()}\n"
        f"Submitted: {SUBMITTED.isoformat()}\n"
        "Questions: 5 (1 complete, 4 partial, 0 flagged, 0 empty)"
    )


def test_commit_message_without_start(quiz):
    counts = Session.fresh(quiz).status_counts()
    message = submission.build_commit_message("q.md", counts, None, SUBMITTED)
    assert "Started: unknown" in message
    assert message.endswith("(0 complete, 0 partial, 0 flagged, 5 empty)")


def test_strict_bundle_rejects_bad_attachment(answered, quiz, attachments_dir):
    _stage_notes(attachments_dir, answered)
    with pytest.raises(AttachmentError) as excinfo:
        _bundle(answered, quiz, attachments_dir)
    assert excinfo.value.reason is AttachmentReason.WRONG_TYPE
    assert str(excinfo.value).startswith("q5: ")


def test_lenient_bundle_leaves_bad_attachment_out(answered, quiz, attachments_dir):
    _stage_notes(attachments_dir, answered)
    bundle = _bundle(answered, quiz, attachments_dir, strict=False)
    assert bundle.answers["q5"].files == ("main.rs",)
    assert [item.name for item in bundle.rejected] == ["notes.txt"]
    meta = yaml.safe_load(bundle.meta_yaml)
    assert meta["rejected_attachments"] == [
        {"question": "q5", "name": "notes.txt", "reason": "wrong_type"}
    ]


def test_missing_staged_copy_is_rejected(answered, quiz, attachments_dir):
    (attachments_dir / "q5" / "main.rs").unlink()
    with pytest.raises(AttachmentError) as excinfo:
        _bundle(answered, quiz, attachments_dir)
    assert excinfo.value.reason is AttachmentReason.MISSING


def test_bundle_uses_rule_recorded_at_attach_time(answered, quiz, attachments_dir):
    _stage_notes(attachments_dir, answered)
    answered.attachment_rules["q5"] = FileConstraints(accept=(".rs", ".txt"))
    bundle = _bundle(answered, quiz, attachments_dir)
    assert bundle.answers["q5"].files == ("main.rs", "notes.txt")


def test_load_answers_rejects_mismatched_document(quiz):
    with pytest.raises(ValueError):
        submission.load_answers("q1: {type: short, text: x}\n", quiz)
    with pytest.raises(ValueError):
        submission.load_answers("- just\n- a list\n", quiz)


def test_retry_policy_delays():
    policy = RetryPolicy()
    assert [policy.delay(n) for n in range(1, 8)] == [2, 4, 8, 16, 30, 30, 30]


def test_write_bundle_replaces_response_dir(answered, quiz, attachments_dir, workspace):
    repo = workspace.quiz_repo("---\n")
    workspace.write("repo/response/stale.txt", "old")
    pipeline = _pipeline(repo, FakeGit())
    target = pipeline.write_bundle(_bundle(answered, quiz, attachments_dir))

    assert target == repo / "response"
    assert sorted(
        str(path.relative_to(target)) for path in target.rglob("*") if path.is_file()
    ) == ["answers.yaml", "files/q5/main.rs", "meta.yaml"]


def test_stage_commits_response_dir(answered, quiz, attachments_dir, workspace):
    repo = workspace.quiz_repo("---\n")
    runner = FakeGit()
    bundle = _bundle(answered, quiz, attachments_dir)
    assert _pipeline(repo, runner).stage(bundle) is True
    assert ("add", "--all", "--", "response") in runner.calls
    assert ("commit", "-m", bundle.commit_message, "--", "response") in runner.calls


def test_stage_failure_is_a_fatal_push_error(answered, quiz, attachments_dir, workspace):
    repo = workspace.quiz_repo("---\n")
    runner = FakeGit(failures={"commit": GitResult(1, stderr="fatal: no identity")})
    with pytest.raises(PushError) as excinfo:
        _pipeline(repo, runner).stage(_bundle(answered, quiz, attachments_dir))
    assert excinfo.value.kind is PushErrorKind.FATAL
    assert "no identity" in str(excinfo.value)


def test_push_retries_with_backoff_then_succeeds(clock, tmp_path):
    runner = FakeGit(push_results=[NETWORK_FAILURE] * 4, clock=clock)
    pipeline = _pipeline(tmp_path, runner, clock)
    seen = []

    final = pipeline.push_with_retry(threading.Event(), on_event=seen.append)

    assert final.kind is PushEventKind.SUCCESS
    assert final.attempt == 5
    assert runner.push_times == [0, 2, 6, 14, 30]
    assert [event.kind for event in seen] == [PushEventKind.RETRYING] * 4 + [
        PushEventKind.SUCCESS
    ]
    assert [event.delay for event in seen[:4]] == [2, 4, 8, 16]


def test_push_gives_up_after_budget(clock, tmp_path):
    runner = FakeGit(push_results=[NETWORK_FAILURE] * 100, clock=clock)
    pipeline = _pipeline(tmp_path, runner, clock)

    final = pipeline.push_with_retry(threading.Event())

    assert final.kind is PushEventKind.TIMED_OUT
    assert final.elapsed >= 600
    assert final.error.kind is PushErrorKind.NETWORK
    assert runner.push_times[-1] == 600
    assert len(runner.push_times) == 24
    assert max(clock.sleeps) == 30


def test_push_conflict_stops_immediately(clock, tmp_path):
    runner = FakeGit(push_results=[REJECTED], clock=clock)
    final = _pipeline(tmp_path, runner, clock).push_with_retry(threading.Event())
    assert final.kind is PushEventKind.CONFLICT
    assert runner.commands().count("push") == 1
    assert final.error.kind is PushErrorKind.CONFLICT


def test_existing_submission_counts_as_conflict(clock, tmp_path):
    runner = FakeGit(history=True, clock=clock)
    final = _pipeline(tmp_path, runner, clock).push_with_retry(threading.Event())
    assert final.kind is PushEventKind.CONFLICT
    assert "push" not in runner.commands()


def test_push_fatal_error(clock, tmp_path):
    runner = FakeGit(push_results=[FATAL_FAILURE], clock=clock)
    final = _pipeline(tmp_path, runner, clock).push_with_retry(threading.Event())
    assert final.kind is PushEventKind.FATAL
    assert "refspec" in final.detail
    assert final.error.kind is PushErrorKind.FATAL


def test_cancel_during_backoff(clock, tmp_path):
    runner = FakeGit(push_results=[NETWORK_FAILURE] * 10, clock=clock)

    def cancelling_sleep(seconds, cancel):  # noqa: ANN001
        clock.sleep(seconds)
        cancel.set()

    pipeline = _pipeline(tmp_path, runner, clock, sleep=cancelling_sleep)
    final = pipeline.push_with_retry(threading.Event())
    assert final.kind is PushEventKind.CANCELLED
    assert runner.commands().count("push") == 1


def test_save_local_writes_and_commits(answered, quiz, attachments_dir, workspace):
    repo = workspace.quiz_repo("---\n")
    runner = FakeGit()
    saved = _pipeline(repo, runner).save_local(_bundle(answered, quiz, attachments_dir))
    assert saved.path == repo / "response"
    assert (saved.path / "answers.yaml").exists()
    assert "commit" in runner.commands()
    assert f"cd {repo} && git push" in saved.instructions


def test_save_local_outside_repository(answered, quiz, attachments_dir, workspace):
    folder = workspace.quiz_repo("---\n", git=False)
    runner = FakeGit(
        is_repo=False,
        failures={"add": GitResult(128, stderr="fatal: not a git repository")},
    )
    saved = _pipeline(folder, runner).save_local(
        _bundle(answered, quiz, attachments_dir)
    )
    assert (saved.path / "meta.yaml").exists()
    assert "is not a git repository" in saved.instructions


def test_push_worker_tags_events(answered, quiz, attachments_dir, workspace, clock):
    repo = workspace.quiz_repo("---\n")
    runner = FakeGit(push_results=[NETWORK_FAILURE], clock=clock)
    events: "queue.Queue[submission.PushEvent]" = queue.Queue()
    worker = submission.PushWorker(
        _pipeline(repo, runner, clock),
        _bundle(answered, quiz, attachments_dir),
        events,
        token=7,
    )

    final = worker.run()

    assert final.kind is PushEventKind.SUCCESS
    posted = [events.get_nowait() for _ in range(events.qsize())]
    assert [event.kind for event in posted] == [
        PushEventKind.RETRYING,
        PushEventKind.SUCCESS,
    ]
    assert {event.token for event in posted} == {7}
    assert (repo / "response" / "answers.yaml").exists()


def test_push_worker_reports_staging_failure(answered, quiz, attachments_dir, workspace):
    repo = workspace.quiz_repo("---\n")
    runner = FakeGit(failures={"commit": GitResult(1, stderr="fatal: no identity")})
    events: "queue.Queue[submission.PushEvent]" = queue.Queue()
    worker = submission.PushWorker(
        _pipeline(repo, runner),
        _bundle(answered, quiz, attachments_dir),
        events,
        token=3,
    )
    final = worker.run()
    assert final.kind is PushEventKind.FATAL
    assert final.token == 3
    assert "no identity" in final.detail
    assert final.error.kind is PushErrorKind.FATAL
    assert "push" not in runner.commands()


def test_push_worker_thread_delivers_result(answered, quiz, attachments_dir, workspace):
    repo = workspace.quiz_repo("---\n")
    events: "queue.Queue[submission.PushEvent]" = queue.Queue()
    worker = submission.PushWorker(
        _pipeline(repo, FakeGit()), _bundle(answered, quiz, attachments_dir), events
    )
    worker.start()
    worker.join(timeout=5)
    assert events.get(timeout=5).kind is PushEventKind.SUCCESS
