from __future__ import annotations

import hashlib
from datetime import timedelta

import pytest
import yaml

from fixtures import CLOSES_AT, NETWORK_FAILURE, OPENS_AT, REJECTED, FakeGit
from termquiz.errors import PersistenceCorruptError, PushErrorKind
from termquiz.git import GitResult
from termquiz.session import Phase, QuestionStatus
from termquiz.submission import PushEvent, PushEventKind
from termquiz.timer import TimerEvent, TimerEventKind


def _working(make_controller, **kwargs):
    harness = make_controller(**kwargs)
    controller = harness.controller
    assert controller.start() is Phase.PREAMBLE
    assert controller.continue_from_preamble()
    assert controller.acknowledge("Ada Lovelace", True)
    assert controller.phase is Phase.WORKING
    return harness


def _finish_push(controller):
    controller.push_worker.run()
    controller.poll()


def test_waiting_before_window_then_opens(make_controller, clock):
    clock.set(OPENS_AT - timedelta(minutes=10))
    harness = make_controller()
    controller = harness.controller
    assert controller.start() is Phase.WAITING
    assert controller.session is None
    assert controller.seconds_until_start() == 600
    assert controller.refresh() is Phase.WAITING

    clock.set(OPENS_AT)
    assert controller.refresh() is Phase.PREAMBLE


def test_submitted_takes_precedence_over_closed(make_controller, clock):
    clock.set(CLOSES_AT + timedelta(hours=1))
    harness = make_controller(git=FakeGit(history=True))
    assert harness.controller.start() is Phase.SUBMITTED
    assert not harness.store.exists()


def test_closed_after_window(make_controller, clock):
    clock.set(CLOSES_AT)
    harness = make_controller()
    assert harness.controller.start() is Phase.CLOSED
    assert harness.controller.terminal


def test_fresh_start_saves_preamble(make_controller):
    harness = make_controller()
    assert harness.controller.start() is Phase.PREAMBLE
    assert harness.store.exists()
    assert harness.controller.session.started_at is None
    assert harness.timers == []


def test_acknowledgment_gate(make_controller, quiz, clock):
    harness = make_controller()
    controller = harness.controller
    controller.start()
    controller.continue_from_preamble()
    assert controller.phase is Phase.ACK

    assert controller.acknowledge(" A ", True) is False
    assert "at least" in controller.notice
    assert controller.acknowledge("Ada Lovelace", False) is False
    assert controller.phase is Phase.ACK

    assert controller.acknowledge("  Ada   Lovelace ", True) is True
    record = controller.session.acknowledgment
    assert record.name == "Ada Lovelace"
    assert record.agreed_at == clock()
    expected = hashlib.sha256(quiz.acknowledgment.text.encode("utf-8")).hexdigest()
    assert record.text_hash == f"sha256:{expected}"
    assert controller.phase is Phase.WORKING
    assert controller.session.started_at == clock()
    assert harness.timers[0].started
    assert harness.timers[0].end == quiz.end


def test_acknowledge_ignored_outside_ack_phase(make_controller):
    harness = make_controller()
    harness.controller.start()
    assert harness.controller.acknowledge("Ada Lovelace", True) is False


def test_restart_restores_working_session(make_controller):
    first = _working(make_controller)
    first.controller.select_choice(1)
    first.controller.next_question()
    first.controller.quit()

    second = make_controller()
    assert second.controller.start() is Phase.WORKING
    session = second.controller.session
    assert session.answers["q1"].selected == frozenset({1})
    assert session.current_index == 1
    assert session.acknowledgment.name == "Ada Lovelace"


def test_corrupt_state_raises(make_controller):
    harness = make_controller()
    harness.controller.start()
    (harness.store.directory / "session.json").write_text("garbage")

    again = make_controller()
    with pytest.raises(PersistenceCorruptError):
        again.controller.start()


def test_single_choice_replaces_and_multi_toggles(make_controller):
    controller = _working(make_controller).controller
    controller.select_choice(0)
    controller.select_choice(1)
    assert controller.session.answers["q1"].selected == frozenset({1})

    controller.next_question()
    controller.select_choice(0)
    controller.select_choice(1)
    controller.select_choice(0)
    assert controller.session.answers["q2"].selected == frozenset({1})

    assert controller.select_choice(7) is False
    assert "No choice 8" in controller.notice


def test_navigation_stays_in_range(make_controller):
    controller = _working(make_controller).controller
    assert controller.previous_question() is False
    assert controller.go_to(4)
    assert controller.next_question() is False
    assert controller.session.visited == {"q1", "q5"}
    assert controller.go_to(9) is False


def test_done_needs_an_answer(make_controller):
    controller = _working(make_controller).controller
    controller.go_to(2)
    assert controller.toggle_done() is False
    assert "empty" in controller.notice

    controller.set_text("--lib")
    assert controller.toggle_done() is True
    assert controller.session.status("q3") is QuestionStatus.DONE

    controller.clear_answer()
    assert controller.session.status("q3") is QuestionStatus.EMPTY


def test_flag_and_done_exclusive(make_controller):
    controller = _working(make_controller).controller
    controller.select_choice(1)
    controller.toggle_done()
    controller.toggle_flag()
    assert controller.session.status("q1") is QuestionStatus.FLAGGED
    assert controller.session.done == set()


def test_text_only_on_text_questions(make_controller):
    controller = _working(make_controller).controller
    assert controller.set_text("nope") is False
    controller.go_to(3)
    assert controller.set_text("Because of borrowing.") is True
    assert controller.session.answers["q4"].text == "Because of borrowing."


def test_hint_requires_confirmation(make_controller):
    controller = _working(make_controller).controller
    assert controller.request_hint() is False
    assert "No more hints" in controller.notice

    controller.go_to(3)
    assert controller.request_hint() is True
    assert controller.cancel_hint() is True
    assert controller.session.hints_used("q4") == 0

    controller.request_hint()
    assert controller.confirm_hint() is True
    controller.request_hint()
    controller.confirm_hint()
    assert controller.session.hints_used("q4") == 2
    assert controller.request_hint() is False


def test_attach_and_detach(make_controller, workspace):
    harness = _working(make_controller)
    controller = harness.controller
    controller.go_to(4)
    source = workspace.write("work/main.rs", "fn main() {}\n")

    assert controller.attach(source) is True
    assert controller.session.answers["q5"].files == ("main.rs",)
    assert harness.store.attachment_path("q5", "main.rs").exists()
    assert controller.session.attachment_rules["q5"].accept == (".rs",)

    assert controller.attach(source) is True
    assert controller.session.answers["q5"].files == ("main.rs",)

    wrong = workspace.write("work/notes.txt", "x")
    assert controller.attach(wrong) is False
    assert "not allowed" in controller.notice

    assert controller.detach("main.rs") is True
    assert controller.session.answers["q5"].files == ()
    assert not harness.store.attachment_path("q5", "main.rs").exists()


def test_attach_enforces_file_count(make_controller, workspace):
    controller = _working(make_controller).controller
    controller.go_to(4)
    for name in ("a.rs", "b.rs", "c.rs"):
        assert controller.attach(workspace.write(f"work/{name}", "fn x() {}\n"))
    assert controller.attach(workspace.write("work/d.rs", "fn y() {}\n")) is False
    assert "At most 3" in controller.notice


def test_clear_removes_staged_files(make_controller, workspace):
    harness = _working(make_controller)
    controller = harness.controller
    controller.go_to(4)
    controller.attach(workspace.write("work/main.rs", "fn main() {}\n"))
    controller.clear_answer()
    assert controller.session.answers["q5"].files == ()
    assert not harness.store.attachment_path("q5", "main.rs").exists()


def test_submit_confirmation_and_success(make_controller):
    harness = _working(make_controller)
    controller = harness.controller
    controller.select_choice(1)

    assert controller.request_submit() is True
    assert controller.phase is Phase.CONFIRM
    assert controller.cancel_submit() is True
    assert controller.phase is Phase.WORKING

    controller.request_submit()
    assert controller.confirm_submit() is True
    assert controller.phase is Phase.PUSHING
    assert controller.push_worker.started
    assert controller.bundle is not None

    _finish_push(controller)

    assert controller.phase is Phase.DONE
    assert controller.terminal
    assert not harness.store.directory.exists()
    answers = yaml.safe_load((harness.repo / "response" / "answers.yaml").read_text())
    assert answers["q1"] == {"type": "single", "selected": ["b"]}
    assert harness.timers[0].stopped


def test_input_ignored_while_pushing(make_controller):
    controller = _working(make_controller).controller
    controller.request_submit()
    controller.confirm_submit()

    assert controller.select_choice(2) is False
    assert controller.next_question() is False
    assert controller.toggle_flag() is False
    assert controller.session.answers["q1"].is_empty()
    assert controller.quit() is False
    assert controller.notice == "Submission in progress."


def test_retry_then_cancel_saves_locally(make_controller):
    harness = _working(make_controller)
    controller = harness.controller
    controller.request_submit()
    controller.confirm_submit()
    token = controller.push_worker.token

    controller.push_events.put(
        PushEvent(PushEventKind.RETRYING, "offline", attempt=1, delay=2.0, token=token)
    )
    controller.poll()
    assert controller.phase is Phase.RETRY

    worker = controller.push_worker
    assert controller.cancel_retry() is True
    assert worker.cancelled
    assert controller.phase is Phase.SAVE_LOCAL
    assert "git push" in controller.local_save.instructions
    assert (harness.repo / "response" / "meta.yaml").exists()

    controller.push_events.put(PushEvent(PushEventKind.SUCCESS, token=token))
    controller.poll()
    assert controller.phase is Phase.SAVE_LOCAL


def test_retry_budget_exhausted_saves_locally(make_controller, clock):
    git = FakeGit(push_results=[NETWORK_FAILURE] * 100, clock=clock)
    harness = _working(make_controller, git=git)
    controller = harness.controller
    controller.request_submit()
    controller.confirm_submit()

    _finish_push(controller)

    assert controller.last_push_event.kind is PushEventKind.TIMED_OUT
    assert controller.push_error.kind is PushErrorKind.NETWORK
    assert controller.phase is Phase.SAVE_LOCAL
    assert harness.store.exists()


def test_push_conflict_means_already_submitted(make_controller):
    harness = _working(make_controller, git=FakeGit(push_results=[REJECTED]))
    controller = harness.controller
    controller.request_submit()
    controller.confirm_submit()
    _finish_push(controller)
    assert controller.phase is Phase.SUBMITTED
    assert harness.store.exists()


def test_fatal_push_error(make_controller):
    git = FakeGit(
        failures={
            "commit": GitResult(1, stderr="fatal: unable to auto-detect email address")
        }
    )
    harness = _working(make_controller, git=git)
    controller = harness.controller
    controller.request_submit()
    controller.confirm_submit()
    _finish_push(controller)
    assert controller.phase is Phase.ERROR
    assert "email address" in controller.error
    assert controller.push_error.kind is PushErrorKind.FATAL


def test_history_hit_at_submit_time(make_controller):
    git = FakeGit()
    harness = _working(make_controller, git=git)
    git.history = True
    controller = harness.controller
    controller.request_submit()
    assert controller.confirm_submit() is False
    assert controller.phase is Phase.SUBMITTED


def test_not_a_repository_saves_locally(make_controller):
    harness = _working(make_controller, git=FakeGit(is_repo=False), git_dir=False)
    controller = harness.controller
    controller.request_submit()
    controller.confirm_submit()
    assert controller.phase is Phase.SAVE_LOCAL
    assert controller.push_worker is None


def test_warning_event_sets_notice(make_controller):
    controller = _working(make_controller).controller
    controller.timer_events.put(TimerEvent(TimerEventKind.TICK, 500))
    controller.timer_events.put(TimerEvent(TimerEventKind.WARNING, 120))
    assert controller.poll() == 2
    assert controller.warning_issued
    assert controller.notice == "Two minutes left."


def test_expiry_submits_leniently(make_controller, workspace):
    harness = _working(make_controller)
    controller = harness.controller
    controller.go_to(4)
    controller.attach(workspace.write("work/main.rs", "fn main() {}\n"))
    harness.store.attachment_path("q5", "main.rs").unlink()

    controller.request_submit()
    controller.timer_events.put(TimerEvent(TimerEventKind.EXPIRE, 0))
    controller.poll()

    assert controller.phase is Phase.PUSHING
    assert controller.bundle.answers["q5"].files == ()
    assert [item.name for item in controller.bundle.rejected] == ["main.rs"]


def test_strict_submit_reports_bad_attachment(make_controller, workspace):
    harness = _working(make_controller)
    controller = harness.controller
    controller.go_to(4)
    controller.attach(workspace.write("work/main.rs", "fn main() {}\n"))
    harness.store.attachment_path("q5", "main.rs").unlink()

    controller.request_submit()
    assert controller.confirm_submit() is False
    assert controller.phase is Phase.WORKING
    assert controller.notice.startswith("Cannot submit: q5:")


def test_expiry_outside_working_is_ignored(make_controller):
    harness = make_controller()
    controller = harness.controller
    controller.start()
    controller.handle_timer_event(TimerEvent(TimerEventKind.EXPIRE, 0))
    assert controller.phase is Phase.PREAMBLE


def test_quit_saves_and_stops_timer(make_controller):
    harness = _working(make_controller)
    controller = harness.controller
    controller.select_choice(2)
    assert controller.quit() is True
    assert harness.timers[0].stopped
    restored = harness.store.load(controller.quiz).require()
    assert restored.answers["q1"].selected == frozenset({2})


def test_quit_refuses_when_save_fails(make_controller, monkeypatch):
    harness = _working(make_controller)
    controller = harness.controller
    controller.select_choice(2)
    save = harness.store.save

    def full_disk(*args, **kwargs):
        raise OSError("disk full")

    monkeypatch.setattr(harness.store, "save", full_disk)
    assert controller.quit() is False
    assert "disk full" in controller.notice
    assert "Not quitting" in controller.notice
    assert controller.phase is Phase.WORKING
    assert not harness.timers[0].stopped

    monkeypatch.setattr(harness.store, "save", save)
    assert controller.quit() is True
    restored = harness.store.load(controller.quiz).require()
    assert restored.answers["q1"].selected == frozenset({2})


def test_window_closes_during_preamble(make_controller, clock):
    harness = make_controller()
    controller = harness.controller
    assert controller.start() is Phase.PREAMBLE

    clock.set(CLOSES_AT + timedelta(minutes=5))
    assert controller.continue_from_preamble() is False
    assert controller.phase is Phase.CLOSED
    assert controller.session.started_at is None
    assert harness.timers == []


def test_window_closes_during_acknowledgment(make_controller, clock):
    harness = make_controller()
    controller = harness.controller
    controller.start()
    controller.continue_from_preamble()
    assert controller.phase is Phase.ACK

    clock.set(CLOSES_AT)
    assert controller.acknowledge("Ada Lovelace", True) is False
    assert controller.phase is Phase.CLOSED
    assert controller.session.acknowledgment is None
    assert harness.timers == []


def test_corrupt_state_found_when_waiting_ends(make_controller, clock):
    first = make_controller()
    first.controller.start()
    (first.store.directory / "session.json").write_text("garbage")

    clock.set(OPENS_AT - timedelta(minutes=1))
    harness = make_controller()
    controller = harness.controller
    assert controller.start() is Phase.WAITING

    clock.set(OPENS_AT)
    assert controller.refresh() is Phase.ERROR
    assert "unreadable" in controller.error
    assert controller.session is None
