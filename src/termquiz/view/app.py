"""Textual front end for a quiz session."""

from __future__ import annotations

from typing import Optional

from rich.console import Group, RenderableType
from rich.markdown import Markdown
from rich.text import Text
from textual.app import App, ComposeResult
from textual.binding import Binding
from textual.containers import Horizontal, Vertical, VerticalScroll
from textual.widgets import Button, Checkbox, Footer, Input, Static

from ..attachments import Editor, FilePicker
from ..controller import SessionController
from ..model import QuestionKind
from ..session import Phase
from .viewmodel import QuestionPanel, ViewModel, build_view_model

__all__ = [
    "QuizApp",
    "render_header",
    "render_sidebar",
    "render_main",
]

_RESULT_PHASES = {
    Phase.WAITING,
    Phase.CLOSED,
    Phase.SUBMITTED,
    Phase.DONE,
    Phase.SAVE_LOCAL,
    Phase.ERROR,
}


def render_header(view: ViewModel) -> Text:
    header = Text(view.title, style="bold")
    if view.remaining is not None:
        style = "bold red" if view.low_time else "bold"
        header.append("   ")
        header.append(f"⏱ {view.remaining}", style=style)
    if view.counts is not None:
        header.append(
            f"   {view.counts.complete}/{view.counts.total} done", style="dim"
        )
    return header


def render_sidebar(view: ViewModel) -> Text:
    text = Text()
    for item in view.sidebar:
        style = "reverse" if item.current else ""
        text.append(f"[{item.marker}] {item.index + 1}. {item.title}\n", style=style)
    return text


def render_question(panel: QuestionPanel) -> RenderableType:
    parts: list[RenderableType] = [
        Text(f"Question {panel.number}/{panel.total}: {panel.title}", style="bold"),
        Text(f"{panel.kind.value} · {panel.status.value}", style="dim"),
    ]
    if panel.body:
        parts.append(Markdown(panel.body))
    if panel.kind.is_choice:
        for number, choice in enumerate(panel.choices, start=1):
            box = "[x]" if choice.selected else "[ ]"
            parts.append(Text(f"  {number}. {box} {choice.label}) {choice.text}"))
        if panel.kind is QuestionKind.MULTI:
            parts.append(Text("Select all that apply.", style="dim"))
    elif panel.kind.is_text:
        answer = panel.text or "(no answer yet, press e to edit)"
        parts.append(Text(answer, style="" if panel.text else "dim"))
    else:
        if panel.constraints:
            parts.append(Text(panel.constraints, style="dim"))
        if panel.files:
            for name in panel.files:
                parts.append(Text(f"  📎 {name}"))
        else:
            parts.append(Text("(no files attached, press a to attach)", style="dim"))
    for index, hint in enumerate(panel.hints, start=1):
        parts.append(Text(f"Hint {index}:", style="yellow"))
        parts.append(Markdown(hint))
    if panel.hints_remaining:
        parts.append(Text(f"{panel.hints_remaining} hint(s) available (h)", style="dim"))
    return Group(*parts)


def render_main(view: ViewModel) -> RenderableType:
    if view.phase is Phase.PREAMBLE:
        body = view.preamble or "Press Enter to begin."
        return Group(Markdown(body), Text("\nPress Enter to begin.", style="bold"))
    if view.phase is Phase.ACK:
        return Markdown(view.ack_text or "")
    parts: list[RenderableType] = []
    if view.message:
        parts.append(Text("\n".join(view.message), style="bold"))
    if view.question is not None and view.phase in (Phase.WORKING, Phase.CONFIRM):
        parts.append(render_question(view.question))
    if view.hint_pending:
        parts.append(Text("Reveal a hint? Enter to confirm, Esc to cancel.", style="yellow"))
    return Group(*parts)


class QuizApp(App):
    CSS = """
#header { height: 1; padding: 0 1; }
#sidebar { width: 32; border-right: solid $accent; padding: 0 1; }
#main-scroll { padding: 0 1; }
#ack { height: auto; padding: 0 1; }
#notice { height: 1; padding: 0 1; color: $warning; }
"""
    BINDINGS = [
        Binding("n,right", "next", "Next"),
        Binding("p,left", "prev", "Prev"),
        Binding("e", "edit", "Edit"),
        Binding("a", "attach", "Attach"),
        Binding("x", "detach", "Remove file", show=False),
        Binding("c", "clear", "Clear"),
        Binding("h", "hint", "Hint"),
        Binding("f", "flag", "Flag"),
        Binding("d", "done", "Done"),
        Binding("s", "submit", "Submit"),
        Binding("enter", "confirm", "Confirm", show=False),
        Binding("escape", "cancel", "Cancel", show=False),
        Binding("q", "quit_quiz", "Quit"),
        *(
            Binding(str(number % 10), f"choose({number - 1})", show=False)
            for number in range(1, 11)
        ),
    ]

    def __init__(
        self,
        controller: SessionController,
        *,
        editor: Optional[Editor] = None,
        picker: Optional[FilePicker] = None,
        poll_interval: float = 0.25,
    ) -> None:
        super().__init__()
        self.controller = controller
        self._editor = editor or Editor()
        self._picker = picker or FilePicker()
        self._poll_interval = poll_interval

    def compose(self) -> ComposeResult:
        yield Static("", id="header")
        with Horizontal(id="body"):
            yield Static("", id="sidebar")
            with VerticalScroll(id="main-scroll"):
                yield Static("", id="main")
                with Vertical(id="ack"):
                    yield Input(placeholder="Your full name", id="ack-name")
                    yield Checkbox("I agree to the statement above", id="ack-confirm")
                    yield Button("Continue", id="ack-submit")
        yield Static("", id="notice")
        yield Footer()

    def on_mount(self) -> None:
        self.set_interval(self._poll_interval, self._on_poll)
        self.refresh_view()

    def _on_poll(self) -> None:
        self.controller.poll()
        if self.controller.phase is Phase.WAITING:
            self.controller.refresh()
        self.refresh_view()

    def refresh_view(self) -> None:
        view = build_view_model(self.controller)
        self.query_one("#header", Static).update(render_header(view))
        self.query_one("#sidebar", Static).update(render_sidebar(view))
        self.query_one("#main", Static).update(render_main(view))
        self.query_one("#notice", Static).update(view.notice or "")
        self.query_one("#ack", Vertical).display = view.phase is Phase.ACK
        self.query_one("#sidebar", Static).display = bool(view.sidebar) and (
            view.phase in (Phase.WORKING, Phase.CONFIRM)
        )

    def action_next(self) -> None:
        self.controller.next_question()
        self.refresh_view()

    def action_prev(self) -> None:
        self.controller.previous_question()
        self.refresh_view()

    def action_choose(self, index: int) -> None:
        self.controller.select_choice(index)
        self.refresh_view()

    def action_clear(self) -> None:
        self.controller.clear_answer()
        self.refresh_view()

    def action_flag(self) -> None:
        self.controller.toggle_flag()
        self.refresh_view()

    def action_done(self) -> None:
        self.controller.toggle_done()
        self.refresh_view()

    def action_hint(self) -> None:
        self.controller.request_hint()
        self.refresh_view()

    def action_submit(self) -> None:
        self.controller.request_submit()
        self.refresh_view()

    def action_edit(self) -> None:
        controller = self.controller
        if controller.phase is not Phase.WORKING:
            return
        question = controller.current_question
        if not question.kind.is_text:
            return
        current = controller.session.answer_for(question.id).text
        with self.suspend():
            edited = self._editor.edit(current)
        if edited is None:
            controller.notice = "Editor closed without saving."
        elif question.kind is QuestionKind.SHORT:
            controller.set_text(edited.strip())
        else:
            controller.set_text(edited.rstrip("\n"))
        self.refresh_view()

    def action_attach(self) -> None:
        controller = self.controller
        if controller.phase is not Phase.WORKING:
            return
        if controller.current_question.kind is not QuestionKind.FILE:
            return
        with self.suspend():
            paths = self._picker.pick()
        for path in paths or []:
            if not controller.attach(path):
                break
        self.refresh_view()

    def action_detach(self) -> None:
        controller = self.controller
        if controller.phase is not Phase.WORKING or controller.session is None:
            return
        question = controller.current_question
        files = controller.session.answer_for(question.id).files
        if files:
            controller.detach(files[-1])
        self.refresh_view()

    def action_confirm(self) -> None:
        controller = self.controller
        phase = controller.phase
        if phase is Phase.PREAMBLE:
            controller.continue_from_preamble()
            if controller.phase is Phase.ACK:
                self.query_one("#ack-name", Input).focus()
        elif phase is Phase.CONFIRM:
            controller.confirm_submit()
        elif controller.hint_pending:
            controller.confirm_hint()
        elif phase in _RESULT_PHASES:
            self._leave()
            return
        self.refresh_view()

    def action_cancel(self) -> None:
        controller = self.controller
        if controller.phase is Phase.CONFIRM:
            controller.cancel_submit()
        elif controller.phase is Phase.RETRY:
            controller.cancel_retry()
        elif controller.hint_pending:
            controller.cancel_hint()
        self.refresh_view()

    def action_quit_quiz(self) -> None:
        self._leave()

    def on_input_submitted(self, event: Input.Submitted) -> None:
        self._submit_acknowledgment()

    def on_button_pressed(self, event: Button.Pressed) -> None:
        if event.button.id == "ack-submit":
            self._submit_acknowledgment()

    def _submit_acknowledgment(self) -> None:
        name = self.query_one("#ack-name", Input).value
        confirmed = self.query_one("#ack-confirm", Checkbox).value
        self.controller.acknowledge(name, confirmed)
        self.refresh_view()

    def _leave(self) -> None:
        if self.controller.quit():
            self.exit(self.controller.phase)
        else:
            self.refresh_view()
