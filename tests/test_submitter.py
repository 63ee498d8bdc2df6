from __future__ import annotations

from typing import List

import pytest

from raindrop_notebook.models import NoteHandle, NotePayload
from raindrop_notebook.note_formatter import assemble
from raindrop_notebook.notebook_client import NotebookAuthError, NotebookTransportError, NotebookValidationError
from raindrop_notebook.submitter import (
    FatalSubmissionError,
    SubmissionErrorKind,
    Submitter,
    TransientSubmissionError,
)

from conftest import FIXED_NOW, make_bookmark, success
from raindrop_notebook.text_extractor import extract_page


class ScriptedNoteService:
    def __init__(self, script: List[object]):
        self.script = list(script)
        self.calls = 0

    def create_note(self, payload: NotePayload) -> NoteHandle:
        self.calls += 1
        step = self.script.pop(0)
        if isinstance(step, Exception):
            raise step
        return step  # type: ignore[return-value]


def _payload() -> NotePayload:
    outcome = success(make_bookmark(1))
    return assemble("reading", [outcome], [extract_page(outcome)], generated_at=FIXED_NOW)


def test_submit_returns_handle():
    service = ScriptedNoteService([NoteHandle(note_id="n-1", url="https://notes/n-1")])
    handle = Submitter(service, sleep=lambda _: None).submit(_payload())
    assert handle.note_id == "n-1"
    assert service.calls == 1


def test_submit_retries_transient_errors_then_succeeds():
    sleeps: List[float] = []
    service = ScriptedNoteService([NotebookTransportError("503"), NoteHandle(note_id="n-2")])
    handle = Submitter(service, max_attempts=3, sleep=sleeps.append).submit(_payload())

    assert handle.note_id == "n-2"
    assert service.calls == 2
    assert len(sleeps) == 1


def test_submit_gives_up_after_max_attempts():
    sleeps: List[float] = []
    service = ScriptedNoteService([NotebookTransportError("429")] * 3)

    with pytest.raises(TransientSubmissionError) as excinfo:
        Submitter(service, max_attempts=3, sleep=sleeps.append).submit(_payload())

    assert service.calls == 3
    assert len(sleeps) == 2
    assert excinfo.value.attempts == 3
    assert excinfo.value.kind is SubmissionErrorKind.TRANSIENT


@pytest.mark.parametrize("error", [NotebookAuthError("401"), NotebookValidationError("422")])
def test_submit_never_retries_fatal_errors(error):
    sleeps: List[float] = []
    service = ScriptedNoteService([error, NoteHandle(note_id="unused")])

    with pytest.raises(FatalSubmissionError) as excinfo:
        Submitter(service, max_attempts=3, sleep=sleeps.append).submit(_payload())

    assert service.calls == 1
    assert sleeps == []
    assert excinfo.value.kind is SubmissionErrorKind.FATAL


def test_submitter_rejects_zero_attempts():
    with pytest.raises(ValueError):
        Submitter(ScriptedNoteService([]), max_attempts=0)
