from __future__ import annotations

import json
from typing import List

import httpx
import pytest

from raindrop_notebook.mailer import RunReport
from raindrop_notebook.models import Bookmark, FetchErrorKind, FetchOutcome, NoteHandle, NotePayload, RunSummary
from raindrop_notebook.notebook_client import NotebookAuthError, NotebookClient, NotebookTransportError
from raindrop_notebook.orchestrator import RunAbortedError, run
from raindrop_notebook.raindrop_client import RaindropClient, RaindropTagNotFoundError

from conftest import FIXED_NOW, failure, make_bookmark, success


class FakeBookmarks:
    def __init__(self, bookmarks: List[Bookmark], error: Exception | None = None):
        self.bookmarks = bookmarks
        self.error = error

    def list_bookmarks(self, tag: str) -> List[Bookmark]:
        if self.error:
            raise self.error
        return list(self.bookmarks)


class TimeoutForSecondFetcher:
    def __init__(self, failing_url: str | None = None):
        self.failing_url = failing_url
        self.calls: List[str] = []

    def fetch(self, bookmark: Bookmark, timeout: float) -> FetchOutcome:
        self.calls.append(bookmark.url)
        if bookmark.url == self.failing_url:
            return failure(bookmark, FetchErrorKind.TIMEOUT, attempts=3)
        return success(bookmark)


class FakeNotes:
    def __init__(self, errors: List[Exception] | None = None):
        self.errors = list(errors or [])
        self.payloads: List[NotePayload] = []

    def create_note(self, payload: NotePayload) -> NoteHandle:
        self.payloads.append(payload)
        if self.errors:
            raise self.errors.pop(0)
        return NoteHandle(note_id="note-1", url="https://notes.example.com/note-1")


class FakeMailer:
    provider = "fake"

    def __init__(self):
        self.reports: List[RunReport] = []

    def send_report(self, summary: RunSummary) -> RunReport:
        report = RunReport.from_summary(summary)
        self.reports.append(report)
        return report


def _run(settings, bookmarks, fetcher, notes, **kwargs):
    return run(
        settings,
        "reading",
        bookmark_client=FakeBookmarks(bookmarks),
        note_client=notes,
        fetcher=fetcher,
        sleep=lambda _: None,
        clock=lambda: FIXED_NOW,
        **kwargs,
    )


def _artifact_files(settings):
    if not settings.output_dir.exists():
        return []
    return sorted(p.name for p in settings.output_dir.iterdir())


def test_one_timeout_among_three_bookmarks(settings):
    bookmarks = [make_bookmark(i) for i in range(1, 4)]
    notes = FakeNotes()

    summary = _run(settings, bookmarks, TimeoutForSecondFetcher(bookmarks[1].url), notes)

    assert (summary.total, summary.succeeded, summary.failed) == (3, 2, 1)
    assert summary.note_id == "note-1"
    assert summary.failures == ((bookmarks[1].url, "timeout after 3 attempts"),)
    payload = notes.payloads[0]
    assert len(payload.content_sections) == 2
    assert len(payload.failure_annotations) == 1
    assert [s.url for s in payload.sections] == [b.url for b in bookmarks]
    assert payload.sections[1].url == bookmarks[1].url
    assert _artifact_files(settings) == [
        "reading-20261019.note.json",
        "reading-20261019.results.json",
        "reading-20261019.summary.json",
    ]


def test_empty_bookmark_list_is_fatal_before_fetching(settings):
    fetcher = TimeoutForSecondFetcher()
    notes = FakeNotes()

    with pytest.raises(RunAbortedError) as excinfo:
        _run(settings, [], fetcher, notes)

    assert excinfo.value.category == "configuration"
    assert fetcher.calls == []
    assert notes.payloads == []
    assert _artifact_files(settings) == []


def test_fatal_submission_error_still_persists_results(settings):
    bookmarks = [make_bookmark(i) for i in range(1, 4)]
    notes = FakeNotes(errors=[NotebookAuthError("401 unauthorized")])

    with pytest.raises(RunAbortedError) as excinfo:
        _run(settings, bookmarks, TimeoutForSecondFetcher(), notes)

    error = excinfo.value
    assert error.category == "submission"
    assert len(notes.payloads) == 1
    assert error.summary is not None
    assert error.summary.note_id is None
    assert error.summary.succeeded == 3
    results_path = settings.output_dir / "reading-20261019.results.json"
    assert results_path in error.written
    results = json.loads(results_path.read_text(encoding="utf-8"))
    assert [r["status"] for r in results["results"]] == ["success"] * 3
    summary = json.loads((settings.output_dir / "reading-20261019.summary.json").read_text(encoding="utf-8"))
    assert summary["note_id"] is None
    assert summary["error"].startswith("fatal submission error")


def test_transient_submission_errors_are_retried(settings):
    settings.submit_max_attempts = 3
    notes = FakeNotes(errors=[NotebookTransportError("503"), NotebookTransportError("429")])

    summary = _run(settings, [make_bookmark(1)], TimeoutForSecondFetcher(), notes)

    assert summary.note_id == "note-1"
    assert len(notes.payloads) == 3


def test_exhausted_transient_submission_errors_abort_the_run(settings):
    settings.submit_max_attempts = 2
    notes = FakeNotes(errors=[NotebookTransportError("503")] * 2)

    with pytest.raises(RunAbortedError) as excinfo:
        _run(settings, [make_bookmark(1)], TimeoutForSecondFetcher(), notes)

    assert excinfo.value.category == "submission"
    assert len(notes.payloads) == 2
    assert excinfo.value.summary.error.startswith("transient submission error")


def test_dry_run_skips_submission_but_writes_artifacts(settings):
    notes = FakeNotes()

    summary = _run(settings, [make_bookmark(1)], TimeoutForSecondFetcher(), notes, dry_run=True)

    assert summary.dry_run is True
    assert summary.note_id is None
    assert notes.payloads == []
    assert len(_artifact_files(settings)) == 3


def test_running_twice_produces_two_artifact_sets(settings):
    bookmarks = [make_bookmark(1)]
    _run(settings, bookmarks, TimeoutForSecondFetcher(), FakeNotes())
    _run(settings, bookmarks, TimeoutForSecondFetcher(), FakeNotes())

    files = _artifact_files(settings)
    assert len(files) == 6
    assert "reading-20261019-093000.summary.json" in files


def test_bookmark_errors_abort_before_any_artifact(settings):
    with pytest.raises(RunAbortedError) as excinfo:
        run(
            settings,
            "missing",
            bookmark_client=FakeBookmarks([], error=RaindropTagNotFoundError("missing")),
            note_client=FakeNotes(),
            fetcher=TimeoutForSecondFetcher(),
            clock=lambda: FIXED_NOW,
        )

    assert excinfo.value.category == "bookmarks"
    assert _artifact_files(settings) == []


def test_persistence_failure_after_submission_is_not_a_submission_failure(settings, tmp_path):
    blocked = tmp_path / "blocked"
    blocked.write_text("x", encoding="utf-8")
    settings.output_dir = blocked
    settings.fallback_output_dir = None
    notes = FakeNotes()

    with pytest.raises(RunAbortedError) as excinfo:
        _run(settings, [make_bookmark(1)], TimeoutForSecondFetcher(), notes)

    assert excinfo.value.category == "persistence"
    assert excinfo.value.summary.note_id == "note-1"


def test_run_report_is_mailed_when_a_mailer_is_given(settings):
    mailer = FakeMailer()

    _run(settings, [make_bookmark(1)], TimeoutForSecondFetcher(), FakeNotes(), mailer=mailer)

    assert len(mailer.reports) == 1
    report = mailer.reports[0]
    assert "#reading" in report.subject
    assert "Note: note-1" in report.text_body


def test_note_service_answering_with_a_list_aborts_as_submission_error(settings):
    settings.submit_max_attempts = 2
    requests: List[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, json=[])

    notes = NotebookClient("https://notes.example.com", "token", transport=httpx.MockTransport(handler))

    with pytest.raises(RunAbortedError) as excinfo:
        _run(settings, [make_bookmark(1)], TimeoutForSecondFetcher(), notes)

    error = excinfo.value
    assert error.category == "submission"
    assert len(requests) == 2
    summary_path = settings.output_dir / "reading-20261019.summary.json"
    assert summary_path in error.written
    summary = json.loads(summary_path.read_text(encoding="utf-8"))
    assert summary["note_id"] is None
    assert summary["error"].startswith("transient submission error")


def test_malformed_raindrop_record_aborts_as_bookmarks_error(settings):
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/rest/v1/tags":
            return httpx.Response(200, json={"items": [{"_id": "reading"}]})
        return httpx.Response(200, json={"items": [{"_id": 1, "title": "no link or date"}]})

    raindrop = RaindropClient(token="t", transport=httpx.MockTransport(handler))
    fetcher = TimeoutForSecondFetcher()

    with pytest.raises(RunAbortedError) as excinfo:
        run(
            settings,
            "reading",
            bookmark_client=raindrop,
            note_client=FakeNotes(),
            fetcher=fetcher,
            clock=lambda: FIXED_NOW,
        )

    assert excinfo.value.category == "bookmarks"
    assert fetcher.calls == []
    assert _artifact_files(settings) == []


def test_blank_tag_aborts_as_bookmarks_error(settings):
    raindrop = RaindropClient(token="t", transport=httpx.MockTransport(lambda request: httpx.Response(500)))

    with pytest.raises(RunAbortedError) as excinfo:
        run(settings, "  ", bookmark_client=raindrop, note_client=FakeNotes(), clock=lambda: FIXED_NOW)

    assert excinfo.value.category == "bookmarks"
