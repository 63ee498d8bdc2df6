from __future__ import annotations

import logging
import threading
from typing import Callable, Dict, List, Optional, Protocol, Sequence

from .collector import PageFetcher, ProgressSink, collect
from .config import ConfigurationError, Settings
from .mailer import MailError, ReportSender, build_report_mailer
from .models import Bookmark, ExtractedPage, FetchOutcome, NoteHandle, RunSummary
from .note_formatter import assemble
from .notebook_client import NotebookClient, NotebookError
from .raindrop_client import RaindropClient, RaindropError
from .result_writer import ArtifactSet, PersistenceError, ResultWriter
from .submitter import NoteService, SubmissionError, Submitter
from .text_extractor import extract_page
from .utils import utc_now

logger = logging.getLogger(__name__)


class BookmarkSource(Protocol):
    def list_bookmarks(self, tag: str) -> List[Bookmark]: ...


class RunAbortedError(Exception):
    """
    Raised when a run stops on a fatal error.

    ``category`` is one of "configuration", "bookmarks", "submission" or
    "persistence". ``summary`` and ``artifacts`` describe whatever was
    produced before the failure (both None when nothing was written).
    """

    def __init__(
        self,
        category: str,
        message: str,
        *,
        summary: Optional[RunSummary] = None,
        artifacts: Optional[ArtifactSet] = None,
        written: Sequence = (),
    ):
        super().__init__(f"{category} error: {message}")
        self.category = category
        self.summary = summary
        self.artifacts = artifacts
        self.written = list(written)


def run(
    settings: Settings,
    tag: str,
    *,
    dry_run: bool = False,
    bookmark_client: Optional[BookmarkSource] = None,
    note_client: Optional[NoteService] = None,
    fetcher: Optional[PageFetcher] = None,
    mailer: Optional[ReportSender] = None,
    progress: Optional[ProgressSink] = None,
    cancel_event: Optional[threading.Event] = None,
    sleep: Optional[Callable[[float], None]] = None,
    clock=utc_now,
) -> RunSummary:
    started_at = clock()
    closers = []
    if bookmark_client is None:
        raindrop = RaindropClient(token=settings.raindrop_token)
        closers.append(raindrop.close)
        bookmark_client = raindrop
    if dry_run:
        note_client = None
    elif note_client is None:
        notebook = NotebookClient(settings.notebook_api_url, settings.notebook_api_token)
        closers.append(notebook.close)
        note_client = notebook
    logger.info("Starting run for tag #%s (dry_run=%s)", tag, dry_run)

    try:
        try:
            settings.validate()
        except ConfigurationError as exc:
            raise RunAbortedError("configuration", str(exc)) from exc

        try:
            bookmarks = bookmark_client.list_bookmarks(tag)
        except RaindropError as exc:
            logger.exception("Failed to list bookmarks for #%s: %s", tag, exc)
            raise RunAbortedError("bookmarks", str(exc)) from exc

        try:
            outcomes = collect(
                bookmarks,
                settings,
                fetcher=fetcher,
                progress=progress,
                cancel_event=cancel_event,
            )
        except ConfigurationError as exc:
            logger.error("Nothing to do for #%s: %s", tag, exc)
            raise RunAbortedError("configuration", str(exc)) from exc

        pages = _extract_pages(outcomes, settings)
        payload = assemble(
            tag,
            outcomes,
            pages,
            generated_at=clock(),
            excerpt_max_chars=settings.excerpt_max_chars,
        )

        writer = ResultWriter(
            settings.output_dir,
            tag,
            started_at,
            fallback_dir=settings.fallback_output_dir,
        )
        persistence_errors: List[PersistenceError] = []
        try:
            writer.write_fetch_results(outcomes, pages)
        except PersistenceError as exc:
            logger.exception("Could not persist fetch results: %s", exc)
            persistence_errors.append(exc)

        handle: Optional[NoteHandle] = None
        submission_error: Optional[SubmissionError] = None
        if note_client is None:
            logger.warning("Dry run: note not submitted")
        else:
            submitter_kwargs = {"sleep": sleep} if sleep is not None else {}
            submitter = Submitter(
                note_client,
                max_attempts=settings.submit_max_attempts,
                backoff_base=settings.backoff_base,
                backoff_max=settings.backoff_max,
                **submitter_kwargs,
            )
            try:
                handle = submitter.submit(payload)
            except SubmissionError as exc:
                logger.exception("Note submission failed (%s): %s", exc.kind.value, exc)
                submission_error = exc

        error = None
        if submission_error is not None:
            error = f"{submission_error.kind.value} submission error: {submission_error}"
        summary = _build_summary(tag, outcomes, handle, started_at, clock(), dry_run=dry_run, error=error)

        try:
            writer.write_note_metadata(payload, handle, dry_run=dry_run, error=error)
        except PersistenceError as exc:
            logger.exception("Could not persist note metadata: %s", exc)
            persistence_errors.append(exc)
        try:
            writer.write_summary(summary)
        except PersistenceError as exc:
            logger.exception("Could not persist run summary: %s", exc)
            persistence_errors.append(exc)

        _notify(settings, summary, mailer)
        _log_batch_counts(summary)

        if submission_error is not None:
            raise RunAbortedError(
                "submission",
                str(submission_error),
                summary=summary,
                artifacts=writer.artifacts,
                written=writer.written,
            ) from submission_error
        if persistence_errors:
            # The note (if any) exists; only the local record is incomplete.
            raise RunAbortedError(
                "persistence",
                str(persistence_errors[0]),
                summary=summary,
                artifacts=writer.artifacts,
                written=writer.written,
            ) from persistence_errors[0]
        return summary
    finally:
        for close in closers:
            close()


def check_status(
    settings: Settings,
    *,
    raindrop: Optional[RaindropClient] = None,
    notebook: Optional[NotebookClient] = None,
) -> Dict[str, bool]:
    raindrop = raindrop or RaindropClient(token=settings.raindrop_token)
    notebook = notebook or NotebookClient(settings.notebook_api_url, settings.notebook_api_token)
    status: Dict[str, bool] = {}
    try:
        try:
            user = raindrop.check_connection()
            logger.info("Raindrop API: OK (%s)", user)
            status["raindrop"] = True
        except RaindropError as exc:
            logger.error("Raindrop API: %s", exc)
            status["raindrop"] = False
        try:
            notebook.check_connection()
            logger.info("Note service API: OK")
            status["notebook"] = True
        except NotebookError as exc:
            logger.error("Note service API: %s", exc)
            status["notebook"] = False
    finally:
        raindrop.close()
        notebook.close()
    return status


def _extract_pages(outcomes: Sequence[FetchOutcome], settings: Settings) -> List[Optional[ExtractedPage]]:
    pages: List[Optional[ExtractedPage]] = []
    for outcome in outcomes:
        if outcome.is_success():
            pages.append(extract_page(outcome, max_summary_chars=settings.summary_max_chars))  # type: ignore[arg-type]
        else:
            pages.append(None)
    return pages


def _build_summary(
    tag: str,
    outcomes: Sequence[FetchOutcome],
    handle: Optional[NoteHandle],
    started_at,
    ended_at,
    *,
    dry_run: bool,
    error: Optional[str],
) -> RunSummary:
    failures = tuple((o.url, o.describe()) for o in outcomes if not o.is_success())  # type: ignore[union-attr]
    return RunSummary(
        tag=tag,
        total=len(outcomes),
        succeeded=len(outcomes) - len(failures),
        failed=len(failures),
        started_at=started_at,
        ended_at=ended_at,
        note_id=handle.note_id if handle else None,
        note_url=handle.url if handle else None,
        dry_run=dry_run,
        error=error,
        failures=failures,
    )


def _notify(settings: Settings, summary: RunSummary, mailer: Optional[ReportSender]) -> None:
    if mailer is None:
        mailer = build_report_mailer(settings)
        if mailer is None:
            logger.debug("Run report mail not configured")
            return
    try:
        mailer.send_report(summary)
    except MailError:
        logger.exception("Failed to send run report email.")


def _log_batch_counts(summary: RunSummary) -> None:
    logger.info(
        "Batch completed. Total=%s Success=%s Failure=%s Note=%s",
        summary.total,
        summary.succeeded,
        summary.failed,
        summary.note_id or "-",
    )
