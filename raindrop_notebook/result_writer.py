from __future__ import annotations

import itertools
import json
import logging
import os
import tempfile
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from .models import ExtractedPage, FetchOutcome, NoteHandle, NotePayload, RunSummary
from .note_formatter import payload_hash
from .utils import isoformat_utc, slugify

logger = logging.getLogger(__name__)

RESULTS_SUFFIX = ".results.json"
NOTE_SUFFIX = ".note.json"
SUMMARY_SUFFIX = ".summary.json"
ARTIFACT_SUFFIXES = (RESULTS_SUFFIX, NOTE_SUFFIX, SUMMARY_SUFFIX)


class PersistenceError(Exception):
    """Raised when run artifacts cannot be written to any location."""


@dataclass(frozen=True)
class ArtifactSet:
    directory: Path
    base_name: str

    @property
    def results_path(self) -> Path:
        return self.directory / f"{self.base_name}{RESULTS_SUFFIX}"

    @property
    def note_path(self) -> Path:
        return self.directory / f"{self.base_name}{NOTE_SUFFIX}"

    @property
    def summary_path(self) -> Path:
        return self.directory / f"{self.base_name}{SUMMARY_SUFFIX}"

    def paths(self) -> List[Path]:
        return [self.results_path, self.note_path, self.summary_path]

    def any_exists(self) -> bool:
        return any(path.exists() for path in self.paths())


def candidate_base_names(tag: str, started_at: datetime):
    base = f"{slugify(tag)}-{started_at.strftime('%Y%m%d')}"
    yield base
    stamped = f"{base}-{started_at.strftime('%H%M%S')}"
    yield stamped
    counter = 2
    while True:
        yield f"{stamped}-{counter}"
        counter += 1


def write_text_exclusive(path: Path, text: str) -> None:
    """Write ``text`` to ``path`` atomically, failing if ``path`` already exists."""
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(text)
            fh.flush()
            os.fsync(fh.fileno())
        try:
            os.link(tmp_name, path)
        except FileExistsError:
            raise
        except OSError:
            # Filesystems without hard links: check-then-replace instead.
            if path.exists():
                raise FileExistsError(str(path)) from None
            os.replace(tmp_name, path)
    finally:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)


class ResultWriter:
    """
    Persists the artifacts of a single run.

    Artifact names are ``<tag>-<YYYYMMDD>`` with a time (and counter) suffix
    when a previous run already used the name; nothing is ever overwritten.
    When the output directory is unusable the writer moves to the fallback
    directory for the remaining artifacts.
    """

    def __init__(
        self,
        output_dir: Path,
        tag: str,
        started_at: datetime,
        *,
        fallback_dir: Optional[Path] = None,
    ):
        self._directories = [Path(output_dir)]
        if fallback_dir is not None and Path(fallback_dir) != Path(output_dir):
            self._directories.append(Path(fallback_dir))
        self._tag = tag
        self._started_at = started_at
        self._artifacts: Optional[ArtifactSet] = None
        self.written: List[Path] = []

    @property
    def artifacts(self) -> Optional[ArtifactSet]:
        return self._artifacts

    def write_fetch_results(
        self,
        outcomes: Sequence[FetchOutcome],
        pages: Sequence[Optional[ExtractedPage]],
    ) -> Path:
        document = {
            "tag": self._tag,
            "started_at": isoformat_utc(self._started_at),
            "results": [_outcome_record(i, o, p) for i, (o, p) in enumerate(zip(outcomes, pages), start=1)],
        }
        return self._write("results", document)

    def write_note_metadata(
        self,
        payload: NotePayload,
        handle: Optional[NoteHandle],
        *,
        dry_run: bool = False,
        error: Optional[str] = None,
    ) -> Path:
        document = {
            "tag": payload.source_tag,
            "title": payload.title,
            "generated_at": isoformat_utc(payload.generated_at),
            "note_id": handle.note_id if handle else None,
            "note_url": handle.url if handle else None,
            "submitted": handle is not None,
            "dry_run": dry_run,
            "error": error,
            "payload_sha256": payload_hash(payload),
            "sections": len(payload.sections),
            "content": payload.content,
        }
        return self._write("note", document)

    def write_summary(self, summary: RunSummary) -> Path:
        document = {
            "tag": summary.tag,
            "total": summary.total,
            "succeeded": summary.succeeded,
            "failed": summary.failed,
            "note_id": summary.note_id,
            "note_url": summary.note_url,
            "dry_run": summary.dry_run,
            "error": summary.error,
            "started_at": isoformat_utc(summary.started_at),
            "ended_at": isoformat_utc(summary.ended_at),
            "failures": [{"url": url, "reason": reason} for url, reason in summary.failures],
        }
        return self._write("summary", document)

    def _write(self, kind: str, document: Dict[str, Any]) -> Path:
        text = json.dumps(document, ensure_ascii=False, indent=2) + "\n"
        errors: List[str] = []
        while self._directories:
            directory = self._directories[0]
            try:
                path = self._write_in(directory, kind, text)
            except OSError as exc:
                logger.warning("Could not write %s artifact to %s: %s", kind, directory, exc)
                errors.append(f"{directory}: {exc}")
                self._directories.pop(0)
                self._artifacts = None
                if self._directories:
                    logger.warning("Falling back to %s", self._directories[0])
                continue
            self.written.append(path)
            logger.info("Wrote %s artifact: %s", kind, path)
            return path
        raise PersistenceError(f"Failed to write {kind} artifact: {'; '.join(errors)}")

    def _write_in(self, directory: Path, kind: str, text: str) -> Path:
        directory.mkdir(parents=True, exist_ok=True)
        while True:
            if self._artifacts is None or self._artifacts.directory != directory:
                self._artifacts = self._reserve(directory)
            path = getattr(self._artifacts, f"{kind}_path")
            try:
                write_text_exclusive(path, text)
                return path
            except FileExistsError:
                if path in self.written:
                    raise
                # Another run claimed the same name in the meantime.
                logger.info("Artifact name %s already taken; choosing another", path.name)
                self._artifacts = self._reserve(directory, after=self._artifacts.base_name)

    def _reserve(self, directory: Path, after: Optional[str] = None) -> ArtifactSet:
        names = candidate_base_names(self._tag, self._started_at)
        if after is not None:
            names = itertools.dropwhile(lambda name: name != after, names)
            next(names)
        candidates = (ArtifactSet(directory=directory, base_name=name) for name in names)
        return next(c for c in candidates if not c.any_exists())


def _outcome_record(index: int, outcome: FetchOutcome, page: Optional[ExtractedPage]) -> Dict[str, Any]:
    bookmark = outcome.bookmark
    record: Dict[str, Any] = {
        "index": index,
        "url": bookmark.url,
        "title": bookmark.title,
        "saved_at": isoformat_utc(bookmark.saved_at),
        "attempt_count": outcome.attempt_count,
    }
    if outcome.is_success():
        raw = outcome.raw_bytes  # type: ignore[union-attr]
        record.update(
            {
                "status": "success",
                "fetched_at": isoformat_utc(outcome.fetched_at),  # type: ignore[union-attr]
                "content_type": outcome.content_type,  # type: ignore[union-attr]
                "byte_length": len(raw),
                "raw_text": raw.decode("utf-8", errors="replace"),
                "body_text": page.body_text if page else "",
                "summary": page.summary if page else "",
            }
        )
    else:
        record.update(
            {
                "status": "failed",
                "reason": outcome.reason.value,  # type: ignore[union-attr]
                "status_code": outcome.status_code,  # type: ignore[union-attr]
                "detail": outcome.detail,  # type: ignore[union-attr]
            }
        )
    return record
