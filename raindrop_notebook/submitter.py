from __future__ import annotations

import logging
import random
import time
from enum import Enum
from typing import Callable, Optional, Protocol

from .config import DEFAULT_SUBMIT_MAX_ATTEMPTS, RETRY_BACKOFF_BASE, RETRY_BACKOFF_MAX
from .models import NoteHandle, NotePayload
from .notebook_client import NotebookAuthError, NotebookTransportError, NotebookValidationError

logger = logging.getLogger(__name__)


class SubmissionErrorKind(str, Enum):
    TRANSIENT = "transient"
    FATAL = "fatal"


class SubmissionError(Exception):
    """Raised when the note could not be created."""

    kind: SubmissionErrorKind = SubmissionErrorKind.FATAL

    def __init__(self, message: str, attempts: int):
        super().__init__(message)
        self.attempts = attempts


class TransientSubmissionError(SubmissionError):
    """Raised when transient failures persist past the retry budget."""

    kind = SubmissionErrorKind.TRANSIENT


class FatalSubmissionError(SubmissionError):
    """Raised for auth or payload rejections; never retried."""

    kind = SubmissionErrorKind.FATAL


class NoteService(Protocol):
    def create_note(self, payload: NotePayload) -> NoteHandle: ...


class Submitter:
    def __init__(
        self,
        client: NoteService,
        *,
        max_attempts: int = DEFAULT_SUBMIT_MAX_ATTEMPTS,
        backoff_base: float = RETRY_BACKOFF_BASE,
        backoff_max: float = RETRY_BACKOFF_MAX,
        sleep: Callable[[float], None] = time.sleep,
        rng: Optional[random.Random] = None,
    ):
        if max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1 (got {max_attempts}).")
        self._client = client
        self._max_attempts = max_attempts
        self._backoff_base = backoff_base
        self._backoff_max = backoff_max
        self._sleep = sleep
        self._rng = rng or random.Random()

    def submit(self, payload: NotePayload) -> NoteHandle:
        last_error: Optional[NotebookTransportError] = None
        for attempt in range(1, self._max_attempts + 1):
            try:
                handle = self._client.create_note(payload)
            except (NotebookAuthError, NotebookValidationError) as exc:
                logger.error("Note submission rejected: %s", exc)
                raise FatalSubmissionError(str(exc), attempts=attempt) from exc
            except NotebookTransportError as exc:
                last_error = exc
                if attempt >= self._max_attempts:
                    break
                delay = self._backoff_delay(attempt)
                logger.warning(
                    "Note service transient error (%s); retrying in %.2fs (attempt %s/%s)",
                    exc,
                    delay,
                    attempt,
                    self._max_attempts,
                )
                self._sleep(delay)
                continue
            logger.info("Note created id=%s url=%s (attempt %s)", handle.note_id, handle.url, attempt)
            return handle
        raise TransientSubmissionError(
            f"Note submission failed after {self._max_attempts} attempts: {last_error}",
            attempts=self._max_attempts,
        ) from last_error

    def _backoff_delay(self, attempt: int) -> float:
        ceiling = min(self._backoff_max, self._backoff_base * (2 ** (attempt - 1)))
        return ceiling / 2 + self._rng.uniform(0, ceiling / 2)
