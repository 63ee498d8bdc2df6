from __future__ import annotations

import logging

import httpx

from .models import NoteHandle, NotePayload
from .note_formatter import payload_to_request

logger = logging.getLogger(__name__)


class NotebookError(Exception):
    """Raised when the note service call fails."""


class NotebookAuthError(NotebookError):
    """Raised when the note service rejects our credentials."""


class NotebookValidationError(NotebookError):
    """Raised when the note service rejects the payload as invalid."""


class NotebookTransportError(NotebookError):
    """Raised on network errors, rate limiting or 5xx responses."""


class NotebookClient:
    def __init__(
        self,
        base_url: str,
        token: str,
        *,
        timeout: float = 30.0,
        transport: httpx.BaseTransport | None = None,
    ):
        self._client = httpx.Client(
            base_url=base_url.rstrip("/"),
            headers={"Authorization": f"Bearer {token}", "content-type": "application/json"},
            timeout=timeout,
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    def check_connection(self) -> None:
        self._request("GET", "/health")

    def create_note(self, payload: NotePayload) -> NoteHandle:
        logger.info("Creating note %r (%s sections)", payload.title, len(payload.sections))
        response = self._request("POST", "/notes", json=payload_to_request(payload))
        try:
            data = response.json()
        except ValueError as exc:
            raise NotebookTransportError(f"Note service returned invalid JSON: {exc}") from exc
        if not isinstance(data, dict):
            raise NotebookTransportError(f"Note service returned an unexpected {type(data).__name__} body.")
        note_id = data.get("id") or data.get("note_id")
        if not note_id:
            raise NotebookTransportError("Note service response has no note id.")
        return NoteHandle(note_id=str(note_id), url=data.get("url"))

    def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            response = self._client.request(method, path, **kwargs)
        except httpx.RequestError as exc:
            raise NotebookTransportError(f"Note service request failed: {exc}") from exc
        status = response.status_code
        if status < 400:
            return response
        detail = response.text[:500]
        if status in {401, 403}:
            raise NotebookAuthError(f"Note service rejected credentials (status={status}): {detail}")
        if status in {400, 413, 422}:
            raise NotebookValidationError(f"Note service rejected the payload (status={status}): {detail}")
        if status == 429 or status >= 500:
            raise NotebookTransportError(f"Note service unavailable (status={status}): {detail}")
        raise NotebookValidationError(f"Note service returned error status {status}: {detail}")
