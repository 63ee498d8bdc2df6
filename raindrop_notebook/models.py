from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Optional, Tuple, Union


@dataclass(frozen=True)
class Bookmark:
    url: str
    title: str
    saved_at: datetime
    id: Optional[int] = None


class FetchErrorKind(str, Enum):
    NETWORK_ERROR = "network_error"
    TIMEOUT = "timeout"
    HTTP_STATUS = "http_status"
    TERMINAL = "terminal"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class FetchSuccess:
    bookmark: Bookmark
    raw_bytes: bytes
    fetched_at: datetime
    attempt_count: int
    content_type: Optional[str] = None

    @property
    def url(self) -> str:
        return self.bookmark.url

    def is_success(self) -> bool:
        return True


@dataclass(frozen=True)
class FetchFailure:
    bookmark: Bookmark
    reason: FetchErrorKind
    attempt_count: int
    status_code: Optional[int] = None
    detail: str = ""

    @property
    def url(self) -> str:
        return self.bookmark.url

    def is_success(self) -> bool:
        return False

    def describe(self) -> str:
        if self.reason is FetchErrorKind.HTTP_STATUS and self.status_code is not None:
            label = f"HTTP {self.status_code}"
        else:
            label = self.reason.value.replace("_", " ")
        if self.attempt_count > 1:
            label += f" after {self.attempt_count} attempts"
        if self.detail:
            label += f" ({self.detail})"
        return label


FetchOutcome = Union[FetchSuccess, FetchFailure]


@dataclass(frozen=True)
class ExtractedText:
    body_text: str
    summary: str
    title: str = ""


@dataclass(frozen=True)
class ExtractedPage:
    url: str
    title: str
    saved_at: datetime
    body_text: str
    summary: str


@dataclass(frozen=True)
class FailureAnnotation:
    url: str
    title: str
    reason: str


NoteSection = Union[ExtractedPage, FailureAnnotation]


@dataclass(frozen=True)
class NotePayload:
    source_tag: str
    generated_at: datetime
    sections: Tuple[NoteSection, ...]
    title: str
    content: str

    @property
    def content_sections(self) -> List[ExtractedPage]:
        return [s for s in self.sections if isinstance(s, ExtractedPage)]

    @property
    def failure_annotations(self) -> List[FailureAnnotation]:
        return [s for s in self.sections if isinstance(s, FailureAnnotation)]


@dataclass(frozen=True)
class NoteHandle:
    note_id: str
    url: Optional[str] = None


@dataclass(frozen=True)
class RunSummary:
    tag: str
    total: int
    succeeded: int
    failed: int
    started_at: datetime
    ended_at: datetime
    note_id: Optional[str] = None
    note_url: Optional[str] = None
    dry_run: bool = False
    error: Optional[str] = None
    failures: Tuple[Tuple[str, str], ...] = field(default_factory=tuple)
