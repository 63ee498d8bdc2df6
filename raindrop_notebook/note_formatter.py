from __future__ import annotations

import hashlib
from datetime import datetime
from typing import List, Optional, Sequence

from .config import EXCERPT_MAX_CHARS
from .models import ExtractedPage, FailureAnnotation, FetchOutcome, NotePayload, NoteSection
from .text_extractor import summarize
from .utils import format_datetime_utc, isoformat_utc


def build_note_title(tag: str, generated_at: datetime) -> str:
    return f"Raindrop #{tag} - {format_datetime_utc(generated_at)[:10]}"


def assemble(
    tag: str,
    outcomes: Sequence[FetchOutcome],
    extracted_pages: Sequence[Optional[ExtractedPage]],
    *,
    generated_at: datetime,
    excerpt_max_chars: int = EXCERPT_MAX_CHARS,
) -> NotePayload:
    """
    Build the note for one run.

    ``extracted_pages`` is aligned with ``outcomes``: a page for every
    success, ``None`` for every failure. Sections follow bookmark order and
    the output only depends on the arguments.
    """
    if len(outcomes) != len(extracted_pages):
        raise ValueError(
            f"outcomes and extracted_pages differ in length ({len(outcomes)} != {len(extracted_pages)})."
        )

    sections: List[NoteSection] = []
    for outcome, page in zip(outcomes, extracted_pages):
        if outcome.is_success():
            if page is None:
                raise ValueError(f"Missing extracted page for successful fetch of {outcome.url}.")
            sections.append(page)
        else:
            sections.append(
                FailureAnnotation(
                    url=outcome.url,
                    title=outcome.bookmark.title,
                    reason=outcome.describe(),  # type: ignore[union-attr]
                )
            )

    title = build_note_title(tag, generated_at)
    content = render_note(tag, generated_at, sections, excerpt_max_chars=excerpt_max_chars)
    return NotePayload(
        source_tag=tag,
        generated_at=generated_at,
        sections=tuple(sections),
        title=title,
        content=content,
    )


def render_note(
    tag: str,
    generated_at: datetime,
    sections: Sequence[NoteSection],
    *,
    excerpt_max_chars: int = EXCERPT_MAX_CHARS,
) -> str:
    succeeded = len([s for s in sections if isinstance(s, ExtractedPage)])
    failed = len(sections) - succeeded
    lines = [
        f"# Bookmarks tagged #{tag}",
        "",
        f"Generated: {format_datetime_utc(generated_at)}",
        f"Total: {len(sections)} / Succeeded: {succeeded} / Failed: {failed}",
        "",
    ]
    for idx, section in enumerate(sections, start=1):
        if isinstance(section, ExtractedPage):
            lines.append(f"## {idx}. {section.title}")
            lines.append(f"- URL: {section.url}")
            lines.append(f"- Saved: {format_datetime_utc(section.saved_at)}")
            lines.append("")
            lines.append("### Summary")
            lines.append(section.summary or "(no readable text could be extracted from this page)")
            excerpt = _excerpt(section, excerpt_max_chars)
            if excerpt:
                lines.append("")
                lines.append("### Excerpt")
                lines.append(excerpt)
        else:
            lines.append(f"## {idx}. [FAILED] {section.title or section.url}")
            lines.append(f"- URL: {section.url}")
            lines.append(f"- Reason: {section.reason}")
            lines.append("")
            lines.append("This page could not be retrieved; check it manually.")
        lines.append("")
    return "\n".join(lines).rstrip("\n") + "\n"


def _excerpt(page: ExtractedPage, max_chars: int) -> str:
    if max_chars <= 0 or not page.body_text:
        return ""
    if len(page.body_text) <= max_chars:
        excerpt = page.body_text
    else:
        excerpt = summarize(page.body_text, max_chars)
    # Repeating the summary adds nothing.
    if excerpt == page.summary:
        return ""
    return excerpt


def payload_hash(payload: NotePayload) -> str:
    digest = hashlib.sha256()
    digest.update(payload.title.encode("utf-8"))
    digest.update(b"\n")
    digest.update(payload.content.encode("utf-8"))
    return digest.hexdigest()


def payload_to_request(payload: NotePayload) -> dict:
    return {
        "title": payload.title,
        "content": payload.content,
        "tag": payload.source_tag,
        "generated_at": isoformat_utc(payload.generated_at),
    }
