from __future__ import annotations

import logging
import re
from typing import List, Optional

from lxml import etree, html
from readability import Document
from readability.readability import Unparseable

from .config import MAX_EXTRACT_CHARS, SUMMARY_MAX_CHARS
from .models import ExtractedPage, ExtractedText, FetchSuccess
from .utils import trim_text

logger = logging.getLogger(__name__)

_HTML_TYPES = ("text/html", "application/xhtml+xml")
_TEXT_TYPES = ("text/plain", "text/markdown")

# Sentence terminators (Latin and CJK), optionally followed by closing quotes/brackets.
_SENTENCE_END = re.compile(r"[.!?。！？](?:[\"'”’)\]」』】]*)(?=\s|$)|[。！？](?:[」』】]*)")
_INLINE_SPACE = re.compile(r"[ \t\u00a0\u3000]+")
_NON_TEXT_HINT = re.compile(rb"\x00")


def extract(raw_bytes: bytes, content_type: Optional[str] = None, *, max_summary_chars: int = SUMMARY_MAX_CHARS) -> ExtractedText:
    """
    Turn raw page bytes into normalized text and a bounded summary.

    Pure and deterministic. Content that cannot be read as text yields an
    empty body instead of an error.
    """
    kind = _classify(raw_bytes, content_type)
    title = ""
    if kind == "html":
        body, title = _extract_html(raw_bytes)
    elif kind == "text":
        body = normalize_text(_decode(raw_bytes, content_type))
    else:
        body = ""
    body = trim_text(body, MAX_EXTRACT_CHARS)
    return ExtractedText(body_text=body, summary=summarize(body, max_summary_chars), title=title)


def extract_page(outcome: FetchSuccess, *, max_summary_chars: int = SUMMARY_MAX_CHARS) -> ExtractedPage:
    extracted = extract(outcome.raw_bytes, outcome.content_type, max_summary_chars=max_summary_chars)
    bookmark = outcome.bookmark
    title = bookmark.title.strip() or extracted.title or bookmark.url
    if not extracted.body_text:
        logger.info("No readable text extracted from %s", bookmark.url)
    else:
        logger.info("Extracted %s characters from %s", len(extracted.body_text), bookmark.url)
    return ExtractedPage(
        url=bookmark.url,
        title=title,
        saved_at=bookmark.saved_at,
        body_text=extracted.body_text,
        summary=extracted.summary,
    )


def normalize_text(text: str) -> str:
    """Collapse inline whitespace and blank-line runs; keep paragraph breaks."""
    paragraphs: List[str] = []
    for line in text.replace("\r\n", "\n").replace("\r", "\n").split("\n"):
        cleaned = _INLINE_SPACE.sub(" ", line).strip()
        if cleaned:
            paragraphs.append(cleaned)
    return "\n".join(paragraphs)


def split_sentences(text: str) -> List[str]:
    sentences: List[str] = []
    flat = " ".join(text.split())
    start = 0
    for match in _SENTENCE_END.finditer(flat):
        sentence = flat[start : match.end()].strip()
        if sentence:
            sentences.append(sentence)
        start = match.end()
    rest = flat[start:].strip()
    if rest:
        sentences.append(rest)
    return sentences


def summarize(text: str, max_chars: int = SUMMARY_MAX_CHARS) -> str:
    """
    Take whole leading sentences while they fit in ``max_chars``.

    When even the first sentence is too long, cut it at the last word
    boundary that fits (or hard-cut text without spaces, e.g. Japanese).
    """
    if max_chars < 1:
        raise ValueError(f"max_chars must be >= 1 (got {max_chars}).")
    sentences = split_sentences(text)
    if not sentences:
        return ""

    picked: List[str] = []
    length = 0
    for sentence in sentences:
        extra = len(sentence) + (1 if picked else 0)
        if length + extra > max_chars:
            break
        picked.append(sentence)
        length += extra
    if picked:
        return " ".join(picked)
    return _cut_on_word(sentences[0], max_chars)


def _cut_on_word(sentence: str, max_chars: int) -> str:
    head = sentence[:max_chars]
    if len(sentence) > max_chars and not sentence[max_chars].isspace():
        boundary = head.rfind(" ")
        if boundary > 0:
            head = head[:boundary]
    return head.rstrip()


def _classify(raw_bytes: bytes, content_type: Optional[str]) -> str:
    if not raw_bytes:
        return "empty"
    mime = (content_type or "").split(";", 1)[0].strip().lower()
    if mime in _HTML_TYPES:
        return "html"
    if mime in _TEXT_TYPES:
        return "text"
    if mime and not mime.startswith("text/") and not mime.endswith("+xml") and mime != "application/xml":
        return "binary"
    if _NON_TEXT_HINT.search(raw_bytes[:1024]):
        return "binary"
    head = raw_bytes[:1024].lstrip().lower()
    if head.startswith((b"<!doctype html", b"<html")) or b"<body" in head or b"<head" in head:
        return "html"
    if mime.startswith("text/") or not mime:
        return "text"
    return "html"


def _charset(content_type: Optional[str]) -> Optional[str]:
    if not content_type:
        return None
    for part in content_type.split(";")[1:]:
        key, _, value = part.partition("=")
        if key.strip().lower() == "charset" and value.strip():
            return value.strip().strip('"').lower()
    return None


def _decode(raw_bytes: bytes, content_type: Optional[str]) -> str:
    charset = _charset(content_type) or "utf-8"
    try:
        return raw_bytes.decode(charset, errors="replace")
    except LookupError:
        return raw_bytes.decode("utf-8", errors="replace")


def _extract_html(raw_bytes: bytes) -> tuple[str, str]:
    try:
        doc = Document(raw_bytes)
        summary_html = doc.summary(html_partial=True)
        title = (doc.short_title() or "").strip()
        tree = html.fromstring(summary_html)
        text = tree.text_content()
    except (Unparseable, etree.ParserError, etree.XMLSyntaxError, ValueError, TypeError) as exc:
        logger.debug("Readability extraction failed (%s); falling back to raw text", exc)
        text, title = _fallback_text(raw_bytes)
    body = normalize_text(text)
    if not body:
        body, fallback_title = _fallback_text(raw_bytes)
        body = normalize_text(body)
        title = title or fallback_title
    return body, title


def _fallback_text(raw_bytes: bytes) -> tuple[str, str]:
    try:
        tree = html.fromstring(raw_bytes)
    except (etree.ParserError, etree.XMLSyntaxError, ValueError):
        return "", ""
    for bad in tree.xpath("//script|//style|//noscript"):
        bad.drop_tree()
    title = (tree.findtext(".//title") or "").strip()
    body_nodes = tree.xpath("//body")
    node = body_nodes[0] if body_nodes else tree
    return node.text_content(), title
