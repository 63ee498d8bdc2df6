from __future__ import annotations

import re
import unicodedata
from datetime import datetime, timezone


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_raindrop_datetime(value: str) -> datetime:
    normalized = value.replace("Z", "+00:00") if value.endswith("Z") else value
    try:
        return datetime.fromisoformat(normalized)
    except ValueError as exc:
        raise ValueError(f"Invalid datetime format: {value}") from exc


def format_datetime_utc(dt: datetime) -> str:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).strftime("%Y-%m-%d %H:%M UTC")


def isoformat_utc(dt: datetime) -> str:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat()


def trim_text(text: str, max_chars: int) -> str:
    if len(text) <= max_chars:
        return text
    return text[:max_chars]


_SLUG_STRIP = re.compile(r"[^\w\-]+")
_SLUG_DASHES = re.compile(r"-{2,}")


def slugify(value: str, fallback: str = "untagged") -> str:
    """
    Build a filesystem-safe file name fragment.

    Keeps unicode word characters (tags are often Japanese), folds whitespace
    into dashes and strips everything else.
    """
    normalized = unicodedata.normalize("NFKC", value).strip().lower()
    normalized = re.sub(r"\s+", "-", normalized)
    normalized = _SLUG_STRIP.sub("", normalized)
    normalized = _SLUG_DASHES.sub("-", normalized).strip("-_")
    return normalized or fallback
