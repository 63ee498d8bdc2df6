from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path

import pytest

from raindrop_notebook.config import Settings
from raindrop_notebook.models import Bookmark, FetchErrorKind, FetchFailure, FetchSuccess

FIXED_NOW = datetime(2026, 10, 19, 9, 30, 0, tzinfo=timezone.utc)

ARTICLE_HTML = b"""
<html><head><title>Sample article</title><script>console.log('tracking');</script></head>
<body>
  <nav>Home | About | Contact</nav>
  <article>
    <h1>Sample article</h1>
    <p>The first paragraph explains what happened in considerable detail for the reader.</p>
    <p>The second paragraph explains why it happened and who was involved in the matter.</p>
    <p>The third paragraph describes what is expected to happen next according to the authors.</p>
  </article>
</body></html>
"""


def make_bookmark(n: int, url: str | None = None) -> Bookmark:
    return Bookmark(
        id=n,
        url=url or f"https://example.com/article/{n}",
        title=f"Article {n}",
        saved_at=datetime(2026, 10, 18, 12, n, tzinfo=timezone.utc),
    )


def success(bookmark: Bookmark, body: bytes = ARTICLE_HTML) -> FetchSuccess:
    return FetchSuccess(
        bookmark=bookmark,
        raw_bytes=body,
        fetched_at=FIXED_NOW,
        attempt_count=1,
        content_type="text/html; charset=utf-8",
    )


def failure(bookmark: Bookmark, reason: FetchErrorKind = FetchErrorKind.TIMEOUT, attempts: int = 3) -> FetchFailure:
    return FetchFailure(bookmark=bookmark, reason=reason, attempt_count=attempts)


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        raindrop_token="raindrop-token",
        notebook_api_url="https://notes.example.com/api",
        notebook_api_token="notebook-token",
        output_dir=tmp_path / "output",
        fallback_output_dir=tmp_path / "fallback",
        max_workers=3,
        min_request_interval=0.0,
        fetch_timeout=5.0,
        backoff_base=0.0,
        backoff_max=0.0,
    )
