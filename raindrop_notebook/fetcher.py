from __future__ import annotations

import logging
import random
import threading
import time
from typing import Callable, Optional

import httpx

from .config import DEFAULT_FETCH_MAX_ATTEMPTS, RETRY_BACKOFF_BASE, RETRY_BACKOFF_MAX
from .models import Bookmark, FetchErrorKind, FetchFailure, FetchOutcome, FetchSuccess
from .rate_limiter import RateLimiter
from .utils import utc_now

logger = logging.getLogger(__name__)

# NOTE:
# 多くのサイトは「botっぽい User-Agent」を 403 で弾くことがあります。
# そのためデフォルトは一般的なブラウザUAにし、必要なら HTTP_USER_AGENT で上書きできるようにします。
DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/131.0.0.0 Safari/537.36"
)

RETRYABLE_STATUSES = frozenset({429})


def _request_headers(user_agent: str) -> dict[str, str]:
    return {
        "User-Agent": user_agent,
        "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
        "Accept-Language": "en-US,en;q=0.9",
    }


def is_retryable_status(status_code: int) -> bool:
    return status_code in RETRYABLE_STATUSES or status_code >= 500


def validate_url(url: str) -> str | None:
    """Return a reason string when the URL cannot be fetched at all, else None."""
    try:
        parsed = httpx.URL(url)
    except (httpx.InvalidURL, TypeError, ValueError) as exc:
        return f"malformed URL: {exc}"
    if parsed.scheme not in ("http", "https"):
        return f"unsupported URL scheme: {parsed.scheme or '(none)'}"
    if not parsed.host:
        return "malformed URL: missing host"
    return None


def _parse_retry_after(response: httpx.Response) -> float | None:
    value = response.headers.get("Retry-After")
    if not value:
        return None
    try:
        return max(0.0, float(value.strip()))
    except ValueError:
        return None


class Fetcher:
    """
    Fetches one bookmark URL with retries and returns a FetchOutcome.

    Every attempt (retries included) takes one slot from the shared
    RateLimiter. Per-URL problems never raise; they become FetchFailure.
    """

    def __init__(
        self,
        rate_limiter: RateLimiter,
        *,
        max_attempts: int = DEFAULT_FETCH_MAX_ATTEMPTS,
        backoff_base: float = RETRY_BACKOFF_BASE,
        backoff_max: float = RETRY_BACKOFF_MAX,
        user_agent: Optional[str] = None,
        transport: httpx.BaseTransport | None = None,
        cancel_event: Optional[threading.Event] = None,
        sleep: Optional[Callable[[float], None]] = None,
        rng: Optional[random.Random] = None,
        clock=utc_now,
    ):
        if max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1 (got {max_attempts}).")
        self._rate_limiter = rate_limiter
        self._max_attempts = max_attempts
        self._backoff_base = backoff_base
        self._backoff_max = backoff_max
        self._cancel_event = cancel_event
        self._sleep = sleep
        self._rng = rng or random.Random()
        self._clock = clock
        self._client = httpx.Client(
            headers=_request_headers(user_agent or DEFAULT_USER_AGENT),
            follow_redirects=True,
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "Fetcher":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def fetch(self, bookmark: Bookmark, timeout: float) -> FetchOutcome:
        url = bookmark.url
        problem = validate_url(url)
        if problem:
            logger.warning("Not fetching %s: %s", url, problem)
            return FetchFailure(bookmark=bookmark, reason=FetchErrorKind.TERMINAL, attempt_count=0, detail=problem)

        for attempt in range(1, self._max_attempts + 1):
            retry_after: float | None = None
            with self._rate_limiter.slot():
                logger.debug("Fetching %s (attempt %s/%s)", url, attempt, self._max_attempts)
                try:
                    response = self._client.get(url, timeout=timeout)
                except httpx.TimeoutException as exc:
                    failure = FetchFailure(
                        bookmark=bookmark,
                        reason=FetchErrorKind.TIMEOUT,
                        attempt_count=attempt,
                        detail=str(exc) or type(exc).__name__,
                    )
                except (httpx.UnsupportedProtocol, httpx.TooManyRedirects, httpx.InvalidURL) as exc:
                    logger.warning("Terminal fetch error for %s: %s", url, exc)
                    return FetchFailure(
                        bookmark=bookmark,
                        reason=FetchErrorKind.TERMINAL,
                        attempt_count=attempt,
                        detail=str(exc) or type(exc).__name__,
                    )
                except httpx.RequestError as exc:
                    failure = FetchFailure(
                        bookmark=bookmark,
                        reason=FetchErrorKind.NETWORK_ERROR,
                        attempt_count=attempt,
                        detail=str(exc) or type(exc).__name__,
                    )
                else:
                    status = response.status_code
                    if 200 <= status < 300:
                        logger.info("Fetched %s (%s bytes, attempt %s)", url, len(response.content), attempt)
                        return FetchSuccess(
                            bookmark=bookmark,
                            raw_bytes=response.content,
                            fetched_at=self._clock(),
                            attempt_count=attempt,
                            content_type=response.headers.get("Content-Type"),
                        )
                    failure = FetchFailure(
                        bookmark=bookmark,
                        reason=FetchErrorKind.HTTP_STATUS,
                        attempt_count=attempt,
                        status_code=status,
                        detail=response.reason_phrase,
                    )
                    if not is_retryable_status(status):
                        logger.warning("HTTP %s for %s; not retrying", status, url)
                        return failure
                    retry_after = _parse_retry_after(response)

            if attempt < self._max_attempts:
                delay = self._backoff_delay(attempt, retry_after)
                logger.warning(
                    "Transient failure for %s (%s); retrying in %.2fs (attempt %s/%s)",
                    url,
                    failure.describe(),
                    delay,
                    attempt,
                    self._max_attempts,
                )
                if not self._wait(delay):
                    continue
                logger.info("Run cancelled; giving up on %s", url)
            logger.warning("Giving up on %s: %s", url, failure.describe())
            return failure
        raise RuntimeError(f"No fetch attempt was made for {url}.")

    def _backoff_delay(self, attempt: int, retry_after: float | None) -> float:
        ceiling = min(self._backoff_max, self._backoff_base * (2 ** (attempt - 1)))
        delay = ceiling / 2 + self._rng.uniform(0, ceiling / 2)
        if retry_after is not None:
            delay = max(delay, min(retry_after, self._backoff_max))
        return delay

    def _wait(self, delay: float) -> bool:
        """Sleep between attempts; returns True when the run was cancelled meanwhile."""
        if self._sleep is not None:
            self._sleep(delay)
            return self._cancel_event is not None and self._cancel_event.is_set()
        if self._cancel_event is not None:
            return self._cancel_event.wait(delay)
        time.sleep(delay)
        return False
