from __future__ import annotations

import logging
import queue
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable, List, Optional, Protocol, Sequence, Tuple

import httpx

from .config import ConfigurationError, Settings
from .fetcher import Fetcher
from .models import Bookmark, FetchErrorKind, FetchFailure, FetchOutcome
from .rate_limiter import RateLimiter

logger = logging.getLogger(__name__)

ProgressSink = Callable[[int, int], None]

# Interval at which the collecting thread wakes up to notice interrupts.
_POLL_SECONDS = 0.5


class PageFetcher(Protocol):
    def fetch(self, bookmark: Bookmark, timeout: float) -> FetchOutcome: ...


def log_progress(completed: int, total: int) -> None:
    logger.info("Progress %s/%s", completed, total)


def select_targets(bookmarks: Sequence[Bookmark], max_urls: Optional[int]) -> List[Bookmark]:
    targets = list(bookmarks)
    if max_urls is not None and len(targets) > max_urls:
        logger.info("Limiting run to the first %s of %s bookmarks", max_urls, len(targets))
        targets = targets[:max_urls]
    return targets


def collect(
    bookmarks: Sequence[Bookmark],
    settings: Settings,
    *,
    fetcher: Optional[PageFetcher] = None,
    progress: Optional[ProgressSink] = None,
    cancel_event: Optional[threading.Event] = None,
    rate_limiter: Optional[RateLimiter] = None,
    transport: httpx.BaseTransport | None = None,
) -> List[FetchOutcome]:
    """
    Fetch every bookmark on a bounded worker pool.

    Returns exactly one outcome per (possibly truncated) input bookmark, in
    input order. Completion order is only visible through ``progress``.
    Un-dispatched bookmarks of a cancelled run come back as CANCELLED failures.
    ``rate_limiter`` and ``transport`` only apply to the default Fetcher.
    """
    settings.validate()
    targets = select_targets(bookmarks, settings.max_urls)
    if not targets:
        raise ConfigurationError("No bookmarks to process; at least one is required.")

    cancel_event = cancel_event or threading.Event()
    progress = progress or log_progress
    owned: Optional[Fetcher] = None
    if fetcher is None:
        limiter = rate_limiter or RateLimiter(settings.effective_max_in_flight, settings.min_request_interval)
        owned = Fetcher(
            limiter,
            max_attempts=settings.fetch_max_attempts,
            backoff_base=settings.backoff_base,
            backoff_max=settings.backoff_max,
            user_agent=settings.user_agent,
            transport=transport,
            cancel_event=cancel_event,
        )
        fetcher = owned
    page_fetcher: PageFetcher = fetcher

    total = len(targets)
    pool_size = min(settings.max_workers, total)
    work: "queue.Queue[Tuple[int, Bookmark]]" = queue.Queue()
    for index, bookmark in enumerate(targets):
        work.put((index, bookmark))
    # Each index leaves the work queue once, so every slot has a single writer.
    slots: List[Optional[FetchOutcome]] = [None] * total
    completions: "queue.Queue[int]" = queue.Queue()

    def worker() -> None:
        while True:
            try:
                index, bookmark = work.get_nowait()
            except queue.Empty:
                return
            if cancel_event.is_set():
                outcome: FetchOutcome = FetchFailure(
                    bookmark=bookmark,
                    reason=FetchErrorKind.CANCELLED,
                    attempt_count=0,
                    detail="run cancelled before dispatch",
                )
            else:
                try:
                    outcome = page_fetcher.fetch(bookmark, settings.fetch_timeout)
                except Exception as exc:  # noqa: BLE001
                    logger.exception("Unexpected failure while fetching %s: %s", bookmark.url, exc)
                    outcome = FetchFailure(
                        bookmark=bookmark,
                        reason=FetchErrorKind.TERMINAL,
                        attempt_count=1,
                        detail=f"unexpected error: {exc}",
                    )
            slots[index] = outcome
            completions.put(index)

    logger.info("Collecting %s bookmarks with %s workers", total, pool_size)
    try:
        with ThreadPoolExecutor(max_workers=pool_size, thread_name_prefix="fetch") as executor:
            workers = [executor.submit(worker) for _ in range(pool_size)]
            _await_completions(workers, completions, slots, progress, cancel_event)
    finally:
        if owned is not None:
            owned.close()

    outcomes = [outcome for outcome in slots if outcome is not None]
    if len(outcomes) != total:
        raise RuntimeError(f"Collected {len(outcomes)} outcomes for {total} bookmarks.")
    succeeded = len([o for o in outcomes if o.is_success()])
    logger.info("Collection finished. Total=%s Success=%s Failure=%s", total, succeeded, total - succeeded)
    return outcomes


def _await_completions(
    workers: List[Future],
    completions: "queue.Queue[int]",
    slots: List[Optional[FetchOutcome]],
    progress: ProgressSink,
    cancel_event: threading.Event,
) -> None:
    """
    Report completions as they arrive until every worker has exited.

    The first interrupt only sets ``cancel_event``: workers stop taking new
    bookmarks and in-flight fetches run to completion. A second one aborts.
    """
    total = len(slots)
    reported = 0
    while reported < total:
        try:
            try:
                index = completions.get(timeout=_POLL_SECONDS)
            except queue.Empty:
                if all(w.done() for w in workers) and completions.empty():
                    return
                continue
            reported += 1
            outcome = slots[index]
            if outcome is not None and not outcome.is_success():
                logger.warning("Failed %s: %s", outcome.url, outcome.describe())  # type: ignore[union-attr]
            _report(progress, reported, total)
        except KeyboardInterrupt:
            if cancel_event.is_set():
                raise
            logger.warning("Interrupted; finishing in-flight fetches and skipping the rest")
            cancel_event.set()


def _report(progress: ProgressSink, completed: int, total: int) -> None:
    try:
        progress(completed, total)
    except Exception:  # noqa: BLE001
        logger.exception("Progress sink failed at %s/%s", completed, total)
