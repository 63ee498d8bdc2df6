from __future__ import annotations

import logging
from typing import List

import httpx

from .config import ALL_COLLECTION_ID
from .models import Bookmark
from .utils import parse_raindrop_datetime

logger = logging.getLogger(__name__)


class RaindropError(Exception):
    """Raised when Raindrop operations fail."""


class RaindropConnectionError(RaindropError):
    """Raised when Raindrop is unreachable (network/timeout)."""


class RaindropAuthError(RaindropError):
    """Raised when Raindrop rejects the access token."""


class RaindropTagNotFoundError(RaindropError):
    """Raised when the requested tag does not exist in the account."""


class RaindropApiError(RaindropError):
    """Raised when Raindrop returns an error response."""


def build_tag_search(tag: str) -> str:
    # Raindrop の検索構文: 空白を含むタグは #"..." で囲む
    if any(ch.isspace() for ch in tag):
        return f'#"{tag}"'
    return f"#{tag}"


class RaindropClient:
    def __init__(
        self,
        token: str,
        base_url: str = "https://api.raindrop.io",
        *,
        transport: httpx.BaseTransport | None = None,
    ):
        self._client = httpx.Client(
            base_url=base_url,
            headers={"Authorization": f"Bearer {token}"},
            timeout=20.0,
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    def check_connection(self) -> str:
        response = self._request_with_retry("GET", "/rest/v1/user")
        if response is None:
            raise RaindropConnectionError("Raindrop is unavailable (502/503/504).")
        user = response.json().get("user") or {}
        return str(user.get("fullName") or user.get("email") or "unknown user")

    def list_tags(self) -> List[str]:
        response = self._request_with_retry("GET", "/rest/v1/tags")
        if response is None:
            raise RaindropConnectionError("Raindrop tag listing failed after retries (502/503/504).")
        return [str(item["_id"]) for item in response.json().get("items", []) if "_id" in item]

    def list_bookmarks(self, tag: str, perpage: int = 50, max_pages: int = 20) -> List[Bookmark]:
        if not tag or not tag.strip():
            raise RaindropApiError("Tag must not be empty.")
        tag = tag.strip()
        known = {t.lower() for t in self.list_tags()}
        if tag.lower() not in known:
            raise RaindropTagNotFoundError(f"Tag not found in Raindrop: {tag}")

        bookmarks: List[Bookmark] = []
        for page in range(max_pages):
            response = self._request_with_retry(
                "GET",
                f"/rest/v1/raindrops/{ALL_COLLECTION_ID}",
                params={"page": page, "perpage": perpage, "sort": "-created", "search": build_tag_search(tag)},
            )
            if response is None:
                raise RaindropConnectionError(f"Raindrop page {page} failed after retries (502/503/504).")
            page_items = response.json().get("items", [])
            logger.info("Fetched %s bookmarks from page %s", len(page_items), page)
            for raw in page_items:
                bookmarks.append(self._to_model(raw))
            if len(page_items) < perpage:
                break
        else:
            logger.warning("Stopped after %s pages; tag #%s may have more bookmarks", max_pages, tag)
        logger.info("Found %s bookmarks tagged #%s", len(bookmarks), tag)
        return bookmarks

    def _request_with_retry(self, method: str, path: str, **kwargs) -> httpx.Response | None:
        for attempt in range(2):
            try:
                response = self._client.request(method, path, **kwargs)
                response.raise_for_status()
                return response
            except httpx.RequestError as exc:
                logger.warning("Raindrop request error %s %s: %s", method, path, exc)
                if attempt == 0:
                    continue
                raise RaindropConnectionError(f"Raindrop request failed: {exc}") from exc
            except httpx.HTTPStatusError as exc:
                status = exc.response.status_code
                if status in {401, 403}:
                    raise RaindropAuthError(f"Raindrop rejected the access token (status={status}).") from exc
                if status in {502, 503, 504} and attempt == 0:
                    logger.warning("Raindrop transient status %s for %s %s; retrying once", status, method, path)
                    continue
                if status in {502, 503, 504}:
                    logger.warning("Raindrop transient status %s for %s %s; giving up", status, method, path)
                    return None
                raise RaindropApiError(f"Raindrop request returned error: {exc}") from exc
        return None

    @staticmethod
    def _to_model(raw: dict) -> Bookmark:
        try:
            link = raw["link"]
            saved_at = parse_raindrop_datetime(raw["created"])
        except (AttributeError, KeyError, TypeError, ValueError) as exc:
            raise RaindropApiError(f"Malformed bookmark record {raw.get('_id', '?')}: {exc!r}") from exc
        return Bookmark(
            id=raw["_id"] if "_id" in raw else raw.get("id"),
            url=link,
            title=raw.get("title") or raw.get("domain") or link,
            saved_at=saved_at,
        )
