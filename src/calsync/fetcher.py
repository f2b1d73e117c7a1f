"""Paginated retrieval of remote event collections.

``PagedFetcher.iter_pages`` is the page loop: it issues the first request
(incremental with a stored token, or bounded by a time window) and then
follows each page's opaque ``next_link`` until a page comes back without
one. ``fetch`` drains that loop into a ``FetchResult``.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any
from urllib.parse import parse_qs, urlsplit

from calsync.errors import FetchError
from calsync.models import TimeWindow
from calsync.providers.base import REMOVED_MARKER, Page, ProviderClient

logger = logging.getLogger(__name__)

DEFAULT_WINDOW_DAYS_BACK = 365
DEFAULT_WINDOW_DAYS_FORWARD = 365

# Upper bound on pages per request chain; a provider that keeps returning
# next links past this is treated as a fetch failure.
MAX_PAGES = 10_000

_TOKEN_QUERY_KEYS = ("$deltatoken", "deltatoken", "$skiptoken", "skiptoken")


def sync_token_from_delta_link(link: str | None) -> str | None:
    """Extract the continuation token from a provider delta link.

    A link without a query string is returned unchanged so providers that
    hand out bare tokens work too.
    """
    if not link:
        return None
    parts = urlsplit(link)
    if parts.query:
        query = parse_qs(parts.query, keep_blank_values=False)
        for key in _TOKEN_QUERY_KEYS:
            values = query.get(key)
            if values:
                return values[0]
    if "deltatoken=" in link:
        return link.split("deltatoken=", 1)[1].split("&", 1)[0] or None
    if parts.scheme or "?" in link:
        return None
    return link


def default_window_factory(
    *,
    clock: Callable[[], datetime] | None = None,
    days_back: int = DEFAULT_WINDOW_DAYS_BACK,
    days_forward: int = DEFAULT_WINDOW_DAYS_FORWARD,
) -> Callable[[], TimeWindow]:
    """Window factory anchored on *clock* (current UTC time by default)."""
    now = clock or (lambda: datetime.now(UTC))

    def _factory() -> TimeWindow:
        return TimeWindow.around(now(), days_back=days_back, days_forward=days_forward)

    return _factory


@dataclass
class FetchResult:
    """Everything one bulk fetch produced."""

    items: list[dict[str, Any]] = field(default_factory=list)
    deleted_ids: list[str] = field(default_factory=list)
    next_sync_token: str | None = None
    delta_link: str | None = None
    incremental: bool = False
    window: TimeWindow | None = None
    page_count: int = 0


def is_tombstone(item: dict[str, Any]) -> bool:
    return REMOVED_MARKER in item


class PagedFetcher:
    """Drives page-by-page retrieval through a ``ProviderClient``. Read-only."""

    def __init__(
        self,
        client: ProviderClient,
        *,
        window_factory: Callable[[], TimeWindow] | None = None,
        max_pages: int = MAX_PAGES,
    ) -> None:
        self._client = client
        self._window_factory = window_factory or default_window_factory()
        self._max_pages = max_pages

    def window(self) -> TimeWindow:
        return self._window_factory()

    async def iter_pages(
        self,
        endpoint: str,
        *,
        sync_token: str | None = None,
        force_full: bool = False,
        window: TimeWindow | None = None,
    ) -> AsyncIterator[Page]:
        """Yield pages of *endpoint* until the provider stops returning next links.

        Each call starts a fresh request chain, so the sequence can be
        restarted by iterating again.
        """
        if sync_token and not force_full:
            page = await self._client.fetch_page(endpoint, sync_token=sync_token)
        else:
            page = await self._client.fetch_page(endpoint, window=window or self.window())

        pages = 1
        yield page
        while page.next_link:
            if pages >= self._max_pages:
                raise FetchError(f"Pagination exceeded {self._max_pages} pages for {endpoint}")
            page = await self._client.fetch_page(endpoint, next_link=page.next_link)
            pages += 1
            yield page

    async def fetch(
        self,
        endpoint: str,
        *,
        sync_token: str | None = None,
        force_full: bool = False,
        window: TimeWindow | None = None,
    ) -> FetchResult:
        """Collect every page of *endpoint*.

        Inline tombstones are reported in ``deleted_ids`` only in incremental
        mode. The delta link of the last page that carries one supplies
        ``next_sync_token``. Any page failure propagates; nothing partial is
        returned.
        """
        incremental = bool(sync_token) and not force_full
        effective_window = None if incremental else (window or self.window())
        result = FetchResult(incremental=incremental, window=effective_window)

        async for page in self.iter_pages(
            endpoint,
            sync_token=sync_token,
            force_full=force_full,
            window=effective_window,
        ):
            result.page_count += 1
            for item in page.items:
                if is_tombstone(item):
                    item_id = item.get("id")
                    if incremental and isinstance(item_id, str) and item_id:
                        result.deleted_ids.append(item_id)
                    continue
                result.items.append(item)
            if page.delta_link:
                result.delta_link = page.delta_link

        result.next_sync_token = sync_token_from_delta_link(result.delta_link)
        logger.debug(
            "Fetched %d item(s) and %d tombstone(s) across %d page(s) from %s (incremental=%s)",
            len(result.items),
            len(result.deleted_ids),
            result.page_count,
            endpoint,
            incremental,
        )
        return result

    async def fetch_instances(
        self,
        master_external_id: str,
        window: TimeWindow,
    ) -> list[dict[str, Any]]:
        """Collect all occurrence items of one master inside *window*."""
        items: list[dict[str, Any]] = []
        page = await self._client.fetch_instances(master_external_id, window)
        pages = 1
        items.extend(item for item in page.items if not is_tombstone(item))
        while page.next_link:
            if pages >= self._max_pages:
                raise FetchError(
                    f"Pagination exceeded {self._max_pages} pages for instances of "
                    f"{master_external_id}"
                )
            page = await self._client.fetch_instances(
                master_external_id, window, next_link=page.next_link
            )
            pages += 1
            items.extend(item for item in page.items if not is_tombstone(item))
        return items
