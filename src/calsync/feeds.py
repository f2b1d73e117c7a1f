"""Feed-level sync service: runs the orchestrator and keeps the feed cursor current."""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from collections.abc import Callable, Iterable
from datetime import UTC, datetime

from calsync.config import FeedConfig
from calsync.errors import (
    CalsyncError,
    FeedNotFoundError,
    SyncTokenExpiredError,
    short_error_message,
)
from calsync.models import CalendarFeed
from calsync.providers.base import ProviderClient
from calsync.repository import EventRepository, FeedRepository
from calsync.sync import SyncOrchestrator, SyncResult

logger = logging.getLogger(__name__)


class FeedSyncService:
    """Syncs stored feeds and records the outcome on the feed row.

    After a successful sync the feed's ``sync_token`` is replaced by the token
    the provider issued (``None`` when it issued none, which forces the next
    sync to be full) and ``last_sync_error`` is cleared. A rejected token is
    retried once as a forced full sync. Any other failure is recorded on the
    feed, the stored token is kept, and the error propagates.

    Two in-process syncs of the same feed are serialized by a per-feed lock.
    """

    def __init__(
        self,
        feeds: FeedRepository,
        events: EventRepository,
        client: ProviderClient,
        *,
        orchestrator: SyncOrchestrator | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._feeds = feeds
        self._client = client
        self._orchestrator = orchestrator or SyncOrchestrator(client, events)
        self._clock = clock or (lambda: datetime.now(UTC))
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def register_feeds(self, feeds: Iterable[FeedConfig]) -> list[CalendarFeed]:
        """Create or update feed rows from configuration."""
        saved: list[CalendarFeed] = []
        for feed in feeds:
            saved.append(
                await self._feeds.save_feed(
                    CalendarFeed(
                        id=feed.id,
                        calendar_id=feed.calendar_id,
                        name=feed.name,
                        enabled=feed.enabled,
                    )
                )
            )
        return saved

    async def sync_feed(self, feed_id: str, *, force_full: bool = False) -> SyncResult:
        async with self._locks[feed_id]:
            feed = await self._feeds.get_feed(feed_id)
            if feed is None:
                raise FeedNotFoundError(f"Unknown feed: {feed_id!r}")

            try:
                result = await self._run(feed, force_full=force_full)
            except CalsyncError as exc:
                await self._feeds.record_sync_error(feed.id, error=short_error_message(exc))
                logger.error("Sync of feed %s failed: %s", feed.id, short_error_message(exc))
                raise

            await self._feeds.record_sync_success(
                feed.id,
                sync_token=result.next_sync_token,
                synced_at=self._clock(),
            )
            return result

    async def sync_all(self, *, force_full: bool = False) -> dict[str, SyncResult | CalsyncError]:
        """Sync every enabled feed one after another; one failing feed does not stop the rest."""
        results: dict[str, SyncResult | CalsyncError] = {}
        for feed in await self._feeds.list_feeds(enabled_only=True):
            try:
                results[feed.id] = await self.sync_feed(feed.id, force_full=force_full)
            except CalsyncError as exc:
                results[feed.id] = exc
        return results

    async def _run(self, feed: CalendarFeed, *, force_full: bool) -> SyncResult:
        endpoint = self._client.delta_endpoint(feed.calendar_id)
        try:
            return await self._orchestrator.sync(
                feed.id,
                endpoint,
                prior_token=feed.sync_token,
                force_full=force_full,
            )
        except SyncTokenExpiredError:
            if force_full or not feed.sync_token:
                raise
            logger.warning(
                "Sync token for feed %s was rejected; falling back to a full sync", feed.id
            )
            return await self._orchestrator.sync(
                feed.id,
                endpoint,
                prior_token=None,
                force_full=True,
            )
