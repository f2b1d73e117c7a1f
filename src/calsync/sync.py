"""Top-level sync coordinator.

One invocation walks the stages::

    START (or FORCE_FULL_SYNC) -> FETCH_BULK -> PARTITION_EVENTS
        -> EXPAND_RECURRING (one instance fetch per master) -> RECONCILE -> DONE

A forced full sync clears the feed's stored events, but only once the bulk
fetch has succeeded, so a failing provider never empties a feed. Fetch
failures propagate to the caller with no partial reconciliation.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from pydantic import ValidationError

from calsync.core.logging import feed_context
from calsync.core.telemetry import sync_span
from calsync.errors import short_error_message
from calsync.fetcher import FetchResult, PagedFetcher
from calsync.models import (
    Instance,
    Master,
    NonRecurring,
    RemoteEvent,
    TimeWindow,
    classify_event,
)
from calsync.providers.base import ProviderClient
from calsync.reconciler import EventReconciler, FailureKind, ItemFailure, ReconcileOutcome
from calsync.repository import EventRepository

logger = logging.getLogger(__name__)


class SyncMode(StrEnum):
    full = "full"
    incremental = "incremental"


class SyncStage(StrEnum):
    start = "start"
    force_full_sync = "force_full_sync"
    fetch_bulk = "fetch_bulk"
    partition_events = "partition_events"
    expand_recurring = "expand_recurring"
    reconcile = "reconcile"
    done = "done"


@dataclass
class Partition:
    """Bulk fetch items split by shape."""

    masters: dict[str, Master] = field(default_factory=dict)
    singles: list[NonRecurring] = field(default_factory=list)
    inline_instances: list[Instance] = field(default_factory=list)
    invalid: list[ItemFailure] = field(default_factory=list)


def _raw_id(item: dict[str, Any]) -> str | None:
    value = item.get("id")
    return value if isinstance(value, str) and value else None


def partition_events(items: Iterable[dict[str, Any]]) -> Partition:
    """Split raw bulk items into masters, non-recurring singles and inline instances.

    Items that do not parse as a remote event land in ``invalid``. A repeated
    id keeps its last occurrence.
    """
    partition = Partition()
    singles: dict[str, NonRecurring] = {}
    for item in items:
        try:
            event = RemoteEvent.model_validate(item)
        except ValidationError as exc:
            partition.invalid.append(
                ItemFailure(
                    external_id=_raw_id(item),
                    kind=FailureKind.invalid_event,
                    reason=short_error_message(exc),
                )
            )
            continue
        shape = classify_event(event)
        if isinstance(shape, Master):
            singles.pop(shape.external_id, None)
            partition.masters[shape.external_id] = shape
        elif isinstance(shape, Instance):
            partition.inline_instances.append(shape)
        else:
            partition.masters.pop(shape.external_id, None)
            singles[shape.external_id] = shape
    partition.singles = list(singles.values())
    return partition


@dataclass
class SyncResult:
    """What one sync invocation reports back to its caller.

    ``next_sync_token`` is ``None`` when the provider issued no token; the
    caller must then run a full sync next time.
    """

    feed_id: str
    mode: SyncMode
    processed_external_ids: set[str] = field(default_factory=set)
    next_sync_token: str | None = None
    created: int = 0
    updated: int = 0
    unchanged: int = 0
    deleted: int = 0
    cleared: int = 0
    failed: int = 0
    skipped: int = 0
    failures: list[ItemFailure] = field(default_factory=list)
    stages: list[SyncStage] = field(default_factory=list)

    @property
    def processed(self) -> int:
        return len(self.processed_external_ids)

    def absorb(self, outcome: ReconcileOutcome) -> None:
        self.processed_external_ids |= outcome.processed_external_ids
        self.created += outcome.created
        self.updated += outcome.updated
        self.unchanged += outcome.unchanged
        self.deleted += outcome.deleted
        self.failed += outcome.failed
        self.skipped += outcome.skipped
        self.failures.extend(outcome.failures)

    def summary(self) -> dict[str, Any]:
        return {
            "feed_id": self.feed_id,
            "mode": self.mode.value,
            "processed": self.processed,
            "created": self.created,
            "updated": self.updated,
            "unchanged": self.unchanged,
            "deleted": self.deleted,
            "cleared": self.cleared,
            "failed": self.failed,
            "skipped": self.skipped,
            "next_sync_token_issued": self.next_sync_token is not None,
        }


class SyncOrchestrator:
    """Runs one full or incremental sync of a feed against a provider."""

    def __init__(
        self,
        client: ProviderClient,
        repository: EventRepository,
        *,
        fetcher: PagedFetcher | None = None,
        reconciler: EventReconciler | None = None,
    ) -> None:
        self._client = client
        self._repository = repository
        self._fetcher = fetcher or PagedFetcher(client)
        self._reconciler = reconciler or EventReconciler(repository)

    async def sync(
        self,
        feed_id: str,
        endpoint: str,
        prior_token: str | None = None,
        force_full: bool = False,
    ) -> SyncResult:
        """Mirror *endpoint* into the events of *feed_id*.

        Raises
        ------
        FetchError
            When any bulk or instance page fails; nothing is reconciled.
        """
        incremental = bool(prior_token) and not force_full
        mode = SyncMode.incremental if incremental else SyncMode.full
        result = SyncResult(feed_id=feed_id, mode=mode)
        result.stages.append(SyncStage.force_full_sync if force_full else SyncStage.start)

        with feed_context(feed_id), sync_span(feed_id, mode=mode.value) as span:
            logger.info("Starting %s sync of feed %s", mode.value, feed_id)

            result.stages.append(SyncStage.fetch_bulk)
            window = self._fetcher.window()
            fetched = await self._fetcher.fetch(
                endpoint,
                sync_token=prior_token,
                force_full=force_full,
                window=window,
            )

            result.stages.append(SyncStage.partition_events)
            partition = partition_events(fetched.items)
            self._record_invalid(result, partition.invalid)
            if partition.inline_instances:
                logger.debug(
                    "Ignoring %d inline instance(s); instances are fetched per master",
                    len(partition.inline_instances),
                )

            result.stages.append(SyncStage.expand_recurring)
            instances_by_master = await self._expand_recurring(partition, window, result)

            if force_full:
                result.cleared = await self._repository.delete_all_events(feed_id)
                logger.info("Cleared %d stored event(s) of feed %s", result.cleared, feed_id)

            result.stages.append(SyncStage.reconcile)
            outcome = await self._reconciler.reconcile(
                feed_id,
                partition.singles,
                list(partition.masters.values()),
                instances_by_master,
                self._tombstones(fetched),
            )
            result.absorb(outcome)
            result.next_sync_token = fetched.next_sync_token
            result.stages.append(SyncStage.done)

            for key, value in result.summary().items():
                if isinstance(value, int | bool):
                    span.set_attribute(f"sync.{key}", value)
            logger.info(
                "Finished %s sync of feed %s: %d processed, %d failed, next token %s",
                mode.value,
                feed_id,
                result.processed,
                result.failed,
                "issued" if result.next_sync_token else "not issued",
            )
        return result

    @staticmethod
    def _tombstones(fetched: FetchResult) -> list[str]:
        # Deletions only mean something relative to a prior token.
        return list(fetched.deleted_ids) if fetched.incremental else []

    async def _expand_recurring(
        self,
        partition: Partition,
        window: TimeWindow,
        result: SyncResult,
    ) -> dict[str, list[Instance]]:
        instances_by_master: dict[str, list[Instance]] = {}
        for master_id in partition.masters:
            items = await self._fetcher.fetch_instances(master_id, window)
            instances: list[Instance] = []
            invalid: list[ItemFailure] = []
            for item in items:
                try:
                    event = RemoteEvent.model_validate(item)
                except ValidationError as exc:
                    invalid.append(
                        ItemFailure(
                            external_id=_raw_id(item),
                            kind=FailureKind.invalid_event,
                            reason=short_error_message(exc),
                        )
                    )
                    continue
                instances.append(Instance(event=event, master_ref=master_id))
            self._record_invalid(result, invalid)
            instances_by_master[master_id] = instances
        return instances_by_master

    @staticmethod
    def _record_invalid(result: SyncResult, failures: list[ItemFailure]) -> None:
        for failure in failures:
            logger.warning(
                "Skipping unparsable remote item %s: %s",
                failure.external_id,
                failure.reason,
            )
            if failure.external_id:
                result.processed_external_ids.add(failure.external_id)
            result.failed += 1
            result.failures.append(failure)
