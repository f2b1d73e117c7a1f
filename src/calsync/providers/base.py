"""Provider client abstraction consumed by the fetcher and orchestrator."""

from __future__ import annotations

import abc
from dataclasses import dataclass, field
from typing import Any

from calsync.models import TimeWindow

# Marker key a provider sets on inline tombstones in delta responses.
REMOVED_MARKER = "@removed"


@dataclass
class Page:
    """One page of a remote collection.

    ``next_link`` is an opaque continuation for the same logical request;
    ``delta_link`` is only present on the page that closes a delta round
    and carries the token for the next incremental sync.
    """

    items: list[dict[str, Any]] = field(default_factory=list)
    next_link: str | None = None
    delta_link: str | None = None


class ProviderClient(abc.ABC):
    """Read-only access to one provider's event collections.

    Implementations own transport concerns: authentication headers, timeouts,
    retries for throttling. They raise ``FetchError`` subclasses on failure
    and never return partial pages.
    """

    @property
    @abc.abstractmethod
    def name(self) -> str:
        """Short provider name used in logs (e.g. ``"graph"``)."""

    @abc.abstractmethod
    def delta_endpoint(self, calendar_id: str) -> str:
        """Collection endpoint for the bulk (delta-capable) event listing of a calendar."""

    @abc.abstractmethod
    async def fetch_page(
        self,
        endpoint: str,
        *,
        sync_token: str | None = None,
        window: TimeWindow | None = None,
        next_link: str | None = None,
    ) -> Page:
        """Fetch one page of *endpoint*.

        Exactly one request shape applies: ``next_link`` (follow-up page),
        ``sync_token`` (incremental round) or ``window`` (bounded full round).
        """

    @abc.abstractmethod
    async def fetch_instances(
        self,
        master_external_id: str,
        window: TimeWindow,
        *,
        next_link: str | None = None,
    ) -> Page:
        """Fetch one page of concrete occurrences of a series master inside *window*."""

    async def aclose(self) -> None:
        """Release transport resources."""
        return None

    async def __aenter__(self) -> ProviderClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()
