"""Microsoft Graph calendar provider client (httpx).

Bulk listing uses ``calendarView/delta``: the first page of a full round is
bounded by ``startDateTime``/``endDateTime``; an incremental round passes the
stored ``$deltatoken``. Follow-up pages use the absolute ``@odata.nextLink``
and the closing page carries ``@odata.deltaLink``.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import Any
from urllib.parse import quote

import httpx

from calsync.errors import (
    FetchError,
    ProviderRequestError,
    SyncTokenExpiredError,
    redact_credentials,
)
from calsync.models import TimeWindow
from calsync.providers.base import Page, ProviderClient

logger = logging.getLogger(__name__)

GRAPH_API_BASE_URL = "https://graph.microsoft.com/v1.0"
DEFAULT_PAGE_SIZE = 200
DEFAULT_TIMEOUT_SECONDS = 30.0

# Throttling retry: honour Retry-After on 429, exponential backoff on 503/504.
RATE_LIMIT_RETRY_STATUS_CODES = {429, 503, 504}
RATE_LIMIT_MAX_RETRIES = 3
RATE_LIMIT_BASE_BACKOFF_SECONDS = 1.0

# Error codes Graph uses when a delta token can no longer be resumed.
SYNC_STATE_ERROR_CODES = {"syncstatenotfound", "syncstateinvalid", "resyncrequired"}

INSTANCE_SELECT_FIELDS = (
    "id",
    "subject",
    "start",
    "end",
    "body",
    "location",
    "seriesMasterId",
    "type",
    "isAllDay",
    "showAs",
    "createdDateTime",
    "lastModifiedDateTime",
    "isOrganizer",
    "organizer",
    "attendees",
)

TokenProvider = Callable[[], Awaitable[str]]


def _graph_datetime(value: datetime) -> str:
    normalized = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    return normalized.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")


def _safe_graph_error(response: httpx.Response) -> tuple[str | None, str]:
    """Return ``(error_code, message)`` extracted from a Graph error body."""
    try:
        payload = response.json()
    except ValueError:
        payload = None

    if isinstance(payload, dict):
        error_payload = payload.get("error")
        if isinstance(error_payload, dict):
            code = error_payload.get("code")
            message = error_payload.get("message")
            code_text = code.strip() if isinstance(code, str) and code.strip() else None
            if isinstance(message, str) and message.strip():
                return code_text, redact_credentials(" ".join(message.split()))[:200]
            if code_text:
                return code_text, code_text

    raw_text = response.text.strip()
    if raw_text:
        return None, redact_credentials(" ".join(raw_text.split()))[:200]
    return None, "Request failed without an error payload"


def _fixed_token(token: str) -> TokenProvider:
    async def _provide() -> str:
        return token

    return _provide


class GraphProviderClient(ProviderClient):
    """Bearer-authenticated Graph client. Token refresh is the caller's concern."""

    def __init__(
        self,
        *,
        access_token: str | None = None,
        token_provider: TokenProvider | None = None,
        base_url: str = GRAPH_API_BASE_URL,
        page_size: int = DEFAULT_PAGE_SIZE,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        max_retries: int = RATE_LIMIT_MAX_RETRIES,
        http_client: httpx.AsyncClient | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if access_token is None and token_provider is None:
            raise ValueError("GraphProviderClient needs an access_token or a token_provider")
        if page_size < 1:
            raise ValueError("page_size must be at least 1")
        self._token_provider = token_provider or _fixed_token(access_token or "")
        self._base_url = base_url.rstrip("/")
        self._page_size = page_size
        self._max_retries = max_retries
        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=timeout_seconds)
        self._sleep = sleep

    @property
    def name(self) -> str:
        return "graph"

    def delta_endpoint(self, calendar_id: str) -> str:
        return f"/me/calendars/{quote(calendar_id, safe='')}/calendarView/delta"

    def _instances_endpoint(self, master_external_id: str) -> str:
        return f"/me/events/{quote(master_external_id, safe='')}/instances"

    def _url(self, endpoint: str) -> str:
        if endpoint.startswith(("http://", "https://")):
            return endpoint
        normalized = endpoint if endpoint.startswith("/") else f"/{endpoint}"
        return f"{self._base_url}{normalized}"

    async def _bearer_token(self) -> str:
        return await self._token_provider()

    async def _request_once(
        self,
        url: str,
        *,
        params: dict[str, Any] | None,
    ) -> httpx.Response:
        token = await self._bearer_token()
        headers = {
            "Authorization": f"Bearer {token}",
            "Prefer": f'odata.maxpagesize={self._page_size}, outlook.timezone="UTC"',
        }
        try:
            return await self._http_client.get(url, params=params, headers=headers)
        except httpx.HTTPError as exc:
            raise FetchError(f"Graph request failed: {redact_credentials(str(exc))}") from exc

    async def _get_json(
        self,
        endpoint: str,
        *,
        params: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        url = self._url(endpoint)
        response = await self._request_once(url, params=params)

        retry = 0
        while (
            response.status_code in RATE_LIMIT_RETRY_STATUS_CODES and retry < self._max_retries
        ):
            backoff = RATE_LIMIT_BASE_BACKOFF_SECONDS * (2**retry)
            retry_after_header = response.headers.get("Retry-After")
            if retry_after_header is not None:
                try:
                    backoff = float(retry_after_header)
                except ValueError:
                    pass
            logger.warning(
                "Graph API throttled (status=%d), retrying in %.1fs (attempt %d/%d)",
                response.status_code,
                backoff,
                retry + 1,
                self._max_retries,
            )
            await self._sleep(backoff)
            response = await self._request_once(url, params=params)
            retry += 1

        if response.status_code == 410:
            raise SyncTokenExpiredError("Delta token expired; full re-sync required")

        if response.status_code < 200 or response.status_code >= 300:
            code, message = _safe_graph_error(response)
            if code is not None and code.lower() in SYNC_STATE_ERROR_CODES:
                raise SyncTokenExpiredError(f"Delta token rejected ({code}); full re-sync required")
            raise ProviderRequestError(status_code=response.status_code, message=message)

        try:
            payload = response.json()
        except ValueError as exc:
            raise FetchError("Graph API returned invalid JSON for a successful response") from exc

        if not isinstance(payload, dict):
            raise FetchError("Graph API returned an unexpected JSON payload shape")
        return payload

    @staticmethod
    def _to_page(payload: dict[str, Any]) -> Page:
        raw_items = payload.get("value")
        items = (
            [item for item in raw_items if isinstance(item, dict)]
            if isinstance(raw_items, list)
            else []
        )
        next_link = payload.get("@odata.nextLink")
        delta_link = payload.get("@odata.deltaLink")
        return Page(
            items=items,
            next_link=next_link if isinstance(next_link, str) and next_link else None,
            delta_link=delta_link if isinstance(delta_link, str) and delta_link else None,
        )

    async def fetch_page(
        self,
        endpoint: str,
        *,
        sync_token: str | None = None,
        window: TimeWindow | None = None,
        next_link: str | None = None,
    ) -> Page:
        if next_link is not None:
            return self._to_page(await self._get_json(next_link))

        params: dict[str, Any] = {}
        if sync_token is not None:
            params["$deltatoken"] = sync_token
        elif window is not None:
            params["startDateTime"] = _graph_datetime(window.start)
            params["endDateTime"] = _graph_datetime(window.end)
        else:
            raise ValueError("fetch_page needs a sync_token, a window, or a next_link")
        return self._to_page(await self._get_json(endpoint, params=params))

    async def fetch_instances(
        self,
        master_external_id: str,
        window: TimeWindow,
        *,
        next_link: str | None = None,
    ) -> Page:
        if next_link is not None:
            return self._to_page(await self._get_json(next_link))

        params = {
            "startDateTime": _graph_datetime(window.start),
            "endDateTime": _graph_datetime(window.end),
            "$select": ",".join(INSTANCE_SELECT_FIELDS),
            "$orderby": "start/dateTime",
            "$top": self._page_size,
        }
        payload = await self._get_json(self._instances_endpoint(master_external_id), params=params)
        return self._to_page(payload)

    async def aclose(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()
