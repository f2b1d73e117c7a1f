"""Tests for calsync.providers.graph.GraphProviderClient.

All HTTP traffic goes through ``httpx.MockTransport``; each test scripts the
responses and inspects the recorded requests.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime

import httpx
import pytest

from calsync.errors import FetchError, ProviderRequestError, SyncTokenExpiredError
from calsync.models import TimeWindow
from calsync.providers import PROVIDER_TYPES
from calsync.providers.graph import GRAPH_API_BASE_URL, GraphProviderClient

pytestmark = pytest.mark.unit

WINDOW = TimeWindow(
    start=datetime(2026, 1, 1, tzinfo=UTC),
    end=datetime(2026, 7, 1, tzinfo=UTC),
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class _Recorder:
    """Serves scripted responses in order and keeps every request."""

    def __init__(self, *responses: httpx.Response | Exception) -> None:
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


class _Sleeps:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def _client(
    recorder: Callable[[httpx.Request], httpx.Response],
    *,
    sleeps: _Sleeps | None = None,
    **kwargs,
) -> GraphProviderClient:
    kwargs.setdefault("access_token", "test-token")
    return GraphProviderClient(
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(recorder)),
        sleep=sleeps or _Sleeps(),
        **kwargs,
    )


def _ok(payload: object) -> httpx.Response:
    return httpx.Response(200, json=payload)


def _error(status: int, code: str, message: str) -> httpx.Response:
    return httpx.Response(status, json={"error": {"code": code, "message": message}})


# ---------------------------------------------------------------------------
# Construction and endpoints
# ---------------------------------------------------------------------------


class TestConstruction:
    def test_requires_credentials(self) -> None:
        with pytest.raises(ValueError, match="access_token or a token_provider"):
            GraphProviderClient()

    def test_rejects_non_positive_page_size(self) -> None:
        with pytest.raises(ValueError, match="page_size"):
            GraphProviderClient(access_token="t", page_size=0)

    def test_registered_as_graph(self) -> None:
        assert PROVIDER_TYPES["graph"] is GraphProviderClient

    def test_delta_endpoint_quotes_calendar_id(self) -> None:
        client = GraphProviderClient(access_token="t")
        assert client.name == "graph"
        endpoint = client.delta_endpoint("AAMk/ab=")
        assert endpoint == "/me/calendars/AAMk%2Fab%3D/calendarView/delta"

    async def test_aclose_leaves_injected_client_open(self) -> None:
        http_client = httpx.AsyncClient(transport=httpx.MockTransport(_Recorder()))
        client = GraphProviderClient(access_token="t", http_client=http_client)
        await client.aclose()
        assert not http_client.is_closed
        await http_client.aclose()

    async def test_context_manager_closes_owned_client(self) -> None:
        async with GraphProviderClient(access_token="t") as client:
            owned = client._http_client
        assert owned.is_closed


# ---------------------------------------------------------------------------
# Bulk pages
# ---------------------------------------------------------------------------


class TestFetchPage:
    async def test_full_round_sends_window_and_headers(self) -> None:
        recorder = _Recorder(_ok({"value": [{"id": "a"}]}))
        client = _client(recorder, page_size=50)

        page = await client.fetch_page("/me/calendars/cal/calendarView/delta", window=WINDOW)

        request = recorder.requests[0]
        assert request.url.path == "/v1.0/me/calendars/cal/calendarView/delta"
        assert request.url.params["startDateTime"] == "2026-01-01T00:00:00Z"
        assert request.url.params["endDateTime"] == "2026-07-01T00:00:00Z"
        assert "$deltatoken" not in request.url.params
        assert request.headers["Authorization"] == "Bearer test-token"
        assert "odata.maxpagesize=50" in request.headers["Prefer"]
        assert 'outlook.timezone="UTC"' in request.headers["Prefer"]
        assert page.items == [{"id": "a"}]
        assert page.next_link is None
        assert page.delta_link is None

    async def test_incremental_round_sends_token_only(self) -> None:
        recorder = _Recorder(_ok({"value": []}))
        await _client(recorder).fetch_page("/delta", sync_token="tok-1", window=WINDOW)

        params = recorder.requests[0].url.params
        assert params["$deltatoken"] == "tok-1"
        assert "startDateTime" not in params

    async def test_next_link_is_followed_verbatim(self) -> None:
        next_link = f"{GRAPH_API_BASE_URL}/me/calendarView/delta?$skiptoken=abc"
        recorder = _Recorder(_ok({"value": []}))
        await _client(recorder).fetch_page("/delta", next_link=next_link)

        assert recorder.requests[0].url.params["$skiptoken"] == "abc"
        assert recorder.requests[0].url.path == "/v1.0/me/calendarView/delta"

    async def test_page_links_and_item_filtering(self) -> None:
        recorder = _Recorder(
            _ok(
                {
                    "value": [{"id": "a"}, "junk", {"id": "b"}],
                    "@odata.nextLink": "https://next",
                    "@odata.deltaLink": "https://delta?$deltatoken=t",
                }
            )
        )
        page = await _client(recorder).fetch_page("/delta", window=WINDOW)

        assert page.items == [{"id": "a"}, {"id": "b"}]
        assert page.next_link == "https://next"
        assert page.delta_link == "https://delta?$deltatoken=t"

    async def test_request_shape_is_required(self) -> None:
        with pytest.raises(ValueError):
            await _client(_Recorder()).fetch_page("/delta")

    async def test_token_provider_is_awaited_per_request(self) -> None:
        calls = 0

        async def _token() -> str:
            nonlocal calls
            calls += 1
            return f"dynamic-{calls}"

        recorder = _Recorder(_ok({"value": []}), _ok({"value": []}))
        client = _client(recorder, access_token=None, token_provider=_token)
        await client.fetch_page("/delta", window=WINDOW)
        await client.fetch_page("/delta", next_link="https://next")

        assert [r.headers["Authorization"] for r in recorder.requests] == [
            "Bearer dynamic-1",
            "Bearer dynamic-2",
        ]


# ---------------------------------------------------------------------------
# Instances
# ---------------------------------------------------------------------------


class TestFetchInstances:
    async def test_instance_request_shape(self) -> None:
        recorder = _Recorder(_ok({"value": [{"id": "m1-1", "seriesMasterId": "m/1"}]}))
        page = await _client(recorder, page_size=25).fetch_instances("m/1", WINDOW)

        request = recorder.requests[0]
        assert "/v1.0/me/events/m%2F1/instances" in str(request.url)
        assert request.url.params["startDateTime"] == "2026-01-01T00:00:00Z"
        assert request.url.params["$orderby"] == "start/dateTime"
        assert request.url.params["$top"] == "25"
        assert "seriesMasterId" in request.url.params["$select"].split(",")
        assert page.items[0]["id"] == "m1-1"

    async def test_instance_next_link(self) -> None:
        recorder = _Recorder(_ok({"value": []}))
        await _client(recorder).fetch_instances("m1", WINDOW, next_link="https://next/page2")
        assert str(recorder.requests[0].url) == "https://next/page2"


# ---------------------------------------------------------------------------
# Errors and throttling
# ---------------------------------------------------------------------------


class TestErrors:
    async def test_retry_after_is_honoured(self) -> None:
        sleeps = _Sleeps()
        recorder = _Recorder(
            httpx.Response(429, headers={"Retry-After": "2"}),
            _ok({"value": [{"id": "a"}]}),
        )
        page = await _client(recorder, sleeps=sleeps).fetch_page("/delta", window=WINDOW)

        assert sleeps.delays == [2.0]
        assert len(recorder.requests) == 2
        assert page.items == [{"id": "a"}]

    async def test_exponential_backoff_then_give_up(self) -> None:
        sleeps = _Sleeps()
        recorder = _Recorder(
            httpx.Response(503, text="busy"),
            httpx.Response(503, text="busy"),
            httpx.Response(503, text="busy"),
        )
        with pytest.raises(ProviderRequestError) as exc_info:
            await _client(recorder, sleeps=sleeps, max_retries=2).fetch_page(
                "/delta", window=WINDOW
            )

        assert sleeps.delays == [1.0, 2.0]
        assert exc_info.value.status_code == 503

    async def test_gone_means_expired_token(self) -> None:
        recorder = _Recorder(httpx.Response(410))
        with pytest.raises(SyncTokenExpiredError):
            await _client(recorder).fetch_page("/delta", sync_token="old")

    async def test_sync_state_error_code_means_expired_token(self) -> None:
        recorder = _Recorder(_error(400, "SyncStateNotFound", "The sync state is gone"))
        with pytest.raises(SyncTokenExpiredError, match="SyncStateNotFound"):
            await _client(recorder).fetch_page("/delta", sync_token="old")

    async def test_error_message_is_redacted(self) -> None:
        recorder = _Recorder(
            _error(401, "InvalidAuthenticationToken", "Bearer abc.def.ghi is not valid")
        )
        with pytest.raises(ProviderRequestError) as exc_info:
            await _client(recorder).fetch_page("/delta", window=WINDOW)

        assert exc_info.value.status_code == 401
        assert "abc.def.ghi" not in str(exc_info.value)
        assert "[REDACTED]" in exc_info.value.message

    async def test_transport_error_is_fetch_error(self) -> None:
        recorder = _Recorder(httpx.ConnectError("connection refused"))
        with pytest.raises(FetchError, match="Graph request failed"):
            await _client(recorder).fetch_page("/delta", window=WINDOW)

    async def test_invalid_json_is_fetch_error(self) -> None:
        recorder = _Recorder(httpx.Response(200, text="<html>"))
        with pytest.raises(FetchError, match="invalid JSON"):
            await _client(recorder).fetch_page("/delta", window=WINDOW)

    async def test_non_object_payload_is_fetch_error(self) -> None:
        recorder = _Recorder(_ok([1, 2, 3]))
        with pytest.raises(FetchError, match="unexpected JSON payload"):
            await _client(recorder).fetch_page("/delta", window=WINDOW)
