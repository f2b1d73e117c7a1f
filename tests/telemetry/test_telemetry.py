"""Tests for calsync.core.telemetry: tracer setup and sync spans."""

import pytest
from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

import calsync.core.telemetry as _telemetry_mod
from calsync.core.telemetry import init_telemetry, sync_span
from calsync.errors import FetchError
from calsync.sync import SyncOrchestrator
from calsync.testing import FakeProviderClient, InMemoryEventRepository, make_event

pytestmark = pytest.mark.unit


def _reset_otel_global_state():
    """Reset the OTel global tracer provider and its set-once guard."""
    trace._TRACER_PROVIDER_SET_ONCE = trace.Once()
    trace._TRACER_PROVIDER = None
    _telemetry_mod._tracer_provider_installed = False


@pytest.fixture(autouse=True)
def _clean_tracer_provider():
    _reset_otel_global_state()
    yield
    _reset_otel_global_state()


@pytest.fixture
def exporter():
    """Install an in-memory exporter as the global provider."""
    span_exporter = InMemorySpanExporter()
    provider = TracerProvider(resource=Resource.create({"service.name": "calsync-test"}))
    provider.add_span_processor(SimpleSpanProcessor(span_exporter))
    trace.set_tracer_provider(provider)
    yield span_exporter
    provider.shutdown()


class TestInitTelemetry:
    def test_noop_without_endpoint(self, monkeypatch):
        monkeypatch.delenv("OTEL_EXPORTER_OTLP_ENDPOINT", raising=False)
        tracer = init_telemetry("calsync-test")
        with tracer.start_as_current_span("noop") as span:
            span.set_attribute("key", "value")
        assert _telemetry_mod._tracer_provider_installed is False

    def test_installs_provider_once(self, monkeypatch):
        monkeypatch.setenv("OTEL_EXPORTER_OTLP_ENDPOINT", "http://localhost:4317")

        init_telemetry("calsync")
        provider = trace.get_tracer_provider()
        assert isinstance(provider, TracerProvider)
        assert dict(provider.resource.attributes)["service.name"] == "calsync"

        init_telemetry("calsync-again")
        assert trace.get_tracer_provider() is provider
        provider.shutdown()


class TestSyncSpan:
    def test_records_feed_and_mode(self, exporter):
        with sync_span("work", mode="full"):
            pass

        (span,) = exporter.get_finished_spans()
        assert span.name == "calsync.sync"
        assert span.attributes["feed.id"] == "work"
        assert span.attributes["sync.mode"] == "full"
        assert span.status.status_code == trace.StatusCode.UNSET

    def test_error_sets_status_and_reraises(self, exporter):
        with pytest.raises(FetchError):
            with sync_span("work", mode="incremental"):
                raise FetchError("Bearer secret-token rejected")

        (span,) = exporter.get_finished_spans()
        assert span.status.status_code == trace.StatusCode.ERROR
        assert "secret-token" not in span.status.description
        assert [event.name for event in span.events] == ["exception"]


class TestOrchestratorSpans:
    async def test_sync_counters_land_on_span(self, exporter, make_fetcher):
        client = FakeProviderClient.from_items(
            [make_event("a"), make_event("b")], delta_link="tok-1"
        )
        repo = InMemoryEventRepository()

        await SyncOrchestrator(client, repo, fetcher=make_fetcher(client)).sync("work", "/delta")

        (span,) = exporter.get_finished_spans()
        assert span.attributes["sync.processed"] == 2
        assert span.attributes["sync.created"] == 2
        assert span.attributes["sync.failed"] == 0
        assert span.attributes["sync.next_sync_token_issued"] is True

    async def test_failed_fetch_marks_span(self, exporter, make_fetcher):
        client = FakeProviderClient.from_items([make_event("a")], fail_on_page=0)
        repo = InMemoryEventRepository()

        with pytest.raises(FetchError):
            await SyncOrchestrator(client, repo, fetcher=make_fetcher(client)).sync(
                "work", "/delta"
            )

        (span,) = exporter.get_finished_spans()
        assert span.status.status_code == trace.StatusCode.ERROR
