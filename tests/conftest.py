"""Shared test fixtures for the calsync test suite.

Unit fixtures wire the in-memory fakes from ``calsync.testing`` together.
The Postgres fixtures start one testcontainer per session and hand each test
a freshly provisioned database, so rows and schemas never leak between tests.
"""

from __future__ import annotations

import shutil
import uuid
from collections.abc import AsyncIterator, Callable, Iterator
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from datetime import UTC, datetime
from typing import TYPE_CHECKING

import pytest

from calsync.fetcher import PagedFetcher
from calsync.models import CalendarFeed, TimeWindow
from calsync.testing import FakeProviderClient, InMemoryEventRepository, InMemoryFeedRepository

if TYPE_CHECKING:
    from asyncpg.pool import Pool
    from testcontainers.postgres import PostgresContainer

    from calsync.db import Database

docker_available = shutil.which("docker") is not None

FIXED_WINDOW = TimeWindow(
    start=datetime(2026, 1, 1, tzinfo=UTC),
    end=datetime(2026, 7, 1, tzinfo=UTC),
)


def _unique_test_db_name() -> str:
    return f"test_{uuid.uuid4().hex[:12]}"


# ---------------------------------------------------------------------------
# In-memory wiring
# ---------------------------------------------------------------------------


@pytest.fixture
def window() -> TimeWindow:
    return FIXED_WINDOW


@pytest.fixture
def event_repo() -> InMemoryEventRepository:
    return InMemoryEventRepository()


@pytest.fixture
def feed_repo() -> InMemoryFeedRepository:
    return InMemoryFeedRepository(
        [CalendarFeed(id="work", calendar_id="cal-work", name="Work calendar")]
    )


@pytest.fixture
def make_fetcher() -> Callable[[FakeProviderClient], PagedFetcher]:
    """Build a ``PagedFetcher`` pinned to the fixed test window."""

    def _make(client: FakeProviderClient) -> PagedFetcher:
        return PagedFetcher(client, window_factory=lambda: FIXED_WINDOW)

    return _make


# ---------------------------------------------------------------------------
# PostgreSQL testcontainer
# ---------------------------------------------------------------------------


@pytest.fixture(scope="session")
def postgres_container() -> Iterator[PostgresContainer]:
    """Shared Postgres testcontainer for all DB-backed tests in this pytest session."""
    if not docker_available:
        pytest.skip("Docker not available")
    from testcontainers.postgres import PostgresContainer

    with PostgresContainer("postgres:16") as pg:
        yield pg


@pytest.fixture
def provisioned_database(
    postgres_container: PostgresContainer,
) -> Callable[..., AbstractAsyncContextManager[Database]]:
    """Create a fresh database and connected ``Database`` for a single test usage.

    Tests should use this as:
        async with provisioned_database() as db:
            ...
    """
    from calsync.db import ConnectionParams, Database

    @asynccontextmanager
    async def _provision(
        *,
        min_pool_size: int = 1,
        max_pool_size: int = 3,
    ) -> AsyncIterator[Database]:
        db = Database(
            _unique_test_db_name(),
            ConnectionParams(
                host=postgres_container.get_container_host_ip(),
                port=int(postgres_container.get_exposed_port(5432)),
                user=postgres_container.username,
                password=postgres_container.password,
            ),
            min_pool_size=min_pool_size,
            max_pool_size=max_pool_size,
        )
        await db.provision()
        await db.connect()
        try:
            yield db
        finally:
            await db.close()

    return _provision


@pytest.fixture
def provisioned_postgres_pool(
    provisioned_database: Callable[..., AbstractAsyncContextManager[Database]],
) -> Callable[..., AbstractAsyncContextManager[Pool]]:
    """Like ``provisioned_database`` but yields only the asyncpg pool."""

    @asynccontextmanager
    async def _provision(**kwargs: int) -> AsyncIterator[Pool]:
        async with provisioned_database(**kwargs) as db:
            yield db.require_pool()

    return _provision
