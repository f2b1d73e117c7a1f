"""Test support utilities for the calsync package.

In-memory fakes for the provider and repository contracts, builders for
provider-shaped event items, and migration inspection helpers. Nothing here
depends on pytest, so the helpers can be imported from any test context.
"""

from __future__ import annotations

from calsync.testing.fakes import (
    FakeProviderClient,
    InMemoryEventRepository,
    InMemoryFeedRepository,
    make_event,
    make_instance,
    make_master,
    make_tombstone,
)

__all__ = [
    "FakeProviderClient",
    "InMemoryEventRepository",
    "InMemoryFeedRepository",
    "make_event",
    "make_instance",
    "make_master",
    "make_tombstone",
]
