"""Remote calendar provider clients."""

from calsync.providers.base import REMOVED_MARKER, Page, ProviderClient
from calsync.providers.graph import GraphProviderClient

PROVIDER_TYPES: dict[str, type[ProviderClient]] = {
    "graph": GraphProviderClient,
}

__all__ = ["PROVIDER_TYPES", "REMOVED_MARKER", "GraphProviderClient", "Page", "ProviderClient"]
