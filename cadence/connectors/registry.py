"""Cadence: Source Adapter Registry.

Builds the provider → adapter map handed to the sync engine.
"""

from typing import AsyncIterator, Dict, Mapping

from cadence.connectors.base import SourceAdapter
from cadence.connectors.bigquery.client import BigQueryClient
from cadence.connectors.hubspot.client import HubSpotClient
from cadence.core.logging import get_logger

logger = get_logger("connectors.registry")

AdapterMap = Mapping[str, SourceAdapter]


def build_adapters() -> Dict[str, SourceAdapter]:
    """Construct one adapter per provider from settings."""
    adapters: Dict[str, SourceAdapter] = {
        "hubspot": HubSpotClient(),
        "bigquery": BigQueryClient(),
    }
    for name, adapter in adapters.items():
        if not adapter.is_configured():
            logger.info(f"Adapter '{name}' is not configured; its metrics will fail to sync")
    return adapters


async def close_adapters(adapters: AdapterMap) -> None:
    for name, adapter in adapters.items():
        try:
            await adapter.close()
        except Exception as e:
            logger.warning(f"Failed to close adapter '{name}': {e}")


async def get_adapters() -> AsyncIterator[Dict[str, SourceAdapter]]:
    """FastAPI dependency: adapters for one request, closed afterwards."""
    adapters = build_adapters()
    try:
        yield adapters
    finally:
        await close_adapters(adapters)
