"""Cadence: Data Source Fetching.

Turns a stored ``DataSource`` plus a time window into one adapter call.
Shared by the sync processor and the formula resolver.
"""

from typing import Any, Dict

from cadence.connectors.registry import AdapterMap
from cadence.models.metric_models import DataSource
from cadence.models.sync_models import SyncResult
from cadence.sync.time_windows import get_time_range

_PROVIDER_NAMES = {"hubspot": "HubSpot", "bigquery": "BigQuery"}


def adapter_config(data_source: DataSource) -> Dict[str, Any]:
    """Provider-specific query parameters for ``data_source``."""
    if data_source.source_type == "hubspot":
        return {
            "object": data_source.hubspot_object,
            "property": data_source.hubspot_property,
            "aggregation": data_source.hubspot_aggregation,
            "filters": data_source.hubspot_filters,
            "date_field": "createdate",
        }
    if data_source.source_type == "bigquery":
        return {
            "query": data_source.bigquery_query,
            "value_column": data_source.bigquery_value_column,
        }
    return {}


async def fetch_data_source_value(
    data_source: DataSource, window: str, adapters: AdapterMap
) -> SyncResult:
    """Query ``data_source`` over ``window``.

    Raises ``UnknownTimeWindowError`` for a bad window name; every provider
    problem comes back as an unsuccessful ``SyncResult``.
    """
    time_range = get_time_range(window)
    adapter = adapters.get(data_source.source_type)
    if adapter is None:
        return SyncResult(
            success=False, error=f"Unknown source type: {data_source.source_type}"
        )
    if not adapter.is_configured():
        name = _PROVIDER_NAMES.get(data_source.source_type, data_source.source_type)
        return SyncResult(success=False, error=f"{name} not configured")
    return await adapter.fetch_metric(adapter_config(data_source), time_range)
