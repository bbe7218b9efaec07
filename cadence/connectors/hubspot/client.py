"""Cadence: HubSpot CRM Client.

Aggregates a numeric property over CRM objects (deals, contacts, tickets,
feedback submissions) via the CRM search API. Handles authentication, retry
with backoff, rate limiting, and pagination.
"""

import asyncio
from typing import Any, Dict, List, Optional

import httpx

from cadence.config import settings
from cadence.connectors.base import AdapterError, SourceAdapter
from cadence.core.logging import get_logger
from cadence.models.sync_models import SyncResult
from cadence.sync.time_windows import TimeRange, get_time_range

logger = get_logger("hubspot.client")

SUPPORTED_OBJECTS = {"deals", "contacts", "tickets", "feedback_submissions"}
AGGREGATIONS = {"count", "sum", "avg", "min", "max"}
PAGE_SIZE = 100

# Extra properties requested alongside the aggregated one
_OBJECT_PROPERTIES = {
    "deals": ["amount", "dealstage", "closedate"],
    "contacts": [],
    "tickets": ["hs_pipeline_stage", "createdate"],
    "feedback_submissions": ["hs_survey_type", "hs_response_value"],
}

# Legacy metric configs carry a named range instead of a window
LEGACY_DATE_RANGES = {
    "today": "day",
    "week": "week",
    "month": "mtd",
    "quarter": "qtd",
    "year": "ytd",
}


def aggregate(values: List[float], aggregation: str) -> float:
    """Aggregate ``values``; unknown aggregations fall back to sum."""
    if not values:
        return 0.0
    if aggregation == "avg":
        return sum(values) / len(values)
    if aggregation == "count":
        return float(len(values))
    if aggregation == "min":
        return min(values)
    if aggregation == "max":
        return max(values)
    return sum(values)


def build_filters(
    filters: Any, time_range: Optional[TimeRange], date_field: str
) -> List[Dict[str, str]]:
    """Translate stored filters and a time range into HubSpot search filters.

    ``filters`` is either ``{property: value}`` (equality) or a list of native
    ``{propertyName, operator, value}`` dicts.
    """
    result: List[Dict[str, str]] = []
    if isinstance(filters, dict):
        result.extend(
            {"propertyName": key, "operator": "EQ", "value": str(value)}
            for key, value in filters.items()
        )
    elif isinstance(filters, list):
        for f in filters:
            if not isinstance(f, dict) or not f.get("propertyName"):
                continue
            item = {
                "propertyName": f["propertyName"],
                "operator": f.get("operator", "EQ"),
            }
            if "value" in f:
                item["value"] = str(f["value"])
            result.append(item)

    if time_range is not None:
        # HubSpot compares datetime properties as epoch milliseconds
        result.append(
            {
                "propertyName": date_field,
                "operator": "GTE",
                "value": str(int(time_range.start.timestamp() * 1000)),
            }
        )
        result.append(
            {
                "propertyName": date_field,
                "operator": "LT",
                "value": str(int(time_range.end.timestamp() * 1000)),
            }
        )
    return result


class HubSpotClient(SourceAdapter):
    """Async HTTP client for the HubSpot CRM search API."""

    provider = "hubspot"

    def __init__(
        self,
        access_token: str | None = None,
        base_url: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        max_retries: int | None = None,
        retry_base_delay: float | None = None,
        timeout: float | None = None,
    ):
        self.access_token = (
            access_token if access_token is not None else settings.hubspot_access_token
        )
        self.base_url = base_url or settings.hubspot_base_url
        self.max_retries = max_retries or settings.adapter_max_retries
        self.retry_base_delay = (
            retry_base_delay
            if retry_base_delay is not None
            else settings.adapter_retry_base_delay
        )
        self.timeout = timeout or settings.adapter_timeout_seconds
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    def is_configured(self) -> bool:
        return bool(self.access_token)

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    # ── Core Request Method ──

    async def _request(
        self, method: str, path: str, json_body: Dict[str, Any] | None = None
    ) -> Dict[str, Any]:
        """Make a request with retry + rate-limit handling."""
        if not self.access_token:
            raise AdapterError("HubSpot access token not configured")

        client = await self._get_client()
        headers = {
            "Authorization": f"Bearer {self.access_token}",
            "Content-Type": "application/json",
        }

        for attempt in range(1, self.max_retries + 1):
            try:
                resp = await client.request(method, path, json=json_body, headers=headers)

                # Rate limited
                if resp.status_code == 429 and attempt < self.max_retries:
                    wait = self.retry_base_delay * (2 ** (attempt - 1))
                    logger.warning(
                        f"Rate limited (429). Retrying in {wait}s (attempt {attempt}/{self.max_retries})",
                        extra={"provider": self.provider},
                    )
                    await asyncio.sleep(wait)
                    continue

                resp.raise_for_status()
                return resp.json()

            except httpx.HTTPStatusError as e:
                if attempt < self.max_retries and e.response.status_code >= 500:
                    wait = self.retry_base_delay * (2 ** (attempt - 1))
                    logger.warning(
                        f"Server error {e.response.status_code}. Retrying in {wait}s",
                        extra={"provider": self.provider},
                    )
                    await asyncio.sleep(wait)
                    continue
                raise AdapterError(
                    f"HubSpot API error: {e.response.status_code} - {e.response.text}",
                    e.response.status_code,
                ) from e

            except httpx.RequestError as e:
                if attempt < self.max_retries:
                    wait = self.retry_base_delay * (2 ** (attempt - 1))
                    logger.warning(
                        f"Request error: {e}. Retrying in {wait}s",
                        extra={"provider": self.provider},
                    )
                    await asyncio.sleep(wait)
                    continue
                raise AdapterError(
                    f"HubSpot connection failed after {self.max_retries} retries: {e}"
                ) from e

        raise AdapterError("Max retries exhausted")

    # ── Search ──

    async def _search(
        self,
        obj: str,
        body: Dict[str, Any],
        paginate: bool,
    ) -> tuple[List[Dict[str, Any]], int]:
        """Run a search, following ``paging.next.after`` up to the record cap."""
        path = f"/crm/v3/objects/{obj}/search"
        records: List[Dict[str, Any]] = []
        total = 0
        after: Optional[str] = None

        while True:
            page_body = dict(body)
            if after:
                page_body["after"] = after
            response = await self._request("POST", path, page_body)
            total = int(response.get("total", 0) or 0)
            records.extend(r.get("properties", {}) for r in response.get("results", []))

            after = (response.get("paging") or {}).get("next", {}).get("after")
            if not paginate or not after or len(records) >= settings.hubspot_max_records:
                break

        return records, total

    # ── Metric Fetch ──

    async def fetch_metric(
        self, config: Dict[str, Any], time_range: Optional[TimeRange] = None
    ) -> SyncResult:
        """Aggregate ``config['property']`` over ``config['object']``."""
        try:
            obj = config.get("object")
            prop = config.get("property")
            aggregation = config.get("aggregation") or "sum"

            if obj not in SUPPORTED_OBJECTS:
                return SyncResult(success=False, error=f"Unsupported HubSpot object: {obj}")
            if not prop:
                return SyncResult(success=False, error="HubSpot property is required")
            if aggregation not in AGGREGATIONS:
                return SyncResult(
                    success=False, error=f"Unsupported aggregation: {aggregation}"
                )

            if time_range is None and config.get("date_range") in LEGACY_DATE_RANGES:
                time_range = get_time_range(LEGACY_DATE_RANGES[config["date_range"]])

            date_field = config.get("date_field") or "createdate"
            filters = build_filters(config.get("filters"), time_range, date_field)
            body: Dict[str, Any] = {
                "filterGroups": [{"filters": filters}] if filters else [],
                "properties": [prop, *_OBJECT_PROPERTIES[obj]],
                "limit": PAGE_SIZE,
            }
            if obj == "deals":
                body["sorts"] = [{"propertyName": "createdate", "direction": "DESCENDING"}]

            records, total = await self._search(obj, body, paginate=aggregation != "count")

            if aggregation == "count":
                value = float(total)
            else:
                values: List[float] = []
                for props in records:
                    try:
                        values.append(float(props.get(prop) or 0))
                    except (TypeError, ValueError):
                        continue
                value = aggregate(values, aggregation)

            logger.info(
                f"HubSpot {obj}.{prop} {aggregation} = {value} ({len(records)} records)",
                extra={"provider": self.provider},
            )
            return SyncResult(
                success=True,
                value=value,
                records_processed=len(records),
                details={
                    "object": obj,
                    "property": prop,
                    "aggregation": aggregation,
                    "total_records": total,
                },
            )
        except AdapterError as e:
            logger.error(f"HubSpot fetch failed: {e}", extra={"provider": self.provider})
            return SyncResult(success=False, error=str(e))
        except Exception as e:
            logger.exception("Unexpected HubSpot failure", extra={"provider": self.provider})
            return SyncResult(success=False, error=f"HubSpot error: {e}")

    async def test_connection(self) -> SyncResult:
        """Check that the token can read contacts."""
        try:
            await self._request(
                "POST", "/crm/v3/objects/contacts/search", {"limit": 1}
            )
            return SyncResult(success=True)
        except AdapterError as e:
            return SyncResult(success=False, error=str(e))
