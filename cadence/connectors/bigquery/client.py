"""Cadence: BigQuery Warehouse Client.

Runs a parameterised SQL template and reads a single scalar from a named
result column. The google-cloud client is blocking, so queries run in a
worker thread under a bounded timeout with retry on transient errors.
"""

import asyncio
import json
import re
from datetime import timedelta
from typing import Any, Dict, List, Optional

from google.api_core import exceptions as gexc
from google.cloud import bigquery
from google.oauth2 import service_account

from cadence.config import settings
from cadence.connectors.base import AdapterError, SourceAdapter
from cadence.core.clock import utcnow
from cadence.core.logging import get_logger
from cadence.models.sync_models import SyncResult
from cadence.sync.time_windows import TimeRange, format_date_iso

logger = get_logger("bigquery.client")

BIGQUERY_SCOPE = "https://www.googleapis.com/auth/bigquery.readonly"
MAX_RESULT_ROWS = 1000

_TRANSIENT = (
    gexc.TooManyRequests,
    gexc.ServerError,
    gexc.ServiceUnavailable,
    asyncio.TimeoutError,
)

_PLACEHOLDER = re.compile(r"\{\{\s*(\w+)\s*\}\}")


def render_query(
    template: str,
    time_range: Optional[TimeRange] = None,
    parameters: Optional[Dict[str, str]] = None,
) -> str:
    """Substitute ``{{name}}`` placeholders with ISO dates and caller parameters.

    ``{{start}}``/``{{end}}`` come from ``time_range`` (default: trailing 30
    days), ``{{today}}`` is the current date. The legacy names
    ``period_start``, ``period_end`` and ``current_date`` are aliases.
    Unknown placeholders are left untouched.
    """
    now = utcnow()
    start = time_range.start if time_range else now - timedelta(days=30)
    end = time_range.end if time_range else now

    values = {
        "start": format_date_iso(start),
        "end": format_date_iso(end),
        "today": format_date_iso(now),
    }
    values["period_start"] = values["start"]
    values["period_end"] = values["end"]
    values["current_date"] = values["today"]
    values.update({k: str(v) for k, v in (parameters or {}).items()})

    return _PLACEHOLDER.sub(lambda m: values.get(m.group(1), m.group(0)), template)


def _to_float(raw: Any) -> float:
    if raw is None:
        return 0.0
    try:
        return float(raw)
    except (TypeError, ValueError):
        return 0.0


class BigQueryClient(SourceAdapter):
    """Warehouse adapter backed by ``google.cloud.bigquery.Client``."""

    provider = "bigquery"

    def __init__(
        self,
        project_id: str | None = None,
        credentials_json: str | None = None,
        client: Any = None,
        max_retries: int | None = None,
        retry_base_delay: float | None = None,
        timeout: float | None = None,
    ):
        self.project_id = project_id if project_id is not None else settings.bigquery_project_id
        raw = (
            credentials_json
            if credentials_json is not None
            else settings.bigquery_credentials
        )
        self.credentials_info: Optional[Dict[str, Any]] = None
        if raw:
            try:
                self.credentials_info = json.loads(raw)
            except json.JSONDecodeError:
                logger.warning("BIGQUERY_CREDENTIALS is not valid JSON; adapter disabled")
        self.max_retries = max_retries or settings.adapter_max_retries
        self.retry_base_delay = (
            retry_base_delay
            if retry_base_delay is not None
            else settings.adapter_retry_base_delay
        )
        self.timeout = timeout or settings.adapter_timeout_seconds
        self._client = client

    def is_configured(self) -> bool:
        if self._client is not None:
            return True
        return bool(self.project_id and self.credentials_info)

    def _get_client(self) -> Any:
        if self._client is None:
            if not self.is_configured():
                raise AdapterError("BigQuery credentials not configured")
            credentials = service_account.Credentials.from_service_account_info(
                self.credentials_info, scopes=[BIGQUERY_SCOPE]
            )
            self._client = bigquery.Client(
                project=self.project_id, credentials=credentials
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None and hasattr(self._client, "close"):
            await asyncio.to_thread(self._client.close)

    # ── Query Execution ──

    def _run_query(self, sql: str) -> List[Dict[str, Any]]:
        client = self._get_client()
        job = client.query(sql)
        rows = job.result(timeout=self.timeout, max_results=MAX_RESULT_ROWS)
        return [dict(row.items()) for row in rows]

    async def execute_query(self, sql: str) -> List[Dict[str, Any]]:
        """Run ``sql`` with timeout and retry; raise ``AdapterError`` on failure."""
        for attempt in range(1, self.max_retries + 1):
            try:
                return await asyncio.wait_for(
                    asyncio.to_thread(self._run_query, sql),
                    timeout=self.timeout,
                )
            except _TRANSIENT as e:
                if attempt < self.max_retries:
                    wait = self.retry_base_delay * (2 ** (attempt - 1))
                    logger.warning(
                        f"Transient BigQuery error: {e!r}. Retrying in {wait}s (attempt {attempt}/{self.max_retries})",
                        extra={"provider": self.provider},
                    )
                    await asyncio.sleep(wait)
                    continue
                raise AdapterError(
                    f"BigQuery query failed after {self.max_retries} attempts: {e!r}"
                ) from e
            except gexc.GoogleAPIError as e:
                raise AdapterError(f"BigQuery query failed: {e}") from e

        raise AdapterError("Max retries exhausted")

    # ── Metric Fetch ──

    async def fetch_metric(
        self, config: Dict[str, Any], time_range: Optional[TimeRange] = None
    ) -> SyncResult:
        """Run ``config['query']`` and read ``config['value_column']`` of row one."""
        try:
            template = config.get("query")
            value_column = config.get("value_column")
            if not template or not value_column:
                return SyncResult(
                    success=False, error="BigQuery query and value_column are required"
                )

            sql = render_query(template, time_range, config.get("parameters"))
            rows = await self.execute_query(sql)

            if not rows:
                return SyncResult(
                    success=True,
                    value=0.0,
                    records_processed=0,
                    details={"query": sql, "no_results": True},
                )

            if value_column not in rows[0]:
                return SyncResult(
                    success=False,
                    error=f"Column '{value_column}' not found in query result",
                )

            value = _to_float(rows[0][value_column])
            logger.info(
                f"BigQuery {value_column} = {value} ({len(rows)} rows)",
                extra={"provider": self.provider},
            )
            return SyncResult(
                success=True,
                value=value,
                records_processed=len(rows),
                details={"query": sql, "row_count": len(rows)},
            )
        except AdapterError as e:
            logger.error(f"BigQuery fetch failed: {e}", extra={"provider": self.provider})
            return SyncResult(success=False, error=str(e))
        except Exception as e:
            logger.exception("Unexpected BigQuery failure", extra={"provider": self.provider})
            return SyncResult(success=False, error=f"BigQuery error: {e}")

    async def test_connection(self) -> SyncResult:
        try:
            await self.execute_query("SELECT 1 AS test")
            return SyncResult(success=True)
        except AdapterError as e:
            return SyncResult(success=False, error=str(e))
