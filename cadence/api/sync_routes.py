"""Cadence: Sync API Routes."""

from typing import Dict

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlmodel import Session

from cadence.connectors.base import SourceAdapter
from cadence.connectors.registry import get_adapters
from cadence.database import get_session
from cadence.models.sync_models import SyncStatusReport
from cadence.sync.pipeline import manual_metric_sync, scheduled_metric_sync
from cadence.sync.processor import get_sync_status
from cadence.core.logging import get_logger

logger = get_logger("api.sync")

router = APIRouter(tags=["Sync"])


# ── Response Models ──


class SyncRunResponse(BaseModel):
    status: str = "success"
    synced: int
    succeeded: int
    failed: int
    rollups: int
    anomalies: int


class MetricSyncResponse(BaseModel):
    status: str = "success"
    metric_id: int
    value: float | None = None
    records_processed: int = 0
    anomalies: int = 0


class ConnectionTestResponse(BaseModel):
    provider: str
    success: bool
    error: str | None = None


# ── Endpoints ──


@router.post("/sync/run", response_model=SyncRunResponse)
async def run_full_sync(
    session: Session = Depends(get_session),
    adapters: Dict[str, SourceAdapter] = Depends(get_adapters),
):
    """Sync every metric, recompute rollups and scan for anomalies."""
    summary = await scheduled_metric_sync(session, adapters)
    if not summary["success"]:
        raise HTTPException(status_code=500, detail=f"Sync failed: {summary['error']}")
    return SyncRunResponse(
        synced=summary["synced"],
        succeeded=summary["succeeded"],
        failed=summary["failed"],
        rollups=summary["rollups"],
        anomalies=summary["anomalies"],
    )


@router.post("/metrics/{metric_id}/sync", response_model=MetricSyncResponse)
async def sync_single_metric(
    metric_id: int,
    session: Session = Depends(get_session),
    adapters: Dict[str, SourceAdapter] = Depends(get_adapters),
):
    """Sync one metric now and check it for anomalies."""
    result = await manual_metric_sync(session, metric_id, adapters)
    if not result["success"]:
        error = result["error"]
        if error == "Metric not found":
            raise HTTPException(status_code=404, detail=error)
        if error == "Sync already in progress":
            raise HTTPException(status_code=409, detail=error)
        raise HTTPException(status_code=400, detail=error)

    return MetricSyncResponse(
        metric_id=metric_id,
        value=result["value"],
        records_processed=result["records_processed"],
        anomalies=result["anomalies"],
    )


@router.get("/sync/status", response_model=SyncStatusReport)
async def sync_status(session: Session = Depends(get_session)):
    """Sync state of every synced metric."""
    return get_sync_status(session)


@router.post("/integrations/{provider}/test", response_model=ConnectionTestResponse)
async def check_integration(
    provider: str,
    adapters: Dict[str, SourceAdapter] = Depends(get_adapters),
):
    """Check that a provider's credentials work."""
    adapter = adapters.get(provider)
    if adapter is None:
        raise HTTPException(status_code=404, detail=f"Unknown provider: {provider}")
    if not adapter.is_configured():
        return ConnectionTestResponse(provider=provider, success=False, error="Not configured")

    result = await adapter.test_connection()
    logger.info(
        f"Connection test for {provider}: {'ok' if result.success else result.error}",
        extra={"provider": provider},
    )
    return ConnectionTestResponse(provider=provider, success=result.success, error=result.error)
