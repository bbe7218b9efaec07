"""Cadence: Metric Hierarchy API Routes."""

from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlmodel import Session

from cadence import repository
from cadence.database import get_session
from cadence.models.sync_models import RollupBatchResult
from cadence.sync.pipeline import recompute_rollups
from cadence.sync.rollup import attach_child_metric
from cadence.core.logging import get_logger

logger = get_logger("api.metrics")

router = APIRouter(prefix="/metrics", tags=["Metrics"])


# ── Request Models ──


class RollupRequest(BaseModel):
    """Request body for POST /metrics/rollup."""

    metric_ids: Optional[List[int]] = None
    all: bool = False
    """Recompute every rollup metric. Takes precedence over metric_ids."""

    model_config = {
        "json_schema_extra": {
            "examples": [{"metric_ids": [12, 14]}, {"all": True}]
        }
    }


# ── Endpoints ──


@router.post("/rollup", response_model=RollupBatchResult)
async def rollup(request: RollupRequest, session: Session = Depends(get_session)):
    """Recompute rollup values from children."""
    try:
        return recompute_rollups(
            session, metric_ids=request.metric_ids, all_rollups=request.all
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.post("/{metric_id}/children/{child_id}")
async def attach_child(metric_id: int, child_id: int, session: Session = Depends(get_session)):
    """Make ``child_id`` roll up into ``metric_id``."""
    parent = repository.get_metric(session, metric_id)
    child = repository.get_metric(session, child_id)
    if parent is None or child is None:
        raise HTTPException(status_code=404, detail="Metric not found")

    try:
        parent = attach_child_metric(session, parent, child)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    logger.info(f"Attached metric {child_id} under {metric_id}", extra={"metric_id": metric_id})
    return {
        "status": "success",
        "parent_id": parent.id,
        "child_id": child_id,
        "aggregation_type": parent.aggregation_type,
        "is_rollup": parent.is_rollup,
    }
