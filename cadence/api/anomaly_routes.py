"""Cadence: Anomaly API Routes."""

from typing import List

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlmodel import Session

from cadence import repository
from cadence.analyzer.anomaly_engine import get_metric_anomalies, get_unresolved_anomalies
from cadence.database import get_session
from cadence.models.anomaly_models import AnomalyResult
from cadence.sync.pipeline import run_anomaly_detection

router = APIRouter(tags=["Anomalies"])


@router.post("/anomalies/detect")
async def detect(session: Session = Depends(get_session)):
    """Run a standalone anomaly scan over all active metrics."""
    result = run_anomaly_detection(session)
    if not result["success"]:
        raise HTTPException(status_code=500, detail=f"Detection failed: {result['error']}")
    return result


@router.get("/anomalies/unresolved", response_model=List[AnomalyResult])
async def unresolved(
    limit: int = Query(50, ge=1, le=500),
    session: Session = Depends(get_session),
):
    return get_unresolved_anomalies(session, limit=limit)


@router.get("/metrics/{metric_id}/anomalies", response_model=List[AnomalyResult])
async def metric_anomalies(
    metric_id: int,
    limit: int = Query(10, ge=1, le=100),
    session: Session = Depends(get_session),
):
    """Recent anomalies for one metric."""
    if repository.get_metric(session, metric_id) is None:
        raise HTTPException(status_code=404, detail="Metric not found")
    return get_metric_anomalies(session, metric_id, limit=limit)
