"""Cadence: Sync & Detection Jobs.

Entry points shared by the scheduler and the API:
  scheduled run: sync all → recompute rollups → anomaly scan
  manual run:    sync one metric → anomaly scan of that metric
"""

from typing import Any, Dict, List, Optional

from sqlmodel import Session

from cadence import repository
from cadence.analyzer.anomaly_engine import AnomalyDetector
from cadence.connectors.registry import AdapterMap, build_adapters, close_adapters
from cadence.core.logging import get_logger
from cadence.models.anomaly_models import Severity
from cadence.models.sync_models import RollupBatchResult
from cadence.sync.processor import SyncProcessor
from cadence.sync.rollup import RollupCalculator
from cadence.sync.strategy import Manual, resolve_strategy

logger = get_logger("sync.pipeline")


async def scheduled_metric_sync(
    session: Session, adapters: Optional[AdapterMap] = None
) -> Dict[str, Any]:
    """Full scheduled run. Never raises; a fatal error becomes ``success: False``."""
    owned = adapters is None
    active = build_adapters() if owned else adapters
    logger.info("Scheduled metric sync starting...")

    try:
        batch = await SyncProcessor(session, active).sync_all_metrics()
        rollups = RollupCalculator(session).recalculate_rollups(all_rollups=True)
        anomalies = AnomalyDetector(session).detect_anomalies()
    except Exception as e:
        logger.exception("Scheduled metric sync failed")
        return {"success": False, "error": str(e)}
    finally:
        if owned:
            await close_adapters(active)

    logger.info(
        f"Scheduled sync complete: {batch.succeeded}/{batch.total} metrics, "
        f"{rollups.total} rollups, {len(anomalies)} anomalies"
    )
    return {
        "success": True,
        "synced": batch.total,
        "succeeded": batch.succeeded,
        "failed": batch.failed,
        "rollups": rollups.total,
        "anomalies": len(anomalies),
    }


async def manual_metric_sync(
    session: Session, metric_id: int, adapters: Optional[AdapterMap] = None
) -> Dict[str, Any]:
    """User-triggered sync of one metric, followed by detection on that metric."""
    metric = repository.get_metric(session, metric_id)
    if metric is None:
        return {"success": False, "error": "Metric not found"}
    if isinstance(resolve_strategy(metric), Manual):
        return {"success": False, "error": "Cannot sync manual metrics"}

    owned = adapters is None
    active = build_adapters() if owned else adapters
    try:
        outcome = await SyncProcessor(session, active).sync_metric(metric, trigger="manual")
    finally:
        if owned:
            await close_adapters(active)

    if not outcome.success:
        return {"success": False, "error": outcome.error}

    anomalies = AnomalyDetector(session).detect_anomalies(metric_ids=[metric_id])
    return {
        "success": True,
        "value": outcome.value,
        "records_processed": outcome.records_processed,
        "anomalies": len(anomalies),
    }


def run_anomaly_detection(session: Session) -> Dict[str, Any]:
    """Standalone anomaly scan over every active metric."""
    try:
        anomalies = AnomalyDetector(session).detect_anomalies()
    except Exception as e:
        logger.exception("Anomaly detection failed")
        return {"success": False, "error": str(e)}

    critical = [a for a in anomalies if a.severity is Severity.CRITICAL]
    for a in critical:
        logger.warning(f"Critical anomaly: {a.message}", extra={"metric_id": a.metric_id})
    return {"success": True, "anomalies": len(anomalies), "critical": len(critical)}


def recompute_rollups(
    session: Session, metric_ids: Optional[List[int]] = None, all_rollups: bool = False
) -> RollupBatchResult:
    """Recompute rollups on demand. Raises ``ValueError`` with no target given."""
    return RollupCalculator(session).recalculate_rollups(
        metric_ids=metric_ids, all_rollups=all_rollups
    )
