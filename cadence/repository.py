"""Cadence: Store Queries.

Thin read/write helpers over the SQLModel tables shared by the sync
processor, formula resolver, rollup calculator and anomaly detector.
"""

from typing import List, Optional

from sqlmodel import Session, select

from cadence.core.clock import utcnow
from cadence.models.metric_models import DataSource, Metric, MetricValue
from cadence.models.sync_models import SyncLog, SyncStatus


def get_metric(session: Session, metric_id: int) -> Optional[Metric]:
    return session.get(Metric, metric_id)


def get_data_source(session: Session, data_source_id: int) -> Optional[DataSource]:
    return session.get(DataSource, data_source_id)


def child_metrics(session: Session, parent_id: int) -> List[Metric]:
    return list(
        session.exec(select(Metric).where(Metric.parent_metric_id == parent_id)).all()
    )


def latest_value(
    session: Session,
    metric_id: int,
    time_window: Optional[str] = None,
    any_window: bool = False,
) -> Optional[MetricValue]:
    """Most recent value of a (metric, window) series.

    With ``any_window`` the window tag is ignored and the newest row wins.
    """
    query = select(MetricValue).where(MetricValue.metric_id == metric_id)
    if not any_window:
        if time_window is None:
            query = query.where(MetricValue.time_window.is_(None))  # type: ignore
        else:
            query = query.where(MetricValue.time_window == time_window)
    query = query.order_by(
        MetricValue.recorded_at.desc(), MetricValue.id.desc()  # type: ignore
    ).limit(1)
    return session.exec(query).first()


def current_value(
    session: Session, metric: Metric, time_window: Optional[str] = None
) -> Optional[MetricValue]:
    """The value a metric is "at" right now.

    Rollups always record untagged values, whatever their type. Otherwise
    single-window metrics read their own window, multi-window metrics read
    ``time_window`` when given and otherwise their newest row, everything
    else reads the untagged series.
    """
    if metric.is_rollup:
        return latest_value(session, metric.id, time_window=None)
    if metric.metric_type == "single_window" and metric.time_window:
        return latest_value(session, metric.id, metric.time_window)
    if metric.metric_type == "multi_window":
        if time_window:
            return latest_value(session, metric.id, time_window)
        return latest_value(session, metric.id, any_window=True)
    return latest_value(session, metric.id, time_window=None)


def recent_values(
    session: Session,
    metric_id: int,
    time_window: Optional[str],
    limit: int,
) -> List[MetricValue]:
    """Newest-first values of one series."""
    query = select(MetricValue).where(MetricValue.metric_id == metric_id)
    if time_window is None:
        query = query.where(MetricValue.time_window.is_(None))  # type: ignore
    else:
        query = query.where(MetricValue.time_window == time_window)
    query = query.order_by(
        MetricValue.recorded_at.desc(), MetricValue.id.desc()  # type: ignore
    ).limit(limit)
    return list(session.exec(query).all())


def add_metric_value(
    session: Session,
    metric_id: int,
    value: float,
    source: str,
    time_window: Optional[str] = None,
    notes: Optional[str] = None,
) -> MetricValue:
    row = MetricValue(
        metric_id=metric_id,
        value=value,
        time_window=time_window,
        source=source,
        notes=notes,
        recorded_at=utcnow(),
    )
    session.add(row)
    session.commit()
    session.refresh(row)
    return row


def create_sync_log(session: Session, metric_id: int, trigger: str) -> SyncLog:
    log = SyncLog(metric_id=metric_id, trigger=trigger, status=SyncStatus.RUNNING.value)
    session.add(log)
    session.commit()
    session.refresh(log)
    return log


def finalize_sync_log(
    session: Session,
    log: SyncLog,
    success: bool,
    records_processed: Optional[int] = None,
    error_message: Optional[str] = None,
    details: Optional[dict] = None,
) -> SyncLog:
    log.status = SyncStatus.SUCCESS.value if success else SyncStatus.ERROR.value
    log.completed_at = utcnow()
    log.records_processed = records_processed
    log.error_message = error_message
    log.details = details
    session.add(log)
    session.commit()
    return log


def update_sync_state(session: Session, metric: Metric, error: Optional[str]) -> None:
    """Stamp ``last_sync_at`` and set or clear ``sync_error``."""
    metric.last_sync_at = utcnow()
    metric.sync_error = error
    metric.updated_at = utcnow()
    session.add(metric)
    session.commit()
