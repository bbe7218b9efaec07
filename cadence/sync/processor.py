"""Cadence: Metric Sync Processor.

Pulls fresh values for one metric or for every sync-enabled metric:
  resolve strategy → fetch from adapter / evaluate formula / aggregate children
  → append values → update sync state → finalize sync log

Batch runs go in three passes (legacy, data-source, calculated) so that
calculated metrics see the values synced earlier in the same run.
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select

from cadence import repository
from cadence.config import settings
from cadence.connectors.registry import AdapterMap
from cadence.core.logging import get_logger
from cadence.models.metric_models import Metric, MetricType, ValueSource
from cadence.models.sync_models import (
    BatchSyncResult,
    MetricSyncOutcome,
    MetricSyncStatus,
    SyncLog,
    SyncResult,
    SyncStatusReport,
)
from cadence.sync.formula import FormulaResolver
from cadence.sync.rollup import RollupCalculator
from cadence.sync.sources import fetch_data_source_value
from cadence.sync.strategy import (
    Calculated,
    Invalid,
    LegacyExternal,
    Manual,
    MetricStrategy,
    MultiWindow,
    Rollup,
    SingleWindow,
    resolve_strategy,
)
from cadence.sync.time_windows import UnknownTimeWindowError

logger = get_logger("sync.processor")

_SOURCE_NAMES = {"hubspot": "HubSpot", "bigquery": "BigQuery"}


class SyncLockRegistry:
    """Per-metric locks; a metric already syncing is rejected, not queued."""

    def __init__(self):
        self._locks: Dict[int, asyncio.Lock] = {}

    def lock_for(self, metric_id: int) -> asyncio.Lock:
        lock = self._locks.get(metric_id)
        if lock is None:
            lock = self._locks[metric_id] = asyncio.Lock()
        return lock

    def is_locked(self, metric_id: int) -> bool:
        lock = self._locks.get(metric_id)
        return lock is not None and lock.locked()


sync_locks = SyncLockRegistry()


def _records(reported: Optional[int]) -> int:
    # Adapters that do not count rows produced one value
    return 1 if reported is None else reported


@dataclass
class _SyncRun:
    success: bool
    value: Optional[float] = None
    records_processed: int = 0
    error: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)


class SyncProcessor:
    """Syncs metrics through injected source adapters."""

    def __init__(
        self,
        session: Session,
        adapters: AdapterMap,
        delay_seconds: Optional[float] = None,
        locks: Optional[SyncLockRegistry] = None,
    ):
        self.session = session
        self.adapters = adapters
        self.delay_seconds = (
            settings.sync_delay_seconds if delay_seconds is None else delay_seconds
        )
        self.locks = locks or sync_locks
        self._handlers = {
            LegacyExternal: self._sync_legacy,
            SingleWindow: self._sync_single_window,
            MultiWindow: self._sync_multi_window,
            Calculated: self._sync_calculated,
            Rollup: self._sync_rollup,
            Invalid: self._sync_invalid,
        }

    # ── Single metric ──

    async def sync_metric(self, metric: Metric, trigger: str = "scheduled") -> MetricSyncOutcome:
        """Sync one metric. Failures come back in the outcome, never raised."""
        strategy = resolve_strategy(metric)
        if isinstance(strategy, Manual):
            return MetricSyncOutcome(
                metric_id=metric.id,
                metric_name=metric.name,
                success=False,
                error="Cannot sync manual metrics",
            )

        if self.locks.is_locked(metric.id):
            logger.warning(
                f"Sync already in progress for '{metric.name}'",
                extra={"metric_id": metric.id},
            )
            return MetricSyncOutcome(
                metric_id=metric.id,
                metric_name=metric.name,
                success=False,
                error="Sync already in progress",
            )

        async with self.locks.lock_for(metric.id):
            return await self._run(metric, strategy, trigger)

    async def _run(
        self, metric: Metric, strategy: MetricStrategy, trigger: str
    ) -> MetricSyncOutcome:
        metric_id, metric_name = metric.id, metric.name
        started = time.monotonic()
        log: Optional[SyncLog] = None
        logger.info(
            f"Syncing '{metric_name}' ({type(strategy).__name__})",
            extra={"metric_id": metric_id, "status": "running"},
        )

        try:
            log = repository.create_sync_log(self.session, metric_id, trigger)
            run = await self._handlers[type(strategy)](metric, strategy)
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.error(f"Store error syncing '{metric_name}': {e}", extra={"metric_id": metric_id})
            run = _SyncRun(success=False, error=f"Store error: {e}")
        except Exception as e:
            logger.exception(f"Unexpected error syncing '{metric_name}'")
            run = _SyncRun(success=False, error=str(e) or e.__class__.__name__)

        try:
            repository.update_sync_state(
                self.session, metric, None if run.success else run.error
            )
            if log is not None:
                repository.finalize_sync_log(
                    self.session,
                    log,
                    success=run.success,
                    records_processed=run.records_processed,
                    error_message=run.error,
                    details=run.details or None,
                )
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.error(
                f"Could not record sync state for '{metric_name}': {e}",
                extra={"metric_id": metric_id},
            )

        duration_ms = round((time.monotonic() - started) * 1000, 1)
        status = "success" if run.success else "error"
        logger.info(
            f"Synced '{metric_name}': {status}",
            extra={"metric_id": metric_id, "status": status, "duration_ms": duration_ms},
        )
        return MetricSyncOutcome(
            metric_id=metric_id,
            metric_name=metric_name,
            success=run.success,
            value=run.value,
            records_processed=run.records_processed,
            error=run.error,
        )

    # ── Strategy handlers ──

    async def _sync_legacy(self, metric: Metric, strategy: LegacyExternal) -> _SyncRun:
        adapter = self.adapters.get(strategy.source_type)
        name = _SOURCE_NAMES.get(strategy.source_type, strategy.source_type)
        if adapter is None or not adapter.is_configured():
            return _SyncRun(success=False, error=f"{name} not configured")

        result = await adapter.fetch_metric(strategy.config)
        if not result.success:
            return _SyncRun(success=False, error=result.error, details=result.details or {})
        if result.value is None:
            return _SyncRun(success=False, error=f"{name} returned no value")

        repository.add_metric_value(
            self.session,
            metric.id,
            result.value,
            source=strategy.source_type,
            notes=f"Auto-synced from {name}",
        )
        return _SyncRun(
            success=True,
            value=result.value,
            records_processed=_records(result.records_processed),
            details=result.details or {},
        )

    async def _sync_windows(self, metric: Metric, data_source_id: int, windows: List[str]) -> _SyncRun:
        data_source = repository.get_data_source(self.session, data_source_id)
        if data_source is None:
            return _SyncRun(success=False, error=f"Data source {data_source_id} not found")

        name = _SOURCE_NAMES.get(data_source.source_type, data_source.source_type)
        errors: List[str] = []
        synced: Dict[str, float] = {}
        records = 0

        for window in windows:
            try:
                result = await fetch_data_source_value(data_source, window, self.adapters)
            except UnknownTimeWindowError as e:
                result = SyncResult(success=False, error=str(e))

            if not result.success or result.value is None:
                error = result.error or "no value returned"
                logger.warning(
                    f"'{metric.name}' {window} fetch failed: {error}",
                    extra={"metric_id": metric.id, "time_window": window},
                )
                errors.append(f"{window}: {error}")
                continue

            repository.add_metric_value(
                self.session,
                metric.id,
                result.value,
                source=data_source.source_type,
                time_window=window,
                notes=f"Auto-synced from {name} for {window}",
            )
            synced[window] = result.value
            records += _records(result.records_processed)

        return _SyncRun(
            success=not errors,
            value=synced[windows[0]] if windows[0] in synced else None,
            records_processed=records,
            error="; ".join(errors) or None,
            details={"windows": synced},
        )

    async def _sync_single_window(self, metric: Metric, strategy: SingleWindow) -> _SyncRun:
        return await self._sync_windows(metric, strategy.data_source_id, [strategy.window])

    async def _sync_multi_window(self, metric: Metric, strategy: MultiWindow) -> _SyncRun:
        return await self._sync_windows(metric, strategy.data_source_id, list(strategy.windows))

    async def _sync_calculated(self, metric: Metric, strategy: Calculated) -> _SyncRun:
        resolver = FormulaResolver(self.session, self.adapters)
        result = await resolver.calculate_metric_value(strategy.formula, strategy.references)
        if not result.success:
            return _SyncRun(success=False, error=result.error)

        repository.add_metric_value(
            self.session,
            metric.id,
            result.value,
            source=ValueSource.CALCULATED.value,
            notes=f"Calculated: {strategy.formula}",
        )
        return _SyncRun(success=True, value=result.value, records_processed=1)

    async def _sync_rollup(self, metric: Metric, strategy: Rollup) -> _SyncRun:
        outcome = RollupCalculator(self.session).recalculate(metric)
        return _SyncRun(
            success=outcome.success,
            value=outcome.new_value,
            records_processed=1 if outcome.success else 0,
            error=outcome.error,
            details={"old_value": outcome.old_value, "new_value": outcome.new_value},
        )

    async def _sync_invalid(self, metric: Metric, strategy: Invalid) -> _SyncRun:
        return _SyncRun(success=False, error=strategy.reason)

    # ── Batch ──

    def _batch_passes(self) -> List[List[Metric]]:
        base = select(Metric).where(
            Metric.is_active == True,  # noqa: E712
            Metric.sync_enabled == True,  # noqa: E712
            Metric.is_rollup == False,  # noqa: E712
        )
        legacy = self.session.exec(
            base.where(
                Metric.metric_type == MetricType.MANUAL.value,
                Metric.source_type.in_(list(_SOURCE_NAMES)),  # type: ignore
            ).order_by(Metric.id)
        ).all()
        windowed = self.session.exec(
            base.where(
                Metric.metric_type.in_(  # type: ignore
                    [MetricType.SINGLE_WINDOW.value, MetricType.MULTI_WINDOW.value]
                ),
                Metric.data_source_id.is_not(None),  # type: ignore
            ).order_by(Metric.id)
        ).all()
        calculated = self.session.exec(
            base.where(
                Metric.metric_type == MetricType.CALCULATED.value,
                Metric.formula.is_not(None),  # type: ignore
            ).order_by(Metric.id)
        ).all()
        return [list(legacy), list(windowed), list(calculated)]

    async def sync_all_metrics(self) -> BatchSyncResult:
        """Sync every active, sync-enabled metric: legacy, then data-source, then calculated.

        A failing metric never stops the batch; failing to list metrics does.
        """
        passes = self._batch_passes()
        results: List[MetricSyncOutcome] = []
        first = True

        for metrics in passes:
            for metric in metrics:
                if not first and self.delay_seconds > 0:
                    await asyncio.sleep(self.delay_seconds)
                first = False
                results.append(await self.sync_metric(metric, trigger="scheduled"))

        succeeded = sum(1 for r in results if r.success)
        logger.info(f"Batch sync complete: {succeeded}/{len(results)} succeeded")
        return BatchSyncResult(
            total=len(results),
            succeeded=succeeded,
            failed=len(results) - succeeded,
            results=results,
        )


def get_sync_status(session: Session) -> SyncStatusReport:
    """Sync state of every non-manual metric plus the latest completed sync."""
    metrics = session.exec(
        select(Metric)
        .where(Metric.is_active == True)  # noqa: E712
        .order_by(Metric.name)
    ).all()

    rows = [
        MetricSyncStatus(
            id=m.id,
            name=m.name,
            source_type=m.source_type,
            metric_type=m.metric_type,
            last_sync_at=m.last_sync_at,
            sync_error=m.sync_error,
            sync_enabled=m.sync_enabled,
        )
        for m in metrics
        if not isinstance(resolve_strategy(m), Manual)
    ]

    last = session.exec(
        select(SyncLog)
        .where(SyncLog.completed_at.is_not(None))  # type: ignore
        .order_by(SyncLog.completed_at.desc())  # type: ignore
        .limit(1)
    ).first()

    return SyncStatusReport(metrics=rows, last_full_sync=last.completed_at if last else None)
