"""Cadence: Rollup Calculator.

A rollup metric's value is an aggregate of its children's current values.
Recomputes append a new value only when the aggregate actually moved.
"""

import math
from datetime import datetime
from typing import List, Optional, Sequence, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select

from cadence import repository
from cadence.core.clock import as_utc, utcnow
from cadence.core.logging import get_logger
from cadence.models.metric_models import AggregationType, Metric, ValueSource
from cadence.models.sync_models import RollupBatchResult, RollupOutcome

logger = get_logger("sync.rollup")

DEFAULT_AGGREGATION = AggregationType.SUM.value


def aggregate_values(
    samples: Sequence[Tuple[float, datetime]], aggregation: str
) -> Optional[float]:
    """Combine ``(value, recorded_at)`` samples. ``None`` when nothing to combine."""
    if not samples or aggregation == AggregationType.MANUAL.value:
        return None

    values = [v for v, _ in samples]
    if aggregation == AggregationType.SUM.value:
        return float(sum(values))
    if aggregation in (AggregationType.AVG.value, AggregationType.AVERAGE.value):
        return sum(values) / len(values)
    if aggregation == AggregationType.COUNT.value:
        return float(len(values))
    if aggregation == AggregationType.MIN.value:
        return float(min(values))
    if aggregation == AggregationType.MAX.value:
        return float(max(values))
    if aggregation == AggregationType.LATEST.value:
        return float(max(samples, key=lambda s: as_utc(s[1]))[0])
    raise ValueError(f"Unknown aggregation type: {aggregation}")


class RollupCalculator:
    def __init__(self, session: Session):
        self.session = session

    def _ensure_aggregation(self, metric: Metric, has_children: bool) -> Optional[str]:
        # A parent that gained children without being configured sums them.
        if metric.aggregation_type:
            return metric.aggregation_type
        if not has_children:
            return None
        metric.aggregation_type = DEFAULT_AGGREGATION
        metric.is_rollup = True
        metric.updated_at = utcnow()
        self.session.add(metric)
        self.session.commit()
        return DEFAULT_AGGREGATION

    def recalculate(self, metric: Metric) -> RollupOutcome:
        """Recompute one rollup metric from its children's current values."""
        try:
            children = repository.child_metrics(self.session, metric.id)
            aggregation = self._ensure_aggregation(metric, bool(children))
            if aggregation is None:
                return RollupOutcome(
                    metric_id=metric.id,
                    success=False,
                    error="Metric has no aggregation type and no children",
                )

            previous = repository.current_value(self.session, metric)
            old_value = previous.value if previous is not None else None

            samples: List[Tuple[float, datetime]] = []
            for child in children:
                row = repository.current_value(self.session, child)
                if row is not None:
                    samples.append((row.value, row.recorded_at))

            new_value = aggregate_values(samples, aggregation)
            changed = new_value is not None and (
                old_value is None or not math.isclose(new_value, old_value)
            )
            if changed:
                repository.add_metric_value(
                    self.session,
                    metric.id,
                    new_value,
                    source=ValueSource.ROLLUP.value,
                    notes=f"Rollup: {aggregation} of {len(samples)} child metrics",
                )
                logger.info(
                    f"Rollup '{metric.name}' {old_value} -> {new_value}",
                    extra={"metric_id": metric.id},
                )

            return RollupOutcome(
                metric_id=metric.id,
                old_value=old_value,
                new_value=new_value,
                success=True,
            )
        except (SQLAlchemyError, ValueError) as e:
            if isinstance(e, SQLAlchemyError):
                self.session.rollback()
            logger.error(f"Rollup recompute failed for metric {metric.id}: {e}")
            return RollupOutcome(metric_id=metric.id, success=False, error=str(e))

    def recalculate_rollups(
        self, metric_ids: Optional[List[int]] = None, all_rollups: bool = False
    ) -> RollupBatchResult:
        """Recompute the given rollups, or every rollup metric.

        Raises:
            ValueError: when neither ``metric_ids`` nor ``all_rollups`` is given.
        """
        if all_rollups:
            metrics = list(
                self.session.exec(
                    select(Metric).where(
                        Metric.is_rollup == True,  # noqa: E712
                        Metric.is_active == True,  # noqa: E712
                    )
                ).all()
            )
            outcomes = [self.recalculate(m) for m in metrics]
        elif metric_ids:
            outcomes = []
            for metric_id in metric_ids:
                metric = repository.get_metric(self.session, metric_id)
                if metric is None:
                    outcomes.append(
                        RollupOutcome(metric_id=metric_id, success=False, error="Metric not found")
                    )
                    continue
                outcomes.append(self.recalculate(metric))
        else:
            raise ValueError("Provide metric_ids or set all_rollups")

        succeeded = sum(1 for o in outcomes if o.success)
        return RollupBatchResult(
            total=len(outcomes),
            successful=succeeded,
            failed=len(outcomes) - succeeded,
            results=outcomes,
        )


def attach_child_metric(session: Session, parent: Metric, child: Metric) -> Metric:
    """Make ``child`` roll up into ``parent``.

    Raises:
        ValueError: if the link would make a metric its own ancestor.
    """
    if parent.id == child.id:
        raise ValueError("A metric cannot be its own child")

    ancestor_id = parent.parent_metric_id
    seen = {parent.id}
    while ancestor_id is not None and ancestor_id not in seen:
        if ancestor_id == child.id:
            raise ValueError("Linking these metrics would create a cycle")
        seen.add(ancestor_id)
        ancestor = repository.get_metric(session, ancestor_id)
        ancestor_id = ancestor.parent_metric_id if ancestor is not None else None

    child.parent_metric_id = parent.id
    child.updated_at = utcnow()
    session.add(child)

    if not parent.aggregation_type:
        parent.aggregation_type = DEFAULT_AGGREGATION
    parent.is_rollup = True
    parent.updated_at = utcnow()
    session.add(parent)
    session.commit()
    session.refresh(parent)
    return parent
