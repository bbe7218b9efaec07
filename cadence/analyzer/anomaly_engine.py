"""Cadence: Anomaly Detection Engine.

Scans each metric's value series and flags:
  - missing:   externally synced metric with no value for too long
  - threshold: user rules (above / below / change_percent), optionally
               requiring N consecutive breaching observations
  - deviation: current value more than 2 (warning) or 3 (critical)
               standard deviations from the prior 5-7 observations
  - trend:     the direction of the last 4 observations flipped against
               the 4 before them

Every anomaly is stored; warning and critical ones also raise an Alert.
"""

import math
from datetime import datetime
from typing import Callable, List, Optional, Sequence

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select

from cadence import repository
from cadence.config import settings
from cadence.core.clock import as_utc, utcnow
from cadence.core.logging import get_logger
from cadence.models.anomaly_models import (
    Alert,
    AlertSeverity,
    AnomalyResult,
    AnomalyType,
    MetricAnomaly,
    MetricThreshold,
    Severity,
    ThresholdType,
)
from cadence.models.metric_models import Metric, MetricValue
from cadence.sync.strategy import is_externally_synced, series_windows

logger = get_logger("analyzer.anomaly")

# Statistical baseline
MIN_BASELINE = 5
MAX_BASELINE = 7
Z_WARNING = 2.0
Z_CRITICAL = 3.0

# Trend reversal
TREND_SPAN = 4
TREND_THRESHOLD = 0.1


def calculate_trend(values: Sequence[float]) -> float:
    """Least-squares slope over index, normalised by the mean.

    ``values`` are in chronological order. Falls back to the raw slope when
    the mean is zero and returns 0.0 for fewer than two values.
    """
    n = len(values)
    if n < 2:
        return 0.0

    xs = range(n)
    sum_x = sum(xs)
    sum_y = sum(values)
    sum_xy = sum(x * y for x, y in zip(xs, values))
    sum_x2 = sum(x * x for x in xs)

    slope = (n * sum_xy - sum_x * sum_y) / (n * sum_x2 - sum_x * sum_x)
    mean = sum_y / n
    return slope / mean if mean != 0 else slope


def _round(value: Optional[float], digits: int = 2) -> Optional[float]:
    return round(value, digits) if value is not None else None


class AnomalyDetector:
    """Runs every check over every active metric's series."""

    def __init__(
        self,
        session: Session,
        now: Optional[datetime] = None,
        missing_data_hours: Optional[float] = None,
        history_limit: Optional[int] = None,
    ):
        self.session = session
        self._now = now
        self.missing_data_hours = (
            settings.missing_data_hours if missing_data_hours is None else missing_data_hours
        )
        self.history_limit = history_limit or settings.anomaly_history_limit

    @property
    def now(self) -> datetime:
        return as_utc(self._now) if self._now is not None else utcnow()

    # ── Entry point ──

    def detect_anomalies(self, metric_ids: Optional[List[int]] = None) -> List[AnomalyResult]:
        """Check every active metric (or just ``metric_ids``) and store what is found."""
        query = select(Metric).where(Metric.is_active == True)  # noqa: E712
        if metric_ids is not None:
            query = query.where(Metric.id.in_(metric_ids))  # type: ignore
        metrics = self.session.exec(query.order_by(Metric.id)).all()

        found: List[AnomalyResult] = []
        for metric in metrics:
            metric_id, metric_name = metric.id, metric.name
            try:
                found.extend(self._scan_metric(metric))
            except SQLAlchemyError as e:
                self.session.rollback()
                logger.error(f"Anomaly scan failed for '{metric_name}': {e}", extra={"metric_id": metric_id})
            except Exception:
                logger.exception(f"Anomaly scan failed for '{metric_name}'", extra={"metric_id": metric_id})

        stored = [self._store(result) for result in found]
        logger.info(f"Anomaly scan complete: {len(stored)} found across {len(metrics)} metrics")
        return stored

    def _scan_metric(self, metric: Metric) -> List[AnomalyResult]:
        thresholds = self.session.exec(
            select(MetricThreshold).where(
                MetricThreshold.metric_id == metric.id,
                MetricThreshold.is_active == True,  # noqa: E712
            )
        ).all()
        results: List[AnomalyResult] = []
        for window in series_windows(metric):
            values = repository.recent_values(self.session, metric.id, window, self.history_limit)
            if values:
                results.extend(self.check_series(metric, window, values, thresholds))
        return results

    def check_series(
        self,
        metric: Metric,
        window: Optional[str],
        values: List[MetricValue],
        thresholds: Sequence[MetricThreshold] = (),
    ) -> List[AnomalyResult]:
        """Run every check on one newest-first series. Checks are independent."""
        results: List[AnomalyResult] = []

        missing = self._check_missing(metric, window, values)
        if missing is not None:
            results.append(missing)

        for rule in thresholds:
            hit = self._check_threshold(metric, window, values, rule)
            if hit is not None:
                results.append(hit)

        deviation = self._check_deviation(metric, window, values)
        if deviation is not None:
            results.append(deviation)

        trend = self._check_trend(metric, window, values)
        if trend is not None:
            results.append(trend)

        return results

    def _result(self, metric: Metric, window: Optional[str], **fields) -> AnomalyResult:
        return AnomalyResult(
            metric_id=metric.id,
            metric_name=metric.name,
            time_window=window,
            detected_at=self.now,
            **fields,
        )

    # ── Checks ──

    def _check_missing(
        self, metric: Metric, window: Optional[str], values: List[MetricValue]
    ) -> Optional[AnomalyResult]:
        if not is_externally_synced(metric):
            return None

        last = as_utc(values[0].recorded_at)
        hours = (self.now - last).total_seconds() / 3600
        if hours <= self.missing_data_hours:
            return None

        return self._result(
            metric,
            window,
            anomaly_type=AnomalyType.MISSING,
            severity=Severity.WARNING,
            current_value=None,
            message=f"{metric.name} has not received data for {int(hours)} hours",
        )

    @staticmethod
    def _breach_test(rule: MetricThreshold) -> Callable[[List[MetricValue], int], bool]:
        limit = rule.threshold_value

        if rule.threshold_type == ThresholdType.ABOVE.value:
            return lambda vals, i: vals[i].value > limit
        if rule.threshold_type == ThresholdType.BELOW.value:
            return lambda vals, i: vals[i].value < limit
        if rule.threshold_type == ThresholdType.CHANGE_PERCENT.value:

            def changed(vals: List[MetricValue], i: int) -> bool:
                if i + 1 >= len(vals) or vals[i + 1].value == 0:
                    return False
                prev = vals[i + 1].value
                return abs(vals[i].value - prev) / abs(prev) * 100 > limit

            return changed
        raise ValueError(f"Unknown threshold type: {rule.threshold_type}")

    def _check_threshold(
        self,
        metric: Metric,
        window: Optional[str],
        values: List[MetricValue],
        rule: MetricThreshold,
    ) -> Optional[AnomalyResult]:
        try:
            breached = self._breach_test(rule)
            severity = Severity(rule.severity)
        except ValueError as e:
            logger.warning(f"Skipping threshold {rule.id}: {e}", extra={"metric_id": metric.id})
            return None

        required = max(1, rule.consecutive_periods or 1)
        run = 0
        for i in range(len(values)):
            if not breached(values, i):
                break
            run += 1
            if run >= required:
                break
        if run < required:
            return None

        current = values[0].value
        deviation: Optional[float] = None
        if rule.threshold_type == ThresholdType.CHANGE_PERCENT.value:
            prev = values[1].value
            deviation = (current - prev) / abs(prev) * 100
            message = (
                f"{metric.name} changed {abs(deviation):.1f}% "
                f"(threshold: {rule.threshold_value}%)"
            )
        else:
            message = (
                f"{metric.name} is {rule.threshold_type} threshold: "
                f"{current:.2f} vs {rule.threshold_value}"
            )
        if required > 1:
            message += f" for {required} consecutive periods"

        return self._result(
            metric,
            window,
            anomaly_type=AnomalyType.THRESHOLD,
            severity=severity,
            current_value=current,
            expected_value=rule.threshold_value,
            deviation_percent=_round(deviation),
            message=message,
        )

    def _check_deviation(
        self, metric: Metric, window: Optional[str], values: List[MetricValue]
    ) -> Optional[AnomalyResult]:
        baseline = [v.value for v in values[1 : 1 + MAX_BASELINE]]
        if len(baseline) < MIN_BASELINE:
            return None

        mean = sum(baseline) / len(baseline)
        std = math.sqrt(sum((v - mean) ** 2 for v in baseline) / len(baseline))
        if std == 0:
            return None

        current = values[0].value
        z = (current - mean) / std
        if abs(z) > Z_CRITICAL:
            severity = Severity.CRITICAL
        elif abs(z) > Z_WARNING:
            severity = Severity.WARNING
        else:
            return None

        deviation = (current - mean) / mean * 100 if mean != 0 else None
        direction = "above" if z > 0 else "below"
        return self._result(
            metric,
            window,
            anomaly_type=AnomalyType.DEVIATION,
            severity=severity,
            current_value=current,
            expected_value=round(mean, 2),
            deviation_percent=_round(deviation),
            message=(
                f"{metric.name} is {abs(z):.1f} standard deviations {direction} "
                f"the recent average ({current:.2f} vs {mean:.2f})"
            ),
        )

    def _check_trend(
        self, metric: Metric, window: Optional[str], values: List[MetricValue]
    ) -> Optional[AnomalyResult]:
        recent = [v.value for v in values[:TREND_SPAN]]
        historical = [v.value for v in values[TREND_SPAN : 2 * TREND_SPAN]]
        if len(recent) < TREND_SPAN or len(historical) < TREND_SPAN:
            return None

        recent_trend = calculate_trend(recent[::-1])
        historical_trend = calculate_trend(historical[::-1])

        flipped = (recent_trend > TREND_THRESHOLD and historical_trend < -TREND_THRESHOLD) or (
            recent_trend < -TREND_THRESHOLD and historical_trend > TREND_THRESHOLD
        )
        if not flipped:
            return None

        now_dir = "upward" if recent_trend > 0 else "downward"
        was_dir = "downward" if recent_trend > 0 else "upward"
        return self._result(
            metric,
            window,
            anomaly_type=AnomalyType.TREND,
            severity=Severity.INFO,
            current_value=values[0].value,
            message=f"{metric.name} trend reversed: now {now_dir} after a {was_dir} run",
        )

    # ── Persistence ──

    def _store(self, result: AnomalyResult) -> AnomalyResult:
        """Persist one anomaly and its alert. A store failure is logged, not raised."""
        try:
            anomaly = MetricAnomaly(
                metric_id=result.metric_id,
                anomaly_type=result.anomaly_type.value,
                severity=result.severity.value,
                time_window=result.time_window,
                current_value=result.current_value,
                expected_value=result.expected_value,
                deviation_percent=result.deviation_percent,
                message=result.message,
                detected_at=result.detected_at,
            )
            self.session.add(anomaly)
            self.session.commit()
            self.session.refresh(anomaly)
            result.anomaly_id = anomaly.id

            if result.severity is Severity.INFO:
                return result

            alert = Alert(
                type="anomaly",
                severity=(
                    AlertSeverity.URGENT.value
                    if result.severity is Severity.CRITICAL
                    else AlertSeverity.NORMAL.value
                ),
                title=f"{result.anomaly_type.value.capitalize()} Alert: {result.metric_name}",
                description=result.message,
                metric_id=result.metric_id,
                config={
                    "anomaly_id": anomaly.id,
                    "anomaly_type": result.anomaly_type.value,
                    "current_value": result.current_value,
                    "expected_value": result.expected_value,
                },
            )
            self.session.add(alert)
            self.session.commit()
            self.session.refresh(alert)

            anomaly.alert_id = alert.id
            self.session.add(anomaly)
            self.session.commit()
            result.alert_id = alert.id
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.error(
                f"Failed to store {result.anomaly_type.value} anomaly: {e}",
                extra={"metric_id": result.metric_id},
            )
        return result


def _to_result(anomaly: MetricAnomaly, metric_name: str) -> AnomalyResult:
    return AnomalyResult(
        metric_id=anomaly.metric_id,
        metric_name=metric_name,
        anomaly_type=AnomalyType(anomaly.anomaly_type),
        severity=Severity(anomaly.severity),
        time_window=anomaly.time_window,
        current_value=anomaly.current_value,
        expected_value=anomaly.expected_value,
        deviation_percent=anomaly.deviation_percent,
        message=anomaly.message,
        detected_at=as_utc(anomaly.detected_at),
        anomaly_id=anomaly.id,
        alert_id=anomaly.alert_id,
    )


def get_metric_anomalies(session: Session, metric_id: int, limit: int = 10) -> List[AnomalyResult]:
    """Most recent anomalies for one metric, newest first."""
    rows = session.exec(
        select(MetricAnomaly, Metric.name)
        .join(Metric, Metric.id == MetricAnomaly.metric_id)
        .where(MetricAnomaly.metric_id == metric_id)
        .order_by(MetricAnomaly.detected_at.desc(), MetricAnomaly.id.desc())  # type: ignore
        .limit(limit)
    ).all()
    return [_to_result(anomaly, name) for anomaly, name in rows]


def get_unresolved_anomalies(session: Session, limit: int = 50) -> List[AnomalyResult]:
    """Open anomalies across all metrics, newest first."""
    rows = session.exec(
        select(MetricAnomaly, Metric.name)
        .join(Metric, Metric.id == MetricAnomaly.metric_id)
        .where(MetricAnomaly.resolved_at.is_(None))  # type: ignore
        .order_by(MetricAnomaly.detected_at.desc(), MetricAnomaly.id.desc())  # type: ignore
        .limit(limit)
    ).all()
    return [_to_result(anomaly, name) for anomaly, name in rows]
