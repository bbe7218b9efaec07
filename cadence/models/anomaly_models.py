"""Cadence: Threshold, Anomaly & Alert Models."""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel
from sqlalchemy import JSON, Column
from sqlmodel import SQLModel, Field

from cadence.core.clock import utcnow


class ThresholdType(str, Enum):
    ABOVE = "above"
    BELOW = "below"
    CHANGE_PERCENT = "change_percent"


class Severity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


class AnomalyType(str, Enum):
    THRESHOLD = "threshold"
    DEVIATION = "deviation"
    TREND = "trend"
    MISSING = "missing"


class AlertSeverity(str, Enum):
    NORMAL = "normal"
    URGENT = "urgent"


# ─────────────────────────────────────────────
# DATABASE MODELS
# ─────────────────────────────────────────────


class MetricThreshold(SQLModel, table=True):
    """A threshold rule on a metric.

    ``consecutive_periods`` counts observations, most recent inclusive.
    """

    __tablename__ = "metric_thresholds"

    id: Optional[int] = Field(default=None, primary_key=True)
    metric_id: int = Field(foreign_key="metrics.id", index=True)
    threshold_type: str = Field(description="above | below | change_percent")
    threshold_value: float
    severity: str = Field(default=Severity.WARNING.value)
    consecutive_periods: int = Field(default=1, ge=1)
    is_active: bool = True
    created_at: datetime = Field(default_factory=utcnow)


class MetricAnomaly(SQLModel, table=True):
    """A detected deviation. Only ``alert_id`` and ``resolved_at`` change later."""

    __tablename__ = "metric_anomalies"

    id: Optional[int] = Field(default=None, primary_key=True)
    metric_id: int = Field(foreign_key="metrics.id", index=True)
    anomaly_type: str
    severity: str
    time_window: Optional[str] = None
    current_value: Optional[float] = None
    expected_value: Optional[float] = None
    deviation_percent: Optional[float] = None
    message: str
    detected_at: datetime = Field(default_factory=utcnow, index=True)
    resolved_at: Optional[datetime] = None
    alert_id: Optional[int] = Field(default=None, foreign_key="alerts.id")


class Alert(SQLModel, table=True):
    """User-facing alert raised for non-informational anomalies."""

    __tablename__ = "alerts"

    id: Optional[int] = Field(default=None, primary_key=True)
    type: str = Field(default="anomaly")
    severity: str = Field(default=AlertSeverity.NORMAL.value)
    title: str
    description: str
    metric_id: Optional[int] = Field(default=None, foreign_key="metrics.id", index=True)
    config: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))
    created_at: datetime = Field(default_factory=utcnow)


# ─────────────────────────────────────────────
# PYDANTIC SCHEMAS
# ─────────────────────────────────────────────


class AnomalyResult(BaseModel):
    """An anomaly as reported to callers."""

    metric_id: int
    metric_name: str
    anomaly_type: AnomalyType
    severity: Severity
    time_window: Optional[str] = None
    current_value: Optional[float] = None
    expected_value: Optional[float] = None
    deviation_percent: Optional[float] = None
    message: str
    detected_at: datetime
    anomaly_id: Optional[int] = None
    alert_id: Optional[int] = None
