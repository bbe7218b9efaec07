"""Cadence: Metric, Data Source & Metric Value Models.

A metric's current value for a (metric, time_window) pair is always the most
recently recorded ``MetricValue`` row. Values are append-only.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel
from sqlalchemy import JSON, Column
from sqlmodel import SQLModel, Field

from cadence.core.clock import utcnow


class MetricType(str, Enum):
    """How a metric acquires its values."""

    MANUAL = "manual"
    SINGLE_WINDOW = "single_window"
    MULTI_WINDOW = "multi_window"
    CALCULATED = "calculated"


class SourceType(str, Enum):
    """External provider, also used on legacy (pre data source) metrics."""

    MANUAL = "manual"
    HUBSPOT = "hubspot"
    BIGQUERY = "bigquery"


class ValueSource(str, Enum):
    """Where a recorded value came from."""

    MANUAL = "manual"
    HUBSPOT = "hubspot"
    BIGQUERY = "bigquery"
    ROLLUP = "rollup"
    CALCULATED = "calculated"


class AggregationType(str, Enum):
    """How a rollup metric combines its children."""

    SUM = "sum"
    AVG = "avg"
    AVERAGE = "average"
    COUNT = "count"
    MIN = "min"
    MAX = "max"
    LATEST = "latest"
    MANUAL = "manual"


# ─────────────────────────────────────────────
# DATABASE MODELS
# ─────────────────────────────────────────────


class DataSource(SQLModel, table=True):
    """Reusable external query definition referenced by metrics.

    Never mutated by the sync engine.
    """

    __tablename__ = "data_sources"

    id: Optional[int] = Field(default=None, primary_key=True)
    name: str
    description: Optional[str] = None
    source_type: str = Field(index=True, description="hubspot | bigquery")

    # HubSpot
    hubspot_object: Optional[str] = Field(
        default=None, description="deals | contacts | tickets | feedback_submissions"
    )
    hubspot_property: Optional[str] = None
    hubspot_aggregation: Optional[str] = Field(
        default=None, description="sum | avg | count | min | max"
    )
    hubspot_filters: Any = Field(default_factory=list, sa_column=Column(JSON))

    # BigQuery
    bigquery_query: Optional[str] = Field(
        default=None, description="May contain {{start}}, {{end}}, {{today}}"
    )
    bigquery_value_column: Optional[str] = None

    unit: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class Metric(SQLModel, table=True):
    """A named, owned KPI on the scorecard."""

    __tablename__ = "metrics"

    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = Field(index=True)
    description: Optional[str] = None
    owner_id: Optional[int] = Field(default=None, index=True)
    team_id: Optional[int] = Field(default=None, index=True)
    is_active: bool = Field(default=True, index=True)

    metric_type: str = Field(default=MetricType.MANUAL.value, index=True)
    # Legacy single-series model
    source_type: str = Field(default=SourceType.MANUAL.value, index=True)
    source_config: Optional[Dict[str, Any]] = Field(
        default=None, sa_column=Column(JSON)
    )

    # Data-source model
    data_source_id: Optional[int] = Field(
        default=None, foreign_key="data_sources.id", index=True
    )
    time_window: Optional[str] = None
    time_windows: List[str] = Field(default_factory=list, sa_column=Column(JSON))
    goals_by_window: Dict[str, float] = Field(
        default_factory=dict, sa_column=Column(JSON)
    )
    thresholds_by_window: Dict[str, Dict[str, float]] = Field(
        default_factory=dict, sa_column=Column(JSON)
    )

    goal: Optional[float] = None
    unit: Optional[str] = None
    threshold_red: Optional[float] = None
    threshold_yellow: Optional[float] = None

    # Calculated
    formula: Optional[str] = None
    formula_references: List[Dict[str, Any]] = Field(
        default_factory=list, sa_column=Column(JSON)
    )

    # Rollup hierarchy
    is_rollup: bool = False
    aggregation_type: Optional[str] = None
    parent_metric_id: Optional[int] = Field(
        default=None, foreign_key="metrics.id", index=True
    )

    # Sync state
    sync_enabled: bool = True
    sync_frequency: str = Field(default="15min", description="5min | 15min | hourly | daily")
    last_sync_at: Optional[datetime] = None
    sync_error: Optional[str] = None

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class MetricValue(SQLModel, table=True):
    """Immutable time-series point.

    ``time_window`` is null for legacy, manual, calculated and rollup series.
    """

    __tablename__ = "metric_values"

    id: Optional[int] = Field(default=None, primary_key=True)
    metric_id: int = Field(foreign_key="metrics.id", index=True)
    value: float
    time_window: Optional[str] = Field(default=None, index=True)
    recorded_at: datetime = Field(default_factory=utcnow, index=True)
    recorded_by: Optional[int] = None
    source: str = Field(default=ValueSource.MANUAL.value)
    notes: Optional[str] = None


# ─────────────────────────────────────────────
# PYDANTIC SCHEMAS
# ─────────────────────────────────────────────


class FormulaReference(BaseModel):
    """One variable binding inside a calculated metric's formula."""

    variable: str
    type: str  # "metric" | "data_source"
    id: int
    time_window: Optional[str] = None
    """Required when ``type`` is ``data_source``."""
