"""Cadence: Sync Log Model & Sync Result Schemas."""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel
from sqlalchemy import JSON, Column
from sqlmodel import SQLModel, Field

from cadence.core.clock import utcnow


class SyncStatus(str, Enum):
    RUNNING = "running"
    SUCCESS = "success"
    ERROR = "error"


# ─────────────────────────────────────────────
# DATABASE MODEL: audit trail of sync attempts
# ─────────────────────────────────────────────


class SyncLog(SQLModel, table=True):
    """One record per sync attempt.

    Created as ``running`` when the attempt starts and always finalized to
    ``success`` or ``error``.
    """

    __tablename__ = "sync_logs"

    id: Optional[int] = Field(default=None, primary_key=True)
    metric_id: Optional[int] = Field(default=None, foreign_key="metrics.id", index=True)
    trigger: str = Field(default="scheduled", description="scheduled | manual")
    status: str = Field(default=SyncStatus.RUNNING.value, index=True)
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    records_processed: Optional[int] = None
    error_message: Optional[str] = None
    details: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))


# ─────────────────────────────────────────────
# PYDANTIC SCHEMAS
# ─────────────────────────────────────────────


class SyncResult(BaseModel):
    """Uniform result of a source adapter call."""

    success: bool
    value: Optional[float] = None
    records_processed: Optional[int] = None
    error: Optional[str] = None
    details: Optional[Dict[str, Any]] = None


class MetricSyncOutcome(BaseModel):
    """Result of syncing one metric."""

    metric_id: int
    metric_name: str
    success: bool
    value: Optional[float] = None
    records_processed: int = 0
    error: Optional[str] = None


class BatchSyncResult(BaseModel):
    """Aggregate result of ``sync_all_metrics``."""

    total: int = 0
    succeeded: int = 0
    failed: int = 0
    results: List[MetricSyncOutcome] = []


class RollupOutcome(BaseModel):
    """Before/after of a single rollup recompute."""

    metric_id: int
    old_value: Optional[float] = None
    new_value: Optional[float] = None
    success: bool
    error: Optional[str] = None


class RollupBatchResult(BaseModel):
    total: int = 0
    successful: int = 0
    failed: int = 0
    results: List[RollupOutcome] = []


class MetricSyncStatus(BaseModel):
    id: int
    name: str
    source_type: str
    metric_type: str
    last_sync_at: Optional[datetime] = None
    sync_error: Optional[str] = None
    sync_enabled: bool


class SyncStatusReport(BaseModel):
    metrics: List[MetricSyncStatus] = []
    last_full_sync: Optional[datetime] = None
