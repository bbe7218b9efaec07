from datetime import timedelta
from typing import Any, Dict, List, Optional

import pytest
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

import cadence.models.anomaly_models  # noqa: F401
import cadence.models.metric_models  # noqa: F401
import cadence.models.sync_models  # noqa: F401
from cadence.connectors.base import SourceAdapter
from cadence.core.clock import utcnow
from cadence.models.metric_models import DataSource, Metric, MetricValue
from cadence.models.sync_models import SyncResult
from cadence.sync.time_windows import TimeRange


class FakeAdapter(SourceAdapter):
    """Scripted adapter: hands out ``results`` in order, then ``default``."""

    def __init__(
        self,
        provider: str = "hubspot",
        results: Optional[List[SyncResult]] = None,
        default: float = 1.0,
        configured: bool = True,
    ):
        self.provider = provider
        self.results = list(results or [])
        self.default = default
        self.configured = configured
        self.calls: List[Dict[str, Any]] = []

    def is_configured(self) -> bool:
        return self.configured

    async def fetch_metric(
        self, config: Dict[str, Any], time_range: Optional[TimeRange] = None
    ) -> SyncResult:
        self.calls.append({"config": config, "time_range": time_range})
        if self.results:
            return self.results.pop(0)
        return SyncResult(success=True, value=self.default, records_processed=1)

    async def test_connection(self) -> SyncResult:
        return SyncResult(success=self.configured)


@pytest.fixture
def test_engine():
    """In-memory database shared across connections."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    return engine


@pytest.fixture
def session(test_engine):
    with Session(test_engine) as session:
        yield session


@pytest.fixture
def make_metric(session):
    def _make(**fields) -> Metric:
        fields.setdefault("name", "Metric")
        metric = Metric(**fields)
        session.add(metric)
        session.commit()
        session.refresh(metric)
        return metric

    return _make


@pytest.fixture
def make_data_source(session):
    def _make(**fields) -> DataSource:
        fields.setdefault("name", "Closed won deals")
        fields.setdefault("source_type", "hubspot")
        fields.setdefault("hubspot_object", "deals")
        fields.setdefault("hubspot_property", "amount")
        fields.setdefault("hubspot_aggregation", "sum")
        data_source = DataSource(**fields)
        session.add(data_source)
        session.commit()
        session.refresh(data_source)
        return data_source

    return _make


@pytest.fixture
def add_values(session):
    """Insert values oldest-first, one hour apart, ending ``end_hours_ago`` before now."""

    def _add(metric_id: int, values: List[float], time_window: Optional[str] = None, end_hours_ago: float = 0):
        now = utcnow()
        n = len(values)
        for i, value in enumerate(values):
            session.add(
                MetricValue(
                    metric_id=metric_id,
                    value=value,
                    time_window=time_window,
                    recorded_at=now - timedelta(hours=end_hours_ago + (n - 1 - i)),
                    source="manual",
                )
            )
        session.commit()

    return _add
