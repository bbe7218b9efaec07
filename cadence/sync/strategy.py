"""Cadence: Metric Sync Strategies.

Every metric resolves, once per sync attempt, to exactly one strategy. The
processor has one handler per strategy instead of branching on the
overlapping ``metric_type`` / ``source_type`` / ``is_rollup`` flags.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple, Union

from cadence.models.metric_models import Metric, MetricType, SourceType
from cadence.sync.time_windows import TimeWindow

EXTERNAL_SOURCES = {SourceType.HUBSPOT.value, SourceType.BIGQUERY.value}
_VALID_WINDOWS = {w.value for w in TimeWindow}
_SOURCE_NAMES = {"hubspot": "HubSpot", "bigquery": "BigQuery"}


@dataclass(frozen=True)
class Manual:
    """Values are entered by people; nothing to sync."""


@dataclass(frozen=True)
class LegacyExternal:
    """Pre data-source metric with its query stored on the metric itself."""

    source_type: str
    config: Dict[str, Any] = field(default_factory=dict, hash=False)


@dataclass(frozen=True)
class SingleWindow:
    data_source_id: int
    window: str


@dataclass(frozen=True)
class MultiWindow:
    data_source_id: int
    windows: Tuple[str, ...]


@dataclass(frozen=True)
class Calculated:
    formula: str
    references: Tuple[Dict[str, Any], ...] = field(hash=False)


@dataclass(frozen=True)
class Rollup:
    """Aggregate of the metric's children. ``None`` until first resolved."""

    aggregation_type: Optional[str]


@dataclass(frozen=True)
class Invalid:
    """Configuration that violates a metric invariant."""

    reason: str


MetricStrategy = Union[
    Manual, LegacyExternal, SingleWindow, MultiWindow, Calculated, Rollup, Invalid
]


def _bad_windows(windows: List[str]) -> List[str]:
    return [w for w in windows if w not in _VALID_WINDOWS]


def resolve_strategy(metric: Metric) -> MetricStrategy:
    """Pick the single strategy that applies to ``metric``."""
    if metric.is_rollup:
        return Rollup(aggregation_type=metric.aggregation_type)

    mtype = metric.metric_type

    if mtype == MetricType.CALCULATED.value:
        if metric.data_source_id is not None:
            return Invalid("Calculated metric cannot reference a data source")
        if not (metric.formula or "").strip():
            return Invalid("Calculated metric is missing a formula")
        if not metric.formula_references:
            return Invalid("Calculated metric is missing formula references")
        return Calculated(
            formula=metric.formula, references=tuple(metric.formula_references)
        )

    if mtype == MetricType.SINGLE_WINDOW.value:
        if metric.data_source_id is None:
            return Invalid("Single-window metric is missing a data source")
        if not metric.time_window:
            return Invalid("Single-window metric is missing a time window")
        if _bad_windows([metric.time_window]):
            return Invalid(f"Unknown time window: {metric.time_window}")
        return SingleWindow(data_source_id=metric.data_source_id, window=metric.time_window)

    if mtype == MetricType.MULTI_WINDOW.value:
        if metric.data_source_id is None:
            return Invalid("Multi-window metric is missing a data source")
        windows = list(metric.time_windows or [])
        if not windows:
            return Invalid("Multi-window metric has no time windows")
        bad = _bad_windows(windows)
        if bad:
            return Invalid(f"Unknown time window: {', '.join(bad)}")
        return MultiWindow(data_source_id=metric.data_source_id, windows=tuple(windows))

    if mtype == MetricType.MANUAL.value:
        if metric.source_type in EXTERNAL_SOURCES:
            if not metric.source_config:
                name = _SOURCE_NAMES[metric.source_type]
                return Invalid(f"{name} metric missing source_config")
            return LegacyExternal(
                source_type=metric.source_type, config=dict(metric.source_config)
            )
        return Manual()

    return Invalid(f"Unsupported metric type: {mtype}")


def is_externally_synced(metric: Metric) -> bool:
    """Whether fresh values are expected to arrive without a person entering them."""
    if not metric.sync_enabled:
        return False
    return isinstance(
        resolve_strategy(metric), (LegacyExternal, SingleWindow, MultiWindow, Calculated)
    )


def series_windows(metric: Metric) -> List[Optional[str]]:
    """The value series a metric records: one per window, or the untagged one."""
    if metric.is_rollup:
        return [None]
    if metric.metric_type == MetricType.SINGLE_WINDOW.value and metric.time_window:
        return [metric.time_window]
    if metric.metric_type == MetricType.MULTI_WINDOW.value and metric.time_windows:
        ordered = [w for w in TimeWindow if w.value in metric.time_windows]
        return [w.value for w in ordered]
    return [None]
