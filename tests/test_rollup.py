from datetime import datetime, timedelta, timezone

import pytest
from sqlmodel import select

from cadence.models.metric_models import MetricValue
from cadence.sync.rollup import RollupCalculator, aggregate_values, attach_child_metric
from cadence.sync.strategy import series_windows


def rollup_rows(session, metric_id):
    return session.exec(
        select(MetricValue).where(MetricValue.metric_id == metric_id, MetricValue.source == "rollup")
    ).all()


@pytest.fixture
def team(make_metric, add_values):
    """Parent summing three children; the third has no values."""
    parent = make_metric(name="Company revenue", is_rollup=True, aggregation_type="sum")
    kids = [make_metric(name=f"Team {i}", parent_metric_id=parent.id) for i in range(3)]
    add_values(kids[0].id, [5, 10])
    add_values(kids[1].id, [20])
    return parent, kids


class TestAggregateValues:
    T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)

    def samples(self, *values):
        return [(v, self.T0 + timedelta(minutes=i)) for i, v in enumerate(values)]

    @pytest.mark.parametrize(
        "aggregation, expected",
        [("sum", 9), ("avg", 3), ("average", 3), ("count", 3), ("min", 1), ("max", 5), ("latest", 3)],
    )
    def test_aggregations(self, aggregation, expected):
        assert aggregate_values(self.samples(5, 1, 3), aggregation) == expected

    def test_latest_uses_recorded_time(self):
        samples = [(7.0, self.T0 + timedelta(hours=2)), (9.0, self.T0)]
        assert aggregate_values(samples, "latest") == 7.0

    def test_manual_and_empty(self):
        assert aggregate_values(self.samples(1, 2), "manual") is None
        assert aggregate_values([], "sum") is None

    def test_unknown(self):
        with pytest.raises(ValueError):
            aggregate_values(self.samples(1), "median")


class TestRecalculate:
    def test_sums_latest_child_values(self, session, team):
        parent, _ = team
        outcome = RollupCalculator(session).recalculate(parent)

        assert outcome.success
        assert outcome.old_value is None
        assert outcome.new_value == 30
        [row] = rollup_rows(session, parent.id)
        assert row.value == 30
        assert row.time_window is None

    def test_unchanged_value_not_rewritten(self, session, team):
        parent, _ = team
        calc = RollupCalculator(session)
        calc.recalculate(parent)
        outcome = calc.recalculate(parent)

        assert outcome.old_value == 30
        assert outcome.new_value == 30
        assert len(rollup_rows(session, parent.id)) == 1

    def test_changed_child_adds_value(self, session, team, add_values):
        parent, kids = team
        calc = RollupCalculator(session)
        calc.recalculate(parent)
        add_values(kids[2].id, [5])
        outcome = calc.recalculate(parent)

        assert outcome.new_value == 35
        assert len(rollup_rows(session, parent.id)) == 2

    def test_no_child_values(self, session, make_metric):
        parent = make_metric(is_rollup=True, aggregation_type="sum")
        make_metric(parent_metric_id=parent.id)
        outcome = RollupCalculator(session).recalculate(parent)
        assert outcome.success
        assert outcome.new_value is None
        assert rollup_rows(session, parent.id) == []

    def test_missing_aggregation_defaults_to_sum(self, session, make_metric, add_values):
        parent = make_metric(is_rollup=True)
        child = make_metric(parent_metric_id=parent.id)
        add_values(child.id, [4])

        outcome = RollupCalculator(session).recalculate(parent)
        session.refresh(parent)
        assert outcome.new_value == 4
        assert parent.aggregation_type == "sum"


class TestRecalculateRollups:
    def test_all_rollups(self, session, team, make_metric):
        make_metric(name="Not a rollup")
        result = RollupCalculator(session).recalculate_rollups(all_rollups=True)
        assert (result.total, result.successful) == (1, 1)

    def test_unknown_id(self, session, team):
        parent, _ = team
        result = RollupCalculator(session).recalculate_rollups(metric_ids=[parent.id, 9999])
        assert result.successful == 1
        assert result.results[1].error == "Metric not found"

    def test_requires_target(self, session):
        with pytest.raises(ValueError):
            RollupCalculator(session).recalculate_rollups()


class TestAttachChild:
    def test_first_child_makes_rollup(self, session, make_metric):
        parent = make_metric(name="Parent")
        child = make_metric(name="Child")
        attach_child_metric(session, parent, child)

        assert parent.is_rollup
        assert parent.aggregation_type == "sum"
        assert child.parent_metric_id == parent.id

    def test_keeps_existing_aggregation(self, session, make_metric):
        parent = make_metric(aggregation_type="max")
        attach_child_metric(session, parent, make_metric())
        assert parent.aggregation_type == "max"

    def test_rejects_cycle(self, session, make_metric):
        grandparent = make_metric(name="G")
        parent = make_metric(name="P")
        attach_child_metric(session, grandparent, parent)
        with pytest.raises(ValueError, match="cycle"):
            attach_child_metric(session, parent, grandparent)

    def test_rejects_self(self, session, make_metric):
        m = make_metric()
        with pytest.raises(ValueError):
            attach_child_metric(session, m, m)

    def test_windowed_parent_keeps_one_rollup_series(self, session, make_metric, make_data_source, add_values):
        ds = make_data_source()
        parent = make_metric(metric_type="single_window", data_source_id=ds.id, time_window="day")
        child = make_metric()
        add_values(child.id, [10])
        attach_child_metric(session, parent, child)

        calc = RollupCalculator(session)
        outcomes = [calc.recalculate(parent) for _ in range(3)]

        assert [o.old_value for o in outcomes] == [None, 10, 10]
        assert [(r.value, r.time_window) for r in rollup_rows(session, parent.id)] == [(10.0, None)]
        assert series_windows(parent) == [None]
