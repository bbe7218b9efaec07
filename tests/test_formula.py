import pytest

from cadence.models.sync_models import SyncResult
from cadence.sync.formula import (
    FormulaError,
    FormulaResolver,
    evaluate_formula,
    extract_variables,
    validate_references,
)
from cadence.models.metric_models import FormulaReference
from tests.conftest import FakeAdapter


class TestEvaluateFormula:
    def test_precedence(self):
        assert evaluate_formula("A + B * C", {"A": 1, "B": 2, "C": 3}) == 7

    def test_parentheses(self):
        assert evaluate_formula("(A + B) * C", {"A": 1, "B": 2, "C": 3}) == 9

    def test_ratio_percentage(self):
        assert evaluate_formula("(A / B) * 100", {"A": 25, "B": 200}) == 12.5

    def test_lowercase_is_normalized(self):
        assert evaluate_formula("a - b", {"a": 10, "b": 4}) == 6

    def test_unary_minus(self):
        assert evaluate_formula("-A + 5", {"A": 2}) == 3
        assert evaluate_formula("A * -2", {"A": 3}) == -6

    def test_left_associative(self):
        assert evaluate_formula("A - B - C", {"A": 10, "B": 3, "C": 2}) == 5
        assert evaluate_formula("A / B / C", {"A": 100, "B": 5, "C": 2}) == 10

    def test_decimal_literals(self):
        assert evaluate_formula("A * 0.5", {"A": 8}) == 4

    def test_division_by_zero(self):
        with pytest.raises(FormulaError, match="Division by zero"):
            evaluate_formula("A / B", {"A": 1, "B": 0})

    @pytest.mark.parametrize(
        "formula",
        ["A; import os", "__import__('os')", "A ** 2", "A % B", "A == B"],
    )
    def test_rejects_unsafe_characters(self, formula):
        with pytest.raises(FormulaError):
            evaluate_formula(formula, {"A": 1, "B": 1})

    @pytest.mark.parametrize("formula", ["A +", "(A + B", "A + B)", "A B", "()", ""])
    def test_rejects_malformed(self, formula):
        with pytest.raises(FormulaError):
            evaluate_formula(formula, {"A": 1, "B": 1})

    def test_unbound_variable(self):
        with pytest.raises(FormulaError, match="Unknown variable C"):
            evaluate_formula("A + C", {"A": 1})

    def test_non_finite_input(self):
        with pytest.raises(FormulaError):
            evaluate_formula("A + 1", {"A": float("inf")})


def test_extract_variables_in_order():
    assert extract_variables("(b + A) / B * c") == ["B", "A", "C"]


class TestValidateReferences:
    def test_missing_reference(self):
        refs = [FormulaReference(variable="A", type="metric", id=1)]
        with pytest.raises(FormulaError, match="Variable B has no reference"):
            validate_references("A / B", refs)

    def test_duplicate_reference(self):
        refs = [
            FormulaReference(variable="A", type="metric", id=1),
            FormulaReference(variable="a", type="metric", id=2),
        ]
        with pytest.raises(FormulaError, match="more than one"):
            validate_references("A * 2", refs)


class TestFormulaResolver:
    async def test_metric_references(self, session, make_metric, add_values):
        revenue = make_metric(name="Revenue")
        deals = make_metric(name="Deals")
        add_values(revenue.id, [500, 1000])
        add_values(deals.id, [10])

        resolver = FormulaResolver(session, {})
        result = await resolver.calculate_metric_value(
            "A / B",
            [
                {"variable": "A", "type": "metric", "id": revenue.id},
                {"variable": "B", "type": "metric", "id": deals.id},
            ],
        )
        assert result.success
        assert result.value == 100

    async def test_metric_reference_reads_single_window_series(self, session, make_metric, add_values):
        pipeline = make_metric(name="Pipeline", metric_type="single_window", time_window="mtd", data_source_id=None)
        add_values(pipeline.id, [42], time_window="mtd")

        result = await FormulaResolver(session, {}).calculate_metric_value(
            "A * 2", [{"variable": "A", "type": "metric", "id": pipeline.id}]
        )
        assert result.value == 84

    async def test_metric_without_value(self, session, make_metric):
        empty = make_metric(name="Empty")
        result = await FormulaResolver(session, {}).calculate_metric_value(
            "A + 1", [{"variable": "A", "type": "metric", "id": empty.id}]
        )
        assert not result.success
        assert result.error == "Could not resolve value for variable A"

    async def test_data_source_reference(self, session, make_data_source):
        ds = make_data_source()
        adapter = FakeAdapter(results=[SyncResult(success=True, value=30.0)])

        result = await FormulaResolver(session, {"hubspot": adapter}).calculate_metric_value(
            "A / 3", [{"variable": "A", "type": "data_source", "id": ds.id, "time_window": "mtd"}]
        )
        assert result.success
        assert result.value == 10
        assert adapter.calls[0]["config"]["object"] == "deals"
        assert adapter.calls[0]["time_range"] is not None

    async def test_data_source_reference_requires_window(self, session, make_data_source):
        ds = make_data_source()
        result = await FormulaResolver(session, {"hubspot": FakeAdapter()}).calculate_metric_value(
            "A", [{"variable": "A", "type": "data_source", "id": ds.id}]
        )
        assert not result.success
        assert "time_window" in result.error

    async def test_division_by_zero_is_reported(self, session, make_metric, add_values):
        a = make_metric(name="A")
        b = make_metric(name="B")
        add_values(a.id, [5])
        add_values(b.id, [0])
        result = await FormulaResolver(session, {}).calculate_metric_value(
            "A / B",
            [
                {"variable": "A", "type": "metric", "id": a.id},
                {"variable": "B", "type": "metric", "id": b.id},
            ],
        )
        assert not result.success
        assert result.error.startswith("Formula evaluation error")
