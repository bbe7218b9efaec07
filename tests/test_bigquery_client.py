from datetime import datetime, timezone

from google.api_core import exceptions as gexc

from cadence.connectors.bigquery.client import BigQueryClient, render_query
from cadence.sync.time_windows import TimeRange


class FakeJob:
    def __init__(self, rows):
        self.rows = rows

    def result(self, timeout=None, max_results=None):
        return self.rows


class FakeBigQuery:
    """Stands in for ``bigquery.Client``; each query pops the next outcome."""

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.queries = []

    def query(self, sql):
        self.queries.append(sql)
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return FakeJob(outcome)


def make_client(fake, retries=3):
    return BigQueryClient(client=fake, max_retries=retries, retry_base_delay=0, timeout=5)


CONFIG = {
    "query": "SELECT SUM(amount) AS total FROM sales WHERE day BETWEEN '{{start}}' AND '{{end}}'",
    "value_column": "total",
}

MARCH = TimeRange(
    start=datetime(2024, 3, 1, tzinfo=timezone.utc),
    end=datetime(2024, 3, 15, 10, tzinfo=timezone.utc),
)


class TestRenderQuery:
    def test_substitutes_range(self):
        sql = render_query("x >= '{{start}}' AND x < '{{ end }}'", MARCH)
        assert sql == "x >= '2024-03-01' AND x < '2024-03-15'"

    def test_legacy_aliases(self):
        sql = render_query("{{period_start}}|{{period_end}}", MARCH)
        assert sql == "2024-03-01|2024-03-15"

    def test_unknown_placeholder_left_alone(self):
        assert render_query("{{region}}", MARCH) == "{{region}}"

    def test_parameters(self):
        assert render_query("{{region}}", MARCH, {"region": "emea"}) == "emea"


class TestFetchMetric:
    async def test_reads_value_column(self):
        fake = FakeBigQuery([{"total": 1234.5}, {"total": 1}])
        result = await make_client(fake).fetch_metric(CONFIG, MARCH)
        assert result.success
        assert result.value == 1234.5
        assert result.records_processed == 2
        assert "2024-03-01" in fake.queries[0]

    async def test_no_rows_is_zero(self):
        result = await make_client(FakeBigQuery([])).fetch_metric(CONFIG, MARCH)
        assert result.success
        assert result.value == 0.0

    async def test_missing_column(self):
        result = await make_client(FakeBigQuery([{"other": 1}])).fetch_metric(CONFIG, MARCH)
        assert not result.success
        assert "Column 'total' not found" in result.error

    async def test_retries_transient_error(self):
        fake = FakeBigQuery(gexc.ServiceUnavailable("busy"), [{"total": 7}])
        result = await make_client(fake).fetch_metric(CONFIG, MARCH)
        assert result.success
        assert result.value == 7
        assert len(fake.queries) == 2

    async def test_gives_up_after_retries(self):
        fake = FakeBigQuery(gexc.TooManyRequests("slow down"), gexc.TooManyRequests("slow down"))
        result = await make_client(fake, retries=2).fetch_metric(CONFIG, MARCH)
        assert not result.success
        assert "after 2 attempts" in result.error

    async def test_bad_request_not_retried(self):
        fake = FakeBigQuery(gexc.BadRequest("syntax error"), [{"total": 1}])
        result = await make_client(fake).fetch_metric(CONFIG, MARCH)
        assert not result.success
        assert "syntax error" in result.error
        assert len(fake.queries) == 1

    async def test_requires_query_and_column(self):
        result = await make_client(FakeBigQuery()).fetch_metric({"query": "SELECT 1"})
        assert not result.success


def test_not_configured_without_credentials():
    assert not BigQueryClient(project_id="p", credentials_json="").is_configured()
    assert not BigQueryClient(project_id="p", credentials_json="not json").is_configured()


async def test_connection_runs_trivial_query():
    fake = FakeBigQuery([{"test": 1}])
    result = await make_client(fake).test_connection()
    assert result.success
    assert fake.queries == ["SELECT 1 AS test"]


async def test_connection_reports_failure():
    result = await make_client(FakeBigQuery(gexc.Forbidden("no access"))).test_connection()
    assert not result.success
    assert "no access" in result.error
