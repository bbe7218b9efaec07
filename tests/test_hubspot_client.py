import json
from datetime import datetime, timezone

import httpx
import pytest

from cadence.connectors.hubspot.client import HubSpotClient, aggregate, build_filters
from cadence.sync.time_windows import TimeRange


def make_client(handler, token="test-token", retries=3):
    return HubSpotClient(
        access_token=token,
        base_url="https://hubspot.test",
        transport=httpx.MockTransport(handler),
        max_retries=retries,
        retry_base_delay=0,
        timeout=5,
    )


DEALS = {"object": "deals", "property": "amount", "aggregation": "sum"}


class TestAggregate:
    def test_each_aggregation(self):
        values = [4.0, 1.0, 7.0]
        assert aggregate(values, "sum") == 12
        assert aggregate(values, "avg") == 4
        assert aggregate(values, "count") == 3
        assert aggregate(values, "min") == 1
        assert aggregate(values, "max") == 7

    def test_empty_is_zero(self):
        assert aggregate([], "avg") == 0


class TestBuildFilters:
    def test_dict_filters_become_equality(self):
        assert build_filters({"dealstage": "closedwon"}, None, "createdate") == [
            {"propertyName": "dealstage", "operator": "EQ", "value": "closedwon"}
        ]

    def test_time_range_adds_epoch_bounds(self):
        r = TimeRange(
            start=datetime(2024, 1, 1, tzinfo=timezone.utc),
            end=datetime(2024, 1, 2, tzinfo=timezone.utc),
        )
        filters = build_filters([], r, "closedate")
        assert filters == [
            {"propertyName": "closedate", "operator": "GTE", "value": "1704067200000"},
            {"propertyName": "closedate", "operator": "LT", "value": "1704153600000"},
        ]


class TestFetchMetric:
    async def test_sum_follows_pagination(self):
        bodies = []

        def handler(request: httpx.Request) -> httpx.Response:
            body = json.loads(request.content)
            bodies.append(body)
            assert request.headers["Authorization"] == "Bearer test-token"
            assert request.url.path == "/crm/v3/objects/deals/search"
            if "after" not in body:
                return httpx.Response(
                    200,
                    json={
                        "total": 3,
                        "results": [{"properties": {"amount": "100"}}, {"properties": {"amount": "200"}}],
                        "paging": {"next": {"after": "2"}},
                    },
                )
            return httpx.Response(
                200, json={"total": 3, "results": [{"properties": {"amount": "300"}}]}
            )

        client = make_client(handler)
        result = await client.fetch_metric(DEALS)
        await client.close()

        assert result.success
        assert result.value == 600
        assert result.records_processed == 3
        assert len(bodies) == 2
        assert bodies[1]["after"] == "2"

    async def test_count_uses_total_without_paging(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(
                200,
                json={"total": 42, "results": [{"properties": {}}], "paging": {"next": {"after": "1"}}},
            )

        client = make_client(handler)
        result = await client.fetch_metric({"object": "contacts", "property": "email", "aggregation": "count"})
        assert result.value == 42
        assert len(calls) == 1

    async def test_retries_after_rate_limit(self):
        responses = [
            httpx.Response(429),
            httpx.Response(200, json={"total": 1, "results": [{"properties": {"amount": "5"}}]}),
        ]

        client = make_client(lambda request: responses.pop(0))
        result = await client.fetch_metric(DEALS)
        assert result.success
        assert result.value == 5

    async def test_retries_server_errors_then_fails(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(503, text="unavailable")

        client = make_client(handler, retries=2)
        result = await client.fetch_metric(DEALS)
        assert not result.success
        assert "503" in result.error
        assert len(calls) == 2

    async def test_client_error_is_not_retried(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(401, text="bad token")

        result = await make_client(handler).fetch_metric(DEALS)
        assert not result.success
        assert "401" in result.error
        assert len(calls) == 1

    async def test_time_range_is_sent_as_filters(self):
        seen = {}

        def handler(request):
            seen.update(json.loads(request.content))
            return httpx.Response(200, json={"total": 0, "results": []})

        r = TimeRange(
            start=datetime(2024, 3, 1, tzinfo=timezone.utc),
            end=datetime(2024, 3, 15, tzinfo=timezone.utc),
        )
        config = dict(DEALS, filters={"dealstage": "closedwon"}, date_field="closedate")
        await make_client(handler).fetch_metric(config, r)

        filters = seen["filterGroups"][0]["filters"]
        assert {f["operator"] for f in filters} == {"EQ", "GTE", "LT"}
        assert all(f["propertyName"] == "closedate" for f in filters if f["operator"] != "EQ")

    async def test_legacy_date_range_maps_to_window(self):
        seen = {}

        def handler(request):
            seen.update(json.loads(request.content))
            return httpx.Response(200, json={"total": 0, "results": []})

        await make_client(handler).fetch_metric(dict(DEALS, date_range="month"))
        operators = [f["operator"] for f in seen["filterGroups"][0]["filters"]]
        assert operators == ["GTE", "LT"]

    @pytest.mark.parametrize(
        "config, message",
        [
            ({"object": "companies", "property": "x"}, "Unsupported HubSpot object"),
            ({"object": "deals"}, "property is required"),
            ({"object": "deals", "property": "amount", "aggregation": "median"}, "Unsupported aggregation"),
        ],
    )
    async def test_invalid_config(self, config, message):
        result = await make_client(lambda r: httpx.Response(200, json={})).fetch_metric(config)
        assert not result.success
        assert message in result.error

    async def test_unconfigured_token(self):
        client = make_client(lambda r: httpx.Response(200, json={}), token="")
        assert not client.is_configured()
        result = await client.fetch_metric(DEALS)
        assert not result.success
        assert "not configured" in result.error


class TestConnection:
    async def test_searches_contacts(self):
        seen = []

        def handler(request):
            seen.append(request.url.path)
            return httpx.Response(200, json={"total": 0, "results": []})

        result = await make_client(handler).test_connection()
        assert result.success
        assert seen == ["/crm/v3/objects/contacts/search"]

    async def test_rejected_token(self):
        result = await make_client(lambda r: httpx.Response(401, text="bad token")).test_connection()
        assert not result.success
        assert "401" in result.error
