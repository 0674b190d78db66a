"""Tests for the catalog API client."""

import json
import pytest
import httpx

from gallerysync.services.catalog import CatalogClient, _valid_ids
from gallerysync.services.errors import RemoteFetchError


def _client(handler, tokens=("secret-token",)):
    return CatalogClient(
        "http://catalog.test/",
        list(tokens),
        [42, 0, ""],
        page_delay_seconds=0,
        transport=httpx.MockTransport(handler),
    )


def test_valid_ids_drops_empty_and_zero():
    assert _valid_ids([3, "0", "", None, "7", "abc", 0]) == [3, 7]


class TestFetchSidebar:

    @pytest.mark.asyncio
    async def test_posts_tokens(self):
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(200, json={"success": True, "data": [{"name": "Face", "procedures": []}]})

        data = await _client(handler).fetch_sidebar()

        assert data["data"][0]["name"] == "Face"
        assert str(requests[0].url) == "http://catalog.test/api/plugin/combine/sidebar"
        assert json.loads(requests[0].content) == {"apiTokens": ["secret-token"]}

    @pytest.mark.asyncio
    async def test_unsuccessful_payload(self):
        client = _client(lambda request: httpx.Response(200, json={"success": False}))
        with pytest.raises(RemoteFetchError, match="unsuccessful"):
            await client.fetch_sidebar()

    @pytest.mark.asyncio
    async def test_http_error_status(self):
        client = _client(lambda request: httpx.Response(500, text="oops"))
        with pytest.raises(RemoteFetchError, match="API returned error status: 500"):
            await client.fetch_sidebar()

    @pytest.mark.asyncio
    async def test_invalid_json(self):
        client = _client(lambda request: httpx.Response(200, text="<html>"))
        with pytest.raises(RemoteFetchError, match="Invalid JSON"):
            await client.fetch_sidebar()

    @pytest.mark.asyncio
    async def test_no_tokens(self):
        client = _client(lambda request: httpx.Response(200, json={"success": True}), tokens=("",))
        with pytest.raises(RemoteFetchError, match="No API tokens"):
            await client.fetch_sidebar()


class TestFetchCaseIds:

    @pytest.mark.asyncio
    async def test_pages_until_empty_and_dedupes(self):
        pages = {
            1: [{"id": 1}, {"id": 2}],
            2: [{"id": 2}, {"id": 3}],
            3: [],
        }
        bodies = []

        def handler(request):
            body = json.loads(request.content)
            bodies.append(body)
            return httpx.Response(200, json={"success": True, "data": pages[body["count"]]})

        ids = await _client(handler).fetch_all_case_ids(101)

        assert ids == [1, 2, 3]
        assert [body["count"] for body in bodies] == [1, 2, 3]
        assert bodies[0]["procedureIds"] == [101]
        assert bodies[0]["websitePropertyIds"] == [42]

    @pytest.mark.asyncio
    async def test_stops_at_page_limit(self):
        calls = []

        def handler(request):
            count = json.loads(request.content)["count"]
            calls.append(count)
            return httpx.Response(200, json={"success": True, "data": [{"id": count}]})

        ids = await _client(handler).fetch_all_case_ids(101, max_pages=3)

        assert ids == [1, 2, 3]
        assert calls == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_keyed_rows(self):
        def handler(request):
            count = json.loads(request.content)["count"]
            data = {"a": {"id": 9}, "b": {"id": 10}} if count == 1 else []
            return httpx.Response(200, json={"success": True, "data": data})

        assert await _client(handler).fetch_all_case_ids(101) == [9, 10]

    @pytest.mark.asyncio
    async def test_malformed_ids_are_skipped(self):
        def handler(request):
            count = json.loads(request.content)["count"]
            data = [{"id": "abc"}, {"id": 4}, {"id": [1]}, {"id": "5"}] if count == 1 else []
            return httpx.Response(200, json={"success": True, "data": data})

        assert await _client(handler).fetch_all_case_ids(101) == [4, 5]


class TestFetchCaseDetail:

    @pytest.mark.asyncio
    async def test_sends_procedure_id(self):
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(200, json={"success": True, "data": [{"id": 5, "patientAge": 41}]})

        detail = await _client(handler).fetch_case_detail(5, procedure_id=101)

        assert detail == {"id": 5, "patientAge": 41}
        assert requests[0].url.path == "/api/plugin/combine/cases/5"
        assert json.loads(requests[0].content)["procedureIds"] == [101]

    @pytest.mark.asyncio
    async def test_missing_detail(self):
        client = _client(lambda request: httpx.Response(200, json={"success": True, "data": None}))
        with pytest.raises(RemoteFetchError, match="case 5"):
            await client.fetch_case_detail(5)

    @pytest.mark.asyncio
    async def test_connection_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused")

        with pytest.raises(RemoteFetchError, match="API request failed"):
            await _client(handler).fetch_case_detail(5)
