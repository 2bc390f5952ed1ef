import asyncio
import json

import httpx
import pytest

from importer.errors import ConfigurationError, UpstreamError
from importer.http_client import HttpClient
from importer.vendor.catalog_client import CatalogClient, unwrap_envelope

BASE = "https://vendor.test"


def _client(handler, page_size=2) -> CatalogClient:
    http = HttpClient(transport=httpx.MockTransport(handler))
    return CatalogClient("secret", http, base_url=BASE, page_size=page_size)


def test_unwrap_envelope_shapes():
    assert unwrap_envelope([{"a": 1}]) == [{"a": 1}]
    assert unwrap_envelope({"Data": [1, 2], "Ok": True, "Message": ""}) == [1, 2]
    assert unwrap_envelope({"data": None, "ok": True}) == []
    assert unwrap_envelope("nonsense") == []
    with pytest.raises(UpstreamError) as exc:
        unwrap_envelope({"Ok": False, "Message": "Invalid filter"})
    assert exc.value.message == "Invalid filter"


def test_api_key_is_required():
    with pytest.raises(ConfigurationError):
        CatalogClient("   ")


def test_list_products_routes_newer_than_to_query_and_filters_to_body():
    seen = {}

    def handler(request):
        seen["method"] = request.method
        seen["path"] = request.url.path
        seen["params"] = dict(request.url.params)
        seen["body"] = json.loads(request.content)
        seen["key"] = request.headers.get("X-API-KEY")
        return httpx.Response(200, json={"Data": [{"Reference": "A"}], "Ok": True})

    records = asyncio.run(_client(handler).list_products(
        3, 25, {"category": "C1", "Active": 1, "NewerThan": "2024-01-01T00:00:00"}
    ))
    assert records == [{"Reference": "A"}]
    assert seen["method"] == "POST"
    assert seen["path"] == "/api/v1/catalog/products/filter"
    assert seen["params"] == {"Page": "3", "PageSize": "25", "NewerThan": "2024-01-01T00:00:00"}
    assert seen["body"] == {"category": "C1", "Active": 1}
    assert seen["key"] == "secret"


def test_list_products_surfaces_ok_false():
    handler = lambda r: httpx.Response(200, json={"Ok": False, "Message": "Bad key"})
    with pytest.raises(UpstreamError):
        asyncio.run(_client(handler).list_products(0))


def test_count_products_stops_on_short_page():
    pages = {0: [1, 2], 1: [3, 4], 2: [5]}
    requested = []

    def handler(request):
        page = int(request.url.params["Page"])
        requested.append(page)
        return httpx.Response(200, json={"Data": pages.get(page, []), "Ok": True})

    assert asyncio.run(_client(handler).count_products()) == 5
    assert requested == [0, 1, 2]


def test_count_products_honours_page_cap():
    handler = lambda r: httpx.Response(200, json={"Data": [1, 2], "Ok": True})
    assert asyncio.run(_client(handler).count_products(max_pages=3)) == 6


def test_list_all_categories_paginates_with_get():
    def handler(request):
        assert request.method == "GET"
        assert request.url.path == "/api/v1/catalog/categories"
        page = int(request.url.params["Page"])
        data = [{"Reference": "C1"}, {"Reference": "C2"}] if page == 0 else [{"Reference": "C3"}]
        return httpx.Response(200, json={"Data": data, "Ok": True})

    cats = asyncio.run(_client(handler).list_all_categories())
    assert [c["Reference"] for c in cats] == ["C1", "C2", "C3"]


def test_get_stock_reads_any_key_casing():
    def handler(request):
        return httpx.Response(200, json={"Data": [
            {"VariantReference": "A-RED", "Quantity": "7"},
            {"reference": "B", "stock": 3},
            {"Stock": 9},
        ], "Ok": True})

    assert asyncio.run(_client(handler).get_stock()) == {"A-RED": 7, "B": 3}


def test_envelope_key_casing_and_bare_list_agree():
    rows = [{"Reference": "A"}, {"Reference": "B"}]
    assert unwrap_envelope({"data": rows, "ok": True}) == rows
    assert unwrap_envelope({"Data": rows, "Ok": True}) == rows
    assert unwrap_envelope(rows) == rows


def test_list_all_products_concatenates_pages_in_order():
    pages = {
        0: [{"Reference": "A"}, {"Reference": "B"}],
        1: [{"Reference": "C"}, {"Reference": "D"}],
        2: [{"Reference": "E"}],
    }
    requested = []

    def handler(request):
        page = int(request.url.params["Page"])
        requested.append(page)
        assert json.loads(request.content) == {"category": "C1"}
        return httpx.Response(200, json={"Data": pages.get(page, []), "Ok": True})

    records = asyncio.run(_client(handler).list_all_products({"category": "C1"}))
    assert [r["Reference"] for r in records] == ["A", "B", "C", "D", "E"]
    assert requested == [0, 1, 2]


def test_list_all_products_stops_at_page_cap():
    requested = []

    def handler(request):
        requested.append(int(request.url.params["Page"]))
        return httpx.Response(200, json={"Data": [{"Reference": "X"}, {"Reference": "Y"}], "Ok": True})

    records = asyncio.run(_client(handler).list_all_products(max_pages=4))
    assert len(records) == 8
    assert requested == [0, 1, 2, 3]


def test_list_all_categories_stops_at_page_cap():
    requested = []

    def handler(request):
        requested.append(int(request.url.params["Page"]))
        return httpx.Response(200, json={"Data": [{"Reference": "C1"}, {"Reference": "C2"}], "Ok": True})

    cats = asyncio.run(_client(handler).list_all_categories(max_pages=3))
    assert len(cats) == 6
    assert requested == [0, 1, 2]
