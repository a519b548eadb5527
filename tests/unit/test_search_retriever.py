from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from competitor_intel.domain.errors import AccessDeniedError, ServerError
from competitor_intel.domain.models import SearchType
from competitor_intel.models.insight import Location, LocationContext, SearchStrategy
from competitor_intel.models.website import Offering
from competitor_intel.services import search_retriever as search_module
from competitor_intel.services.search_retriever import (
    SearchResultRetriever,
    extract_candidates,
    extract_price_data,
    pricing_queries,
)

ORGANIC = {
    "knowledge_graph": {"website": "https://www.grandhotel.com/", "title": "Grand Hotel", "rating": 4.5, "reviews": "1,204"},
    "organic_results": [
        {"link": "https://grandhotel.com/rooms", "title": "dup"},
        {
            "link": "https://seaside.com/",
            "title": "Seaside Inn",
            "snippet": "Rooms from $129.00",
            "rich_snippet": {
                "top": {
                    "detected_extensions": {"price": 129, "currency": "USD"},
                    "extensions": ["4.3(812)", "$$"],
                }
            },
        },
        {"link": "not a url"},
        {"title": "no link"},
    ],
    "related_questions": [{"answer": "Try Harbor", "source": {"link": "https://harbor.com/faq", "title": "Harbor"}}],
}


def test_extract_candidates_organic_with_metadata() -> None:
    candidates = extract_candidates(ORGANIC, SearchType.ORGANIC)
    assert [c.domain for c in candidates] == ["grandhotel.com", "seaside.com", "harbor.com"]
    grand, seaside, _ = candidates
    assert grand.title == "Grand Hotel"
    assert grand.rating == 4.5 and grand.review_count == 1204
    assert seaside.rating == 4.3 and seaside.review_count == 812
    assert seaside.price_range is not None and seaside.price_range.min == 129.0
    assert seaside.price_range.currency == "USD"


def test_extract_candidates_reads_the_result_list_for_the_search_type() -> None:
    response = {
        "local_results": [{"website": "https://cafe.com", "rating": "4.8", "reviews": 90}],
        "shopping_results": [{"link": "https://store.com/p/1"}],
        "organic_results": [{"link": "https://blog.com/"}],
    }
    assert [c.domain for c in extract_candidates(response, SearchType.MAPS)] == ["cafe.com"]
    assert [c.domain for c in extract_candidates(response, SearchType.SHOPPING)] == ["store.com"]
    assert [c.domain for c in extract_candidates(response, SearchType.LOCAL)] == ["blog.com"]
    assert extract_candidates({}, SearchType.ORGANIC) == []


def test_extract_price_data_prefers_shopping_results() -> None:
    response = {
        "shopping_results": [
            {"price": "$1,299.00", "link": "https://store.com/a", "title": "Laptop"},
            {"price": "EUR 49.90", "link": "https://store.com/b", "title": "Bag"},
            {"price": "$0", "link": "https://store.com/c"},
            {"title": "no price"},
        ],
        "organic_results": [{"snippet": "only $5.00", "link": "https://x.com"}],
    }
    prices = extract_price_data(response)
    assert [(p.price, p.currency, p.context) for p in prices] == [(1299.0, "USD", "Laptop"), (49.9, "EUR", "Bag")]
    assert prices[0].source == "https://store.com/a"


def test_extract_price_data_falls_back_to_organic_snippets() -> None:
    response = {
        "organic_results": [
            {"snippet": "Plans start at $19.99/month", "link": "https://saas.com/pricing", "title": "Pricing"},
            {"price": "$2,000,000", "link": "https://big.com"},
            {"snippet": "No pricing here"},
        ]
    }
    assert [(p.price, p.source) for p in extract_price_data(response)] == [(19.99, "https://saas.com/pricing")]


def test_pricing_queries_put_offerings_first_and_dedupe() -> None:
    offerings = [Offering(name="Pro Plan"), Offering(name="Pro Plan")]
    assert pricing_queries("saas.com", offerings, limit=4) == [
        "saas.com Pro Plan price",
        "Pro Plan pricing",
        "saas.com pricing",
        "saas.com cost",
    ]
    assert pricing_queries("saas.com", limit=0) == []


def _strategy(search_type: SearchType, radius=None, query="boutique hotel miami") -> SearchStrategy:
    return SearchStrategy(
        search_type=search_type,
        search_query=query,
        location_context=LocationContext(location=Location(country="Canada"), radius=radius),
    )


@pytest.mark.parametrize(
    "search_type,radius,path,expected",
    [
        (SearchType.MAPS, None, "/search", {"tbm": "lcl", "num": "20", "radius": "25"}),
        (SearchType.LOCAL, None, "/search", {"tbm": "lcl", "num": "15", "radius": "50"}),
        (SearchType.LOCAL, 10, "/search", {"tbm": "lcl", "num": "15", "radius": "10"}),
        (SearchType.SHOPPING, None, "/shopping", {"tbm": "shop", "num": "15"}),
        (SearchType.ORGANIC, None, "/search", {"num": "20"}),
    ],
)
def test_endpoint_for_search_type(search_type, radius, path, expected) -> None:
    got_path, params = SearchResultRetriever.endpoint_for(_strategy(search_type, radius))
    assert got_path == path
    assert params == {"q": "boutique hotel miami", **expected}


def test_search_disabled_without_api_key() -> None:
    retriever = SearchResultRetriever(api_key=None)
    assert not retriever.enabled
    assert asyncio.run(retriever.search(_strategy(SearchType.ORGANIC))) == []
    assert asyncio.run(retriever.search_prices("a.com")) == []


@asynccontextmanager
async def serve(handler):
    app = web.Application()
    app.router.add_route("GET", "/{tail:.*}", handler)
    server = TestServer(app)
    await server.start_server()
    try:
        yield str(server.make_url("/")).rstrip("/")
    finally:
        await server.close()


@pytest.fixture
def slept(monkeypatch) -> list[float]:
    delays: list[float] = []

    async def fake_sleep(seconds: float) -> None:
        delays.append(seconds)

    monkeypatch.setattr(search_module, "_sleep", fake_sleep)
    return delays


def test_search_sends_params_and_retries_server_errors(slept) -> None:
    seen: list[dict] = []

    async def handler(request: web.Request) -> web.Response:
        seen.append(dict(request.query))
        if len(seen) == 1:
            return web.Response(status=503)
        if len(seen) == 2:
            return web.Response(status=429, headers={"Retry-After": "3"})
        return web.json_response(ORGANIC)

    async def run():
        async with serve(handler) as base_url:
            retriever = SearchResultRetriever(api_key="k", base_url=base_url, max_retries=2)
            return await retriever.search(_strategy(SearchType.MAPS))

    candidates = asyncio.run(run())
    assert slept == [1.0, 3.0]
    assert seen[-1]["api_key"] == "k"
    assert seen[-1]["location"] == "Canada"
    assert seen[-1]["tbm"] == "lcl"
    # MAPS reads local_results; only the knowledge graph website is present
    assert [c.domain for c in candidates] == ["grandhotel.com", "harbor.com"]


def test_search_errors_propagate(slept) -> None:
    async def denied(request: web.Request) -> web.Response:
        return web.Response(status=401)

    async def not_json(request: web.Request) -> web.Response:
        return web.Response(text="<html>oops</html>")

    async def run(handler, exc) -> None:
        async with serve(handler) as base_url:
            retriever = SearchResultRetriever(api_key="k", base_url=base_url, max_retries=0)
            with pytest.raises(exc):
                await retriever.search(_strategy(SearchType.ORGANIC))

    asyncio.run(run(denied, AccessDeniedError))
    asyncio.run(run(not_json, ServerError))
    assert slept == []


def test_search_prices_skips_failing_queries(slept) -> None:
    queries: list[str] = []

    async def handler(request: web.Request) -> web.Response:
        queries.append(request.query["q"])
        if request.query["q"] == "saas.com cost":
            return web.Response(status=400, text="bad query")
        return web.json_response({"shopping_results": [{"price": "$10", "link": "https://saas.com/x", "title": "q"}]})

    async def run():
        async with serve(handler) as base_url:
            retriever = SearchResultRetriever(api_key="k", base_url=base_url, max_pricing_queries=3)
            return await retriever.search_prices("saas.com")

    prices = asyncio.run(run())
    assert queries == ["saas.com pricing", "saas.com cost", "saas.com rates"]
    assert [p.price for p in prices] == [10.0, 10.0]
