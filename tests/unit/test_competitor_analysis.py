from __future__ import annotations

import asyncio

import pytest

from competitor_intel.domain.errors import (
    CompetitorAnalysisError,
    LLMRequestError,
    ModelSaturationError,
    ParseFailureError,
)
from competitor_intel.domain.models import PriceRangeHint, SearchCandidate, SearchType
from competitor_intel.models.insight import BusinessContext
from competitor_intel.models.website import ContactInfo, Offering, PriceData, WebsiteContent, WebsiteMetadata
from competitor_intel.services.competitor_analysis import (
    GAP_HEURISTIC,
    GAP_NO_CONTACT,
    GAP_NO_LISTINGS,
    GAP_NO_PRICING,
    CompetitorAnalysisEngine,
    insight_from_llm,
    to_domains,
)


class FakeRouter:
    def __init__(self, responses: dict | None = None):
        self.responses = responses or {}
        self.calls: list[str] = []

    async def invoke_json(self, operation, prompt, expected="object", *, preferred_model=None, deadline=None, strict=False):
        self.calls.append(operation)
        value = self.responses.get(operation, {} if expected == "object" else [])
        if isinstance(value, Exception):
            raise value
        return value


class FakeDiscovery:
    def __init__(self, contents: dict[str, WebsiteContent]):
        self.contents = contents

    async def discover_website_content(self, url, deadline=None):
        return self.contents.get(url) or WebsiteContent.empty(url)


class FakeSearch:
    def __init__(self, prices: list[PriceData]):
        self.prices = prices
        self.domains: list[str] = []

    async def search_prices(self, domain, offerings=(), deadline=None):
        self.domains.append(domain)
        return self.prices


def _engine(router: FakeRouter, contents: dict | None = None, search=None) -> CompetitorAnalysisEngine:
    return CompetitorAnalysisEngine(router=router, website_discovery=FakeDiscovery(contents or {}), search=search)


def _context() -> BusinessContext:
    return BusinessContext(
        domain="mine.com",
        business_type="Hotel",
        offerings=[Offering(name="Ocean Suites", price=250.0, url="https://mine.com/suites")],
        excluded_hosts=["catalog.mine.com"],
    )


def _rival_content(**kwargs) -> WebsiteContent:
    return WebsiteContent(
        url="https://rival.com",
        title="Rival Hotel",
        products=[Offering(name="Ocean Suite", price=300.0, url="https://rival.com/suite")],
        metadata=WebsiteMetadata(prices=[PriceData(price=300.0, currency="$", source=".price", context="Ocean Suite")]),
        **kwargs,
    )


def test_to_domains_normalizes_and_excludes() -> None:
    raw = ["https://www.Rival.com/about", "rival.com", "not a domain", 42, "mine.com", "other.co.uk"]
    assert to_domains(raw, exclude=["https://mine.com"]) == ["rival.com", "other.co.uk"]
    assert to_domains({"domains": ["a.com"]}) == []


def test_insight_from_llm_validates_fields() -> None:
    raw = {
        "businessName": "Rival",
        "matchScore": "87.5",
        "matchReasons": ["Same city", None, "Same city"],
        "listingPlatforms": [{"platform": "Booking.com", "rating": "4.1", "reviewCount": "1,200"}, {"url": "x"}],
        "products": [
            {"name": "Suite", "price": "$300", "matchedProducts": [{"name": "Ours", "matchScore": -5}, {"bad": 1}]},
            {"price": 10},
        ],
    }
    insight = insight_from_llm(raw, "rival.com")
    assert insight.match_score == 87.5
    assert insight.match_reasons == ["Same city"]
    assert [(p.platform, p.rating, p.review_count) for p in insight.listing_platforms] == [("Booking.com", 4.1, 1200)]
    assert len(insight.products) == 1
    assert insight.products[0].price == 300.0
    assert [(m.name, m.match_score) for m in insight.products[0].matched_products] == [("Ours", 0.0)]

    assert insight_from_llm({"matchScore": "high"}, "r.com").match_score == 0.0
    with pytest.raises(ParseFailureError):
        insight_from_llm(["nope"], "r.com")


def test_heuristic_price_match_needs_more_than_half_similarity() -> None:
    offerings = [Offering(name="Deluxe Room"), Offering(name="Breakfast")]
    prices = [
        PriceData(price=200.0, currency="$", source="https://c.com/rooms", context="Deluxe Room"),
        PriceData(price=80.0, currency="$", source="x", context="Massage"),
    ]
    matches = CompetitorAnalysisEngine.match_prices_heuristic(offerings, prices)
    assert [(m.offering, m.price.price, m.method) for m in matches] == [("Deluxe Room", 200.0, "heuristic")]
    assert matches[0].score == 100.0


def test_integrate_price_matches_heuristic_wins_and_llm_fills_gaps() -> None:
    content = WebsiteContent(
        url="https://c.com",
        products=[Offering(name="Deluxe Room"), Offering(name="Spa Day"), Offering(name="Breakfast")],
        metadata=WebsiteMetadata(
            prices=[
                PriceData(price=200.0, currency="$", source="https://c.com/rooms", context="Deluxe Room"),
                PriceData(price=80.0, currency="$", source="x", context="Massage"),
            ]
        ),
    )
    router = FakeRouter(
        {
            "match_prices": [
                {"offering": "Deluxe Room", "matchedPrice": {"price": 999, "currency": "USD"}},
                {"offering": "Spa Day", "matchedPrice": {"price": 80, "currency": "$"}},
                {"offering": "Breakfast", "matchedPrice": {"price": 15}},
                {"offering": "Unknown", "matchedPrice": {"price": 80}},
            ]
        }
    )
    matches = asyncio.run(_engine(router).integrate_price_matches(content))

    assert {m.offering: m.method for m in matches} == {"Deluxe Room": "heuristic", "Spa Day": "llm"}
    assert [o.price for o in content.products] == [200.0, 80.0, None]


def test_integrate_price_matches_survives_llm_failure() -> None:
    content = WebsiteContent(
        url="https://c.com",
        products=[Offering(name="Deluxe Room")],
        metadata=WebsiteMetadata(prices=[PriceData(price=200.0, currency="$", source="s", context="Deluxe Room")]),
    )
    router = FakeRouter({"match_prices": LLMRequestError("boom")})
    assert len(asyncio.run(_engine(router).integrate_price_matches(content))) == 1

    router = FakeRouter({"match_prices": ModelSaturationError("saturated")})
    with pytest.raises(ModelSaturationError):
        asyncio.run(_engine(router).integrate_price_matches(content))


ANALYSIS = {
    "businessName": "Rival Hotel",
    "matchScore": 150,
    "matchReasons": ["Same market"],
    "suggestedApproach": "Track suite prices weekly",
    "products": [
        {
            "name": "Ocean Suite",
            "url": "https://rival.com/suite",
            "price": 300,
            "matchedProducts": [
                {"name": "Ocean Suites", "url": "https://mine.com/suites/", "matchScore": 92, "priceDiff": 999}
            ],
        },
        {"name": "Our own page", "url": "https://mine.com/x", "price": 1},
        {"name": "Catalog page", "url": "https://catalog.mine.com/y"},
    ],
    "monitoringUrls": ["https://rival.com/suite", "https://other.com/z"],
}


def test_analyze_competitor_finalizes_llm_insight() -> None:
    router = FakeRouter({"analyze_competitor": ANALYSIS})
    engine = _engine(router, {"rival.com": _rival_content()})
    serp = SearchCandidate(
        domain="rival.com",
        rating=4.2,
        review_count=100,
        price_range=PriceRangeHint(min=250.0, max=400.0, currency="USD"),
    )

    insight = asyncio.run(engine.analyze_competitor("https://www.rival.com", _context(), serp))

    assert insight.domain == "rival.com"
    assert insight.match_score == 100.0
    assert [p.name for p in insight.products] == ["Ocean Suite"]
    assert insight.products[0].matched_products[0].price_diff == 50.0
    google = insight.listing_platforms[0]
    assert google.platform == "Google"
    assert google.url == "https://www.google.com/search?q=rival.com"
    assert (google.rating, google.review_count) == (4.2, 100)
    assert google.price_range is not None and google.price_range.max == 400.0
    assert insight.monitoring_urls == ["https://rival.com/suite"]
    assert GAP_NO_CONTACT in insight.data_gaps
    assert GAP_NO_LISTINGS not in insight.data_gaps
    assert GAP_NO_PRICING not in insight.data_gaps
    assert router.calls == ["match_prices", "analyze_competitor"]


def test_existing_google_listing_is_filled_not_duplicated() -> None:
    payload = {**ANALYSIS, "listingPlatforms": [{"platform": "google", "url": "https://g.co/x", "rating": 3.9}]}
    engine = _engine(FakeRouter({"analyze_competitor": payload}), {"rival.com": _rival_content()})
    serp = SearchCandidate(domain="rival.com", rating=4.2, review_count=100)

    insight = asyncio.run(engine.analyze_competitor("rival.com", _context(), serp))
    assert len(insight.listing_platforms) == 1
    assert (insight.listing_platforms[0].rating, insight.listing_platforms[0].review_count) == (3.9, 100)


def test_price_diff_unknown_without_both_prices() -> None:
    payload = {
        "matchScore": 60,
        "products": [{"name": "Ocean Suite", "matchedProducts": [{"name": "Ocean Suites", "priceDiff": 12}]}],
    }
    engine = _engine(FakeRouter({"analyze_competitor": payload}), {"rival.com": _rival_content()})
    insight = asyncio.run(engine.analyze_competitor("rival.com", _context()))
    assert insight.products[0].matched_products[0].price_diff is None


def test_parse_failure_falls_back_to_heuristic_insight() -> None:
    router = FakeRouter({"analyze_competitor": ParseFailureError("json_parse_failed")})
    engine = _engine(router, {"rival.com": _rival_content()})

    insight = asyncio.run(engine.analyze_competitor("rival.com", _context()))
    assert insight.match_score == 40.0
    assert insight.business_name == "Rival Hotel"
    assert insight.match_reasons == ["Shared offering terms: ocean"]
    assert GAP_HEURISTIC in insight.data_gaps
    assert insight.products[0].matched_products[0].name == "Ocean Suites"
    assert insight.products[0].matched_products[0].price_diff == 50.0


def test_empty_candidate_without_serp_data_fails() -> None:
    engine = _engine(FakeRouter())
    with pytest.raises(CompetitorAnalysisError):
        asyncio.run(engine.analyze_competitor("ghost.com", _context()))

    insight = asyncio.run(engine.analyze_competitor("ghost.com", _context(), SearchCandidate(domain="ghost.com")))
    assert insight.domain == "ghost.com"
    assert GAP_NO_PRICING in insight.data_gaps


def test_missing_prices_are_backfilled_from_search() -> None:
    content = WebsiteContent(
        url="https://rival.com",
        title="Rival",
        products=[Offering(name="Ocean Suite")],
        metadata=WebsiteMetadata(contact_info=ContactInfo(phone="+1 555")),
    )
    search = FakeSearch([PriceData(price=310.0, currency="USD", source="https://rival.com/s", context="Ocean Suite")])
    engine = _engine(FakeRouter({"analyze_competitor": {"matchScore": 70}}), {"rival.com": content}, search)

    insight = asyncio.run(engine.analyze_competitor("rival.com", _context()))
    assert search.domains == ["rival.com"]
    assert content.products[0].price == 310.0
    assert GAP_NO_PRICING not in insight.data_gaps
    assert GAP_NO_CONTACT not in insight.data_gaps


def test_search_strategy_falls_back_only_for_recoverable_errors() -> None:
    content = WebsiteContent(url="https://mine.com", categories=["Hotels"])
    engine = _engine(FakeRouter({"determine_search_strategy": LLMRequestError("down")}))
    strategy = asyncio.run(engine.determine_search_strategy("mine.com", "Hotel", content))
    assert strategy.search_type == SearchType.MAPS
    assert strategy.search_query == "best Hotel similar to mine.com"

    engine = _engine(FakeRouter({"determine_search_strategy": {"searchType": "organic", "searchQuery": "q"}}))
    strategy = asyncio.run(engine.determine_search_strategy("mine.com", "Hotel", content))
    assert (strategy.search_type, strategy.search_query) == (SearchType.ORGANIC, "q")

    engine = _engine(FakeRouter({"determine_search_strategy": ModelSaturationError("saturated")}))
    with pytest.raises(ModelSaturationError):
        asyncio.run(engine.determine_search_strategy("mine.com", "Hotel", content))


def test_suggestions_and_data_sources() -> None:
    router = FakeRouter(
        {
            "suggest_competitors": ["rival.com", "mine.com", "www.other.com", "???"],
            "suggest_data_sources": ["tripadvisor.com", "https://www.booking.com/"],
        }
    )
    engine = _engine(router)
    content = WebsiteContent(url="https://mine.com")
    assert asyncio.run(engine.suggest_competitors("mine.com", "Hotel", [], content)) == ["rival.com", "other.com"]
    strategy = asyncio.run(engine.determine_search_strategy("mine.com", "Hotel", content))
    assert asyncio.run(engine.suggest_data_sources(strategy)) == ["tripadvisor.com", "booking.com"]

    failing = _engine(FakeRouter({"suggest_competitors": LLMRequestError("down")}))
    assert asyncio.run(failing.suggest_competitors("mine.com", "Hotel", [], content)) == []
