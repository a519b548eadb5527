from __future__ import annotations

import pytest

from competitor_intel.domain.models import SearchType
from competitor_intel.models.website import ContactInfo, Offering, PriceData, WebsiteContent, WebsiteMetadata
from competitor_intel.services.search_strategy import (
    analyze_business_signals,
    classify_business,
    determine_business_size,
    determine_online_presence,
    determine_search_radius,
    enhance_search_queries,
    fallback_strategy,
    map_business_type,
    strategy_from_llm,
)


@pytest.mark.parametrize(
    "business_type,search_type,expected",
    [
        ("Boutique Hotel", "", SearchType.MAPS),
        ("coffee shop", "", SearchType.SHOPPING),
        ("plumbing service", "", SearchType.LOCAL),
        ("B2B SaaS", "", SearchType.ORGANIC),
        ("something else", "", SearchType.LOCAL),
        ("hotel", "organic", SearchType.ORGANIC),
        ("", "Retail Store", SearchType.SHOPPING),
    ],
)
def test_map_business_type(business_type, search_type, expected) -> None:
    assert map_business_type(business_type, search_type) == expected


def _hotel_content() -> WebsiteContent:
    return WebsiteContent(
        url="https://seaview.com",
        description="Visit us on the beach",
        categories=["Hotels"],
        services=[Offering(name="Room booking", description="Online booking for all rooms", category="Lodging")],
        metadata=WebsiteMetadata(
            contact_info=ContactInfo(address="1 Beach Rd", city="Miami", region="FL", country="US", phone="+1 555"),
            prices=[PriceData(price=189.0, currency="$", source=".price")],
        ),
    )


def test_business_signals() -> None:
    s = analyze_business_signals(_hotel_content())
    assert s.has_physical_location and s.has_services and s.has_booking
    assert s.location_score == 50
    assert s.service_score == 20
    assert not s.has_ecommerce


def test_classify_uses_signals_when_type_is_unknown() -> None:
    assert classify_business(_hotel_content(), "family business") == SearchType.MAPS

    shop = WebsiteContent(
        url="https://gear.com",
        products=[Offering(name=f"P{i}", description="Free shipping") for i in range(3)],
    )
    assert classify_business(shop, "") == SearchType.SHOPPING

    consulting = WebsiteContent(
        url="https://advisors.com",
        services=[Offering(name=f"S{i}") for i in range(4)],
    )
    assert classify_business(consulting, "") == SearchType.ORGANIC


def test_radius_size_and_presence() -> None:
    assert determine_search_radius(SearchType.MAPS, "Hotel") == 25
    assert determine_search_radius(SearchType.MAPS, "Restaurant") == 50
    assert determine_search_radius(SearchType.SHOPPING, "") == 100
    assert determine_search_radius(SearchType.ORGANIC, "") == 50

    content = WebsiteContent(url="https://a.com", products=[Offering(name=str(i)) for i in range(101)])
    assert determine_business_size(content) == "medium"
    assert determine_business_size(content, employees=500) == "large"
    assert determine_business_size(WebsiteContent(url="https://a.com")) == "small"

    assert determine_online_presence(_hotel_content()) == "moderate"
    assert determine_online_presence(WebsiteContent(url="https://a.com")) == "basic"


def test_fallback_strategy_for_a_hotel() -> None:
    strategy = fallback_strategy("seaview.com", "Hotel", _hotel_content())
    assert strategy.search_type == SearchType.MAPS
    assert strategy.search_query == "best Hotel near Miami, FL, US similar to seaview.com"
    assert strategy.location_context.radius == 25
    assert strategy.location_context.location.city == "Miami"
    assert strategy.price_range is not None and strategy.price_range.min == 189.0
    attrs = strategy.business_attributes
    assert attrs.business_category == "Hotel"
    assert attrs.service_type == "service"
    assert attrs.focus == ["Hotels", "Lodging"]
    assert strategy.alternative_queries == [
        "top Hotels companies like https://seaview.com",
        "price range $189-189 best Hotel near Miami, FL, US similar to seaview.com",
        "best Hotel near Miami, FL, US similar to seaview.com in Miami, FL, US",
    ]


def test_enhance_search_queries_without_signals_is_identity() -> None:
    assert enhance_search_queries("q", WebsiteContent(url="https://a.com")) == ["q"]


def test_strategy_from_llm_validates_each_field() -> None:
    raw = {
        "analysisResult": {
            "searchType": "Boutique Lodge",
            "searchQuery": "  boutique hotels south beach ",
            "locationContext": {"location": {"city": "Miami Beach", "country": "US"}, "radius": "-3"},
            "targetDemographic": "null",
            "priceRange": {"min": "150", "max": 400, "currency": "USD"},
            "businessAttributes": {
                "size": "gigantic",
                "focus": ["Luxury", "Luxury", 7, ""],
                "targetMarket": ["Couples"],
                "competitiveAdvantages": "not a list",
            },
        }
    }
    strategy = strategy_from_llm(raw, "seaview.com", "Hotel", _hotel_content())
    # Not a valid search type, so it is keyword-mapped
    assert strategy.search_type == SearchType.MAPS
    assert strategy.search_query == "boutique hotels south beach"
    assert strategy.location_context.location.city == "Miami Beach"
    assert strategy.location_context.radius == 25
    assert strategy.target_demographic is None
    assert (strategy.price_range.min, strategy.price_range.max) == (150.0, 400.0)
    attrs = strategy.business_attributes
    assert attrs.size == "small"
    assert attrs.focus == ["Luxury"]
    assert attrs.target_market == ["Couples"]
    assert attrs.competitive_advantages == []
    assert strategy.alternative_queries[0] == "top Hotels companies like https://seaview.com"


def test_strategy_from_llm_falls_back_on_garbage() -> None:
    content = _hotel_content()
    assert strategy_from_llm(["nope"], "seaview.com", "Hotel", content) == fallback_strategy(
        "seaview.com", "Hotel", content
    )
    partial = strategy_from_llm({"searchType": "shopping"}, "seaview.com", "Hotel", content)
    assert partial.search_type == SearchType.SHOPPING
    assert partial.search_query == "top Hotels stores like seaview.com"
    assert partial.location_context.radius == 100
