"""Search strategy: deterministic classification and LLM-output validation.

The LLM proposes a strategy; everything here either validates that proposal
field by field or builds the whole strategy from business signals when the
LLM is unavailable.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional

from ..domain.models import SearchType
from ..models.insight import (
    BusinessAttributes,
    Location,
    LocationContext,
    PriceRange,
    SearchStrategy,
)
from ..models.website import ContactInfo, WebsiteContent

# Order matters: the first key contained in the business type wins
BUSINESS_TYPE_MAP: tuple[tuple[str, SearchType], ...] = (
    ("hotel", SearchType.MAPS),
    ("lodge", SearchType.MAPS),
    ("resort", SearchType.MAPS),
    ("accommodation", SearchType.MAPS),
    ("restaurant", SearchType.MAPS),
    ("cafe", SearchType.MAPS),
    ("store", SearchType.SHOPPING),
    ("shop", SearchType.SHOPPING),
    ("retail", SearchType.SHOPPING),
    ("ecommerce", SearchType.SHOPPING),
    ("service", SearchType.LOCAL),
    ("local", SearchType.LOCAL),
    ("business", SearchType.LOCAL),
    ("online", SearchType.ORGANIC),
    ("digital", SearchType.ORGANIC),
    ("saas", SearchType.ORGANIC),
)

DIGITAL_KEYWORDS = ("download", "digital", "software", "subscription", "license")
PHYSICAL_KEYWORDS = ("shipping", "delivery", "weight", "size", "dimensions")
BOOKING_KEYWORDS = ("booking", "reservation", "appointment", "schedule", "book now")
LOCATION_PHRASES = ("visit us", "our location", "directions", "find us", "our address")


def map_business_type(business_type: str, search_type: str = "") -> SearchType:
    """Valid `search_type` as-is; otherwise keyword-map the business type, then the search type."""
    try:
        return SearchType((search_type or "").strip().lower())
    except ValueError:
        pass
    for text in (business_type, search_type):
        lowered = (text or "").lower()
        for key, value in BUSINESS_TYPE_MAP:
            if key in lowered:
                return value
    return SearchType.LOCAL


@dataclass
class BusinessSignals:
    has_physical_location: bool = False
    has_ecommerce: bool = False
    has_services: bool = False
    has_booking: bool = False
    location_score: int = 0
    ecommerce_score: int = 0
    service_score: int = 0


def analyze_business_signals(content: WebsiteContent) -> BusinessSignals:
    signals = BusinessSignals()
    contact = content.metadata.contact_info
    if contact is not None and contact.address:
        signals.has_physical_location = True
        signals.location_score += 30

    if content.products:
        signals.has_ecommerce = True
        signals.ecommerce_score += min(len(content.products) * 10, 40)
        digital = physical = 0
        for product in content.products:
            text = (product.description or "").lower()
            digital += any(k in text for k in DIGITAL_KEYWORDS)
            physical += any(k in text for k in PHYSICAL_KEYWORDS)
        if digital > physical:
            signals.ecommerce_score += 20

    if content.services:
        signals.has_services = True
        signals.service_score += min(len(content.services) * 10, 40)
        for service in content.services:
            text = (service.description or "").lower()
            if any(k in text for k in BOOKING_KEYWORDS):
                signals.has_booking = True
                signals.service_score += 10

    if any(p.price > 1000 for p in content.metadata.prices):
        # High prices usually mean services
        signals.service_score += 10

    description = (content.description or "").lower()
    if any(k in description for k in LOCATION_PHRASES):
        signals.location_score += 20
    return signals


def classify_business(content: WebsiteContent, business_type: str) -> SearchType:
    """Keyword map first; business signals only when the map has no opinion."""
    explicit = map_business_type(business_type)
    if explicit != SearchType.LOCAL:
        return explicit

    s = analyze_business_signals(content)
    if s.has_physical_location and s.location_score > 40:
        if s.has_booking or "hotel" in (business_type or "").lower():
            return SearchType.MAPS
    if s.has_ecommerce and s.ecommerce_score > s.service_score:
        return SearchType.SHOPPING
    if s.has_physical_location and s.service_score > s.ecommerce_score:
        return SearchType.LOCAL
    if not s.has_physical_location and s.service_score > 30:
        return SearchType.ORGANIC

    scores = {
        SearchType.MAPS: s.location_score + (30 if s.has_booking else 0),
        SearchType.SHOPPING: s.ecommerce_score,
        SearchType.LOCAL: s.location_score + s.service_score,
        SearchType.ORGANIC: s.service_score + (-20 if s.has_physical_location else 20),
    }
    # Ties keep declaration order
    return max(scores, key=lambda k: scores[k])


def determine_search_radius(search_type: SearchType, business_type: str) -> int:
    if search_type == SearchType.MAPS:
        return 25 if "hotel" in (business_type or "").lower() else 50
    if search_type == SearchType.SHOPPING:
        return 100
    return 50


def determine_business_size(content: WebsiteContent, employees: int = 0, locations: int = 1) -> str:
    products = len(content.products)
    if employees > 200 or products > 1000 or locations > 10:
        return "large"
    if employees > 50 or products > 100 or locations > 3:
        return "medium"
    return "small"


def extract_business_focus(content: WebsiteContent) -> list[str]:
    focus = list(content.categories[:3])
    focus.extend(s.category or "General Service" for s in content.services[:3])
    return list(dict.fromkeys(focus))


def determine_online_presence(content: WebsiteContent) -> str:
    contact = content.metadata.contact_info
    score = sum(
        (
            bool(content.products),
            bool(content.metadata.structured_data),
            bool(contact and (contact.email or contact.phone)),
            analyze_business_signals(content).has_booking,
        )
    )
    if score >= 3:
        return "strong"
    if score >= 2:
        return "moderate"
    return "basic"


def determine_service_type(content: WebsiteContent) -> str:
    has_products = bool(content.products)
    has_services = bool(content.services)
    if has_products and has_services:
        return "mixed"
    if has_products:
        return "product"
    return "service"


def extract_unique_features(content: WebsiteContent) -> list[str]:
    features = [p.category or "General Product" for p in content.products]
    features.extend(s.category or "General Service" for s in content.services)
    return list(dict.fromkeys(features))


def extract_price_range(content: WebsiteContent) -> Optional[PriceRange]:
    prices = [o.price for o in content.offerings if o.price is not None]
    if not prices:
        prices = [p.price for p in content.metadata.prices]
    if not prices:
        return None
    currency = content.metadata.prices[0].currency if content.metadata.prices else "USD"
    return PriceRange(min=min(prices), max=max(prices), currency=currency)


def business_attributes(content: WebsiteContent, business_type: str) -> BusinessAttributes:
    return BusinessAttributes(
        size=determine_business_size(content),
        focus=extract_business_focus(content),
        business_category=business_type,
        online_presence=determine_online_presence(content),
        service_type=determine_service_type(content),
        unique_features=extract_unique_features(content),
        price_range=extract_price_range(content),
    )


def location_from_contact(contact: ContactInfo | None) -> Location:
    if contact is None:
        return Location()
    parts = [p for p in (contact.address, contact.city, contact.region, contact.postal_code, contact.country) if p]
    return Location(
        address=contact.address,
        latitude=contact.latitude,
        longitude=contact.longitude,
        country=contact.country,
        region=contact.region,
        city=contact.city,
        postal_code=contact.postal_code,
        formatted_address=", ".join(dict.fromkeys(parts)) or None,
    )


def _place(location: Location) -> str:
    return ", ".join(p for p in (location.city, location.region, location.country) if p)


def default_search_query(domain: str, business_type: str, search_type: SearchType, content: WebsiteContent) -> str:
    kind = (business_type or "").strip() or "business"
    category = content.categories[0] if content.categories else kind
    place = _place(location_from_contact(content.metadata.contact_info))
    if search_type == SearchType.MAPS:
        return f"best {kind} near {place} similar to {domain}" if place else f"best {kind} similar to {domain}"
    if search_type == SearchType.SHOPPING:
        return f"top {category} stores like {domain}"
    if search_type == SearchType.LOCAL:
        return f"{category} companies similar to {domain} near {place}" if place else f"{category} companies similar to {domain}"
    main = content.services[0].name if content.services else (content.products[0].name if content.products else category)
    return f"best alternatives to {domain} for {main}"


def enhance_search_queries(base_query: str, content: WebsiteContent, price_range: PriceRange | None = None) -> list[str]:
    """`base_query` followed by category, price-range and location variants (deduplicated)."""
    queries = [base_query]
    if content.categories:
        queries.append(f"top {content.categories[0]} companies like {content.url}")
    if price_range is not None and price_range.min is not None and price_range.max is not None:
        queries.append(f"price range {price_range.currency}{price_range.min:g}-{price_range.max:g} {base_query}")
    place = _place(location_from_contact(content.metadata.contact_info))
    contact = content.metadata.contact_info
    if contact is not None and contact.city:
        queries.append(f"{base_query} in {place}")
    return list(dict.fromkeys(q for q in queries if q))


def _finish(strategy: SearchStrategy, content: WebsiteContent) -> SearchStrategy:
    queries = enhance_search_queries(strategy.search_query, content, strategy.business_attributes.price_range)
    strategy.search_query = queries[0]
    strategy.alternative_queries = queries[1:]
    return strategy


def fallback_strategy(domain: str, business_type: str, content: WebsiteContent) -> SearchStrategy:
    """A complete strategy without the LLM."""
    search_type = classify_business(content, business_type)
    attributes = business_attributes(content, business_type)
    strategy = SearchStrategy(
        search_type=search_type,
        search_query=default_search_query(domain, business_type, search_type, content),
        location_context=LocationContext(
            location=location_from_contact(content.metadata.contact_info),
            radius=determine_search_radius(search_type, business_type),
        ),
        price_range=attributes.price_range,
        business_attributes=attributes,
    )
    return _finish(strategy, content)


# ---------------------------------------------------------------------------
# LLM output validation
# ---------------------------------------------------------------------------
def _opt_str(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip() and value.strip().lower() not in ("null", "none", "n/a"):
        return value.strip()
    return None


def _opt_float(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return None
    return None


def _str_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return list(dict.fromkeys(s for s in (_opt_str(v) for v in value) if s))


def _price_range(value: Any) -> Optional[PriceRange]:
    if not isinstance(value, dict):
        return None
    low, high = _opt_float(value.get("min")), _opt_float(value.get("max"))
    if low is None and high is None:
        return None
    return PriceRange(min=low, max=high, currency=_opt_str(value.get("currency")) or "USD")


def _location(value: Any) -> Optional[Location]:
    if not isinstance(value, dict):
        return None
    loc = Location(
        address=_opt_str(value.get("address")),
        latitude=_opt_float(value.get("latitude")),
        longitude=_opt_float(value.get("longitude")),
        country=_opt_str(value.get("country")),
        region=_opt_str(value.get("region")),
        city=_opt_str(value.get("city")),
        postal_code=_opt_str(value.get("postalCode") or value.get("postal_code")),
        formatted_address=_opt_str(value.get("formattedAddress") or value.get("formatted_address")),
    )
    return None if all(v is None for v in loc.model_dump().values()) else loc


def strategy_from_llm(raw: Any, domain: str, business_type: str, content: WebsiteContent) -> SearchStrategy:
    """Validate an LLM strategy proposal; absent or invalid fields take the deterministic value."""
    if isinstance(raw, dict) and isinstance(raw.get("analysisResult"), dict):
        raw = raw["analysisResult"]
    if not isinstance(raw, dict):
        return fallback_strategy(domain, business_type, content)

    raw_type = raw.get("searchType")
    if isinstance(raw_type, str) and raw_type.strip():
        search_type = map_business_type(business_type, raw_type)
    else:
        search_type = classify_business(content, business_type)

    query = _opt_str(raw.get("searchQuery")) or default_search_query(domain, business_type, search_type, content)

    ctx = raw.get("locationContext") if isinstance(raw.get("locationContext"), dict) else {}
    location = _location(ctx.get("location")) or location_from_contact(content.metadata.contact_info)
    radius = _opt_float(ctx.get("radius"))
    location_context = LocationContext(
        location=location,
        radius=int(radius) if radius and radius > 0 else determine_search_radius(search_type, business_type),
    )

    computed = business_attributes(content, business_type)
    attrs_raw = raw.get("businessAttributes")
    if isinstance(attrs_raw, dict):
        size = _opt_str(attrs_raw.get("size"))
        attributes = BusinessAttributes(
            size=size if size in ("small", "medium", "large") else computed.size,
            focus=_str_list(attrs_raw.get("focus")) or computed.focus,
            business_category=_opt_str(attrs_raw.get("businessCategory")) or business_type,
            online_presence=_opt_str(attrs_raw.get("onlinePresence")) or computed.online_presence,
            service_type=_opt_str(attrs_raw.get("serviceType")) or computed.service_type,
            unique_features=_str_list(attrs_raw.get("uniqueFeatures")) or computed.unique_features,
            price_range=_price_range(attrs_raw.get("priceRange")) or computed.price_range,
            target_market=_str_list(attrs_raw.get("targetMarket")),
            competitive_advantages=_str_list(attrs_raw.get("competitiveAdvantages")),
        )
    else:
        attributes = computed

    strategy = SearchStrategy(
        search_type=search_type,
        search_query=query,
        location_context=location_context,
        target_demographic=_opt_str(raw.get("targetDemographic")),
        price_range=_price_range(raw.get("priceRange")) or attributes.price_range,
        business_attributes=attributes,
    )
    return _finish(strategy, content)
