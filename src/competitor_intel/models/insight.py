"""Wire models for competitor insights and discovery results."""

from __future__ import annotations

from typing import Any, List, Optional

from pydantic import Field, field_validator

from ..domain.models import SearchType
from .website import Offering, WireModel, utc_now


def clamp_score(value: Any) -> float:
    """Coerce a loosely-typed score into [0, 100] (non-numeric -> 0)."""
    try:
        v = float(value)
    except (TypeError, ValueError):
        return 0.0
    if v != v:  # NaN
        return 0.0
    return max(0.0, min(100.0, v))


class PriceRange(WireModel):
    min: Optional[float] = None
    max: Optional[float] = None
    currency: str = "USD"


class ListingPlatform(WireModel):
    platform: str
    url: str = ""
    rating: Optional[float] = None
    review_count: Optional[int] = None
    price_range: Optional[PriceRange] = None


class MatchedProduct(WireModel):
    name: str
    url: Optional[str] = None
    match_score: float = 0.0
    price_diff: Optional[float] = None

    @field_validator("match_score", mode="before")
    @classmethod
    def _clamp(cls, v: Any) -> float:
        return clamp_score(v)


class ProductMatch(WireModel):
    name: str
    url: Optional[str] = None
    price: Optional[float] = None
    currency: Optional[str] = None
    matched_products: List[MatchedProduct] = Field(default_factory=list)
    last_updated: str = Field(default_factory=lambda: utc_now().isoformat())


class CompetitorInsight(WireModel):
    domain: str
    business_name: Optional[str] = None
    match_score: float = 0.0
    match_reasons: List[str] = Field(default_factory=list)
    suggested_approach: str = ""
    data_gaps: List[str] = Field(default_factory=list)
    listing_platforms: List[ListingPlatform] = Field(default_factory=list)
    products: List[ProductMatch] = Field(default_factory=list)
    # Product URLs worth monitoring for price changes
    monitoring_urls: List[str] = Field(default_factory=list)

    @field_validator("match_score", mode="before")
    @classmethod
    def _clamp(cls, v: Any) -> float:
        return clamp_score(v)


class Location(WireModel):
    address: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    country: Optional[str] = None
    region: Optional[str] = None
    city: Optional[str] = None
    postal_code: Optional[str] = None
    formatted_address: Optional[str] = None


class LocationContext(WireModel):
    location: Location = Field(default_factory=Location)
    radius: Optional[int] = None


class BusinessAttributes(WireModel):
    size: str = "small"
    focus: List[str] = Field(default_factory=list)
    business_category: str = ""
    online_presence: str = "basic"
    service_type: str = "mixed"
    unique_features: List[str] = Field(default_factory=list)
    price_range: Optional[PriceRange] = None
    target_market: List[str] = Field(default_factory=list)
    competitive_advantages: List[str] = Field(default_factory=list)


class SearchStrategy(WireModel):
    """How competitors of a business should be searched for."""

    search_type: SearchType = SearchType.ORGANIC
    search_query: str = ""
    # Category/location/price variants of `search_query`
    alternative_queries: List[str] = Field(default_factory=list)
    location_context: LocationContext = Field(default_factory=LocationContext)
    target_demographic: Optional[str] = None
    price_range: Optional[PriceRange] = None
    business_attributes: BusinessAttributes = Field(default_factory=BusinessAttributes)


class BusinessContext(WireModel):
    """What is known about the requesting business when analyzing a candidate."""

    domain: str
    business_type: str = ""
    offerings: List[Offering] = Field(default_factory=list)
    strategy: Optional[SearchStrategy] = None
    # Hosts that must never be reported as competitors/matched products
    excluded_hosts: List[str] = Field(default_factory=list)


class DiscoveryStats(WireModel):
    total_discovered: int = 0
    new_competitors: int = 0
    existing_competitors: int = 0
    failed_analyses: int = 0


class DiscoveryResult(WireModel):
    competitors: List[CompetitorInsight] = Field(default_factory=list)
    recommended_sources: List[str] = Field(default_factory=list)
    search_strategy: SearchStrategy = Field(default_factory=SearchStrategy)
    stats: DiscoveryStats = Field(default_factory=DiscoveryStats)
