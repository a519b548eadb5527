"""Competitor analysis engine.

Per candidate domain: discover its content, backfill prices from search when
the site shows none, match offerings to prices, then ask the LLM for a scored
insight. LLM payloads are validated field by field; anything missing becomes
an explicit data gap instead of an error.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Iterable, Optional
from urllib.parse import quote_plus

from ..domain.errors import (
    CompetitorAnalysisError,
    CompetitorIntelError,
    ModelSaturationError,
    ParseFailureError,
)
from ..domain.models import SearchCandidate
from ..llm.router import ModelRouter
from ..models.insight import (
    BusinessContext,
    CompetitorInsight,
    ListingPlatform,
    MatchedProduct,
    PriceRange,
    ProductMatch,
    SearchStrategy,
    clamp_score,
)
from ..models.website import Offering, PriceData, WebsiteContent, merge_website_content
from ..observability.logger import get_logger
from ..utils.deadline import Deadline
from ..utils.json_extract import safe_stringify
from ..utils.similarity import string_similarity, token_overlap, tokens
from ..utils.validators import is_valid_domain, normalize_domain
from .search_retriever import SearchResultRetriever
from .search_strategy import fallback_strategy, strategy_from_llm
from .website_discovery import WebsiteDiscoveryService

logger = get_logger(__name__)

HEURISTIC_MATCH_THRESHOLD = 50.0
MAX_PROMPT_OFFERINGS = 40
MAX_PROMPT_CONTENT = 4000

GAP_NO_PRICING = "No pricing data found"
GAP_NO_OFFERINGS = "No products or services identified"
GAP_NO_CONTACT = "No contact information found"
GAP_NO_LISTINGS = "No listing platform data"
GAP_HEURISTIC = "LLM analysis unavailable; match score is a heuristic estimate"

STRATEGY_PROMPT = """Analyze {domain} as a {business_type} business to find direct competitors.
Website Content:
{content}

Return ONLY a JSON object with EXACTLY this structure, no additional nesting:
{{
  "searchType": "maps" | "shopping" | "local" | "organic",
  "searchQuery": "optimized search query",
  "locationContext": {{
    "location": {{"address": "full address", "country": "country name", "region": "region/state", "city": "city name"}},
    "radius": number
  }},
  "businessAttributes": {{
    "size": "small" | "medium" | "large",
    "focus": ["focus1", "focus2"],
    "businessCategory": "category",
    "priceRange": {{"min": number, "max": number, "currency": "USD"}},
    "targetMarket": ["market1"],
    "competitiveAdvantages": ["advantage1"]
  }}
}}

Guidelines:
1. Hotels, accommodation, hospitality: "maps", full location, radius 25 (local) to 100 (tourist areas).
2. E-commerce and retail: "shopping", product categories and price range.
3. Local services: "local", service area radius.
4. Online/digital services: "organic", market positioning and feature set.

The searchType MUST be one of: "maps", "shopping", "local", "organic"."""

SUGGEST_COMPETITORS_PROMPT = """Analyze {domain} as a {business_type} business.
Known competitors: {known}

Website Content Analysis:
Title: {title}
Description: {description}
Products: {products}
Services: {services}

Based on the actual products/services discovered from their website, suggest 3-5 direct competitors
that most closely match their specific offerings and target market.
Consider both direct and indirect competitors based on service/product substitutability.

Return ONLY a JSON array of domain names. Example:
["competitor1.com", "competitor2.com"]"""

DATA_SOURCES_PROMPT = """Based on search strategy:
{strategy}

Return ONLY a JSON array of recommended data source domains that would be valuable for competitor analysis.
Example: ["yelp.com", "tripadvisor.com"]"""

MATCH_PRICES_PROMPT = """Given the following product and service offerings and competitor pricing data, match each offering to the most relevant price entry.
Offerings: {offerings}
Pricing Data: {prices}
Return a JSON array with objects of the form:
{{"offering": "Offering Name", "matchedPrice": {{"price": number, "currency": "USD", "source": "URL"}}}}"""

ANALYZE_PROMPT = """Analyze {domain} as a potential competitor of {business_domain} ({business_type}).

Business Context:
{business}

Competitor Website:
Title: {title}
Description: {description}
Categories: {categories}
Offerings: {offerings}
Observed Prices: {prices}
Content excerpt:
{content}

SERP Metadata:
{serp}

Return ONLY a JSON object with this structure:
{{
  "domain": "{domain}",
  "businessName": "name",
  "matchScore": number between 0-100,
  "matchReasons": ["reason1", "reason2"],
  "suggestedApproach": "detailed strategy",
  "dataGaps": ["gap1", "gap2"],
  "listingPlatforms": [
    {{"platform": "platform name", "url": "platform url", "rating": number or null, "reviewCount": number or null,
      "priceRange": {{"min": number, "max": number, "currency": "USD"}}}}
  ],
  "products": [
    {{
      "name": "Competitor Product Name",
      "url": "Product URL",
      "price": number or null,
      "currency": "USD",
      "matchedProducts": [
        {{"name": "Our Matched Product Name", "url": "Our Product URL", "matchScore": number between 0-100, "priceDiff": number or null}}
      ]
    }}
  ],
  "monitoringUrls": ["competitor product URL worth tracking"]
}}"""


@dataclass(frozen=True)
class OfferingPriceMatch:
    offering: str
    price: PriceData
    score: Optional[float] = None
    method: str = "heuristic"


def _dump(value: Any, limit: int | None = None) -> str:
    text = safe_stringify(value)
    return text[:limit] if limit else text


def _offering_dicts(offerings: Iterable[Offering]) -> list[dict[str, Any]]:
    return [o.model_dump(mode="json", by_alias=True, exclude_none=True) for o in list(offerings)[:MAX_PROMPT_OFFERINGS]]


def _opt_str(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip() and value.strip().lower() not in ("null", "none"):
        return value.strip()
    return None


def _opt_float(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.replace(",", "").strip().lstrip("$€£¥"))
        except ValueError:
            return None
    return None


def _opt_int(value: Any) -> Optional[int]:
    v = _opt_float(value)
    return int(v) if v is not None else None


def _str_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return list(dict.fromkeys(s for s in (_opt_str(v) for v in value) if s))


def to_domains(values: Any, exclude: Iterable[str] = ()) -> list[str]:
    """Normalize loosely-typed LLM output to unique bare domains, dropping non-domains."""
    excluded = {normalize_domain(e) for e in exclude}
    out: list[str] = []
    for v in values if isinstance(values, list) else []:
        if not isinstance(v, str):
            continue
        d = normalize_domain(v)
        if is_valid_domain(d) and d not in excluded and d not in out:
            out.append(d)
    return out


def _host_excluded(url: Optional[str], excluded: set[str]) -> bool:
    return bool(url) and normalize_domain(url) in excluded


def _price_range(value: Any) -> Optional[PriceRange]:
    if not isinstance(value, dict):
        return None
    low, high = _opt_float(value.get("min")), _opt_float(value.get("max"))
    if low is None and high is None:
        return None
    return PriceRange(min=low, max=high, currency=_opt_str(value.get("currency")) or "USD")


def _listing_platforms(value: Any) -> list[ListingPlatform]:
    out: list[ListingPlatform] = []
    for item in value if isinstance(value, list) else []:
        if not isinstance(item, dict) or not _opt_str(item.get("platform")):
            continue
        out.append(
            ListingPlatform(
                platform=_opt_str(item.get("platform")),
                url=_opt_str(item.get("url")) or "",
                rating=_opt_float(item.get("rating")),
                review_count=_opt_int(item.get("reviewCount")),
                price_range=_price_range(item.get("priceRange")),
            )
        )
    return out


def _product_matches(value: Any) -> list[ProductMatch]:
    out: list[ProductMatch] = []
    for item in value if isinstance(value, list) else []:
        if not isinstance(item, dict) or not _opt_str(item.get("name")):
            continue
        matched: list[MatchedProduct] = []
        for m in item.get("matchedProducts") if isinstance(item.get("matchedProducts"), list) else []:
            if not isinstance(m, dict) or not _opt_str(m.get("name")):
                continue
            matched.append(
                MatchedProduct(
                    name=_opt_str(m.get("name")),
                    url=_opt_str(m.get("url")),
                    match_score=clamp_score(m.get("matchScore")),
                    price_diff=_opt_float(m.get("priceDiff")),
                )
            )
        out.append(
            ProductMatch(
                name=_opt_str(item.get("name")),
                url=_opt_str(item.get("url")),
                price=_opt_float(item.get("price")),
                currency=_opt_str(item.get("currency")),
                matched_products=matched,
            )
        )
    return out


def insight_from_llm(raw: Any, domain: str) -> CompetitorInsight:
    """Field-by-field validation of the LLM insight payload."""
    if not isinstance(raw, dict):
        raise ParseFailureError("insight_not_an_object", detail=domain)
    return CompetitorInsight(
        domain=domain,
        business_name=_opt_str(raw.get("businessName")),
        match_score=clamp_score(raw.get("matchScore")),
        match_reasons=_str_list(raw.get("matchReasons")),
        suggested_approach=_opt_str(raw.get("suggestedApproach")) or "",
        data_gaps=_str_list(raw.get("dataGaps")),
        listing_platforms=_listing_platforms(raw.get("listingPlatforms")),
        products=_product_matches(raw.get("products")),
        monitoring_urls=_str_list(raw.get("monitoringUrls")),
    )


def _find_user_offering(match: MatchedProduct, offerings: list[Offering]) -> Optional[Offering]:
    if match.url:
        for o in offerings:
            if o.url and o.url.rstrip("/") == match.url.rstrip("/"):
                return o
    best: Optional[Offering] = None
    best_score = 0.0
    for o in offerings:
        score = string_similarity(o.name, match.name)
        if score > best_score:
            best, best_score = o, score
    return best if best_score >= 80 else None


def heuristic_match_score(user: BusinessContext, content: WebsiteContent) -> float:
    """Token overlap between the two businesses' offerings, categories and keywords."""
    ours = tokens(" ".join([user.business_type, *(o.name for o in user.offerings), *(o.category or "" for o in user.offerings)]))
    theirs = tokens(
        " ".join(
            [
                content.title,
                content.description,
                *(o.name for o in content.offerings),
                *content.categories,
                *content.keywords,
            ]
        )
    )
    return round(token_overlap(ours, theirs), 2)


class CompetitorAnalysisEngine:
    def __init__(
        self,
        *,
        router: ModelRouter,
        website_discovery: WebsiteDiscoveryService,
        search: SearchResultRetriever | None = None,
    ):
        self._router = router
        self._discovery = website_discovery
        self._search = search

    # ------------------------------------------------------------------
    # strategy / suggestions
    # ------------------------------------------------------------------
    async def determine_search_strategy(
        self,
        domain: str,
        business_type: str,
        content: WebsiteContent,
        deadline: Deadline | None = None,
    ) -> SearchStrategy:
        """LLM classification, validated; falls back to the keyword/signal classifier."""
        summary = content.model_dump(mode="json", by_alias=True, exclude={"main_content"})
        summary["mainContent"] = content.main_content[:MAX_PROMPT_CONTENT]
        prompt = STRATEGY_PROMPT.format(domain=domain, business_type=business_type, content=_dump(summary, 12000))
        try:
            raw = await self._router.invoke_json("determine_search_strategy", prompt, "object", deadline=deadline, strict=True)
        except ModelSaturationError:
            raise
        except CompetitorIntelError as e:
            logger.warning("search_strategy_fallback", domain=domain, error_type=type(e).__name__, error=str(e))
            return fallback_strategy(domain, business_type, content)
        strategy = strategy_from_llm(raw, domain, business_type, content)
        logger.info(
            "search_strategy_determined",
            domain=domain,
            search_type=strategy.search_type.value,
            query=strategy.search_query,
        )
        return strategy

    async def suggest_competitors(
        self,
        domain: str,
        business_type: str,
        known_competitors: list[str],
        content: WebsiteContent,
        deadline: Deadline | None = None,
    ) -> list[str]:
        """LLM-suggested competitor domains ([] when the LLM output is unusable)."""
        prompt = SUGGEST_COMPETITORS_PROMPT.format(
            domain=domain,
            business_type=business_type,
            known=", ".join(known_competitors) or "none",
            title=content.title,
            description=content.description,
            products=_dump(_offering_dicts(content.products)),
            services=_dump(_offering_dicts(content.services)),
        )
        try:
            raw = await self._router.invoke_json("suggest_competitors", prompt, "array", deadline=deadline)
        except ModelSaturationError:
            raise
        except CompetitorIntelError as e:
            logger.warning("competitor_suggestion_failed", domain=domain, error=str(e))
            return []
        suggested = to_domains(raw, exclude=[domain])
        logger.info("competitors_suggested", domain=domain, count=len(suggested))
        return suggested

    async def suggest_data_sources(self, strategy: SearchStrategy, deadline: Deadline | None = None) -> list[str]:
        prompt = DATA_SOURCES_PROMPT.format(strategy=_dump(strategy.to_wire()))
        raw = await self._router.invoke_json("suggest_data_sources", prompt, "array", deadline=deadline)
        return to_domains(raw)

    # ------------------------------------------------------------------
    # pricing
    # ------------------------------------------------------------------
    async def search_for_pricing(
        self, domain: str, offerings: list[Offering], deadline: Deadline | None = None
    ) -> list[PriceData]:
        if self._search is None:
            return []
        try:
            return await self._search.search_prices(domain, offerings, deadline)
        except CompetitorIntelError as e:
            logger.warning("pricing_search_failed", domain=domain, error=str(e))
            return []

    @staticmethod
    def match_prices_heuristic(offerings: list[Offering], prices: list[PriceData]) -> list[OfferingPriceMatch]:
        """Best price per offering by name similarity to the price's context/source; score > 50 only."""
        matches: list[OfferingPriceMatch] = []
        for offering in offerings:
            best: Optional[PriceData] = None
            best_score = 0.0
            for p in prices:
                score = max(string_similarity(offering.name, p.context or ""), string_similarity(offering.name, p.source))
                if score > best_score:
                    best, best_score = p, score
            if best is not None and best_score > HEURISTIC_MATCH_THRESHOLD:
                matches.append(OfferingPriceMatch(offering=offering.name, price=best, score=best_score))
        return matches

    async def match_prices_llm(
        self, offerings: list[Offering], prices: list[PriceData], deadline: Deadline | None = None
    ) -> list[OfferingPriceMatch]:
        prompt = MATCH_PRICES_PROMPT.format(
            offerings=_dump(_offering_dicts(offerings)),
            prices=_dump([p.to_wire() for p in prices[:MAX_PROMPT_OFFERINGS]]),
        )
        raw = await self._router.invoke_json("match_prices", prompt, "array", deadline=deadline)
        names = {o.name for o in offerings}
        matches: list[OfferingPriceMatch] = []
        for item in raw if isinstance(raw, list) else []:
            if not isinstance(item, dict) or item.get("offering") not in names:
                continue
            mp = item.get("matchedPrice")
            price = _opt_float(mp.get("price")) if isinstance(mp, dict) else None
            if price is None:
                continue
            matches.append(
                OfferingPriceMatch(
                    offering=item["offering"],
                    price=PriceData(
                        price=price,
                        currency=_opt_str(mp.get("currency")) or "USD",
                        source=_opt_str(mp.get("source")) or "llm",
                    ),
                    method="llm",
                )
            )
        return matches

    async def integrate_price_matches(self, content: WebsiteContent, deadline: Deadline | None = None) -> list[OfferingPriceMatch]:
        """Match offerings to observed prices and fill prices the offerings lack.

        Both matchers run and are logged. The heuristic match is authoritative;
        an LLM match is accepted only for offerings the heuristic left unmatched
        and only when its price is one of the observed prices.
        """
        offerings = content.offerings
        prices = content.metadata.prices
        if not offerings or not prices:
            return []

        heuristic = self.match_prices_heuristic(offerings, prices)
        try:
            llm = await self.match_prices_llm(offerings, prices, deadline)
        except ModelSaturationError:
            raise
        except CompetitorIntelError as e:
            logger.warning("llm_price_match_failed", url=content.url, error=str(e))
            llm = []
        logger.info(
            "offering_price_matches",
            url=content.url,
            heuristic=[(m.offering, m.price.price, m.score) for m in heuristic],
            llm=[(m.offering, m.price.price) for m in llm],
        )

        chosen = {m.offering: m for m in heuristic}
        observed = {round(p.price, 2) for p in prices}
        for m in llm:
            if m.offering not in chosen and round(m.price.price, 2) in observed:
                chosen[m.offering] = m

        for offering in offerings:
            m = chosen.get(offering.name)
            if m is not None and offering.price is None:
                offering.price = m.price.price
                offering.currency = m.price.currency
        return list(chosen.values())

    # ------------------------------------------------------------------
    # analysis
    # ------------------------------------------------------------------
    async def analyze_competitor(
        self,
        domain: str,
        business_context: BusinessContext,
        serp_metadata: SearchCandidate | None = None,
        additional_content: WebsiteContent | None = None,
        deadline: Deadline | None = None,
    ) -> CompetitorInsight:
        """Scored insight for one candidate.

        Raises:
            CompetitorAnalysisError: nothing is known about the candidate.
            ModelSaturationError: every LLM backend is saturated.
        """
        candidate = normalize_domain(domain)
        logger.info("competitor_analysis_started", domain=candidate)

        content = await self._discovery.discover_website_content(candidate, deadline)
        if additional_content is not None:
            content = merge_website_content(content, additional_content)
        if content.is_empty() and serp_metadata is None:
            raise CompetitorAnalysisError("no_content", detail=candidate)

        if not content.metadata.prices:
            logger.info("pricing_missing_searching", domain=candidate)
            content.metadata.prices = await self.search_for_pricing(candidate, content.offerings, deadline)

        await self.integrate_price_matches(content, deadline)

        prompt = self._analysis_prompt(candidate, business_context, content, serp_metadata)
        try:
            raw = await self._router.invoke_json("analyze_competitor", prompt, "object", deadline=deadline, strict=True)
            insight = insight_from_llm(raw, candidate)
        except ParseFailureError as e:
            logger.warning("competitor_insight_parse_failed", domain=candidate, error=str(e))
            insight = self._heuristic_insight(candidate, business_context, content)

        insight = self._finalize(insight, candidate, business_context, content, serp_metadata)
        logger.info(
            "competitor_analysis_completed",
            domain=candidate,
            match_score=insight.match_score,
            products=len(insight.products),
            data_gaps=len(insight.data_gaps),
        )
        return insight

    def _analysis_prompt(
        self,
        domain: str,
        ctx: BusinessContext,
        content: WebsiteContent,
        serp: SearchCandidate | None,
    ) -> str:
        business = {
            "domain": ctx.domain,
            "businessType": ctx.business_type,
            "offerings": _offering_dicts(ctx.offerings),
            "strategy": ctx.strategy.to_wire() if ctx.strategy else None,
        }
        serp_text = "No SERP data available"
        if serp is not None:
            serp_text = _dump(
                {
                    "title": serp.title,
                    "snippet": serp.snippet,
                    "rating": serp.rating,
                    "reviewCount": serp.review_count,
                    "priceRange": asdict(serp.price_range) if serp.price_range else None,
                }
            )
        return ANALYZE_PROMPT.format(
            domain=domain,
            business_domain=ctx.domain,
            business_type=ctx.business_type or "business",
            business=_dump(business, 8000),
            title=content.title,
            description=content.description,
            categories=", ".join(content.categories),
            offerings=_dump(_offering_dicts(content.offerings)),
            prices=_dump([p.to_wire() for p in content.metadata.prices[:MAX_PROMPT_OFFERINGS]]),
            content=content.main_content[:MAX_PROMPT_CONTENT],
            serp=serp_text,
        )

    def _heuristic_insight(self, domain: str, ctx: BusinessContext, content: WebsiteContent) -> CompetitorInsight:
        products: list[ProductMatch] = []
        for theirs in content.offerings:
            matched = []
            for ours in ctx.offerings:
                score = string_similarity(theirs.name, ours.name)
                if score > HEURISTIC_MATCH_THRESHOLD:
                    matched.append(MatchedProduct(name=ours.name, url=ours.url, match_score=score))
            products.append(
                ProductMatch(
                    name=theirs.name,
                    url=theirs.url,
                    price=theirs.price,
                    currency=theirs.currency,
                    matched_products=matched,
                )
            )
        score = heuristic_match_score(ctx, content)
        shared = sorted(tokens(" ".join(o.name for o in ctx.offerings)) & tokens(" ".join(o.name for o in content.offerings)))
        reasons = [f"Shared offering terms: {', '.join(shared[:5])}"] if shared else []
        return CompetitorInsight(
            domain=domain,
            business_name=content.title or None,
            match_score=score,
            match_reasons=reasons,
            suggested_approach="Review offerings and pricing manually; automated analysis was incomplete.",
            data_gaps=[GAP_HEURISTIC],
            products=products,
        )

    def _finalize(
        self,
        insight: CompetitorInsight,
        domain: str,
        ctx: BusinessContext,
        content: WebsiteContent,
        serp: SearchCandidate | None,
    ) -> CompetitorInsight:
        excluded = {normalize_domain(h) for h in [ctx.domain, *ctx.excluded_hosts] if h}
        insight.domain = domain

        products: list[ProductMatch] = []
        for product in insight.products:
            if _host_excluded(product.url, excluded):
                continue
            for m in product.matched_products:
                user_offering = _find_user_offering(m, ctx.offerings)
                if product.price is not None and user_offering is not None and user_offering.price is not None:
                    m.price_diff = round(product.price - user_offering.price, 2)
                else:
                    m.price_diff = None
            products.append(product)
        insight.products = products

        if serp is not None and (serp.rating is not None or serp.review_count is not None):
            self._add_google_listing(insight, domain, serp)

        monitoring = [u for u in insight.monitoring_urls if normalize_domain(u) == domain]
        monitoring.extend(p.url for p in insight.products if p.url and normalize_domain(p.url) == domain)
        insight.monitoring_urls = list(dict.fromkeys(monitoring))

        gaps = list(insight.data_gaps)
        if not content.metadata.prices and not any(p.price is not None for p in insight.products):
            gaps.append(GAP_NO_PRICING)
        if not content.offerings and not insight.products:
            gaps.append(GAP_NO_OFFERINGS)
        if content.metadata.contact_info is None:
            gaps.append(GAP_NO_CONTACT)
        if not insight.listing_platforms:
            gaps.append(GAP_NO_LISTINGS)
        insight.data_gaps = list(dict.fromkeys(gaps))
        return insight

    @staticmethod
    def _add_google_listing(insight: CompetitorInsight, domain: str, serp: SearchCandidate) -> None:
        price_range = None
        if serp.price_range is not None:
            price_range = PriceRange(
                min=serp.price_range.min,
                max=serp.price_range.max,
                currency=serp.price_range.currency or "USD",
            )
        for platform in insight.listing_platforms:
            if platform.platform.lower() == "google":
                platform.rating = platform.rating if platform.rating is not None else serp.rating
                platform.review_count = platform.review_count if platform.review_count is not None else serp.review_count
                platform.price_range = platform.price_range or price_range
                return
        insight.listing_platforms.append(
            ListingPlatform(
                platform="Google",
                url=f"https://www.google.com/search?q={quote_plus(domain)}",
                rating=serp.rating,
                review_count=serp.review_count,
                price_range=price_range,
            )
        )
