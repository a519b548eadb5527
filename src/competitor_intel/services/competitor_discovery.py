"""Competitor discovery orchestrator.

One run: own site + mandatory product catalog -> search strategy -> search
candidates and LLM suggestions (concurrently) -> union with the known
competitors -> bounded concurrent analysis -> ranked insights.

Only two conditions fail a run: the catalog cannot be analyzed, or every LLM
backend is saturated. Everything else degrades and is counted.
"""

from __future__ import annotations

import asyncio
import uuid
from typing import Optional

from ..domain.errors import (
    CatalogAnalysisError,
    CompetitorIntelError,
    InvalidInputError,
    ModelSaturationError,
)
from ..domain.models import SearchCandidate
from ..models.insight import (
    BusinessContext,
    CompetitorInsight,
    DiscoveryResult,
    DiscoveryStats,
    SearchStrategy,
)
from ..models.website import WebsiteContent, merge_website_content
from ..observability.logger import bind_run_context, clear_run_context, get_logger
from ..utils.deadline import Deadline
from ..utils.validators import is_valid_domain, is_valid_http_url, normalize_domain, normalize_url
from .competitor_analysis import CompetitorAnalysisEngine
from .search_retriever import SearchResultRetriever
from .website_discovery import WebsiteDiscoveryService

logger = get_logger(__name__)


def rank_insights(insights: list[CompetitorInsight]) -> list[CompetitorInsight]:
    """Descending match score; the domain breaks ties so identical inputs rank identically."""
    return sorted(insights, key=lambda i: (-i.match_score, i.domain))


def merge_candidates(
    serp: list[SearchCandidate],
    suggested: list[str],
    known: list[str],
    excluded: set[str],
) -> dict[str, Optional[SearchCandidate]]:
    """Ordered union (search, then LLM, then known) of valid domains outside `excluded`."""
    merged: dict[str, Optional[SearchCandidate]] = {}
    for c in serp:
        d = normalize_domain(c.domain)
        if is_valid_domain(d) and d not in excluded and d not in merged:
            merged[d] = c
    for value in [*suggested, *known]:
        d = normalize_domain(value)
        if is_valid_domain(d) and d not in excluded and d not in merged:
            merged[d] = None
    return merged


class CompetitorDiscoveryOrchestrator:
    def __init__(
        self,
        *,
        website_discovery: WebsiteDiscoveryService,
        analysis: CompetitorAnalysisEngine,
        search: SearchResultRetriever | None = None,
        run_budget_seconds: float = 600.0,
        max_concurrent_analyses: int = 5,
        deep_crawl_trigger_score: float = 70.0,
    ):
        self._discovery = website_discovery
        self._analysis = analysis
        self._search = search
        self._run_budget = float(run_budget_seconds)
        self._max_concurrent = max(1, int(max_concurrent_analyses))
        self._deep_crawl_trigger = float(deep_crawl_trigger_score)

    async def discover_competitors(
        self,
        domain: str,
        business_type: str,
        known_competitors: list[str] | None,
        product_catalog_url: str,
        deadline: Deadline | None = None,
    ) -> DiscoveryResult:
        """Discover, analyze and rank the competitors of `domain`.

        Raises:
            InvalidInputError: `domain` or `product_catalog_url` is unusable.
            CatalogAnalysisError: the product catalog could not be analyzed.
            ModelSaturationError: every LLM backend stayed saturated.
        """
        own_domain = normalize_domain(domain)
        if not is_valid_domain(own_domain):
            raise InvalidInputError("invalid_domain", detail=domain)
        catalog_url = normalize_url(product_catalog_url or "")
        if not is_valid_http_url(catalog_url):
            raise InvalidInputError("invalid_product_catalog_url", detail=product_catalog_url)

        known = [d for d in (normalize_domain(k) for k in known_competitors or []) if d]
        run_deadline = Deadline.after(self._run_budget).earliest(deadline)
        bind_run_context(run_id=uuid.uuid4().hex, domain=own_domain)
        try:
            return await self._run(own_domain, business_type, known, catalog_url, run_deadline)
        finally:
            clear_run_context()

    async def _run(
        self,
        domain: str,
        business_type: str,
        known: list[str],
        catalog_url: str,
        deadline: Deadline,
    ) -> DiscoveryResult:
        logger.info("competitor_discovery_started", business_type=business_type, known=len(known))

        own = await self._discovery.discover_website_content(domain, deadline)
        catalog = await self._analyze_catalog(catalog_url, deadline)
        content = merge_website_content(own, catalog)
        excluded = {domain, normalize_domain(catalog_url)}

        strategy = await self._analysis.determine_search_strategy(domain, business_type, content, deadline)

        serp, suggested = await asyncio.gather(
            self._search_candidates(strategy, deadline),
            self._analysis.suggest_competitors(domain, business_type, known, content, deadline),
        )
        candidates = merge_candidates(serp, suggested, known, excluded)
        logger.info(
            "competitor_candidates_merged",
            serp=len(serp),
            suggested=len(suggested),
            known=len(known),
            candidates=len(candidates),
        )

        context = BusinessContext(
            domain=domain,
            business_type=business_type,
            offerings=content.offerings,
            strategy=strategy,
            excluded_hosts=sorted(excluded),
        )
        semaphore = asyncio.Semaphore(self._max_concurrent)

        async def bounded(candidate: str, serp_metadata: Optional[SearchCandidate]) -> CompetitorInsight:
            async with semaphore:
                return await self._analyze_candidate(candidate, context, serp_metadata, deadline)

        outcomes = await asyncio.gather(
            *(bounded(d, meta) for d, meta in candidates.items()),
            return_exceptions=True,
        )

        insights: list[CompetitorInsight] = []
        failed = 0
        saturation: ModelSaturationError | None = None
        for candidate, outcome in zip(candidates, outcomes):
            if isinstance(outcome, CompetitorInsight):
                insights.append(outcome)
                continue
            if isinstance(outcome, ModelSaturationError):
                saturation = outcome
            failed += 1
            logger.warning(
                "competitor_analysis_failed",
                candidate=candidate,
                error_type=type(outcome).__name__,
                error=str(outcome),
            )
        if saturation is not None:
            logger.error("competitor_discovery_model_saturation", error=str(saturation))
            raise saturation

        ranked = rank_insights(insights)
        sources = await self._recommended_sources(strategy, deadline)

        known_set = set(known)
        existing = sum(1 for i in ranked if i.domain in known_set)
        stats = DiscoveryStats(
            total_discovered=len(candidates),
            new_competitors=len(ranked) - existing,
            existing_competitors=existing,
            failed_analyses=failed,
        )
        logger.info("competitor_discovery_completed", **stats.model_dump())
        return DiscoveryResult(
            competitors=ranked,
            recommended_sources=sources,
            search_strategy=strategy,
            stats=stats,
        )

    async def _analyze_catalog(self, url: str, deadline: Deadline) -> WebsiteContent:
        try:
            catalog = await self._discovery.discover_website_content_strict(url, deadline)
        except ModelSaturationError:
            raise
        except CompetitorIntelError as e:
            logger.error("catalog_analysis_failed", url=url, error_type=type(e).__name__, error=str(e))
            raise CatalogAnalysisError(
                "Product catalog analysis failed. Please ensure the URL is valid and accessible.",
                detail=url,
            ) from e
        if catalog.is_empty():
            logger.error("catalog_analysis_empty", url=url)
            raise CatalogAnalysisError("Product catalog returned no content.", detail=url)
        logger.info("catalog_analyzed", url=url, products=len(catalog.products), services=len(catalog.services))
        return catalog

    async def _search_candidates(self, strategy: SearchStrategy, deadline: Deadline) -> list[SearchCandidate]:
        if self._search is None:
            return []
        try:
            return await self._search.search(strategy, deadline)
        except CompetitorIntelError as e:
            logger.warning("search_candidates_failed", error_type=type(e).__name__, error=str(e))
            return []

    async def _analyze_candidate(
        self,
        candidate: str,
        context: BusinessContext,
        serp_metadata: Optional[SearchCandidate],
        deadline: Deadline,
    ) -> CompetitorInsight:
        insight = await self._analysis.analyze_competitor(candidate, context, serp_metadata, deadline=deadline)
        if insight.products or insight.match_score < self._deep_crawl_trigger or deadline.expired:
            return insight

        logger.info("deep_crawl_triggered", candidate=candidate, match_score=insight.match_score)
        try:
            extra = await self._discovery.crawl_site(candidate, deadline)
            if extra.is_empty():
                return insight
            return await self._analysis.analyze_competitor(
                candidate, context, serp_metadata, additional_content=extra, deadline=deadline
            )
        except ModelSaturationError:
            raise
        except CompetitorIntelError as e:
            logger.warning("deep_crawl_failed", candidate=candidate, error=str(e))
            return insight

    async def _recommended_sources(self, strategy: SearchStrategy, deadline: Deadline) -> list[str]:
        try:
            return await self._analysis.suggest_data_sources(strategy, deadline)
        except CompetitorIntelError as e:
            logger.warning("recommended_sources_failed", error_type=type(e).__name__, error=str(e))
            return []
