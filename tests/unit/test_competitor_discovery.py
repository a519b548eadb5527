from __future__ import annotations

import asyncio

import pytest
import structlog

from competitor_intel.domain.errors import (
    CatalogAnalysisError,
    CompetitorAnalysisError,
    InvalidInputError,
    LLMRequestError,
    ModelSaturationError,
    NotFoundError,
)
from competitor_intel.domain.models import SearchCandidate
from competitor_intel.models.insight import CompetitorInsight, ProductMatch, SearchStrategy
from competitor_intel.models.website import Offering, WebsiteContent
from competitor_intel.services.competitor_discovery import (
    CompetitorDiscoveryOrchestrator,
    merge_candidates,
    rank_insights,
)

CATALOG_URL = "https://catalog.mine.com/products"


class FakeDiscovery:
    def __init__(self, catalog: WebsiteContent | Exception | None = None, crawl: dict | None = None):
        self.catalog = catalog if catalog is not None else WebsiteContent(
            url=CATALOG_URL, products=[Offering(name="Ocean Suite", price=250.0)]
        )
        self.crawl = crawl or {}
        self.crawled: list[str] = []

    async def discover_website_content(self, url, deadline=None):
        return WebsiteContent(url=url, title="Mine", services=[Offering(name="Spa")])

    async def discover_website_content_strict(self, url, deadline=None):
        if isinstance(self.catalog, Exception):
            raise self.catalog
        return self.catalog

    async def crawl_site(self, url, deadline=None):
        self.crawled.append(url)
        return self.crawl.get(url) or WebsiteContent.empty(url)


class FakeAnalysis:
    def __init__(self, results: dict, suggested=None, sources=None):
        self.results = results
        self.suggested = suggested or []
        self.sources = sources if sources is not None else ["tripadvisor.com"]
        self.analyzed: list[tuple[str, bool]] = []
        self.contexts = []

    async def determine_search_strategy(self, domain, business_type, content, deadline=None):
        return SearchStrategy(search_query=f"{business_type} like {domain}")

    async def suggest_competitors(self, domain, business_type, known, content, deadline=None):
        return list(self.suggested)

    async def suggest_data_sources(self, strategy, deadline=None):
        if isinstance(self.sources, Exception):
            raise self.sources
        return self.sources

    async def analyze_competitor(self, domain, business_context, serp_metadata=None, additional_content=None, deadline=None):
        self.analyzed.append((domain, additional_content is not None))
        self.contexts.append(business_context)
        result = self.results[domain]
        if isinstance(result, Exception):
            raise result
        if callable(result):
            return result(additional_content)
        return result


class FakeSearch:
    def __init__(self, candidates):
        self.candidates = candidates

    async def search(self, strategy, deadline=None):
        if isinstance(self.candidates, Exception):
            raise self.candidates
        return self.candidates


def _insight(domain: str, score: float, products: int = 0) -> CompetitorInsight:
    return CompetitorInsight(
        domain=domain,
        match_score=score,
        products=[ProductMatch(name=f"p{i}") for i in range(products)],
    )


def _run(orchestrator: CompetitorDiscoveryOrchestrator, known=("a.com", "b.com"), catalog=CATALOG_URL):
    return asyncio.run(orchestrator.discover_competitors("mine.com", "Hotel", list(known), catalog))


def test_one_failed_candidate_is_counted_not_fatal() -> None:
    analysis = FakeAnalysis({"a.com": CompetitorAnalysisError("no_content"), "b.com": _insight("b.com", 72)})
    orchestrator = CompetitorDiscoveryOrchestrator(website_discovery=FakeDiscovery(), analysis=analysis)

    result = _run(orchestrator)

    assert [c.domain for c in result.competitors] == ["b.com"]
    assert result.competitors[0].match_score == 72
    assert result.stats.total_discovered == 2
    assert result.stats.failed_analyses == 1
    assert result.stats.existing_competitors == 1
    assert result.stats.new_competitors == 0
    assert result.recommended_sources == ["tripadvisor.com"]
    assert result.search_strategy.search_query == "Hotel like mine.com"


def test_stats_add_up_and_results_are_ranked() -> None:
    analysis = FakeAnalysis(
        {
            "serp.com": _insight("serp.com", 40, products=1),
            "llm.com": _insight("llm.com", 90, products=1),
            "a.com": _insight("a.com", 40, products=1),
            "b.com": CompetitorAnalysisError("no_content"),
        },
        suggested=["llm.com"],
    )
    search = FakeSearch([SearchCandidate(domain="serp.com", rating=4.0)])
    orchestrator = CompetitorDiscoveryOrchestrator(website_discovery=FakeDiscovery(), analysis=analysis, search=search)

    result = _run(orchestrator)
    stats = result.stats
    assert [c.domain for c in result.competitors] == ["llm.com", "a.com", "serp.com"]
    assert stats.total_discovered == 4
    assert stats.new_competitors + stats.existing_competitors == len(result.competitors)
    assert stats.failed_analyses == 1
    assert (stats.new_competitors, stats.existing_competitors) == (2, 1)
    assert [d for d, _ in analysis.analyzed] == ["serp.com", "llm.com", "a.com", "b.com"]


def test_own_domain_and_catalog_host_are_never_candidates() -> None:
    analysis = FakeAnalysis({"rival.com": _insight("rival.com", 50, products=1)}, suggested=["www.mine.com", "rival.com"])
    search = FakeSearch([SearchCandidate(domain="mine.com"), SearchCandidate(domain="catalog.mine.com")])
    orchestrator = CompetitorDiscoveryOrchestrator(website_discovery=FakeDiscovery(), analysis=analysis, search=search)

    result = _run(orchestrator, known=["https://catalog.mine.com/x"])
    assert [c.domain for c in result.competitors] == ["rival.com"]
    assert [d for d, _ in analysis.analyzed] == ["rival.com"]
    assert result.stats.total_discovered == 1
    context = analysis.contexts[0]
    assert context.excluded_hosts == ["catalog.mine.com", "mine.com"]
    # Own-site services merged with the catalog products
    assert sorted(o.name for o in context.offerings) == ["Ocean Suite", "Spa"]


@pytest.mark.parametrize(
    "catalog",
    [
        NotFoundError("not_found"),
        WebsiteContent(url=CATALOG_URL),
    ],
)
def test_catalog_failure_is_fatal(catalog) -> None:
    analysis = FakeAnalysis({})
    orchestrator = CompetitorDiscoveryOrchestrator(website_discovery=FakeDiscovery(catalog=catalog), analysis=analysis)
    with pytest.raises(CatalogAnalysisError):
        _run(orchestrator)
    assert analysis.analyzed == []


def test_catalog_saturation_propagates() -> None:
    discovery = FakeDiscovery(catalog=ModelSaturationError("saturated"))
    orchestrator = CompetitorDiscoveryOrchestrator(website_discovery=discovery, analysis=FakeAnalysis({}))
    with pytest.raises(ModelSaturationError):
        _run(orchestrator)


@pytest.mark.parametrize("domain,catalog", [("not a domain", CATALOG_URL), ("mine.com", ""), ("mine.com", "ftp://x.com/c")])
def test_invalid_input(domain, catalog) -> None:
    orchestrator = CompetitorDiscoveryOrchestrator(website_discovery=FakeDiscovery(), analysis=FakeAnalysis({}))
    with pytest.raises(InvalidInputError):
        asyncio.run(orchestrator.discover_competitors(domain, "Hotel", [], catalog))


def test_saturation_during_analysis_fails_the_run() -> None:
    analysis = FakeAnalysis({"a.com": ModelSaturationError("saturated"), "b.com": _insight("b.com", 10, products=1)})
    orchestrator = CompetitorDiscoveryOrchestrator(website_discovery=FakeDiscovery(), analysis=analysis)
    with pytest.raises(ModelSaturationError):
        _run(orchestrator)


def test_deep_crawl_reanalyzes_promising_candidates_without_products() -> None:
    def analyze(extra):
        return _insight("a.com", 85, products=2) if extra is not None else _insight("a.com", 80)

    extra = WebsiteContent(url="https://a.com", products=[Offering(name="Suite")])
    discovery = FakeDiscovery(crawl={"a.com": extra})
    analysis = FakeAnalysis({"a.com": analyze, "b.com": _insight("b.com", 30)})
    orchestrator = CompetitorDiscoveryOrchestrator(website_discovery=discovery, analysis=analysis)

    result = _run(orchestrator)
    assert discovery.crawled == ["a.com"]
    assert ("a.com", True) in analysis.analyzed
    assert ("b.com", True) not in analysis.analyzed
    assert result.competitors[0].domain == "a.com"
    assert len(result.competitors[0].products) == 2


def test_search_and_source_failures_degrade() -> None:
    analysis = FakeAnalysis({"a.com": _insight("a.com", 20, products=1)}, sources=LLMRequestError("down"))
    orchestrator = CompetitorDiscoveryOrchestrator(
        website_discovery=FakeDiscovery(), analysis=analysis, search=FakeSearch(LLMRequestError("search down"))
    )
    result = _run(orchestrator, known=["a.com"])
    assert [c.domain for c in result.competitors] == ["a.com"]
    assert result.recommended_sources == []


def test_log_context_is_bound_for_the_run_only() -> None:
    seen: list[dict] = []

    def analyze(extra):
        seen.append(structlog.contextvars.get_contextvars())
        return _insight("a.com", 20, products=1)

    orchestrator = CompetitorDiscoveryOrchestrator(website_discovery=FakeDiscovery(), analysis=FakeAnalysis({"a.com": analyze}))
    _run(orchestrator, known=["a.com"])
    assert seen[0]["domain"] == "mine.com"
    assert len(seen[0]["run_id"]) == 32
    assert structlog.contextvars.get_contextvars() == {}


def test_merge_candidates_and_ranking_helpers() -> None:
    merged = merge_candidates(
        [SearchCandidate(domain="x.com"), SearchCandidate(domain="bad domain")],
        ["Y.com", "x.com"],
        ["z.com", "mine.com"],
        {"mine.com"},
    )
    assert list(merged) == ["x.com", "y.com", "z.com"]
    assert merged["x.com"] is not None and merged["y.com"] is None

    ranked = rank_insights([_insight("b.com", 50), _insight("a.com", 50), _insight("c.com", 90)])
    assert [i.domain for i in ranked] == ["c.com", "a.com", "b.com"]
