"""Application lifespan management (startup/shutdown hooks)."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any

from .config.settings import CompetitorIntelSettings, get_settings
from .crawl.fallback import CrawlFallback, PlaywrightFallback, SpiderCloudFallback
from .crawl.fetcher import WebContentFetcher
from .crawl.site_structure import SiteStructureDiscoverer
from .llm.catalog import build_backends, load_descriptors
from .llm.router import ModelRouter
from .observability.logger import configure_logging, get_logger
from .services.competitor_analysis import CompetitorAnalysisEngine
from .services.competitor_discovery import CompetitorDiscoveryOrchestrator
from .services.content_extractor import ContentExtractor
from .services.content_filter import ContentFilter
from .services.search_retriever import SearchResultRetriever
from .services.website_discovery import WebsiteDiscoveryService
from .utils.rate_limiter import DomainRateLimiter

logger = get_logger(__name__)

# Service instances shared with the HTTP handlers
app_state: dict[str, Any] = {}


def build_fallback(settings: CompetitorIntelSettings) -> CrawlFallback | None:
    if settings.crawl_fallback == "spider":
        if settings.spider_api_key:
            return SpiderCloudFallback(
                api_key=settings.spider_api_key,
                base_url=settings.spider_base_url,
                user_agent=settings.desktop_user_agent,
            )
        logger.warning("crawl_fallback_not_configured", fallback="spider", missing="SPIDER_API_KEY")
        return None
    if settings.crawl_fallback == "playwright":
        return PlaywrightFallback(
            user_agent=settings.desktop_user_agent,
            default_timeout_ms=settings.playwright_timeout_ms,
        )
    return None


def build_services(settings: CompetitorIntelSettings) -> dict[str, Any]:
    """Wire every layer from settings (strict separation; no I/O happens here)."""
    rate_limiter = None
    if settings.enable_rate_limiting:
        rate_limiter = DomainRateLimiter(requests_per_second=settings.rate_limit_per_domain_rps)
        logger.info("rate_limiter_enabled", rate_limit_per_domain_rps=settings.rate_limit_per_domain_rps)

    router = ModelRouter(
        load_descriptors(settings),
        build_backends(settings),
        batch_size=settings.router_batch_size,
        batch_window=settings.router_batch_window_seconds,
        inter_request_delay=settings.router_inter_request_delay_seconds,
        retry_delays=settings.router_retry_delays_seconds,
        max_queue_size=settings.router_max_queue_size,
        usage_window=settings.router_usage_window_seconds,
        temperature=settings.llm_temperature_default,
        max_tokens=settings.llm_max_tokens_default,
        timeout_seconds=settings.llm_timeout_seconds,
        default_preferred_model=settings.router_preferred_model,
    )

    fetcher = WebContentFetcher(
        desktop_user_agent=settings.desktop_user_agent,
        mobile_user_agent=settings.mobile_user_agent,
        accept_language=settings.accept_language,
        timeout_seconds=settings.fetch_timeout_seconds,
        max_retries=settings.fetch_max_retries,
        retry_backoff_seconds=settings.fetch_retry_backoff_seconds,
        max_backoff_seconds=settings.fetch_max_backoff_seconds,
        max_html_bytes=settings.fetch_max_html_bytes,
        min_word_count=settings.min_word_count,
        rate_limiter=rate_limiter,
        fallback=build_fallback(settings),
    )
    site_structure = SiteStructureDiscoverer(
        fetcher,
        well_known_paths=settings.well_known_sitemap_paths,
        cache_ttl_seconds=settings.robots_cache_ttl_seconds,
        max_depth=settings.sitemap_max_depth,
        max_urls=settings.sitemap_max_urls,
        respect_robots_txt=settings.respect_robots_txt,
        rate_limiter=rate_limiter,
    )
    logger.info(
        "robots_configured",
        respect_robots_txt=settings.respect_robots_txt,
        robots_cache_ttl_seconds=settings.robots_cache_ttl_seconds,
    )

    extractor = ContentExtractor(
        router,
        content_filter=ContentFilter(),
        max_text_length=settings.max_main_content_chars,
    )
    website_discovery = WebsiteDiscoveryService(
        fetcher=fetcher,
        site_structure=site_structure,
        extractor=extractor,
        router=router,
        domain_budget_seconds=settings.domain_discovery_budget_seconds,
        deep_crawl_max_depth=settings.deep_crawl_max_depth,
        deep_crawl_pages_per_depth=settings.deep_crawl_pages_per_depth,
        llm_url_threshold=settings.deep_crawl_llm_threshold,
    )
    search = SearchResultRetriever(
        api_key=settings.valueserp_api_key,
        base_url=settings.valueserp_base_url,
        google_domain=settings.search_google_domain,
        gl=settings.search_gl,
        hl=settings.search_hl,
        default_location=settings.search_default_location,
        timeout_seconds=settings.search_timeout_seconds,
        max_retries=settings.search_max_retries,
        max_pricing_queries=settings.max_pricing_queries,
    )
    if not search.enabled:
        logger.warning("search_not_configured", missing="VALUESERP_API_KEY")

    analysis = CompetitorAnalysisEngine(router=router, website_discovery=website_discovery, search=search)
    orchestrator = CompetitorDiscoveryOrchestrator(
        website_discovery=website_discovery,
        analysis=analysis,
        search=search,
        run_budget_seconds=settings.discovery_run_budget_seconds,
        max_concurrent_analyses=settings.max_concurrent_analyses,
        deep_crawl_trigger_score=settings.deep_crawl_trigger_score,
    )
    return {
        "router": router,
        "fetcher": fetcher,
        "website_discovery": website_discovery,
        "search": search,
        "analysis": analysis,
        "orchestrator": orchestrator,
    }


@asynccontextmanager
async def lifespan_manager():
    """Manage application lifespan (startup and shutdown)."""
    settings = get_settings()

    configure_logging()
    logger.info("starting_application", service_name=settings.service_name)

    services = build_services(settings)
    router: ModelRouter = services["router"]
    if not router.models:
        logger.warning("no_llm_backends_configured")
    router.start()
    app_state.update(services)

    logger.info("application_started", models=[m.model_id for m in router.models])
    try:
        yield app_state
    finally:
        await router.close()
        app_state.clear()
        logger.info("application_shutdown_complete")
