"""Website discovery: fetch + robots/sitemaps + extraction -> WebsiteContent.

`discover_website_content` never raises: any failure degrades to an empty
content shell for the URL. `discover_website_content_strict` raises instead
and is used where the caller must know (the product catalog).
"""

from __future__ import annotations

import asyncio
from typing import Any, Iterable

from ..crawl.fetcher import WebContentFetcher
from ..crawl.site_structure import SiteStructureDiscoverer, SitemapEntry
from ..domain.errors import (
    AccessDeniedError,
    CompetitorIntelError,
    DeadlineExceededError,
    InvalidURLError,
    ModelSaturationError,
)
from ..llm.router import ModelRouter
from ..models.website import WebsiteContent, merge_website_content
from ..observability.logger import get_logger
from ..utils.deadline import Deadline
from ..utils.validators import is_valid_http_url, normalize_domain, normalize_url
from .content_extractor import ContentExtractor, offerings_from_structured_data

logger = get_logger(__name__)

PRIORITY_KEYWORDS = ("product", "service", "pricing", "price", "about", "contact", "location", "store")

PRIORITIZE_PROMPT = """Analyze these URLs and select the top {limit} most likely to contain valuable competitor information like products, services, pricing, or business details.

URLs to analyze:
{urls}

Consider these factors:
1. Product/category pages
2. Service description pages
3. Pricing pages
4. About/Company pages
5. Contact/Location pages

Return ONLY a JSON array of the top {limit} most relevant URLs.
Example: ["https://example.com/products", "https://example.com/services"]"""


def keyword_prioritize(urls: Iterable[str], limit: int) -> list[str]:
    """Order URLs by how many priority keywords they contain (stable), keep `limit`."""
    unique = list(dict.fromkeys(urls))
    scored = sorted(unique, key=lambda u: -sum(1 for k in PRIORITY_KEYWORDS if k in u.lower()))
    return scored[:limit]


def _urls_in(value: Any, host: str, out: set[str]) -> None:
    if isinstance(value, str):
        if value.startswith("http") and normalize_domain(value) == host:
            out.add(value)
    elif isinstance(value, dict):
        for v in value.values():
            _urls_in(v, host, out)
    elif isinstance(value, list):
        for v in value:
            _urls_in(v, host, out)


def same_host_urls(content: WebsiteContent, host: str) -> list[str]:
    """Structured-data and offering URLs on `host` (candidates for the next crawl depth)."""
    found: set[str] = set()
    for item in content.metadata.structured_data:
        _urls_in(item, host, found)
    for offering in content.offerings:
        if offering.url and normalize_domain(offering.url) == host:
            found.add(offering.url)
    return sorted(found)


class WebsiteDiscoveryService:
    def __init__(
        self,
        *,
        fetcher: WebContentFetcher,
        site_structure: SiteStructureDiscoverer,
        extractor: ContentExtractor,
        router: ModelRouter | None = None,
        domain_budget_seconds: float = 45.0,
        deep_crawl_max_depth: int = 3,
        deep_crawl_pages_per_depth: int = 10,
        llm_url_threshold: int = 50,
    ):
        self._fetcher = fetcher
        self._site = site_structure
        self._extractor = extractor
        self._router = router
        self._budget = float(domain_budget_seconds)
        self._max_depth = int(deep_crawl_max_depth)
        self._pages_per_depth = int(deep_crawl_pages_per_depth)
        self._llm_threshold = int(llm_url_threshold)

    # ------------------------------------------------------------------
    # single page
    # ------------------------------------------------------------------
    async def discover_website_content(self, url: str, deadline: Deadline | None = None) -> WebsiteContent:
        """Discover a site's content; returns an empty shell on any failure."""
        target = normalize_url(url)
        try:
            return await self.discover_website_content_strict(target, deadline)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(
                "website_discovery_failed",
                url=target,
                error_type=type(e).__name__,
                error=str(e),
            )
            return WebsiteContent.empty(target)

    async def discover_website_content_strict(self, url: str, deadline: Deadline | None = None) -> WebsiteContent:
        """Like `discover_website_content` but raises on failure (404 still yields an empty shell)."""
        target = normalize_url(url)
        if not is_valid_http_url(target):
            raise InvalidURLError("invalid_url", detail=url)

        budget = Deadline.after(self._budget).earliest(deadline)
        logger.info("website_discovery_started", url=target, budget_s=round(budget.remaining(), 1))
        try:
            content = await asyncio.wait_for(self._discover(target, budget), timeout=budget.remaining())
        except asyncio.TimeoutError as e:
            raise DeadlineExceededError("domain_discovery_budget_exceeded", detail=target) from e
        logger.info(
            "website_discovery_completed",
            url=target,
            products=len(content.products),
            services=len(content.services),
            prices=len(content.metadata.prices),
        )
        return content

    async def _discover(self, url: str, deadline: Deadline) -> WebsiteContent:
        if not await self._site.is_allowed(url, deadline):
            raise AccessDeniedError("robots_disallowed", detail=url)
        page = await self._fetcher.fetch(url, deadline=deadline)
        if page is None:
            logger.info("website_not_found", url=url)
            return WebsiteContent.empty(url)
        return await self._extractor.extract(page.html, url, deadline)

    async def discover_sitemaps(self, url: str, deadline: Deadline | None = None) -> list[SitemapEntry]:
        return await self._site.discover_sitemaps(normalize_url(url), deadline)

    # ------------------------------------------------------------------
    # deep crawl
    # ------------------------------------------------------------------
    async def _prioritize(self, urls: list[str], deadline: Deadline | None) -> list[str]:
        limit = self._pages_per_depth
        if len(urls) <= self._llm_threshold or self._router is None:
            return keyword_prioritize(urls, limit)

        prompt = PRIORITIZE_PROMPT.format(limit=limit, urls="\n".join(urls[:200]))
        try:
            picked = await self._router.invoke_json("prioritize_urls", prompt, "array", deadline=deadline)
        except ModelSaturationError:
            raise
        except CompetitorIntelError as e:
            logger.warning("url_prioritization_failed", error=str(e))
            picked = []

        allowed = set(urls)
        chosen = [u for u in picked if isinstance(u, str) and u in allowed]
        if not chosen:
            return keyword_prioritize(urls, limit)
        rest = keyword_prioritize([u for u in urls if u not in set(chosen)], limit)
        return list(dict.fromkeys(chosen + rest))[:limit]

    async def crawl_site(self, url: str, deadline: Deadline | None = None) -> WebsiteContent:
        """Sitemap-seeded, robots-filtered, depth-bounded crawl of one site, merged additively.

        Pages are extracted without the LLM; offerings are extracted once from
        the merged content at the end. Per-page failures are skipped.
        """
        root = normalize_url(url)
        host = normalize_domain(root)
        budget = deadline or Deadline.after(self._budget * 4)
        logger.info("deep_crawl_started", url=root)

        try:
            entries = await self.discover_sitemaps(root, budget)
        except CompetitorIntelError as e:
            logger.warning("deep_crawl_sitemaps_failed", url=root, error=str(e))
            entries = []

        sitemap_urls = [e.loc for e in entries if normalize_domain(e.loc) == host]
        by_depth: dict[int, list[str]] = {0: [root], 1: await self._prioritize(sitemap_urls, budget)}

        crawled: set[str] = set()
        merged: WebsiteContent | None = None
        for depth in range(0, self._max_depth + 1):
            urls = [u for u in dict.fromkeys(by_depth.get(depth, [])) if u not in crawled]
            if len(urls) > self._pages_per_depth:
                urls = urls[:1] if depth == 0 else await self._prioritize(urls, budget)
            logger.debug("deep_crawl_depth", url=root, depth=depth, urls=len(urls))

            for page_url in urls:
                if budget.expired:
                    logger.info("deep_crawl_budget_exhausted", url=root, pages=len(crawled))
                    break
                if page_url in crawled:
                    continue
                crawled.add(page_url)
                page_content = await self._crawl_page(page_url, budget)
                if page_content is None:
                    continue
                merged = page_content if merged is None else merge_website_content(merged, page_content)
                if depth < self._max_depth:
                    by_depth.setdefault(depth + 1, []).extend(same_host_urls(page_content, host))

        if merged is None:
            logger.info("deep_crawl_empty", url=root)
            return WebsiteContent.empty(root)

        if not budget.expired:
            try:
                products, services = await self._extractor.extract_offerings(merged, budget)
            except ModelSaturationError:
                raise
            except CompetitorIntelError as e:
                logger.warning("deep_crawl_offerings_failed", url=root, error=str(e))
            else:
                merged.products = products or merged.products
                merged.services = services or merged.services

        logger.info(
            "deep_crawl_completed",
            url=root,
            pages=len(crawled),
            products=len(merged.products),
            services=len(merged.services),
            prices=len(merged.metadata.prices),
        )
        return merged

    async def _crawl_page(self, url: str, deadline: Deadline) -> WebsiteContent | None:
        try:
            if not await self._site.is_allowed(url, deadline):
                logger.debug("deep_crawl_disallowed", url=url)
                return None
            page = await self._fetcher.fetch(url, deadline=deadline)
        except CompetitorIntelError as e:
            logger.warning("deep_crawl_page_failed", url=url, error_type=type(e).__name__, error=str(e))
            return None
        if page is None:
            return None
        content = self._extractor.extract_static(page.html, url)
        content.products = offerings_from_structured_data(content.metadata.structured_data, url)
        return content
