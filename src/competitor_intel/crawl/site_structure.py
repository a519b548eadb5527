"""robots.txt + sitemap discovery.

Robots rules are cached per origin with a TTL. Policy: if robots.txt cannot be
fetched or parsed, allow by default (fail-open).
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Dict, Optional
from urllib.parse import urljoin, urlparse

from bs4 import BeautifulSoup

from ..domain.errors import AccessDeniedError, NetworkTimeoutError, RateLimitedError, ServerError
from ..observability.logger import get_logger
from ..utils.deadline import Deadline
from ..utils.rate_limiter import DomainRateLimiter
from ..utils.robots import RobotsRules, parse_robots_txt
from ..utils.validators import normalize_url
from .fetcher import WebContentFetcher

logger = get_logger(__name__)

_FETCH_ERRORS = (AccessDeniedError, RateLimitedError, ServerError, NetworkTimeoutError)


def _now() -> float:
    return time.monotonic()


@dataclass(frozen=True)
class SitemapEntry:
    loc: str
    lastmod: Optional[str] = None
    priority: Optional[float] = None


@dataclass
class _RobotsEntry:
    rules: RobotsRules
    expires_at: float


def _origin(url: str) -> str:
    p = urlparse(normalize_url(url))
    return f"{(p.scheme or 'https').lower()}://{(p.netloc or '').lower()}"


def parse_sitemap_xml(xml: str) -> tuple[list[SitemapEntry], list[str]]:
    """Return (page entries, child sitemap URLs) from a urlset or sitemapindex document."""
    soup = BeautifulSoup(xml or "", "xml")
    children: list[str] = []
    for sm in soup.find_all("sitemap"):
        loc = sm.find("loc")
        if loc is not None and loc.get_text(strip=True):
            children.append(loc.get_text(strip=True))

    entries: list[SitemapEntry] = []
    for node in soup.find_all("url"):
        loc = node.find("loc")
        if loc is None or not loc.get_text(strip=True):
            continue
        lastmod = node.find("lastmod")
        priority = node.find("priority")
        prio: Optional[float] = None
        if priority is not None:
            try:
                prio = float(priority.get_text(strip=True))
            except ValueError:
                prio = None
        entries.append(
            SitemapEntry(
                loc=loc.get_text(strip=True),
                lastmod=lastmod.get_text(strip=True) if lastmod is not None else None,
                priority=prio,
            )
        )
    return entries, children


class SiteStructureDiscoverer:
    def __init__(
        self,
        fetcher: WebContentFetcher,
        *,
        well_known_paths: list[str] | tuple[str, ...] = ("/sitemap.xml", "/sitemap_index.xml"),
        cache_ttl_seconds: int = 3600,
        max_depth: int = 3,
        max_urls: int = 5000,
        respect_robots_txt: bool = True,
        rate_limiter: DomainRateLimiter | None = None,
    ):
        self._fetcher = fetcher
        self._well_known = tuple(well_known_paths)
        self._ttl = int(cache_ttl_seconds)
        self._max_depth = int(max_depth)
        self._max_urls = int(max_urls)
        self._respect_robots = bool(respect_robots_txt)
        self._rate_limiter = rate_limiter
        self._cache: Dict[str, _RobotsEntry] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._global_lock = asyncio.Lock()

    async def _get_lock(self, key: str) -> asyncio.Lock:
        async with self._global_lock:
            lock = self._locks.get(key)
            if lock is None:
                lock = asyncio.Lock()
                self._locks[key] = lock
            return lock

    async def fetch_robots(self, url: str, deadline: Deadline | None = None) -> RobotsRules:
        key = _origin(url)
        entry = self._cache.get(key)
        if entry and entry.expires_at > _now():
            return entry.rules

        lock = await self._get_lock(key)
        async with lock:
            # Double-check under lock
            entry = self._cache.get(key)
            if entry and entry.expires_at > _now():
                return entry.rules

            try:
                page = await self._fetcher.fetch(f"{key}/robots.txt", deadline=deadline, raw=True)
                rules = parse_robots_txt(page.html, self._fetcher.user_agent) if page else RobotsRules.allow_all()
            except _FETCH_ERRORS as e:
                # Fail-open per policy
                logger.info("robots_fetch_failed", origin=key, error=str(e))
                rules = RobotsRules.allow_all()

            if rules.crawl_delay and self._rate_limiter is not None:
                await self._rate_limiter.set_min_interval(key, rules.crawl_delay)
            self._cache[key] = _RobotsEntry(rules=rules, expires_at=_now() + self._ttl)
            logger.debug(
                "robots_loaded",
                origin=key,
                rules=len(rules.rules),
                sitemaps=len(rules.sitemaps),
                crawl_delay=rules.crawl_delay,
            )
            return rules

    async def is_allowed(self, url: str, deadline: Deadline | None = None) -> bool:
        """Return True if robots.txt allows fetching the given URL."""
        if not self._respect_robots:
            return True
        rules = await self.fetch_robots(url, deadline)
        return rules.is_allowed(normalize_url(url))

    async def discover_sitemaps(self, url: str, deadline: Deadline | None = None) -> list[SitemapEntry]:
        """All page entries reachable from robots-declared (else well-known) sitemaps, deduplicated."""
        origin = _origin(url)
        rules = await self.fetch_robots(origin, deadline)

        seen_sitemaps: set[str] = set()
        entries: dict[str, SitemapEntry] = {}

        declared = list(rules.sitemaps)
        for sitemap_url in declared:
            await self._collect(sitemap_url, 0, deadline, seen_sitemaps, entries)

        if not entries:
            if declared:
                logger.info("robots_sitemaps_empty_trying_well_known", origin=origin)
            for path in self._well_known:
                await self._collect(urljoin(origin + "/", path.lstrip("/")), 0, deadline, seen_sitemaps, entries)

        logger.info("sitemaps_discovered", origin=origin, sitemaps=len(seen_sitemaps), urls=len(entries))
        return list(entries.values())

    async def _collect(
        self,
        sitemap_url: str,
        depth: int,
        deadline: Deadline | None,
        seen: set[str],
        entries: dict[str, SitemapEntry],
    ) -> None:
        if sitemap_url in seen or len(entries) >= self._max_urls:
            return
        seen.add(sitemap_url)
        if depth > self._max_depth:
            logger.info("sitemap_depth_exceeded", url=sitemap_url, depth=depth)
            return
        if urlparse(sitemap_url).path.lower().endswith(".gz"):
            logger.debug("sitemap_compressed_skipped", url=sitemap_url)
            return
        if not await self.is_allowed(sitemap_url, deadline):
            logger.info("sitemap_disallowed", url=sitemap_url)
            return

        try:
            page = await self._fetcher.fetch(sitemap_url, deadline=deadline, raw=True)
        except _FETCH_ERRORS as e:
            logger.info("sitemap_fetch_failed", url=sitemap_url, error=str(e))
            return
        if page is None:
            return

        urls, children = parse_sitemap_xml(page.html)
        for entry in urls:
            if len(entries) >= self._max_urls:
                break
            entries.setdefault(entry.loc, entry)
        for child in children:
            await self._collect(child, depth + 1, deadline, seen, entries)
