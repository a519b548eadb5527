"""Resilient HTML fetching.

Order of attempts for one URL:

1. desktop user agent over HTTPS, with bounded retries for 429/5xx/timeouts;
2. the same over HTTP when HTTPS failed transiently;
3. the mobile user agent (single attempt per protocol) when the desktop agent
   got nothing usable (a failure or an empty shell page);
4. the managed crawl fallback, if one is configured.

404/410 ends the fetch with `None`; 401/403 raises `AccessDeniedError` and the
domain is not contacted again by this fetcher. Concurrent fetches of the same
URL share one in-flight attempt.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Optional
from urllib.parse import urlparse, urlunparse

import aiohttp

from ..domain.errors import (
    AccessDeniedError,
    CompetitorIntelError,
    NetworkTimeoutError,
    RateLimitedError,
    ServerError,
)
from ..observability.logger import get_logger
from ..utils.deadline import Deadline, clamp_timeout
from ..utils.quality import assess_quality
from ..utils.rate_limiter import DomainRateLimiter
from ..utils.validators import canonical_url, normalize_domain, normalize_url
from .fallback import CrawlFallback

logger = get_logger(__name__)

HTML_ACCEPT = "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8"
RAW_ACCEPT = "text/plain,application/xml,text/xml;q=0.9,*/*;q=0.8"


async def _sleep(seconds: float) -> None:
    await asyncio.sleep(seconds)


@dataclass(frozen=True)
class FetchedPage:
    url: str
    status: int
    html: str
    # "desktop" | "mobile" | managed fallback name
    source: str


def _parse_retry_after(value: str | None) -> Optional[float]:
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        # HTTP-date form is not worth honouring precisely
        return None


def _decode(body: bytes, charset: str | None) -> str:
    try:
        return body.decode(charset or "utf-8", errors="replace")
    except LookupError:
        # Unknown charset label
        return body.decode("utf-8", errors="replace")


def _http_variant(url: str) -> str | None:
    p = urlparse(url)
    if p.scheme != "https":
        return None
    return urlunparse(("http",) + tuple(p)[1:])


class WebContentFetcher:
    def __init__(
        self,
        *,
        desktop_user_agent: str,
        mobile_user_agent: str,
        accept_language: str = "en-US,en;q=0.5",
        timeout_seconds: float = 10.0,
        max_retries: int = 3,
        retry_backoff_seconds: float = 1.0,
        max_backoff_seconds: float = 30.0,
        max_html_bytes: int = 5 * 1024 * 1024,
        min_word_count: int = 20,
        rate_limiter: DomainRateLimiter | None = None,
        fallback: CrawlFallback | None = None,
    ):
        self._desktop_ua = desktop_user_agent
        self._mobile_ua = mobile_user_agent
        self._accept_language = accept_language
        self._timeout = float(timeout_seconds)
        self._max_retries = max(0, int(max_retries))
        self._backoff = float(retry_backoff_seconds)
        self._max_backoff = float(max_backoff_seconds)
        self._max_bytes = int(max_html_bytes)
        self._min_word_count = int(min_word_count)
        self._rate_limiter = rate_limiter
        self._fallback = fallback
        self._denied_domains: set[str] = set()
        self._inflight: dict[tuple[str, bool], asyncio.Future] = {}

    @property
    def user_agent(self) -> str:
        return self._desktop_ua

    def is_denied(self, url: str) -> bool:
        return normalize_domain(url) in self._denied_domains

    async def fetch(self, url: str, deadline: Deadline | None = None, raw: bool = False) -> FetchedPage | None:
        """Fetch `url` (bare domains get `https://`).

        `raw=True` is for robots.txt/sitemaps: no content-quality check and no
        managed fallback.

        Returns:
            The page, or None when the resource does not exist.

        Raises:
            AccessDeniedError: the domain refused us (401/403).
            RateLimitedError | ServerError | NetworkTimeoutError: every attempt failed transiently.
            DeadlineExceededError: the deadline ran out.
        """
        target = normalize_url(url)
        if self.is_denied(target):
            raise AccessDeniedError("access_denied", detail=f"domain previously denied: {normalize_domain(target)}")

        key = (canonical_url(target), raw)
        shared = self._inflight.get(key)
        if shared is not None:
            logger.debug("fetch_coalesced", url=target, raw=raw)
            return await asyncio.shield(shared)

        task = asyncio.ensure_future(self._fetch_uncoalesced(target, deadline, raw))
        self._inflight[key] = task

        def _forget(t: asyncio.Future) -> None:
            self._inflight.pop(key, None)
            if not t.cancelled():
                # Mark retrieved even when every waiter has gone away
                t.exception()

        task.add_done_callback(_forget)
        return await asyncio.shield(task)

    async def _fetch_uncoalesced(self, url: str, deadline: Deadline | None, raw: bool) -> FetchedPage | None:
        variants = [url]
        http_url = _http_variant(url)
        if http_url:
            variants.append(http_url)

        last_error: CompetitorIntelError | None = None
        weak_page: FetchedPage | None = None

        for label, user_agent, retries in (
            ("desktop", self._desktop_ua, self._max_retries),
            ("mobile", self._mobile_ua, 0),
        ):
            for variant in variants:
                try:
                    page = await self._fetch_with_retries(variant, user_agent, label, retries, deadline, raw)
                except AccessDeniedError:
                    # A blocked robots.txt or sitemap says nothing about the pages
                    if not raw:
                        self._denied_domains.add(normalize_domain(url))
                    logger.warning("fetch_access_denied", url=variant, user_agent=label, raw=raw)
                    raise
                except (RateLimitedError, ServerError, NetworkTimeoutError) as e:
                    last_error = e
                    logger.warning(
                        "fetch_attempt_failed",
                        url=variant,
                        user_agent=label,
                        error_type=type(e).__name__,
                        error=str(e),
                    )
                    continue

                if page is None:
                    return None
                if raw:
                    return page
                report = assess_quality(page.html)
                if not report.is_empty_shell(self._min_word_count):
                    return page
                logger.info("fetch_empty_shell", url=variant, user_agent=label, word_count=report.word_count)
                if weak_page is None or len(page.html) > len(weak_page.html):
                    weak_page = page
                break

        if not raw and self._fallback is not None:
            page = await self._fetch_with_fallback(url, deadline)
            if page is not None:
                return page

        if weak_page is not None:
            return weak_page
        if last_error is not None:
            raise last_error
        return None

    async def _fetch_with_fallback(self, url: str, deadline: Deadline | None) -> FetchedPage | None:
        assert self._fallback is not None
        timeout = clamp_timeout(self._timeout * 3, deadline, stage="fetch_fallback")
        try:
            html = await self._fallback.fetch_html(url, timeout)
        except CompetitorIntelError as e:
            logger.warning("fetch_fallback_failed", url=url, fallback=self._fallback.name, error=str(e))
            return None
        if not html:
            return None
        logger.info("fetch_fallback_succeeded", url=url, fallback=self._fallback.name)
        return FetchedPage(url=url, status=200, html=html, source=self._fallback.name)

    async def _fetch_with_retries(
        self,
        url: str,
        user_agent: str,
        label: str,
        max_retries: int,
        deadline: Deadline | None,
        raw: bool,
    ) -> FetchedPage | None:
        """Fetch with bounded retries for transient failures (429 honours Retry-After)."""
        attempts = max_retries + 1
        for attempt in range(1, attempts + 1):
            try:
                return await self._fetch_once(url, user_agent, label, deadline, raw)
            except RateLimitedError as e:
                if attempt >= attempts:
                    raise
                delay = e.retry_after if e.retry_after is not None else self._backoff * (2 ** (attempt - 1))
                reason = "rate_limited"
            except (ServerError, NetworkTimeoutError) as e:
                if attempt >= attempts:
                    raise
                delay = self._backoff * (2 ** (attempt - 1))
                reason = e.info.code.lower()

            delay = min(delay, self._max_backoff)
            if deadline is not None and deadline.remaining() <= delay:
                deadline.check("fetch_retry")
                raise NetworkTimeoutError("retry_budget_exhausted", detail=url)
            logger.info("fetch_retry_scheduled", url=url, attempt=attempt, delay_s=delay, reason=reason)
            await _sleep(delay)
        return None

    async def _fetch_once(
        self,
        url: str,
        user_agent: str,
        label: str,
        deadline: Deadline | None,
        raw: bool,
    ) -> FetchedPage | None:
        if self._rate_limiter is not None:
            await self._rate_limiter.wait_for_slot(url)

        timeout = aiohttp.ClientTimeout(total=clamp_timeout(self._timeout, deadline, stage="fetch"))
        headers = {
            "User-Agent": user_agent,
            "Accept": RAW_ACCEPT if raw else HTML_ACCEPT,
            "Accept-Language": self._accept_language,
            "Cache-Control": "no-cache",
        }
        try:
            async with aiohttp.ClientSession(timeout=timeout, headers=headers) as session:
                async with session.get(url, allow_redirects=True) as resp:
                    status = resp.status
                    if status in (401, 403):
                        raise AccessDeniedError("access_denied", detail=f"status={status} url={url}")
                    if status == 429:
                        raise RateLimitedError(
                            "rate_limited",
                            detail=url,
                            retry_after=_parse_retry_after(resp.headers.get("Retry-After")),
                        )
                    if status >= 500:
                        raise ServerError("server_error", detail=f"status={status} url={url}", status=status)
                    if status >= 400:
                        # 404/410 and the remaining client errors are terminal
                        logger.info("fetch_not_found", url=url, status=status)
                        return None
                    body = await resp.content.read(self._max_bytes)
                    html = _decode(body, resp.charset)
                    return FetchedPage(url=str(resp.url), status=status, html=html, source=label)
        except asyncio.TimeoutError as e:
            raise NetworkTimeoutError("fetch_timeout", detail=url) from e
        except aiohttp.ClientError as e:
            raise NetworkTimeoutError("fetch_network_error", detail=f"{url}: {e}") from e
