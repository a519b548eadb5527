"""Managed crawl fallbacks for pages that resist direct fetching.

- `SpiderCloudFallback`: Spider crawl API (server-side smart rendering).
- `PlaywrightFallback`: local headless Chromium render.
"""

from __future__ import annotations

import asyncio

import aiohttp
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError
from playwright.async_api import async_playwright

from ..domain.errors import NetworkTimeoutError, ServerError
from ..observability.logger import get_logger

logger = get_logger(__name__)


class CrawlFallback:
    name = "none"

    async def fetch_html(self, url: str, timeout_seconds: float) -> str | None:  # pragma: no cover - interface
        raise NotImplementedError


class SpiderCloudFallback(CrawlFallback):
    """POST /crawl with `limit=1` and `request=smart`; returns the first page's raw content."""

    name = "spider"

    def __init__(self, *, api_key: str, base_url: str = "https://api.spider.cloud", user_agent: str = ""):
        if not api_key:
            raise ValueError("spider api key required")
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._user_agent = user_agent

    async def fetch_html(self, url: str, timeout_seconds: float) -> str | None:
        payload = {
            "url": url,
            "limit": 1,
            "request": "smart",
            "return_format": "raw",
            "metadata": True,
        }
        if self._user_agent:
            payload["headers"] = {"User-Agent": self._user_agent}
        headers = {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
        }
        timeout = aiohttp.ClientTimeout(total=max(1.0, float(timeout_seconds)))
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.post(f"{self._base_url}/crawl", json=payload, headers=headers) as resp:
                    if resp.status >= 400:
                        body = await resp.text()
                        raise ServerError(
                            "spider_request_failed",
                            detail=f"status={resp.status} body={body[:300]}",
                            status=resp.status,
                        )
                    data = await resp.json(content_type=None)
        except (asyncio.TimeoutError, aiohttp.ClientError) as e:
            raise NetworkTimeoutError("spider_timeout_or_network_error", detail=str(e)) from e

        if isinstance(data, list) and data:
            first = data[0]
            content = first.get("content") if isinstance(first, dict) else None
            if isinstance(content, str) and content.strip():
                return content
        logger.info("spider_empty_result", url=url)
        return None


class PlaywrightFallback(CrawlFallback):
    """Headless Chromium render for client-side rendered pages."""

    name = "playwright"

    def __init__(self, *, user_agent: str, default_timeout_ms: int = 30000):
        self._user_agent = user_agent
        self._timeout_ms = default_timeout_ms

    async def fetch_html(self, url: str, timeout_seconds: float) -> str | None:
        timeout = min(self._timeout_ms, max(1000, int(timeout_seconds * 1000)))
        try:
            async with async_playwright() as p:
                browser = await p.chromium.launch(headless=True)
                try:
                    context = await browser.new_context(user_agent=self._user_agent)
                    page = await context.new_page()
                    # "networkidle" is fragile on modern sites due to background requests.
                    await page.goto(url, wait_until="domcontentloaded", timeout=timeout)
                    try:
                        await page.wait_for_load_state("networkidle", timeout=min(5000, timeout))
                    except PlaywrightTimeoutError:
                        # networkidle can be noisy; fall back to a short render wait
                        pass
                    await page.wait_for_timeout(500)
                    return await page.content()
                finally:
                    await browser.close()
        except (asyncio.TimeoutError, PlaywrightTimeoutError) as e:
            raise NetworkTimeoutError(f"Timeout while rendering {url}", detail=str(e)) from e
        except PlaywrightError as e:
            raise ServerError("playwright_render_failed", detail=str(e)) from e
