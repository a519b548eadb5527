from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from competitor_intel.crawl import fetcher as fetcher_module
from competitor_intel.crawl.fallback import CrawlFallback
from competitor_intel.crawl.fetcher import WebContentFetcher
from competitor_intel.crawl.site_structure import SiteStructureDiscoverer
from competitor_intel.domain.errors import AccessDeniedError, ServerError

FULL_PAGE = "<html><body><p>" + " ".join(f"word{i}" for i in range(40)) + "</p></body></html>"
SHELL_PAGE = "<html><body><div id='root'></div><script>app()</script></body></html>"


@asynccontextmanager
async def serve(handler):
    app = web.Application()
    app.router.add_route("GET", "/{tail:.*}", handler)
    server = TestServer(app)
    await server.start_server()
    try:
        yield server
    finally:
        await server.close()


def _fetcher(**kwargs) -> WebContentFetcher:
    kwargs.setdefault("max_retries", 2)
    return WebContentFetcher(desktop_user_agent="DesktopBot/1.0", mobile_user_agent="MobileBot/1.0", **kwargs)


@pytest.fixture
def slept(monkeypatch) -> list[float]:
    delays: list[float] = []

    async def fake_sleep(seconds: float) -> None:
        delays.append(seconds)

    monkeypatch.setattr(fetcher_module, "_sleep", fake_sleep)
    return delays


def test_fetch_returns_page_from_desktop_agent() -> None:
    seen: list[str] = []

    async def handler(request: web.Request) -> web.Response:
        seen.append(request.headers["User-Agent"])
        return web.Response(text=FULL_PAGE, content_type="text/html")

    async def run():
        async with serve(handler) as server:
            return await _fetcher().fetch(str(server.make_url("/")))

    page = asyncio.run(run())
    assert page is not None
    assert page.status == 200
    assert page.source == "desktop"
    assert "word39" in page.html
    assert seen == ["DesktopBot/1.0"]


def test_not_found_is_terminal_and_returns_none(slept) -> None:
    calls: list[str] = []

    async def handler(request: web.Request) -> web.Response:
        calls.append(request.path)
        return web.Response(status=404)

    async def run():
        async with serve(handler) as server:
            return await _fetcher().fetch(str(server.make_url("/missing")))

    assert asyncio.run(run()) is None
    assert calls == ["/missing"]
    assert slept == []


def test_access_denied_blocks_the_domain(slept) -> None:
    calls: list[str] = []

    async def handler(request: web.Request) -> web.Response:
        calls.append(request.path)
        return web.Response(status=403)

    async def run() -> None:
        async with serve(handler) as server:
            fetcher = _fetcher()
            with pytest.raises(AccessDeniedError):
                await fetcher.fetch(str(server.make_url("/a")))
            assert fetcher.is_denied(str(server.make_url("/b")))
            with pytest.raises(AccessDeniedError):
                await fetcher.fetch(str(server.make_url("/b")))

    asyncio.run(run())
    assert calls == ["/a"]


def test_blocked_robots_txt_does_not_block_the_domain(slept) -> None:
    async def handler(request: web.Request) -> web.Response:
        if request.path == "/robots.txt":
            return web.Response(status=403)
        return web.Response(text=FULL_PAGE, content_type="text/html")

    async def run():
        async with serve(handler) as server:
            fetcher = _fetcher()
            structure = SiteStructureDiscoverer(fetcher)
            rules = await structure.fetch_robots(str(server.make_url("/")))
            assert rules.is_allowed(str(server.make_url("/rooms")))
            assert not fetcher.is_denied(str(server.make_url("/")))
            return await fetcher.fetch(str(server.make_url("/")))

    page = asyncio.run(run())
    assert page is not None and page.source == "desktop"


def test_rate_limited_retries_honour_retry_after(slept) -> None:
    calls = {"n": 0}

    async def handler(request: web.Request) -> web.Response:
        calls["n"] += 1
        if calls["n"] <= 2:
            return web.Response(status=429, headers={"Retry-After": "2"})
        return web.Response(text=FULL_PAGE, content_type="text/html")

    async def run():
        async with serve(handler) as server:
            return await _fetcher().fetch(str(server.make_url("/")))

    page = asyncio.run(run())
    assert page is not None and page.source == "desktop"
    assert calls["n"] == 3
    assert slept == [2.0, 2.0]


def test_server_errors_exhaust_desktop_retries_then_one_mobile_attempt(slept) -> None:
    agents: list[str] = []

    async def handler(request: web.Request) -> web.Response:
        agents.append(request.headers["User-Agent"])
        return web.Response(status=503)

    async def run() -> None:
        async with serve(handler) as server:
            with pytest.raises(ServerError):
                await _fetcher(retry_backoff_seconds=1.0).fetch(str(server.make_url("/")))

    asyncio.run(run())
    assert agents == ["DesktopBot/1.0"] * 3 + ["MobileBot/1.0"]
    assert slept == [1.0, 2.0]


def test_empty_shell_falls_back_to_mobile_agent() -> None:
    async def handler(request: web.Request) -> web.Response:
        if request.headers["User-Agent"].startswith("Mobile"):
            return web.Response(text=FULL_PAGE, content_type="text/html")
        return web.Response(text=SHELL_PAGE, content_type="text/html")

    async def run():
        async with serve(handler) as server:
            return await _fetcher(min_word_count=20).fetch(str(server.make_url("/")))

    page = asyncio.run(run())
    assert page is not None and page.source == "mobile"


class StaticFallback(CrawlFallback):
    name = "static"

    def __init__(self, html: str | None):
        self.html = html
        self.urls: list[str] = []

    async def fetch_html(self, url: str, timeout_seconds: float) -> str | None:
        self.urls.append(url)
        return self.html


def test_managed_fallback_used_after_both_agents_return_shells() -> None:
    async def handler(request: web.Request) -> web.Response:
        return web.Response(text=SHELL_PAGE, content_type="text/html")

    fallback = StaticFallback(FULL_PAGE)

    async def run():
        async with serve(handler) as server:
            return await _fetcher(fallback=fallback).fetch(str(server.make_url("/")))

    page = asyncio.run(run())
    assert page is not None and page.source == "static"
    assert len(fallback.urls) == 1


def test_shell_page_returned_when_nothing_better_exists() -> None:
    async def handler(request: web.Request) -> web.Response:
        return web.Response(text=SHELL_PAGE, content_type="text/html")

    async def run():
        async with serve(handler) as server:
            return await _fetcher(fallback=StaticFallback(None)).fetch(str(server.make_url("/")))

    page = asyncio.run(run())
    assert page is not None
    assert "root" in page.html


def test_raw_fetch_skips_quality_check() -> None:
    async def handler(request: web.Request) -> web.Response:
        return web.Response(text="User-agent: *\nDisallow: /admin\n")

    fallback = StaticFallback(FULL_PAGE)

    async def run():
        async with serve(handler) as server:
            return await _fetcher(fallback=fallback).fetch(str(server.make_url("/robots.txt")), raw=True)

    page = asyncio.run(run())
    assert page is not None and page.html.startswith("User-agent")
    assert fallback.urls == []


def test_concurrent_fetches_of_same_url_are_coalesced() -> None:
    calls = {"n": 0}

    async def handler(request: web.Request) -> web.Response:
        calls["n"] += 1
        await asyncio.sleep(0.05)
        return web.Response(text=FULL_PAGE, content_type="text/html")

    async def run():
        async with serve(handler) as server:
            fetcher = _fetcher()
            url = str(server.make_url("/page"))
            return await asyncio.gather(fetcher.fetch(url), fetcher.fetch(url + "#section"))

    first, second = asyncio.run(run())
    assert calls["n"] == 1
    assert first == second
