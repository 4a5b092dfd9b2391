"""
Tests for the browser strategy: page leasing in BrowserFetchClient and the
BrowserManager lifecycle, over stand-in Playwright handles.
"""

import asyncio

import pytest
from playwright.async_api import TimeoutError as PlaywrightTimeout

from certcrawler.browser import BrowserManager, _route_handler
from certcrawler.errors import PageNavigationError, PageTimeoutError
from certcrawler.strategies import BrowserFetchClient

from conftest import fast_config


class FakeResponse:
    def __init__(self, status):
        self.status = status


class FakePage:
    def __init__(self, html="<html><body></body></html>", status=200, goto_error=None):
        self.html = html
        self.status = status
        self.goto_error = goto_error
        self.closed = False
        self.visited = []

    async def goto(self, url, wait_until=None, timeout=None):
        self.visited.append(url)
        if self.goto_error is not None:
            raise self.goto_error
        return FakeResponse(self.status)

    async def content(self):
        return self.html

    def is_closed(self):
        return self.closed

    async def close(self):
        self.closed = True


class FakeContext:
    def __init__(self, alive=True):
        self.alive = alive
        self.closed = False
        self.pages = []
        self.routes = []

    async def cookies(self):
        if not self.alive:
            raise RuntimeError("Target page, context or browser has been closed")
        return []

    async def new_page(self):
        page = FakePage()
        self.pages.append(page)
        return page

    async def route(self, pattern, handler):
        self.routes.append(pattern)

    async def close(self):
        self.closed = True


class FakeBrowser:
    def __init__(self):
        self.connected = True
        self.contexts = []

    def is_connected(self):
        return self.connected

    async def new_context(self, **kwargs):
        context = FakeContext()
        self.contexts.append(context)
        return context

    async def close(self):
        self.connected = False


class FakePlaywright:
    def __init__(self):
        self.stopped = False

    async def stop(self):
        self.stopped = True


class StubManager:
    """Hands out prepared pages and records every page returned to it."""

    def __init__(self, page):
        self.page = page
        self.leased = []
        self.released = []

    async def new_page(self):
        self.leased.append(self.page)
        return self.page

    async def close_page(self, page):
        self.released.append(page)
        if not page.is_closed():
            await page.close()

    async def initialize(self):
        pass

    async def force_refresh_context(self):
        pass

    async def close(self):
        pass


def _client(page):
    manager = StubManager(page)
    return BrowserFetchClient(fast_config(crawler_type="browser"), manager=manager), manager


# ====================================================================
# BrowserFetchClient
# ====================================================================

class TestBrowserFetchClient:

    def test_returns_content_and_releases_page(self):
        page = FakePage(html="<html>ok</html>")
        client, manager = _client(page)
        html = asyncio.run(client._fetch_html("https://x.test/p", 1000, None))
        assert html == "<html>ok</html>"
        assert page.visited == ["https://x.test/p"]
        assert manager.released == [page]
        assert page.closed

    def test_error_status_releases_page(self):
        page = FakePage(status=404)
        client, manager = _client(page)
        with pytest.raises(PageNavigationError) as exc:
            asyncio.run(client._fetch_html("https://x.test/p", 1000, None, page_number=7, attempt=2))
        assert exc.value.page_number == 7
        assert exc.value.attempt == 2
        assert manager.released == [page]

    def test_navigation_timeout(self):
        page = FakePage(goto_error=PlaywrightTimeout("Timeout 1000ms exceeded"))
        client, manager = _client(page)
        with pytest.raises(PageTimeoutError):
            asyncio.run(client._fetch_html("https://x.test/p", 1000, None))
        assert manager.released == [page]

    def test_other_navigation_errors(self):
        page = FakePage(goto_error=RuntimeError("net::ERR_CONNECTION_RESET"))
        client, manager = _client(page)
        with pytest.raises(PageNavigationError) as exc:
            asyncio.run(client._fetch_html("https://x.test/p", 1000, None))
        assert "ERR_CONNECTION_RESET" in str(exc.value)
        assert manager.released == [page]


# ====================================================================
# BrowserManager
# ====================================================================

class TestBrowserManager:

    def _manager(self, context):
        manager = BrowserManager()
        manager._browser = FakeBrowser()
        manager._context = context
        return manager

    def test_live_context_is_reused(self):
        context = FakeContext()
        manager = self._manager(context)
        page = asyncio.run(manager.new_page())
        assert context.pages == [page]

    def test_dead_context_is_reinitialized(self):
        manager = self._manager(FakeContext(alive=False))
        fresh = FakeContext()
        calls = []

        async def fake_initialize():
            calls.append(1)
            manager._context = fresh

        manager.initialize = fake_initialize
        page = asyncio.run(manager.new_page())
        assert calls == [1]
        assert fresh.pages == [page]

    def test_disconnected_browser_is_invalid(self):
        manager = self._manager(FakeContext())
        manager._browser.connected = False
        assert asyncio.run(manager.is_valid()) is False

    def test_force_refresh_replaces_context(self):
        old = FakeContext()
        manager = self._manager(old)
        asyncio.run(manager.force_refresh_context())
        assert old.closed
        assert manager._context is not old
        assert manager._context.routes == ["**/*"]

    def test_close_releases_everything(self):
        context = FakeContext()
        manager = self._manager(context)
        browser = manager._browser
        playwright = FakePlaywright()
        manager._playwright = playwright

        async def main():
            leaked = await manager.new_page()
            await manager.close()
            await manager.close()
            return leaked

        leaked = asyncio.run(main())
        assert leaked.closed
        assert context.closed
        assert not browser.connected
        assert playwright.stopped
        assert manager._context is None and manager._browser is None

    def test_close_page_ignores_closed_pages(self):
        page = FakePage()
        page.closed = True
        asyncio.run(BrowserManager().close_page(page))
        asyncio.run(BrowserManager().close_page(None))
        assert page.closed


class _Request:
    def __init__(self, resource_type, url="https://csa-iot.org/x"):
        self.resource_type = resource_type
        self.url = url


class _Route:
    def __init__(self, request):
        self.request = request
        self.outcome = None

    async def abort(self):
        self.outcome = "abort"

    async def continue_(self):
        self.outcome = "continue"


class TestRouteHandler:

    def _route(self, resource_type, url):
        route = _Route(_Request(resource_type, url))
        asyncio.run(_route_handler(route))
        return route.outcome

    def test_heavy_resources_are_blocked(self):
        assert self._route("image", "https://csa-iot.org/a.png") == "abort"
        assert self._route("font", "https://csa-iot.org/a.woff") == "abort"

    def test_analytics_scripts_are_blocked(self):
        assert self._route("script", "https://www.googletagmanager.com/gtm.js") == "abort"

    def test_site_scripts_and_documents_pass(self):
        assert self._route("script", "https://csa-iot.org/app.js") == "continue"
        assert self._route("document", "https://csa-iot.org/products/") == "continue"
