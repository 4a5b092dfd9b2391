"""
Browser Lifecycle
=================
One shared Playwright browser + context per crawl session.

- Pages are leased with ``new_page`` and always returned with ``close_page``.
- A context that fails the liveness check is rebuilt rather than reused.
- ``force_refresh_context`` drops the context (cookies, cache, leaked pages)
  and creates a fresh one; the orchestrator calls it before the detail pass.
"""

from __future__ import annotations

import asyncio
import logging
import re
from typing import Optional

from playwright.async_api import Browser, BrowserContext, Page, async_playwright

from .errors import PageInitializationError

logger = logging.getLogger(__name__)

# Resource types to block for speed
_BLOCKED_RESOURCE_TYPES = frozenset([
    "image", "media", "font", "stylesheet",
])

# URL patterns for analytics/tracking scripts to block
_BLOCKED_URL_PATTERNS = [
    re.compile(r"google[-_]?analytics", re.IGNORECASE),
    re.compile(r"googletagmanager", re.IGNORECASE),
    re.compile(r"facebook\.net", re.IGNORECASE),
    re.compile(r"doubleclick\.net", re.IGNORECASE),
    re.compile(r"hotjar\.", re.IGNORECASE),
]

_LAUNCH_ARGS = [
    '--disable-gpu',
    '--no-sandbox',
    '--disable-dev-shm-usage',
    '--disable-background-networking',
    '--disable-default-apps',
    '--disable-extensions',
    '--disable-sync',
    '--disable-translate',
    '--metrics-recording-only',
    '--no-first-run',
]

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
    "AppleWebKit/537.36 (KHTML, like Gecko) Chrome/122.0.0.0 Safari/537.36"
)


class BrowserManager:
    """
    Owns the Playwright handles for one session.

    Usage::

        manager = BrowserManager(headless=True)
        await manager.initialize()
        page = await manager.new_page()
        try:
            await page.goto(url)
        finally:
            await manager.close_page(page)
        await manager.close()
    """

    def __init__(self, headless: bool = True, user_agent: Optional[str] = None):
        self.headless = headless
        self.user_agent = user_agent or DEFAULT_USER_AGENT

        self._playwright = None
        self._browser: Optional[Browser] = None
        self._context: Optional[BrowserContext] = None
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        """Launch the browser and context unless the current ones are usable."""
        async with self._lock:
            if await self._is_valid():
                return
            await self._close_handles()
            try:
                self._playwright = await async_playwright().start()
                self._browser = await self._playwright.chromium.launch(
                    headless=self.headless, args=_LAUNCH_ARGS,
                )
                self._context = await self._new_context()
            except Exception as e:
                await self._close_handles()
                raise PageInitializationError(f"Browser initialization failed: {e}") from e
            logger.info(f"[BROWSER] Initialized (headless={self.headless})")

    async def is_valid(self) -> bool:
        async with self._lock:
            return await self._is_valid()

    async def _is_valid(self) -> bool:
        if not self._browser or not self._context:
            return False
        if not self._browser.is_connected():
            return False
        try:
            # Liveness check: touching the context fails once it is gone
            _ = self._context.pages
            await self._context.cookies()
            return True
        except Exception as e:
            logger.warning(f"[BROWSER] Context failed liveness check: {e}")
            return False

    async def force_refresh_context(self) -> None:
        """Replace the context with a fresh one, keeping the browser."""
        async with self._lock:
            if not self._browser or not self._browser.is_connected():
                return
            if self._context:
                try:
                    await self._context.close()
                except Exception as e:
                    logger.debug(f"[BROWSER] Closing stale context: {e}")
            self._context = await self._new_context()
            logger.info("[BROWSER] Context refreshed")

    async def close(self) -> None:
        async with self._lock:
            await self._close_handles()
            logger.info("[BROWSER] Closed")

    # ------------------------------------------------------------------
    # Pages
    # ------------------------------------------------------------------

    async def new_page(self) -> Page:
        """Lease a page, re-initializing the browser if it went away."""
        if not await self.is_valid():
            logger.info("[BROWSER] Re-initializing before new page")
            await self.initialize()
        return await self._context.new_page()

    async def close_page(self, page: Optional[Page]) -> None:
        if page is None:
            return
        try:
            if not page.is_closed():
                await page.close()
        except Exception as e:
            logger.debug(f"[BROWSER] Page close failed: {e}")

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _new_context(self) -> BrowserContext:
        context = await self._browser.new_context(
            user_agent=self.user_agent,
            viewport={'width': 1920, 'height': 1080},
            locale='en-US',
        )
        await context.route("**/*", _route_handler)
        return context

    async def _close_handles(self) -> None:
        if self._context:
            try:
                for p in self._context.pages:
                    await self.close_page(p)
                await self._context.close()
            except Exception as e:
                logger.debug(f"[BROWSER] Context close failed: {e}")
            self._context = None
        if self._browser:
            try:
                await self._browser.close()
            except Exception as e:
                logger.debug(f"[BROWSER] Browser close failed: {e}")
            self._browser = None
        if self._playwright:
            try:
                await self._playwright.stop()
            except Exception as e:
                logger.debug(f"[BROWSER] Playwright stop failed: {e}")
            self._playwright = None


async def _route_handler(route) -> None:
    """Block images, fonts, styles and analytics."""
    request = route.request
    if request.resource_type in _BLOCKED_RESOURCE_TYPES:
        await route.abort()
        return
    if request.resource_type == "script":
        for pattern in _BLOCKED_URL_PATTERNS:
            if pattern.search(request.url):
                await route.abort()
                return
    await route.continue_()
