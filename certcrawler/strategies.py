"""
Page Fetch Clients
==================
Two interchangeable ways of fetching site documents behind one contract:

- ``HttpFetchClient``: requests + BeautifulSoup.  Cheap and fast; the default.
- ``BrowserFetchClient``: headless Playwright.  Handles script-rendered
  content at a higher resource cost.

Both only differ in how HTML is obtained (``_fetch_html``).  Pagination,
listing and detail fields are extracted by the same functions in
``extraction.py``, so results are interchangeable.  ``create_fetch_client``
picks one from configuration; there is no runtime fallback chain.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Generic, List, Optional, TypeVar

import requests
from playwright.async_api import TimeoutError as PlaywrightTimeout

from .browser import BrowserManager
from .config import CrawlerConfig
from .errors import (
    DetailFetchError,
    PageAbortedError,
    PageContentExtractionError,
    PageNavigationError,
    PageOperationError,
    PageTimeoutError,
)
from .extraction import (
    count_list_items,
    extract_list_items,
    extract_product_details,
    extract_total_pages,
    parse_document,
)
from .models import ListRecord, RawListing, TotalPagesInfo
from .pool import CancelToken, interruptible_sleep, race_operation

logger = logging.getLogger(__name__)

MAX_FETCH_TOTAL_PAGES_ATTEMPTS = 3
RETRY_DELAY_MS = 2500

_USER_AGENTS = [
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/121.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/122.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:123.0) Gecko/20100101 Firefox/123.0",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 14_3) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Version/17.3 Safari/605.1.15",
]

T = TypeVar("T")


# ---------------------------------------------------------------------------
# TTL cache
# ---------------------------------------------------------------------------

class TtlCache(Generic[T]):
    """Single-value cache with a time-to-live, filled by an async fetcher."""

    def __init__(self, ttl_seconds: float, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._value: Optional[T] = None
        self._stored_at: Optional[float] = None

    def has_valid(self) -> bool:
        if self._stored_at is None:
            return False
        return self._clock() - self._stored_at < self.ttl_seconds

    def get(self) -> Optional[T]:
        return self._value if self.has_valid() else None

    def set(self, value: T) -> None:
        self._value = value
        self._stored_at = self._clock()

    def invalidate(self) -> None:
        self._value = None
        self._stored_at = None

    async def get_or_fetch(self, fetch: Callable[[], Awaitable[T]], force_refresh: bool = False) -> T:
        if not force_refresh and self.has_valid():
            return self._value
        value = await fetch()
        self.set(value)
        return value


# ---------------------------------------------------------------------------
# Contract
# ---------------------------------------------------------------------------

@dataclass
class PageCrawlResult:
    page_number: int
    url: str
    attempt: int
    raw_products: List[RawListing] = field(default_factory=list)


class PageFetchClient(ABC):
    """
    Fetch-strategy contract.

    Lifecycle: ``initialize()`` → any number of ``fetch_total_pages`` /
    ``crawl_page`` / ``fetch_detail`` calls → ``cleanup()``.  ``refresh()``
    drops connection state between passes.
    """

    name = "base"

    def __init__(self, config: CrawlerConfig):
        self.config = config
        self._total_pages_cache: TtlCache[TotalPagesInfo] = TtlCache(config.cache_ttl_ms / 1000.0)

    # ---- strategy hooks ----

    @abstractmethod
    async def initialize(self) -> None:
        ...

    @abstractmethod
    async def refresh(self) -> None:
        ...

    @abstractmethod
    async def cleanup(self) -> None:
        ...

    @abstractmethod
    async def _fetch_html(
        self,
        url: str,
        timeout_ms: int,
        token: Optional[CancelToken],
        page_number: Optional[int] = None,
        attempt: int = 1,
    ) -> str:
        """Return the document HTML or raise a ``PageOperationError`` subclass."""

    # ---- shared operations ----

    async def fetch_total_pages(
        self,
        force_refresh: bool = False,
        token: Optional[CancelToken] = None,
    ) -> TotalPagesInfo:
        """Total site pages and the product count of the last page (cached)."""
        return await self._total_pages_cache.get_or_fetch(
            lambda: self._fetch_total_pages_with_retry(token), force_refresh
        )

    async def _fetch_total_pages_with_retry(self, token: Optional[CancelToken]) -> TotalPagesInfo:
        last_error: Optional[Exception] = None
        for attempt in range(1, MAX_FETCH_TOTAL_PAGES_ATTEMPTS + 1):
            try:
                return await self._fetch_total_pages_once(token, attempt)
            except PageAbortedError:
                raise
            except PageOperationError as e:
                last_error = e
                logger.warning(
                    f"[{self.name.upper()}] Total pages attempt "
                    f"{attempt}/{MAX_FETCH_TOTAL_PAGES_ATTEMPTS} failed: {e}"
                )
                if attempt < MAX_FETCH_TOTAL_PAGES_ATTEMPTS:
                    await interruptible_sleep(RETRY_DELAY_MS / 1000.0, token)
        raise last_error

    async def _fetch_total_pages_once(self, token: Optional[CancelToken], attempt: int) -> TotalPagesInfo:
        url = self.config.matter_filter_url
        soup = parse_document(await self._fetch_html(url, self.config.page_timeout_ms, token, attempt=attempt))
        total_pages = extract_total_pages(soup)

        if total_pages <= 0:
            products = count_list_items(soup)
            if products <= 0:
                raise PageContentExtractionError(
                    "No pagination and no products on the first page", attempt=attempt
                )
            logger.info(f"[{self.name.upper()}] No pagination, single page with {products} products")
            return TotalPagesInfo(total_pages=1, last_page_count=products)

        last_url = self.config.page_url(total_pages)
        last_soup = parse_document(
            await self._fetch_html(last_url, self.config.page_timeout_ms, token, total_pages, attempt)
        )
        last_page_count = count_list_items(last_soup)
        logger.info(
            f"[{self.name.upper()}] Site has {total_pages} pages, "
            f"{last_page_count} products on the last page"
        )
        return TotalPagesInfo(total_pages=total_pages, last_page_count=last_page_count)

    async def crawl_page(
        self,
        page_number: int,
        token: Optional[CancelToken] = None,
        attempt: int = 1,
    ) -> PageCrawlResult:
        """Fetch one listing page and extract its product cards.

        Raises:
            PageContentExtractionError: the page had no product cards
        """
        url = self.config.page_url(page_number)
        html = await self._fetch_html(url, self.config.page_timeout_ms, token, page_number, attempt)
        raw_products = extract_list_items(parse_document(html))
        if not raw_products:
            raise PageContentExtractionError(
                f"No products extracted from page {page_number}",
                page_number=page_number, attempt=attempt,
            )
        return PageCrawlResult(page_number=page_number, url=url, attempt=attempt, raw_products=raw_products)

    async def fetch_detail(
        self,
        record: ListRecord,
        token: Optional[CancelToken] = None,
        attempt: int = 1,
    ) -> Dict[str, Any]:
        """Fetch one product page and return its detail delta."""
        try:
            html = await self._fetch_html(record.url, self.config.product_detail_timeout_ms, token, attempt=attempt)
        except (PageAbortedError, PageTimeoutError):
            raise
        except PageOperationError as e:
            raise DetailFetchError(str(e), url=record.url, attempt=attempt) from e
        return extract_product_details(parse_document(html), record)


# ---------------------------------------------------------------------------
# HTTP strategy
# ---------------------------------------------------------------------------

class HttpFetchClient(PageFetchClient):
    """requests-based client; the blocking call runs in the default executor."""

    name = "http"

    def __init__(self, config: CrawlerConfig):
        super().__init__(config)
        self._session: Optional[requests.Session] = None

    def _headers(self) -> Dict[str, str]:
        return {
            'User-Agent': self.config.user_agent or random.choice(_USER_AGENTS),
            'Accept': 'text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8',
            'Accept-Language': 'en-US,en;q=0.9',
            'Referer': 'https://csa-iot.org/',
            'Cache-Control': 'no-cache',
            'Sec-Fetch-Dest': 'document',
            'Sec-Fetch-Mode': 'navigate',
            'Sec-Fetch-Site': 'same-origin',
            'Upgrade-Insecure-Requests': '1',
        }

    async def initialize(self) -> None:
        if self._session is None:
            self._session = requests.Session()
            logger.info("[HTTP] Session initialized")

    async def refresh(self) -> None:
        await self.cleanup()
        await self.initialize()

    async def cleanup(self) -> None:
        if self._session is not None:
            self._session.close()
            self._session = None

    async def _fetch_html(self, url, timeout_ms, token, page_number=None, attempt=1) -> str:
        if self._session is None:
            await self.initialize()
        session = self._session
        headers = self._headers()

        def _sync_fetch():
            return session.get(url, headers=headers, timeout=timeout_ms / 1000.0)

        loop = asyncio.get_running_loop()
        try:
            response = await race_operation(
                loop.run_in_executor(None, _sync_fetch), token, timeout_ms, page_number, attempt
            )
        except requests.Timeout as e:
            raise PageTimeoutError(f"HTTP timeout: {url}", page_number, attempt) from e
        except requests.RequestException as e:
            raise PageNavigationError(f"HTTP request failed: {e}", page_number, attempt) from e

        if response.status_code >= 400:
            raise PageNavigationError(f"HTTP {response.status_code} for {url}", page_number, attempt)
        return response.text


# ---------------------------------------------------------------------------
# Browser strategy
# ---------------------------------------------------------------------------

class BrowserFetchClient(PageFetchClient):
    """Playwright-based client sharing one browser context per session."""

    name = "browser"

    def __init__(self, config: CrawlerConfig, manager: Optional[BrowserManager] = None):
        super().__init__(config)
        self.manager = manager or BrowserManager(headless=config.headless, user_agent=config.user_agent)

    async def initialize(self) -> None:
        await self.manager.initialize()

    async def refresh(self) -> None:
        await self.manager.force_refresh_context()

    async def cleanup(self) -> None:
        await self.manager.close()

    async def _fetch_html(self, url, timeout_ms, token, page_number=None, attempt=1) -> str:
        if token is not None:
            token.raise_if_cancelled(page_number)
        page = await self.manager.new_page()
        try:
            async def _load() -> str:
                response = await page.goto(url, wait_until="domcontentloaded", timeout=timeout_ms)
                if response is not None and response.status >= 400:
                    raise PageNavigationError(f"HTTP {response.status} for {url}", page_number, attempt)
                return await page.content()

            return await race_operation(_load(), token, timeout_ms, page_number, attempt)
        except PlaywrightTimeout as e:
            raise PageTimeoutError(f"Navigation timeout: {url}", page_number, attempt) from e
        except PageOperationError:
            raise
        except Exception as e:
            raise PageNavigationError(f"Navigation failed: {e}", page_number, attempt) from e
        finally:
            await self.manager.close_page(page)


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------

_STRATEGIES = {
    "http": HttpFetchClient,
    "browser": BrowserFetchClient,
}


def create_fetch_client(config: CrawlerConfig) -> PageFetchClient:
    """Build the fetch client selected by ``config.crawler_type``."""
    client_cls = _STRATEGIES.get(config.crawler_type, HttpFetchClient)
    logger.info(f"[STRATEGY] Using {client_cls.name} fetch client")
    return client_cls(config)
