"""
Shared fixtures: an in-memory fake site and a fetch client that serves it.

The fake site lays ``total_products`` products out newest first, twelve to a
page, exactly like the real catalogue.  While the oldest page holds at most
six products, product ``k`` (0 = oldest) lands on local position
``(k // 12, k % 12)``.
"""

import asyncio
import math
import re

import pytest

from certcrawler.config import CrawlerConfig
from certcrawler.errors import PageNavigationError
from certcrawler.storage import JsonRecordStore
from certcrawler.strategies import PageFetchClient

_PAGED_RE = re.compile(r"&paged=(\d+)$")
_PRODUCT_RE = re.compile(r"/product/(\d+)$")

PRODUCT_BASE = "https://certs.example.test/product/"


def product_url(k: int) -> str:
    return f"{PRODUCT_BASE}{k}"


def card_html(k: int) -> str:
    return (
        "<article>"
        f'<a href="{product_url(k)}"><h3 class="entry-title">Model {k}</h3></a>'
        f'<p class="entry-company notranslate">Vendor {k}</p>'
        f'<p class="entry-certificate-id">Certificate ID: CSA{k:05d}MAT-24</p>'
        "</article>"
    )


def pagination_html(total_pages: int) -> str:
    if total_pages <= 1:
        return ""
    links = "".join(f"<a><span>{n}</span></a>" for n in (1, 2, total_pages))
    return f'<div class="pagination-wrapper"><nav><div>{links}</div></nav></div>'


def listing_html(product_ids, total_pages: int) -> str:
    cards = "".join(card_html(k) for k in product_ids)
    return (
        "<html><body>"
        f'<div class="post-feed">{cards}</div>'
        f"{pagination_html(total_pages)}"
        "</body></html>"
    )


def detail_html(k: int) -> str:
    return (
        "<html><body>"
        f'<h1 class="entry-title">Model {k}</h1>'
        '<div class="entry-product-details"><div><ul>'
        f'<li><span class="label">Manufacturer</span><span class="value">Vendor {k}</span></li>'
        '<li><span class="label">Vendor ID</span><span class="value">0x1234</span></li>'
        f'<li><span class="label">Product ID</span><span class="value">0x{k:04X}</span></li>'
        '<li><span class="label">Certification Date</span><span class="value">2024-01-15</span></li>'
        '<li><span class="label">Firmware Version</span><span class="value">1.2.3</span></li>'
        "</ul></div></div>"
        "</body></html>"
    )


class FakeSite:
    """Newest-first paginated catalogue of ``total_products`` products."""

    def __init__(self, total_products: int, products_per_page: int = 12):
        self.total_products = total_products
        self.ppp = products_per_page

    @property
    def total_pages(self) -> int:
        return max(1, math.ceil(self.total_products / self.ppp))

    @property
    def last_page_count(self) -> int:
        return self.total_products - (self.total_pages - 1) * self.ppp

    def page_products(self, page_number: int):
        """Product ids on one site page in DOM order (newest first)."""
        newest = self.total_products - 1 - (page_number - 1) * self.ppp
        oldest = max(0, newest - self.ppp + 1)
        return list(range(newest, oldest - 1, -1))


class FakeFetchClient(PageFetchClient):
    """
    ``PageFetchClient`` over a ``FakeSite``.

    ``page_failures`` / ``detail_failures`` map a site page number or a
    product id to how many times its fetch should fail before succeeding.
    ``on_fetch(url)`` runs before every fetch is served.
    """

    name = "fake"

    def __init__(self, config, site, page_failures=None, detail_failures=None, on_fetch=None):
        super().__init__(config)
        self.site = site
        self.page_failures = dict(page_failures or {})
        self.detail_failures = dict(detail_failures or {})
        self.on_fetch = on_fetch
        self.fetched = []
        self.initialized = 0
        self.refreshed = 0
        self.cleaned_up = 0

    async def initialize(self):
        self.initialized += 1

    async def refresh(self):
        self.refreshed += 1

    async def cleanup(self):
        self.cleaned_up += 1

    async def _fetch_html(self, url, timeout_ms, token, page_number=None, attempt=1):
        if token is not None:
            token.raise_if_cancelled(page_number)
        await asyncio.sleep(0)
        self.fetched.append(url)
        if self.on_fetch is not None:
            self.on_fetch(url)

        product = _PRODUCT_RE.search(url)
        if product:
            k = int(product.group(1))
            if self.detail_failures.get(k, 0) > 0:
                self.detail_failures[k] -= 1
                raise PageNavigationError(f"HTTP 503 for {url}", attempt=attempt)
            return detail_html(k)

        paged = _PAGED_RE.search(url)
        page = int(paged.group(1)) if paged else 1
        if self.page_failures.get(page, 0) > 0:
            self.page_failures[page] -= 1
            raise PageNavigationError(f"HTTP 503 for {url}", page, attempt)
        return listing_html(self.site.page_products(page), self.site.total_pages)


def fast_config(**overrides) -> CrawlerConfig:
    """Configuration with every delay switched off."""
    values = dict(
        min_request_delay_ms=0,
        max_request_delay_ms=0,
        backoff_base_ms=0,
        backoff_max_ms=0,
        batch_delay_ms=0,
        initial_concurrency=4,
        detail_concurrency=4,
        retry_concurrency=2,
        product_list_retry_count=3,
        product_detail_retry_count=3,
        page_range_limit=0,
        matter_filter_url="https://certs.example.test/products/?type=matter",
    )
    values.update(overrides)
    return CrawlerConfig(**values).validate()


@pytest.fixture
def config():
    return fast_config()


@pytest.fixture
def store(tmp_path):
    return JsonRecordStore(str(tmp_path / "products.json"))
