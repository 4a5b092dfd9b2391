"""
Page Index Arithmetic
=====================
Pure functions mapping the site's newest-first pagination onto the dense,
oldest-first local (page_id, index_in_page) space.

The site's last page is the oldest and usually only partially filled, so
every local position is shifted back by ``offset`` products.
"""

import math
from typing import Tuple

from .models import CrawlingRange


def to_local_page_number(site_page: int, total_site_pages: int) -> int:
    """Site page number → site page counted from the oldest end (0-based)."""
    return total_site_pages - site_page


def to_site_page_number(local_page_number: int, total_site_pages: int) -> int:
    return total_site_pages - local_page_number


def calculate_offset(last_page_product_count: int, products_per_page: int) -> int:
    """Number of empty slots on the site's last page (0 if it is full)."""
    if last_page_product_count <= 0 or last_page_product_count >= products_per_page:
        return 0
    return products_per_page - last_page_product_count


def map_to_local(
    site_page_number: int,
    site_index_in_page: int,
    offset: int,
    products_per_page: int,
) -> Tuple[int, int]:
    """
    Map a product's position on the site to its local (page_id, index_in_page).

    Args:
        site_page_number: Page counted from the oldest end (see ``to_local_page_number``)
        site_index_in_page: Position within that page, oldest item first
        offset: Value of ``calculate_offset`` for the current site
        products_per_page: Site page size

    Returns:
        ``(page_id, index_in_page)``
    """
    absolute = products_per_page * site_page_number + site_index_in_page - offset
    if absolute < 0:
        # Negative positions on the oldest page fall back to the raw index.
        absolute = site_index_in_page
    return absolute // products_per_page, absolute % products_per_page


def site_product_count(total_pages: int, last_page_count: int, products_per_page: int) -> int:
    if total_pages <= 0:
        return 0
    return (total_pages - 1) * products_per_page + last_page_count


def calculate_crawling_range(
    total_site_pages: int,
    last_page_product_count: int,
    user_limit: int,
    local_record_count: int,
    products_per_page: int = 12,
) -> CrawlingRange:
    """
    Decide which site pages the next list pass should visit.

    With an empty store the crawl starts at the site's last page and walks
    back ``user_limit`` pages (to page 1 when unlimited).  Otherwise it starts
    where local coverage ends and walks back over the remaining pages, or
    ``user_limit`` pages if that is smaller.  Both ends are floored at page 1,
    so new products that still fit on site page 1 are picked up.

    ``CrawlingRange(0, 0)`` means the store already holds every site product.
    """
    if total_site_pages <= 0:
        return CrawlingRange(0, 0)

    site_count = site_product_count(total_site_pages, last_page_product_count, products_per_page)
    if local_record_count >= site_count:
        return CrawlingRange(0, 0)

    collected_pages = math.ceil(local_record_count / products_per_page) if local_record_count > 0 else 0

    if collected_pages == 0:
        start_page = total_site_pages
        if user_limit > 0:
            end_page = max(1, total_site_pages - user_limit + 1)
        else:
            end_page = 1
        return CrawlingRange(start_page, end_page)

    start_page = max(1, total_site_pages - collected_pages)
    pages_to_collect = min(user_limit, start_page) if user_limit > 0 else start_page
    end_page = max(1, start_page - pages_to_collect + 1)
    return CrawlingRange(start_page, end_page)
