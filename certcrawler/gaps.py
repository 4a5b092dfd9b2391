"""
Gap Detection and Batched Re-collection
=======================================
Finds local pageIds that are absent or incomplete in the store, turns them
into contiguous site-page ranges, and feeds those ranges one at a time
through the crawl engine.

A local pageId straddles two site pages because of the last-page offset:
pageId ``p`` lives on site pages ``total - p`` and ``total - p + 1``.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Set, Tuple

from .errors import PageAbortedError
from .models import GapRange
from .pool import CancelToken, interruptible_sleep
from .storage import RecordStore

logger = logging.getLogger(__name__)

DEFAULT_GAP_BATCH_MAX_PAGES = 5


# ---------------------------------------------------------------------------
# Detection
# ---------------------------------------------------------------------------

@dataclass
class PageGap:
    page_id: int
    missing_indices: List[int]
    expected_count: int
    actual_count: int


@dataclass
class GapDetectionResult:
    missing_pages: List[PageGap] = field(default_factory=list)
    completely_missing_page_ids: List[int] = field(default_factory=list)
    partially_missing_page_ids: List[int] = field(default_factory=list)
    total_missing: int = 0
    total_expected: int = 0

    @property
    def total_actual(self) -> int:
        return self.total_expected - self.total_missing

    @property
    def completion_percentage(self) -> float:
        if self.total_expected <= 0:
            return 100.0
        return round(self.total_actual / self.total_expected * 100, 2)

    @property
    def missing_page_ids(self) -> List[int]:
        return [gap.page_id for gap in self.missing_pages]

    def format_report(self) -> str:
        lines = [
            "=" * 65,
            "  GAP REPORT",
            "=" * 65,
            f"  Expected products:   {self.total_expected}",
            f"  Stored products:     {self.total_actual}",
            f"  Missing products:    {self.total_missing}",
            f"  Completion:          {self.completion_percentage:.2f}%",
            "-" * 65,
            f"  Completely missing:  {len(self.completely_missing_page_ids)} pages",
            f"  Partially missing:   {len(self.partially_missing_page_ids)} pages",
        ]
        for gap in self.missing_pages[:30]:
            lines.append(
                f"    pageId {gap.page_id}: {gap.actual_count}/{gap.expected_count} "
                f"missing {gap.missing_indices}"
            )
        if len(self.missing_pages) > 30:
            lines.append(f"    ... and {len(self.missing_pages) - 30} more pages")
        lines.append("=" * 65)
        return "\n".join(lines)


class GapDetector:
    """
    Compares stored (page_id, index_in_page) positions against the full
    expected id space.

    With ``site_product_count`` the expected space is exactly the site's
    product count laid out densely; otherwise every page from 0 to the
    highest stored page_id is expected to be full.
    """

    def __init__(self, store: RecordStore, products_per_page: int = 12):
        self.store = store
        self.products_per_page = products_per_page

    def _expected_counts(self, site_product_count: Optional[int]) -> Dict[int, int]:
        ppp = self.products_per_page
        if site_product_count:
            pages = math.ceil(site_product_count / ppp)
            counts = {page_id: ppp for page_id in range(pages)}
            remainder = site_product_count - (pages - 1) * ppp
            counts[pages - 1] = remainder
            return counts
        max_page_id = self.store.max_page_id()
        return {page_id: ppp for page_id in range(max_page_id + 1)}

    def detect(self, site_product_count: Optional[int] = None) -> GapDetectionResult:
        positions = self.store.record_positions()
        result = GapDetectionResult()

        for page_id, expected in sorted(self._expected_counts(site_product_count).items()):
            present = positions.get(page_id, set())
            actual = len([i for i in present if i < expected])
            result.total_expected += expected
            if actual >= expected:
                continue
            missing = [i for i in range(expected) if i not in present]
            result.total_missing += len(missing)
            result.missing_pages.append(PageGap(page_id, missing, expected, actual))
            if actual == 0:
                result.completely_missing_page_ids.append(page_id)
            else:
                result.partially_missing_page_ids.append(page_id)

        logger.info(
            f"[GAP] {result.total_missing} products missing across "
            f"{len(result.missing_pages)} pages ({result.completion_percentage:.2f}% complete)"
        )
        return result


# ---------------------------------------------------------------------------
# Range derivation
# ---------------------------------------------------------------------------

def page_id_to_site_pages(page_id: int, total_site_pages: int) -> List[int]:
    """The one or two site pages that hold local ``page_id``."""
    primary = total_site_pages - page_id
    pages = [primary]
    if primary + 1 <= total_site_pages:
        pages.append(primary + 1)
    return [p for p in pages if p >= 1]


def _group_consecutive(values: Iterable[int], max_gap: int = 1) -> List[List[int]]:
    groups: List[List[int]] = []
    for value in sorted(set(values)):
        if groups and value - groups[-1][-1] <= max_gap:
            groups[-1].append(value)
        else:
            groups.append([value])
    return groups


def format_site_ranges(page_ids: Iterable[int], total_site_pages: int) -> str:
    """
    Copy-pasteable site page ranges covering ``page_ids``, largest first.

    Example: ``"267~257, 59~52, 9~4, 2~1"``.
    """
    site_pages: Set[int] = set()
    for page_id in page_ids:
        site_pages.update(page_id_to_site_pages(page_id, total_site_pages))
    labels: List[Tuple[int, str]] = []
    for group in _group_consecutive(site_pages):
        low, high = group[0], group[-1]
        labels.append((high, str(high) if low == high else f"{high}~{low}"))
    return ", ".join(label for _, label in sorted(labels, reverse=True))


def coalesce_gap_ranges(
    missing_page_ids: Iterable[int],
    total_site_pages: int,
    products_per_page: int = 12,
    max_batch_size: int = DEFAULT_GAP_BATCH_MAX_PAGES,
) -> List[GapRange]:
    """
    Group sorted missing pageIds into contiguous ranges and slice wide ones.

    Adjacent ids (difference ≤ 1) join one group; groups spanning more than
    ``max_batch_size`` ids are cut into fixed-width sub-ranges that keep only
    the ids inside them.  Each range is expressed in site pages.
    """
    ranges: List[GapRange] = []
    for group in _group_consecutive(missing_page_ids):
        start = group[0]
        while start <= group[-1]:
            end = start + max_batch_size - 1
            ids = [i for i in group if start <= i <= end]
            if ids:
                ranges.append(_to_gap_range(ids, total_site_pages, products_per_page))
            start = end + 1
    logger.info(
        f"[GAP] {len(ranges)} ranges: "
        + ", ".join(r.label() for r in ranges[:20])
        + (" ..." if len(ranges) > 20 else "")
    )
    return ranges


def _to_gap_range(ids: List[int], total_site_pages: int, products_per_page: int) -> GapRange:
    # One extra newer page: the offset pushes a pageId's tail onto it
    start_page = min(total_site_pages, total_site_pages - ids[0] + 1)
    end_page = max(1, total_site_pages - ids[-1] - 1)
    return GapRange(
        start_page=start_page,
        end_page=end_page,
        missing_page_ids=list(ids),
        estimated_records=len(ids) * products_per_page,
    )


# ---------------------------------------------------------------------------
# Batch execution
# ---------------------------------------------------------------------------

@dataclass
class GapBatchResult:
    total_ranges: int = 0
    processed_ranges: int = 0
    collected: int = 0
    failed_ranges: List[Tuple[str, str]] = field(default_factory=list)
    aborted: bool = False

    @property
    def success(self) -> bool:
        return not self.failed_ranges and not self.aborted


class GapBatchProcessor:
    """
    Runs gap ranges strictly one after another.

    ``collect_range(gap_range, token)`` does the actual crawl and returns
    the number of records it stored.  An exception from one range is
    recorded as a failure of that whole range and the next range still runs.
    """

    def __init__(
        self,
        collect_range: Callable[[GapRange, CancelToken], Awaitable[int]],
        cancel_token: Optional[CancelToken] = None,
        batch_delay_ms: int = 2000,
    ):
        self.collect_range = collect_range
        self.cancel_token = cancel_token or CancelToken()
        self.batch_delay_ms = batch_delay_ms

    @staticmethod
    def batch_info(ranges: List[GapRange]) -> Dict[str, int]:
        total_pages = sum(r.page_count for r in ranges)
        total_batches = len(ranges)
        return {
            "total_pages": total_pages,
            "total_batches": total_batches,
            "estimated_minutes": math.ceil((total_pages * 5 + max(0, total_batches - 1) * 2) / 60),
            "recommended_concurrency": 1,
        }

    async def process(self, ranges: List[GapRange]) -> GapBatchResult:
        result = GapBatchResult(total_ranges=len(ranges))
        token = self.cancel_token
        for number, gap_range in enumerate(ranges, 1):
            if token.cancelled:
                logger.info(f"[GAP] Stop requested, {len(ranges) - number + 1} ranges left")
                result.aborted = True
                break

            logger.info(f"[GAP] Batch {number}/{len(ranges)}: site pages {gap_range.label()}")
            try:
                result.collected += await self.collect_range(gap_range, token)
            except PageAbortedError:
                result.aborted = True
                break
            except Exception as e:
                logger.error(f"[GAP] Range {gap_range.label()} failed: {e}", exc_info=True)
                result.failed_ranges.append((gap_range.label(), str(e)))
            result.processed_ranges += 1

            if number < len(ranges):
                try:
                    await interruptible_sleep(self.batch_delay_ms / 1000.0, token)
                except PageAbortedError:
                    result.aborted = True
                    break

        logger.info(
            f"[GAP] Done: {result.processed_ranges}/{result.total_ranges} ranges, "
            f"{result.collected} records, {len(result.failed_ranges)} failed"
        )
        return result
