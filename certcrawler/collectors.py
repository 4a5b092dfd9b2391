"""
Collection Passes
=================
The two crawl passes, each a first round through ``ConcurrencyPool``
followed by ``RetryCoordinator`` rounds over whatever failed.

``ProductListCollector``  site listing pages → ``ListRecord`` (local ids)
``ProductDetailCollector`` list records      → ``DetailRecord``

Per-page and per-item failures are written to the ``CrawlerState`` ledger and
never raised out of a pass.  Cancellation ends a pass early; the pages that
were never dispatched are marked ``stopped``.
"""

from __future__ import annotations

import logging
from typing import Dict, List, Optional

from .config import CrawlerConfig
from .errors import PageAbortedError, PageOperationError
from .models import (
    CrawlingRange,
    DetailRecord,
    ListRecord,
    TaskStatus,
    TotalPagesInfo,
)
from .page_index import calculate_offset, map_to_local, to_local_page_number
from .pool import OUTCOME_ERROR, OUTCOME_STOPPED, CancelToken, ConcurrencyPool, random_delay
from .retry import RetryCoordinator, backoff_sleep, format_attempt_error
from .state import CrawlerState
from .strategies import PageFetchClient

logger = logging.getLogger(__name__)


class _PassBase:
    def __init__(
        self,
        state: CrawlerState,
        client: PageFetchClient,
        config: CrawlerConfig,
        cancel_token: CancelToken,
    ):
        self.state = state
        self.client = client
        self.config = config
        self.cancel_token = cancel_token

    async def _pace(self, attempt: int, token: CancelToken) -> None:
        """Random per-request delay, plus exponential backoff on retries."""
        await random_delay(self.config.min_request_delay_ms, self.config.max_request_delay_ms, token)
        if attempt > 1:
            await backoff_sleep(
                attempt - 1,
                token,
                base_delay=self.config.backoff_base_ms / 1000.0,
                max_delay=self.config.backoff_max_ms / 1000.0,
            )


# ---------------------------------------------------------------------------
# List pass
# ---------------------------------------------------------------------------

class ProductListCollector(_PassBase):
    """
    Collects listing pages for a site page range.

    Usage::

        collector = ProductListCollector(state, client, config, token)
        records = await collector.collect(site_info, CrawlingRange(464, 455))
    """

    def __init__(self, state, client, config, cancel_token):
        super().__init__(state, client, config, cancel_token)
        self.completed_pages = 0
        self._site_info: Optional[TotalPagesInfo] = None
        self._offset = 0

    async def collect(self, site_info: TotalPagesInfo, crawl_range: CrawlingRange) -> List[ListRecord]:
        pages = crawl_range.pages()
        if not pages:
            return []
        self._site_info = site_info
        self._offset = calculate_offset(site_info.last_page_count, self.config.products_per_page)

        logger.info(
            f"[LIST] Collecting pages {crawl_range.start_page}~{crawl_range.end_page} "
            f"({len(pages)} pages, concurrency={self.config.initial_concurrency}, offset={self._offset})"
        )
        for page_number in pages:
            self.state.set_page_status(page_number, TaskStatus.WAITING)

        pool = ConcurrencyPool(self.config.initial_concurrency, self.cancel_token)
        outcomes = await pool.run(pages, lambda page, token: self.crawl_page(page, token, 1))
        for outcome in outcomes:
            if outcome.status == OUTCOME_ERROR:
                logger.error(f"[LIST] Page {outcome.item} crashed: {outcome.error}", exc_info=outcome.error)
                self.state.add_failed_page(outcome.item, format_attempt_error(1, outcome.error))
                self.state.set_page_status(outcome.item, TaskStatus.FAILED, 1, str(outcome.error))
            elif outcome.status == OUTCOME_STOPPED:
                self.state.set_page_status(outcome.item, TaskStatus.STOPPED)

        in_range = set(pages)
        if self.state.failed_pages & in_range and not self.cancel_token.cancelled:
            # Failures from earlier batches already had their retry rounds
            carried = self.state.failed_pages - in_range
            self.state.failed_pages -= carried
            coordinator = RetryCoordinator(
                self.state.failed_pages, self.state.record_page_error, label="list"
            )
            try:
                await coordinator.retry_rounds(
                    resolve=lambda page: page,
                    worker=self.crawl_page,
                    start_attempt=self.config.retry_start,
                    max_attempt=self.config.list_max_attempt,
                    retry_concurrency=self.config.retry_concurrency,
                    cancel_token=self.cancel_token,
                )
            finally:
                self.state.failed_pages |= carried

        records: List[ListRecord] = []
        for page_number in pages:
            records.extend(self.state.get_page_products(page_number))
        failed = len(self.state.failed_pages & in_range)
        logger.info(f"[LIST] Done: {len(records)} records from {len(pages)} pages ({failed} failed)")
        return records

    async def crawl_page(self, page_number: int, token: CancelToken, attempt: int) -> List[ListRecord]:
        """Crawl one site page, merge its records into the cache and classify it."""
        state = self.state
        if token.cancelled:
            state.set_page_status(page_number, TaskStatus.STOPPED, attempt)
            return state.get_page_products(page_number)

        state.set_page_status(page_number, TaskStatus.ATTEMPTING, attempt)
        try:
            await self._pace(attempt, token)
            result = await self.client.crawl_page(page_number, token, attempt)
        except PageAbortedError:
            state.set_page_status(page_number, TaskStatus.STOPPED, attempt)
            raise
        except PageOperationError as e:
            message = format_attempt_error(attempt, e)
            logger.warning(f"[LIST] Page {page_number} attempt {attempt} failed: {e}")
            state.add_failed_page(page_number, message)
            state.set_page_status(page_number, TaskStatus.FAILED, attempt, message)
            return state.get_page_products(page_number)

        merged = state.update_page_products_cache(page_number, self._to_records(page_number, result.raw_products))

        total_pages = self._site_info.total_pages
        is_last_page = to_local_page_number(page_number, total_pages) == 0
        complete = state.validate_page_completeness(
            page_number, is_last_page, self.config.products_per_page, self._site_info.last_page_count,
        )
        if complete:
            state.remove_failed_page(page_number)
            state.set_page_status(page_number, TaskStatus.SUCCESS, attempt)
            self.completed_pages += 1
        else:
            expected = self._site_info.last_page_count if is_last_page else self.config.products_per_page
            message = format_attempt_error(attempt, f"Incomplete page: {len(merged)}/{expected} products")
            logger.info(f"[LIST] Page {page_number} incomplete ({len(merged)}/{expected})")
            state.add_failed_page(page_number, message)
            state.set_page_status(page_number, TaskStatus.INCOMPLETE, attempt, message)

        state.update_progress(
            self.completed_pages, state.total_pages,
            message=f"Collected page {page_number} ({len(merged)} products)",
        )
        return merged

    def _to_records(self, page_number: int, raw_products) -> List[ListRecord]:
        site_page_number = to_local_page_number(page_number, self._site_info.total_pages)
        records = []
        for raw in raw_products:
            page_id, index_in_page = map_to_local(
                site_page_number, raw.site_index_in_page, self._offset, self.config.products_per_page,
            )
            records.append(ListRecord(
                url=raw.url,
                page_id=page_id,
                index_in_page=index_in_page,
                manufacturer=raw.manufacturer,
                model=raw.model,
                certificate_id=raw.certificate_id,
            ))
        return records


# ---------------------------------------------------------------------------
# Detail pass
# ---------------------------------------------------------------------------

class ProductDetailCollector(_PassBase):
    """Fetches and parses the product page behind every list record."""

    def __init__(self, state, client, config, cancel_token):
        super().__init__(state, client, config, cancel_token)
        self._results: Dict[str, DetailRecord] = {}
        self._by_url: Dict[str, ListRecord] = {}
        self.completed = 0

    async def collect(self, records: List[ListRecord]) -> List[DetailRecord]:
        valid = [r for r in records if r.url and r.url.strip()]
        dropped = len(records) - len(valid)
        if dropped:
            logger.warning(f"[DETAIL] Skipping {dropped} records without a url")
        self._by_url = {r.url: r for r in valid}
        targets = list(self._by_url.values())
        self.state.total_products = len(targets)
        if not targets:
            return []

        logger.info(
            f"[DETAIL] Collecting {len(targets)} products "
            f"(concurrency={self.config.detail_concurrency})"
        )
        for record in targets:
            self.state.set_detail_status(record.url, TaskStatus.WAITING)

        pool = ConcurrencyPool(self.config.detail_concurrency, self.cancel_token)
        outcomes = await pool.run(targets, lambda record, token: self.fetch_one(record, token, 1))
        for outcome in outcomes:
            url = outcome.item.url
            if outcome.status == OUTCOME_ERROR:
                logger.error(f"[DETAIL] {url} crashed: {outcome.error}", exc_info=outcome.error)
                self.state.add_failed_product(url, format_attempt_error(1, outcome.error))
                self.state.set_detail_status(url, TaskStatus.FAILED, 1, str(outcome.error))
            elif outcome.status == OUTCOME_STOPPED:
                self.state.set_detail_status(url, TaskStatus.STOPPED)

        if self.state.failed_products and not self.cancel_token.cancelled:
            coordinator = RetryCoordinator(
                self.state.failed_products, self.state.record_product_error, label="detail"
            )
            await coordinator.retry_rounds(
                resolve=self._by_url.get,
                worker=self.fetch_one,
                start_attempt=self.config.retry_start,
                max_attempt=self.config.detail_max_attempt,
                retry_concurrency=self.config.retry_concurrency,
                cancel_token=self.cancel_token,
            )

        logger.info(
            f"[DETAIL] Done: {len(self._results)}/{len(targets)} products "
            f"({len(self.state.failed_products)} failed)"
        )
        return list(self._results.values())

    async def fetch_one(self, record: ListRecord, token: CancelToken, attempt: int) -> Optional[DetailRecord]:
        state = self.state
        url = record.url
        if token.cancelled:
            state.set_detail_status(url, TaskStatus.STOPPED, attempt)
            return None

        state.set_detail_status(url, TaskStatus.ATTEMPTING, attempt)
        try:
            await self._pace(attempt, token)
            delta = await self.client.fetch_detail(record, token, attempt)
        except PageAbortedError:
            state.set_detail_status(url, TaskStatus.STOPPED, attempt)
            raise
        except PageOperationError as e:
            message = format_attempt_error(attempt, e)
            logger.warning(f"[DETAIL] {url} attempt {attempt} failed: {e}")
            state.add_failed_product(url, message)
            state.set_detail_status(url, TaskStatus.FAILED, attempt, message)
            return None

        detail = DetailRecord.from_list_record(record, delta)
        self._results[url] = detail
        state.remove_failed_product(url)
        state.set_detail_status(url, TaskStatus.SUCCESS, attempt)
        state.record_detail_processed()
        self.completed += 1
        state.update_progress(
            self.completed, state.total_products, message=f"Collected details for {record.model or url}",
        )
        return detail
