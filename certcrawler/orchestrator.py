"""
Crawl Orchestrator
==================
Top-level control of a crawl session.

1. Read site size (total pages, last page count) and local store size
2. Compute the site page range still to collect
3. List pass  (pool + retry rounds, optionally in batches of pages)
4. Abort on critical failure ratio or leftover failed pages
5. Detail pass (fresh client context, pool + retry rounds)
6. Deduplicate, cross-validate, snapshot, hand to the store

One ``CrawlSession`` exists per run and owns the cancel token; a new run
always starts from a reset ``CrawlerState``.  Gap re-collection reuses the
same list/detail stages for each gap range.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Tuple

from .collectors import ProductDetailCollector, ProductListCollector
from .config import CrawlerConfig
from .errors import CriticalFailureError, PageAbortedError, StorageError
from .gaps import (
    GapBatchProcessor,
    GapBatchResult,
    GapDetectionResult,
    GapDetector,
    coalesce_gap_ranges,
)
from .models import (
    CrawlingRange,
    DetailRecord,
    GapRange,
    ListRecord,
    Stage,
    StatusSummary,
    TotalPagesInfo,
)
from .page_index import calculate_crawling_range, site_product_count
from .pool import CancelToken, interruptible_sleep
from .processing import dedupe_detail_records, dedupe_list_records, validate_consistency
from .progress import CrawlObserver, ObserverGroup, format_summary
from .state import CrawlerState
from .storage import RecordStore, write_snapshot
from .strategies import PageFetchClient, create_fetch_client

logger = logging.getLogger(__name__)

# Rough wall-clock cost of one list page, for status estimates
_ESTIMATED_MS_PER_PAGE = 5000


@dataclass
class CrawlSession:
    """Lifecycle handle for one run."""
    cancel_token: CancelToken = field(default_factory=CancelToken)
    started_at: float = field(default_factory=time.monotonic)
    stop_requested: bool = False
    kind: str = "crawl"

    def stop(self, reason: str = "User requested stop") -> None:
        self.stop_requested = True
        self.cancel_token.cancel(reason)


class CrawlOrchestrator:
    """
    Sequences the list and detail passes over one fetch client and store.

    Usage::

        orchestrator = CrawlOrchestrator(config, JsonRecordStore("products.json"))
        orchestrator.add_observer(LoggingObserver())
        ok = await orchestrator.start_crawling()

        # Or from sync code:
        ok = orchestrator.run()
    """

    def __init__(
        self,
        config: Optional[CrawlerConfig] = None,
        store: Optional[RecordStore] = None,
        observer: Optional[CrawlObserver] = None,
        client_factory: Callable[[CrawlerConfig], PageFetchClient] = create_fetch_client,
    ):
        if store is None:
            raise ValueError("A RecordStore is required")
        self.config = config or CrawlerConfig()
        self.store = store
        self.observers = ObserverGroup([observer] if observer else [])
        self.state = CrawlerState(self.observers, self.config.critical_failure_ratio)
        self._client_factory = client_factory
        self._client: Optional[PageFetchClient] = None
        self._session: Optional[CrawlSession] = None
        self.last_validation = None
        self.last_stats: dict = {}

    # ------------------------------------------------------------------
    # Control surface
    # ------------------------------------------------------------------

    def add_observer(self, observer: CrawlObserver) -> None:
        self.observers.add(observer)

    @property
    def client(self) -> PageFetchClient:
        if self._client is None:
            self._client = self._client_factory(self.config)
        return self._client

    @property
    def is_crawling(self) -> bool:
        return self._session is not None

    def stop_crawling(self) -> bool:
        """Request a graceful stop.  Returns False when nothing is running."""
        if self._session is None:
            logger.info("[ENGINE] Stop requested but no crawl is running")
            return False
        logger.info("[ENGINE] Stop requested")
        self._session.stop()
        return True

    def run(self) -> bool:
        """Sync wrapper: run one crawl session from synchronous code."""
        return asyncio.run(self.start_crawling())

    # ------------------------------------------------------------------
    # Main session
    # ------------------------------------------------------------------

    async def start_crawling(self) -> bool:
        """Run one full session.  Returns False if already running or the run failed."""
        if self._session is not None:
            logger.warning("[ENGINE] A crawl is already running")
            return False

        session = CrawlSession()
        self._session = session
        self.state.reset()
        token = session.cancel_token
        client = self.client
        stop_reason = "completed"
        pages_requested = 0
        list_records: List[ListRecord] = []
        details: List[DetailRecord] = []

        logger.info("=" * 65)
        logger.info("CRAWL STARTED")
        logger.info(f"Strategy: {client.name}  Limit: {self.config.page_range_limit or 'unlimited'} pages")
        logger.info("=" * 65)

        try:
            self.state.set_stage(Stage.PREPARATION, "Reading site and store size")
            await client.initialize()
            site = await client.fetch_total_pages(token=token)
            local_count = self.store.product_count()
            crawl_range = calculate_crawling_range(
                site.total_pages, site.last_page_count, self.config.page_range_limit,
                local_count, self.config.products_per_page,
            )
            pages_requested = crawl_range.page_count
            if pages_requested == 0:
                stop_reason = "Nothing to crawl"
                logger.info(f"[ENGINE] Store is up to date ({local_count} products)")
                self.state.set_stage(Stage.COMPLETED, "Nothing to crawl")
                return True

            list_records = await self._run_list_stage(client, site, crawl_range, token)
            if token.cancelled:
                stop_reason = "User requested stop"
                self.state.report_stopped("Crawl stopped during list collection")
                return False

            self._report_failures("list")
            write_snapshot(list_records, self.config.output_dir, "product-list")

            if self.state.has_critical_failures():
                stop_reason = "Critical list failures"
                raise CriticalFailureError(
                    f"{len(self.state.failed_pages)}/{self.state.total_pages} list pages failed"
                )
            if not list_records:
                stop_reason = "No products found"
                self.state.set_stage(Stage.COMPLETED, "No products found in range")
                return True
            if self.state.failed_pages:
                stop_reason = "Incomplete list pages"
                logger.warning(
                    f"[ENGINE] {len(self.state.failed_pages)} pages still incomplete: "
                    f"{sorted(self.state.failed_pages, reverse=True)}"
                )
                self.state.set_stage(
                    Stage.FAILED, f"{len(self.state.failed_pages)} list pages could not be collected"
                )
                return False

            details = await self._run_detail_stage(client, list_records, token)
            if token.cancelled:
                stop_reason = "User requested stop"
                self.state.report_stopped("Crawl stopped during detail collection")
                return False

            self._report_failures("detail")
            if self.state.has_critical_failures():
                stop_reason = "Critical detail failures"
                raise CriticalFailureError(
                    f"{len(self.state.failed_products)}/{self.state.total_products} products failed"
                )

            self.last_validation = validate_consistency(list_records, details)
            write_snapshot(details, self.config.output_dir, "product-detail")
            self._persist(details)

            self.state.set_stage(Stage.COMPLETED, f"Collected {len(details)} products")
            return True

        except CriticalFailureError as e:
            self.state.report_critical_failure(str(e))
            return False
        except PageAbortedError:
            stop_reason = "User requested stop"
            self.state.report_stopped()
            return False
        except Exception as e:
            stop_reason = f"Error: {e}"
            logger.error(f"[ENGINE] Crawl error: {e}", exc_info=True)
            self.state.report_critical_failure(str(e))
            return False
        finally:
            try:
                await client.cleanup()
            except Exception as e:
                logger.warning(f"[ENGINE] Client cleanup failed: {e}")
            self._session = None
            self.last_stats = {
                "stage": self.state.stage.value,
                "pages_requested": pages_requested,
                "pages_failed": len(self.state.failed_pages),
                "list_records": len(list_records),
                "detail_records": len(details),
                "details_failed": len(self.state.failed_products),
                "new_items": self.state.new_items,
                "updated_items": self.state.updated_items,
                "elapsed_sec": time.monotonic() - session.started_at,
                "stop_reason": stop_reason,
            }
            logger.info("\n" + format_summary(self.last_stats))

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    async def _run_list_stage(
        self,
        client: PageFetchClient,
        site: TotalPagesInfo,
        crawl_range: CrawlingRange,
        token: CancelToken,
    ) -> List[ListRecord]:
        state = self.state
        state.set_stage(
            Stage.LIST_INIT,
            f"Site pages {crawl_range.start_page}~{crawl_range.end_page} of {site.total_pages}",
        )
        state.total_pages = crawl_range.page_count
        collector = ProductListCollector(state, client, self.config, token)

        state.set_stage(Stage.LIST_FETCHING, f"Collecting {crawl_range.page_count} pages")
        records: List[ListRecord] = []
        batches = self._split_batches(crawl_range)
        for number, batch in enumerate(batches, 1):
            if token.cancelled:
                break
            if len(batches) > 1:
                logger.info(
                    f"[ENGINE] List batch {number}/{len(batches)}: "
                    f"pages {batch.start_page}~{batch.end_page}"
                )
            records.extend(await collector.collect(site, batch))
            if number < len(batches):
                await interruptible_sleep(self.config.batch_delay_ms / 1000.0, token)

        state.set_stage(Stage.LIST_PROCESSING, f"Processing {len(records)} list records")
        return dedupe_list_records(records)

    def _split_batches(self, crawl_range: CrawlingRange) -> List[CrawlingRange]:
        size = self.config.batch_size
        if not self.config.enable_batch_processing or crawl_range.page_count <= size:
            return [crawl_range]
        batches = []
        start = crawl_range.start_page
        while start >= crawl_range.end_page:
            end = max(crawl_range.end_page, start - size + 1)
            batches.append(CrawlingRange(start, end))
            start = end - 1
        return batches

    async def _run_detail_stage(
        self,
        client: PageFetchClient,
        list_records: List[ListRecord],
        token: CancelToken,
    ) -> List[DetailRecord]:
        state = self.state
        state.set_stage(Stage.DETAIL_INIT, f"Preparing {len(list_records)} product pages")
        await client.refresh()
        collector = ProductDetailCollector(state, client, self.config, token)

        state.set_stage(Stage.DETAIL_FETCHING, f"Collecting {len(list_records)} products")
        details = await collector.collect(list_records)

        state.set_stage(Stage.DETAIL_PROCESSING, f"Processing {len(details)} detail records")
        return dedupe_detail_records(details)

    def _report_failures(self, stage: str) -> None:
        failures = self.state.failure_entries(stage)
        if failures:
            self.observers.on_failure_report(stage, failures)

    def _persist(self, details: List[DetailRecord]) -> None:
        """Hand records to the store; a store error is reported, not raised."""
        if not self.config.auto_add_to_local_db:
            logger.info(f"[ENGINE] Auto-save disabled, {len(details)} records not stored")
            self.observers.on_store_event("skipped", None, "Automatic store update disabled")
            return
        try:
            result = self.store.save_products(details)
        except StorageError as e:
            logger.error(f"[ENGINE] Store update failed: {e}")
            self.observers.on_store_event("error", None, str(e))
            return
        self.state.set_store_counts(result.added, result.updated)
        self.observers.on_store_event("saved", result)

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    async def check_crawling_status(self) -> StatusSummary:
        """Compare the store against the live site.  Never raises."""
        client = self.client
        try:
            await client.initialize()
            site = await client.fetch_total_pages()
            ppp = self.config.products_per_page
            db_count = self.store.product_count()
            crawl_range = calculate_crawling_range(
                site.total_pages, site.last_page_count, self.config.page_range_limit, db_count, ppp,
            )
            site_count = site_product_count(site.total_pages, site.last_page_count, ppp)
            selected = crawl_range.page_count
            if selected and crawl_range.start_page == site.total_pages:
                estimated_products = (selected - 1) * ppp + site.last_page_count
            else:
                estimated_products = selected * ppp
            summary = StatusSummary(
                db_last_updated=self.store.last_updated(),
                db_product_count=db_count,
                site_total_pages=site.total_pages,
                site_product_count=site_count,
                last_page_product_count=site.last_page_count,
                diff=site_count - db_count,
                need_crawling=site_count > db_count and selected > 0,
                crawling_range=crawl_range,
                selected_page_count=selected,
                estimated_product_count=estimated_products,
                estimated_total_time_ms=selected * _ESTIMATED_MS_PER_PAGE,
            )
            logger.info(
                f"[STATUS] site={site_count} products ({site.total_pages} pages) "
                f"store={db_count} diff={summary.diff} need_crawling={summary.need_crawling}"
            )
            return summary
        except Exception as e:
            logger.error(f"[STATUS] Status check failed: {e}")
            return StatusSummary(error=str(e))
        finally:
            if not self.is_crawling:
                await client.cleanup()

    # ------------------------------------------------------------------
    # Gap tooling
    # ------------------------------------------------------------------

    async def detect_gaps(self) -> Tuple[GapDetectionResult, TotalPagesInfo]:
        """Find missing local pageIds against the live site size."""
        client = self.client
        try:
            await client.initialize()
            site = await client.fetch_total_pages()
        finally:
            if not self.is_crawling:
                await client.cleanup()
        expected = site_product_count(site.total_pages, site.last_page_count, self.config.products_per_page)
        detector = GapDetector(self.store, self.config.products_per_page)
        return detector.detect(site_product_count=expected), site

    async def collect_gaps(
        self,
        detection: Optional[GapDetectionResult] = None,
        site: Optional[TotalPagesInfo] = None,
    ) -> Optional[GapBatchResult]:
        """Re-collect every gap range, one range at a time."""
        if self._session is not None:
            logger.warning("[ENGINE] A crawl is already running")
            return None
        if detection is None or site is None:
            detection, site = await self.detect_gaps()
        ranges = coalesce_gap_ranges(
            detection.missing_page_ids, site.total_pages,
            self.config.products_per_page, self.config.gap_batch_max_pages,
        )
        if not ranges:
            logger.info("[GAP] No gaps to collect")
            return GapBatchResult()

        info = GapBatchProcessor.batch_info(ranges)
        logger.info(
            f"[GAP] {info['total_batches']} batches, {info['total_pages']} pages, "
            f"~{info['estimated_minutes']} min"
        )

        session = CrawlSession(kind="gaps")
        self._session = session
        client = self.client

        async def _collect(gap_range: GapRange, token: CancelToken) -> int:
            return await self._collect_gap_range(client, site, gap_range, token)

        processor = GapBatchProcessor(_collect, session.cancel_token, self.config.batch_delay_ms)
        try:
            await client.initialize()
            return await processor.process(ranges)
        finally:
            try:
                await client.cleanup()
            except Exception as e:
                logger.warning(f"[ENGINE] Client cleanup failed: {e}")
            self._session = None

    async def _collect_gap_range(
        self,
        client: PageFetchClient,
        site: TotalPagesInfo,
        gap_range: GapRange,
        token: CancelToken,
    ) -> int:
        """Crawl one gap range end to end and store the records that fill gaps."""
        self.state.reset()
        crawl_range = CrawlingRange(gap_range.start_page, gap_range.end_page)
        wanted = set(gap_range.missing_page_ids)

        list_records = await self._run_list_stage(client, site, crawl_range, token)
        token.raise_if_cancelled()
        self._report_failures("list")
        if self.state.has_critical_failures():
            message = f"{len(self.state.failed_pages)}/{self.state.total_pages} list pages failed"
            self.state.report_critical_failure(message)
            raise CriticalFailureError(message)
        list_records = [r for r in list_records if r.page_id in wanted]
        if not list_records:
            self.state.set_stage(Stage.COMPLETED, f"No records for range {gap_range.label()}")
            return 0

        details = await self._run_detail_stage(client, list_records, token)
        token.raise_if_cancelled()
        self._report_failures("detail")

        try:
            result = self.store.save_products(details)
        except StorageError as e:
            self.observers.on_store_event("error", None, str(e))
            raise
        self.state.set_store_counts(result.added, result.updated)
        self.observers.on_store_event("saved", result)
        self.state.set_stage(Stage.COMPLETED, f"Range {gap_range.label()}: {result.added} added")
        return result.added
