"""
Crawl Session State
===================
``CrawlerState`` owns everything mutable about one crawl session: the
current stage, progress counters, per-page and per-item status, the
page-products cache and the failure ledger.

The orchestrator is the only writer of the stage; collectors write page
status, cache entries and failures.  All mutation happens on the event-loop
thread, and cache writes go through ``merge_page_records`` which is
idempotent, so concurrent workers need no locking.
"""

from __future__ import annotations

import dataclasses
import logging
import time
from typing import Dict, Iterable, List, Optional, Set

from .models import (
    CrawlProgress,
    FailureEntry,
    ListRecord,
    PageStatus,
    Stage,
    TaskStatus,
    stage_index,
)
from .progress import CrawlObserver, ProgressThrottle, estimate_remaining

logger = logging.getLogger(__name__)

DEFAULT_CRITICAL_FAILURE_RATIO = 0.3


def merge_page_records(existing: Iterable[ListRecord], new: Iterable[ListRecord]) -> List[ListRecord]:
    """
    Merge two record lists for one page, keyed by ``url``.

    Existing order is kept and unseen urls are appended.  For a url present
    in both, non-empty fields from ``new`` replace the old values.
    """
    merged: Dict[str, ListRecord] = {}
    for record in existing:
        merged[record.url] = record
    for record in new:
        old = merged.get(record.url)
        if old is None:
            merged[record.url] = record
            continue
        changes = {
            f.name: getattr(record, f.name)
            for f in dataclasses.fields(record)
            if getattr(record, f.name) is not None
        }
        merged[record.url] = dataclasses.replace(old, **changes)
    return list(merged.values())


class CrawlerState:
    """
    Mutable state of one crawl session.

    Usage::

        state = CrawlerState(observer=LoggingObserver())
        state.set_stage(Stage.LIST_INIT, "Preparing list collection")
        state.update_page_products_cache(464, records)
        if state.has_critical_failures():
            state.report_critical_failure("Too many failed pages")
    """

    def __init__(
        self,
        observer: Optional[CrawlObserver] = None,
        critical_failure_ratio: float = DEFAULT_CRITICAL_FAILURE_RATIO,
    ):
        self.observer = observer or CrawlObserver()
        self.critical_failure_ratio = critical_failure_ratio
        self._throttle = ProgressThrottle()
        self.reset()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def reset(self) -> None:
        """Clear all maps and return to the initial stage."""
        self.stage = Stage.PREPARATION
        self.start_time = time.monotonic()
        self.progress = CrawlProgress(stage=Stage.PREPARATION, status="initializing")
        self.critical_error: Optional[str] = None

        self.page_statuses: Dict[int, PageStatus] = {}
        self.detail_statuses: Dict[str, PageStatus] = {}
        self.page_products_cache: Dict[int, List[ListRecord]] = {}

        self.failed_pages: Set[int] = set()
        self.failed_page_errors: Dict[int, List[str]] = {}
        self.failed_products: Set[str] = set()
        self.failed_product_errors: Dict[str, List[str]] = {}

        self.total_pages = 0
        self.total_products = 0
        self.processed_items = 0
        self.new_items = 0
        self.updated_items = 0

    # ------------------------------------------------------------------
    # Stage machine
    # ------------------------------------------------------------------

    def set_stage(self, stage: Stage, message: str = "") -> None:
        """Move to ``stage`` and notify observers.

        Raises:
            ValueError: on a backward transition or a move out of a terminal stage
        """
        if self.stage.is_terminal and stage is not self.stage:
            raise ValueError(f"Session already finished ({self.stage.value}); call reset() first")
        if not stage.is_terminal and stage_index(stage) < stage_index(self.stage):
            raise ValueError(f"Cannot move from {self.stage.value} back to {stage.value}")

        self.stage = stage
        status = "running"
        if stage is Stage.COMPLETED:
            status = "completed"
        elif stage is Stage.FAILED:
            status = "error"
        logger.info(f"[STATE] Stage -> {stage.value}{': ' + message if message else ''}")
        self._emit(stage=stage, status=status, current_step=stage.value, message=message, force=True)

    def update_progress(self, current: int, total: int, message: str = "", force: bool = False) -> None:
        """Record pass progress; observers see at most one snapshot per throttle window."""
        self._emit(current=current, total=total, message=message, force=force)

    def report_critical_failure(self, message: str) -> None:
        self.critical_error = message
        logger.error(f"[STATE] Critical failure: {message}")
        if not self.stage.is_terminal:
            self.stage = Stage.FAILED
        self._emit(stage=Stage.FAILED, status="error", message=message, force=True)

    def report_stopped(self, message: str = "Crawl stopped") -> None:
        """End the session on a user stop; ``critical_error`` stays unset."""
        logger.info(f"[STATE] Stopped: {message}")
        if not self.stage.is_terminal:
            self.stage = Stage.FAILED
        self._emit(stage=Stage.FAILED, status="stopped", message=message, force=True)

    def _emit(self, force: bool = False, **changes) -> None:
        elapsed = time.monotonic() - self.start_time
        snapshot = dataclasses.replace(self.progress, **changes)
        current, total = snapshot.current, snapshot.total
        snapshot = dataclasses.replace(
            snapshot,
            percentage=round(current / total * 100, 1) if total > 0 else 0.0,
            elapsed_time=round(elapsed, 2),
            remaining_time=estimate_remaining(current, total, elapsed),
            processed_items=self.processed_items,
            new_items=self.new_items,
            updated_items=self.updated_items,
            critical_error=self.critical_error,
        )
        self.progress = snapshot
        if self._throttle.ready(force=force):
            self.observer.on_progress(snapshot)

    # ------------------------------------------------------------------
    # Page products cache
    # ------------------------------------------------------------------

    def update_page_products_cache(self, page_number: int, records: Iterable[ListRecord]) -> List[ListRecord]:
        merged = merge_page_records(self.page_products_cache.get(page_number, []), records)
        self.page_products_cache[page_number] = merged
        return merged

    def get_page_products(self, page_number: int) -> List[ListRecord]:
        return list(self.page_products_cache.get(page_number, []))

    def all_cached_products(self) -> List[ListRecord]:
        records: List[ListRecord] = []
        for page_number in sorted(self.page_products_cache, reverse=True):
            records.extend(self.page_products_cache[page_number])
        return records

    def validate_page_completeness(
        self,
        page_number: int,
        is_last_page: bool,
        products_per_page: int,
        last_page_expected_count: Optional[int] = None,
    ) -> bool:
        """True when the cached record count matches the expected count for the page."""
        expected = products_per_page
        if is_last_page and last_page_expected_count is not None:
            expected = last_page_expected_count
        return len(self.page_products_cache.get(page_number, [])) >= expected

    # ------------------------------------------------------------------
    # Task status
    # ------------------------------------------------------------------

    def set_page_status(self, page_number: int, status: TaskStatus, attempt: int = 0, error: str = None) -> PageStatus:
        return self._set_status(self.page_statuses, page_number, status, attempt, error)

    def set_detail_status(self, url: str, status: TaskStatus, attempt: int = 0, error: str = None) -> PageStatus:
        return self._set_status(self.detail_statuses, url, status, attempt, error)

    @staticmethod
    def _set_status(table, key, status: TaskStatus, attempt: int, error: Optional[str]) -> PageStatus:
        entry = table.get(key)
        if entry is None:
            entry = table[key] = PageStatus(page_number=key)
        # success is final
        if entry.status is TaskStatus.SUCCESS:
            return entry
        now = time.time()
        if status is TaskStatus.ATTEMPTING:
            entry.start_time = now
            entry.end_time = None
        elif status is not TaskStatus.WAITING:
            entry.end_time = now
        entry.status = status
        entry.attempt = max(entry.attempt, attempt)
        entry.error = error
        return entry

    # ------------------------------------------------------------------
    # Failure ledger
    # ------------------------------------------------------------------

    def add_failed_page(self, page_number: int, error: str) -> None:
        self.failed_pages.add(page_number)
        self.record_page_error(page_number, error)

    def record_page_error(self, page_number: int, error: str) -> None:
        self.failed_page_errors.setdefault(page_number, []).append(error)

    def remove_failed_page(self, page_number: int) -> None:
        self.failed_pages.discard(page_number)

    def add_failed_product(self, url: str, error: str) -> None:
        self.failed_products.add(url)
        self.record_product_error(url, error)

    def record_product_error(self, url: str, error: str) -> None:
        self.failed_product_errors.setdefault(url, []).append(error)

    def remove_failed_product(self, url: str) -> None:
        self.failed_products.discard(url)

    def failure_entries(self, stage: str) -> List[FailureEntry]:
        """Currently failed ids with their full error history."""
        if stage == "list":
            ids, ledger = sorted(self.failed_pages, reverse=True), self.failed_page_errors
        else:
            ids, ledger = sorted(self.failed_products), self.failed_product_errors
        return [FailureEntry(id=i, errors=tuple(ledger.get(i, ()))) for i in ids]

    def has_critical_failures(self) -> bool:
        """True when the failed share of pages or items exceeds the threshold."""
        if self.total_pages > 0 and len(self.failed_pages) / self.total_pages > self.critical_failure_ratio:
            return True
        if self.total_products > 0 and len(self.failed_products) / self.total_products > self.critical_failure_ratio:
            return True
        return False

    # ------------------------------------------------------------------
    # Detail counters
    # ------------------------------------------------------------------

    def record_detail_processed(self, is_new: bool = False, is_updated: bool = False) -> None:
        self.processed_items += 1
        if is_new:
            self.new_items += 1
        if is_updated:
            self.updated_items += 1

    def set_store_counts(self, new_items: int, updated_items: int) -> None:
        self.new_items = new_items
        self.updated_items = updated_items
