"""
End-to-end tests for orchestrator.py over the in-memory fake site.
"""

import asyncio

import pytest

from certcrawler.models import Stage, TaskStatus
from certcrawler.orchestrator import CrawlOrchestrator
from certcrawler.progress import CrawlObserver
from certcrawler.storage import JsonRecordStore

from conftest import FakeFetchClient, FakeSite, fast_config, product_url


class RecordingObserver(CrawlObserver):
    def __init__(self):
        self.snapshots = []
        self.failure_reports = []
        self.store_events = []

    def on_progress(self, progress):
        self.snapshots.append(progress)

    def on_failure_report(self, stage, failures):
        self.failure_reports.append((stage, failures))

    def on_store_event(self, kind, result, message=""):
        self.store_events.append((kind, result, message))


def _orchestrator(store, site, config=None, **client_kwargs):
    config = config or fast_config()
    client = FakeFetchClient(config, site, **client_kwargs)
    observer = RecordingObserver()
    orchestrator = CrawlOrchestrator(config, store, observer, client_factory=lambda cfg: client)
    return orchestrator, client, observer


# ====================================================================
# Full sessions
# ====================================================================

class TestFullCrawl:

    def test_collects_every_product(self, store):
        orch, client, observer = _orchestrator(store, FakeSite(41))
        assert orch.run() is True

        assert orch.state.stage is Stage.COMPLETED
        assert store.product_count() == 41
        products = {p.url: p for p in store.products()}
        newest = products[product_url(40)]
        assert (newest.page_id, newest.index_in_page) == (3, 4)
        assert newest.id == "csa-matter-3-4"
        assert newest.vid == "0x1234"
        assert newest.certification_date == "2024-01-15"
        oldest = products[product_url(0)]
        assert (oldest.page_id, oldest.index_in_page) == (0, 0)

    def test_local_positions_are_dense(self, store):
        orch, _, _ = _orchestrator(store, FakeSite(41))
        orch.run()
        positions = sorted(p.page_id * 12 + p.index_in_page for p in store.products())
        assert positions == list(range(41))

    def test_lifecycle_and_events(self, store):
        orch, client, observer = _orchestrator(store, FakeSite(41))
        orch.run()
        assert client.refreshed == 1
        assert client.cleaned_up >= 1
        assert observer.failure_reports == []
        kind, result, _ = observer.store_events[-1]
        assert kind == "saved"
        assert result.added == 41
        assert orch.state.new_items == 41
        stages = [s.stage for s in observer.snapshots]
        assert stages.index(Stage.LIST_FETCHING) < stages.index(Stage.DETAIL_FETCHING)
        assert stages[-1] is Stage.COMPLETED
        assert orch.last_validation.is_consistent
        assert orch.last_stats["stop_reason"] == "completed"

    def test_single_page_site(self, store):
        orch, _, _ = _orchestrator(store, FakeSite(5))
        assert orch.run() is True
        assert store.product_count() == 5

    def test_page_limit(self, store):
        orch, client, _ = _orchestrator(store, FakeSite(41), fast_config(page_range_limit=2))
        assert orch.run() is True
        # Oldest two site pages: 5 + 12 products
        assert store.product_count() == 17
        assert not any(url.endswith("&paged=1") for url in client.fetched)

    def test_batched_list_pass(self, store):
        orch, client, _ = _orchestrator(store, FakeSite(41), fast_config(batch_size=2))
        assert orch.run() is True
        assert store.product_count() == 41

    def test_no_save(self, store):
        orch, _, observer = _orchestrator(store, FakeSite(41), fast_config(auto_add_to_local_db=False))
        assert orch.run() is True
        assert store.product_count() == 0
        assert observer.store_events[-1][0] == "skipped"


class TestIncrementalCrawl:

    def test_up_to_date_store(self, store):
        CrawlOrchestrator(fast_config(), store, client_factory=lambda cfg: FakeFetchClient(cfg, FakeSite(41))).run()
        orch, client, _ = _orchestrator(store, FakeSite(41))
        assert orch.run() is True
        assert orch.last_stats["stop_reason"] == "Nothing to crawl"
        assert not any(product_url(0) == url for url in client.fetched)

    def test_only_new_pages_are_crawled(self, store, tmp_path):
        CrawlOrchestrator(fast_config(), store, client_factory=lambda cfg: FakeFetchClient(cfg, FakeSite(41))).run()

        grown = JsonRecordStore(str(tmp_path / "products.json"))
        orch, client, observer = _orchestrator(grown, FakeSite(53))
        assert orch.run() is True
        assert grown.product_count() == 53
        assert observer.store_events[-1][1].added == 12
        list_pages = [u for u in client.fetched if "&paged=" in u]
        # Last page for the site size, then only site page 1
        assert list_pages == [fast_config().page_url(5), fast_config().page_url(1)]
        newest = {p.url: p for p in grown.products()}[product_url(52)]
        assert (newest.page_id, newest.index_in_page) == (4, 4)

    def test_new_products_before_the_page_count_grows(self, store):
        CrawlOrchestrator(fast_config(), store, client_factory=lambda cfg: FakeFetchClient(cfg, FakeSite(41))).run()

        orch, client, _ = _orchestrator(store, FakeSite(47))
        summary = asyncio.run(orch.check_crawling_status())
        assert summary.diff == 6
        assert summary.need_crawling is True
        assert (summary.crawling_range.start_page, summary.crawling_range.end_page) == (1, 1)

        assert orch.run() is True
        assert store.product_count() == 47
        list_pages = [u for u in client.fetched if "&paged=" in u]
        assert fast_config().page_url(1) in list_pages
        newest = {p.url: p for p in store.products()}[product_url(46)]
        assert (newest.page_id, newest.index_in_page) == (3, 10)


# ====================================================================
# Failures
# ====================================================================

class TestFailureHandling:

    def test_transient_page_failure_recovers(self, store):
        orch, _, observer = _orchestrator(store, FakeSite(41), page_failures={2: 2})
        assert orch.run() is True
        assert store.product_count() == 41
        assert orch.state.failed_page_errors[2][0].startswith("HTTP 503")
        assert orch.state.failed_page_errors[2][1].startswith("Attempt 2:")
        assert observer.failure_reports == []

    def test_persistent_page_failure_stops_before_details(self, store):
        orch, client, observer = _orchestrator(store, FakeSite(41), page_failures={2: 99})
        assert orch.run() is False
        assert orch.state.stage is Stage.FAILED
        assert store.product_count() == 0
        assert not any("/product/" in url for url in client.fetched)
        stage, failures = observer.failure_reports[0]
        assert stage == "list"
        assert [f.id for f in failures] == [2]
        # first attempt + three retry rounds
        assert len(failures[0].errors) == 4

    def test_critical_list_failures(self, store):
        orch, _, _ = _orchestrator(store, FakeSite(41), page_failures={2: 99, 3: 99})
        assert orch.run() is False
        assert orch.state.critical_error is not None
        assert orch.last_stats["stop_reason"] == "Critical list failures"

    def test_failed_detail_is_reported_but_others_saved(self, store):
        orch, _, observer = _orchestrator(store, FakeSite(41), detail_failures={7: 99})
        assert orch.run() is True
        assert store.product_count() == 40
        stage, failures = observer.failure_reports[-1]
        assert stage == "detail"
        assert failures[0].id == product_url(7)
        assert orch.last_validation.missing_in_detail == [product_url(7)]

    def test_carried_failures_are_not_retried_by_later_batches(self, store):
        orch, client, _ = _orchestrator(
            store, FakeSite(41), fast_config(batch_size=2), page_failures={3: 99},
        )
        assert orch.run() is False
        page_3 = fast_config().page_url(3)
        assert client.fetched.count(page_3) == 4
        assert orch.state.failed_pages == {3}

    def test_unexpected_error_fails_the_session(self, store):
        class ExplodingClient(FakeFetchClient):
            async def refresh(self):
                raise RuntimeError("context lost")

        config = fast_config()
        client = ExplodingClient(config, FakeSite(41))
        orch = CrawlOrchestrator(config, store, client_factory=lambda cfg: client)
        assert orch.run() is False
        assert orch.state.stage is Stage.FAILED
        assert orch.state.critical_error == "context lost"
        assert client.cleaned_up >= 1
        assert not orch.is_crawling


# ====================================================================
# Control surface
# ====================================================================

class TestControl:

    def test_stop_when_idle(self, store):
        orch, _, _ = _orchestrator(store, FakeSite(41))
        assert orch.stop_crawling() is False

    def test_stop_during_list_pass(self, store):
        config = fast_config(initial_concurrency=1)
        orch, client, _ = _orchestrator(store, FakeSite(41), config)

        def stop_on_first_list_page(url):
            # filter page, last page count, then the first list page
            if len(client.fetched) == 3:
                assert orch.stop_crawling() is True

        client.on_fetch = stop_on_first_list_page
        assert orch.run() is False
        assert orch.state.stage is Stage.FAILED
        assert orch.state.critical_error is None
        assert orch.state.progress.status == "stopped"
        assert orch.last_stats["stop_reason"] == "User requested stop"
        assert store.product_count() == 0
        for page in (3, 2, 1):
            assert orch.state.page_statuses[page].status is TaskStatus.STOPPED
        assert not orch.is_crawling

    def test_second_start_is_rejected(self, store):
        orch, _, _ = _orchestrator(store, FakeSite(41))

        async def main():
            return await asyncio.gather(orch.start_crawling(), orch.start_crawling())

        assert asyncio.run(main()) == [True, False]

    def test_state_resets_between_sessions(self, store, tmp_path):
        orch, client, _ = _orchestrator(store, FakeSite(41), page_failures={2: 99})
        assert orch.run() is False
        client.page_failures.clear()
        assert orch.run() is True
        assert orch.state.failed_pages == set()
        assert store.product_count() == 41


# ====================================================================
# Status and gaps
# ====================================================================

class TestStatus:

    def test_status_for_empty_store(self, store):
        orch, _, _ = _orchestrator(store, FakeSite(41))
        summary = asyncio.run(orch.check_crawling_status())
        assert summary.error is None
        assert summary.site_total_pages == 4
        assert summary.site_product_count == 41
        assert summary.last_page_product_count == 5
        assert summary.db_product_count == 0
        assert summary.diff == 41
        assert summary.need_crawling is True
        assert (summary.crawling_range.start_page, summary.crawling_range.end_page) == (4, 1)
        assert summary.selected_page_count == 4
        assert summary.estimated_product_count == 41
        assert summary.estimated_total_time_ms == 20000

    def test_status_after_crawl(self, store):
        orch, _, _ = _orchestrator(store, FakeSite(41))
        orch.run()
        summary = asyncio.run(orch.check_crawling_status())
        assert summary.need_crawling is False
        assert summary.diff == 0
        assert summary.db_last_updated is not None

    def test_status_error_is_returned_not_raised(self, store, monkeypatch):
        monkeypatch.setattr("certcrawler.strategies.RETRY_DELAY_MS", 0)
        orch, _, _ = _orchestrator(store, FakeSite(41), page_failures={1: 99})
        summary = asyncio.run(orch.check_crawling_status())
        assert "HTTP 503" in summary.error
        assert summary.site_total_pages == 0


class TestGapCollection:

    def _store_with_holes(self, tmp_path):
        full = JsonRecordStore(str(tmp_path / "full.json"))
        CrawlOrchestrator(
            fast_config(), full, client_factory=lambda cfg: FakeFetchClient(cfg, FakeSite(41)),
        ).run()
        holey = JsonRecordStore(str(tmp_path / "holey.json"))
        keep = [p for p in full.products() if p.page_id != 1 and p.url != product_url(30)]
        holey.save_products(keep)
        return holey

    def test_detect(self, tmp_path):
        store = self._store_with_holes(tmp_path)
        orch, _, _ = _orchestrator(store, FakeSite(41))
        detection, site = asyncio.run(orch.detect_gaps())
        assert site.total_pages == 4
        assert detection.missing_page_ids == [1, 2]
        assert detection.completely_missing_page_ids == [1]
        assert detection.total_missing == 13

    def test_collect_fills_the_holes(self, tmp_path):
        store = self._store_with_holes(tmp_path)
        orch, client, _ = _orchestrator(store, FakeSite(41))
        result = asyncio.run(orch.collect_gaps())
        assert result.success
        assert result.collected == 13
        assert store.product_count() == 41
        # pageId 2 spills onto site page 1
        assert client.fetched.count(fast_config().page_url(1)) == 1
        assert orch.state.stage is Stage.COMPLETED
        assert not orch.is_crawling

    def test_critical_range_is_recorded_as_failed(self, tmp_path):
        store = self._store_with_holes(tmp_path)
        orch, _, _ = _orchestrator(store, FakeSite(41), page_failures={2: 99, 3: 99})
        result = asyncio.run(orch.collect_gaps())
        assert result.failed_ranges == [("4~1", "2/4 list pages failed")]
        assert result.collected == 0
        assert orch.state.critical_error == "2/4 list pages failed"
        assert store.product_count() == 28

    def test_nothing_to_collect(self, store):
        orch, _, _ = _orchestrator(store, FakeSite(41))
        orch.run()
        result = asyncio.run(orch.collect_gaps())
        assert result.total_ranges == 0
