"""
Tests for state.py and progress.py: stage machine, cache merge, failure
ledger, critical threshold and throttled progress.
"""

import pytest

from certcrawler.models import ListRecord, Stage, TaskStatus
from certcrawler.progress import (
    CrawlObserver,
    ObserverGroup,
    ProgressThrottle,
    estimate_remaining,
    format_summary,
)
from certcrawler.state import CrawlerState, merge_page_records


class RecordingObserver(CrawlObserver):
    def __init__(self):
        self.snapshots = []

    def on_progress(self, progress):
        self.snapshots.append(progress)


def _rec(url, model=None, page_id=0, index=0):
    return ListRecord(url=url, page_id=page_id, index_in_page=index, model=model)


# ====================================================================
# Cache merge
# ====================================================================

class TestMergePageRecords:

    def test_union_by_url_keeps_order(self):
        merged = merge_page_records([_rec("a"), _rec("b")], [_rec("c"), _rec("a")])
        assert [r.url for r in merged] == ["a", "b", "c"]

    def test_newer_non_empty_fields_win(self):
        merged = merge_page_records([_rec("a", model="Old")], [_rec("a", model="New")])
        assert merged[0].model == "New"

    def test_missing_fields_do_not_erase(self):
        merged = merge_page_records([_rec("a", model="Kept")], [_rec("a", model=None)])
        assert merged[0].model == "Kept"

    def test_idempotent(self):
        batch = [_rec("a", model="X"), _rec("b", model="Y")]
        once = merge_page_records([], batch)
        twice = merge_page_records(once, batch)
        assert once == twice


# ====================================================================
# Stage machine
# ====================================================================

class TestStageMachine:

    def test_forward_transitions(self):
        state = CrawlerState()
        for stage in (Stage.LIST_INIT, Stage.LIST_FETCHING, Stage.DETAIL_INIT, Stage.COMPLETED):
            state.set_stage(stage)
        assert state.stage is Stage.COMPLETED
        assert state.progress.status == "completed"

    def test_backward_transition_rejected(self):
        state = CrawlerState()
        state.set_stage(Stage.DETAIL_INIT)
        with pytest.raises(ValueError):
            state.set_stage(Stage.LIST_FETCHING)

    def test_terminal_is_final_until_reset(self):
        state = CrawlerState()
        state.set_stage(Stage.FAILED)
        with pytest.raises(ValueError):
            state.set_stage(Stage.LIST_INIT)
        state.reset()
        state.set_stage(Stage.LIST_INIT)
        assert state.stage is Stage.LIST_INIT

    def test_failed_reachable_from_any_stage(self):
        state = CrawlerState()
        state.set_stage(Stage.DETAIL_FETCHING)
        state.set_stage(Stage.FAILED, "boom")
        assert state.progress.status == "error"

    def test_critical_failure_forces_failed(self):
        observer = RecordingObserver()
        state = CrawlerState(observer)
        state.set_stage(Stage.LIST_FETCHING)
        state.report_critical_failure("too many errors")
        assert state.stage is Stage.FAILED
        assert observer.snapshots[-1].critical_error == "too many errors"

    def test_user_stop_is_not_a_critical_failure(self):
        observer = RecordingObserver()
        state = CrawlerState(observer)
        state.set_stage(Stage.LIST_FETCHING)
        state.report_stopped("Crawl stopped during list collection")
        assert state.stage is Stage.FAILED
        assert state.critical_error is None
        assert observer.snapshots[-1].status == "stopped"
        assert observer.snapshots[-1].critical_error is None

    def test_reset_clears_everything(self):
        state = CrawlerState()
        state.add_failed_page(3, "x")
        state.update_page_products_cache(3, [_rec("a")])
        state.total_pages = 5
        state.reset()
        assert state.failed_pages == set()
        assert state.failed_page_errors == {}
        assert state.page_products_cache == {}
        assert state.total_pages == 0
        assert state.stage is Stage.PREPARATION


# ====================================================================
# Completeness, status and ledger
# ====================================================================

class TestPageCompleteness:

    def test_full_page(self):
        state = CrawlerState()
        state.update_page_products_cache(5, [_rec(f"u{i}") for i in range(12)])
        assert state.validate_page_completeness(5, False, 12)

    def test_short_page(self):
        state = CrawlerState()
        state.update_page_products_cache(5, [_rec(f"u{i}") for i in range(11)])
        assert not state.validate_page_completeness(5, False, 12)

    def test_last_page_uses_expected_count(self):
        state = CrawlerState()
        state.update_page_products_cache(9, [_rec(f"u{i}") for i in range(7)])
        assert state.validate_page_completeness(9, True, 12, 7)
        assert not state.validate_page_completeness(9, False, 12, 7)


class TestTaskStatus:

    def test_success_is_never_downgraded(self):
        state = CrawlerState()
        state.set_page_status(1, TaskStatus.SUCCESS, 1)
        state.set_page_status(1, TaskStatus.FAILED, 2, "late failure")
        assert state.page_statuses[1].status is TaskStatus.SUCCESS

    def test_attempt_is_tracked(self):
        state = CrawlerState()
        state.set_detail_status("u", TaskStatus.ATTEMPTING, 3)
        entry = state.detail_statuses["u"]
        assert entry.attempt == 3
        assert entry.start_time is not None


class TestFailureLedger:

    def test_errors_accumulate_per_attempt(self):
        state = CrawlerState()
        state.add_failed_page(4, "HTTP 503")
        state.record_page_error(4, "Attempt 2: HTTP 503")
        entries = state.failure_entries("list")
        assert len(entries) == 1
        assert entries[0].id == 4
        assert entries[0].errors == ("HTTP 503", "Attempt 2: HTTP 503")

    def test_recovered_page_leaves_the_report(self):
        state = CrawlerState()
        state.add_failed_page(4, "x")
        state.remove_failed_page(4)
        assert state.failure_entries("list") == []

    def test_detail_entries(self):
        state = CrawlerState()
        state.add_failed_product("b", "x")
        state.add_failed_product("a", "y")
        assert [e.id for e in state.failure_entries("detail")] == ["a", "b"]


class TestCriticalThreshold:

    def _state_with(self, failed, total):
        state = CrawlerState()
        state.total_pages = total
        for page in range(failed):
            state.add_failed_page(page, "x")
        return state

    def test_above_threshold(self):
        assert self._state_with(31, 100).has_critical_failures()

    def test_below_threshold(self):
        assert not self._state_with(29, 100).has_critical_failures()

    def test_exactly_at_threshold_is_not_critical(self):
        assert not self._state_with(30, 100).has_critical_failures()

    def test_detail_ratio(self):
        state = CrawlerState()
        state.total_products = 10
        for i in range(4):
            state.add_failed_product(f"u{i}", "x")
        assert state.has_critical_failures()

    def test_custom_ratio(self):
        state = CrawlerState(critical_failure_ratio=0.5)
        state.total_pages = 10
        for page in range(4):
            state.add_failed_page(page, "x")
        assert not state.has_critical_failures()


# ====================================================================
# Progress helpers
# ====================================================================

class TestProgress:

    def test_throttle(self):
        now = [100.0]
        throttle = ProgressThrottle(3.0, clock=lambda: now[0])
        assert throttle.ready()
        now[0] += 1.0
        assert not throttle.ready()
        assert throttle.ready(force=True)
        now[0] += 3.5
        assert throttle.ready()

    def test_fetching_updates_are_throttled(self):
        observer = RecordingObserver()
        state = CrawlerState(observer)
        state.set_stage(Stage.LIST_FETCHING)
        before = len(observer.snapshots)
        for i in range(50):
            state.update_progress(i, 50)
        assert len(observer.snapshots) - before <= 1
        assert state.progress.current == 49

    def test_remaining_time_only_after_ten_percent(self):
        assert estimate_remaining(5, 100, 10.0) is None
        assert estimate_remaining(10, 100, 10.0) is None
        assert estimate_remaining(20, 100, 10.0) == pytest.approx(40.0)

    def test_percentage(self):
        state = CrawlerState()
        state.update_progress(25, 200, force=True)
        assert state.progress.percentage == 12.5

    def test_observer_errors_are_contained(self):
        class Broken(CrawlObserver):
            def on_progress(self, progress):
                raise RuntimeError("observer bug")

        good = RecordingObserver()
        state = CrawlerState(ObserverGroup([Broken(), good]))
        state.set_stage(Stage.LIST_INIT)
        assert good.snapshots[-1].stage is Stage.LIST_INIT

    def test_summary_lists_stop_reason(self):
        text = format_summary({"stage": "completed", "stop_reason": "Nothing to crawl"})
        assert "Nothing to crawl" in text
        assert text.startswith("=" * 65)
