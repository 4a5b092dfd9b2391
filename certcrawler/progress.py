"""
Progress Reporting
==================
Observer interface the orchestrator writes to, plus helpers for throttled
progress snapshots and end-of-run summaries.

Observers receive plain snapshots; delivery is at-least-once and a consumer
may see the same snapshot more than once.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict, List, Optional

from .models import CrawlProgress, FailureEntry, SaveResult

logger = logging.getLogger(__name__)

# Minimum seconds between two "fetching" snapshots of the same pass
PROGRESS_THROTTLE_SEC = 3.0


class CrawlObserver:
    """Receives progress from a crawl session.  Override what you need."""

    def on_progress(self, progress: CrawlProgress) -> None:
        pass

    def on_failure_report(self, stage: str, failures: List[FailureEntry]) -> None:
        pass

    def on_store_event(self, kind: str, result: Optional[SaveResult], message: str = "") -> None:
        """``kind`` is one of ``saved``, ``skipped``, ``error``."""
        pass


class CallbackObserver(CrawlObserver):
    """Adapts a plain ``callback(progress)`` function."""

    def __init__(self, callback: Callable[[CrawlProgress], Any]):
        self._callback = callback

    def on_progress(self, progress: CrawlProgress) -> None:
        self._callback(progress)


class LoggingObserver(CrawlObserver):
    """Logs every snapshot and report; used by the CLI."""

    def on_progress(self, progress: CrawlProgress) -> None:
        remaining = (
            f" eta={progress.remaining_time:.0f}s" if progress.remaining_time is not None else ""
        )
        logger.info(
            f"[PROGRESS] {progress.stage.value} "
            f"{progress.current}/{progress.total} ({progress.percentage:.1f}%) "
            f"elapsed={progress.elapsed_time:.0f}s{remaining} "
            f"{progress.message}"
        )

    def on_failure_report(self, stage: str, failures: List[FailureEntry]) -> None:
        logger.warning(f"[REPORT] {stage}: {len(failures)} failures")
        for entry in failures[:20]:
            last = entry.errors[-1] if entry.errors else "unknown error"
            logger.warning(f"  - {entry.id}: {last} ({len(entry.errors)} attempts)")
        if len(failures) > 20:
            logger.warning(f"  ... and {len(failures) - 20} more")

    def on_store_event(self, kind: str, result: Optional[SaveResult], message: str = "") -> None:
        if result is not None:
            logger.info(
                f"[STORE] {kind}: added={result.added} updated={result.updated} "
                f"unchanged={result.unchanged} failed={result.failed}"
            )
        else:
            logger.info(f"[STORE] {kind}: {message}")


class ObserverGroup(CrawlObserver):
    """Fans out to several observers.  A failing observer is logged and skipped."""

    def __init__(self, observers: Optional[List[CrawlObserver]] = None):
        self.observers: List[CrawlObserver] = list(observers or [])

    def add(self, observer: CrawlObserver) -> None:
        self.observers.append(observer)

    def _each(self, method: str, *args) -> None:
        for observer in self.observers:
            try:
                getattr(observer, method)(*args)
            except Exception as e:
                logger.warning(f"[PROGRESS] Observer {type(observer).__name__}.{method} failed: {e}")

    def on_progress(self, progress: CrawlProgress) -> None:
        self._each("on_progress", progress)

    def on_failure_report(self, stage: str, failures: List[FailureEntry]) -> None:
        self._each("on_failure_report", stage, failures)

    def on_store_event(self, kind: str, result: Optional[SaveResult], message: str = "") -> None:
        self._each("on_store_event", kind, result, message)


class ProgressThrottle:
    """Lets a snapshot through at most once per ``interval`` seconds."""

    def __init__(self, interval: float = PROGRESS_THROTTLE_SEC, clock: Callable[[], float] = time.monotonic):
        self.interval = interval
        self._clock = clock
        self._last = 0.0

    def ready(self, force: bool = False) -> bool:
        now = self._clock()
        if force or now - self._last >= self.interval:
            self._last = now
            return True
        return False


def estimate_remaining(current: int, total: int, elapsed: float) -> Optional[float]:
    """Remaining seconds from the rate so far; ``None`` until 10% is done."""
    if total <= 0 or current <= 0 or current * 10 <= total:
        return None
    rate = elapsed / current
    return max(0.0, rate * (total - current))


def format_summary(stats: Dict[str, Any]) -> str:
    """Format a human-readable end-of-run summary."""
    lines = [
        "=" * 65,
        "  CRAWL SUMMARY",
        "=" * 65,
        f"  Final stage:         {stats.get('stage', '')}",
        f"  Pages requested:     {stats.get('pages_requested', 0)}",
        f"  Pages failed:        {stats.get('pages_failed', 0)}",
        f"  List records:        {stats.get('list_records', 0)}",
        "-" * 65,
        f"  Detail records:      {stats.get('detail_records', 0)}",
        f"  Details failed:      {stats.get('details_failed', 0)}",
        f"  New / updated:       {stats.get('new_items', 0)} / {stats.get('updated_items', 0)}",
        "-" * 65,
        f"  Elapsed time:        {stats.get('elapsed_sec', 0.0):.1f} s",
        f"  Stop reason:         {stats.get('stop_reason', '')}",
        "=" * 65,
    ]
    return "\n".join(lines)
