"""
Retry Rounds and Backoff
========================
Multi-round retry of failed work items on top of ``ConcurrencyPool``.

Each round snapshots the failed-id set, clears it, and re-runs the pool over
the snapshot at a reduced concurrency.  Workers (or the coordinator, for
items that raise) put ids that fail again back into the set, tagged with the
new attempt number.  Rounds stop as soon as the set is empty, the attempt
ceiling is reached, or the cancel token fires.
"""

import logging
import random
from typing import Any, Awaitable, Callable, Hashable, List, MutableSet, Optional

from .pool import OUTCOME_ERROR, CancelToken, ConcurrencyPool, interruptible_sleep

logger = logging.getLogger(__name__)


def calculate_backoff_delay(
    attempt: int,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
    jitter: bool = True,
) -> float:
    """
    Calculate the delay before a retry attempt.

    Args:
        attempt: Attempt number (1-indexed; attempt 1 waits ``base_delay``)
        base_delay: Delay for the first attempt, in seconds
        max_delay: Upper bound before jitter is applied
        jitter: Add random jitter (±25%) to spread retries out

    Returns:
        Delay in seconds
    """
    delay = base_delay * (2 ** max(0, attempt - 1))
    delay = min(delay, max_delay)

    if jitter:
        jitter_range = delay * 0.25
        delay += random.uniform(-jitter_range, jitter_range)

    return max(0, delay)


async def backoff_sleep(
    attempt: int,
    token: Optional[CancelToken],
    base_delay: float = 1.0,
    max_delay: float = 30.0,
) -> float:
    """Sleep for the backoff delay of ``attempt``; aborts early on cancel."""
    delay = calculate_backoff_delay(attempt, base_delay, max_delay)
    await interruptible_sleep(delay, token)
    return delay


def format_attempt_error(attempt: int, error: Any) -> str:
    """Error string stored in the failure ledger for one attempt."""
    message = str(error) or type(error).__name__
    if attempt > 1:
        return f"Attempt {attempt}: {message}"
    return message


class RetryCoordinator:
    """
    Runs bounded retry rounds over a shared failed-id set.

    Args:
        failed_ids: Mutable set the workers repopulate on failure
        record_error: ``record_error(id, message)`` appends to the failure ledger
        label: Tag used in log lines (``"list"`` / ``"detail"``)
    """

    def __init__(
        self,
        failed_ids: MutableSet[Hashable],
        record_error: Callable[[Hashable, str], None],
        label: str = "retry",
    ):
        self.failed_ids = failed_ids
        self.record_error = record_error
        self.label = label
        self.rounds_run = 0

    async def retry_rounds(
        self,
        resolve: Callable[[Hashable], Any],
        worker: Callable[[Any, CancelToken, int], Awaitable[Any]],
        start_attempt: int,
        max_attempt: int,
        retry_concurrency: int,
        cancel_token: CancelToken,
    ) -> List[Hashable]:
        """
        Retry everything currently in ``failed_ids``.

        Args:
            resolve: Maps a failed id back to its work item; ``None`` or an
                item without identity means it can never succeed
            worker: ``worker(item, token, attempt)``
            start_attempt: Attempt number of the first retry round
            max_attempt: Last attempt number (inclusive)
            retry_concurrency: Pool size for retry rounds
            cancel_token: Shared session cancel token

        Returns:
            Ids still failed after the last round, sorted when possible
        """
        self.rounds_run = 0
        for attempt in range(start_attempt, max_attempt + 1):
            if not self.failed_ids:
                break
            if cancel_token.cancelled:
                logger.info(f"[RETRY] {self.label}: stop requested, skipping remaining rounds")
                break

            snapshot = _sorted(self.failed_ids)
            self.failed_ids.clear()

            items = []
            for failed_id in snapshot:
                item = resolve(failed_id)
                if item is None or not _has_identity(item):
                    logger.warning(f"[RETRY] {self.label}: dropping {failed_id!r} (no usable identity)")
                    continue
                items.append((failed_id, item))
            if not items:
                break

            self.rounds_run += 1
            logger.info(
                f"[RETRY] {self.label}: attempt {attempt}/{max_attempt} "
                f"for {len(items)} items (concurrency={retry_concurrency})"
            )

            async def _attempt(pair, token, _attempt=attempt):
                return await worker(pair[1], token, _attempt)

            pool = ConcurrencyPool(retry_concurrency, cancel_token)
            outcomes = await pool.run(items, _attempt)

            for outcome in outcomes:
                failed_id = outcome.item[0]
                if outcome.status == OUTCOME_ERROR:
                    self.failed_ids.add(failed_id)
                    self.record_error(failed_id, format_attempt_error(attempt, outcome.error))

            if not self.failed_ids:
                logger.info(f"[RETRY] {self.label}: all items recovered on attempt {attempt}")
                break

        remaining = _sorted(self.failed_ids)
        if remaining:
            logger.warning(
                f"[RETRY] {self.label}: {len(remaining)} items still failing "
                f"after {self.rounds_run} rounds"
            )
        return remaining


def _has_identity(item: Any) -> bool:
    url = getattr(item, "url", None)
    if url is not None:
        return bool(str(url).strip())
    return item != ""


def _sorted(ids) -> List[Hashable]:
    try:
        return sorted(ids)
    except TypeError:
        return list(ids)
