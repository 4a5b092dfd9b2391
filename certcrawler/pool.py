"""
Bounded Worker Pool
===================
Runs a list of work items with at most N coroutines in flight and a shared,
cooperative cancel token.

- Exactly ``min(concurrency, len(items))`` worker coroutines are spawned; each
  pulls the next undispatched item until the list is exhausted.
- A failing item never aborts the pool.  Every item ends with exactly one
  ``TaskOutcome``: ``success``, ``error``, ``aborted`` (the item observed the
  cancel token) or ``stopped`` (never dispatched because of cancellation).
- Once the token is cancelled no further items are dispatched.
"""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, List, Optional, Sequence, TypeVar

from .errors import PageAbortedError, PageTimeoutError

logger = logging.getLogger(__name__)

T = TypeVar("T")

OUTCOME_SUCCESS = "success"
OUTCOME_ERROR = "error"
OUTCOME_ABORTED = "aborted"
OUTCOME_STOPPED = "stopped"


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------

class CancelToken:
    """Session-wide cancellation flag that coroutines can also wait on."""

    def __init__(self):
        self._event = asyncio.Event()
        self.reason = ""

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    def raise_if_cancelled(self, page_number: Optional[int] = None) -> None:
        if self._event.is_set():
            raise PageAbortedError(f"Aborted: {self.reason}", page_number=page_number)

    async def wait(self) -> None:
        await self._event.wait()


async def interruptible_sleep(seconds: float, token: Optional[CancelToken] = None) -> None:
    """Sleep for ``seconds`` unless the token fires first.

    Raises:
        PageAbortedError: if the token is (or becomes) cancelled
    """
    if token is None:
        if seconds > 0:
            await asyncio.sleep(seconds)
        return
    token.raise_if_cancelled()
    if seconds <= 0:
        return
    try:
        await asyncio.wait_for(token.wait(), timeout=seconds)
    except asyncio.TimeoutError:
        return
    token.raise_if_cancelled()


async def random_delay(min_ms: int, max_ms: int, token: Optional[CancelToken] = None) -> float:
    """Sleep a random whole number of milliseconds in ``[min_ms, max_ms]``."""
    if max_ms <= 0:
        return 0.0
    delay_ms = random.randint(min(min_ms, max_ms), max_ms)
    await interruptible_sleep(delay_ms / 1000.0, token)
    return delay_ms / 1000.0


async def race_operation(
    operation: Awaitable[T],
    token: Optional[CancelToken],
    timeout_ms: Optional[int],
    page_number: Optional[int] = None,
    attempt: Optional[int] = None,
) -> T:
    """Await ``operation`` against a timeout and the cancel token.

    Whichever settles first wins; the loser is cancelled.

    Raises:
        PageTimeoutError: the timeout elapsed first
        PageAbortedError: the token fired first
    """
    task = asyncio.ensure_future(operation)
    waiters = {task}
    cancel_waiter = None
    if token is not None:
        if token.cancelled:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
            token.raise_if_cancelled(page_number)
        cancel_waiter = asyncio.ensure_future(token.wait())
        waiters.add(cancel_waiter)

    timeout = timeout_ms / 1000.0 if timeout_ms else None
    try:
        done, _ = await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
    finally:
        if cancel_waiter is not None and not cancel_waiter.done():
            cancel_waiter.cancel()

    if task in done:
        return task.result()

    task.cancel()
    await asyncio.gather(task, return_exceptions=True)
    if cancel_waiter is not None and cancel_waiter in done:
        raise PageAbortedError(f"Aborted: {token.reason}", page_number=page_number, attempt=attempt)
    raise PageTimeoutError(
        f"Operation timed out after {timeout_ms}ms", page_number=page_number, attempt=attempt
    )


# ---------------------------------------------------------------------------
# Pool
# ---------------------------------------------------------------------------

@dataclass
class TaskOutcome(Generic[T]):
    """Result slot for one input item."""
    index: int
    item: T
    status: str = OUTCOME_STOPPED
    value: Any = None
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.status == OUTCOME_SUCCESS


class ConcurrencyPool:
    """
    Bounded parallel executor.

    Usage::

        pool = ConcurrencyPool(concurrency=8, cancel_token=token)
        outcomes = await pool.run(pages, crawl_one)
        failed = [o for o in outcomes if o.status == "error"]

    ``worker(item, token)`` is awaited once per dispatched item.
    """

    def __init__(
        self,
        concurrency: int,
        cancel_token: Optional[CancelToken] = None,
    ):
        self.concurrency = max(1, int(concurrency))
        self.cancel_token = cancel_token or CancelToken()
        self.peak_in_flight = 0
        self._in_flight = 0

    async def run(
        self,
        items: Sequence[T],
        worker: Callable[[T, CancelToken], Awaitable[Any]],
    ) -> List[TaskOutcome[T]]:
        items = list(items)
        outcomes = [TaskOutcome(index=i, item=item) for i, item in enumerate(items)]
        if not items:
            return outcomes

        next_index = 0
        token = self.cancel_token

        async def _runner(runner_id: int) -> None:
            nonlocal next_index
            while next_index < len(items):
                if token.cancelled:
                    break
                index = next_index
                next_index += 1
                outcome = outcomes[index]
                self._in_flight += 1
                self.peak_in_flight = max(self.peak_in_flight, self._in_flight)
                try:
                    outcome.value = await worker(outcome.item, token)
                    outcome.status = OUTCOME_SUCCESS
                except PageAbortedError as e:
                    outcome.status = OUTCOME_ABORTED
                    outcome.error = e
                except asyncio.CancelledError:
                    outcome.status = OUTCOME_ABORTED
                    raise
                except Exception as e:
                    outcome.status = OUTCOME_ERROR
                    outcome.error = e
                    logger.debug(f"[POOL-{runner_id}] Item {index} failed: {e}")
                finally:
                    self._in_flight -= 1

        runners = [
            asyncio.create_task(_runner(i))
            for i in range(min(self.concurrency, len(items)))
        ]
        try:
            await asyncio.gather(*runners)
        finally:
            for r in runners:
                if not r.done():
                    r.cancel()
            await asyncio.gather(*runners, return_exceptions=True)

        stopped = sum(1 for o in outcomes if o.status == OUTCOME_STOPPED)
        if stopped:
            logger.info(f"[POOL] {stopped}/{len(items)} items not dispatched (cancelled)")
        return outcomes
