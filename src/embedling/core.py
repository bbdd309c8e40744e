"""
Core engine turning many fine-grained requests into a few batched network calls.
Callers enqueue payloads on a shared queue; a coalescing window groups the ones
arriving in quick succession and failed batches are retried with backoff until
the engine gives up for good.
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
import typing as t
import uuid
from collections import deque
from dataclasses import dataclass

import structlog

from embedling.backoff import (
    DEFAULT_BACKOFF_CEILING_SECONDS,
    DEFAULT_BACKOFF_SEED_SECONDS,
    BackoffController,
)
from embedling.exceptions import (
    BatchFailedError,
    ItemTimeoutError,
    PermanentFailureError,
    QueueFullError,
    ResultCountMismatchError,
    is_retryable_error,
    preview_payload,
)

log = structlog.get_logger(__name__)

P = t.TypeVar("P")
R = t.TypeVar("R")

# The remote API rate limits clients to 2 requests per second.
DEFAULT_FLUSH_WINDOW_SECONDS = 0.51
DEFAULT_BATCH_SIZE = 400
DEFAULT_MAX_QUEUE_SIZE = 100_000


@dataclass(frozen=True)
class BatchResponse(t.Generic[R]):
    """
    Outcome of one network call, as returned by the dispatch collaborator.

    Parameters
    ----------
    results : list[R]
        One result per dispatched payload, in payload order.
    usage : int
        Quota consumed by the call (e.g. tokens), accumulated by the engine.
    """

    results: list[R]
    usage: int = 0


@dataclass
class _PendingItem(t.Generic[P, R]):
    """A payload waiting to be dispatched, with the future its caller awaits."""

    item_id: str
    payload: P
    future: asyncio.Future[R]
    enqueued_at: float
    sequence: int


class Batcher(t.Generic[P, R]):
    """
    Manage the queue, the coalescing timer and the dispatch-retry lifecycle.

    The first request after an idle period is dispatched at once; requests
    arriving while the window timer is armed are grouped into the drain that
    runs when it fires. Each drain sends at most ``batch_size`` payloads in a
    single call to ``dispatch``.

    Parameters
    ----------
    dispatch : typing.Callable[[list[P]], typing.Awaitable[BatchResponse[R]]]
        Coroutine function performing one network call for a list of payloads.
    batch_size : int
        Maximum number of payloads per network call.
    flush_window_seconds : float
        Coalescing window between two drains.
    max_queue_size : int
        Backpressure ceiling on queued payloads.
    backoff_seed_seconds : float
        First delay after a retryable failure; doubles on each consecutive one.
    backoff_ceiling_seconds : float
        The engine fails permanently once the next delay would exceed this.
    item_timeout_seconds : float | None
        Reject items that have not settled after this long. ``None`` disables it.
    is_retryable : typing.Callable[[BaseException], bool] | None
        Error classifier; defaults to status-code based classification.
    name : str
        Name used in logs and batch identifiers.

    Notes
    -----
    All state is owned by one event loop. Engines are independent of each other.
    """

    def __init__(
        self,
        dispatch: t.Callable[[list[P]], t.Awaitable[BatchResponse[R]]],
        *,
        batch_size: int = DEFAULT_BATCH_SIZE,
        flush_window_seconds: float = DEFAULT_FLUSH_WINDOW_SECONDS,
        max_queue_size: int = DEFAULT_MAX_QUEUE_SIZE,
        backoff_seed_seconds: float = DEFAULT_BACKOFF_SEED_SECONDS,
        backoff_ceiling_seconds: float = DEFAULT_BACKOFF_CEILING_SECONDS,
        item_timeout_seconds: float | None = None,
        is_retryable: t.Callable[[BaseException], bool] | None = None,
        name: str = "batcher",
    ) -> None:
        if batch_size < 1:
            raise ValueError(f"batch_size must be at least 1, got {batch_size}")
        if flush_window_seconds < 0:
            raise ValueError(
                f"flush_window_seconds must not be negative, got {flush_window_seconds}"
            )
        if max_queue_size < 1:
            raise ValueError(f"max_queue_size must be at least 1, got {max_queue_size}")
        if item_timeout_seconds is not None and item_timeout_seconds <= 0:
            raise ValueError(
                f"item_timeout_seconds must be positive, got {item_timeout_seconds}"
            )

        self._dispatch = dispatch
        self._batch_size = batch_size
        self._flush_window_seconds = flush_window_seconds
        self._max_queue_size = max_queue_size
        self._item_timeout_seconds = item_timeout_seconds
        self._is_retryable = is_retryable or (lambda error: is_retryable_error(error=error))
        self._name = name

        self._queue: deque[_PendingItem[P, R]] = deque()
        self._backoff = BackoffController(
            seed_seconds=backoff_seed_seconds,
            ceiling_seconds=backoff_ceiling_seconds,
        )
        self._scheduled_flush: asyncio.TimerHandle | None = None
        self._retry_handle: asyncio.TimerHandle | None = None
        self._inflight: set[asyncio.Task[None]] = set()
        self._batch_counter = 0
        self._sequence = itertools.count()
        self._usage_total = 0

        log.debug(
            event="Initialized Batcher",
            batcher=name,
            batch_size=batch_size,
            flush_window_seconds=flush_window_seconds,
            max_queue_size=max_queue_size,
            backoff_seed_seconds=backoff_seed_seconds,
            backoff_ceiling_seconds=backoff_ceiling_seconds,
            item_timeout_seconds=item_timeout_seconds,
        )

    @property
    def pending_count(self) -> int:
        """Number of items queued and not yet dispatched."""
        return len(self._queue)

    @property
    def inflight_count(self) -> int:
        """Number of network calls currently running."""
        return len(self._inflight)

    @property
    def usage_total(self) -> int:
        """Usage accumulated from successful responses."""
        return self._usage_total

    @property
    def backoff(self) -> BackoffController:
        return self._backoff

    @property
    def permanent_failure(self) -> PermanentFailureError | None:
        return self._backoff.permanent_failure

    def enqueue_many(self, payloads: t.Sequence[P]) -> list[asyncio.Future[R]]:
        """
        Queue payloads and return one future per payload.

        Parameters
        ----------
        payloads : typing.Sequence[P]
            Units of work, in submission order.

        Returns
        -------
        list[asyncio.Future[R]]
            Futures in the same order as ``payloads``.

        Raises
        ------
        PermanentFailureError
            If the engine has permanently failed. The queue is left untouched.
        QueueFullError
            If accepting the payloads would exceed ``max_queue_size``.
        """
        stored = self._backoff.permanent_failure
        if stored is not None:
            raise PermanentFailureError(
                f"This embedder has permanently failed with error {stored}"
            ) from stored

        incoming = len(payloads)
        if incoming == 0:
            return []

        depth = len(self._queue)
        if depth + incoming > self._max_queue_size:
            log.warning(
                event="Rejected submission, queue full",
                batcher=self._name,
                pending_count=depth,
                incoming_count=incoming,
                max_queue_size=self._max_queue_size,
            )
            raise QueueFullError(
                f"There are already {depth} items queued up on this machine "
                f"(limit {self._max_queue_size}), cannot accept {incoming} more. "
                "Please slow down and try again!"
            )

        loop = asyncio.get_running_loop()
        now = loop.time()
        futures: list[asyncio.Future[R]] = []
        for payload in payloads:
            item: _PendingItem[P, R] = _PendingItem(
                item_id=str(uuid.uuid4()),
                payload=payload,
                future=loop.create_future(),
                enqueued_at=now,
                sequence=next(self._sequence),
            )
            if self._item_timeout_seconds is not None:
                self._arm_item_timeout(loop=loop, item=item)
            self._queue.append(item)
            futures.append(item.future)

        log.debug(
            event="Queued items",
            batcher=self._name,
            item_count=incoming,
            pending_count=len(self._queue),
        )
        self._request_flush()
        return futures

    async def submit_many(self, payloads: t.Sequence[P]) -> list[R]:
        """
        Queue payloads and wait for all of their results.

        Parameters
        ----------
        payloads : typing.Sequence[P]
            Units of work.

        Returns
        -------
        list[R]
            Results in input order, regardless of completion order.
        """
        futures = self.enqueue_many(payloads)
        if not futures:
            return []
        outcomes = await asyncio.gather(*futures, return_exceptions=True)
        for outcome in outcomes:
            if isinstance(outcome, BaseException):
                raise outcome
        return t.cast(list[R], outcomes)

    async def submit(self, payload: P) -> R:
        """
        Queue one payload and wait for its result.

        Parameters
        ----------
        payload : P
            Unit of work.

        Returns
        -------
        R
            Result for ``payload``.
        """
        results = await self.submit_many([payload])
        return results[0]

    def _arm_item_timeout(
        self,
        *,
        loop: asyncio.AbstractEventLoop,
        item: _PendingItem[P, R],
    ) -> None:
        timeout = t.cast(float, self._item_timeout_seconds)
        handle = loop.call_later(timeout, self._expire_item, item)
        item.future.add_done_callback(lambda _: handle.cancel())

    def _expire_item(self, item: _PendingItem[P, R]) -> None:
        if item.future.done():
            return
        log.warning(
            event="Item timed out",
            batcher=self._name,
            item_id=item.item_id,
            item_timeout_seconds=self._item_timeout_seconds,
        )
        item.future.set_exception(
            ItemTimeoutError(
                f"Call for {preview_payload(payload=item.payload)!r}... did not settle "
                f"within {self._item_timeout_seconds} seconds"
            )
        )

    def _request_flush(self) -> None:
        """
        Drain now and open a coalescing window, unless one is already open.
        """
        if self._scheduled_flush is not None:
            return
        self._drain()
        if self._backoff.latched:
            return
        loop = asyncio.get_running_loop()
        self._scheduled_flush = loop.call_later(
            self._flush_window_seconds,
            self._on_flush_timer,
        )

    def _on_flush_timer(self) -> None:
        self._scheduled_flush = None
        self._drain()
        loop = asyncio.get_running_loop()
        # Work larger than one batch keeps draining at one call per window.
        if (
            self._queue
            and not self._backoff.latched
            and not self._backoff.is_backing_off(now=loop.time())
        ):
            self._scheduled_flush = loop.call_later(
                self._flush_window_seconds,
                self._on_flush_timer,
            )

    def _on_backoff_elapsed(self) -> None:
        self._retry_handle = None
        log.debug(event="Backoff elapsed", batcher=self._name, pending_count=len(self._queue))
        self._request_flush()

    def _drain(self) -> None:
        """
        Pop up to ``batch_size`` live items and dispatch them in the background.
        """
        if not self._queue or self._backoff.latched:
            return
        loop = asyncio.get_running_loop()
        if self._backoff.is_backing_off(now=loop.time()):
            log.debug(
                event="Drain deferred by backoff",
                batcher=self._name,
                pending_count=len(self._queue),
                remaining_seconds=self._backoff.remaining(now=loop.time()),
            )
            return

        batch: list[_PendingItem[P, R]] = []
        skipped = 0
        while self._queue and len(batch) < self._batch_size:
            item = self._queue.popleft()
            # Cancelled by the caller or timed out.
            if item.future.done():
                skipped += 1
                continue
            batch.append(item)
        if skipped:
            log.debug(event="Dropped settled items", batcher=self._name, skipped_count=skipped)
        if not batch:
            return

        self._batch_counter += 1
        batch_id = f"{self._name}-{self._batch_counter}"
        log.debug(
            event="Drained queue",
            batcher=self._name,
            batch_id=batch_id,
            drained_count=len(batch),
            pending_count=len(self._queue),
        )
        task = loop.create_task(
            self._dispatch_batch(batch_id=batch_id, batch=batch),
            name=f"embedling_batch_{batch_id}",
        )
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)

    async def _dispatch_batch(self, *, batch_id: str, batch: list[_PendingItem[P, R]]) -> None:
        """
        Run one network call and settle the batch's futures.

        Parameters
        ----------
        batch_id : str
            Identifier of this dispatch.
        batch : list[_PendingItem[P, R]]
            Items sent in this call, in queue order.
        """
        log.info(
            event="Dispatching batch",
            batcher=self._name,
            batch_id=batch_id,
            item_count=len(batch),
        )
        try:
            response = await self._dispatch([item.payload for item in batch])
            if len(response.results) != len(batch):
                raise ResultCountMismatchError(
                    f"Batch {batch_id} sent {len(batch)} payloads "
                    f"but received {len(response.results)} results"
                )
        except asyncio.CancelledError:
            for item in batch:
                if not item.future.done():
                    item.future.cancel()
            raise
        except Exception as error:
            self._handle_failure(batch_id=batch_id, batch=batch, error=error)
            return

        self._usage_total += response.usage
        self._backoff.reset()
        for item, result in zip(batch, response.results):
            if not item.future.done():
                item.future.set_result(result)
        log.info(
            event="Batch resolved",
            batcher=self._name,
            batch_id=batch_id,
            item_count=len(batch),
            usage=response.usage,
            usage_total=self._usage_total,
        )

    def _handle_failure(
        self,
        *,
        batch_id: str,
        batch: list[_PendingItem[P, R]],
        error: Exception,
    ) -> None:
        """
        Requeue a batch after a retryable error, otherwise reject its items.

        Parameters
        ----------
        batch_id : str
            Identifier of the failed dispatch.
        batch : list[_PendingItem[P, R]]
            Items of the failed dispatch.
        error : Exception
            Error raised by the dispatch collaborator.
        """
        try:
            retryable = self._is_retryable(error)
        except Exception as classifier_error:
            log.error(
                event="Retry classifier raised, rejecting batch",
                batcher=self._name,
                batch_id=batch_id,
                error=str(error),
                classifier_error=str(classifier_error),
            )
            retryable = False

        if not retryable:
            log.error(
                event="Batch failed with non-retryable error",
                batcher=self._name,
                batch_id=batch_id,
                item_count=len(batch),
                error=str(error),
            )
            self._reject_batch(batch_id=batch_id, batch=batch, error=error)
            return

        loop = asyncio.get_running_loop()
        delay = self._backoff.escalate(now=loop.time())
        if delay is None:
            self._fail_permanently(batch=batch)
            return

        live = [item for item in batch if not item.future.done()]
        # Queue order is submission order, requeued items included.
        self._queue = deque(
            heapq.merge(live, self._queue, key=lambda item: item.sequence)
        )
        log.warning(
            event="Batch failed with retryable error, requeued",
            batcher=self._name,
            batch_id=batch_id,
            requeued_count=len(live),
            retry_in_seconds=delay,
            error=str(error),
        )
        if self._retry_handle is not None:
            self._retry_handle.cancel()
        self._retry_handle = loop.call_later(delay, self._on_backoff_elapsed)

    def _reject_batch(
        self,
        *,
        batch_id: str,
        batch: list[_PendingItem[P, R]],
        error: Exception,
    ) -> None:
        for item in batch:
            if item.future.done():
                continue
            try:
                failure: Exception = BatchFailedError(
                    batch_id=batch_id,
                    payload=item.payload,
                    cause=error,
                )
            except Exception:
                # Payload could not be described, hand back the raw error.
                failure = error
            item.future.set_exception(failure)

    def _fail_permanently(self, *, batch: list[_PendingItem[P, R]]) -> None:
        error = t.cast(PermanentFailureError, self._backoff.permanent_failure)
        stranded = [*batch, *self._queue]
        self._queue.clear()
        self._cancel_timers()
        for item in stranded:
            if not item.future.done():
                item.future.set_exception(error)
        log.error(
            event="Batcher permanently failed",
            batcher=self._name,
            rejected_count=len(stranded),
            error=str(error),
        )

    def _cancel_timers(self) -> None:
        if self._scheduled_flush is not None:
            self._scheduled_flush.cancel()
            self._scheduled_flush = None
        if self._retry_handle is not None:
            self._retry_handle.cancel()
            self._retry_handle = None

    async def close(self) -> None:
        """
        Dispatch remaining work and wait for in-flight calls.

        Notes
        -----
        Queued items are sent without waiting for coalescing windows; backoff
        delays are still honoured. A permanently failed engine closes at once.
        """
        self._cancel_timers()
        loop = asyncio.get_running_loop()
        while self._queue or self._inflight:
            if self._inflight:
                # Cancelling close() must not cancel calls other callers await.
                await asyncio.wait(list(self._inflight))
                continue
            if self._backoff.latched:
                break
            remaining = self._backoff.remaining(now=loop.time())
            if remaining > 0:
                log.debug(
                    event="Waiting for backoff during close",
                    batcher=self._name,
                    remaining_seconds=remaining,
                )
                await asyncio.sleep(remaining)
            self._drain()
        self._cancel_timers()
        log.debug(event="Batcher closed", batcher=self._name, usage_total=self._usage_total)

    async def __aenter__(self) -> Batcher[P, R]:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: t.Any,
    ) -> None:
        await self.close()
