"""Batching and fault-tolerant delivery.

The writer task (:meth:`Batcher.run`) drains the shared output channel and
cuts a batch when ``batch_size`` records are buffered or ``flush_interval``
seconds have passed since the first buffered record, whichever comes first.
Each batch goes to :class:`Publisher`, which calls the sink in a worker
thread and retries retryable failures with bounded exponential backoff.

Blocking points of the writer task:
  - ``channel.get()`` (bounded by the flush deadline once a record is buffered)
  - the sink call
  - the backoff sleep between attempts
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from contracts.artifacts import Batch, FlushReason, NormalizedRecord
from contracts.errors import DeliveryError
from sinks.base import DeliverySink
from sinks.dead_letter import DeadLetterWriter

logger = logging.getLogger(__name__)

# Pushed onto the channel once every decode worker is done.
END_OF_STREAM: Any = object()

BatchCallback = Callable[[Batch], None]


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 5
    initial_backoff_seconds: float = 0.5
    multiplier: float = 2.0
    max_backoff_seconds: float = 30.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")

    def backoff(self, attempt: int) -> float:
        """Delay after failed attempt number ``attempt`` (1-based)."""
        delay = self.initial_backoff_seconds * (self.multiplier ** (attempt - 1))
        return min(self.max_backoff_seconds, delay)


@dataclass(frozen=True)
class BatchOutcome:
    batch_seq: int
    batch_id: str
    records: int
    flush_reason: FlushReason
    ok: bool
    attempts: int
    error: str = ""
    dead_lettered: bool = False


@dataclass
class PublisherStats:
    batches_delivered: int = 0
    records_delivered: int = 0
    batches_failed: int = 0
    records_failed: int = 0
    retries: int = 0
    flushes: dict[str, int] = field(default_factory=dict)
    failures: list[BatchOutcome] = field(default_factory=list)


class Publisher:
    """Deliver one batch at a time with retry, backoff and dead-lettering."""

    def __init__(
        self,
        sink: DeliverySink,
        retry: RetryPolicy | None = None,
        *,
        dead_letter: DeadLetterWriter | None = None,
        on_delivered: BatchCallback | None = None,
        on_failed: BatchCallback | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._sink = sink
        self._retry = retry or RetryPolicy()
        self._dead_letter = dead_letter
        self._on_delivered = on_delivered
        self._on_failed = on_failed
        self._sleep = sleep
        self.stats = PublisherStats()

    async def publish(self, batch: Batch) -> BatchOutcome:
        self.stats.flushes[batch.flush_reason.value] = self.stats.flushes.get(batch.flush_reason.value, 0) + 1
        attempt = 0
        while True:
            attempt += 1
            try:
                await asyncio.to_thread(self._sink.deliver, batch)
            except DeliveryError as exc:
                error, retryable = str(exc), exc.retryable
            except Exception as exc:
                logger.exception("Sink %s raised while delivering batch %s", self._sink.sink_name(), batch.batch_id)
                error, retryable = f"{type(exc).__name__}: {exc}", False
            else:
                self.stats.batches_delivered += 1
                self.stats.records_delivered += len(batch)
                if self._on_delivered is not None:
                    await asyncio.to_thread(self._on_delivered, batch)
                return BatchOutcome(
                    batch_seq=batch.seq,
                    batch_id=batch.batch_id,
                    records=len(batch),
                    flush_reason=batch.flush_reason,
                    ok=True,
                    attempts=attempt,
                )

            if retryable and attempt < self._retry.max_attempts:
                delay = self._retry.backoff(attempt)
                self.stats.retries += 1
                logger.warning(
                    "Batch %s attempt %d/%d failed (retrying in %.2fs): %s",
                    batch.batch_id, attempt, self._retry.max_attempts, delay, error,
                )
                await self._sleep(delay)
                continue
            return await self._fail(batch, attempt, error, retryable)

    async def _fail(self, batch: Batch, attempts: int, error: str, retryable: bool) -> BatchOutcome:
        kind = "retries exhausted" if retryable else "non-retryable"
        logger.error("Batch %s (%d records) failed, %s: %s", batch.batch_id, len(batch), kind, error)
        abandon = getattr(self._sink, "abandon", None)
        if callable(abandon):
            abandon(batch.batch_id)
        dead_lettered = False
        if self._dead_letter is not None:
            try:
                await asyncio.to_thread(self._dead_letter.write, batch, reason=error, attempts=attempts)
                dead_lettered = True
            except OSError as exc:
                logger.error("Dead-letter write for batch %s failed: %s", batch.batch_id, exc)
        outcome = BatchOutcome(
            batch_seq=batch.seq,
            batch_id=batch.batch_id,
            records=len(batch),
            flush_reason=batch.flush_reason,
            ok=False,
            attempts=attempts,
            error=f"{kind}: {error}",
            dead_lettered=dead_lettered,
        )
        self.stats.batches_failed += 1
        self.stats.records_failed += len(batch)
        self.stats.failures.append(outcome)
        if self._on_failed is not None:
            self._on_failed(batch)
        return outcome


class Batcher:
    """Writer task: channel -> size/time bounded batches -> publisher."""

    def __init__(
        self,
        publisher: Publisher,
        *,
        batch_size: int,
        flush_interval: float,
        run_id: str,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        if flush_interval <= 0:
            raise ValueError("flush_interval must be > 0")
        self._publisher = publisher
        self._batch_size = batch_size
        self._flush_interval = flush_interval
        self._run_id = run_id
        self._clock = clock
        self._seq = 0
        self._buffer: list[NormalizedRecord] = []
        self._deadline: float | None = None

    @property
    def buffered(self) -> int:
        return len(self._buffer)

    async def run(self, channel: asyncio.Queue) -> None:
        """Drain ``channel`` until END_OF_STREAM, then flush the partial batch."""
        while True:
            timeout = None
            if self._deadline is not None:
                timeout = max(0.0, self._deadline - self._clock())
            try:
                item = await asyncio.wait_for(channel.get(), timeout)
            except TimeoutError:
                await self._flush(FlushReason.TIME)
                continue
            if item is END_OF_STREAM:
                await self._flush(FlushReason.FINAL)
                return
            self._buffer.append(item)
            if len(self._buffer) == 1:
                self._deadline = self._clock() + self._flush_interval
            if len(self._buffer) >= self._batch_size:
                await self._flush(FlushReason.SIZE)
            elif self._deadline is not None and self._clock() >= self._deadline:
                await self._flush(FlushReason.TIME)

    def discard(self) -> int:
        """Drop the partial batch (hard shutdown). Returns the number of records dropped."""
        dropped = len(self._buffer)
        self._buffer = []
        self._deadline = None
        return dropped

    async def _flush(self, reason: FlushReason) -> None:
        if not self._buffer:
            self._deadline = None
            return
        self._seq += 1
        batch_id = f"{self._run_id}-{self._seq:06d}"
        records = tuple(r.with_batch(batch_id) for r in self._buffer)
        self._buffer = []
        self._deadline = None
        batch = Batch(seq=self._seq, batch_id=batch_id, records=records, flush_reason=reason)
        logger.debug("Flushing batch %s: %d records (%s)", batch_id, len(batch), reason.value)
        await self._publisher.publish(batch)


__all__ = [
    "END_OF_STREAM",
    "BatchOutcome",
    "Batcher",
    "Publisher",
    "PublisherStats",
    "RetryPolicy",
]
