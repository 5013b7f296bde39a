"""Delivery sink primitives.

A sink receives whole batches and either commits every record of the batch or
raises :class:`DeliveryError` (``retryable`` tells the publisher whether a
retry can help). Sinks must be idempotent per record fingerprint: a retried
batch may contain records the sink already stored.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Protocol

from contracts.artifacts import Batch, DeliveryReceipt
from contracts.errors import DeliveryError

logger = logging.getLogger(__name__)


class DeliverySink(Protocol):
    """Protocol for batch delivery targets."""

    def sink_name(self) -> str:
        """Return deterministic sink name for diagnostics."""

    def deliver(self, batch: Batch) -> DeliveryReceipt:
        """Deliver every record of ``batch`` or raise DeliveryError."""

    def close(self) -> None:
        """Flush and release resources."""


class NoopSink:
    """Sink that accepts and discards everything (``decode`` dry runs)."""

    def sink_name(self) -> str:
        return "noop"

    def deliver(self, batch: Batch) -> DeliveryReceipt:
        return DeliveryReceipt.success(len(batch), sink=self.sink_name())

    def close(self) -> None:
        return None


class InMemorySink:
    """In-memory sink for deterministic unit tests."""

    def __init__(self, name: str = "in_memory") -> None:
        self._name = name
        self._batches: list[Batch] = []
        self.closed = False

    def sink_name(self) -> str:
        return self._name

    def deliver(self, batch: Batch) -> DeliveryReceipt:
        self._batches.append(batch)
        return DeliveryReceipt.success(len(batch), sink=self._name)

    def close(self) -> None:
        self.closed = True

    def batches(self) -> list[Batch]:
        return list(self._batches)

    def records(self) -> list:
        return [rec for b in self._batches for rec in b.records]


class CompositeSink:
    """Fan a batch out to several sinks.

    Per-sink success is remembered per batch id, so a retried batch is only
    re-sent to the sinks that failed the previous attempt.
    """

    def __init__(self, sinks: Sequence[DeliverySink]) -> None:
        if not sinks:
            raise ValueError("CompositeSink needs at least one sink")
        names = [s.sink_name() for s in sinks]
        if len(set(names)) != len(names):
            raise ValueError(f"Duplicate sink names: {names}")
        self._sinks = list(sinks)
        self._delivered: dict[str, set[str]] = {}

    def sink_name(self) -> str:
        return "+".join(s.sink_name() for s in self._sinks)

    @property
    def sinks(self) -> list[DeliverySink]:
        return list(self._sinks)

    def deliver(self, batch: Batch) -> DeliveryReceipt:
        done = self._delivered.setdefault(batch.batch_id, set())
        failures: list[DeliveryError] = []
        for sink in self._sinks:
            name = sink.sink_name()
            if name in done:
                continue
            try:
                sink.deliver(batch)
            except DeliveryError as exc:
                logger.warning("Sink %s failed batch %s: %s", name, batch.batch_id, exc)
                failures.append(exc)
                continue
            done.add(name)

        if not failures:
            del self._delivered[batch.batch_id]
            return DeliveryReceipt.success(len(batch), sink=self.sink_name())
        pending = [s.sink_name() for s in self._sinks if s.sink_name() not in done]
        raise DeliveryError(
            f"{len(failures)} sink(s) failed: {pending}: " + "; ".join(str(f) for f in failures),
            retryable=all(f.retryable for f in failures),
        )

    def abandon(self, batch_id: str) -> None:
        """Forget per-sink progress of a batch that will not be retried."""
        self._delivered.pop(batch_id, None)

    def close(self) -> None:
        errors: list[str] = []
        for sink in self._sinks:
            try:
                sink.close()
            except DeliveryError as exc:
                errors.append(f"{sink.sink_name()}: {exc}")
        if errors:
            raise DeliveryError("closing sinks failed: " + "; ".join(errors), retryable=False)


__all__ = ["CompositeSink", "DeliverySink", "InMemorySink", "NoopSink"]
