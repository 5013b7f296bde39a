"""Unit tests for the concurrent ingestion scheduler."""

from __future__ import annotations

import asyncio
import threading
import time
from pathlib import Path

import pytest

from contracts.artifacts import ArtifactKind, Batch, DeliveryReceipt, FlushReason
from contracts.errors import ArtifactIOError, DeliveryError
from contracts.fingerprints import artifact_fingerprint
from pipeline.dedup import Deduplicator, InMemoryFingerprintStore
from pipeline.discovery import TaggedPath
from pipeline.fingerprint_store import DuckDBFingerprintStore
from pipeline.normalizer import RecordNormalizer
from pipeline.publisher import RetryPolicy
from pipeline.scheduler import ArtifactTracker, PipelineScheduler, open_artifact
from sinks.base import InMemorySink
from tests.factories import make_normalized, write


def _csv(tmp_path: Path, name: str, rows: int, tag: str = "v") -> TaggedPath:
    body = "name,value\n" + "".join(f"{tag}{i},{i}\n" for i in range(rows))
    return TaggedPath(write(tmp_path, name, body.encode("utf-8")), ArtifactKind.CSV_TABLE, "explicit")


def _run(scheduler: PipelineScheduler, artifacts: list[TaggedPath]):
    return asyncio.run(scheduler.run(artifacts))


class _StallingSink(InMemorySink):
    """Blocks every delivery until ``release`` is set."""

    def __init__(self, release: threading.Event) -> None:
        super().__init__("stalling")
        self._release = release

    def deliver(self, batch: Batch) -> DeliveryReceipt:
        self._release.wait(timeout=10)
        return super().deliver(batch)


class _DownSink:
    def sink_name(self) -> str:
        return "down"

    def deliver(self, batch: Batch) -> DeliveryReceipt:
        raise DeliveryError("connection refused", retryable=True)

    def close(self) -> None:
        return None


class _RejectingSink(_DownSink):
    def deliver(self, batch: Batch) -> DeliveryReceipt:
        raise DeliveryError("schema mismatch", retryable=False)


class _BrokenAbandonSink(_RejectingSink):
    def abandon(self, batch_id: str) -> None:
        raise RuntimeError(f"cannot roll back {batch_id}")


class _FirstBatchStallingSink(InMemorySink):
    """Holds the first delivery until ``release`` is set."""

    def __init__(self) -> None:
        super().__init__("first-stall")
        self.entered = threading.Event()
        self.release = threading.Event()

    def deliver(self, batch: Batch) -> DeliveryReceipt:
        if not self.entered.is_set():
            self.entered.set()
            self.release.wait(timeout=10)
        return super().deliver(batch)


class _Handle:
    def __init__(self) -> None:
        self.closed = False

    def close(self) -> None:
        self.closed = True


def test_run_delivers_every_record_in_artifact_order(tmp_path: Path) -> None:
    """All records arrive, and each artifact's records keep their order."""
    artifacts = [_csv(tmp_path, "a.csv", 30, "a"), _csv(tmp_path, "b.csv", 20, "b")]
    sink = InMemorySink()
    scheduler = PipelineScheduler(sink, workers=2, channel_capacity=8, batch_size=7, flush_interval=5.0)

    stats = _run(scheduler, artifacts)

    assert stats.artifacts_processed == 2
    assert stats.records_emitted == 50
    assert stats.records_delivered == 50
    assert stats.by_kind == {"csv_table": 50}
    for name in ("a.csv", "b.csv"):
        seqs = [r.sequence for r in sink.records() if r.source_path.endswith(name)]
        assert seqs == sorted(seqs)
        assert len(seqs) == len(set(seqs))
    assert [b.seq for b in sink.batches()] == list(range(1, len(sink.batches()) + 1))


def test_corrupt_artifact_does_not_stop_the_run(tmp_path: Path) -> None:
    """A container error fails only its own artifact."""
    broken = TaggedPath(write(tmp_path, "broken.evtx", b"not an event log"), ArtifactKind.EVENT_LOG, "explicit")
    missing = TaggedPath(tmp_path / "gone.csv", ArtifactKind.CSV_TABLE, "explicit")
    sink = InMemorySink()
    scheduler = PipelineScheduler(sink, workers=3)

    stats = _run(scheduler, [broken, _csv(tmp_path, "ok.csv", 4), missing])

    assert stats.artifacts_processed == 1
    assert stats.artifacts_failed == 2
    assert stats.records_delivered == 4
    assert sorted(e["scope"] for e in stats.errors) == ["container", "io"]
    assert not stats.fatal_delivery_failure


def test_same_content_at_two_paths_is_ingested_once(tmp_path: Path) -> None:
    """Artifact dedup skips a byte-identical copy."""
    first = _csv(tmp_path, "one.csv", 3)
    copy = _csv(tmp_path, "copy.csv", 3)
    sink = InMemorySink()
    scheduler = PipelineScheduler(sink, workers=1)

    stats = _run(scheduler, [first, copy])

    assert stats.artifacts_duplicate == 1
    assert stats.records_delivered == 3


def test_stalled_sink_bounds_the_channel(tmp_path: Path) -> None:
    """A slow sink suspends decoders instead of growing the channel."""
    release = threading.Event()
    sink = _StallingSink(release)
    scheduler = PipelineScheduler(sink, workers=2, channel_capacity=4, batch_size=1, flush_interval=5.0)
    timer = threading.Timer(0.3, release.set)
    timer.start()
    try:
        stats = _run(scheduler, [_csv(tmp_path, "a.csv", 25, "a"), _csv(tmp_path, "b.csv", 25, "b")])
    finally:
        timer.cancel()

    assert stats.max_channel_depth <= 4
    assert stats.records_delivered == 50
    assert len(sink.batches()) == 50


def test_hard_timeout_cancels_the_run(tmp_path: Path) -> None:
    """The hard timeout stops a run stuck in delivery retries."""

    async def long_sleep(delay: float) -> None:
        await asyncio.sleep(3600)

    scheduler = PipelineScheduler(
        _DownSink(),
        batch_size=1,
        hard_timeout=0.3,
        retry=RetryPolicy(max_attempts=10),
        sleep=long_sleep,
    )

    stats = _run(scheduler, [_csv(tmp_path, "a.csv", 5)])

    assert stats.timed_out is True
    assert stats.records_delivered == 0
    assert stats.finished_at is not None


def test_failed_delivery_is_reported(tmp_path: Path) -> None:
    """A batch that never gets through is counted as failed."""
    scheduler = PipelineScheduler(_DownSink(), retry=RetryPolicy(max_attempts=1))

    stats = _run(scheduler, [_csv(tmp_path, "a.csv", 2)])

    assert stats.fatal_delivery_failure
    assert stats.records_failed == 2
    assert stats.errors[-1]["scope"] == "delivery"


def test_rejected_batches_do_not_stall_a_full_channel(tmp_path: Path) -> None:
    """Every batch can fail while decoders keep filling a small channel."""
    store = InMemoryFingerprintStore()
    scheduler = PipelineScheduler(
        _RejectingSink(),
        dedup=Deduplicator(granularity="artifact", store=store),
        channel_capacity=2,
        batch_size=1,
        retry=RetryPolicy(max_attempts=1),
    )

    stats = asyncio.run(asyncio.wait_for(scheduler.run([_csv(tmp_path, "a.csv", 50)]), 5))

    assert stats.batches_failed == 50
    assert stats.records_failed == 50
    assert stats.records_delivered == 0
    assert stats.writer_error is None
    assert len(store) == 0


def test_writer_crash_ends_the_run(tmp_path: Path) -> None:
    """A crashed writer cancels the decoders and is reported as a delivery failure."""
    scheduler = PipelineScheduler(
        _BrokenAbandonSink(),
        channel_capacity=2,
        batch_size=1,
        retry=RetryPolicy(max_attempts=1),
    )

    stats = asyncio.run(
        asyncio.wait_for(scheduler.run([_csv(tmp_path, "a.csv", 50, "a"), _csv(tmp_path, "b.csv", 5, "b")]), 5)
    )

    assert "cannot roll back" in stats.writer_error
    assert stats.fatal_delivery_failure
    assert stats.records_delivered == 0
    assert {"scope": "delivery", "source": "writer", "message": stats.writer_error} in stats.errors
    assert stats.to_dict()["writer_error"] == stats.writer_error


def test_request_stop_before_run_skips_everything(tmp_path: Path) -> None:
    """A stop request means no artifact is started."""
    sink = InMemorySink()
    scheduler = PipelineScheduler(sink)
    scheduler.request_stop()

    stats = _run(scheduler, [_csv(tmp_path, "a.csv", 2)])

    assert stats.stopped is True
    assert stats.artifacts_skipped == 1
    assert sink.records() == []


def test_request_stop_finishes_in_flight_artifact(tmp_path: Path) -> None:
    """A stop mid-decode delivers the current artifact in full and skips the queued ones."""
    sink = _FirstBatchStallingSink()
    scheduler = PipelineScheduler(sink, workers=1, channel_capacity=2, batch_size=5, flush_interval=60.0)
    artifacts = [_csv(tmp_path, "a.csv", 22, "a"), _csv(tmp_path, "b.csv", 3, "b"), _csv(tmp_path, "c.csv", 3, "c")]

    async def main():
        run = asyncio.create_task(scheduler.run(artifacts))
        assert await asyncio.to_thread(sink.entered.wait, 5)
        scheduler.request_stop()
        sink.release.set()
        return await run

    stats = asyncio.run(main())

    assert stats.stopped is True
    assert stats.artifacts_processed == 1
    assert stats.artifacts_skipped == 2
    assert stats.records_delivered == 22
    assert all(r.source_path.endswith("a.csv") for r in sink.records())
    assert [len(b) for b in sink.batches()] == [5, 5, 5, 5, 2]
    assert sink.batches()[-1].flush_reason is FlushReason.FINAL


def test_hard_timeout_closes_artifact_opened_after_cancel(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """A file still being opened when the run is cancelled is closed once the open returns."""
    handles: list[_Handle] = []

    def slow_open(path: Path, kind: ArtifactKind, host: str = "") -> _Handle:
        time.sleep(0.4)
        handle = _Handle()
        handles.append(handle)
        return handle

    monkeypatch.setattr("pipeline.scheduler.open_artifact", slow_open)
    scheduler = PipelineScheduler(InMemorySink(), workers=1, hard_timeout=0.1)

    stats = _run(scheduler, [_csv(tmp_path, "a.csv", 2)])

    assert stats.timed_out is True
    assert len(handles) == 1
    assert handles[0].closed is True


def test_scheduler_keeps_an_empty_deduplicator(tmp_path: Path) -> None:
    """A caller's fresh deduplicator and normalizer are used, not replaced."""
    store = InMemoryFingerprintStore()
    dedup = Deduplicator(granularity="artifact", store=store)
    normalizer = RecordNormalizer()
    scheduler = PipelineScheduler(InMemorySink(), dedup=dedup, normalizer=normalizer)

    assert scheduler._dedup is dedup
    assert scheduler._normalizer is normalizer

    stats = _run(scheduler, [_csv(tmp_path, "a.csv", 3)])

    assert stats.records_delivered == 3
    assert len(store) == 1


def test_reingest_with_persisted_fingerprints_adds_nothing(tmp_path: Path) -> None:
    """Fingerprints committed after delivery make a second run a no-op."""
    store_path = tmp_path / "state" / "fp.duckdb"
    store_path.parent.mkdir()
    artifact = _csv(tmp_path, "a.csv", 5)

    first = Deduplicator(store=DuckDBFingerprintStore(store_path))
    stats1 = _run(PipelineScheduler(InMemorySink(), dedup=first), [artifact])
    first.close()

    second = Deduplicator(store=DuckDBFingerprintStore(store_path))
    assert second.seed() == 6
    sink = InMemorySink()
    stats2 = _run(PipelineScheduler(sink, dedup=second), [artifact])
    second.close()

    assert stats1.records_delivered == 5
    assert stats2.artifacts_duplicate == 1
    assert sink.records() == []


def test_record_granularity_drops_repeated_records(tmp_path: Path) -> None:
    """With content fingerprints, a record seen in another artifact is dropped."""
    a = write(tmp_path, "a.csv", b"name,value\nx,1\ny,2\n")
    b = write(tmp_path, "b.csv", b"name,value\nx,1\nz,3\n")
    sink = InMemorySink()
    scheduler = PipelineScheduler(
        sink,
        normalizer=RecordNormalizer(record_mode="content"),
        dedup=Deduplicator(granularity="record"),
        workers=1,
    )

    stats = _run(
        scheduler,
        [TaggedPath(a, ArtifactKind.CSV_TABLE, "explicit"), TaggedPath(b, ArtifactKind.CSV_TABLE, "explicit")],
    )

    assert stats.records_duplicate == 1
    assert stats.records_delivered == 3


# -------------------------
# Helpers
# -------------------------


def test_artifact_tracker_commits_after_last_delivery() -> None:
    """An artifact is ready once decoded and every emitted record is delivered."""
    tracker = ArtifactTracker()
    fp = "b" * 64
    recs = [make_normalized(0, artifact_fp=fp), make_normalized(1, artifact_fp=fp)]
    tracker.start(fp)
    tracker.emitted(fp)
    tracker.emitted(fp)

    assert tracker.finish(fp) is False
    assert tracker.delivered(recs[:1]) == []
    assert tracker.delivered(recs[1:]) == [fp]
    assert tracker.delivered(recs[1:]) == []


def test_artifact_tracker_never_commits_failed_artifacts() -> None:
    """A failed delivery or decode keeps the artifact uncommitted."""
    tracker = ArtifactTracker()
    fp = "c" * 64
    rec = make_normalized(0, artifact_fp=fp)
    tracker.start(fp)
    tracker.emitted(fp)
    tracker.failed([rec])

    assert tracker.finish(fp) is False
    assert tracker.delivered([rec]) == []

    other = "d" * 64
    tracker.start(other)
    assert tracker.finish(other, failed=True) is False


def test_open_artifact_maps_and_fingerprints(tmp_path: Path) -> None:
    """Opening yields the artifact identity; empty and missing files are handled."""
    path = write(tmp_path, "x.csv", b"a,b\n1,2\n")
    opened = open_artifact(path, ArtifactKind.CSV_TABLE, "WS01")
    try:
        assert opened.artifact.size == 8
        assert opened.artifact.fingerprint == artifact_fingerprint(b"a,b\n1,2\n")
        assert opened.artifact.identity == f"WS01:{path}"
        assert bytes(opened.data[:3]) == b"a,b"
    finally:
        opened.close()

    empty = open_artifact(write(tmp_path, "empty.csv", b""), ArtifactKind.CSV_TABLE)
    assert empty.data == b""
    empty.close()

    with pytest.raises(ArtifactIOError):
        open_artifact(tmp_path / "nope.csv", ArtifactKind.CSV_TABLE)
