"""Concurrent ingestion run: decode workers, bounded channel, one writer.

Task layout of one run::

    work queue --> worker x N --(bounded channel)--> writer (Batcher) --> sink

Each worker takes one artifact at a time: open + map + fingerprint (thread),
artifact admission, decode, normalize, record admission, then
``await channel.put``. A full channel suspends the worker, which is the only
backpressure mechanism. Artifact- and record-scoped errors are counted and
never stop the run.

Fingerprints are admitted in memory immediately but only committed to the
persisted store after delivery is confirmed (see :class:`ArtifactTracker`).
"""

from __future__ import annotations

import asyncio
import logging
import mmap
import os
import threading
import uuid
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from contracts.artifacts import ArtifactFile, ArtifactKind, Batch, NormalizedRecord
from contracts.errors import ArtifactError, ArtifactIOError, ContainerError, RecordError, SchemaError
from contracts.fingerprints import artifact_fingerprint
from decoders import DecoderOptions, FormatDecoder, decoder_for
from infra.logging_config import clear_request_context, set_request_context
from pipeline.dedup import Admission, Deduplicator
from pipeline.discovery import TaggedPath
from pipeline.normalizer import RecordNormalizer
from pipeline.publisher import END_OF_STREAM, Batcher, Publisher, RetryPolicy
from sinks.base import DeliverySink
from sinks.dead_letter import DeadLetterWriter

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(UTC)


def new_run_id() -> str:
    return _utc_now().strftime("%Y%m%dT%H%M%SZ") + "-" + uuid.uuid4().hex[:8]


@dataclass
class RunStats:
    """Counters and bounded error samples of one run."""

    run_id: str
    max_error_samples: int = 50
    started_at: datetime = field(default_factory=_utc_now)
    finished_at: datetime | None = None

    artifacts_total: int = 0
    artifacts_processed: int = 0
    artifacts_failed: int = 0
    artifacts_duplicate: int = 0
    artifacts_skipped: int = 0

    records_decoded: int = 0
    records_emitted: int = 0
    records_duplicate: int = 0
    records_discarded: int = 0
    record_errors: int = 0
    schema_errors: int = 0

    batches_delivered: int = 0
    records_delivered: int = 0
    batches_failed: int = 0
    records_failed: int = 0
    retries: int = 0

    max_channel_depth: int = 0
    timed_out: bool = False
    stopped: bool = False
    writer_error: str | None = None
    by_kind: dict[str, int] = field(default_factory=dict)
    errors: list[dict[str, Any]] = field(default_factory=list)
    errors_total: int = 0

    def add_error(self, scope: str, source: str, message: str) -> None:
        self.errors_total += 1
        if len(self.errors) < self.max_error_samples:
            self.errors.append({"scope": scope, "source": source, "message": message})

    def add_artifact_error(self, exc: ArtifactError, source: str) -> None:
        if isinstance(exc, RecordError):
            self.record_errors += 1
        elif isinstance(exc, SchemaError):
            self.schema_errors += 1
        self.add_error(exc.kind, exc.source or source, str(exc))

    @property
    def fatal_delivery_failure(self) -> bool:
        return self.batches_failed > 0 or self.writer_error is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "artifacts": {
                "total": self.artifacts_total,
                "processed": self.artifacts_processed,
                "failed": self.artifacts_failed,
                "duplicate": self.artifacts_duplicate,
                "skipped": self.artifacts_skipped,
            },
            "records": {
                "decoded": self.records_decoded,
                "emitted": self.records_emitted,
                "duplicate": self.records_duplicate,
                "discarded": self.records_discarded,
                "record_errors": self.record_errors,
                "schema_errors": self.schema_errors,
                "by_kind": dict(sorted(self.by_kind.items())),
            },
            "delivery": {
                "batches_delivered": self.batches_delivered,
                "records_delivered": self.records_delivered,
                "batches_failed": self.batches_failed,
                "records_failed": self.records_failed,
                "retries": self.retries,
            },
            "max_channel_depth": self.max_channel_depth,
            "timed_out": self.timed_out,
            "stopped": self.stopped,
            "writer_error": self.writer_error,
            "errors_total": self.errors_total,
            "errors": list(self.errors),
        }


class ArtifactTracker:
    """Outstanding-record bookkeeping per artifact fingerprint.

    An artifact fingerprint is ready to commit once its decode finished
    without a container error, and every record it emitted was delivered.
    Updated from the event loop (start/emit/finish) and from the delivery
    callback thread (delivered/failed).
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._outstanding: dict[str, int] = {}
        self._finished: set[str] = set()
        self._failed: set[str] = set()

    def start(self, fingerprint: str) -> None:
        with self._lock:
            self._outstanding.setdefault(fingerprint, 0)

    def emitted(self, fingerprint: str) -> None:
        with self._lock:
            self._outstanding[fingerprint] = self._outstanding.get(fingerprint, 0) + 1

    def finish(self, fingerprint: str, *, failed: bool = False) -> bool:
        """Mark decode done; True when the artifact can be committed right away."""
        with self._lock:
            if failed:
                self._failed.add(fingerprint)
            self._finished.add(fingerprint)
            return self._ready(fingerprint)

    def delivered(self, records: Sequence[NormalizedRecord]) -> list[str]:
        """Account delivered records; returns artifact fingerprints that became ready."""
        ready: list[str] = []
        with self._lock:
            for rec in records:
                fp = rec.artifact_fingerprint
                if fp in self._outstanding:
                    self._outstanding[fp] -= 1
            for fp in {r.artifact_fingerprint for r in records}:
                if self._ready(fp):
                    ready.append(fp)
        return sorted(ready)

    def failed(self, records: Sequence[NormalizedRecord]) -> None:
        with self._lock:
            self._failed.update(r.artifact_fingerprint for r in records)

    def _ready(self, fp: str) -> bool:
        if fp not in self._finished or fp in self._failed:
            return False
        if self._outstanding.get(fp, 0) != 0:
            return False
        # Committed once.
        self._finished.discard(fp)
        self._outstanding.pop(fp, None)
        return True


class _OpenedArtifact:
    """Read-only mapping of one artifact file."""

    def __init__(self, handle: Any, data: Any, artifact: ArtifactFile) -> None:
        self._handle = handle
        self.data = data
        self.artifact = artifact

    def close(self) -> None:
        if isinstance(self.data, mmap.mmap):
            self.data.close()
        self._handle.close()


def open_artifact(path: Path, kind: ArtifactKind, host: str = "") -> _OpenedArtifact:
    """Open, map and fingerprint ``path``. Raises ArtifactIOError."""
    try:
        handle = path.open("rb")
    except OSError as exc:
        raise ArtifactIOError(f"cannot open artifact: {exc}", source=str(path)) from exc
    try:
        size = os.fstat(handle.fileno()).st_size
        data: Any = mmap.mmap(handle.fileno(), 0, access=mmap.ACCESS_READ) if size else b""
        fingerprint = artifact_fingerprint(data)
    except (OSError, ValueError) as exc:
        handle.close()
        raise ArtifactIOError(f"cannot read artifact: {exc}", source=str(path)) from exc
    artifact = ArtifactFile(path=str(path), kind=kind, size=size, fingerprint=fingerprint, host=host)
    return _OpenedArtifact(handle, data, artifact)


def _close_unclaimed(opening: asyncio.Future) -> None:
    if not opening.cancelled() and opening.exception() is None:
        opening.result().close()


class PipelineScheduler:
    """One ingestion run over a fixed list of tagged artifacts."""

    def __init__(
        self,
        sink: DeliverySink,
        *,
        normalizer: RecordNormalizer | None = None,
        dedup: Deduplicator | None = None,
        options: DecoderOptions | None = None,
        workers: int = 4,
        channel_capacity: int = 10_000,
        batch_size: int = 1000,
        flush_interval: float = 2.0,
        yield_every: int = 256,
        hard_timeout: float | None = None,
        retry: RetryPolicy | None = None,
        dead_letter: DeadLetterWriter | None = None,
        host: str = "",
        run_id: str | None = None,
        max_error_samples: int = 50,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if workers < 1:
            raise ValueError("workers must be >= 1")
        if channel_capacity < 1:
            raise ValueError("channel_capacity must be >= 1")
        self.run_id = run_id or new_run_id()
        self._normalizer = normalizer if normalizer is not None else RecordNormalizer()
        self._dedup = dedup if dedup is not None else Deduplicator()
        self._options = options or DecoderOptions()
        self._workers = workers
        self._capacity = channel_capacity
        self._yield_every = max(1, yield_every)
        self._hard_timeout = hard_timeout
        self._host = host
        self._decoders: dict[ArtifactKind, FormatDecoder] = {}
        self._tracker = ArtifactTracker()
        self._stop = asyncio.Event()
        self.stats = RunStats(run_id=self.run_id, max_error_samples=max_error_samples)
        self.publisher = Publisher(
            sink,
            retry,
            dead_letter=dead_letter,
            on_delivered=self._on_delivered,
            on_failed=self._on_failed,
            sleep=sleep,
        )
        self._batcher = Batcher(
            self.publisher,
            batch_size=batch_size,
            flush_interval=flush_interval,
            run_id=self.run_id,
        )
        self._channel: asyncio.Queue | None = None
        self._unclaimed: set[asyncio.Future] = set()

    @property
    def channel(self) -> asyncio.Queue | None:
        return self._channel

    def request_stop(self) -> None:
        """Graceful shutdown: take no new artifacts, finish in-flight ones, flush."""
        self.stats.stopped = True
        self._stop.set()

    async def run(self, artifacts: Sequence[TaggedPath]) -> RunStats:
        self._channel = asyncio.Queue(maxsize=self._capacity)
        work: asyncio.Queue[TaggedPath] = asyncio.Queue()
        for tagged in artifacts:
            work.put_nowait(tagged)
        self.stats.artifacts_total = len(artifacts)
        logger.info(
            "Run %s: %d artifact(s), %d worker(s), channel capacity %d",
            self.run_id, len(artifacts), self._workers, self._capacity,
        )

        writer = asyncio.create_task(self._batcher.run(self._channel), name="writer")
        workers = [
            asyncio.create_task(self._worker(i, work), name=f"decode-worker-{i}")
            for i in range(min(self._workers, max(1, len(artifacts))))
        ]
        try:
            await asyncio.wait_for(self._drive(workers, writer), self._hard_timeout)
        except TimeoutError:
            self.stats.timed_out = True
            await self._abort(workers, writer)
            logger.error("Run %s hit the hard timeout", self.run_id)
        except Exception as exc:
            self.stats.writer_error = repr(exc)
            self.stats.add_error("delivery", "writer", repr(exc))
            logger.error("Run %s writer failed: %r", self.run_id, exc)
            await self._abort(workers, writer)
        finally:
            self.stats.finished_at = _utc_now()
            self.stats.artifacts_skipped += work.qsize()
            self._copy_delivery_stats()
        return self.stats

    async def _drive(self, workers: list[asyncio.Task], writer: asyncio.Task) -> None:
        assert self._channel is not None
        decoding = set(workers)
        while decoding:
            done, _ = await asyncio.wait(decoding | {writer}, return_when=asyncio.FIRST_COMPLETED)
            if writer in done:
                # The writer only returns after END_OF_STREAM; anything earlier is a crash.
                exc = writer.exception()
                raise exc if exc is not None else RuntimeError("writer exited before end of stream")
            for task in done:
                task.result()
            decoding -= done
        await self._channel.put(END_OF_STREAM)
        await writer

    async def _abort(self, workers: list[asyncio.Task], writer: asyncio.Task) -> None:
        assert self._channel is not None
        tasks = [*workers, writer]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        if self._unclaimed:
            await asyncio.wait(self._unclaimed)
        dropped = self._batcher.discard()
        while not self._channel.empty():
            if self._channel.get_nowait() is not END_OF_STREAM:
                dropped += 1
        self.stats.records_discarded += dropped
        logger.error("Run %s aborted; discarded %d undelivered record(s)", self.run_id, dropped)

    def _copy_delivery_stats(self) -> None:
        ps = self.publisher.stats
        self.stats.batches_delivered = ps.batches_delivered
        self.stats.records_delivered = ps.records_delivered
        self.stats.batches_failed = ps.batches_failed
        self.stats.records_failed = ps.records_failed
        self.stats.retries = ps.retries
        for failure in ps.failures:
            self.stats.add_error("delivery", failure.batch_id, failure.error)

    async def _worker(self, index: int, work: asyncio.Queue[TaggedPath]) -> None:
        while not self._stop.is_set():
            try:
                tagged = work.get_nowait()
            except asyncio.QueueEmpty:
                return
            set_request_context(run_id=self.run_id, worker=index, artifact=str(tagged.path))
            try:
                await self._process(tagged)
            except ArtifactError as exc:
                self.stats.artifacts_failed += 1
                self.stats.add_artifact_error(exc, str(tagged.path))
                logger.warning("Artifact %s failed: %s", tagged.path, exc)
            except Exception as exc:
                self.stats.artifacts_failed += 1
                self.stats.add_error("internal", str(tagged.path), repr(exc))
                logger.exception("Unexpected error while processing %s", tagged.path)
            finally:
                clear_request_context()

    async def _process(self, tagged: TaggedPath) -> None:
        opened = await self._open(tagged)
        try:
            await self._ingest(opened.artifact, opened.data)
        finally:
            opened.close()

    async def _open(self, tagged: TaggedPath) -> _OpenedArtifact:
        opening = asyncio.ensure_future(asyncio.to_thread(open_artifact, tagged.path, tagged.kind, self._host))
        try:
            return await asyncio.shield(opening)
        except asyncio.CancelledError:
            # The open thread cannot be interrupted; close its result once it returns.
            self._unclaimed.add(opening)
            opening.add_done_callback(_close_unclaimed)
            raise

    async def _ingest(self, artifact: ArtifactFile, data: Any) -> None:
        fp = artifact.fingerprint
        if self._dedup.checks_artifacts and self._dedup.admit(fp, scope="artifact") is Admission.DUPLICATE:
            self.stats.artifacts_duplicate += 1
            logger.info("Skipping duplicate artifact %s (%s)", artifact.path, fp[:12])
            return

        self._tracker.start(fp)
        try:
            emitted = await self._decode(artifact, data)
        except ContainerError:
            self._tracker.finish(fp, failed=True)
            self._dedup.forget(fp)
            raise
        self.stats.artifacts_processed += 1
        logger.info("Decoded %s: %d record(s) emitted", artifact.path, emitted)
        if self._tracker.finish(fp) and self._dedup.checks_artifacts:
            await asyncio.to_thread(self._dedup.commit, [fp])

    async def _decode(self, artifact: ArtifactFile, data: Any) -> int:
        assert self._channel is not None
        decoder = self._decoder(artifact.kind)

        def _on_error(err: RecordError) -> None:
            self.stats.add_artifact_error(err, artifact.path)

        emitted = 0
        for seen, record in enumerate(decoder.decode(artifact, data, _on_error), start=1):
            self.stats.records_decoded += 1
            try:
                normalized = self._normalizer.normalize(artifact, record)
            except SchemaError as exc:
                self.stats.add_artifact_error(exc, artifact.path)
            else:
                if (
                    self._dedup.checks_records
                    and self._dedup.admit(normalized.fingerprint, scope="record") is Admission.DUPLICATE
                ):
                    self.stats.records_duplicate += 1
                else:
                    self._tracker.emitted(artifact.fingerprint)
                    await self._channel.put(normalized)
                    emitted += 1
                    self.stats.records_emitted += 1
                    kind = artifact.kind.value
                    self.stats.by_kind[kind] = self.stats.by_kind.get(kind, 0) + 1
                    self.stats.max_channel_depth = max(self.stats.max_channel_depth, self._channel.qsize())
            if seen % self._yield_every == 0:
                await asyncio.sleep(0)
        return emitted

    def _decoder(self, kind: ArtifactKind) -> FormatDecoder:
        decoder = self._decoders.get(kind)
        if decoder is None:
            decoder = decoder_for(kind, self._options)
            self._decoders[kind] = decoder
        return decoder

    def _on_failed(self, batch: Batch) -> None:
        self._tracker.failed(batch.records)

    def _on_delivered(self, batch: Batch) -> None:
        fingerprints: list[str] = []
        if self._dedup.checks_records:
            fingerprints.extend(r.fingerprint for r in batch.records)
        ready = self._tracker.delivered(batch.records)
        if self._dedup.checks_artifacts:
            fingerprints.extend(ready)
        if fingerprints:
            self._dedup.commit(fingerprints)


__all__ = [
    "ArtifactTracker",
    "PipelineScheduler",
    "RunStats",
    "new_run_id",
    "open_artifact",
]
