"""
runner.py

Artifact ingestion runner (discovery -> decode workers -> batches -> sinks).

Pipeline:
  inputs -> discovery (kind tagging)
    -> N decode workers (decode, normalize, dedup)
      -> bounded channel -> writer (size/time batches, retry)
        -> duckdb / parquet / kafka (one or several)

Every operation here is driven by :class:`infra.config.Settings`; the CLI
(:mod:`cli`) only turns flags into settings overrides.

Ingest a case directory into the default DuckDB store:
artifactstream ingest /cases/host01

Several outputs at once, explicit kind tag:
artifactstream ingest --output duckdb --output parquet evtx=/cases/host01/Security.evtx

Decode one artifact to JSON lines (no sink):
artifactstream decode --kind hive /cases/host01/SYSTEM
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from collections.abc import Mapping, Sequence
from datetime import timedelta
from pathlib import Path
from typing import TextIO

from contracts.artifacts import ArtifactKind
from contracts.errors import ArtifactError, ContainerError, DeliveryError, RecordError, SchemaError
from contracts.fingerprints import canonical_json_dumps
from contracts.schema import KindSchema, build_schemas
from decoders import DecoderOptions, decoder_for
from decoders.csv_table import CsvMapping
from infra.config import Settings
from infra.logging_config import StructuredLogger
from pipeline.dedup import Deduplicator
from pipeline.discovery import ArtifactDiscovery
from pipeline.fingerprint_store import DuckDBFingerprintStore
from pipeline.normalizer import RecordNormalizer
from pipeline.publisher import RetryPolicy
from pipeline.run_manifest import RunManifest, write_manifest
from pipeline.scheduler import PipelineScheduler, RunStats, open_artifact
from sinks.base import CompositeSink, DeliverySink
from sinks.dead_letter import DeadLetterWriter
from sinks.duckdb_store import DuckDBConfig, DuckDBStore
from sinks.kafka import KafkaSink, KafkaSinkConfig
from sinks.parquet import ParquetSink, ParquetSinkConfig
from version import DECODER_SET_VERSION, ENGINE_NAME, ENGINE_VERSION, SCHEMA_VERSION

logger = logging.getLogger(__name__)
events = StructuredLogger(__name__)

EXIT_OK = 0
EXIT_DELIVERY_FAILED = 1
EXIT_TIMED_OUT = 2


def resolve_schemas(settings: Settings) -> tuple[dict[ArtifactKind, KindSchema], DecoderOptions]:
    """Declared schemas and decoder options, including the CSV mapping when configured."""
    mapping: CsvMapping | None = None
    overrides: list[KindSchema] = []
    if settings.input.csv_mapping:
        mapping = CsvMapping.load(settings.input.csv_mapping)
        overrides.append(mapping.schema())
    options = DecoderOptions(
        hive_root_name=settings.input.hive_root_name,
        hive_max_depth=settings.input.hive_max_depth,
        csv_mapping=mapping,
    )
    return build_schemas(overrides), options


def build_sinks(settings: Settings, schemas: Mapping[ArtifactKind, KindSchema]) -> DeliverySink:
    cfg = settings.sinks
    sinks: list[DeliverySink] = []
    for name in cfg.outputs:
        if name == "duckdb":
            Path(cfg.duckdb_path).parent.mkdir(parents=True, exist_ok=True)
            sinks.append(DuckDBStore(DuckDBConfig(database=cfg.duckdb_path, threads=cfg.duckdb_threads), schemas))
        elif name == "parquet":
            sinks.append(ParquetSink(ParquetSinkConfig(base_dir=cfg.parquet_dir), schemas))
        elif name == "kafka":
            sinks.append(
                KafkaSink(
                    KafkaSinkConfig(
                        bootstrap_servers=cfg.kafka_bootstrap,
                        topic_prefix=cfg.kafka_topic_prefix,
                        client_id=cfg.kafka_client_id,
                        acks=cfg.kafka_acks,
                        delivery_timeout_seconds=cfg.kafka_delivery_timeout_seconds,
                    ),
                    schemas,
                )
            )
        else:  # pragma: no cover - rejected by SinksConfig
            raise ValueError(f"Unknown sink: {name!r}")
    if len(sinks) == 1:
        return sinks[0]
    return CompositeSink(sinks)


def build_deduplicator(settings: Settings) -> Deduplicator:
    cfg = settings.dedup
    store = None
    if cfg.store_path:
        Path(cfg.store_path).parent.mkdir(parents=True, exist_ok=True)
        store = DuckDBFingerprintStore(cfg.store_path)
    retention = timedelta(seconds=cfg.retention_seconds) if cfg.retention_seconds else None
    dedup = Deduplicator(
        granularity=cfg.granularity,
        max_entries=cfg.max_entries,
        retention=retention,
        store=store,
    )
    dedup.seed()
    return dedup


def build_scheduler(
    settings: Settings,
    sink: DeliverySink,
    schemas: Mapping[ArtifactKind, KindSchema],
    options: DecoderOptions,
    dedup: Deduplicator,
) -> PipelineScheduler:
    p = settings.pipeline
    r = settings.retry
    dead_letter = DeadLetterWriter(settings.sinks.dead_letter_path) if settings.sinks.dead_letter_path else None
    return PipelineScheduler(
        sink,
        normalizer=RecordNormalizer(schemas, record_mode=settings.dedup.record_mode),
        dedup=dedup,
        options=options,
        workers=p.workers,
        channel_capacity=p.channel_capacity,
        batch_size=p.batch_size,
        flush_interval=p.flush_interval_seconds,
        yield_every=p.yield_every,
        hard_timeout=p.hard_timeout_seconds,
        retry=RetryPolicy(
            max_attempts=r.max_attempts,
            initial_backoff_seconds=r.initial_backoff_seconds,
            multiplier=r.multiplier,
            max_backoff_seconds=r.max_backoff_seconds,
        ),
        dead_letter=dead_letter,
        host=settings.input.host,
    )


async def _run_with_signals(scheduler: PipelineScheduler, artifacts: Sequence) -> RunStats:
    loop = asyncio.get_running_loop()
    installed: list[signal.Signals] = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, scheduler.request_stop)
        except (NotImplementedError, RuntimeError):
            continue
        installed.append(sig)
    try:
        return await scheduler.run(artifacts)
    finally:
        for sig in installed:
            loop.remove_signal_handler(sig)


def run_ingest(
    settings: Settings,
    *,
    sink: DeliverySink | None = None,
    out: TextIO | None = None,
) -> int:
    """Run one ingestion over ``settings.input.paths``; returns the process exit code."""
    out = out or sys.stdout
    schemas, options = resolve_schemas(settings)
    discovery = ArtifactDiscovery(
        patterns=settings.input.kind_patterns,
        recursive=settings.input.recursive,
        sniff=settings.input.sniff,
    )
    found = discovery.discover(settings.input.paths)
    for path, reason in found.skipped:
        logger.warning("Skipping input %s: %s", path, reason)

    sink = sink if sink is not None else build_sinks(settings, schemas)
    dedup = build_deduplicator(settings)
    scheduler = build_scheduler(settings, sink, schemas, options, dedup)
    events.info(
        "run_started",
        run_id=scheduler.run_id,
        artifacts=len(found.artifacts),
        sinks=sink.sink_name(),
        workers=settings.pipeline.workers,
    )
    close_failed = False
    try:
        stats = asyncio.run(_run_with_signals(scheduler, found.artifacts))
    finally:
        try:
            sink.close()
        except DeliveryError as exc:
            logger.error("Closing sinks failed: %s", exc)
            close_failed = True
        dedup.close()

    stats.artifacts_skipped += len(found.skipped)
    code = EXIT_OK
    if stats.fatal_delivery_failure or close_failed:
        code = EXIT_DELIVERY_FAILED
    elif stats.timed_out:
        code = EXIT_TIMED_OUT
    events.info(
        "run_finished",
        run_id=stats.run_id,
        exit_code=code,
        records_emitted=stats.records_emitted,
        records_delivered=stats.records_delivered,
        batches_failed=stats.batches_failed,
    )

    manifest_target = settings.sinks.manifest_path
    if manifest_target is None and "parquet" in settings.sinks.outputs:
        manifest_target = settings.sinks.parquet_dir
    if manifest_target:
        path = write_manifest(
            manifest_target,
            RunManifest(
                run_id=stats.run_id,
                started_at=stats.started_at.isoformat(),
                finished_at=(stats.finished_at or stats.started_at).isoformat(),
                engine_name=ENGINE_NAME,
                engine_version=ENGINE_VERSION,
                decoder_set_version=DECODER_SET_VERSION,
                schema_version=SCHEMA_VERSION,
                outputs=tuple(settings.sinks.outputs),
                dedup_granularity=settings.dedup.granularity,
                record_mode=settings.dedup.record_mode,
                stats=stats.to_dict(),
                exit_code=code,
            ),
        )
        logger.info("Wrote run manifest %s", path)

    print_summary(stats, settings, out=out, sink_name=sink.sink_name())
    return code


def print_summary(stats: RunStats, settings: Settings, *, out: TextIO, sink_name: str) -> None:
    def p(line: str = "") -> None:
        print(line, file=out)

    p("=== Run summary ===")
    p(f"run_id: {stats.run_id}")
    p(f"engine: {ENGINE_NAME} {ENGINE_VERSION} (decoders {DECODER_SET_VERSION}, schema {SCHEMA_VERSION})")
    p(f"sinks: {sink_name}")
    p(f"dedup: {settings.dedup.granularity} ({settings.dedup.record_mode})")

    p(f"artifacts_total: {stats.artifacts_total}")
    p(f"artifacts_processed: {stats.artifacts_processed}")
    p(f"artifacts_duplicate: {stats.artifacts_duplicate}")
    p(f"artifacts_failed: {stats.artifacts_failed}")
    p(f"artifacts_skipped: {stats.artifacts_skipped}")

    p(f"records_decoded: {stats.records_decoded}")
    p(f"records_emitted: {stats.records_emitted}")
    p(f"records_duplicate: {stats.records_duplicate}")
    p(f"record_errors: {stats.record_errors}")
    p(f"schema_errors: {stats.schema_errors}")

    if stats.by_kind:
        p("--- Records per kind ---")
        for kind, count in sorted(stats.by_kind.items()):
            p(f"{kind}: {count}")

    p("--- Delivery ---")
    p(f"batches_delivered: {stats.batches_delivered}")
    p(f"records_delivered: {stats.records_delivered}")
    p(f"retries: {stats.retries}")
    p(f"batches_failed: {stats.batches_failed}")
    p(f"records_failed: {stats.records_failed}")
    if stats.timed_out:
        p(f"hard_timeout: records_discarded={stats.records_discarded}")
    if stats.stopped:
        p("stopped: graceful shutdown requested")

    if stats.errors:
        p()
        p(f"--- Sample errors ({len(stats.errors)} of {stats.errors_total}) ---")
        for e in stats.errors[:10]:
            p(f"- [{e['scope']}] {e['source']}: {e['message']}")


def decode_artifact(
    settings: Settings,
    path: str,
    *,
    kind: str | None = None,
    limit: int | None = None,
    out: TextIO | None = None,
) -> int:
    """Decode a single artifact and print one JSON envelope per record (no sink, no dedup)."""
    out = out or sys.stdout
    schemas, options = resolve_schemas(settings)
    if kind:
        try:
            tagged_kind = ArtifactKind.parse(kind)
        except ValueError as exc:
            logger.error("%s", exc)
            return 1
        target = Path(path)
    else:
        found = ArtifactDiscovery(patterns=settings.input.kind_patterns, sniff=True).discover([path])
        if not found.artifacts:
            reason = found.skipped[0][1] if found.skipped else "no artifact"
            logger.error("Cannot decode %s: %s", path, reason)
            return 1
        tagged_kind = found.artifacts[0].kind
        target = found.artifacts[0].path

    normalizer = RecordNormalizer(schemas, record_mode=settings.dedup.record_mode)
    decoder = decoder_for(tagged_kind, options)
    errors = 0

    def _on_error(err: RecordError) -> None:
        nonlocal errors
        errors += 1
        logger.warning("%s", err)

    try:
        opened = open_artifact(target, tagged_kind, settings.input.host)
    except ArtifactError as exc:
        logger.error("%s", exc)
        return 1
    emitted = 0
    try:
        for record in decoder.decode(opened.artifact, opened.data, _on_error):
            try:
                normalized = normalizer.normalize(opened.artifact, record)
            except SchemaError as exc:
                _on_error(exc)
                continue
            print(canonical_json_dumps(normalized.envelope()), file=out)
            emitted += 1
            if limit is not None and emitted >= limit:
                break
    except ContainerError as exc:
        logger.error("%s", exc)
        return 1
    finally:
        opened.close()
    logger.info("Decoded %d record(s) from %s (%d error(s))", emitted, target, errors)
    return 0


def init_store(settings: Settings, *, out: TextIO | None = None) -> int:
    """Create the per-kind DuckDB tables (and the fingerprint store when configured)."""
    out = out or sys.stdout
    schemas, _ = resolve_schemas(settings)
    Path(settings.sinks.duckdb_path).parent.mkdir(parents=True, exist_ok=True)
    store = DuckDBStore(
        DuckDBConfig(database=settings.sinks.duckdb_path, threads=settings.sinks.duckdb_threads),
        schemas,
        create_tables=False,
    )
    try:
        created = store.init_tables()
    finally:
        store.close()
    for table in created:
        print(f"table: {table}", file=out)
    if settings.dedup.store_path:
        Path(settings.dedup.store_path).parent.mkdir(parents=True, exist_ok=True)
        fp_store = DuckDBFingerprintStore(settings.dedup.store_path)
        fp_store.close()
        print(f"fingerprint_store: {settings.dedup.store_path}", file=out)
    return EXIT_OK


__all__ = [
    "EXIT_DELIVERY_FAILED",
    "EXIT_OK",
    "EXIT_TIMED_OUT",
    "build_deduplicator",
    "build_scheduler",
    "build_sinks",
    "decode_artifact",
    "init_store",
    "print_summary",
    "resolve_schemas",
    "run_ingest",
]
