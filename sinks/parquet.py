"""Partitioned Parquet dataset sink.

Layout:
  {base_dir}/kind=<kind>/part-<uuid>.parquet

Each file is written under a temporary name and renamed into place, so a
failed attempt never leaves a partial file behind. Kinds already written for
a batch are remembered, so a retry does not write them twice.
"""

from __future__ import annotations

import logging
import os
import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field

import pyarrow as pa
import pyarrow.parquet as pq

from contracts.artifacts import ArtifactKind, Batch, DeliveryReceipt
from contracts.errors import DeliveryError
from contracts.schema import DEFAULT_SCHEMAS, KindSchema
from sinks.rows import records_to_table

logger = logging.getLogger(__name__)


@dataclass
class ParquetSinkConfig:
    base_dir: str

    # Write behavior
    compression: str = "zstd"
    use_dictionary: bool = True

    # Batching controls
    max_rows_per_file: int = 200_000     # adjust based on row width

    # Error policy
    max_error_samples: int = 50          # keep only N errors in memory


@dataclass
class ParquetSinkStats:
    received: int = 0
    written: int = 0
    files: int = 0
    errors: list[str] = field(default_factory=list)


class ParquetSink:
    """Writes each batch as one Parquet file per kind partition."""

    def __init__(self, config: ParquetSinkConfig, schemas: Mapping[ArtifactKind, KindSchema] | None = None) -> None:
        self._cfg = config
        self._schemas = dict(schemas or DEFAULT_SCHEMAS)
        self._written: dict[str, set[ArtifactKind]] = {}
        self.stats = ParquetSinkStats()
        os.makedirs(self._cfg.base_dir, exist_ok=True)

    def sink_name(self) -> str:
        return "parquet"

    def partition_dir(self, schema: KindSchema) -> str:
        return os.path.join(self._cfg.base_dir, f"kind={schema.table_name}")

    def deliver(self, batch: Batch) -> DeliveryReceipt:
        self.stats.received += len(batch)
        done = self._written.setdefault(batch.batch_id, set())
        for kind, records in batch.by_kind().items():
            if kind in done:
                continue
            schema = self._schemas.get(kind)
            if schema is None:
                raise DeliveryError(f"no Parquet schema for kind {kind.value!r}", retryable=False)
            try:
                table = records_to_table(schema, records)
                self._write_partition(schema, table)
            except OSError as exc:
                self._note_error(exc)
                raise DeliveryError(f"parquet write failed: {exc}", retryable=True) from exc
            except (pa.ArrowException, ValueError) as exc:
                self._note_error(exc)
                raise DeliveryError(f"parquet conversion failed: {exc}", retryable=False) from exc
            done.add(kind)
        del self._written[batch.batch_id]
        return DeliveryReceipt.success(len(batch), sink=self.sink_name())

    def close(self) -> ParquetSinkStats:
        return self.stats

    def _note_error(self, exc: Exception) -> None:
        if len(self.stats.errors) < self._cfg.max_error_samples:
            self.stats.errors.append(str(exc))

    def _write_partition(self, schema: KindSchema, table: pa.Table) -> None:
        out_dir = self.partition_dir(schema)
        os.makedirs(out_dir, exist_ok=True)

        # Write in chunks to control file sizes
        start = 0
        total = table.num_rows
        while start < total:
            length = min(self._cfg.max_rows_per_file, total - start)
            chunk = table.slice(start, length)

            filename = f"part-{uuid.uuid4().hex}.parquet"
            out_path = os.path.join(out_dir, filename)
            tmp_path = out_path + ".tmp"

            pq.write_table(
                chunk,
                tmp_path,
                compression=self._cfg.compression,
                use_dictionary=self._cfg.use_dictionary,
                write_statistics=True,
            )
            os.replace(tmp_path, out_path)

            self.stats.written += length
            self.stats.files += 1
            start += length
        logger.debug("Wrote %d %s rows to %s", total, schema.kind.value, out_dir)


__all__ = ["ParquetSink", "ParquetSinkConfig", "ParquetSinkStats"]
