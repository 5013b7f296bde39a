"""Normalized records -> Arrow tables, one table per kind."""

from __future__ import annotations

from collections.abc import Sequence
from datetime import UTC, datetime

import pyarrow as pa

from contracts.artifacts import NormalizedRecord
from contracts.schema import KindSchema


def records_to_table(
    schema: KindSchema,
    records: Sequence[NormalizedRecord],
    *,
    ingested_ts: datetime | None = None,
) -> pa.Table:
    """Build the storage table for ``records`` (all of ``schema.kind``)."""
    ts = ingested_ts or datetime.now(UTC)
    rows = []
    for rec in records:
        if rec.kind is not schema.kind:
            raise ValueError(f"record of kind {rec.kind.value!r} in {schema.kind.value!r} table")
        row = rec.envelope()
        row["ingested_ts"] = ts
        rows.append(row)
    return pa.Table.from_pylist(rows, schema=schema.arrow_schema())
