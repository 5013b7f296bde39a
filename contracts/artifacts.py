"""Core value objects flowing through the ingestion pipeline.

All objects here are immutable. Decoders produce DecodedRecord, the normalizer
turns them into NormalizedRecord, the publisher groups those into Batch and the
sinks answer with a DeliveryReceipt.
"""

from __future__ import annotations

import dataclasses
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any


class ArtifactKind(str, Enum):
    """Closed set of artifact kinds understood by the decoders."""

    EVENT_LOG = "event_log"
    FILESYSTEM_METADATA = "filesystem_metadata"
    REGISTRY_HIVE = "registry_hive"
    USAGE_DATABASE = "usage_database"
    CSV_TABLE = "csv_table"

    @classmethod
    def parse(cls, value: str | ArtifactKind) -> ArtifactKind:
        """Accept enum values, enum names and the usual short aliases."""
        if isinstance(value, ArtifactKind):
            return value
        text = str(value or "").strip().lower().replace("-", "_")
        if text in _KIND_ALIASES:
            return _KIND_ALIASES[text]
        for kind in cls:
            if text in (kind.value, kind.name.lower()):
                return kind
        raise ValueError(f"Unknown artifact kind: {value!r}")


_KIND_ALIASES: dict[str, ArtifactKind] = {
    "evtx": ArtifactKind.EVENT_LOG,
    "eventlog": ArtifactKind.EVENT_LOG,
    "mft": ArtifactKind.FILESYSTEM_METADATA,
    "hive": ArtifactKind.REGISTRY_HIVE,
    "registry": ArtifactKind.REGISTRY_HIVE,
    "regf": ArtifactKind.REGISTRY_HIVE,
    "srum": ArtifactKind.USAGE_DATABASE,
    "ese": ArtifactKind.USAGE_DATABASE,
    "csv": ArtifactKind.CSV_TABLE,
}


class FlushReason(str, Enum):
    SIZE = "size"
    TIME = "time"
    FINAL = "final"


@dataclass(frozen=True)
class ArtifactFile:
    """One collected artifact, identified by host and path."""

    path: str
    kind: ArtifactKind
    size: int
    fingerprint: str
    host: str = ""

    @property
    def identity(self) -> str:
        return f"{self.host}:{self.path}" if self.host else self.path


@dataclass(frozen=True)
class DecodedRecord:
    """One logical entry extracted from an artifact."""

    kind: ArtifactKind
    source: str
    sequence: int
    fields: Mapping[str, Any]
    timestamp: datetime | None = None


@dataclass(frozen=True)
class NormalizedRecord:
    """Decoded record with canonical field order, timestamp and fingerprint."""

    kind: ArtifactKind
    source_path: str
    source_host: str
    sequence: int
    timestamp: datetime | None
    fields: tuple[tuple[str, Any], ...]
    fingerprint: str
    artifact_fingerprint: str
    batch_id: str = ""

    def field_map(self) -> dict[str, Any]:
        return dict(self.fields)

    def with_batch(self, batch_id: str) -> NormalizedRecord:
        return dataclasses.replace(self, batch_id=batch_id)

    def envelope(self) -> dict[str, Any]:
        """Flat row: envelope columns followed by the kind's fields."""
        row: dict[str, Any] = {
            "fingerprint": self.fingerprint,
            "artifact_fingerprint": self.artifact_fingerprint,
            "kind": self.kind.value,
            "source_path": self.source_path,
            "source_host": self.source_host,
            "sequence": self.sequence,
            "event_ts": self.timestamp,
            "batch_id": self.batch_id,
        }
        for name, value in self.fields:
            row[name] = value
        return row


@dataclass(frozen=True)
class Batch:
    """Ordered group of records delivered by one sink call."""

    seq: int
    batch_id: str
    records: tuple[NormalizedRecord, ...]
    flush_reason: FlushReason
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def __len__(self) -> int:
        return len(self.records)

    def by_kind(self) -> dict[ArtifactKind, list[NormalizedRecord]]:
        """Group records per kind, preserving batch order inside each group."""
        groups: dict[ArtifactKind, list[NormalizedRecord]] = {}
        for rec in self.records:
            groups.setdefault(rec.kind, []).append(rec)
        return groups


@dataclass(frozen=True)
class DeliveryReceipt:
    """Outcome of one delivery attempt."""

    ok: bool
    committed: int = 0
    retryable: bool = False
    message: str = ""
    sink: str = ""

    @classmethod
    def success(cls, committed: int, *, sink: str = "") -> DeliveryReceipt:
        return cls(ok=True, committed=committed, sink=sink)

    @classmethod
    def failure(cls, message: str, *, retryable: bool, sink: str = "") -> DeliveryReceipt:
        return cls(ok=False, retryable=retryable, message=message, sink=sink)


__all__ = [
    "ArtifactFile",
    "ArtifactKind",
    "Batch",
    "DecodedRecord",
    "DeliveryReceipt",
    "FlushReason",
    "NormalizedRecord",
]
