"""Dead-letter output for batches that could not be delivered.

Each failed batch is appended as JSON lines: one header line describing the
failure, then one line per record, so an operator can replay or inspect them.
"""

from __future__ import annotations

import json
import threading
from datetime import UTC, datetime
from pathlib import Path

from contracts.artifacts import Batch
from contracts.fingerprints import canonical_json_dumps


class DeadLetterWriter:
    """Append-only JSONL file of undeliverable batches."""

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)
        self._lock = threading.Lock()
        self.batches = 0
        self.records = 0

    @property
    def path(self) -> Path:
        return self._path

    def write(self, batch: Batch, *, reason: str, attempts: int) -> int:
        """Append ``batch``; returns the number of records written."""
        header = {
            "dead_letter": True,
            "batch_id": batch.batch_id,
            "batch_seq": batch.seq,
            "flush_reason": batch.flush_reason.value,
            "records": len(batch),
            "attempts": attempts,
            "reason": reason,
            "written_at": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
        }
        with self._lock:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            with self._path.open("a", encoding="utf-8") as f:
                f.write(json.dumps(header, ensure_ascii=False) + "\n")
                for rec in batch.records:
                    f.write(canonical_json_dumps(rec.envelope()) + "\n")
            self.batches += 1
            self.records += len(batch)
        return len(batch)


__all__ = ["DeadLetterWriter"]
