"""DuckDB-backed persistence for the deduplicator.

Layout: one table ``seen_fingerprints(fingerprint, scope, first_seen_ms)``
with ``first_seen_ms`` as UTC epoch milliseconds.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Sequence
from datetime import UTC, datetime
from pathlib import Path

import duckdb

from pipeline.dedup import SeenFingerprint

logger = logging.getLogger(__name__)


def _to_ms(dt: datetime) -> int:
    aware = dt if dt.tzinfo else dt.replace(tzinfo=UTC)
    return int(aware.timestamp() * 1000)


def _from_ms(ms: int) -> datetime:
    return datetime.fromtimestamp(ms / 1000, tz=UTC)


class DuckDBFingerprintStore:
    """Fingerprint -> first-seen mapping kept in a DuckDB file."""

    def __init__(self, database: str | Path) -> None:
        db = str(database)
        if db != ":memory:":
            Path(db).parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._con = duckdb.connect(db, read_only=False)
        self._con.execute(
            """
            CREATE TABLE IF NOT EXISTS seen_fingerprints (
                fingerprint VARCHAR PRIMARY KEY,
                scope VARCHAR NOT NULL,
                first_seen_ms BIGINT NOT NULL
            );
            """
        )

    def load(self, *, since: datetime | None, limit: int) -> list[SeenFingerprint]:
        where = ""
        params: list[object] = []
        if since is not None:
            where = "WHERE first_seen_ms >= ?"
            params.append(_to_ms(since))
        params.append(int(limit))
        with self._lock:
            rows = self._con.execute(
                f"""
                SELECT fingerprint, scope, first_seen_ms
                FROM seen_fingerprints
                {where}
                ORDER BY first_seen_ms DESC
                LIMIT ?;
                """,
                params,
            ).fetchall()
        return [SeenFingerprint(fingerprint=fp, scope=scope, first_seen=_from_ms(ms)) for fp, scope, ms in rows]

    def commit(self, entries: Sequence[SeenFingerprint]) -> int:
        if not entries:
            return 0
        with self._lock:
            before = self._count()
            self._con.executemany(
                "INSERT OR IGNORE INTO seen_fingerprints VALUES (?, ?, ?);",
                [[e.fingerprint, e.scope, _to_ms(e.first_seen)] for e in entries],
            )
            added = self._count() - before
        logger.debug("Committed %d new fingerprints (%d offered)", added, len(entries))
        return added

    def evict(self, older_than: datetime) -> int:
        with self._lock:
            before = self._count()
            self._con.execute("DELETE FROM seen_fingerprints WHERE first_seen_ms < ?;", [_to_ms(older_than)])
            return before - self._count()

    def close(self) -> None:
        with self._lock:
            self._con.close()

    def __len__(self) -> int:
        with self._lock:
            return self._count()

    def _count(self) -> int:
        row = self._con.execute("SELECT count(*) FROM seen_fingerprints;").fetchone()
        return int(row[0]) if row else 0


__all__ = ["DuckDBFingerprintStore"]
