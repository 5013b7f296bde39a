"""Fingerprint admission.

The Deduplicator answers ``admit(fingerprint) -> ACCEPT | DUPLICATE`` for
artifact- and record-level fingerprints. It is an explicit component owned by
one pipeline run: constructed at start, optionally seeded from a persisted
:class:`FingerprintStore`, closed at the end.

Admission is in-memory and immediate. Persistence is deferred: only
fingerprints whose records were delivered are committed back to the store
(:meth:`Deduplicator.commit`), so a crashed or failed run re-delivers.
"""

from __future__ import annotations

import logging
import threading
from collections import OrderedDict
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Literal, Protocol

logger = logging.getLogger(__name__)

Granularity = Literal["artifact", "record", "both"]
Scope = Literal["artifact", "record"]


class Admission(str, Enum):
    ACCEPT = "accept"
    DUPLICATE = "duplicate"


@dataclass(frozen=True)
class SeenFingerprint:
    fingerprint: str
    scope: Scope
    first_seen: datetime


class FingerprintStore(Protocol):
    """Persisted fingerprint -> first-seen mapping."""

    def load(self, *, since: datetime | None, limit: int) -> Iterable[SeenFingerprint]: ...

    def commit(self, entries: Sequence[SeenFingerprint]) -> int: ...

    def evict(self, older_than: datetime) -> int: ...

    def close(self) -> None: ...


class InMemoryFingerprintStore:
    """Store used by tests and by runs without a configured store path."""

    def __init__(self) -> None:
        self._rows: dict[str, SeenFingerprint] = {}

    def load(self, *, since: datetime | None, limit: int) -> list[SeenFingerprint]:
        rows = [r for r in self._rows.values() if since is None or r.first_seen >= since]
        rows.sort(key=lambda r: r.first_seen, reverse=True)
        return rows[:limit]

    def commit(self, entries: Sequence[SeenFingerprint]) -> int:
        added = 0
        for e in entries:
            if e.fingerprint not in self._rows:
                self._rows[e.fingerprint] = e
                added += 1
        return added

    def evict(self, older_than: datetime) -> int:
        stale = [fp for fp, r in self._rows.items() if r.first_seen < older_than]
        for fp in stale:
            del self._rows[fp]
        return len(stale)

    def close(self) -> None:
        return None

    def __len__(self) -> int:
        return len(self._rows)


def _utc_now() -> datetime:
    return datetime.now(UTC)


class Deduplicator:
    """Bounded, optionally time-bounded set of admitted fingerprints.

    Safe to call from several decode workers: every admission is one
    check-and-insert under a lock.
    """

    def __init__(
        self,
        *,
        granularity: Granularity = "both",
        max_entries: int = 1_000_000,
        retention: timedelta | None = None,
        store: FingerprintStore | None = None,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        if granularity not in ("artifact", "record", "both"):
            raise ValueError(f"Unknown dedup granularity: {granularity!r}")
        if max_entries < 1:
            raise ValueError("max_entries must be >= 1")
        self._granularity = granularity
        self._max_entries = max_entries
        self._retention = retention
        self._store = store
        self._clock = clock
        self._lock = threading.Lock()
        self._seen: OrderedDict[str, tuple[Scope, datetime]] = OrderedDict()
        self.evicted = 0

    @property
    def granularity(self) -> Granularity:
        return self._granularity

    @property
    def checks_artifacts(self) -> bool:
        return self._granularity in ("artifact", "both")

    @property
    def checks_records(self) -> bool:
        return self._granularity in ("record", "both")

    def __len__(self) -> int:
        with self._lock:
            return len(self._seen)

    def seed(self) -> int:
        """Load persisted fingerprints (newest first, up to max_entries). Returns the count loaded."""
        if self._store is None:
            return 0
        now = self._clock()
        since = now - self._retention if self._retention is not None else None
        if since is not None:
            dropped = self._store.evict(since)
            if dropped:
                logger.info("Evicted %d fingerprints older than %s from the store", dropped, since.isoformat())
        rows = list(self._store.load(since=since, limit=self._max_entries))
        with self._lock:
            # Oldest first so the LRU order matches first-seen order.
            for row in reversed(rows):
                self._seen[row.fingerprint] = (row.scope, row.first_seen)
                self._seen.move_to_end(row.fingerprint)
            self._trim()
        logger.info("Seeded deduplicator with %d fingerprints", len(rows))
        return len(rows)

    def admit(self, fingerprint: str, *, scope: Scope = "record") -> Admission:
        """Atomically check and record ``fingerprint``."""
        now = self._clock()
        with self._lock:
            entry = self._seen.get(fingerprint)
            if entry is not None:
                if self._retention is None or now - entry[1] <= self._retention:
                    return Admission.DUPLICATE
                del self._seen[fingerprint]
            self._seen[fingerprint] = (scope, now)
            self._trim()
            return Admission.ACCEPT

    def forget(self, fingerprint: str) -> None:
        """Drop an admission (used when an artifact fails before any of its records are kept)."""
        with self._lock:
            self._seen.pop(fingerprint, None)

    def commit(self, fingerprints: Iterable[str]) -> int:
        """Persist admitted fingerprints whose delivery has been confirmed."""
        if self._store is None:
            return 0
        with self._lock:
            entries = [
                SeenFingerprint(fingerprint=fp, scope=self._seen[fp][0], first_seen=self._seen[fp][1])
                for fp in fingerprints
                if fp in self._seen
            ]
        if not entries:
            return 0
        return self._store.commit(entries)

    def close(self) -> None:
        if self._store is not None:
            self._store.close()

    def _trim(self) -> None:
        while len(self._seen) > self._max_entries:
            self._seen.popitem(last=False)
            self.evicted += 1


__all__ = [
    "Admission",
    "Deduplicator",
    "FingerprintStore",
    "Granularity",
    "InMemoryFingerprintStore",
    "SeenFingerprint",
]
