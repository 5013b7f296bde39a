"""
fingerprints.py

Canonical JSON serialization and SHA-256 fingerprints for artifacts and records.

Fingerprints are the deduplication keys of the pipeline and the primary keys of
the columnar store, so they must be deterministic across runs and machines:
- artifact fingerprint: SHA-256 over the raw file bytes
- positional record fingerprint: artifact fingerprint + intra-artifact sequence
- content record fingerprint: kind + canonical field bytes, prefixed with the
  record's epoch seconds so store keys cluster by time
"""

from __future__ import annotations

import base64
import hashlib
import json
from collections.abc import Mapping
from datetime import UTC, date, datetime
from typing import Any

from contracts.artifacts import ArtifactKind

# Hashing large artifacts in one call would hold the GIL for the whole file.
_HASH_CHUNK = 1 << 20

# Hex digits used for the time prefix of content fingerprints.
_TIME_PREFIX_LEN = 12


def _to_json_compatible(value: Any) -> Any:
    """
    Convert common Python types into JSON-compatible primitives deterministically.
    """
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, datetime):
        dt = value if value.tzinfo else value.replace(tzinfo=UTC)
        return dt.astimezone(UTC).isoformat().replace("+00:00", "Z")
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, (bytes, bytearray, memoryview)):
        return base64.urlsafe_b64encode(bytes(value)).decode("ascii").rstrip("=")
    if isinstance(value, Mapping):
        return {str(k): _to_json_compatible(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_to_json_compatible(v) for v in value]
    if isinstance(value, (set, frozenset)):
        seq = [_to_json_compatible(v) for v in value]
        return sorted(seq, key=lambda x: json.dumps(x, sort_keys=True, separators=(",", ":")))
    return str(value)


def canonical_json_dumps(payload: Any) -> str:
    """
    Deterministic JSON serialization:
    - sort keys
    - no whitespace
    - ensure_ascii=False for stable UTF-8
    """
    compatible = _to_json_compatible(payload)
    return json.dumps(compatible, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def sha256_hex_from_json(payload: Any) -> str:
    """
    Compute SHA-256 over the canonical JSON representation and return hex digest.
    """
    data = canonical_json_dumps(payload).encode("utf-8")
    return hashlib.sha256(data).hexdigest()


def artifact_fingerprint(data: bytes | memoryview) -> str:
    """SHA-256 hex digest of the raw artifact bytes."""
    view = memoryview(data)
    digest = hashlib.sha256()
    for start in range(0, len(view), _HASH_CHUNK):
        digest.update(view[start : start + _HASH_CHUNK])
    return digest.hexdigest()


def positional_fingerprint(artifact_fp: str, sequence: int) -> str:
    """Record fingerprint derived from its artifact and position."""
    return sha256_hex_from_json({"artifact": artifact_fp, "seq": int(sequence)})


def content_fingerprint(
    kind: ArtifactKind,
    fields: Mapping[str, Any],
    timestamp: datetime | None,
) -> str:
    """Record fingerprint derived from its content.

    The 64-character result starts with the record time in seconds (hex), so
    two identical events collected from overlapping images share one key.
    """
    body = sha256_hex_from_json({"kind": kind.value, "fields": fields})
    seconds = 0
    if timestamp is not None:
        ts = timestamp if timestamp.tzinfo else timestamp.replace(tzinfo=UTC)
        seconds = max(0, int(ts.timestamp()))
    prefix = f"{seconds:0{_TIME_PREFIX_LEN}x}"[-_TIME_PREFIX_LEN:]
    return prefix + body[: 64 - _TIME_PREFIX_LEN]


__all__ = [
    "artifact_fingerprint",
    "canonical_json_dumps",
    "content_fingerprint",
    "positional_fingerprint",
    "sha256_hex_from_json",
]
