"""Run manifest helpers.

The run manifest is a small JSON summary of one ingestion run (identity,
engine version, settings that shape the output, counts). It is written by
:mod:`runner` at the end of a run, next to the Parquet output or to the
configured path, so downstream consumers can tell which run produced what.
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

MANIFEST_FILENAME = "run_manifest.json"


def _utc_now_iso() -> str:
    return datetime.now(UTC).isoformat().replace("+00:00", "Z")


@dataclass(frozen=True)
class RunManifest:
    """Run identity, engine metadata and final counts."""

    run_id: str
    started_at: str
    finished_at: str

    engine_name: str | None = None
    engine_version: str | None = None
    decoder_set_version: str | None = None
    schema_version: int | None = None

    outputs: tuple[str, ...] = ()
    dedup_granularity: str | None = None
    record_mode: str | None = None

    stats: dict[str, Any] = field(default_factory=dict)
    exit_code: int = 0

    created_at: str = ""

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["outputs"] = list(self.outputs)
        if not d.get("created_at"):
            d["created_at"] = _utc_now_iso()
        return d

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> RunManifest:
        return cls(
            run_id=str(payload.get("run_id") or "").strip(),
            started_at=str(payload.get("started_at") or "").strip(),
            finished_at=str(payload.get("finished_at") or "").strip(),
            engine_name=(str(payload.get("engine_name") or "").strip() or None),
            engine_version=(str(payload.get("engine_version") or "").strip() or None),
            decoder_set_version=(str(payload.get("decoder_set_version") or "").strip() or None),
            schema_version=(int(payload["schema_version"]) if payload.get("schema_version") is not None else None),
            outputs=tuple(str(o) for o in payload.get("outputs") or ()),
            dedup_granularity=(str(payload.get("dedup_granularity") or "").strip() or None),
            record_mode=(str(payload.get("record_mode") or "").strip() or None),
            stats=dict(payload.get("stats") or {}),
            exit_code=int(payload.get("exit_code") or 0),
            created_at=str(payload.get("created_at") or "").strip(),
        )

    def validate(self) -> None:
        if not self.run_id:
            raise ValueError("RunManifest missing run_id")
        if not self.started_at:
            raise ValueError("RunManifest missing started_at")
        if not self.finished_at:
            raise ValueError("RunManifest missing finished_at")


def manifest_path(target: str | Path) -> Path:
    """Manifest file for ``target``: a ``.json`` path is used as is, anything else is a directory."""
    p = Path(target)
    if p.suffix == ".json":
        return p
    return p / MANIFEST_FILENAME


def write_manifest(target: str | Path, manifest: RunManifest) -> Path:
    """Write *manifest* atomically (temp file then replace)."""

    path = manifest_path(target)
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")

    manifest.validate()
    payload = manifest.to_dict()

    tmp.write_text(json.dumps(payload, indent=2, ensure_ascii=False, default=str), encoding="utf-8")
    tmp.replace(path)
    return path


def load_manifest(path: str | Path) -> RunManifest:
    """Load a manifest from *path* and validate it."""

    p = manifest_path(path)
    payload = json.loads(p.read_text(encoding="utf-8"))
    if not isinstance(payload, dict):
        raise ValueError(f"Invalid run manifest (expected object): {p}")
    m = RunManifest.from_dict(payload)
    m.validate()
    return m


__all__ = ["MANIFEST_FILENAME", "RunManifest", "load_manifest", "manifest_path", "write_manifest"]
