"""Integration tests for the ingestion runner and the run manifest."""

from __future__ import annotations

import io
import json
from pathlib import Path

import pytest

from contracts.artifacts import Batch, DeliveryReceipt
from contracts.errors import DeliveryError
from infra.config import Settings
from pipeline.run_manifest import RunManifest, load_manifest, manifest_path, write_manifest
from runner import (
    EXIT_DELIVERY_FAILED,
    EXIT_OK,
    build_sinks,
    decode_artifact,
    init_store,
    resolve_schemas,
    run_ingest,
)
from sinks.base import CompositeSink, InMemorySink
from tests.factories import REG_SZ, RegKey, RegValue, build_hive, reg_sz, write


def _settings(**sections) -> Settings:
    return Settings.from_env(env={}, env_file=".missing.env").with_overrides(sections)


def _case(tmp_path: Path) -> Path:
    case = tmp_path / "case"
    write(case, "hosts.csv", b"name,ip\nws01,10.0.0.1\nws02,10.0.0.2\n")
    hive = RegKey("root", subkeys=[RegKey("Run", values=[RegValue("Updater", REG_SZ, reg_sz("C:\\upd.exe"))])])
    write(case, "SYSTEM", build_hive(hive))
    write(case, "readme.txt", b"not an artifact")
    return case


class _RejectingSink:
    def sink_name(self) -> str:
        return "rejecting"

    def deliver(self, batch: Batch) -> DeliveryReceipt:
        raise DeliveryError("schema mismatch", retryable=False)

    def close(self) -> None:
        return None


def test_run_ingest_delivers_and_writes_manifest(tmp_path: Path) -> None:
    """A clean run delivers every record, prints a summary and writes the manifest."""
    sink = InMemorySink()
    settings = _settings(
        input={"paths": [str(_case(tmp_path))], "host": "WS01"},
        sinks={"manifest_path": str(tmp_path / "out")},
    )
    out = io.StringIO()

    code = run_ingest(settings, sink=sink, out=out)

    assert code == EXIT_OK
    assert sink.closed is True
    assert len(sink.records()) == 4
    assert {r.source_host for r in sink.records()} == {"WS01"}
    text = out.getvalue()
    assert "records_delivered: 4" in text
    assert "artifacts_skipped: 1" in text

    manifest = load_manifest(tmp_path / "out")
    assert manifest.exit_code == EXIT_OK
    assert manifest.stats["records"]["by_kind"] == {"csv_table": 2, "registry_hive": 2}
    assert manifest.outputs == ("duckdb",)


def test_run_ingest_reports_delivery_failure(tmp_path: Path) -> None:
    """An undeliverable batch gives exit code 1."""
    settings = _settings(input={"paths": [str(_case(tmp_path))]}, retry={"max_attempts": 1})

    code = run_ingest(settings, sink=_RejectingSink(), out=io.StringIO())

    assert code == EXIT_DELIVERY_FAILED


def test_build_sinks_combines_outputs(tmp_path: Path) -> None:
    """Several outputs are wrapped in one composite sink."""
    settings = _settings(
        sinks={
            "outputs": ["duckdb", "parquet"],
            "duckdb_path": str(tmp_path / "db" / "case.duckdb"),
            "parquet_dir": str(tmp_path / "parquet"),
        }
    )
    schemas, _ = resolve_schemas(settings)
    sink = build_sinks(settings, schemas)
    try:
        assert isinstance(sink, CompositeSink)
        assert sink.sink_name() == "duckdb+parquet"
    finally:
        sink.close()


def test_resolve_schemas_uses_csv_mapping(tmp_path: Path) -> None:
    """A configured CSV mapping replaces the default CSV schema."""
    mapping = tmp_path / "mapping.json"
    mapping.write_text(
        json.dumps({"fields": {"name": {"type": "string", "mandatory": True}, "ip": {"type": "string"}}}),
        encoding="utf-8",
    )
    schemas, options = resolve_schemas(_settings(input={"csv_mapping": str(mapping)}))

    names = [f.name for f in next(s for k, s in schemas.items() if k.value == "csv_table").fields]
    assert names[:1] == ["line"]
    assert "name" in names and "ip" in names
    assert options.csv_mapping is not None


def test_decode_artifact_prints_json_lines(tmp_path: Path) -> None:
    """Decode prints one envelope per record and honors the limit."""
    path = write(tmp_path, "blob.bin", build_hive(RegKey("root", subkeys=[RegKey("A"), RegKey("B")])))
    out = io.StringIO()

    assert decode_artifact(_settings(), str(path), out=out) == EXIT_OK
    rows = [json.loads(line) for line in out.getvalue().splitlines()]
    assert [r["path"] for r in rows] == ["ROOT\\A", "ROOT\\B"]
    assert rows[0]["kind"] == "registry_hive"

    limited = io.StringIO()
    assert decode_artifact(_settings(), str(path), kind="hive", limit=1, out=limited) == EXIT_OK
    assert len(limited.getvalue().splitlines()) == 1


def test_decode_artifact_failures(tmp_path: Path) -> None:
    """Unknown kinds, undetectable files and corrupt containers return 1."""
    junk = write(tmp_path, "junk.bin", b"nothing to see")
    settings = _settings()

    assert decode_artifact(settings, str(junk), kind="floppy", out=io.StringIO()) == 1
    assert decode_artifact(settings, str(junk), out=io.StringIO()) == 1
    assert decode_artifact(settings, str(junk), kind="evtx", out=io.StringIO()) == 1
    assert decode_artifact(settings, str(tmp_path / "missing.csv"), kind="csv", out=io.StringIO()) == 1


def test_init_store_creates_tables_and_fingerprint_store(tmp_path: Path) -> None:
    """init-store creates the kind tables and the fingerprint store."""
    settings = _settings(
        sinks={"duckdb_path": str(tmp_path / "db" / "case.duckdb")},
        dedup={"store_path": str(tmp_path / "state" / "fp.duckdb")},
    )
    out = io.StringIO()

    assert init_store(settings, out=out) == EXIT_OK
    text = out.getvalue()
    assert "table: event_log" in text
    assert "table: csv_table" in text
    assert (tmp_path / "db" / "case.duckdb").exists()
    assert (tmp_path / "state" / "fp.duckdb").exists()


# -------------------------
# Run manifest
# -------------------------


def test_manifest_path_resolution(tmp_path: Path) -> None:
    """A .json target is a file; anything else is a directory."""
    assert manifest_path(tmp_path / "m.json") == tmp_path / "m.json"
    assert manifest_path(tmp_path) == tmp_path / "run_manifest.json"


def test_manifest_write_and_load(tmp_path: Path) -> None:
    """Manifests are written atomically and validated on load."""
    manifest = RunManifest(
        run_id="20240101T000000Z-abcd1234",
        started_at="2024-01-01T00:00:00+00:00",
        finished_at="2024-01-01T00:01:00+00:00",
        engine_name="artifactstream",
        schema_version=1,
        outputs=("parquet", "kafka"),
        stats={"records": {"emitted": 3}},
    )
    path = write_manifest(tmp_path / "runs", manifest)

    assert not list((tmp_path / "runs").glob("*.tmp"))
    loaded = load_manifest(path)
    assert loaded.run_id == manifest.run_id
    assert loaded.outputs == ("parquet", "kafka")
    assert loaded.stats == {"records": {"emitted": 3}}
    assert loaded.created_at

    with pytest.raises(ValueError):
        write_manifest(tmp_path, RunManifest(run_id="", started_at="x", finished_at="y"))
