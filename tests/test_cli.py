"""Unit tests for the artifactstream command line."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

import cli
from tests.factories import write


@pytest.fixture(autouse=True)
def _isolated_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)
    for key in ("ARTIFACTSTREAM_INPUT", "INPUT__PATHS", "ARTIFACTSTREAM_OUTPUTS", "SINKS__OUTPUTS"):
        monkeypatch.delenv(key, raising=False)


def test_version_prints_versions(capsys: pytest.CaptureFixture[str]) -> None:
    """The version command prints engine, decoder set and schema versions."""
    assert cli.main(["version"]) == 0
    out = capsys.readouterr().out
    assert "ENGINE_NAME=artifactstream" in out
    assert "SCHEMA_VERSION=1" in out


def test_decode_command_prints_records(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    """decode prints JSON lines on stdout."""
    path = write(tmp_path, "users.csv", b"user,sid\nalice,S-1-5-21-1\n")

    assert cli.main(["decode", "--kind", "csv", "--host", "WS09", str(path)]) == 0
    lines = capsys.readouterr().out.splitlines()
    row = json.loads(lines[0])
    assert len(lines) == 1
    assert row["source_host"] == "WS09"
    assert json.loads(row["row"]) == {"sid": "S-1-5-21-1", "user": "alice"}


def test_ingest_command_to_parquet(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    """ingest wires flags into settings and writes the manifest next to the dataset."""
    case = tmp_path / "case"
    write(case, "a.csv", b"k,v\n1,2\n3,4\n")
    out_dir = tmp_path / "parquet"

    code = cli.main(["ingest", str(case), "--output", "parquet", "--parquet-dir", str(out_dir), "--workers", "2"])

    assert code == 0
    assert "records_delivered: 2" in capsys.readouterr().out
    assert len(list((out_dir / "kind=csv_table").glob("*.parquet"))) == 1
    manifest = json.loads((out_dir / "run_manifest.json").read_text(encoding="utf-8"))
    assert manifest["outputs"] == ["parquet"]


def test_ingest_without_inputs_exits() -> None:
    """ingest refuses to run with nothing to ingest."""
    with pytest.raises(SystemExit):
        cli.main(["ingest"])


def test_init_store_command(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    """init-store creates the database at the given path."""
    db = tmp_path / "db" / "case.duckdb"

    assert cli.main(["init-store", "--duckdb-path", str(db)]) == 0
    assert "table: registry_hive" in capsys.readouterr().out
    assert db.exists()


def test_parser_rejects_unknown_output() -> None:
    """Only the known sinks are accepted."""
    with pytest.raises(SystemExit):
        cli.build_parser().parse_args(["ingest", "x", "--output", "s3"])
