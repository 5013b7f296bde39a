"""Unit tests for the registry hive decoder."""

from __future__ import annotations

from datetime import UTC, datetime

import pytest

from contracts.artifacts import ArtifactKind
from contracts.errors import ContainerError, RecordError
from decoders import decoder_for
from decoders.base import DecoderOptions
from decoders.regf import render_value
from tests.factories import (
    REG_BINARY,
    REG_DWORD,
    REG_MULTI_SZ,
    REG_QWORD,
    REG_SZ,
    RegKey,
    RegValue,
    build_hive,
    make_artifact,
    reg_sz,
)


def _decode(data: bytes, **options):
    errors: list[RecordError] = []
    artifact = make_artifact(path="/case/SYSTEM", kind=ArtifactKind.REGISTRY_HIVE, data=data)
    decoder = decoder_for(ArtifactKind.REGISTRY_HIVE, DecoderOptions(**options))
    records = list(decoder.decode(artifact, data, errors.append))
    return records, errors


def _hive() -> RegKey:
    run = RegKey(
        "Run",
        values=[
            RegValue("Updater", REG_SZ, reg_sz("C:\\Tools\\upd.exe")),
            RegValue("", REG_SZ, reg_sz("default")),
        ],
    )
    select = RegKey(
        "Select",
        values=[
            RegValue("Current", REG_DWORD, (1).to_bytes(4, "little")),
            RegValue("Blob", REG_BINARY, b"\x00\x01\x02\x03\x04\x05"),
        ],
        class_name="SelectClass",
    )
    software = RegKey("Software", subkeys=[RegKey("Microsoft", subkeys=[run])])
    return RegKey(
        "CsiTool-CreateHive-{00000000}",
        values=[RegValue("Ignored", REG_DWORD, b"\x01\x00\x00\x00")],
        subkeys=[software, select],
    )


def test_keys_and_values_in_depth_first_order() -> None:
    """Each key is followed by its values, then by its subkeys."""
    records, errors = _decode(build_hive(_hive()))

    assert errors == []
    assert [(r.fields["entry_type"], r.fields["path"]) for r in records] == [
        ("key", "ROOT\\Software"),
        ("key", "ROOT\\Software\\Microsoft"),
        ("key", "ROOT\\Software\\Microsoft\\Run"),
        ("value", "ROOT\\Software\\Microsoft\\Run\\Updater"),
        ("value", "ROOT\\Software\\Microsoft\\Run\\Default"),
        ("key", "ROOT\\Select"),
        ("value", "ROOT\\Select\\Current"),
        ("value", "ROOT\\Select\\Blob"),
    ]
    assert [r.sequence for r in records] == list(range(8))


def test_value_rendering_and_metadata() -> None:
    """Values carry their type name, rendered data and the key's metadata."""
    records, _ = _decode(build_hive(_hive()))
    by_path = {r.fields["path"]: r.fields for r in records}

    updater = by_path["ROOT\\Software\\Microsoft\\Run\\Updater"]
    assert updater["value_type"] == "REG_SZ"
    assert updater["value"] == "C:\\Tools\\upd.exe"
    assert updater["value_name"] == "Updater"
    assert updater["last_written"] == datetime(2024, 3, 4, 5, 6, 7, tzinfo=UTC)

    assert by_path["ROOT\\Software\\Microsoft\\Run\\Default"]["value_name"] == "Default"
    assert by_path["ROOT\\Select\\Current"]["value"] == "1"
    assert by_path["ROOT\\Select\\Blob"]["value"] == "AAECAwQF"
    assert by_path["ROOT\\Select"]["class_name"] == "SelectClass"
    assert by_path["ROOT\\Select\\Current"]["class_name"] == "SelectClass"
    assert by_path["ROOT\\Select"]["value_name"] is None


def test_root_name_is_configurable() -> None:
    """Key paths are prefixed with the configured root name."""
    records, _ = _decode(build_hive(_hive()), hive_root_name="HKLM\\SYSTEM")

    assert records[0].fields["path"] == "HKLM\\SYSTEM\\Software"


def test_depth_limit_stops_descent() -> None:
    """Keys below the depth limit are not visited and the cut is reported."""
    records, errors = _decode(build_hive(_hive()), hive_max_depth=1)

    assert [r.fields["path"] for r in records if r.fields["entry_type"] == "key"] == ["ROOT\\Software", "ROOT\\Select"]
    assert any("depth limit" in e.message for e in errors)


def test_dangling_subkey_offset_is_reported() -> None:
    """A subkey pointer outside every hive bin is reported and skipped."""
    root = _hive()
    root.extra_subkey_offsets.append(0x7FFF0000)
    records, errors = _decode(build_hive(root))

    assert len(records) == 8
    assert len(errors) == 1
    assert "not inside a valid hive bin" in errors[0].message


def test_checksum_mismatch_is_fatal() -> None:
    """A corrupt base block makes the hive unusable."""
    with pytest.raises(ContainerError, match="checksum"):
        _decode(build_hive(_hive(), corrupt_checksum=True))


def test_unsupported_major_version_is_fatal() -> None:
    """Only major version 1 hives are decoded."""
    with pytest.raises(ContainerError, match="major version"):
        _decode(build_hive(_hive(), major=2))


def test_missing_signature_is_fatal() -> None:
    """Files without the regf signature are rejected."""
    with pytest.raises(ContainerError, match="regf"):
        _decode(b"\x00" * 8192)


@pytest.mark.parametrize(
    ("value_type", "raw", "expected"),
    [
        (REG_SZ, reg_sz("abc"), "abc"),
        (REG_MULTI_SZ, reg_sz("a") + reg_sz("b") + b"\x00\x00", "ab"),
        (REG_DWORD, (4096).to_bytes(4, "little"), "4096"),
        (REG_QWORD, (2**40).to_bytes(8, "little"), str(2**40)),
        (REG_BINARY, b"\xff\xfe", "__4"),
    ],
)
def test_render_value(value_type: int, raw: bytes, expected: str) -> None:
    """Value data renders as text, integers, or URL-safe base64 without padding."""
    assert render_value(value_type, raw) == expected
