"""Unit tests for the $MFT decoder."""

from __future__ import annotations

from datetime import UTC, datetime

import pytest

from contracts.artifacts import ArtifactKind
from contracts.errors import ContainerError, RecordError
from decoders import decoder_for
from decoders.mft import apply_fixup
from tests.factories import MftEntry, build_mft, build_mft_record, make_artifact


def _decode(data: bytes):
    errors: list[RecordError] = []
    artifact = make_artifact(path="/case/$MFT", kind=ArtifactKind.FILESYSTEM_METADATA, data=data)
    records = list(decoder_for(ArtifactKind.FILESYSTEM_METADATA).decode(artifact, data, errors.append))
    return records, errors


def _table() -> list[MftEntry | None]:
    return [
        MftEntry(name="$MFT", parent=5, size=262144),
        MftEntry(name="Users", directory=True),
        None,
        MftEntry(name="report.docx", parent=1, parent_sequence=1, size=12345, in_use=False, sequence=3),
    ]


def test_records_decode_with_both_timestamp_sets() -> None:
    """Each in-table record yields one row with $SI and $FN timestamps."""
    records, errors = _decode(build_mft(_table()))

    assert errors == []
    assert [r.fields["record_number"] for r in records] == [0, 1, 3]
    mft = records[0].fields
    assert mft["file_name"] == "$MFT"
    assert mft["name_namespace"] == "win32"
    assert mft["in_use"] is True
    assert mft["is_directory"] is False
    assert mft["parent_record"] == 5
    assert mft["parent_sequence"] == 5
    assert mft["si_modified"] == datetime(2024, 1, 2, 3, 4, 5, tzinfo=UTC)
    assert mft["fn_created"] == datetime(2023, 6, 1, tzinfo=UTC)
    assert mft["logical_size"] == 262144
    assert mft["file_attributes"] == 0x20
    assert mft["hard_links"] == 1
    assert records[0].timestamp == mft["si_modified"]


def test_directories_and_deleted_entries() -> None:
    """Directory flags are surfaced and deleted (not in use) entries are kept."""
    records, _ = _decode(build_mft(_table()))

    users = records[1].fields
    assert users["is_directory"] is True
    # no $DATA attribute: size falls back to the $FILE_NAME copy
    assert users["logical_size"] == 0

    deleted = records[2].fields
    assert deleted["in_use"] is False
    assert deleted["sequence_number"] == 3
    assert deleted["parent_record"] == 1
    assert deleted["logical_size"] == 12345
    # sequence numbers of emitted records stay dense across the empty slot
    assert [r.sequence for r in records] == [0, 1, 2]


def test_win32_name_preferred_over_dos_name() -> None:
    """The 8.3 DOS name only wins when no long name exists."""
    entry = MftEntry(name="LongDocumentName.txt", dos_name="LONGDO~1.TXT", size=10)
    records, _ = _decode(build_mft([entry]))

    assert records[0].fields["file_name"] == "LongDocumentName.txt"


def test_torn_record_is_reported_and_skipped() -> None:
    """A sector trailer that does not match the USN fails only that record."""
    records, errors = _decode(build_mft(_table(), torn=(1,)))

    assert [r.fields["record_number"] for r in records] == [0, 3]
    assert len(errors) == 1
    assert "update sequence" in errors[0].message
    assert errors[0].offset == 1024


def test_baad_record_is_reported() -> None:
    """Records marked BAAD by chkdsk are skipped with a record error."""
    records, errors = _decode(build_mft(_table(), baad=(3,)))

    assert [r.fields["record_number"] for r in records] == [0, 1]
    assert "BAAD" in errors[0].message


def test_trailing_partial_record_is_reported() -> None:
    """Bytes after the last whole record are reported, not decoded."""
    records, errors = _decode(build_mft(_table()) + b"\x01" * 100)

    assert len(records) == 3
    assert "trailing 100 bytes" in errors[0].message


def test_bad_first_record_is_fatal() -> None:
    """Record 0 must carry the FILE signature."""
    with pytest.raises(ContainerError, match="FILE signature"):
        _decode(b"\x00" * 2048)


def test_unsupported_record_size_is_fatal() -> None:
    """Only 1024 and 4096 byte records are accepted."""
    data = bytearray(build_mft(_table()))
    data[0x1C:0x20] = (2048).to_bytes(4, "little")
    with pytest.raises(ContainerError, match="record size"):
        _decode(bytes(data))


def test_short_file_is_fatal() -> None:
    """Files shorter than one record have no usable table."""
    with pytest.raises(ContainerError):
        _decode(b"FILE")


def test_apply_fixup_restores_sector_bytes() -> None:
    """Fixup puts the original sector-end bytes back in place."""
    raw = bytearray(build_mft_record(0, MftEntry(name="a")))
    usn = raw[0x30:0x32]
    assert raw[510:512] == usn

    apply_fixup(raw)
    assert raw[510:512] == raw[0x32:0x34]
