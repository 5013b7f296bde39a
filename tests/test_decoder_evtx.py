"""Unit tests for the EVTX decoder and its Binary XML reader."""

from __future__ import annotations

import json
from datetime import UTC, datetime

import pytest

from contracts.artifacts import ArtifactKind
from contracts.errors import ContainerError, RecordError
from decoders import decoder_for
from decoders.base import DecoderOptions
from tests.factories import EvtxEvent, build_evtx, make_artifact, sample_events


def _decode(data: bytes, **options):
    errors: list[RecordError] = []
    decoder = decoder_for(ArtifactKind.EVENT_LOG, DecoderOptions(**options))
    records = list(decoder.decode(make_artifact(data=data), data, errors.append))
    return records, errors


def test_templated_events_are_rendered() -> None:
    """Template instances should be expanded with each record's substitutions."""
    events = sample_events(3)
    records, errors = _decode(build_evtx([events]))

    assert errors == []
    assert [r.sequence for r in records] == [0, 1, 2]
    first = records[0].fields
    assert first["event_record_id"] == 1
    assert first["event_id"] == 4624
    assert first["level"] == 0
    assert first["provider_name"] == "Microsoft-Windows-Security-Auditing"
    assert first["provider_guid"] == "{54849625-5478-4994-A5BA-3E3B0328C30D}"
    assert first["channel"] == "Security"
    assert first["computer"] == "WS01"
    assert first["process_id"] == 4
    assert first["thread_id"] == 8
    assert first["time_created"] == datetime(2024, 5, 6, 7, 8, 9, tzinfo=UTC)
    assert json.loads(first["event_data"]) == {"TargetUserName": "alice"}
    assert records[1].fields["event_id"] == 4634
    assert records[0].timestamp == first["time_created"]


def test_plain_events_without_templates() -> None:
    """Inline elements and text values should decode like templated ones."""
    ev = EvtxEvent(record_id=7, event_id=1102, time_created=datetime(2023, 1, 1, 0, 0, 1, tzinfo=UTC), templated=False)
    records, errors = _decode(build_evtx([[ev]]))

    assert errors == []
    assert len(records) == 1
    fields = records[0].fields
    assert fields["event_record_id"] == 7
    assert fields["event_id"] == 1102
    assert fields["time_created"] == datetime(2023, 1, 1, 0, 0, 1, tzinfo=UTC)
    assert fields["provider_guid"] is None


def test_missing_optional_substitution_gives_null_data() -> None:
    """An empty optional substitution should leave the data item null."""
    ev = EvtxEvent(record_id=1, event_id=4625, time_created=datetime(2024, 1, 1, tzinfo=UTC), target_user=None)
    records, _ = _decode(build_evtx([[ev]]))

    assert json.loads(records[0].fields["event_data"]) == {"TargetUserName": None}


def test_sequences_continue_across_chunks() -> None:
    """Sequence numbers are per artifact, not per chunk."""
    records, errors = _decode(build_evtx([sample_events(2), sample_events(2, start_id=3)]))

    assert errors == []
    assert [r.sequence for r in records] == [0, 1, 2, 3]
    assert [r.fields["event_record_id"] for r in records] == [1, 2, 3, 4]


def test_corrupt_record_is_skipped_and_reported() -> None:
    """A record whose size copy disagrees is reported; its neighbours survive."""
    data = build_evtx([sample_events(3)], bad_size_copy=1)
    records, errors = _decode(data)

    assert [r.fields["event_record_id"] for r in records] == [1, 3]
    assert any("inconsistent record size" in e.message for e in errors)
    assert all(e.kind == "record" for e in errors)


def test_corrupt_chunk_header_skips_chunk() -> None:
    """A chunk whose header CRC fails is skipped, later chunks still decode."""
    data = bytearray(build_evtx([sample_events(2), sample_events(1, start_id=3)]))
    data[4096 + 8] ^= 0xFF  # first chunk, first-record-number field
    records, errors = _decode(bytes(data))

    assert [r.fields["event_record_id"] for r in records] == [3]
    assert any("chunk header checksum" in e.message for e in errors)


def test_bad_file_header_checksum_is_fatal() -> None:
    """A file header with a wrong CRC makes the whole artifact unusable."""
    data = build_evtx([sample_events(1)], corrupt_header_crc=True)
    with pytest.raises(ContainerError, match="checksum"):
        _decode(data)


def test_unsupported_major_version_is_fatal() -> None:
    """Only major version 3 event logs are decoded."""
    with pytest.raises(ContainerError, match="major version"):
        _decode(build_evtx([sample_events(1)], major=2))


def test_wrong_signature_is_fatal() -> None:
    """Files without the ElfFile signature are rejected."""
    with pytest.raises(ContainerError, match="ElfFile"):
        _decode(b"MZ" + b"\x00" * 4094)


def test_decode_is_restartable() -> None:
    """Each decode call returns a fresh iterator."""
    data = build_evtx([sample_events(2)])
    decoder = decoder_for(ArtifactKind.EVENT_LOG)
    artifact = make_artifact(data=data)

    first = [r.fields for r in decoder.decode(artifact, data)]
    second = [r.fields for r in decoder.decode(artifact, data)]
    assert first == second


def test_tiny_template_cache_still_renders() -> None:
    """Evicting cached templates must not change the output."""
    data = build_evtx([sample_events(4)])
    records, errors = _decode(data, evtx_max_template_cache=1)

    assert errors == []
    assert len(records) == 4
