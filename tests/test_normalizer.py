"""Unit tests for record normalization and fingerprints."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta, timezone

import pytest

from contracts.artifacts import ArtifactKind, DecodedRecord
from contracts.errors import SchemaError
from contracts.fingerprints import canonical_json_dumps, content_fingerprint, positional_fingerprint
from contracts.schema import DEFAULT_SCHEMAS, EVENT_LOG_SCHEMA
from pipeline.normalizer import RecordNormalizer, to_utc_ms
from tests.factories import make_artifact


def _event(sequence: int = 0, **overrides) -> DecodedRecord:
    fields = {
        "event_record_id": 10 + sequence,
        "time_created": datetime(2024, 5, 6, 7, 8, 9, 123456, tzinfo=UTC),
        "event_id": "4624",
        "provider_name": "Microsoft-Windows-Security-Auditing",
        "level": 0,
        "computer": "WS01",
        "not_in_schema": "dropped",
    }
    fields.update(overrides)
    return DecodedRecord(
        kind=ArtifactKind.EVENT_LOG,
        source="/case/Security.evtx",
        sequence=sequence,
        fields=fields,
        timestamp=fields["time_created"] if isinstance(fields["time_created"], datetime) else None,
    )


def test_fields_follow_schema_order_and_types() -> None:
    """Fields are ordered like the schema, coerced, and unknown names dropped."""
    artifact = make_artifact()
    rec = RecordNormalizer().normalize(artifact, _event())

    assert [name for name, _ in rec.fields] == list(EVENT_LOG_SCHEMA.names())
    values = rec.field_map()
    assert values["event_id"] == 4624
    assert values["time_created"] == datetime(2024, 5, 6, 7, 8, 9, 123000, tzinfo=UTC)
    assert values["version"] is None
    assert "not_in_schema" not in values
    assert rec.timestamp == values["time_created"]
    assert rec.source_host == "WS01"
    assert rec.artifact_fingerprint == artifact.fingerprint
    assert rec.batch_id == ""


def test_timestamps_are_converted_to_utc() -> None:
    """Offsets are folded into UTC."""
    paris = timezone(timedelta(hours=2))
    rec = RecordNormalizer().normalize(make_artifact(), _event(time_created=datetime(2024, 5, 6, 9, 0, tzinfo=paris)))

    assert rec.field_map()["time_created"] == datetime(2024, 5, 6, 7, 0, tzinfo=UTC)


def test_sort_field_backfills_missing_timestamp() -> None:
    """Records without a decoder timestamp take the schema's sort field."""
    rec = RecordNormalizer().normalize(make_artifact(), _event(time_created="2024-05-06T07:08:09Z"))

    assert rec.timestamp == datetime(2024, 5, 6, 7, 8, 9, tzinfo=UTC)


def test_missing_required_field_raises_schema_error() -> None:
    """Required fields must be present."""
    with pytest.raises(SchemaError, match="provider_name"):
        RecordNormalizer().normalize(make_artifact(), _event(provider_name=None))


def test_uncoercible_value_raises_schema_error() -> None:
    """Values that cannot take the declared type are schema errors."""
    with pytest.raises(SchemaError, match="event_id"):
        RecordNormalizer().normalize(make_artifact(), _event(event_id="not-a-number"))


def test_positional_fingerprint_depends_on_artifact_and_sequence() -> None:
    """Position mode keys records by artifact hash and sequence."""
    normalizer = RecordNormalizer()
    a = make_artifact(data=b"one")
    b = make_artifact(data=b"two")

    assert normalizer.normalize(a, _event(0)).fingerprint == positional_fingerprint(a.fingerprint, 0)
    assert normalizer.normalize(a, _event(0)).fingerprint != normalizer.normalize(a, _event(1)).fingerprint
    assert normalizer.normalize(a, _event(0)).fingerprint != normalizer.normalize(b, _event(0)).fingerprint


def test_content_fingerprint_ignores_origin() -> None:
    """Content mode gives the same key for the same event from two images."""
    normalizer = RecordNormalizer(record_mode="content")
    a = make_artifact(path="/img1/Security.evtx", data=b"one")
    b = make_artifact(path="/img2/Security.evtx", data=b"two")

    fa = normalizer.normalize(a, _event(0)).fingerprint
    fb = normalizer.normalize(b, _event(0)).fingerprint
    assert fa == fb
    assert len(fa) == 64
    # time prefix: epoch seconds in hex
    assert int(fa[:12], 16) == int(datetime(2024, 5, 6, 7, 8, 9, tzinfo=UTC).timestamp())


def test_unknown_record_mode_rejected() -> None:
    """Only position and content fingerprint modes exist."""
    with pytest.raises(ValueError):
        RecordNormalizer(record_mode="hash")  # type: ignore[arg-type]


def test_missing_schema_is_schema_error() -> None:
    """A kind without a schema cannot be normalized."""
    schemas = {k: v for k, v in DEFAULT_SCHEMAS.items() if k is not ArtifactKind.EVENT_LOG}
    with pytest.raises(SchemaError):
        RecordNormalizer(schemas).normalize(make_artifact(), _event())


def test_envelope_flattens_record() -> None:
    """The envelope row holds the bookkeeping columns followed by the fields."""
    rec = RecordNormalizer().normalize(make_artifact(), _event()).with_batch("run-000001")
    row = rec.envelope()

    assert list(row)[:8] == [
        "fingerprint",
        "artifact_fingerprint",
        "kind",
        "source_path",
        "source_host",
        "sequence",
        "event_ts",
        "batch_id",
    ]
    assert row["kind"] == "event_log"
    assert row["batch_id"] == "run-000001"
    assert row["event_id"] == 4624


def test_canonical_json_is_stable() -> None:
    """Canonical JSON sorts keys and encodes bytes and datetimes portably."""
    payload = {"b": b"\xff\xfe", "a": datetime(2024, 1, 1, tzinfo=UTC), "c": [1, {"z": 1, "y": 2}]}

    assert canonical_json_dumps(payload) == '{"a":"2024-01-01T00:00:00Z","b":"__4","c":[1,{"y":2,"z":1}]}'


def test_to_utc_ms_truncates_and_assumes_utc() -> None:
    """Naive datetimes are UTC; precision is cut to milliseconds."""
    assert to_utc_ms(datetime(2024, 1, 1, 0, 0, 0, 999999)) == datetime(2024, 1, 1, 0, 0, 0, 999000, tzinfo=UTC)


def test_content_fingerprint_without_timestamp_has_zero_prefix() -> None:
    """Untimed records cluster under a zero time prefix."""
    fp = content_fingerprint(ArtifactKind.CSV_TABLE, {"line": 2, "row": "{}"}, None)
    assert fp.startswith("0" * 12)
