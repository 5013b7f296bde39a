"""Decoded record -> normalized record.

The normalizer is the schema boundary of the pipeline: every field is placed
in its kind's declared order and coerced to its declared type, timestamps
become UTC with millisecond precision, and the record fingerprint is
computed. Fields a decoder emits but the schema does not declare are dropped.
"""

from __future__ import annotations

import base64
from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Any, Literal

from dateutil import parser as _dtparser

from contracts.artifacts import ArtifactFile, ArtifactKind, DecodedRecord, NormalizedRecord
from contracts.errors import SchemaError
from contracts.fingerprints import canonical_json_dumps, content_fingerprint, positional_fingerprint
from contracts.schema import DEFAULT_SCHEMAS, FieldType, KindSchema

RecordMode = Literal["position", "content"]

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


def to_utc_ms(value: datetime) -> datetime:
    """Aware UTC datetime truncated to milliseconds (naive input is taken as UTC)."""
    dt = value if value.tzinfo else value.replace(tzinfo=UTC)
    dt = dt.astimezone(UTC)
    return dt.replace(microsecond=(dt.microsecond // 1000) * 1000)


def _coerce(value: Any, field_type: FieldType) -> Any:
    """Coerce one value; raises TypeError/ValueError when it cannot be represented."""
    if value is None:
        return None
    if field_type is FieldType.TIMESTAMP:
        if isinstance(value, datetime):
            return to_utc_ms(value)
        if isinstance(value, str) and value.strip():
            return to_utc_ms(_dtparser.isoparse(value.strip()))
        raise TypeError(f"expected timestamp, got {type(value).__name__}")
    if field_type is FieldType.INTEGER:
        if isinstance(value, bool):
            return int(value)
        if isinstance(value, int):
            return value
        if isinstance(value, float) and value.is_integer():
            return int(value)
        if isinstance(value, str):
            return int(value.strip(), 0)
        raise TypeError(f"expected integer, got {type(value).__name__}")
    if field_type is FieldType.FLOAT:
        if isinstance(value, bool):
            raise TypeError("expected float, got bool")
        return float(value)
    if field_type is FieldType.BOOLEAN:
        if isinstance(value, bool):
            return value
        if isinstance(value, int):
            return value != 0
        text = str(value).strip().lower()
        if text in _TRUE:
            return True
        if text in _FALSE:
            return False
        raise ValueError(f"expected boolean, got {value!r}")
    if field_type is FieldType.BLOB:
        if isinstance(value, (bytes, bytearray, memoryview)):
            return bytes(value)
        if isinstance(value, str):
            return value.encode("utf-8")
        raise TypeError(f"expected bytes, got {type(value).__name__}")
    # STRING
    if isinstance(value, str):
        return value
    if isinstance(value, (bytes, bytearray, memoryview)):
        return base64.urlsafe_b64encode(bytes(value)).decode("ascii").rstrip("=")
    if isinstance(value, (Mapping, list, tuple)):
        return canonical_json_dumps(value)
    if isinstance(value, datetime):
        return to_utc_ms(value).isoformat().replace("+00:00", "Z")
    return str(value)


class RecordNormalizer:
    """Pure DecodedRecord -> NormalizedRecord mapping for a fixed set of schemas."""

    def __init__(
        self,
        schemas: Mapping[ArtifactKind, KindSchema] | None = None,
        *,
        record_mode: RecordMode = "position",
    ) -> None:
        if record_mode not in ("position", "content"):
            raise ValueError(f"Unknown record fingerprint mode: {record_mode!r}")
        self._schemas = dict(schemas or DEFAULT_SCHEMAS)
        self._record_mode = record_mode

    @property
    def record_mode(self) -> RecordMode:
        return self._record_mode

    def schema_for(self, kind: ArtifactKind) -> KindSchema:
        try:
            return self._schemas[kind]
        except KeyError:
            raise SchemaError(f"No schema declared for kind {kind.value!r}") from None

    def normalize(self, artifact: ArtifactFile, record: DecodedRecord) -> NormalizedRecord:
        schema = self.schema_for(record.kind)
        raw = record.fields
        ordered: list[tuple[str, Any]] = []
        for spec in schema.fields:
            try:
                value = _coerce(raw.get(spec.name), spec.type)
            except (TypeError, ValueError, OverflowError) as exc:
                raise SchemaError(
                    f"record {record.sequence}: field {spec.name!r} ({spec.type.value}): {exc}",
                    source=artifact.path,
                ) from exc
            if value is None and spec.required:
                raise SchemaError(
                    f"record {record.sequence}: required field {spec.name!r} is missing",
                    source=artifact.path,
                )
            ordered.append((spec.name, value))

        timestamp = to_utc_ms(record.timestamp) if record.timestamp is not None else None
        if timestamp is None and schema.sort_field is not None:
            sort_value = dict(ordered).get(schema.sort_field)
            if isinstance(sort_value, datetime):
                timestamp = sort_value

        if self._record_mode == "content":
            fingerprint = content_fingerprint(record.kind, dict(ordered), timestamp)
        else:
            fingerprint = positional_fingerprint(artifact.fingerprint, record.sequence)

        return NormalizedRecord(
            kind=record.kind,
            source_path=artifact.path,
            source_host=artifact.host,
            sequence=record.sequence,
            timestamp=timestamp,
            fields=tuple(ordered),
            fingerprint=fingerprint,
            artifact_fingerprint=artifact.fingerprint,
        )


__all__ = ["RecordMode", "RecordNormalizer", "to_utc_ms"]
