"""CSV export decoder driven by a JSON column mapping.

Without a mapping every line is kept as a JSON object under ``row``. With a
mapping, mapped columns are converted to their declared type and become
first-class fields; unmapped columns stay in ``row``.

Example mapping::

    {
      "topic": "ntfs_info",
      "delimiter": ",",
      "skip_lines": 0,
      "sort_field": "LastModificationDate",
      "default_date_format": "%Y-%m-%d %H:%M:%S.%f",
      "best_effort": true,
      "fields": {
        "ComputerName": {"type": "string", "mandatory": true},
        "FRN": {"type": "integer"},
        "LastModificationDate": {"type": "date"}
      }
    }
"""

from __future__ import annotations

import codecs
import csv
import json
from collections.abc import Iterator
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Literal

from dateutil import parser as _dtparser
from pydantic import BaseModel, ConfigDict, Field, field_validator

from contracts.artifacts import ArtifactFile, ArtifactKind, DecodedRecord
from contracts.errors import ContainerError, RecordError
from contracts.fingerprints import canonical_json_dumps
from contracts.schema import CSV_TABLE_SCHEMA, FieldSpec, FieldType, KindSchema
from decoders.base import ByteSource, ErrorCallback, FormatDecoder, register_decoder

RFC3339 = "rfc3339"
AUTO = "auto"

_TYPE_MAP = {
    "string": FieldType.STRING,
    "integer": FieldType.INTEGER,
    "float": FieldType.FLOAT,
    "date": FieldType.TIMESTAMP,
}


class CsvField(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    type: Literal["string", "integer", "float", "date"] = "string"
    mandatory: bool = False
    date_format: str | None = None


class CsvMapping(BaseModel):
    """Column mapping for one family of CSV exports."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    topic: str = ""
    delimiter: str = ","
    skip_lines: int = Field(default=0, ge=0)
    sort_field: str | None = None
    default_date_format: str = RFC3339
    best_effort: bool = False
    fields: dict[str, CsvField] = Field(default_factory=dict)

    @field_validator("delimiter")
    @classmethod
    def _single_char(cls, v: str) -> str:
        if v == "\\t":
            return "\t"
        if len(v) != 1:
            raise ValueError("delimiter must be a single character")
        return v

    @field_validator("fields")
    @classmethod
    def _no_reserved_names(cls, v: dict[str, CsvField]) -> dict[str, CsvField]:
        reserved = set(CSV_TABLE_SCHEMA.names())
        clash = reserved.intersection(v)
        if clash:
            raise ValueError(f"mapped column names clash with reserved fields: {sorted(clash)}")
        return v

    @classmethod
    def load(cls, path: str | Path) -> CsvMapping:
        p = Path(path)
        if not p.is_file():
            raise FileNotFoundError(f"CSV mapping not found: {p}")
        with p.open("r", encoding="utf-8") as f:
            return cls.model_validate(json.load(f))

    def schema(self) -> KindSchema:
        """Record schema for CSV rows decoded with this mapping."""
        specs = [FieldSpec("line", FieldType.INTEGER, True)]
        specs.extend(FieldSpec(name, _TYPE_MAP[f.type], f.mandatory) for name, f in self.fields.items())
        specs.append(FieldSpec("row", FieldType.STRING, True))
        return KindSchema(
            kind=ArtifactKind.CSV_TABLE,
            fields=tuple(specs),
            sort_field=self.sort_field,
            table=self.topic,
        )


def parse_date(text: str, fmt: str) -> datetime:
    """Parse ``text`` with a strftime pattern, ``rfc3339`` or ``auto``; naive results are UTC."""
    if fmt == RFC3339:
        parsed = _dtparser.isoparse(text)
    elif fmt == AUTO:
        parsed = _dtparser.parse(text)
    else:
        parsed = datetime.strptime(text, fmt)
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


def _convert(raw: str, spec: CsvField, default_date_format: str) -> Any:
    text = raw.strip()
    if text == "":
        return None
    if spec.type == "integer":
        return int(text, 0) if text.lower().startswith(("0x", "-0x")) else int(text)
    if spec.type == "float":
        return float(text)
    if spec.type == "date":
        return parse_date(text, spec.date_format or default_date_format)
    return raw


def _text_lines(data: ByteSource) -> Iterator[str]:
    """Decode the byte source line by line without materializing it as text."""
    decoder = codecs.getincrementaldecoder("utf-8-sig")(errors="replace")
    start = 0
    size = len(data)
    while start < size:
        nl = data.find(b"\n", start)
        end = size if nl < 0 else nl + 1
        yield decoder.decode(bytes(data[start:end]), final=end >= size)
        start = end


@register_decoder(ArtifactKind.CSV_TABLE)
class CsvTableDecoder(FormatDecoder):
    """Decodes delimited text exports (NTFSInfo and similar tools)."""

    def decode(
        self,
        artifact: ArtifactFile,
        data: ByteSource,
        on_error: ErrorCallback | None = None,
    ) -> Iterator[DecodedRecord]:
        mapping: CsvMapping = self._options.csv_mapping or CsvMapping()
        reader = csv.reader(_text_lines(data), delimiter=mapping.delimiter)
        try:
            header = next(reader)
        except StopIteration:
            raise ContainerError("CSV file has no header line", source=artifact.path) from None
        except csv.Error as exc:
            raise ContainerError(f"unreadable CSV header: {exc}", source=artifact.path) from exc
        if not any(h.strip() for h in header):
            raise ContainerError("CSV header line is empty", source=artifact.path)
        missing = [name for name, f in mapping.fields.items() if f.mandatory and name not in header]
        if missing:
            raise ContainerError(f"mandatory columns missing from header: {missing}", source=artifact.path)

        seq = 0
        data_line = 0
        while True:
            try:
                cells = next(reader)
            except StopIteration:
                return
            except csv.Error as exc:
                self._report(on_error, RecordError(f"line {reader.line_num}: {exc}", source=artifact.path))
                continue
            if not cells:
                continue
            data_line += 1
            if data_line <= mapping.skip_lines:
                continue
            try:
                fields = self._row(header, cells, mapping, reader.line_num)
            except ValueError as exc:
                self._report(on_error, RecordError(f"line {reader.line_num}: {exc}", source=artifact.path))
                continue
            sort_value = fields.get(mapping.sort_field) if mapping.sort_field else None
            yield DecodedRecord(
                kind=self.kind,
                source=artifact.path,
                sequence=seq,
                fields=fields,
                timestamp=sort_value if isinstance(sort_value, datetime) else None,
            )
            seq += 1

    @staticmethod
    def _row(header: list[str], cells: list[str], mapping: CsvMapping, line: int) -> dict[str, Any]:
        if len(cells) != len(header):
            raise ValueError(f"expected {len(header)} cells, got {len(cells)}")
        fields: dict[str, Any] = {"line": line}
        rest: dict[str, str] = {}
        for name, raw in zip(header, cells, strict=True):
            spec = mapping.fields.get(name)
            if spec is None:
                rest[name] = raw
                continue
            try:
                value = _convert(raw, spec, mapping.default_date_format)
            except (ValueError, OverflowError) as exc:
                if not mapping.best_effort or spec.mandatory:
                    raise ValueError(f"column {name!r}: cannot convert {raw!r} to {spec.type}") from exc
                value = None
            if value is None and spec.mandatory:
                raise ValueError(f"mandatory column {name!r} is empty")
            fields[name] = value
        fields["row"] = canonical_json_dumps(rest)
        return fields
