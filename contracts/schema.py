"""Per-kind record schemas and their Arrow storage layout.

Every artifact kind declares an ordered field list. The order is the column
order used by the normalizer, the columnar store and the Parquet sink, so it
must only ever be extended at the end.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from enum import Enum

import pyarrow as pa

from contracts.artifacts import ArtifactKind

UTC_TS_MS = pa.timestamp("ms", tz="UTC")


class FieldType(str, Enum):
    STRING = "string"
    INTEGER = "integer"
    FLOAT = "float"
    BOOLEAN = "boolean"
    TIMESTAMP = "timestamp"
    BLOB = "blob"


_ARROW_TYPES: dict[FieldType, pa.DataType] = {
    FieldType.STRING: pa.string(),
    FieldType.INTEGER: pa.int64(),
    FieldType.FLOAT: pa.float64(),
    FieldType.BOOLEAN: pa.bool_(),
    FieldType.TIMESTAMP: UTC_TS_MS,
    FieldType.BLOB: pa.binary(),
}


def arrow_type(field_type: FieldType) -> pa.DataType:
    return _ARROW_TYPES[field_type]


@dataclass(frozen=True)
class FieldSpec:
    name: str
    type: FieldType
    required: bool = False


# Envelope columns carried by every stored row, ahead of the kind's fields.
ENVELOPE_FIELDS: tuple[pa.Field, ...] = (
    pa.field("fingerprint", pa.string(), nullable=False),
    pa.field("artifact_fingerprint", pa.string()),
    pa.field("kind", pa.string()),
    pa.field("source_path", pa.string()),
    pa.field("source_host", pa.string()),
    pa.field("sequence", pa.int64()),
    pa.field("event_ts", UTC_TS_MS),
    pa.field("batch_id", pa.string()),
    pa.field("ingested_ts", UTC_TS_MS),
)


@dataclass(frozen=True)
class KindSchema:
    """Ordered, typed field list for one artifact kind."""

    kind: ArtifactKind
    fields: tuple[FieldSpec, ...]
    sort_field: str | None = None
    table: str = ""

    def __post_init__(self) -> None:
        names = [f.name for f in self.fields]
        if len(set(names)) != len(names):
            raise ValueError(f"Duplicate field names in schema for {self.kind.value}")
        envelope = {f.name for f in ENVELOPE_FIELDS}
        clash = envelope.intersection(names)
        if clash:
            raise ValueError(f"Schema for {self.kind.value} shadows envelope columns: {sorted(clash)}")
        if self.sort_field is not None and self.sort_field not in names:
            raise ValueError(f"sort_field {self.sort_field!r} is not a field of {self.kind.value}")

    @property
    def table_name(self) -> str:
        return self.table or self.kind.value

    def names(self) -> tuple[str, ...]:
        return tuple(f.name for f in self.fields)

    def required_names(self) -> tuple[str, ...]:
        return tuple(f.name for f in self.fields if f.required)

    def arrow_schema(self) -> pa.Schema:
        """Envelope columns followed by the kind's fields."""
        cols = list(ENVELOPE_FIELDS)
        cols.extend(pa.field(f.name, arrow_type(f.type)) for f in self.fields)
        return pa.schema(cols)


def _fields(*specs: tuple[str, FieldType] | tuple[str, FieldType, bool]) -> tuple[FieldSpec, ...]:
    return tuple(FieldSpec(*spec) for spec in specs)


S, I, B, T = (
    FieldType.STRING,
    FieldType.INTEGER,
    FieldType.BOOLEAN,
    FieldType.TIMESTAMP,
)

EVENT_LOG_SCHEMA = KindSchema(
    kind=ArtifactKind.EVENT_LOG,
    fields=_fields(
        ("event_record_id", I, True),
        ("time_created", T, True),
        ("event_id", I, True),
        ("version", I),
        ("level", I),
        ("task", I),
        ("opcode", I),
        ("keywords", S),
        ("provider_name", S, True),
        ("provider_guid", S),
        ("channel", S),
        ("computer", S),
        ("process_id", I),
        ("thread_id", I),
        ("user_id", S),
        ("event_data", S),
    ),
    sort_field="time_created",
)

FILESYSTEM_METADATA_SCHEMA = KindSchema(
    kind=ArtifactKind.FILESYSTEM_METADATA,
    fields=_fields(
        ("record_number", I, True),
        ("sequence_number", I),
        ("in_use", B, True),
        ("is_directory", B),
        ("parent_record", I),
        ("parent_sequence", I),
        ("file_name", S),
        ("name_namespace", S),
        ("si_created", T),
        ("si_modified", T),
        ("si_mft_modified", T),
        ("si_accessed", T),
        ("fn_created", T),
        ("fn_modified", T),
        ("fn_mft_modified", T),
        ("fn_accessed", T),
        ("file_attributes", I),
        ("logical_size", I),
        ("allocated_size", I),
        ("hard_links", I),
    ),
    sort_field="si_modified",
)

REGISTRY_HIVE_SCHEMA = KindSchema(
    kind=ArtifactKind.REGISTRY_HIVE,
    fields=_fields(
        ("path", S, True),
        ("entry_type", S, True),
        ("class_name", S),
        ("last_written", T),
        ("value_name", S),
        ("value_type", S),
        ("value", S),
    ),
    sort_field="last_written",
)

USAGE_DATABASE_SCHEMA = KindSchema(
    kind=ArtifactKind.USAGE_DATABASE,
    fields=_fields(
        ("table_name", S, True),
        ("table_guid", S),
        ("auto_inc_id", I),
        ("timestamp", T),
        ("app_id", S),
        ("user_id", S),
        ("columns", S),
    ),
    sort_field="timestamp",
)

# Used when no CSV mapping is configured: each line is kept as a JSON object.
CSV_TABLE_SCHEMA = KindSchema(
    kind=ArtifactKind.CSV_TABLE,
    fields=_fields(
        ("line", I, True),
        ("row", S, True),
    ),
)

DEFAULT_SCHEMAS: Mapping[ArtifactKind, KindSchema] = {
    s.kind: s
    for s in (
        EVENT_LOG_SCHEMA,
        FILESYSTEM_METADATA_SCHEMA,
        REGISTRY_HIVE_SCHEMA,
        USAGE_DATABASE_SCHEMA,
        CSV_TABLE_SCHEMA,
    )
}


def build_schemas(overrides: Iterable[KindSchema] = ()) -> dict[ArtifactKind, KindSchema]:
    """Default schemas with per-kind replacements (e.g. a mapped CSV layout)."""
    out = dict(DEFAULT_SCHEMAS)
    for schema in overrides:
        out[schema.kind] = schema
    return out


__all__ = [
    "CSV_TABLE_SCHEMA",
    "DEFAULT_SCHEMAS",
    "ENVELOPE_FIELDS",
    "EVENT_LOG_SCHEMA",
    "FILESYSTEM_METADATA_SCHEMA",
    "FieldSpec",
    "FieldType",
    "KindSchema",
    "REGISTRY_HIVE_SCHEMA",
    "USAGE_DATABASE_SCHEMA",
    "UTC_TS_MS",
    "arrow_type",
    "build_schemas",
]
