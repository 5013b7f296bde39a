"""Contracts and canonical schema.

The contracts package defines:
- the value objects flowing through the pipeline (artifacts, records, batches)
- the error taxonomy shared by decoders, normalizer and sinks
- the per-kind record schemas and their Arrow mapping
- fingerprint and canonical JSON helpers

Main exports:
- ArtifactKind, ArtifactFile, DecodedRecord, NormalizedRecord, Batch
- ContainerError, RecordError, SchemaError, ArtifactIOError, DeliveryError
- KindSchema, FieldSpec, FieldType, DEFAULT_SCHEMAS
"""

from contracts import artifacts
from contracts import errors
from contracts import schema

# Explicit re-exports to satisfy ruff F401
__all__ = [
    "ArtifactError",
    "ArtifactFile",
    "ArtifactIOError",
    "ArtifactKind",
    "Batch",
    "ContainerError",
    "DEFAULT_SCHEMAS",
    "DecodedRecord",
    "DeliveryError",
    "DeliveryReceipt",
    "FieldSpec",
    "FieldType",
    "FlushReason",
    "KindSchema",
    "NormalizedRecord",
    "RecordError",
    "SchemaError",
]

# Re-export for convenience
ArtifactFile = artifacts.ArtifactFile
ArtifactKind = artifacts.ArtifactKind
Batch = artifacts.Batch
DecodedRecord = artifacts.DecodedRecord
DeliveryReceipt = artifacts.DeliveryReceipt
FlushReason = artifacts.FlushReason
NormalizedRecord = artifacts.NormalizedRecord

ArtifactError = errors.ArtifactError
ArtifactIOError = errors.ArtifactIOError
ContainerError = errors.ContainerError
DeliveryError = errors.DeliveryError
RecordError = errors.RecordError
SchemaError = errors.SchemaError

DEFAULT_SCHEMAS = schema.DEFAULT_SCHEMAS
FieldSpec = schema.FieldSpec
FieldType = schema.FieldType
KindSchema = schema.KindSchema
