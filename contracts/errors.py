"""Error taxonomy shared by decoders, the normalizer and the delivery layer.

Scope of each error:
- ContainerError: the artifact container is unusable (fatal for that artifact)
- RecordError: one record inside a valid container is unusable (skipped)
- SchemaError: a decoded record misses a required field (dropped)
- ArtifactIOError: the artifact cannot be opened or read (fatal for that artifact)
- DeliveryError: a sink rejected or could not receive a batch
"""

from __future__ import annotations


class ArtifactError(ValueError):
    """Base class for artifact-scoped errors."""

    kind: str = "artifact"

    def __init__(self, message: str, *, source: str = "", offset: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.source = source
        self.offset = offset

    def __str__(self) -> str:
        parts = [self.message]
        if self.source:
            parts.append(f"source={self.source}")
        if self.offset is not None:
            parts.append(f"offset=0x{self.offset:x}")
        return " ".join(parts)


class ContainerError(ArtifactError):
    """Raised when an artifact header or container structure is invalid."""

    kind = "container"


class RecordError(ArtifactError):
    """Reported when one record of an otherwise valid container is corrupt."""

    kind = "record"


class SchemaError(ArtifactError):
    """Raised when a record cannot satisfy its kind's schema."""

    kind = "schema"


class ArtifactIOError(ArtifactError):
    """Raised when an artifact cannot be opened or read."""

    kind = "io"


class DeliveryError(RuntimeError):
    """Raised by sinks when a batch cannot be delivered."""

    kind = "delivery"

    def __init__(self, message: str, *, retryable: bool) -> None:
        super().__init__(message)
        self.retryable = retryable


__all__ = [
    "ArtifactError",
    "ArtifactIOError",
    "ContainerError",
    "DeliveryError",
    "RecordError",
    "SchemaError",
]
