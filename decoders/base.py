"""Decoder contract and the kind -> decoder registry.

The set of decoders is closed: each decoder module registers its class under
one ArtifactKind and :func:`decoder_for` picks it by kind tag.
"""

from __future__ import annotations

import logging
import mmap
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from typing import Any

from contracts.artifacts import ArtifactFile, ArtifactKind, DecodedRecord
from contracts.errors import RecordError

logger = logging.getLogger(__name__)

ByteSource = bytes | bytearray | mmap.mmap
ErrorCallback = Callable[[RecordError], None]


@dataclass(frozen=True)
class DecoderOptions:
    """Per-run decoder settings."""

    hive_root_name: str = "ROOT"
    hive_max_depth: int = 512
    csv_mapping: Any = None  # decoders.csv_table.CsvMapping
    evtx_max_template_cache: int = 256


class FormatDecoder(ABC):
    """Stateless transformer from artifact bytes to decoded records.

    ``decode`` returns a fresh lazy iterator on every call. Header problems
    raise ContainerError from the iterator; record-level problems are passed
    to ``on_error`` and decoding resumes at the next recoverable boundary.
    """

    kind: ArtifactKind

    def __init__(self, options: DecoderOptions | None = None) -> None:
        self._options = options or DecoderOptions()

    @abstractmethod
    def decode(
        self,
        artifact: ArtifactFile,
        data: ByteSource,
        on_error: ErrorCallback | None = None,
    ) -> Iterator[DecodedRecord]:
        raise NotImplementedError

    @staticmethod
    def _report(on_error: ErrorCallback | None, err: RecordError) -> None:
        if on_error is None:
            logger.warning("Skipped corrupt record: %s", err)
            return
        on_error(err)


DecoderType = type[FormatDecoder]

_DECODER_REGISTRY: dict[ArtifactKind, DecoderType] = {}


def register_decoder(kind: ArtifactKind) -> Callable[[DecoderType], DecoderType]:
    """Register a decoder class for one artifact kind."""

    def _decorator(klass: DecoderType) -> DecoderType:
        if kind in _DECODER_REGISTRY:
            raise KeyError(f"Decoder already registered for '{kind.value}'")
        klass.kind = kind
        _DECODER_REGISTRY[kind] = klass
        return klass

    return _decorator


def registered_kinds() -> list[ArtifactKind]:
    return sorted(_DECODER_REGISTRY, key=lambda k: k.value)


def decoder_for(kind: ArtifactKind, options: DecoderOptions | None = None) -> FormatDecoder:
    """Instantiate the decoder registered for ``kind``."""
    klass = _DECODER_REGISTRY.get(kind)
    if klass is None:
        raise KeyError(f"No decoder registered for kind: {kind.value!r}")
    return klass(options)
