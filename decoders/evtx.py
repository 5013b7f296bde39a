"""Windows XML event log (EVTX) decoder.

Layout:
  file header (4096 byte block, 128 used) -> 64 KiB chunks -> event records

Checks performed before any field is trusted:
  - file header signature, sizes, major version and CRC32 (fatal)
  - chunk signature and header CRC32 (chunk skipped)
  - event records CRC32 (reported; records are still tried one by one)
  - record signature, size bounds and trailing size copy (record skipped,
    decoding resynchronises on the next record signature)
"""

from __future__ import annotations

import logging
import zlib
from collections.abc import Iterator
from datetime import UTC, datetime
from typing import Any

from dateutil import parser as _dtparser

from contracts.artifacts import ArtifactFile, ArtifactKind, DecodedRecord
from contracts.errors import ContainerError, RecordError
from contracts.fingerprints import canonical_json_dumps
from decoders._binary import BoundsError, filetime, u16, u32, u64
from decoders.base import ByteSource, ErrorCallback, FormatDecoder, register_decoder
from decoders.binxml import BinXmlError, BinXmlParser, Element

logger = logging.getLogger(__name__)

FILE_MAGIC = b"ElfFile\x00"
CHUNK_MAGIC = b"ElfChnk\x00"
RECORD_MAGIC = b"\x2a\x2a\x00\x00"

FILE_HEADER_SIZE = 128
HEADER_BLOCK_SIZE = 4096
CHUNK_SIZE = 0x10000
CHUNK_HEADER_SIZE = 512
RECORD_HEADER_SIZE = 24
MIN_RECORD_SIZE = RECORD_HEADER_SIZE + 4


def _as_int(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    try:
        return int(str(value).strip(), 0)
    except ValueError:
        return None


def _as_text(value: Any) -> str | None:
    if value is None:
        return None
    return value if isinstance(value, str) else str(value)


def _as_datetime(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=UTC)
    if isinstance(value, str) and value.strip():
        try:
            parsed = _dtparser.isoparse(value.strip())
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)
    return None


def _event_data(root: Element) -> str | None:
    """JSON text of EventData (Name -> value) or of the UserData payload."""
    event_data = root.child("EventData")
    if event_data is not None:
        named: dict[str, Any] = {}
        unnamed: list[Any] = []
        for item in event_data.children:
            if item.name == "Data" and "Name" in item.attributes:
                named[str(item.attributes["Name"])] = item.text
            elif item.name == "Data":
                unnamed.append(item.text)
            else:
                named[item.name] = item.to_dict()
        if unnamed:
            named["Data"] = unnamed
        return canonical_json_dumps(named)
    user_data = root.child("UserData")
    if user_data is not None and user_data.children:
        payload = user_data.children[0]
        return canonical_json_dumps({payload.name: payload.to_dict()})
    return None


def event_fields(root: Element, record_id: int, written: datetime | None) -> tuple[dict[str, Any], datetime | None]:
    """Map a rendered ``<Event>`` element to event log fields."""
    system = root.child("System") or Element("System")
    provider = system.child("Provider") or Element("Provider")
    execution = system.child("Execution") or Element("Execution")
    security = system.child("Security") or Element("Security")
    created = system.child("TimeCreated") or Element("TimeCreated")

    timestamp = _as_datetime(created.attributes.get("SystemTime")) or written
    event_record_id = _as_int(system.child_text("EventRecordID"))
    fields = {
        "event_record_id": event_record_id if event_record_id is not None else record_id,
        "time_created": timestamp,
        "event_id": _as_int(system.child_text("EventID")),
        "version": _as_int(system.child_text("Version")),
        "level": _as_int(system.child_text("Level")),
        "task": _as_int(system.child_text("Task")),
        "opcode": _as_int(system.child_text("Opcode")),
        "keywords": _as_text(system.child_text("Keywords")),
        "provider_name": _as_text(provider.attributes.get("Name")),
        "provider_guid": _as_text(provider.attributes.get("Guid")),
        "channel": _as_text(system.child_text("Channel")),
        "computer": _as_text(system.child_text("Computer")),
        "process_id": _as_int(execution.attributes.get("ProcessID")),
        "thread_id": _as_int(execution.attributes.get("ThreadID")),
        "user_id": _as_text(security.attributes.get("UserID")),
        "event_data": _event_data(root),
    }
    return fields, timestamp


@register_decoder(ArtifactKind.EVENT_LOG)
class EvtxDecoder(FormatDecoder):
    """Decodes .evtx files chunk by chunk."""

    def decode(
        self,
        artifact: ArtifactFile,
        data: ByteSource,
        on_error: ErrorCallback | None = None,
    ) -> Iterator[DecodedRecord]:
        self._check_file_header(artifact, data)
        seq = 0
        for chunk_offset in range(HEADER_BLOCK_SIZE, len(data), CHUNK_SIZE):
            chunk = bytes(data[chunk_offset : chunk_offset + CHUNK_SIZE])
            for record_id, written, root in self._chunk_events(artifact, chunk, chunk_offset, on_error):
                fields, timestamp = event_fields(root, record_id, written)
                yield DecodedRecord(
                    kind=self.kind,
                    source=artifact.path,
                    sequence=seq,
                    fields=fields,
                    timestamp=timestamp,
                )
                seq += 1

    def _check_file_header(self, artifact: ArtifactFile, data: ByteSource) -> None:
        if len(data) < FILE_HEADER_SIZE:
            raise ContainerError("event log shorter than its file header", source=artifact.path)
        if data[:8] != FILE_MAGIC:
            raise ContainerError("missing ElfFile signature", source=artifact.path, offset=0)
        header_size = u32(data, 32)
        major = u16(data, 38)
        block_size = u16(data, 40)
        if header_size != FILE_HEADER_SIZE or block_size != HEADER_BLOCK_SIZE:
            raise ContainerError(
                f"unexpected header size {header_size} / block size {block_size}", source=artifact.path
            )
        if major != 3:
            raise ContainerError(f"unsupported event log major version {major}", source=artifact.path)
        stored = u32(data, 124)
        computed = zlib.crc32(bytes(data[:120])) & 0xFFFFFFFF
        if stored != computed:
            raise ContainerError(
                f"file header checksum mismatch (stored 0x{stored:08x}, computed 0x{computed:08x})",
                source=artifact.path,
            )

    def _chunk_events(
        self,
        artifact: ArtifactFile,
        chunk: bytes,
        chunk_offset: int,
        on_error: ErrorCallback | None,
    ) -> Iterator[tuple[int, datetime | None, Element]]:
        if chunk[:8] == b"\x00" * 8:
            return
        if len(chunk) < CHUNK_HEADER_SIZE:
            self._report(on_error, RecordError("truncated chunk", source=artifact.path, offset=chunk_offset))
            return
        if chunk[:8] != CHUNK_MAGIC:
            self._report(on_error, RecordError("missing ElfChnk signature", source=artifact.path, offset=chunk_offset))
            return
        stored = u32(chunk, 124)
        computed = zlib.crc32(chunk[0:120] + chunk[128:CHUNK_HEADER_SIZE]) & 0xFFFFFFFF
        if stored != computed:
            self._report(
                on_error,
                RecordError("chunk header checksum mismatch", source=artifact.path, offset=chunk_offset),
            )
            return

        free_space = u32(chunk, 48)
        if CHUNK_HEADER_SIZE <= free_space <= len(chunk):
            limit = free_space
            if zlib.crc32(chunk[CHUNK_HEADER_SIZE:free_space]) & 0xFFFFFFFF != u32(chunk, 52):
                self._report(
                    on_error,
                    RecordError("event records checksum mismatch", source=artifact.path, offset=chunk_offset),
                )
        else:
            limit = len(chunk)
            self._report(
                on_error,
                RecordError(f"free space offset 0x{free_space:x} out of range", source=artifact.path, offset=chunk_offset),
            )

        parser = BinXmlParser(chunk, max_templates=self._options.evtx_max_template_cache)
        offset = CHUNK_HEADER_SIZE
        while offset + MIN_RECORD_SIZE <= limit:
            if chunk[offset : offset + 4] != RECORD_MAGIC:
                self._report(
                    on_error,
                    RecordError("missing record signature", source=artifact.path, offset=chunk_offset + offset),
                )
                nxt = chunk.find(RECORD_MAGIC, offset + 1, limit)
                if nxt < 0:
                    return
                offset = nxt
                continue

            size = u32(chunk, offset + 4)
            if size < MIN_RECORD_SIZE or offset + size > limit or u32(chunk, offset + size - 4) != size:
                self._report(
                    on_error,
                    RecordError(f"inconsistent record size {size}", source=artifact.path, offset=chunk_offset + offset),
                )
                nxt = chunk.find(RECORD_MAGIC, offset + 4, limit)
                if nxt < 0:
                    return
                offset = nxt
                continue

            record_id = u64(chunk, offset + 8)
            written = filetime(u64(chunk, offset + 16))
            try:
                root = parser.parse_record(offset + RECORD_HEADER_SIZE, offset + size - 4)
            except (BinXmlError, BoundsError) as exc:
                self._report(
                    on_error,
                    RecordError(f"record {record_id}: {exc}", source=artifact.path, offset=chunk_offset + offset),
                )
            else:
                yield record_id, written, root
            offset += size
