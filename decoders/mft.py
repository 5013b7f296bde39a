"""NTFS master file table ($MFT) decoder.

Reads $MFT as a table of fixed-size FILE records. The record size comes from
record 0's allocated-size field and must be 1024 or 4096. Each record gets
its update sequence array fixup checked and applied before the attribute walk.
Records whose in-use flag is clear are still emitted (deleted entries).
"""

from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from contracts.artifacts import ArtifactFile, ArtifactKind, DecodedRecord
from contracts.errors import ContainerError, RecordError
from decoders._binary import BoundsError, filetime, u8, u16, u32, u64, utf16
from decoders.base import ByteSource, ErrorCallback, FormatDecoder, register_decoder

SIGNATURE_FILE = b"FILE"
SIGNATURE_BAAD = b"BAAD"
VALID_RECORD_SIZES = (1024, 4096)
SECTOR_SIZE = 512

ATTR_STANDARD_INFO = 0x10
ATTR_FILE_NAME = 0x30
ATTR_DATA = 0x80
ATTR_END = 0xFFFFFFFF

FR_IN_USE = 0x01
FR_IS_DIRECTORY = 0x02

NAMESPACES = {0: "posix", 1: "win32", 2: "dos", 3: "win32_dos"}
# Preferred $FILE_NAME namespaces, best first (DOS 8.3 names last).
_NAMESPACE_RANK = {1: 0, 3: 1, 0: 2, 2: 3}


@dataclass
class _Times:
    created: datetime | None = None
    modified: datetime | None = None
    mft_modified: datetime | None = None
    accessed: datetime | None = None


@dataclass
class _FileName:
    parent_record: int
    parent_sequence: int
    times: _Times
    allocated_size: int
    real_size: int
    namespace: int
    name: str


@dataclass
class _Record:
    standard_times: _Times | None = None
    file_attributes: int | None = None
    names: list[_FileName] = field(default_factory=list)
    data_size: int | None = None
    data_allocated: int | None = None


def _times(buf: bytes, offset: int) -> _Times:
    return _Times(
        created=filetime(u64(buf, offset)),
        modified=filetime(u64(buf, offset + 8)),
        mft_modified=filetime(u64(buf, offset + 16)),
        accessed=filetime(u64(buf, offset + 24)),
    )


def apply_fixup(record: bytearray) -> None:
    """Validate and apply the update sequence array in place.

    Raises BoundsError when the array does not fit the record and ValueError
    when a sector trailer does not carry the update sequence number (torn write).
    """
    usa_offset = u16(record, 4)
    usa_count = u16(record, 6)
    if usa_count < 1 or usa_offset < 0x28:
        raise ValueError(f"invalid update sequence array (offset {usa_offset}, count {usa_count})")
    if (usa_count - 1) * SECTOR_SIZE > len(record) or usa_offset + 2 * usa_count > len(record):
        raise BoundsError("update sequence array does not fit the record")
    usn = u16(record, usa_offset)
    for i in range(1, usa_count):
        pos = i * SECTOR_SIZE - 2
        if u16(record, pos) != usn:
            raise ValueError(f"sector {i} trailer does not match update sequence number")
        replacement = record[usa_offset + 2 * i : usa_offset + 2 * i + 2]
        record[pos : pos + 2] = replacement


def _walk_attributes(buf: bytes, first: int) -> _Record:
    rec = _Record()
    offset = first
    while offset + 8 <= len(buf):
        type_code = u32(buf, offset)
        if type_code == ATTR_END:
            break
        length = u32(buf, offset + 4)
        if length < 0x18 or length % 8 or offset + length > len(buf):
            raise BoundsError(f"attribute 0x{type_code:x} has invalid length {length}")
        non_resident = u8(buf, offset + 8) != 0
        name_len = u8(buf, offset + 9)
        if type_code == ATTR_DATA and name_len == 0:
            # Unnamed data stream only; alternate streams do not size the file.
            if non_resident:
                rec.data_allocated = u64(buf, offset + 0x28)
                rec.data_size = u64(buf, offset + 0x30)
            else:
                rec.data_size = u32(buf, offset + 0x10)
                rec.data_allocated = rec.data_size
        elif not non_resident and type_code in (ATTR_STANDARD_INFO, ATTR_FILE_NAME):
            content_size = u32(buf, offset + 0x10)
            content = offset + u16(buf, offset + 0x14)
            if content + content_size > offset + length:
                raise BoundsError(f"attribute 0x{type_code:x} content passes attribute end")
            if type_code == ATTR_STANDARD_INFO and content_size >= 0x24:
                rec.standard_times = _times(buf, content)
                rec.file_attributes = u32(buf, content + 0x20)
            elif type_code == ATTR_FILE_NAME and content_size >= 0x42:
                name_chars = u8(buf, content + 0x40)
                if 0x42 + name_chars * 2 > content_size:
                    raise BoundsError("file name longer than its attribute")
                parent = u64(buf, content)
                rec.names.append(
                    _FileName(
                        parent_record=parent & 0xFFFFFFFFFFFF,
                        parent_sequence=parent >> 48,
                        times=_times(buf, content + 8),
                        allocated_size=u64(buf, content + 0x28),
                        real_size=u64(buf, content + 0x30),
                        namespace=u8(buf, content + 0x41),
                        name=utf16(buf[content + 0x42 : content + 0x42 + name_chars * 2]),
                    )
                )
        offset += length
    return rec


@register_decoder(ArtifactKind.FILESYSTEM_METADATA)
class MftDecoder(FormatDecoder):
    """Decodes an extracted $MFT file record by record."""

    def decode(
        self,
        artifact: ArtifactFile,
        data: ByteSource,
        on_error: ErrorCallback | None = None,
    ) -> Iterator[DecodedRecord]:
        record_size = self._record_size(artifact, data)
        count, tail = divmod(len(data), record_size)
        seq = 0
        for index in range(count):
            offset = index * record_size
            raw = data[offset : offset + record_size]
            if not any(raw):
                continue
            try:
                fields = self._parse(raw, index)
            except (BoundsError, ValueError) as exc:
                self._report(on_error, RecordError(f"record {index}: {exc}", source=artifact.path, offset=offset))
                continue
            yield DecodedRecord(
                kind=self.kind,
                source=artifact.path,
                sequence=seq,
                fields=fields,
                timestamp=fields["si_modified"] or fields["fn_modified"],
            )
            seq += 1
        if tail:
            self._report(
                on_error,
                RecordError(f"trailing {tail} bytes do not form a full record", source=artifact.path, offset=count * record_size),
            )

    def _record_size(self, artifact: ArtifactFile, data: ByteSource) -> int:
        if len(data) < VALID_RECORD_SIZES[0]:
            raise ContainerError("file shorter than one MFT record", source=artifact.path)
        if data[:4] != SIGNATURE_FILE:
            raise ContainerError("record 0 lacks FILE signature", source=artifact.path, offset=0)
        size = u32(data, 0x1C)
        if size not in VALID_RECORD_SIZES:
            raise ContainerError(f"unsupported MFT record size {size}", source=artifact.path, offset=0x1C)
        return size

    def _parse(self, raw: bytes, index: int) -> dict[str, Any]:
        signature = raw[:4]
        if signature == SIGNATURE_BAAD:
            raise ValueError("record marked BAAD by chkdsk")
        if signature != SIGNATURE_FILE:
            raise ValueError(f"invalid signature {bytes(signature)!r}")

        buf = bytearray(raw)
        apply_fixup(buf)
        first_attr = u16(buf, 0x14)
        used = u32(buf, 0x18)
        if first_attr < 0x2A or first_attr >= len(buf) or used > len(buf):
            raise BoundsError(f"header offsets out of range (first attribute 0x{first_attr:x}, used {used})")
        flags = u16(buf, 0x16)
        rec = _walk_attributes(bytes(buf[:used]) if used else bytes(buf), first_attr)

        primary = min(rec.names, key=lambda n: _NAMESPACE_RANK.get(n.namespace, 9)) if rec.names else None
        si = rec.standard_times or _Times()
        fn = primary.times if primary else _Times()
        logical = rec.data_size if rec.data_size is not None else (primary.real_size if primary else None)
        allocated = rec.data_allocated if rec.data_allocated is not None else (primary.allocated_size if primary else None)
        return {
            "record_number": index,
            "sequence_number": u16(buf, 0x10),
            "in_use": bool(flags & FR_IN_USE),
            "is_directory": bool(flags & FR_IS_DIRECTORY),
            "parent_record": primary.parent_record if primary else None,
            "parent_sequence": primary.parent_sequence if primary else None,
            "file_name": primary.name if primary else None,
            "name_namespace": NAMESPACES.get(primary.namespace) if primary else None,
            "si_created": si.created,
            "si_modified": si.modified,
            "si_mft_modified": si.mft_modified,
            "si_accessed": si.accessed,
            "fn_created": fn.created,
            "fn_modified": fn.modified,
            "fn_mft_modified": fn.mft_modified,
            "fn_accessed": fn.accessed,
            "file_attributes": rec.file_attributes,
            "logical_size": logical,
            "allocated_size": allocated,
            "hard_links": u16(buf, 0x12),
        }
