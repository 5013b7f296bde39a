"""Windows registry hive (regf) decoder.

Emits one record per key and one per value, walking the key tree from the
root key recorded in the base block. Key paths are prefixed with the
configured root name (``ROOT\\Software\\...``); the root key itself is not
emitted.

Validation:
  - base block signature, major version, XOR checksum and root cell offset (fatal)
  - hive bin headers (bad bins are reported once and their cells become unreachable)
  - every cell offset must land inside a valid bin and every cell must be allocated
  - the key walk is bounded in depth and never visits a key cell twice
"""

from __future__ import annotations

import base64
from collections.abc import Iterator
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from contracts.artifacts import ArtifactFile, ArtifactKind, DecodedRecord
from contracts.errors import ContainerError, RecordError
from decoders._binary import BoundsError, check_range, filetime, i32, u16, u32, utf16, xor32
from decoders.base import ByteSource, ErrorCallback, FormatDecoder, register_decoder

BASE_BLOCK_SIZE = 4096
HBIN_HEADER_SIZE = 32
BIG_DATA_SEGMENT = 16344
KEY_NAME_ASCII = 0x0020
VALUE_NAME_ASCII = 0x0001
INLINE_DATA = 0x80000000
DEFAULT_VALUE_NAME = "Default"

VALUE_TYPES = {
    0: "REG_NONE",
    1: "REG_SZ",
    2: "REG_EXPAND_SZ",
    3: "REG_BINARY",
    4: "REG_DWORD",
    5: "REG_DWORD_BIG_ENDIAN",
    6: "REG_LINK",
    7: "REG_MULTI_SZ",
    8: "REG_RESOURCE_LIST",
    9: "REG_FULL_RESOURCE_DESCRIPTOR",
    10: "REG_RESOURCE_REQUIREMENTS_LIST",
    11: "REG_QWORD",
}


def _b64(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def render_value(value_type: int, raw: bytes) -> str:
    """String rendering of registry value data."""
    if value_type in (1, 2, 6):
        return utf16(raw)
    if value_type == 7:
        return "".join(s for s in bytes(raw).decode("utf-16-le", errors="replace").split("\x00"))
    if value_type == 4 and len(raw) >= 4:
        return str(int.from_bytes(raw[:4], "little"))
    if value_type == 5 and len(raw) >= 4:
        return str(int.from_bytes(raw[:4], "big"))
    if value_type == 11 and len(raw) >= 8:
        return str(int.from_bytes(raw[:8], "little"))
    return _b64(raw)


def base_block_checksum(block: bytes) -> int:
    checksum = xor32(block, 0, 508)
    if checksum == 0xFFFFFFFF:
        return 0xFFFFFFFE
    if checksum == 0:
        return 1
    return checksum


@dataclass(frozen=True)
class _Key:
    name: str
    last_written: datetime | None
    subkey_count: int
    subkey_list: int
    value_count: int
    value_list: int
    class_offset: int
    class_length: int


class _Hive:
    """Cell access over the hive bins area."""

    def __init__(self, data: ByteSource, bins_end: int, minor: int) -> None:
        self.data = data
        self.bins_end = bins_end
        self.minor = minor
        self.bins: list[tuple[int, int]] = []
        self.bad_bins: list[tuple[int, str]] = []
        self._scan_bins()

    def _scan_bins(self) -> None:
        offset = BASE_BLOCK_SIZE
        while offset + HBIN_HEADER_SIZE <= self.bins_end:
            if self.data[offset : offset + 4] != b"hbin":
                self.bad_bins.append((offset, "missing hbin signature"))
                offset += 4096
                continue
            size = u32(self.data, offset + 8)
            relative = u32(self.data, offset + 4)
            if size < 4096 or size % 4096 or offset + size > self.bins_end:
                self.bad_bins.append((offset, f"invalid hbin size {size}"))
                offset += 4096
                continue
            if relative != offset - BASE_BLOCK_SIZE:
                self.bad_bins.append((offset, f"hbin offset field 0x{relative:x} does not match position"))
            else:
                self.bins.append((offset + HBIN_HEADER_SIZE, offset + size))
            offset += size

    def cell(self, relative: int) -> bytes:
        """Payload of the allocated cell at ``relative`` (hive-bins relative offset)."""
        absolute = BASE_BLOCK_SIZE + relative
        for start, end in self.bins:
            if start <= absolute < end:
                break
        else:
            raise BoundsError(f"cell 0x{relative:x} is not inside a valid hive bin")
        raw_size = i32(self.data, absolute)
        if raw_size >= 0:
            raise BoundsError(f"cell 0x{relative:x} is not allocated")
        size = -raw_size
        if size < 8 or absolute + size > end:
            raise BoundsError(f"cell 0x{relative:x} size {size} crosses its hive bin")
        return bytes(self.data[absolute + 4 : absolute + size])

    def key(self, relative: int) -> _Key:
        cell = self.cell(relative)
        if cell[:2] != b"nk":
            raise BoundsError(f"cell 0x{relative:x} is not a key node")
        flags = u16(cell, 2)
        name_len = u16(cell, 72)
        check_range(cell, 76, name_len, "key name")
        raw_name = cell[76 : 76 + name_len]
        name = raw_name.decode("latin-1") if flags & KEY_NAME_ASCII else utf16(raw_name)
        return _Key(
            name=name,
            last_written=filetime(int.from_bytes(cell[4:12], "little")),
            subkey_count=u32(cell, 20),
            subkey_list=u32(cell, 28),
            value_count=u32(cell, 36),
            value_list=u32(cell, 40),
            class_offset=u32(cell, 48),
            class_length=u16(cell, 74),
        )

    def class_name(self, key: _Key) -> str | None:
        if key.class_offset == 0xFFFFFFFF or key.class_length == 0:
            return None
        cell = self.cell(key.class_offset)
        check_range(cell, 0, key.class_length, "class name")
        return utf16(cell[: key.class_length])

    def subkeys(self, list_offset: int, depth: int = 0) -> list[int]:
        if depth > 2:
            raise BoundsError("nested subkey index lists")
        cell = self.cell(list_offset)
        sig = cell[:2]
        count = u16(cell, 2)
        if sig in (b"lf", b"lh"):
            check_range(cell, 4, count * 8, "subkey list")
            return [u32(cell, 4 + i * 8) for i in range(count)]
        if sig == b"li":
            check_range(cell, 4, count * 4, "subkey list")
            return [u32(cell, 4 + i * 4) for i in range(count)]
        if sig == b"ri":
            check_range(cell, 4, count * 4, "subkey index root")
            out: list[int] = []
            for i in range(count):
                out.extend(self.subkeys(u32(cell, 4 + i * 4), depth + 1))
            return out
        raise BoundsError(f"unknown subkey list signature {sig!r}")

    def values(self, key: _Key) -> list[int]:
        if key.value_count == 0 or key.value_list == 0xFFFFFFFF:
            return []
        cell = self.cell(key.value_list)
        check_range(cell, 0, key.value_count * 4, "value list")
        return [u32(cell, i * 4) for i in range(key.value_count)]

    def value(self, relative: int) -> tuple[str, int, bytes]:
        cell = self.cell(relative)
        if cell[:2] != b"vk":
            raise BoundsError(f"cell 0x{relative:x} is not a value key")
        name_len = u16(cell, 2)
        data_size = u32(cell, 4)
        data_offset = u32(cell, 8)
        value_type = u32(cell, 12)
        flags = u16(cell, 16)
        check_range(cell, 20, name_len, "value name")
        raw_name = cell[20 : 20 + name_len]
        name = raw_name.decode("latin-1") if flags & VALUE_NAME_ASCII else utf16(raw_name)

        if data_size & INLINE_DATA:
            size = data_size & ~INLINE_DATA
            if size > 4:
                raise BoundsError(f"inline value data of {size} bytes")
            return name, value_type, cell[8 : 8 + size]
        if data_size == 0:
            return name, value_type, b""
        data_cell = self.cell(data_offset)
        if data_size > BIG_DATA_SEGMENT and self.minor >= 4 and data_cell[:2] == b"db":
            return name, value_type, self._big_data(data_cell, data_size)
        check_range(data_cell, 0, data_size, "value data")
        return name, value_type, data_cell[:data_size]

    def _big_data(self, cell: bytes, size: int) -> bytes:
        segments = u16(cell, 2)
        segment_list = self.cell(u32(cell, 4))
        check_range(segment_list, 0, segments * 4, "big data segment list")
        out = bytearray()
        for i in range(segments):
            segment = self.cell(u32(segment_list, i * 4))
            out += segment[: min(BIG_DATA_SEGMENT, size - len(out))]
            if len(out) >= size:
                break
        if len(out) < size:
            raise BoundsError(f"big data holds {len(out)} of {size} bytes")
        return bytes(out)


@register_decoder(ArtifactKind.REGISTRY_HIVE)
class RegistryHiveDecoder(FormatDecoder):
    """Decodes offline registry hives (SYSTEM, SOFTWARE, NTUSER.DAT, ...)."""

    def decode(
        self,
        artifact: ArtifactFile,
        data: ByteSource,
        on_error: ErrorCallback | None = None,
    ) -> Iterator[DecodedRecord]:
        hive, root = self._open(artifact, data)
        for offset, reason in hive.bad_bins:
            self._report(on_error, RecordError(reason, source=artifact.path, offset=offset))

        root_name = self._options.hive_root_name
        max_depth = self._options.hive_max_depth
        visited = {root}
        seq = 0
        try:
            root_key = hive.key(root)
            stack = [(offset, root_name, 1) for offset in reversed(self._children(hive, root_key, artifact, on_error))]
        except BoundsError as exc:
            raise ContainerError(f"root key unreadable: {exc}", source=artifact.path) from exc

        while stack:
            offset, parent_path, depth = stack.pop()
            if offset in visited:
                self._report(on_error, RecordError("key cycle detected", source=artifact.path, offset=offset))
                continue
            visited.add(offset)
            try:
                key = hive.key(offset)
                class_name = hive.class_name(key)
            except BoundsError as exc:
                self._report(on_error, RecordError(f"key: {exc}", source=artifact.path, offset=offset))
                continue

            path = f"{parent_path}\\{key.name}"
            yield self._record(artifact, seq, path, "key", class_name, key.last_written)
            seq += 1

            for value_record in self._values(hive, key, path, class_name, artifact, on_error):
                yield DecodedRecord(
                    kind=self.kind,
                    source=artifact.path,
                    sequence=seq,
                    fields=value_record,
                    timestamp=key.last_written,
                )
                seq += 1

            if depth >= max_depth:
                self._report(on_error, RecordError(f"key depth limit reached at {path}", source=artifact.path))
                continue
            children = self._children(hive, key, artifact, on_error)
            stack.extend((child, path, depth + 1) for child in reversed(children))

    def _open(self, artifact: ArtifactFile, data: ByteSource) -> tuple[_Hive, int]:
        if len(data) < BASE_BLOCK_SIZE:
            raise ContainerError("hive shorter than its base block", source=artifact.path)
        if data[:4] != b"regf":
            raise ContainerError("missing regf signature", source=artifact.path, offset=0)
        major = u32(data, 20)
        minor = u32(data, 24)
        if major != 1:
            raise ContainerError(f"unsupported hive major version {major}", source=artifact.path)
        stored = u32(data, 508)
        computed = base_block_checksum(bytes(data[:512]))
        if stored != computed:
            raise ContainerError(
                f"base block checksum mismatch (stored 0x{stored:08x}, computed 0x{computed:08x})",
                source=artifact.path,
            )
        root = u32(data, 36)
        bins_size = u32(data, 40)
        bins_end = min(BASE_BLOCK_SIZE + bins_size, len(data))
        if BASE_BLOCK_SIZE + root + 4 > bins_end:
            raise ContainerError(f"root cell offset 0x{root:x} outside hive bins", source=artifact.path)
        return _Hive(data, bins_end, minor), root

    def _children(
        self, hive: _Hive, key: _Key, artifact: ArtifactFile, on_error: ErrorCallback | None
    ) -> list[int]:
        if key.subkey_count == 0 or key.subkey_list == 0xFFFFFFFF:
            return []
        try:
            return hive.subkeys(key.subkey_list)
        except BoundsError as exc:
            self._report(on_error, RecordError(f"subkeys of {key.name}: {exc}", source=artifact.path))
            return []

    def _values(
        self,
        hive: _Hive,
        key: _Key,
        path: str,
        class_name: str | None,
        artifact: ArtifactFile,
        on_error: ErrorCallback | None,
    ) -> Iterator[dict[str, Any]]:
        try:
            offsets = hive.values(key)
        except BoundsError as exc:
            self._report(on_error, RecordError(f"value list of {path}: {exc}", source=artifact.path))
            return
        for offset in offsets:
            try:
                name, value_type, raw = hive.value(offset)
            except BoundsError as exc:
                self._report(on_error, RecordError(f"value of {path}: {exc}", source=artifact.path, offset=offset))
                continue
            name = name or DEFAULT_VALUE_NAME
            yield {
                "path": f"{path}\\{name}",
                "entry_type": "value",
                "class_name": class_name,
                "last_written": key.last_written,
                "value_name": name,
                "value_type": VALUE_TYPES.get(value_type, f"REG_UNKNOWN_{value_type}"),
                "value": render_value(value_type, raw),
            }

    def _record(
        self,
        artifact: ArtifactFile,
        seq: int,
        path: str,
        entry_type: str,
        class_name: str | None,
        last_written: datetime | None,
    ) -> DecodedRecord:
        return DecodedRecord(
            kind=self.kind,
            source=artifact.path,
            sequence=seq,
            fields={
                "path": path,
                "entry_type": entry_type,
                "class_name": class_name,
                "last_written": last_written,
                "value_name": None,
                "value_type": None,
                "value": None,
            },
            timestamp=last_written,
        )
