"""Read-only access to Extensible Storage Engine (ESE / JET Blue) databases.

Only what is needed to enumerate tables and read their records is
implemented: the file header, legacy page headers, page tags, the B-tree walk
and the record format (fixed, variable and tagged columns). Long values
stored in separate trees are not resolved and read back as None.

Page ``n`` lives at ``(n + 1) * page_size``; the file header occupies the
first page slot.
"""

from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass, field
from typing import Any

from decoders._binary import (
    BoundsError,
    check_range,
    f32,
    f64,
    guid,
    i32,
    i64,
    ole_date,
    u8,
    u16,
    u32,
    xor32,
)

ESE_SIGNATURE = 0x89ABCDEF
VALID_PAGE_SIZES = (4096, 8192, 16384, 32768)
FILE_HEADER_CHECKED = 4096
PAGE_HEADER_SIZE = 40
CATALOG_PAGE = 4
MAX_TREE_DEPTH = 32

PAGE_FLAG_ROOT = 0x0001
PAGE_FLAG_LEAF = 0x0002
PAGE_FLAG_PARENT = 0x0004
PAGE_FLAG_EMPTY = 0x0008
PAGE_FLAG_SPACE_TREE = 0x0020
PAGE_FLAG_INDEX = 0x0040
PAGE_FLAG_LONG_VALUE = 0x0080

TAG_FLAG_DEFUNCT = 0x2
TAG_FLAG_COMMON_KEY = 0x4

TAGGED_HAS_FLAGS = 0x4000
TAGGED_OFFSET_MASK = 0x3FFF
TAGGED_COMPRESSED = 0x02
TAGGED_LONG_VALUE = 0x04

VAR_EMPTY = 0x8000

CATALOG_TABLE = 1
CATALOG_COLUMN = 2

# JET_coltyp
COLTYP_BIT = 1
COLTYP_UNSIGNED_BYTE = 2
COLTYP_SHORT = 3
COLTYP_LONG = 4
COLTYP_CURRENCY = 5
COLTYP_IEEE_SINGLE = 6
COLTYP_IEEE_DOUBLE = 7
COLTYP_DATETIME = 8
COLTYP_BINARY = 9
COLTYP_TEXT = 10
COLTYP_LONG_BINARY = 11
COLTYP_LONG_TEXT = 12
COLTYP_UNSIGNED_LONG = 14
COLTYP_LONG_LONG = 15
COLTYP_GUID = 16
COLTYP_UNSIGNED_SHORT = 17

FIXED_SIZES = {
    COLTYP_BIT: 1,
    COLTYP_UNSIGNED_BYTE: 1,
    COLTYP_SHORT: 2,
    COLTYP_LONG: 4,
    COLTYP_CURRENCY: 8,
    COLTYP_IEEE_SINGLE: 4,
    COLTYP_IEEE_DOUBLE: 8,
    COLTYP_DATETIME: 8,
    COLTYP_UNSIGNED_LONG: 4,
    COLTYP_LONG_LONG: 8,
    COLTYP_GUID: 16,
    COLTYP_UNSIGNED_SHORT: 2,
}

CODEPAGE_UNICODE = 1200

# MSysObjects fixed columns 1..7: ObjidTable, Type, Id, ColtypOrPgnoFDP,
# SpaceUsage, Flags, PagesOrLocale. Name is variable column 128.
_CATALOG_FIXED = (4, 2, 4, 4, 4, 4, 4)


class EseError(ValueError):
    """Structural problem inside an ESE database."""


@dataclass(frozen=True)
class EseHeader:
    format_version: int
    format_revision: int
    file_type: int
    page_size: int


@dataclass(frozen=True)
class Column:
    column_id: int
    name: str
    coltyp: int
    size: int
    codepage: int

    @property
    def is_fixed(self) -> bool:
        return self.column_id < 128

    @property
    def is_variable(self) -> bool:
        return 128 <= self.column_id < 256


@dataclass
class Table:
    object_id: int
    name: str
    fdp_page: int
    columns: list[Column] = field(default_factory=list)

    def column_names(self) -> list[str]:
        return [c.name for c in sorted(self.columns, key=lambda c: c.column_id)]


@dataclass(frozen=True)
class _Page:
    number: int
    flags: int
    data: bytes
    tags: tuple[tuple[int, int, int], ...]  # (offset into page, size, tag flags)

    def entry(self, index: int) -> tuple[bytes, int]:
        offset, size, flags = self.tags[index]
        return self.data[offset : offset + size], flags


def read_header(data: Any) -> EseHeader:
    """Validate and parse the database file header. Raises EseError."""
    if len(data) < FILE_HEADER_CHECKED:
        raise EseError("file shorter than its header page")
    if u32(data, 4) != ESE_SIGNATURE:
        raise EseError("missing ESE signature 0x89ABCDEF")
    stored = u32(data, 0)
    computed = xor32(data, 4, FILE_HEADER_CHECKED, ESE_SIGNATURE)
    if stored != computed:
        raise EseError(f"file header checksum mismatch (stored 0x{stored:08x}, computed 0x{computed:08x})")
    page_size = u32(data, 236)
    if page_size not in VALID_PAGE_SIZES:
        raise EseError(f"unsupported page size {page_size}")
    return EseHeader(
        format_version=u32(data, 8),
        format_revision=u32(data, 232),
        file_type=u32(data, 12),
        page_size=page_size,
    )


def page_checksum(page: bytes, number: int) -> int:
    return xor32(page, 4, len(page), number)


class EseDatabase:
    """Catalog and record reader over a random-access byte source."""

    def __init__(self, data: Any) -> None:
        self._data = data
        self.header = read_header(data)
        self.page_size = self.header.page_size
        self._tables: dict[str, Table] | None = None

    @property
    def page_count(self) -> int:
        return len(self._data) // self.page_size - 1

    def page(self, number: int) -> _Page:
        if number < 1 or number > self.page_count:
            raise EseError(f"page {number} outside database of {self.page_count} pages")
        start = (number + 1) * self.page_size
        raw = bytes(self._data[start : start + self.page_size])
        stored = u32(raw, 0)
        computed = page_checksum(raw, number)
        if stored != computed:
            raise EseError(f"page {number} checksum mismatch")
        if u32(raw, 4) != number:
            raise EseError(f"page {number} header records page {u32(raw, 4)}")

        flags = u32(raw, 36)
        tag_count = u16(raw, 34)
        if PAGE_HEADER_SIZE + tag_count * 4 > self.page_size:
            raise EseError(f"page {number} declares {tag_count} tags")
        large = self.page_size > 8192
        mask = 0x7FFF if large else 0x1FFF
        area = raw[PAGE_HEADER_SIZE:]
        tags = []
        for i in range(tag_count):
            pos = self.page_size - 4 * (i + 1)
            size_field = u16(raw, pos)
            offset_field = u16(raw, pos + 2)
            size = size_field & mask
            offset = offset_field & mask
            check_range(area, offset, size, f"page {number} tag {i}")
            if large:
                tag_flags = u16(area, offset) >> 13 if size >= 2 else 0
            else:
                tag_flags = offset_field >> 13
            tags.append((offset, size, tag_flags))
        return _Page(number=number, flags=flags, data=area, tags=tuple(tags))

    def leaf_entries(self, root: int) -> Iterator[bytes]:
        """Yield leaf entry payloads (key stripped) of the B-tree rooted at ``root`` in key order."""
        visited: set[int] = set()
        stack: list[tuple[int, int]] = [(root, 0)]
        while stack:
            number, depth = stack.pop()
            if number in visited:
                raise EseError(f"B-tree loop at page {number}")
            if depth > MAX_TREE_DEPTH:
                raise EseError(f"B-tree deeper than {MAX_TREE_DEPTH} levels")
            visited.add(number)
            page = self.page(number)
            if page.flags & (PAGE_FLAG_SPACE_TREE | PAGE_FLAG_EMPTY):
                continue
            children: list[int] = []
            for index in range(1, len(page.tags)):
                raw, tag_flags = page.entry(index)
                if tag_flags & TAG_FLAG_DEFUNCT:
                    continue
                payload = self._strip_key(raw, tag_flags, large=self.page_size > 8192)
                if page.flags & PAGE_FLAG_LEAF:
                    yield payload
                else:
                    children.append(u32(payload, 0))
            stack.extend((child, depth + 1) for child in reversed(children))

    @staticmethod
    def _strip_key(raw: bytes, tag_flags: int, large: bool) -> bytes:
        pos = 0
        if tag_flags & TAG_FLAG_COMMON_KEY:
            pos += 2
        local_key = u16(raw, pos)
        if large and pos == 0:
            local_key &= 0x1FFF
        pos += 2
        check_range(raw, pos, local_key, "entry key")
        return raw[pos + local_key :]

    def tables(self) -> dict[str, Table]:
        """Tables listed in the MSysObjects catalog, by name."""
        if self._tables is not None:
            return self._tables
        by_id: dict[int, Table] = {}
        pending: list[tuple[int, Column]] = []
        for payload in self.leaf_entries(CATALOG_PAGE):
            fixed, variable = _catalog_record(payload)
            object_id, obj_type, ident, coltyp_or_fdp, space, _flags, locale = fixed
            name = (variable.get(128) or b"").decode("latin-1")
            if obj_type == CATALOG_TABLE:
                by_id[object_id] = Table(object_id=object_id, name=name, fdp_page=coltyp_or_fdp)
            elif obj_type == CATALOG_COLUMN:
                pending.append(
                    (object_id, Column(column_id=ident, name=name, coltyp=coltyp_or_fdp, size=space, codepage=locale))
                )
        for object_id, column in pending:
            table = by_id.get(object_id)
            if table is not None:
                table.columns.append(column)
        self._tables = {t.name: t for t in by_id.values()}
        return self._tables

    def records(self, table: Table) -> Iterator[dict[str, Any]]:
        """Yield one ``{column name: value}`` dict per record, columns in id order."""
        columns = sorted(table.columns, key=lambda c: c.column_id)
        for payload in self.leaf_entries(table.fdp_page):
            yield decode_record(payload, columns)


def _catalog_record(payload: bytes) -> tuple[list[int], dict[int, bytes]]:
    last_fixed = u8(payload, 0)
    if last_fixed < len(_CATALOG_FIXED):
        raise EseError(f"catalog record has only {last_fixed} fixed columns")
    fixed = []
    pos = 4
    for size in _CATALOG_FIXED:
        fixed.append(u16(payload, pos) if size == 2 else u32(payload, pos))
        pos += size
    return fixed, _variable_columns(payload)


def _variable_columns(payload: bytes) -> dict[int, bytes | None]:
    last_variable = u8(payload, 1)
    var_offset = u16(payload, 2)
    count = max(0, last_variable - 127)
    check_range(payload, var_offset, count * 2, "variable column offsets")
    data_start = var_offset + count * 2
    out: dict[int, bytes | None] = {}
    previous = 0
    for i in range(count):
        end_field = u16(payload, var_offset + i * 2)
        end = end_field & 0x7FFF
        if end_field & VAR_EMPTY:
            out[128 + i] = None
            continue
        if end < previous:
            raise BoundsError(f"variable column {128 + i} ends before it starts")
        check_range(payload, data_start + previous, end - previous, f"variable column {128 + i}")
        out[128 + i] = payload[data_start + previous : data_start + end]
        previous = end
    return out


def _variable_end(payload: bytes) -> int:
    last_variable = u8(payload, 1)
    var_offset = u16(payload, 2)
    count = max(0, last_variable - 127)
    end = 0
    for i in range(count):
        end_field = u16(payload, var_offset + i * 2)
        if not end_field & VAR_EMPTY:
            end = end_field & 0x7FFF
    return var_offset + count * 2 + end


def _tagged_columns(payload: bytes, start: int) -> dict[int, bytes | None]:
    area = payload[start:]
    if len(area) < 4:
        return {}
    count = (u16(area, 2) & TAGGED_OFFSET_MASK) // 4
    entries = [(u16(area, i * 4), u16(area, i * 4 + 2)) for i in range(count)]
    out: dict[int, bytes | None] = {}
    for i, (column_id, offset_field) in enumerate(entries):
        begin = offset_field & TAGGED_OFFSET_MASK
        end = entries[i + 1][1] & TAGGED_OFFSET_MASK if i + 1 < count else len(area)
        if end < begin:
            raise BoundsError(f"tagged column {column_id} ends before it starts")
        check_range(area, begin, end - begin, f"tagged column {column_id}")
        value = area[begin:end]
        if offset_field & TAGGED_HAS_FLAGS and value:
            flags = value[0]
            value = None if flags & (TAGGED_COMPRESSED | TAGGED_LONG_VALUE) else value[1:]
        out[column_id] = value
    return out


def decode_record(payload: bytes, columns: list[Column]) -> dict[str, Any]:
    last_fixed = u8(payload, 0)
    var_offset = u16(payload, 2)
    row: dict[str, Any] = {}

    fixed_cols = [c for c in columns if c.is_fixed]
    pos = 4
    bitmap_start = 4 + sum(_fixed_size(c) for c in fixed_cols if c.column_id <= last_fixed)
    for col in fixed_cols:
        if col.column_id > last_fixed:
            row[col.name] = None
            continue
        size = _fixed_size(col)
        bit = col.column_id - 1
        is_null = u8(payload, bitmap_start + bit // 8) & (1 << (bit % 8))
        row[col.name] = None if is_null else convert_value(col, payload[pos : pos + size])
        pos += size
    if pos > var_offset:
        raise BoundsError("fixed columns overlap variable column offsets")

    variable = _variable_columns(payload)
    tagged = _tagged_columns(payload, _variable_end(payload))
    for col in columns:
        if col.is_fixed:
            continue
        raw = variable.get(col.column_id) if col.is_variable else tagged.get(col.column_id)
        row[col.name] = None if raw is None else convert_value(col, raw)
    return row


def _fixed_size(col: Column) -> int:
    return FIXED_SIZES.get(col.coltyp, col.size)


def convert_value(col: Column, raw: bytes) -> Any:
    """Column bytes to a Python value according to JET_coltyp."""
    t = col.coltyp
    if t == COLTYP_BIT:
        return u8(raw, 0) != 0
    if t == COLTYP_UNSIGNED_BYTE:
        return u8(raw, 0)
    if t == COLTYP_SHORT:
        return int.from_bytes(raw[:2], "little", signed=True) if len(raw) >= 2 else None
    if t == COLTYP_LONG:
        return i32(raw, 0)
    if t in (COLTYP_CURRENCY, COLTYP_LONG_LONG):
        return i64(raw, 0)
    if t == COLTYP_IEEE_SINGLE:
        return f32(raw, 0)
    if t == COLTYP_IEEE_DOUBLE:
        return f64(raw, 0)
    if t == COLTYP_DATETIME:
        return ole_date(f64(raw, 0))
    if t == COLTYP_UNSIGNED_LONG:
        return u32(raw, 0)
    if t == COLTYP_UNSIGNED_SHORT:
        return u16(raw, 0)
    if t == COLTYP_GUID:
        return guid(raw[:16])
    if t in (COLTYP_TEXT, COLTYP_LONG_TEXT):
        if col.codepage == CODEPAGE_UNICODE:
            return bytes(raw).decode("utf-16-le", errors="replace").rstrip("\x00")
        return bytes(raw).decode("latin-1").rstrip("\x00")
    return bytes(raw)
