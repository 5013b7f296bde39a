"""Bounds-checked little-endian readers and Windows time/identifier helpers.

Every offset handed to these helpers comes from untrusted artifact bytes, so
each read validates its range first and raises BoundsError instead of letting
struct or slicing fail (or silently return short data).
"""

from __future__ import annotations

import struct
import uuid
from datetime import UTC, datetime, timedelta

_U8 = struct.Struct("<B")
_U16 = struct.Struct("<H")
_U32 = struct.Struct("<I")
_I32 = struct.Struct("<i")
_U64 = struct.Struct("<Q")
_I64 = struct.Struct("<q")
_F32 = struct.Struct("<f")
_F64 = struct.Struct("<d")

FILETIME_EPOCH = datetime(1601, 1, 1, tzinfo=UTC)
OLE_EPOCH = datetime(1899, 12, 30, tzinfo=UTC)

# FILETIME values above this are not representable as datetime (year 9999).
_FILETIME_MAX = 2650467743999999999


class BoundsError(ValueError):
    """Raised when a read would leave the buffer."""


def check_range(buf: bytes, offset: int, size: int, what: str = "field") -> None:
    if offset < 0 or size < 0 or offset + size > len(buf):
        raise BoundsError(f"{what} at 0x{offset:x} (+{size}) outside buffer of {len(buf)} bytes")


def _unpack(st: struct.Struct, buf: bytes, offset: int) -> int:
    check_range(buf, offset, st.size)
    return st.unpack_from(buf, offset)[0]


def u8(buf: bytes, offset: int) -> int:
    return _unpack(_U8, buf, offset)


def u16(buf: bytes, offset: int) -> int:
    return _unpack(_U16, buf, offset)


def u32(buf: bytes, offset: int) -> int:
    return _unpack(_U32, buf, offset)


def i32(buf: bytes, offset: int) -> int:
    return _unpack(_I32, buf, offset)


def u64(buf: bytes, offset: int) -> int:
    return _unpack(_U64, buf, offset)


def i64(buf: bytes, offset: int) -> int:
    return _unpack(_I64, buf, offset)


def f32(buf: bytes, offset: int) -> float:
    return _unpack(_F32, buf, offset)


def f64(buf: bytes, offset: int) -> float:
    return _unpack(_F64, buf, offset)


def read_bytes(buf: bytes, offset: int, size: int, what: str = "data") -> bytes:
    check_range(buf, offset, size, what)
    return bytes(buf[offset : offset + size])


def utf16(raw: bytes) -> str:
    """Decode UTF-16LE text, dropping everything from the first NUL."""
    text = bytes(raw).decode("utf-16-le", errors="replace")
    cut = text.find("\x00")
    return text if cut < 0 else text[:cut]


def filetime(ticks: int) -> datetime | None:
    """FILETIME (100ns since 1601-01-01 UTC) to datetime; None when unset or out of range."""
    if ticks <= 0 or ticks > _FILETIME_MAX:
        return None
    return FILETIME_EPOCH + timedelta(microseconds=ticks // 10)


def ole_date(days: float) -> datetime | None:
    """OLE automation date (days since 1899-12-30) to datetime."""
    if days != days or days in (float("inf"), float("-inf")):
        return None
    try:
        return OLE_EPOCH + timedelta(days=days)
    except OverflowError:
        return None


def systemtime(raw: bytes) -> datetime | None:
    """SYSTEMTIME structure (8 little-endian u16) to datetime."""
    if len(raw) < 16:
        return None
    year, month, _dow, day, hour, minute, second, millis = struct.unpack_from("<8H", raw, 0)
    try:
        return datetime(year, month, day, hour, minute, second, millis * 1000, tzinfo=UTC)
    except ValueError:
        return None


def guid(raw: bytes) -> str:
    """Mixed-endian GUID bytes to the registry-style ``{XXXXXXXX-...}`` form."""
    if len(raw) != 16:
        raise BoundsError(f"GUID needs 16 bytes, got {len(raw)}")
    return "{" + str(uuid.UUID(bytes_le=bytes(raw))).upper() + "}"


def sid(raw: bytes) -> str:
    """Binary security identifier to its ``S-1-...`` string form."""
    if len(raw) < 8:
        raise BoundsError(f"SID needs at least 8 bytes, got {len(raw)}")
    revision = raw[0]
    count = raw[1]
    if len(raw) < 8 + 4 * count:
        raise BoundsError(f"SID declares {count} sub-authorities but has {len(raw)} bytes")
    authority = int.from_bytes(raw[2:8], "big")
    subs = struct.unpack_from(f"<{count}I", raw, 8)
    return "-".join(["S", str(revision), str(authority), *(str(s) for s in subs)])


def xor32(buf: bytes, start: int, end: int, seed: int = 0) -> int:
    """XOR of consecutive little-endian u32 words in ``buf[start:end]``."""
    check_range(buf, start, end - start, "checksum range")
    acc = seed
    for (word,) in struct.iter_unpack("<I", bytes(buf[start : end - ((end - start) % 4)])):
        acc ^= word
    return acc & 0xFFFFFFFF
