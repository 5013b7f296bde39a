"""Binary XML reader for event log chunks.

Binary XML fragments reference names and template definitions by offset
inside their 64 KiB chunk, so one :class:`BinXmlParser` is created per chunk
and keeps a per-chunk cache of names and parsed template definitions.

Templates are parsed once into a tree holding substitution placeholders and
rendered per record with that record's substitution values.
"""

from __future__ import annotations

import struct
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

from decoders._binary import (
    BoundsError,
    check_range,
    filetime,
    guid,
    sid,
    systemtime,
    u16,
    u32,
    utf16,
)

# Token values (low nibble; 0x40 marks "has more data")
TOKEN_EOF = 0x00
TOKEN_OPEN_START = 0x01
TOKEN_CLOSE_START = 0x02
TOKEN_CLOSE_EMPTY = 0x03
TOKEN_END_ELEMENT = 0x04
TOKEN_VALUE = 0x05
TOKEN_ATTRIBUTE = 0x06
TOKEN_CDATA = 0x07
TOKEN_CHAR_REF = 0x08
TOKEN_ENTITY_REF = 0x09
TOKEN_PI_TARGET = 0x0A
TOKEN_PI_DATA = 0x0B
TOKEN_TEMPLATE_INSTANCE = 0x0C
TOKEN_NORMAL_SUBST = 0x0D
TOKEN_OPTIONAL_SUBST = 0x0E
TOKEN_FRAGMENT_HEADER = 0x0F

_VALUE_TOKENS = frozenset(
    {TOKEN_VALUE, TOKEN_CDATA, TOKEN_CHAR_REF, TOKEN_ENTITY_REF, TOKEN_NORMAL_SUBST, TOKEN_OPTIONAL_SUBST}
)

# Value types
VT_NULL = 0x00
VT_WSTRING = 0x01
VT_STRING = 0x02
VT_BINARY = 0x0E
VT_GUID = 0x0F
VT_SIZE_T = 0x10
VT_FILETIME = 0x11
VT_SYSTEMTIME = 0x12
VT_SID = 0x13
VT_HEX32 = 0x14
VT_HEX64 = 0x15
VT_BINXML = 0x21
VT_ARRAY = 0x80

_FIXED_FORMATS: dict[int, str] = {
    0x03: "<b",
    0x04: "<B",
    0x05: "<h",
    0x06: "<H",
    0x07: "<i",
    0x08: "<I",
    0x09: "<q",
    0x0A: "<Q",
    0x0B: "<f",
    0x0C: "<d",
    0x0D: "<I",
    VT_FILETIME: "<Q",
    VT_HEX32: "<I",
    VT_HEX64: "<Q",
}

_ENTITIES = {"amp": "&", "lt": "<", "gt": ">", "quot": '"', "apos": "'"}


class BinXmlError(ValueError):
    """Raised when a Binary XML stream is malformed."""


@dataclass
class Element:
    """Rendered XML element."""

    name: str
    attributes: dict[str, Any] = field(default_factory=dict)
    children: list[Element] = field(default_factory=list)
    text: Any = None

    def child(self, name: str) -> Element | None:
        for c in self.children:
            if c.name == name:
                return c
        return None

    def child_text(self, name: str) -> Any:
        c = self.child(name)
        return None if c is None else c.text

    def to_dict(self) -> Any:
        """Plain-data view: attributes and children keyed by name, repeated names as lists."""
        if not self.children and not self.attributes:
            return self.text
        out: dict[str, Any] = dict(self.attributes)
        for c in self.children:
            value = c.to_dict()
            if c.name in out:
                prev = out[c.name]
                if isinstance(prev, list):
                    prev.append(value)
                else:
                    out[c.name] = [prev, value]
            else:
                out[c.name] = value
        if self.text is not None:
            out["#text"] = self.text
        return out


@dataclass(frozen=True)
class _Subst:
    index: int
    optional: bool


@dataclass
class _Node:
    name: str
    attributes: list[tuple[str, list[Any]]]
    content: list[Any]


class _Cursor:
    def __init__(self, buf: bytes, pos: int, end: int) -> None:
        check_range(buf, pos, end - pos, "binxml fragment")
        self.buf = buf
        self.pos = pos
        self.end = end

    def _need(self, size: int) -> None:
        if self.pos + size > self.end:
            raise BinXmlError(f"read of {size} bytes at 0x{self.pos:x} passes fragment end 0x{self.end:x}")

    def peek(self) -> int:
        self._need(1)
        return self.buf[self.pos]

    def u8(self) -> int:
        self._need(1)
        value = self.buf[self.pos]
        self.pos += 1
        return value

    def u16(self) -> int:
        self._need(2)
        value = u16(self.buf, self.pos)
        self.pos += 2
        return value

    def u32(self) -> int:
        self._need(4)
        value = u32(self.buf, self.pos)
        self.pos += 4
        return value

    def take(self, size: int) -> bytes:
        self._need(size)
        raw = bytes(self.buf[self.pos : self.pos + size])
        self.pos += size
        return raw


class BinXmlParser:
    """Parses the Binary XML fragments of one chunk."""

    def __init__(self, chunk: bytes, *, max_templates: int = 256, max_depth: int = 32) -> None:
        self._chunk = chunk
        self._max_templates = max_templates
        self._max_depth = max_depth
        self._names: dict[int, tuple[str, int]] = {}
        self._templates: dict[int, _Node] = {}

    def parse_record(self, offset: int, end: int) -> Element:
        """Render the event fragment stored at ``chunk[offset:end]``."""
        cur = _Cursor(self._chunk, offset, end)
        return self._fragment(cur, 0)

    # -------------------------
    # Structure
    # -------------------------

    def _fragment(self, cur: _Cursor, depth: int) -> Element:
        if depth > self._max_depth:
            raise BinXmlError("nested binxml too deep")
        tok = cur.peek()
        if tok == TOKEN_FRAGMENT_HEADER:
            cur.take(4)
            tok = cur.peek()
        if tok == TOKEN_TEMPLATE_INSTANCE:
            element = self._template_instance(cur, depth)
        elif tok & 0x0F == TOKEN_OPEN_START:
            element = _render(self._element(cur, 0), ())
        else:
            raise BinXmlError(f"unexpected token 0x{tok:02x} at fragment start 0x{cur.pos:x}")
        if cur.pos < cur.end and cur.peek() == TOKEN_EOF:
            cur.pos += 1
        return element

    def _element(self, cur: _Cursor, depth: int) -> _Node:
        if depth > self._max_depth * 8:
            raise BinXmlError("element nesting too deep")
        tok = cur.u8()
        if tok & 0x0F != TOKEN_OPEN_START:
            raise BinXmlError(f"expected element start, got 0x{tok:02x}")
        cur.u16()  # dependency id
        cur.u32()  # data size, not trusted
        name = self._name(cur)
        attributes: list[tuple[str, list[Any]]] = []
        if tok & 0x40:
            cur.u32()  # attribute list size
            while cur.peek() & 0x0F == TOKEN_ATTRIBUTE:
                cur.u8()
                attr_name = self._name(cur)
                attributes.append((attr_name, self._value_parts(cur)))

        tok = cur.u8()
        if tok == TOKEN_CLOSE_EMPTY:
            return _Node(name, attributes, [])
        if tok != TOKEN_CLOSE_START:
            raise BinXmlError(f"expected close of <{name}>, got 0x{tok:02x}")

        content: list[Any] = []
        while True:
            tok = cur.peek()
            base = tok & 0x0F
            if tok == TOKEN_END_ELEMENT:
                cur.u8()
                break
            if tok == TOKEN_EOF:
                raise BinXmlError(f"stream ended inside <{name}>")
            if base == TOKEN_OPEN_START:
                content.append(self._element(cur, depth + 1))
            elif base in _VALUE_TOKENS:
                content.extend(self._value_parts(cur))
            elif base == TOKEN_PI_TARGET:
                cur.u8()
                self._name(cur)
                if cur.peek() & 0x0F == TOKEN_PI_DATA:
                    cur.u8()
                    cur.take(cur.u16() * 2)
            else:
                raise BinXmlError(f"unexpected token 0x{tok:02x} inside <{name}>")
        return _Node(name, attributes, content)

    def _value_parts(self, cur: _Cursor) -> list[Any]:
        parts: list[Any] = []
        while cur.pos < cur.end:
            base = cur.peek() & 0x0F
            if base not in _VALUE_TOKENS:
                break
            cur.u8()
            if base == TOKEN_VALUE:
                vtype = cur.u8()
                if vtype != VT_WSTRING:
                    raise BinXmlError(f"value text of type 0x{vtype:02x}")
                parts.append(utf16(cur.take(cur.u16() * 2)))
            elif base == TOKEN_CDATA:
                parts.append(utf16(cur.take(cur.u16() * 2)))
            elif base == TOKEN_CHAR_REF:
                parts.append(chr(cur.u16()))
            elif base == TOKEN_ENTITY_REF:
                name = self._name(cur)
                parts.append(_ENTITIES.get(name, f"&{name};"))
            else:
                index = cur.u16()
                cur.u8()  # declared value type
                parts.append(_Subst(index, base == TOKEN_OPTIONAL_SUBST))
        return parts

    def _name(self, cur: _Cursor) -> str:
        offset = cur.u32()
        name, size = self._name_at(offset)
        if offset == cur.pos:
            cur.take(size)
        return name

    def _name_at(self, offset: int) -> tuple[str, int]:
        cached = self._names.get(offset)
        if cached is not None:
            return cached
        try:
            count = u16(self._chunk, offset + 6)
            size = 8 + count * 2 + 2
            check_range(self._chunk, offset, size, "name")
        except BoundsError as exc:
            raise BinXmlError(str(exc)) from exc
        name = utf16(self._chunk[offset + 8 : offset + 8 + count * 2])
        self._names[offset] = (name, size)
        return name, size

    # -------------------------
    # Templates
    # -------------------------

    def _template_instance(self, cur: _Cursor, depth: int) -> Element:
        cur.u8()  # token
        cur.u8()  # unknown
        cur.u32()  # template id
        definition = cur.u32()
        if definition == cur.pos:
            template = self._template_at(definition)
            cur.pos = definition + 24 + u32(self._chunk, definition + 20)
            if cur.pos > cur.end:
                raise BinXmlError("inline template passes fragment end")
        elif definition < cur.pos:
            template = self._template_at(definition)
        else:
            raise BinXmlError(f"template definition 0x{definition:x} points past instance 0x{cur.pos:x}")
        values = self._substitution_values(cur, depth)
        return _render(template, values)

    def _template_at(self, offset: int) -> _Node:
        cached = self._templates.get(offset)
        if cached is not None:
            return cached
        try:
            size = u32(self._chunk, offset + 20)
            body = _Cursor(self._chunk, offset + 24, offset + 24 + size)
        except BoundsError as exc:
            raise BinXmlError(f"template definition at 0x{offset:x}: {exc}") from exc
        if body.peek() == TOKEN_FRAGMENT_HEADER:
            body.take(4)
        node = self._element(body, 0)
        if len(self._templates) >= self._max_templates:
            self._templates.clear()
        self._templates[offset] = node
        return node

    def _substitution_values(self, cur: _Cursor, depth: int) -> list[Any]:
        count = cur.u32()
        if count * 4 > cur.end - cur.pos:
            raise BinXmlError(f"substitution count {count} exceeds fragment")
        descriptors = []
        for _ in range(count):
            size = cur.u16()
            vtype = cur.u8()
            cur.u8()
            descriptors.append((size, vtype))
        values: list[Any] = []
        for size, vtype in descriptors:
            start = cur.pos
            raw = cur.take(size)
            values.append(self._value(vtype, raw, start, depth))
        return values

    def _value(self, vtype: int, raw: bytes, offset: int, depth: int) -> Any:
        if vtype == VT_NULL or not raw:
            return None
        if vtype == VT_BINXML:
            return self._fragment(_Cursor(self._chunk, offset, offset + len(raw)), depth + 1)
        if vtype & VT_ARRAY:
            return _array_value(vtype & 0x7F, raw)
        return _scalar_value(vtype, raw)


def _scalar_value(vtype: int, raw: bytes) -> Any:
    if vtype == VT_WSTRING:
        return utf16(raw)
    if vtype == VT_STRING:
        return raw.split(b"\x00", 1)[0].decode("latin-1")
    if vtype == VT_BINARY:
        return raw.hex().upper()
    if vtype == VT_GUID:
        try:
            return guid(raw)
        except BoundsError as exc:
            raise BinXmlError(str(exc)) from exc
    if vtype == VT_SIZE_T:
        if len(raw) == 4:
            return f"0x{struct.unpack('<I', raw)[0]:08x}"
        if len(raw) == 8:
            return f"0x{struct.unpack('<Q', raw)[0]:016x}"
        raise BinXmlError(f"size_t of {len(raw)} bytes")
    if vtype == VT_SYSTEMTIME:
        return systemtime(raw)
    if vtype == VT_SID:
        try:
            return sid(raw)
        except BoundsError as exc:
            raise BinXmlError(str(exc)) from exc
    fmt = _FIXED_FORMATS.get(vtype)
    if fmt is None:
        return raw.hex().upper()
    if len(raw) != struct.calcsize(fmt):
        raise BinXmlError(f"value type 0x{vtype:02x} with {len(raw)} bytes")
    (value,) = struct.unpack(fmt, raw)
    if vtype == VT_FILETIME:
        return filetime(value)
    if vtype == VT_HEX32:
        return f"0x{value:08x}"
    if vtype == VT_HEX64:
        return f"0x{value:016x}"
    if vtype == 0x0D:
        return bool(value)
    return value


def _array_value(base: int, raw: bytes) -> list[Any]:
    if base == VT_WSTRING:
        items = bytes(raw).decode("utf-16-le", errors="replace").split("\x00")
        if items and items[-1] == "":
            items.pop()
        return items
    fmt = _FIXED_FORMATS.get(base)
    width = 16 if base in (VT_GUID, VT_SYSTEMTIME) else (struct.calcsize(fmt) if fmt else 0)
    if width == 0 or len(raw) % width:
        return [raw.hex().upper()]
    return [_scalar_value(base, raw[i : i + width]) for i in range(0, len(raw), width)]


def _resolve(item: Any, values: Sequence[Any]) -> Any:
    if isinstance(item, _Subst):
        return values[item.index] if item.index < len(values) else None
    return item


def _join(parts: list[Any]) -> Any:
    if not parts:
        return None
    if len(parts) == 1:
        return parts[0]
    return "".join(str(p) for p in parts)


def _render(node: _Node, values: Sequence[Any]) -> Element:
    element = Element(node.name)
    for name, parts in node.attributes:
        resolved = [v for v in (_resolve(p, values) for p in parts) if v is not None and not isinstance(v, Element)]
        value = _join(resolved)
        if value is not None:
            element.attributes[name] = value
    text: list[Any] = []
    for item in node.content:
        if isinstance(item, _Node):
            element.children.append(_render(item, values))
            continue
        value = _resolve(item, values)
        if isinstance(value, Element):
            element.children.append(value)
        elif value is not None:
            text.append(value)
    element.text = _join(text)
    return element
