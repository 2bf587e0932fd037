"""
Byte Cursor
============

Bounded, endian-aware primitive reader used by every decoder in ELF Lens.

The cursor walks a read-only :class:`memoryview` without copying it and
supports:
    - Fixed-width signed/unsigned integers (8, 16, 32, 64 bits)
    - Target-width addresses (4 or 8 bytes)
    - ULEB128 / SLEB128 variable-length integers
    - NUL-terminated strings
    - ``DW_EH_PE_*`` encoded pointers as used by ``.eh_frame``,
      ``.eh_frame_hdr`` and ``.gcc_except_table``

Every read is bounds-checked; running past the end raises
:class:`~elflens.core.errors.TruncatedData` instead of an ``IndexError`` or
``struct.error``.

References:
    - DWARF Debugging Information Format, Version 4, Section 7.6
      (Variable Length Data).
    - Linux Standard Base Core Specification 5.0, Section 10.5
      (DWARF Extensions, Exception Header Encoding).
"""

from __future__ import annotations

import struct
from dataclasses import dataclass
from typing import Optional, Union

from elflens.core.errors import MalformedLeb128, TruncatedData, UnsupportedEncoding


# ---------------------------------------------------------------------------
# DW_EH_PE pointer encodings
# ---------------------------------------------------------------------------

DW_EH_PE_absptr: int = 0x00
DW_EH_PE_uleb128: int = 0x01
DW_EH_PE_udata2: int = 0x02
DW_EH_PE_udata4: int = 0x03
DW_EH_PE_udata8: int = 0x04
DW_EH_PE_sleb128: int = 0x09
DW_EH_PE_sdata2: int = 0x0A
DW_EH_PE_sdata4: int = 0x0B
DW_EH_PE_sdata8: int = 0x0C

DW_EH_PE_pcrel: int = 0x10
DW_EH_PE_textrel: int = 0x20
DW_EH_PE_datarel: int = 0x30
DW_EH_PE_funcrel: int = 0x40
DW_EH_PE_aligned: int = 0x50

DW_EH_PE_indirect: int = 0x80
DW_EH_PE_omit: int = 0xFF

_FORMAT_NAMES: dict[int, str] = {
    DW_EH_PE_absptr: "absptr",
    DW_EH_PE_uleb128: "uleb128",
    DW_EH_PE_udata2: "udata2",
    DW_EH_PE_udata4: "udata4",
    DW_EH_PE_udata8: "udata8",
    DW_EH_PE_sleb128: "sleb128",
    DW_EH_PE_sdata2: "sdata2",
    DW_EH_PE_sdata4: "sdata4",
    DW_EH_PE_sdata8: "sdata8",
}

_APPLICATION_NAMES: dict[int, str] = {
    0x00: "absolute",
    DW_EH_PE_pcrel: "pcrel",
    DW_EH_PE_textrel: "textrel",
    DW_EH_PE_datarel: "datarel",
    DW_EH_PE_funcrel: "funcrel",
    DW_EH_PE_aligned: "aligned",
}


def describe_encoding(encoding: int) -> str:
    """Return a readable description of a ``DW_EH_PE_*`` encoding byte.

    >>> describe_encoding(0x1B)
    'sdata4, pcrel'
    """
    if encoding == DW_EH_PE_omit:
        return "omit"
    fmt = _FORMAT_NAMES.get(encoding & 0x0F, f"format({encoding & 0x0F:#x})")
    app = _APPLICATION_NAMES.get(encoding & 0x70, f"application({encoding & 0x70:#x})")
    text = f"{fmt}, {app}"
    if encoding & DW_EH_PE_indirect:
        text += ", indirect"
    return text


@dataclass(frozen=True)
class PointerBases:
    """Base addresses used to resolve relative ``DW_EH_PE`` applications.

    ``pc`` relative values are resolved against the address of the value
    itself, computed from the cursor's ``base_address``; the remaining bases
    must be supplied by the caller when the encoding requires them.
    """
    text: Optional[int] = None
    data: Optional[int] = None
    func: Optional[int] = None


_NO_BASES = PointerBases()


# ---------------------------------------------------------------------------
# ByteCursor
# ---------------------------------------------------------------------------

class ByteCursor:
    """Sequential bounded reader over a byte buffer.

    Args:
        data: Source bytes.  Only ``data[start:end]`` is visible.
        start: First readable offset within *data*.
        end: One past the last readable offset (defaults to ``len(data)``).
        little_endian: Byte order of multi-byte integers.
        address_size: Width in bytes of target addresses (4 or 8).
        base_address: Virtual address corresponding to offset ``start``;
            used to resolve pc-relative pointers.

    Offsets reported by :meth:`tell` and carried by exceptions are relative
    to ``start``.

    Usage::

        cur = ByteCursor(section_bytes, little_endian=True, address_size=8)
        version = cur.u8()
        length = cur.uleb128()
    """

    __slots__ = ("_view", "_pos", "_end", "_prefix", "little_endian",
                 "address_size", "base_address")

    def __init__(
        self,
        data: Union[bytes, bytearray, memoryview],
        start: int = 0,
        end: Optional[int] = None,
        *,
        little_endian: bool = True,
        address_size: int = 8,
        base_address: int = 0,
    ) -> None:
        view = data if isinstance(data, memoryview) else memoryview(data)
        if end is None:
            end = len(view)
        end = min(end, len(view))
        start = max(0, min(start, end))
        self._view: memoryview = view[start:end]
        self._pos: int = 0
        self._end: int = end - start
        self._prefix: str = "<" if little_endian else ">"
        self.little_endian: bool = little_endian
        self.address_size: int = address_size
        self.base_address: int = base_address

    # ------------------------------------------------------------------ #
    #  Position management
    # ------------------------------------------------------------------ #

    def tell(self) -> int:
        """Current offset relative to the start of the visible window."""
        return self._pos

    def seek(self, offset: int) -> None:
        if offset < 0 or offset > self._end:
            raise TruncatedData(offset, 0, self._end)
        self._pos = offset

    def skip(self, count: int) -> None:
        self._require(count)
        self._pos += count

    def align(self, alignment: int) -> None:
        """Advance to the next multiple of *alignment* (relative to ``start``)."""
        if alignment > 1:
            pad = (-self._pos) % alignment
            if pad:
                self.skip(pad)

    @property
    def remaining(self) -> int:
        return self._end - self._pos

    @property
    def size(self) -> int:
        return self._end

    def at_end(self) -> bool:
        return self._pos >= self._end

    @property
    def address(self) -> int:
        """Virtual address of the current position."""
        return self.base_address + self._pos

    def _require(self, count: int) -> None:
        if count < 0 or self._pos + count > self._end:
            raise TruncatedData(self._pos, count, self._end - self._pos)

    # ------------------------------------------------------------------ #
    #  Raw bytes
    # ------------------------------------------------------------------ #

    def read(self, count: int) -> memoryview:
        """Return the next *count* bytes as a read-only view (no copy)."""
        self._require(count)
        chunk = self._view[self._pos:self._pos + count]
        self._pos += count
        return chunk

    def read_bytes(self, count: int) -> bytes:
        return bytes(self.read(count))

    def sub_cursor(self, count: int) -> ByteCursor:
        """Consume *count* bytes and return a cursor over exactly those bytes."""
        start = self._pos
        self._require(count)
        self._pos += count
        return ByteCursor(
            self._view,
            start,
            start + count,
            little_endian=self.little_endian,
            address_size=self.address_size,
            base_address=self.base_address + start,
        )

    def peek_u8(self) -> int:
        self._require(1)
        return self._view[self._pos]

    def cstring(self, encoding: str = "utf-8") -> str:
        """Read a NUL-terminated string; the terminator is consumed."""
        start = self._pos
        for i in range(start, self._end):
            if self._view[i] == 0:
                self._pos = i + 1
                return bytes(self._view[start:i]).decode(encoding, errors="replace")
        raise TruncatedData(start, self._end - start + 1, self._end - start)

    # ------------------------------------------------------------------ #
    #  Fixed-width integers
    # ------------------------------------------------------------------ #

    def _unpack(self, code: str, size: int) -> int:
        self._require(size)
        (value,) = struct.unpack_from(self._prefix + code, self._view, self._pos)
        self._pos += size
        return value

    def u8(self) -> int:
        return self._unpack("B", 1)

    def u16(self) -> int:
        return self._unpack("H", 2)

    def u32(self) -> int:
        return self._unpack("I", 4)

    def u64(self) -> int:
        return self._unpack("Q", 8)

    def i8(self) -> int:
        return self._unpack("b", 1)

    def i16(self) -> int:
        return self._unpack("h", 2)

    def i32(self) -> int:
        return self._unpack("i", 4)

    def i64(self) -> int:
        return self._unpack("q", 8)

    def uint(self, size: int) -> int:
        """Unsigned integer of *size* bytes (1, 2, 4 or 8)."""
        readers = {1: self.u8, 2: self.u16, 4: self.u32, 8: self.u64}
        if size not in readers:
            raise ValueError(f"unsupported integer width: {size}")
        return readers[size]()

    def sint(self, size: int) -> int:
        readers = {1: self.i8, 2: self.i16, 4: self.i32, 8: self.i64}
        if size not in readers:
            raise ValueError(f"unsupported integer width: {size}")
        return readers[size]()

    def target_address(self) -> int:
        """Unsigned integer of the target's address width."""
        return self.uint(self.address_size)

    # ------------------------------------------------------------------ #
    #  LEB128
    # ------------------------------------------------------------------ #

    def uleb128(self) -> int:
        start = self._pos
        result = 0
        shift = 0
        while True:
            if self._pos >= self._end:
                raise MalformedLeb128(start)
            byte = self._view[self._pos]
            self._pos += 1
            result |= (byte & 0x7F) << shift
            shift += 7
            if not byte & 0x80:
                return result

    def sleb128(self) -> int:
        start = self._pos
        result = 0
        shift = 0
        while True:
            if self._pos >= self._end:
                raise MalformedLeb128(start)
            byte = self._view[self._pos]
            self._pos += 1
            result |= (byte & 0x7F) << shift
            shift += 7
            if not byte & 0x80:
                break
        if byte & 0x40:
            result -= 1 << shift
        return result

    # ------------------------------------------------------------------ #
    #  DW_EH_PE encoded pointers
    # ------------------------------------------------------------------ #

    def encoded_value(self, encoding: int) -> int:
        """Read the raw value of an encoded pointer, without applying a base."""
        fmt = encoding & 0x0F
        if fmt == DW_EH_PE_absptr:
            return self.target_address()
        if fmt == DW_EH_PE_uleb128:
            return self.uleb128()
        if fmt == DW_EH_PE_udata2:
            return self.u16()
        if fmt == DW_EH_PE_udata4:
            return self.u32()
        if fmt == DW_EH_PE_udata8:
            return self.u64()
        if fmt == DW_EH_PE_sleb128:
            return self.sleb128()
        if fmt == DW_EH_PE_sdata2:
            return self.i16()
        if fmt == DW_EH_PE_sdata4:
            return self.i32()
        if fmt == DW_EH_PE_sdata8:
            return self.i64()
        raise UnsupportedEncoding(encoding, self._pos)

    def encoded_pointer(
        self,
        encoding: int,
        bases: PointerBases = _NO_BASES,
    ) -> Optional[int]:
        """Read and resolve a ``DW_EH_PE`` encoded pointer.

        Returns ``None`` for ``DW_EH_PE_omit``.  Indirect pointers are
        resolved to the address of the indirection cell; dereferencing it
        would require loading the image and is left to the caller.

        Raises:
            UnsupportedEncoding: Unknown format/application or missing base.
        """
        if encoding == DW_EH_PE_omit:
            return None

        application = encoding & 0x70
        if application == DW_EH_PE_aligned:
            self.align(self.address_size)
            value = self.target_address()
            return value

        field_address = self.address
        field_offset = self._pos
        value = self.encoded_value(encoding)

        if application == 0:
            base = 0
        elif application == DW_EH_PE_pcrel:
            base = field_address
        elif application == DW_EH_PE_textrel and bases.text is not None:
            base = bases.text
        elif application == DW_EH_PE_datarel and bases.data is not None:
            base = bases.data
        elif application == DW_EH_PE_funcrel and bases.func is not None:
            base = bases.func
        else:
            raise UnsupportedEncoding(encoding, field_offset)

        mask = (1 << (8 * self.address_size)) - 1
        return (base + value) & mask
