"""
ELF Lens Error Taxonomy
========================

Every failure raised by the analysis engine derives from
:class:`ElfLensError` and falls into one of three families:

``StructuralError``
    Malformed header or table.  Fatal to the structure being parsed, never
    to the whole file (except for the file header itself, see
    :class:`ParseError`).

``ElfLookupError``
    A symbol, section or index reference that does not exist.  Returned to
    the caller, never retried.

``DecodeError``
    Byte-level decoding failure (truncated read, malformed LEB128,
    unsupported call-frame opcode, undecodable instruction).  Contained
    locally: the affected query marks a gap and carries on.

Each exception names the field, offset, and expectation that was violated.
"""

from __future__ import annotations

from typing import Optional


class ElfLensError(Exception):
    """Base class for all ELF Lens errors."""


# ---------------------------------------------------------------------------
# Structural errors
# ---------------------------------------------------------------------------

class StructuralError(ElfLensError):
    """A header or table does not have the expected structure."""


class ParseError(StructuralError):
    """The ELF file header itself cannot be interpreted."""


class BadMagic(ParseError):
    """The buffer does not start with ``\\x7fELF``."""

    def __init__(self, found: bytes) -> None:
        self.found = bytes(found)
        super().__init__(
            f"bad magic number: expected 7f454c46, found {self.found.hex() or '<empty>'}"
        )


class BadClass(ParseError):
    """``EI_CLASS`` is neither ELFCLASS32 nor ELFCLASS64."""

    def __init__(self, value: int) -> None:
        self.value = value
        super().__init__(
            f"invalid EI_CLASS at offset 4: expected 1 (ELF32) or 2 (ELF64), found {value}"
        )


class BadEndianness(ParseError):
    """``EI_DATA`` is neither ELFDATA2LSB nor ELFDATA2MSB."""

    def __init__(self, value: int) -> None:
        self.value = value
        super().__init__(
            f"invalid EI_DATA at offset 5: expected 1 (LSB) or 2 (MSB), found {value}"
        )


class TruncatedHeader(ParseError):
    """The buffer ends before a header that must be complete."""

    def __init__(self, what: str, offset: int, needed: int, have: int) -> None:
        self.what = what
        self.offset = offset
        self.needed = needed
        self.have = have
        super().__init__(
            f"truncated {what} at offset {offset:#x}: needed {needed} bytes, have {have}"
        )


class InvalidTableCount(ParseError):
    """A header table declares an entry size/count that cannot be honoured."""

    def __init__(self, table: str, count: int, entry_size: int, expected_size: int) -> None:
        self.table = table
        self.count = count
        self.entry_size = entry_size
        self.expected_size = expected_size
        super().__init__(
            f"invalid {table} table: {count} entries of {entry_size} bytes, "
            f"entry size must be at least {expected_size}"
        )


class FileTooLarge(StructuralError):
    """The input exceeds the configured size limit and was not read."""

    def __init__(self, path: str, size: int, limit: int) -> None:
        self.path = path
        self.size = size
        self.limit = limit
        super().__init__(
            f"{path}: {size} bytes exceeds the configured limit of {limit} bytes"
        )


# ---------------------------------------------------------------------------
# Lookup errors
# ---------------------------------------------------------------------------

class ElfLookupError(ElfLensError, LookupError):
    """A requested entity does not exist in the parsed model."""


class SymbolNotFound(ElfLookupError):
    def __init__(self, query: str) -> None:
        self.query = query
        super().__init__(f"couldn't find any symbol matching {query!r}")


class SectionNotFound(ElfLookupError):
    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"couldn't find section {name!r}")


class InvalidIndex(ElfLookupError):
    def __init__(self, what: str, index: int, count: int) -> None:
        self.what = what
        self.index = index
        self.count = count
        super().__init__(f"{what} index {index} out of range (have {count})")


# ---------------------------------------------------------------------------
# Decode errors
# ---------------------------------------------------------------------------

class DecodeError(ElfLensError):
    """A byte sequence could not be decoded."""


class TruncatedData(DecodeError):
    def __init__(self, offset: int, needed: int, have: int) -> None:
        self.offset = offset
        self.needed = needed
        self.have = have
        super().__init__(
            f"read past end of data at offset {offset:#x}: needed {needed} bytes, have {have}"
        )


class MalformedLeb128(DecodeError):
    def __init__(self, offset: int) -> None:
        self.offset = offset
        super().__init__(f"unterminated LEB128 value starting at offset {offset:#x}")


class UnsupportedEncoding(DecodeError):
    def __init__(self, encoding: int, offset: Optional[int] = None) -> None:
        self.encoding = encoding
        self.offset = offset
        where = f" at offset {offset:#x}" if offset is not None else ""
        super().__init__(f"unsupported pointer encoding {encoding:#04x}{where}")


class UnsupportedOpcode(DecodeError):
    def __init__(self, opcode: int, offset: int) -> None:
        self.opcode = opcode
        self.offset = offset
        super().__init__(
            f"unsupported call frame instruction {opcode:#04x} at program offset {offset}"
        )


class MalformedRecord(DecodeError):
    def __init__(self, kind: str, offset: int, reason: str) -> None:
        self.kind = kind
        self.offset = offset
        self.reason = reason
        super().__init__(f"malformed {kind} at offset {offset:#x}: {reason}")


class InstructionDecodeError(DecodeError):
    def __init__(self, address: int) -> None:
        self.address = address
        super().__init__(f"couldn't decode instruction at {address:#x}")


class UnsupportedArchitecture(DecodeError):
    def __init__(self, machine: str) -> None:
        self.machine = machine
        super().__init__(f"no instruction decoder available for machine {machine!r}")
