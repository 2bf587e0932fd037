"""
Section Content Interpreters
=============================

Turns the raw bytes of a section into a structured view chosen by the
section's semantic kind:

    ========================  ==========================================
    Kind                      View
    ========================  ==========================================
    ``STRING_TABLE``          :class:`StringTableView` (offset, string)
    ``EH_FRAME_HDR``          :class:`EhFrameHdrView` search table
    ``RAW`` (fallback)        :class:`RawView` for hexdump presentation
    ========================  ==========================================

Dispatch goes through a table keyed by :class:`SectionKind`; any kind
without an interpreter, and any interpreter raising a
:class:`~elflens.core.errors.DecodeError`, falls back to ``RawView`` so a
malformed section never aborts inspection of the rest of the file.

References:
    - Linux Standard Base Core Specification 5.0, Section 10.6
      (Exception Frames, ``.eh_frame_hdr``).
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Callable, Optional, Union

from elflens.core.errors import DecodeError
from elflens.core.models import (
    EhFrameHdrEntry,
    EhFrameHdrView,
    RawView,
    SectionHeader,
    SectionKind,
    SectionView,
    StringEntry,
    StringTableView,
)
from elflens.parsers.elf_parser import SHT_STRTAB, ElfFile
from elflens.parsers.reader import DW_EH_PE_omit, ByteCursor, PointerBases

if TYPE_CHECKING:
    from shared.logger import LensLogger

Buffer = Union[bytes, bytearray, memoryview]


def classify(section: SectionHeader) -> SectionKind:
    """Pick the interpretation for *section*."""
    if section.type == SHT_STRTAB:
        return SectionKind.STRING_TABLE
    if section.name == ".eh_frame_hdr":
        return SectionKind.EH_FRAME_HDR
    return SectionKind.RAW


# ---------------------------------------------------------------------------
# Interpreters
# ---------------------------------------------------------------------------

def interpret_string_table(data: Buffer, section: SectionHeader, **_: object) -> StringTableView:
    """Split *data* at NUL bytes, recording each non-empty string's offset.

    An unterminated trailing run is kept as the last string.
    """
    raw = bytes(data)
    entries: list[StringEntry] = []
    start = 0
    while start < len(raw):
        end = raw.find(b"\x00", start)
        if end == -1:
            end = len(raw)
        if end > start:
            entries.append(StringEntry(
                offset=start,
                value=raw[start:end].decode("utf-8", errors="replace"),
            ))
        start = end + 1
    return StringTableView(section_offset=section.offset, size=len(raw), entries=tuple(entries))


def interpret_eh_frame_hdr(
    data: Buffer,
    section: SectionHeader,
    *,
    little_endian: bool = True,
    address_size: int = 8,
    **_: object,
) -> EhFrameHdrView:
    """Decode the ``.eh_frame_hdr`` binary search table.

    ``datarel`` pointers are relative to the start of the section, ``pcrel``
    pointers to the address of the field itself.
    """
    cur = ByteCursor(
        data,
        little_endian=little_endian,
        address_size=address_size,
        base_address=section.addr,
    )
    bases = PointerBases(data=section.addr)

    version = cur.u8()
    ptr_enc = cur.u8()
    count_enc = cur.u8()
    table_enc = cur.u8()

    eh_frame_ptr = cur.encoded_pointer(ptr_enc, bases)
    fde_count = 0
    if count_enc != DW_EH_PE_omit and table_enc != DW_EH_PE_omit:
        fde_count = cur.encoded_pointer(count_enc, bases) or 0

    entries: list[EhFrameHdrEntry] = []
    for _i in range(fde_count):
        initial_location = cur.encoded_pointer(table_enc, bases)
        fde_address = cur.encoded_pointer(table_enc, bases)
        entries.append(EhFrameHdrEntry(
            initial_location=initial_location or 0,
            fde_address=fde_address or 0,
        ))

    return EhFrameHdrView(
        section_offset=section.offset,
        size=len(data),
        version=version,
        eh_frame_ptr_encoding=ptr_enc,
        fde_count_encoding=count_enc,
        table_encoding=table_enc,
        eh_frame_ptr=eh_frame_ptr,
        fde_count=fde_count,
        entries=tuple(entries),
    )


def interpret_raw(data: Buffer, section: SectionHeader, **_: object) -> RawView:
    return RawView(section_offset=section.offset, size=len(data))


_INTERPRETERS: dict[SectionKind, Callable[..., SectionView]] = {
    SectionKind.STRING_TABLE: interpret_string_table,
    SectionKind.EH_FRAME_HDR: interpret_eh_frame_hdr,
    SectionKind.RAW: interpret_raw,
}


def interpret(
    data: Buffer,
    section: SectionHeader,
    *,
    kind: Optional[SectionKind] = None,
    little_endian: bool = True,
    address_size: int = 8,
    logger: Optional[LensLogger] = None,
) -> SectionView:
    """Interpret *data* as the contents of *section*.

    Never raises on malformed content: a :class:`DecodeError` degrades the
    result to a :class:`RawView` carrying the error text.
    """
    kind = kind or classify(section)
    interpreter = _INTERPRETERS.get(kind, interpret_raw)
    try:
        return interpreter(
            data, section, little_endian=little_endian, address_size=address_size,
        )
    except DecodeError as exc:
        if logger is not None:
            logger.warning("Couldn't interpret section %s as %s: %s",
                           section.name, kind.value, exc)
        return RawView(section_offset=section.offset, size=len(data), error=str(exc))


def interpret_section(
    elf: ElfFile,
    section: SectionHeader,
    *,
    raw: bool = False,
    logger: Optional[LensLogger] = None,
) -> SectionView:
    """Interpret a section of *elf*, or force a :class:`RawView` with *raw*."""
    return interpret(
        elf.section_data(section),
        section,
        kind=SectionKind.RAW if raw else None,
        little_endian=elf.little_endian,
        address_size=elf.address_size,
        logger=logger,
    )
