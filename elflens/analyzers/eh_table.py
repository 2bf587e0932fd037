"""
Exception Handling Table Parser
================================

Decodes the Language-Specific Data Area (LSDA) that an FDE's augmentation
data points to, normally stored in ``.gcc_except_table``.

LSDA layout (Itanium C++ ABI)::

    u8        LPStart encoding
    encoded   LPStart                 (omitted: the function start)
    u8        type table encoding
    uleb128   type table offset       (omitted with the encoding)
    u8        call-site encoding
    uleb128   call-site table length
    call-site records: start, length, landing pad (call-site encoding),
                       action (uleb128, 1-based into the action table)
    action table: (sleb128 type filter, sleb128 next-action displacement)

A landing pad of zero means "no landing pad": the exception propagates.
An action of zero means the region only needs cleanup.

References:
    - Itanium C++ ABI: Exception Handling, Section 1.5 (LSDA).
    - GCC ``libgcc/unwind-c.c`` / ``libstdc++-v3/libsupc++/eh_personality.cc``.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Iterator, Optional

from elflens.core.errors import DecodeError, MalformedRecord
from elflens.core.models import EhRegion, FdeRecord, LsdaTable, Symbol
from elflens.parsers.elf_parser import ElfFile
from elflens.parsers.reader import (
    DW_EH_PE_omit,
    DW_EH_PE_udata2,
    DW_EH_PE_udata4,
    DW_EH_PE_udata8,
    ByteCursor,
    PointerBases,
)

if TYPE_CHECKING:
    from elflens.analyzers.cfi import FrameTable
    from shared.logger import LensLogger

_ENCODED_SIZES: dict[int, int] = {
    DW_EH_PE_udata2: 2,
    DW_EH_PE_udata4: 4,
    DW_EH_PE_udata8: 8,
}

# Bounds action-chain walks on corrupt displacement cycles
_MAX_ACTION_CHAIN = 256


def _action_filters(cur: ByteCursor, table_pos: int, action: int) -> tuple[int, ...]:
    """Type filters along the action chain starting at 1-based *action*."""
    filters: list[int] = []
    pos = table_pos + action - 1
    seen: set[int] = set()
    while len(filters) < _MAX_ACTION_CHAIN:
        if pos in seen:
            raise MalformedRecord("LSDA action table", pos, "action chain loops")
        seen.add(pos)
        cur.seek(pos)
        filters.append(cur.sleb128())
        disp_pos = cur.tell()
        disp = cur.sleb128()
        if disp == 0:
            break
        pos = disp_pos + disp
    return tuple(filters)


def parse_lsda_table(
    elf: ElfFile,
    address: int,
    function_start: int,
) -> LsdaTable:
    """Decode the LSDA at *address* for the function starting at *function_start*.

    Raises:
        DecodeError: The LSDA is unmapped or malformed.
    """
    cur = elf.cursor_at(address)
    if cur is None:
        raise MalformedRecord("LSDA", address, "address is not backed by file content")

    text = elf.get_section(".text")
    bases = PointerBases(
        text=text.addr if text is not None else None,
        func=function_start,
    )

    lpstart_enc = cur.u8()
    lpstart = function_start
    if lpstart_enc != DW_EH_PE_omit:
        decoded = cur.encoded_pointer(lpstart_enc, bases)
        lpstart = decoded if decoded is not None else function_start

    ttype_enc = cur.u8()
    ttype_base: Optional[int] = None
    if ttype_enc != DW_EH_PE_omit:
        ttype_offset = cur.uleb128()
        ttype_base = cur.address + ttype_offset

    cs_enc = cur.u8()
    cs_len = cur.uleb128()
    action_table = cur.tell() + cs_len
    if action_table > cur.size:
        raise MalformedRecord(
            "LSDA", address,
            f"call-site table of {cs_len} bytes runs past the end of its section",
        )

    entries: list[tuple[int, int, int, int]] = []
    while cur.tell() < action_table:
        start = cur.encoded_value(cs_enc)
        length = cur.encoded_value(cs_enc)
        landing = cur.encoded_value(cs_enc)
        action = cur.uleb128()
        entries.append((start, length, landing, action))

    regions: list[EhRegion] = []
    for start, length, landing, action in entries:
        rel_start = lpstart + start - function_start
        regions.append(EhRegion(
            function_start=function_start,
            start=rel_start,
            end=rel_start + length,
            landing_pad=None if landing == 0 else lpstart + landing - function_start,
            action=action,
            type_filters=_action_filters(cur, action_table, action) if action else (),
        ))
    regions.sort(key=lambda r: (r.start, r.end))

    return LsdaTable(
        address=address,
        function_start=function_start,
        lpstart=lpstart,
        ttype_encoding=ttype_enc,
        ttype_base=ttype_base,
        call_site_encoding=cs_enc,
        regions=tuple(regions),
    )


def parse_lsda(
    fde: FdeRecord,
    elf: ElfFile,
    logger: Optional[LensLogger] = None,
) -> list[EhRegion]:
    """EH regions of the LSDA referenced by *fde*, sorted by start.

    An FDE without an LSDA has no regions.  A malformed LSDA is logged and
    also yields no regions; it never affects other FDEs.
    """
    if fde.lsda is None:
        return []
    try:
        return list(parse_lsda_table(elf, fde.lsda, fde.initial_location).regions)
    except DecodeError as exc:
        if logger is not None:
            logger.warning("FDE at %#x: malformed LSDA at %#x: %s",
                           fde.offset, fde.lsda, exc)
        return []


def type_info_address(elf: ElfFile, table: LsdaTable, type_filter: int) -> Optional[int]:
    """Address of the ``std::type_info`` a positive catch filter refers to.

    Returns ``None`` for cleanups, exception specifications, a missing type
    table, variable-width encodings and null entries (``catch (...)``).
    """
    if type_filter <= 0 or table.ttype_base is None:
        return None
    size = _ENCODED_SIZES.get(table.ttype_encoding & 0x07)
    if table.ttype_encoding & 0x0F == 0:
        size = elf.address_size
    if size is None:
        return None
    slot = table.ttype_base - type_filter * size
    cur = elf.cursor_at(slot)
    if cur is None:
        return None
    try:
        value = cur.encoded_pointer(table.ttype_encoding, PointerBases(func=table.function_start))
    except DecodeError:
        return None
    return value or None


class EhTable:
    """All LSDAs of a frame table, keyed by FDE offset.

    Usage::

        eh = EhTable.build(elf, frames)
        for region in eh.find_for_symbol(sym):
            ...
    """

    def __init__(self, tables: dict[int, LsdaTable], errors: list[str]) -> None:
        self._tables = tables
        self.errors: tuple[str, ...] = tuple(errors)
        self._regions: list[EhRegion] = sorted(
            (r for t in tables.values() for r in t.regions),
            key=lambda r: (r.absolute_start, r.absolute_end),
        )

    @classmethod
    def build(
        cls,
        elf: ElfFile,
        frames: FrameTable,
        logger: Optional[LensLogger] = None,
    ) -> EhTable:
        tables: dict[int, LsdaTable] = {}
        errors: list[str] = []
        for fde in frames.fdes:
            if fde.lsda is None:
                continue
            try:
                tables[fde.offset] = parse_lsda_table(elf, fde.lsda, fde.initial_location)
            except DecodeError as exc:
                errors.append(f"FDE at {fde.offset:#x}: {exc}")
                if logger is not None:
                    logger.warning("FDE at %#x: malformed LSDA: %s", fde.offset, exc)
        return cls(tables, errors)

    def __len__(self) -> int:
        return len(self._tables)

    def __iter__(self) -> Iterator[LsdaTable]:
        return iter(self._tables.values())

    def for_fde(self, fde: FdeRecord) -> Optional[LsdaTable]:
        return self._tables.get(fde.offset)

    @property
    def regions(self) -> list[EhRegion]:
        return list(self._regions)

    def find_for_symbol(self, symbol: Symbol) -> list[EhRegion]:
        """Regions whose absolute start lies in the symbol's range."""
        if symbol.size == 0:
            return [r for r in self._regions if r.function_start == symbol.value]
        return [r for r in self._regions if symbol.contains(r.absolute_start)]
