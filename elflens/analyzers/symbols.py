"""
Symbol Table Index
===================

Builds a queryable index over every ``SHT_SYMTAB`` (static) and
``SHT_DYNSYM`` (dynamic) table of an :class:`~elflens.parsers.elf_parser.ElfFile`.

Supported queries:
    - Exact lookup by raw name (optionally falling back to display names)
    - Containing-symbol lookup by address, for function/object ranges
    - Nearest-preceding symbol, for ``sym+off`` style labels
    - Attribute filtering via :class:`~elflens.core.models.SymbolQuery`

The index stores raw linker names only.  Demangled display names are
computed on request by a :class:`~elflens.analyzers.demangle.Demangler`
and never written back into the :class:`Symbol` records.
"""

from __future__ import annotations

import bisect
import re
import struct
from collections import defaultdict
from typing import TYPE_CHECKING, Iterable, Iterator, Optional

from elflens.analyzers.demangle import Demangler
from elflens.core.models import (
    Symbol,
    SymbolBinding,
    SymbolQuery,
    SymbolType,
    SymbolVisibility,
)
from elflens.parsers.elf_parser import (
    SHN_LORESERVE,
    SHN_UNDEF,
    SHN_XINDEX,
    SHT_DYNSYM,
    SHT_STRTAB,
    SHT_SYMTAB,
    SHT_SYMTAB_SHNDX,
    ElfFile,
)

if TYPE_CHECKING:
    from elflens.core.models import SectionHeader
    from shared.logger import LensLogger


_STB: dict[int, SymbolBinding] = {
    0: SymbolBinding.LOCAL,
    1: SymbolBinding.GLOBAL,
    2: SymbolBinding.WEAK,
    10: SymbolBinding.GNU_UNIQUE,
}

_STT: dict[int, SymbolType] = {
    0: SymbolType.NOTYPE,
    1: SymbolType.OBJECT,
    2: SymbolType.FUNC,
    3: SymbolType.SECTION,
    4: SymbolType.FILE,
    5: SymbolType.COMMON,
    6: SymbolType.TLS,
    10: SymbolType.GNU_IFUNC,
}

_STV: dict[int, SymbolVisibility] = {
    0: SymbolVisibility.DEFAULT,
    1: SymbolVisibility.INTERNAL,
    2: SymbolVisibility.HIDDEN,
    3: SymbolVisibility.PROTECTED,
}

# Lower rank wins ties in find_covering
_BINDING_RANK: dict[SymbolBinding, int] = {
    SymbolBinding.GLOBAL: 0,
    SymbolBinding.GNU_UNIQUE: 0,
    SymbolBinding.WEAK: 1,
    SymbolBinding.LOCAL: 2,
    SymbolBinding.OTHER: 3,
}

_RANGED_TYPES = frozenset({SymbolType.FUNC, SymbolType.OBJECT, SymbolType.GNU_IFUNC})

# Elf32_Sym / Elf64_Sym layouts, reordered to (name, info, other, shndx, value, size)
_SYM32 = "IIIBBH"
_SYM64 = "IBBHQQ"

_LANGUAGE_RUNTIME_PREFIXES = ("core::", "std::", "alloc::")
_LANGUAGE_RUNTIME_IMPL = re.compile(
    r"^<(?:std|core|alloc)::.+ as .+>|^<.+ as (?:std|core|alloc)::.+>"
)


def is_language_runtime(display_name: str) -> bool:
    """``True`` for symbols generated for Rust's ``std``, ``core`` and ``alloc``."""
    return (
        display_name.startswith(_LANGUAGE_RUNTIME_PREFIXES)
        or _LANGUAGE_RUNTIME_IMPL.match(display_name) is not None
    )


def read_symbol_table(
    elf: ElfFile,
    table: SectionHeader,
    logger: Optional[LensLogger] = None,
) -> list[Symbol]:
    """Decode one symbol table section.

    A table whose last entry is cut short stops at the last complete entry;
    the truncation is logged.
    """
    fmt = ("<" if elf.little_endian else ">") + (_SYM64 if elf.is_64bit else _SYM32)
    record_size = struct.calcsize(fmt)
    entsize = table.entsize or record_size
    if entsize < record_size:
        if logger is not None:
            logger.warning(
                "Symbol table %s has entry size %d, expected at least %d; skipped",
                table.name, entsize, record_size,
            )
        return []

    data = elf.section_data(table)
    count, leftover = divmod(len(data), entsize)
    if leftover and logger is not None:
        logger.warning(
            "Symbol table %s is truncated: %d trailing bytes ignored",
            table.name, leftover,
        )

    strtab = b""
    if 0 < table.link < len(elf.sections):
        link = elf.sections[table.link]
        if link.is_valid and link.type == SHT_STRTAB:
            strtab = bytes(elf.section_data(link))
    if not strtab and count and logger is not None:
        logger.warning("Symbol table %s has no usable string table", table.name)

    shndx_table = _extended_index_table(elf, table)
    dynamic = table.type == SHT_DYNSYM
    symbols: list[Symbol] = []

    for i in range(count):
        offset = i * entsize
        if elf.is_64bit:
            st_name, st_info, st_other, st_shndx, st_value, st_size = struct.unpack_from(
                fmt, data, offset)
        else:
            st_name, st_value, st_size, st_info, st_other, st_shndx = struct.unpack_from(
                fmt, data, offset)

        if st_shndx == SHN_XINDEX and shndx_table is not None and i < len(shndx_table):
            st_shndx = shndx_table[i]

        symbols.append(Symbol(
            index=i,
            table_index=table.index,
            name=_cstring(strtab, st_name),
            value=st_value,
            size=st_size,
            binding=_STB.get(st_info >> 4, SymbolBinding.OTHER),
            type=_STT.get(st_info & 0xF, SymbolType.OTHER),
            visibility=_STV[st_other & 0x3],
            shndx=st_shndx,
            dynamic=dynamic,
        ))
    return symbols


def _extended_index_table(elf: ElfFile, table: SectionHeader) -> Optional[tuple[int, ...]]:
    """``SHT_SYMTAB_SHNDX`` entries linked to *table*, if any."""
    for sh in elf.sections_of_type(SHT_SYMTAB_SHNDX):
        if sh.link == table.index:
            data = elf.section_data(sh)
            fmt = ("<" if elf.little_endian else ">") + f"{len(data) // 4}I"
            return struct.unpack_from(fmt, data, 0)
    return None


def _cstring(table: bytes, offset: int) -> str:
    if offset <= 0 or offset >= len(table):
        return ""
    end = table.find(b"\x00", offset)
    if end == -1:
        end = len(table)
    return table[offset:end].decode("utf-8", errors="replace")


class SymbolIndex:
    """Lookup structure over all symbols of one file.

    Usage::

        index = SymbolIndex.build(elf)
        main = index.find_by_name("main")[0]
        owner = index.find_covering(0x401136)
    """

    def __init__(self, symbols: Iterable[Symbol]) -> None:
        self._symbols: tuple[Symbol, ...] = tuple(symbols)

        self._by_name: dict[str, list[Symbol]] = defaultdict(list)
        self._by_value: dict[int, list[Symbol]] = defaultdict(list)
        for sym in self._symbols:
            if sym.name:
                self._by_name[sym.name].append(sym)
            if sym.is_defined and sym.name and sym.type not in (SymbolType.FILE,
                                                                SymbolType.SECTION):
                self._by_value[sym.value].append(sym)

        ranged = sorted(
            (s for s in self._symbols
             if s.is_defined and s.shndx < SHN_LORESERVE
             and s.size > 0 and s.type in _RANGED_TYPES),
            key=lambda s: s.value,
        )
        self._ranged: list[Symbol] = ranged
        self._ranged_starts: list[int] = [s.value for s in ranged]
        self._max_size: int = max((s.size for s in ranged), default=0)

        self._defined_values: list[int] = sorted(self._by_value)

    @classmethod
    def build(cls, elf: ElfFile, logger: Optional[LensLogger] = None) -> SymbolIndex:
        """Index every static and dynamic symbol table of *elf*."""
        symbols: list[Symbol] = []
        for sh in elf.sections:
            if sh.is_valid and sh.type in (SHT_SYMTAB, SHT_DYNSYM):
                symbols.extend(read_symbol_table(elf, sh, logger))
        if logger is not None:
            logger.debug("Indexed %d symbols", len(symbols))
        return cls(symbols)

    # ------------------------------------------------------------------ #
    #  Accessors
    # ------------------------------------------------------------------ #

    def __len__(self) -> int:
        return len(self._symbols)

    def __iter__(self) -> Iterator[Symbol]:
        return iter(self._symbols)

    @property
    def symbols(self) -> tuple[Symbol, ...]:
        return self._symbols

    @staticmethod
    def display_name(symbol: Symbol, demangler: Optional[Demangler] = None) -> str:
        if demangler is None:
            return symbol.name
        return demangler.demangle(symbol.name)

    # ------------------------------------------------------------------ #
    #  Lookups
    # ------------------------------------------------------------------ #

    def find_by_name(self, name: str, demangler: Optional[Demangler] = None) -> list[Symbol]:
        """All symbols whose raw name is *name*.

        When nothing matches and a *demangler* is given, symbols whose
        display name equals *name* are returned instead.
        """
        found = list(self._by_name.get(name, ()))
        if found or demangler is None:
            return found
        named = [s for s in self._symbols if s.name]
        shown = demangler.demangle_many(s.name for s in named)
        return [s for s, display in zip(named, shown) if display == name]

    def find_covering(self, address: int) -> Optional[Symbol]:
        """The defined function/object symbol whose range contains *address*.

        Ties go to the smallest range, then global over weak over local
        binding, then static over dynamic table, then lowest index.
        """
        hi = bisect.bisect_right(self._ranged_starts, address)
        lo = bisect.bisect_left(self._ranged_starts, address - self._max_size + 1, 0, hi)
        candidates = [s for s in self._ranged[lo:hi] if s.contains(address)]
        if not candidates:
            return None
        return min(candidates, key=lambda s: (
            s.size, _BINDING_RANK[s.binding], s.dynamic, s.index))

    def find_nearest(self, address: int) -> Optional[Symbol]:
        """The defined symbol with the greatest value not above *address*."""
        pos = bisect.bisect_right(self._defined_values, address)
        if pos == 0:
            return None
        candidates = self._by_value[self._defined_values[pos - 1]]
        return min(candidates, key=lambda s: (_BINDING_RANK[s.binding], s.dynamic, s.index))

    def symbols_at(self, address: int) -> list[Symbol]:
        """Defined, named symbols whose value is exactly *address*."""
        return list(self._by_value.get(address, ()))

    def next_symbol_address(self, address: int, section_index: Optional[int] = None) -> Optional[int]:
        """Smallest defined symbol value strictly above *address*.

        When *section_index* is given only symbols of that section count.
        """
        pos = bisect.bisect_right(self._defined_values, address)
        for value in self._defined_values[pos:]:
            if section_index is None:
                return value
            if any(s.shndx == section_index for s in self._by_value[value]):
                return value
        return None

    # ------------------------------------------------------------------ #
    #  Filtering
    # ------------------------------------------------------------------ #

    def filter(
        self,
        query: SymbolQuery,
        demangler: Optional[Demangler] = None,
    ) -> Iterator[Symbol]:
        """Lazily yield the symbols matching every populated field of *query*.

        The name pattern is searched in the display name when a *demangler*
        is given, in the raw name otherwise.
        """
        pattern = re.compile(query.name_pattern) if query.name_pattern else None
        # one demangler batch for the whole table
        if demangler is not None and (pattern is not None or query.exclude_language_runtime):
            demangler.demangle_many(s.name for s in self._symbols if s.name)
        for sym in self._symbols:
            if query.bindings is not None and sym.binding not in query.bindings:
                continue
            if query.types is not None and sym.type not in query.types:
                continue
            if query.visibilities is not None and sym.visibility not in query.visibilities:
                continue
            if query.defined is not None and sym.is_defined != query.defined:
                continue
            if query.dynamic is not None and sym.dynamic != query.dynamic:
                continue
            if pattern is not None or query.exclude_language_runtime:
                name = self.display_name(sym, demangler)
                if pattern is not None and pattern.search(name) is None:
                    continue
                if query.exclude_language_runtime and is_language_runtime(name):
                    continue
            yield sym
