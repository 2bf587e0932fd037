"""
ELF Lens Analysis Session
=========================

Groups one parsed ELF image with the indexes built over it and the
collaborators the analyzers need (instruction decoder, demangler, logger,
configuration).  Every index is built on first use, exactly once, under a
lock; the parsed image itself is immutable.

Usage::

    lens = ElfAnalyzer.open("/bin/true")
    for sym in lens.symbols(SymbolQuery(types=frozenset({SymbolType.FUNC}))):
        print(lens.display_name(sym))
    listing = lens.disassemble("main", cfi=True)
"""

from __future__ import annotations

import contextlib
import threading
from pathlib import Path
from typing import Callable, ContextManager, Optional, Union

from shared.config import AnalysisConfig, LensConfig
from shared.logger import LensLogger

from elflens.analyzers.cfi import (
    FrameTable,
    UnwindLookup,
    parse_frame_section,
    register_name,
    select_frame_section,
)
from elflens.analyzers.demangle import Demangler, make_demangler
from elflens.analyzers.disassembly import (
    CapstoneDecoder,
    FunctionDisassembly,
    InstructionDecoder,
    disassemble,
)
from elflens.analyzers.eh_table import EhTable, type_info_address
from elflens.analyzers.sections import interpret_section
from elflens.analyzers.symbols import SymbolIndex
from elflens.core.errors import (
    FileTooLarge,
    SectionNotFound,
    SymbolNotFound,
)
from elflens.core.models import (
    EhRegion,
    ElfHeader,
    FdeRecord,
    LsdaTable,
    ProgramHeader,
    SectionHeader,
    SectionView,
    Symbol,
    SymbolQuery,
    SymbolType,
)
from elflens.parsers.elf_parser import ElfFile, parse

DecoderFactory = Callable[[ElfFile, str], InstructionDecoder]

_CODE_TYPES = (SymbolType.FUNC, SymbolType.GNU_IFUNC)


def capstone_factory(elf: ElfFile, syntax: str) -> InstructionDecoder:
    """Default decoder factory: a Capstone decoder for the file's machine."""
    return CapstoneDecoder(
        elf.header.machine,
        is_64bit=elf.is_64bit,
        little_endian=elf.little_endian,
        syntax=syntax,
    )


class ElfAnalyzer:
    """Analysis session over one ELF image.

    Args:
        elf: The parsed file.
        config: Analysis settings.  Defaults are used if not provided.
        logger: Diagnostics sink.  ``None`` keeps every component silent.
        demangler: Name demangler.  Built from ``config.demangle`` if not
            provided.
        decoder_factory: Builds the instruction decoder for a syntax.
    """

    def __init__(
        self,
        elf: ElfFile,
        *,
        config: Optional[AnalysisConfig] = None,
        logger: Optional[LensLogger] = None,
        demangler: Optional[Demangler] = None,
        decoder_factory: DecoderFactory = capstone_factory,
    ) -> None:
        self._elf = elf
        self._config = config or AnalysisConfig()
        self._logger = logger
        self._demangler = demangler or make_demangler(self._config.demangle, logger)
        self._decoder_factory = decoder_factory

        self._lock = threading.Lock()
        self._symbols: Optional[SymbolIndex] = None
        self._frames: dict[str, FrameTable] = {}
        self._eh: Optional[EhTable] = None

    # ------------------------------------------------------------------ #
    #  Construction helpers
    # ------------------------------------------------------------------ #

    @classmethod
    def from_bytes(
        cls,
        data: Union[bytes, bytearray, memoryview],
        *,
        config: Optional[LensConfig] = None,
        logger: Optional[LensLogger] = None,
        **kwargs,
    ) -> ElfAnalyzer:
        config = config or LensConfig()
        if logger is None:
            return cls(parse(data), config=config.analysis, **kwargs)
        with logger.operation("parse"):
            elf = parse(data, logger)
        return cls(elf, config=config.analysis, logger=logger, **kwargs)

    @classmethod
    def open(
        cls,
        path: Union[str, Path],
        *,
        config: Optional[LensConfig] = None,
        logger: Optional[LensLogger] = None,
        **kwargs,
    ) -> ElfAnalyzer:
        """Read and parse the file at *path*.

        Raises:
            FileTooLarge: The file exceeds ``analysis.max_file_size``.
            OSError: The file can't be read.
            ParseError: The file isn't a usable ELF image.
        """
        config = config or LensConfig()
        file_path = Path(path)
        size = file_path.stat().st_size
        limit = config.analysis.max_file_size
        if size > limit:
            raise FileTooLarge(str(file_path), size, limit)
        data = file_path.read_bytes()
        if logger is not None:
            logger.debug("Read %d bytes from %s", len(data), file_path)
        return cls.from_bytes(data, config=config, logger=logger, **kwargs)

    # ------------------------------------------------------------------ #
    #  Structure
    # ------------------------------------------------------------------ #

    @property
    def elf(self) -> ElfFile:
        return self._elf

    @property
    def config(self) -> AnalysisConfig:
        return self._config

    @property
    def demangler(self) -> Demangler:
        return self._demangler

    @property
    def header(self) -> ElfHeader:
        return self._elf.header

    @property
    def sections(self) -> tuple[SectionHeader, ...]:
        return self._elf.sections

    @property
    def program_headers(self) -> tuple[ProgramHeader, ...]:
        return self._elf.program_headers

    def find_section(self, name: str) -> SectionHeader:
        """Look a section up by name, or by index when *name* is numeric."""
        if name.isdigit():
            return self._elf.section(int(name))
        return self._elf.find_section(name)

    def section_view(self, name: str, *, raw: bool = False) -> tuple[SectionHeader, SectionView]:
        """Interpret the named section (see :func:`interpret_section`)."""
        section = self.find_section(name)
        return section, interpret_section(self._elf, section, raw=raw, logger=self._logger)

    def section_bytes(
        self,
        name: str,
        skip: int = 0,
        size: Optional[int] = None,
    ) -> tuple[SectionHeader, memoryview]:
        """File content of the named section, windowed by *skip* and *size*."""
        section = self.find_section(name)
        return section, self._elf.section_window(section, skip, size)

    # ------------------------------------------------------------------ #
    #  Symbols
    # ------------------------------------------------------------------ #

    @property
    def symbol_index(self) -> SymbolIndex:
        with self._lock:
            if self._symbols is None:
                with self._operation("symbol index"):
                    self._symbols = SymbolIndex.build(self._elf, self._logger)
            return self._symbols

    def _operation(self, name: str) -> ContextManager[object]:
        if self._logger is None:
            return contextlib.nullcontext()
        return self._logger.operation(name)

    def display_name(self, symbol: Symbol, demangle: bool = True) -> str:
        return SymbolIndex.display_name(symbol, self._demangler if demangle else None)

    def symbols(self, query: Optional[SymbolQuery] = None, demangle: bool = True) -> list[Symbol]:
        """Symbols matching *query*, in table order.

        With ``analysis.hide_language_runtime`` set, runtime-library
        symbols are excluded regardless of *query*.
        """
        query = query or SymbolQuery()
        if self._config.hide_language_runtime and not query.exclude_language_runtime:
            query = query.model_copy(update={"exclude_language_runtime": True})
        demangler = self._demangler if demangle else None
        found = list(self.symbol_index.filter(query, demangler))
        if demangler is not None:
            demangler.demangle_many(s.name for s in found if s.name)
        return found

    def resolve_function(self, target: Union[str, int]) -> Symbol:
        """Find the function named *target*, or covering address *target*.

        Among several symbols sharing a name, a defined function wins.

        Raises:
            SymbolNotFound: Nothing matches.
        """
        index = self.symbol_index
        if isinstance(target, int):
            sym = index.find_covering(target)
            if sym is None:
                raise SymbolNotFound(f"{target:#x}")
            return sym

        found = index.find_by_name(target, self._demangler)
        if not found:
            raise SymbolNotFound(target)
        return min(found, key=lambda s: (
            not s.is_defined, s.type not in _CODE_TYPES, s.dynamic, s.index))

    # ------------------------------------------------------------------ #
    #  Call frame information
    # ------------------------------------------------------------------ #

    def frames(self, section_name: Optional[str] = None) -> FrameTable:
        """The parsed call frame section.

        Without *section_name* the first present section listed in
        ``analysis.frame_sections`` is used.

        Raises:
            SectionNotFound: No such (or no usable) frame section.
        """
        if section_name is None:
            section = select_frame_section(self._elf, tuple(self._config.frame_sections))
            if section is None:
                raise SectionNotFound(" or ".join(self._config.frame_sections))
        else:
            section = self._elf.find_section(section_name)

        with self._lock:
            table = self._frames.get(section.name)
            if table is None:
                with self._operation(f"frames {section.name}"):
                    table = parse_frame_section(self._elf, section, self._logger)
                self._frames[section.name] = table
            return table

    def fdes_for(self, target: Union[int, Symbol], section_name: Optional[str] = None) -> list[FdeRecord]:
        """FDEs covering an address, or overlapping a symbol's range."""
        table = self.frames(section_name)
        if isinstance(target, Symbol):
            return table.fdes_in_range(target.value, max(target.end, target.value + 1))
        return table.fdes_covering(target)

    def orphaned_fdes(self, section_name: Optional[str] = None) -> list[FdeRecord]:
        """FDEs of the frame section that no function symbol covers."""
        return self.frames(section_name).orphaned_fdes(self.symbol_index)

    def register_name(self, register: int) -> str:
        return register_name(self._elf.header.machine, register)

    def _try_frames(self) -> Optional[FrameTable]:
        try:
            return self.frames()
        except SectionNotFound:
            return None

    # ------------------------------------------------------------------ #
    #  Exception handling tables
    # ------------------------------------------------------------------ #

    @property
    def eh_table(self) -> EhTable:
        frames = self._try_frames()
        with self._lock:
            if self._eh is None:
                if frames is None:
                    self._eh = EhTable({}, [])
                else:
                    with self._operation("exception tables"):
                        self._eh = EhTable.build(self._elf, frames, self._logger)
            return self._eh

    def eh_regions(self, symbol: Union[str, Symbol]) -> list[EhRegion]:
        """Protected regions of a function, ordered by start."""
        if not isinstance(symbol, Symbol):
            symbol = self.resolve_function(symbol)
        return self.eh_table.find_for_symbol(symbol)

    def type_info(self, table: LsdaTable, type_filter: int) -> Optional[int]:
        """Address of the ``type_info`` a positive catch filter of *table* names."""
        return type_info_address(self._elf, table, type_filter)

    def lsda_tables(self, symbol: Union[str, Symbol]) -> list[LsdaTable]:
        """Decoded LSDAs of the FDEs overlapping a function."""
        if not isinstance(symbol, Symbol):
            symbol = self.resolve_function(symbol)
        frames = self._try_frames()
        if frames is None:
            return []
        eh = self.eh_table
        tables = (eh.for_fde(fde) for fde in self.fdes_for(symbol))
        return [t for t in tables if t is not None]

    # ------------------------------------------------------------------ #
    #  Disassembly
    # ------------------------------------------------------------------ #

    def disassemble(
        self,
        target: Union[str, int, Symbol],
        *,
        cfi: bool = False,
        syntax: Optional[str] = None,
        max_instructions: Optional[int] = None,
    ) -> FunctionDisassembly:
        """Disassemble one function, optionally annotated with unwind rules.

        Raises:
            SymbolNotFound: *target* names no symbol.
            UnsupportedArchitecture: No decoder for the file's machine.
        """
        symbol = target if isinstance(target, Symbol) else self.resolve_function(target)
        decoder = self._decoder_factory(self._elf, syntax or self._config.syntax)
        limit = max_instructions if max_instructions is not None else self._config.max_instructions

        unwind: Optional[UnwindLookup] = None
        if cfi:
            frames = self._try_frames()
            if frames is not None:
                ranges = []
                for fde in self.fdes_for(symbol):
                    ranges.extend(frames.unwind_ranges(fde))
                unwind = UnwindLookup(ranges)
            else:
                unwind = UnwindLookup([])

        return disassemble(
            symbol,
            self._elf,
            decoder,
            index=self.symbol_index,
            unwind=unwind,
            demangler=self._demangler,
            max_instructions=limit or None,
            window=self._config.decoder_window,
            logger=self._logger,
        )
