"""
ELF Lens Analyzers
==================

Queries over a parsed :class:`~elflens.parsers.elf_parser.ElfFile`: the
symbol index, section interpreters, call frame decoding, disassembly and
exception handling tables.
"""

from elflens.analyzers.cfi import FrameTable, UnwindLookup, parse_frame_section
from elflens.analyzers.demangle import CxxFiltDemangler, NullDemangler
from elflens.analyzers.disassembly import CapstoneDecoder, disassemble
from elflens.analyzers.eh_table import EhTable, parse_lsda
from elflens.analyzers.sections import interpret, interpret_section
from elflens.analyzers.symbols import SymbolIndex

__all__ = [
    "CapstoneDecoder",
    "CxxFiltDemangler",
    "EhTable",
    "FrameTable",
    "NullDemangler",
    "SymbolIndex",
    "UnwindLookup",
    "disassemble",
    "interpret",
    "interpret_section",
    "parse_frame_section",
    "parse_lsda",
]
