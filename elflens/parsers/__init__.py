"""
ELF Lens Parsers
================

Byte-level readers: the bounds-checked cursor with DWARF pointer
decoding, and the ELF structural parser.
"""

from elflens.parsers.elf_parser import ElfFile, ElfParser, parse
from elflens.parsers.reader import ByteCursor, PointerBases

__all__ = [
    "ByteCursor",
    "ElfFile",
    "ElfParser",
    "PointerBases",
    "parse",
]
