"""
ELF Lens -- ELF Inspection Toolkit
==================================

ELF Lens reads ELF executables, shared objects and relocatable files
without executing them and answers structural questions about them.

Capabilities:
    - File, program and section header parsing (ELF32/ELF64, both byte orders)
    - Symbol tables with address lookup, filtering and demangling
    - Section content interpreters (string tables, ``.eh_frame_hdr``, raw)
    - ``.eh_frame`` / ``.debug_frame`` decoding and unwind rule evaluation
    - Function disassembly annotated with unwind rules
    - LSDA (``.gcc_except_table``) decoding into protected regions

References:
    - TIS Committee. (1995). Tool Interface Standard ELF Specification v1.2.
    - System V Application Binary Interface, AMD64 Architecture Supplement.
    - DWARF Debugging Information Format, Version 4, section 6.4.
    - Linux Standard Base Core Specification, Exception Frames.
"""

from elflens.core.engine import ElfAnalyzer
from elflens.core.errors import ElfLensError
from elflens.parsers.elf_parser import ElfFile, parse

__version__ = "1.0.0"
__all__ = [
    "ElfAnalyzer",
    "ElfFile",
    "ElfLensError",
    "parse",
]
