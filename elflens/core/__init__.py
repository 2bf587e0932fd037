"""
ELF Lens Core Module
====================

Data models and the error taxonomy shared by the parsers and analyzers.
The analysis session lives in :mod:`elflens.core.engine`.
"""

from elflens.core.errors import (
    DecodeError,
    ElfLensError,
    ElfLookupError,
    ParseError,
    StructuralError,
)
from elflens.core.models import (
    ElfHeader,
    Instruction,
    ProgramHeader,
    SectionHeader,
    Symbol,
    SymbolQuery,
)

__all__ = [
    "DecodeError",
    "ElfHeader",
    "ElfLensError",
    "ElfLookupError",
    "Instruction",
    "ParseError",
    "ProgramHeader",
    "SectionHeader",
    "StructuralError",
    "Symbol",
    "SymbolQuery",
]
