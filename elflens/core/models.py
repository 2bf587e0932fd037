"""
ELF Lens Data Models
=====================

Pydantic-based, immutable value objects produced by the ELF Lens analysis
engine.  Every model is frozen: once the structural parser or an analyser
returns a record, nothing in the engine mutates it again, which is what
makes sharing a parsed model between concurrent queries safe.

Records that describe byte ranges of the input (section contents, call
frame programs, augmentation data) store file offsets and sizes rather than
copies of the bytes; :class:`~elflens.parsers.elf_parser.ElfFile` resolves
them on demand.

References:
    - TIS Committee. (1995). Tool Interface Standard (TIS) Executable and
      Linkable Format (ELF) Specification, Version 1.2.
    - System V Application Binary Interface, Edition 4.1.
    - DWARF Debugging Information Format, Version 4, Section 6.4
      (Call Frame Information).
    - Itanium C++ ABI: Exception Handling, Section 1.5 (LSDA).
"""

from __future__ import annotations

import enum
import types
from typing import Any, Literal, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True)


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------

class ElfClass(str, enum.Enum):
    """ELF file class (address width)."""
    ELF32 = "ELF32"
    ELF64 = "ELF64"


class Endianness(str, enum.Enum):
    """Byte order of every multi-byte field in the file."""
    LITTLE = "little"
    BIG = "big"


class HeaderStatus(str, enum.Enum):
    """Whether a table entry passed its structural checks."""
    VALID = "valid"
    INVALID = "invalid"


class SymbolBinding(str, enum.Enum):
    LOCAL = "LOCAL"
    GLOBAL = "GLOBAL"
    WEAK = "WEAK"
    GNU_UNIQUE = "GNU_UNIQUE"
    OTHER = "OTHER"


class SymbolType(str, enum.Enum):
    NOTYPE = "NOTYPE"
    OBJECT = "OBJECT"
    FUNC = "FUNC"
    SECTION = "SECTION"
    FILE = "FILE"
    COMMON = "COMMON"
    TLS = "TLS"
    GNU_IFUNC = "GNU_IFUNC"
    OTHER = "OTHER"


class SymbolVisibility(str, enum.Enum):
    DEFAULT = "DEFAULT"
    INTERNAL = "INTERNAL"
    HIDDEN = "HIDDEN"
    PROTECTED = "PROTECTED"


class SectionKind(str, enum.Enum):
    """Semantic interpretation chosen for a section's content."""
    STRING_TABLE = "string_table"
    EH_FRAME_HDR = "eh_frame_hdr"
    RAW = "raw"


class RegisterRuleKind(str, enum.Enum):
    """How a register's caller value is recovered."""
    UNDEFINED = "undefined"
    SAME_VALUE = "same_value"
    OFFSET = "offset"            # saved at CFA + offset
    VAL_OFFSET = "val_offset"    # value is CFA + offset
    REGISTER = "register"        # saved in another register
    EXPRESSION = "expression"
    VAL_EXPRESSION = "val_expression"


class UnwindStatus(str, enum.Enum):
    """Call frame coverage of a single address."""
    COVERED = "covered"
    UNKNOWN = "unknown"      # the FDE exists but its program could not be decoded here
    NONE = "none"            # no FDE covers the address


# ---------------------------------------------------------------------------
# Headers
# ---------------------------------------------------------------------------

class ElfHeader(_Frozen):
    """Decoded ELF file header.

    Attributes:
        elf_class: ELF32 or ELF64.
        endianness: Byte order of the file.
        ident_version: ``EI_VERSION``.
        os_abi: ``EI_OSABI``.
        abi_version: ``EI_ABIVERSION``.
        type: ``e_type`` (relocatable, executable, shared object, core).
        machine: ``e_machine``.
        version: ``e_version``.
        entry: Entry point virtual address.
        phoff / shoff: File offsets of the program/section header tables.
        flags: Processor-specific ``e_flags``.
        ehsize: Size of this header in bytes.
        phentsize / phnum: Program header entry size and resolved count.
        shentsize / shnum: Section header entry size and resolved count.
        shstrndx: Resolved index of the section-name string table.
    """
    elf_class: ElfClass
    endianness: Endianness
    ident_version: int = 1
    os_abi: int = 0
    abi_version: int = 0
    type: int = 0
    machine: int = 0
    version: int = 1
    entry: int = 0
    phoff: int = 0
    shoff: int = 0
    flags: int = 0
    ehsize: int = 0
    phentsize: int = 0
    phnum: int = 0
    shentsize: int = 0
    shnum: int = 0
    shstrndx: int = 0

    @property
    def is_64bit(self) -> bool:
        return self.elf_class == ElfClass.ELF64

    @property
    def address_size(self) -> int:
        return 8 if self.is_64bit else 4


class SectionHeader(_Frozen):
    """One entry of the section header table.

    Entries failing a structural check are retained with
    ``status == INVALID`` and the reason in ``error``.
    """
    index: int
    name_offset: int = 0
    name: str = ""
    type: int = 0
    flags: int = 0
    addr: int = 0
    offset: int = 0
    size: int = 0
    link: int = 0
    info: int = 0
    addralign: int = 0
    entsize: int = 0
    status: HeaderStatus = HeaderStatus.VALID
    error: Optional[str] = None

    @property
    def is_valid(self) -> bool:
        return self.status == HeaderStatus.VALID

    @property
    def has_file_content(self) -> bool:
        # SHT_NOBITS (8) and SHT_NULL (0) occupy no file space
        return self.type not in (0, 8) and self.size > 0

    def contains_address(self, address: int) -> bool:
        return self.addr <= address < self.addr + self.size


class ProgramHeader(_Frozen):
    """One entry of the program header table (a segment)."""
    index: int
    type: int = 0
    flags: int = 0
    offset: int = 0
    vaddr: int = 0
    paddr: int = 0
    filesz: int = 0
    memsz: int = 0
    align: int = 0
    status: HeaderStatus = HeaderStatus.VALID
    error: Optional[str] = None

    @property
    def is_valid(self) -> bool:
        return self.status == HeaderStatus.VALID

    def contains_address(self, address: int) -> bool:
        return self.vaddr <= address < self.vaddr + self.memsz


# ---------------------------------------------------------------------------
# Symbols
# ---------------------------------------------------------------------------

class Symbol(_Frozen):
    """A symbol table entry, with its raw linker name.

    Attributes:
        index: Position inside its symbol table.
        table_index: Section index of the symbol table it came from.
        name: Raw (possibly mangled) name.
        value: Symbol value, usually a virtual address.
        size: Object size in bytes (0 when unknown).
        binding / type / visibility: Decoded ``st_info`` / ``st_other``.
        shndx: Defining section index (``0`` means undefined).
        dynamic: ``True`` when read from ``.dynsym``.
    """
    index: int
    table_index: int = 0
    name: str = ""
    value: int = 0
    size: int = 0
    binding: SymbolBinding = SymbolBinding.LOCAL
    type: SymbolType = SymbolType.NOTYPE
    visibility: SymbolVisibility = SymbolVisibility.DEFAULT
    shndx: int = 0
    dynamic: bool = False

    @property
    def is_defined(self) -> bool:
        return self.shndx != 0

    @property
    def end(self) -> int:
        return self.value + self.size

    def contains(self, address: int) -> bool:
        return self.value <= address < self.value + self.size


class SymbolQuery(_Frozen):
    """Attribute filter for :meth:`SymbolIndex.filter`.

    Every populated field is one predicate; predicates are AND-composed.
    ``None`` means "don't filter on this attribute".
    """
    bindings: Optional[frozenset[SymbolBinding]] = None
    types: Optional[frozenset[SymbolType]] = None
    visibilities: Optional[frozenset[SymbolVisibility]] = None
    defined: Optional[bool] = None
    dynamic: Optional[bool] = None
    name_pattern: Optional[str] = None
    exclude_language_runtime: bool = False


# ---------------------------------------------------------------------------
# Section views
# ---------------------------------------------------------------------------

class StringEntry(_Frozen):
    offset: int
    value: str


class StringTableView(_Frozen):
    """NUL-separated strings with their byte offsets."""
    kind: Literal["string_table"] = "string_table"
    section_offset: int = 0
    size: int = 0
    entries: tuple[StringEntry, ...] = ()


class EhFrameHdrEntry(_Frozen):
    initial_location: int
    fde_address: int


class EhFrameHdrView(_Frozen):
    """Decoded ``.eh_frame_hdr`` binary search table."""
    kind: Literal["eh_frame_hdr"] = "eh_frame_hdr"
    section_offset: int = 0
    size: int = 0
    version: int = 1
    eh_frame_ptr_encoding: int = 0xFF
    fde_count_encoding: int = 0xFF
    table_encoding: int = 0xFF
    eh_frame_ptr: Optional[int] = None
    fde_count: int = 0
    entries: tuple[EhFrameHdrEntry, ...] = ()


class RawView(_Frozen):
    """Fallback view: a byte window for hexdump presentation.

    ``error`` records why a richer interpretation was abandoned.
    """
    kind: Literal["raw"] = "raw"
    section_offset: int = 0
    size: int = 0
    error: Optional[str] = None


SectionView = Union[StringTableView, EhFrameHdrView, RawView]


# ---------------------------------------------------------------------------
# Call frame information
# ---------------------------------------------------------------------------

class CieRecord(_Frozen):
    """Common Information Entry.

    ``program_offset`` / ``program_size`` locate the initial instructions in
    the file; ``augmentation_data_offset`` / ``augmentation_data_size`` do
    the same for the augmentation data.
    """
    offset: int
    length: int = 0
    version: int = 1
    augmentation: str = ""
    address_size: int = 8
    segment_size: int = 0
    code_alignment_factor: int = 1
    data_alignment_factor: int = 1
    return_address_register: int = 0
    fde_encoding: int = 0
    lsda_encoding: int = 0xFF
    personality_encoding: int = 0xFF
    personality: Optional[int] = None
    signal_frame: bool = False
    augmentation_data_offset: int = 0
    augmentation_data_size: int = 0
    program_offset: int = 0
    program_size: int = 0


class FdeRecord(_Frozen):
    """Frame Description Entry covering ``[initial_location, end)``."""
    offset: int
    length: int = 0
    cie_offset: int
    initial_location: int
    address_range: int
    lsda: Optional[int] = None
    augmentation_data_offset: int = 0
    augmentation_data_size: int = 0
    program_offset: int = 0
    program_size: int = 0

    @property
    def end(self) -> int:
        return self.initial_location + self.address_range

    def contains(self, address: int) -> bool:
        return self.initial_location <= address < self.end


class CallFrameInstruction(_Frozen):
    """One decoded call frame opcode with its operands."""
    offset: int
    opcode: int
    name: str
    operands: tuple[Any, ...] = ()


class CfaDefinition(_Frozen):
    """CFA = register + offset, or a DWARF expression (hex-encoded)."""
    register: Optional[int] = None
    offset: int = 0
    expression: Optional[str] = None


class RegisterRule(_Frozen):
    kind: RegisterRuleKind = RegisterRuleKind.UNDEFINED
    offset: int = 0
    register: Optional[int] = None
    expression: Optional[str] = None


class CfaRule(_Frozen):
    """Register recovery rules in effect over an address range.

    ``registers`` is a read-only mapping.
    """
    cfa: CfaDefinition = Field(default_factory=CfaDefinition)
    registers: Mapping[int, RegisterRule] = Field(default_factory=dict)

    @field_validator("registers", mode="after")
    @classmethod
    def _freeze_registers(cls, value: Mapping[int, RegisterRule]) -> Mapping[int, RegisterRule]:
        return types.MappingProxyType(dict(value))

    @field_serializer("registers")
    def _dump_registers(self, value: Mapping[int, RegisterRule]) -> dict[int, RegisterRule]:
        return dict(value)


class UnwindRange(_Frozen):
    """``rule`` is valid for ``[start, end)``.

    ``known == False`` marks "unknown unwind info": the FDE's program could
    not be decoded past ``start``.
    """
    start: int
    end: int
    fde_offset: int = 0
    rule: Optional[CfaRule] = None
    known: bool = True
    error: Optional[str] = None


# ---------------------------------------------------------------------------
# Disassembly
# ---------------------------------------------------------------------------

class UnwindAnnotation(_Frozen):
    status: UnwindStatus
    rule: Optional[CfaRule] = None
    changed: bool = False


class Instruction(_Frozen):
    """One decoded machine instruction.

    Invalid pseudo-instructions (``valid == False``) have size 1 and stand
    in for a byte the decoder rejected.
    """
    address: int
    size: int
    raw: bytes = b""
    mnemonic: str = ""
    operands: str = ""
    valid: bool = True
    target_symbol: Optional[str] = None
    unwind: Optional[UnwindAnnotation] = None

    @property
    def text(self) -> str:
        if not self.valid:
            return "(bad)"
        return f"{self.mnemonic} {self.operands}".strip()

    @property
    def next_address(self) -> int:
        return self.address + self.size


# ---------------------------------------------------------------------------
# Exception handling
# ---------------------------------------------------------------------------

class EhRegion(_Frozen):
    """One call-site record of an LSDA.

    ``start``, ``end`` and ``landing_pad`` are offsets relative to
    ``function_start``.  ``landing_pad is None`` means no landing pad:
    the exception propagates.  ``action == 0`` means cleanup only.
    """
    function_start: int
    start: int
    end: int
    landing_pad: Optional[int] = None
    action: int = 0
    type_filters: tuple[int, ...] = ()

    @property
    def absolute_start(self) -> int:
        return self.function_start + self.start

    @property
    def absolute_end(self) -> int:
        return self.function_start + self.end

    @property
    def absolute_landing_pad(self) -> Optional[int]:
        if self.landing_pad is None:
            return None
        return self.function_start + self.landing_pad


class LsdaTable(_Frozen):
    """Decoded ``.gcc_except_table`` header and call-site table.

    ``ttype_base`` is the address the type table is indexed backwards from.
    """
    address: int
    function_start: int
    lpstart: int
    ttype_encoding: int = 0xFF
    ttype_base: Optional[int] = None
    call_site_encoding: int = 0x01
    regions: tuple[EhRegion, ...] = ()
