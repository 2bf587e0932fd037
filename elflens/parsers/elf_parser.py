"""
ELF Structural Parser
======================

Struct-based parser for the Executable and Linkable Format (ELF), the
standard binary format for Unix-like operating systems including Linux,
FreeBSD, and Solaris.

All parsing is performed using :mod:`struct` without any external libraries
such as ``pyelftools``.  Both 32-bit (ELF32) and 64-bit (ELF64) variants in
either byte order are supported.

The parser validates, in order, the magic number, ``EI_CLASS`` and
``EI_DATA`` before interpreting any other field, because these three
determine every subsequent integer width and byte order.  Only a broken
file header is fatal: every section and program header is bounds-checked
independently, and an entry that fails a check is kept as an
``INVALID`` marker carrying the reason instead of aborting the parse.

The parser extracts:
    - ELF header (magic, class, endianness, type, machine, entry point)
    - Section headers, with names resolved once through ``e_shstrndx``
    - Program headers / segments
    - Dynamic metadata (interpreter, ``DT_NEEDED``, soname, rpath, runpath)

Extended numbering (``e_shnum == 0``, ``SHN_XINDEX``, ``PN_XNUM``) is
honoured by reading the real counts from section header 0.

References:
    - TIS Committee. (1995). Tool Interface Standard (TIS) Executable and
      Linkable Format (ELF) Specification, Version 1.2.
    - System V Application Binary Interface, Edition 4.1 (gABI update,
      "Extended Section Numbering").
    - Linux man page: elf(5).
"""

from __future__ import annotations

import struct
from typing import TYPE_CHECKING, Any, Iterator, Optional, Union

from elflens.core.errors import (
    BadClass,
    BadEndianness,
    BadMagic,
    InvalidIndex,
    InvalidTableCount,
    SectionNotFound,
    TruncatedHeader,
)
from elflens.core.models import (
    ElfClass,
    ElfHeader,
    Endianness,
    HeaderStatus,
    ProgramHeader,
    SectionHeader,
)
from elflens.parsers.reader import ByteCursor

if TYPE_CHECKING:
    from shared.logger import LensLogger


# ---------------------------------------------------------------------------
# ELF Constants
# ---------------------------------------------------------------------------

# Magic number
ELF_MAGIC: bytes = b"\x7fELF"
EI_NIDENT: int = 16

# ELF Class (32-bit vs 64-bit)
ELFCLASS32: int = 1
ELFCLASS64: int = 2

# Data encoding (endianness)
ELFDATA2LSB: int = 1  # Little-endian
ELFDATA2MSB: int = 2  # Big-endian

# ELF type
ET_NONE: int = 0
ET_REL: int = 1   # Relocatable
ET_EXEC: int = 2  # Executable
ET_DYN: int = 3   # Shared object / PIE
ET_CORE: int = 4  # Core dump

_ET_NAMES: dict[int, str] = {
    ET_NONE: "NONE",
    ET_REL: "REL (Relocatable file)",
    ET_EXEC: "EXEC (Executable file)",
    ET_DYN: "DYN (Shared object file)",
    ET_CORE: "CORE (Core file)",
}

# Machine architectures
EM_NONE: int = 0
EM_SPARC: int = 2
EM_386: int = 3
EM_68K: int = 4
EM_MIPS: int = 8
EM_PPC: int = 20
EM_PPC64: int = 21
EM_S390: int = 22
EM_ARM: int = 40
EM_SPARCV9: int = 43
EM_X86_64: int = 62
EM_AARCH64: int = 183
EM_RISCV: int = 243
EM_LOONGARCH: int = 258

_EM_NAMES: dict[int, str] = {
    EM_NONE: "None",
    EM_SPARC: "SPARC",
    EM_386: "Intel 80386",
    EM_68K: "Motorola 68000",
    EM_MIPS: "MIPS R3000",
    EM_PPC: "PowerPC",
    EM_PPC64: "PowerPC64",
    EM_S390: "IBM S/390",
    EM_ARM: "ARM",
    EM_SPARCV9: "SPARC v9",
    EM_X86_64: "Advanced Micro Devices X86-64",
    EM_AARCH64: "AArch64",
    EM_RISCV: "RISC-V",
    EM_LOONGARCH: "LoongArch",
}

_OSABI_NAMES: dict[int, str] = {
    0: "UNIX - System V",
    1: "HP-UX",
    2: "NetBSD",
    3: "UNIX - GNU",
    6: "UNIX - Solaris",
    7: "UNIX - AIX",
    8: "UNIX - IRIX",
    9: "UNIX - FreeBSD",
    12: "UNIX - OpenBSD",
    97: "ARM",
    255: "Standalone App",
}

# Section header types
SHT_NULL: int = 0
SHT_PROGBITS: int = 1
SHT_SYMTAB: int = 2
SHT_STRTAB: int = 3
SHT_RELA: int = 4
SHT_HASH: int = 5
SHT_DYNAMIC: int = 6
SHT_NOTE: int = 7
SHT_NOBITS: int = 8
SHT_REL: int = 9
SHT_DYNSYM: int = 11
SHT_INIT_ARRAY: int = 14
SHT_FINI_ARRAY: int = 15
SHT_PREINIT_ARRAY: int = 16
SHT_GROUP: int = 17
SHT_SYMTAB_SHNDX: int = 18
SHT_X86_64_UNWIND: int = 0x70000001
SHT_GNU_ATTRIBUTES: int = 0x6FFFFFF5
SHT_GNU_HASH: int = 0x6FFFFFF6
SHT_GNU_VERDEF: int = 0x6FFFFFFD
SHT_GNU_VERNEED: int = 0x6FFFFFFE
SHT_GNU_VERSYM: int = 0x6FFFFFFF

_SHT_NAMES: dict[int, str] = {
    SHT_NULL: "NULL",
    SHT_PROGBITS: "PROGBITS",
    SHT_SYMTAB: "SYMTAB",
    SHT_STRTAB: "STRTAB",
    SHT_RELA: "RELA",
    SHT_HASH: "HASH",
    SHT_DYNAMIC: "DYNAMIC",
    SHT_NOTE: "NOTE",
    SHT_NOBITS: "NOBITS",
    SHT_REL: "REL",
    SHT_DYNSYM: "DYNSYM",
    SHT_INIT_ARRAY: "INIT_ARRAY",
    SHT_FINI_ARRAY: "FINI_ARRAY",
    SHT_PREINIT_ARRAY: "PREINIT_ARRAY",
    SHT_GROUP: "GROUP",
    SHT_SYMTAB_SHNDX: "SYMTAB_SHNDX",
    SHT_X86_64_UNWIND: "X86_64_UNWIND",
    SHT_GNU_ATTRIBUTES: "GNU_ATTRIBUTES",
    SHT_GNU_HASH: "GNU_HASH",
    SHT_GNU_VERDEF: "VERDEF",
    SHT_GNU_VERNEED: "VERNEED",
    SHT_GNU_VERSYM: "VERSYM",
}

# Section header flags
SHF_WRITE: int = 0x1
SHF_ALLOC: int = 0x2
SHF_EXECINSTR: int = 0x4
SHF_MERGE: int = 0x10
SHF_STRINGS: int = 0x20
SHF_INFO_LINK: int = 0x40
SHF_TLS: int = 0x400

# Program header types
PT_NULL: int = 0
PT_LOAD: int = 1
PT_DYNAMIC: int = 2
PT_INTERP: int = 3
PT_NOTE: int = 4
PT_SHLIB: int = 5
PT_PHDR: int = 6
PT_TLS: int = 7
PT_GNU_EH_FRAME: int = 0x6474E550
PT_GNU_STACK: int = 0x6474E551
PT_GNU_RELRO: int = 0x6474E552
PT_GNU_PROPERTY: int = 0x6474E553

_PT_NAMES: dict[int, str] = {
    PT_NULL: "NULL",
    PT_LOAD: "LOAD",
    PT_DYNAMIC: "DYNAMIC",
    PT_INTERP: "INTERP",
    PT_NOTE: "NOTE",
    PT_SHLIB: "SHLIB",
    PT_PHDR: "PHDR",
    PT_TLS: "TLS",
    PT_GNU_EH_FRAME: "GNU_EH_FRAME",
    PT_GNU_STACK: "GNU_STACK",
    PT_GNU_RELRO: "GNU_RELRO",
    PT_GNU_PROPERTY: "GNU_PROPERTY",
}

# Program header flags
PF_X: int = 0x1  # Execute
PF_W: int = 0x2  # Write
PF_R: int = 0x4  # Read

# Dynamic tags
DT_NULL: int = 0
DT_NEEDED: int = 1
DT_SONAME: int = 14
DT_RPATH: int = 15
DT_RUNPATH: int = 29

# Special section indices
SHN_UNDEF: int = 0
SHN_LORESERVE: int = 0xFF00
SHN_ABS: int = 0xFFF1
SHN_COMMON: int = 0xFFF2
SHN_XINDEX: int = 0xFFFF

# Extended program header count marker
PN_XNUM: int = 0xFFFF

# Header record layouts: (ELF header, section header, program header)
_EHDR_FMT: dict[int, str] = {ELFCLASS32: "HHIIIIIHHHHHH", ELFCLASS64: "HHIQQQIHHHHHH"}
_SHDR_FMT: dict[int, str] = {ELFCLASS32: "IIIIIIIIII", ELFCLASS64: "IIQQQQIIQQ"}
_PHDR_FMT: dict[int, str] = {ELFCLASS32: "IIIIIIII", ELFCLASS64: "IIQQQQQQ"}

_SHDR_FIELDS = ("name_offset", "type", "flags", "addr", "offset", "size",
                "link", "info", "addralign", "entsize")
# Elf32_Phdr places p_flags after p_memsz; Elf64_Phdr right after p_type
_PHDR_FIELDS: dict[int, tuple[str, ...]] = {
    ELFCLASS32: ("type", "offset", "vaddr", "paddr", "filesz", "memsz", "flags", "align"),
    ELFCLASS64: ("type", "flags", "offset", "vaddr", "paddr", "filesz", "memsz", "align"),
}


def section_type_name(sh_type: int) -> str:
    return _SHT_NAMES.get(sh_type, f"0x{sh_type:x}")


def segment_type_name(p_type: int) -> str:
    return _PT_NAMES.get(p_type, f"0x{p_type:x}")


def section_flags_str(flags: int) -> str:
    """Convert section flags bitmask to a readable string.

    Args:
        flags: Section header flags value (sh_flags).

    Returns:
        String like ``"WAX"`` for Write+Alloc+Exec.
    """
    parts: list[str] = []
    for bit, letter in ((SHF_WRITE, "W"), (SHF_ALLOC, "A"), (SHF_EXECINSTR, "X"),
                        (SHF_MERGE, "M"), (SHF_STRINGS, "S"), (SHF_INFO_LINK, "I"),
                        (SHF_TLS, "T")):
        if flags & bit:
            parts.append(letter)
    return "".join(parts) if parts else "-"


def segment_flags_str(flags: int) -> str:
    """Convert program header flags to a readable string like ``"R-X"``."""
    return "".join((
        "R" if flags & PF_R else "-",
        "W" if flags & PF_W else "-",
        "X" if flags & PF_X else "-",
    ))


def _is_power_of_two(value: int) -> bool:
    return value > 0 and value & (value - 1) == 0


def _readonly_view(data: Union[bytes, bytearray, memoryview]) -> memoryview:
    """Read-only byte view over *data*; the buffer itself is not copied."""
    view = data if isinstance(data, memoryview) else memoryview(data)
    return view.cast("B").toreadonly()


# ---------------------------------------------------------------------------
# Parsed model
# ---------------------------------------------------------------------------

class ElfFile:
    """A validated, read-only model of one ELF image.

    The instance owns the byte buffer; every derived record (sections,
    program headers, symbols, call frame records) refers to it by offset.
    Nothing here mutates after :func:`parse` returns, so one ``ElfFile``
    can be shared freely between threads.

    Usage::

        elf = parse(Path("a.out").read_bytes())
        text = elf.find_section(".text")
        code = elf.section_data(text)
    """

    def __init__(
        self,
        data: Union[bytes, bytearray, memoryview],
        header: ElfHeader,
        sections: tuple[SectionHeader, ...],
        program_headers: tuple[ProgramHeader, ...],
        *,
        interpreter: str = "",
        needed: tuple[str, ...] = (),
        soname: str = "",
        rpath: str = "",
        runpath: str = "",
    ) -> None:
        self._data: memoryview = _readonly_view(data)
        self.header: ElfHeader = header
        self.sections: tuple[SectionHeader, ...] = sections
        self.program_headers: tuple[ProgramHeader, ...] = program_headers
        self.interpreter: str = interpreter
        self.needed: tuple[str, ...] = needed
        self.soname: str = soname
        self.rpath: str = rpath
        self.runpath: str = runpath

    # ------------------------------------------------------------------ #
    #  File-wide properties
    # ------------------------------------------------------------------ #

    @property
    def data(self) -> memoryview:
        return self._data

    @property
    def size(self) -> int:
        return len(self._data)

    @property
    def is_64bit(self) -> bool:
        return self.header.elf_class == ElfClass.ELF64

    @property
    def address_size(self) -> int:
        return 8 if self.is_64bit else 4

    @property
    def little_endian(self) -> bool:
        return self.header.endianness == Endianness.LITTLE

    @property
    def type_name(self) -> str:
        return _ET_NAMES.get(self.header.type, f"0x{self.header.type:x}")

    @property
    def machine_name(self) -> str:
        return _EM_NAMES.get(self.header.machine, f"unknown({self.header.machine})")

    @property
    def os_abi_name(self) -> str:
        return _OSABI_NAMES.get(self.header.os_abi, f"0x{self.header.os_abi:x}")

    # ------------------------------------------------------------------ #
    #  Sections
    # ------------------------------------------------------------------ #

    def section(self, index: int) -> SectionHeader:
        """Return the section header at *index*.

        Raises:
            InvalidIndex: *index* is outside the section header table.
        """
        if index < 0 or index >= len(self.sections):
            raise InvalidIndex("section", index, len(self.sections))
        return self.sections[index]

    def get_section(self, name: str) -> Optional[SectionHeader]:
        """Return the first valid section called *name*, or ``None``."""
        for sh in self.sections:
            if sh.name == name and sh.is_valid:
                return sh
        return None

    def find_section(self, name: str) -> SectionHeader:
        """Like :meth:`get_section` but raises :class:`SectionNotFound`."""
        sh = self.get_section(name)
        if sh is None:
            raise SectionNotFound(name)
        return sh

    def sections_of_type(self, sh_type: int) -> Iterator[SectionHeader]:
        for sh in self.sections:
            if sh.type == sh_type and sh.is_valid:
                yield sh

    def section_data(self, section: SectionHeader) -> memoryview:
        """Read-only view of a section's file contents.

        ``SHT_NOBITS`` sections and invalid markers yield an empty view.
        """
        if not section.is_valid or not section.has_file_content:
            return self._data[0:0]
        return self._data[section.offset:section.offset + section.size]

    def section_window(
        self,
        section: SectionHeader,
        skip: int = 0,
        size: Optional[int] = None,
    ) -> memoryview:
        """Sub-range ``[skip, skip + size)`` of a section, clipped to its end."""
        data = self.section_data(section)
        skip = max(0, min(skip, len(data)))
        end = len(data) if size is None else min(len(data), skip + max(0, size))
        return data[skip:end]

    def section_containing(self, address: int) -> Optional[SectionHeader]:
        """Return the allocated section whose address range holds *address*."""
        for sh in self.sections:
            if sh.is_valid and sh.flags & SHF_ALLOC and sh.size and sh.contains_address(address):
                return sh
        return None

    def cursor(
        self,
        offset: int,
        size: int,
        *,
        base_address: int = 0,
    ) -> ByteCursor:
        """Return a :class:`ByteCursor` over ``[offset, offset + size)`` of the file."""
        return ByteCursor(
            self._data,
            offset,
            offset + size,
            little_endian=self.little_endian,
            address_size=self.address_size,
            base_address=base_address,
        )

    def section_cursor(self, section: SectionHeader) -> ByteCursor:
        data = self.section_data(section)
        return ByteCursor(
            data,
            little_endian=self.little_endian,
            address_size=self.address_size,
            base_address=section.addr,
        )

    # ------------------------------------------------------------------ #
    #  Address translation
    # ------------------------------------------------------------------ #

    def vaddr_to_offset(self, address: int) -> Optional[int]:
        """Translate a virtual address to a file offset.

        Uses the containing valid ``PT_LOAD`` segment, falling back to a
        containing allocated section (relocatable objects have no
        segments).  Returns ``None`` for unmapped addresses.
        """
        for ph in self.program_headers:
            if (ph.type == PT_LOAD and ph.is_valid
                    and ph.vaddr <= address < ph.vaddr + ph.filesz):
                return ph.offset + (address - ph.vaddr)
        sh = self.section_containing(address)
        if sh is not None and sh.has_file_content:
            return sh.offset + (address - sh.addr)
        return None

    def read_at(self, address: int, size: int) -> Optional[memoryview]:
        """Read up to *size* bytes at virtual *address*; ``None`` if unmapped."""
        offset = self.vaddr_to_offset(address)
        if offset is None or offset >= len(self._data):
            return None
        return self._data[offset:offset + size]

    def cursor_at(self, address: int) -> Optional[ByteCursor]:
        """Cursor from *address* to the end of its containing section."""
        sh = self.section_containing(address)
        if sh is not None and sh.has_file_content:
            start = sh.offset + (address - sh.addr)
            end = sh.offset + sh.size
            return self.cursor(start, end - start, base_address=address)
        offset = self.vaddr_to_offset(address)
        if offset is None:
            return None
        return self.cursor(offset, len(self._data) - offset, base_address=address)

    def __repr__(self) -> str:
        return (
            f"<ElfFile {self.header.elf_class.value} {self.header.endianness.value} "
            f"{self.machine_name} sections={len(self.sections)} "
            f"segments={len(self.program_headers)}>"
        )


# ---------------------------------------------------------------------------
# ELF Parser
# ---------------------------------------------------------------------------

class ElfParser:
    """Struct-based ELF parser producing an :class:`ElfFile`.

    Parses both ELF32 and ELF64 binaries using only the Python standard
    library :mod:`struct` module.

    Reference:
        TIS Committee. (1995). Tool Interface Standard (TIS) Executable and
        Linkable Format (ELF) Specification, Version 1.2.

    Usage::

        elf = ElfParser(raw_bytes).parse()
    """

    def __init__(
        self,
        data: Union[bytes, bytearray, memoryview],
        logger: Optional[LensLogger] = None,
    ) -> None:
        self._data: memoryview = _readonly_view(data)
        self._logger = logger
        self._class: int = ELFCLASS64
        self._endian: str = "<"

    def _warn(self, msg: str, *args: Any) -> None:
        if self._logger is not None:
            self._logger.warning(msg, *args)

    # ------------------------------------------------------------------ #
    #  Public interface
    # ------------------------------------------------------------------ #

    def parse(self) -> ElfFile:
        """Parse the ELF image.

        Raises:
            BadMagic, BadClass, BadEndianness, TruncatedHeader,
            InvalidTableCount: The file header cannot be interpreted.
        """
        raw = self._parse_elf_header()
        section0 = self._read_section0(raw)

        shnum = raw["e_shnum"]
        if shnum == 0 and raw["e_shoff"] != 0 and section0 is not None:
            shnum = section0["size"]
        shstrndx = raw["e_shstrndx"]
        if shstrndx == SHN_XINDEX and section0 is not None:
            shstrndx = section0["link"]
        phnum = raw["e_phnum"]
        if phnum == PN_XNUM and section0 is not None:
            phnum = section0["info"]
        if raw["e_shoff"] == 0:
            shnum = 0
        if raw["e_phoff"] == 0:
            phnum = 0

        self._check_entry_size("section header", shnum, raw["e_shentsize"], _SHDR_FMT)
        self._check_entry_size("program header", phnum, raw["e_phentsize"], _PHDR_FMT)

        header = ElfHeader(
            elf_class=ElfClass.ELF64 if self._class == ELFCLASS64 else ElfClass.ELF32,
            endianness=Endianness.LITTLE if self._endian == "<" else Endianness.BIG,
            ident_version=raw["ei_version"],
            os_abi=raw["ei_osabi"],
            abi_version=raw["ei_abiversion"],
            type=raw["e_type"],
            machine=raw["e_machine"],
            version=raw["e_version"],
            entry=raw["e_entry"],
            phoff=raw["e_phoff"],
            shoff=raw["e_shoff"],
            flags=raw["e_flags"],
            ehsize=raw["e_ehsize"],
            phentsize=raw["e_phentsize"],
            phnum=phnum,
            shentsize=raw["e_shentsize"],
            shnum=shnum,
            shstrndx=shstrndx,
        )

        sections = self._parse_section_headers(header)
        program_headers = self._parse_program_headers(header)
        elf = ElfFile(self._data, header, sections, program_headers)

        elf.interpreter = self._parse_interpreter(program_headers)
        self._parse_dynamic_section(elf)
        return elf

    # ------------------------------------------------------------------ #
    #  ELF header parsing
    # ------------------------------------------------------------------ #

    def _parse_elf_header(self) -> dict[str, int]:
        """Validate ``e_ident`` and decode the file header."""
        data = self._data
        if data[:4] != ELF_MAGIC:
            raise BadMagic(data[:4])
        if len(data) < 5:
            raise TruncatedHeader("e_ident", 0, EI_NIDENT, len(data))
        if data[4] not in (ELFCLASS32, ELFCLASS64):
            raise BadClass(data[4])
        if len(data) < 6:
            raise TruncatedHeader("e_ident", 0, EI_NIDENT, len(data))
        if data[5] not in (ELFDATA2LSB, ELFDATA2MSB):
            raise BadEndianness(data[5])

        self._class = data[4]
        self._endian = "<" if data[5] == ELFDATA2LSB else ">"

        fmt = self._endian + _EHDR_FMT[self._class]
        needed = EI_NIDENT + struct.calcsize(fmt)
        if len(data) < needed:
            raise TruncatedHeader("ELF header", 0, needed, len(data))

        (
            e_type, e_machine, e_version, e_entry,
            e_phoff, e_shoff, e_flags, e_ehsize,
            e_phentsize, e_phnum, e_shentsize, e_shnum,
            e_shstrndx,
        ) = struct.unpack_from(fmt, data, EI_NIDENT)

        return {
            "ei_version": data[6],
            "ei_osabi": data[7],
            "ei_abiversion": data[8],
            "e_type": e_type,
            "e_machine": e_machine,
            "e_version": e_version,
            "e_entry": e_entry,
            "e_phoff": e_phoff,
            "e_shoff": e_shoff,
            "e_flags": e_flags,
            "e_ehsize": e_ehsize,
            "e_phentsize": e_phentsize,
            "e_phnum": e_phnum,
            "e_shentsize": e_shentsize,
            "e_shnum": e_shnum,
            "e_shstrndx": e_shstrndx,
        }

    def _check_entry_size(
        self,
        table: str,
        count: int,
        entry_size: int,
        formats: dict[int, str],
    ) -> None:
        expected = struct.calcsize("<" + formats[self._class])
        if count and entry_size < expected:
            raise InvalidTableCount(table, count, entry_size, expected)

    def _unpack_section(self, offset: int) -> Optional[dict[str, int]]:
        fmt = self._endian + _SHDR_FMT[self._class]
        if offset < 0 or offset + struct.calcsize(fmt) > len(self._data):
            return None
        return dict(zip(_SHDR_FIELDS, struct.unpack_from(fmt, self._data, offset)))

    def _read_section0(self, raw: dict[str, int]) -> Optional[dict[str, int]]:
        """Section header 0 carries the extended-numbering overflow fields."""
        if raw["e_shoff"] == 0:
            return None
        return self._unpack_section(raw["e_shoff"])

    # ------------------------------------------------------------------ #
    #  Section header parsing
    # ------------------------------------------------------------------ #

    def _parse_section_headers(self, header: ElfHeader) -> tuple[SectionHeader, ...]:
        """Parse every section header; failing entries become INVALID markers."""
        if header.shnum == 0:
            return ()

        file_size = len(self._data)
        entry_size = struct.calcsize("<" + _SHDR_FMT[self._class])
        raws: list[tuple[Optional[dict[str, int]], Optional[str]]] = []

        for i in range(header.shnum):
            offset = header.shoff + i * header.shentsize
            fields = self._unpack_section(offset)
            if fields is None:
                raws.append((None, (
                    f"truncated section header at offset {offset:#x}: "
                    f"needed {entry_size} bytes, have {max(0, file_size - offset)}"
                )))
                dropped = header.shnum - i - 1
                if dropped:
                    self._warn(
                        "Section header table runs past end of file; "
                        "%d further entries not parsed", dropped,
                    )
                break

            error: Optional[str] = None
            if i != 0 or fields["type"] != SHT_NULL:
                end = fields["offset"] + fields["size"]
                if fields["type"] != SHT_NOBITS and fields["size"] and end > file_size:
                    error = (
                        f"contents [{fields['offset']:#x}, {end:#x}) exceed "
                        f"file size {file_size:#x}"
                    )
                elif fields["link"] and fields["link"] >= header.shnum:
                    error = (
                        f"sh_link {fields['link']} refers to a non-existent "
                        f"section (have {header.shnum})"
                    )
            raws.append((fields, error))

        names = self._resolve_section_names(header, raws)

        sections: list[SectionHeader] = []
        for i, (fields, error) in enumerate(raws):
            if fields is None:
                sections.append(SectionHeader(
                    index=i, status=HeaderStatus.INVALID, error=error,
                ))
                continue
            if error is not None:
                self._warn("Section %d is invalid: %s", i, error)
            sections.append(SectionHeader(
                index=i,
                name=names[i],
                status=HeaderStatus.INVALID if error else HeaderStatus.VALID,
                error=error,
                **fields,
            ))
        return tuple(sections)

    def _resolve_section_names(
        self,
        header: ElfHeader,
        raws: list[tuple[Optional[dict[str, int]], Optional[str]]],
    ) -> list[str]:
        """Resolve names from the section header string table, once."""
        names = [""] * len(raws)
        index = header.shstrndx
        if index == SHN_UNDEF:
            return names
        if index >= len(raws):
            self._warn("e_shstrndx %d is out of range; section names unavailable", index)
            return names
        strtab, error = raws[index]
        if strtab is None or error is not None:
            self._warn("Section name string table %d is invalid; section names unavailable",
                       index)
            return names

        table = bytes(self._data[strtab["offset"]:strtab["offset"] + strtab["size"]])
        for i, (fields, _) in enumerate(raws):
            if fields is not None:
                names[i] = self._read_cstring(table, fields["name_offset"])
        return names

    # ------------------------------------------------------------------ #
    #  Program header parsing
    # ------------------------------------------------------------------ #

    def _parse_program_headers(self, header: ElfHeader) -> tuple[ProgramHeader, ...]:
        """Parse all program headers (segments)."""
        if header.phnum == 0:
            return ()

        file_size = len(self._data)
        fmt = self._endian + _PHDR_FMT[self._class]
        entry_size = struct.calcsize(fmt)
        names = _PHDR_FIELDS[self._class]
        result: list[ProgramHeader] = []

        for i in range(header.phnum):
            offset = header.phoff + i * header.phentsize
            if offset + entry_size > file_size:
                result.append(ProgramHeader(
                    index=i,
                    status=HeaderStatus.INVALID,
                    error=(
                        f"truncated program header at offset {offset:#x}: "
                        f"needed {entry_size} bytes, have {max(0, file_size - offset)}"
                    ),
                ))
                dropped = header.phnum - i - 1
                if dropped:
                    self._warn(
                        "Program header table runs past end of file; "
                        "%d further entries not parsed", dropped,
                    )
                break

            fields = dict(zip(names, struct.unpack_from(fmt, self._data, offset)))
            error: Optional[str] = None
            if fields["filesz"] > fields["memsz"]:
                error = f"p_filesz {fields['filesz']:#x} exceeds p_memsz {fields['memsz']:#x}"
            elif fields["align"] and not _is_power_of_two(fields["align"]):
                error = f"p_align {fields['align']:#x} is not a power of two"
            elif fields["offset"] + fields["filesz"] > file_size:
                error = (
                    f"segment [{fields['offset']:#x}, "
                    f"{fields['offset'] + fields['filesz']:#x}) exceeds "
                    f"file size {file_size:#x}"
                )
            if error is not None:
                self._warn("Program header %d is invalid: %s", i, error)
            result.append(ProgramHeader(
                index=i,
                status=HeaderStatus.INVALID if error else HeaderStatus.VALID,
                error=error,
                **fields,
            ))
        return tuple(result)

    def _parse_interpreter(self, program_headers: tuple[ProgramHeader, ...]) -> str:
        """Return the PT_INTERP string (dynamic linker path)."""
        for ph in program_headers:
            if ph.type == PT_INTERP and ph.is_valid:
                raw = self._data[ph.offset:ph.offset + ph.filesz]
                return bytes(raw).rstrip(b"\x00").decode("ascii", errors="replace")
        return ""

    # ------------------------------------------------------------------ #
    #  Dynamic section parsing
    # ------------------------------------------------------------------ #

    def _parse_dynamic_section(self, elf: ElfFile) -> None:
        """Parse the .dynamic section for DT_NEEDED, DT_SONAME, DT_RPATH and DT_RUNPATH."""
        dynamic_sh = next(elf.sections_of_type(SHT_DYNAMIC), None)
        if dynamic_sh is None:
            return

        dynstr = b""
        if dynamic_sh.link < len(elf.sections):
            link_sh = elf.sections[dynamic_sh.link]
            if link_sh.is_valid and link_sh.type == SHT_STRTAB:
                dynstr = bytes(elf.section_data(link_sh))
        if not dynstr:
            self._warn("Dynamic section has no usable string table")
            return

        fmt = self._endian + ("qQ" if self._class == ELFCLASS64 else "iI")
        entry_size = struct.calcsize(fmt)
        data = elf.section_data(dynamic_sh)
        needed: list[str] = []

        for offset in range(0, len(data) - entry_size + 1, entry_size):
            d_tag, d_val = struct.unpack_from(fmt, data, offset)
            if d_tag == DT_NULL:
                break
            if d_tag == DT_NEEDED:
                needed.append(self._read_cstring(dynstr, d_val))
            elif d_tag == DT_SONAME:
                elf.soname = self._read_cstring(dynstr, d_val)
            elif d_tag == DT_RPATH:
                elf.rpath = self._read_cstring(dynstr, d_val)
            elif d_tag == DT_RUNPATH:
                elf.runpath = self._read_cstring(dynstr, d_val)
        elf.needed = tuple(needed)

    # ------------------------------------------------------------------ #
    #  Utility methods
    # ------------------------------------------------------------------ #

    @staticmethod
    def _read_cstring(data: bytes, offset: int) -> str:
        """Read a NUL-terminated string; out-of-range offsets yield ``""``."""
        if offset < 0 or offset >= len(data):
            return ""
        end = data.find(b"\x00", offset)
        if end == -1:
            end = len(data)
        return data[offset:end].decode("utf-8", errors="replace")


def parse(
    buffer: Union[bytes, bytearray, memoryview],
    logger: Optional[LensLogger] = None,
) -> ElfFile:
    """Parse *buffer* into an :class:`ElfFile` (see :class:`ElfParser`)."""
    return ElfParser(buffer, logger=logger).parse()
