"""Shared fixtures: an in-memory ELF image builder and fake collaborators."""

from __future__ import annotations

import struct
from dataclasses import dataclass, field
from typing import Optional

import pytest

from elflens.analyzers.disassembly import DecodedInstruction
from elflens.core.engine import ElfAnalyzer
from elflens.parsers.elf_parser import parse
from shared.config import AnalysisConfig

# ---------------------------------------------------------------------------
# ELF constants used by the builder
# ---------------------------------------------------------------------------

ET_EXEC = 2
ET_DYN = 3
EM_X86_64 = 62
EM_386 = 3

SHT_PROGBITS = 1
SHT_SYMTAB = 2
SHT_STRTAB = 3
SHT_NOBITS = 8
SHT_DYNSYM = 11

SHF_WRITE = 0x1
SHF_ALLOC = 0x2
SHF_EXECINSTR = 0x4

PT_LOAD = 1
PT_INTERP = 3
PF_X = 0x1
PF_W = 0x2
PF_R = 0x4

STB_LOCAL, STB_GLOBAL, STB_WEAK = 0, 1, 2
STT_NOTYPE, STT_OBJECT, STT_FUNC, STT_SECTION, STT_FILE = 0, 1, 2, 3, 4
STV_DEFAULT, STV_HIDDEN = 0, 2
SHN_ABS = 0xFFF1


def uleb(value: int) -> bytes:
    out = bytearray()
    while True:
        byte = value & 0x7F
        value >>= 7
        if value:
            out.append(byte | 0x80)
        else:
            out.append(byte)
            return bytes(out)


def sleb(value: int) -> bytes:
    out = bytearray()
    while True:
        byte = value & 0x7F
        value >>= 7
        done = (value == 0 and not byte & 0x40) or (value == -1 and byte & 0x40)
        out.append(byte if done else byte | 0x80)
        if done:
            return bytes(out)


# ---------------------------------------------------------------------------
# ELF image builder
# ---------------------------------------------------------------------------

@dataclass
class _Section:
    name: str
    data: bytes
    type: int
    flags: int
    addr: int
    link: int
    info: int
    align: int
    entsize: int
    size: Optional[int] = None
    offset: int = 0


@dataclass
class _Segment:
    type: int
    flags: int
    section: Optional[str]
    offset: int
    vaddr: int
    filesz: int
    memsz: Optional[int]
    align: int


@dataclass
class Sym:
    name: str
    value: int = 0
    size: int = 0
    bind: int = STB_GLOBAL
    type: int = STT_FUNC
    shndx: int = 0
    other: int = STV_DEFAULT


class ElfBuilder:
    """Assembles a minimal but well-formed ELF image in memory.

    Sections are laid out after the program header table in insertion
    order; ``.shstrtab`` and the section header table are appended last.
    """

    def __init__(
        self,
        *,
        bits: int = 64,
        little: bool = True,
        machine: int = EM_X86_64,
        etype: int = ET_EXEC,
        entry: int = 0,
    ) -> None:
        self.bits = bits
        self.little = little
        self.machine = machine
        self.etype = etype
        self.entry = entry
        self.sections: list[_Section] = []
        self.segments: list[_Segment] = []
        self.e = "<" if little else ">"

    @property
    def address_size(self) -> int:
        return 8 if self.bits == 64 else 4

    def add_section(
        self,
        name: str,
        data: bytes = b"",
        *,
        type: int = SHT_PROGBITS,
        flags: int = 0,
        addr: int = 0,
        link: int = 0,
        info: int = 0,
        align: int = 1,
        entsize: int = 0,
        size: Optional[int] = None,
    ) -> int:
        self.sections.append(_Section(name, data, type, flags, addr, link, info,
                                      align, entsize, size))
        return len(self.sections)

    def add_segment(
        self,
        type: int,
        flags: int = PF_R,
        *,
        section: Optional[str] = None,
        offset: int = 0,
        vaddr: int = 0,
        filesz: int = 0,
        memsz: Optional[int] = None,
        align: int = 0x1000,
    ) -> None:
        self.segments.append(_Segment(type, flags, section, offset, vaddr, filesz, memsz, align))

    def add_symbols(self, symbols: list[Sym], *, dynamic: bool = False) -> int:
        """Add a symbol table and its string table; returns the table's index."""
        strtab = bytearray(b"\x00")
        names: list[int] = []
        for sym in symbols:
            if sym.name:
                names.append(len(strtab))
                strtab += sym.name.encode() + b"\x00"
            else:
                names.append(0)

        records = bytearray()
        null = Sym("", bind=STB_LOCAL, type=STT_NOTYPE)
        for sym, name_off in [(null, 0)] + list(zip(symbols, names)):
            info = (sym.bind << 4) | sym.type
            if self.bits == 64:
                records += struct.pack(self.e + "IBBHQQ", name_off, info, sym.other,
                                       sym.shndx, sym.value, sym.size)
            else:
                records += struct.pack(self.e + "IIIBBH", name_off, sym.value, sym.size,
                                       info, sym.other, sym.shndx)

        first_global = 1 + next(
            (i for i, s in enumerate(symbols) if s.bind != STB_LOCAL), len(symbols))
        table_index = len(self.sections) + 1
        self.add_section(
            ".dynsym" if dynamic else ".symtab",
            bytes(records),
            type=SHT_DYNSYM if dynamic else SHT_SYMTAB,
            flags=SHF_ALLOC if dynamic else 0,
            link=table_index + 1,
            info=first_global,
            align=self.address_size,
            entsize=24 if self.bits == 64 else 16,
        )
        self.add_section(".dynstr" if dynamic else ".strtab", bytes(strtab), type=SHT_STRTAB)
        return table_index

    # ------------------------------------------------------------------ #

    def build(self, *, shstrtab: bool = True) -> bytes:
        ehsize = 64 if self.bits == 64 else 52
        phentsize = 56 if self.bits == 64 else 32
        shentsize = 64 if self.bits == 64 else 40

        sections = list(self.sections)
        shstr = bytearray(b"\x00")
        name_offsets: list[int] = []
        for sec in sections:
            name_offsets.append(len(shstr))
            shstr += sec.name.encode() + b"\x00"
        shstrndx = 0
        if shstrtab:
            name_offsets.append(len(shstr))
            shstr += b".shstrtab\x00"
            sections.append(_Section(".shstrtab", bytes(shstr), SHT_STRTAB, 0, 0, 0, 0, 1, 0))
            shstrndx = len(sections)

        body = bytearray(b"\x00" * (ehsize + phentsize * len(self.segments)))
        for sec in sections:
            pad = (-len(body)) % max(sec.align, 1)
            body += b"\x00" * pad
            sec.offset = len(body)
            if sec.type != SHT_NOBITS:
                body += sec.data

        body += b"\x00" * ((-len(body)) % 8)
        shoff = len(body)

        shdrs = bytearray(b"\x00" * shentsize)
        for sec, name_off in zip(sections, name_offsets):
            size = sec.size if sec.size is not None else len(sec.data)
            if self.bits == 64:
                shdrs += struct.pack(self.e + "IIQQQQIIQQ", name_off, sec.type, sec.flags,
                                     sec.addr, sec.offset, size, sec.link, sec.info,
                                     sec.align, sec.entsize)
            else:
                shdrs += struct.pack(self.e + "IIIIIIIIII", name_off, sec.type, sec.flags,
                                     sec.addr, sec.offset, size, sec.link, sec.info,
                                     sec.align, sec.entsize)
        body += shdrs

        by_name = {s.name: s for s in sections}
        phdrs = bytearray()
        for seg in self.segments:
            offset, vaddr, filesz = seg.offset, seg.vaddr, seg.filesz
            if seg.section is not None:
                sec = by_name[seg.section]
                offset, vaddr = sec.offset, sec.addr
                filesz = 0 if sec.type == SHT_NOBITS else len(sec.data)
            memsz = seg.memsz if seg.memsz is not None else filesz
            if self.bits == 64:
                phdrs += struct.pack(self.e + "IIQQQQQQ", seg.type, seg.flags, offset,
                                     vaddr, vaddr, filesz, memsz, seg.align)
            else:
                phdrs += struct.pack(self.e + "IIIIIIII", seg.type, offset, vaddr, vaddr,
                                     filesz, memsz, seg.flags, seg.align)
        body[ehsize:ehsize + len(phdrs)] = phdrs

        ident = b"\x7fELF" + bytes([
            2 if self.bits == 64 else 1,
            1 if self.little else 2,
            1, 0, 0,
        ]) + b"\x00" * 7
        fmt = self.e + ("HHIQQQIHHHHHH" if self.bits == 64 else "HHIIIIIHHHHHH")
        header = ident + struct.pack(
            fmt, self.etype, self.machine, 1, self.entry,
            ehsize if self.segments else 0, shoff, 0, ehsize,
            phentsize, len(self.segments), shentsize, len(sections) + 1, shstrndx,
        )
        body[:ehsize] = header
        return bytes(body)


# ---------------------------------------------------------------------------
# .eh_frame builder
# ---------------------------------------------------------------------------

class EhFrameBuilder:
    """Builds ``.eh_frame`` content for a section loaded at *addr*.

    Supports the pointer encodings ``0x00`` (absptr), ``0x03`` (udata4) and
    ``0x1b`` (pcrel | sdata4).
    """

    def __init__(self, addr: int, *, address_size: int = 8, little: bool = True) -> None:
        self.addr = addr
        self.address_size = address_size
        self.e = "<" if little else ">"
        self.buf = bytearray()
        self._cies: dict[int, dict] = {}

    def _pointer(self, encoding: int, value: int, field_pos: int) -> bytes:
        if encoding == 0x00:
            return struct.pack(self.e + ("Q" if self.address_size == 8 else "I"), value)
        if encoding == 0x03:
            return struct.pack(self.e + "I", value)
        if encoding == 0x1B:
            return struct.pack(self.e + "i", value - (self.addr + field_pos))
        raise ValueError(f"encoding {encoding:#x} not supported by the builder")

    def _pad(self, body: bytearray, start: int) -> None:
        while (4 + len(body)) % self.address_size:
            body.append(0)  # DW_CFA_nop

    def cie(
        self,
        *,
        augmentation: str = "zR",
        code_align: int = 1,
        data_align: int = -8,
        ra: int = 16,
        fde_encoding: int = 0x1B,
        lsda_encoding: int = 0x1B,
        personality_encoding: int = 0x00,
        personality: int = 0,
        program: bytes = b"\x0c\x07\x08\x90\x01",
    ) -> int:
        offset = len(self.buf)
        body = bytearray(struct.pack(self.e + "I", 0))
        body += b"\x01" + augmentation.encode() + b"\x00"
        body += uleb(code_align) + sleb(data_align) + bytes([ra])
        if augmentation.startswith("z"):
            aug = bytearray()
            for letter in augmentation[1:]:
                if letter == "R":
                    aug.append(fde_encoding)
                elif letter == "L":
                    aug.append(lsda_encoding)
                elif letter == "P":
                    aug.append(personality_encoding)
                    field_pos = offset + 4 + len(body) + 1 + len(aug)
                    aug += self._pointer(personality_encoding, personality, field_pos)
            body += uleb(len(aug)) + aug
        body += program
        self._pad(body, offset)
        self.buf += struct.pack(self.e + "I", len(body)) + body
        self._cies[offset] = {
            "augmentation": augmentation,
            "fde_encoding": fde_encoding if "R" in augmentation else 0x00,
            "lsda_encoding": lsda_encoding,
        }
        return offset

    def fde(
        self,
        cie: int,
        start: int,
        length: int,
        *,
        program: bytes = b"",
        lsda: Optional[int] = None,
    ) -> int:
        info = self._cies[cie]
        offset = len(self.buf)
        body = bytearray(struct.pack(self.e + "I", offset + 4 - cie))
        enc = info["fde_encoding"]
        body += self._pointer(enc, start, offset + 4 + len(body))
        if enc == 0x1B:
            body += struct.pack(self.e + "i", length)
        else:
            body += self._pointer(enc & 0x0F, length, 0)
        if info["augmentation"].startswith("z"):
            aug = bytearray()
            if "L" in info["augmentation"]:
                field_pos = offset + 4 + len(body) + 1
                aug += self._pointer(info["lsda_encoding"], lsda or 0, field_pos) \
                    if lsda is not None else b"\x00" * 4
            body += uleb(len(aug)) + aug
        body += program
        self._pad(body, offset)
        self.buf += struct.pack(self.e + "I", len(body)) + body
        return offset

    def bytes(self, *, terminator: bool = True) -> bytes:
        return bytes(self.buf) + (b"\x00\x00\x00\x00" if terminator else b"")


def eh_frame_hdr(addr: int, eh_frame_addr: int, table: list[tuple[int, int]]) -> bytes:
    """``.eh_frame_hdr`` with pcrel/udata4/datarel-sdata4 encodings."""
    out = bytearray(b"\x01\x1b\x03\x3b")
    out += struct.pack("<i", eh_frame_addr - (addr + 4))
    out += struct.pack("<I", len(table))
    for location, fde_addr in sorted(table):
        out += struct.pack("<ii", location - addr, fde_addr - addr)
    return bytes(out)


# ---------------------------------------------------------------------------
# The sample program
# ---------------------------------------------------------------------------

TEXT = 0x401000
EH_FRAME = 0x402000
EH_FRAME_HDR = 0x402200
EXCEPT_TABLE = 0x403000
DATA = 0x404000
BSS = 0x404010

MAIN = TEXT
HELPER = TEXT + 0x10
FOO_BAR = TEXT + 0x20
NOSIZE = TEXT + 0x30

TYPEINFO_A = 0x404100
TYPEINFO_B = 0x404200

# push %rbp; mov %rsp,%rbp; call helper; pop %rbp; ret; nop*5
MAIN_CODE = bytes([0x55, 0x48, 0x89, 0xE5, 0xE8]) + struct.pack("<i", HELPER - (MAIN + 9)) \
    + bytes([0x5D, 0xC3]) + b"\x90" * 5
HELPER_CODE = bytes([0x55, 0x48, 0x89, 0xE5, 0x5D, 0xC3]) + b"\x90" * 10
FOO_BAR_CODE = bytes([0xFF, 0xC3]) + b"\x90" * 14
NOSIZE_CODE = b"\x90" * 15 + b"\xc3"
TEXT_CODE = MAIN_CODE + HELPER_CODE + FOO_BAR_CODE + NOSIZE_CODE

# advance 1; def_cfa_offset 16; offset rbp c-16; advance 3; def_cfa_register rbp;
# advance 6; def_cfa rsp+8
MAIN_CFA = bytes([0x41, 0x0E, 0x10, 0x86, 0x02, 0x43, 0x0D, 0x06, 0x46, 0x0C, 0x07, 0x08])


def lsda_bytes() -> bytes:
    """LSDA of ``foo::bar``: three call sites, a two-entry action chain."""
    call_sites = (
        uleb(0) + uleb(2) + uleb(0) + uleb(0)
        + uleb(2) + uleb(4) + uleb(8) + uleb(1)
        + uleb(6) + uleb(2) + uleb(0xA) + uleb(3)
    )
    actions = sleb(1) + sleb(0) + sleb(2) + sleb(-3)
    types = struct.pack("<II", TYPEINFO_B, TYPEINFO_A)
    tail = b"\x01" + uleb(len(call_sites)) + call_sites + actions + types
    return b"\xff\x03" + uleb(len(tail)) + tail


def sample_symbols() -> list[Sym]:
    return [
        Sym("test.c", bind=STB_LOCAL, type=STT_FILE, shndx=SHN_ABS),
        Sym("", value=TEXT, bind=STB_LOCAL, type=STT_SECTION, shndx=2),
        Sym("helper", HELPER, 0x10, STB_LOCAL, STT_FUNC, 2),
        Sym("_ZN4core3fmt5write17h0123456789abcdefE", BSS, 8, STB_LOCAL, STT_OBJECT, 7),
        Sym("main", MAIN, 0x10, STB_GLOBAL, STT_FUNC, 2),
        Sym("_ZN3foo3barEv", FOO_BAR, 0x10, STB_WEAK, STT_FUNC, 2),
        Sym("nosize", NOSIZE, 0, STB_GLOBAL, STT_FUNC, 2),
        Sym("data_obj", DATA, 8, STB_GLOBAL, STT_OBJECT, 6),
        Sym("hidden_obj", DATA + 8, 8, STB_GLOBAL, STT_OBJECT, 6, STV_HIDDEN),
        Sym("puts", 0, 0, STB_GLOBAL, STT_FUNC, 0),
    ]


def build_sample(*, terminator: bool = True) -> bytes:
    eh = EhFrameBuilder(EH_FRAME)
    plain = eh.cie()
    cxx = eh.cie(augmentation="zPLR", personality=0x401234)
    main_fde = eh.fde(plain, MAIN, 0x10, program=MAIN_CFA)
    helper_fde = eh.fde(plain, HELPER, 0x10)
    foo_fde = eh.fde(cxx, FOO_BAR, 0x10, lsda=EXCEPT_TABLE)

    builder = ElfBuilder(entry=MAIN)
    builder.add_section(".interp", b"/lib64/ld-linux-x86-64.so.2\x00",
                        flags=SHF_ALLOC, addr=0x400300)
    builder.add_section(".text", TEXT_CODE, flags=SHF_ALLOC | SHF_EXECINSTR,
                        addr=TEXT, align=16)
    builder.add_section(".eh_frame", eh.bytes(terminator=terminator),
                        flags=SHF_ALLOC, addr=EH_FRAME, align=8)
    builder.add_section(".eh_frame_hdr", eh_frame_hdr(EH_FRAME_HDR, EH_FRAME, [
        (MAIN, EH_FRAME + main_fde),
        (HELPER, EH_FRAME + helper_fde),
        (FOO_BAR, EH_FRAME + foo_fde),
    ]), flags=SHF_ALLOC, addr=EH_FRAME_HDR, align=4)
    builder.add_section(".gcc_except_table", lsda_bytes(), flags=SHF_ALLOC,
                        addr=EXCEPT_TABLE, align=4)
    builder.add_section(".data", b"\x00" * 0x10, flags=SHF_ALLOC | SHF_WRITE,
                        addr=DATA, align=8)
    builder.add_section(".bss", type=SHT_NOBITS, flags=SHF_ALLOC | SHF_WRITE,
                        addr=BSS, size=0x20, align=8)
    builder.add_symbols(sample_symbols())
    builder.add_segment(PT_INTERP, PF_R, section=".interp", align=1)
    builder.add_segment(PT_LOAD, PF_R | PF_X, section=".text")
    return builder.build()


# ---------------------------------------------------------------------------
# Fake collaborators
# ---------------------------------------------------------------------------

class FakeDecoder:
    """Decodes the handful of x86 opcodes the sample program uses."""

    _TABLE = {
        0x55: (1, "push", "%rbp"),
        0x48: (3, "mov", "%rsp, %rbp"),
        0x5D: (1, "pop", "%rbp"),
        0xC3: (1, "ret", ""),
        0x90: (1, "nop", ""),
    }

    def __init__(self, syntax: str = "att") -> None:
        self.syntax = syntax
        self.calls = 0

    def decode(self, code: bytes, address: int) -> Optional[DecodedInstruction]:
        self.calls += 1
        if not code:
            return None
        op = code[0]
        if op == 0xE8 and len(code) >= 5:
            (rel,) = struct.unpack_from("<i", code, 1)
            return DecodedInstruction(5, "call", f"{address + 5 + rel:#x}")
        if op in self._TABLE:
            size, mnemonic, operands = self._TABLE[op]
            if len(code) >= size:
                return DecodedInstruction(size, mnemonic, operands)
        return None


@dataclass
class FakeDemangler:
    names: dict[str, str] = field(default_factory=lambda: {
        "_ZN3foo3barEv": "foo::bar()",
        "_ZN4core3fmt5write17h0123456789abcdefE": "core::fmt::write",
    })

    def demangle(self, name: str) -> str:
        return self.names.get(name, name)

    def demangle_many(self, names) -> list[str]:
        return [self.demangle(n) for n in names]


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def sample_bytes() -> bytes:
    return build_sample()


@pytest.fixture
def sample_elf(sample_bytes):
    return parse(sample_bytes)


@pytest.fixture
def demangler() -> FakeDemangler:
    return FakeDemangler()


@pytest.fixture
def lens(sample_elf, demangler) -> ElfAnalyzer:
    return ElfAnalyzer(
        sample_elf,
        config=AnalysisConfig(),
        demangler=demangler,
        decoder_factory=lambda elf, syntax: FakeDecoder(syntax),
    )


@pytest.fixture
def sample_file(tmp_path, sample_bytes):
    path = tmp_path / "sample.elf"
    path.write_bytes(sample_bytes)
    return path
