"""
Disassembly Driver
===================

Walks a function's address range, repeatedly asking an
:class:`InstructionDecoder` for the next instruction, and produces an
ordered, lazily generated sequence of
:class:`~elflens.core.models.Instruction` records.

Behaviour:
    - Function bounds come from the symbol's ``value``/``size``.  A symbol
      of size zero runs to the next defined symbol of its section or to the
      end of that section, whichever comes first, and the result is flagged
      ``boundary_inferred``.
    - A byte the decoder rejects becomes one ``valid=False``
      pseudo-instruction of size 1; decoding resumes at the next byte.
    - With a call frame overlay, each instruction carries the rule set in
      effect at its address, or ``UnwindStatus.NONE`` when no FDE covers it.

The decoder is a collaborator: :class:`CapstoneDecoder` is the default,
but any object with a matching ``decode`` method will do.

References:
    - Capstone disassembly engine: https://www.capstone-engine.org/
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import TYPE_CHECKING, Iterator, NamedTuple, Optional, Protocol

from elflens.core.errors import (
    DecodeError,
    InstructionDecodeError,
    SectionNotFound,
    UnsupportedArchitecture,
)
from elflens.core.models import Instruction, Symbol, UnwindAnnotation
from elflens.parsers.elf_parser import (
    EM_386,
    EM_AARCH64,
    EM_ARM,
    EM_MIPS,
    EM_PPC,
    EM_PPC64,
    EM_RISCV,
    EM_X86_64,
    SHN_LORESERVE,
    ElfFile,
)

if TYPE_CHECKING:
    from elflens.analyzers.cfi import UnwindLookup
    from elflens.analyzers.demangle import Demangler
    from elflens.analyzers.symbols import SymbolIndex
    from elflens.core.models import SectionHeader
    from shared.logger import LensLogger


# ---------------------------------------------------------------------------
# Capstone import with graceful fallback
# ---------------------------------------------------------------------------

_CAPSTONE_AVAILABLE: bool = False
try:
    import capstone
    _CAPSTONE_AVAILABLE = True
except ImportError:
    capstone = None  # type: ignore[assignment]

_HEX_LITERAL = re.compile(r"0x[0-9a-fA-F]+")


# ---------------------------------------------------------------------------
# Decoder collaborator
# ---------------------------------------------------------------------------

class DecodedInstruction(NamedTuple):
    """What a decoder reports for one instruction."""
    size: int
    mnemonic: str
    operands: str


class InstructionDecoder(Protocol):
    """Decode the instruction at the start of *code*, located at *address*.

    Returns ``None`` (or raises :class:`DecodeError`) when the bytes do not
    form a valid instruction.
    """

    def decode(self, code: bytes, address: int) -> Optional[DecodedInstruction]: ...


class CapstoneDecoder:
    """:class:`InstructionDecoder` backed by Capstone.

    Args:
        machine: ELF ``e_machine`` value.
        is_64bit: ELF class of the file.
        little_endian: Byte order of the file.
        syntax: ``"att"`` or ``"intel"`` (x86 only).

    Raises:
        UnsupportedArchitecture: Capstone is missing or has no mode for
            *machine*.
    """

    def __init__(
        self,
        machine: int,
        is_64bit: bool = True,
        little_endian: bool = True,
        syntax: str = "att",
    ) -> None:
        if not _CAPSTONE_AVAILABLE or capstone is None:
            raise UnsupportedArchitecture(f"e_machine {machine} (capstone is not installed)")
        arch, mode = self._arch_and_mode(machine, is_64bit)
        if not little_endian and arch is not None:
            mode |= capstone.CS_MODE_BIG_ENDIAN
        if arch is None:
            raise UnsupportedArchitecture(f"e_machine {machine}")
        try:
            self._cs = capstone.Cs(arch, mode)
        except capstone.CsError as exc:
            raise UnsupportedArchitecture(f"e_machine {machine} ({exc})") from exc
        self._cs.detail = False
        if machine in (EM_386, EM_X86_64):
            self._cs.syntax = (
                capstone.CS_OPT_SYNTAX_INTEL if syntax == "intel" else capstone.CS_OPT_SYNTAX_ATT
            )

    @staticmethod
    def _arch_and_mode(machine: int, is_64bit: bool) -> tuple[Optional[int], int]:
        arm64 = getattr(capstone, "CS_ARCH_ARM64", None)
        if arm64 is None:
            arm64 = getattr(capstone, "CS_ARCH_AARCH64", None)
        arch_map: dict[int, tuple[Optional[int], int]] = {
            EM_386: (capstone.CS_ARCH_X86, capstone.CS_MODE_32),
            EM_X86_64: (capstone.CS_ARCH_X86, capstone.CS_MODE_64),
            EM_ARM: (capstone.CS_ARCH_ARM, capstone.CS_MODE_ARM),
            EM_AARCH64: (arm64, capstone.CS_MODE_ARM),
            EM_MIPS: (capstone.CS_ARCH_MIPS,
                      capstone.CS_MODE_MIPS64 if is_64bit else capstone.CS_MODE_MIPS32),
            EM_PPC: (capstone.CS_ARCH_PPC, capstone.CS_MODE_32),
            EM_PPC64: (capstone.CS_ARCH_PPC, capstone.CS_MODE_64),
        }
        riscv = getattr(capstone, "CS_ARCH_RISCV", None)
        if riscv is not None:
            arch_map[EM_RISCV] = (
                riscv,
                capstone.CS_MODE_RISCV64 if is_64bit else capstone.CS_MODE_RISCV32,
            )
        return arch_map.get(machine, (None, 0))

    def decode(self, code: bytes, address: int) -> Optional[DecodedInstruction]:
        insn = next(self._cs.disasm(code, address, 1), None)
        if insn is None:
            return None
        return DecodedInstruction(insn.size, insn.mnemonic, insn.op_str)


# ---------------------------------------------------------------------------
# Driver
# ---------------------------------------------------------------------------

@dataclass
class FunctionDisassembly:
    """Bounds of one disassembled function plus its instruction stream.

    ``instructions`` is a single-pass generator; call the producing
    function again to iterate a second time.
    """
    symbol: Symbol
    start: int
    end: int
    boundary_inferred: bool
    instructions: Iterator[Instruction]

    def __iter__(self) -> Iterator[Instruction]:
        return self.instructions


def _containing_section(elf: ElfFile, symbol: Symbol) -> SectionHeader:
    if 0 < symbol.shndx < SHN_LORESERVE and symbol.shndx < len(elf.sections):
        sh = elf.sections[symbol.shndx]
        if sh.is_valid:
            return sh
    sh = elf.section_containing(symbol.value)
    if sh is None:
        raise SectionNotFound(f"<section containing {symbol.value:#x}>")
    return sh


def function_bounds(
    symbol: Symbol,
    elf: ElfFile,
    index: Optional[SymbolIndex] = None,
) -> tuple[int, int, bool]:
    """``(start, end, boundary_inferred)`` for *symbol*."""
    start = symbol.value
    if symbol.size > 0:
        return start, start + symbol.size, False

    section = _containing_section(elf, symbol)
    section_end = section.addr + section.size
    end = section_end
    if index is not None:
        following = index.next_symbol_address(start, section.index)
        if following is not None:
            end = min(following, section_end)
    return start, max(end, start), True


def _label(
    operands: str,
    elf: ElfFile,
    index: SymbolIndex,
    demangler: Optional[Demangler],
) -> Optional[str]:
    """Symbol label for the first operand literal that names code or data."""
    for match in _HEX_LITERAL.finditer(operands):
        value = int(match.group(0), 16)
        exact = index.symbols_at(value)
        if exact:
            return index.display_name(exact[0], demangler)
        if elf.section_containing(value) is None:
            continue
        owner = index.find_covering(value)
        if owner is not None:
            return f"{index.display_name(owner, demangler)}+{value - owner.value:#x}"
    return None


def disassemble(
    symbol: Symbol,
    elf: ElfFile,
    decoder: InstructionDecoder,
    *,
    index: Optional[SymbolIndex] = None,
    unwind: Optional[UnwindLookup] = None,
    demangler: Optional[Demangler] = None,
    max_instructions: Optional[int] = None,
    window: int = 16,
    logger: Optional[LensLogger] = None,
) -> FunctionDisassembly:
    """Disassemble the function described by *symbol*.

    Args:
        symbol: Function symbol; its size may be zero.
        elf: Parsed file holding the code.
        decoder: Instruction decoder for the file's architecture.
        index: Enables boundary inference and operand symbol labels.
        unwind: Call frame overlay; annotates every instruction.
        demangler: Used for operand labels.
        max_instructions: Stop after this many instructions.
        window: Bytes handed to the decoder per instruction.

    Raises:
        SectionNotFound: The symbol's address is not backed by file content.
    """
    start, end, inferred = function_bounds(symbol, elf, index)
    offset = elf.vaddr_to_offset(start)
    if offset is None:
        raise SectionNotFound(f"<file content at {start:#x}>")
    code = elf.data[offset:offset + (end - start)]
    if len(code) < end - start:
        if logger is not None:
            logger.warning("Function %s runs past end of file; truncated at %#x",
                           symbol.name, start + len(code))
        end = start + len(code)

    def generate() -> Iterator[Instruction]:
        address = start
        count = 0
        while address < end:
            if max_instructions is not None and count >= max_instructions:
                return
            rel = address - start
            chunk = bytes(code[rel:min(rel + window, end - start)])
            try:
                decoded = decoder.decode(chunk, address)
            except DecodeError:
                decoded = None

            if decoded is None or not 0 < decoded.size <= len(chunk):
                if logger is not None:
                    logger.debug("%s", InstructionDecodeError(address))
                ins = Instruction(address=address, size=1, raw=chunk[:1], valid=False)
            else:
                target = None
                if index is not None:
                    target = _label(decoded.operands, elf, index, demangler)
                ins = Instruction(
                    address=address,
                    size=decoded.size,
                    raw=chunk[:decoded.size],
                    mnemonic=decoded.mnemonic,
                    operands=decoded.operands,
                    target_symbol=target,
                )

            if unwind is not None:
                rng = unwind.range_at(address)
                ins = ins.model_copy(update={"unwind": UnwindAnnotation(
                    status=unwind.status_at(address),
                    rule=rng.rule if rng is not None else None,
                    changed=unwind.starts_range(address),
                )})

            yield ins
            address += ins.size
            count += 1

    return FunctionDisassembly(
        symbol=symbol,
        start=start,
        end=end,
        boundary_inferred=inferred,
        instructions=generate(),
    )
