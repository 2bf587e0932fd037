"""
Call Frame Information Decoder
===============================

Parses ``.eh_frame`` and ``.debug_frame`` sections into CIE/FDE records and
executes their call frame instruction programs into per-address unwinding
rules.

Record layout (both sections)::

    length        u32 (0xffffffff escapes to a u64 length, 64-bit DWARF)
    id            0 for an .eh_frame CIE, all-ones for a .debug_frame CIE,
                  otherwise a CIE pointer (relative in .eh_frame,
                  absolute section offset in .debug_frame)
    ...           CIE or FDE body

Execution model:
    The CIE's initial instructions establish the starting rule set.  Each
    FDE program runs from that state in address order; every advance
    closes the current rule set for the address range just passed and
    opens a copy to mutate.  An opcode that cannot be decoded ends that
    FDE only: the rest of its range becomes "unknown unwind info".

References:
    - DWARF Debugging Information Format, Version 4, Section 6.4.
    - Linux Standard Base Core Specification 5.0, Section 10.6
      (``.eh_frame``).
"""

from __future__ import annotations

import bisect
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Iterator, Optional, Union

from elflens.core.errors import DecodeError, MalformedRecord, UnsupportedOpcode
from elflens.core.models import (
    CallFrameInstruction,
    CfaDefinition,
    CfaRule,
    CieRecord,
    FdeRecord,
    RegisterRule,
    RegisterRuleKind,
    SectionHeader,
    SymbolType,
    UnwindRange,
    UnwindStatus,
)
from elflens.parsers.elf_parser import EM_386, EM_AARCH64, EM_X86_64, ElfFile
from elflens.parsers.reader import (
    DW_EH_PE_absptr,
    DW_EH_PE_omit,
    ByteCursor,
    PointerBases,
)

if TYPE_CHECKING:
    from elflens.analyzers.symbols import SymbolIndex
    from shared.logger import LensLogger

Buffer = Union[bytes, bytearray, memoryview]


# ---------------------------------------------------------------------------
# Opcodes
# ---------------------------------------------------------------------------

DW_CFA_advance_loc = 0x40
DW_CFA_offset = 0x80
DW_CFA_restore = 0xC0

DW_CFA_nop = 0x00
DW_CFA_set_loc = 0x01
DW_CFA_advance_loc1 = 0x02
DW_CFA_advance_loc2 = 0x03
DW_CFA_advance_loc4 = 0x04
DW_CFA_offset_extended = 0x05
DW_CFA_restore_extended = 0x06
DW_CFA_undefined = 0x07
DW_CFA_same_value = 0x08
DW_CFA_register = 0x09
DW_CFA_remember_state = 0x0A
DW_CFA_restore_state = 0x0B
DW_CFA_def_cfa = 0x0C
DW_CFA_def_cfa_register = 0x0D
DW_CFA_def_cfa_offset = 0x0E
DW_CFA_def_cfa_expression = 0x0F
DW_CFA_expression = 0x10
DW_CFA_offset_extended_sf = 0x11
DW_CFA_def_cfa_sf = 0x12
DW_CFA_def_cfa_offset_sf = 0x13
DW_CFA_val_offset = 0x14
DW_CFA_val_offset_sf = 0x15
DW_CFA_val_expression = 0x16
DW_CFA_GNU_window_save = 0x2D
DW_CFA_GNU_args_size = 0x2E
DW_CFA_GNU_negative_offset_extended = 0x2F

# Operand kinds: u = ULEB128, s = SLEB128, b = length-prefixed block,
# a = target address per the CIE's FDE encoding, 1/2/4 = fixed width
_EXTENDED_OPCODES: dict[int, tuple[str, str]] = {
    DW_CFA_nop: ("DW_CFA_nop", ""),
    DW_CFA_set_loc: ("DW_CFA_set_loc", "a"),
    DW_CFA_advance_loc1: ("DW_CFA_advance_loc1", "1"),
    DW_CFA_advance_loc2: ("DW_CFA_advance_loc2", "2"),
    DW_CFA_advance_loc4: ("DW_CFA_advance_loc4", "4"),
    DW_CFA_offset_extended: ("DW_CFA_offset_extended", "uu"),
    DW_CFA_restore_extended: ("DW_CFA_restore_extended", "u"),
    DW_CFA_undefined: ("DW_CFA_undefined", "u"),
    DW_CFA_same_value: ("DW_CFA_same_value", "u"),
    DW_CFA_register: ("DW_CFA_register", "uu"),
    DW_CFA_remember_state: ("DW_CFA_remember_state", ""),
    DW_CFA_restore_state: ("DW_CFA_restore_state", ""),
    DW_CFA_def_cfa: ("DW_CFA_def_cfa", "uu"),
    DW_CFA_def_cfa_register: ("DW_CFA_def_cfa_register", "u"),
    DW_CFA_def_cfa_offset: ("DW_CFA_def_cfa_offset", "u"),
    DW_CFA_def_cfa_expression: ("DW_CFA_def_cfa_expression", "b"),
    DW_CFA_expression: ("DW_CFA_expression", "ub"),
    DW_CFA_offset_extended_sf: ("DW_CFA_offset_extended_sf", "us"),
    DW_CFA_def_cfa_sf: ("DW_CFA_def_cfa_sf", "us"),
    DW_CFA_def_cfa_offset_sf: ("DW_CFA_def_cfa_offset_sf", "s"),
    DW_CFA_val_offset: ("DW_CFA_val_offset", "uu"),
    DW_CFA_val_offset_sf: ("DW_CFA_val_offset_sf", "us"),
    DW_CFA_val_expression: ("DW_CFA_val_expression", "ub"),
    DW_CFA_GNU_window_save: ("DW_CFA_GNU_window_save", ""),
    DW_CFA_GNU_args_size: ("DW_CFA_GNU_args_size", "u"),
    DW_CFA_GNU_negative_offset_extended: ("DW_CFA_GNU_negative_offset_extended", "uu"),
}

_ADVANCES = frozenset({
    DW_CFA_advance_loc, DW_CFA_advance_loc1, DW_CFA_advance_loc2, DW_CFA_advance_loc4,
})

# DWARF register numbers, per psABI
_X86_64_REGISTERS = (
    "rax", "rdx", "rcx", "rbx", "rsi", "rdi", "rbp", "rsp",
    "r8", "r9", "r10", "r11", "r12", "r13", "r14", "r15", "rip",
)
_I386_REGISTERS = ("eax", "ecx", "edx", "ebx", "esp", "ebp", "esi", "edi", "eip")


def register_name(machine: int, register: int) -> str:
    """Conventional name of DWARF *register* on *machine* (``r<N>`` if unknown)."""
    if machine == EM_X86_64 and register < len(_X86_64_REGISTERS):
        return _X86_64_REGISTERS[register]
    if machine == EM_386 and register < len(_I386_REGISTERS):
        return _I386_REGISTERS[register]
    if machine == EM_AARCH64:
        if register < 31:
            return f"x{register}"
        if register == 31:
            return "sp"
    return f"r{register}"


# ---------------------------------------------------------------------------
# Instruction decoding
# ---------------------------------------------------------------------------

def _program_cursor(
    program: Buffer,
    little_endian: bool,
    address_size: int,
    base_address: int = 0,
) -> ByteCursor:
    return ByteCursor(program, little_endian=little_endian,
                      address_size=address_size, base_address=base_address)


def decode_instructions(
    program: Buffer,
    cie: CieRecord,
    *,
    little_endian: bool = True,
    bases: Optional[PointerBases] = None,
    base_address: int = 0,
) -> Iterator[CallFrameInstruction]:
    """Yield the call frame instructions of *program* in order.

    Operands are returned undecorated: register numbers, unscaled deltas
    and factored offsets, hex strings for expression blocks.

    Raises:
        UnsupportedOpcode: An opcode outside the known set.
        DecodeError: The program ends in the middle of an instruction.
    """
    cur = _program_cursor(program, little_endian, cie.address_size, base_address)
    bases = bases or PointerBases()
    while not cur.at_end():
        offset = cur.tell()
        byte = cur.u8()
        primary = byte & 0xC0
        if primary == DW_CFA_advance_loc:
            yield CallFrameInstruction(offset=offset, opcode=primary,
                                       name="DW_CFA_advance_loc", operands=(byte & 0x3F,))
            continue
        if primary == DW_CFA_offset:
            yield CallFrameInstruction(offset=offset, opcode=primary, name="DW_CFA_offset",
                                       operands=(byte & 0x3F, cur.uleb128()))
            continue
        if primary == DW_CFA_restore:
            yield CallFrameInstruction(offset=offset, opcode=primary,
                                       name="DW_CFA_restore", operands=(byte & 0x3F,))
            continue

        entry = _EXTENDED_OPCODES.get(byte)
        if entry is None:
            raise UnsupportedOpcode(byte, offset)
        name, kinds = entry
        operands: list[Any] = []
        for kind in kinds:
            if kind == "u":
                operands.append(cur.uleb128())
            elif kind == "s":
                operands.append(cur.sleb128())
            elif kind == "b":
                operands.append(cur.read_bytes(cur.uleb128()).hex())
            elif kind == "a":
                encoding = cie.fde_encoding if cie.augmentation.startswith("z") else DW_EH_PE_absptr
                operands.append(cur.encoded_pointer(encoding, bases))
            else:
                operands.append(cur.uint(int(kind)))
        yield CallFrameInstruction(offset=offset, opcode=byte, name=name,
                                   operands=tuple(operands))


# ---------------------------------------------------------------------------
# Rule execution
# ---------------------------------------------------------------------------

@dataclass
class _RowState:
    """Mutable rule set being built while a program executes."""
    cfa: CfaDefinition = field(default_factory=CfaDefinition)
    registers: dict[int, RegisterRule] = field(default_factory=dict)

    def freeze(self) -> CfaRule:
        return CfaRule(cfa=self.cfa, registers=dict(self.registers))

    def copy(self) -> _RowState:
        return _RowState(cfa=self.cfa, registers=dict(self.registers))


def _apply(
    state: _RowState,
    ins: CallFrameInstruction,
    cie: CieRecord,
    initial: CfaRule,
    stack: list[_RowState],
) -> None:
    """Apply one non-advancing instruction to *state*."""
    daf = cie.data_alignment_factor
    op = ins.opcode
    args = ins.operands

    if op in (DW_CFA_nop, DW_CFA_GNU_args_size, DW_CFA_GNU_window_save):
        return
    if op == DW_CFA_def_cfa:
        state.cfa = CfaDefinition(register=args[0], offset=args[1])
    elif op == DW_CFA_def_cfa_sf:
        state.cfa = CfaDefinition(register=args[0], offset=args[1] * daf)
    elif op == DW_CFA_def_cfa_register:
        state.cfa = CfaDefinition(register=args[0], offset=state.cfa.offset)
    elif op == DW_CFA_def_cfa_offset:
        state.cfa = CfaDefinition(register=state.cfa.register, offset=args[0])
    elif op == DW_CFA_def_cfa_offset_sf:
        state.cfa = CfaDefinition(register=state.cfa.register, offset=args[0] * daf)
    elif op == DW_CFA_def_cfa_expression:
        state.cfa = CfaDefinition(expression=args[0])
    elif op == DW_CFA_undefined:
        state.registers[args[0]] = RegisterRule(kind=RegisterRuleKind.UNDEFINED)
    elif op == DW_CFA_same_value:
        state.registers[args[0]] = RegisterRule(kind=RegisterRuleKind.SAME_VALUE)
    elif op in (DW_CFA_offset, DW_CFA_offset_extended, DW_CFA_offset_extended_sf):
        state.registers[args[0]] = RegisterRule(kind=RegisterRuleKind.OFFSET,
                                                offset=args[1] * daf)
    elif op == DW_CFA_GNU_negative_offset_extended:
        state.registers[args[0]] = RegisterRule(kind=RegisterRuleKind.OFFSET,
                                                offset=-args[1] * daf)
    elif op in (DW_CFA_val_offset, DW_CFA_val_offset_sf):
        state.registers[args[0]] = RegisterRule(kind=RegisterRuleKind.VAL_OFFSET,
                                                offset=args[1] * daf)
    elif op == DW_CFA_register:
        state.registers[args[0]] = RegisterRule(kind=RegisterRuleKind.REGISTER,
                                                register=args[1])
    elif op == DW_CFA_expression:
        state.registers[args[0]] = RegisterRule(kind=RegisterRuleKind.EXPRESSION,
                                                expression=args[1])
    elif op == DW_CFA_val_expression:
        state.registers[args[0]] = RegisterRule(kind=RegisterRuleKind.VAL_EXPRESSION,
                                                expression=args[1])
    elif op in (DW_CFA_restore, DW_CFA_restore_extended):
        reg = args[0]
        if reg in initial.registers:
            state.registers[reg] = initial.registers[reg]
        else:
            state.registers.pop(reg, None)
    elif op == DW_CFA_remember_state:
        stack.append(state.copy())
    elif op == DW_CFA_restore_state:
        if not stack:
            raise MalformedRecord("call frame program", ins.offset,
                                  "DW_CFA_restore_state without matching remember_state")
        saved = stack.pop()
        state.cfa = saved.cfa
        state.registers = saved.registers
    else:
        raise UnsupportedOpcode(op, ins.offset)


def initial_rule(
    program: Buffer,
    cie: CieRecord,
    *,
    little_endian: bool = True,
) -> CfaRule:
    """Execute a CIE's initial instructions and return the starting rule set."""
    state = _RowState()
    stack: list[_RowState] = []
    empty = CfaRule()
    for ins in decode_instructions(program, cie, little_endian=little_endian):
        if ins.opcode in _ADVANCES or ins.opcode == DW_CFA_set_loc:
            continue
        _apply(state, ins, cie, empty, stack)
    return state.freeze()


def execute_program(
    program: Buffer,
    cie: CieRecord,
    start: int,
    end: int,
    *,
    initial: Optional[CfaRule] = None,
    little_endian: bool = True,
    bases: Optional[PointerBases] = None,
    base_address: int = 0,
    fde_offset: int = 0,
) -> list[UnwindRange]:
    """Run an FDE rule program over ``[start, end)``.

    Returns ordered, non-overlapping ranges.  Each advance closes the
    current rule set for the range just passed; advances beyond *end* are
    clamped and empty ranges are not emitted.  If decoding fails part way,
    the ranges decoded so far are kept and ``[location, end)`` becomes a
    single ``known=False`` range carrying the error.
    """
    initial = initial or CfaRule()
    state = _RowState(cfa=initial.cfa, registers=dict(initial.registers))
    stack: list[_RowState] = []
    ranges: list[UnwindRange] = []
    loc = start

    def close(new_loc: int) -> None:
        nonlocal loc
        new_loc = min(max(new_loc, loc), end)
        if new_loc > loc:
            ranges.append(UnwindRange(start=loc, end=new_loc, fde_offset=fde_offset,
                                      rule=state.freeze()))
            loc = new_loc

    try:
        for ins in decode_instructions(program, cie, little_endian=little_endian,
                                       bases=bases, base_address=base_address):
            if ins.opcode in _ADVANCES:
                close(loc + ins.operands[0] * cie.code_alignment_factor)
            elif ins.opcode == DW_CFA_set_loc:
                close(ins.operands[0] if ins.operands[0] is not None else loc)
            else:
                _apply(state, ins, cie, initial, stack)
    except DecodeError as exc:
        if loc < end:
            ranges.append(UnwindRange(start=loc, end=end, fde_offset=fde_offset,
                                      rule=None, known=False, error=str(exc)))
        return ranges

    if loc < end:
        ranges.append(UnwindRange(start=loc, end=end, fde_offset=fde_offset,
                                  rule=state.freeze()))
    return ranges


# ---------------------------------------------------------------------------
# Record parsing
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class _RawRecord:
    offset: int        # section offset of the length field
    body_start: int    # section offset just past the length field
    length: int
    is_cie: bool
    cie_pointer: int   # section offset of the CIE (FDEs only)


class FrameTable:
    """Parsed call frame section.

    ``cies`` maps section offsets to CIEs; ``fdes`` keeps file order.
    Malformed records are skipped and described in ``errors``; every other
    record is still available.

    Usage::

        table = parse_frame_section(elf, elf.find_section(".eh_frame"))
        fde = table.find_fde(0x401136)
        for rng in table.unwind_ranges(fde):
            ...
    """

    def __init__(
        self,
        elf: ElfFile,
        section: SectionHeader,
        cies: dict[int, CieRecord],
        fdes: list[FdeRecord],
        errors: list[str],
        *,
        is_eh_frame: bool = True,
        bases: Optional[PointerBases] = None,
        logger: Optional[LensLogger] = None,
    ) -> None:
        self._elf = elf
        self.section = section
        self.cies: dict[int, CieRecord] = cies
        self.fdes: tuple[FdeRecord, ...] = tuple(fdes)
        self.errors: tuple[str, ...] = tuple(errors)
        self.is_eh_frame = is_eh_frame
        self._bases = bases or PointerBases()
        self._logger = logger

        self._sorted: list[FdeRecord] = sorted(self.fdes, key=lambda f: f.initial_location)
        self._starts: list[int] = [f.initial_location for f in self._sorted]

    # ------------------------------------------------------------------ #
    #  Record access
    # ------------------------------------------------------------------ #

    def cie_for(self, fde: FdeRecord) -> CieRecord:
        return self.cies[fde.cie_offset]

    def program(self, record: Union[CieRecord, FdeRecord]) -> memoryview:
        return self._elf.data[record.program_offset:record.program_offset + record.program_size]

    def _program_address(self, record: Union[CieRecord, FdeRecord]) -> int:
        return self.section.addr + (record.program_offset - self.section.offset)

    def instructions(
        self,
        record: Union[CieRecord, FdeRecord],
    ) -> tuple[list[CallFrameInstruction], Optional[str]]:
        """Decoded program of *record*, plus the error that stopped decoding."""
        cie = record if isinstance(record, CieRecord) else self.cie_for(record)
        decoded: list[CallFrameInstruction] = []
        try:
            for ins in decode_instructions(
                self.program(record), cie,
                little_endian=self._elf.little_endian,
                bases=self._bases,
                base_address=self._program_address(record),
            ):
                decoded.append(ins)
        except DecodeError as exc:
            return decoded, str(exc)
        return decoded, None

    def initial_rule(self, cie: CieRecord) -> CfaRule:
        try:
            return initial_rule(self.program(cie), cie, little_endian=self._elf.little_endian)
        except DecodeError as exc:
            if self._logger is not None:
                self._logger.warning("CIE at %#x: initial instructions undecodable: %s",
                                     cie.offset, exc)
            return CfaRule()

    # ------------------------------------------------------------------ #
    #  Unwind rules
    # ------------------------------------------------------------------ #

    def unwind_ranges(self, fde: FdeRecord) -> list[UnwindRange]:
        """Ordered ``(range, rule)`` sequence for one FDE."""
        cie = self.cie_for(fde)
        ranges = execute_program(
            self.program(fde),
            cie,
            fde.initial_location,
            fde.end,
            initial=self.initial_rule(cie),
            little_endian=self._elf.little_endian,
            bases=self._bases,
            base_address=self._program_address(fde),
            fde_offset=fde.offset,
        )
        if self._logger is not None and ranges and not ranges[-1].known:
            self._logger.warning("FDE at %#x: unknown unwind info from %#x: %s",
                                 fde.offset, ranges[-1].start, ranges[-1].error)
        return ranges

    def unwind_table(self) -> list[UnwindRange]:
        """Ranges of every FDE, ascending by address."""
        result: list[UnwindRange] = []
        for fde in self._sorted:
            result.extend(self.unwind_ranges(fde))
        return result

    # ------------------------------------------------------------------ #
    #  Lookups
    # ------------------------------------------------------------------ #

    def fdes_covering(self, address: int) -> list[FdeRecord]:
        hi = bisect.bisect_right(self._starts, address)
        return [f for f in self._sorted[:hi] if f.contains(address)]

    def find_fde(self, address: int) -> Optional[FdeRecord]:
        """The FDE covering *address* with the greatest start, if any."""
        covering = self.fdes_covering(address)
        return covering[-1] if covering else None

    def fdes_in_range(self, start: int, end: int) -> list[FdeRecord]:
        """FDEs overlapping ``[start, end)``."""
        return [f for f in self._sorted if f.initial_location < end and f.end > start]

    def orphaned_fdes(self, index: SymbolIndex) -> list[FdeRecord]:
        """FDEs whose start does not lie inside any known function symbol."""
        orphans: list[FdeRecord] = []
        for fde in self._sorted:
            owner = index.find_covering(fde.initial_location)
            if owner is None or owner.type not in (SymbolType.FUNC, SymbolType.GNU_IFUNC):
                orphans.append(fde)
        return orphans


class UnwindLookup:
    """Answers "which rule applies at this address" over ordered ranges."""

    def __init__(self, ranges: list[UnwindRange]) -> None:
        self._ranges = sorted(ranges, key=lambda r: r.start)
        self._starts = [r.start for r in self._ranges]

    def range_at(self, address: int) -> Optional[UnwindRange]:
        pos = bisect.bisect_right(self._starts, address) - 1
        if pos >= 0 and self._ranges[pos].start <= address < self._ranges[pos].end:
            return self._ranges[pos]
        return None

    def status_at(self, address: int) -> UnwindStatus:
        rng = self.range_at(address)
        if rng is None:
            return UnwindStatus.NONE
        return UnwindStatus.COVERED if rng.known else UnwindStatus.UNKNOWN

    def starts_range(self, address: int) -> bool:
        pos = bisect.bisect_left(self._starts, address)
        return pos < len(self._starts) and self._starts[pos] == address


# ---------------------------------------------------------------------------
# Section parsing
# ---------------------------------------------------------------------------

class _FrameSectionParser:
    """Splits a frame section into records and decodes each one."""

    def __init__(
        self,
        elf: ElfFile,
        section: SectionHeader,
        is_eh_frame: bool,
        logger: Optional[LensLogger],
    ) -> None:
        self._elf = elf
        self._section = section
        self._eh = is_eh_frame
        self._logger = logger
        self._data = elf.section_data(section)
        self.errors: list[str] = []

        text = elf.get_section(".text")
        got = elf.get_section(".got")
        self.bases = PointerBases(
            text=text.addr if text is not None else None,
            data=got.addr if got is not None else None,
        )

    def _error(self, exc: Exception) -> None:
        self.errors.append(str(exc))
        if self._logger is not None:
            self._logger.warning("%s: %s", self._section.name, exc)

    def _cursor(self, start: int = 0, end: Optional[int] = None) -> ByteCursor:
        return ByteCursor(
            self._data, start, end,
            little_endian=self._elf.little_endian,
            address_size=self._elf.address_size,
            base_address=self._section.addr + start,
        )

    def split(self) -> list[_RawRecord]:
        cur = self._cursor()
        records: list[_RawRecord] = []
        while cur.remaining >= 4:
            offset = cur.tell()
            length = cur.u32()
            if length == 0:
                if self._eh:
                    break
                continue
            id_size = 4
            if length == 0xFFFFFFFF:
                length = cur.u64()
                id_size = 8
            body_start = cur.tell()
            if length > cur.remaining or length < id_size:
                self._error(MalformedRecord(
                    "frame record", offset,
                    f"length {length} exceeds the {cur.remaining} bytes left in the section",
                ))
                break
            cie_id = cur.uint(id_size)
            cur.seek(body_start + length)

            if self._eh:
                is_cie = cie_id == 0
                cie_pointer = body_start - cie_id
            else:
                is_cie = cie_id == (1 << (8 * id_size)) - 1
                cie_pointer = cie_id
            records.append(_RawRecord(offset, body_start, length, is_cie, cie_pointer))
        return records

    def parse_cie(self, rec: _RawRecord) -> CieRecord:
        id_size = 8 if rec.body_start - rec.offset == 12 else 4
        cur = self._cursor(rec.body_start, rec.body_start + rec.length)
        cur.skip(id_size)

        version = cur.u8()
        if version not in (1, 3, 4):
            raise MalformedRecord("CIE", rec.offset, f"unsupported version {version}")
        augmentation = cur.cstring()
        address_size = self._elf.address_size
        segment_size = 0
        if "eh" in augmentation:
            cur.skip(address_size)
        if version >= 4:
            address_size = cur.u8()
            segment_size = cur.u8()
            if address_size not in (4, 8):
                raise MalformedRecord("CIE", rec.offset, f"address size {address_size}")
            cur.address_size = address_size

        caf = cur.uleb128()
        daf = cur.sleb128()
        ra = cur.u8() if version == 1 else cur.uleb128()

        fields: dict[str, Any] = {
            "fde_encoding": DW_EH_PE_absptr,
            "lsda_encoding": DW_EH_PE_omit,
            "personality_encoding": DW_EH_PE_omit,
            "personality": None,
            "signal_frame": False,
            "augmentation_data_offset": 0,
            "augmentation_data_size": 0,
        }
        if augmentation.startswith("z"):
            aug_len = cur.uleb128()
            fields["augmentation_data_offset"] = self._section.offset + rec.body_start + cur.tell()
            fields["augmentation_data_size"] = aug_len
            aug = cur.sub_cursor(aug_len)
            for letter in augmentation[1:]:
                if letter == "L":
                    fields["lsda_encoding"] = aug.u8()
                elif letter == "P":
                    enc = aug.u8()
                    fields["personality_encoding"] = enc
                    fields["personality"] = aug.encoded_pointer(enc, self.bases)
                elif letter == "R":
                    fields["fde_encoding"] = aug.u8()
                elif letter == "S":
                    fields["signal_frame"] = True
                elif letter in "BG":
                    continue
                else:
                    # the remaining augmentation data is skipped via its length
                    break
        elif augmentation not in ("", "eh"):
            raise MalformedRecord("CIE", rec.offset,
                                  f"unknown augmentation {augmentation!r} without 'z'")

        return CieRecord(
            offset=rec.offset,
            length=rec.length,
            version=version,
            augmentation=augmentation,
            address_size=address_size,
            segment_size=segment_size,
            code_alignment_factor=caf,
            data_alignment_factor=daf,
            return_address_register=ra,
            program_offset=self._section.offset + rec.body_start + cur.tell(),
            program_size=cur.remaining,
            **fields,
        )

    def parse_fde(self, rec: _RawRecord, cie: CieRecord) -> FdeRecord:
        id_size = 8 if rec.body_start - rec.offset == 12 else 4
        cur = self._cursor(rec.body_start, rec.body_start + rec.length)
        cur.address_size = cie.address_size
        cur.skip(id_size)

        if cie.segment_size:
            cur.skip(cie.segment_size)
        initial_location = cur.encoded_pointer(cie.fde_encoding, self.bases)
        if initial_location is None:
            raise MalformedRecord("FDE", rec.offset, "initial location uses DW_EH_PE_omit")
        address_range = cur.encoded_value(cie.fde_encoding & 0x0F)

        lsda: Optional[int] = None
        aug_offset = 0
        aug_size = 0
        if cie.augmentation.startswith("z"):
            aug_size = cur.uleb128()
            aug_offset = self._section.offset + rec.body_start + cur.tell()
            aug = cur.sub_cursor(aug_size)
            if "L" in cie.augmentation and cie.lsda_encoding != DW_EH_PE_omit:
                mark = aug.tell()
                if aug.encoded_value(cie.lsda_encoding) != 0:
                    aug.seek(mark)
                    lsda = aug.encoded_pointer(cie.lsda_encoding, self.bases)

        return FdeRecord(
            offset=rec.offset,
            length=rec.length,
            cie_offset=cie.offset,
            initial_location=initial_location,
            address_range=address_range,
            lsda=lsda,
            augmentation_data_offset=aug_offset,
            augmentation_data_size=aug_size,
            program_offset=self._section.offset + rec.body_start + cur.tell(),
            program_size=cur.remaining,
        )


def parse_frame_section(
    elf: ElfFile,
    section: SectionHeader,
    logger: Optional[LensLogger] = None,
) -> FrameTable:
    """Parse an ``.eh_frame`` or ``.debug_frame`` section.

    The format is chosen by name: anything other than ``.debug_frame`` is
    read with ``.eh_frame`` conventions.
    """
    is_eh = section.name != ".debug_frame"
    parser = _FrameSectionParser(elf, section, is_eh, logger)
    try:
        records = parser.split()
    except DecodeError as exc:
        parser.errors.append(str(exc))
        records = []

    cies: dict[int, CieRecord] = {}
    for rec in records:
        if rec.is_cie:
            try:
                cies[rec.offset] = parser.parse_cie(rec)
            except DecodeError as exc:
                parser._error(exc)

    fdes: list[FdeRecord] = []
    for rec in records:
        if rec.is_cie:
            continue
        cie = cies.get(rec.cie_pointer)
        if cie is None:
            parser._error(MalformedRecord(
                "FDE", rec.offset, f"CIE pointer {rec.cie_pointer:#x} names no valid CIE"))
            continue
        try:
            fdes.append(parser.parse_fde(rec, cie))
        except DecodeError as exc:
            parser._error(exc)

    if logger is not None:
        logger.debug("%s: %d CIEs, %d FDEs, %d errors",
                     section.name, len(cies), len(fdes), len(parser.errors))
    return FrameTable(elf, section, cies, fdes, parser.errors,
                      is_eh_frame=is_eh, bases=parser.bases, logger=logger)


def select_frame_section(
    elf: ElfFile,
    preference: tuple[str, ...] = (".eh_frame", ".debug_frame"),
) -> Optional[SectionHeader]:
    """First present section among *preference*."""
    for name in preference:
        sh = elf.get_section(name)
        if sh is not None and sh.has_file_content:
            return sh
    return None


RuleFormatter = Callable[[int], str]


def format_rule(rule: Optional[CfaRule], name: RuleFormatter = lambda r: f"r{r}") -> str:
    """Compact text form, e.g. ``cfa=rsp+16 rbp=c-16``."""
    if rule is None:
        return "unknown"
    cfa = rule.cfa
    if cfa.expression is not None:
        parts = [f"cfa=expr({cfa.expression})"]
    elif cfa.register is None:
        parts = ["cfa=?"]
    else:
        parts = [f"cfa={name(cfa.register)}{cfa.offset:+d}"]
    for reg in sorted(rule.registers):
        r = rule.registers[reg]
        if r.kind == RegisterRuleKind.OFFSET:
            text = f"c{r.offset:+d}"
        elif r.kind == RegisterRuleKind.VAL_OFFSET:
            text = f"v:c{r.offset:+d}"
        elif r.kind == RegisterRuleKind.REGISTER:
            text = name(r.register) if r.register is not None else "?"
        elif r.kind == RegisterRuleKind.SAME_VALUE:
            text = "s"
        elif r.kind == RegisterRuleKind.UNDEFINED:
            text = "u"
        else:
            text = f"exp({r.expression})"
        parts.append(f"{name(reg)}={text}")
    return " ".join(parts)
