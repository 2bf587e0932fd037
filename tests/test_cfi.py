"""Tests for call frame record parsing and rule execution."""

import struct

import pytest

from elflens.analyzers.cfi import (
    UnwindLookup,
    decode_instructions,
    execute_program,
    format_rule,
    initial_rule,
    parse_frame_section,
    register_name,
    select_frame_section,
)
from elflens.analyzers.symbols import SymbolIndex
from elflens.core.errors import UnsupportedOpcode
from elflens.core.models import (
    CfaDefinition,
    CfaRule,
    CieRecord,
    RegisterRuleKind,
    UnwindStatus,
)
from elflens.parsers.elf_parser import parse

from conftest import (
    EXCEPT_TABLE,
    FOO_BAR,
    HELPER,
    MAIN,
    MAIN_CFA,
    SHF_ALLOC,
    EhFrameBuilder,
    ElfBuilder,
    build_sample,
)

X86_CIE = CieRecord(offset=0, code_alignment_factor=1, data_alignment_factor=-8,
                    return_address_register=16)
RSP8 = CfaRule(cfa=CfaDefinition(register=7, offset=8))


@pytest.fixture
def frames(sample_elf):
    return parse_frame_section(sample_elf, sample_elf.find_section(".eh_frame"))


def _spans(ranges):
    return [(r.start, r.end) for r in ranges]


class TestRecords:
    def test_cies(self, frames):
        plain, cxx = frames.cies.values()
        assert plain.augmentation == "zR"
        assert plain.code_alignment_factor == 1
        assert plain.data_alignment_factor == -8
        assert plain.return_address_register == 16
        assert plain.fde_encoding == 0x1B
        assert plain.personality is None

        assert cxx.augmentation == "zPLR"
        assert cxx.personality == 0x401234
        assert cxx.lsda_encoding == 0x1B

    def test_fdes(self, frames):
        assert [(f.initial_location, f.address_range) for f in frames.fdes] == [
            (MAIN, 0x10), (HELPER, 0x10), (FOO_BAR, 0x10),
        ]
        main, helper, foo = frames.fdes
        assert frames.cie_for(main).augmentation == "zR"
        assert frames.cie_for(foo).augmentation == "zPLR"
        assert main.lsda is None
        assert foo.lsda == EXCEPT_TABLE
        assert frames.errors == ()

    def test_initial_rule(self, frames):
        plain = next(iter(frames.cies.values()))
        rule = frames.initial_rule(plain)
        assert rule.cfa == CfaDefinition(register=7, offset=8)
        assert rule.registers[16].kind == RegisterRuleKind.OFFSET
        assert rule.registers[16].offset == -8

    def test_rule_registers_are_read_only(self, frames):
        rule = frames.initial_rule(next(iter(frames.cies.values())))
        with pytest.raises(TypeError):
            rule.registers[1] = rule.registers[16]

    def test_instructions(self, frames):
        main = frames.fdes[0]
        decoded, error = frames.instructions(main)
        assert error is None
        assert [i.name for i in decoded[:5]] == [
            "DW_CFA_advance_loc", "DW_CFA_def_cfa_offset", "DW_CFA_offset",
            "DW_CFA_advance_loc", "DW_CFA_def_cfa_register",
        ]
        assert decoded[2].operands == (6, 2)

    def test_missing_terminator_is_tolerated(self):
        elf = parse(build_sample(terminator=False))
        table = parse_frame_section(elf, elf.find_section(".eh_frame"))
        assert len(table.fdes) == 3

    def test_oversized_record_is_reported(self):
        eh = EhFrameBuilder(0x2000)
        cie = eh.cie()
        eh.fde(cie, 0x1000, 0x10)
        data = bytearray(eh.bytes(terminator=False))
        data += b"\xff\x00\x00\x00"  # a record claiming 255 bytes
        builder = ElfBuilder()
        builder.add_section(".eh_frame", bytes(data), flags=SHF_ALLOC, addr=0x2000, align=8)
        elf = parse(builder.build())
        table = parse_frame_section(elf, elf.find_section(".eh_frame"))
        assert len(table.fdes) == 1
        assert len(table.errors) == 1
        assert "exceeds" in table.errors[0]

    def test_dangling_cie_pointer(self):
        eh = EhFrameBuilder(0x2000)
        cie = eh.cie()
        fde_offset = eh.fde(cie, 0x1000, 0x10)
        data = bytearray(eh.bytes())
        data[fde_offset + 4:fde_offset + 8] = b"\x00\x01\x00\x00"
        builder = ElfBuilder()
        builder.add_section(".eh_frame", bytes(data), flags=SHF_ALLOC, addr=0x2000, align=8)
        elf = parse(builder.build())
        table = parse_frame_section(elf, elf.find_section(".eh_frame"))
        assert table.fdes == ()
        assert "names no valid CIE" in table.errors[0]


class TestExecution:
    def test_main_ranges(self, frames):
        ranges = frames.unwind_ranges(frames.fdes[0])
        assert _spans(ranges) == [
            (MAIN, MAIN + 1), (MAIN + 1, MAIN + 4), (MAIN + 4, MAIN + 10), (MAIN + 10, MAIN + 16),
        ]
        cfas = [(r.rule.cfa.register, r.rule.cfa.offset) for r in ranges]
        assert cfas == [(7, 8), (7, 16), (6, 16), (7, 8)]
        assert 6 not in ranges[0].rule.registers
        assert ranges[1].rule.registers[6].offset == -16
        assert all(r.known for r in ranges)

    def test_ranges_tile_the_fde(self, frames):
        for fde in frames.fdes:
            ranges = frames.unwind_ranges(fde)
            assert ranges[0].start == fde.initial_location
            assert ranges[-1].end == fde.end
            for before, after in zip(ranges, ranges[1:]):
                assert before.end == after.start
                assert before.start < before.end

    def test_empty_program_is_one_range(self, frames):
        (only,) = frames.unwind_ranges(frames.fdes[1])
        assert (only.start, only.end) == (HELPER, HELPER + 0x10)
        assert only.rule.cfa == CfaDefinition(register=7, offset=8)

    def test_advance_past_end_is_clamped(self):
        ranges = execute_program(b"\x7f\x0e\x10", X86_CIE, 0x100, 0x110, initial=RSP8)
        assert _spans(ranges) == [(0x100, 0x110)]
        assert ranges[0].rule.cfa.offset == 8

    def test_remember_and_restore_state(self):
        program = bytes([0x0A, 0x0E, 0x20, 0x41, 0x0B, 0x41])
        ranges = execute_program(program, X86_CIE, 0, 4, initial=RSP8)
        assert [r.rule.cfa.offset for r in ranges] == [32, 8, 8]

    def test_restore_returns_to_cie_rule(self):
        initial = initial_rule(b"\x0c\x07\x08\x90\x01", X86_CIE)
        program = bytes([0x90, 0x04, 0x41, 0xD0])  # offset rip c-32; advance; restore rip
        ranges = execute_program(program, X86_CIE, 0, 2, initial=initial)
        assert ranges[0].rule.registers[16].offset == -32
        assert ranges[1].rule.registers[16].offset == -8

    def test_unknown_opcode_marks_rest_unknown(self):
        program = bytes([0x41, 0x0E, 0x10, 0x42, 0x3F, 0x41])
        ranges = execute_program(program, X86_CIE, 0x10, 0x20, initial=RSP8)
        assert _spans(ranges) == [(0x10, 0x11), (0x11, 0x13), (0x13, 0x20)]
        assert ranges[1].rule.cfa.offset == 16
        assert not ranges[2].known
        assert ranges[2].rule is None
        assert "0x3f" in ranges[2].error

    def test_decode_raises_on_unknown_opcode(self):
        with pytest.raises(UnsupportedOpcode):
            list(decode_instructions(b"\x3f", X86_CIE))

    def test_expression_rules(self):
        program = bytes([0x0F, 0x02, 0x77, 0x08, 0x10, 0x03, 0x02, 0x91, 0x00])
        (rng,) = execute_program(program, X86_CIE, 0, 4)
        assert rng.rule.cfa.expression == "7708"
        assert rng.rule.registers[3].kind == RegisterRuleKind.EXPRESSION
        assert rng.rule.registers[3].expression == "9100"


class TestLookups:
    def test_fdes_covering(self, frames):
        assert [f.initial_location for f in frames.fdes_covering(MAIN + 5)] == [MAIN]
        assert frames.find_fde(HELPER) is frames.fdes[1]
        assert frames.fdes_covering(FOO_BAR + 0x10) == []

    def test_fdes_in_range(self, frames):
        found = frames.fdes_in_range(MAIN + 8, HELPER + 1)
        assert [f.initial_location for f in found] == [MAIN, HELPER]

    def test_unwind_lookup(self, frames):
        lookup = UnwindLookup(frames.unwind_ranges(frames.fdes[0]))
        assert lookup.status_at(MAIN + 2) == UnwindStatus.COVERED
        assert lookup.status_at(MAIN + 0x10) == UnwindStatus.NONE
        assert lookup.starts_range(MAIN + 4)
        assert not lookup.starts_range(MAIN + 5)

    def test_unwind_table_is_sorted(self, frames):
        starts = [r.start for r in frames.unwind_table()]
        assert starts == sorted(starts)

    def test_orphaned_fdes(self, frames, sample_elf):
        assert frames.orphaned_fdes(SymbolIndex.build(sample_elf)) == []
        assert len(frames.orphaned_fdes(SymbolIndex([]))) == 3


def test_select_frame_section(sample_elf):
    assert select_frame_section(sample_elf).name == ".eh_frame"
    assert select_frame_section(sample_elf, (".debug_frame",)) is None


def test_format_rule():
    rule = initial_rule(b"\x0c\x07\x10\x86\x02\x90\x01", X86_CIE)
    assert format_rule(rule, lambda r: register_name(62, r)) == "cfa=rsp+16 rbp=c-16 rip=c-8"
    assert format_rule(None) == "unknown"


def test_register_names():
    assert register_name(62, 7) == "rsp"
    assert register_name(3, 4) == "esp"
    assert register_name(183, 31) == "sp"
    assert register_name(62, 99) == "r99"


def test_main_cfa_program_matches_fixture(frames):
    assert bytes(frames.program(frames.fdes[0]))[:len(MAIN_CFA)] == MAIN_CFA


def _debug_frame():
    cie_body = (b"\xff\xff\xff\xff" + b"\x01" + b"\x00" + b"\x01" + b"\x78" + b"\x10"
                + b"\x0c\x07\x08\x90\x01")
    cie_body += b"\x00" * (20 - len(cie_body))
    fde_body = (struct.pack("<IQQ", 0, MAIN, 0x10) + b"\x41\x0e\x10")
    fde_body += b"\x00" * (24 - len(fde_body))
    return (struct.pack("<I", len(cie_body)) + cie_body
            + struct.pack("<I", len(fde_body)) + fde_body)


class TestDebugFrame:
    @pytest.fixture
    def table(self):
        builder = ElfBuilder()
        builder.add_section(".debug_frame", _debug_frame())
        elf = parse(builder.build())
        return parse_frame_section(elf, elf.find_section(".debug_frame"))

    def test_records(self, table):
        (cie,) = table.cies.values()
        assert cie.version == 1
        assert cie.augmentation == ""
        assert cie.return_address_register == 16
        (fde,) = table.fdes
        assert fde.cie_offset == 0
        assert (fde.initial_location, fde.address_range) == (MAIN, 0x10)
        assert fde.lsda is None
        assert table.errors == ()

    def test_rules(self, table):
        ranges = table.unwind_ranges(table.fdes[0])
        assert _spans(ranges) == [(MAIN, MAIN + 1), (MAIN + 1, MAIN + 0x10)]
        assert [r.rule.cfa.offset for r in ranges] == [8, 16]
        assert ranges[1].rule.registers[16].offset == -8
