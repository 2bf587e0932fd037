"""Tests for the disassembly driver, with a scripted decoder and with Capstone."""

import pytest

from elflens.analyzers.cfi import UnwindLookup, parse_frame_section
from elflens.analyzers.disassembly import (
    CapstoneDecoder,
    DecodedInstruction,
    disassemble,
    function_bounds,
)
from elflens.analyzers.symbols import SymbolIndex
from elflens.core.errors import InstructionDecodeError, SectionNotFound, UnsupportedArchitecture
from elflens.core.models import Symbol, SymbolType, UnwindStatus

from conftest import (
    FOO_BAR,
    HELPER,
    MAIN,
    NOSIZE,
    TEXT,
    FakeDecoder,
)


@pytest.fixture
def index(sample_elf):
    return SymbolIndex.build(sample_elf)


def _symbol(index, name):
    return index.find_by_name(name)[0]


class TestBounds:
    def test_sized_symbol(self, sample_elf, index):
        assert function_bounds(_symbol(index, "main"), sample_elf, index) == (MAIN, MAIN + 0x10, False)

    def test_sizeless_symbol_runs_to_section_end(self, sample_elf, index):
        start, end, inferred = function_bounds(_symbol(index, "nosize"), sample_elf, index)
        assert (start, end, inferred) == (NOSIZE, TEXT + 0x40, True)

    def test_sizeless_symbol_stops_at_next_symbol(self, sample_elf, index):
        sym = Symbol(index=99, name="early", value=MAIN + 4, size=0, shndx=2,
                     type=SymbolType.FUNC)
        assert function_bounds(sym, sample_elf, index) == (MAIN + 4, HELPER, True)


class TestDisassemble:
    def test_main(self, sample_elf, index, demangler):
        listing = disassemble(_symbol(index, "main"), sample_elf, FakeDecoder(),
                              index=index, demangler=demangler)
        instructions = list(listing)
        assert [i.mnemonic for i in instructions[:5]] == ["push", "mov", "call", "pop", "ret"]
        assert [i.address for i in instructions[:5]] == [
            MAIN, MAIN + 1, MAIN + 4, MAIN + 9, MAIN + 10,
        ]
        assert instructions[2].raw[:1] == b"\xe8"
        assert instructions[2].target_symbol == "helper"
        assert len(instructions) == 10
        assert not listing.boundary_inferred

    def test_instructions_tile_the_range(self, sample_elf, index):
        for name in ("main", "helper", "_ZN3foo3barEv", "nosize"):
            listing = disassemble(_symbol(index, name), sample_elf, FakeDecoder(), index=index)
            address = listing.start
            for ins in listing:
                assert ins.address == address
                assert ins.size >= 1
                address = ins.next_address
            assert address == listing.end

    def test_invalid_byte_becomes_pseudo_instruction(self, sample_elf, index):
        listing = disassemble(_symbol(index, "_ZN3foo3barEv"), sample_elf, FakeDecoder())
        first, second = list(listing)[:2]
        assert not first.valid
        assert first.size == 1
        assert first.raw == b"\xff"
        assert first.text == "(bad)"
        assert second.mnemonic == "ret"
        assert second.address == FOO_BAR + 1

    def test_decoder_errors_are_contained(self, sample_elf, index):
        class Exploding:
            def decode(self, code, address):
                raise InstructionDecodeError(address)

        instructions = list(disassemble(_symbol(index, "helper"), sample_elf, Exploding()))
        assert len(instructions) == 16
        assert not any(i.valid for i in instructions)

    def test_oversized_decode_is_rejected(self, sample_elf, index):
        class Greedy:
            def decode(self, code, address):
                return DecodedInstruction(len(code) + 1, "bogus", "")

        instructions = list(disassemble(_symbol(index, "helper"), sample_elf, Greedy()))
        assert all(not i.valid for i in instructions)

    def test_max_instructions(self, sample_elf, index):
        listing = disassemble(_symbol(index, "main"), sample_elf, FakeDecoder(),
                              max_instructions=3)
        assert len(list(listing)) == 3

    def test_boundary_inferred(self, sample_elf, index):
        listing = disassemble(_symbol(index, "nosize"), sample_elf, FakeDecoder(), index=index)
        instructions = list(listing)
        assert listing.boundary_inferred
        assert len(instructions) == 16
        assert instructions[-1].mnemonic == "ret"

    def test_unmapped_function(self, sample_elf):
        ghost = Symbol(index=1, name="ghost", value=0x10, size=4)
        with pytest.raises(SectionNotFound):
            disassemble(ghost, sample_elf, FakeDecoder())

    def test_lazy_generation(self, sample_elf, index):
        decoder = FakeDecoder()
        listing = disassemble(_symbol(index, "main"), sample_elf, decoder)
        assert decoder.calls == 0
        next(iter(listing))
        assert decoder.calls == 1


class TestUnwindOverlay:
    def test_main_annotations(self, sample_elf, index):
        frames = parse_frame_section(sample_elf, sample_elf.find_section(".eh_frame"))
        lookup = UnwindLookup(frames.unwind_ranges(frames.fdes[0]))
        instructions = list(disassemble(_symbol(index, "main"), sample_elf, FakeDecoder(),
                                        unwind=lookup))
        assert all(i.unwind.status == UnwindStatus.COVERED for i in instructions)
        changed = [i.address for i in instructions if i.unwind.changed]
        assert changed == [MAIN, MAIN + 1, MAIN + 4, MAIN + 10]
        pop = instructions[3]
        assert pop.unwind.rule.cfa.register == 6
        assert pop.unwind.rule.cfa.offset == 16

    def test_uncovered_function(self, sample_elf, index):
        instructions = list(disassemble(_symbol(index, "nosize"), sample_elf, FakeDecoder(),
                                        unwind=UnwindLookup([])))
        assert {i.unwind.status for i in instructions} == {UnwindStatus.NONE}
        assert all(i.unwind.rule is None for i in instructions)


class TestCapstone:
    def test_x86_64(self, sample_elf, index):
        pytest.importorskip("capstone")
        decoder = CapstoneDecoder(62, is_64bit=True, little_endian=True, syntax="att")
        instructions = list(disassemble(_symbol(index, "main"), sample_elf, decoder, index=index))
        mnemonics = [i.mnemonic for i in instructions[:5]]
        for mnemonic, base in zip(mnemonics, ("push", "mov", "call", "pop", "ret")):
            assert mnemonic.startswith(base)
        assert instructions[2].target_symbol == "helper"

    def test_intel_syntax(self):
        pytest.importorskip("capstone")
        decoder = CapstoneDecoder(62, syntax="intel")
        decoded = decoder.decode(b"\x48\x89\xe5", 0x1000)
        assert decoded == DecodedInstruction(3, "mov", "rbp, rsp")

    def test_unknown_machine(self):
        pytest.importorskip("capstone")
        with pytest.raises(UnsupportedArchitecture):
            CapstoneDecoder(0xBEEF)
