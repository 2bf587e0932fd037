"""Tests for LSDA decoding and the exception region index."""

import pytest

from elflens.analyzers.cfi import parse_frame_section
from elflens.analyzers.eh_table import EhTable, parse_lsda, parse_lsda_table, type_info_address
from elflens.core.errors import DecodeError
from elflens.core.models import FdeRecord, Symbol
from elflens.parsers.elf_parser import parse

from conftest import (
    EXCEPT_TABLE,
    FOO_BAR,
    MAIN,
    SHF_ALLOC,
    TYPEINFO_A,
    TYPEINFO_B,
    ElfBuilder,
    uleb,
)


@pytest.fixture
def frames(sample_elf):
    return parse_frame_section(sample_elf, sample_elf.find_section(".eh_frame"))


@pytest.fixture
def table(sample_elf):
    return parse_lsda_table(sample_elf, EXCEPT_TABLE, FOO_BAR)


class TestLsda:
    def test_header(self, table):
        assert table.lpstart == FOO_BAR
        assert table.ttype_encoding == 0x03
        assert table.call_site_encoding == 0x01
        assert table.ttype_base is not None

    def test_regions(self, table):
        summary = [(r.start, r.end, r.landing_pad, r.action, r.type_filters)
                   for r in table.regions]
        assert summary == [
            (0, 2, None, 0, ()),
            (2, 6, 8, 1, (1,)),
            (6, 8, 0xA, 3, (2, 1)),
        ]

    def test_absolute_addresses(self, table):
        region = table.regions[1]
        assert region.absolute_start == FOO_BAR + 2
        assert region.absolute_end == FOO_BAR + 6
        assert region.absolute_landing_pad == FOO_BAR + 8
        assert table.regions[0].absolute_landing_pad is None

    def test_type_info(self, sample_elf, table):
        assert type_info_address(sample_elf, table, 1) == TYPEINFO_A
        assert type_info_address(sample_elf, table, 2) == TYPEINFO_B
        assert type_info_address(sample_elf, table, 0) is None
        assert type_info_address(sample_elf, table, -1) is None

    def test_unmapped_lsda(self, sample_elf):
        with pytest.raises(DecodeError):
            parse_lsda_table(sample_elf, 0x10, FOO_BAR)

    def test_call_site_table_past_section_end(self):
        lsda = b"\xff\xff\x01" + uleb(0x40) + b"\x00\x02\x00\x00"
        builder = ElfBuilder()
        builder.add_section(".gcc_except_table", lsda, flags=SHF_ALLOC, addr=0x3000)
        elf = parse(builder.build())
        with pytest.raises(DecodeError, match="runs past the end"):
            parse_lsda_table(elf, 0x3000, 0x1000)

    def test_action_chain_loop_is_rejected(self):
        call_sites = uleb(0) + uleb(2) + uleb(4) + uleb(1)
        actions = b"\x01\x7f"  # filter 1, displacement -1: points back at itself
        lsda = b"\xff\xff\x01" + uleb(len(call_sites)) + call_sites + actions
        builder = ElfBuilder()
        builder.add_section(".gcc_except_table", lsda, flags=SHF_ALLOC, addr=0x3000)
        elf = parse(builder.build())
        with pytest.raises(DecodeError, match="loops"):
            parse_lsda_table(elf, 0x3000, 0x1000)


class TestParseLsda:
    def test_fde_without_lsda(self, frames, sample_elf):
        assert parse_lsda(frames.fdes[0], sample_elf) == []

    def test_fde_with_lsda(self, frames, sample_elf):
        regions = parse_lsda(frames.fdes[2], sample_elf)
        assert [r.start for r in regions] == [0, 2, 6]

    def test_malformed_lsda_yields_nothing(self, sample_elf):
        fde = FdeRecord(offset=0, cie_offset=0, initial_location=MAIN,
                        address_range=0x10, lsda=0x10)
        assert parse_lsda(fde, sample_elf) == []


class TestEhTable:
    def test_build(self, frames, sample_elf):
        eh = EhTable.build(sample_elf, frames)
        assert len(eh) == 1
        assert eh.errors == ()
        assert eh.for_fde(frames.fdes[2]).address == EXCEPT_TABLE
        assert eh.for_fde(frames.fdes[0]) is None

    def test_regions_sorted(self, frames, sample_elf):
        regions = EhTable.build(sample_elf, frames).regions
        starts = [r.absolute_start for r in regions]
        assert starts == sorted(starts)

    def test_find_for_symbol(self, frames, sample_elf):
        eh = EhTable.build(sample_elf, frames)
        foo = Symbol(index=1, name="foo", value=FOO_BAR, size=0x10)
        assert len(eh.find_for_symbol(foo)) == 3
        main = Symbol(index=2, name="main", value=MAIN, size=0x10)
        assert eh.find_for_symbol(main) == []
        sizeless = Symbol(index=3, name="foo_alias", value=FOO_BAR, size=0)
        assert len(eh.find_for_symbol(sizeless)) == 3
