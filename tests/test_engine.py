"""Tests for the analysis session façade."""

import threading

import pytest

from elflens.core.engine import ElfAnalyzer
from elflens.core.errors import FileTooLarge, InvalidIndex, SectionNotFound, SymbolNotFound
from elflens.core.models import RawView, StringTableView, SymbolQuery, SymbolType
from shared.config import AnalysisConfig, LensConfig

from conftest import FOO_BAR, HELPER, MAIN, NOSIZE, TEXT_CODE, FakeDecoder, build_sample


class TestOpen:
    def test_from_path(self, sample_file, demangler):
        lens = ElfAnalyzer.open(sample_file, demangler=demangler,
                                decoder_factory=lambda elf, syntax: FakeDecoder(syntax))
        assert lens.header.entry == MAIN

    def test_size_limit(self, sample_file):
        config = LensConfig()
        config.analysis.max_file_size = 64
        with pytest.raises(FileTooLarge) as excinfo:
            ElfAnalyzer.open(sample_file, config=config)
        assert excinfo.value.limit == 64

    def test_missing_file(self, tmp_path):
        with pytest.raises(OSError):
            ElfAnalyzer.open(tmp_path / "missing")

    def test_from_bytes_uses_analysis_config(self):
        config = LensConfig()
        config.analysis.demangle = False
        lens = ElfAnalyzer.from_bytes(build_sample(), config=config)
        assert lens.config is config.analysis
        assert lens.demangler.demangle("_ZN3foo3barEv") == "_ZN3foo3barEv"


class TestSections:
    def test_find_by_name_or_index(self, lens):
        assert lens.find_section(".text").index == 2
        assert lens.find_section("2").name == ".text"
        with pytest.raises(SectionNotFound):
            lens.find_section(".missing")
        with pytest.raises(InvalidIndex):
            lens.find_section("77")

    def test_section_view(self, lens):
        _, view = lens.section_view(".strtab")
        assert isinstance(view, StringTableView)
        _, raw = lens.section_view(".strtab", raw=True)
        assert isinstance(raw, RawView)

    def test_section_bytes(self, lens):
        section, data = lens.section_bytes(".text", skip=2, size=3)
        assert section.name == ".text"
        assert bytes(data) == TEXT_CODE[2:5]


class TestSymbols:
    def test_query(self, lens):
        funcs = lens.symbols(SymbolQuery(types=frozenset({SymbolType.FUNC}), defined=True))
        assert [s.name for s in funcs] == ["helper", "main", "_ZN3foo3barEv", "nosize"]

    def test_display_name(self, lens):
        (foo,) = lens.symbol_index.find_by_name("_ZN3foo3barEv")
        assert lens.display_name(foo) == "foo::bar()"
        assert lens.display_name(foo, demangle=False) == "_ZN3foo3barEv"

    def test_hide_language_runtime(self, sample_elf, demangler):
        lens = ElfAnalyzer(sample_elf, config=AnalysisConfig(hide_language_runtime=True),
                           demangler=demangler)
        names = [s.name for s in lens.symbols()]
        assert "_ZN4core3fmt5write17h0123456789abcdefE" not in names
        assert "main" in names

    def test_resolve_function(self, lens):
        assert lens.resolve_function("main").value == MAIN
        assert lens.resolve_function("foo::bar()").value == FOO_BAR
        assert lens.resolve_function(HELPER + 3).name == "helper"
        with pytest.raises(SymbolNotFound):
            lens.resolve_function("nope")
        with pytest.raises(SymbolNotFound):
            lens.resolve_function(0x10)

    def test_index_is_built_once_across_threads(self, lens):
        seen = []

        def worker():
            seen.append(lens.symbol_index)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert all(index is seen[0] for index in seen)


class TestFrames:
    def test_default_section(self, lens):
        assert lens.frames().section.name == ".eh_frame"
        assert lens.frames() is lens.frames(".eh_frame")

    def test_missing_frame_section(self, lens):
        with pytest.raises(SectionNotFound):
            lens.frames(".debug_frame")

    def test_fdes_for(self, lens):
        assert [f.initial_location for f in lens.fdes_for(MAIN + 2)] == [MAIN]
        (foo,) = lens.symbol_index.find_by_name("_ZN3foo3barEv")
        assert [f.initial_location for f in lens.fdes_for(foo)] == [FOO_BAR]
        (nosize,) = lens.symbol_index.find_by_name("nosize")
        assert lens.fdes_for(nosize) == []

    def test_register_name(self, lens):
        assert lens.register_name(6) == "rbp"


class TestExceptionTables:
    def test_eh_regions(self, lens):
        regions = lens.eh_regions("foo::bar()")
        assert [(r.start, r.end) for r in regions] == [(0, 2), (2, 6), (6, 8)]
        assert lens.eh_regions("main") == []

    def test_lsda_tables(self, lens):
        (table,) = lens.lsda_tables("_ZN3foo3barEv")
        assert table.function_start == FOO_BAR
        assert lens.lsda_tables("helper") == []


class TestDisassemble:
    def test_with_cfi(self, lens):
        listing = lens.disassemble("main", cfi=True)
        instructions = list(listing)
        assert instructions[0].unwind is not None
        assert instructions[0].unwind.changed

    def test_without_cfi(self, lens):
        instructions = list(lens.disassemble("main"))
        assert all(i.unwind is None for i in instructions)

    def test_by_address(self, lens):
        listing = lens.disassemble(HELPER + 4)
        assert listing.symbol.name == "helper"

    def test_max_instructions(self, lens):
        assert len(list(lens.disassemble("nosize", max_instructions=4))) == 4

    def test_syntax_reaches_decoder(self, sample_elf):
        seen = []

        def factory(elf, syntax):
            seen.append(syntax)
            return FakeDecoder(syntax)

        lens = ElfAnalyzer(sample_elf, decoder_factory=factory)
        lens.disassemble("main")
        lens.disassemble("main", syntax="intel")
        assert seen == ["att", "intel"]

    def test_function_without_fde(self, lens):
        listing = lens.disassemble("nosize", cfi=True)
        assert listing.start == NOSIZE
        assert all(i.unwind.status.value == "none" for i in listing)
