"""
ELF Lens Console Output
=======================

Rich-powered terminal rendering for every ``elflens`` listing: file
summary, headers, section views, symbols, disassembly with unwind
annotations, call frame records and LSDA tables.

Uses the :class:`~shared.console.LensConsole` abstraction for consistent
styling.
"""

from __future__ import annotations

from typing import Iterable, Optional

from rich.text import Text

from shared.console import LensConsole

from elflens.analyzers.cfi import FrameTable, format_rule
from elflens.analyzers.disassembly import FunctionDisassembly
from elflens.core.engine import ElfAnalyzer
from elflens.core.models import (
    CallFrameInstruction,
    CieRecord,
    EhFrameHdrView,
    FdeRecord,
    HeaderStatus,
    LsdaTable,
    ProgramHeader,
    RawView,
    SectionHeader,
    SectionView,
    StringTableView,
    Symbol,
    SymbolBinding,
    SymbolType,
    UnwindStatus,
)
from elflens.parsers.elf_parser import (
    section_flags_str,
    section_type_name,
    segment_flags_str,
    segment_type_name,
)
from elflens.parsers.reader import describe_encoding


# ---------------------------------------------------------------------------
# Colour helpers
# ---------------------------------------------------------------------------

_BINDING_STYLE: dict[SymbolBinding, str] = {
    SymbolBinding.GLOBAL: "bright_green",
    SymbolBinding.WEAK: "yellow",
    SymbolBinding.LOCAL: "dim",
    SymbolBinding.GNU_UNIQUE: "bright_magenta",
    SymbolBinding.OTHER: "red",
}

_TYPE_LETTER: dict[SymbolType, str] = {
    SymbolType.NOTYPE: "-",
    SymbolType.OBJECT: "O",
    SymbolType.FUNC: "F",
    SymbolType.SECTION: "S",
    SymbolType.FILE: "f",
    SymbolType.COMMON: "C",
    SymbolType.TLS: "T",
    SymbolType.GNU_IFUNC: "i",
    SymbolType.OTHER: "?",
}

_UNWIND_MARK: dict[UnwindStatus, tuple[str, str]] = {
    UnwindStatus.COVERED: ("│", "lens.cfi"),
    UnwindStatus.UNKNOWN: ("?", "lens.unknown"),
    UnwindStatus.NONE: (" ", ""),
}


class Hex:
    """Address formatter padded to the file's address width."""

    def __init__(self, address_size: int) -> None:
        self.width = address_size * 2

    def __call__(self, value: Optional[int]) -> str:
        if value is None:
            return "-"
        return f"{value:#0{self.width + 2}x}"


def _status_cell(status: HeaderStatus, error: Optional[str]) -> Text:
    if status == HeaderStatus.VALID:
        return Text("")
    return Text(f"invalid: {error or 'unknown reason'}", style="lens.invalid")


def _operand_text(value: object) -> str:
    if isinstance(value, int):
        return str(value)
    if isinstance(value, (bytes, bytearray)):
        return value.hex()
    return str(value)


# ---------------------------------------------------------------------------
# LensConsoleOutput
# ---------------------------------------------------------------------------

class LensConsoleOutput:
    """Rich terminal display for one :class:`ElfAnalyzer` session.

    Usage::

        output = LensConsoleOutput(lens)
        output.display_summary()
        output.display_function(lens.disassemble("main", cfi=True))
    """

    def __init__(
        self,
        lens: ElfAnalyzer,
        console: LensConsole | None = None,
        *,
        hexdump_width: int = 16,
        show_legend: bool = True,
    ) -> None:
        self._lens = lens
        self._console: LensConsole = console or LensConsole()
        self._hex = Hex(lens.elf.address_size)
        self._hexdump_width = hexdump_width
        self._show_legend = show_legend

    # ------------------------------------------------------------------ #
    #  File summary and headers
    # ------------------------------------------------------------------ #

    def display_summary(self) -> None:
        """Header overview followed by the program and section tables."""
        self.display_header()
        elf = self._lens.elf
        extra: list[tuple[str, str]] = []
        if elf.interpreter:
            extra.append(("Interpreter", elf.interpreter))
        if elf.soname:
            extra.append(("SONAME", elf.soname))
        for lib in elf.needed:
            extra.append(("Needed", lib))
        if elf.rpath:
            extra.append(("RPATH", elf.rpath))
        if elf.runpath:
            extra.append(("RUNPATH", elf.runpath))
        if extra:
            self._console.blank()
            self._console.key_values(extra)
        self._console.blank()
        self.display_program_headers()
        self._console.blank()
        self.display_sections()

    def display_header(self) -> None:
        elf = self._lens.elf
        h = elf.header
        self._console.section("File Header")
        self._console.key_values([
            ("Class", h.elf_class.value),
            ("Endianness", h.endianness.value),
            ("Version", h.version),
            ("OS/ABI", f"{elf.os_abi_name} (ABI version {h.abi_version})"),
            ("Type", elf.type_name),
            ("Machine", elf.machine_name),
            ("Entry point", self._hex(h.entry)),
            ("Flags", f"{h.flags:#x}"),
            ("Header size", f"{h.ehsize} bytes"),
            ("Program headers", f"{h.phnum} x {h.phentsize} bytes at offset {h.phoff:#x}"),
            ("Section headers", f"{h.shnum} x {h.shentsize} bytes at offset {h.shoff:#x}"),
            ("Section names", f"section {h.shstrndx}"),
        ])

    def display_program_headers(self, headers: Iterable[ProgramHeader] | None = None) -> None:
        hx = self._hex
        rows = []
        for ph in headers if headers is not None else self._lens.program_headers:
            rows.append((
                ph.index,
                segment_type_name(ph.type),
                segment_flags_str(ph.flags),
                f"{ph.offset:#x}",
                hx(ph.vaddr),
                hx(ph.paddr),
                f"{ph.filesz:#x}",
                f"{ph.memsz:#x}",
                f"{ph.align:#x}",
                _status_cell(ph.status, ph.error),
            ))
        self._console.section("Program Headers")
        self._console.table(
            None,
            ["Nr", "Type", "Flags", "Offset", "VirtAddr", "PhysAddr",
             "FileSiz", "MemSiz", "Align", ""],
            rows,
            styles=["dim", "bold", "", "", "lens.address", "lens.address", "", "", "", ""],
            justify=["right", "left", "left", "right", "right", "right",
                     "right", "right", "right", "left"],
        )

    def display_sections(self, sections: Iterable[SectionHeader] | None = None) -> None:
        hx = self._hex
        rows = []
        for sh in sections if sections is not None else self._lens.sections:
            rows.append((
                sh.index,
                sh.name,
                section_type_name(sh.type),
                section_flags_str(sh.flags),
                hx(sh.addr),
                f"{sh.offset:#x}",
                f"{sh.size:#x}",
                sh.link,
                sh.info,
                sh.addralign,
                sh.entsize,
                _status_cell(sh.status, sh.error),
            ))
        self._console.section("Section Headers")
        self._console.table(
            None,
            ["Nr", "Name", "Type", "Flags", "Address", "Offset", "Size",
             "Link", "Info", "Align", "EntSize", ""],
            rows,
            styles=["dim", "bold", "", "", "lens.address", "", "", "", "", "", "", ""],
            justify=["right", "left", "left", "left", "right", "right", "right",
                     "right", "right", "right", "right", "left"],
        )

    # ------------------------------------------------------------------ #
    #  Section views
    # ------------------------------------------------------------------ #

    def display_section_header(self, section: SectionHeader) -> None:
        self._console.key_values([
            ("Name", section.name or "<no name>"),
            ("Type", section_type_name(section.type)),
            ("Flags", section_flags_str(section.flags) or "-"),
            ("Address", self._hex(section.addr)),
            ("Offset", f"{section.offset:#x}"),
            ("Size", f"{section.size:#x} ({section.size} bytes)"),
        ])
        if not section.is_valid:
            self._console.warning(f"section header is invalid: {section.error}")

    def display_section_view(self, section: SectionHeader, view: SectionView) -> None:
        self._console.section(f"Section {section.name or section.index}")
        self.display_section_header(section)
        self._console.blank()
        if isinstance(view, StringTableView):
            self._console.table(
                None,
                ["Offset", "String"],
                [(f"{e.offset:#x}", e.value) for e in view.entries],
                styles=["lens.offset", ""],
                justify=["right", "left"],
            )
        elif isinstance(view, EhFrameHdrView):
            self._display_eh_frame_hdr(view)
        elif isinstance(view, RawView):
            if view.error:
                self._console.warning(f"showing raw content: {view.error}")
            self.display_hexdump(self._lens.elf.section_data(section), base=0)

    def _display_eh_frame_hdr(self, view: EhFrameHdrView) -> None:
        hx = self._hex
        self._console.key_values([
            ("Version", view.version),
            ("eh_frame_ptr", f"{hx(view.eh_frame_ptr)} ({describe_encoding(view.eh_frame_ptr_encoding)})"),
            ("FDE count", f"{view.fde_count} ({describe_encoding(view.fde_count_encoding)})"),
            ("Table encoding", describe_encoding(view.table_encoding)),
        ])
        rows = []
        for entry in view.entries:
            sym = self._lens.symbol_index.find_nearest(entry.initial_location)
            rows.append((
                hx(entry.initial_location),
                hx(entry.fde_address),
                self._symbol_offset(sym, entry.initial_location) if sym else "",
            ))
        self._console.blank()
        self._console.table(
            "Table content",
            ["Initial location", "FDE address", "Symbol"],
            rows,
            styles=["lens.address", "lens.address", "lens.symbol"],
        )

    def display_hexdump(self, data: bytes | memoryview, *, base: int = 0) -> None:
        self._console.hexdump(data, base=base, width=self._hexdump_width)

    # ------------------------------------------------------------------ #
    #  Symbols
    # ------------------------------------------------------------------ #

    def display_symbols(self, symbols: Iterable[Symbol], *, demangle: bool = True) -> None:
        hx = self._hex
        rows = []
        for sym in symbols:
            binding = Text(sym.binding.value, style=_BINDING_STYLE[sym.binding])
            rows.append((
                hx(sym.value),
                f"{sym.size:#x}",
                binding,
                _TYPE_LETTER[sym.type],
                sym.visibility.value,
                "UND" if not sym.is_defined else sym.shndx,
                "D" if sym.dynamic else "",
                self._lens.display_name(sym, demangle),
            ))
        self._console.section("Symbols")
        self._console.table(
            None,
            ["Value", "Size", "Bind", "T", "Vis", "Ndx", "", "Name"],
            rows,
            styles=["lens.address", "", "", "bold", "dim", "", "dim", ""],
            justify=["right", "right", "left", "center", "left", "right", "left", "left"],
            caption=f"{len(rows)} symbols",
        )
        if self._show_legend:
            legend = "  ".join(
                f"{letter}={t.value}" for t, letter in _TYPE_LETTER.items()
                if t is not SymbolType.OTHER
            )
            self._console.print(Text(f"T: {legend}    D: dynamic symbol table", style="lens.dim"))

    def _symbol_offset(self, sym: Symbol, address: int) -> str:
        name = self._lens.display_name(sym)
        delta = address - sym.value
        return f"{name} + {delta:#x}" if delta else name

    # ------------------------------------------------------------------ #
    #  Disassembly
    # ------------------------------------------------------------------ #

    def display_function(self, listing: FunctionDisassembly) -> None:
        """Print a function listing; CFI rules appear when annotated."""
        hx = self._hex
        name = self._lens.display_name(listing.symbol)
        if listing.symbol.type not in (SymbolType.FUNC, SymbolType.GNU_IFUNC):
            self._console.warning(f"symbol {name!r} has type {listing.symbol.type.value}")
        if listing.boundary_inferred:
            self._console.warning(
                f"symbol {name!r} has no size; assuming it ends at {hx(listing.end)}"
            )
        self._console.print(Text(f"{name}:", style="lens.mnemonic"))

        reg = self._lens.register_name
        for ins in listing:
            line = Text()
            if ins.unwind is not None:
                mark, style = _UNWIND_MARK[ins.unwind.status]
                line.append(f"{mark} ", style=style)
            line.append(hx(ins.address), style="lens.address")
            line.append(" │  ", style="lens.dim")
            raw = ins.raw.hex() if len(ins.raw) > 8 else " ".join(f"{b:02x}" for b in ins.raw)
            line.append(raw.ljust(24), style="lens.bytes")
            line.append(" │  ", style="lens.dim")
            if ins.valid:
                line.append(ins.mnemonic.ljust(8), style="lens.mnemonic")
                line.append(ins.operands)
                if ins.target_symbol:
                    line.append(f"  <{ins.target_symbol}>", style="lens.symbol")
            else:
                line.append(ins.text, style="lens.invalid")
            if ins.unwind is not None and ins.unwind.changed:
                if ins.unwind.status == UnwindStatus.UNKNOWN:
                    line.append("    ; unwind info unknown", style="lens.unknown")
                else:
                    line.append(f"    ; {format_rule(ins.unwind.rule, reg)}", style="lens.cfi")
            self._console.print(line)

    # ------------------------------------------------------------------ #
    #  Call frame information
    # ------------------------------------------------------------------ #

    def display_frames(
        self,
        table: FrameTable,
        fdes: Iterable[FdeRecord] | None = None,
    ) -> None:
        """Print CIEs and FDEs with their decoded instruction streams."""
        self._console.section(f"Call frame information ({table.section.name})")
        selected = list(fdes) if fdes is not None else list(table.fdes)
        wanted_cies = {f.cie_offset for f in selected} if fdes is not None else set(table.cies)
        orphans = {f.offset for f in self._lens.orphaned_fdes(table.section.name)}
        for offset in sorted(wanted_cies):
            cie = table.cies[offset]
            self._display_cie(table, cie)
            for fde in selected:
                if fde.cie_offset == offset:
                    self._display_fde(table, fde, orphaned=fde.offset in orphans)
        orphan_count = sum(1 for f in selected if f.offset in orphans)
        if orphan_count:
            self._console.blank()
            self._console.warning(f"{orphan_count} FDE(s) not covered by any function symbol")
        for err in table.errors:
            self._console.warning(err)

    def _display_cie(self, table: FrameTable, cie: CieRecord) -> None:
        hx = self._hex
        reg = self._lens.register_name
        self._console.blank()
        self._console.print(Text(f"CIE  offset={cie.offset:#x}", style="lens.key"))
        pairs: list[tuple[str, object]] = [
            ("Version", cie.version),
            ("Length", cie.length),
            ("Augmentation", cie.augmentation or "-"),
            ("Code alignment", cie.code_alignment_factor),
            ("Data alignment", cie.data_alignment_factor),
            ("Return addr register",
             f"{cie.return_address_register} ({reg(cie.return_address_register)})"),
        ]
        if "R" in cie.augmentation:
            pairs.append(("FDE encoding", describe_encoding(cie.fde_encoding)))
        if "L" in cie.augmentation:
            pairs.append(("LSDA encoding", describe_encoding(cie.lsda_encoding)))
        if cie.personality is not None:
            pairs.append(("Personality", hx(cie.personality)))
        if cie.signal_frame:
            pairs.append(("Signal frame", "yes"))
        self._console.key_values(pairs)
        self._display_instructions(table, cie)

    def _display_fde(self, table: FrameTable, fde: FdeRecord, *, orphaned: bool = False) -> None:
        hx = self._hex
        self._console.blank()
        self._console.print(Text(
            f"  FDE  offset={fde.offset:#x}  CIE={fde.cie_offset:#x}", style="lens.key"))
        pairs: list[tuple[str, object]] = [
            ("  PC range", f"{hx(fde.initial_location)}..{hx(fde.end)}"),
        ]
        sym = self._lens.symbol_index.find_nearest(fde.initial_location)
        if sym is not None:
            pairs.append(("  Symbol", self._symbol_offset(sym, fde.initial_location)))
        if fde.lsda is not None:
            pairs.append(("  LSDA", hx(fde.lsda)))
        if orphaned:
            pairs.append(("  Orphaned", "no function symbol covers this FDE"))
        self._console.key_values(pairs)
        self._display_instructions(table, fde, indent="    ")

    def _display_instructions(
        self,
        table: FrameTable,
        record: CieRecord | FdeRecord,
        indent: str = "  ",
    ) -> None:
        instructions, error = table.instructions(record)
        for ins in instructions:
            self._console.print(self._instruction_text(ins, indent))
        if error is not None:
            self._console.print(Text(f"{indent}<undecodable: {error}>", style="lens.unknown"))

    @staticmethod
    def _instruction_text(ins: CallFrameInstruction, indent: str) -> Text:
        line = Text(indent + "├──⮞ ")
        if ins.name == "DW_CFA_nop":
            line.append(f"{ins.name}()", style="lens.dim")
            return line
        ops = ", ".join(_operand_text(op) for op in ins.operands)
        line.append(f"{ins.name}({ops})")
        return line

    # ------------------------------------------------------------------ #
    #  Exception handling tables
    # ------------------------------------------------------------------ #

    def display_lsda(self, symbol: Symbol, tables: list[LsdaTable]) -> None:
        hx = self._hex
        name = self._lens.display_name(symbol)
        self._console.section(f"LSDA for {name}")
        if not tables:
            self._console.info(f"{name} has no exception handling table")
            return
        for table in tables:
            self._console.key_values([
                ("Address", hx(table.address)),
                ("Function", hx(table.function_start)),
                ("LPStart", hx(table.lpstart)),
                ("TType encoding", describe_encoding(table.ttype_encoding)),
                ("TType base", hx(table.ttype_base)),
                ("Call site encoding", describe_encoding(table.call_site_encoding)),
            ])
            rows = []
            for region in table.regions:
                rows.append((
                    f"{hx(region.absolute_start)}..{hx(region.absolute_end)}",
                    f"+{region.start:#x}..+{region.end:#x}",
                    hx(region.absolute_landing_pad) if region.landing_pad is not None else "none",
                    region.action,
                    ", ".join(self._type_filter_text(table, f) for f in region.type_filters) or "-",
                ))
            self._console.table(
                None,
                ["Range", "Relative", "Landing pad", "Action", "Type filters"],
                rows,
                styles=["lens.address", "dim", "lens.address", "", ""],
            )

    def _type_filter_text(self, table: LsdaTable, type_filter: int) -> str:
        """``filter -> type_info address (symbol)`` for positive catch filters."""
        address = self._lens.type_info(table, type_filter)
        if address is None:
            return str(type_filter)
        text = f"{type_filter} -> {self._hex(address)}"
        named = self._lens.symbol_index.symbols_at(address)
        if named:
            text += f" ({self._lens.display_name(named[0])})"
        return text
