"""
ELF Lens Console Interface
==========================

Rich-powered console abstraction shared by every ``elflens`` report.

The class wraps :class:`rich.console.Console` and adds convenience helpers
for section headers, severity-coloured messages, key/value panels, tables
and hex dumps, all using one palette.

References:
    - Rich library: https://github.com/Textualize/rich
"""

from __future__ import annotations

from typing import Any, Sequence

from rich.console import Console
from rich.markup import escape
from rich.table import Table
from rich.text import Text
from rich.theme import Theme

_LENS_THEME = Theme(
    {
        "lens.section": "bold bright_magenta",
        "lens.success": "bold green",
        "lens.warning": "bold yellow",
        "lens.error": "bold red",
        "lens.info": "bold bright_blue",
        "lens.dim": "dim white",
        "lens.key": "bold bright_cyan",
        "lens.address": "cyan",
        "lens.offset": "bright_black",
        "lens.bytes": "bright_black",
        "lens.mnemonic": "bold bright_white",
        "lens.symbol": "bright_green",
        "lens.invalid": "bold red",
        "lens.cfi": "yellow",
        "lens.unknown": "bold bright_red",
    }
)


def _printable(byte: int) -> str:
    return chr(byte) if 0x20 <= byte < 0x7F else "."


class LensConsole:
    """Unified console interface for ELF Lens reports.

    Usage::

        con = LensConsole()
        con.section("Section Headers")
        con.table("Sections", ["Nr", "Name"], rows)
    """

    def __init__(
        self,
        *,
        quiet: bool = False,
        record: bool = False,
        width: int | None = None,
        color: bool | None = None,
    ) -> None:
        """Initialise the console.

        Args:
            quiet:  Suppress all output (library / test mode).
            record: Enable Rich recording for text / HTML export.
            width:  Fixed terminal width; autodetected when ``None``.
            color:  Force colour on (``True``) or off (``False``).
        """
        self._console = Console(
            theme=_LENS_THEME,
            quiet=quiet,
            record=record,
            highlight=False,
            width=width,
            no_color=(color is False),
            force_terminal=(True if color else None),
        )

    @property
    def rich(self) -> Console:
        """Direct access to the underlying Rich Console instance."""
        return self._console

    # ------------------------------------------------------------------ #
    #  Section header
    # ------------------------------------------------------------------ #

    def section(self, title: str) -> None:
        """Print a prominent section header."""
        self._console.rule(
            f"  {title}  ",
            style="lens.section",
            characters="─",
        )

    # ------------------------------------------------------------------ #
    #  Message helpers (severity-coloured)
    # ------------------------------------------------------------------ #

    def success(self, message: str) -> None:
        self._console.print(f"[lens.success]ok:[/lens.success] {escape(message)}")

    def warning(self, message: str) -> None:
        self._console.print(f"[lens.warning]warning:[/lens.warning] {escape(message)}")

    def error(self, message: str) -> None:
        self._console.print(f"[lens.error]error:[/lens.error] {escape(message)}")

    def info(self, message: str) -> None:
        self._console.print(f"[lens.info]info:[/lens.info] {escape(message)}")

    # ------------------------------------------------------------------ #
    #  Structured output
    # ------------------------------------------------------------------ #

    def key_values(
        self,
        pairs: Sequence[tuple[str, Any]],
        *,
        title: str | None = None,
    ) -> None:
        """Render an aligned two-column key/value listing."""
        tbl = Table(
            title=title,
            show_header=False,
            box=None,
            padding=(0, 2, 0, 0),
        )
        tbl.add_column(style="lens.key", no_wrap=True)
        tbl.add_column()
        for key, value in pairs:
            tbl.add_row(f"{key}:", value if isinstance(value, Text) else Text(str(value)))
        self._console.print(tbl)

    def table(
        self,
        title: str | None,
        columns: Sequence[str],
        rows: Sequence[Sequence[Any]],
        *,
        caption: str | None = None,
        styles: Sequence[str] | None = None,
        justify: Sequence[str] | None = None,
    ) -> None:
        """Render a styled Rich table.

        Args:
            title:    Table title.
            columns:  Column header labels.
            rows:     Row tuples; non-:class:`Text` cells are shown as plain text.
            caption:  Optional footer caption.
            styles:   Optional per-column Rich style strings.
            justify:  Optional per-column justification.
        """
        tbl = Table(
            title=title,
            caption=caption,
            border_style="bright_cyan",
            header_style="bold bright_magenta",
            show_lines=False,
            padding=(0, 1),
        )
        for idx, col_name in enumerate(columns):
            style = styles[idx] if styles and idx < len(styles) else ""
            just = justify[idx] if justify and idx < len(justify) else "left"
            tbl.add_column(col_name, style=style, justify=just)  # type: ignore[arg-type]

        for row in rows:
            tbl.add_row(*(c if isinstance(c, Text) else Text(str(c)) for c in row))

        self._console.print(tbl)

    def hexdump(
        self,
        data: bytes | memoryview,
        *,
        base: int = 0,
        width: int = 16,
    ) -> None:
        """Print *data* as an offset / hex / ASCII dump.

        Args:
            data:  Bytes to dump.
            base:  Value printed as the offset of the first byte.
            width: Bytes per line.
        """
        raw = bytes(data)
        for line_off in range(0, len(raw), width):
            chunk = raw[line_off:line_off + width]
            hex_part = " ".join(f"{b:02x}" for b in chunk)
            ascii_part = "".join(_printable(b) for b in chunk)
            line = Text()
            line.append(f"{base + line_off:08x}  ", style="lens.offset")
            line.append(hex_part.ljust(width * 3 - 1))
            line.append(f"  |{ascii_part}|", style="lens.dim")
            self._console.print(line)

    # ------------------------------------------------------------------ #
    #  Utility
    # ------------------------------------------------------------------ #

    def print(self, *args: Any, **kwargs: Any) -> None:
        """Proxy to :meth:`rich.console.Console.print`."""
        self._console.print(*args, **kwargs)

    def blank(self, count: int = 1) -> None:
        for _ in range(count):
            self._console.print()

    def export_text(self) -> str:
        """Export recorded output as plain text (requires ``record=True``)."""
        return self._console.export_text()
