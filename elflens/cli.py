"""
ELF Lens CLI
============

Click-based command-line interface for the ELF Lens inspector.  Every
subcommand reads the same file, named by ``--file`` or the ``ELF``
environment variable.

Usage::

    elflens -f /bin/true                   # summary
    elflens -f /bin/true h                 # file header
    elflens -f /bin/true sh .dynstr        # one section, interpreted
    elflens -f /bin/true sh .text -x -n 64 # hexdump of the first 64 bytes
    elflens -f ./a.out sym -g -t func      # global functions
    elflens -f ./a.out fn main --cfi       # disassembly with unwind rules
    elflens -f ./a.out eh -s main          # FDEs covering main
    elflens -f ./a.out lsda main           # exception regions of main

References:
    - Click Documentation. https://click.palletsprojects.com/
"""

from __future__ import annotations

import functools
import re
import sys
from pathlib import Path
from typing import Any, Callable, Optional

import click

from shared.config import LensConfig
from shared.console import LensConsole
from shared.logger import LensLogger

from elflens.core.engine import ElfAnalyzer
from elflens.core.errors import ElfLensError
from elflens.core.models import (
    SymbolBinding,
    SymbolQuery,
    SymbolType,
    SymbolVisibility,
)
from elflens.output.console import LensConsoleOutput

# sections shown as decoded CIE/FDE records by "sh"
_FRAME_SECTIONS = frozenset({".eh_frame", ".debug_frame"})

_TYPE_CHOICES: dict[str, SymbolType] = {
    "none": SymbolType.NOTYPE,
    "func": SymbolType.FUNC,
    "object": SymbolType.OBJECT,
    "section": SymbolType.SECTION,
    "file": SymbolType.FILE,
    "common": SymbolType.COMMON,
    "tls": SymbolType.TLS,
    "ifunc": SymbolType.GNU_IFUNC,
}


def parse_address(text: str) -> int:
    """Parse a hexadecimal address, with or without a ``0x`` prefix."""
    digits = text.strip().lower()
    if digits.startswith("0x"):
        digits = digits[2:]
    try:
        return int(digits, 16)
    except ValueError:
        raise click.BadParameter(f"couldn't parse memory address {text!r}") from None


class _AddressType(click.ParamType):
    name = "address"

    def convert(self, value: Any, param: Optional[click.Parameter], ctx: Optional[click.Context]) -> int:
        if isinstance(value, int):
            return value
        return parse_address(value)


ADDRESS = _AddressType()


# ===================================================================== #
#  CLI Group
# ===================================================================== #

class _AliasedGroup(click.Group):
    """Group resolving short command aliases."""

    aliases: dict[str, str] = {
        "h": "header",
        "program-headers": "ph",
        "section": "sh",
        "symbols": "sym",
    }

    def get_command(self, ctx: click.Context, cmd_name: str) -> Optional[click.Command]:
        return super().get_command(ctx, self.aliases.get(cmd_name, cmd_name))

    def resolve_command(self, ctx: click.Context, args: list[str]):
        _, cmd, rest = super().resolve_command(ctx, args)
        return cmd.name if cmd is not None else None, cmd, rest


def _handle_errors(func: Callable[..., None]) -> Callable[..., None]:
    """Map analysis failures to a one-line error and exit status 1."""

    @functools.wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> None:
        ctx = click.get_current_context()
        console: LensConsole = ctx.obj["console"]
        logger: LensLogger = ctx.obj["logger"]
        try:
            func(*args, **kwargs)
        except (ElfLensError, OSError) as exc:
            logger.debug("command failed", exc_info=True)
            console.error(str(exc))
            sys.exit(1)

    return wrapper


def _session(ctx: click.Context) -> tuple[ElfAnalyzer, LensConsoleOutput]:
    """Open the ELF file on first use and cache the session in ``ctx.obj``."""
    if "lens" not in ctx.obj:
        path = ctx.obj["path"]
        if path is None:
            raise click.UsageError("no ELF file given; use --file or set ELF")
        config: LensConfig = ctx.obj["config"]
        lens = ElfAnalyzer.open(path, config=config, logger=ctx.obj["logger"])
        ctx.obj["lens"] = lens
        ctx.obj["display"] = LensConsoleOutput(
            lens,
            ctx.obj["console"],
            hexdump_width=config.output.hexdump_width,
            show_legend=config.output.show_legend,
        )
    return ctx.obj["lens"], ctx.obj["display"]


@click.group(cls=_AliasedGroup, invoke_without_command=True)
@click.option(
    "--file", "-f", "path",
    envvar="ELF",
    type=click.Path(exists=True, dir_okay=False),
    default=None,
    help="ELF file to inspect (default: $ELF).",
)
@click.option(
    "--config", "-c",
    type=click.Path(exists=True, dir_okay=False),
    default=None,
    help="Path to an ELF Lens configuration file (TOML).",
)
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default=None,
    help="Diagnostics verbosity (default from configuration).",
)
@click.option(
    "--no-color",
    is_flag=True,
    default=False,
    help="Disable coloured output.",
)
@click.pass_context
def cli(
    ctx: click.Context,
    path: Optional[str],
    config: Optional[str],
    log_level: Optional[str],
    no_color: bool,
) -> None:
    """ELF Lens -- inspect ELF headers, symbols, code and unwind tables."""
    ctx.ensure_object(dict)

    try:
        lens_config = LensConfig.load(config)
    except (OSError, ValueError) as exc:
        raise click.ClickException(f"invalid configuration: {exc}") from exc

    settings = lens_config.global_settings
    logger = LensLogger(
        "cli",
        log_level=log_level or ("DEBUG" if settings.debug else settings.log_level),
        log_file=settings.log_file or None,
        json_logs=settings.log_json,
    )

    ctx.obj["config"] = lens_config
    ctx.obj["logger"] = logger
    ctx.obj["console"] = LensConsole(color=False if no_color else None)
    ctx.obj["path"] = path

    if ctx.invoked_subcommand is None:
        ctx.invoke(summary)


# ===================================================================== #
#  File structure
# ===================================================================== #

@cli.command()
@click.pass_context
@_handle_errors
def summary(ctx: click.Context) -> None:
    """File header, program headers and section headers."""
    _, display = _session(ctx)
    display.display_summary()


@cli.command()
@click.pass_context
@_handle_errors
def header(ctx: click.Context) -> None:
    """Fields of the ELF file header."""
    _, display = _session(ctx)
    display.display_header()


@cli.command("ph")
@click.pass_context
@_handle_errors
def program_headers(ctx: click.Context) -> None:
    """List all program headers."""
    _, display = _session(ctx)
    display.display_program_headers()


@cli.command()
@click.pass_context
@_handle_errors
def sections(ctx: click.Context) -> None:
    """List all section headers."""
    _, display = _session(ctx)
    display.display_sections()


@cli.command("sh")
@click.argument("name")
@click.option("--hexdump", "-x", is_flag=True, default=False,
              help="Always show the content as a hexdump.")
@click.option("--skip", "-s", type=click.IntRange(min=0), default=0,
              help="Bytes to skip for the hexdump or export.")
@click.option("--size", "-n", type=click.IntRange(min=0), default=None,
              help="Maximum bytes to dump or export.")
@click.option("--output", "-o", "output_path", type=click.Path(dir_okay=False), default=None,
              help="Write the section content to this file.")
@click.pass_context
@_handle_errors
def section(
    ctx: click.Context,
    name: str,
    hexdump: bool,
    skip: int,
    size: Optional[int],
    output_path: Optional[str],
) -> None:
    """Show one section (by name or index), formatted by its kind."""
    lens, display = _session(ctx)
    console: LensConsole = ctx.obj["console"]

    if output_path is not None:
        sh, data = lens.section_bytes(name, skip, size)
        Path(output_path).write_bytes(bytes(data))
        console.success(f"wrote {len(data)} bytes of {sh.name or sh.index} to {output_path}")
        return

    if hexdump or skip or size is not None:
        sh, data = lens.section_bytes(name, skip, size)
        display.display_section_header(sh)
        console.blank()
        display.display_hexdump(data, base=skip)
        return

    sh = lens.find_section(name)
    if sh.name in _FRAME_SECTIONS:
        display.display_section_header(sh)
        display.display_frames(lens.frames(sh.name))
        return

    sh, view = lens.section_view(name)
    display.display_section_view(sh, view)


# ===================================================================== #
#  Symbols
# ===================================================================== #

@cli.command("sym")
@click.option("--local", "-l", is_flag=True, default=False, help="Only local symbols.")
@click.option("--global", "-g", "global_", is_flag=True, default=False,
              help="Only global symbols (undefined ones included).")
@click.option("--weak", "-w", is_flag=True, default=False, help="Only weak symbols.")
@click.option("--visible", "-v", is_flag=True, default=False,
              help="Only symbols with default visibility.")
@click.option("--defined", "-d", is_flag=True, default=False, help="Only defined symbols.")
@click.option("--type", "-t", "sym_type", type=click.Choice(sorted(_TYPE_CHOICES)), default=None,
              help="Only symbols of this type.")
@click.option("--filter", "-f", "pattern", default=None,
              help="Only symbols whose name matches this regex.")
@click.option("--dynamic", "-D", is_flag=True, default=False,
              help="List the dynamic symbol table instead of .symtab.")
@click.option("--no-demangle", is_flag=True, default=False, help="Show raw symbol names.")
@click.option("--no-rust-std", is_flag=True, default=False,
              help="Hide symbols of the Rust core, alloc and std libraries.")
@click.pass_context
@_handle_errors
def symbols(
    ctx: click.Context,
    local: bool,
    global_: bool,
    weak: bool,
    visible: bool,
    defined: bool,
    sym_type: Optional[str],
    pattern: Optional[str],
    dynamic: bool,
    no_demangle: bool,
    no_rust_std: bool,
) -> None:
    """List symbols, optionally filtered."""
    if pattern is not None:
        try:
            re.compile(pattern)
        except re.error as exc:
            raise click.BadParameter(str(exc), param_hint="--filter") from exc

    bindings = set()
    if local:
        bindings.add(SymbolBinding.LOCAL)
    if global_:
        bindings.update((SymbolBinding.GLOBAL, SymbolBinding.GNU_UNIQUE))
    if weak:
        bindings.add(SymbolBinding.WEAK)

    query = SymbolQuery(
        bindings=frozenset(bindings) if bindings else None,
        types=frozenset({_TYPE_CHOICES[sym_type]}) if sym_type else None,
        visibilities=frozenset({SymbolVisibility.DEFAULT}) if visible else None,
        defined=True if defined else None,
        dynamic=dynamic,
        name_pattern=pattern,
        exclude_language_runtime=no_rust_std,
    )
    lens, display = _session(ctx)
    display.display_symbols(lens.symbols(query, demangle=not no_demangle),
                            demangle=not no_demangle)


# ===================================================================== #
#  Code and unwind tables
# ===================================================================== #

@cli.command("fn")
@click.argument("name")
@click.option("--address", "-a", is_flag=True, default=False,
              help="NAME is a hexadecimal address, not a symbol name.")
@click.option("--cfi", is_flag=True, default=False,
              help="Superimpose call frame information.")
@click.option("--syntax", type=click.Choice(["att", "intel"]), default=None,
              help="Assembly syntax (default from configuration).")
@click.pass_context
@_handle_errors
def function(
    ctx: click.Context,
    name: str,
    address: bool,
    cfi: bool,
    syntax: Optional[str],
) -> None:
    """Disassemble a function."""
    lens, display = _session(ctx)
    target: int | str = parse_address(name) if address else name
    display.display_function(lens.disassemble(target, cfi=cfi, syntax=syntax))


@cli.command()
@click.option("--section", "section_name", default=None,
              help="Call frame section to parse (default: .eh_frame, then .debug_frame).")
@click.option("--symbol", "-s", default=None,
              help="Only FDEs overlapping this symbol.")
@click.option("--address", type=ADDRESS, default=None,
              help="Only FDEs containing this (hexadecimal) address.")
@click.pass_context
@_handle_errors
def eh(
    ctx: click.Context,
    section_name: Optional[str],
    symbol: Optional[str],
    address: Optional[int],
) -> None:
    """Display call frame information records."""
    lens, display = _session(ctx)
    table = lens.frames(section_name)
    fdes = None
    if symbol is not None:
        fdes = lens.fdes_for(lens.resolve_function(symbol), section_name)
    if address is not None:
        covering = lens.fdes_for(address, section_name)
        fdes = covering if fdes is None else [f for f in fdes if f in covering]
    display.display_frames(table, fdes)


@cli.command()
@click.argument("symbol")
@click.pass_context
@_handle_errors
def lsda(ctx: click.Context, symbol: str) -> None:
    """Exception handling regions of a function."""
    lens, display = _session(ctx)
    sym = lens.resolve_function(symbol)
    display.display_lsda(sym, lens.lsda_tables(sym))


# ===================================================================== #
#  Entry Point
# ===================================================================== #

def main() -> None:
    """Main entry point for the ``elflens`` command."""
    cli(obj={}, prog_name="elflens")


if __name__ == "__main__":
    main()
