"""
ELF Lens Configuration Management
==================================

Centralized configuration for the ELF Lens toolkit using Python dataclasses
and TOML-based persistence.

Only the command-line layer loads configuration; the analysis engine
receives a :class:`LensConfig` explicitly and never reads files or
environment variables itself.

References:
    - Wiggins, A. (2011). The Twelve-Factor App. https://12factor.net/
    - TOML v1.0.0 Specification. https://toml.io/en/v1.0.0
"""

from __future__ import annotations

import sys
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import Any

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib


# ---------------------------------------------------------------------------
# Default configuration file path
# ---------------------------------------------------------------------------
_DEFAULT_CONFIG_PATH: Path = Path.home() / ".config" / "elflens" / "config.toml"

_SYNTAXES = ("att", "intel")


# =========================== Section Configs ===============================


@dataclass(frozen=False, slots=True)
class GlobalConfig:
    """Logging verbosity and debugging switches."""

    log_level: str = "WARNING"
    log_file: str = ""
    log_json: bool = False
    debug: bool = False


@dataclass(frozen=False, slots=True)
class AnalysisConfig:
    """Parameters of the analysis engine.

    ``max_instructions`` of ``0`` disassembles whole functions.
    ``frame_sections`` lists the call frame sections tried, in order, when
    none is named explicitly.
    """

    max_file_size: int = 536_870_912  # 512 MiB
    demangle: bool = True
    syntax: str = "att"
    max_instructions: int = 0
    decoder_window: int = 16
    frame_sections: list[str] = field(
        default_factory=lambda: [".eh_frame", ".debug_frame"]
    )
    hide_language_runtime: bool = False

    def __post_init__(self) -> None:
        if self.syntax not in _SYNTAXES:
            raise ValueError(
                f"analysis.syntax must be one of {', '.join(_SYNTAXES)}, got {self.syntax!r}"
            )
        if self.decoder_window < 1:
            raise ValueError("analysis.decoder_window must be positive")


@dataclass(frozen=False, slots=True)
class OutputConfig:
    """Presentation settings for the console renderer."""

    hexdump_width: int = 16
    show_legend: bool = True


# =========================== Master Config =================================


@dataclass(frozen=False, slots=True)
class LensConfig:
    """Master configuration aggregating all sections.

    Usage:
        >>> config = LensConfig.load()                  # from default path
        >>> config = LensConfig.load("custom.toml")     # from custom path
        >>> config.analysis.syntax
        'att'
    """

    global_settings: GlobalConfig = field(default_factory=GlobalConfig)
    analysis: AnalysisConfig = field(default_factory=AnalysisConfig)
    output: OutputConfig = field(default_factory=OutputConfig)

    # ------------------------------------------------------------------ #
    #  TOML Loading
    # ------------------------------------------------------------------ #

    @classmethod
    def load(cls, path: str | Path | None = None) -> LensConfig:
        """Load configuration from a TOML file.

        If *path* is ``None`` the loader looks for
        ``~/.config/elflens/config.toml``.  Missing keys fall back to
        dataclass defaults.

        Raises:
            FileNotFoundError: If the specified path does not exist
                *and* was explicitly provided by the caller.
        """
        config_path = Path(path) if path is not None else _DEFAULT_CONFIG_PATH

        if not config_path.exists():
            if path is not None:
                raise FileNotFoundError(
                    f"Configuration file not found: {config_path}"
                )
            return cls()

        with open(config_path, "rb") as fh:
            raw: dict[str, Any] = tomllib.load(fh)

        return cls(
            global_settings=cls._build_section(GlobalConfig, raw.get("global", {})),
            analysis=cls._build_section(AnalysisConfig, raw.get("analysis", {})),
            output=cls._build_section(OutputConfig, raw.get("output", {})),
        )

    def to_dict(self) -> dict[str, Any]:
        """Serialise the entire configuration tree to a plain dictionary."""
        return asdict(self)

    @staticmethod
    def _build_section(cls: type, data: dict[str, Any]) -> Any:
        """Instantiate a dataclass *cls* using only the keys it declares.

        Unknown keys in the TOML source are ignored.
        """
        valid_keys = {f.name for f in cls.__dataclass_fields__.values()}  # type: ignore[attr-defined]
        filtered = {k: v for k, v in data.items() if k in valid_keys}
        return cls(**filtered)
