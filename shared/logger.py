"""
ELF Lens Structured Logger
==========================

:class:`LensLogger` is the diagnostics sink handed to the parser and the
analyzers.  Degraded results (dropped header entries, malformed frame
records, unreadable LSDAs) are reported at WARNING, index builds at DEBUG.

Records go to stderr through Rich, so a report written to stdout stays
clean, and can be mirrored to a rotating file, optionally as JSON lines.

References:
    - Python logging HOWTO. https://docs.python.org/3/howto/logging.html
    - Rich library. https://github.com/Textualize/rich
"""

from __future__ import annotations

import json
import logging
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Iterator

from rich.console import Console
from rich.logging import RichHandler
from rich.theme import Theme

_LOG_THEME = Theme(
    {
        "log.level.debug": "dim cyan",
        "log.level.info": "bold bright_blue",
        "log.level.warning": "bold yellow",
        "log.level.error": "bold red",
    }
)

# keyword arguments forwarded to logging untouched; everything else is a field
_LOGGING_KWARGS = frozenset({"exc_info", "stack_info", "stacklevel"})

_TEXT_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"


class _JSONLinesFormatter(logging.Formatter):
    """One JSON object per record.

    Example::

        {"timestamp": "...", "level": "WARNING", "logger": "elflens.cli",
         "message": "...", "tool_name": "cli", "operation": "frames .eh_frame",
         "extra": {"offset": 64}}
    """

    def format(self, record: logging.LogRecord) -> str:
        created = datetime.fromtimestamp(record.created, tz=timezone.utc)
        entry: dict[str, Any] = {
            "timestamp": created.isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key in ("tool_name", "operation"):
            value = record.__dict__.get(key)
            if value is not None:
                entry[key] = value
        fields = record.__dict__.get("lens_fields")
        if fields:
            entry["extra"] = fields
        if record.exc_info and record.exc_info[1] is not None:
            entry["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


def _stderr_handler(level: int) -> RichHandler:
    return RichHandler(
        level=level,
        console=Console(theme=_LOG_THEME, stderr=True),
        show_path=False,
        show_time=False,
        markup=False,
        rich_tracebacks=True,
    )


def _file_handler(path: Path, level: int, json_lines: bool,
                  max_bytes: int, backup_count: int) -> RotatingFileHandler:
    path.parent.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(path, maxBytes=max_bytes,
                                  backupCount=backup_count, encoding="utf-8")
    handler.setLevel(level)
    if json_lines:
        handler.setFormatter(_JSONLinesFormatter())
    else:
        handler.setFormatter(logging.Formatter(_TEXT_FORMAT, datefmt="%Y-%m-%dT%H:%M:%S%z"))
    return handler


class LensLogger:
    """Logger bound to one ELF Lens component.

    Records carry the component name (``tool_name``) and the active
    operation, if any.  Keyword arguments other than the standard
    :mod:`logging` ones become structured fields of the JSON output::

        log = LensLogger("cli", log_level="DEBUG")
        with log.operation("symbol index"):
            log.warning("%s: truncated table", ".symtab", entries=12)

    Args:
        tool_name:      Component name; the stdlib logger is ``elflens.<tool_name>``.
        log_level:      Minimum severity name.  Unknown names mean WARNING.
        log_file:       Rotating log file, or ``None`` for no file.
        json_logs:      Write the file as JSON lines instead of plain text.
        max_bytes:      File size that triggers rotation.
        backup_count:   Rotated files kept.
        console_output: Attach the Rich stderr handler.
    """

    def __init__(
        self,
        tool_name: str,
        *,
        log_level: str = "WARNING",
        log_file: str | Path | None = None,
        json_logs: bool = False,
        max_bytes: int = 10_485_760,
        backup_count: int = 5,
        console_output: bool = True,
    ) -> None:
        self._tool_name = tool_name
        self._operation: str | None = None

        level = logging.getLevelName(log_level.upper())
        if not isinstance(level, int):
            level = logging.WARNING

        self._logger = logging.getLogger(f"elflens.{tool_name}")
        self._logger.setLevel(level)
        self._logger.propagate = False
        # a second instance for the same component replaces the handlers
        for old in list(self._logger.handlers):
            self._logger.removeHandler(old)
            old.close()

        if console_output:
            self._logger.addHandler(_stderr_handler(level))
        if log_file:
            self._logger.addHandler(
                _file_handler(Path(log_file), level, json_logs, max_bytes, backup_count)
            )

    @contextmanager
    def operation(self, name: str) -> Iterator[LensLogger]:
        """Tag records inside the block with *name* and log its duration at DEBUG."""
        previous = self._operation
        self._operation = name
        started = time.perf_counter()
        try:
            yield self
        finally:
            self.debug("%s took %.3f s", name, time.perf_counter() - started)
            self._operation = previous

    def _log(self, level: int, msg: str, args: tuple[Any, ...], kwargs: dict[str, Any]) -> None:
        if not self._logger.isEnabledFor(level):
            return
        passthrough = {k: kwargs.pop(k) for k in list(kwargs) if k in _LOGGING_KWARGS}
        extra = {
            "tool_name": self._tool_name,
            "operation": self._operation,
            "lens_fields": kwargs,
        }
        self._logger.log(level, msg, *args, extra=extra,
                         stacklevel=passthrough.pop("stacklevel", 1) + 2, **passthrough)

    def debug(self, msg: str, *args: Any, **kwargs: Any) -> None:
        self._log(logging.DEBUG, msg, args, kwargs)

    def info(self, msg: str, *args: Any, **kwargs: Any) -> None:
        self._log(logging.INFO, msg, args, kwargs)

    def warning(self, msg: str, *args: Any, **kwargs: Any) -> None:
        self._log(logging.WARNING, msg, args, kwargs)

    def error(self, msg: str, *args: Any, **kwargs: Any) -> None:
        self._log(logging.ERROR, msg, args, kwargs)

    @property
    def tool_name(self) -> str:
        return self._tool_name

    @property
    def underlying(self) -> logging.Logger:
        """The stdlib :class:`logging.Logger` behind this facade."""
        return self._logger
