"""
Symbol Name Demangling
=======================

Demangling is a pluggable collaborator: the symbol index stores raw linker
names and asks a :class:`Demangler` for display names on request.

Two implementations ship with ELF Lens:

* :class:`NullDemangler` returns every name unchanged.
* :class:`CxxFiltDemangler` shells out to GNU ``c++filt``, which handles
  Itanium C++ names as well as legacy and v0 Rust manglings.  Lookups are
  batched into one process per call and memoized in a lock-guarded cache
  so a demangler can be shared between threads.
"""

from __future__ import annotations

import shutil
import subprocess
import threading
from typing import TYPE_CHECKING, Iterable, Optional, Protocol, runtime_checkable

if TYPE_CHECKING:
    from shared.logger import LensLogger

# Prefixes of mangled names: Itanium C++ / legacy Rust, Rust v0
_MANGLED_PREFIXES: tuple[str, ...] = ("_Z", "__Z", "_R")


@runtime_checkable
class Demangler(Protocol):
    """Map raw linker names to display names.

    Names that are not recognised as mangled come back unchanged.
    """

    def demangle(self, name: str) -> str: ...

    def demangle_many(self, names: Iterable[str]) -> list[str]: ...


class NullDemangler:
    """Identity demangler."""

    def demangle(self, name: str) -> str:
        return name

    def demangle_many(self, names: Iterable[str]) -> list[str]:
        return list(names)


class CxxFiltDemangler:
    """Demangle names with the ``c++filt`` executable.

    Names missing from the cache are sent to one ``c++filt`` process per
    :meth:`demangle_many` call, one name per input line.  If the tool is
    missing, a single warning is logged and names are returned unchanged
    from then on.

    Args:
        executable: ``c++filt`` binary to run (looked up on ``PATH``).
        timeout: Timeout in seconds for one ``c++filt`` run.
        logger: Optional logger for the missing-tool warning.
    """

    def __init__(
        self,
        executable: str = "c++filt",
        *,
        timeout: float = 10.0,
        logger: Optional[LensLogger] = None,
    ) -> None:
        self._executable = executable
        self._timeout = timeout
        self._logger = logger
        self._cache: dict[str, str] = {}
        self._lock = threading.Lock()
        self._path: Optional[str] = shutil.which(executable)
        self._warned = False

    @property
    def available(self) -> bool:
        return self._path is not None

    def demangle(self, name: str) -> str:
        return self.demangle_many([name])[0]

    def demangle_many(self, names: Iterable[str]) -> list[str]:
        names = list(names)
        with self._lock:
            pending = list(dict.fromkeys(
                n for n in names
                if n.startswith(_MANGLED_PREFIXES) and "\n" not in n and n not in self._cache
            ))
        if pending:
            results = self._run(pending)
            with self._lock:
                self._cache.update(zip(pending, results))
        with self._lock:
            return [self._cache.get(n, n) for n in names]

    def _run(self, names: list[str]) -> list[str]:
        if self._path is None:
            if not self._warned:
                self._warned = True
                if self._logger is not None:
                    self._logger.warning(
                        "%s not found on PATH; symbol names are shown mangled",
                        self._executable,
                    )
            return names
        try:
            proc = subprocess.run(
                [self._path],
                input="\n".join(names) + "\n",
                capture_output=True,
                text=True,
                timeout=self._timeout,
                check=False,
            )
        except (OSError, subprocess.TimeoutExpired) as exc:
            if self._logger is not None:
                self._logger.debug("c++filt failed on %d names: %s", len(names), exc)
            return names
        lines = proc.stdout.splitlines()
        if proc.returncode != 0 or len(lines) != len(names):
            if self._logger is not None:
                self._logger.debug("c++filt returned %d lines for %d names (exit %d)",
                                   len(lines), len(names), proc.returncode)
            return names
        return [line.strip() or name for line, name in zip(lines, names)]


def make_demangler(enabled: bool, logger: Optional[LensLogger] = None) -> Demangler:
    """Return the default demangler, or the identity one when disabled."""
    if not enabled:
        return NullDemangler()
    return CxxFiltDemangler(logger=logger)
