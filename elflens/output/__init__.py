"""
ELF Lens Output Module
======================

Rich console rendering of ELF Lens query results.
"""

from elflens.output.console import LensConsoleOutput

__all__ = ["LensConsoleOutput"]
