"""
ELF Lens Shared Module
======================

Configuration, logging and console helpers shared by the ``elflens``
parser, analyzers and command-line interface.
"""

from shared.config import LensConfig
from shared.console import LensConsole
from shared.logger import LensLogger

__all__ = ["LensConfig", "LensConsole", "LensLogger"]
