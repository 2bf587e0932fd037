"""
ELF Lens Module Entry Point
===========================

Allows running the CLI via: python -m elflens
"""

from elflens.cli import main

if __name__ == "__main__":
    main()
