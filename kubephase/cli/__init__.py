"""kubephase command-line interface.

Exposes:
    cli -- Click group entry point (registered as ``kubephase`` script).
"""

from kubephase.cli.main import cli

__all__ = ["cli"]
