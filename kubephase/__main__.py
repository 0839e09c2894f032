"""Entry point for `python -m kubephase`.

Usage:
    python -m kubephase run
    python -m kubephase slice-name OWNER objects.json
"""

from kubephase.cli import cli

cli(prog_name="kubephase")
