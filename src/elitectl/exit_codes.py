"""Exit codes used by the CLI.

The command surface is deliberately coarse: every failure cause maps to the
same non-zero code. Typer keeps exit code 2 for its own usage errors.
"""
from __future__ import annotations

from enum import IntEnum


class ExitCode(IntEnum):
    """Well-known exit codes enforced across the CLI."""

    OK = 0
    FAILURE = 1
