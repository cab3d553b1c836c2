"""Enumerations for CLI exit codes."""
from __future__ import annotations

from enum import IntEnum


class ExitCode(IntEnum):
    """Well-known exit codes enforced across the CLI."""

    OK = 0
    FAILED = 1
    VALIDATION = 2
    BACKEND = 3
    LOCKED = 4
    VERIFICATION = 5
