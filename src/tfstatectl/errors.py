"""Error taxonomy shared by the import orchestrator and state operations.

Only conditions that abort a run are modelled as exceptions. Per-address
results such as "already bound" or "external object not found" are recorded as
:class:`~tfstatectl.models.ImportOutcome` values instead.
"""
from __future__ import annotations

from .exit_codes import ExitCode


class TfStateCtlError(RuntimeError):
    """Base class for fatal tfstatectl errors."""

    exit_code: ExitCode = ExitCode.FAILED


class ValidationError(TfStateCtlError):
    """Raised when operation input is missing or malformed."""

    exit_code = ExitCode.VALIDATION


class BackendUnavailable(TfStateCtlError):
    """Raised when the provisioning backend or the cloud CLI cannot be reached."""

    exit_code = ExitCode.BACKEND


class StateLockHeld(TfStateCtlError):
    """Raised when managed state is locked by another run."""

    exit_code = ExitCode.LOCKED

    def __init__(self, message: str, *, lock_id: str | None = None) -> None:
        """Store the backend lock identifier when one could be parsed."""
        super().__init__(message)
        self.lock_id = lock_id


class VerificationError(TfStateCtlError):
    """Raised when post-import verification itself fails."""

    exit_code = ExitCode.VERIFICATION


__all__ = [
    "BackendUnavailable",
    "StateLockHeld",
    "TfStateCtlError",
    "ValidationError",
    "VerificationError",
]
