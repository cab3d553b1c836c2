"""Terraform CLI provider."""
from __future__ import annotations

import json
import logging
import re
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from packaging.version import InvalidVersion, Version

from ..config import BackendConfig
from ..errors import BackendUnavailable, StateLockHeld

LOGGER = logging.getLogger(__name__)

_LOCK_MARKERS = ("error acquiring the state lock", "state blob is already locked")
_LOCK_ID_PATTERN = re.compile(r"^\s*ID:\s*(\S+)", re.MULTILINE)
_CONFIGURATION_MARKERS = (
    "does not exist in the configuration",
    "please create its configuration",
)
_NOT_FOUND_MARKERS = (
    "cannot import non-existent remote object",
    "resourcenotfound",
    "resourcegroupnotfound",
    "was not found",
    "could not be found",
    "does not exist",
    "statuscode=404",
    "status code: 404",
    "authorizationfailed",
    "does not have authorization",
)


class TerraformError(RuntimeError):
    """Raised when a terraform command exits unsuccessfully."""

    def __init__(self, message: str, *, returncode: int = 1, output: str = "") -> None:
        """Keep the exit status and combined output for classification."""
        super().__init__(message)
        self.returncode = returncode
        self.output = output


class ImportFailure(str, Enum):
    """Classification of a failed ``terraform import``."""

    NOT_FOUND = "not-found"
    OTHER = "other"


class PlanStatus(str, Enum):
    """Interpretation of ``terraform plan -detailed-exitcode``."""

    NO_CHANGES = "no-changes"
    CHANGES = "changes"


def classify_import_failure(output: str) -> ImportFailure:
    """Return whether *output* describes a missing or inaccessible object."""
    lowered = output.lower()
    if any(marker in lowered for marker in _CONFIGURATION_MARKERS):
        return ImportFailure.OTHER
    if any(marker in lowered for marker in _NOT_FOUND_MARKERS):
        return ImportFailure.NOT_FOUND
    return ImportFailure.OTHER


@dataclass(slots=True)
class TerraformProvider:
    """Run terraform subcommands inside an environment's working directory."""

    working_dir: Path
    terraform_bin: str = "terraform"
    timeout: float | None = None

    # Version / init ---------------------------------------------------
    def version(self) -> Version:
        """Return the installed terraform version."""
        result = self._run(["version", "-json"], error_prefix="terraform version")
        try:
            payload = json.loads(result.stdout or "{}")
            return Version(str(payload["terraform_version"]))
        except (ValueError, KeyError, InvalidVersion) as exc:
            raise BackendUnavailable(f"Unable to parse terraform version output: {exc}") from exc

    def ensure_version(self, pinned: Version | None) -> Version | None:
        """Fail when the installed terraform does not match the *pinned* release."""
        if pinned is None:
            return None
        installed = self.version()
        if installed != pinned:
            raise BackendUnavailable(
                f"terraform {installed} is installed but {pinned} is pinned in configuration."
            )
        return installed

    def init(self, backend: BackendConfig | None = None) -> subprocess.CompletedProcess[str]:
        """Initialise the working directory against *backend*."""
        args = ["init", "-input=false", "-no-color"]
        if backend is not None:
            args.extend(backend.init_args())
        try:
            return self._run(args, error_prefix="terraform init")
        except TerraformError as exc:
            raise BackendUnavailable(str(exc)) from exc

    # State queries ----------------------------------------------------
    def state_list(self) -> list[str]:
        """Return every address recorded in state."""
        try:
            result = self._run(["state", "list"], error_prefix="terraform state list")
        except TerraformError as exc:
            raise BackendUnavailable(str(exc)) from exc
        return [line.strip() for line in (result.stdout or "").splitlines() if line.strip()]

    def is_bound(self, address: str) -> bool:
        """Return ``True`` when *address* is already present in state."""
        return address in self.state_list()

    def state_show(self, address: str) -> str:
        """Return the ``terraform state show`` rendering of *address*."""
        result = self._run(
            ["state", "show", "-no-color", address],
            error_prefix=f"terraform state show {address}",
        )
        return result.stdout or ""

    def state_pull(self) -> str:
        """Return the raw remote state document."""
        try:
            result = self._run(["state", "pull"], error_prefix="terraform state pull")
        except TerraformError as exc:
            raise BackendUnavailable(str(exc)) from exc
        payload = result.stdout or ""
        if not payload.strip():
            raise BackendUnavailable("terraform state pull returned an empty document.")
        return payload

    # Mutations --------------------------------------------------------
    def import_resource(self, address: str, external_id: str) -> subprocess.CompletedProcess[str]:
        """Bind *external_id* to *address* in state."""
        return self._run(
            ["import", "-input=false", "-no-color", address, external_id],
            error_prefix=f"terraform import {address}",
        )

    def state_rm(self, address: str) -> subprocess.CompletedProcess[str]:
        """Forget *address* without destroying the underlying object."""
        return self._run(["state", "rm", address], error_prefix=f"terraform state rm {address}")

    def force_unlock(self, lock_id: str) -> subprocess.CompletedProcess[str]:
        """Release a stuck backend lock."""
        return self._run(
            ["force-unlock", "-force", lock_id],
            error_prefix=f"terraform force-unlock {lock_id}",
            detect_lock=False,
        )

    # Verification -----------------------------------------------------
    def refresh(self) -> subprocess.CompletedProcess[str]:
        """Re-synchronise state with real infrastructure."""
        return self._run(["refresh", "-input=false", "-no-color"], error_prefix="terraform refresh")

    def validate(self) -> subprocess.CompletedProcess[str]:
        """Validate configuration files."""
        return self._run(["validate", "-no-color"], error_prefix="terraform validate")

    def plan(self, out: Path | None = None) -> PlanStatus:
        """Run a detailed-exitcode plan and report whether changes are pending."""
        args = ["plan", "-input=false", "-no-color", "-detailed-exitcode"]
        if out is not None:
            args.append(f"-out={out}")
        result = self._run(args, error_prefix="terraform plan", check=False)
        if result.returncode == 0:
            return PlanStatus.NO_CHANGES
        if result.returncode == 2:
            return PlanStatus.CHANGES
        raise TerraformError(
            f"terraform plan failed (exit {result.returncode}): {_message(result)}",
            returncode=result.returncode,
            output=_combined(result),
        )

    # ------------------------------------------------------------------
    def _run(
        self,
        args: Sequence[str],
        *,
        error_prefix: str,
        check: bool = True,
        detect_lock: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        command = [self.terraform_bin, *args]
        LOGGER.debug("running %s in %s", " ".join(command), self.working_dir)
        try:
            result = subprocess.run(  # noqa: S603
                command,
                cwd=str(self.working_dir),
                capture_output=True,
                text=True,
                check=False,
                timeout=self.timeout,
            )
        except FileNotFoundError as exc:
            raise BackendUnavailable(f"{self.terraform_bin} not found: {exc}") from exc
        except subprocess.TimeoutExpired as exc:
            raise BackendUnavailable(
                f"{error_prefix} timed out after {self.timeout}s"
            ) from exc

        output = _combined(result)
        if detect_lock and result.returncode != 0 and _is_lock_error(output):
            lock_id = _parse_lock_id(output)
            raise StateLockHeld(
                f"{error_prefix} failed: remote state is locked"
                + (f" (lock id {lock_id})" if lock_id else ""),
                lock_id=lock_id,
            )
        if check and result.returncode != 0:
            raise TerraformError(
                f"{error_prefix} failed (exit {result.returncode}): {_message(result)}",
                returncode=result.returncode,
                output=output,
            )
        return result


def _combined(result: subprocess.CompletedProcess[str]) -> str:
    stdout = getattr(result, "stdout", "") or ""
    stderr = getattr(result, "stderr", "") or ""
    return f"{stdout}\n{stderr}".strip()


def _message(result: subprocess.CompletedProcess[str]) -> str:
    stdout = (getattr(result, "stdout", "") or "").strip()
    stderr = (getattr(result, "stderr", "") or "").strip()
    return stderr or stdout or "no output"


def _is_lock_error(output: str) -> bool:
    lowered = output.lower()
    return any(marker in lowered for marker in _LOCK_MARKERS)


def _parse_lock_id(output: str) -> str | None:
    match = _LOCK_ID_PATTERN.search(output)
    return match.group(1) if match else None


__all__ = [
    "ImportFailure",
    "PlanStatus",
    "TerraformError",
    "TerraformProvider",
    "classify_import_failure",
]
