"""Azure CLI provider used for existence checks and blob transfers."""
from __future__ import annotations

import logging
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from ..errors import BackendUnavailable

LOGGER = logging.getLogger(__name__)

_FORBIDDEN_MARKERS = ("authorizationfailed", "forbidden", "does not have authorization")
_NOT_FOUND_MARKERS = ("resourcenotfound", "resourcegroupnotfound", "was not found", "not found")
_UNREACHABLE_MARKERS = (
    "az login",
    "please run 'az login'",
    "failed to establish a new connection",
    "max retries exceeded",
    "name or service not known",
)


class AzureCliError(RuntimeError):
    """Raised when an az command fails."""


class ResourceExistence(str, Enum):
    """Answer to "does this cloud object exist?"."""

    EXISTS = "exists"
    NOT_FOUND = "not-found"
    FORBIDDEN = "forbidden"


@dataclass(slots=True)
class AzureCliProvider:
    """Thin wrapper over the ``az`` command line."""

    az_bin: str = "az"
    timeout: float | None = None

    def resource_exists(self, resource_id: str) -> ResourceExistence:
        """Look up *resource_id* with ``az resource show``."""
        result = self._run(
            ["resource", "show", "--ids", resource_id, "--only-show-errors", "--output", "none"],
            error_prefix=f"{self.az_bin} resource show",
            check=False,
        )
        if result.returncode == 0:
            return ResourceExistence.EXISTS
        output = f"{result.stdout or ''}\n{result.stderr or ''}".lower()
        if any(marker in output for marker in _UNREACHABLE_MARKERS):
            raise BackendUnavailable(
                f"{self.az_bin} resource show failed: {_message(result)}"
            )
        if any(marker in output for marker in _FORBIDDEN_MARKERS):
            return ResourceExistence.FORBIDDEN
        if any(marker in output for marker in _NOT_FOUND_MARKERS):
            return ResourceExistence.NOT_FOUND
        LOGGER.debug("treating unrecognised az error as not found: %s", _message(result))
        return ResourceExistence.NOT_FOUND

    def blob_upload(
        self,
        *,
        account: str,
        container: str,
        name: str,
        source: Path,
        overwrite: bool = False,
    ) -> str:
        """Upload *source* as blob *name* and return its ``account/container/name`` reference."""
        args = [
            "storage",
            "blob",
            "upload",
            "--auth-mode",
            "login",
            "--account-name",
            account,
            "--container-name",
            container,
            "--name",
            name,
            "--file",
            str(source),
            "--only-show-errors",
        ]
        if overwrite:
            args.append("--overwrite")
        self._run(args, error_prefix=f"{self.az_bin} storage blob upload {name}")
        return f"{account}/{container}/{name}"

    def blob_download(
        self,
        *,
        account: str,
        container: str,
        name: str,
        destination: Path,
    ) -> Path:
        """Download blob *name* into *destination*."""
        destination.parent.mkdir(parents=True, exist_ok=True)
        self._run(
            [
                "storage",
                "blob",
                "download",
                "--auth-mode",
                "login",
                "--account-name",
                account,
                "--container-name",
                container,
                "--name",
                name,
                "--file",
                str(destination),
                "--only-show-errors",
            ],
            error_prefix=f"{self.az_bin} storage blob download {name}",
        )
        return destination

    # ------------------------------------------------------------------
    def _run(
        self,
        args: Sequence[str],
        *,
        error_prefix: str,
        check: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        command = [self.az_bin, *args]
        LOGGER.debug("running %s", " ".join(command))
        try:
            result = subprocess.run(  # noqa: S603
                command,
                capture_output=True,
                text=True,
                check=False,
                timeout=self.timeout,
            )
        except FileNotFoundError as exc:
            raise BackendUnavailable(f"{self.az_bin} not found: {exc}") from exc
        except subprocess.TimeoutExpired as exc:
            raise BackendUnavailable(f"{error_prefix} timed out after {self.timeout}s") from exc
        if check and result.returncode != 0:
            raise AzureCliError(
                f"{error_prefix} failed (exit {result.returncode}): {_message(result)}"
            )
        return result


def _message(result: subprocess.CompletedProcess[str]) -> str:
    stdout = (getattr(result, "stdout", "") or "").strip()
    stderr = (getattr(result, "stderr", "") or "").strip()
    return stderr or stdout or "no output"


__all__ = ["AzureCliError", "AzureCliProvider", "ResourceExistence"]
