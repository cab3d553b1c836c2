"""Post-import verification: refresh, validate, then plan."""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from .errors import VerificationError
from .models import VerificationResult, VerificationStatus
from .providers.terraform import PlanStatus, TerraformError

POST_IMPORT_PLAN = "post-import-plan"


class VerifiableBackend(Protocol):
    """The terraform commands needed to verify an environment."""

    def refresh(self) -> object:
        """Refresh state."""

    def validate(self) -> object:
        """Validate configuration."""

    def plan(self, out: Path | None = None) -> PlanStatus:
        """Plan against current configuration."""


@dataclass(slots=True)
class PostImportVerifier:
    """Check for residual divergence once objects have been imported.

    Pending changes in the plan are expected after an import (the
    configuration usually needs aligning) and are reported as a warning.
    Only a failing refresh, validate or plan is fatal.
    """

    backend: VerifiableBackend

    def verify(self, plan_dir: Path, *, run: str | None = None) -> VerificationResult:
        """Run the verification sequence, saving the plan under *plan_dir*.

        The plan file is suffixed with *run* when given.
        """
        plan_dir.mkdir(parents=True, exist_ok=True)
        plan_path = plan_dir / (f"{POST_IMPORT_PLAN}-{run}" if run else POST_IMPORT_PLAN)
        try:
            self.backend.refresh()
            self.backend.validate()
            status = self.backend.plan(out=plan_path)
        except TerraformError as exc:
            raise VerificationError(f"State verification failed: {exc}") from exc

        if status is PlanStatus.NO_CHANGES:
            return VerificationResult(
                status=VerificationStatus.CLEAN,
                plan_path=plan_path,
                detail="No configuration drift detected.",
            )
        return VerificationResult(
            status=VerificationStatus.DIVERGENCE,
            plan_path=plan_path,
            detail=(
                "Configuration drift detected after import; imported resources may need "
                "configuration updates."
            ),
        )


__all__ = ["POST_IMPORT_PLAN", "PostImportVerifier"]
