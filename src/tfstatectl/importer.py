"""Import executor: bind external objects to state addresses one by one."""
from __future__ import annotations

import logging
from collections.abc import Iterator
from dataclasses import dataclass
from typing import Protocol

from .models import ImportBatch, ImportOutcome, ImportSpec, OperationResult
from .providers.azure import ResourceExistence
from .providers.terraform import ImportFailure, TerraformError, classify_import_failure

LOGGER = logging.getLogger(__name__)


class StateBackend(Protocol):
    """The subset of terraform used by the executor."""

    def is_bound(self, address: str) -> bool:
        """Return ``True`` when *address* is already in state."""

    def import_resource(self, address: str, external_id: str) -> object:
        """Bind *external_id* to *address*."""


class CloudInventory(Protocol):
    """Answers existence questions about external objects."""

    def resource_exists(self, resource_id: str) -> ResourceExistence:
        """Look up *resource_id*."""


@dataclass(slots=True)
class ImportExecutor:
    """Process an :class:`ImportBatch` in order, continuing past per-item failures.

    ``StateLockHeld`` and ``BackendUnavailable`` raised by the backend are not
    per-item outcomes; they propagate to the caller and stop the batch.
    """

    backend: StateBackend
    inventory: CloudInventory

    def execute(self, batch: ImportBatch, *, dry_run: bool = False) -> Iterator[OperationResult]:
        """Yield one :class:`OperationResult` per spec, in batch order."""
        total = len(batch.imports)
        for position, spec in enumerate(batch.imports, start=1):
            LOGGER.debug("processing %d/%d %s", position, total, spec.resource_address)
            yield self.process(spec, dry_run=dry_run)

    def process(self, spec: ImportSpec, *, dry_run: bool = False) -> OperationResult:
        """Return the outcome for a single spec."""
        address = spec.resource_address
        if self.backend.is_bound(address):
            return self._result(
                spec,
                ImportOutcome.SKIPPED_ALREADY_BOUND,
                "Already in state; skipped.",
            )

        if dry_run:
            existence = self.inventory.resource_exists(spec.external_id)
            if existence is ResourceExistence.EXISTS:
                return self._result(spec, ImportOutcome.READY, "Ready for import.")
            if existence is ResourceExistence.FORBIDDEN:
                return self._result(
                    spec,
                    ImportOutcome.FAILED_NOT_FOUND,
                    "External object is not accessible with the current credentials.",
                )
            return self._result(spec, ImportOutcome.FAILED_NOT_FOUND, "External object not found.")

        try:
            self.backend.import_resource(address, spec.external_id)
        except TerraformError as exc:
            failure = classify_import_failure(exc.output or str(exc))
            outcome = (
                ImportOutcome.FAILED_NOT_FOUND
                if failure is ImportFailure.NOT_FOUND
                else ImportOutcome.FAILED_OTHER
            )
            LOGGER.debug("import of %s failed: %s", address, exc)
            return self._result(spec, outcome, str(exc))
        return self._result(spec, ImportOutcome.IMPORTED, "Imported successfully.")

    @staticmethod
    def _result(spec: ImportSpec, outcome: ImportOutcome, detail: str) -> OperationResult:
        return OperationResult(
            address=spec.resource_address,
            outcome=outcome,
            detail=detail,
            external_id=spec.external_id,
        )


__all__ = ["CloudInventory", "ImportExecutor", "StateBackend"]
