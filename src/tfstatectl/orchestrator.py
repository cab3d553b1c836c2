"""Import orchestrator: validate, snapshot, import, verify, report.

One :meth:`ImportOrchestrator.run` call walks a single run through::

    validating -> preparing -> snapshotting -> executing -> verifying -> reporting -> done

Any stage before reporting may end the run in ``aborted`` instead.

Snapshotting and verifying are skipped for dry runs. Per-address failures are
accumulated in the report and folded into the exit code at the end; fatal
errors (:class:`~tfstatectl.errors.TfStateCtlError`) abort the remaining
stages. Reports are written for every run, and a notification is sent for
every run that got past input validation.
"""
from __future__ import annotations

import logging
from contextlib import ExitStack
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Protocol

from .batch import resolve_request
from .config import AppConfig
from .errors import TfStateCtlError, ValidationError
from .exit_codes import ExitCode
from .importer import CloudInventory, ImportExecutor
from .locking import LockManager
from .logging import OperationScope, iso_timestamp
from .models import (
    Environment,
    ImportBatch,
    OperationKind,
    RunReport,
    RunStage,
    VerificationResult,
    VerificationStatus,
)
from .providers.notifier import (
    NotificationError,
    NotificationResult,
    NotificationStatus,
    WebhookNotifier,
)
from .reporting import ReportError, ReportPaths, Reporter
from .snapshots import StateSnapshotter
from .verifier import PostImportVerifier

LOGGER = logging.getLogger(__name__)


class TerraformBackend(Protocol):
    """Everything the orchestrator asks of terraform."""

    def ensure_version(self, pinned: Any) -> Any: ...

    def init(self, backend: Any = None) -> Any: ...

    def state_pull(self) -> str: ...

    def is_bound(self, address: str) -> bool: ...

    def import_resource(self, address: str, external_id: str) -> Any: ...

    def refresh(self) -> Any: ...

    def validate(self) -> Any: ...

    def plan(self, out: Path | None = None) -> Any: ...


@dataclass(slots=True, frozen=True)
class ImportRequest:
    """Raw parameters of an import invocation, before validation."""

    operation: OperationKind
    environment: Environment
    resource_address: str | None = None
    external_id: str | None = None
    config_file: Path | None = None
    description: str | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation for logging."""
        return {
            "operation": self.operation.value,
            "environment": self.environment.value,
            "resource_address": self.resource_address,
            "external_id": self.external_id,
            "config_file": str(self.config_file) if self.config_file else None,
            "description": self.description,
        }


@dataclass(slots=True)
class RunOutcome:
    """Report and side artifacts of one run."""

    report: RunReport
    reports: ReportPaths | None = None
    notification: NotificationResult | None = None
    warnings: list[str] = field(default_factory=list)

    @property
    def exit_code(self) -> int:
        """Return the process exit code for the run."""
        return int(self.report.exit_code)


@dataclass(slots=True)
class ImportOrchestrator:
    """Drive one import run against one environment."""

    config: AppConfig
    backend: TerraformBackend
    inventory: CloudInventory
    snapshotter: StateSnapshotter
    reporter: Reporter
    notifier: WebhookNotifier
    locks: LockManager | None = None

    def run(self, request: ImportRequest, *, op: OperationScope | None = None) -> RunOutcome:
        """Execute *request* and return the finished run."""
        started = datetime.now(tz=UTC)
        report = RunReport(
            operation=request.operation,
            environment=request.environment,
            started_at=iso_timestamp(started),
            metadata={"run": self.reporter.run_label(request.environment, started)},
        )
        outcome = RunOutcome(report=report)

        try:
            batch = resolve_request(
                request.operation,
                request.environment,
                resource_address=request.resource_address,
                external_id=request.external_id,
                config_file=request.config_file,
                description=request.description,
            )
        except ValidationError as exc:
            _step(op, "validate", "failed", str(exc))
            self._abort(report, exc)
            self._finish(outcome, batch=None, validation_errors=[str(exc)])
            return outcome
        _step(op, "validate", "ok", f"{len(batch.imports)} import(s)")
        report.metadata.update(_batch_metadata(batch))

        report.stage = RunStage.PREPARING
        try:
            with ExitStack() as stack:
                if self.locks is not None and request.operation.mutates_state:
                    handle = stack.enter_context(
                        self.locks.environment_lock(request.environment.value)
                    )
                    if op is not None:
                        op.set_lock_wait_ms(handle.wait_ms)
                self._execute(report, batch, op)
        except TfStateCtlError as exc:
            _step(op, report.stage.value, "failed", str(exc))
            self._abort(report, exc)

        self._finish(outcome, batch=batch)
        self._notify(outcome)
        _step(
            op,
            "notify",
            "sent" if outcome.notification and outcome.notification.sent else "skipped",
        )
        return outcome

    # Stages -----------------------------------------------------------
    def _execute(self, report: RunReport, batch: ImportBatch, op: OperationScope | None) -> None:
        environment = report.environment
        mutates = report.operation.mutates_state

        self.backend.ensure_version(self.config.terraform.pinned_version)
        self.backend.init(self.config.environment(environment).backend)
        _step(op, "init", "ok")

        if mutates:
            report.stage = RunStage.SNAPSHOTTING
            report.snapshot = self.snapshotter.take(
                environment,
                self.backend,
                operation=report.operation.value,
                run_label=report.metadata["run"],
            )
            _step(op, "snapshot", "ok", report.snapshot.name)

        report.stage = RunStage.EXECUTING
        executor = ImportExecutor(backend=self.backend, inventory=self.inventory)
        for result in executor.execute(batch, dry_run=not mutates):
            report.results.append(result)
        summary = report.summary
        _step(
            op,
            "execute",
            "failed" if summary.failed else "ok",
            f"successful={summary.successful} failed={summary.failed} "
            f"skipped={summary.skipped}",
        )

        if mutates:
            report.stage = RunStage.VERIFYING
            verifier = PostImportVerifier(self.backend)
            report.verification = verifier.verify(
                self.reporter.directory_for(environment),
                run=report.metadata["run"],
            )
            _step(op, "verify", report.verification.status.value)
        else:
            report.verification = VerificationResult(
                status=VerificationStatus.SKIPPED,
                detail="Verification is not run for dry runs.",
            )

        report.stage = RunStage.REPORTING
        report.exit_code = summary.exit_code

    def _abort(self, report: RunReport, exc: TfStateCtlError) -> None:
        LOGGER.debug("run aborted during %s: %s", report.stage.value, exc)
        report.metadata["aborted_during"] = report.stage.value
        report.error = str(exc)
        report.exit_code = exc.exit_code
        report.stage = RunStage.ABORTED

    def _finish(
        self,
        outcome: RunOutcome,
        *,
        batch: ImportBatch | None,
        validation_errors: list[str] | None = None,
    ) -> None:
        report = outcome.report
        if report.stage is not RunStage.ABORTED:
            report.stage = RunStage.DONE
        report.finished_at = iso_timestamp()
        try:
            outcome.reports = self.reporter.write(
                report,
                batch=batch,
                validation_errors=validation_errors or (),
            )
        except ReportError as exc:
            LOGGER.warning("%s", exc)
            outcome.warnings.append(str(exc))

    def _notify(self, outcome: RunOutcome) -> None:
        report = outcome.report
        status, message = _notification_text(report)
        try:
            outcome.notification = self.notifier.notify(
                status,
                report.environment.value,
                message,
                _notification_metadata(report),
            )
        except NotificationError as exc:
            LOGGER.warning("Notification not delivered: %s", exc)
            outcome.warnings.append(f"Notification not delivered: {exc}")
            outcome.notification = NotificationResult(sent=False, detail=str(exc))


def _step(op: OperationScope | None, name: str, status: str, detail: str | None = None) -> None:
    if op is not None:
        op.add_step(name, status=status, detail=detail)


def _batch_metadata(batch: ImportBatch) -> dict[str, object]:
    metadata: dict[str, object] = {
        "import_count": len(batch.imports),
        "imports": [spec.to_dict() for spec in batch.imports],
    }
    if batch.description:
        metadata["description"] = batch.description
    if batch.source is not None:
        metadata["source"] = str(batch.source)
    return metadata


def _notification_text(report: RunReport) -> tuple[NotificationStatus, str]:
    label = report.operation.value
    summary = report.summary
    if report.aborted:
        return (
            NotificationStatus.FAILURE,
            f"{label} aborted during {report.metadata.get('aborted_during', 'run')}: "
            f"{report.error}",
        )
    if report.exit_code != ExitCode.OK:
        return (
            NotificationStatus.FAILURE,
            f"{label} finished with {summary.failed} failed import(s) out of {summary.total}.",
        )
    if report.verification is not None and report.verification.has_divergence:
        return (
            NotificationStatus.WARNING,
            f"{label} succeeded; the post-import plan shows pending changes.",
        )
    return NotificationStatus.SUCCESS, f"{label} completed successfully."


def _notification_metadata(report: RunReport) -> dict[str, object]:
    summary = report.summary
    return {
        "Operation": report.operation.value,
        "Environment": report.environment.value,
        "Successful": summary.successful,
        "Failed": summary.failed,
        "Skipped": summary.skipped,
        "Snapshot": report.snapshot.name if report.snapshot else None,
        "Verification": report.verification.status.value if report.verification else None,
        "Exit code": int(report.exit_code),
    }


__all__ = ["ImportOrchestrator", "ImportRequest", "RunOutcome"]
