"""Data models for import runs and their results."""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from .exit_codes import ExitCode


class Environment(str, Enum):
    """Deployment environments with their own remote state."""

    STAGING = "staging"
    PRODUCTION = "production"


class OperationKind(str, Enum):
    """Import operation selected on the command line."""

    INDIVIDUAL = "import-individual"
    BULK = "import-bulk"
    DRY_RUN = "import-dry-run"

    @property
    def mutates_state(self) -> bool:
        """Return ``True`` when the operation binds objects into state."""
        return self is not OperationKind.DRY_RUN


class ImportOutcome(str, Enum):
    """Per-address outcome recorded by the import executor."""

    IMPORTED = "imported"
    READY = "ready"
    SKIPPED_ALREADY_BOUND = "skipped-already-bound"
    FAILED_NOT_FOUND = "failed-not-found"
    FAILED_OTHER = "failed-other"

    @property
    def is_failure(self) -> bool:
        """Return ``True`` for the ``failed-*`` outcomes."""
        return self in (ImportOutcome.FAILED_NOT_FOUND, ImportOutcome.FAILED_OTHER)

    @property
    def is_skip(self) -> bool:
        """Return ``True`` when the address was already bound."""
        return self is ImportOutcome.SKIPPED_ALREADY_BOUND


class RunStage(str, Enum):
    """Stages of a single orchestrated run."""

    VALIDATING = "validating"
    PREPARING = "preparing"
    SNAPSHOTTING = "snapshotting"
    EXECUTING = "executing"
    VERIFYING = "verifying"
    REPORTING = "reporting"
    DONE = "done"
    ABORTED = "aborted"


class VerificationStatus(str, Enum):
    """Outcome of the post-import plan."""

    CLEAN = "clean"
    DIVERGENCE = "divergence"
    SKIPPED = "skipped"


@dataclass(slots=True, frozen=True)
class ImportSpec:
    """A request to bind one external object to a state address."""

    resource_address: str
    external_id: str
    description: str | None = None

    def to_dict(self) -> dict[str, object]:
        """Return the batch-file representation of the spec."""
        payload: dict[str, object] = {
            "resource_address": self.resource_address,
            "resource_id": self.external_id,
        }
        if self.description:
            payload["description"] = self.description
        return payload


@dataclass(slots=True, frozen=True)
class ImportBatch:
    """Ordered import requests for a single environment."""

    environment: Environment
    imports: tuple[ImportSpec, ...]
    description: str | None = None
    source: Path | None = None


@dataclass(slots=True, frozen=True)
class StateSnapshot:
    """Durable copy of remote state taken before a mutation."""

    name: str
    timestamp: str
    environment: Environment
    path: Path
    checksum: str
    size_bytes: int
    remote: str | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable reference to the snapshot."""
        return {
            "name": self.name,
            "timestamp": self.timestamp,
            "environment": self.environment.value,
            "path": str(self.path),
            "checksum": {"algorithm": "sha256", "value": self.checksum},
            "size_bytes": self.size_bytes,
            "remote": self.remote,
        }


@dataclass(slots=True, frozen=True)
class OperationResult:
    """Outcome of processing one :class:`ImportSpec`."""

    address: str
    outcome: ImportOutcome
    detail: str = ""
    external_id: str | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "address": self.address,
            "external_id": self.external_id,
            "outcome": self.outcome.value,
            "detail": self.detail,
        }


@dataclass(slots=True, frozen=True)
class BatchSummary:
    """Counts folded from the ordered list of results."""

    successful: int
    failed: int
    skipped: int

    @property
    def total(self) -> int:
        """Return the number of processed specs."""
        return self.successful + self.failed + self.skipped

    @property
    def exit_code(self) -> ExitCode:
        """Return the exit code implied by the counts."""
        return ExitCode.FAILED if self.failed else ExitCode.OK

    def to_dict(self) -> dict[str, int]:
        """Return a serialisable representation."""
        return {
            "successful": self.successful,
            "failed": self.failed,
            "skipped": self.skipped,
            "total": self.total,
        }


@dataclass(slots=True, frozen=True)
class VerificationResult:
    """Result of refreshing, validating and planning after an import."""

    status: VerificationStatus
    plan_path: Path | None = None
    detail: str = ""

    @property
    def has_divergence(self) -> bool:
        """Return ``True`` when the plan reported pending changes."""
        return self.status is VerificationStatus.DIVERGENCE

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "status": self.status.value,
            "plan_path": str(self.plan_path) if self.plan_path else None,
            "detail": self.detail,
        }


@dataclass(slots=True)
class RunReport:
    """Everything known about a run when it reaches a terminal state."""

    operation: OperationKind
    environment: Environment
    started_at: str
    stage: RunStage = RunStage.VALIDATING
    results: list[OperationResult] = field(default_factory=list)
    snapshot: StateSnapshot | None = None
    verification: VerificationResult | None = None
    error: str | None = None
    exit_code: int = ExitCode.OK
    finished_at: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def aborted(self) -> bool:
        """Return ``True`` when the run stopped before completing."""
        return self.stage is RunStage.ABORTED

    @property
    def summary(self) -> BatchSummary:
        """Return the aggregated result counts."""
        return summarize(self.results)

    def to_dict(self) -> dict[str, object]:
        """Return the JSON representation used for the operation report."""
        return {
            "operation": self.operation.value,
            "environment": self.environment.value,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "state": self.stage.value,
            "exit_code": int(self.exit_code),
            "error": self.error,
            "summary": self.summary.to_dict(),
            "results": [result.to_dict() for result in self.results],
            "snapshot": self.snapshot.to_dict() if self.snapshot else None,
            "verification": self.verification.to_dict() if self.verification else None,
            "metadata": dict(self.metadata),
        }


def summarize(results: Iterable[OperationResult]) -> BatchSummary:
    """Fold ordered results into success/failure/skip counts."""
    successful = failed = skipped = 0
    for result in results:
        if result.outcome.is_failure:
            failed += 1
        elif result.outcome.is_skip:
            skipped += 1
        else:
            successful += 1
    return BatchSummary(successful=successful, failed=failed, skipped=skipped)


def results_by_outcome(
    results: Sequence[OperationResult],
) -> Mapping[ImportOutcome, list[str]]:
    """Group addresses by outcome, preserving processing order."""
    grouped: dict[ImportOutcome, list[str]] = {outcome: [] for outcome in ImportOutcome}
    for result in results:
        grouped[result.outcome].append(result.address)
    return grouped


__all__ = [
    "BatchSummary",
    "Environment",
    "ImportBatch",
    "ImportOutcome",
    "ImportSpec",
    "OperationKind",
    "OperationResult",
    "RunReport",
    "RunStage",
    "StateSnapshot",
    "VerificationResult",
    "VerificationStatus",
    "results_by_outcome",
    "summarize",
]
