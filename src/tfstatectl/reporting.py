"""Report artifacts written for every run, successful or not."""
from __future__ import annotations

import json
import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

from .models import (
    Environment,
    ImportBatch,
    ImportOutcome,
    OperationResult,
    RunReport,
    results_by_outcome,
)

LOGGER = logging.getLogger(__name__)

VALIDATION_REPORT = "import-validation-report-{run}.md"
OPERATION_REPORT_JSON = "import-operation-report-{run}.json"
OPERATION_REPORT_MD = "import-operation-report-{run}.md"

_OUTCOME_HEADINGS = {
    ImportOutcome.IMPORTED: "Imported",
    ImportOutcome.READY: "Ready for import",
    ImportOutcome.SKIPPED_ALREADY_BOUND: "Skipped (already in state)",
    ImportOutcome.FAILED_NOT_FOUND: "Failed (external object not found)",
    ImportOutcome.FAILED_OTHER: "Failed",
}


class ReportError(RuntimeError):
    """Raised when a report file cannot be written."""


@dataclass(slots=True, frozen=True)
class ReportPaths:
    """Files produced for one run."""

    validation: Path
    operation_json: Path
    operation_markdown: Path

    def to_dict(self) -> dict[str, str]:
        """Return a serialisable representation."""
        return {
            "validation": str(self.validation),
            "operation_json": str(self.operation_json),
            "operation_markdown": str(self.operation_markdown),
        }


@dataclass(slots=True)
class Reporter:
    """Write validation and operation reports under ``<root>/<environment>/``.

    Report names carry the run label, so earlier runs keep their reports.
    """

    root: Path

    def directory_for(self, environment: Environment) -> Path:
        """Return the report directory for *environment*."""
        return self.root / environment.value

    def run_label(self, environment: Environment, moment: datetime | None = None) -> str:
        """Return a run label no earlier report for *environment* is filed under."""
        base = f"{environment.value}-{(moment or datetime.now(tz=UTC)):%Y%m%d-%H%M%S}"
        label = base
        counter = 1
        while self.paths_for(environment, label).operation_json.exists():
            label = f"{base}-{counter}"
            counter += 1
        return label

    def paths_for(self, environment: Environment, run: str) -> ReportPaths:
        """Return the report locations for *run* in *environment*."""
        directory = self.directory_for(environment)
        return ReportPaths(
            validation=directory / VALIDATION_REPORT.format(run=run),
            operation_json=directory / OPERATION_REPORT_JSON.format(run=run),
            operation_markdown=directory / OPERATION_REPORT_MD.format(run=run),
        )

    def write(
        self,
        report: RunReport,
        *,
        batch: ImportBatch | None = None,
        validation_errors: Sequence[str] = (),
    ) -> ReportPaths:
        """Write every report for *report* and return their paths."""
        run = str(report.metadata.get("run") or "")
        if not run:
            run = report.metadata["run"] = self.run_label(report.environment)
        paths = self.paths_for(report.environment, run)
        try:
            paths.validation.parent.mkdir(parents=True, exist_ok=True)
            paths.validation.write_text(
                render_validation_report(report, batch, validation_errors),
                encoding="utf-8",
            )
            paths.operation_json.write_text(
                json.dumps(report.to_dict(), indent=2) + "\n",
                encoding="utf-8",
            )
            paths.operation_markdown.write_text(
                render_operation_report(report),
                encoding="utf-8",
            )
        except OSError as exc:
            raise ReportError(
                f"Unable to write reports under {paths.validation.parent}: {exc}"
            ) from exc
        LOGGER.debug("reports written to %s", paths.validation.parent)
        return paths

    def write_lines(self, environment: Environment, name: str, lines: Iterable[str]) -> Path:
        """Write a plain line-oriented artifact (e.g. a state listing)."""
        path = self.directory_for(environment) / name
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text("".join(f"{line}\n" for line in lines), encoding="utf-8")
        except OSError as exc:
            raise ReportError(f"Unable to write {path}: {exc}") from exc
        return path


def render_validation_report(
    report: RunReport,
    batch: ImportBatch | None,
    validation_errors: Sequence[str] = (),
) -> str:
    """Render the Markdown validation report."""
    lines = [
        "# Import Validation Report",
        "",
        f"**Operation:** {report.operation.value}",
        f"**Environment:** {report.environment.value}",
        f"**Timestamp:** {report.started_at}",
        "",
    ]
    if validation_errors:
        lines.append("## Status: FAILED")
        lines.append("")
        lines.extend(f"- {error}" for error in validation_errors)
        lines.append("")
        return "\n".join(lines)

    lines.append("## Status: PASSED")
    lines.append("")
    if batch is not None:
        if batch.description:
            lines.extend([f"**Description:** {batch.description}", ""])
        if batch.source is not None:
            lines.extend([f"**Source:** `{batch.source}`", ""])
        lines.append(f"### Imports ({len(batch.imports)})")
        lines.append("")
        for spec in batch.imports:
            suffix = f" ({spec.description})" if spec.description else ""
            lines.append(f"- `{spec.resource_address}` <- `{spec.external_id}`{suffix}")
        lines.append("")
    return "\n".join(lines)


def render_operation_report(report: RunReport) -> str:
    """Render the Markdown operation report."""
    summary = report.summary
    lines = [
        "# Import Operation Report",
        "",
        f"**Operation:** {report.operation.value}",
        f"**Environment:** {report.environment.value}",
        f"**Started:** {report.started_at}",
        f"**Finished:** {report.finished_at or '-'}",
        f"**Final state:** {report.stage.value}",
        f"**Exit code:** {int(report.exit_code)}",
        "",
        "## Summary",
        "",
        f"- Successful: {summary.successful}",
        f"- Failed: {summary.failed}",
        f"- Skipped: {summary.skipped}",
        f"- Total: {summary.total}",
        "",
    ]
    if report.error:
        lines.extend(["## Error", "", report.error, ""])

    if report.snapshot is not None:
        lines.extend(
            [
                "## State Snapshot",
                "",
                f"- Name: `{report.snapshot.name}`",
                f"- Path: `{report.snapshot.path}`",
                f"- SHA-256: `{report.snapshot.checksum}`",
            ]
        )
        if report.snapshot.remote:
            lines.append(f"- Remote copy: `{report.snapshot.remote}`")
        lines.append("")

    lines.extend(_render_results(report.results))

    if report.verification is not None:
        lines.extend(
            [
                "## Verification",
                "",
                f"- Status: {report.verification.status.value}",
                f"- Detail: {report.verification.detail}",
            ]
        )
        if report.verification.plan_path is not None:
            lines.append(f"- Plan: `{report.verification.plan_path}`")
        lines.append("")
    return "\n".join(lines)


def _render_results(results: Sequence[OperationResult]) -> list[str]:
    if not results:
        return ["## Results", "", "No imports were attempted.", ""]
    lines = ["## Results", "", "| Address | Outcome | Detail |", "| --- | --- | --- |"]
    for result in results:
        detail = result.detail.replace("\n", " ").replace("|", "\\|")
        lines.append(f"| `{result.address}` | {result.outcome.value} | {detail} |")
    lines.append("")
    for outcome, addresses in results_by_outcome(results).items():
        if not addresses:
            continue
        lines.append(f"### {_OUTCOME_HEADINGS[outcome]}")
        lines.append("")
        lines.extend(f"- `{address}`" for address in addresses)
        lines.append("")
    return lines


__all__ = [
    "OPERATION_REPORT_JSON",
    "OPERATION_REPORT_MD",
    "VALIDATION_REPORT",
    "ReportError",
    "ReportPaths",
    "Reporter",
    "render_operation_report",
    "render_validation_report",
]
