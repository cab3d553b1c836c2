"""Typer-powered command line interface for ``tfstatectl``.

Import commands run through :class:`~tfstatectl.orchestrator.ImportOrchestrator`;
state maintenance commands run through
:class:`~tfstatectl.state_ops.StateOperations`. Every command is wrapped in a
structured log operation and exits with a :class:`~tfstatectl.exit_codes.ExitCode`.
"""
from __future__ import annotations

import json
import textwrap
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.table import Table

from . import __version__
from .config import AppConfig, ConfigError, load_config
from .errors import TfStateCtlError
from .exit_codes import ExitCode
from .locking import LockManager
from .logging import OperationScope, StructuredLogger
from .models import Environment, ImportOutcome, OperationKind
from .orchestrator import ImportOrchestrator, ImportRequest, RunOutcome
from .providers import AzureCliProvider, TerraformProvider, WebhookNotifier
from .reporting import Reporter
from .snapshots import SnapshotRegistry, StateSnapshotter
from .state_ops import StateOperations, StateOpResult

console = Console()

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to tfstatectl's YAML config file.",
)

ENV_OPTION = typer.Option(
    ...,
    "--env",
    "-e",
    case_sensitive=False,
    help="Target environment.",
)

ADDRESS_OPTION = typer.Option(
    None,
    "--address",
    "-a",
    help="Terraform resource address (e.g. azurerm_resource_group.main).",
)

RESOURCE_ID_OPTION = typer.Option(
    None,
    "--id",
    help="Cloud resource id to bind to the address.",
)

DESCRIPTION_OPTION = typer.Option(
    None,
    "--description",
    help="Free-form description recorded in the reports.",
)

BATCH_FILE_OPTION = typer.Option(
    None,
    "--batch-file",
    "-f",
    dir_okay=False,
    help="JSON or YAML file listing the imports.",
)

JSON_OPTION = typer.Option(
    False,
    "--json",
    help="Emit the result as JSON instead of a table.",
)

YES_OPTION = typer.Option(
    False,
    "--yes",
    "-y",
    help="Proceed without interactive confirmation.",
)

_OUTCOME_STYLES = {
    ImportOutcome.IMPORTED: "green",
    ImportOutcome.READY: "green",
    ImportOutcome.SKIPPED_ALREADY_BOUND: "yellow",
    ImportOutcome.FAILED_NOT_FOUND: "red",
    ImportOutcome.FAILED_OTHER: "red",
}

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Terraform import orchestrator and state maintenance CLI.

        Imports existing cloud resources into Terraform state behind a
        snapshot-then-verify safety protocol, and wraps the state chores
        (list, show, remove, backup, restore, unlock) around it.
        """
    ).strip(),
)
import_app = typer.Typer(help="Import existing cloud resources into Terraform state.")
state_app = typer.Typer(help="Inspect and maintain Terraform state.")
config_app = typer.Typer(help="Inspect the effective configuration.")

app.add_typer(import_app, name="import")
app.add_typer(state_app, name="state")
app.add_typer(config_app, name="config")


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    locks: LockManager
    logger: StructuredLogger
    azure: AzureCliProvider
    notifier: WebhookNotifier
    reporter: Reporter
    snapshots: SnapshotRegistry
    snapshotter: StateSnapshotter

    def terraform(self, environment: Environment) -> TerraformProvider:
        """Return a terraform wrapper bound to *environment*'s working directory."""
        env_config = self.config.environment(environment)
        return TerraformProvider(
            working_dir=env_config.working_dir,
            terraform_bin=self.config.terraform.bin,
            timeout=self.config.terraform.timeout,
        )

    def orchestrator(self, environment: Environment) -> ImportOrchestrator:
        """Return an import orchestrator for *environment*."""
        return ImportOrchestrator(
            config=self.config,
            backend=self.terraform(environment),
            inventory=self.azure,
            snapshotter=self.snapshotter,
            reporter=self.reporter,
            notifier=self.notifier,
            locks=self.locks,
        )

    def state_operations(self) -> StateOperations:
        """Return the state maintenance operations."""
        return StateOperations(
            config=self.config,
            backend_factory=self.terraform,
            storage=self.azure,
            snapshotter=self.snapshotter,
            reporter=self.reporter,
            notifier=self.notifier,
            locks=self.locks,
        )


def _ensure_runtime(
    ctx: typer.Context,
    config_file: Path | None,
    lock_timeout_override: float | None = None,
) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    overrides: dict[str, object] = {}
    if lock_timeout_override is not None:
        overrides["lock_timeout"] = lock_timeout_override

    try:
        config = load_config(config_file=config_file, overrides=overrides)
    except ConfigError as exc:
        console.print(f"[red]Configuration error:[/red] {exc}")
        raise typer.Exit(code=ExitCode.VALIDATION) from exc

    locks = LockManager(config.runtime_dir, config.lock_timeout)
    logger = StructuredLogger(config.logs_dir)
    azure = AzureCliProvider(az_bin=config.azure.bin, timeout=config.terraform.timeout)
    notifier = WebhookNotifier(
        config.notifications.webhook_url,
        timeout=config.notifications.timeout,
    )
    snapshots = SnapshotRegistry(config.snapshots.root, config.snapshots.index)
    runtime = RuntimeContext(
        config=config,
        locks=locks,
        logger=logger,
        azure=azure,
        notifier=notifier,
        reporter=Reporter(config.reports_dir),
        snapshots=snapshots,
        snapshotter=StateSnapshotter(snapshots, config.snapshots, uploader=azure),
    )
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None, None)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the tfstatectl version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
    lock_timeout: float | None = typer.Option(
        None,
        "--lock-timeout",
        help="Override lock acquisition timeout in seconds.",
    ),
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if version:
        runtime = _ensure_runtime(ctx, config_file, lock_timeout)
        with runtime.logger.operation(
            "root --version",
            args={"version": True},
            target={"kind": "meta", "scope": "version"},
        ) as op:
            console.print(f"tfstatectl {__version__}")
            op.success("Reported CLI version.", changed=0)
        raise typer.Exit(code=0)

    _ensure_runtime(ctx, config_file, lock_timeout)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=0)


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = ExitCode.VALIDATION,
    errors: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{message}[/red]")
    op.error(message, errors=list(errors or [message]), rc=int(rc))
    raise typer.Exit(code=int(rc))


# Import commands -----------------------------------------------------------


def _render_run(outcome: RunOutcome, *, json_output: bool) -> None:
    report = outcome.report
    if json_output:
        payload = report.to_dict()
        payload["reports"] = outcome.reports.to_dict() if outcome.reports else None
        payload["notification"] = (
            {
                "sent": outcome.notification.sent,
                "skipped": outcome.notification.skipped,
                "detail": outcome.notification.detail,
            }
            if outcome.notification
            else None
        )
        payload["warnings"] = list(outcome.warnings)
        console.print_json(data=payload)
        return

    if report.snapshot is not None:
        console.print(f"State snapshot: [bold]{report.snapshot.path}[/bold]")

    if report.results:
        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Address", style="bold")
        table.add_column("Outcome")
        table.add_column("Detail")
        for result in report.results:
            style = _OUTCOME_STYLES[result.outcome]
            table.add_row(
                result.address,
                f"[{style}]{result.outcome.value}[/{style}]",
                result.detail,
            )
        console.print(table)

    summary = report.summary
    console.print(
        f"Successful: {summary.successful}  Failed: {summary.failed}  "
        f"Skipped: {summary.skipped}  Total: {summary.total}"
    )
    if report.verification is not None and report.verification.has_divergence:
        console.print(f"[yellow]Warning:[/yellow] {report.verification.detail}")
        if report.verification.plan_path is not None:
            console.print(f"  plan: {report.verification.plan_path}")
    for warning in outcome.warnings:
        console.print(f"[yellow]Warning:[/yellow] {warning}")
    if outcome.reports is not None:
        console.print(f"Reports: {outcome.reports.operation_markdown.parent}")


def _run_import(
    ctx: typer.Context,
    request: ImportRequest,
    *,
    json_output: bool,
) -> None:
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        request.operation.value.replace("-", " ", 1),
        args={**request.to_dict(), "json": json_output},
        target={"kind": "environment", "name": request.environment.value},
    ) as op:
        outcome = runtime.orchestrator(request.environment).run(request, op=op)
        report = outcome.report
        _render_run(outcome, json_output=json_output)

        snapshots = [report.snapshot.to_dict()] if report.snapshot else None
        context = {
            "summary": report.summary.to_dict(),
            "state": report.stage.value,
            "reports": outcome.reports.to_dict() if outcome.reports else None,
        }
        if report.aborted:
            _command_error(op, str(report.error), rc=outcome.exit_code)

        imported = sum(1 for result in report.results if result.outcome is ImportOutcome.IMPORTED)
        if outcome.exit_code != ExitCode.OK:
            summary = report.summary
            message = f"{summary.failed} of {summary.total} import(s) failed."
            console.print(f"[red]{message}[/red]")
            op.error(
                message,
                errors=[
                    f"{result.address}: {result.outcome.value}"
                    for result in report.results
                    if result.outcome.is_failure
                ],
                rc=outcome.exit_code,
                snapshots=snapshots,
                context=context,
            )
            raise typer.Exit(code=outcome.exit_code)

        warnings = list(outcome.warnings)
        if report.verification is not None and report.verification.has_divergence:
            warnings.append(report.verification.detail)
        if warnings:
            op.warning(
                "Import completed with warnings.",
                warnings=warnings,
                changed=imported,
                snapshots=snapshots,
                context=context,
            )
        else:
            op.success(
                "Import completed.",
                changed=imported,
                snapshots=snapshots,
                context=context,
            )
        if not json_output:
            console.print(f"[green]{request.operation.value} completed successfully.[/green]")


@import_app.command("individual")
def import_individual(
    ctx: typer.Context,
    environment: Environment = ENV_OPTION,
    address: str | None = ADDRESS_OPTION,
    resource_id: str | None = RESOURCE_ID_OPTION,
    description: str | None = DESCRIPTION_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Import a single resource."""
    request = ImportRequest(
        operation=OperationKind.INDIVIDUAL,
        environment=environment,
        resource_address=address,
        external_id=resource_id,
        description=description,
    )
    _run_import(ctx, request, json_output=json_output)


@import_app.command("bulk")
def import_bulk(
    ctx: typer.Context,
    environment: Environment = ENV_OPTION,
    batch_file: Path | None = BATCH_FILE_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Import every resource listed in a batch file."""
    request = ImportRequest(
        operation=OperationKind.BULK,
        environment=environment,
        config_file=batch_file,
    )
    _run_import(ctx, request, json_output=json_output)


@import_app.command("dry-run")
def import_dry_run(
    ctx: typer.Context,
    environment: Environment = ENV_OPTION,
    address: str | None = ADDRESS_OPTION,
    resource_id: str | None = RESOURCE_ID_OPTION,
    batch_file: Path | None = BATCH_FILE_OPTION,
    description: str | None = DESCRIPTION_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Check that imports are ready without touching state."""
    request = ImportRequest(
        operation=OperationKind.DRY_RUN,
        environment=environment,
        resource_address=address,
        external_id=resource_id,
        config_file=batch_file,
        description=description,
    )
    _run_import(ctx, request, json_output=json_output)


# State commands ------------------------------------------------------------


def _render_state_result(result: StateOpResult, *, json_output: bool) -> None:
    if json_output:
        console.print_json(data=result.to_dict())
        return
    console.print(f"[green]{result.message}[/green]")
    for snapshot in result.snapshots:
        console.print(f"  snapshot: {snapshot.path}")
    for artifact in result.artifacts:
        console.print(f"  artifact: {artifact}")
    for warning in result.warnings:
        console.print(f"[yellow]Warning:[/yellow] {warning}")


def _finish_state_op(op: OperationScope, result: StateOpResult) -> None:
    snapshots = [snapshot.to_dict() for snapshot in result.snapshots] or None
    if result.warnings:
        op.warning(
            result.message,
            warnings=result.warnings,
            changed=result.changed,
            snapshots=snapshots,
            context=result.details,
        )
    else:
        op.success(
            result.message,
            changed=result.changed,
            snapshots=snapshots,
            context=result.details,
        )


@state_app.command("list")
def state_list(
    ctx: typer.Context,
    environment: Environment = ENV_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """List every resource recorded in state."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "state list",
        args={"json": json_output},
        target={"kind": "environment", "name": environment.value},
    ) as op:
        try:
            result = runtime.state_operations().list_resources(environment)
        except TfStateCtlError as exc:
            _command_error(op, str(exc), rc=exc.exit_code)

        if json_output:
            _render_state_result(result, json_output=True)
        else:
            table = Table(show_header=True, header_style="bold magenta")
            table.add_column("Address", style="bold")
            addresses = result.details.get("addresses") or []
            if not addresses:
                table.add_row("(none)")
            for address in addresses:
                table.add_row(str(address))
            console.print(table)
            _render_state_result(result, json_output=False)
        _finish_state_op(op, result)


@state_app.command("show")
def state_show(
    ctx: typer.Context,
    address: str = typer.Argument(..., help="Resource address to display."),
    environment: Environment = ENV_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Show the recorded state of one resource."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "state show",
        args={"address": address, "json": json_output},
        target={"kind": "resource", "name": address, "environment": environment.value},
    ) as op:
        try:
            result = runtime.state_operations().show(environment, address)
        except TfStateCtlError as exc:
            _command_error(op, str(exc), rc=exc.exit_code)

        if not json_output:
            console.print(str(result.details.get("state", "")), markup=False, highlight=False)
        _render_state_result(result, json_output=json_output)
        _finish_state_op(op, result)


@state_app.command("remove")
def state_remove(
    ctx: typer.Context,
    address: str = typer.Argument(..., help="Resource address to remove from state."),
    environment: Environment = ENV_OPTION,
    yes: bool = YES_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Remove a resource from state (the cloud resource is left untouched)."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "state remove",
        args={"address": address, "yes": yes, "json": json_output},
        target={"kind": "resource", "name": address, "environment": environment.value},
    ) as op:
        if not yes:
            confirmed = typer.confirm(
                f"Remove {address} from {environment.value} state?",
                default=False,
            )
            if not confirmed:
                _command_error(op, "Removal cancelled.", rc=ExitCode.VALIDATION)
        try:
            result = runtime.state_operations().remove(environment, address)
        except TfStateCtlError as exc:
            _command_error(op, str(exc), rc=exc.exit_code)

        _render_state_result(result, json_output=json_output)
        _finish_state_op(op, result)


@state_app.command("backup")
def state_backup(
    ctx: typer.Context,
    environment: Environment | None = typer.Option(
        None,
        "--env",
        "-e",
        case_sensitive=False,
        help="Environment to back up.",
    ),
    all_environments: bool = typer.Option(
        False,
        "--all",
        help="Back up every configured environment.",
    ),
    json_output: bool = JSON_OPTION,
) -> None:
    """Snapshot remote state for one or all environments."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "state backup",
        args={"all": all_environments, "json": json_output},
        target={
            "kind": "environment",
            "name": environment.value if environment else "all",
        },
    ) as op:
        if (environment is None) == (not all_environments):
            _command_error(op, "Pass exactly one of --env or --all.", rc=ExitCode.VALIDATION)
        try:
            result = runtime.state_operations().backup(None if all_environments else environment)
        except TfStateCtlError as exc:
            _command_error(op, str(exc), rc=exc.exit_code)

        _render_state_result(result, json_output=json_output)
        _finish_state_op(op, result)


@state_app.command("restore")
def state_restore(
    ctx: typer.Context,
    backup_name: str = typer.Argument(..., help="Backup blob name to restore."),
    environment: Environment = ENV_OPTION,
    yes: bool = YES_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Overwrite remote state with a backup (requires --yes)."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "state restore",
        args={"backup": backup_name, "yes": yes, "json": json_output},
        target={"kind": "environment", "name": environment.value},
    ) as op:
        try:
            result = runtime.state_operations().restore(
                environment,
                backup_name,
                confirmed=yes,
            )
        except TfStateCtlError as exc:
            _command_error(op, str(exc), rc=exc.exit_code)

        _render_state_result(result, json_output=json_output)
        _finish_state_op(op, result)


@state_app.command("unlock")
def state_unlock(
    ctx: typer.Context,
    lock_id: str = typer.Argument(..., help="Lock id reported by terraform."),
    environment: Environment = ENV_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Force-release a stuck backend state lock."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "state unlock",
        args={"lock_id": lock_id, "json": json_output},
        target={"kind": "environment", "name": environment.value},
    ) as op:
        try:
            result = runtime.state_operations().unlock(environment, lock_id)
        except TfStateCtlError as exc:
            _command_error(op, str(exc), rc=exc.exit_code)

        _render_state_result(result, json_output=json_output)
        _finish_state_op(op, result)


# Config commands -----------------------------------------------------------


@config_app.command("show")
def config_show(
    ctx: typer.Context,
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Emit configuration as JSON instead of a table.",
    ),
) -> None:
    """Display the effective configuration after merges."""
    runtime = _get_runtime(ctx)
    data = runtime.config.to_dict()

    with runtime.logger.operation(
        "config show",
        args={"json": json_output},
        target={"kind": "config"},
    ) as op:
        if json_output:
            console.print_json(data=data)
            op.success("Rendered configuration as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Key", style="bold")
        table.add_column("Value")

        for key, value in data.items():
            if isinstance(value, dict):
                rendered = json.dumps(value, indent=2, sort_keys=True)
            else:
                rendered = str(value)
            table.add_row(key, rendered)

        console.print(table)
        op.success("Rendered configuration table.", changed=0)

